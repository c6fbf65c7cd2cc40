"""
SCH Gateway Server

FastAPI-based relayer surface for the time-windowed authorization scheme.

Read surface (never mutates):
- GET  /v1/state             signer, chain, subject, nonce, reference timestamp
- GET  /v1/digest            the digest the signer must sign for the current window
- GET  /v1/consumed/{digest} whether a digest was already executed
- POST /v1/would-verify      whether a signature would be accepted right now

Write surface:
- POST /v1/execute           verify a signature and spend the current authorization

The gateway never sees private keys. Signatures are produced out-of-band by
the designated signer over the digest returned by /v1/digest.
"""

from __future__ import annotations

import logging
import os
from typing import Any, Dict, Optional

from fastapi import FastAPI, Header, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel

from .auth import ApiKeyAuth
from .config import GatewayConfig
from .digest import coerce_digest
from .errors import SCH_E_AUTH_REQUIRED, SCHError, sch_error
from .metrics import instrument_fastapi
from .state import Authorizer

logger = logging.getLogger("sch_gateway.server")


# ---------------------------
# Request/Response Models
# ---------------------------

class SignatureRequest(BaseModel):
    """A 65-byte r||s||v signature as 0x-hex."""
    signature: str


class StateResponse(BaseModel):
    signer: str
    chain_id: str
    subject: str
    nonce: str
    reference_timestamp: str
    window_seconds: int
    consumed_count: int


class DigestResponse(BaseModel):
    digest: str
    window_start: str
    window_end: str
    nonce: str
    now: str


class ConsumedResponse(BaseModel):
    digest: str
    consumed: bool


class WouldVerifyResponse(BaseModel):
    would_verify: bool


class ExecuteResponse(BaseModel):
    digest: str
    nonce: str
    new_nonce: str
    window_start: str
    signer: str
    executed_at: str


# uint256 values are rendered as decimal strings; JSON numbers lose precision past 2**53.
def _u(value: int) -> str:
    return str(int(value))


# ---------------------------
# FastAPI App Factory
# ---------------------------

def create_app(authorizer: Optional[Authorizer] = None) -> FastAPI:
    """Create FastAPI application with gateway endpoints."""
    from . import __version__ as sch_version

    if authorizer is None:
        authorizer = GatewayConfig.from_env().build_authorizer()

    app = FastAPI(
        title="SCH Gateway",
        description="Signature Changing Hash - time-windowed single-signer authorization",
        version=sch_version,
    )
    app.state.authorizer = authorizer

    @app.exception_handler(SCHError)
    async def _sch_error_handler(request: Request, exc: SCHError):
        return JSONResponse(status_code=int(exc.http_status or 400), content=exc.as_dict())

    api_auth = ApiKeyAuth.load_from_env()

    metrics_token = (os.getenv("SCH_METRICS_TOKEN", "") or "").strip()

    def _authorize_metrics(req: Request) -> bool:
        # If a dedicated metrics token is set, require it via:
        #   Authorization: Bearer <token>  OR  X-Metrics-Token: <token>
        if not metrics_token:
            return True
        authz = (req.headers.get("Authorization") or "").strip()
        if authz.lower().startswith("bearer ") and authz.split(" ", 1)[1].strip() == metrics_token:
            return True
        return (req.headers.get("X-Metrics-Token") or "").strip() == metrics_token

    instrument_fastapi(app, authorize=_authorize_metrics)

    @app.get("/v1/health")
    async def health() -> Dict[str, Any]:
        return {"status": "ok", "version": sch_version}

    @app.get("/v1/state", response_model=StateResponse)
    def state() -> StateResponse:
        snap = authorizer.snapshot()
        return StateResponse(
            signer=snap.signer,
            chain_id=_u(snap.chain_id),
            subject=snap.subject,
            nonce=_u(snap.nonce),
            reference_timestamp=_u(snap.reference_timestamp),
            window_seconds=snap.window_seconds,
            consumed_count=snap.consumed_count,
        )

    @app.get("/v1/digest", response_model=DigestResponse)
    def digest() -> DigestResponse:
        """The digest to sign now, and the window it stays valid in."""
        cur = authorizer.current()
        return DigestResponse(
            digest="0x" + cur.digest.hex(),
            window_start=_u(cur.window_start),
            window_end=_u(cur.window_end),
            nonce=_u(cur.nonce),
            now=_u(cur.now),
        )

    @app.get("/v1/consumed/{digest_hex}", response_model=ConsumedResponse)
    def consumed(digest_hex: str) -> ConsumedResponse:
        d = coerce_digest(digest_hex)
        return ConsumedResponse(digest="0x" + d.hex(), consumed=authorizer.is_consumed(d))

    @app.post("/v1/would-verify", response_model=WouldVerifyResponse)
    def would_verify(request: SignatureRequest) -> WouldVerifyResponse:
        return WouldVerifyResponse(would_verify=authorizer.would_verify(request.signature))

    @app.post("/v1/execute", response_model=ExecuteResponse)
    def execute(
        request: SignatureRequest,
        x_api_key: Optional[str] = Header(None, alias="X-Api-Key"),
    ) -> ExecuteResponse:
        """Spend the current authorization.

        Plain (non-async) handler: the authorizer lock is held for the whole
        execution, so it runs in the worker thread pool.
        """
        ctx = api_auth.resolve_context(x_api_key)
        if ctx.error:
            raise sch_error(SCH_E_AUTH_REQUIRED, ctx.error, http_status=401)

        receipt = authorizer.execute(request.signature)
        logger.info("Relayer %s executed nonce %d", ctx.relayer_id or "anonymous", receipt.nonce)
        return ExecuteResponse(
            digest=receipt.digest_hex,
            nonce=_u(receipt.nonce),
            new_nonce=_u(receipt.new_nonce),
            window_start=_u(receipt.window_start),
            signer=receipt.signer,
            executed_at=_u(receipt.executed_at),
        )

    return app


def main():
    """
    Entry point for the sch-gateway command.

    Usage:
        sch-gateway                    # Start on 0.0.0.0:8000
        sch-gateway --port 9000        # Start on custom port
        sch-gateway --host 127.0.0.1   # Bind to localhost only
    """
    import argparse

    import uvicorn

    parser = argparse.ArgumentParser(
        description="SCH Gateway - time-windowed single-signer authorization relayer",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Environment Variables:
    SCH_SIGNER_ADDRESS   Designated signer address (required)
    SCH_CHAIN_ID         Chain identifier (required)
    SCH_SUBJECT_ADDRESS  Subject identity bound into digests (required)
    SCH_STATE_PATH       Authorization journal path (default: in-memory)
    SCH_API_KEYS_JSON    Relayer API keys {api_key: relayer_id}
    SCH_METRICS_TOKEN    Bearer token required for /metrics
        """,
    )
    parser.add_argument("--host", default="0.0.0.0", help="Host to bind (default: 0.0.0.0)")
    parser.add_argument("--port", type=int, default=8000, help="Port to bind (default: 8000)")
    args = parser.parse_args()

    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s [%(levelname)s] %(message)s",
        datefmt="%Y-%m-%dT%H:%M:%S",
    )

    try:
        app = create_app()
    except SCHError as e:
        logger.error("Gateway configuration invalid: %s", e)
        return 1

    authorizer: Authorizer = app.state.authorizer
    logger.info(
        "Starting SCH gateway on %s:%d (signer=%s chain_id=%d nonce=%d)",
        args.host,
        args.port,
        authorizer.signer,
        authorizer.chain_id,
        authorizer.nonce,
    )
    uvicorn.run(app, host=args.host, port=args.port)
    return 0


# CLI entry point
if __name__ == "__main__":
    import sys
    sys.exit(main() or 0)
