"""Gateway configuration from the environment.

Environment variables:
- SCH_SIGNER_ADDRESS: designated signer address (required)
- SCH_CHAIN_ID: chain identifier bound into every digest (required)
- SCH_SUBJECT_ADDRESS: subject identity bound into every digest (required)
- SCH_STATE_PATH: authorization journal path (empty: in-memory only)

Malformed or missing values fail closed with SCH_E_CONFIG.
"""

from __future__ import annotations

import os
from dataclasses import dataclass
from typing import Optional

from .digest import checksum_address
from .errors import SCH_E_CONFIG, SCHError, sch_error
from .journal import AuthorizationJournal
from .state import Authorizer, ProtectedAction
from .window import Clock, require_uint256

ENV_SIGNER_ADDRESS = "SCH_SIGNER_ADDRESS"
ENV_CHAIN_ID = "SCH_CHAIN_ID"
ENV_SUBJECT_ADDRESS = "SCH_SUBJECT_ADDRESS"
ENV_STATE_PATH = "SCH_STATE_PATH"


def _required(name: str) -> str:
    v = (os.getenv(name, "") or "").strip()
    if not v:
        raise sch_error(SCH_E_CONFIG, f"{name} must be set", http_status=500, env=name)
    return v


@dataclass(frozen=True)
class GatewayConfig:
    signer: str
    chain_id: int
    subject: str
    state_path: Optional[str] = None

    @classmethod
    def from_env(cls) -> "GatewayConfig":
        try:
            signer = checksum_address(_required(ENV_SIGNER_ADDRESS), ENV_SIGNER_ADDRESS)
            subject = checksum_address(_required(ENV_SUBJECT_ADDRESS), ENV_SUBJECT_ADDRESS)
            raw_chain = _required(ENV_CHAIN_ID)
            chain_id = require_uint256(int(raw_chain, 0), ENV_CHAIN_ID)
        except SCHError as e:
            if e.code == SCH_E_CONFIG:
                raise
            raise sch_error(SCH_E_CONFIG, f"invalid gateway configuration: {e.message}", http_status=500) from e
        except ValueError as e:
            raise sch_error(SCH_E_CONFIG, f"{ENV_CHAIN_ID} must be an integer", http_status=500) from e
        state_path = (os.getenv(ENV_STATE_PATH, "") or "").strip() or None
        return cls(signer=signer, chain_id=chain_id, subject=subject, state_path=state_path)

    def open_journal(self) -> Optional[AuthorizationJournal]:
        return AuthorizationJournal(self.state_path) if self.state_path else None

    def build_authorizer(self, clock: Optional[Clock] = None, action: Optional[ProtectedAction] = None) -> Authorizer:
        return Authorizer.open(
            signer=self.signer,
            chain_id=self.chain_id,
            subject=self.subject,
            clock=clock,
            journal=self.open_journal(),
            action=action,
        )
