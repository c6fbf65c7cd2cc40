"""Crash-safe authorization journal.

Purpose
-------
AuthorizationState must outlive the process: the nonce, the reference
timestamp and every consumed digest are needed after a restart, otherwise an
old signature could be executed twice.

The journal is an append-only, fsync'd JSON-lines file:

    {"kind":"genesis","signer":...,"chain_id":...,"subject":...,"reference_timestamp":...}
    {"kind":"execution","digest":"0x..","nonce":1,"reference_timestamp":...,"ts_utc":...}
    ...

- the genesis line is written once; a journal for another signer / chain /
  subject is refused (there is no re-initialization path)
- each execution record carries the nonce AFTER the increment
- a final line without its newline (crash mid-write) is cut off on load
- an execution whose nonce is not exactly previous + 1 is treated as tampering
- so is a reference timestamp that moves backwards or off the genesis window grid

Threat model note: if an attacker can rewrite the journal, they can roll back.
Keep the file on storage the relayer process alone can write.
"""

from __future__ import annotations

import json
import logging
import os
import threading
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import List, Optional

from .digest import checksum_address, coerce_digest
from .errors import SCH_E_STATE_MISMATCH, SCH_E_STATE_STORAGE, sch_error
from .window import WINDOW_SECONDS

logger = logging.getLogger("sch_gateway.journal")


def _now_utc_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


@dataclass(frozen=True)
class GenesisRecord:
    signer: str
    chain_id: int
    subject: str
    reference_timestamp: int


@dataclass(frozen=True)
class ExecutionRecord:
    digest: bytes
    nonce: int
    reference_timestamp: int
    ts_utc: str = ""


@dataclass
class JournalContents:
    genesis: Optional[GenesisRecord] = None
    executions: List[ExecutionRecord] = field(default_factory=list)


class AuthorizationJournal:
    """Append-only journal of genesis + executions with fsync for durability."""

    def __init__(self, path: str):
        self.path = str(path)
        Path(self.path).parent.mkdir(parents=True, exist_ok=True)
        self._lock = threading.Lock()

    def exists(self) -> bool:
        p = Path(self.path)
        return p.exists() and p.stat().st_size > 0

    def load(self) -> JournalContents:
        """Parse the journal. Tolerates a truncated final line."""
        out = JournalContents()
        with self._lock:
            p = Path(self.path)
            if not p.exists() or p.stat().st_size == 0:
                return out
            with open(p, "rb") as f:
                lines = f.readlines()

        offset = 0
        for lineno, raw in enumerate(lines, start=1):
            line_start = offset
            offset += len(raw)
            line = raw.decode("utf-8", errors="replace").strip()
            if lineno == len(lines) and not raw.endswith(b"\n"):
                # Torn tail write from a crash; the execution never committed.
                logger.warning("Dropping truncated journal tail at %s:%d", self.path, lineno)
                self._truncate(line_start)
                break
            if not line:
                continue
            try:
                rec = json.loads(line)
            except json.JSONDecodeError:
                raise sch_error(SCH_E_STATE_MISMATCH, "journal is corrupt", http_status=500, line=lineno)
            try:
                self._apply_record(out, rec, lineno)
            except (KeyError, TypeError, ValueError) as e:
                raise sch_error(SCH_E_STATE_MISMATCH, "malformed journal record", http_status=500, line=lineno) from e
        return out

    @staticmethod
    def _apply_record(out: JournalContents, rec: object, lineno: int) -> None:
        kind = rec.get("kind") if isinstance(rec, dict) else None
        if kind == "genesis":
            if out.genesis is not None or out.executions:
                raise sch_error(SCH_E_STATE_MISMATCH, "journal has a misplaced genesis record", http_status=500, line=lineno)
            out.genesis = GenesisRecord(
                signer=str(rec["signer"]),
                chain_id=int(rec["chain_id"]),
                subject=str(rec["subject"]),
                reference_timestamp=int(rec["reference_timestamp"]),
            )
        elif kind == "execution":
            if out.genesis is None:
                raise sch_error(SCH_E_STATE_MISMATCH, "journal execution precedes genesis", http_status=500, line=lineno)
            expected = (out.executions[-1].nonce if out.executions else 0) + 1
            nonce = rec.get("nonce")
            if not isinstance(nonce, int) or nonce != expected:
                raise sch_error(
                    SCH_E_STATE_MISMATCH,
                    "journal nonce sequence broken",
                    http_status=500,
                    line=lineno,
                    expected=expected,
                    got=nonce,
                )
            # A reference only ever moves forward to a window boundary of the genesis anchor.
            reference = int(rec["reference_timestamp"])
            previous = out.executions[-1].reference_timestamp if out.executions else out.genesis.reference_timestamp
            if reference < previous or (reference - out.genesis.reference_timestamp) % WINDOW_SECONDS:
                raise sch_error(
                    SCH_E_STATE_MISMATCH,
                    "journal reference timestamp is not a later window boundary",
                    http_status=500,
                    line=lineno,
                    previous=previous,
                    got=reference,
                )
            out.executions.append(
                ExecutionRecord(
                    digest=coerce_digest(str(rec["digest"])),
                    nonce=nonce,
                    reference_timestamp=reference,
                    ts_utc=str(rec.get("ts_utc", "")),
                )
            )
        else:
            raise sch_error(SCH_E_STATE_MISMATCH, "unknown journal record", http_status=500, line=lineno)

    def _truncate(self, size: int) -> None:
        # Cut the torn tail so the next append starts on a fresh line.
        with self._lock:
            with open(self.path, "r+b") as f:
                f.truncate(size)
                f.flush()
                os.fsync(f.fileno())

    def _append(self, rec: dict) -> None:
        line = json.dumps(rec, separators=(",", ":"), sort_keys=True) + "\n"
        try:
            with self._lock:
                p = Path(self.path)
                p.parent.mkdir(parents=True, exist_ok=True)
                with open(p, "a", encoding="utf-8") as f:
                    f.write(line)
                    f.flush()
                    os.fsync(f.fileno())
        except OSError as e:
            raise sch_error(
                SCH_E_STATE_STORAGE,
                "journal write failed",
                retryable=True,
                http_status=503,
                error=str(e),
            ) from e

    def write_genesis(self, genesis: GenesisRecord) -> None:
        if self.exists():
            raise sch_error(SCH_E_STATE_MISMATCH, "journal already initialized", http_status=500)
        self._append(
            {
                "kind": "genesis",
                "signer": checksum_address(genesis.signer),
                "chain_id": int(genesis.chain_id),
                "subject": checksum_address(genesis.subject),
                "reference_timestamp": int(genesis.reference_timestamp),
            }
        )

    def append_execution(self, record: ExecutionRecord) -> None:
        self._append(
            {
                "kind": "execution",
                "digest": "0x" + record.digest.hex(),
                "nonce": int(record.nonce),
                "reference_timestamp": int(record.reference_timestamp),
                "ts_utc": record.ts_utc or _now_utc_iso(),
            }
        )
