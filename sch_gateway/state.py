"""
Authorization state and execution orchestration.

AuthorizationState is the one mutable record of the scheme: the designated
signer, the chain identifier, the subject bound into every digest, the nonce,
the reference timestamp and the consumed-digest set. It is owned by exactly
one Authorizer, which serializes every mutation behind a single lock.

Execution (``Authorizer.execute``):

    1. w = window_start(now, reference_timestamp, 120)
    2. d = digest(subject, chain_id, nonce, w)
    3. signer = recover_signer(d, signature)
    4. reject if signer != designated signer         -> InvalidSignature
    5. reject if d was already consumed               -> InvalidSignature
    6. journal, then commit: consume d, nonce += 1, reference_timestamp = w
    7. run the protected action (if any)

Steps 4 and 5 raise the same error with the same message. The commit happens
before the protected action, and a failing action does not roll it back: the
authorization is spent either way.
"""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass, replace
from typing import Any, Callable, Dict, Optional, Union

from .crypto import SignatureLike, SignatureVerifier
from .digest import AddressLike, authorization_digest, canonical_address, checksum_address, coerce_digest
from .errors import (
    SCH_E_STATE_MISMATCH,
    InvalidSignature,
    MalformedSignature,
    OverflowFault,
    SCHError,
    sch_error,
)
from .journal import AuthorizationJournal, ExecutionRecord, GenesisRecord
from .metrics import record_action_failure, record_execution, set_nonce
from .replay import ReplayGuard
from .window import WINDOW_SECONDS, Clock, checked_add, coerce_clock, require_uint256, window_start

logger = logging.getLogger("sch_gateway")

# Protected action hook: called with the receipt of the committed execution.
ProtectedAction = Callable[["ExecutionReceipt"], Any]


class AuthorizationState:
    """The authoritative record. Identity fields are fixed at construction."""

    def __init__(
        self,
        *,
        signer: AddressLike,
        chain_id: int,
        subject: AddressLike,
        reference_timestamp: int,
        nonce: int = 0,
        replay_guard: Optional[ReplayGuard] = None,
    ):
        self._signer = checksum_address(signer, "signer")
        self._chain_id = require_uint256(chain_id, "chain_id")
        self._subject = checksum_address(subject, "subject")
        self._reference_timestamp = require_uint256(reference_timestamp, "reference_timestamp")
        self._nonce = require_uint256(nonce, "nonce")
        self._replay_guard = replay_guard if replay_guard is not None else ReplayGuard()

    @property
    def signer(self) -> str:
        return self._signer

    @property
    def chain_id(self) -> int:
        return self._chain_id

    @property
    def subject(self) -> str:
        return self._subject

    @property
    def nonce(self) -> int:
        return self._nonce

    @property
    def reference_timestamp(self) -> int:
        return self._reference_timestamp

    @property
    def replay_guard(self) -> ReplayGuard:
        return self._replay_guard

    def commit(self, digest: bytes, new_nonce: int, new_reference_timestamp: int) -> None:
        """Apply one successful execution. Callers hold the owning Authorizer's lock."""
        self._replay_guard.mark_consumed(digest)
        self._nonce = new_nonce
        self._reference_timestamp = new_reference_timestamp


@dataclass(frozen=True)
class StateSnapshot:
    signer: str
    chain_id: int
    subject: str
    nonce: int
    reference_timestamp: int
    consumed_count: int
    window_seconds: int = WINDOW_SECONDS

    def to_dict(self) -> Dict[str, Any]:
        return {
            "signer": self.signer,
            "chain_id": self.chain_id,
            "subject": self.subject,
            "nonce": self.nonce,
            "reference_timestamp": self.reference_timestamp,
            "window_seconds": self.window_seconds,
            "consumed_count": self.consumed_count,
        }


@dataclass(frozen=True)
class CurrentAuthorization:
    """One consistent view of what must be signed right now."""
    now: int
    nonce: int
    window_start: int
    digest: bytes

    @property
    def window_end(self) -> int:
        return self.window_start + WINDOW_SECONDS


@dataclass(frozen=True)
class ExecutionReceipt:
    """Result of a committed execution."""
    digest: bytes
    nonce: int
    new_nonce: int
    window_start: int
    signer: str
    executed_at: int
    action_result: Any = None

    @property
    def digest_hex(self) -> str:
        return "0x" + self.digest.hex()

    def to_dict(self) -> Dict[str, Any]:
        return {
            "digest": self.digest_hex,
            "nonce": self.nonce,
            "new_nonce": self.new_nonce,
            "window_start": self.window_start,
            "signer": self.signer,
            "executed_at": self.executed_at,
        }


class Authorizer:
    """Single writer over one AuthorizationState.

    Queries and ``execute`` share one re-entrant lock, so a query never sees a
    half-applied execution, and a protected action that calls back into the
    authorizer sees the already committed state.
    """

    def __init__(
        self,
        state: AuthorizationState,
        *,
        clock: Optional[Clock] = None,
        journal: Optional[AuthorizationJournal] = None,
        verifier: Optional[SignatureVerifier] = None,
        action: Optional[ProtectedAction] = None,
    ):
        self._state = state
        self._clock = coerce_clock(clock)
        self._journal = journal
        self._verifier = verifier or SignatureVerifier()
        self._action = action
        self._lock = threading.RLock()
        set_nonce(state.nonce)

    @classmethod
    def open(
        cls,
        *,
        signer: AddressLike,
        chain_id: int,
        subject: AddressLike,
        clock: Optional[Clock] = None,
        journal: Optional[AuthorizationJournal] = None,
        verifier: Optional[SignatureVerifier] = None,
        action: Optional[ProtectedAction] = None,
    ) -> "Authorizer":
        """Create a fresh authorizer, or restore one from its journal.

        A fresh authorizer anchors its reference timestamp at the current time.
        A journal written for a different signer, chain or subject is refused.
        """
        clock = coerce_clock(clock)
        signer_cs = checksum_address(signer, "signer")
        subject_cs = checksum_address(subject, "subject")
        require_uint256(chain_id, "chain_id")

        contents = journal.load() if journal is not None else None
        if contents is not None and contents.genesis is not None:
            g = contents.genesis
            if (
                canonical_address(g.signer) != canonical_address(signer_cs)
                or int(g.chain_id) != int(chain_id)
                or canonical_address(g.subject) != canonical_address(subject_cs)
            ):
                raise sch_error(
                    SCH_E_STATE_MISMATCH,
                    "journal belongs to a different signer, chain or subject",
                    http_status=500,
                    path=journal.path,
                )
            state = AuthorizationState(
                signer=signer_cs,
                chain_id=chain_id,
                subject=subject_cs,
                reference_timestamp=g.reference_timestamp,
            )
            for rec in contents.executions:
                state.commit(rec.digest, rec.nonce, rec.reference_timestamp)
            logger.info(
                "Restored authorization state from %s (nonce=%d, consumed=%d)",
                journal.path,
                state.nonce,
                len(state.replay_guard),
            )
        else:
            state = AuthorizationState(
                signer=signer_cs,
                chain_id=chain_id,
                subject=subject_cs,
                reference_timestamp=clock.now(),
            )
            if journal is not None:
                journal.write_genesis(
                    GenesisRecord(
                        signer=state.signer,
                        chain_id=state.chain_id,
                        subject=state.subject,
                        reference_timestamp=state.reference_timestamp,
                    )
                )
        return cls(state, clock=clock, journal=journal, verifier=verifier, action=action)

    # ---------------------------
    # Read surface
    # ---------------------------

    @property
    def signer(self) -> str:
        return self._state.signer

    @property
    def chain_id(self) -> int:
        return self._state.chain_id

    @property
    def subject(self) -> str:
        return self._state.subject

    @property
    def nonce(self) -> int:
        with self._lock:
            return self._state.nonce

    @property
    def reference_timestamp(self) -> int:
        with self._lock:
            return self._state.reference_timestamp

    def now(self) -> int:
        return self._clock.now()

    def current_window_start(self) -> int:
        with self._lock:
            return window_start(self._clock.now(), self._state.reference_timestamp, WINDOW_SECONDS)

    def digest_for(self, nonce: int, window_start_value: int) -> bytes:
        """Digest for an explicit (nonce, window) pair under this authorizer's identity."""
        return authorization_digest(self._state.subject, self._state.chain_id, nonce, window_start_value)

    def current_digest(self) -> bytes:
        """The digest the designated signer must sign right now."""
        with self._lock:
            w = window_start(self._clock.now(), self._state.reference_timestamp, WINDOW_SECONDS)
            return self.digest_for(self._state.nonce, w)

    def current(self) -> CurrentAuthorization:
        with self._lock:
            now = self._clock.now()
            w = window_start(now, self._state.reference_timestamp, WINDOW_SECONDS)
            return CurrentAuthorization(
                now=now,
                nonce=self._state.nonce,
                window_start=w,
                digest=self.digest_for(self._state.nonce, w),
            )

    def is_consumed(self, digest: Union[str, bytes]) -> bool:
        with self._lock:
            return self._state.replay_guard.is_consumed(coerce_digest(digest))

    def would_verify(self, signature: SignatureLike) -> bool:
        """Whether ``execute(signature)`` would be accepted now. Never mutates.

        Raises MalformedSignature for bad encodings.
        """
        with self._lock:
            try:
                self._check(signature)
            except InvalidSignature:
                return False
            return True

    def snapshot(self) -> StateSnapshot:
        with self._lock:
            s = self._state
            return StateSnapshot(
                signer=s.signer,
                chain_id=s.chain_id,
                subject=s.subject,
                nonce=s.nonce,
                reference_timestamp=s.reference_timestamp,
                consumed_count=len(s.replay_guard),
            )

    # ---------------------------
    # Write surface
    # ---------------------------

    def _check(self, signature: SignatureLike):
        """Steps 1-5. Returns (now, window_start, digest, signer); caller holds the lock."""
        s = self._state
        now = self._clock.now()
        w = window_start(now, s.reference_timestamp, WINDOW_SECONDS)
        d = authorization_digest(s.subject, s.chain_id, s.nonce, w)
        recovered = self._verifier.recover_signer(d, signature)
        if canonical_address(recovered) != canonical_address(s.signer):
            raise InvalidSignature()
        if s.replay_guard.is_consumed(d):
            raise InvalidSignature()
        return now, w, d, recovered

    def execute(self, signature: SignatureLike, action: Optional[ProtectedAction] = None) -> ExecutionReceipt:
        """Verify ``signature`` against the current digest and, if valid, spend it.

        ``action`` overrides the authorizer's protected action for this call.
        """
        with self._lock:
            try:
                now, w, d, recovered = self._check(signature)
                s = self._state
                new_nonce = checked_add(s.nonce, 1)
                if self._journal is not None:
                    self._journal.append_execution(
                        ExecutionRecord(digest=d, nonce=new_nonce, reference_timestamp=w)
                    )
                receipt = ExecutionReceipt(
                    digest=d,
                    nonce=s.nonce,
                    new_nonce=new_nonce,
                    window_start=w,
                    signer=recovered,
                    executed_at=now,
                )
                s.commit(d, new_nonce, w)
            except InvalidSignature:
                record_execution("invalid_signature")
                logger.warning("Execution rejected: invalid signature")
                raise
            except MalformedSignature as e:
                record_execution("malformed_signature")
                logger.warning("Execution rejected: %s", e)
                raise
            except OverflowFault as e:
                record_execution("overflow")
                logger.error("Execution aborted: %s", e)
                raise
            except SCHError as e:
                record_execution("storage")
                logger.error("Execution aborted before commit: %s", e)
                raise

            record_execution("ok")
            set_nonce(new_nonce)
            logger.info(
                "Execution committed (nonce %d -> %d, window_start=%d, digest=%s)",
                receipt.nonce,
                receipt.new_nonce,
                receipt.window_start,
                receipt.digest_hex[:18],
            )

            hook = action if action is not None else self._action
            if hook is None:
                return receipt
            try:
                result = hook(receipt)
            except Exception:
                record_action_failure()
                logger.warning(
                    "Protected action failed after commit; authorization nonce %d is spent",
                    receipt.nonce,
                )
                raise
            return replace(receipt, action_result=result)
