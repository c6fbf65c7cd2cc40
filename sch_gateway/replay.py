"""Replay guard: the set of digests that have already been executed.

Membership means "may never be executed again", independent of nonce or
window. Entries are never evicted.

The guard is not locked on its own; it lives inside AuthorizationState and is
only mutated under the Authorizer's lock.
"""

from __future__ import annotations

from typing import Iterable, Iterator, Set, Union

from .digest import coerce_digest


class ReplayGuard:
    def __init__(self, consumed: Iterable[bytes] = ()):
        self._consumed: Set[bytes] = {coerce_digest(d) for d in consumed}

    def is_consumed(self, digest: Union[str, bytes]) -> bool:
        return coerce_digest(digest) in self._consumed

    def mark_consumed(self, digest: Union[str, bytes]) -> None:
        # Idempotent; orchestration never marks the same digest twice.
        self._consumed.add(coerce_digest(digest))

    def __contains__(self, digest: object) -> bool:
        if not isinstance(digest, (str, bytes, bytearray)):
            return False
        return self.is_consumed(digest)

    def __len__(self) -> int:
        return len(self._consumed)

    def __iter__(self) -> Iterator[bytes]:
        return iter(sorted(self._consumed))

    def snapshot(self) -> frozenset:
        return frozenset(self._consumed)
