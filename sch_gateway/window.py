"""Window clock: time windows and checked uint256 arithmetic.

A window is a fixed-length interval during which the authorization digest is
constant. Boundaries are anchored at the reference timestamp:

    window_start = reference + ((now - reference) // length) * length

All arithmetic is unsigned 256-bit. Anything that would leave that range
(including ``now < reference``) raises OverflowFault instead of wrapping.
"""

from __future__ import annotations

import threading
import time
from typing import Optional, Protocol, runtime_checkable

from .errors import OverflowFault

UINT256_MAX = 2**256 - 1

# Window length in seconds. Fixed for this scheme.
WINDOW_SECONDS = 120


def require_uint256(value: int, name: str = "value") -> int:
    """Return ``value`` if it is an int in [0, 2**256 - 1], else raise OverflowFault."""
    if not isinstance(value, int) or isinstance(value, bool):
        raise TypeError(f"{name} must be an int, got {type(value).__name__}")
    if value < 0 or value > UINT256_MAX:
        raise OverflowFault(details={"field": name})
    return value


def checked_add(a: int, b: int) -> int:
    require_uint256(a, "a")
    require_uint256(b, "b")
    out = a + b
    if out > UINT256_MAX:
        raise OverflowFault(message="uint256 addition overflow")
    return out


def checked_sub(a: int, b: int) -> int:
    require_uint256(a, "a")
    require_uint256(b, "b")
    if b > a:
        raise OverflowFault(message="uint256 subtraction underflow")
    return a - b


def checked_mul(a: int, b: int) -> int:
    require_uint256(a, "a")
    require_uint256(b, "b")
    out = a * b
    if out > UINT256_MAX:
        raise OverflowFault(message="uint256 multiplication overflow")
    return out


def window_start(now: int, reference_timestamp: int, window_length: int = WINDOW_SECONDS) -> int:
    """Most recent window boundary at or before ``now``, anchored at ``reference_timestamp``.

    Guarantees ``result <= now`` and ``result % window_length == reference_timestamp % window_length``.
    """
    require_uint256(window_length, "window_length")
    if window_length == 0:
        raise ValueError("window_length must be positive")
    elapsed = checked_sub(now, reference_timestamp)
    return checked_add(reference_timestamp, checked_mul(elapsed // window_length, window_length))


# ---------------------------
# Time sources
# ---------------------------


@runtime_checkable
class Clock(Protocol):
    """A non-decreasing source of integer seconds."""

    def now(self) -> int: ...


class SystemClock:
    """Wall clock in whole seconds, clamped so it never moves backwards.

    A wall-clock step backwards (NTP correction, manual change) is reported as
    the last value already handed out.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._last = 0

    def now(self) -> int:
        t = int(time.time())
        with self._lock:
            if t < self._last:
                return self._last
            self._last = t
            return t


class ManualClock:
    """Clock driven explicitly by the caller (tests, simulations, replays)."""

    def __init__(self, start: int = 0):
        self._now = require_uint256(int(start), "start")

    def now(self) -> int:
        return self._now

    def advance(self, seconds: int) -> int:
        self._now = checked_add(self._now, int(seconds))
        return self._now

    def set(self, value: int) -> None:
        # Allowed to go backwards so clock manipulation can be exercised.
        self._now = require_uint256(int(value), "value")


def coerce_clock(clock: Optional[Clock]) -> Clock:
    if clock is None:
        return SystemClock()
    if not isinstance(clock, Clock):
        raise TypeError(f"Unsupported clock type: {type(clock)}")
    return clock
