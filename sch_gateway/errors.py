"""Stable error taxonomy for the SCH gateway.

This module defines machine-readable error codes and a single exception type
used across the authorizer, the HTTP surface and the CLI.

Design goals:
- Stable `code` string suitable for programmatic handling.
- Optional `retryable` flag and `http_status` for transport layers.
- Structured `details` for debugging without parsing messages.

The three error kinds of the authorization core have their own subclasses so
callers can catch them directly:

- MalformedSignature: the signature does not decode to (r, s, v).
- InvalidSignature: wrong signer OR already-consumed digest. The two causes
  share one code and one message.
- OverflowFault: uint256 arithmetic would wrap.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict


# Authorization core
SCH_E_MALFORMED_SIGNATURE = "SCH_E_MALFORMED_SIGNATURE"
SCH_E_INVALID_SIGNATURE = "SCH_E_INVALID_SIGNATURE"
SCH_E_OVERFLOW = "SCH_E_OVERFLOW"

# Inputs / configuration
SCH_E_BAD_REQUEST = "SCH_E_BAD_REQUEST"
SCH_E_CONFIG = "SCH_E_CONFIG"

# Durable state
SCH_E_STATE_STORAGE = "SCH_E_STATE_STORAGE"
SCH_E_STATE_MISMATCH = "SCH_E_STATE_MISMATCH"

# Transport
SCH_E_AUTH_REQUIRED = "SCH_E_AUTH_REQUIRED"

# Fixed text for every InvalidSignature, whichever check rejected it.
INVALID_SIGNATURE_MESSAGE = "signature does not authorize the current digest"


@dataclass
class SCHError(Exception):
    """Base SCH exception with stable error code."""

    code: str
    message: str
    retryable: bool = False
    http_status: int = 400
    details: Dict[str, Any] = field(default_factory=dict)

    def as_dict(self) -> Dict[str, Any]:
        d: Dict[str, Any] = {
            "code": self.code,
            "message": self.message,
            "retryable": bool(self.retryable),
            "http_status": int(self.http_status),
        }
        if self.details:
            d["details"] = self.details
        return d

    def __str__(self) -> str:
        return f"{self.code}: {self.message}"


@dataclass
class MalformedSignature(SCHError):
    code: str = SCH_E_MALFORMED_SIGNATURE
    message: str = "signature is malformed"
    http_status: int = 400


@dataclass
class InvalidSignature(SCHError):
    code: str = SCH_E_INVALID_SIGNATURE
    message: str = INVALID_SIGNATURE_MESSAGE
    http_status: int = 403


@dataclass
class OverflowFault(SCHError):
    code: str = SCH_E_OVERFLOW
    message: str = "integer arithmetic out of uint256 range"
    http_status: int = 500


def sch_error(
    code: str,
    message: str,
    *,
    retryable: bool = False,
    http_status: int = 400,
    **details: Any,
) -> SCHError:
    return SCHError(code=code, message=message, retryable=retryable, http_status=http_status, details=details)
