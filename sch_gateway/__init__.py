"""SCH Gateway package.

Time-windowed single-signer authorization ("signature changing hash"):

- A deterministic digest binds (subject, chain id, nonce, window start)
- Only the designated signer can produce a signature that authorizes it
- The digest rotates every 120 seconds, so one pre-signed authorization can be
  relayed at any point inside its window
- A nonce and a consumed-digest set prevent replay across and within windows

Convenience imports
------------------
The package intentionally avoids heavy import-time side effects. For convenience,
these are available as top-level imports:

    from sch_gateway import Authorizer, create_app

Core helpers are also re-exported:

    from sch_gateway import authorization_digest, window_start, SignatureVerifier

All of the above are loaded lazily.
"""

from __future__ import annotations

import re
from importlib import import_module
from pathlib import Path
from typing import Any


def _read_version_from_pyproject() -> str | None:
    """Best-effort version discovery for dev/test environments.

    The project version is a simple `version = "..."` field in
    `pyproject.toml`, so a regex parse is enough.
    """

    try:
        pyproject = Path(__file__).resolve().parents[1] / "pyproject.toml"
        txt = pyproject.read_text(encoding="utf-8")
        m = re.search(r"^version\s*=\s*\"([^\"]+)\"\s*$", txt, flags=re.MULTILINE)
        return m.group(1) if m else None
    except OSError:
        return None


# Prefer repo-local pyproject version (tests), otherwise a hardcoded default.
__version__ = (
    _read_version_from_pyproject()
    or "0.4.0"
)

# Public symbols we want to make available at the package root.
__all__ = [
    "__version__",
    "Authorizer",
    "AuthorizationState",
    "ExecutionReceipt",
    "create_app",
    "authorization_digest",
    "window_start",
    "WINDOW_SECONDS",
    "SignatureVerifier",
    "ReplayGuard",
    "SCHError",
    "MalformedSignature",
    "InvalidSignature",
    "OverflowFault",
]

# Lazy export map: name -> (module, attribute)
_LAZY_EXPORTS: dict[str, tuple[str, str]] = {
    "Authorizer": ("sch_gateway.state", "Authorizer"),
    "AuthorizationState": ("sch_gateway.state", "AuthorizationState"),
    "ExecutionReceipt": ("sch_gateway.state", "ExecutionReceipt"),
    "create_app": ("sch_gateway.server", "create_app"),
    "authorization_digest": ("sch_gateway.digest", "authorization_digest"),
    "window_start": ("sch_gateway.window", "window_start"),
    "WINDOW_SECONDS": ("sch_gateway.window", "WINDOW_SECONDS"),
    "SignatureVerifier": ("sch_gateway.crypto", "SignatureVerifier"),
    "ReplayGuard": ("sch_gateway.replay", "ReplayGuard"),
    "SCHError": ("sch_gateway.errors", "SCHError"),
    "MalformedSignature": ("sch_gateway.errors", "MalformedSignature"),
    "InvalidSignature": ("sch_gateway.errors", "InvalidSignature"),
    "OverflowFault": ("sch_gateway.errors", "OverflowFault"),
}


def __getattr__(name: str) -> Any:
    if name in _LAZY_EXPORTS:
        module_name, attr = _LAZY_EXPORTS[name]
        module = import_module(module_name)
        value = getattr(module, attr)
        # Cache the resolved attribute on the module for faster future access.
        globals()[name] = value
        return value
    raise AttributeError(f"module 'sch_gateway' has no attribute {name!r}")


def __dir__() -> list[str]:
    return sorted(set(list(globals().keys()) + list(_LAZY_EXPORTS.keys())))
