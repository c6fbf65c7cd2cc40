"""Relayer authentication for the SCH gateway write surface.

Anyone holding a valid signature may submit it; the signature alone decides
whether the action is authorized. API keys only decide which relayers may
reach ``POST /v1/execute`` at all, and give their submissions a stable
identity in logs.

If no mapping is configured, the write surface is open.

Env vars:
  - SCH_API_KEYS_JSON: JSON dict mapping api_key -> relayer_id
  - SCH_API_KEYS_FILE: path to a JSON file with the same mapping
"""

from __future__ import annotations

import hmac
import json
import os
from dataclasses import dataclass
from typing import Dict, Optional, Tuple

ENV_API_KEYS_JSON = "SCH_API_KEYS_JSON"
ENV_API_KEYS_FILE = "SCH_API_KEYS_FILE"


@dataclass(frozen=True)
class RelayerContext:
    """Resolved relayer identity."""

    relayer_id: Optional[str]
    authenticated: bool
    error: Optional[str] = None


@dataclass(frozen=True)
class ApiKeyAuth:
    """API key authentication config."""

    api_key_to_relayer: Dict[str, str]
    configured: bool = False
    config_error: Optional[str] = None

    @classmethod
    def load_from_env(cls) -> "ApiKeyAuth":
        """Load API key mapping from env/file.

        If configuration is *present* but malformed, the instance carries
        config_error so every request fails closed.
        """
        mapping: Dict[str, str] = {}
        configured = False
        config_error: Optional[str] = None

        raw_json = os.getenv(ENV_API_KEYS_JSON)
        file_path = os.getenv(ENV_API_KEYS_FILE)

        if raw_json or file_path:
            configured = True

        try:
            if raw_json:
                data = json.loads(raw_json)
                if not isinstance(data, dict):
                    raise ValueError("SCH_API_KEYS_JSON must be a JSON object")
                mapping = {str(k): str(v) for k, v in data.items()}
            elif file_path:
                with open(file_path, "r", encoding="utf-8") as f:
                    data = json.load(f)
                if not isinstance(data, dict):
                    raise ValueError("SCH_API_KEYS_FILE must contain a JSON object")
                mapping = {str(k): str(v) for k, v in data.items()}
        except (OSError, ValueError):
            config_error = "API_KEY_CONFIG_INVALID"
            mapping = {}

        return cls(api_key_to_relayer=mapping, configured=configured, config_error=config_error)

    def enabled(self) -> bool:
        return self.configured

    def _lookup(self, api_key: str) -> Optional[str]:
        # Constant-time comparison against every configured key.
        found: Optional[str] = None
        for k, relayer in self.api_key_to_relayer.items():
            if hmac.compare_digest(k.encode("utf-8"), api_key.encode("utf-8")):
                found = relayer
        return found

    def resolve_identity(self, api_key: Optional[str]) -> Tuple[Optional[str], Optional[str]]:
        """Returns (relayer_id, error). If error is not None, reject the request."""
        if self.config_error:
            return None, self.config_error

        if not self.enabled():
            return None, None

        if not api_key:
            return None, "API_KEY_REQUIRED"

        relayer_id = self._lookup(api_key)
        if not relayer_id:
            return None, "API_KEY_INVALID"
        return relayer_id, None

    def resolve_context(self, api_key: Optional[str]) -> RelayerContext:
        relayer_id, err = self.resolve_identity(api_key)
        if err:
            return RelayerContext(relayer_id=None, authenticated=False, error=err)
        return RelayerContext(relayer_id=relayer_id, authenticated=relayer_id is not None)
