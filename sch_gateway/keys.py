"""
Signer key management (secp256k1).

The gateway itself never holds the designated signer's private key. These
helpers are for the signer side: generating a key, storing it with strict
permissions and loading it back for the in-process signer.

Key file formats accepted on load:
- PKCS#8 / SEC1 PEM of a secp256k1 private key (what ``generate_key_file`` writes)
- 64 hex characters (optionally 0x-prefixed)
"""

from __future__ import annotations

import logging
import os
import stat
from pathlib import Path
from typing import Optional

from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric import ec
from eth_account import Account

from .crypto import SECP256K1_N
from .errors import SCH_E_CONFIG, sch_error

logger = logging.getLogger("sch_gateway.keys")

ENV_SIGNER_PRIVATE_KEY = "SCH_SIGNER_PRIVATE_KEY"
ENV_SIGNER_KEY_FILE = "SCH_SIGNER_KEY_FILE"

PRIVATE_KEY_SIZE = 32


def generate_private_key() -> bytes:
    """Fresh 32-byte secp256k1 private scalar."""
    key = ec.generate_private_key(ec.SECP256K1())
    return key.private_numbers().private_value.to_bytes(PRIVATE_KEY_SIZE, "big")


def private_key_to_pem(private_key: bytes) -> bytes:
    key = ec.derive_private_key(int.from_bytes(private_key, "big"), ec.SECP256K1())
    return key.private_bytes(
        encoding=serialization.Encoding.PEM,
        format=serialization.PrivateFormat.PKCS8,
        encryption_algorithm=serialization.NoEncryption(),
    )


def parse_private_key(data: bytes) -> bytes:
    """Parse PEM or hex key material into the 32-byte private scalar."""
    text = data.strip()
    if text.startswith(b"-----BEGIN"):
        try:
            key = serialization.load_pem_private_key(text, password=None)
        except (ValueError, TypeError) as e:
            raise sch_error(SCH_E_CONFIG, "signer key PEM could not be parsed", http_status=500) from e
        if not isinstance(key, ec.EllipticCurvePrivateKey) or not isinstance(key.curve, ec.SECP256K1):
            raise sch_error(SCH_E_CONFIG, "signer key must be a secp256k1 EC key", http_status=500)
        return key.private_numbers().private_value.to_bytes(PRIVATE_KEY_SIZE, "big")

    s = text.decode("ascii", errors="replace")
    if s[:2].lower() == "0x":
        s = s[2:]
    if len(s) != 2 * PRIVATE_KEY_SIZE:
        raise sch_error(
            SCH_E_CONFIG,
            f"signer key must be {2 * PRIVATE_KEY_SIZE} hex chars ({PRIVATE_KEY_SIZE} bytes)",
            http_status=500,
            got=len(s),
        )
    try:
        key = bytes.fromhex(s)
    except ValueError as e:
        raise sch_error(SCH_E_CONFIG, "signer key is not valid hex", http_status=500) from e
    if not 1 <= int.from_bytes(key, "big") < SECP256K1_N:
        raise sch_error(SCH_E_CONFIG, "signer key is not a valid secp256k1 scalar", http_status=500)
    return key


def address_from_private_key(private_key: bytes) -> str:
    return Account.from_key(private_key).address


def generate_key_file(path: str) -> str:
    """
    Generate a new signer key and write it as PEM with 0600 permissions.

    Refuses to overwrite an existing file. Returns the signer address.
    """
    key = generate_private_key()
    key_path = Path(path)
    key_path.parent.mkdir(parents=True, exist_ok=True)

    # Create file with restricted permissions from the start
    fd = os.open(str(key_path), os.O_WRONLY | os.O_CREAT | os.O_EXCL, 0o600)
    try:
        os.write(fd, private_key_to_pem(key))
    finally:
        os.close(fd)

    address = address_from_private_key(key)
    logger.info("Generated signer key %s at %s", address, key_path)
    return address


def load_private_key_from_file(path: str, require_strict_permissions: bool = True) -> bytes:
    """
    Load a signer key from file with permission checks.

    Files readable by group or others are refused (run ``chmod 600``).
    """
    key_path = Path(path)
    if not key_path.exists():
        raise sch_error(SCH_E_CONFIG, "signer key file not found", http_status=500, path=str(key_path))

    if require_strict_permissions and os.name == "posix":
        mode = key_path.stat().st_mode
        if mode & (stat.S_IRWXG | stat.S_IRWXO):
            raise sch_error(
                SCH_E_CONFIG,
                f"signer key file has insecure permissions {oct(mode & 0o777)}; expected 0600",
                http_status=500,
                path=str(key_path),
            )

    return parse_private_key(key_path.read_bytes())


def load_private_key_from_env(env_var: str = ENV_SIGNER_PRIVATE_KEY) -> Optional[bytes]:
    raw = (os.getenv(env_var, "") or "").strip()
    if not raw:
        return None
    return parse_private_key(raw.encode("ascii", errors="replace"))


def load_private_key(
    env_var: str = ENV_SIGNER_PRIVATE_KEY,
    file_path: Optional[str] = None,
    file_env: str = ENV_SIGNER_KEY_FILE,
) -> Optional[bytes]:
    """
    Load the signer key with a fallback chain.

    Priority:
    1. Hex key in ``env_var`` (containers/CI)
    2. ``file_path``, or the path in ``file_env``
    """
    key = load_private_key_from_env(env_var)
    if key is not None:
        return key
    path = file_path or (os.getenv(file_env, "") or "").strip()
    if path:
        return load_private_key_from_file(path)
    return None
