"""
sch_gateway.signing: signing backends for the designated signer.

The authorizer only verifies. Whoever holds the signer key uses one of these
backends to sign the current digest out-of-band and hands the signature to a
relayer:

- LocalKeySigner: in-process signing with a secp256k1 key (dev/testing).
- ExternalCommandSigner: delegates signing to an external command, so the
  private key can stay in a TPM/HSM/enclave/daemon.

Contract for ExternalCommandSigner:
- stdin: 0x-hex(digest) followed by a newline
- stdout: 0x-hex(65-byte signature r||s||v over the EIP-191 framed digest)

All modes are fail-closed: any signer error prevents issuance, and a signature
that does not recover to the signer's address is never returned.
"""

from __future__ import annotations

import os
import shlex
import subprocess
from dataclasses import dataclass, field
from typing import Any, Protocol, runtime_checkable

from eth_account import Account

from .crypto import SIGNATURE_SIZE, SignatureVerifier
from .digest import checksum_address, coerce_digest, signable_digest


@runtime_checkable
class Signer(Protocol):
    """Protocol implemented by signing backends."""

    @property
    def address(self) -> str: ...

    def sign_digest(self, digest: bytes) -> bytes: ...


@dataclass
class LocalKeySigner:
    """Signer that holds a secp256k1 private key in-process."""
    private_key: bytes = field(repr=False)

    def __post_init__(self) -> None:
        if len(self.private_key) != 32:
            raise ValueError(f"private key must be 32 bytes, got {len(self.private_key)}")
        self._account = Account.from_key(self.private_key)

    @property
    def address(self) -> str:
        return self._account.address

    def sign_digest(self, digest: bytes) -> bytes:
        signed = self._account.sign_message(signable_digest(coerce_digest(digest)))
        return bytes(signed.signature)


def _run_external_signer_cmd(*, signing_cmd: str, digest: bytes, timeout_seconds: float) -> bytes:
    """Run an external signer command for one digest."""
    if not signing_cmd or not str(signing_cmd).strip():
        raise ValueError("External signer requires signing_cmd")
    try:
        proc = subprocess.run(
            shlex.split(str(signing_cmd)),
            input=("0x" + digest.hex() + "\n").encode("ascii"),
            stdout=subprocess.PIPE,
            stderr=subprocess.PIPE,
            timeout=float(timeout_seconds),
            check=False,
        )
    except subprocess.TimeoutExpired as e:
        raise RuntimeError(f"External signer timed out after {timeout_seconds}s") from e
    except OSError as e:
        raise RuntimeError(f"External signer failed to execute: {e}") from e

    if proc.returncode != 0:
        err = (proc.stderr or b"").decode("utf-8", errors="ignore").strip()
        raise RuntimeError(f"External signer returned code {proc.returncode}: {err}")

    out = (proc.stdout or b"").decode("utf-8", errors="ignore").strip()
    if out[:2].lower() == "0x":
        out = out[2:]
    try:
        sig = bytes.fromhex(out)
    except ValueError as e:
        raise RuntimeError("External signer output was not valid hex(signature)") from e

    if len(sig) != SIGNATURE_SIZE:
        raise RuntimeError(f"External signer returned invalid signature length: {len(sig)} bytes")
    return sig


@dataclass
class ExternalCommandSigner:
    """Signer that delegates to an external signing command.

    This is a "hard-key seam": private keys can live outside the Python process.
    """
    address: str
    signing_cmd: str
    timeout_seconds: float = 2.0

    def __post_init__(self) -> None:
        self.address = checksum_address(self.address, "address")

    def sign_digest(self, digest: bytes) -> bytes:
        d = coerce_digest(digest)
        sig = _run_external_signer_cmd(
            signing_cmd=self.signing_cmd,
            digest=d,
            timeout_seconds=self.timeout_seconds,
        )
        if not SignatureVerifier().verify(d, sig, self.address):
            raise RuntimeError("External signer produced a signature for a different key")
        return sig


def coerce_signer(obj: Any) -> Signer:
    """Coerce a supported object into a Signer."""
    if obj is None:
        raise TypeError("signer is None")
    if isinstance(obj, (bytes, bytearray)):
        return LocalKeySigner(bytes(obj))
    if isinstance(obj, Signer):
        return obj
    raise TypeError(f"Unsupported signer type: {type(obj)}")


FILE_MODES = ("file", "inproc", "in-process", "software")
EXTERNAL_MODES = ("external", "cmd", "command")


def signer_mode_from_env(mode_env: str = "SIGNER_MODE") -> str:
    """Normalized signer mode: "file", "external", or the unrecognized raw value."""
    mode = (os.getenv(mode_env, "") or "file").strip().lower()
    if mode in FILE_MODES:
        return "file"
    if mode in EXTERNAL_MODES:
        return "external"
    return mode


def build_signer_from_env(
    base_signer: Any,
    *,
    mode_env: str = "SIGNER_MODE",
    cmd_env: str = "SIGNER_CMD",
    timeout_env: str = "SIGNER_TIMEOUT_SECONDS",
) -> Signer:
    """Build a signer based on environment configuration.

    - SIGNER_MODE=file (default): use base_signer as-is.
    - SIGNER_MODE=external: use ExternalCommandSigner with SIGNER_CMD.
      The expected address is taken from base_signer, which may then be just
      an address string.
    """
    mode = signer_mode_from_env(mode_env)

    if mode == "file":
        return coerce_signer(base_signer)

    if mode == "external":
        cmd = (os.getenv(cmd_env, "") or "").strip()
        if not cmd:
            raise RuntimeError(f"{cmd_env} must be set when {mode_env}=external")
        tout = (os.getenv(timeout_env, "") or "").strip()
        timeout = 2.0
        if tout:
            try:
                timeout = float(tout)
            except ValueError:
                raise RuntimeError(f"{timeout_env} must be a number (seconds)")
        address = base_signer if isinstance(base_signer, str) else coerce_signer(base_signer).address
        return ExternalCommandSigner(address=address, signing_cmd=cmd, timeout_seconds=timeout)

    raise RuntimeError(f"Unsupported {mode_env}={mode!r}; expected file|external")
