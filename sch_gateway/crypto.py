"""
SCH Signature Verification

secp256k1 ECDSA public-key recovery over EIP-191 framed digests.

The gateway holds no private keys. It only knows the designated signer's
address, and it accepts a signature iff the address recovered from
(digest, signature) equals that address.

Signature encoding (65 bytes): r[32] || s[32] || v[1]
- v in {27, 28}; {0, 1} is accepted and normalized
- 1 <= r < n
- 1 <= s <= n/2 (low-s only; the high-s twin of a valid signature is rejected)

Shape violations raise MalformedSignature. A well-shaped signature from which
no public key can be recovered raises InvalidSignature from recover_signer and
makes verify return False; it never recovers to the zero address.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Tuple, Union

from eth_account import Account
from eth_keys.exceptions import BadSignature
from eth_utils import to_checksum_address
from eth_utils.exceptions import ValidationError

from .digest import AddressLike, canonical_address, coerce_digest, signable_digest
from .errors import InvalidSignature, MalformedSignature

SIGNATURE_SIZE = 65

# Order of the secp256k1 group.
SECP256K1_N = 0xFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFEBAAEDCE6AF48A03BBFD25E8CD0364141
SECP256K1_HALF_N = SECP256K1_N // 2

ZERO_ADDRESS = "0x" + "00" * 20

SignatureLike = Union[str, bytes, bytearray]


@dataclass(frozen=True)
class ParsedSignature:
    """A signature that passed the shape checks. ``v`` is always 27 or 28."""
    v: int
    r: int
    s: int

    @property
    def vrs(self) -> Tuple[int, int, int]:
        return (self.v, self.r, self.s)

    def to_bytes(self) -> bytes:
        return self.r.to_bytes(32, "big") + self.s.to_bytes(32, "big") + bytes([self.v])


def _signature_bytes(signature: SignatureLike) -> bytes:
    if isinstance(signature, (bytes, bytearray)):
        return bytes(signature)
    if isinstance(signature, str):
        s = signature.strip()
        if s[:2].lower() == "0x":
            s = s[2:]
        try:
            return bytes.fromhex(s)
        except ValueError:
            raise MalformedSignature(message="signature is not valid hex")
    raise MalformedSignature(message=f"unsupported signature type: {type(signature).__name__}")


def parse_signature(signature: SignatureLike) -> ParsedSignature:
    """Decode and shape-check a 65-byte r||s||v signature."""
    raw = _signature_bytes(signature)
    if len(raw) != SIGNATURE_SIZE:
        raise MalformedSignature(
            message=f"signature must be {SIGNATURE_SIZE} bytes",
            details={"length": len(raw)},
        )
    r = int.from_bytes(raw[0:32], "big")
    s = int.from_bytes(raw[32:64], "big")
    v = raw[64]
    if v in (0, 1):
        v += 27
    if v not in (27, 28):
        raise MalformedSignature(message="invalid recovery parameter", details={"v": raw[64]})
    if not 1 <= r < SECP256K1_N:
        raise MalformedSignature(message="signature r out of range")
    if not 1 <= s <= SECP256K1_HALF_N:
        raise MalformedSignature(message="signature s out of range (high-s or zero)")
    return ParsedSignature(v=v, r=r, s=s)


class SignatureVerifier:
    """Read-only ECDSA recovery over EIP-191 framed digests."""

    def recover_signer(self, digest: bytes, signature: SignatureLike) -> str:
        """Return the checksum address that produced ``signature`` over ``digest``.

        Raises MalformedSignature for bad encodings and InvalidSignature when
        the signature is well shaped but no signer can be recovered.
        """
        parsed = parse_signature(signature)
        message = signable_digest(coerce_digest(digest))
        try:
            recovered = Account.recover_message(message, vrs=parsed.vrs)
        except (BadSignature, ValidationError, ValueError):
            raise InvalidSignature()
        recovered = to_checksum_address(recovered)
        if recovered == to_checksum_address(ZERO_ADDRESS):
            raise InvalidSignature()
        return recovered

    def verify(self, digest: bytes, signature: SignatureLike, expected: AddressLike) -> bool:
        """True iff ``signature`` over ``digest`` recovers to ``expected``."""
        expected_raw = canonical_address(expected, "expected")
        try:
            recovered = self.recover_signer(digest, signature)
        except InvalidSignature:
            return False
        return canonical_address(recovered) == expected_raw


_DEFAULT_VERIFIER = SignatureVerifier()


def recover_signer(digest: bytes, signature: SignatureLike) -> str:
    return _DEFAULT_VERIFIER.recover_signer(digest, signature)


def verify(digest: bytes, signature: SignatureLike, expected: AddressLike) -> bool:
    return _DEFAULT_VERIFIER.verify(digest, signature, expected)
