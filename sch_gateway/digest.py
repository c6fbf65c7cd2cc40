"""Authorization digest generation.

The digest binds the subject identity, the chain identifier, the nonce and the
window boundary:

    keccak256(subject[20] || uint256(chain_id) || uint256(nonce) || uint256(window_start))

Every field has a fixed width (the ``abi.encodePacked`` layout for
``address, uint256, uint256, uint256``), so no two distinct tuples encode to the
same bytes.

Signers never sign the digest bytes raw. They sign the EIP-191 personal
message framing of it (``"\\x19Ethereum Signed Message:\\n32" || digest``), which
keeps wallets and HSM policies from being tricked into signing something that
looks like a transaction.
"""

from __future__ import annotations

from typing import Union

from eth_account.messages import SignableMessage, defunct_hash_message, encode_defunct
from eth_utils import is_address, keccak, to_canonical_address, to_checksum_address

from .errors import SCH_E_BAD_REQUEST, sch_error
from .window import require_uint256

DIGEST_SIZE = 32
ADDRESS_SIZE = 20
_UINT256_SIZE = 32

AddressLike = Union[str, bytes]


def canonical_address(value: AddressLike, name: str = "address") -> bytes:
    """Return the 20 raw bytes of an address given as 0x-hex or raw bytes."""
    if isinstance(value, (bytes, bytearray)):
        if len(value) != ADDRESS_SIZE:
            raise sch_error(SCH_E_BAD_REQUEST, f"{name} must be {ADDRESS_SIZE} bytes", field=name, got=len(value))
        return bytes(value)
    if isinstance(value, str) and is_address(value.strip()):
        return to_canonical_address(value.strip())
    raise sch_error(SCH_E_BAD_REQUEST, f"{name} is not a valid address", field=name)


def checksum_address(value: AddressLike, name: str = "address") -> str:
    """EIP-55 checksum rendering of an address."""
    return to_checksum_address(canonical_address(value, name))


def coerce_digest(value: Union[str, bytes]) -> bytes:
    """Parse a digest given as 32 raw bytes or 0x-hex."""
    if isinstance(value, (bytes, bytearray)):
        raw = bytes(value)
    elif isinstance(value, str):
        s = value.strip()
        if s[:2].lower() == "0x":
            s = s[2:]
        try:
            raw = bytes.fromhex(s)
        except ValueError:
            raise sch_error(SCH_E_BAD_REQUEST, "digest is not valid hex")
    else:
        raise sch_error(SCH_E_BAD_REQUEST, "digest must be bytes or hex string")
    if len(raw) != DIGEST_SIZE:
        raise sch_error(SCH_E_BAD_REQUEST, f"digest must be {DIGEST_SIZE} bytes", got=len(raw))
    return raw


def encode_authorization_fields(
    subject: AddressLike,
    chain_id: int,
    nonce: int,
    window_start: int,
) -> bytes:
    """Fixed-width packed encoding of the four digest fields (116 bytes)."""
    return b"".join(
        (
            canonical_address(subject, "subject"),
            require_uint256(chain_id, "chain_id").to_bytes(_UINT256_SIZE, "big"),
            require_uint256(nonce, "nonce").to_bytes(_UINT256_SIZE, "big"),
            require_uint256(window_start, "window_start").to_bytes(_UINT256_SIZE, "big"),
        )
    )


def authorization_digest(
    subject: AddressLike,
    chain_id: int,
    nonce: int,
    window_start: int,
) -> bytes:
    """The 32-byte digest the designated signer must sign for this window."""
    return keccak(encode_authorization_fields(subject, chain_id, nonce, window_start))


def signable_digest(digest: bytes) -> SignableMessage:
    """EIP-191 personal-message wrapper of a digest (what signers actually sign)."""
    return encode_defunct(primitive=coerce_digest(digest))


def prefixed_digest_hash(digest: bytes) -> bytes:
    """keccak256 of the EIP-191 framed digest; the hash ECDSA operates on."""
    return bytes(defunct_hash_message(primitive=coerce_digest(digest)))
