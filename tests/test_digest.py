import pytest
from eth_utils import keccak, to_canonical_address

from sch_gateway.digest import (
    authorization_digest,
    checksum_address,
    coerce_digest,
    encode_authorization_fields,
    prefixed_digest_hash,
)
from sch_gateway.errors import OverflowFault, SCHError, SCH_E_BAD_REQUEST
from sch_gateway.window import UINT256_MAX

SUBJECT = "0x" + "5f" * 20
OTHER_SUBJECT = "0x" + "6e" * 20
T0 = 1_700_000_000


def test_digest_is_deterministic_and_32_bytes():
    a = authorization_digest(SUBJECT, 1, 0, T0)
    b = authorization_digest(SUBJECT, 1, 0, T0)
    assert a == b
    assert len(a) == 32


def test_each_field_changes_the_digest():
    base = authorization_digest(SUBJECT, 1, 0, T0)
    variants = [
        authorization_digest(OTHER_SUBJECT, 1, 0, T0),
        authorization_digest(SUBJECT, 2, 0, T0),
        authorization_digest(SUBJECT, 1, 1, T0),
        authorization_digest(SUBJECT, 1, 0, T0 + 120),
    ]
    assert all(v != base for v in variants)
    assert len(set(variants)) == len(variants)


def test_encoding_is_fixed_width_packed():
    enc = encode_authorization_fields(SUBJECT, 31337, 5, T0)
    assert len(enc) == 20 + 32 * 3
    assert enc[:20] == to_canonical_address(SUBJECT)
    assert int.from_bytes(enc[20:52], "big") == 31337
    assert int.from_bytes(enc[52:84], "big") == 5
    assert int.from_bytes(enc[84:116], "big") == T0
    assert authorization_digest(SUBJECT, 31337, 5, T0) == keccak(enc)


def test_no_field_boundary_ambiguity():
    # (nonce=1, window=0) vs (nonce=0, window=1): same decimal "concatenation", different bytes.
    assert authorization_digest(SUBJECT, 1, 1, 0) != authorization_digest(SUBJECT, 1, 0, 1)


def test_subject_accepts_raw_bytes_and_hex_forms():
    raw = to_canonical_address(SUBJECT)
    assert authorization_digest(raw, 1, 0, T0) == authorization_digest(SUBJECT, 1, 0, T0)
    assert authorization_digest(checksum_address(SUBJECT), 1, 0, T0) == authorization_digest(SUBJECT, 1, 0, T0)


def test_invalid_subject_rejected():
    with pytest.raises(SCHError) as ei:
        authorization_digest("0x1234", 1, 0, T0)
    assert ei.value.code == SCH_E_BAD_REQUEST
    with pytest.raises(SCHError):
        authorization_digest(b"\x00" * 19, 1, 0, T0)


def test_out_of_range_integers_are_overflow_faults():
    with pytest.raises(OverflowFault):
        authorization_digest(SUBJECT, 1, UINT256_MAX + 1, T0)
    with pytest.raises(OverflowFault):
        authorization_digest(SUBJECT, -1, 0, T0)
    assert len(authorization_digest(SUBJECT, UINT256_MAX, UINT256_MAX, UINT256_MAX)) == 32


def test_prefixed_hash_uses_personal_message_framing():
    d = authorization_digest(SUBJECT, 1, 0, T0)
    assert prefixed_digest_hash(d) == keccak(b"\x19Ethereum Signed Message:\n32" + d)
    assert prefixed_digest_hash(d) != d


def test_coerce_digest_forms():
    d = authorization_digest(SUBJECT, 1, 0, T0)
    assert coerce_digest("0x" + d.hex()) == d
    assert coerce_digest(d.hex().upper()) == d
    with pytest.raises(SCHError):
        coerce_digest("0x1234")
    with pytest.raises(SCHError):
        coerce_digest("zz" * 32)
