import pytest

from sch_gateway import crypto
from sch_gateway.crypto import SECP256K1_N, SignatureVerifier, parse_signature, recover_signer, verify
from sch_gateway.digest import authorization_digest
from sch_gateway.errors import (
    InvalidSignature,
    MalformedSignature,
    SCH_E_MALFORMED_SIGNATURE,
)

SUBJECT = "0x" + "5f" * 20
T0 = 1_700_000_000

# secp256k1 field prime.
SECP256K1_P = 0xFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFEFFFFFC2F


@pytest.fixture
def digest() -> bytes:
    return authorization_digest(SUBJECT, 31337, 0, T0)


def test_recovers_designated_signer(signer, digest):
    sig = signer.sign_digest(digest)
    assert len(sig) == 65
    assert recover_signer(digest, sig) == signer.address
    assert verify(digest, sig, signer.address) is True


def test_accepts_hex_signature(signer, digest):
    sig = signer.sign_digest(digest)
    assert recover_signer(digest, "0x" + sig.hex()) == signer.address
    assert recover_signer(digest, sig.hex()) == signer.address


def test_wrong_signer_verifies_false(signer, intruder, digest):
    sig = intruder.sign_digest(digest)
    assert recover_signer(digest, sig) == intruder.address
    assert verify(digest, sig, signer.address) is False


def test_signature_over_other_digest_does_not_verify(signer, digest):
    other = authorization_digest(SUBJECT, 31337, 0, T0 + 120)
    sig = signer.sign_digest(other)
    assert verify(digest, sig, signer.address) is False


def test_expected_identity_accepts_any_address_form(signer, digest):
    sig = signer.sign_digest(digest)
    assert verify(digest, sig, signer.address.lower()) is True


@pytest.mark.parametrize("length", [0, 64, 66, 130])
def test_wrong_length_is_malformed(length, digest):
    with pytest.raises(MalformedSignature) as ei:
        recover_signer(digest, b"\x01" * length)
    assert ei.value.code == SCH_E_MALFORMED_SIGNATURE
    with pytest.raises(MalformedSignature):
        verify(digest, b"\x01" * length, SUBJECT)


def test_invalid_hex_is_malformed(digest):
    with pytest.raises(MalformedSignature):
        recover_signer(digest, "0xnothex")


def test_invalid_recovery_parameter_is_malformed(signer, digest):
    sig = bytearray(signer.sign_digest(digest))
    sig[64] = 29
    with pytest.raises(MalformedSignature):
        recover_signer(digest, bytes(sig))


def test_zero_one_recovery_parameter_normalized(signer, digest):
    sig = bytearray(signer.sign_digest(digest))
    assert sig[64] in (27, 28)
    sig[64] -= 27
    assert recover_signer(digest, bytes(sig)) == signer.address


def test_high_s_twin_is_malformed(signer, digest):
    p = parse_signature(signer.sign_digest(digest))
    twin_s = SECP256K1_N - p.s
    twin_v = 55 - p.v  # 27 <-> 28
    twin = p.r.to_bytes(32, "big") + twin_s.to_bytes(32, "big") + bytes([twin_v])
    with pytest.raises(MalformedSignature):
        recover_signer(digest, twin)


def test_zero_r_or_s_is_malformed(signer, digest):
    sig = signer.sign_digest(digest)
    with pytest.raises(MalformedSignature):
        recover_signer(digest, b"\x00" * 32 + sig[32:])
    with pytest.raises(MalformedSignature):
        recover_signer(digest, sig[:32] + b"\x00" * 32 + sig[64:])


def _off_curve_r() -> int:
    # Smallest r for which r**3 + 7 has no square root mod p: no curve point has that x.
    r = 1
    while pow(r**3 + 7, (SECP256K1_P - 1) // 2, SECP256K1_P) != SECP256K1_P - 1:
        r += 1
    return r


def test_unrecoverable_signature_never_yields_zero_identity(signer, digest):
    p = parse_signature(signer.sign_digest(digest))
    r = _off_curve_r()
    sig = r.to_bytes(32, "big") + p.s.to_bytes(32, "big") + bytes([p.v])

    parse_signature(sig)  # well shaped
    with pytest.raises(InvalidSignature):
        recover_signer(digest, sig)
    assert SignatureVerifier().verify(digest, sig, signer.address) is False


def test_zero_address_recovery_is_invalid(signer, digest, monkeypatch):
    sig = signer.sign_digest(digest)
    monkeypatch.setattr(crypto.Account, "recover_message", lambda message, vrs=None, signature=None: crypto.ZERO_ADDRESS)
    with pytest.raises(InvalidSignature):
        recover_signer(digest, sig)


def test_parsed_signature_roundtrips_bytes(signer, digest):
    sig = signer.sign_digest(digest)
    assert parse_signature(sig).to_bytes() == sig
