import pytest

from sch_gateway.signing import LocalKeySigner
from sch_gateway.state import Authorizer
from sch_gateway.window import ManualClock

# Deterministic keys only (no flakiness).
SIGNER_KEY_HEX = "4c0883a69102937d6231471b5dbb6204fe5129617082792ae468d01a3f362318"
INTRUDER_KEY_HEX = "11" * 32

SUBJECT = "0x" + "5f" * 20
CHAIN_ID = 31337
T0 = 1_700_000_000


@pytest.fixture
def signer() -> LocalKeySigner:
    return LocalKeySigner(bytes.fromhex(SIGNER_KEY_HEX))


@pytest.fixture
def intruder() -> LocalKeySigner:
    return LocalKeySigner(bytes.fromhex(INTRUDER_KEY_HEX))


@pytest.fixture
def clock() -> ManualClock:
    return ManualClock(T0)


@pytest.fixture
def authorizer(signer, clock) -> Authorizer:
    return Authorizer.open(signer=signer.address, chain_id=CHAIN_ID, subject=SUBJECT, clock=clock)
