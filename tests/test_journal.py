import json

import pytest

from conftest import CHAIN_ID, SUBJECT, T0
from sch_gateway.errors import (
    SCH_E_STATE_MISMATCH,
    SCH_E_STATE_STORAGE,
    InvalidSignature,
    SCHError,
)
from sch_gateway.journal import AuthorizationJournal
from sch_gateway.state import Authorizer
from sch_gateway.window import ManualClock


def _open(signer, path, clock, **kw):
    return Authorizer.open(
        signer=kw.get("signer_address", signer.address),
        chain_id=kw.get("chain_id", CHAIN_ID),
        subject=kw.get("subject", SUBJECT),
        clock=clock,
        journal=AuthorizationJournal(str(path)),
    )


def test_fresh_journal_writes_genesis(signer, tmp_path):
    path = tmp_path / "state" / "auth.jsonl"
    _open(signer, path, ManualClock(T0))

    lines = path.read_text(encoding="utf-8").splitlines()
    assert len(lines) == 1
    rec = json.loads(lines[0])
    assert rec["kind"] == "genesis"
    assert rec["signer"] == signer.address
    assert rec["chain_id"] == CHAIN_ID
    assert rec["reference_timestamp"] == T0


def test_state_survives_restart(signer, tmp_path):
    path = tmp_path / "auth.jsonl"
    clock = ManualClock(T0)
    a1 = _open(signer, path, clock)

    clock.advance(120)
    sig1 = signer.sign_digest(a1.current_digest())
    a1.execute(sig1)
    clock.advance(5)
    a1.execute(signer.sign_digest(a1.current_digest()))
    assert a1.nonce == 2

    # Restart: new authorizer, same journal. Reference is NOT re-anchored at the restart time.
    clock.advance(1000)
    a2 = _open(signer, path, clock)
    assert a2.nonce == 2
    assert a2.reference_timestamp == T0 + 120
    assert a2.snapshot().consumed_count == 2
    assert a2.is_consumed(a2.digest_for(0, T0 + 120))
    assert a2.is_consumed(a2.digest_for(1, T0 + 120))


def test_consumed_digest_still_rejected_after_restart(signer, tmp_path):
    path = tmp_path / "auth.jsonl"
    clock = ManualClock(T0)
    a1 = _open(signer, path, clock)
    sig = signer.sign_digest(a1.current_digest())
    a1.execute(sig)

    a2 = _open(signer, path, clock)
    with pytest.raises(InvalidSignature):
        a2.execute(sig)
    assert a2.nonce == 1


def test_journal_for_other_identity_refused(signer, intruder, tmp_path):
    path = tmp_path / "auth.jsonl"
    _open(signer, path, ManualClock(T0))

    with pytest.raises(SCHError) as ei:
        _open(signer, path, ManualClock(T0), signer_address=intruder.address)
    assert ei.value.code == SCH_E_STATE_MISMATCH

    with pytest.raises(SCHError) as ei:
        _open(signer, path, ManualClock(T0), chain_id=CHAIN_ID + 1)
    assert ei.value.code == SCH_E_STATE_MISMATCH

    with pytest.raises(SCHError) as ei:
        _open(signer, path, ManualClock(T0), subject="0x" + "6e" * 20)
    assert ei.value.code == SCH_E_STATE_MISMATCH


def test_truncated_tail_dropped_and_next_append_persists(signer, tmp_path):
    path = tmp_path / "auth.jsonl"
    clock = ManualClock(T0)
    a1 = _open(signer, path, clock)
    a1.execute(signer.sign_digest(a1.current_digest()))

    # Crash mid-write of the second execution record.
    with open(path, "a", encoding="utf-8") as f:
        f.write('{"kind":"execution","digest":"0x')

    a2 = _open(signer, path, clock)
    assert a2.nonce == 1
    a2.execute(signer.sign_digest(a2.current_digest()))

    a3 = _open(signer, path, clock)
    assert a3.nonce == 2
    for line in path.read_text(encoding="utf-8").splitlines():
        json.loads(line)


def test_complete_record_without_newline_is_not_committed(signer, tmp_path):
    path = tmp_path / "auth.jsonl"
    clock = ManualClock(T0)
    a1 = _open(signer, path, clock)
    a1.execute(signer.sign_digest(a1.current_digest()))

    text = path.read_text(encoding="utf-8")
    assert text.endswith("\n")
    path.write_text(text[:-1], encoding="utf-8")

    a2 = _open(signer, path, clock)
    assert a2.nonce == 0


def test_broken_nonce_sequence_is_tampering(signer, tmp_path):
    path = tmp_path / "auth.jsonl"
    clock = ManualClock(T0)
    a1 = _open(signer, path, clock)
    a1.execute(signer.sign_digest(a1.current_digest()))

    rec = {
        "kind": "execution",
        "digest": "0x" + "ab" * 32,
        "nonce": 5,
        "reference_timestamp": T0,
        "ts_utc": "",
    }
    with open(path, "a", encoding="utf-8") as f:
        f.write(json.dumps(rec) + "\n")

    with pytest.raises(SCHError) as ei:
        _open(signer, path, clock)
    assert ei.value.code == SCH_E_STATE_MISMATCH
    assert ei.value.details["expected"] == 2


def test_corrupt_middle_line_is_refused(signer, tmp_path):
    path = tmp_path / "auth.jsonl"
    _open(signer, path, ManualClock(T0))
    with open(path, "a", encoding="utf-8") as f:
        f.write("garbage\n")
        f.write("{}\n")

    with pytest.raises(SCHError) as ei:
        AuthorizationJournal(str(path)).load()
    assert ei.value.code == SCH_E_STATE_MISMATCH


def test_genesis_written_once(signer, tmp_path):
    path = tmp_path / "auth.jsonl"
    _open(signer, path, ManualClock(T0))
    journal = AuthorizationJournal(str(path))
    contents = journal.load()
    with pytest.raises(SCHError):
        journal.write_genesis(contents.genesis)


def test_storage_failure_aborts_before_commit(signer, tmp_path, monkeypatch):
    path = tmp_path / "auth.jsonl"
    clock = ManualClock(T0)
    a = _open(signer, path, clock)
    sig = signer.sign_digest(a.current_digest())

    def _disk_full(record):
        raise SCHError(code=SCH_E_STATE_STORAGE, message="journal write failed", retryable=True, http_status=503)

    monkeypatch.setattr(a._journal, "append_execution", _disk_full)
    with pytest.raises(SCHError) as ei:
        a.execute(sig)
    assert ei.value.retryable is True
    assert a.nonce == 0
    assert not a.is_consumed(a.current_digest())

    # Storage back: the same signature is still good inside its window.
    monkeypatch.undo()
    a.execute(sig)
    assert a.nonce == 1


def test_os_error_becomes_retryable_storage_error(tmp_path):
    # A directory in place of the journal file makes every append fail.
    path = tmp_path / "auth.jsonl"
    path.mkdir()
    journal = AuthorizationJournal(str(path))
    with pytest.raises(SCHError) as ei:
        journal._append({"kind": "genesis"})
    assert ei.value.code == SCH_E_STATE_STORAGE
    assert ei.value.http_status == 503


@pytest.mark.parametrize(
    "reference",
    [
        T0 + 60,  # not a window boundary of the genesis anchor
        T0 - 120,  # before the genesis reference
        T0 + 120 + 1,
    ],
)
def test_misaligned_or_backwards_reference_is_tampering(signer, tmp_path, reference):
    path = tmp_path / "auth.jsonl"
    _open(signer, path, ManualClock(T0))

    rec = {
        "kind": "execution",
        "digest": "0x" + "ab" * 32,
        "nonce": 1,
        "reference_timestamp": reference,
        "ts_utc": "",
    }
    with open(path, "a", encoding="utf-8") as f:
        f.write(json.dumps(rec) + "\n")

    with pytest.raises(SCHError) as ei:
        _open(signer, path, ManualClock(T0 + 10_000))
    assert ei.value.code == SCH_E_STATE_MISMATCH
    assert ei.value.details["got"] == reference


def test_reference_moving_back_between_executions_is_tampering(signer, tmp_path):
    path = tmp_path / "auth.jsonl"
    clock = ManualClock(T0)
    a = _open(signer, path, clock)
    clock.advance(240)
    a.execute(signer.sign_digest(a.current_digest()))
    assert a.reference_timestamp == T0 + 240

    rec = {
        "kind": "execution",
        "digest": "0x" + "cd" * 32,
        "nonce": 2,
        "reference_timestamp": T0 + 120,
        "ts_utc": "",
    }
    with open(path, "a", encoding="utf-8") as f:
        f.write(json.dumps(rec) + "\n")

    with pytest.raises(SCHError) as ei:
        _open(signer, path, clock)
    assert ei.value.code == SCH_E_STATE_MISMATCH
    assert ei.value.details["previous"] == T0 + 240
