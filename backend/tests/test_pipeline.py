from datetime import datetime

import pytest

from backend.errors import DecodeError, PersistenceError
from backend.gateway import PersistenceGateway
from backend.ledger import AttendanceLedger
from backend.pipeline import evaluate_scan
from capture.events import failed_token_scan, raw_identifier_scan, token_scan
from database.db import get_attendance_for_session

FIXED_NOW = datetime(2026, 3, 2, 9, 15, 0)


def _session(session_id="C1-abc", course_id="C1"):
    return {
        "session_id": session_id,
        "course_id": course_id,
        "name": "Lecture: Test",
        "description": "",
        "date": "2026-03-02",
        "created_at": "2026-03-02T09:00:00",
    }


def _scan(subject_id="S1", course_id="C1", nonce="n1", *, subject_name=None, source="camera"):
    token = {
        "subject_id": subject_id,
        "subject_name": subject_name,
        "course_id": course_id,
        "course_name": "Course",
        "issued_at": 0,
        "nonce": nonce,
    }
    return token_scan(token, source=source, received_at=1700000000.0)


class FailingGateway:
    def __init__(self):
        self.calls = 0

    def append_attendance(self, *args, **kwargs):
        self.calls += 1
        raise PersistenceError("disk full")


class RecordingGateway:
    def __init__(self):
        self.rows = []

    def append_attendance(self, session_id, subject_id, subject_name, nonce, *, recorded_at=None):
        self.rows.append((session_id, subject_id, nonce))
        return len(self.rows)


def _evaluate(event, session, ledger, gateway=None, **kwargs):
    return evaluate_scan(event, session, ledger, gateway, clock=lambda: FIXED_NOW, **kwargs)


def test_same_token_twice_is_replay():
    session = _session()
    ledger = AttendanceLedger(session["session_id"])

    first = _evaluate(_scan(), session, ledger)
    second = _evaluate(_scan(), session, ledger)

    assert first["decision_code"] == "ACCEPTED"
    assert first["accepted"] is True
    assert second["decision_code"] == "REJECTED_REPLAY"
    assert second["error"] == "ReplayError"
    assert second["message"] == "Already scanned!"
    assert ledger.size() == 1


def test_same_subject_fresh_nonce_is_duplicate():
    session = _session()
    ledger = AttendanceLedger(session["session_id"])

    assert _evaluate(_scan(nonce="n1"), session, ledger)["decision_code"] == "ACCEPTED"
    second = _evaluate(_scan(nonce="n2"), session, ledger)

    assert second["decision_code"] == "REJECTED_DUPLICATE"
    assert second["message"] == "Student already marked present"
    assert not ledger.has_nonce("n2")


def test_wrong_course_is_never_accepted():
    session = _session()
    ledger = AttendanceLedger(session["session_id"])

    decision = _evaluate(_scan(course_id="C2"), session, ledger)

    assert decision["decision_code"] == "REJECTED_WRONG_COURSE"
    assert decision["message"] == "Wrong course QR code"
    assert ledger.size() == 0
    assert not ledger.has_nonce("n1")


def test_replay_wins_over_duplicate_and_course():
    session = _session()
    ledger = AttendanceLedger(session["session_id"])
    _evaluate(_scan(), session, ledger)

    decision = _evaluate(_scan(course_id="C2"), session, ledger)
    assert decision["decision_code"] == "REJECTED_REPLAY"


def test_malformed_scan_uses_decode_message():
    session = _session()
    ledger = AttendanceLedger(session["session_id"])
    event = failed_token_scan(
        DecodeError("missing_field", "Invalid QR code format", field="nonce"),
        source="camera",
        received_at=1.0,
    )

    decision = _evaluate(event, session, ledger)

    assert decision["decision_code"] == "REJECTED_MALFORMED"
    assert decision["message"] == "Invalid QR code format"
    assert decision["error"] == "DecodeError"


def test_raw_identifier_is_normalized_before_checks():
    session = _session()
    ledger = AttendanceLedger(session["session_id"])

    first = _evaluate(raw_identifier_scan(" s1 ", received_at=1700000000.5), session, ledger)
    assert first["decision_code"] == "ACCEPTED"
    assert first["subject_id"] == "S1"
    assert first["record"]["nonce"].startswith("DEVICE-1700000000500-")
    assert first["record"]["source"] == "device"

    second = _evaluate(raw_identifier_scan("S1", received_at=1700000001.0), session, ledger)
    assert second["decision_code"] == "REJECTED_DUPLICATE"

    third = _evaluate(_scan(subject_id="S1", nonce="fresh"), session, ledger)
    assert third["decision_code"] == "REJECTED_DUPLICATE"


def test_blank_raw_identifier_is_malformed():
    session = _session()
    ledger = AttendanceLedger(session["session_id"])
    decision = _evaluate(raw_identifier_scan("   ", received_at=1.0), session, ledger)
    assert decision["decision_code"] == "REJECTED_MALFORMED"
    assert decision["message"] == "Invalid identifier"


def test_fresh_session_forgets_previous_ledger():
    session_a = _session("C1-a")
    ledger_a = AttendanceLedger("C1-a")
    _evaluate(_scan(), session_a, ledger_a)
    assert _evaluate(_scan(), session_a, ledger_a)["decision_code"] == "REJECTED_REPLAY"

    session_b = _session("C1-b")
    ledger_b = AttendanceLedger("C1-b")
    assert _evaluate(_scan(), session_b, ledger_b)["decision_code"] == "ACCEPTED"


def test_ledger_must_match_session():
    with pytest.raises(ValueError):
        _evaluate(_scan(), _session("C1-a"), AttendanceLedger("C1-b"))


def test_accepted_message_prefers_name():
    session = _session()
    ledger = AttendanceLedger(session["session_id"])
    decision = _evaluate(_scan(subject_name="Ada"), session, ledger)
    assert decision["message"] == "✓ Ada marked present"
    assert decision["record"]["recorded_at"] == "2026-03-02T09:15:00"


def test_accepted_subjects_stay_distinct_under_mixed_traffic():
    session = _session()
    ledger = AttendanceLedger(session["session_id"])
    events = [
        _scan("S1", nonce="a"),
        _scan("S2", nonce="b"),
        _scan("S1", nonce="c"),
        _scan("S3", course_id="C9", nonce="d"),
        _scan("S2", nonce="b"),
        raw_identifier_scan("s3", received_at=5.0),
        raw_identifier_scan("s2", received_at=6.0),
    ]
    for event in events:
        _evaluate(event, session, ledger)

    subjects = [r["subject_id"] for r in ledger.export_rows()]
    assert subjects == ["S1", "S2", "S3"]
    assert len(set(subjects)) == len(subjects)


def test_inline_write_failure_keeps_local_commit():
    session = _session()
    ledger = AttendanceLedger(session["session_id"])
    gateway = FailingGateway()

    decision = _evaluate(_scan(), session, ledger, gateway)

    assert decision["decision_code"] == "REJECTED_PERSISTENCE_FAILURE"
    assert decision["message"] == "Database error - try again"
    assert decision["persisted"] is False
    assert ledger.has_subject("S1")
    assert ledger.has_nonce("n1")

    retry = _evaluate(_scan(nonce="n2"), session, ledger, gateway)
    assert retry["decision_code"] == "REJECTED_DUPLICATE"
    assert gateway.calls == 1


def test_inline_write_success_is_persisted():
    session = _session()
    ledger = AttendanceLedger(session["session_id"])
    gateway = RecordingGateway()

    decision = _evaluate(_scan(), session, ledger, gateway)

    assert decision["decision_code"] == "ACCEPTED"
    assert decision["persisted"] is True
    assert gateway.rows == [("C1-abc", "S1", "n1")]


def test_deferred_write_reports_failure_later():
    session = _session()
    ledger = AttendanceLedger(session["session_id"])
    scheduled = []
    failures = []

    decision = _evaluate(
        _scan(),
        session,
        ledger,
        FailingGateway(),
        defer_write=lambda fn, *args: scheduled.append((fn, args)),
        on_persistence_failure=lambda record, exc: failures.append((record["subject_id"], str(exc))),
    )

    assert decision["decision_code"] == "ACCEPTED"
    assert decision["persisted"] is None
    assert failures == []

    fn, args = scheduled[0]
    assert fn(*args) is False
    assert failures == [("S1", "disk full")]


def test_accepted_scan_reaches_database(temp_db):
    session = _session()
    ledger = AttendanceLedger(session["session_id"])

    decision = _evaluate(_scan(subject_name="Ada"), session, ledger, PersistenceGateway())

    assert decision["persisted"] is True
    rows = get_attendance_for_session(session["session_id"])
    assert rows == [
        {
            "subject_id": "S1",
            "subject_name": "Ada",
            "recorded_at": "2026-03-02T09:15:00",
            "nonce": "n1",
            "source": "camera",
        }
    ]


def test_device_scans_in_the_same_millisecond_are_all_stored(temp_db):
    session = _session()
    ledger = AttendanceLedger(session["session_id"])
    gateway = PersistenceGateway()

    decisions = [
        _evaluate(raw_identifier_scan(subject_id, received_at=1700000000.5), session, ledger, gateway)
        for subject_id in ("S1", "S2")
    ]

    assert [d["decision_code"] for d in decisions] == ["ACCEPTED", "ACCEPTED"]
    assert all(d["persisted"] is True for d in decisions)
    assert decisions[0]["record"]["nonce"] != decisions[1]["record"]["nonce"]
    rows = get_attendance_for_session(session["session_id"])
    assert [r["subject_id"] for r in rows] == ["S1", "S2"]
    assert all(r["source"] == "device" for r in rows)
