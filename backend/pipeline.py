import logging
from datetime import datetime
from typing import Any, Callable, TypedDict

from backend.errors import (
    AttendanceError,
    DecodeError,
    DuplicateSubjectError,
    PersistenceError,
    ReplayError,
    WrongCourseError,
)
from backend.gateway import PersistenceGateway
from backend.ledger import AttendanceLedger
from capture.events import ScanEvent, device_nonce
from capture.keystroke import normalize_identifier
from database.db import AttendanceRecord, DecisionCode, ScanSource, SessionRecord

logger = logging.getLogger(__name__)

# Schedules fn(*args) to run later, e.g. BackgroundTasks.add_task.
DeferWrite = Callable[..., Any]
PersistenceFailureHandler = Callable[[AttendanceRecord, PersistenceError], None]

ERROR_FOR_DECISION: dict[str, type[AttendanceError]] = {
    "REJECTED_MALFORMED": DecodeError,
    "REJECTED_REPLAY": ReplayError,
    "REJECTED_WRONG_COURSE": WrongCourseError,
    "REJECTED_DUPLICATE": DuplicateSubjectError,
    "REJECTED_PERSISTENCE_FAILURE": PersistenceError,
}


class ScanDecision(TypedDict):
    decision_code: DecisionCode
    accepted: bool
    message: str
    error: str | None
    source: ScanSource
    session_id: str
    subject_id: str | None
    subject_name: str | None
    nonce: str | None
    course_id: str | None
    record: AttendanceRecord | None
    persisted: bool | None
    present_count: int


def _build_decision(
    *,
    decision_code: DecisionCode,
    message: str,
    source: ScanSource,
    ledger: AttendanceLedger,
    subject_id: str | None = None,
    subject_name: str | None = None,
    nonce: str | None = None,
    course_id: str | None = None,
    record: AttendanceRecord | None = None,
    persisted: bool | None = None,
) -> ScanDecision:
    error_cls = ERROR_FOR_DECISION.get(decision_code)
    return {
        "decision_code": decision_code,
        "accepted": decision_code == "ACCEPTED",
        "message": message,
        "error": error_cls.__name__ if error_cls else None,
        "source": source,
        "session_id": ledger.session_id,
        "subject_id": subject_id,
        "subject_name": subject_name,
        "nonce": nonce,
        "course_id": course_id,
        "record": record,
        "persisted": persisted,
        "present_count": ledger.size(),
    }


def durable_write(
    gateway: PersistenceGateway,
    session_id: str,
    record: AttendanceRecord,
    on_failure: PersistenceFailureHandler | None = None,
) -> bool:
    try:
        gateway.append_attendance(
            session_id,
            record["subject_id"],
            record["subject_name"],
            record["nonce"],
            recorded_at=record["recorded_at"],
        )
        return True
    except PersistenceError as exc:
        logger.warning("Durable attendance write failed for %s: %s", record["subject_id"], exc)
        if on_failure is not None:
            on_failure(record, exc)
        return False


def evaluate_scan(
    event: ScanEvent,
    session: SessionRecord,
    ledger: AttendanceLedger,
    gateway: PersistenceGateway | None = None,
    *,
    defer_write: DeferWrite | None = None,
    on_persistence_failure: PersistenceFailureHandler | None = None,
    clock: Callable[[], datetime] = datetime.now,
) -> ScanDecision:
    """
    Decide one scan event against the active session and its ledger.

    Checks run in a fixed order and the first failure wins: shape, nonce
    replay, course match, duplicate subject, then commit. Replay is checked
    before duplicate so a retransmitted token is never reported as a fresh
    duplicate. On commit the ledger is updated before the durable write; a
    failed write yields REJECTED_PERSISTENCE_FAILURE but the ledger entry is
    kept, so the subject cannot be marked twice by re-scanning.

    Raw identifier scans have no nonce or course binding and skip those two
    checks.
    """
    if ledger.session_id != session["session_id"]:
        raise ValueError("Ledger does not belong to the active session.")

    source = event["source"]
    token = event["token"]

    if event["kind"] == "token":
        if token is None:
            error = event["decode_error"]
            return _build_decision(
                decision_code="REJECTED_MALFORMED",
                message=str(error) if error else "Invalid QR code",
                source=source,
                ledger=ledger,
            )
        subject_id = token["subject_id"]
        subject_name = token["subject_name"]
        course_id = token["course_id"]
        nonce = token["nonce"]
    else:
        subject_id = normalize_identifier(event["subject_id"] or "")
        subject_name = None
        course_id = None
        nonce = None
        if not subject_id:
            return _build_decision(
                decision_code="REJECTED_MALFORMED",
                message="Invalid identifier",
                source=source,
                ledger=ledger,
            )

    with ledger.lock:
        if nonce is not None and ledger.has_nonce(nonce):
            return _build_decision(
                decision_code="REJECTED_REPLAY",
                message="Already scanned!",
                source=source,
                ledger=ledger,
                subject_id=subject_id,
                subject_name=subject_name,
                nonce=nonce,
                course_id=course_id,
            )

        if token is not None and course_id != session["course_id"]:
            return _build_decision(
                decision_code="REJECTED_WRONG_COURSE",
                message="Wrong course QR code",
                source=source,
                ledger=ledger,
                subject_id=subject_id,
                subject_name=subject_name,
                nonce=nonce,
                course_id=course_id,
            )

        if ledger.has_subject(subject_id):
            return _build_decision(
                decision_code="REJECTED_DUPLICATE",
                message="Student already marked present",
                source=source,
                ledger=ledger,
                subject_id=subject_id,
                subject_name=subject_name,
                nonce=nonce,
                course_id=course_id,
            )

        record: AttendanceRecord = {
            "subject_id": subject_id,
            "subject_name": subject_name,
            "recorded_at": clock().isoformat(timespec="seconds"),
            "nonce": nonce or device_nonce(event["received_at"]),
            "source": source,
        }
        ledger.commit(record)

    logger.info("%s marked present in %s", subject_id, ledger.session_id)

    persisted: bool | None = None
    if gateway is not None:
        if defer_write is not None:
            defer_write(durable_write, gateway, ledger.session_id, record, on_persistence_failure)
        else:
            persisted = durable_write(gateway, ledger.session_id, record)

    if persisted is False:
        return _build_decision(
            decision_code="REJECTED_PERSISTENCE_FAILURE",
            message="Database error - try again",
            source=source,
            ledger=ledger,
            subject_id=subject_id,
            subject_name=subject_name,
            nonce=record["nonce"],
            course_id=course_id,
            record=record,
            persisted=False,
        )

    return _build_decision(
        decision_code="ACCEPTED",
        message=f"✓ {subject_name or subject_id} marked present",
        source=source,
        ledger=ledger,
        subject_id=subject_id,
        subject_name=subject_name,
        nonce=record["nonce"],
        course_id=course_id,
        record=record,
        persisted=persisted,
    )
