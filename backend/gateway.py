import logging
import sqlite3
from datetime import datetime

from backend.errors import PersistenceError
from database.db import (
    AttendanceRecord,
    DecisionCode,
    ScanSource,
    SessionRecord,
    get_attendance_for_session,
    get_sessions_for_course,
    insert_attendance,
    insert_scan_event,
    insert_session,
)

logger = logging.getLogger(__name__)


class PersistenceGateway:
    """
    Durable session/attendance storage consulted by the capture core.

    Every storage failure surfaces as PersistenceError; callers never see
    sqlite3 exceptions.
    """

    def create_session(self, session: SessionRecord) -> None:
        try:
            insert_session(session)
        except sqlite3.Error as exc:
            raise PersistenceError(f"Could not store session {session['session_id']}: {exc}") from exc

    def append_attendance(
        self,
        session_id: str,
        subject_id: str,
        subject_name: str | None,
        nonce: str,
        *,
        recorded_at: str | None = None,
    ) -> int:
        try:
            return insert_attendance(
                session_id=session_id,
                subject_id=subject_id,
                subject_name=subject_name,
                nonce=nonce,
                recorded_at=recorded_at or datetime.now().isoformat(timespec="seconds"),
            )
        except sqlite3.Error as exc:
            raise PersistenceError(f"Could not store attendance for {subject_id}: {exc}") from exc

    def list_sessions(self, course_id: str) -> list[SessionRecord]:
        try:
            return get_sessions_for_course(course_id)
        except sqlite3.Error as exc:
            raise PersistenceError(f"Could not load sessions for {course_id}: {exc}") from exc

    def list_attendance(self, session_id: str) -> list[AttendanceRecord]:
        try:
            return get_attendance_for_session(session_id)
        except sqlite3.Error as exc:
            raise PersistenceError(f"Could not load attendance for {session_id}: {exc}") from exc

    def record_scan_event(
        self,
        *,
        decision_code: DecisionCode,
        message: str,
        source: ScanSource,
        session_id: str | None,
        subject_id: str | None,
        nonce: str | None,
    ) -> None:
        # Audit rows are best effort; a failed audit never changes a decision.
        try:
            insert_scan_event(
                decision_code=decision_code,
                message=message,
                source=source,
                session_id=session_id,
                subject_id=subject_id,
                nonce=nonce,
            )
        except sqlite3.Error as exc:
            logger.warning("Scan audit write failed: %s", exc)
