import threading

from database.db import AttendanceRecord


class AttendanceLedger:
    """
    In-memory, session-scoped record of accepted attendance and consumed nonces.

    `lock` is the single critical section for check-then-commit; the
    validation pipeline holds it while it evaluates and inserts. A ledger is
    never reused across sessions: the controller replaces it.
    """

    def __init__(self, session_id: str):
        self.session_id = session_id
        self.lock = threading.RLock()
        self._nonces: set[str] = set()
        self._subjects: set[str] = set()
        self._records: list[AttendanceRecord] = []
        # Index into _records where the on-screen list starts.
        self._visible_from = 0

    def has_nonce(self, nonce: str) -> bool:
        return nonce in self._nonces

    def has_subject(self, subject_id: str) -> bool:
        return subject_id in self._subjects

    def commit(self, record: AttendanceRecord) -> None:
        with self.lock:
            self._nonces.add(record["nonce"])
            self._subjects.add(record["subject_id"])
            self._records.append(record)

    def size(self) -> int:
        return len(self._records)

    def __len__(self) -> int:
        return self.size()

    def records(self, *, newest_first: bool = True) -> list[AttendanceRecord]:
        visible = self._records[self._visible_from:]
        return list(reversed(visible)) if newest_first else list(visible)

    def export_rows(self) -> list[AttendanceRecord]:
        return list(self._records)

    def clear_visible(self) -> None:
        """Empty the displayed list; committed subjects and nonces stay consumed."""
        with self.lock:
            self._visible_from = len(self._records)
