import hashlib
import hmac
import secrets
import sqlite3
from typing import Any, Literal, TypedDict

from backend.config import DB_PATH, LECTURER_ID, LECTURER_PASSWORD


PASSWORD_HASH_ALGO = "pbkdf2_sha256"
PASSWORD_HASH_ITERATIONS = 120_000

DecisionCode = Literal[
    "ACCEPTED",
    "REJECTED_MALFORMED",
    "REJECTED_REPLAY",
    "REJECTED_WRONG_COURSE",
    "REJECTED_DUPLICATE",
    "REJECTED_PERSISTENCE_FAILURE",
]

ScanSource = Literal["camera", "device"]


class AttendanceRecord(TypedDict):
    subject_id: str
    subject_name: str | None
    recorded_at: str
    nonce: str
    source: ScanSource


class SessionRecord(TypedDict):
    session_id: str
    course_id: str
    name: str
    description: str
    date: str
    created_at: str


def _hash_password(password: str, *, salt: str | None = None) -> str:
    salt_value = salt or secrets.token_hex(16)
    digest = hashlib.pbkdf2_hmac(
        "sha256",
        password.encode("utf-8"),
        salt_value.encode("utf-8"),
        PASSWORD_HASH_ITERATIONS,
    ).hex()
    return f"{PASSWORD_HASH_ALGO}${PASSWORD_HASH_ITERATIONS}${salt_value}${digest}"


def _verify_password(password: str, password_hash: str) -> bool:
    try:
        algo, rounds_text, salt_value, expected_digest = password_hash.split("$", 3)
        rounds = int(rounds_text)
    except (ValueError, TypeError):
        return False

    if algo != PASSWORD_HASH_ALGO or rounds <= 0:
        return False

    candidate_digest = hashlib.pbkdf2_hmac(
        "sha256",
        password.encode("utf-8"),
        salt_value.encode("utf-8"),
        rounds,
    ).hex()
    return hmac.compare_digest(candidate_digest, expected_digest)


def connect_db():
    conn = sqlite3.connect(str(DB_PATH), check_same_thread=False)
    conn.execute("PRAGMA foreign_keys = ON;")
    return conn


def _ensure_default_lecturer(cursor: sqlite3.Cursor) -> None:
    principal_id = (LECTURER_ID or "").strip()
    password = (LECTURER_PASSWORD or "").strip()
    if not principal_id or not password:
        return

    cursor.execute(
        """
        SELECT id
        FROM lecturers
        WHERE principal_id = ? COLLATE NOCASE
        """,
        (principal_id,),
    )
    if cursor.fetchone():
        return

    cursor.execute(
        """
        INSERT INTO lecturers (principal_id, password_hash)
        VALUES (?, ?)
        """,
        (principal_id, _hash_password(password)),
    )


def create_tables():
    conn = connect_db()
    cursor = conn.cursor()

    cursor.execute(
        """
    CREATE TABLE IF NOT EXISTS lecturers (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        principal_id TEXT NOT NULL UNIQUE COLLATE NOCASE,
        password_hash TEXT NOT NULL,
        created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
    )
    """
    )

    cursor.execute(
        """
    CREATE TABLE IF NOT EXISTS sessions (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        session_id TEXT NOT NULL UNIQUE,
        course_id TEXT NOT NULL,
        name TEXT NOT NULL,
        description TEXT NOT NULL DEFAULT '',
        date TEXT NOT NULL,              -- YYYY-MM-DD
        created_at TEXT NOT NULL         -- ISO-8601
    )
    """
    )
    cursor.execute("CREATE INDEX IF NOT EXISTS idx_sessions_course ON sessions(course_id, created_at)")

    # Session ids are not foreign keys: attendance may be written in local mode
    # for a session whose metadata never reached the database.
    cursor.execute(
        """
    CREATE TABLE IF NOT EXISTS attendance_logs (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        session_id TEXT NOT NULL,
        subject_id TEXT NOT NULL,
        subject_name TEXT,
        nonce TEXT NOT NULL,
        recorded_at TEXT NOT NULL,
        UNIQUE(session_id, nonce)
    )
    """
    )

    cursor.execute(
        """
    CREATE TABLE IF NOT EXISTS scan_events (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        session_id TEXT,
        subject_id TEXT,
        nonce TEXT,
        decision_code TEXT NOT NULL,
        message TEXT NOT NULL,
        source TEXT NOT NULL,
        captured_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
    )
    """
    )

    _ensure_default_lecturer(cursor)

    conn.commit()
    conn.close()


# -----------------------------
# Lecturers
# -----------------------------
def verify_lecturer_credentials(principal_id: str, password: str) -> dict | None:
    clean_principal = principal_id.strip()
    clean_password = password.strip()
    if not clean_principal or not clean_password:
        return None

    conn = connect_db()
    cur = conn.cursor()
    cur.execute(
        """
        SELECT id, principal_id, password_hash
        FROM lecturers
        WHERE principal_id = ? COLLATE NOCASE
        """,
        (clean_principal,),
    )
    row = cur.fetchone()
    conn.close()

    if not row:
        return None

    lecturer_id, saved_principal, password_hash = row
    if not _verify_password(clean_password, password_hash):
        return None

    return {"id": lecturer_id, "principal_id": saved_principal}


# -----------------------------
# Sessions
# -----------------------------
def insert_session(session: SessionRecord) -> int:
    conn = connect_db()
    cur = conn.cursor()
    try:
        cur.execute(
            """
            INSERT INTO sessions (session_id, course_id, name, description, date, created_at)
            VALUES (?, ?, ?, ?, ?, ?)
            """,
            (
                session["session_id"],
                session["course_id"],
                session["name"],
                session["description"],
                session["date"],
                session["created_at"],
            ),
        )
        row_id = int(cur.lastrowid)
        conn.commit()
        return row_id
    finally:
        conn.close()


def get_sessions_for_course(course_id: str) -> list[SessionRecord]:
    conn = connect_db()
    cur = conn.cursor()
    cur.execute(
        """
        SELECT session_id, course_id, name, description, date, created_at
        FROM sessions
        WHERE course_id = ?
        ORDER BY created_at DESC, id DESC
        """,
        (course_id,),
    )
    rows = cur.fetchall()
    conn.close()
    return [
        {
            "session_id": r[0],
            "course_id": r[1],
            "name": r[2],
            "description": r[3],
            "date": r[4],
            "created_at": r[5],
        }
        for r in rows
    ]


# -----------------------------
# Attendance
# -----------------------------
def insert_attendance(
    *,
    session_id: str,
    subject_id: str,
    subject_name: str | None,
    nonce: str,
    recorded_at: str,
) -> int:
    """
    Append one attendance row and return its id.

    A nonce already stored for the session for the same subject is not
    written twice; the existing row id is returned instead. The same nonce
    under a different subject raises IntegrityError.
    """
    conn = connect_db()
    cur = conn.cursor()
    try:
        cur.execute(
            """
            INSERT INTO attendance_logs (session_id, subject_id, subject_name, nonce, recorded_at)
            VALUES (?, ?, ?, ?, ?)
            """,
            (session_id, subject_id, subject_name, nonce, recorded_at),
        )
        row_id = int(cur.lastrowid)
        conn.commit()
        return row_id
    except sqlite3.IntegrityError:
        cur.execute(
            """
            SELECT id, subject_id
            FROM attendance_logs
            WHERE session_id = ? AND nonce = ?
            LIMIT 1
            """,
            (session_id, nonce),
        )
        row = cur.fetchone()
        if row and row[1] == subject_id:
            return int(row[0])
        if row:
            raise sqlite3.IntegrityError(
                f"Nonce {nonce} already recorded for {row[1]} in session {session_id}."
            )
        raise
    finally:
        conn.close()


def get_attendance_for_session(session_id: str) -> list[AttendanceRecord]:
    conn = connect_db()
    cur = conn.cursor()
    cur.execute(
        """
        SELECT subject_id, subject_name, recorded_at, nonce
        FROM attendance_logs
        WHERE session_id = ?
        ORDER BY id ASC
        """,
        (session_id,),
    )
    rows = cur.fetchall()
    conn.close()
    return [
        {
            "subject_id": r[0],
            "subject_name": r[1],
            "recorded_at": r[2],
            "nonce": r[3],
            "source": "device" if str(r[3]).startswith("DEVICE-") else "camera",
        }
        for r in rows
    ]


# -----------------------------
# Scan audit
# -----------------------------
def insert_scan_event(
    *,
    decision_code: DecisionCode,
    message: str,
    source: ScanSource,
    session_id: str | None = None,
    subject_id: str | None = None,
    nonce: str | None = None,
) -> int:
    """Append-only audit row, one per pipeline decision."""
    conn = connect_db()
    cur = conn.cursor()
    try:
        cur.execute(
            """
            INSERT INTO scan_events (session_id, subject_id, nonce, decision_code, message, source)
            VALUES (?, ?, ?, ?, ?, ?)
            """,
            (session_id, subject_id, nonce, decision_code, message, source),
        )
        event_id = int(cur.lastrowid)
        conn.commit()
        return event_id
    finally:
        conn.close()


def get_scan_events(
    *,
    session_id: str | None = None,
    decision_code: DecisionCode | None = None,
    limit: int = 100,
) -> list[dict[str, Any]]:
    where = ["1=1"]
    params: list[Any] = []
    if session_id is not None:
        where.append("session_id = ?")
        params.append(session_id)
    if decision_code is not None:
        where.append("decision_code = ?")
        params.append(decision_code)
    params.append(max(1, min(int(limit), 500)))

    conn = connect_db()
    cur = conn.cursor()
    cur.execute(
        f"""
        SELECT id, session_id, subject_id, nonce, decision_code, message, source, captured_at
        FROM scan_events
        WHERE {" AND ".join(where)}
        ORDER BY id DESC
        LIMIT ?
        """,
        params,
    )
    rows = cur.fetchall()
    conn.close()
    return [
        {
            "id": r[0],
            "session_id": r[1],
            "subject_id": r[2],
            "nonce": r[3],
            "decision_code": r[4],
            "message": r[5],
            "source": r[6],
            "captured_at": r[7],
        }
        for r in rows
    ]


# -----------------------------
# Resets
# -----------------------------
def clear_attendance():
    conn = connect_db()
    cur = conn.cursor()
    cur.execute("DELETE FROM scan_events;")
    cur.execute("DELETE FROM attendance_logs;")
    cur.execute("DELETE FROM sessions;")
    cur.execute("DELETE FROM sqlite_sequence WHERE name IN ('scan_events', 'attendance_logs', 'sessions');")
    conn.commit()
    conn.close()
