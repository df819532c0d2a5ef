import json
import secrets
import time
from typing import Any

from backend.config import TOKEN_ROTATION_SECONDS
from backend.errors import DecodeError
from capture.events import AttendanceToken

REQUIRED_FIELDS = ("subjectId", "courseId", "nonce")

# Older presenting devices used student-centric key names.
LEGACY_KEYS = {
    "studentId": "subjectId",
    "studentName": "subjectName",
    "timestamp": "issuedAt",
}


def _text(value: Any) -> str:
    if value is None or isinstance(value, (dict, list, bool)):
        return ""
    return str(value).strip()


def encode_token(token: AttendanceToken) -> str:
    payload = {
        "subjectId": token["subject_id"],
        "subjectName": token["subject_name"],
        "courseId": token["course_id"],
        "courseName": token["course_name"],
        "issuedAt": token["issued_at"],
        "nonce": token["nonce"],
    }
    if payload["subjectName"] is None:
        del payload["subjectName"]
    return json.dumps(payload, separators=(",", ":"))


def decode_token(text: str) -> AttendanceToken:
    """
    Parse a scanned payload into an AttendanceToken.

    Raises DecodeError("malformed") when the payload is not a JSON object and
    DecodeError("missing_field") when subjectId, courseId or nonce is absent
    or blank. Nothing else is checked here.
    """
    try:
        raw = json.loads(text)
    except (TypeError, ValueError):
        raise DecodeError("malformed", "Invalid QR code")
    if not isinstance(raw, dict):
        raise DecodeError("malformed", "Invalid QR code")

    payload = dict(raw)
    for legacy, current in LEGACY_KEYS.items():
        if current not in payload and legacy in payload:
            payload[current] = payload[legacy]

    for field in REQUIRED_FIELDS:
        if not _text(payload.get(field)):
            raise DecodeError("missing_field", "Invalid QR code format", field=field)

    try:
        issued_at = int(payload.get("issuedAt") or 0)
    except (TypeError, ValueError):
        issued_at = 0

    return {
        "subject_id": _text(payload["subjectId"]),
        "subject_name": _text(payload.get("subjectName")) or None,
        "course_id": _text(payload["courseId"]),
        "course_name": _text(payload.get("courseName")),
        "issued_at": issued_at,
        "nonce": _text(payload["nonce"]),
    }


def new_nonce() -> str:
    return secrets.token_hex(16)


class TokenIssuer:
    """Issuing side of the token exchange: keeps one nonce alive per rotation window."""

    def __init__(
        self,
        subject_id: str,
        course_id: str,
        course_name: str,
        *,
        subject_name: str | None = None,
        rotation_seconds: float = TOKEN_ROTATION_SECONDS,
        clock=time.time,
    ):
        self.subject_id = subject_id.strip().upper()
        self.subject_name = subject_name or None
        self.course_id = course_id
        self.course_name = course_name
        self.rotation_seconds = rotation_seconds
        self._clock = clock
        self._current: AttendanceToken | None = None
        self._issued_mono = 0.0

    def current(self) -> AttendanceToken:
        now = self._clock()
        if self._current is None or now - self._issued_mono >= self.rotation_seconds:
            self._current = {
                "subject_id": self.subject_id,
                "subject_name": self.subject_name,
                "course_id": self.course_id,
                "course_name": self.course_name,
                "issued_at": int(now * 1000),
                "nonce": new_nonce(),
            }
            self._issued_mono = now
        return self._current

    def current_payload(self) -> str:
        return encode_token(self.current())
