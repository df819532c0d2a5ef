import itertools
import threading
from typing import Iterator, Literal, TypedDict

from backend.errors import DecodeError

ScanSource = Literal["camera", "device"]
ScanKind = Literal["token", "raw_identifier"]


class AttendanceToken(TypedDict):
    subject_id: str
    subject_name: str | None
    course_id: str
    course_name: str
    issued_at: int
    nonce: str


class ScanEvent(TypedDict):
    kind: ScanKind
    source: ScanSource
    received_at: float
    token: AttendanceToken | None
    subject_id: str | None
    decode_error: DecodeError | None


def token_scan(token: AttendanceToken, *, source: ScanSource, received_at: float) -> ScanEvent:
    return {
        "kind": "token",
        "source": source,
        "received_at": received_at,
        "token": token,
        "subject_id": token["subject_id"],
        "decode_error": None,
    }


def failed_token_scan(error: DecodeError, *, source: ScanSource, received_at: float) -> ScanEvent:
    return {
        "kind": "token",
        "source": source,
        "received_at": received_at,
        "token": None,
        "subject_id": None,
        "decode_error": error,
    }


def raw_identifier_scan(subject_id: str, *, received_at: float) -> ScanEvent:
    return {
        "kind": "raw_identifier",
        "source": "device",
        "received_at": received_at,
        "token": None,
        "subject_id": subject_id,
        "decode_error": None,
    }


# Same-millisecond submissions still get distinct nonces.
_DEVICE_SEQUENCE = itertools.count(1)


def device_nonce(received_at: float) -> str:
    return f"DEVICE-{int(received_at * 1000)}-{next(_DEVICE_SEQUENCE)}"


class CaptureAdapter:
    """
    One input source normalized to ScanEvent.

    Subclasses provide `_acquire`, `_release` and `_next_event`. The base
    class owns the cancellation token and the active flag, so `deactivate()`
    always stops `scan_events()` at its next iteration.
    """

    source: ScanSource

    def __init__(self) -> None:
        self._cancel = threading.Event()
        self._state_lock = threading.RLock()
        self._active = False

    @property
    def is_active(self) -> bool:
        return self._active

    def activate(self) -> None:
        with self._state_lock:
            if self._active:
                return
            self._cancel.clear()
            self._acquire()
            self._active = True

    def cancel(self) -> None:
        """Stop `scan_events()` at its next iteration without releasing anything yet."""
        self._cancel.set()

    def deactivate(self) -> None:
        self._cancel.set()
        with self._state_lock:
            was_active = self._active
            self._active = False
            if was_active:
                self._release()

    def scan_events(self) -> Iterator[ScanEvent]:
        try:
            while self._active and not self._cancel.is_set():
                event = self._next_event()
                if event is not None:
                    yield event
        finally:
            self.deactivate()

    def __enter__(self):
        self.activate()
        return self

    def __exit__(self, exc_type, exc, tb):
        self.deactivate()
        return False

    def _acquire(self) -> None:
        raise NotImplementedError

    def _release(self) -> None:
        raise NotImplementedError

    def _next_event(self) -> ScanEvent | None:
        raise NotImplementedError
