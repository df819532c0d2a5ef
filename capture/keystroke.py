import logging
import queue
import time
from typing import Callable

from backend.config import DEVICE_SYNTHETIC_TOKENS
from capture.events import (
    CaptureAdapter,
    ScanEvent,
    device_nonce,
    raw_identifier_scan,
    token_scan,
)

logger = logging.getLogger(__name__)


def normalize_identifier(line: str) -> str:
    return (line or "").strip().upper()


class KeystrokeAdapter(CaptureAdapter):
    """
    External peripheral adapter (biometric reader, card wedge, barcode gun).

    The peripheral types an identifier into a focused field and submits it.
    `submit()` turns one submission into one ScanEvent. `feed()` does the
    same but queues the event for `scan_events()`, which yields queued
    submissions until the adapter is deactivated.
    """

    source = "device"

    def __init__(
        self,
        *,
        course_id: str | None = None,
        course_name: str = "",
        synthetic_tokens: bool = DEVICE_SYNTHETIC_TOKENS,
        refocus: Callable[[], None] | None = None,
        poll_interval: float = 0.25,
        clock: Callable[[], float] = time.time,
    ):
        super().__init__()
        self.course_id = course_id
        self.course_name = course_name
        self.synthetic_tokens = synthetic_tokens
        self.poll_interval = poll_interval
        self._refocus = refocus
        self._clock = clock
        self._pending: queue.Queue[ScanEvent] = queue.Queue()
        self.has_focus = False
        self.refocus_count = 0

    def _acquire(self) -> None:
        self._pending = queue.Queue()
        self.request_focus()

    def _release(self) -> None:
        self.has_focus = False

    def request_focus(self) -> None:
        self.has_focus = True
        self.refocus_count += 1
        if self._refocus is not None:
            self._refocus()

    def focus_lost(self) -> None:
        self.has_focus = False
        if self._active:
            self.request_focus()

    def submit(self, line: str) -> ScanEvent | None:
        if not self._active:
            return None
        subject_id = normalize_identifier(line)
        if not subject_id:
            return None

        received_at = self._clock()
        if self.synthetic_tokens and self.course_id:
            event = token_scan(
                {
                    "subject_id": subject_id,
                    "subject_name": None,
                    "course_id": self.course_id,
                    "course_name": self.course_name,
                    "issued_at": int(received_at * 1000),
                    "nonce": device_nonce(received_at),
                },
                source="device",
                received_at=received_at,
            )
        else:
            event = raw_identifier_scan(subject_id, received_at=received_at)

        self.request_focus()
        return event

    def feed(self, line: str) -> None:
        """Queue a submission for consumers iterating `scan_events()`."""
        event = self.submit(line)
        if event is not None:
            self._pending.put(event)

    def _next_event(self) -> ScanEvent | None:
        try:
            return self._pending.get(timeout=self.poll_interval)
        except queue.Empty:
            return None
