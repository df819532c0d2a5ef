import logging
import time
from typing import Callable

import cv2  # type: ignore
import numpy as np  # type: ignore

from backend.config import (
    CAMERA_INDEX,
    CAMERA_PLAY_RETRY_SECONDS,
    FRAME_LOSS_LIMIT,
    FRAME_POLL_INTERVAL_SECONDS,
    SCAN_COOLDOWN_SECONDS,
    STREAM_RESTART_ATTEMPTS,
    STREAM_RESTART_DELAY_SECONDS,
)
from backend.errors import CaptureAcquisitionError, DecodeError
from capture.codec import decode_token
from capture.events import CaptureAdapter, ScanEvent, failed_token_scan, token_scan

logger = logging.getLogger(__name__)


def local_camera_factory(index: int = CAMERA_INDEX) -> Callable[[], "cv2.VideoCapture"]:
    def _open():
        return cv2.VideoCapture(index)

    return _open


def frame_from_bytes(data: bytes):
    """Decode JPG/PNG bytes into a BGR frame, or None when the bytes are not an image."""
    if not data:
        return None
    img_array = np.frombuffer(data, np.uint8)
    return cv2.imdecode(img_array, cv2.IMREAD_COLOR)


class QRFrameDecoder:
    def __init__(self) -> None:
        self._detector = cv2.QRCodeDetector()

    def __call__(self, frame) -> str | None:
        try:
            data, _points, _straight = self._detector.detectAndDecode(frame)
        except cv2.error:
            return None
        return data or None


class FrameScanAdapter(CaptureAdapter):
    """
    Camera adapter: polls frames, decodes QR symbols and emits TokenScan events.

    With a stream factory the adapter owns the video stream and `scan_events()`
    runs the poll loop. Without one (push mode) frames are handed in through
    `process_frame()` and only the cooldown/decode path applies.
    """

    source = "camera"

    def __init__(
        self,
        stream_factory: Callable[[], object] | None = None,
        *,
        decoder: Callable[[object], str | None] | None = None,
        cooldown_seconds: float = SCAN_COOLDOWN_SECONDS,
        poll_interval: float = FRAME_POLL_INTERVAL_SECONDS,
        frame_loss_limit: int = FRAME_LOSS_LIMIT,
        restart_delay: float = STREAM_RESTART_DELAY_SECONDS,
        restart_attempts: int = STREAM_RESTART_ATTEMPTS,
        play_retry_delay: float = CAMERA_PLAY_RETRY_SECONDS,
        clock: Callable[[], float] = time.monotonic,
        wall_clock: Callable[[], float] = time.time,
    ):
        super().__init__()
        self._stream_factory = stream_factory
        self._decoder = decoder
        self.cooldown_seconds = cooldown_seconds
        self.poll_interval = poll_interval
        self.frame_loss_limit = max(1, frame_loss_limit)
        self.restart_delay = restart_delay
        self.restart_attempts = restart_attempts
        self.play_retry_delay = play_retry_delay
        self._clock = clock
        self._wall_clock = wall_clock

        self._stream = None
        self._misses = 0
        self._restart_at: float | None = None
        self._restart_count = 0
        self._last_detection: float | None = None
        self.stream_failed = False

    @property
    def push_mode(self) -> bool:
        return self._stream_factory is None

    @property
    def has_stream(self) -> bool:
        return self._stream is not None

    # -----------------------------
    # Acquisition
    # -----------------------------
    def _open_once(self):
        """Open one stream. Returns None (already released) if it opens but yields no frame."""
        stream = self._stream_factory()
        try:
            if not stream.isOpened():
                raise CaptureAcquisitionError("Could not access camera")
            ok, _frame = stream.read()
        except BaseException:
            stream.release()
            raise
        if not ok:
            stream.release()
            return None
        return stream

    def _acquire(self) -> None:
        self.stream_failed = False
        self._last_detection = None
        if self.push_mode:
            return

        stream = self._open_once()
        if stream is None:
            logger.warning("Camera play failed, retrying in %.1fs", self.play_retry_delay)
            if self._cancel.wait(self.play_retry_delay):
                raise CaptureAcquisitionError("Camera acquisition cancelled")
            stream = self._open_once()
            if stream is None:
                raise CaptureAcquisitionError("Camera play failed")

        self._stream = stream
        self._misses = 0
        self._restart_at = None
        self._restart_count = 0
        logger.info("Camera stream acquired")

    def _release(self) -> None:
        stream = self._stream
        self._stream = None
        self._restart_at = None
        if stream is not None:
            stream.release()
            logger.info("Camera stream released")

    # -----------------------------
    # Poll loop
    # -----------------------------
    def _stream_lost(self, now: float) -> None:
        stream = self._stream
        self._stream = None
        if stream is not None:
            stream.release()
        if self._restart_count >= self.restart_attempts:
            logger.error("Camera stream lost; giving up after %d restart attempts", self._restart_count)
            self.stream_failed = True
            self.deactivate()
            return
        logger.warning("Stream lost during scan, restarting...")
        self._restart_at = now + self.restart_delay

    def _restart(self, now: float) -> None:
        self._restart_count += 1
        self._restart_at = None
        try:
            stream = self._open_once()
        except CaptureAcquisitionError:
            stream = None
        if stream is None:
            self._stream_lost(now)
            return
        self._stream = stream
        self._misses = 0
        self._restart_count = 0
        logger.info("Camera stream recovered")

    def tick(self) -> ScanEvent | None:
        """Run one poll iteration. Returns an event or None (silence)."""
        with self._state_lock:
            if not self._active or self.push_mode:
                return None

            now = self._clock()
            stream = self._stream
            if stream is None:
                if self._restart_at is not None and now >= self._restart_at:
                    self._restart(now)
                return None

            if not stream.isOpened():
                self._stream_lost(now)
                return None

            ok, frame = stream.read()
            if not ok or frame is None:
                self._misses += 1
                if self._misses >= self.frame_loss_limit:
                    self._stream_lost(now)
                return None
            self._misses = 0

        # Decoding runs outside the lock; process_frame re-checks activity.
        return self.process_frame(frame)

    def _next_event(self) -> ScanEvent | None:
        event = self.tick()
        if event is None:
            self._cancel.wait(self.poll_interval)
        return event

    # -----------------------------
    # Frame decoding
    # -----------------------------
    def decode_frame(self, frame) -> str | None:
        if self._decoder is None:
            self._decoder = QRFrameDecoder()
        return self._decoder(frame)

    def process_frame(self, frame) -> ScanEvent | None:
        if not self._active:
            return None
        text = self.decode_frame(frame)
        if not text:
            return None
        return self.process_payload(text)

    def process_payload(self, text: str) -> ScanEvent | None:
        """Apply the global cooldown and decode a detected payload."""
        if not self._active:
            return None
        now = self._clock()
        if self._last_detection is not None and now - self._last_detection < self.cooldown_seconds:
            logger.debug("Payload dropped inside %.1fs cooldown", self.cooldown_seconds)
            return None
        self._last_detection = now

        received_at = self._wall_clock()
        try:
            token = decode_token(text)
        except DecodeError as exc:
            logger.info("Scanned payload rejected: %s", exc)
            return failed_token_scan(exc, source="camera", received_at=received_at)
        return token_scan(token, source="camera", received_at=received_at)
