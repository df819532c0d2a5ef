import logging
import threading
import time
from datetime import datetime
from typing import Any, Callable, Literal

from backend.catalog import Course, get_course
from backend.config import (
    CAMERA_SOURCE,
    STATUS_ACCEPT_SECONDS,
    STATUS_REJECT_SECONDS,
)
from backend.errors import CaptureAcquisitionError, InvalidTransition, PersistenceError
from backend.gateway import PersistenceGateway
from backend.ledger import AttendanceLedger
from backend.pipeline import DeferWrite, ScanDecision, evaluate_scan
from backend.security import IdentityGateway
from capture.events import CaptureAdapter, ScanEvent
from capture.frame_scanner import FrameScanAdapter, local_camera_factory
from capture.keystroke import KeystrokeAdapter
from capture.loop import CameraLoop
from database.db import AttendanceRecord, SessionRecord

logger = logging.getLogger(__name__)

ControllerState = Literal[
    "UNAUTHENTICATED",
    "COURSE_SELECTION",
    "COURSE_DASHBOARD",
    "HISTORY",
    "SESSION_DETAILS",
    "SESSION_SETUP",
    "MODE_SELECTION",
    "CAMERA_CAPTURE",
    "DEVICE_CAPTURE",
]
CaptureMode = Literal["camera", "device"]

CAPTURE_STATES: set[str] = {"CAMERA_CAPTURE", "DEVICE_CAPTURE"}

BACK_TRANSITIONS: dict[str, ControllerState] = {
    "CAMERA_CAPTURE": "MODE_SELECTION",
    "DEVICE_CAPTURE": "MODE_SELECTION",
    "MODE_SELECTION": "COURSE_DASHBOARD",
    "SESSION_SETUP": "COURSE_DASHBOARD",
    "HISTORY": "COURSE_DASHBOARD",
    "SESSION_DETAILS": "HISTORY",
    "COURSE_DASHBOARD": "COURSE_SELECTION",
    "COURSE_SELECTION": "UNAUTHENTICATED",
}

IDLE_PROMPTS: dict[str, str] = {
    "CAMERA_CAPTURE": "Position QR code in frame",
    "DEVICE_CAPTURE": "Waiting for scanner input",
}


def _base36(value: int) -> str:
    digits = "0123456789abcdefghijklmnopqrstuvwxyz"
    if value <= 0:
        return "0"
    out = []
    while value:
        value, rem = divmod(value, 36)
        out.append(digits[rem])
    return "".join(reversed(out))


def default_camera_factory() -> FrameScanAdapter:
    if CAMERA_SOURCE == "local":
        return FrameScanAdapter(local_camera_factory())
    return FrameScanAdapter()


def default_device_factory(course: Course) -> KeystrokeAdapter:
    return KeystrokeAdapter(course_id=course["course_id"], course_name=course["name"])


class SessionController:
    """
    Lecturer-side state machine around the capture core.

    Owns the active course, the active session, its ledger and the single
    active capture adapter. Leaving a capture state by any path (back, mode
    change, logout, close) deactivates the adapter before the next state is
    entered.
    """

    def __init__(
        self,
        identity: IdentityGateway | None = None,
        gateway: PersistenceGateway | None = None,
        *,
        camera_factory: Callable[[], FrameScanAdapter] = default_camera_factory,
        device_factory: Callable[[Course], KeystrokeAdapter] = default_device_factory,
        run_camera_loop: bool = True,
        clock: Callable[[], float] = time.monotonic,
        now: Callable[[], datetime] = datetime.now,
    ):
        self.identity = identity or IdentityGateway()
        self.gateway = gateway
        self._camera_factory = camera_factory
        self._device_factory = device_factory
        self._run_camera_loop = run_camera_loop
        self._clock = clock
        self._now = now
        self._lock = threading.RLock()

        self.state: ControllerState = "UNAUTHENTICATED"
        self.course: Course | None = None
        self.session: SessionRecord | None = None
        self.session_synced = False
        self.ledger: AttendanceLedger | None = None
        self.adapter: CaptureAdapter | None = None
        self.mode: CaptureMode | None = None
        self.setup_defaults: dict[str, str] | None = None
        self.history: list[SessionRecord] = []
        self.session_details: SessionRecord | None = None
        self.session_details_records: list[AttendanceRecord] = []
        self.persistence_failures: list[AttendanceRecord] = []
        self._camera_loop: CameraLoop | None = None
        self._status: dict[str, Any] = {}
        self._reset_status()

    # -----------------------------
    # Helpers
    # -----------------------------
    def _require(self, action: str, *states: str) -> None:
        if self.state not in states:
            raise InvalidTransition(self.state, action)

    def _transition(self, target: ControllerState) -> None:
        if self.state in CAPTURE_STATES and target != self.state:
            self._deactivate_adapter()
        logger.debug("Controller %s -> %s", self.state, target)
        self.state = target

    def _deactivate_adapter(self) -> None:
        loop = self._camera_loop
        self._camera_loop = None
        adapter = self.adapter
        self.adapter = None
        self.mode = None
        try:
            if loop is not None:
                loop.stop()
        finally:
            if adapter is not None:
                adapter.deactivate()

    def _reset_status(self) -> None:
        self._status = {
            "message": IDLE_PROMPTS.get(self.state, ""),
            "success": None,
            "subject_id": None,
            "decision_code": None,
            "expires_at": None,
        }

    def _set_status(self, message: str, *, success: bool | None, subject_id=None, decision_code=None, ttl=None):
        self._status = {
            "message": message,
            "success": success,
            "subject_id": subject_id,
            "decision_code": decision_code,
            "expires_at": self._clock() + ttl if ttl else None,
        }

    def current_status(self) -> dict[str, Any]:
        with self._lock:
            expires_at = self._status["expires_at"]
            if expires_at is not None and self._clock() >= expires_at:
                self._reset_status()
            return {k: v for k, v in self._status.items() if k != "expires_at"}

    # -----------------------------
    # Authentication
    # -----------------------------
    def login(self, principal_id: str, secret: str) -> str:
        with self._lock:
            self._require("log in", "UNAUTHENTICATED")
            token = self.identity.authenticate(principal_id, secret)
            self._transition("COURSE_SELECTION")
            logger.info("Lecturer %s logged in", self.identity.principal_id)
            return token

    def logout(self) -> None:
        with self._lock:
            try:
                self._deactivate_adapter()
            finally:
                self.identity.deauthenticate()
                self.course = None
                self.session = None
                self.session_synced = False
                self.ledger = None
                self.setup_defaults = None
                self.history = []
                self.session_details = None
                self.session_details_records = []
                self.persistence_failures = []
                self.state = "UNAUTHENTICATED"
                self._reset_status()

    def close(self) -> None:
        with self._lock:
            self._deactivate_adapter()
            if self.state in CAPTURE_STATES:
                self.state = "MODE_SELECTION"

    # -----------------------------
    # Course + history
    # -----------------------------
    def select_course(self, course_id: str) -> Course:
        with self._lock:
            self._require("select a course", "COURSE_SELECTION")
            course = get_course(course_id)
            if course is None:
                raise ValueError(f"Unknown course {course_id!r}.")
            self.course = course
            self._transition("COURSE_DASHBOARD")
            return course

    def view_history(self) -> list[SessionRecord]:
        with self._lock:
            self._require("view history", "COURSE_DASHBOARD")
            self._transition("HISTORY")
            self.history = []
            if self.gateway is not None:
                try:
                    self.history = self.gateway.list_sessions(self.course["course_id"])
                except PersistenceError as exc:
                    logger.warning("Failed to load session history: %s", exc)
            return list(self.history)

    def open_session_details(self, session_id: str) -> list[AttendanceRecord]:
        with self._lock:
            self._require("open session details", "HISTORY")
            details = next((s for s in self.history if s["session_id"] == session_id), None)
            if details is None:
                raise ValueError(f"Unknown session {session_id!r}.")
            records: list[AttendanceRecord] = []
            if self.gateway is not None:
                try:
                    records = self.gateway.list_attendance(session_id)
                except PersistenceError as exc:
                    logger.warning("Failed to load attendance records for %s: %s", session_id, exc)
            self.session_details = details
            self.session_details_records = records
            self._transition("SESSION_DETAILS")
            return list(records)

    def close_session_details(self) -> None:
        with self._lock:
            self._require("close session details", "SESSION_DETAILS")
            self.session_details = None
            self.session_details_records = []
            self._transition("HISTORY")

    # -----------------------------
    # Session lifecycle
    # -----------------------------
    def begin_session_setup(self) -> dict[str, str]:
        with self._lock:
            self._require("start a session", "COURSE_DASHBOARD")
            self.setup_defaults = {
                "name": f"Lecture: {self.course['name']}",
                "description": "",
                "date": self._now().date().isoformat(),
            }
            self._transition("SESSION_SETUP")
            return dict(self.setup_defaults)

    def submit_session(
        self,
        name: str | None = None,
        description: str | None = None,
        date: str | None = None,
    ) -> SessionRecord:
        with self._lock:
            self._require("submit a session", "SESSION_SETUP")
            defaults = self.setup_defaults or {}
            created = self._now()
            session: SessionRecord = {
                "session_id": f"{self.course['course_id']}-{_base36(int(created.timestamp() * 1000))}",
                "course_id": self.course["course_id"],
                "name": (name or "").strip() or defaults.get("name", ""),
                "description": (description or "").strip(),
                "date": (date or "").strip() or defaults.get("date", created.date().isoformat()),
                "created_at": created.isoformat(timespec="seconds"),
            }

            # A new session always starts from an empty ledger and nonce set.
            self.session = session
            self.ledger = AttendanceLedger(session["session_id"])
            self.persistence_failures = []
            self.session_synced = False
            if self.gateway is not None:
                try:
                    self.gateway.create_session(session)
                    self.session_synced = True
                except PersistenceError as exc:
                    logger.warning("Backend session sync skipped - local mode active (%s)", exc)

            self._transition("MODE_SELECTION")
            self._reset_status()
            logger.info("Session %s started for %s", session["session_id"], session["course_id"])
            return session

    def choose_mode(self, mode: CaptureMode) -> None:
        with self._lock:
            self._require("choose a capture mode", "MODE_SELECTION")
            if mode == "camera":
                adapter: CaptureAdapter = self._camera_factory()
                target: ControllerState = "CAMERA_CAPTURE"
            elif mode == "device":
                adapter = self._device_factory(self.course)
                target = "DEVICE_CAPTURE"
            else:
                raise ValueError(f"Unknown capture mode {mode!r}.")

            try:
                adapter.activate()
            except CaptureAcquisitionError as exc:
                logger.warning("Camera access error: %s", exc)
                self._set_status("Could not access camera", success=False)
                raise

            self.adapter = adapter
            self.mode = mode
            self._transition(target)
            self._reset_status()

            if (
                mode == "camera"
                and self._run_camera_loop
                and isinstance(adapter, FrameScanAdapter)
                and not adapter.push_mode
            ):
                self._camera_loop = CameraLoop(adapter, self._handle_from_loop, on_exit=self._on_loop_exit)
                self._camera_loop.start()

    def back(self) -> ControllerState:
        with self._lock:
            target = BACK_TRANSITIONS.get(self.state)
            if target is None:
                raise InvalidTransition(self.state, "go back")

            if self.state in CAPTURE_STATES:
                self._deactivate_adapter()
                if self.ledger is not None:
                    self.ledger.clear_visible()
            elif self.state == "SESSION_DETAILS":
                self.session_details = None
                self.session_details_records = []
            elif self.state == "COURSE_SELECTION":
                self.logout()
                return self.state
            elif self.state == "COURSE_DASHBOARD":
                self.course = None

            self._transition(target)
            self._reset_status()
            return self.state

    # -----------------------------
    # Scanning
    # -----------------------------
    def _on_persistence_failure(self, record: AttendanceRecord, exc: PersistenceError) -> None:
        with self._lock:
            self.persistence_failures.append(record)
            self._set_status(
                "Database error - try again",
                success=False,
                subject_id=record["subject_id"],
                decision_code="REJECTED_PERSISTENCE_FAILURE",
                ttl=STATUS_REJECT_SECONDS,
            )

    def _handle_scan_locked(self, event: ScanEvent, defer_write: DeferWrite | None) -> ScanDecision:
        decision = evaluate_scan(
            event,
            self.session,
            self.ledger,
            self.gateway,
            defer_write=defer_write,
            on_persistence_failure=self._on_persistence_failure,
            clock=self._now,
        )
        if decision["decision_code"] == "REJECTED_PERSISTENCE_FAILURE":
            self.persistence_failures.append(decision["record"])
        if self.gateway is not None:
            self.gateway.record_scan_event(
                decision_code=decision["decision_code"],
                message=decision["message"],
                source=decision["source"],
                session_id=decision["session_id"],
                subject_id=decision["subject_id"],
                nonce=decision["nonce"],
            )
        self._set_status(
            decision["message"],
            success=decision["accepted"],
            subject_id=decision["subject_id"],
            decision_code=decision["decision_code"],
            ttl=STATUS_ACCEPT_SECONDS if decision["accepted"] else STATUS_REJECT_SECONDS,
        )
        return decision

    def handle_scan(self, event: ScanEvent, *, defer_write: DeferWrite | None = None) -> ScanDecision:
        with self._lock:
            self._require("record attendance", *CAPTURE_STATES)
            return self._handle_scan_locked(event, defer_write)

    def _handle_from_loop(self, event: ScanEvent, stop: threading.Event) -> ScanDecision | None:
        # Never block on the controller lock: whoever holds it may be joining this loop.
        while not stop.is_set():
            if self._lock.acquire(timeout=0.05):
                try:
                    if self.state != "CAMERA_CAPTURE" or stop.is_set():
                        return None
                    return self._handle_scan_locked(event, None)
                finally:
                    self._lock.release()
        return None

    def _on_loop_exit(self, adapter: CaptureAdapter, stop: threading.Event) -> None:
        if not getattr(adapter, "stream_failed", False):
            return
        while not stop.is_set():
            if self._lock.acquire(timeout=0.05):
                try:
                    if self.adapter is adapter and self.state == "CAMERA_CAPTURE":
                        self._set_status("Camera stream lost", success=False)
                finally:
                    self._lock.release()
                return

    def submit_device_input(self, line: str, *, defer_write: DeferWrite | None = None) -> ScanDecision | None:
        with self._lock:
            self._require("submit device input", "DEVICE_CAPTURE")
            event = self.adapter.submit(line)
            if event is None:
                return None
            return self._handle_scan_locked(event, defer_write)

    def device_focus_lost(self) -> None:
        with self._lock:
            if self.state == "DEVICE_CAPTURE" and isinstance(self.adapter, KeystrokeAdapter):
                self.adapter.focus_lost()

    def submit_frame(self, frame, *, defer_write: DeferWrite | None = None) -> ScanDecision | None:
        with self._lock:
            self._require("submit a frame", "CAMERA_CAPTURE")
            event = self.adapter.process_frame(frame)
            if event is None:
                return None
            return self._handle_scan_locked(event, defer_write)

    def submit_payload(self, text: str, *, defer_write: DeferWrite | None = None) -> ScanDecision | None:
        with self._lock:
            self._require("submit a payload", "CAMERA_CAPTURE")
            event = self.adapter.process_payload(text)
            if event is None:
                return None
            return self._handle_scan_locked(event, defer_write)

    def poll_camera(self) -> ScanDecision | None:
        """One cooperative tick for hosts that drive the camera themselves."""
        with self._lock:
            self._require("poll the camera", "CAMERA_CAPTURE")
            adapter = self.adapter
            event = adapter.tick()
            if not adapter.is_active and getattr(adapter, "stream_failed", False):
                self._set_status("Camera stream lost", success=False)
            if event is None:
                return None
            return self._handle_scan_locked(event, None)

    # -----------------------------
    # View
    # -----------------------------
    def view(self) -> dict[str, Any]:
        with self._lock:
            adapter = self.adapter
            return {
                "state": self.state,
                "principal_id": self.identity.principal_id,
                "course": self.course,
                "session": self.session,
                "session_synced": self.session_synced,
                "mode": self.mode,
                "adapter_active": bool(adapter and adapter.is_active),
                "device_focused": bool(isinstance(adapter, KeystrokeAdapter) and adapter.has_focus),
                "present_count": self.ledger.size() if self.ledger else 0,
                "records": self.ledger.records() if self.ledger else [],
                "status": self.current_status(),
                "persistence_failures": len(self.persistence_failures),
                "setup_defaults": self.setup_defaults if self.state == "SESSION_SETUP" else None,
                "history": list(self.history) if self.state in {"HISTORY", "SESSION_DETAILS"} else [],
                "session_details": self.session_details,
                "session_details_records": list(self.session_details_records),
            }
