import json
import time
from datetime import datetime

import pytest

import backend.config as config
from backend.controller import SessionController
from backend.errors import AuthError, CaptureAcquisitionError, InvalidTransition, PersistenceError
from backend.gateway import PersistenceGateway
from backend.security import decode_session_token
from capture.frame_scanner import FrameScanAdapter
from capture.keystroke import KeystrokeAdapter


def _payload(subject_id="S1", course_id="CS-404", nonce="n1"):
    return json.dumps({"subjectId": subject_id, "courseId": course_id, "courseName": "x", "issuedAt": 0, "nonce": nonce})


class Clock:
    def __init__(self, now=100.0):
        self.now = now

    def __call__(self):
        return self.now


class BrokenGateway(PersistenceGateway):
    def create_session(self, session):
        raise PersistenceError("offline")

    def append_attendance(self, *args, **kwargs):
        raise PersistenceError("offline")

    def list_sessions(self, course_id):
        raise PersistenceError("offline")

    def list_attendance(self, session_id):
        raise PersistenceError("offline")

    def record_scan_event(self, **kwargs):
        pass


class UnavailableCamera(FrameScanAdapter):
    def _acquire(self):
        raise CaptureAcquisitionError("Could not access camera")


def _push_camera():
    return FrameScanAdapter(decoder=lambda frame: frame, cooldown_seconds=0)


@pytest.fixture()
def status_clock():
    return Clock()


@pytest.fixture()
def controller(temp_db, status_clock):
    ctrl = SessionController(
        gateway=PersistenceGateway(),
        camera_factory=_push_camera,
        clock=status_clock,
        now=lambda: datetime(2026, 3, 2, 9, 0, 0),
    )
    yield ctrl
    ctrl.close()


def _to_capture(ctrl, mode="camera", course_id="CS-404"):
    if ctrl.state == "UNAUTHENTICATED":
        ctrl.login(config.LECTURER_ID, config.LECTURER_PASSWORD)
    ctrl.select_course(course_id)
    ctrl.begin_session_setup()
    ctrl.submit_session()
    ctrl.choose_mode(mode)
    return ctrl


def test_login_failure_leaves_state_unchanged(controller):
    with pytest.raises(AuthError):
        controller.login(config.LECTURER_ID, "nope")
    assert controller.state == "UNAUTHENTICATED"
    assert not controller.identity.authenticated


def test_login_then_course_selection(controller):
    token = controller.login(config.LECTURER_ID, config.LECTURER_PASSWORD)
    assert decode_session_token(token)["sub"] == config.LECTURER_ID
    assert controller.state == "COURSE_SELECTION"

    course = controller.select_course("cs-404")
    assert course["name"] == "Network Security"
    assert controller.state == "COURSE_DASHBOARD"


def test_unknown_course_is_rejected(controller):
    controller.login(config.LECTURER_ID, config.LECTURER_PASSWORD)
    with pytest.raises(ValueError):
        controller.select_course("XX-999")
    assert controller.state == "COURSE_SELECTION"


def test_operations_outside_their_state_are_invalid(controller):
    with pytest.raises(InvalidTransition):
        controller.select_course("CS-404")
    with pytest.raises(InvalidTransition):
        controller.choose_mode("camera")
    with pytest.raises(InvalidTransition):
        controller.back()


def test_session_setup_defaults_and_submission(controller):
    controller.login(config.LECTURER_ID, config.LECTURER_PASSWORD)
    controller.select_course("CS-404")

    defaults = controller.begin_session_setup()
    assert defaults == {"name": "Lecture: Network Security", "description": "", "date": "2026-03-02"}

    session = controller.submit_session(description=" Week 1 ")
    assert session["name"] == "Lecture: Network Security"
    assert session["description"] == "Week 1"
    assert session["session_id"].startswith("CS-404-")
    assert controller.session_synced
    assert controller.state == "MODE_SELECTION"
    assert controller.ledger.session_id == session["session_id"]


def test_camera_scans_flow_through_pipeline(controller):
    _to_capture(controller)
    assert controller.state == "CAMERA_CAPTURE"

    first = controller.submit_frame(_payload())
    second = controller.submit_payload(_payload())
    third = controller.submit_payload(_payload(nonce="n2"))
    other = controller.submit_payload(_payload("S2", course_id="CS-302", nonce="n3"))

    assert first["decision_code"] == "ACCEPTED"
    assert first["persisted"] is True
    assert second["decision_code"] == "REJECTED_REPLAY"
    assert third["decision_code"] == "REJECTED_DUPLICATE"
    assert other["decision_code"] == "REJECTED_WRONG_COURSE"

    view = controller.view()
    assert view["present_count"] == 1
    assert [r["subject_id"] for r in view["records"]] == ["S1"]
    assert view["status"]["message"] == "Wrong course QR code"
    assert view["adapter_active"]


def test_status_message_expires(controller, status_clock):
    _to_capture(controller)
    controller.submit_payload(_payload())
    assert controller.current_status()["message"] == "✓ S1 marked present"

    status_clock.now += config.STATUS_ACCEPT_SECONDS
    assert controller.current_status()["message"] == "Position QR code in frame"

    controller.submit_payload(_payload())
    status_clock.now += config.STATUS_REJECT_SECONDS - 0.5
    assert controller.current_status()["message"] == "Already scanned!"
    status_clock.now += 0.5
    assert controller.current_status()["success"] is None


def test_device_mode_normalizes_identifiers(controller):
    _to_capture(controller, mode="device")
    assert controller.state == "DEVICE_CAPTURE"
    assert isinstance(controller.adapter, KeystrokeAdapter)
    assert controller.view()["device_focused"]

    assert controller.submit_device_input("   ") is None
    first = controller.submit_device_input("s1")
    again = controller.submit_device_input("S1")

    assert first["decision_code"] == "ACCEPTED"
    assert first["subject_id"] == "S1"
    assert again["decision_code"] == "REJECTED_DUPLICATE"


def test_back_from_capture_releases_adapter_and_clears_list(controller):
    _to_capture(controller)
    adapter = controller.adapter
    controller.submit_payload(_payload())

    assert controller.back() == "MODE_SELECTION"
    assert not adapter.is_active
    assert controller.adapter is None
    assert controller.view()["records"] == []

    controller.choose_mode("camera")
    replay = controller.submit_payload(_payload())
    assert replay["decision_code"] == "REJECTED_REPLAY"


def test_switching_modes_keeps_one_adapter(controller):
    _to_capture(controller, mode="device")
    device = controller.adapter
    controller.back()
    controller.choose_mode("camera")

    assert not device.is_active
    assert controller.adapter.is_active
    assert controller.mode == "camera"


def test_camera_acquisition_failure_stays_in_mode_selection(temp_db):
    ctrl = SessionController(gateway=PersistenceGateway(), camera_factory=lambda: UnavailableCamera())
    ctrl.login(config.LECTURER_ID, config.LECTURER_PASSWORD)
    ctrl.select_course("CS-404")
    ctrl.begin_session_setup()
    ctrl.submit_session()

    with pytest.raises(CaptureAcquisitionError):
        ctrl.choose_mode("camera")

    assert ctrl.state == "MODE_SELECTION"
    assert ctrl.adapter is None
    assert ctrl.current_status()["message"] == "Could not access camera"
    ctrl.choose_mode("device")
    assert ctrl.state == "DEVICE_CAPTURE"
    ctrl.close()


class DroppingStream:
    """Yields the warm-up frame, then nothing."""

    def __init__(self):
        self.reads = 0
        self.released = False

    def isOpened(self):
        return not self.released

    def read(self):
        self.reads += 1
        if self.reads == 1:
            return True, "frame"
        return False, None

    def release(self):
        self.released = True


def test_camera_loop_reports_lost_stream(temp_db):
    stream = DroppingStream()
    ctrl = SessionController(
        gateway=PersistenceGateway(),
        camera_factory=lambda: FrameScanAdapter(
            lambda: stream,
            decoder=lambda frame: None,
            poll_interval=0.01,
            frame_loss_limit=1,
            restart_attempts=0,
        ),
        run_camera_loop=True,
    )
    _to_capture(ctrl)

    deadline = time.monotonic() + 2.0
    while ctrl.current_status()["message"] != "Camera stream lost" and time.monotonic() < deadline:
        time.sleep(0.01)

    status = ctrl.current_status()
    assert status["message"] == "Camera stream lost"
    assert status["success"] is False
    assert ctrl.state == "CAMERA_CAPTURE"
    assert stream.released
    assert not ctrl.adapter.is_active
    ctrl.close()


def test_new_session_resets_ledger(controller):
    _to_capture(controller)
    controller.submit_payload(_payload())
    controller.back()
    controller.back()

    controller.begin_session_setup()
    controller.submit_session(name="Second")
    controller.choose_mode("camera")

    assert controller.submit_payload(_payload())["decision_code"] == "ACCEPTED"


def test_local_mode_when_gateway_is_down(temp_db):
    ctrl = SessionController(gateway=BrokenGateway(), camera_factory=_push_camera)
    _to_capture(ctrl)

    assert not ctrl.session_synced
    decision = ctrl.submit_payload(_payload())

    assert decision["decision_code"] == "REJECTED_PERSISTENCE_FAILURE"
    assert ctrl.view()["present_count"] == 1
    assert ctrl.view()["persistence_failures"] == 1
    assert ctrl.submit_payload(_payload(nonce="n2"))["decision_code"] == "REJECTED_DUPLICATE"
    ctrl.close()


def test_deferred_write_failure_sets_status(temp_db):
    ctrl = SessionController(gateway=BrokenGateway(), camera_factory=_push_camera)
    _to_capture(ctrl)
    scheduled = []

    decision = ctrl.submit_payload(_payload(), defer_write=lambda fn, *args: scheduled.append((fn, args)))
    assert decision["decision_code"] == "ACCEPTED"

    fn, args = scheduled[0]
    fn(*args)

    status = ctrl.current_status()
    assert status["message"] == "Database error - try again"
    assert status["decision_code"] == "REJECTED_PERSISTENCE_FAILURE"
    assert ctrl.view()["persistence_failures"] == 1
    ctrl.close()


def test_history_side_path(controller):
    _to_capture(controller)
    controller.submit_payload(_payload())
    session_id = controller.session["session_id"]
    controller.back()
    controller.back()

    sessions = controller.view_history()
    assert [s["session_id"] for s in sessions] == [session_id]
    assert controller.state == "HISTORY"

    records = controller.open_session_details(session_id)
    assert [r["subject_id"] for r in records] == ["S1"]
    assert controller.state == "SESSION_DETAILS"

    assert controller.back() == "HISTORY"
    assert controller.back() == "COURSE_DASHBOARD"


def test_history_errors_yield_empty_lists(temp_db):
    ctrl = SessionController(gateway=BrokenGateway())
    ctrl.login(config.LECTURER_ID, config.LECTURER_PASSWORD)
    ctrl.select_course("CS-404")

    assert ctrl.view_history() == []
    with pytest.raises(ValueError):
        ctrl.open_session_details("CS-404-missing")


def test_logout_discards_session_and_ledger(controller):
    _to_capture(controller)
    adapter = controller.adapter
    token = controller.identity.token

    controller.logout()

    assert controller.state == "UNAUTHENTICATED"
    assert controller.session is None
    assert controller.ledger is None
    assert controller.course is None
    assert not adapter.is_active
    assert decode_session_token(token) is None


def test_back_from_course_selection_logs_out(controller):
    controller.login(config.LECTURER_ID, config.LECTURER_PASSWORD)
    assert controller.back() == "UNAUTHENTICATED"
    assert not controller.identity.authenticated


def test_close_releases_adapter(controller):
    _to_capture(controller, mode="device")
    adapter = controller.adapter

    controller.close()

    assert not adapter.is_active
    assert controller.state == "MODE_SELECTION"
