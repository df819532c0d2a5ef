import csv
import io
from typing import Literal

from fastapi import APIRouter, BackgroundTasks, Depends, File, HTTPException, Response, UploadFile
from pydantic import BaseModel

from backend.config import DEFER_ATTENDANCE_WRITES
from backend.controller import SessionController
from backend.errors import AttendanceError
from backend.pipeline import ScanDecision
from backend.security import require_session
from backend.services.controllers import close_controller, get_controller, to_http_error
from capture.frame_scanner import frame_from_bytes

router = APIRouter()

EXPORT_COLUMNS = ("subject_id", "subject_name", "recorded_at", "nonce", "source")


class ModeChoice(BaseModel):
    mode: Literal["camera", "device"]


class DeviceInput(BaseModel):
    line: str


class TokenPayload(BaseModel):
    payload: str


def _defer(background_tasks: BackgroundTasks):
    return background_tasks.add_task if DEFER_ATTENDANCE_WRITES else None


def _scan_response(controller: SessionController, decision: ScanDecision | None) -> dict:
    return {
        "detected": decision is not None,
        "decision": decision,
        "status": controller.current_status(),
        "present_count": controller.ledger.size() if controller.ledger else 0,
    }


@router.post("/capture/mode")
def choose_mode(payload: ModeChoice, controller: SessionController = Depends(get_controller)):
    try:
        controller.choose_mode(payload.mode)
    except AttendanceError as exc:
        raise to_http_error(exc)
    return {"mode": controller.mode, "state": controller.state}


@router.post("/capture/back")
def go_back(
    session: dict = Depends(require_session),
    controller: SessionController = Depends(get_controller),
):
    try:
        state = controller.back()
    except AttendanceError as exc:
        raise to_http_error(exc)
    if state == "UNAUTHENTICATED":
        close_controller(session["jti"])
    return {"state": state}


@router.post("/capture/frame")
async def upload_frame(
    background_tasks: BackgroundTasks,
    file: UploadFile = File(...),
    controller: SessionController = Depends(get_controller),
):
    if file.content_type not in ("image/jpeg", "image/png", "image/jpg"):
        raise HTTPException(status_code=400, detail="Upload JPG/PNG only.")

    frame = frame_from_bytes(await file.read())
    if frame is None:
        raise HTTPException(status_code=400, detail="Invalid image data.")

    try:
        decision = controller.submit_frame(frame, defer_write=_defer(background_tasks))
    except AttendanceError as exc:
        raise to_http_error(exc)
    return _scan_response(controller, decision)


@router.post("/capture/device")
def device_input(
    payload: DeviceInput,
    background_tasks: BackgroundTasks,
    controller: SessionController = Depends(get_controller),
):
    try:
        decision = controller.submit_device_input(payload.line, defer_write=_defer(background_tasks))
    except AttendanceError as exc:
        raise to_http_error(exc)
    return _scan_response(controller, decision)


@router.post("/capture/device/focus-lost")
def device_focus_lost(controller: SessionController = Depends(get_controller)):
    controller.device_focus_lost()
    return {"focused": controller.view()["device_focused"]}


@router.post("/capture/token")
def token_input(
    payload: TokenPayload,
    background_tasks: BackgroundTasks,
    controller: SessionController = Depends(get_controller),
):
    try:
        decision = controller.submit_payload(payload.payload, defer_write=_defer(background_tasks))
    except AttendanceError as exc:
        raise to_http_error(exc)
    return _scan_response(controller, decision)


@router.get("/capture/view")
def capture_view(controller: SessionController = Depends(get_controller)):
    return controller.view()


@router.get("/capture/export")
def export_attendance(controller: SessionController = Depends(get_controller)):
    if controller.session is None or controller.ledger is None:
        raise HTTPException(status_code=409, detail="No active session.")

    buf = io.StringIO()
    w = csv.writer(buf)
    w.writerow(EXPORT_COLUMNS)
    for row in controller.ledger.export_rows():
        w.writerow([row[col] or "" for col in EXPORT_COLUMNS])
    session_id = controller.session["session_id"]
    return Response(
        content=buf.getvalue(),
        media_type="text/csv",
        headers={"Content-Disposition": f'attachment; filename="attendance_{session_id}.csv"'},
    )
