from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel

from backend.controller import SessionController
from backend.errors import AttendanceError
from backend.services.controllers import get_controller, to_http_error

router = APIRouter()


class SessionCreate(BaseModel):
    name: str | None = None
    description: str | None = None
    date: str | None = None


@router.post("/sessions/setup")
def session_setup(controller: SessionController = Depends(get_controller)):
    try:
        defaults = controller.begin_session_setup()
    except AttendanceError as exc:
        raise to_http_error(exc)
    return {"defaults": defaults, "state": controller.state}


@router.post("/sessions")
def create_session(payload: SessionCreate, controller: SessionController = Depends(get_controller)):
    try:
        session = controller.submit_session(payload.name, payload.description, payload.date)
    except AttendanceError as exc:
        raise to_http_error(exc)
    return {
        "session": session,
        "synced": controller.session_synced,
        "state": controller.state,
    }


@router.get("/sessions/{session_id}/attendance")
def session_attendance(session_id: str, controller: SessionController = Depends(get_controller)):
    try:
        if controller.state == "SESSION_DETAILS":
            controller.close_session_details()
        records = controller.open_session_details(session_id)
    except ValueError as exc:
        raise HTTPException(status_code=404, detail=str(exc))
    except AttendanceError as exc:
        raise to_http_error(exc)
    return {
        "session": controller.session_details,
        "records": records,
        "state": controller.state,
    }
