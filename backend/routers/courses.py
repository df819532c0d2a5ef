from fastapi import APIRouter, Depends, HTTPException

from backend.catalog import list_courses
from backend.controller import SessionController
from backend.errors import AttendanceError
from backend.services.controllers import get_controller, to_http_error

router = APIRouter()


def _require_selected(controller: SessionController, course_id: str) -> None:
    selected = controller.course["course_id"] if controller.course else None
    if selected != course_id.strip().upper():
        raise HTTPException(status_code=409, detail=f"Course {course_id} is not selected.")


@router.get("/courses")
def get_courses(_controller: SessionController = Depends(get_controller)):
    return list_courses()


@router.post("/courses/{course_id}/select")
def select_course(course_id: str, controller: SessionController = Depends(get_controller)):
    try:
        course = controller.select_course(course_id)
    except ValueError as exc:
        raise HTTPException(status_code=404, detail=str(exc))
    except AttendanceError as exc:
        raise to_http_error(exc)
    return {"course": course, "state": controller.state}


@router.get("/courses/{course_id}/sessions")
def course_history(course_id: str, controller: SessionController = Depends(get_controller)):
    _require_selected(controller, course_id)
    if controller.state == "HISTORY":
        return {"sessions": controller.view()["history"], "state": controller.state}
    try:
        sessions = controller.view_history()
    except AttendanceError as exc:
        raise to_http_error(exc)
    return {"sessions": sessions, "state": controller.state}
