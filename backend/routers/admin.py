from typing import cast

from fastapi import APIRouter, Depends, HTTPException, Query

from backend.security import require_session
from backend.services.controllers import close_all_controllers
from database.db import DecisionCode, clear_attendance, get_scan_events

router = APIRouter(dependencies=[Depends(require_session)])
ALLOWED_DECISION_CODES: set[str] = {
    "ACCEPTED",
    "REJECTED_MALFORMED",
    "REJECTED_REPLAY",
    "REJECTED_WRONG_COURSE",
    "REJECTED_DUPLICATE",
    "REJECTED_PERSISTENCE_FAILURE",
}


@router.post("/admin/reset/attendance")
def reset_attendance():
    # Live ledgers would disagree with an empty database; close them first.
    closed = close_all_controllers()
    clear_attendance()
    return {
        "ok": True,
        "message": "Sessions, attendance logs and scan events cleared",
        "controllers_closed": closed,
    }


@router.get("/admin/scan-events")
def list_scan_events(
    session_id: str | None = None,
    decision_code: str | None = None,
    limit: int = Query(default=100, ge=1, le=500),
):
    clean_decision = decision_code.strip().upper() if decision_code else None
    if clean_decision and clean_decision not in ALLOWED_DECISION_CODES:
        raise HTTPException(status_code=400, detail="Invalid decision_code filter.")

    rows = get_scan_events(
        session_id=session_id,
        decision_code=cast(DecisionCode | None, clean_decision),
        limit=limit,
    )
    return {"rows": rows, "limit": limit}
