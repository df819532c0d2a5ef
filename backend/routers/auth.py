import time

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel

from backend.errors import AuthError
from backend.security import require_session
from backend.services.controllers import close_controller, open_controller, to_http_error

router = APIRouter()


class LecturerLogin(BaseModel):
    principal_id: str
    password: str


@router.post("/auth/login")
def lecturer_login(payload: LecturerLogin):
    if not payload.principal_id.strip():
        raise HTTPException(status_code=400, detail="Lecturer id is required.")
    if not payload.password.strip():
        raise HTTPException(status_code=400, detail="Password is required.")

    try:
        controller = open_controller(payload.principal_id, payload.password)
    except AuthError as exc:
        raise to_http_error(exc)

    claims = controller.identity.claims
    now = int(time.time())
    return {
        "access_token": controller.identity.token,
        "token_type": "bearer",
        "principal_id": claims["sub"],
        "role": claims["role"],
        "expires_at": claims["exp"],
        "expires_in": max(0, int(claims["exp"]) - now),
        "state": controller.state,
    }


@router.post("/auth/logout")
def lecturer_logout(session: dict = Depends(require_session)):
    closed = close_controller(session["jti"])
    return {"ok": True, "closed": closed}


@router.get("/auth/me")
def auth_me(session: dict = Depends(require_session)):
    return {
        "principal_id": session.get("sub"),
        "role": session.get("role", "lecturer"),
        "expires_at": session.get("exp"),
        "issued_at": session.get("iat"),
    }
