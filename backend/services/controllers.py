import logging
import threading
import time
from typing import Any

from fastapi import Depends, HTTPException

from backend.controller import SessionController
from backend.errors import (
    AttendanceError,
    AuthError,
    CaptureAcquisitionError,
    DecodeError,
    InvalidTransition,
    PersistenceError,
)
from backend.gateway import PersistenceGateway
from backend.security import IdentityGateway, require_session

logger = logging.getLogger(__name__)

# -----------------------------
# Live controllers (in-memory), one per bearer token
# -----------------------------
CONTROLLERS_LOCK = threading.Lock()
CONTROLLERS: dict[str, SessionController] = {}


def _pop_stale_locked(now: int, *, principal_id: str | None = None) -> list[SessionController]:
    """Unregister expired controllers, and any held by `principal_id`. Caller holds the lock."""
    stale = []
    for token_id, controller in list(CONTROLLERS.items()):
        claims = controller.identity.claims
        expired = claims is None or int(claims["exp"]) < now
        if expired or (principal_id is not None and controller.identity.principal_id == principal_id):
            stale.append(CONTROLLERS.pop(token_id))
    return stale


def _logout_all(stale: list[SessionController]) -> None:
    for controller in stale:
        try:
            controller.logout()
        except Exception:
            logger.exception("Failed to close controller cleanly")


def prune_controllers() -> int:
    """Close controllers whose bearer token has expired or been revoked."""
    with CONTROLLERS_LOCK:
        stale = _pop_stale_locked(int(time.time()))
    _logout_all(stale)
    return len(stale)


def open_controller(principal_id: str, secret: str) -> SessionController:
    """
    Authenticate a fresh controller and register it under its token id.

    One live controller per lecturer: an earlier login for the same principal
    is closed, which releases any capture adapter it still held.
    """
    controller = SessionController(IdentityGateway(), PersistenceGateway())
    controller.login(principal_id, secret)
    token_id = controller.identity.claims["jti"]
    with CONTROLLERS_LOCK:
        stale = _pop_stale_locked(int(time.time()), principal_id=controller.identity.principal_id)
        CONTROLLERS[token_id] = controller
    _logout_all(stale)
    if stale:
        logger.info("Closed %d stale controller(s) on login", len(stale))
    return controller


def close_controller(token_id: str) -> bool:
    with CONTROLLERS_LOCK:
        controller = CONTROLLERS.pop(token_id, None)
    if controller is None:
        return False
    controller.logout()
    return True


def close_all_controllers() -> int:
    with CONTROLLERS_LOCK:
        controllers = list(CONTROLLERS.values())
        CONTROLLERS.clear()
    _logout_all(controllers)
    return len(controllers)


def get_controller(session: dict[str, Any] = Depends(require_session)) -> SessionController:
    prune_controllers()
    with CONTROLLERS_LOCK:
        controller = CONTROLLERS.get(session["jti"])
    if controller is None:
        raise HTTPException(status_code=401, detail="Session is no longer active.")
    return controller


HTTP_STATUS_FOR_ERROR: dict[type[AttendanceError], int] = {
    AuthError: 401,
    InvalidTransition: 409,
    CaptureAcquisitionError: 503,
    DecodeError: 400,
    PersistenceError: 503,
}


def to_http_error(exc: AttendanceError) -> HTTPException:
    for error_cls, status_code in HTTP_STATUS_FOR_ERROR.items():
        if isinstance(exc, error_cls):
            return HTTPException(status_code=status_code, detail=str(exc))
    return HTTPException(status_code=400, detail=str(exc))
