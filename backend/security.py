import base64
import hashlib
import hmac
import json
import secrets
import sqlite3
import threading
import time
from typing import Any

from fastapi import Header, HTTPException

from backend.config import AUTH_TOKEN_TTL_SECONDS, SIGNING_KEY
from backend.errors import AuthError
from database.db import create_tables, verify_lecturer_credentials

_REVOKED_LOCK = threading.Lock()
_REVOKED_TOKEN_IDS: set[str] = set()


def _b64url_encode(raw: bytes) -> str:
    return base64.urlsafe_b64encode(raw).rstrip(b"=").decode("ascii")


def _b64url_decode(value: str) -> bytes:
    padding = "=" * (-len(value) % 4)
    return base64.urlsafe_b64decode(value + padding)


def _sign(payload_b64: str) -> str:
    digest = hmac.new(
        SIGNING_KEY.encode("utf-8"),
        payload_b64.encode("ascii"),
        hashlib.sha256,
    ).digest()
    return _b64url_encode(digest)


def issue_session_token(principal_id: str, *, role: str = "lecturer") -> tuple[str, dict[str, Any]]:
    now = int(time.time())
    payload = {
        "sub": principal_id.strip(),
        "role": role,
        "jti": secrets.token_hex(8),
        "iat": now,
        "exp": now + AUTH_TOKEN_TTL_SECONDS,
    }
    payload_json = json.dumps(payload, separators=(",", ":"), sort_keys=True)
    payload_b64 = _b64url_encode(payload_json.encode("utf-8"))
    token = f"{payload_b64}.{_sign(payload_b64)}"
    return token, payload


def revoke_token_id(token_id: str) -> None:
    with _REVOKED_LOCK:
        _REVOKED_TOKEN_IDS.add(token_id)


def is_revoked(token_id: str) -> bool:
    with _REVOKED_LOCK:
        return token_id in _REVOKED_TOKEN_IDS


def decode_session_token(token: str) -> dict[str, Any] | None:
    if not token or "." not in token:
        return None

    payload_b64, signature = token.split(".", 1)
    expected = _sign(payload_b64)
    if not hmac.compare_digest(signature, expected):
        return None

    try:
        payload_raw = _b64url_decode(payload_b64).decode("utf-8")
        payload = json.loads(payload_raw)
    except Exception:
        return None

    if not isinstance(payload, dict):
        return None

    sub = payload.get("sub")
    exp = payload.get("exp")
    jti = payload.get("jti")
    if not isinstance(sub, str) or not sub.strip():
        return None
    if not isinstance(exp, int):
        return None
    if exp < int(time.time()):
        return None
    if not isinstance(jti, str) or is_revoked(jti):
        return None

    return payload


def require_session(authorization: str | None = Header(default=None)) -> dict[str, Any]:
    if not authorization:
        raise HTTPException(status_code=401, detail="Missing bearer token.")

    scheme, _, token = authorization.partition(" ")
    if scheme.lower() != "bearer" or not token:
        raise HTTPException(status_code=401, detail="Invalid authorization scheme.")

    payload = decode_session_token(token.strip())
    if not payload:
        raise HTTPException(status_code=401, detail="Invalid or expired session token.")

    return payload


class IdentityGateway:
    """Lecturer identity for one controller: at most one live bearer token."""

    def __init__(self) -> None:
        self.principal_id: str | None = None
        self.token: str | None = None
        self.claims: dict[str, Any] | None = None

    @property
    def authenticated(self) -> bool:
        return self.token is not None

    def authenticate(self, principal_id: str, secret: str) -> str:
        principal = (principal_id or "").strip()
        password = (secret or "").strip()
        if not principal or not password:
            raise AuthError("Lecturer id and password are required.")

        try:
            lecturer = verify_lecturer_credentials(principal, password)
        except sqlite3.OperationalError:
            # Self-heal when the schema is missing (e.g. startup skipped).
            try:
                create_tables()
                lecturer = verify_lecturer_credentials(principal, password)
            except sqlite3.OperationalError as exc:
                raise AuthError("Authentication service unavailable. Please retry.") from exc

        if not lecturer:
            raise AuthError("Invalid credentials")

        self.deauthenticate()
        token, claims = issue_session_token(lecturer["principal_id"])
        self.principal_id = lecturer["principal_id"]
        self.token = token
        self.claims = claims
        return token

    def deauthenticate(self) -> None:
        if self.claims is not None:
            revoke_token_id(self.claims["jti"])
        self.principal_id = None
        self.token = None
        self.claims = None
