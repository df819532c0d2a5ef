import os
import secrets
from pathlib import Path

BASE_DIR = Path(__file__).resolve().parents[1]

DB_PATH = Path(os.getenv("ROLLCALL_DB_PATH", BASE_DIR / "database" / "rollcall.db"))
LOG_LEVEL = os.getenv("ROLLCALL_LOG_LEVEL", "INFO").strip().upper() or "INFO"
LECTURER_ID = os.getenv("ROLLCALL_LECTURER_ID", "lecturer@rollcall.local").strip() or "lecturer@rollcall.local"
LECTURER_PASSWORD = os.getenv("ROLLCALL_LECTURER_PASSWORD", "lecturer123").strip() or "lecturer123"
SIGNING_KEY = os.getenv("ROLLCALL_SIGNING_KEY", "").strip() or secrets.token_urlsafe(32)
AUTH_TOKEN_TTL_SECONDS = int(os.getenv("ROLLCALL_AUTH_TOKEN_TTL_SECONDS", "43200"))


def _parse_bool(value: str | None, fallback: bool) -> bool:
    if value is None:
        return fallback
    normalized = value.strip().lower()
    if normalized in {"1", "true", "yes", "on"}:
        return True
    if normalized in {"0", "false", "no", "off"}:
        return False
    return fallback


def _parse_csv(value: str | None, fallback: list[str]) -> list[str]:
    if not value:
        return fallback
    parsed = [item.strip() for item in value.split(",") if item.strip()]
    return parsed or fallback


def _parse_float(value: str | None, fallback: float, *, minimum: float = 0.0) -> float:
    if not value:
        return fallback
    try:
        return max(minimum, float(value))
    except ValueError:
        return fallback


def _parse_camera_source(value: str | None) -> str:
    normalized = (value or "").strip().lower()
    if normalized == "local":
        return "local"
    return "upload"


CORS_ALLOW_ORIGINS = _parse_csv(
    os.getenv("ROLLCALL_CORS_ALLOW_ORIGINS"),
    ["http://localhost:5173", "http://127.0.0.1:5173"],
)
CORS_ALLOW_METHODS = _parse_csv(
    os.getenv("ROLLCALL_CORS_ALLOW_METHODS"),
    ["GET", "POST", "OPTIONS"],
)
CORS_ALLOW_HEADERS = _parse_csv(
    os.getenv("ROLLCALL_CORS_ALLOW_HEADERS"),
    ["Authorization", "Content-Type", "Accept"],
)
CORS_ALLOW_CREDENTIALS = _parse_bool(os.getenv("ROLLCALL_CORS_ALLOW_CREDENTIALS"), True)

# Camera capture
# "upload": frames are pushed by the client, "local": the server opens CAMERA_INDEX.
CAMERA_SOURCE = _parse_camera_source(os.getenv("ROLLCALL_CAMERA_SOURCE"))
CAMERA_INDEX = int(os.getenv("ROLLCALL_CAMERA_INDEX", "0"))
SCAN_COOLDOWN_SECONDS = _parse_float(os.getenv("ROLLCALL_SCAN_COOLDOWN_SECONDS"), 2.0)
FRAME_POLL_INTERVAL_SECONDS = _parse_float(os.getenv("ROLLCALL_FRAME_POLL_INTERVAL_SECONDS"), 1 / 30)
FRAME_LOSS_LIMIT = max(1, int(os.getenv("ROLLCALL_FRAME_LOSS_LIMIT", "30")))
STREAM_RESTART_DELAY_SECONDS = _parse_float(os.getenv("ROLLCALL_STREAM_RESTART_DELAY_SECONDS"), 0.1)
STREAM_RESTART_ATTEMPTS = max(0, int(os.getenv("ROLLCALL_STREAM_RESTART_ATTEMPTS", "5")))
CAMERA_PLAY_RETRY_SECONDS = _parse_float(os.getenv("ROLLCALL_CAMERA_PLAY_RETRY_SECONDS"), 0.5)

# Device (keystroke) capture
DEVICE_SYNTHETIC_TOKENS = _parse_bool(os.getenv("ROLLCALL_DEVICE_SYNTHETIC_TOKENS"), False)

# Status banner lifetimes
STATUS_ACCEPT_SECONDS = _parse_float(os.getenv("ROLLCALL_STATUS_ACCEPT_SECONDS"), 3.0)
STATUS_REJECT_SECONDS = _parse_float(os.getenv("ROLLCALL_STATUS_REJECT_SECONDS"), 2.0)

# Token issuing side
TOKEN_ROTATION_SECONDS = _parse_float(os.getenv("ROLLCALL_TOKEN_ROTATION_SECONDS"), 60.0, minimum=1.0)

# Write durable attendance rows from FastAPI background tasks instead of inline.
DEFER_ATTENDANCE_WRITES = _parse_bool(os.getenv("ROLLCALL_DEFER_ATTENDANCE_WRITES"), False)
