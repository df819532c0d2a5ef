from fastapi import APIRouter

from backend.config import (
    CAMERA_PLAY_RETRY_SECONDS,
    CAMERA_SOURCE,
    DEFER_ATTENDANCE_WRITES,
    DEVICE_SYNTHETIC_TOKENS,
    FRAME_LOSS_LIMIT,
    FRAME_POLL_INTERVAL_SECONDS,
    SCAN_COOLDOWN_SECONDS,
    STATUS_ACCEPT_SECONDS,
    STATUS_REJECT_SECONDS,
    STREAM_RESTART_ATTEMPTS,
    STREAM_RESTART_DELAY_SECONDS,
    TOKEN_ROTATION_SECONDS,
)

router = APIRouter()


@router.get("/health")
def health():
    return {"status": "ok"}


@router.get("/config/capture")
def capture_config():
    return {
        "camera_source": CAMERA_SOURCE,
        "scan_cooldown_seconds": SCAN_COOLDOWN_SECONDS,
        "frame_poll_interval_seconds": FRAME_POLL_INTERVAL_SECONDS,
        "frame_loss_limit": FRAME_LOSS_LIMIT,
        "stream_restart_delay_seconds": STREAM_RESTART_DELAY_SECONDS,
        "stream_restart_attempts": STREAM_RESTART_ATTEMPTS,
        "camera_play_retry_seconds": CAMERA_PLAY_RETRY_SECONDS,
        "device_synthetic_tokens": DEVICE_SYNTHETIC_TOKENS,
        "status_accept_seconds": STATUS_ACCEPT_SECONDS,
        "status_reject_seconds": STATUS_REJECT_SECONDS,
        "token_rotation_seconds": TOKEN_ROTATION_SECONDS,
        "defer_attendance_writes": DEFER_ATTENDANCE_WRITES,
    }
