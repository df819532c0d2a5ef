from typing import Literal

DecodeErrorKind = Literal["malformed", "missing_field"]


class AttendanceError(Exception):
    """Base class for every error raised by the capture core."""


class DecodeError(AttendanceError):
    def __init__(self, kind: DecodeErrorKind, message: str, *, field: str | None = None):
        super().__init__(message)
        self.kind = kind
        self.field = field


class ReplayError(AttendanceError):
    pass


class WrongCourseError(AttendanceError):
    pass


class DuplicateSubjectError(AttendanceError):
    pass


class PersistenceError(AttendanceError):
    pass


class CaptureAcquisitionError(AttendanceError):
    pass


class AuthError(AttendanceError):
    pass


class InvalidTransition(AttendanceError):
    def __init__(self, state: str, action: str):
        super().__init__(f"Cannot {action} from state {state}.")
        self.state = state
        self.action = action
