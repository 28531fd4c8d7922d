"""Camera capture: profiles, devices and the session manager."""

from umpire.capture.errors import CaptureError, CaptureErrorKind
from umpire.capture.profiles import (
    STANDARD_PROFILE,
    WIDE_PROFILE,
    CaptureMode,
    CaptureProfile,
    profile_for,
)
from umpire.capture.session import (
    CaptureSessionManager,
    FinishedRecording,
    MediaHandle,
    RecordingState,
)

__all__ = [
    "CaptureError",
    "CaptureErrorKind",
    "STANDARD_PROFILE",
    "WIDE_PROFILE",
    "CaptureMode",
    "CaptureProfile",
    "profile_for",
    "CaptureSessionManager",
    "FinishedRecording",
    "MediaHandle",
    "RecordingState",
]
