"""Errors reported by the capture session manager."""

from enum import Enum


class CaptureErrorKind(str, Enum):
    DEVICE_UNAVAILABLE = "device_unavailable"
    UNSUPPORTED_ENCODING = "unsupported_encoding"
    PROFILE_SWITCH_REJECTED = "profile_switch_rejected"
    RECORDER_FAULT = "recorder_fault"


class CaptureError(Exception):
    """Base capture exception. ``kind`` tags the failure for callers."""

    kind: CaptureErrorKind = CaptureErrorKind.DEVICE_UNAVAILABLE

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message

    def to_dict(self) -> dict:
        return {"code": self.kind.value, "message": self.message}


class DeviceUnavailableError(CaptureError):
    """Raised when camera permission is denied, no device exists, or constraints are unsupported."""

    kind = CaptureErrorKind.DEVICE_UNAVAILABLE


class UnsupportedEncodingError(CaptureError):
    """Raised when no encoding candidate is supported."""

    kind = CaptureErrorKind.UNSUPPORTED_ENCODING


class ProfileSwitchRejectedError(CaptureError):
    """Raised when a profile switch is attempted during a recording or another switch."""

    kind = CaptureErrorKind.PROFILE_SWITCH_REJECTED


class RecorderFaultError(CaptureError):
    """Raised when the encoder reports a failure mid-recording."""

    kind = CaptureErrorKind.RECORDER_FAULT
