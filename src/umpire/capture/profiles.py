"""Capture profiles: the two mutually exclusive camera configurations."""

from dataclasses import dataclass
from enum import Enum


class CaptureMode(str, Enum):
    STANDARD = "standard"
    WIDE = "wide"

    @property
    def label(self) -> str:
        return "Wide-Angle" if self is CaptureMode.WIDE else "Standard"


@dataclass(frozen=True)
class CaptureConstraints:
    """Device request derived from a profile."""

    width: int
    height: int
    frame_rate: int
    facing_mode: str = "environment"


@dataclass(frozen=True)
class CaptureProfile:
    """Operator-selected device configuration. Immutable per capture session."""

    mode: CaptureMode
    resolution: tuple[int, int]
    aspect_ratio: tuple[int, int]
    frame_rate: int = 30
    stabilization: bool = True
    lens_correction: bool = False
    wide_angle_multiplier: float = 1.0
    facing_mode: str = "environment"

    @property
    def width(self) -> int:
        return self.resolution[0]

    @property
    def height(self) -> int:
        return self.resolution[1]

    def constraints(self) -> CaptureConstraints:
        return CaptureConstraints(
            width=self.width,
            height=self.height,
            frame_rate=self.frame_rate,
            facing_mode=self.facing_mode,
        )


STANDARD_PROFILE = CaptureProfile(
    mode=CaptureMode.STANDARD,
    resolution=(1920, 1080),
    aspect_ratio=(16, 9),
)

WIDE_PROFILE = CaptureProfile(
    mode=CaptureMode.WIDE,
    resolution=(2560, 1080),
    aspect_ratio=(21, 9),
    lens_correction=True,
    wide_angle_multiplier=1.33,
)

PROFILES = {
    CaptureMode.STANDARD: STANDARD_PROFILE,
    CaptureMode.WIDE: WIDE_PROFILE,
}


def profile_for(mode: CaptureMode | str) -> CaptureProfile:
    return PROFILES[CaptureMode(mode)]


def other_profile(profile: CaptureProfile) -> CaptureProfile:
    """The profile a toggle switches to."""
    if profile.mode is CaptureMode.WIDE:
        return STANDARD_PROFILE
    return WIDE_PROFILE
