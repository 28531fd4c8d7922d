"""Decision types, verdict tables and trigger windows for simulated reviews.

Everything here is static data. The engine picks a verdict uniformly at
random from a type's candidate list when that type's window is observed during
playback, and falls back to the per-type default when compiling a report for a
type that never fired.
"""

import math
from dataclasses import dataclass
from enum import Enum
from types import MappingProxyType
from typing import Mapping, NamedTuple


class DecisionType(str, Enum):
    """Review categories the engine simulates."""

    LBW = "lbw"
    NO_BALL = "noBall"
    EDGE = "edge"

    @property
    def label(self) -> str:
        return _LABELS[self]


_LABELS = {
    DecisionType.LBW: "LBW Decision",
    DecisionType.NO_BALL: "No-Ball Check",
    DecisionType.EDGE: "Edge Detection",
}

# Order in which types are checked on each sampler tick
CHECK_ORDER: tuple[DecisionType, ...] = (
    DecisionType.NO_BALL,
    DecisionType.EDGE,
    DecisionType.LBW,
)


@dataclass(frozen=True)
class Verdict:
    """An outcome with its justification."""

    text: str
    confidence: float
    reasoning: str

    def __post_init__(self):
        if not 0.0 <= self.confidence <= 1.0:
            raise ValueError(f"Verdict confidence must be within [0, 1], got {self.confidence}")

    def to_dict(self) -> dict:
        return {"text": self.text, "confidence": self.confidence, "reasoning": self.reasoning}


@dataclass(frozen=True)
class DecisionWindow:
    """Open playback interval (start, end) in seconds where a type may fire."""

    start: float
    end: float

    def __post_init__(self):
        if self.end <= self.start:
            raise ValueError(f"Window end must be after start: ({self.start}, {self.end})")

    def contains(self, seconds: float) -> bool:
        return self.start < seconds < self.end


class DecisionKey(NamedTuple):
    """Dedup token: one decision per type per half-second bucket."""

    decision_type: DecisionType
    bucket: int


def time_bucket(seconds: float) -> int:
    """Half-second bucket index for a playback position."""
    return math.floor(seconds * 2)


def decision_key(decision_type: DecisionType, seconds: float) -> DecisionKey:
    return DecisionKey(decision_type, time_bucket(seconds))


VERDICT_TABLE: Mapping[DecisionType, tuple[Verdict, ...]] = MappingProxyType({
    DecisionType.LBW: (
        Verdict("OUT", 0.87, "Ball pitched in line, impact in line, hitting middle stump."),
        Verdict("NOT OUT", 0.82, "Impact outside off stump, missing the stumps."),
        Verdict("OUT", 0.91, "Pitched in line, impact in line, would have hit leg stump."),
    ),
    DecisionType.NO_BALL: (
        Verdict("NO-BALL", 0.94, "Front foot clearly over the crease line."),
        Verdict("LEGAL DELIVERY", 0.96, "Front foot behind the crease at point of delivery."),
    ),
    DecisionType.EDGE: (
        Verdict("EDGE DETECTED", 0.79, "Clear spike on snicko when ball passed the bat."),
        Verdict("NO EDGE", 0.85, "No deviation in trajectory, no spike detected."),
        Verdict("EDGE DETECTED", 0.88, "Visible deflection and audio spike detected."),
    ),
})

# Used at compile time for categories that never fired
DEFAULT_VERDICTS: Mapping[DecisionType, Verdict] = MappingProxyType({
    DecisionType.LBW: Verdict("NOT OUT", 0.85, "No LBW situation detected in this footage."),
    DecisionType.NO_BALL: Verdict("LEGAL DELIVERY", 0.92, "All deliveries within legal parameters."),
    DecisionType.EDGE: Verdict("NO EDGE", 0.78, "No bat-ball contact detected."),
})

DEFAULT_WINDOWS: Mapping[DecisionType, DecisionWindow] = MappingProxyType({
    DecisionType.NO_BALL: DecisionWindow(2.0, 2.5),
    DecisionType.EDGE: DecisionWindow(3.5, 4.0),
    DecisionType.LBW: DecisionWindow(5.0, 5.5),
})


def is_adverse(verdict: Verdict) -> bool:
    """True for verdicts that go against the batter or bowler (OUT, NO-BALL, EDGE)."""
    text = verdict.text
    if text.startswith("NOT ") or text.startswith("NO EDGE"):
        return False
    return "OUT" in text or "NO-BALL" in text or "EDGE" in text
