"""Playback-synchronized review analysis."""

from umpire.analysis.clock import PlaybackClock, ReportedPlaybackClock
from umpire.analysis.decisions import DecisionType, DecisionWindow, Verdict
from umpire.analysis.engine import AnalysisEngine, AnalysisResult, LiveDecision, TrajectoryFrame

__all__ = [
    "PlaybackClock",
    "ReportedPlaybackClock",
    "DecisionType",
    "DecisionWindow",
    "Verdict",
    "AnalysisEngine",
    "AnalysisResult",
    "LiveDecision",
    "TrajectoryFrame",
]
