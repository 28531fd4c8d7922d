"""Pydantic schemas for API request/response models."""

from typing import Annotated, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field

from umpire.analysis.decisions import is_adverse
from umpire.analysis.engine import AnalysisResult, LiveDecision
from umpire.capture.profiles import CaptureMode


class Verdict(BaseModel):
    """An outcome with its justification."""

    text: str
    confidence: float = Field(..., ge=0, le=1, description="Verdict confidence (0-1)")
    reasoning: str


class TrajectoryFrame(BaseModel):
    """One sampled ball position."""

    ball_position: tuple[float, float]


class VideoAnalysisResult(BaseModel):
    """Compiled review report: one verdict per category plus the trajectory."""

    model_config = ConfigDict(ser_json_bytes="base64", val_json_bytes="base64")

    lbw_decision: Verdict
    no_ball_decision: Verdict
    edge_detection: Verdict
    frame_data: list[TrajectoryFrame] = Field(default_factory=list)
    trajectory_overlay: bytes = Field(b"", description="Placeholder overlay image")
    snicko_overlay: bytes = Field(b"", description="Placeholder snicko trace")

    @classmethod
    def from_engine(cls, result: AnalysisResult) -> "VideoAnalysisResult":
        return cls(
            lbw_decision=Verdict(**result.lbw_decision.to_dict()),
            no_ball_decision=Verdict(**result.no_ball_decision.to_dict()),
            edge_detection=Verdict(**result.edge_detection.to_dict()),
            frame_data=[TrajectoryFrame(ball_position=f.ball_position) for f in result.frame_data],
            trajectory_overlay=result.trajectory_overlay,
            snicko_overlay=result.snicko_overlay,
        )


class UploadingStatus(BaseModel):
    kind: Literal["uploading"] = "uploading"
    progress: int = Field(0, ge=0, le=100)


class ProcessingState(BaseModel):
    kind: Literal["processing"] = "processing"


class CompletedStatus(BaseModel):
    kind: Literal["completed"] = "completed"
    result: Optional[VideoAnalysisResult] = None


class FailedStatus(BaseModel):
    kind: Literal["failed"] = "failed"
    error: str


ProcessingStatus = Annotated[
    Union[UploadingStatus, ProcessingState, CompletedStatus, FailedStatus],
    Field(discriminator="kind"),
]


class StandardSettings(BaseModel):
    resolution: tuple[int, int]
    aspect_ratio: tuple[int, int]
    frame_rate: int = Field(..., gt=0)
    stabilization: bool


class WideSettings(StandardSettings):
    lens_correction: bool
    wide_angle_multiplier: float = Field(..., gt=0)


class CameraModeData(BaseModel):
    """Capture configuration stored with a video."""

    active_mode: CaptureMode
    field_of_view: int = Field(..., gt=0, le=360)
    standard_settings: StandardSettings
    wide_settings: WideSettings


class VideoSummary(BaseModel):
    """Summary of a stored video for listing."""

    id: str
    mime_type: str
    size_bytes: int
    status: str
    active_mode: CaptureMode
    created_at: str
    updated_at: Optional[str] = None


class VideoListResponse(BaseModel):
    videos: list[VideoSummary]
    count: int


class UploadResponse(BaseModel):
    """Response after storing an uploaded clip."""

    id: str
    filename: Optional[str] = None
    mime_type: str
    size: int
    media_url: str
    duration: Optional[float] = None


class LiveDecisionModel(BaseModel):
    """A decision fired during live analysis."""

    type: str
    label: str
    verdict: Verdict
    fired_at: float
    visible: bool = True
    adverse: bool = Field(False, description="Verdict goes against the batter or bowler")

    @classmethod
    def from_engine(cls, decision: LiveDecision) -> "LiveDecisionModel":
        return cls(
            type=decision.decision_type.value,
            label=decision.decision_type.label,
            verdict=Verdict(**decision.verdict.to_dict()),
            fired_at=decision.fired_at,
            visible=decision.visible,
            adverse=is_adverse(decision.verdict),
        )


class CreateSessionRequest(BaseModel):
    """Request to open a live analysis session for a video."""

    duration: Optional[float] = Field(None, ge=0, description="Clip duration in seconds")
    seed: Optional[int] = Field(None, description="Random seed for reproducible verdicts")


class PlaybackEventRequest(BaseModel):
    """A playback notification reported by the client's media element."""

    event: Literal["play", "pause", "seek", "ended"]
    position: Optional[float] = Field(None, ge=0, description="Media position in seconds")
    duration: Optional[float] = Field(None, ge=0)


class SessionSnapshot(BaseModel):
    """Read-only view of a live analysis session."""

    video_id: str
    state: str
    analysis_enabled: bool
    playing: bool
    position: float
    duration: float
    trajectory: list[TrajectoryFrame]
    decisions: list[LiveDecisionModel]
    active_decision: Optional[LiveDecisionModel] = None
    result: Optional[VideoAnalysisResult] = None
