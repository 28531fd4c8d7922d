"""API routes for the review backend."""

import asyncio
import random
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import AsyncGenerator, Callable, Optional

from fastapi import APIRouter, File, HTTPException, Query, UploadFile
from fastapi.responses import FileResponse, StreamingResponse
from loguru import logger

from umpire.analysis.clock import ReportedPlaybackClock
from umpire.analysis.engine import AnalysisEngine, AnalysisResult, LiveDecision
from umpire.api.schemas import (
    CameraModeData,
    CreateSessionRequest,
    LiveDecisionModel,
    PlaybackEventRequest,
    ProcessingStatus,
    SessionSnapshot,
    TrajectoryFrame,
    UploadResponse,
    VideoAnalysisResult,
    VideoListResponse,
    VideoSummary,
)
from umpire.capture.devices import MediaDevices, OpenCVDevices
from umpire.capture.profiles import CaptureMode, profile_for
from umpire.capture.session import CaptureSessionManager, FinishedRecording
from umpire.core.config import settings
from umpire.core.database import get_database_stats as db_stats
from umpire.core.ids import new_media_id
from umpire.core.video import get_video_info
from umpire.models.video import (
    create_video,
    delete_video,
    get_all_videos,
    get_analysis_result,
    get_camera_mode,
    get_video,
    get_video_status,
    set_video_status,
    store_analysis_result,
    update_camera_mode,
    update_video,
)

router = APIRouter()

# content type -> file suffix for stored media
ALLOWED_CONTENT_TYPES = {
    "video/mp4": ".mp4",
    "video/quicktime": ".mov",
    "video/x-msvideo": ".avi",
    "video/webm": ".webm",
}

_UPLOAD_CHUNK_SIZE = 1024 * 1024


def sse_event(event_type: str, payload: str) -> str:
    """Format an SSE event."""
    return f"event: {event_type}\ndata: {payload}\n\n"


# ============================================================================
# Stored videos
# ============================================================================


def _media_path(video_id: str, mime_type: str) -> Path:
    suffix = ALLOWED_CONTENT_TYPES.get(mime_type.split(";")[0], ".bin")
    return settings.media_dir / f"{video_id}{suffix}"


async def _probe_and_mark_processing(video_id: str, path: Path) -> Optional[dict]:
    """Probe stored media and move the video to 'processing'."""
    video_info = None
    try:
        video_info = await asyncio.to_thread(get_video_info, path)
    except Exception as e:
        # Unprobeable media can still be played back by the client
        logger.warning(f"Could not probe video {video_id}: {e}")

    await update_video(video_id, video_info=video_info, size_bytes=path.stat().st_size)
    await set_video_status(video_id, "processing", progress=100)
    return video_info


@router.post("/upload", response_model=UploadResponse)
async def upload_video(
    file: UploadFile = File(...),
    mode: CaptureMode = Query(CaptureMode.STANDARD),
):
    """Upload a video clip for review."""
    content_type = (file.content_type or "").split(";")[0].strip()
    if content_type not in ALLOWED_CONTENT_TYPES:
        raise HTTPException(
            status_code=400,
            detail="Invalid file type. Please upload MP4, MOV, AVI, or WebM files.",
        )

    video_id = new_media_id()
    file_path = _media_path(video_id, content_type)
    file_path.parent.mkdir(parents=True, exist_ok=True)

    await create_video(
        video_id,
        mime_type=content_type,
        media_path=str(file_path),
        status="uploading",
        active_mode=mode,
    )

    size = 0
    try:
        with open(file_path, "wb") as buffer:
            while chunk := await file.read(_UPLOAD_CHUNK_SIZE):
                size += len(chunk)
                if size > settings.max_upload_bytes:
                    raise HTTPException(
                        status_code=413,
                        detail=f"File too large. Maximum size is "
                               f"{settings.max_upload_bytes // (1024 * 1024)}MB.",
                    )
                buffer.write(chunk)
    except HTTPException:
        file_path.unlink(missing_ok=True)
        await delete_video(video_id)
        raise
    except Exception as e:
        file_path.unlink(missing_ok=True)
        await set_video_status(video_id, "failed", error=str(e))
        logger.exception(f"Failed to save uploaded file: {e}")
        raise HTTPException(status_code=500, detail=f"Failed to save file: {e}")

    logger.info(f"Uploaded video {video_id} saved to {file_path} ({size} bytes)")

    video_info = await _probe_and_mark_processing(video_id, file_path)

    return UploadResponse(
        id=video_id,
        filename=file.filename,
        mime_type=content_type,
        size=size,
        media_url=f"/api/videos/{video_id}/media",
        duration=video_info["duration"] if video_info else None,
    )


async def store_recording(finished: FinishedRecording) -> UploadResponse:
    """Persist a finished capture-session recording like an upload."""
    file_path = _media_path(finished.id, finished.mime_type)
    await asyncio.to_thread(finished.media.save, file_path)

    await create_video(
        finished.id,
        mime_type=finished.mime_type,
        media_path=str(file_path),
        size_bytes=finished.media.size,
        status="uploading",
        active_mode=finished.profile.mode,
    )
    video_info = await _probe_and_mark_processing(finished.id, file_path)

    duration = video_info["duration"] if video_info and video_info["duration"] else finished.duration
    return UploadResponse(
        id=finished.id,
        mime_type=finished.mime_type,
        size=finished.media.size,
        media_url=f"/api/videos/{finished.id}/media",
        duration=duration,
    )


async def _require_video(video_id: str) -> dict:
    video = await get_video(video_id)
    if not video:
        raise HTTPException(status_code=404, detail=f"Video {video_id} not found")
    return video


@router.get("/videos", response_model=VideoListResponse)
async def list_videos(limit: int = 50, mode: Optional[CaptureMode] = None):
    """List stored videos, optionally filtered by capture mode."""
    videos = await get_all_videos(limit=limit, mode=mode)
    summaries = [VideoSummary(**video) for video in videos]
    return VideoListResponse(videos=summaries, count=len(summaries))


@router.delete("/videos/{video_id}")
async def delete_video_endpoint(video_id: str):
    """Delete a video, its stored media and its analysis result."""
    video = await _require_video(video_id)

    await _close_session(video_id)
    await delete_video(video_id)

    if video.get("media_path"):
        Path(video["media_path"]).unlink(missing_ok=True)

    return {"status": "deleted", "video_id": video_id}


@router.get("/videos/{video_id}/status", response_model=ProcessingStatus)
async def get_status(video_id: str):
    """Get the tagged processing status of a video."""
    status = await get_video_status(video_id)
    if status is None:
        raise HTTPException(status_code=404, detail=f"Video {video_id} not found")
    return status


@router.get("/videos/{video_id}/media")
async def stream_media(video_id: str):
    """Serve the stored media blob."""
    video = await _require_video(video_id)
    media_path = video.get("media_path")
    if not media_path or not Path(media_path).exists():
        raise HTTPException(status_code=404, detail=f"Media for video {video_id} not found")
    return FileResponse(media_path, media_type=video["mime_type"].split(";")[0])


@router.get("/videos/{video_id}/result", response_model=Optional[VideoAnalysisResult])
async def get_result(video_id: str):
    """Get the compiled analysis result, or null if none was stored yet."""
    await _require_video(video_id)
    return await get_analysis_result(video_id)


@router.put("/videos/{video_id}/result")
async def put_result(video_id: str, result: VideoAnalysisResult):
    """Store a compiled analysis result and mark the video completed."""
    await _require_video(video_id)
    await store_analysis_result(video_id, result.model_dump())
    return {"status": "stored", "video_id": video_id}


@router.get("/videos/{video_id}/camera-mode", response_model=CameraModeData)
async def get_camera_mode_endpoint(video_id: str):
    camera_mode = await get_camera_mode(video_id)
    if camera_mode is None:
        raise HTTPException(status_code=404, detail=f"Video {video_id} not found")
    return camera_mode


@router.put("/videos/{video_id}/camera-mode")
async def put_camera_mode(video_id: str, camera_mode: CameraModeData):
    await _require_video(video_id)
    await update_camera_mode(video_id, camera_mode.model_dump(mode="json"))
    return {"status": "updated", "video_id": video_id, "active_mode": camera_mode.active_mode.value}


@router.get("/db/stats")
async def get_database_stats():
    """Get database statistics."""
    return await db_stats()


# ============================================================================
# Live analysis sessions
# ============================================================================


@dataclass
class LiveSession:
    """One playback session: a reported clock, its engine and the SSE feed."""

    video_id: str
    clock: ReportedPlaybackClock
    engine: AnalysisEngine
    events: asyncio.Queue = field(default_factory=lambda: asyncio.Queue(maxsize=100))
    persist_task: Optional[asyncio.Task] = None

    def publish(self, event_type: str, payload: str) -> None:
        try:
            self.events.put_nowait((event_type, payload))
        except asyncio.QueueFull:
            # Client is slow, drop the event
            logger.warning(f"Event queue full for session {self.video_id}, skipping {event_type}")

    def snapshot(self) -> SessionSnapshot:
        engine = self.engine
        active = engine.active_decision()
        return SessionSnapshot(
            video_id=self.video_id,
            state=engine.state.value,
            analysis_enabled=engine.analysis_enabled,
            playing=engine.playing,
            position=self.clock.position,
            duration=self.clock.duration,
            trajectory=[TrajectoryFrame(ball_position=f.ball_position) for f in engine.trajectory],
            decisions=[LiveDecisionModel.from_engine(d) for d in engine.decisions],
            active_decision=LiveDecisionModel.from_engine(active) if active else None,
            result=VideoAnalysisResult.from_engine(engine.result) if engine.result else None,
        )


_sessions: dict[str, LiveSession] = {}


async def _persist_result(video_id: str, result: VideoAnalysisResult) -> None:
    try:
        await store_analysis_result(video_id, result.model_dump())
        logger.info(f"Stored compiled analysis result for video {video_id}")
    except Exception as e:
        logger.exception(f"Failed to store analysis result for {video_id}: {e}")


def _open_session(video_id: str, duration: float, seed: Optional[int]) -> LiveSession:
    clock = ReportedPlaybackClock(duration=duration)
    engine = AnalysisEngine(
        clock,
        rng=random.Random(seed) if seed is not None else None,
        session_id=video_id,
    )
    session = LiveSession(video_id=video_id, clock=clock, engine=engine)

    def on_decision(decision: LiveDecision) -> None:
        session.publish("decision", LiveDecisionModel.from_engine(decision).model_dump_json())

    def on_result(result: AnalysisResult) -> None:
        model = VideoAnalysisResult.from_engine(result)
        session.publish("complete", model.model_dump_json())
        session.persist_task = asyncio.get_running_loop().create_task(
            _persist_result(video_id, model)
        )

    engine.add_observer(on_decision)
    engine.add_result_listener(on_result)
    return session


async def _close_session(video_id: str) -> None:
    session = _sessions.pop(video_id, None)
    if session is None:
        return
    session.engine.close()
    session.publish("closed", "{}")
    if session.persist_task is not None and not session.persist_task.done():
        await session.persist_task
    logger.info(f"Closed analysis session for video {video_id}")


def _get_session(video_id: str) -> LiveSession:
    session = _sessions.get(video_id)
    if session is None:
        raise HTTPException(status_code=404, detail=f"No analysis session for video {video_id}")
    return session


@router.post("/sessions/{video_id}", response_model=SessionSnapshot)
async def create_session(video_id: str, request: Optional[CreateSessionRequest] = None):
    """Open a live analysis session for a stored video.

    Replaces any existing session for the same video.
    """
    video = await _require_video(video_id)
    request = request or CreateSessionRequest()

    duration = request.duration
    if duration is None:
        duration = (video.get("video_info") or {}).get("duration") or 0.0

    await _close_session(video_id)
    session = _open_session(video_id, duration, request.seed)
    _sessions[video_id] = session

    logger.info(f"Opened analysis session for video {video_id} (duration {duration:.2f}s)")
    return session.snapshot()


@router.get("/sessions/{video_id}", response_model=SessionSnapshot)
async def get_session(video_id: str):
    return _get_session(video_id).snapshot()


@router.post("/sessions/{video_id}/playback", response_model=SessionSnapshot)
async def report_playback(video_id: str, request: PlaybackEventRequest):
    """Apply a play/pause/seek/ended notification from the client."""
    session = _get_session(video_id)
    clock = session.clock

    if request.duration is not None:
        clock.set_duration(request.duration)

    if request.event == "play":
        clock.play(at=request.position)
    elif request.event == "pause":
        clock.pause(at=request.position)
    elif request.event == "seek":
        if request.position is None:
            raise HTTPException(status_code=400, detail="Seek requires a position")
        clock.seek(request.position)
    else:
        clock.end()

    return session.snapshot()


@router.get("/sessions/{video_id}/events")
async def stream_session_events(video_id: str):
    """Stream fired decisions and the compiled result via Server-Sent Events."""
    session = _get_session(video_id)

    async def event_generator() -> AsyncGenerator[str, None]:
        # Late joiners get everything fired so far
        for decision in session.engine.decisions:
            yield sse_event("decision", LiveDecisionModel.from_engine(decision).model_dump_json())
        if session.engine.result is not None:
            result = VideoAnalysisResult.from_engine(session.engine.result)
            yield sse_event("complete", result.model_dump_json())
            return

        while True:
            try:
                event_type, payload = await asyncio.wait_for(session.events.get(), timeout=30.0)
            except asyncio.TimeoutError:
                yield ": keepalive\n\n"
                if _sessions.get(video_id) is not session:
                    break
                continue

            if event_type == "closed":
                break
            yield sse_event(event_type, payload)
            if event_type == "complete":
                break

    return StreamingResponse(
        event_generator(),
        media_type="text/event-stream",
        headers={
            "Cache-Control": "no-cache",
            "Connection": "keep-alive",
            "X-Accel-Buffering": "no",  # Disable buffering in nginx
        },
    )


@router.delete("/sessions/{video_id}")
async def delete_session(video_id: str):
    _get_session(video_id)
    await _close_session(video_id)
    return {"status": "closed", "video_id": video_id}


async def close_all_sessions() -> None:
    for video_id in list(_sessions):
        await _close_session(video_id)


# ============================================================================
# Server-side camera capture
# ============================================================================

# Swapped out in tests
devices_factory: Callable[[], MediaDevices] = OpenCVDevices

_capture_manager: Optional[CaptureSessionManager] = None


def _get_capture_manager() -> CaptureSessionManager:
    global _capture_manager
    if _capture_manager is None:
        _capture_manager = CaptureSessionManager(devices_factory())
    return _capture_manager


def _capture_status(manager: CaptureSessionManager) -> dict:
    error = manager.last_error
    return {
        "active": manager.active,
        "loading": manager.loading,
        "switching": manager.switching,
        "recording": manager.is_recording,
        "mode": manager.profile.mode.value,
        "error": error.to_dict() if error else None,
        "checked_at": datetime.utcnow().isoformat(),
    }


def _capture_failure(manager: CaptureSessionManager, status_code: int = 409) -> HTTPException:
    error = manager.last_error
    detail = error.to_dict() if error else {"code": "unknown", "message": "Capture failed"}
    return HTTPException(status_code=status_code, detail=detail)


@router.get("/capture")
async def capture_status():
    return _capture_status(_get_capture_manager())


@router.post("/capture/start")
async def start_capture(mode: Optional[CaptureMode] = None):
    """Start the camera, optionally under a specific capture mode."""
    manager = _get_capture_manager()
    profile = profile_for(mode) if mode else None
    if not await manager.start_capture(profile):
        raise _capture_failure(manager, status_code=503)
    return _capture_status(manager)


@router.post("/capture/mode")
async def switch_capture_mode(mode: Optional[CaptureMode] = None):
    """Switch to ``mode``, or toggle between standard and wide."""
    manager = _get_capture_manager()
    if mode is None:
        switched = await manager.toggle_profile()
    else:
        switched = await manager.switch_profile(profile_for(mode))
    if not switched:
        raise _capture_failure(manager)
    return _capture_status(manager)


@router.post("/capture/record/start")
async def start_recording():
    manager = _get_capture_manager()
    if manager.begin_recording() is None:
        raise _capture_failure(manager)
    return _capture_status(manager)


@router.post("/capture/record/stop", response_model=UploadResponse)
async def stop_recording():
    """Finish the recording, store it and return the new video."""
    manager = _get_capture_manager()
    finished = await manager.end_recording()
    if finished is None:
        raise _capture_failure(manager)
    return await store_recording(finished)


@router.post("/capture/stop")
async def stop_capture():
    """Cancel any recording and release the camera."""
    manager = _get_capture_manager()
    await manager.cancel()
    return _capture_status(manager)


async def shutdown_capture() -> None:
    global _capture_manager
    if _capture_manager is not None:
        await _capture_manager.close()
        _capture_manager = None
