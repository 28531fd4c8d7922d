"""Capture session manager.

Owns a live camera stream under one capture profile, switches between the
standard and wide profiles, and encodes a recording into a single media blob.

Every failure is caught at this boundary: operations return a falsy value and
the tagged ``CaptureError`` is available as ``last_error`` (and, for device
and recorder failures, as ``session.error``). Requests refused because a
switch or stop is still running only set ``last_error``. Teardown never raises.
"""

import asyncio
import time
from dataclasses import dataclass, field
from enum import Enum
from functools import partial
from pathlib import Path
from typing import Callable, Optional

from loguru import logger

from umpire.capture.devices import ENCODING_CANDIDATES, Encoder, MediaDevices, MediaStream
from umpire.capture.errors import (
    CaptureError,
    CaptureErrorKind,
    DeviceUnavailableError,
    ProfileSwitchRejectedError,
    RecorderFaultError,
    UnsupportedEncodingError,
)
from umpire.capture.profiles import STANDARD_PROFILE, CaptureProfile, other_profile
from umpire.core.config import settings
from umpire.core.ids import new_media_id


class RecordingState(str, Enum):
    IDLE = "idle"
    RECORDING = "recording"
    STOPPED = "stopped"


# A stopped recording is terminal; a new recording needs a new RecordingSession
_ALLOWED_TRANSITIONS = {
    RecordingState.IDLE: {RecordingState.RECORDING, RecordingState.STOPPED},
    RecordingState.RECORDING: {RecordingState.STOPPED},
    RecordingState.STOPPED: set(),
}


@dataclass
class RecordingSession:
    """An in-progress encode of the capture stream."""

    mime_type: str
    state: RecordingState = RecordingState.IDLE
    chunks: list[bytes] = field(default_factory=list)
    started_at: float = field(default_factory=time.monotonic)
    encoder: Optional[Encoder] = field(default=None, repr=False)
    fault: Optional[CaptureError] = None

    @property
    def size(self) -> int:
        return sum(len(c) for c in self.chunks)

    def advance(self, state: RecordingState) -> None:
        if state not in _ALLOWED_TRANSITIONS[self.state]:
            raise ValueError(f"Invalid recording transition {self.state.value} -> {state.value}")
        self.state = state


@dataclass
class CaptureSession:
    """The device stream and its observable status."""

    profile: CaptureProfile
    active: bool = False
    loading: bool = False
    error: Optional[CaptureError] = None
    stream: Optional[MediaStream] = field(default=None, repr=False)


class MediaHandle:
    """Byte-addressable view of a finished recording."""

    def __init__(self, media_id: str, data: bytes, mime_type: str):
        self.media_id = media_id
        self.mime_type = mime_type
        self._data = data

    @property
    def url(self) -> str:
        return f"memory://{self.media_id}"

    @property
    def size(self) -> int:
        return len(self._data)

    @property
    def data(self) -> bytes:
        return self._data

    def read(self, start: int = 0, end: Optional[int] = None) -> bytes:
        """Return bytes ``[start, end)``."""
        return self._data[start:end]

    def save(self, path: Path) -> Path:
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_bytes(self._data)
        return path


@dataclass(frozen=True)
class FinishedRecording:
    id: str
    mime_type: str
    media: MediaHandle
    profile: CaptureProfile
    duration: float


RecordingCallback = Callable[[FinishedRecording], None]


class CaptureSessionManager:
    """Lifecycle of one camera stream and its recordings.

    Usage:
        async with CaptureSessionManager(OpenCVDevices()) as manager:
            await manager.start_capture()
            manager.begin_recording()
            ...
            finished = await manager.end_recording()
    """

    def __init__(
        self,
        devices: MediaDevices,
        profile: CaptureProfile = STANDARD_PROFILE,
        *,
        on_recording: Optional[RecordingCallback] = None,
        settle_seconds: Optional[float] = None,
        timeslice: Optional[float] = None,
        encodings: tuple[str, ...] = ENCODING_CANDIDATES,
    ):
        self._devices = devices
        self._on_recording = on_recording
        self._settle_seconds = (
            settings.profile_settle_seconds if settle_seconds is None else settle_seconds
        )
        self._timeslice = settings.recording_timeslice if timeslice is None else timeslice
        self._encodings = encodings

        self.session = CaptureSession(profile=profile)
        self.recording: Optional[RecordingSession] = None
        self.last_error: Optional[CaptureError] = None

        self._switch_lock = asyncio.Lock()
        self._switching = False
        self._tearing_down = False
        self._fault_task: Optional[asyncio.Task] = None
        self._closed = False

    # ------------------------------------------------------------------
    # Status
    # ------------------------------------------------------------------

    @property
    def profile(self) -> CaptureProfile:
        return self.session.profile

    @property
    def active(self) -> bool:
        return self.session.active

    @property
    def loading(self) -> bool:
        return self.session.loading

    @property
    def switching(self) -> bool:
        return self._switching

    @property
    def is_recording(self) -> bool:
        return self.recording is not None and self.recording.state is RecordingState.RECORDING

    def _fail(self, error: CaptureError, *, transient: bool = False) -> None:
        # Transient refusals leave the session status alone
        self.last_error = error
        if not transient and error.kind is not CaptureErrorKind.PROFILE_SWITCH_REJECTED:
            self.session.error = error
        logger.error(f"Capture error ({error.kind.value}): {error.message}")

    # ------------------------------------------------------------------
    # Device stream
    # ------------------------------------------------------------------

    async def start_capture(self, profile: Optional[CaptureProfile] = None) -> bool:
        """Acquire the camera. Returns True when the stream is active."""
        if self._closed:
            return False
        if profile is not None and profile != self.session.profile:
            if self.session.active:
                return await self.switch_profile(profile)
            self.session.profile = profile
        if self.session.active:
            return True
        if self.session.loading:
            logger.warning("Camera acquisition already in progress")
            return False
        return await self._acquire()

    async def _acquire(self) -> bool:
        profile = self.session.profile
        self.session.loading = True
        self.session.error = None
        try:
            stream = await self._devices.acquire(profile.constraints())
        except CaptureError as e:
            self._fail(e)
            return False
        except Exception as e:
            self._fail(DeviceUnavailableError(f"Failed to start camera: {e}"))
            return False
        finally:
            self.session.loading = False

        if not stream.get_video_tracks():
            await self._release(stream)
            self._fail(DeviceUnavailableError("Camera stream has no video track"))
            return False

        self.session.stream = stream
        self.session.active = True
        logger.info(
            f"Camera started in {profile.mode.label} mode "
            f"({profile.width}x{profile.height}, stream {stream.id})"
        )
        return True

    async def stop_capture(self) -> None:
        """Release all device tracks. No-op when inactive."""
        stream, self.session.stream = self.session.stream, None
        self.session.active = False
        if stream is None:
            return
        await self._release(stream)
        logger.info(f"Camera stopped (stream {stream.id})")

    async def _release(self, stream: MediaStream) -> None:
        try:
            await self._devices.release(stream)
        except Exception as e:
            logger.warning(f"Failed to release stream {stream.id}: {e}")

    async def switch_profile(self, new_profile: CaptureProfile) -> bool:
        """Stop, settle, and restart the camera under ``new_profile``.

        Rejected while recording or while another switch is in flight. If the
        restart fails the session stays inactive with an error; the previous
        profile is not restored.
        """
        if self.is_recording or self._switching or self._tearing_down:
            self._fail(ProfileSwitchRejectedError(
                "Cannot switch camera mode while recording or switching"
            ))
            return False

        async with self._switch_lock:
            self._switching = True
            try:
                await self.stop_capture()
                self.session.profile = new_profile
                logger.info(f"Switched to {new_profile.mode.label} mode")
                await asyncio.sleep(self._settle_seconds)
                return await self._acquire()
            finally:
                self._switching = False

    async def toggle_profile(self) -> bool:
        return await self.switch_profile(other_profile(self.session.profile))

    # ------------------------------------------------------------------
    # Recording
    # ------------------------------------------------------------------

    def begin_recording(self) -> Optional[RecordingSession]:
        """Start encoding the active stream with the first supported encoding."""
        if self._switching or self._tearing_down:
            self._fail(
                DeviceUnavailableError("Camera is busy switching mode or stopping"),
                transient=True,
            )
            return None
        stream = self.session.stream
        if not self.session.active or stream is None or not stream.get_video_tracks():
            self._fail(DeviceUnavailableError("Camera not ready"))
            return None
        if self.is_recording:
            logger.warning("Recording already in progress")
            return None

        mime_type = next(
            (m for m in self._encodings if self._devices.is_type_supported(m)), None
        )
        if mime_type is None:
            self._fail(UnsupportedEncodingError("Video recording not supported on this device"))
            return None

        recording = RecordingSession(mime_type=mime_type)
        try:
            encoder = self._devices.create_encoder(
                stream,
                mime_type,
                on_chunk=partial(self._on_chunk, recording),
                on_error=partial(self._on_encoder_error, recording),
            )
            encoder.start(self._timeslice)
        except CaptureError as e:
            recording.chunks.clear()
            self._fail(e)
            return None
        except Exception as e:
            recording.chunks.clear()
            self._fail(RecorderFaultError(f"Failed to start recording: {e}"))
            return None

        recording.encoder = encoder
        recording.advance(RecordingState.RECORDING)
        self.recording = recording
        logger.info(f"Recording started ({mime_type})")
        return recording

    def _on_chunk(self, recording: RecordingSession, chunk: bytes) -> None:
        if recording.state is not RecordingState.RECORDING:
            logger.debug("Dropping chunk for a recording that is no longer active")
            return
        if chunk:
            recording.chunks.append(chunk)

    def _on_encoder_error(self, recording: RecordingSession, error: CaptureError) -> None:
        if recording.state is not RecordingState.RECORDING or recording.fault is not None:
            return
        recording.fault = error
        if self._tearing_down:
            # end_recording/close is already stopping the encoder and will see the fault
            return
        self._fault_task = asyncio.get_running_loop().create_task(
            self._handle_fault(recording)
        )

    async def _handle_fault(self, recording: RecordingSession) -> None:
        if self._tearing_down or recording.state is not RecordingState.RECORDING:
            return
        self._tearing_down = True
        try:
            recording.advance(RecordingState.STOPPED)
            recording.chunks.clear()
            await self._stop_encoder(recording)
            self._fail(RecorderFaultError(f"Recording error occurred: {recording.fault}"))
        finally:
            self._tearing_down = False
        await self.stop_capture()

    async def _stop_encoder(self, recording: RecordingSession) -> None:
        if recording.encoder is None:
            return
        try:
            await recording.encoder.stop()
        except Exception as e:
            logger.warning(f"Error stopping recorder: {e}")

    async def _await_fault_handling(self) -> None:
        task = self._fault_task
        if task is None or task.done():
            return
        try:
            await task
        except Exception as e:
            logger.error(f"Error finishing recorder fault handling: {e}")

    async def end_recording(self) -> Optional[FinishedRecording]:
        """Finalize the recording into one blob and release the camera.

        Returns the finished recording, or None if nothing was recording or
        the encoder failed. A second call after a successful stop is a no-op.
        """
        await self._await_fault_handling()
        recording = self.recording
        if recording is None or recording.state is not RecordingState.RECORDING:
            logger.warning("No recording in progress")
            return None
        if self._tearing_down:
            logger.warning("Recording is already being finalized")
            return None

        self._tearing_down = True
        try:
            try:
                await recording.encoder.stop()
            except CaptureError as e:
                recording.fault = recording.fault or e
            except Exception as e:
                recording.fault = recording.fault or RecorderFaultError(str(e))

            if recording.fault is not None:
                if recording.state is RecordingState.RECORDING:
                    recording.advance(RecordingState.STOPPED)
                recording.chunks.clear()
                self._fail(RecorderFaultError(f"Failed to stop recording: {recording.fault}"))
                finished = None
            else:
                data = b"".join(recording.chunks)
                recording.chunks.clear()
                recording.advance(RecordingState.STOPPED)
                media_id = new_media_id()
                finished = FinishedRecording(
                    id=media_id,
                    mime_type=recording.mime_type,
                    media=MediaHandle(media_id, data, recording.mime_type),
                    profile=self.session.profile,
                    duration=time.monotonic() - recording.started_at,
                )
        finally:
            self._tearing_down = False

        await self.stop_capture()

        if finished is None:
            return None

        logger.info(
            f"Recording stopped: {finished.id} ({finished.media.size} bytes, "
            f"{finished.duration:.1f}s)"
        )
        if self._on_recording is not None:
            try:
                self._on_recording(finished)
            except Exception as e:
                logger.exception(f"Recording callback failed: {e}")
        return finished

    # ------------------------------------------------------------------
    # Teardown
    # ------------------------------------------------------------------

    async def _discard_recording(self) -> None:
        await self._await_fault_handling()
        recording = self.recording
        if recording is None or recording.state is not RecordingState.RECORDING:
            return
        self._tearing_down = True
        try:
            recording.advance(RecordingState.STOPPED)
            await self._stop_encoder(recording)
        finally:
            recording.chunks.clear()
            self._tearing_down = False
        logger.info("Recording discarded")

    async def cancel(self) -> None:
        """Stop any recording without emitting it and release the camera."""
        await self._discard_recording()
        await self.stop_capture()

    async def close(self) -> None:
        """Best-effort teardown. Never raises."""
        if self._closed:
            return
        self._closed = True
        try:
            await self._discard_recording()
        except Exception as e:
            logger.error(f"Error stopping recorder on teardown: {e}")
        try:
            await self.stop_capture()
        except Exception as e:
            logger.error(f"Error releasing camera on teardown: {e}")

    async def __aenter__(self) -> "CaptureSessionManager":
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.close()
