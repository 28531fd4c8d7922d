"""Media device and encoder primitives.

The capture session manager only talks to the ``MediaDevices`` protocol. The
default implementation opens cameras through OpenCV and encodes by piping raw
frames into an ffmpeg subprocess, forwarding the encoded bytes back to the
event loop in small periodic chunks.
"""

import asyncio
import functools
import subprocess
import threading
import time
import uuid
from typing import Callable, Optional, Protocol

import cv2
import ffmpeg
import numpy as np
from loguru import logger

from umpire.capture.errors import (
    CaptureError,
    DeviceUnavailableError,
    RecorderFaultError,
    UnsupportedEncodingError,
)
from umpire.capture.profiles import CaptureConstraints
from umpire.core.config import settings

# Probed in order; the first supported candidate is used
ENCODING_CANDIDATES: tuple[str, ...] = (
    "video/webm;codecs=vp9",
    "video/webm;codecs=vp8",
    "video/webm",
    "video/mp4",
)

# mime type -> (ffmpeg container, ffmpeg video encoder, extra output options)
FFMPEG_ENCODINGS: dict[str, tuple[str, str, dict]] = {
    "video/webm;codecs=vp9": ("webm", "libvpx-vp9", {"deadline": "realtime", "cpu-used": 8}),
    "video/webm;codecs=vp8": ("webm", "libvpx", {"deadline": "realtime", "cpu-used": 8}),
    "video/webm": ("webm", "libvpx", {"deadline": "realtime"}),
    # Fragmented MP4 so the muxer can stream to a pipe
    "video/mp4": ("mp4", "libx264", {"preset": "ultrafast", "movflags": "frag_keyframe+empty_moov"}),
}

ChunkCallback = Callable[[bytes], None]
ErrorCallback = Callable[[CaptureError], None]


class MediaTrack(Protocol):
    kind: str

    @property
    def live(self) -> bool: ...

    def stop(self) -> None: ...


class MediaStream(Protocol):
    id: str

    def get_tracks(self) -> list[MediaTrack]: ...

    def get_video_tracks(self) -> list[MediaTrack]: ...


class Encoder(Protocol):
    mime_type: str

    def start(self, timeslice: float) -> None: ...

    async def stop(self) -> None:
        """Stop encoding. All pending chunks are delivered before this returns."""
        ...


class MediaDevices(Protocol):
    async def acquire(self, constraints: CaptureConstraints) -> MediaStream: ...

    async def release(self, stream: MediaStream) -> None: ...

    def is_type_supported(self, mime_type: str) -> bool: ...

    def create_encoder(
        self,
        stream: MediaStream,
        mime_type: str,
        on_chunk: ChunkCallback,
        on_error: ErrorCallback,
    ) -> Encoder: ...


# ============================================================================
# OpenCV camera stream
# ============================================================================


class CameraTrack:
    """A video track backed by ``cv2.VideoCapture``."""

    kind = "video"

    def __init__(self, capture: cv2.VideoCapture, label: str):
        self._capture = capture
        self._lock = threading.Lock()
        self._live = True
        self.label = label
        self.width = int(capture.get(cv2.CAP_PROP_FRAME_WIDTH))
        self.height = int(capture.get(cv2.CAP_PROP_FRAME_HEIGHT))
        self.frame_rate = capture.get(cv2.CAP_PROP_FPS) or 30.0

    @property
    def live(self) -> bool:
        return self._live

    def read(self) -> Optional[np.ndarray]:
        """Grab the next frame, or None if the track has ended."""
        with self._lock:
            if not self._live:
                return None
            ok, frame = self._capture.read()
        return frame if ok else None

    def stop(self) -> None:
        with self._lock:
            if self._live:
                self._capture.release()
                self._live = False


class CameraStream:
    """A set of tracks acquired together."""

    def __init__(self, tracks: list[CameraTrack]):
        self.id = uuid.uuid4().hex[:12]
        self._tracks = tracks

    def get_tracks(self) -> list[CameraTrack]:
        return list(self._tracks)

    def get_video_tracks(self) -> list[CameraTrack]:
        return [t for t in self._tracks if t.kind == "video" and t.live]


# ============================================================================
# ffmpeg encoder
# ============================================================================


class FFmpegEncoder:
    """Encodes a camera track through an ffmpeg subprocess.

    A pump thread reads frames from the track and writes them to ffmpeg's
    stdin at the track's frame rate. A reader thread collects encoded output
    and hands it to ``on_chunk`` on the event loop every ``timeslice`` seconds.
    """

    def __init__(
        self,
        track: CameraTrack,
        mime_type: str,
        on_chunk: ChunkCallback,
        on_error: ErrorCallback,
        loop: asyncio.AbstractEventLoop,
        timeout: Optional[float] = None,
    ):
        if mime_type not in FFMPEG_ENCODINGS:
            raise UnsupportedEncodingError(f"No ffmpeg encoder mapped for {mime_type}")
        self.mime_type = mime_type
        self._track = track
        self._on_chunk = on_chunk
        self._on_error = on_error
        self._loop = loop
        self._timeout = timeout if timeout is not None else settings.ffmpeg_timeout
        self._process: Optional[subprocess.Popen] = None
        self._stopping = threading.Event()
        self._errored = False
        self._stderr: list[bytes] = []
        self._threads: list[threading.Thread] = []

    def start(self, timeslice: float) -> None:
        container, vcodec, extra = FFMPEG_ENCODINGS[self.mime_type]
        width, height = self._track.width, self._track.height

        try:
            self._process = (
                ffmpeg
                .input(
                    "pipe:",
                    format="rawvideo",
                    pix_fmt="bgr24",
                    s=f"{width}x{height}",
                    framerate=self._track.frame_rate,
                )
                .output("pipe:", format=container, vcodec=vcodec, pix_fmt="yuv420p", **extra)
                .global_args("-loglevel", "error")
                .run_async(pipe_stdin=True, pipe_stdout=True, pipe_stderr=True)
            )
        except (OSError, ffmpeg.Error) as e:
            raise RecorderFaultError(f"Failed to start encoder: {e}") from e

        logger.debug(f"Started ffmpeg {vcodec}/{container} encoder for {width}x{height}")

        self._threads = [
            threading.Thread(target=self._pump_frames, daemon=True),
            threading.Thread(target=self._read_output, args=(timeslice,), daemon=True),
            threading.Thread(target=self._read_stderr, daemon=True),
        ]
        for thread in self._threads:
            thread.start()

    async def stop(self) -> None:
        self._stopping.set()
        await asyncio.to_thread(self._finish)

    def _finish(self) -> None:
        if not self._threads:
            return
        pump, reader, stderr_reader = self._threads
        pump.join(timeout=self._timeout)

        process = self._process
        if process is None:
            return
        try:
            process.stdin.close()
        except OSError:
            pass

        try:
            process.wait(timeout=self._timeout)
        except subprocess.TimeoutExpired:
            logger.error(f"Encoder did not flush within {self._timeout}s, killing it")
            process.kill()
            process.wait()

        reader.join(timeout=self._timeout)
        stderr_reader.join(timeout=self._timeout)

        if process.returncode != 0 and not self._errored:
            stderr = b"".join(self._stderr).decode("utf-8", errors="ignore").strip()
            raise RecorderFaultError(f"Encoder exited with code {process.returncode}: {stderr}")

    def _pump_frames(self) -> None:
        interval = 1.0 / max(self._track.frame_rate, 1.0)
        next_frame_at = time.monotonic()
        width, height = self._track.width, self._track.height

        while not self._stopping.is_set():
            frame = self._track.read()
            if frame is None:
                if not self._stopping.is_set():
                    self._report(RecorderFaultError("Camera stopped delivering frames"))
                return

            if frame.shape[1] != width or frame.shape[0] != height:
                frame = cv2.resize(frame, (width, height))

            try:
                self._process.stdin.write(np.ascontiguousarray(frame).tobytes())
            except (BrokenPipeError, ValueError, OSError) as e:
                if not self._stopping.is_set():
                    self._report(RecorderFaultError(f"Encoder pipe closed: {e}"))
                return

            next_frame_at += interval
            delay = next_frame_at - time.monotonic()
            if delay > 0:
                self._stopping.wait(delay)

    def _read_output(self, timeslice: float) -> None:
        buffer = bytearray()
        last_emit = time.monotonic()
        stdout = self._process.stdout

        while True:
            data = stdout.read1(64 * 1024)
            if not data:
                break
            buffer.extend(data)
            if time.monotonic() - last_emit >= timeslice:
                self._deliver(bytes(buffer))
                buffer.clear()
                last_emit = time.monotonic()

        if buffer:
            self._deliver(bytes(buffer))

    def _read_stderr(self) -> None:
        for line in iter(self._process.stderr.readline, b""):
            self._stderr.append(line)

    def _deliver(self, chunk: bytes) -> None:
        self._loop.call_soon_threadsafe(self._on_chunk, chunk)

    def _report(self, error: CaptureError) -> None:
        self._errored = True
        logger.error(f"Encoder fault: {error}")
        self._loop.call_soon_threadsafe(self._on_error, error)


@functools.lru_cache(maxsize=1)
def available_ffmpeg_encoders() -> frozenset[str]:
    """Names of video encoders compiled into the local ffmpeg binary."""
    try:
        completed = subprocess.run(
            ["ffmpeg", "-hide_banner", "-encoders"],
            capture_output=True,
            text=True,
            timeout=10,
        )
    except (OSError, subprocess.TimeoutExpired) as e:
        logger.warning(f"Could not probe ffmpeg encoders: {e}")
        return frozenset()

    names = set()
    for line in completed.stdout.splitlines():
        parts = line.split()
        # Encoder rows look like " V....D libx264   libx264 H.264 ..."
        if len(parts) >= 2 and parts[0].startswith("V"):
            names.add(parts[1])
    return frozenset(names)


class OpenCVDevices:
    """Camera access through OpenCV with ffmpeg encoding."""

    def __init__(self, camera_index: Optional[int] = None):
        self._camera_index = settings.camera_index if camera_index is None else camera_index

    async def acquire(self, constraints: CaptureConstraints) -> CameraStream:
        return await asyncio.to_thread(self._open, constraints)

    def _open(self, constraints: CaptureConstraints) -> CameraStream:
        capture = cv2.VideoCapture(self._camera_index)
        if not capture.isOpened():
            capture.release()
            raise DeviceUnavailableError(
                f"Camera {self._camera_index} is unavailable. Please check permissions."
            )

        capture.set(cv2.CAP_PROP_FRAME_WIDTH, constraints.width)
        capture.set(cv2.CAP_PROP_FRAME_HEIGHT, constraints.height)
        capture.set(cv2.CAP_PROP_FPS, constraints.frame_rate)

        track = CameraTrack(capture, label=f"camera:{self._camera_index}")
        if track.width <= 0 or track.height <= 0:
            track.stop()
            raise DeviceUnavailableError(
                f"Camera rejected constraints {constraints.width}x{constraints.height}"
            )

        if (track.width, track.height) != (constraints.width, constraints.height):
            logger.warning(
                f"Camera delivered {track.width}x{track.height} instead of "
                f"{constraints.width}x{constraints.height}"
            )
        logger.info(f"Opened {track.label} at {track.width}x{track.height} @ {track.frame_rate:.0f}fps")
        return CameraStream([track])

    async def release(self, stream: CameraStream) -> None:
        def stop_all():
            for track in stream.get_tracks():
                track.stop()

        await asyncio.to_thread(stop_all)
        logger.debug(f"Released stream {stream.id}")

    def is_type_supported(self, mime_type: str) -> bool:
        encoding = FFMPEG_ENCODINGS.get(mime_type)
        if encoding is None:
            return False
        return encoding[1] in available_ffmpeg_encoders()

    def create_encoder(
        self,
        stream: CameraStream,
        mime_type: str,
        on_chunk: ChunkCallback,
        on_error: ErrorCallback,
    ) -> FFmpegEncoder:
        tracks = stream.get_video_tracks()
        if not tracks:
            raise DeviceUnavailableError("Camera not ready")
        return FFmpegEncoder(
            tracks[0],
            mime_type,
            on_chunk=on_chunk,
            on_error=on_error,
            loop=asyncio.get_running_loop(),
        )
