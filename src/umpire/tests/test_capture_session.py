"""Tests for the capture session manager."""

import asyncio

import pytest

from umpire.capture.errors import CaptureErrorKind, DeviceUnavailableError, RecorderFaultError
from umpire.capture.profiles import (
    STANDARD_PROFILE,
    WIDE_PROFILE,
    CaptureMode,
    other_profile,
    profile_for,
)
from umpire.capture.session import CaptureSessionManager, RecordingSession, RecordingState
from umpire.core.ids import new_media_id
from umpire.tests.fakes import FakeDevices, unavailable_devices


def make_manager(devices=None, **kwargs) -> CaptureSessionManager:
    kwargs.setdefault("settle_seconds", 0.0)
    kwargs.setdefault("timeslice", 0.1)
    return CaptureSessionManager(devices or FakeDevices(), **kwargs)


async def recording_manager(devices=None, **kwargs) -> CaptureSessionManager:
    manager = make_manager(devices, **kwargs)
    assert await manager.start_capture()
    assert manager.begin_recording() is not None
    return manager


class TestProfiles:
    def test_builtin_profiles(self):
        assert STANDARD_PROFILE.resolution == (1920, 1080)
        assert STANDARD_PROFILE.aspect_ratio == (16, 9)
        assert WIDE_PROFILE.resolution == (2560, 1080)
        assert WIDE_PROFILE.aspect_ratio == (21, 9)
        assert WIDE_PROFILE.lens_correction

    def test_toggle_target(self):
        assert other_profile(STANDARD_PROFILE) is WIDE_PROFILE
        assert other_profile(WIDE_PROFILE) is STANDARD_PROFILE
        assert profile_for("wide") is WIDE_PROFILE

    def test_constraints(self):
        constraints = WIDE_PROFILE.constraints()
        assert (constraints.width, constraints.height) == (2560, 1080)
        assert constraints.frame_rate == 30
        assert constraints.facing_mode == "environment"


class TestStartStop:
    @pytest.mark.asyncio
    async def test_start_capture_activates_session(self):
        devices = FakeDevices()
        manager = make_manager(devices)

        assert await manager.start_capture()

        assert manager.active
        assert not manager.loading
        assert manager.session.error is None
        assert devices.constraints[0].width == 1920

    @pytest.mark.asyncio
    async def test_start_when_active_is_noop(self):
        devices = FakeDevices()
        manager = make_manager(devices)
        await manager.start_capture()

        assert await manager.start_capture()
        assert devices.event_names() == ["acquire"]

    @pytest.mark.asyncio
    async def test_device_unavailable(self):
        manager = make_manager(unavailable_devices())

        assert await manager.start_capture() is False

        assert not manager.active
        assert not manager.loading
        assert manager.session.error.kind is CaptureErrorKind.DEVICE_UNAVAILABLE
        assert manager.last_error is manager.session.error

    @pytest.mark.asyncio
    async def test_unexpected_acquire_error_is_tagged(self):
        manager = make_manager(FakeDevices(acquire_error=OSError("no such device")))

        assert await manager.start_capture() is False
        assert manager.session.error.kind is CaptureErrorKind.DEVICE_UNAVAILABLE

    @pytest.mark.asyncio
    async def test_stream_without_video_track_is_released(self):
        devices = FakeDevices(video_tracks=0)
        manager = make_manager(devices)

        assert await manager.start_capture() is False
        assert devices.event_names() == ["acquire", "release"]
        assert not manager.active

    @pytest.mark.asyncio
    async def test_stop_capture_releases_tracks(self):
        devices = FakeDevices()
        manager = make_manager(devices)
        await manager.start_capture()

        await manager.stop_capture()
        await manager.stop_capture()

        assert not manager.active
        assert devices.event_names() == ["acquire", "release"]
        assert not devices.streams[0].tracks[0].live

    @pytest.mark.asyncio
    async def test_start_with_profile_when_inactive(self):
        devices = FakeDevices()
        manager = make_manager(devices)

        assert await manager.start_capture(WIDE_PROFILE)
        assert manager.profile is WIDE_PROFILE
        assert devices.constraints[0].width == 2560


class TestProfileSwitch:
    @pytest.mark.asyncio
    async def test_switch_orders_stop_settle_start(self):
        devices = FakeDevices()
        manager = make_manager(devices, settle_seconds=0.05)
        await manager.start_capture()

        assert await manager.switch_profile(WIDE_PROFILE)

        assert devices.event_names() == ["acquire", "release", "acquire"]
        released_at = devices.events[1][1]
        reacquired_at = devices.events[2][1]
        assert reacquired_at - released_at >= 0.04
        assert manager.profile is WIDE_PROFILE
        assert manager.profile.mode is CaptureMode.WIDE
        assert devices.constraints[-1].width == 2560
        assert manager.active

    @pytest.mark.asyncio
    async def test_switch_rejected_while_recording(self):
        devices = FakeDevices()
        manager = await recording_manager(devices)
        recording = manager.recording

        assert await manager.switch_profile(WIDE_PROFILE) is False

        assert manager.last_error.kind is CaptureErrorKind.PROFILE_SWITCH_REJECTED
        assert manager.profile is STANDARD_PROFILE
        assert manager.active
        assert manager.session.error is None
        assert manager.recording is recording
        assert recording.state is RecordingState.RECORDING
        assert devices.event_names() == ["acquire"]

    @pytest.mark.asyncio
    async def test_switch_rejected_during_another_switch(self):
        manager = make_manager(settle_seconds=0.05)
        await manager.start_capture()

        first = asyncio.create_task(manager.switch_profile(WIDE_PROFILE))
        await asyncio.sleep(0.01)
        assert manager.switching

        assert await manager.switch_profile(STANDARD_PROFILE) is False
        assert manager.last_error.kind is CaptureErrorKind.PROFILE_SWITCH_REJECTED

        assert await first
        assert manager.profile is WIDE_PROFILE
        assert not manager.switching

    @pytest.mark.asyncio
    async def test_recording_rejected_during_switch(self):
        manager = make_manager(settle_seconds=0.05)
        await manager.start_capture()

        switch = asyncio.create_task(manager.toggle_profile())
        await asyncio.sleep(0.01)

        assert manager.begin_recording() is None
        assert manager.last_error.kind is CaptureErrorKind.DEVICE_UNAVAILABLE
        assert manager.last_error.message == "Camera is busy switching mode or stopping"
        assert manager.session.error is None
        assert await switch
        assert manager.session.error is None

    @pytest.mark.asyncio
    async def test_failed_restart_leaves_session_inactive(self):
        devices = FakeDevices()
        manager = make_manager(devices)
        await manager.start_capture()
        devices.acquire_error = DeviceUnavailableError("Camera in use")

        assert await manager.switch_profile(WIDE_PROFILE) is False

        assert not manager.active
        assert manager.profile is WIDE_PROFILE
        assert manager.session.error.kind is CaptureErrorKind.DEVICE_UNAVAILABLE

    @pytest.mark.asyncio
    async def test_toggle_switches_back_and_forth(self):
        manager = make_manager()
        await manager.start_capture()

        await manager.toggle_profile()
        assert manager.profile is WIDE_PROFILE
        await manager.toggle_profile()
        assert manager.profile is STANDARD_PROFILE


class TestRecording:
    @pytest.mark.asyncio
    async def test_begin_recording_picks_first_supported_encoding(self):
        devices = FakeDevices(supported=("video/webm", "video/mp4"))
        manager = make_manager(devices)
        await manager.start_capture()

        recording = manager.begin_recording()

        assert recording.mime_type == "video/webm"
        assert recording.state is RecordingState.RECORDING
        assert devices.encoder.started
        assert devices.encoder.timeslice == 0.1
        assert manager.is_recording

    @pytest.mark.asyncio
    async def test_unsupported_encoding(self):
        manager = make_manager(FakeDevices(supported=()))
        await manager.start_capture()

        assert manager.begin_recording() is None
        assert manager.session.error.kind is CaptureErrorKind.UNSUPPORTED_ENCODING
        assert not manager.is_recording

    @pytest.mark.asyncio
    async def test_begin_recording_requires_active_camera(self):
        manager = make_manager()

        assert manager.begin_recording() is None
        assert manager.last_error.message == "Camera not ready"

    @pytest.mark.asyncio
    async def test_second_begin_is_ignored(self):
        devices = FakeDevices()
        manager = await recording_manager(devices)

        assert manager.begin_recording() is None
        assert len(devices.encoders) == 1

    @pytest.mark.asyncio
    async def test_end_recording_joins_chunks_in_order(self):
        devices = FakeDevices()
        devices.flush_chunk = b"-tail"
        finished = []
        manager = await recording_manager(devices, on_recording=finished.append)

        devices.encoder.emit(b"one")
        devices.encoder.emit(b"")
        devices.encoder.emit(b"-two")
        result = await manager.end_recording()

        assert result.media.data == b"one-two-tail"
        assert result.media.size == 12
        assert result.media.read(0, 3) == b"one"
        assert result.media.url == f"memory://{result.id}"
        assert result.mime_type == "video/webm;codecs=vp9"
        assert result.profile is STANDARD_PROFILE
        assert result.id.startswith("video_")
        assert finished == [result]
        assert manager.recording.state is RecordingState.STOPPED
        assert manager.recording.chunks == []
        assert not manager.active

    @pytest.mark.asyncio
    async def test_end_recording_twice_is_noop(self):
        devices = FakeDevices()
        finished = []
        manager = await recording_manager(devices, on_recording=finished.append)
        devices.encoder.emit(b"data")

        first = await manager.end_recording()
        second = await manager.end_recording()

        assert first is not None
        assert second is None
        assert len(finished) == 1
        assert devices.encoder.stop_calls == 1

    @pytest.mark.asyncio
    async def test_chunks_after_stop_are_dropped(self):
        devices = FakeDevices()
        manager = await recording_manager(devices)
        encoder = devices.encoder
        await manager.end_recording()

        encoder.emit(b"late")

        assert manager.recording.chunks == []

    @pytest.mark.asyncio
    async def test_failing_callback_does_not_lose_recording(self):
        def broken(recording):
            raise RuntimeError("upload failed")

        devices = FakeDevices()
        manager = await recording_manager(devices, on_recording=broken)
        devices.encoder.emit(b"abc")

        result = await manager.end_recording()

        assert result.media.data == b"abc"

    @pytest.mark.asyncio
    async def test_recording_ids_are_unique(self):
        devices = FakeDevices()
        ids = set()
        for _ in range(5):
            manager = await recording_manager(devices)
            ids.add((await manager.end_recording()).id)

        assert len(ids) == 5

    def test_stopped_recording_cannot_restart(self):
        recording = RecordingSession(mime_type="video/webm")
        recording.advance(RecordingState.RECORDING)
        recording.advance(RecordingState.STOPPED)

        with pytest.raises(ValueError):
            recording.advance(RecordingState.RECORDING)


class TestRecorderFault:
    @pytest.mark.asyncio
    async def test_encoder_error_stops_recording(self):
        devices = FakeDevices()
        finished = []
        manager = await recording_manager(devices, on_recording=finished.append)
        recording = manager.recording
        devices.encoder.emit(b"partial")

        devices.encoder.fail(RecorderFaultError("encoder crashed"))
        await manager._fault_task

        assert recording.state is RecordingState.STOPPED
        assert recording.chunks == []
        assert manager.session.error.kind is CaptureErrorKind.RECORDER_FAULT
        assert not manager.active
        assert not manager.is_recording
        assert await manager.end_recording() is None
        assert finished == []

    @pytest.mark.asyncio
    async def test_fault_pending_when_recording_ends(self):
        """A fault reported just before a stop is handled once and reported."""
        devices = FakeDevices()
        devices.encoder_yields_on_stop = True
        finished = []
        manager = await recording_manager(devices, on_recording=finished.append)
        recording = manager.recording
        devices.encoder.emit(b"partial")

        devices.encoder.fail(RecorderFaultError("disk full"))
        result = await manager.end_recording()

        assert result is None
        assert finished == []
        assert recording.state is RecordingState.STOPPED
        assert recording.chunks == []
        assert not manager.active
        assert manager.last_error.kind is CaptureErrorKind.RECORDER_FAULT
        assert devices.encoder.stop_calls == 1

    @pytest.mark.asyncio
    async def test_fault_while_encoder_is_stopping(self):
        devices = FakeDevices()
        devices.encoder_yields_on_stop = True
        manager = await recording_manager(devices)
        recording = manager.recording

        ending = asyncio.create_task(manager.end_recording())
        await asyncio.sleep(0)
        assert devices.encoder.stop_calls == 1
        devices.encoder.fail(RecorderFaultError("disk full"))

        assert await ending is None
        assert manager._fault_task is None
        assert recording.state is RecordingState.STOPPED
        assert not manager.active
        assert manager.last_error.kind is CaptureErrorKind.RECORDER_FAULT
        assert devices.encoder.stop_calls == 1

    @pytest.mark.asyncio
    async def test_fault_pending_when_cancelled(self):
        devices = FakeDevices()
        devices.encoder_yields_on_stop = True
        manager = await recording_manager(devices)
        recording = manager.recording

        devices.encoder.fail(RecorderFaultError("disk full"))
        assert await manager.cancel() is None

        assert manager._fault_task.done()
        assert manager._fault_task.exception() is None
        assert recording.state is RecordingState.STOPPED
        assert recording.chunks == []
        assert not manager.active
        assert manager.last_error.kind is CaptureErrorKind.RECORDER_FAULT
        assert devices.encoder.stop_calls == 1

    @pytest.mark.asyncio
    async def test_recording_refused_while_stopping(self):
        devices = FakeDevices()
        devices.encoder_yields_on_stop = True
        manager = await recording_manager(devices)

        ending = asyncio.create_task(manager.end_recording())
        await asyncio.sleep(0)

        assert manager.begin_recording() is None
        assert manager.last_error.message == "Camera is busy switching mode or stopping"
        assert manager.session.error is None
        assert await ending is not None

    @pytest.mark.asyncio
    async def test_stop_failure_is_reported(self):
        devices = FakeDevices()
        devices.encoder_stop_error = RecorderFaultError("ffmpeg exited with code 1")
        manager = await recording_manager(devices)

        assert await manager.end_recording() is None
        assert manager.session.error.kind is CaptureErrorKind.RECORDER_FAULT
        assert manager.recording.state is RecordingState.STOPPED
        assert not manager.active


class TestTeardown:
    @pytest.mark.asyncio
    async def test_cancel_discards_recording(self):
        devices = FakeDevices()
        finished = []
        manager = await recording_manager(devices, on_recording=finished.append)
        devices.encoder.emit(b"data")

        await manager.cancel()

        assert finished == []
        assert manager.recording.chunks == []
        assert manager.recording.state is RecordingState.STOPPED
        assert not manager.active

    @pytest.mark.asyncio
    async def test_close_swallows_errors(self):
        devices = FakeDevices(release_error=RuntimeError("driver hung"))
        devices.encoder_stop_error = RuntimeError("encoder hung")
        manager = await recording_manager(devices)

        await manager.close()
        await manager.close()

        assert not manager.active
        assert devices.event_names() == ["acquire", "release"]

    @pytest.mark.asyncio
    async def test_context_manager_releases_stream(self):
        devices = FakeDevices()
        async with make_manager(devices) as manager:
            await manager.start_capture()
            manager.begin_recording()

        assert not manager.active
        assert manager.recording.state is RecordingState.STOPPED
        assert not devices.streams[0].tracks[0].live

    @pytest.mark.asyncio
    async def test_start_after_close_is_refused(self):
        manager = make_manager()
        await manager.close()

        assert await manager.start_capture() is False


class TestMediaIds:
    def test_ids_unique_under_rapid_calls(self):
        ids = [new_media_id() for _ in range(1000)]

        assert len(set(ids)) == 1000

    def test_id_format(self):
        prefix, millis, sequence, suffix = new_media_id().split("_")

        assert prefix == "video"
        assert millis.isdigit()
        assert sequence.isdigit()
        assert len(suffix) == 9
