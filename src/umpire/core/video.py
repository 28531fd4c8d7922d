"""Clip metadata via ffprobe."""

from pathlib import Path
from typing import Optional

import ffmpeg
from loguru import logger


def _parse_rate(rate: str) -> float:
    num, _, den = rate.partition("/")
    try:
        return float(num) / float(den or 1)
    except (ValueError, ZeroDivisionError):
        return 30.0


def _parse_tag_duration(tag: Optional[str]) -> float:
    """Parse a Matroska ``DURATION`` tag (``HH:MM:SS.nnnnnnnnn``)."""
    if not tag:
        return 0.0
    try:
        hours, minutes, seconds = tag.split(":")
        return int(hours) * 3600 + int(minutes) * 60 + float(seconds)
    except ValueError:
        return 0.0


def get_video_info(video_path: Path) -> dict:
    """Probe a stored clip for duration, geometry and codec.

    Browser and ffmpeg-pipe recordings are webm files whose header often has
    no duration; the per-stream ``DURATION`` tag is used instead, and 0.0 if
    neither is present.

    Raises:
        ffmpeg.Error: If ffprobe cannot read the file.
        ValueError: If the file has no video stream.
    """
    try:
        probe = ffmpeg.probe(str(video_path))
    except ffmpeg.Error as e:
        logger.error(f"FFprobe error for {video_path}: {e.stderr.decode() if e.stderr else str(e)}")
        raise

    streams = probe.get("streams", [])
    video_stream = next((s for s in streams if s.get("codec_type") == "video"), None)
    if video_stream is None:
        raise ValueError(f"No video stream found in {video_path}")

    fmt = probe.get("format", {})
    duration = float(fmt.get("duration") or video_stream.get("duration") or 0)
    if duration <= 0:
        duration = _parse_tag_duration(video_stream.get("tags", {}).get("DURATION"))

    return {
        "duration": duration,
        "width": int(video_stream.get("width", 0)),
        "height": int(video_stream.get("height", 0)),
        "fps": _parse_rate(video_stream.get("avg_frame_rate") or video_stream.get("r_frame_rate", "30/1")),
        "codec": video_stream.get("codec_name", "unknown"),
        "container": fmt.get("format_name", "unknown"),
        "has_audio": any(s.get("codec_type") == "audio" for s in streams),
        "file_size": int(fmt.get("size", 0)),
    }
