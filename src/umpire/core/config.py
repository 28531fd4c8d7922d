"""Application configuration."""

from pathlib import Path
from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """Application settings."""

    # Server
    host: str = "127.0.0.1"
    port: int = 8430
    debug: bool = True

    # Paths
    data_dir: Path = Path.home() / ".umpire"
    media_dir: Path = Path.home() / ".umpire" / "media"

    # Live analysis
    sample_interval: float = 0.1  # Sampler period in seconds, wall clock
    trajectory_capacity: int = 30  # Ring buffer length for ball positions
    decision_quorum: int = 3  # Logged decisions needed before compiling a result
    active_decision_window: float = 2.0  # Seconds a fired decision stays "current"

    # Capture
    profile_settle_seconds: float = 0.3  # Let the device drop exclusive access
    recording_timeslice: float = 0.1  # Encoder chunk period
    camera_index: int = 0

    # Uploads
    max_upload_bytes: int = 100 * 1024 * 1024

    # FFmpeg
    ffmpeg_timeout: int = 30  # Seconds to wait for an encoder to flush on stop

    class Config:
        env_prefix = "UMPIRE_"
        env_file = ".env"


settings = Settings()

# Ensure directories exist
settings.data_dir.mkdir(parents=True, exist_ok=True)
settings.media_dir.mkdir(parents=True, exist_ok=True)
