"""
BabelPod Configuration Settings
Uses Pydantic Settings for environment variable management
"""

from typing import List

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

from babel_core.audio.streaming_sinks import DEFAULT_STREAMING_COMMAND
from babel_core.devices.pcm import DEFAULT_PCM_PATH


class Settings(BaseSettings):
    """Application settings loaded from environment variables"""

    model_config = SettingsConfigDict(
        env_file=".env",
        case_sensitive=False,
        extra="ignore",
        populate_by_name=True,
    )

    # Application
    app_name: str = "BabelPod"
    debug: bool = False
    host: str = "0.0.0.0"
    port: int = Field(default=3000, validation_alias="BABEL_PORT")
    log_level: str = "INFO"

    # Local PCM devices (PCM=0 disables scanning)
    pcm_scan_enabled: bool = Field(default=True, validation_alias="PCM")
    pcm_scan_interval: float = 10.0
    pcm_proc_path: str = DEFAULT_PCM_PATH

    # External programs
    capture_command: str = "arecord"
    playback_command: str = "aplay"
    streaming_command: str = DEFAULT_STREAMING_COMMAND

    # Discovery
    discovery_enabled: bool = True
    # Publish this server as _babelpod._tcp on the BABEL_PORT port
    advertise_enabled: bool = True
    bluetooth_enabled: bool = True
    bluetooth_poll_interval: float = 10.0

    # Session
    session_takeover_on_connect: bool = True
    initial_volume: int = Field(default=50, ge=0, le=100)

    # CORS
    cors_origins: List[str] = ["*"]


# Create global settings instance
settings = Settings()
