"""Centralized configuration using Pydantic Settings.

All settings can be overridden via environment variables with the SCOOTY_ prefix,
or via a .env file. Example: SCOOTY_PORT=8080
"""

import logging
import os
import tempfile

from pydantic import TypeAdapter, ValidationError
from pydantic_settings import BaseSettings
from typing import Optional

logger = logging.getLogger(__name__)


class Settings(BaseSettings):
    """Scooty gateway settings."""

    # General
    host: str = "127.0.0.1"
    port: int = 0  # 0 = first free port in port_range_start..port_range_end
    port_range_start: int = 8000
    port_range_end: int = 9000
    log_level: str = "INFO"
    log_file: str = ""  # Empty = console only
    log_format: str = "text"  # text | json

    # External tools
    ffmpeg_path: str = "ffmpeg"
    ffprobe_path: str = "ffprobe"
    ffmpeg_timeout: int = 120
    ffprobe_timeout: int = 30

    # Transcoding
    hwaccel: str = "auto"  # auto | software | videotoolbox | nvenc
    transcode_video_bitrate: str = "4M"
    transcode_audio_bitrate: str = "192k"
    terminate_grace_seconds: float = 2.0
    stream_chunk_size: int = 64 * 1024

    # Remote sources (FTP/FTPS)
    ftp_timeout: int = 30
    ftp_list_timeout: float = 10.0
    ftp_scan_max_depth: int = 5

    # Subtitles
    subtitle_cache_dir: str = ""  # Empty = <tmp>/scooty-subs
    opensubtitles_api_key: str = ""
    opensubtitles_user_agent: str = "Scooty v1.0"
    request_timeout: int = 15

    model_config = {
        "env_prefix": "SCOOTY_",
        "env_file": ".env",
        "env_file_encoding": "utf-8",
        "extra": "ignore",
    }

    def get_subtitle_cache_dir(self) -> str:
        """Directory holding extracted subtitle tracks (created on demand)."""
        return self.subtitle_cache_dir or os.path.join(tempfile.gettempdir(), "scooty-subs")

    def get_safe_config(self) -> dict:
        """Settings as a dict with credentials masked, for /health-style dumps."""
        data = self.model_dump()
        for key in SECRET_FIELDS:
            data[key] = "***configured***" if data.get(key) else ""
        return data


SECRET_FIELDS = ("opensubtitles_api_key",)

# Singleton settings instance
_settings: Optional[Settings] = None


def get_settings() -> Settings:
    """Get or create the singleton Settings instance."""
    global _settings
    if _settings is None:
        _settings = Settings()
    return _settings


def _coerce_override(name: str, value):
    """Validate one override against its field type; raises ValidationError."""
    annotation = Settings.model_fields[name].annotation
    if annotation is str and not isinstance(value, str):
        value = str(value)
    return TypeAdapter(annotation).validate_python(value)


def reload_settings(overrides: Optional[dict] = None) -> Settings:
    """Re-read environment and .env, then layer ``overrides`` on top.

    Overrides come from the player's settings screen as strings. Unknown keys
    and values that do not validate for their field are logged and dropped,
    the rest still apply.
    """
    global _settings
    update = {}
    for name, value in (overrides or {}).items():
        if name not in Settings.model_fields:
            continue
        try:
            update[name] = _coerce_override(name, value)
        except ValidationError:
            logger.warning("Ignoring invalid setting %s=%r", name, value)

    _settings = Settings().model_copy(update=update)
    return _settings
