"""Environment configuration for the KROMA relay server."""
from __future__ import annotations

import os
from dataclasses import dataclass
from typing import Optional


def _int_env(name: str, default: int, minimum: int = 0) -> int:
    return max(int(os.getenv(name, str(default)) or str(default)), minimum)


def _float_env(name: str, default: float, minimum: float = 0.0) -> float:
    return max(float(os.getenv(name, str(default)) or str(default)), minimum)


@dataclass(frozen=True)
class Settings:
    max_concurrent: int = 3
    job_timeout: float = 600.0
    artifact_retention: float = 300.0
    artifact_max_age: float = 3600.0
    rate_limit: Optional[str] = None
    metadata_retry_attempts: int = 3
    metadata_retry_delay: float = 1.0
    metadata_timeout: float = 20.0
    metadata_cache_ttl: float = 3600.0
    metadata_cache_size: int = 512
    keepalive_interval: float = 15.0
    download_dir: str = "downloads"
    ytdlp_binary: str = "yt-dlp"
    log_level: str = "INFO"
    log_file: Optional[str] = None


def load_settings() -> Settings:
    """Read settings from the process environment."""
    return Settings(
        max_concurrent=_int_env("MAX_CONCURRENT_DOWNLOADS", 3, minimum=1),
        job_timeout=_float_env("JOB_TIMEOUT_SECONDS", 600.0, minimum=1.0),
        artifact_retention=_float_env("ARTIFACT_RETENTION_SECONDS", 300.0),
        artifact_max_age=_float_env("ARTIFACT_MAX_AGE_SECONDS", 3600.0),
        rate_limit=os.getenv("DOWNLOAD_RATE_LIMIT") or None,
        metadata_retry_attempts=_int_env("METADATA_RETRY_ATTEMPTS", 3, minimum=1),
        metadata_retry_delay=_float_env("METADATA_RETRY_DELAY_SECONDS", 1.0),
        metadata_timeout=_float_env("METADATA_TIMEOUT_SECONDS", 20.0, minimum=1.0),
        metadata_cache_ttl=_float_env("METADATA_CACHE_TTL_SECONDS", 3600.0, minimum=1.0),
        metadata_cache_size=_int_env("METADATA_CACHE_SIZE", 512, minimum=1),
        keepalive_interval=_float_env("KEEPALIVE_SECONDS", 15.0, minimum=0.1),
        download_dir=os.getenv("DOWNLOAD_DIR", "downloads") or "downloads",
        ytdlp_binary=os.getenv("YTDLP_BINARY", "yt-dlp") or "yt-dlp",
        log_level=(os.getenv("LOG_LEVEL", "INFO") or "INFO").upper(),
        log_file=os.getenv("LOG_FILE") or None,
    )
