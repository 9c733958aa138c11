# mediaconv/config.py
from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import List, Optional, Sequence

from dotenv import load_dotenv

MIB = 1024 * 1024

# Containers the encoder accepts as input. Anything else is rejected before
# a single byte is written.
DEFAULT_ALLOWED_MIME_TYPES = (
    "video/mp4",
    "video/quicktime",
    "video/x-matroska",
    "video/webm",
    "video/x-msvideo",
    "video/mpeg",
    "video/3gpp",
    "video/x-flv",
    "video/ogg",
    "audio/mpeg",
    "audio/mp4",
    "audio/x-m4a",
    "audio/aac",
    "audio/wav",
    "audio/x-wav",
    "audio/ogg",
    "audio/flac",
    "audio/webm",
)


def _env_flag(name: str, default: bool = False) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    return raw.strip().lower() in ("1", "true", "yes", "on")


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name, "")
    return int(raw) if raw.strip() else default


def _env_float(name: str, default: float) -> float:
    raw = os.getenv(name, "")
    return float(raw) if raw.strip() else default


@dataclass
class TierLimits:
    free_max_upload_bytes: int = 100 * MIB
    premium_max_upload_bytes: int = 2000 * MIB
    free_quota_per_window: Optional[int] = 5
    premium_quota_per_window: Optional[int] = None  # unlimited
    window_seconds: float = 24 * 3600.0


@dataclass
class EncoderProfile:
    """Fixed output profile. Nothing here is ever taken from a request."""

    container: str = "mp4"
    video_codec: str = "libx264"
    preset: str = "veryfast"
    crf: int = 23
    audio_codec: str = "aac"
    audio_bitrate: str = "128k"

    def output_args(self) -> List[str]:
        return [
            "-c:v",
            self.video_codec,
            "-preset",
            self.preset,
            "-crf",
            str(self.crf),
            "-c:a",
            self.audio_codec,
            "-b:a",
            self.audio_bitrate,
            "-movflags",
            "+faststart",
            "-f",
            self.container,
        ]


@dataclass
class Settings:
    data_dir: Path
    ffmpeg_path: str = "ffmpeg"
    tiers: TierLimits = field(default_factory=TierLimits)
    profile: EncoderProfile = field(default_factory=EncoderProfile)
    allowed_mime_types: Sequence[str] = DEFAULT_ALLOWED_MIME_TYPES
    max_concurrent_jobs: int = 2
    encoder_timeout_sec: float = 15 * 60.0
    spawn_retries: int = 1
    spawn_retry_delay_sec: float = 0.5
    sweep_interval_sec: float = 3600.0
    retention_sec: float = 3600.0
    chunk_size_bytes: int = 1 * MIB
    enable_sweeper: bool = True
    public_base_url: str = "http://localhost:8000"
    stripe_secret_key: str = ""
    stripe_webhook_secret: str = ""
    premium_price_cents: int = 999
    premium_product_name: str = "Pro plan"
    log_level: str = "INFO"

    @property
    def upload_dir(self) -> Path:
        return self.data_dir / "uploads"

    @property
    def output_dir(self) -> Path:
        return self.data_dir / "outputs"

    def ensure_dirs(self) -> None:
        for p in (self.data_dir, self.upload_dir, self.output_dir):
            p.mkdir(parents=True, exist_ok=True)


def load_settings() -> Settings:
    """Build settings from the environment (a local .env is merged first)."""
    load_dotenv()

    tiers = TierLimits(
        free_max_upload_bytes=_env_int("FREE_MAX_UPLOAD_MB", 100) * MIB,
        premium_max_upload_bytes=_env_int("PREMIUM_MAX_UPLOAD_MB", 2000) * MIB,
        free_quota_per_window=_env_int("FREE_QUOTA", 5),
        window_seconds=_env_float("QUOTA_WINDOW_HOURS", 24.0) * 3600.0,
    )

    settings = Settings(
        data_dir=Path(os.getenv("DATA_DIR", "data")),
        ffmpeg_path=os.getenv("FFMPEG_PATH", "ffmpeg"),
        tiers=tiers,
        max_concurrent_jobs=_env_int("MAX_CONCURRENT_JOBS", 2),
        encoder_timeout_sec=_env_float("ENCODER_TIMEOUT_SEC", 15 * 60.0),
        spawn_retries=_env_int("SPAWN_RETRIES", 1),
        sweep_interval_sec=_env_float("SWEEP_INTERVAL_MIN", 60.0) * 60.0,
        retention_sec=_env_float("RETENTION_MIN", 60.0) * 60.0,
        enable_sweeper=_env_flag("ENABLE_SWEEPER", True),
        public_base_url=os.getenv("PUBLIC_BASE_URL", "http://localhost:8000"),
        stripe_secret_key=os.getenv("STRIPE_SECRET_KEY", ""),
        stripe_webhook_secret=os.getenv("STRIPE_WEBHOOK_SECRET", ""),
        premium_price_cents=_env_int("PREMIUM_PRICE_CENTS", 999),
        log_level=os.getenv("LOG_LEVEL", "INFO"),
    )
    return settings
