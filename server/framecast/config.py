"""Configuration helpers for the generation service."""
from __future__ import annotations

import os
from dataclasses import dataclass
from functools import lru_cache
from typing import Optional


def _env_bool(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    return raw.strip().lower() not in {"0", "false", "no", "off", ""}


def _env_optional_float(name: str) -> Optional[float]:
    raw = (os.getenv(name) or "").strip()
    return float(raw) if raw else None


@dataclass
class Settings:
    """Centralized environment-driven configuration.

    Values are read once; services receive them explicitly at construction time
    instead of reaching back into the environment.
    """

    # FLUX Kontext image editing (static API key sent as X-Key).
    bfl_api_key: Optional[str] = os.getenv("BFL_API_KEY")
    bfl_api_base: str = os.getenv("BFL_API_BASE", "https://api.bfl.ai/v1")
    flux_aspect_ratio: str = os.getenv("FLUX_ASPECT_RATIO", "1:1")
    image_max_base64_chars: int = int(os.getenv("IMAGE_MAX_BASE64_CHARS", str(4 * 1024 * 1024)))
    image_poll_interval_seconds: float = float(os.getenv("IMAGE_POLL_INTERVAL_SECONDS", "0.5"))
    image_poll_max_attempts: int = int(os.getenv("IMAGE_POLL_MAX_ATTEMPTS", "120"))
    image_timeout_seconds: float = float(os.getenv("IMAGE_TIMEOUT_SECONDS", "30"))

    # Kling image-to-video (HS256 JWT signed from the access/secret key pair).
    kling_access_key: Optional[str] = os.getenv("KLING_ACCESS_KEY")
    kling_secret_key: Optional[str] = os.getenv("KLING_SECRET_KEY")
    kling_api_base: str = os.getenv("KLING_API_BASE", "https://api.klingai.com")
    kling_model_name: str = os.getenv("KLING_MODEL_NAME", "kling-v1")
    kling_mode: str = os.getenv("KLING_MODE", "std")
    kling_duration: str = os.getenv("KLING_DURATION", "5")
    video_max_bytes: int = int(os.getenv("VIDEO_MAX_BYTES", str(50 * 1024 * 1024)))
    video_poll_interval_seconds: float = float(os.getenv("VIDEO_POLL_INTERVAL_SECONDS", "10"))
    video_poll_max_attempts: int = int(os.getenv("VIDEO_POLL_MAX_ATTEMPTS", "120"))
    video_timeout_seconds: float = float(os.getenv("VIDEO_TIMEOUT_SECONDS", "360"))
    # Unset keeps the per-request token regeneration; a value enables reuse
    # until expires_at minus this margin.
    token_reuse_margin_seconds: Optional[float] = _env_optional_float("TOKEN_REUSE_MARGIN_SECONDS")

    provider_request_timeout_seconds: float = float(os.getenv("PROVIDER_REQUEST_TIMEOUT_SECONDS", "30"))

    # Task history persistence.
    supabase_url: Optional[str] = os.getenv("SUPABASE_URL")
    supabase_service_role_key: Optional[str] = os.getenv("SUPABASE_SERVICE_ROLE_KEY")
    supabase_tasks_table: str = os.getenv("SUPABASE_TASKS_TABLE", "video_tasks")
    supabase_timeout_seconds: float = float(os.getenv("SUPABASE_TIMEOUT_SECONDS", "2.0"))
    task_session_id: str = os.getenv("TASK_SESSION_ID", "framecast-session")

    log_level: str = os.getenv("LOG_LEVEL", "INFO")
    log_json: bool = _env_bool("LOG_JSON", True)


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """Return a cached settings instance to avoid repeated environment reads."""

    return Settings()
