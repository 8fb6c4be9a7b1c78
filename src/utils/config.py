"""Configuration loading and validation for segmentry."""

import os
import re
from pathlib import Path

from dotenv import load_dotenv

# Get the project root directory (parent of src)
PROJECT_ROOT = Path(__file__).parent.parent.parent

# Load environment variables from .env file in project root
load_dotenv(PROJECT_ROOT / ".env")

DEFAULT_TOKEN_TTL_SECONDS = 120


def _env_bool(name: str, default: str = "false") -> bool:
    return os.getenv(name, default).strip().lower() in ("1", "true", "yes")


def _env_ms(name: str, default_ms: int) -> float:
    """Read a millisecond env var and return seconds."""
    return int(os.getenv(name, str(default_ms))) / 1000.0


def parse_ttl_to_seconds(ttl: str | int | None) -> int:
    """Parse a TTL like ``120``, ``"90s"``, ``"2m"`` or ``"1h"`` into seconds.

    Unparseable values fall back to two minutes.
    """
    if ttl is None or ttl == "":
        return DEFAULT_TOKEN_TTL_SECONDS
    if isinstance(ttl, int):
        return max(1, ttl)

    value = str(ttl).strip().lower()
    if re.fullmatch(r"\d+", value):
        return int(value) or DEFAULT_TOKEN_TTL_SECONDS

    match = re.fullmatch(r"(\d+)([smh])", value)
    if not match:
        return DEFAULT_TOKEN_TTL_SECONDS

    amount, unit = int(match.group(1)), match.group(2)
    if amount <= 0:
        return DEFAULT_TOKEN_TTL_SECONDS
    return amount * {"s": 1, "m": 60, "h": 3600}[unit]


def load_config() -> dict:
    """Load configuration from environment variables."""

    # Helper function to resolve paths relative to project root
    def resolve_path(path: str | None, default_relative: str) -> str:
        if not path:
            return str(PROJECT_ROOT / default_relative)
        if Path(path).is_absolute():
            return path
        return str(PROJECT_ROOT / path)

    webhook_min_fails = int(os.getenv("VIDEO_VALIDATION_WEBHOOK_MIN_FAILS", "1") or "1")

    config = {
        # Service
        "api_prefix": os.getenv("API_PREFIX", "/api").rstrip("/"),
        "environment": os.getenv("APP_ENV", "development").lower(),
        "database_path": resolve_path(os.getenv("DATABASE_PATH"), ".segmentry/segmentry.db"),
        "admin_api_key": os.getenv("ADMIN_API_KEY"),
        # Probe engine
        "probe_timeout_seconds": _env_ms("VIDEO_VALIDATE_TIMEOUT_MS", 5000),
        "probe_max_attempts": max(1, int(os.getenv("VIDEO_PROBE_RETRIES", "2"))),
        "allow_insecure_upstream": _env_bool("VIDEO_ALLOW_INSECURE_UPSTREAM"),
        # Per-host admission control
        "host_rate_window_seconds": _env_ms("VIDEO_HOST_RATE_LIMIT_WINDOW_MS", 60000),
        "host_rate_max_requests": int(os.getenv("VIDEO_HOST_RATE_LIMIT_MAX", "6")),
        "host_rate_max_wait_seconds": _env_ms("VIDEO_HOST_RATE_LIMIT_MAX_WAIT_MS", 30000),
        # Validation
        "per_video_timeout_seconds": _env_ms("VIDEO_PER_VIDEO_TIMEOUT_MS", 120000),
        "max_segments_per_scan": int(os.getenv("VIDEO_VALIDATE_MAX_SEGMENTS", "300")),
        "validation_concurrency": int(os.getenv("VIDEO_VALIDATE_CONCURRENCY", "6")),
        "default_segment_length": float(os.getenv("DEFAULT_SEGMENT_DURATION", "6")),
        "pause_poll_seconds": _env_ms("VIDEO_PAUSE_POLL_MS", 500),
        "validation_webhook_url": os.getenv("VIDEO_VALIDATION_WEBHOOK"),
        "validation_webhook_min_fails": webhook_min_fails,
        # Scheduling
        "scheduler_enabled": _env_bool("SCHEDULER_ENABLED", "true"),
        "validate_interval_minutes": int(os.getenv("VIDEO_VALIDATE_INTERVAL_MINUTES", "720") or "720"),
        "status_check_interval_minutes": max(1, int(os.getenv("VIDEO_STATUS_CHECK_INTERVAL_MINS", "30"))),
        "status_check_batch_size": int(os.getenv("VIDEO_STATUS_CHECK_BATCH", "20")),
        # Delivery
        "segment_token_ttl_seconds": parse_ttl_to_seconds(os.getenv("VIDEO_SEGMENT_TOKEN_TTL", "2m")),
        "segment_sign_secret": os.getenv("VIDEO_SIGN_SECRET") or os.getenv("JWT_SECRET"),
        "playlist_cache_ttl_seconds": int(os.getenv("VIDEO_PLAYLIST_CACHE_TTL", "20")),
        # Notifications
        "notify_suppression_seconds": _env_ms("VIDEO_NOTIFY_SUPPRESSION_MS", 10 * 60 * 1000),
        # Mirror storage (local directory unless R2 credentials are set)
        "segment_store_dir": resolve_path(os.getenv("SEGMENT_STORE_DIR"), ".segmentry/segments"),
        "r2_account_id": os.getenv("R2_ACCOUNT_ID"),
        "r2_access_key_id": os.getenv("R2_ACCESS_KEY_ID"),
        "r2_secret_access_key": os.getenv("R2_SECRET_ACCESS_KEY"),
        "r2_bucket_name": os.getenv("R2_BUCKET_NAME", "segmentry-segments"),
        "r2_public_url": os.getenv("R2_PUBLIC_URL"),
        # Logging
        "log_level": os.getenv("LOG_LEVEL", "INFO"),
        "log_json": _env_bool("LOG_JSON"),
    }

    return config


def is_production(config: dict) -> bool:
    """True when diagnostics must be hidden from clients."""
    return config.get("environment") == "production"


def validate_config(config: dict) -> list[str]:
    """Validate configuration and return list of errors."""
    errors = []

    if is_production(config) and not config.get("segment_sign_secret"):
        errors.append("VIDEO_SIGN_SECRET is required in production")

    if config.get("host_rate_max_requests", 0) < 1:
        errors.append("VIDEO_HOST_RATE_LIMIT_MAX must be at least 1")

    if config.get("host_rate_window_seconds", 0) <= 0:
        errors.append("VIDEO_HOST_RATE_LIMIT_WINDOW_MS must be positive")

    if config.get("validation_concurrency", 0) < 1:
        errors.append("VIDEO_VALIDATE_CONCURRENCY must be at least 1")

    if config.get("max_segments_per_scan", 0) < 1:
        errors.append("VIDEO_VALIDATE_MAX_SEGMENTS must be at least 1")

    if config.get("default_segment_length", 0) <= 0:
        errors.append("DEFAULT_SEGMENT_DURATION must be positive")

    r2_keys = ("r2_account_id", "r2_access_key_id", "r2_secret_access_key")
    r2_set = [bool(config.get(k)) for k in r2_keys]
    if any(r2_set) and not all(r2_set):
        errors.append("R2_ACCOUNT_ID, R2_ACCESS_KEY_ID and R2_SECRET_ACCESS_KEY must be set together")

    # Validate local paths exist
    db_parent = Path(config["database_path"]).parent
    try:
        db_parent.mkdir(parents=True, exist_ok=True)
    except Exception as e:
        errors.append(f"Cannot create database folder: {e}")

    return errors
