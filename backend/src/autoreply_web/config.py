from __future__ import annotations

import os
from dataclasses import dataclass
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError


def _as_bool(value: str | None, default: bool) -> bool:
    if value is None:
        return default
    normalized = value.strip().lower()
    if normalized in {"1", "true", "yes", "on"}:
        return True
    if normalized in {"0", "false", "no", "off"}:
        return False
    return default


def _as_float(value: str | None, default: float) -> float:
    if value is None:
        return default
    try:
        return float(value.strip())
    except ValueError:
        return default


def _as_int(value: str | None, default: int) -> int:
    if value is None:
        return default
    try:
        return int(value.strip())
    except ValueError:
        return default


def _normalize_mode(value: str | None, *, default: str, allowed: set[str]) -> str:
    if value is None:
        return default
    normalized = value.strip().lower()
    return normalized if normalized in allowed else default


@dataclass(frozen=True)
class Settings:
    app_name: str = "Dealer Auto-Reply"
    api_prefix: str = "/api/v1"
    message_store_backend: str = "inmemory"
    database_url: str = ""
    message_cache_ttl_seconds: float = 10.0
    message_load_max_retries: int = 3
    message_load_timeout_ms: int = 10_000
    message_load_backoff_base_ms: int = 1_000
    message_load_backoff_cap_ms: int = 5_000
    decision_history_capacity: int = 100
    dealership_timezone: str = "UTC"
    autoreply_enabled: bool = False
    reply_generator_type: str = "template"
    reply_generator_base_url: str = ""
    reply_generator_api_key: str = ""
    reply_generator_timeout_seconds: int = 30
    runtime_config_guard_mode: str = "warn"

    def business_zone(self) -> ZoneInfo:
        try:
            return ZoneInfo(self.dealership_timezone)
        except (ZoneInfoNotFoundError, ValueError):
            return ZoneInfo("UTC")


def get_settings() -> Settings:
    return Settings(
        app_name=os.getenv("AUTOREPLY_APP_NAME", "Dealer Auto-Reply"),
        api_prefix=os.getenv("AUTOREPLY_API_PREFIX", "/api/v1"),
        message_store_backend=os.getenv("MESSAGE_STORE_BACKEND", "inmemory"),
        database_url=os.getenv("DATABASE_URL", ""),
        message_cache_ttl_seconds=_as_float(os.getenv("MESSAGE_CACHE_TTL_SECONDS"), 10.0),
        message_load_max_retries=_as_int(os.getenv("MESSAGE_LOAD_MAX_RETRIES"), 3),
        message_load_timeout_ms=_as_int(os.getenv("MESSAGE_LOAD_TIMEOUT_MS"), 10_000),
        message_load_backoff_base_ms=_as_int(os.getenv("MESSAGE_LOAD_BACKOFF_BASE_MS"), 1_000),
        message_load_backoff_cap_ms=_as_int(os.getenv("MESSAGE_LOAD_BACKOFF_CAP_MS"), 5_000),
        decision_history_capacity=_as_int(os.getenv("DECISION_HISTORY_CAPACITY"), 100),
        dealership_timezone=os.getenv("DEALERSHIP_TIMEZONE", "UTC"),
        autoreply_enabled=_as_bool(os.getenv("AUTOREPLY_ENABLED"), False),
        reply_generator_type=_normalize_mode(
            os.getenv("REPLY_GENERATOR_TYPE"),
            default="template",
            allowed={"template", "http"},
        ),
        reply_generator_base_url=os.getenv("REPLY_GENERATOR_BASE_URL", ""),
        reply_generator_api_key=os.getenv("REPLY_GENERATOR_API_KEY", ""),
        reply_generator_timeout_seconds=_as_int(os.getenv("REPLY_GENERATOR_TIMEOUT_SECONDS"), 30),
        runtime_config_guard_mode=_normalize_mode(
            os.getenv("RUNTIME_CONFIG_GUARD_MODE"),
            default="warn",
            allowed={"off", "warn", "enforce"},
        ),
    )


def runtime_config_issues(settings: Settings) -> tuple[str, ...]:
    issues: list[str] = []
    if settings.reply_generator_type == "http":
        if not settings.reply_generator_base_url.strip():
            issues.append("REPLY_GENERATOR_BASE_URL is required when REPLY_GENERATOR_TYPE=http")
        if not settings.reply_generator_api_key.strip():
            issues.append("REPLY_GENERATOR_API_KEY is required when REPLY_GENERATOR_TYPE=http")
    if settings.message_store_backend.strip().lower() == "postgres" and not settings.database_url.strip():
        issues.append("DATABASE_URL is required when MESSAGE_STORE_BACKEND=postgres")
    try:
        ZoneInfo(settings.dealership_timezone)
    except (ZoneInfoNotFoundError, ValueError):
        issues.append(f"DEALERSHIP_TIMEZONE is not a known timezone: {settings.dealership_timezone}")
    if settings.message_load_max_retries < 0:
        issues.append("MESSAGE_LOAD_MAX_RETRIES cannot be negative")
    if settings.decision_history_capacity < 1:
        issues.append("DECISION_HISTORY_CAPACITY must be at least 1")
    return tuple(issues)
