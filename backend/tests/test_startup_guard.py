from __future__ import annotations

import os

import pytest

from autoreply_web.main import create_app


def _set_env(overrides: dict[str, str | None]) -> dict[str, str | None]:
    previous: dict[str, str | None] = {}
    for key, value in overrides.items():
        previous[key] = os.environ.get(key)
        if value is None:
            os.environ.pop(key, None)
        else:
            os.environ[key] = value
    return previous


def _restore_env(previous: dict[str, str | None]) -> None:
    for key, value in previous.items():
        if value is None:
            os.environ.pop(key, None)
        else:
            os.environ[key] = value


def _misconfigured_http_generator_env(mode: str) -> dict[str, str | None]:
    return {
        "RUNTIME_CONFIG_GUARD_MODE": mode,
        "REPLY_GENERATOR_TYPE": "http",
        "REPLY_GENERATOR_BASE_URL": None,
        "REPLY_GENERATOR_API_KEY": None,
    }


def test_create_app_starts_with_default_configuration() -> None:
    previous = _set_env(
        {
            "RUNTIME_CONFIG_GUARD_MODE": "enforce",
            "REPLY_GENERATOR_TYPE": None,
            "MESSAGE_STORE_BACKEND": None,
            "DEALERSHIP_TIMEZONE": None,
            "AUTOREPLY_APP_NAME": None,
        }
    )
    try:
        app = create_app()
        assert app.title == "Dealer Auto-Reply"
    finally:
        _restore_env(previous)


def test_create_app_enforce_mode_blocks_startup_on_missing_generator_config() -> None:
    previous = _set_env(_misconfigured_http_generator_env("enforce"))
    try:
        with pytest.raises(RuntimeError, match="runtime config guard blocked startup"):
            create_app()
    finally:
        _restore_env(previous)


def test_create_app_warn_mode_logs_and_starts(caplog: pytest.LogCaptureFixture) -> None:
    previous = _set_env(_misconfigured_http_generator_env("warn"))
    try:
        with caplog.at_level("WARNING", logger="autoreply_web.main"):
            app = create_app()
        assert app is not None
        assert any("REPLY_GENERATOR_BASE_URL" in record.getMessage() for record in caplog.records)
    finally:
        _restore_env(previous)


def test_create_app_off_mode_ignores_issues() -> None:
    previous = _set_env(_misconfigured_http_generator_env("off"))
    try:
        assert create_app() is not None
    finally:
        _restore_env(previous)


def test_create_app_enforce_mode_blocks_startup_on_zero_history_capacity() -> None:
    previous = _set_env({"RUNTIME_CONFIG_GUARD_MODE": "enforce", "DECISION_HISTORY_CAPACITY": "0"})
    try:
        with pytest.raises(RuntimeError, match="DECISION_HISTORY_CAPACITY must be at least 1"):
            create_app()
    finally:
        _restore_env(previous)
