from __future__ import annotations

import os

import pytest

from petcare_web.main import create_app


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


def _base_runtime_secret_env() -> dict[str, str | None]:
    return {
        "ADMIN_API_TOKEN": "prod-admin-token-001",
        "RUNTIME_SECRET_GUARD_MODE": "enforce",
        "SCHEDULE_STORE_BACKEND": "inmemory",
        "REMINDER_STORE_BACKEND": "inmemory",
        "REMINDER_RETENTION_MINUTES": None,
        "SMTP_USERNAME": None,
        "SMTP_PASSWORD": None,
        "EMAIL_USER": None,
        "EMAIL_PASS": None,
    }


def test_create_app_starts_when_notifier_is_disabled() -> None:
    previous = _set_env(
        {
            **_base_runtime_secret_env(),
            "NOTIFIER_ENABLED": "false",
            "NOTIFIER_SENDER_TYPE": "smtp",
        }
    )
    try:
        app = create_app()
        assert app.title == "Mishtika Pet Care"
    finally:
        _restore_env(previous)


def test_create_app_blocks_when_smtp_enabled_without_credentials() -> None:
    previous = _set_env(
        {
            **_base_runtime_secret_env(),
            "NOTIFIER_ENABLED": "true",
            "NOTIFIER_SENDER_TYPE": "smtp",
        }
    )
    try:
        with pytest.raises(RuntimeError) as exc_info:
            create_app()
        message = str(exc_info.value)
        assert "SMTP_USERNAME and SMTP_PASSWORD are required" in message
        assert "NOTIFIER_ENABLED=false" in message
    finally:
        _restore_env(previous)


def test_create_app_blocks_placeholder_admin_token_in_enforce_mode() -> None:
    previous = _set_env(
        {
            **_base_runtime_secret_env(),
            "ADMIN_API_TOKEN": "dev-admin-token",
            "NOTIFIER_ENABLED": "false",
        }
    )
    try:
        with pytest.raises(RuntimeError, match="ADMIN_API_TOKEN"):
            create_app()
    finally:
        _restore_env(previous)


def test_create_app_only_warns_in_warn_mode(caplog: pytest.LogCaptureFixture) -> None:
    previous = _set_env(
        {
            **_base_runtime_secret_env(),
            "ADMIN_API_TOKEN": "dev-admin-token",
            "RUNTIME_SECRET_GUARD_MODE": "warn",
            "NOTIFIER_ENABLED": "false",
        }
    )
    try:
        with caplog.at_level("WARNING", logger="petcare_web.main"):
            create_app()
        assert any("ADMIN_API_TOKEN" in record.getMessage() for record in caplog.records)
    finally:
        _restore_env(previous)
