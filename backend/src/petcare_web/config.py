from __future__ import annotations

import os
from dataclasses import dataclass


def _as_bool(value: str | None, default: bool) -> bool:
    if value is None:
        return default
    normalized = value.strip().lower()
    if normalized in {"1", "true", "yes", "on"}:
        return True
    if normalized in {"0", "false", "no", "off"}:
        return False
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


def _is_placeholder(value: str, *, defaults: set[str]) -> bool:
    normalized = value.strip()
    if not normalized:
        return True
    if normalized in defaults:
        return True
    lower = normalized.lower()
    return lower in {"change-me", "replace-me", "placeholder", "changeme"}


@dataclass(frozen=True)
class Settings:
    app_name: str = "Mishtika Pet Care"
    api_prefix: str = "/api/v1"
    portal_base_url: str = "http://localhost:3000"
    database_url: str = ""
    schedule_store_backend: str = "inmemory"
    reminder_store_backend: str = "inmemory"
    # Dispatch window: [now + lead, now + lead + lookahead).
    reminder_lookahead_minutes: int = 30
    reminder_lead_minutes: int = 0
    reminder_retention_minutes: int = 120
    reminder_scheduler_enabled: bool = False
    reminder_interval_minutes: int = 15
    reminder_sweep_interval_minutes: int = 10
    reminder_display_timezone: str = "Asia/Beirut"
    reminder_allow_live_now_override: bool = False
    occurrence_window_max_days: int = 366
    notifier_enabled: bool = False
    notifier_sender_type: str = "stub"
    notifier_dry_run_default: bool = False
    notifier_timeout_seconds: int = 30
    notifier_api_base_url: str = ""
    notifier_api_key: str = ""
    smtp_host: str = "smtp.gmail.com"
    smtp_port: int = 587
    smtp_username: str = ""
    smtp_password: str = ""
    smtp_use_tls: bool = True
    email_from_name: str = "MISHTIKA"
    admin_api_token: str = "dev-admin-token"
    runtime_secret_guard_mode: str = "warn"


def get_settings() -> Settings:
    return Settings(
        app_name=os.getenv("PETCARE_APP_NAME", "Mishtika Pet Care"),
        api_prefix=os.getenv("API_PREFIX", "/api/v1"),
        portal_base_url=os.getenv("PORTAL_BASE_URL", "http://localhost:3000"),
        database_url=os.getenv("DATABASE_URL", ""),
        schedule_store_backend=os.getenv("SCHEDULE_STORE_BACKEND", "inmemory"),
        reminder_store_backend=os.getenv("REMINDER_STORE_BACKEND", "inmemory"),
        reminder_lookahead_minutes=_as_int(os.getenv("REMINDER_LOOKAHEAD_MINUTES"), 30),
        reminder_lead_minutes=_as_int(os.getenv("REMINDER_LEAD_MINUTES"), 0),
        reminder_retention_minutes=_as_int(os.getenv("REMINDER_RETENTION_MINUTES"), 120),
        reminder_scheduler_enabled=_as_bool(os.getenv("REMINDER_SCHEDULER_ENABLED"), False),
        reminder_interval_minutes=_as_int(os.getenv("REMINDER_INTERVAL_MINUTES"), 15),
        reminder_sweep_interval_minutes=_as_int(os.getenv("REMINDER_SWEEP_INTERVAL_MINUTES"), 10),
        reminder_display_timezone=os.getenv("REMINDER_DISPLAY_TIMEZONE", "Asia/Beirut"),
        reminder_allow_live_now_override=_as_bool(os.getenv("REMINDER_ALLOW_LIVE_NOW_OVERRIDE"), False),
        occurrence_window_max_days=_as_int(os.getenv("OCCURRENCE_WINDOW_MAX_DAYS"), 366),
        notifier_enabled=_as_bool(os.getenv("NOTIFIER_ENABLED"), False),
        notifier_sender_type=_normalize_mode(
            os.getenv("NOTIFIER_SENDER_TYPE"),
            default="stub",
            allowed={"stub", "smtp", "http"},
        ),
        notifier_dry_run_default=_as_bool(os.getenv("NOTIFIER_DRY_RUN_DEFAULT"), False),
        notifier_timeout_seconds=_as_int(os.getenv("NOTIFIER_TIMEOUT_SECONDS"), 30),
        notifier_api_base_url=os.getenv("NOTIFIER_API_BASE_URL", ""),
        notifier_api_key=os.getenv("NOTIFIER_API_KEY", ""),
        smtp_host=os.getenv("SMTP_HOST", "smtp.gmail.com"),
        smtp_port=_as_int(os.getenv("SMTP_PORT"), 587),
        smtp_username=os.getenv("SMTP_USERNAME", os.getenv("EMAIL_USER", "")),
        smtp_password=os.getenv("SMTP_PASSWORD", os.getenv("EMAIL_PASS", "")),
        smtp_use_tls=_as_bool(os.getenv("SMTP_USE_TLS"), True),
        email_from_name=os.getenv("EMAIL_FROM_NAME", "MISHTIKA"),
        admin_api_token=os.getenv("ADMIN_API_TOKEN", "dev-admin-token"),
        runtime_secret_guard_mode=_normalize_mode(
            os.getenv("RUNTIME_SECRET_GUARD_MODE"),
            default="warn",
            allowed={"off", "warn", "enforce"},
        ),
    )


def runtime_secret_issues(settings: Settings) -> tuple[str, ...]:
    issues: list[str] = []
    if _is_placeholder(
        settings.admin_api_token,
        defaults={"dev-admin-token", "change-me-in-production", "admin"},
    ):
        issues.append("ADMIN_API_TOKEN is empty or uses a development placeholder")
    if settings.notifier_enabled and settings.notifier_sender_type == "smtp":
        if not settings.smtp_username.strip() or not settings.smtp_password.strip():
            issues.append(
                "SMTP_USERNAME and SMTP_PASSWORD are required when NOTIFIER_SENDER_TYPE=smtp "
                "and NOTIFIER_ENABLED=true"
            )
    if settings.notifier_enabled and settings.notifier_sender_type == "http":
        if not settings.notifier_api_base_url.strip() or not settings.notifier_api_key.strip():
            issues.append(
                "NOTIFIER_API_BASE_URL and NOTIFIER_API_KEY are required when NOTIFIER_SENDER_TYPE=http "
                "and NOTIFIER_ENABLED=true"
            )
    backends = {
        settings.schedule_store_backend.strip().lower(),
        settings.reminder_store_backend.strip().lower(),
    }
    if "postgres" in backends and not settings.database_url.strip():
        issues.append("DATABASE_URL is required when a store backend is set to postgres")
    if settings.reminder_retention_minutes < settings.reminder_lookahead_minutes + settings.reminder_lead_minutes:
        issues.append(
            "REMINDER_RETENTION_MINUTES is shorter than the reminder window; "
            "occurrences may be reminded more than once"
        )
    return tuple(issues)
