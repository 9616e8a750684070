from __future__ import annotations

import json
import smtplib
import socket
import urllib.error
import urllib.request
from dataclasses import dataclass
from datetime import datetime, timezone
from email.message import EmailMessage
from html import escape
from typing import Literal, Protocol
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from .config import Settings

ProviderResultStatus = Literal["sent", "failed", "dry_run"]


@dataclass(frozen=True)
class ReminderSendRequest:
    reminder_key: str
    rule_id: str
    title: str
    occurrence_start: datetime
    recipient_email: str


@dataclass(frozen=True)
class ReminderSendResult:
    status: ProviderResultStatus
    attempted_at: datetime
    provider_message_id: str | None = None
    error_code: str | None = None
    error_message: str | None = None


class NotifierSender(Protocol):
    def send_reminder(self, payload: ReminderSendRequest, *, dry_run: bool) -> ReminderSendResult: ...


def _ordinal(day: int) -> str:
    if 11 <= day % 100 <= 13:
        return f"{day}th"
    suffix = {1: "st", 2: "nd", 3: "rd"}.get(day % 10, "th")
    return f"{day}{suffix}"


def format_reminder_time(value: datetime, timezone_name: str) -> str:
    """Render e.g. ``10:00 am on Wednesday, January 10th 2024`` in the display zone."""
    try:
        zone = ZoneInfo(timezone_name)
    except (ZoneInfoNotFoundError, ValueError):
        zone = ZoneInfo("UTC")
    local = value.astimezone(zone)
    hour = local.hour % 12 or 12
    meridiem = "am" if local.hour < 12 else "pm"
    return (
        f"{hour}:{local.minute:02d} {meridiem} on {local.strftime('%A')}, "
        f"{local.strftime('%B')} {_ordinal(local.day)} {local.year}"
    )


def reminder_subject(title: str) -> str:
    return f"Reminder: {title}"


def reminder_bodies(title: str, formatted_time: str) -> tuple[str, str]:
    text = (
        f"Reminder for your scheduled event: {title}\n"
        f"Starting around: {formatted_time}\n\n"
        "Have a great day!"
    )
    html = (
        "<p>This is a reminder for your scheduled event:</p>"
        f"<p><b>{escape(title)}</b></p>"
        f"<p>Starting around: {escape(formatted_time)}</p>"
        "<p>Have a great day!</p>"
    )
    return text, html


def mask_email(value: str | None) -> str:
    normalized = (value or "").strip()
    if not normalized:
        return "***"
    if "@" in normalized:
        local, domain = normalized.split("@", 1)
        if len(local) <= 1:
            return f"*@{domain}"
        return f"{local[0]}***@{domain}"
    if len(normalized) <= 4:
        return "*" * len(normalized)
    return f"{normalized[:2]}***{normalized[-2:]}"


class StubNotifierSender:
    def __init__(self, *, enabled: bool) -> None:
        self._enabled = enabled
        self.sent: list[ReminderSendRequest] = []

    def send_reminder(self, payload: ReminderSendRequest, *, dry_run: bool) -> ReminderSendResult:
        attempted_at = datetime.now(timezone.utc)

        if dry_run:
            return ReminderSendResult(status="dry_run", attempted_at=attempted_at)

        if not self._enabled:
            return ReminderSendResult(
                status="failed",
                attempted_at=attempted_at,
                error_code="notifier_disabled",
                error_message="Live reminder delivery is disabled",
            )

        if "fail" in payload.recipient_email.lower():
            return ReminderSendResult(
                status="failed",
                attempted_at=attempted_at,
                error_code="stub_delivery_failed",
                error_message="Stub sender forced failure for recipient",
            )

        self.sent.append(payload)
        message_id = f"stub-{payload.reminder_key}"
        return ReminderSendResult(status="sent", attempted_at=attempted_at, provider_message_id=message_id)


class SmtpNotifierSender:
    """Sends reminder emails through an SMTP relay (STARTTLS + login)."""

    def __init__(
        self,
        *,
        host: str,
        port: int,
        username: str,
        password: str,
        from_name: str = "MISHTIKA",
        use_tls: bool = True,
        timeout_seconds: int = 30,
        display_timezone: str = "UTC",
    ) -> None:
        if not host.strip():
            raise ValueError("host must not be empty")
        if not username.strip():
            raise ValueError("username must not be empty")
        self._host = host.strip()
        self._port = port
        self._username = username.strip()
        self._password = password
        self._from_name = from_name
        self._use_tls = use_tls
        self._timeout_seconds = timeout_seconds
        self._display_timezone = display_timezone

    def build_message(self, payload: ReminderSendRequest) -> EmailMessage:
        formatted = format_reminder_time(payload.occurrence_start, self._display_timezone)
        text, html = reminder_bodies(payload.title, formatted)
        message = EmailMessage()
        message["Subject"] = reminder_subject(payload.title)
        message["From"] = f'"{self._from_name}" <{self._username}>'
        message["To"] = payload.recipient_email
        message["X-Reminder-Key"] = payload.reminder_key
        message.set_content(text)
        message.add_alternative(html, subtype="html")
        return message

    def send_reminder(self, payload: ReminderSendRequest, *, dry_run: bool) -> ReminderSendResult:
        attempted_at = datetime.now(timezone.utc)

        if dry_run:
            return ReminderSendResult(status="dry_run", attempted_at=attempted_at)

        message = self.build_message(payload)
        try:
            with smtplib.SMTP(self._host, self._port, timeout=self._timeout_seconds) as client:
                if self._use_tls:
                    client.starttls()
                client.login(self._username, self._password)
                client.send_message(message)
        except smtplib.SMTPAuthenticationError as exc:
            return self._failed(attempted_at, "smtp_auth_failed", f"SMTP authentication failed: {exc.smtp_code}", payload)
        except smtplib.SMTPRecipientsRefused:
            return self._failed(attempted_at, "recipient_refused", "SMTP server refused the recipient", payload)
        except smtplib.SMTPException as exc:
            return self._failed(attempted_at, "smtp_error", f"SMTP error: {exc}", payload)
        except (socket.timeout, TimeoutError) as exc:
            return self._failed(attempted_at, "timeout", f"SMTP connection timed out: {exc}", payload)
        except OSError as exc:
            return self._failed(attempted_at, "connection_error", f"Connection error: {exc}", payload)

        return ReminderSendResult(
            status="sent",
            attempted_at=attempted_at,
            provider_message_id=f"smtp-{payload.reminder_key}",
        )

    def _failed(
        self,
        attempted_at: datetime,
        error_code: str,
        message: str,
        payload: ReminderSendRequest,
    ) -> ReminderSendResult:
        return ReminderSendResult(
            status="failed",
            attempted_at=attempted_at,
            error_code=error_code,
            error_message=f"{message} (recipient: {mask_email(payload.recipient_email)})",
        )


class _NotifierSendError(Exception):
    """Internal error raised when a messaging API request fails."""

    def __init__(self, error_code: str, message: str) -> None:
        super().__init__(message)
        self.error_code = error_code
        self.message = message


def _provider_message_id(raw: bytes) -> str | None:
    # A 2xx reply means the message was accepted, whatever the body looks like.
    try:
        data = json.loads(raw.decode("utf-8"))
    except (UnicodeDecodeError, ValueError):
        return None
    if not isinstance(data, dict):
        return None
    message_id = data.get("message_id")
    return str(message_id) if message_id is not None else None


class HttpNotifierSender:
    """Delivers reminder emails through a JSON messaging API."""

    def __init__(
        self,
        *,
        base_url: str,
        api_key: str,
        timeout_seconds: int = 30,
        display_timezone: str = "UTC",
    ) -> None:
        stripped_url = base_url.strip().rstrip("/")
        stripped_key = api_key.strip()
        if not stripped_url:
            raise ValueError("base_url must not be empty")
        if not stripped_key:
            raise ValueError("api_key must not be empty")
        self._base_url = stripped_url
        self._api_key = stripped_key
        self._timeout_seconds = timeout_seconds
        self._display_timezone = display_timezone

    def send_reminder(self, payload: ReminderSendRequest, *, dry_run: bool) -> ReminderSendResult:
        attempted_at = datetime.now(timezone.utc)

        if dry_run:
            return ReminderSendResult(status="dry_run", attempted_at=attempted_at)

        formatted = format_reminder_time(payload.occurrence_start, self._display_timezone)
        text, html = reminder_bodies(payload.title, formatted)
        request_payload = {
            "channel": "email",
            "recipient": payload.recipient_email,
            "subject": reminder_subject(payload.title),
            "text": text,
            "html": html,
            "idempotency_key": payload.reminder_key,
        }

        try:
            message_id = self._post(request_payload)
        except _NotifierSendError as exc:
            return ReminderSendResult(
                status="failed",
                attempted_at=attempted_at,
                error_code=exc.error_code,
                error_message=f"{exc.message} (recipient: {mask_email(payload.recipient_email)})",
            )
        return ReminderSendResult(
            status="sent",
            attempted_at=attempted_at,
            provider_message_id=message_id,
        )

    def _post(self, body: dict[str, str]) -> str | None:
        """POST the message and return the provider message id, if the reply carries one."""
        url = f"{self._base_url}/v1/messages/send"
        data = json.dumps(body).encode("utf-8")
        request = urllib.request.Request(
            url,
            data=data,
            headers={
                "Authorization": f"Bearer {self._api_key}",
                "Content-Type": "application/json",
            },
            method="POST",
        )
        try:
            with urllib.request.urlopen(request, timeout=self._timeout_seconds) as response:
                raw = response.read()
        except urllib.error.HTTPError as exc:
            raise _NotifierSendError(
                error_code=f"http_{exc.code}",
                message=f"HTTP {exc.code}: {exc.reason}",
            ) from exc
        except urllib.error.URLError as exc:
            raise _NotifierSendError(
                error_code="connection_error",
                message=f"Connection error: {exc.reason}",
            ) from exc
        except (socket.timeout, TimeoutError) as exc:
            raise _NotifierSendError(
                error_code="timeout",
                message=f"Request timed out: {exc}",
            ) from exc
        return _provider_message_id(raw)


def create_notifier(settings: Settings) -> NotifierSender:
    sender_type = settings.notifier_sender_type
    if sender_type == "smtp":
        return SmtpNotifierSender(
            host=settings.smtp_host,
            port=settings.smtp_port,
            username=settings.smtp_username,
            password=settings.smtp_password,
            from_name=settings.email_from_name,
            use_tls=settings.smtp_use_tls,
            timeout_seconds=settings.notifier_timeout_seconds,
            display_timezone=settings.reminder_display_timezone,
        )
    if sender_type == "http":
        return HttpNotifierSender(
            base_url=settings.notifier_api_base_url,
            api_key=settings.notifier_api_key,
            timeout_seconds=settings.notifier_timeout_seconds,
            display_timezone=settings.reminder_display_timezone,
        )
    return StubNotifierSender(enabled=settings.notifier_enabled)
