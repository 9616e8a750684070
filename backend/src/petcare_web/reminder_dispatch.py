from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Protocol

from .models import ReminderResult, ReminderRunResponse
from .notifier import NotifierSender, ReminderSendRequest, mask_email
from .recurrence import Occurrence, generate_occurrences
from .schedules import ReminderTarget
from .sent_reminders import DEFAULT_RETENTION, ReminderAlreadyExistsError, SentReminderStore

logger = logging.getLogger(__name__)

DEFAULT_LOOKAHEAD = timedelta(minutes=30)


def _now_utc() -> datetime:
    return datetime.now(timezone.utc)


def _coerce_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def check_now_override(now: datetime | None, *, dry_run: bool, allow_live: bool) -> None:
    """Reject a simulated clock on a live run unless live overrides are allowed."""
    if now is not None and not dry_run and not allow_live:
        raise ValueError("now_override is only allowed for dry runs")


class ReminderRuleSource(Protocol):
    def list_reminder_targets(self) -> list[ReminderTarget]: ...


@dataclass(frozen=True)
class ReminderDispatchConfig:
    lookahead: timedelta = DEFAULT_LOOKAHEAD
    retention: timedelta = DEFAULT_RETENTION
    lead: timedelta = timedelta(0)

    def __post_init__(self) -> None:
        if self.lookahead <= timedelta(0):
            raise ValueError("lookahead must be positive")
        if self.lead < timedelta(0):
            raise ValueError("lead must not be negative")
        if self.retention < self.lookahead + self.lead:
            logger.warning(
                "reminder retention %s is shorter than lead + lookahead %s; duplicates are possible",
                self.retention,
                self.lookahead + self.lead,
            )


@dataclass
class ReminderDispatchSummary:
    run_at: datetime
    window_start: datetime
    window_end: datetime
    dry_run: bool
    rule_count: int = 0
    occurrence_count: int = 0
    results: list[ReminderResult] = field(default_factory=list)

    def _count(self, status: str) -> int:
        return sum(1 for item in self.results if item.status == status)

    @property
    def sent_count(self) -> int:
        return self._count("sent")

    @property
    def failed_count(self) -> int:
        return self._count("failed")

    @property
    def skipped_count(self) -> int:
        return self._count("skipped")

    def to_response(self) -> ReminderRunResponse:
        return ReminderRunResponse(
            run_at=self.run_at,
            window_start=self.window_start,
            window_end=self.window_end,
            dry_run=self.dry_run,
            rule_count=self.rule_count,
            occurrence_count=self.occurrence_count,
            sent_count=self.sent_count,
            failed_count=self.failed_count,
            skipped_count=self.skipped_count,
            results=list(self.results),
        )


class ReminderDispatchJob:
    """Emails each owner once for every occurrence about to start.

    A run expands every schedule over ``[now + lead, now + lead + lookahead)``
    and sends one reminder per occurrence whose key has no live marker in the
    sent-reminder store. Markers are written only after a successful send, so
    failed deliveries are retried by the next run while they stay in the window.
    """

    def __init__(
        self,
        *,
        rule_source: ReminderRuleSource,
        store: SentReminderStore,
        notifier: NotifierSender,
        config: ReminderDispatchConfig | None = None,
    ) -> None:
        self._rule_source = rule_source
        self._store = store
        self._notifier = notifier
        self._config = config or ReminderDispatchConfig()

    @property
    def config(self) -> ReminderDispatchConfig:
        return self._config

    def window_for(self, now: datetime) -> tuple[datetime, datetime]:
        window_start = _coerce_utc(now) + self._config.lead
        return window_start, window_start + self._config.lookahead

    def run(self, now: datetime | None = None, *, dry_run: bool = False) -> ReminderDispatchSummary:
        run_at = _coerce_utc(now) if now is not None else _now_utc()
        window_start, window_end = self.window_for(run_at)
        targets = self._rule_source.list_reminder_targets()

        summary = ReminderDispatchSummary(
            run_at=run_at,
            window_start=window_start,
            window_end=window_end,
            dry_run=dry_run,
            rule_count=len(targets),
        )
        for target in targets:
            occurrences = generate_occurrences(target.rule, window_start, window_end)
            summary.occurrence_count += len(occurrences)
            for occurrence in occurrences:
                try:
                    result = self._dispatch_one(occurrence, target.recipient_email, run_at=run_at, dry_run=dry_run)
                except Exception as exc:
                    logger.exception(
                        "reminder dispatch failed for rule %s at %s",
                        occurrence.rule_id,
                        occurrence.start.isoformat(),
                    )
                    result = ReminderResult(
                        reminder_key=occurrence.key,
                        rule_id=occurrence.rule_id,
                        title=occurrence.title,
                        occurrence_start=occurrence.start,
                        status="failed",
                        reason="unexpected_error",
                        error_code="unexpected_error",
                        error_message=str(exc),
                    )
                summary.results.append(result)

        logger.info(
            "reminder run %s..%s dry_run=%s rules=%s occurrences=%s sent=%s failed=%s skipped=%s",
            window_start.isoformat(),
            window_end.isoformat(),
            dry_run,
            summary.rule_count,
            summary.occurrence_count,
            summary.sent_count,
            summary.failed_count,
            summary.skipped_count,
        )
        return summary

    def _dispatch_one(
        self,
        occurrence: Occurrence,
        recipient_email: str | None,
        *,
        run_at: datetime,
        dry_run: bool,
    ) -> ReminderResult:
        key = occurrence.key
        base = {
            "reminder_key": key,
            "rule_id": occurrence.rule_id,
            "title": occurrence.title,
            "occurrence_start": occurrence.start,
        }

        if self._store.exists(key, now=run_at):
            return ReminderResult(**base, status="skipped", reason="already_sent")

        if not recipient_email:
            logger.warning("no email on file for owner %s of rule %s", occurrence.owner_id, occurrence.rule_id)
            return ReminderResult(**base, status="skipped", reason="recipient_missing")

        masked = mask_email(recipient_email)
        send_result = self._notifier.send_reminder(
            ReminderSendRequest(
                reminder_key=key,
                rule_id=occurrence.rule_id,
                title=occurrence.title,
                occurrence_start=occurrence.start,
                recipient_email=recipient_email,
            ),
            dry_run=dry_run,
        )

        if send_result.status == "dry_run":
            return ReminderResult(**base, status="dry_run", reason="would_send", recipient_masked=masked)

        if send_result.status != "sent":
            logger.error(
                "reminder %s to %s failed: %s %s",
                key,
                masked,
                send_result.error_code,
                send_result.error_message,
            )
            return ReminderResult(
                **base,
                status="failed",
                reason="send_failed",
                recipient_masked=masked,
                error_code=send_result.error_code,
                error_message=send_result.error_message,
            )

        reason = "sent"
        try:
            self._store.record(
                key,
                rule_id=occurrence.rule_id,
                occurrence_start=occurrence.start,
                recipient_email=recipient_email,
                ttl=self._config.retention,
            )
        except ReminderAlreadyExistsError:
            logger.warning("reminder marker %s was already recorded by a concurrent run", key)
            reason = "duplicate_marker"
        return ReminderResult(
            **base,
            status="sent",
            reason=reason,
            recipient_masked=masked,
            provider_message_id=send_result.provider_message_id,
        )
