from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from threading import Lock
from typing import Protocol

from sqlalchemy import DateTime, String, create_engine, delete
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, sessionmaker

logger = logging.getLogger(__name__)

DEFAULT_RETENTION = timedelta(hours=2)


def _now_utc() -> datetime:
    return datetime.now(timezone.utc)


def _coerce_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


class ReminderAlreadyExistsError(Exception):
    """Raised when a live marker already holds the reminder key."""

    def __init__(self, reminder_key: str) -> None:
        super().__init__(f"reminder already recorded: {reminder_key}")
        self.reminder_key = reminder_key


@dataclass(frozen=True)
class SentReminderRecord:
    reminder_key: str
    sent_at: datetime
    expires_at: datetime
    rule_id: str | None
    occurrence_start: datetime | None
    recipient_email: str | None


class SentReminderStore(Protocol):
    def reset(self) -> None: ...

    def exists(self, reminder_key: str, *, now: datetime | None = None) -> bool: ...

    def record(
        self,
        reminder_key: str,
        *,
        rule_id: str | None = None,
        occurrence_start: datetime | None = None,
        recipient_email: str | None = None,
        ttl: timedelta | None = None,
        now: datetime | None = None,
    ) -> SentReminderRecord: ...

    def get(self, reminder_key: str, *, now: datetime | None = None) -> SentReminderRecord | None: ...

    def purge_expired(self, *, now: datetime | None = None) -> int: ...


class InMemorySentReminderStore:
    def __init__(self, *, retention: timedelta = DEFAULT_RETENTION) -> None:
        self._lock = Lock()
        self._retention = retention
        self._markers: dict[str, SentReminderRecord] = {}

    def reset(self) -> None:
        with self._lock:
            self._markers.clear()

    def _live(self, reminder_key: str, now: datetime) -> SentReminderRecord | None:
        marker = self._markers.get(reminder_key)
        if marker is None:
            return None
        if marker.expires_at <= now:
            del self._markers[reminder_key]
            return None
        return marker

    def exists(self, reminder_key: str, *, now: datetime | None = None) -> bool:
        return self.get(reminder_key, now=now) is not None

    def get(self, reminder_key: str, *, now: datetime | None = None) -> SentReminderRecord | None:
        current = _coerce_utc(now) if now is not None else _now_utc()
        with self._lock:
            return self._live(reminder_key, current)

    def record(
        self,
        reminder_key: str,
        *,
        rule_id: str | None = None,
        occurrence_start: datetime | None = None,
        recipient_email: str | None = None,
        ttl: timedelta | None = None,
        now: datetime | None = None,
    ) -> SentReminderRecord:
        sent_at = _coerce_utc(now) if now is not None else _now_utc()
        with self._lock:
            if self._live(reminder_key, sent_at) is not None:
                raise ReminderAlreadyExistsError(reminder_key)
            marker = SentReminderRecord(
                reminder_key=reminder_key,
                sent_at=sent_at,
                expires_at=sent_at + (ttl if ttl is not None else self._retention),
                rule_id=rule_id,
                occurrence_start=_coerce_utc(occurrence_start) if occurrence_start is not None else None,
                recipient_email=recipient_email,
            )
            self._markers[reminder_key] = marker
            return marker

    def purge_expired(self, *, now: datetime | None = None) -> int:
        current = _coerce_utc(now) if now is not None else _now_utc()
        with self._lock:
            expired = [key for key, marker in self._markers.items() if marker.expires_at <= current]
            for key in expired:
                del self._markers[key]
            return len(expired)


class SentRemindersBase(DeclarativeBase):
    pass


class _SentReminderRow(SentRemindersBase):
    __tablename__ = "sent_reminders"

    reminder_key: Mapped[str] = mapped_column(String(160), primary_key=True)
    sent_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    expires_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, index=True)
    rule_id: Mapped[str | None] = mapped_column(String(128), nullable=True)
    occurrence_start: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    recipient_email: Mapped[str | None] = mapped_column(String(320), nullable=True)


def _row_to_record(row: _SentReminderRow) -> SentReminderRecord:
    return SentReminderRecord(
        reminder_key=row.reminder_key,
        sent_at=_coerce_utc(row.sent_at),
        expires_at=_coerce_utc(row.expires_at),
        rule_id=row.rule_id,
        occurrence_start=_coerce_utc(row.occurrence_start) if row.occurrence_start is not None else None,
        recipient_email=row.recipient_email,
    )


class SqlAlchemySentReminderStore:
    """Markers in a ``sent_reminders`` table.

    Rows past ``expires_at`` are invisible to reads, replaced on insert, and
    deleted by ``purge_expired`` which the background scheduler runs.
    """

    def __init__(self, database_url: str, *, retention: timedelta = DEFAULT_RETENTION) -> None:
        if not database_url:
            raise RuntimeError("DATABASE_URL is required for REMINDER_STORE_BACKEND=postgres")
        self._retention = retention
        self._engine = create_engine(database_url, future=True, pool_pre_ping=True)
        self._session_factory = sessionmaker(self._engine, expire_on_commit=False, future=True)
        if database_url.startswith("sqlite"):
            SentRemindersBase.metadata.create_all(self._engine)

    def _session(self):
        return self._session_factory()

    def reset(self) -> None:
        with self._session() as session:
            with session.begin():
                session.execute(delete(_SentReminderRow))

    def exists(self, reminder_key: str, *, now: datetime | None = None) -> bool:
        return self.get(reminder_key, now=now) is not None

    def get(self, reminder_key: str, *, now: datetime | None = None) -> SentReminderRecord | None:
        current = _coerce_utc(now) if now is not None else _now_utc()
        with self._session() as session:
            row = session.get(_SentReminderRow, reminder_key)
            if row is None or _coerce_utc(row.expires_at) <= current:
                return None
            return _row_to_record(row)

    def record(
        self,
        reminder_key: str,
        *,
        rule_id: str | None = None,
        occurrence_start: datetime | None = None,
        recipient_email: str | None = None,
        ttl: timedelta | None = None,
        now: datetime | None = None,
    ) -> SentReminderRecord:
        sent_at = _coerce_utc(now) if now is not None else _now_utc()
        row = _SentReminderRow(
            reminder_key=reminder_key,
            sent_at=sent_at,
            expires_at=sent_at + (ttl if ttl is not None else self._retention),
            rule_id=rule_id,
            occurrence_start=_coerce_utc(occurrence_start) if occurrence_start is not None else None,
            recipient_email=recipient_email,
        )
        try:
            with self._session() as session:
                with session.begin():
                    session.execute(
                        delete(_SentReminderRow)
                        .where(_SentReminderRow.reminder_key == reminder_key)
                        .where(_SentReminderRow.expires_at <= sent_at)
                    )
                    session.add(row)
        except IntegrityError as exc:
            raise ReminderAlreadyExistsError(reminder_key) from exc
        return _row_to_record(row)

    def purge_expired(self, *, now: datetime | None = None) -> int:
        current = _coerce_utc(now) if now is not None else _now_utc()
        with self._session() as session:
            with session.begin():
                result = session.execute(
                    delete(_SentReminderRow).where(_SentReminderRow.expires_at <= current)
                )
        purged = result.rowcount or 0
        if purged:
            logger.info("purged %s expired reminder markers", purged)
        return purged


def create_sent_reminder_store(
    *,
    backend: str,
    database_url: str,
    retention: timedelta = DEFAULT_RETENTION,
) -> SentReminderStore:
    normalized = backend.strip().lower()
    if normalized == "postgres":
        return SqlAlchemySentReminderStore(database_url, retention=retention)
    if normalized == "inmemory":
        return InMemorySentReminderStore(retention=retention)
    raise RuntimeError(f"unsupported REMINDER_STORE_BACKEND: {backend}")
