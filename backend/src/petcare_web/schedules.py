from __future__ import annotations

import json
import logging
import secrets
from dataclasses import dataclass
from datetime import datetime, timezone
from itertools import count
from threading import Lock
from typing import Protocol

from sqlalchemy import Boolean, DateTime, ForeignKey, Integer, String, Text, UniqueConstraint, create_engine, delete, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, sessionmaker

from .models import OwnerRecord, ScheduleCreateRequest, ScheduleRecord
from .recurrence import RecurrenceRule, epoch_millis

logger = logging.getLogger(__name__)

_UPDATABLE_FIELDS = {"title", "start", "end", "type", "repeat", "repeat_type", "repeat_days"}


def _now_utc() -> datetime:
    return datetime.now(timezone.utc)


def _coerce_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


class ScheduleNotFoundError(KeyError):
    """Raised when an operation references a schedule id that does not exist."""


@dataclass(frozen=True)
class ReminderTarget:
    rule: RecurrenceRule
    recipient_email: str | None


def rule_from_schedule(record: ScheduleRecord) -> RecurrenceRule:
    return RecurrenceRule(
        id=record.schedule_id,
        owner_id=record.owner_id,
        title=record.title,
        range_start=record.start,
        range_end=record.end,
        repeats=record.repeat,
        repeat_frequency=record.repeat_type,
        weekdays=frozenset(record.repeat_days),
        exception_dates=frozenset(record.exception_dates),
    )


class ScheduleRepository(Protocol):
    def reset(self) -> None: ...

    def upsert_owner(self, owner_id: str, email: str) -> OwnerRecord: ...

    def get_owner_email(self, owner_id: str) -> str | None: ...

    def create_schedule(self, payload: ScheduleCreateRequest) -> ScheduleRecord: ...

    def get_schedule(self, schedule_id: str) -> ScheduleRecord: ...

    def list_owner_schedules(self, owner_id: str) -> list[ScheduleRecord]: ...

    def update_schedule(self, schedule_id: str, changes: dict[str, object]) -> ScheduleRecord: ...

    def delete_schedule(self, schedule_id: str) -> ScheduleRecord: ...

    def add_exception(self, schedule_id: str, occurrence_start: datetime) -> ScheduleRecord: ...

    def list_reminder_targets(self) -> list[ReminderTarget]: ...


class InMemoryScheduleRepository:
    """Deterministic in-memory store with incremental schedule ids."""

    def __init__(self) -> None:
        self._lock = Lock()
        self._counter = count(1)
        self._schedules: dict[str, ScheduleRecord] = {}
        self._owners: dict[str, OwnerRecord] = {}

    def reset(self) -> None:
        with self._lock:
            self._counter = count(1)
            self._schedules.clear()
            self._owners.clear()

    def upsert_owner(self, owner_id: str, email: str) -> OwnerRecord:
        with self._lock:
            record = OwnerRecord(owner_id=owner_id, email=email, updated_at=_now_utc())
            self._owners[owner_id] = record
            return record

    def get_owner_email(self, owner_id: str) -> str | None:
        with self._lock:
            owner = self._owners.get(owner_id)
            return owner.email if owner is not None else None

    def create_schedule(self, payload: ScheduleCreateRequest) -> ScheduleRecord:
        with self._lock:
            now = _now_utc()
            record = ScheduleRecord(
                schedule_id=f"sched-{next(self._counter):04d}",
                owner_id=payload.owner_id,
                title=payload.title,
                start=payload.start,
                end=payload.end,
                type=payload.type,
                repeat=payload.repeat,
                repeat_type=payload.repeat_type,
                repeat_days=list(payload.repeat_days),
                exception_dates=list(payload.exception_dates),
                created_at=now,
                updated_at=now,
            )
            self._schedules[record.schedule_id] = record
            return record

    def _require(self, schedule_id: str) -> ScheduleRecord:
        record = self._schedules.get(schedule_id)
        if record is None:
            raise ScheduleNotFoundError(schedule_id)
        return record

    def get_schedule(self, schedule_id: str) -> ScheduleRecord:
        with self._lock:
            return self._require(schedule_id)

    def list_owner_schedules(self, owner_id: str) -> list[ScheduleRecord]:
        with self._lock:
            return [record for record in self._schedules.values() if record.owner_id == owner_id]

    def update_schedule(self, schedule_id: str, changes: dict[str, object]) -> ScheduleRecord:
        with self._lock:
            record = self._require(schedule_id)
            allowed = {key: value for key, value in changes.items() if key in _UPDATABLE_FIELDS}
            updated = record.model_copy(update={**allowed, "updated_at": _now_utc()})
            self._schedules[schedule_id] = updated
            return updated

    def delete_schedule(self, schedule_id: str) -> ScheduleRecord:
        with self._lock:
            record = self._require(schedule_id)
            del self._schedules[schedule_id]
            return record

    def add_exception(self, schedule_id: str, occurrence_start: datetime) -> ScheduleRecord:
        with self._lock:
            record = self._require(schedule_id)
            target = epoch_millis(occurrence_start)
            if any(epoch_millis(value) == target for value in record.exception_dates):
                return record
            updated = record.model_copy(
                update={
                    "exception_dates": [*record.exception_dates, _coerce_utc(occurrence_start)],
                    "updated_at": _now_utc(),
                }
            )
            self._schedules[schedule_id] = updated
            return updated

    def list_reminder_targets(self) -> list[ReminderTarget]:
        with self._lock:
            targets: list[ReminderTarget] = []
            for record in self._schedules.values():
                owner = self._owners.get(record.owner_id)
                targets.append(
                    ReminderTarget(
                        rule=rule_from_schedule(record),
                        recipient_email=owner.email if owner is not None else None,
                    )
                )
            return targets


class SchedulesBase(DeclarativeBase):
    pass


class _OwnerRow(SchedulesBase):
    __tablename__ = "owners"

    owner_id: Mapped[str] = mapped_column(String(128), primary_key=True)
    email: Mapped[str] = mapped_column(String(320), nullable=False)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)


class _ScheduleRow(SchedulesBase):
    __tablename__ = "schedules"

    schedule_id: Mapped[str] = mapped_column(String(64), primary_key=True)
    owner_id: Mapped[str] = mapped_column(String(128), nullable=False, index=True)
    title: Mapped[str] = mapped_column(String(200), nullable=False)
    start_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    end_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    event_type: Mapped[str] = mapped_column(String(32), nullable=False)
    repeat: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    repeat_type: Mapped[str] = mapped_column(String(16), nullable=False, default="daily")
    repeat_days_json: Mapped[str] = mapped_column(Text, nullable=False, default="[]")
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)


class _ScheduleExceptionRow(SchedulesBase):
    __tablename__ = "schedule_exceptions"
    __table_args__ = (UniqueConstraint("schedule_id", "occurrence_start", name="uq_schedule_exception"),)

    exception_id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    schedule_id: Mapped[str] = mapped_column(
        String(64), ForeignKey("schedules.schedule_id", ondelete="CASCADE"), nullable=False, index=True
    )
    occurrence_start: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)


class SqlAlchemyScheduleRepository:
    def __init__(self, database_url: str) -> None:
        if not database_url:
            raise RuntimeError("DATABASE_URL is required for SCHEDULE_STORE_BACKEND=postgres")
        self._engine = create_engine(database_url, future=True, pool_pre_ping=True)
        self._session_factory = sessionmaker(self._engine, expire_on_commit=False, future=True)
        if database_url.startswith("sqlite"):
            SchedulesBase.metadata.create_all(self._engine)

    def _session(self):
        return self._session_factory()

    def reset(self) -> None:
        with self._session() as session:
            with session.begin():
                session.execute(delete(_ScheduleExceptionRow))
                session.execute(delete(_ScheduleRow))
                session.execute(delete(_OwnerRow))

    def upsert_owner(self, owner_id: str, email: str) -> OwnerRecord:
        now = _now_utc()
        with self._session() as session:
            with session.begin():
                row = session.get(_OwnerRow, owner_id)
                if row is None:
                    session.add(_OwnerRow(owner_id=owner_id, email=email, updated_at=now))
                else:
                    row.email = email
                    row.updated_at = now
        return OwnerRecord(owner_id=owner_id, email=email, updated_at=now)

    def get_owner_email(self, owner_id: str) -> str | None:
        with self._session() as session:
            row = session.get(_OwnerRow, owner_id)
            return row.email if row is not None else None

    def _exceptions_for(self, session, schedule_ids: list[str]) -> dict[str, list[datetime]]:
        result: dict[str, list[datetime]] = {schedule_id: [] for schedule_id in schedule_ids}
        if not schedule_ids:
            return result
        rows = session.execute(
            select(_ScheduleExceptionRow)
            .where(_ScheduleExceptionRow.schedule_id.in_(schedule_ids))
            .order_by(_ScheduleExceptionRow.exception_id.asc())
        ).scalars()
        for row in rows:
            result[row.schedule_id].append(_coerce_utc(row.occurrence_start))
        return result

    def _to_record(self, row: _ScheduleRow, exception_dates: list[datetime]) -> ScheduleRecord:
        return ScheduleRecord(
            schedule_id=row.schedule_id,
            owner_id=row.owner_id,
            title=row.title,
            start=_coerce_utc(row.start_at),
            end=_coerce_utc(row.end_at),
            type=row.event_type,  # type: ignore[arg-type]
            repeat=row.repeat,
            repeat_type=row.repeat_type,  # type: ignore[arg-type]
            repeat_days=json.loads(row.repeat_days_json),
            exception_dates=exception_dates,
            created_at=_coerce_utc(row.created_at),
            updated_at=_coerce_utc(row.updated_at),
        )

    def _load(self, session, schedule_id: str) -> ScheduleRecord:
        row = session.get(_ScheduleRow, schedule_id)
        if row is None:
            raise ScheduleNotFoundError(schedule_id)
        return self._to_record(row, self._exceptions_for(session, [schedule_id])[schedule_id])

    def create_schedule(self, payload: ScheduleCreateRequest) -> ScheduleRecord:
        schedule_id = f"sched_{secrets.token_hex(8)}"
        now = _now_utc()
        with self._session() as session:
            with session.begin():
                session.add(
                    _ScheduleRow(
                        schedule_id=schedule_id,
                        owner_id=payload.owner_id,
                        title=payload.title,
                        start_at=payload.start,
                        end_at=payload.end,
                        event_type=payload.type,
                        repeat=payload.repeat,
                        repeat_type=payload.repeat_type,
                        repeat_days_json=json.dumps(payload.repeat_days),
                        created_at=now,
                        updated_at=now,
                    )
                )
                session.flush()
                for value in payload.exception_dates:
                    session.add(_ScheduleExceptionRow(schedule_id=schedule_id, occurrence_start=value))
            return self._load(session, schedule_id)

    def get_schedule(self, schedule_id: str) -> ScheduleRecord:
        with self._session() as session:
            return self._load(session, schedule_id)

    def list_owner_schedules(self, owner_id: str) -> list[ScheduleRecord]:
        with self._session() as session:
            rows = session.execute(
                select(_ScheduleRow)
                .where(_ScheduleRow.owner_id == owner_id)
                .order_by(_ScheduleRow.created_at.asc(), _ScheduleRow.schedule_id.asc())
            ).scalars().all()
            exceptions = self._exceptions_for(session, [row.schedule_id for row in rows])
            return [self._to_record(row, exceptions[row.schedule_id]) for row in rows]

    def update_schedule(self, schedule_id: str, changes: dict[str, object]) -> ScheduleRecord:
        columns = {
            "title": "title",
            "start": "start_at",
            "end": "end_at",
            "type": "event_type",
            "repeat": "repeat",
            "repeat_type": "repeat_type",
        }
        with self._session() as session:
            with session.begin():
                row = session.get(_ScheduleRow, schedule_id)
                if row is None:
                    raise ScheduleNotFoundError(schedule_id)
                for key, value in changes.items():
                    if key == "repeat_days":
                        row.repeat_days_json = json.dumps(value)
                    elif key in columns:
                        setattr(row, columns[key], value)
                row.updated_at = _now_utc()
            return self._load(session, schedule_id)

    def delete_schedule(self, schedule_id: str) -> ScheduleRecord:
        with self._session() as session:
            with session.begin():
                record = self._load(session, schedule_id)
                session.execute(
                    delete(_ScheduleExceptionRow).where(_ScheduleExceptionRow.schedule_id == schedule_id)
                )
                session.execute(delete(_ScheduleRow).where(_ScheduleRow.schedule_id == schedule_id))
            return record

    def add_exception(self, schedule_id: str, occurrence_start: datetime) -> ScheduleRecord:
        target = _coerce_utc(occurrence_start)
        with self._session() as session:
            try:
                with session.begin():
                    row = session.get(_ScheduleRow, schedule_id)
                    if row is None:
                        raise ScheduleNotFoundError(schedule_id)
                    existing = self._exceptions_for(session, [schedule_id])[schedule_id]
                    if all(epoch_millis(value) != epoch_millis(target) for value in existing):
                        session.add(_ScheduleExceptionRow(schedule_id=schedule_id, occurrence_start=target))
                        row.updated_at = _now_utc()
            except IntegrityError:
                logger.info("exception %s for schedule %s was stored by a concurrent request", target, schedule_id)
            return self._load(session, schedule_id)

    def list_reminder_targets(self) -> list[ReminderTarget]:
        with self._session() as session:
            rows = session.execute(
                select(_ScheduleRow, _OwnerRow.email)
                .outerjoin(_OwnerRow, _OwnerRow.owner_id == _ScheduleRow.owner_id)
                .order_by(_ScheduleRow.schedule_id.asc())
            ).all()
            exceptions = self._exceptions_for(session, [row.schedule_id for row, _ in rows])
            return [
                ReminderTarget(
                    rule=rule_from_schedule(self._to_record(row, exceptions[row.schedule_id])),
                    recipient_email=email,
                )
                for row, email in rows
            ]


def create_schedule_repository(*, backend: str, database_url: str) -> ScheduleRepository:
    normalized = backend.strip().lower()
    if normalized == "postgres":
        return SqlAlchemyScheduleRepository(database_url)
    if normalized == "inmemory":
        return InMemoryScheduleRepository()
    raise RuntimeError(f"unsupported SCHEDULE_STORE_BACKEND: {backend}")
