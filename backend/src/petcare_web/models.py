from __future__ import annotations

from datetime import datetime, timezone
from typing import Literal

from pydantic import BaseModel, Field, field_validator, model_validator

from .recurrence import WEEKDAY_NAMES

ScheduleEventType = Literal["meal", "vet", "play", "sleep", "medication"]
RepeatType = Literal["daily", "weekly"]
ReminderStatus = Literal["sent", "skipped", "failed", "dry_run"]

_WEEKDAY_LOOKUP = {name.lower(): name for name in WEEKDAY_NAMES}


def _normalize_utc(value: datetime | None) -> datetime | None:
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def _normalize_weekdays(value: list[str] | None) -> list[str] | None:
    if value is None:
        return None
    normalized: list[str] = []
    for raw_day in value:
        day = _WEEKDAY_LOOKUP.get(str(raw_day).strip().lower())
        if day is None:
            raise ValueError(f"unknown weekday: {raw_day}")
        if day not in normalized:
            normalized.append(day)
    return normalized


def _normalize_title(value: str | None) -> str | None:
    if value is None:
        return None
    title = value.strip()
    if not title:
        raise ValueError("title cannot be blank")
    return title


class OwnerUpsertRequest(BaseModel):
    email: str = Field(min_length=3, max_length=320)

    @field_validator("email")
    @classmethod
    def _validate_email(cls, value: str) -> str:
        email = value.strip()
        local, sep, domain = email.partition("@")
        if not sep or not local or "." not in domain:
            raise ValueError("email must look like name@example.com")
        return email


class OwnerRecord(BaseModel):
    owner_id: str
    email: str
    updated_at: datetime


class ScheduleCreateRequest(BaseModel):
    title: str = Field(min_length=1, max_length=200)
    start: datetime
    end: datetime
    type: ScheduleEventType
    owner_id: str = Field(min_length=1, max_length=128)
    repeat: bool = False
    repeat_type: RepeatType = "daily"
    repeat_days: list[str] = Field(default_factory=list)
    exception_dates: list[datetime] = Field(default_factory=list)

    @field_validator("title")
    @classmethod
    def _strip_title(cls, value: str) -> str:
        return _normalize_title(value)  # type: ignore[return-value]

    @field_validator("repeat_days")
    @classmethod
    def _normalize_repeat_days(cls, value: list[str]) -> list[str]:
        return _normalize_weekdays(value)  # type: ignore[return-value]

    @field_validator("start", "end")
    @classmethod
    def _normalize_instants(cls, value: datetime) -> datetime:
        return _normalize_utc(value)  # type: ignore[return-value]

    @field_validator("exception_dates")
    @classmethod
    def _normalize_exceptions(cls, value: list[datetime]) -> list[datetime]:
        normalized: list[datetime] = []
        for item in value:
            parsed = _normalize_utc(item)
            if parsed is not None and parsed not in normalized:
                normalized.append(parsed)
        return normalized

    @model_validator(mode="after")
    def _validate_rule(self) -> ScheduleCreateRequest:
        if self.end < self.start:
            raise ValueError("end must be greater than or equal to start")
        if self.repeat and self.repeat_type == "weekly" and not self.repeat_days:
            raise ValueError("repeat_days must list at least one weekday for weekly schedules")
        return self


class ScheduleUpdateRequest(BaseModel):
    title: str | None = Field(default=None, min_length=1, max_length=200)
    start: datetime | None = None
    end: datetime | None = None
    type: ScheduleEventType | None = None
    repeat: bool | None = None
    repeat_type: RepeatType | None = None
    repeat_days: list[str] | None = None

    @field_validator("title")
    @classmethod
    def _strip_title(cls, value: str | None) -> str | None:
        return _normalize_title(value)

    @field_validator("repeat_days")
    @classmethod
    def _normalize_repeat_days(cls, value: list[str] | None) -> list[str] | None:
        return _normalize_weekdays(value)

    @field_validator("start", "end")
    @classmethod
    def _normalize_instants(cls, value: datetime | None) -> datetime | None:
        return _normalize_utc(value)

    def changes(self) -> dict[str, object]:
        return self.model_dump(exclude_none=True)


class ScheduleExceptionRequest(BaseModel):
    occurrence_date: datetime

    @field_validator("occurrence_date")
    @classmethod
    def _normalize_occurrence(cls, value: datetime) -> datetime:
        return _normalize_utc(value)  # type: ignore[return-value]


class ScheduleRecord(BaseModel):
    schedule_id: str
    owner_id: str
    title: str
    start: datetime
    end: datetime
    type: ScheduleEventType
    repeat: bool
    repeat_type: RepeatType
    repeat_days: list[str]
    exception_dates: list[datetime]
    created_at: datetime
    updated_at: datetime


class ScheduleExceptionResponse(BaseModel):
    message: str
    schedule: ScheduleRecord


class ScheduleDeleteResponse(BaseModel):
    message: str
    schedule_id: str


class OccurrenceItem(BaseModel):
    rule_id: str
    owner_id: str
    title: str
    start: datetime
    end: datetime
    reminder_key: str


class OccurrenceListResponse(BaseModel):
    window_start: datetime
    window_end: datetime
    count: int
    occurrences: list[OccurrenceItem]


class ReminderRunRequest(BaseModel):
    dry_run: bool = False
    now_override: datetime | None = None

    @field_validator("now_override")
    @classmethod
    def _normalize_override(cls, value: datetime | None) -> datetime | None:
        return _normalize_utc(value)


class ReminderResult(BaseModel):
    reminder_key: str
    rule_id: str
    title: str
    occurrence_start: datetime
    status: ReminderStatus
    reason: str
    recipient_masked: str | None = None
    provider_message_id: str | None = None
    error_code: str | None = None
    error_message: str | None = None


class ReminderRunResponse(BaseModel):
    run_at: datetime
    window_start: datetime
    window_end: datetime
    dry_run: bool
    rule_count: int
    occurrence_count: int
    sent_count: int
    failed_count: int
    skipped_count: int
    results: list[ReminderResult]


class HealthResponse(BaseModel):
    status: Literal["healthy"]
    timestamp: datetime
    version: str
    scheduler_running: bool
