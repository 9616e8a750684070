from __future__ import annotations

import hmac
import logging
from datetime import datetime, timedelta, timezone

from fastapi import APIRouter, HTTPException, Query, Request, status
from pydantic import ValidationError
from sqlalchemy.exc import SQLAlchemyError

from .config import get_settings
from .models import (
    HealthResponse,
    OccurrenceItem,
    OccurrenceListResponse,
    OwnerRecord,
    OwnerUpsertRequest,
    ReminderRunRequest,
    ReminderRunResponse,
    ScheduleCreateRequest,
    ScheduleDeleteResponse,
    ScheduleExceptionRequest,
    ScheduleExceptionResponse,
    ScheduleRecord,
    ScheduleUpdateRequest,
)
from .notifier import NotifierSender, create_notifier
from .recurrence import Occurrence, generate_occurrences, generate_occurrences_for_rules
from .reminder_dispatch import (
    ReminderDispatchConfig,
    ReminderDispatchJob,
    ReminderDispatchSummary,
    check_now_override,
)
from .scheduler import ReminderScheduler
from .schedules import ScheduleNotFoundError, ScheduleRepository, create_schedule_repository, rule_from_schedule
from .sent_reminders import SentReminderStore, create_sent_reminder_store

logger = logging.getLogger(__name__)

APP_VERSION = "0.1.0"

_settings = get_settings()
router = APIRouter(prefix=_settings.api_prefix, tags=["petcare"])

dispatch_config = ReminderDispatchConfig(
    lookahead=timedelta(minutes=_settings.reminder_lookahead_minutes),
    retention=timedelta(minutes=_settings.reminder_retention_minutes),
    lead=timedelta(minutes=_settings.reminder_lead_minutes),
)
schedule_repo: ScheduleRepository = create_schedule_repository(
    backend=_settings.schedule_store_backend,
    database_url=_settings.database_url,
)
sent_reminder_store: SentReminderStore = create_sent_reminder_store(
    backend=_settings.reminder_store_backend,
    database_url=_settings.database_url,
    retention=dispatch_config.retention,
)
notifier_sender: NotifierSender = create_notifier(_settings)
dispatch_job = ReminderDispatchJob(
    rule_source=schedule_repo,
    store=sent_reminder_store,
    notifier=notifier_sender,
    config=dispatch_config,
)


def run_reminder_dispatch(*, now: datetime | None = None, dry_run: bool = False) -> ReminderDispatchSummary:
    return dispatch_job.run(now, dry_run=dry_run)


def purge_expired_reminders() -> int:
    return sent_reminder_store.purge_expired()


reminder_scheduler = ReminderScheduler(
    dispatch=run_reminder_dispatch,
    sweep=purge_expired_reminders,
    dispatch_interval=timedelta(minutes=_settings.reminder_interval_minutes),
    sweep_interval=timedelta(minutes=_settings.reminder_sweep_interval_minutes),
)


def reset_runtime_state_for_tests() -> None:
    schedule_repo.reset()
    sent_reminder_store.reset()


def _require_admin(request: Request) -> None:
    token = request.headers.get("X-Admin-Token", "").strip()
    if not token:
        raise HTTPException(401, "admin token required")
    if not hmac.compare_digest(token.encode("utf-8"), _settings.admin_api_token.encode("utf-8")):
        raise HTTPException(401, "invalid admin token")


def _validated_window(window_start: datetime, window_end: datetime) -> tuple[datetime, datetime]:
    start = window_start if window_start.tzinfo else window_start.replace(tzinfo=timezone.utc)
    end = window_end if window_end.tzinfo else window_end.replace(tzinfo=timezone.utc)
    if end <= start:
        raise HTTPException(400, "window_end must be after window_start")
    if end - start > timedelta(days=_settings.occurrence_window_max_days):
        raise HTTPException(
            400,
            f"occurrence window may span at most {_settings.occurrence_window_max_days} days",
        )
    return start, end


def _occurrence_response(start: datetime, end: datetime, occurrences: list[Occurrence]) -> OccurrenceListResponse:
    items = [
        OccurrenceItem(
            rule_id=occurrence.rule_id,
            owner_id=occurrence.owner_id,
            title=occurrence.title,
            start=occurrence.start,
            end=occurrence.end,
            reminder_key=occurrence.key,
        )
        for occurrence in occurrences
    ]
    return OccurrenceListResponse(window_start=start, window_end=end, count=len(items), occurrences=items)


@router.get("/health", response_model=HealthResponse)
def health() -> HealthResponse:
    return HealthResponse(
        status="healthy",
        timestamp=datetime.now(timezone.utc),
        version=APP_VERSION,
        scheduler_running=reminder_scheduler.running,
    )


@router.put("/owners/{owner_id}", response_model=OwnerRecord)
def upsert_owner(owner_id: str, payload: OwnerUpsertRequest) -> OwnerRecord:
    normalized = owner_id.strip()
    if not normalized:
        raise HTTPException(400, "owner_id is required")
    return schedule_repo.upsert_owner(normalized, payload.email)


@router.get("/schedules/owner/{owner_id}", response_model=list[ScheduleRecord])
def list_owner_schedules(owner_id: str) -> list[ScheduleRecord]:
    return schedule_repo.list_owner_schedules(owner_id)


@router.post("/schedules", response_model=ScheduleRecord, status_code=status.HTTP_201_CREATED)
def create_schedule(payload: ScheduleCreateRequest) -> ScheduleRecord:
    record = schedule_repo.create_schedule(payload)
    logger.info("created schedule %s for owner %s", record.schedule_id, record.owner_id)
    return record


@router.put("/schedules/{schedule_id}", response_model=ScheduleRecord)
def update_schedule(schedule_id: str, payload: ScheduleUpdateRequest) -> ScheduleRecord:
    changes = payload.changes()
    if not changes:
        raise HTTPException(400, "no valid fields to update")
    try:
        existing = schedule_repo.get_schedule(schedule_id)
    except ScheduleNotFoundError as exc:
        raise HTTPException(status_code=404, detail=f"schedule not found: {schedule_id}") from exc

    merged = existing.model_dump(include={"title", "start", "end", "type", "owner_id", "repeat", "repeat_type", "repeat_days"})
    merged.update(changes)
    try:
        ScheduleCreateRequest.model_validate(merged)
    except ValidationError as exc:
        messages = "; ".join(str(error.get("msg", "")) for error in exc.errors())
        raise HTTPException(400, f"invalid schedule update: {messages}") from exc

    try:
        return schedule_repo.update_schedule(schedule_id, changes)
    except ScheduleNotFoundError as exc:
        raise HTTPException(status_code=404, detail=f"schedule not found: {schedule_id}") from exc


@router.delete("/schedules/{schedule_id}", response_model=ScheduleDeleteResponse)
def delete_schedule(schedule_id: str) -> ScheduleDeleteResponse:
    try:
        schedule_repo.delete_schedule(schedule_id)
    except ScheduleNotFoundError as exc:
        raise HTTPException(status_code=404, detail=f"schedule not found: {schedule_id}") from exc
    return ScheduleDeleteResponse(message="Schedule deleted", schedule_id=schedule_id)


@router.post("/schedules/{schedule_id}/exception", response_model=ScheduleExceptionResponse)
def add_schedule_exception(schedule_id: str, payload: ScheduleExceptionRequest) -> ScheduleExceptionResponse:
    try:
        record = schedule_repo.add_exception(schedule_id, payload.occurrence_date)
    except ScheduleNotFoundError as exc:
        raise HTTPException(status_code=404, detail=f"schedule not found: {schedule_id}") from exc
    return ScheduleExceptionResponse(message="Exception added", schedule=record)


@router.get("/schedules/owner/{owner_id}/occurrences", response_model=OccurrenceListResponse)
def list_owner_occurrences(
    owner_id: str,
    window_start: datetime = Query(...),
    window_end: datetime = Query(...),
) -> OccurrenceListResponse:
    start, end = _validated_window(window_start, window_end)
    rules = [rule_from_schedule(record) for record in schedule_repo.list_owner_schedules(owner_id)]
    return _occurrence_response(start, end, generate_occurrences_for_rules(rules, start, end))


@router.get("/schedules/{schedule_id}/occurrences", response_model=OccurrenceListResponse)
def list_schedule_occurrences(
    schedule_id: str,
    window_start: datetime = Query(...),
    window_end: datetime = Query(...),
) -> OccurrenceListResponse:
    start, end = _validated_window(window_start, window_end)
    try:
        record = schedule_repo.get_schedule(schedule_id)
    except ScheduleNotFoundError as exc:
        raise HTTPException(status_code=404, detail=f"schedule not found: {schedule_id}") from exc
    return _occurrence_response(start, end, generate_occurrences(rule_from_schedule(record), start, end))


@router.post("/reminders/run", response_model=ReminderRunResponse)
def run_reminders(request: Request, payload: ReminderRunRequest | None = None) -> ReminderRunResponse:
    _require_admin(request)
    request_payload = payload or ReminderRunRequest(dry_run=_settings.notifier_dry_run_default)
    try:
        check_now_override(
            request_payload.now_override,
            dry_run=request_payload.dry_run,
            allow_live=_settings.reminder_allow_live_now_override,
        )
    except ValueError as exc:
        raise HTTPException(400, str(exc)) from exc
    try:
        summary = run_reminder_dispatch(now=request_payload.now_override, dry_run=request_payload.dry_run)
    except SQLAlchemyError as exc:
        logger.exception("reminder run could not load schedules")
        raise HTTPException(503, "schedule store unavailable") from exc
    return summary.to_response()
