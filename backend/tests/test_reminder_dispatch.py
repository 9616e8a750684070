from __future__ import annotations

from datetime import datetime, timedelta, timezone
from unittest.mock import MagicMock, patch

import pytest

from petcare_web.models import ScheduleCreateRequest
from petcare_web.notifier import HttpNotifierSender, ReminderSendRequest, ReminderSendResult, StubNotifierSender
from petcare_web.reminder_dispatch import ReminderDispatchConfig, ReminderDispatchJob, check_now_override
from petcare_web.schedules import InMemoryScheduleRepository
from petcare_web.sent_reminders import InMemorySentReminderStore

RUN_AT = datetime(2024, 1, 10, 9, 45, tzinfo=timezone.utc)
OCCURRENCE_START = datetime(2024, 1, 10, 10, 0, tzinfo=timezone.utc)


def _schedule(repo: InMemoryScheduleRepository, **overrides: object) -> str:
    values: dict[str, object] = {
        "title": "Morning Meal",
        "start": "2024-01-10T10:00:00Z",
        "end": "2024-01-10T10:30:00Z",
        "type": "meal",
        "owner_id": "owner-1",
    }
    values.update(overrides)
    return repo.create_schedule(ScheduleCreateRequest.model_validate(values)).schedule_id


def _job(
    *,
    repo: InMemoryScheduleRepository,
    store: InMemorySentReminderStore | None = None,
    notifier: object | None = None,
    config: ReminderDispatchConfig | None = None,
) -> ReminderDispatchJob:
    return ReminderDispatchJob(
        rule_source=repo,
        store=store or InMemorySentReminderStore(),
        notifier=notifier or StubNotifierSender(enabled=True),  # type: ignore[arg-type]
        config=config,
    )


class _RaisingNotifier:
    def __init__(self, failing_title: str) -> None:
        self._failing_title = failing_title
        self.sent: list[ReminderSendRequest] = []

    def send_reminder(self, payload: ReminderSendRequest, *, dry_run: bool) -> ReminderSendResult:
        if payload.title == self._failing_title:
            raise RuntimeError("template rendering exploded")
        self.sent.append(payload)
        return ReminderSendResult(status="sent", attempted_at=datetime.now(timezone.utc), provider_message_id="ok")


class _ClockedNotifier(StubNotifierSender):
    def __init__(self) -> None:
        super().__init__(enabled=True)
        self.sent_at: datetime | None = None

    def send_reminder(self, payload: ReminderSendRequest, *, dry_run: bool) -> ReminderSendResult:
        self.sent_at = datetime.now(timezone.utc)
        return super().send_reminder(payload, dry_run=dry_run)


class _RacingStore(InMemorySentReminderStore):
    """Reports every key as unsent, as if another process wrote the marker after the check."""

    def exists(self, reminder_key: str, *, now: datetime | None = None) -> bool:
        return False


def test_occurrence_in_window_is_sent_once() -> None:
    repo = InMemoryScheduleRepository()
    repo.upsert_owner("owner-1", "owner@example.com")
    schedule_id = _schedule(repo)
    store = InMemorySentReminderStore()
    notifier = StubNotifierSender(enabled=True)
    job = _job(repo=repo, store=store, notifier=notifier)

    first = job.run(RUN_AT)
    second = job.run(RUN_AT + timedelta(minutes=5))

    assert first.window_start == RUN_AT
    assert first.window_end == RUN_AT + timedelta(minutes=30)
    assert first.rule_count == 1
    assert first.occurrence_count == 1
    assert first.sent_count == 1
    result = first.results[0]
    assert result.status == "sent"
    assert result.reason == "sent"
    assert result.reminder_key == f"{schedule_id}_1704880800000"
    assert result.recipient_masked == "o***@example.com"
    assert result.provider_message_id == f"stub-{schedule_id}_1704880800000"

    assert second.sent_count == 0
    assert second.skipped_count == 1
    assert second.results[0].reason == "already_sent"
    assert len(notifier.sent) == 1
    assert notifier.sent[0].recipient_email == "owner@example.com"
    assert notifier.sent[0].occurrence_start == OCCURRENCE_START


def test_marker_uses_configured_retention() -> None:
    repo = InMemoryScheduleRepository()
    repo.upsert_owner("owner-1", "owner@example.com")
    schedule_id = _schedule(repo)
    store = InMemorySentReminderStore()
    config = ReminderDispatchConfig(lookahead=timedelta(minutes=30), retention=timedelta(hours=3))
    notifier = _ClockedNotifier()

    _job(repo=repo, store=store, notifier=notifier, config=config).run(RUN_AT)

    marker = store.get(f"{schedule_id}_1704880800000", now=RUN_AT)
    assert marker is not None
    # The marker is stamped when it is written, after the send, not at the start of the run.
    assert notifier.sent_at is not None
    assert marker.sent_at >= notifier.sent_at > RUN_AT
    assert marker.expires_at - marker.sent_at == timedelta(hours=3)
    assert marker.rule_id == schedule_id


def test_occurrence_outside_window_is_ignored() -> None:
    repo = InMemoryScheduleRepository()
    repo.upsert_owner("owner-1", "owner@example.com")
    _schedule(repo)
    notifier = StubNotifierSender(enabled=True)

    summary = _job(repo=repo, notifier=notifier).run(datetime(2024, 1, 10, 10, 0, 1, tzinfo=timezone.utc))

    assert summary.occurrence_count == 0
    assert summary.results == []
    assert notifier.sent == []


def test_lead_shifts_the_window() -> None:
    repo = InMemoryScheduleRepository()
    repo.upsert_owner("owner-1", "owner@example.com")
    _schedule(repo)
    config = ReminderDispatchConfig(lookahead=timedelta(minutes=15), lead=timedelta(minutes=15))

    early = _job(repo=repo, config=config).run(datetime(2024, 1, 10, 9, 30, tzinfo=timezone.utc))
    on_time = _job(repo=repo, config=config).run(RUN_AT)

    assert early.window_start == datetime(2024, 1, 10, 9, 45, tzinfo=timezone.utc)
    assert early.occurrence_count == 0
    assert on_time.window_start == OCCURRENCE_START
    assert on_time.sent_count == 1


def test_missing_recipient_is_skipped() -> None:
    repo = InMemoryScheduleRepository()
    _schedule(repo)
    notifier = StubNotifierSender(enabled=True)

    summary = _job(repo=repo, notifier=notifier).run(RUN_AT)

    assert summary.skipped_count == 1
    assert summary.results[0].reason == "recipient_missing"
    assert notifier.sent == []


def test_failed_send_leaves_no_marker_and_retries() -> None:
    repo = InMemoryScheduleRepository()
    repo.upsert_owner("owner-1", "fail@example.com")
    schedule_id = _schedule(repo)
    store = InMemorySentReminderStore()
    job = _job(repo=repo, store=store)

    first = job.run(RUN_AT)

    assert first.failed_count == 1
    assert first.results[0].error_code == "stub_delivery_failed"
    assert store.exists(f"{schedule_id}_1704880800000", now=RUN_AT) is False

    repo.upsert_owner("owner-1", "owner@example.com")
    retry = job.run(RUN_AT + timedelta(minutes=5))

    assert retry.sent_count == 1
    assert store.exists(f"{schedule_id}_1704880800000", now=RUN_AT + timedelta(minutes=5)) is True


@patch("petcare_web.notifier.urllib.request.urlopen")
def test_accepted_http_send_without_json_body_is_sent_once(mock_urlopen: MagicMock) -> None:
    response = MagicMock()
    response.read.return_value = b""
    response.__enter__ = MagicMock(return_value=response)
    response.__exit__ = MagicMock(return_value=False)
    mock_urlopen.return_value = response
    repo = InMemoryScheduleRepository()
    repo.upsert_owner("owner-1", "owner@example.com")
    _schedule(repo)
    notifier = HttpNotifierSender(base_url="https://messages.example.test", api_key="test-api-key")
    job = _job(repo=repo, notifier=notifier)

    first = job.run(RUN_AT)
    second = job.run(RUN_AT + timedelta(minutes=5))

    assert [(item.status, item.reason) for item in first.results] == [("sent", "sent")]
    assert first.results[0].provider_message_id is None
    assert [(item.status, item.reason) for item in second.results] == [("skipped", "already_sent")]
    assert mock_urlopen.call_count == 1

def test_dry_run_neither_sends_nor_records() -> None:
    repo = InMemoryScheduleRepository()
    repo.upsert_owner("owner-1", "owner@example.com")
    schedule_id = _schedule(repo)
    store = InMemorySentReminderStore()
    notifier = StubNotifierSender(enabled=True)

    summary = _job(repo=repo, store=store, notifier=notifier).run(RUN_AT, dry_run=True)

    assert summary.dry_run is True
    assert [item.status for item in summary.results] == ["dry_run"]
    assert summary.results[0].reason == "would_send"
    assert notifier.sent == []
    assert store.exists(f"{schedule_id}_1704880800000", now=RUN_AT) is False


def test_dry_run_still_reports_already_sent() -> None:
    repo = InMemoryScheduleRepository()
    repo.upsert_owner("owner-1", "owner@example.com")
    schedule_id = _schedule(repo)
    store = InMemorySentReminderStore()
    store.record(f"{schedule_id}_1704880800000", now=RUN_AT - timedelta(minutes=15))

    summary = _job(repo=repo, store=store).run(RUN_AT, dry_run=True)

    assert summary.results[0].status == "skipped"
    assert summary.results[0].reason == "already_sent"


def test_concurrent_marker_counts_as_sent() -> None:
    repo = InMemoryScheduleRepository()
    repo.upsert_owner("owner-1", "owner@example.com")
    schedule_id = _schedule(repo)
    store = _RacingStore()
    store.record(f"{schedule_id}_1704880800000", now=RUN_AT)

    summary = _job(repo=repo, store=store).run(RUN_AT)

    assert summary.sent_count == 1
    assert summary.failed_count == 0
    assert summary.results[0].reason == "duplicate_marker"


def test_one_failing_occurrence_does_not_stop_the_run() -> None:
    repo = InMemoryScheduleRepository()
    repo.upsert_owner("owner-1", "owner@example.com")
    _schedule(repo, title="Broken Event")
    _schedule(repo, title="Morning Meal")
    notifier = _RaisingNotifier("Broken Event")

    summary = _job(repo=repo, notifier=notifier).run(RUN_AT)

    by_title = {item.title: item for item in summary.results}
    assert by_title["Broken Event"].status == "failed"
    assert by_title["Broken Event"].error_code == "unexpected_error"
    assert by_title["Morning Meal"].status == "sent"
    assert [item.title for item in notifier.sent] == ["Morning Meal"]


def test_malformed_rule_is_skipped_without_aborting() -> None:
    repo = InMemoryScheduleRepository()
    repo.upsert_owner("owner-1", "owner@example.com")
    _schedule(repo)
    _schedule(repo, title="Weekly Walk", repeat=True, repeat_type="weekly", repeat_days=["Wednesday"])
    broken_id = _schedule(repo, title="Broken")
    repo.update_schedule(broken_id, {"repeat": True, "repeat_type": "weekly", "repeat_days": []})

    summary = _job(repo=repo).run(RUN_AT)

    assert summary.rule_count == 3
    assert sorted(item.title for item in summary.results) == ["Morning Meal", "Weekly Walk"]


def test_rule_load_failure_propagates() -> None:
    source = MagicMock()
    source.list_reminder_targets.side_effect = RuntimeError("database unavailable")
    job = ReminderDispatchJob(
        rule_source=source,
        store=InMemorySentReminderStore(),
        notifier=StubNotifierSender(enabled=True),
    )

    with pytest.raises(RuntimeError, match="database unavailable"):
        job.run(RUN_AT)


def test_summary_converts_to_response() -> None:
    repo = InMemoryScheduleRepository()
    repo.upsert_owner("owner-1", "owner@example.com")
    _schedule(repo)

    response = _job(repo=repo).run(RUN_AT).to_response()

    assert response.run_at == RUN_AT
    assert response.sent_count == 1
    assert response.occurrence_count == 1
    assert response.results[0].occurrence_start == OCCURRENCE_START


def test_config_rejects_non_positive_lookahead() -> None:
    with pytest.raises(ValueError):
        ReminderDispatchConfig(lookahead=timedelta(0))
    with pytest.raises(ValueError):
        ReminderDispatchConfig(lead=timedelta(minutes=-1))


def test_now_override_needs_dry_run_unless_live_overrides_are_allowed() -> None:
    check_now_override(None, dry_run=False, allow_live=False)
    check_now_override(RUN_AT, dry_run=True, allow_live=False)
    check_now_override(RUN_AT, dry_run=False, allow_live=True)

    with pytest.raises(ValueError, match="only allowed for dry runs"):
        check_now_override(RUN_AT, dry_run=False, allow_live=False)
