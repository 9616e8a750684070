"""Recurrence expansion for schedule rules.

A rule is either a one-shot event or a daily/weekly repeat bounded by the
dates of ``range_start`` and ``range_end``. The times of day of those two
instants give every occurrence its daily start and end. Everything is computed
in UTC; there is no wall-clock or DST handling.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import date, datetime, time, timedelta, timezone
from typing import Iterable, Literal

from dateutil import parser
from dateutil.rrule import DAILY, WEEKLY, rrule

logger = logging.getLogger(__name__)

RepeatFrequency = Literal["daily", "weekly"]

WEEKDAY_NAMES: tuple[str, ...] = (
    "Monday",
    "Tuesday",
    "Wednesday",
    "Thursday",
    "Friday",
    "Saturday",
    "Sunday",
)

_RRULE_FREQUENCY = {
    "daily": DAILY,
    "weekly": WEEKLY,
}

_EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)
_REFERENCE_DATE = date(2000, 1, 1)
_ONE_MS = timedelta(milliseconds=1)
_ONE_DAY = timedelta(days=1)

Instant = datetime | date | str


def _coerce_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def parse_instant(value: object) -> datetime | None:
    """Return ``value`` as an aware UTC datetime, or None when it cannot be read."""
    if isinstance(value, datetime):
        return _coerce_utc(value)
    if isinstance(value, date):
        return datetime.combine(value, time(), tzinfo=timezone.utc)
    if isinstance(value, str):
        raw = value.strip()
        if not raw:
            return None
        try:
            return _coerce_utc(parser.isoparse(raw))
        except (ValueError, OverflowError):
            return None
    return None


def _truncate_to_millis(value: datetime) -> datetime:
    return value.replace(microsecond=(value.microsecond // 1000) * 1000)


def epoch_millis(value: datetime) -> int:
    return (_coerce_utc(value) - _EPOCH) // _ONE_MS


def reminder_key(rule_id: str, occurrence_start: datetime) -> str:
    return f"{rule_id}_{epoch_millis(occurrence_start)}"


@dataclass(frozen=True)
class RecurrenceRule:
    id: str | None
    owner_id: str | None
    title: str
    range_start: Instant | None
    range_end: Instant | None
    repeats: bool = False
    repeat_frequency: RepeatFrequency = "daily"
    weekdays: frozenset[str] = field(default_factory=frozenset)
    exception_dates: frozenset[Instant] = field(default_factory=frozenset)

    def __post_init__(self) -> None:
        object.__setattr__(self, "weekdays", frozenset(self.weekdays or ()))
        object.__setattr__(self, "exception_dates", frozenset(self.exception_dates or ()))


@dataclass(frozen=True)
class Occurrence:
    rule_id: str
    owner_id: str
    title: str
    start: datetime
    end: datetime

    @property
    def key(self) -> str:
        return reminder_key(self.rule_id, self.start)


def daily_duration(range_start: datetime, range_end: datetime) -> timedelta:
    """Span between the two times of day, wrapping past midnight when end <= start."""
    start_of_day = datetime.combine(
        _REFERENCE_DATE,
        time(range_start.hour, range_start.minute, range_start.second),
    )
    end_of_day = datetime.combine(
        _REFERENCE_DATE,
        time(range_end.hour, range_end.minute, range_end.second),
    )
    if end_of_day <= start_of_day:
        end_of_day += _ONE_DAY
    return end_of_day - start_of_day


def _exception_millis(values: Iterable[object]) -> set[int]:
    result: set[int] = set()
    for value in values:
        parsed = parse_instant(value)
        if parsed is None:
            logger.debug("ignoring unreadable exception date %r", value)
            continue
        result.add(epoch_millis(parsed))
    return result


def _midnight(day: date) -> datetime:
    return datetime.combine(day, time(), tzinfo=timezone.utc)


def _candidate_days(rule: RecurrenceRule, first_day: date, last_day: date) -> list[date]:
    if first_day > last_day:
        return []
    frequency = _RRULE_FREQUENCY.get(rule.repeat_frequency)
    if frequency is None:
        logger.warning("skipping rule %s: unsupported repeat frequency %r", rule.id, rule.repeat_frequency)
        return []

    byweekday = None
    if frequency == WEEKLY:
        byweekday = sorted(WEEKDAY_NAMES.index(name) for name in rule.weekdays if name in WEEKDAY_NAMES)
        if not byweekday:
            return []

    days = rrule(
        frequency,
        dtstart=_midnight(first_day),
        until=_midnight(last_day),
        byweekday=byweekday,
    )
    return [value.date() for value in days]


def _expand(rule: RecurrenceRule, window_start: datetime, window_end: datetime) -> list[Occurrence]:
    range_start = parse_instant(rule.range_start)
    range_end = parse_instant(rule.range_end)
    if range_start is None or range_end is None or range_end.date() < range_start.date():
        logger.warning("skipping rule %s: invalid date range", rule.id)
        return []

    duration = daily_duration(range_start, range_end)
    anchor = _truncate_to_millis(range_start)
    # rrule drops sub-second precision, so days are expanded at midnight.
    time_of_day = anchor - _midnight(anchor.date())
    exceptions = _exception_millis(rule.exception_dates)

    if rule.repeats:
        first_day = max(range_start.date(), window_start.date())
        last_day = min((window_end - _ONE_MS).date(), range_end.date())
        starts = [_midnight(day) + time_of_day for day in _candidate_days(rule, first_day, last_day)]
    else:
        starts = [anchor]

    return [
        Occurrence(
            rule_id=str(rule.id),
            owner_id=str(rule.owner_id),
            title=rule.title,
            start=start,
            end=start + duration,
        )
        for start in starts
        if window_start <= start < window_end and epoch_millis(start) not in exceptions
    ]


def generate_occurrences(
    rule: RecurrenceRule | None,
    window_start: Instant,
    window_end: Instant,
) -> list[Occurrence]:
    """Expand ``rule`` into the occurrences starting inside ``[window_start, window_end)``.

    Malformed rules and unexpected failures yield an empty list; one bad rule
    never raises into the caller. The result is ordered by start and is fully
    determined by the rule (including its exception set) and the window.
    """
    rule_id = getattr(rule, "id", None)
    if (
        rule is None
        or rule.range_start is None
        or rule.range_end is None
        or not rule.id
        or not rule.owner_id
    ):
        logger.warning("skipping incomplete rule %s: start, end, id and owner are required", rule_id)
        return []

    start = parse_instant(window_start)
    end = parse_instant(window_end)
    if start is None or end is None:
        logger.warning("skipping rule %s: unreadable window [%r, %r)", rule_id, window_start, window_end)
        return []
    if end <= start:
        return []

    try:
        return _expand(rule, start, end)
    except Exception:
        logger.exception("error generating occurrences for rule %s", rule_id)
        return []


def generate_occurrences_for_rules(
    rules: Iterable[RecurrenceRule],
    window_start: Instant,
    window_end: Instant,
) -> list[Occurrence]:
    occurrences: list[Occurrence] = []
    for rule in rules:
        occurrences.extend(generate_occurrences(rule, window_start, window_end))
    occurrences.sort(key=lambda value: (value.start, value.rule_id))
    return occurrences
