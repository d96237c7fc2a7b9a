"""Eligibility checks applied to a reminder before it is dispatched.

Every predicate is pure given ``now``, the reminder, the owning user's
settings and (for the same-day checks) the invoice's other reminders, which
the caller loads from the repository.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import date, datetime, time, timedelta, timezone, tzinfo
from typing import Iterable
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from .models import is_terminal
from .reference_data import ReminderSettingsRecord
from .reminder_store import ReminderRecord

DAY_NAMES = ("Sunday", "Monday", "Tuesday", "Wednesday", "Thursday", "Friday", "Saturday")

_IN_FLIGHT = frozenset({"queued", "in_progress"})


@dataclass(frozen=True)
class GateDecision:
    ok: bool
    reason: str | None = None
    retry_after: datetime | None = None
    # The caller must fail the reminder instead of leaving it pending.
    permanent: bool = False


ALLOWED = GateDecision(ok=True)


def resolve_timezone(zone_name: str | None) -> tzinfo:
    if not zone_name:
        return timezone.utc
    try:
        return ZoneInfo(zone_name)
    except (ZoneInfoNotFoundError, ValueError):
        return timezone.utc


def local_day(value: datetime, zone: tzinfo) -> date:
    return value.astimezone(zone).date()


def weekday_index(value: date) -> int:
    """0 = Sunday ... 6 = Saturday."""
    return value.isoweekday() % 7


def _clock(value: time) -> str:
    return value.strftime("%H:%M:%S")


def next_window_opening(now: datetime, settings: ReminderSettingsRecord) -> datetime | None:
    zone = resolve_timezone(settings.timezone)
    local_now = now.astimezone(zone)
    allowed_days = set(settings.call_days_of_week)
    if not allowed_days:
        return None
    for offset in range(0, 8):
        day = local_now.date() + timedelta(days=offset)
        if weekday_index(day) not in allowed_days:
            continue
        opens = datetime.combine(day, settings.call_start_time, tzinfo=zone)
        closes = datetime.combine(day, settings.call_end_time, tzinfo=zone)
        if offset == 0:
            if local_now < opens:
                return opens.astimezone(timezone.utc)
            if local_now <= closes:
                return now.astimezone(timezone.utc)
            continue
        return opens.astimezone(timezone.utc)
    return None


def check_business_hours(now: datetime, settings: ReminderSettingsRecord) -> GateDecision:
    zone = resolve_timezone(settings.timezone)
    local_now = now.astimezone(zone)
    day_index = weekday_index(local_now.date())
    if day_index not in settings.call_days_of_week:
        return GateDecision(
            ok=False,
            reason=(
                f"outside business hours: {DAY_NAMES[day_index]} is not an allowed call day "
                f"({settings.timezone})"
            ),
            retry_after=next_window_opening(now, settings),
        )

    current = local_now.time().replace(microsecond=0, tzinfo=None)
    if current < settings.call_start_time or current > settings.call_end_time:
        return GateDecision(
            ok=False,
            reason=(
                f"outside business hours: {_clock(current)} is not within "
                f"{_clock(settings.call_start_time)}-{_clock(settings.call_end_time)} ({settings.timezone})"
            ),
            retry_after=next_window_opening(now, settings),
        )
    return ALLOWED


def check_retry_delay(reminder: ReminderRecord, settings: ReminderSettingsRecord, now: datetime) -> GateDecision:
    if reminder.last_attempt_at is None:
        return ALLOWED
    next_allowed = reminder.last_attempt_at + timedelta(hours=settings.retry_delay_hours)
    if now < next_allowed:
        return GateDecision(
            ok=False,
            reason=f"retry delay not elapsed: next attempt allowed at {next_allowed.isoformat()}",
            retry_after=next_allowed,
        )
    return ALLOWED


def check_attempts_remaining(reminder: ReminderRecord, settings: ReminderSettingsRecord) -> GateDecision:
    if reminder.attempt_count >= settings.max_retry_attempts:
        return GateDecision(
            ok=False,
            reason=(
                "Maximum retry attempts exhausted "
                f"({reminder.attempt_count}/{settings.max_retry_attempts} attempts, {reminder.channel})"
            ),
            permanent=True,
        )
    return ALLOWED


def _order_key(record: ReminderRecord) -> tuple[datetime, datetime, str]:
    return (record.scheduled_date, record.created_at, record.reminder_id)


def _blocking_siblings(
    reminder: ReminderRecord,
    siblings: Iterable[ReminderRecord],
    *,
    now: datetime,
    zone: tzinfo,
) -> list[ReminderRecord]:
    """Siblings that would make dispatching ``reminder`` a second contact today."""
    reminder_day = local_day(reminder.scheduled_date, zone)
    today = local_day(now, zone)
    blocking: list[ReminderRecord] = []
    for sibling in siblings:
        if sibling.reminder_id == reminder.reminder_id or sibling.invoice_id != reminder.invoice_id:
            continue
        if sibling.last_attempt_at is not None and local_day(sibling.last_attempt_at, zone) == today:
            blocking.append(sibling)
            continue
        if is_terminal(sibling.status) or local_day(sibling.scheduled_date, zone) != reminder_day:
            continue
        if sibling.status in _IN_FLIGHT or _order_key(sibling) < _order_key(reminder):
            blocking.append(sibling)
    return blocking


def find_duplicate_same_day(
    reminder: ReminderRecord,
    siblings: Iterable[ReminderRecord],
    *,
    now: datetime,
    settings: ReminderSettingsRecord,
) -> ReminderRecord | None:
    blocking = _blocking_siblings(reminder, siblings, now=now, zone=resolve_timezone(settings.timezone))
    return blocking[0] if blocking else None


def find_opposite_channel_same_day(
    reminder: ReminderRecord,
    siblings: Iterable[ReminderRecord],
    *,
    now: datetime,
    settings: ReminderSettingsRecord,
) -> ReminderRecord | None:
    blocking = _blocking_siblings(reminder, siblings, now=now, zone=resolve_timezone(settings.timezone))
    for sibling in blocking:
        if sibling.channel != reminder.channel:
            return sibling
    return None


def creation_conflict(
    *,
    scheduled_date: datetime,
    channel: str,
    existing: Iterable[ReminderRecord],
    settings: ReminderSettingsRecord,
) -> str | None:
    """Reason a new reminder for this invoice and day must not be created, if any."""
    zone = resolve_timezone(settings.timezone)
    day = local_day(scheduled_date, zone)
    same_day = [record for record in existing if local_day(record.scheduled_date, zone) == day]
    if any(record.channel != channel for record in same_day):
        return f"opposite-channel reminder already scheduled on {day.isoformat()}"
    if same_day:
        return f"reminder already scheduled on {day.isoformat()}"
    return None


def first_free_day(
    scheduled_date: datetime,
    *,
    channel: str,
    existing: Iterable[ReminderRecord],
    settings: ReminderSettingsRecord,
) -> datetime:
    """Earliest instant at or after ``scheduled_date`` on a local day no other reminder holds.

    The wall-clock time is kept while stepping forward one local day at a time.
    """
    zone = resolve_timezone(settings.timezone)
    records = list(existing)
    candidate = scheduled_date
    while creation_conflict(scheduled_date=candidate, channel=channel, existing=records, settings=settings):
        candidate = (candidate.astimezone(zone) + timedelta(days=1)).astimezone(timezone.utc)
    return candidate


def can_dispatch(
    reminder: ReminderRecord,
    settings: ReminderSettingsRecord,
    *,
    now: datetime,
    siblings: Iterable[ReminderRecord] = (),
) -> GateDecision:
    attempts = check_attempts_remaining(reminder, settings)
    if not attempts.ok:
        return attempts

    hours = check_business_hours(now, settings)
    if not hours.ok:
        return hours

    delay = check_retry_delay(reminder, settings, now)
    if not delay.ok:
        return delay

    sibling_rows = list(siblings)
    opposite = find_opposite_channel_same_day(reminder, sibling_rows, now=now, settings=settings)
    if opposite is not None:
        return GateDecision(
            ok=False,
            reason=f"opposite-channel reminder {opposite.reminder_id} ({opposite.channel}) already contacts this invoice today",
        )

    duplicate = find_duplicate_same_day(reminder, sibling_rows, now=now, settings=settings)
    if duplicate is not None:
        return GateDecision(
            ok=False,
            reason=f"duplicate reminder {duplicate.reminder_id} already contacts this invoice today",
        )
    return ALLOWED
