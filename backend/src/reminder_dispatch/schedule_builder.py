from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import date, datetime, timedelta, timezone
from typing import Callable

from .channel_assignment import STANDARD_OFFSETS, assign_channel, reminder_type_for_offset
from .gatekeeper import creation_conflict, local_day, resolve_timezone
from .reference_data import ReferenceDataRepository, ReminderSettingsRecord
from .reminder_store import ReminderRecord, ReminderRepository

logger = logging.getLogger(__name__)


def _now_utc() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class PlannedReminder:
    reminder_type: str
    days_before_due: int
    scheduled_date: datetime


def build_reminder_schedule(
    due_date: date,
    settings: ReminderSettingsRecord,
    *,
    today: date,
) -> list[PlannedReminder]:
    """Reminder slots for an invoice, earliest first.

    Each slot opens at the start of the user's call window on its local day.
    Days before ``today`` are dropped.
    """
    zone = resolve_timezone(settings.timezone)
    offsets: list[tuple[int, bool]] = []
    if settings.standard_offsets_enabled:
        offsets.extend((offset, False) for offset in STANDARD_OFFSETS)
    offsets.extend((offset, True) for offset in settings.custom_reminder_days)

    planned: list[PlannedReminder] = []
    for offset, custom in offsets:
        day = due_date - timedelta(days=offset)
        if day < today:
            continue
        opens = datetime.combine(day, settings.call_start_time, tzinfo=zone)
        planned.append(
            PlannedReminder(
                reminder_type=reminder_type_for_offset(offset, custom=custom),
                days_before_due=offset,
                scheduled_date=opens.astimezone(timezone.utc),
            )
        )
    planned.sort(key=lambda item: (item.scheduled_date, item.reminder_type))
    return planned


class ReminderPlanner:
    """Creates the pending reminders for an invoice, one per calendar day at most."""

    def __init__(
        self,
        *,
        repository: ReminderRepository,
        reference_data: ReferenceDataRepository,
        clock: Callable[[], datetime] = _now_utc,
    ) -> None:
        self._repository = repository
        self._reference_data = reference_data
        self._clock = clock

    def create_reminders_for_invoice(self, invoice_id: str, *, now: datetime | None = None) -> list[ReminderRecord]:
        invoice = self._reference_data.get_invoice(invoice_id)
        if invoice is None:
            raise KeyError(invoice_id)

        current = now or self._clock()
        settings = self._reference_data.get_settings(invoice.user_id)
        today = local_day(current, resolve_timezone(settings.timezone))
        existing = self._repository.list_for_invoice(invoice_id)

        created: list[ReminderRecord] = []
        for item in build_reminder_schedule(invoice.due_date, settings, today=today):
            channel = assign_channel(
                item.reminder_type,
                smart_mode=settings.smart_mode,
                manual_channel=settings.manual_channel,
            )
            conflict = creation_conflict(
                scheduled_date=item.scheduled_date,
                channel=channel,
                existing=existing,
                settings=settings,
            )
            if conflict is not None:
                logger.info("not creating %s reminder for invoice %s: %s", item.reminder_type, invoice_id, conflict)
                continue
            record = self._repository.create_reminder(
                invoice_id=invoice_id,
                user_id=invoice.user_id,
                reminder_type=item.reminder_type,
                channel=channel,
                scheduled_date=item.scheduled_date,
                now=current,
            )
            existing.append(record)
            created.append(record)

        logger.info("created %d reminders for invoice %s", len(created), invoice_id)
        return created
