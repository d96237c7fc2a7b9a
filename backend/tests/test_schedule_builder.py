from __future__ import annotations

from datetime import date, datetime, time, timedelta, timezone

import pytest

from reminder_dispatch.reference_data import InMemoryReferenceDataRepository, InvoiceRecord, ReminderSettingsRecord
from reminder_dispatch.reminder_store import InMemoryReminderRepository
from reminder_dispatch.schedule_builder import ReminderPlanner, build_reminder_schedule

# Monday 2026-10-19, 08:00 in New York.
NOW = datetime(2026, 10, 19, 12, 0, tzinfo=timezone.utc)


def _settings(**overrides: object) -> ReminderSettingsRecord:
    values: dict[str, object] = {"user_id": "user-1", "timezone": "America/New_York"}
    values.update(overrides)
    return ReminderSettingsRecord(**values)  # type: ignore[arg-type]


def _planner(*, due_date: date, settings: ReminderSettingsRecord) -> tuple[ReminderPlanner, InMemoryReminderRepository]:
    reminders = InMemoryReminderRepository()
    reference = InMemoryReferenceDataRepository()
    reference.upsert_invoice(
        InvoiceRecord(
            invoice_id="inv-1",
            user_id="user-1",
            customer_id="cust-1",
            invoice_number="INV-9",
            amount_total=80.0,
            balance=80.0,
            currency="USD",
            due_date=due_date,
            status="sent",
        )
    )
    reference.upsert_settings(settings)
    return ReminderPlanner(repository=reminders, reference_data=reference, clock=lambda: NOW), reminders


def test_standard_schedule_drops_past_days_and_opens_at_window_start() -> None:
    planned = build_reminder_schedule(date(2026, 10, 26), _settings(), today=date(2026, 10, 19))

    assert [item.reminder_type for item in planned] == [
        "7_days_before",
        "5_days_before",
        "3_days_before",
        "1_day_before",
        "on_due_date",
        "1_day_overdue",
        "3_days_overdue",
        "7_days_overdue",
    ]
    # 09:00 EDT on the 19th.
    assert planned[0].scheduled_date == datetime(2026, 10, 19, 13, 0, tzinfo=timezone.utc)
    # Daylight saving ends on 2026-11-01, so the window opens an hour later in UTC.
    assert planned[-1].scheduled_date == datetime(2026, 11, 2, 14, 0, tzinfo=timezone.utc)


def test_custom_days_join_standard_offsets() -> None:
    settings = _settings(custom_reminder_days=(10, -20), call_start_time=time(8, 30))

    planned = build_reminder_schedule(date(2026, 11, 30), settings, today=date(2026, 10, 19))
    by_type = {item.reminder_type: item for item in planned}

    assert "custom_10_days_before" in by_type
    assert "custom_20_days_overdue" in by_type
    assert by_type["custom_10_days_before"].days_before_due == 10
    assert by_type["custom_20_days_overdue"].scheduled_date == datetime(2026, 12, 20, 13, 30, tzinfo=timezone.utc)
    assert planned == sorted(planned, key=lambda item: (item.scheduled_date, item.reminder_type))


def test_standard_offsets_can_be_disabled() -> None:
    settings = _settings(standard_offsets_enabled=False, custom_reminder_days=(2,))

    planned = build_reminder_schedule(date(2026, 10, 30), settings, today=date(2026, 10, 19))

    assert [item.reminder_type for item in planned] == ["custom_2_days_before"]


def test_planner_assigns_channels_and_skips_colliding_days() -> None:
    # A custom reminder 3 days out lands on the same local day as the standard one.
    planner, reminders = _planner(due_date=date(2026, 10, 26), settings=_settings(custom_reminder_days=(3,)))

    created = planner.create_reminders_for_invoice("inv-1")

    types = [record.reminder_type for record in created]
    assert types.count("3_days_before") + types.count("custom_3_days_before") == 1
    channels = {record.reminder_type: record.channel for record in created}
    assert channels["7_days_before"] == "sms"
    assert channels["5_days_before"] == "sms"
    assert channels["1_day_before"] == "voice"
    assert channels["7_days_overdue"] == "voice"
    assert all(record.status == "pending" for record in created)
    assert all(record.created_at == NOW for record in created)
    assert len(reminders.list_for_invoice("inv-1")) == len(created)


def test_planner_is_idempotent_per_day() -> None:
    planner, reminders = _planner(due_date=date(2026, 10, 26), settings=_settings())
    first = planner.create_reminders_for_invoice("inv-1")

    second = planner.create_reminders_for_invoice("inv-1", now=NOW + timedelta(minutes=5))

    assert first
    assert second == []
    assert len(reminders.list_for_invoice("inv-1")) == len(first)


def test_manual_mode_uses_configured_channel() -> None:
    planner, _ = _planner(
        due_date=date(2026, 10, 26),
        settings=_settings(smart_mode=False, manual_channel="sms"),
    )

    created = planner.create_reminders_for_invoice("inv-1")

    assert {record.channel for record in created} == {"sms"}


def test_planner_rejects_unknown_invoice() -> None:
    planner, _ = _planner(due_date=date(2026, 10, 26), settings=_settings())
    with pytest.raises(KeyError):
        planner.create_reminders_for_invoice("inv-missing")
