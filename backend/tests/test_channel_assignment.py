from __future__ import annotations

import logging

import pytest

from reminder_dispatch.channel_assignment import (
    ReminderOffset,
    assign_channel,
    parse_reminder_type,
    reminder_type_for_offset,
)
from reminder_dispatch.models import UnknownChannelError, parse_channel


@pytest.mark.parametrize(
    ("reminder_type", "expected"),
    [
        ("30_days_before", "sms"),
        ("15_days_before", "sms"),
        ("7_days_before", "sms"),
        ("5_days_before", "sms"),
        ("3_days_before", "voice"),
        ("1_day_before", "voice"),
        ("on_due_date", "voice"),
        ("1_day_overdue", "voice"),
        ("7_days_overdue", "voice"),
        ("custom_10_days_before", "sms"),
        ("custom_4_days_before", "voice"),
        ("custom_20_days_overdue", "voice"),
        ("custom_on_due_date", "voice"),
    ],
)
def test_smart_mode_picks_sms_only_for_early_reminders(reminder_type: str, expected: str) -> None:
    assert assign_channel(reminder_type, smart_mode=True, manual_channel="voice") == expected


def test_manual_mode_always_returns_configured_channel() -> None:
    assert assign_channel("1_day_overdue", smart_mode=False, manual_channel="sms") == "sms"
    assert assign_channel("30_days_before", smart_mode=False, manual_channel="voice") == "voice"


def test_unrecognized_reminder_type_falls_back_to_voice_with_warning(caplog: pytest.LogCaptureFixture) -> None:
    with caplog.at_level(logging.WARNING, logger="reminder_dispatch.channel_assignment"):
        assert assign_channel("quarterly_nudge", smart_mode=True, manual_channel="sms") == "voice"
    assert "quarterly_nudge" in caplog.text


def test_parse_reminder_type_reads_signed_offsets() -> None:
    assert parse_reminder_type("1_day_before") == ReminderOffset(timing="before", days=1)
    assert parse_reminder_type("3_days_overdue") == ReminderOffset(timing="overdue", days=3)
    assert parse_reminder_type("custom_on_due_date") == ReminderOffset(timing="on_due", days=0, custom=True)
    assert parse_reminder_type("custom_12_days_before") == ReminderOffset(timing="before", days=12, custom=True)
    assert parse_reminder_type("3_days_overdue").days_before_due == -3  # type: ignore[union-attr]
    assert parse_reminder_type("whenever") is None


def test_reminder_type_for_offset_names() -> None:
    assert reminder_type_for_offset(1) == "1_day_before"
    assert reminder_type_for_offset(30) == "30_days_before"
    assert reminder_type_for_offset(0) == "on_due_date"
    assert reminder_type_for_offset(-1) == "1_day_overdue"
    assert reminder_type_for_offset(-7) == "7_days_overdue"
    assert reminder_type_for_offset(0, custom=True) == "custom_on_due_date"
    assert reminder_type_for_offset(1, custom=True) == "custom_1_days_before"
    assert reminder_type_for_offset(-45, custom=True) == "custom_45_days_overdue"


def test_parse_channel_rejects_values_outside_closed_set() -> None:
    assert parse_channel(" SMS ") == "sms"
    assert parse_channel("voice") == "voice"
    with pytest.raises(UnknownChannelError):
        parse_channel("fax")
    with pytest.raises(UnknownChannelError):
        parse_channel(None)
