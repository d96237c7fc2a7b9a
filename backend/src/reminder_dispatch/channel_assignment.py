from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from typing import Literal

from .models import Channel

logger = logging.getLogger(__name__)

Timing = Literal["before", "on_due", "overdue"]

# Reminders at least this many days ahead of the due date go out by SMS in smart mode.
SMS_MIN_DAYS_BEFORE = 5

STANDARD_OFFSETS: tuple[int, ...] = (30, 15, 7, 5, 3, 1, 0, -1, -3, -7)

_OFFSET_TYPE = re.compile(r"^(?P<custom>custom_)?(?P<days>\d+)_days?_(?P<timing>before|overdue)$")
_DUE_DATE_TYPE = re.compile(r"^(?:custom_)?on_due_date$")


@dataclass(frozen=True)
class ReminderOffset:
    timing: Timing
    days: int
    custom: bool = False

    @property
    def days_before_due(self) -> int:
        """Signed offset: positive before the due date, negative once overdue."""
        if self.timing == "before":
            return self.days
        if self.timing == "overdue":
            return -self.days
        return 0


def parse_reminder_type(reminder_type: str) -> ReminderOffset | None:
    normalized = reminder_type.strip().lower()
    if _DUE_DATE_TYPE.match(normalized):
        return ReminderOffset(timing="on_due", days=0, custom=normalized.startswith("custom_"))
    match = _OFFSET_TYPE.match(normalized)
    if match is None:
        return None
    days = int(match.group("days"))
    timing: Timing = "before" if match.group("timing") == "before" else "overdue"
    if days == 0:
        timing = "on_due"
    return ReminderOffset(timing=timing, days=days, custom=match.group("custom") is not None)


def reminder_type_for_offset(days_before_due: int, *, custom: bool = False) -> str:
    prefix = "custom_" if custom else ""
    if days_before_due == 0:
        return f"{prefix}on_due_date"
    days = abs(days_before_due)
    timing = "before" if days_before_due > 0 else "overdue"
    unit = "day" if days == 1 and not custom else "days"
    return f"{prefix}{days}_{unit}_{timing}"


def assign_channel(reminder_type: str, *, smart_mode: bool, manual_channel: Channel) -> Channel:
    if not smart_mode:
        return manual_channel

    offset = parse_reminder_type(reminder_type)
    if offset is None:
        logger.warning("unrecognized reminder type %r; assigning voice", reminder_type)
        return "voice"
    if offset.timing == "before" and offset.days >= SMS_MIN_DAYS_BEFORE:
        return "sms"
    return "voice"
