from __future__ import annotations

import re
from datetime import datetime, time
from typing import Literal, cast
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from pydantic import BaseModel, Field, field_validator, model_validator

Channel = Literal["sms", "voice"]
ReminderStatus = Literal["pending", "queued", "in_progress", "completed", "skipped", "failed"]
CustomerResponse = Literal["will_pay_today", "already_paid", "dispute", "no_answer", "no_phone_number", "other"]
DispatchPhase = Literal["awaiting_webhook", "failed_synchronously", "closed_synchronously"]
CallWebhookEvent = Literal["answered", "completed", "failed", "no_answer"]
SmsDeliveryStatus = Literal["queued", "sending", "sent", "delivered", "failed", "undelivered"]
VoiceGender = Literal["female", "male"]

CHANNELS: frozenset[str] = frozenset({"sms", "voice"})
TERMINAL_STATUSES: frozenset[str] = frozenset({"completed", "skipped", "failed"})

_TIME_PATTERN = re.compile(r"^([01]\d|2[0-3]):([0-5]\d)(?::([0-5]\d))?$")


class UnknownChannelError(ValueError):
    """Raised when a persisted channel value is outside the closed set."""

    def __init__(self, value: object) -> None:
        super().__init__(f"unknown reminder channel: {value!r}")
        self.value = value


def parse_channel(value: object) -> Channel:
    if isinstance(value, str):
        normalized = value.strip().lower()
        if normalized in CHANNELS:
            return cast(Channel, normalized)
    raise UnknownChannelError(value)


def is_terminal(status: str) -> bool:
    return status in TERMINAL_STATUSES


def parse_clock_time(value: str) -> time:
    match = _TIME_PATTERN.match(value.strip())
    if match is None:
        raise ValueError(f"invalid time format (expected HH:MM or HH:MM:SS): {value}")
    hours, minutes, seconds = match.groups()
    return time(int(hours), int(minutes), int(seconds or 0))


class CallOutcome(BaseModel):
    connected: bool
    duration_seconds: int = Field(default=0, ge=0)
    customer_response: CustomerResponse = "other"
    notes: str | None = Field(default=None, max_length=2000)
    provider_call_id: str | None = Field(default=None, max_length=256)
    delivery_status: SmsDeliveryStatus | None = None
    delivery_error_code: str | None = Field(default=None, max_length=64)


class ReminderSettingsInput(BaseModel):
    smart_mode: bool = True
    manual_channel: Channel = "voice"
    timezone: str = "UTC"
    call_start_time: str = "09:00:00"
    call_end_time: str = "18:00:00"
    call_days_of_week: list[int] = Field(default_factory=lambda: [1, 2, 3, 4, 5])
    max_retry_attempts: int = Field(default=3, ge=1, le=10)
    retry_delay_hours: int = Field(default=2, ge=1, le=72)
    language: str = Field(default="en", min_length=2, max_length=16)
    voice_gender: VoiceGender = "female"
    standard_offsets_enabled: bool = True
    custom_reminder_days: list[int] = Field(default_factory=list, max_length=20)

    @field_validator("timezone")
    @classmethod
    def _validate_timezone(cls, value: str) -> str:
        normalized = value.strip()
        try:
            ZoneInfo(normalized)
        except (ZoneInfoNotFoundError, ValueError) as exc:
            raise ValueError(f"invalid timezone: {value}") from exc
        return normalized

    @field_validator("call_start_time", "call_end_time")
    @classmethod
    def _validate_clock(cls, value: str) -> str:
        return parse_clock_time(value).strftime("%H:%M:%S")

    @field_validator("call_days_of_week")
    @classmethod
    def _validate_days(cls, value: list[int]) -> list[int]:
        if not value:
            raise ValueError("at least one call day is required")
        if any(day < 0 or day > 6 for day in value):
            raise ValueError("call days must be between 0 (Sunday) and 6 (Saturday)")
        if len(set(value)) != len(value):
            raise ValueError("call days must be unique")
        return sorted(value)

    @field_validator("custom_reminder_days")
    @classmethod
    def _validate_custom_days(cls, value: list[int]) -> list[int]:
        if any(day < -90 or day > 90 for day in value):
            raise ValueError("custom reminder days must be between -90 and 90")
        if len(set(value)) != len(value):
            raise ValueError("custom reminder days must be unique")
        return value

    @model_validator(mode="after")
    def _validate_window(self) -> ReminderSettingsInput:
        if parse_clock_time(self.call_start_time) >= parse_clock_time(self.call_end_time):
            raise ValueError("call_start_time must be before call_end_time")
        return self


class ReminderItem(BaseModel):
    reminder_id: str
    invoice_id: str
    user_id: str
    reminder_type: str
    channel: str
    scheduled_date: datetime
    status: ReminderStatus
    attempt_count: int
    last_attempt_at: datetime | None = None
    external_id: str | None = None
    call_outcome: CallOutcome | None = None
    skip_reason: str | None = None
    dispatch_phase: DispatchPhase | None = None
    created_at: datetime
    updated_at: datetime


class ExecutionResponse(BaseModel):
    reminder_id: str
    channel: str
    status: ReminderStatus
    dispatched: bool
    dispatch_phase: DispatchPhase | None = None
    external_id: str | None = None
    error_code: str | None = None
    error_message: str | None = None


class SchedulerRunResponse(BaseModel):
    run_id: str
    started_at: datetime
    finished_at: datetime
    processed: int
    dispatched: int
    deferred: int
    failed: int
    errors: int
    timed_out: int
    requeued: int
    error_rate: float


class CallStatusWebhookRequest(BaseModel):
    reminder_id: str = Field(min_length=1, max_length=128)
    event: CallWebhookEvent
    outcome: CallOutcome | None = None
    provider_call_id: str | None = Field(default=None, max_length=256)
    error_message: str | None = Field(default=None, max_length=2000)

    @model_validator(mode="after")
    def _validate_outcome(self) -> CallStatusWebhookRequest:
        if self.event == "completed" and self.outcome is None:
            raise ValueError("outcome is required for completed events")
        return self


class WebhookAckResponse(BaseModel):
    reminder_id: str | None = None
    applied: bool
    status: ReminderStatus | None = None
    detail: str | None = None
