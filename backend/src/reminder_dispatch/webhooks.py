from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Callable, Mapping, cast, get_args

from .models import (
    CallOutcome,
    CallStatusWebhookRequest,
    SmsDeliveryStatus,
    WebhookAckResponse,
)
from .outcomes import OutcomeApplication, OutcomeHandler
from .reminder_store import ReminderNotFoundError, ReminderRecord, ReminderRepository

logger = logging.getLogger(__name__)

_SMS_DELIVERY_STATUSES = frozenset(get_args(SmsDeliveryStatus))


def _now_utc() -> datetime:
    return datetime.now(timezone.utc)


def _ack(reminder: ReminderRecord | None, *, applied: bool, detail: str) -> WebhookAckResponse:
    return WebhookAckResponse(
        reminder_id=reminder.reminder_id if reminder else None,
        applied=applied,
        status=reminder.status if reminder else None,
        detail=detail,
    )


def _ack_application(fallback: ReminderRecord, application: OutcomeApplication) -> WebhookAckResponse:
    reminder = application.reminder or fallback
    if application.applied:
        detail = "outcome applied"
        if application.cancelled_ids:
            detail += f"; cancelled {len(application.cancelled_ids)} pending reminders"
    else:
        detail = f"reminder already {reminder.status}; outcome ignored"
    return _ack(reminder, applied=application.applied, detail=detail)


class ReminderWebhookService:
    """Applies provider callbacks to reminders.

    Call-status events close an in-progress voice attempt through the same
    outcome handler the synchronous path uses, so a callback racing the
    timeout sweep is applied at most once. SMS delivery callbacks only
    annotate the stored outcome.
    """

    def __init__(
        self,
        *,
        repository: ReminderRepository,
        outcomes: OutcomeHandler,
        clock: Callable[[], datetime] = _now_utc,
    ) -> None:
        self._repository = repository
        self._outcomes = outcomes
        self._clock = clock

    def handle_call_status(self, payload: CallStatusWebhookRequest, *, now: datetime | None = None) -> WebhookAckResponse:
        current = now or self._clock()
        reminder = self._repository.get_reminder(payload.reminder_id)
        if reminder is None:
            raise ReminderNotFoundError(payload.reminder_id)

        if payload.provider_call_id and reminder.external_id and payload.provider_call_id != reminder.external_id:
            logger.info(
                "ignoring %s callback for reminder %s from stale call %s",
                payload.event,
                reminder.reminder_id,
                payload.provider_call_id,
            )
            return _ack(reminder, applied=False, detail="stale provider call id")

        if payload.event == "answered":
            refreshed = self._repository.record_heartbeat(reminder.reminder_id, now=current)
            return _ack(
                self._repository.get_reminder(reminder.reminder_id) or reminder,
                applied=refreshed,
                detail="heartbeat recorded" if refreshed else f"reminder already {reminder.status}",
            )

        if payload.event == "completed":
            outcome = cast(CallOutcome, payload.outcome)
            if outcome.provider_call_id is None and payload.provider_call_id:
                outcome = outcome.model_copy(update={"provider_call_id": payload.provider_call_id})
            application = self._outcomes.apply_call_outcome(
                reminder.reminder_id, outcome, phase="awaiting_webhook", now=current
            )
        elif payload.event == "no_answer":
            base = payload.outcome or CallOutcome(connected=False)
            outcome = base.model_copy(update={"connected": False, "customer_response": "no_answer"})
            application = self._outcomes.apply_call_outcome(
                reminder.reminder_id, outcome, phase="awaiting_webhook", now=current
            )
        else:
            reason = f"Call failed: {payload.error_message or 'provider reported failure'}"
            application = self._outcomes.apply_transient_failure(
                reminder.reminder_id,
                reason=reason,
                outcome=payload.outcome,
                phase="awaiting_webhook",
                now=current,
            )

        if not application.applied:
            logger.info("duplicate %s callback for reminder %s ignored", payload.event, reminder.reminder_id)
        return _ack_application(reminder, application)

    def handle_sms_status(self, form_data: Mapping[str, str], *, now: datetime | None = None) -> WebhookAckResponse:
        message_sid = (form_data.get("MessageSid") or form_data.get("SmsSid") or "").strip()
        if not message_sid:
            raise ValueError("MessageSid is required")
        status = (form_data.get("MessageStatus") or form_data.get("SmsStatus") or "").strip().lower()

        reminder = self._repository.find_by_external_id(message_sid)
        if reminder is None:
            raise ReminderNotFoundError(message_sid)
        if status not in _SMS_DELIVERY_STATUSES:
            return _ack(reminder, applied=False, detail=f"delivery status {status or 'missing'} ignored")

        error_code = (form_data.get("ErrorCode") or "").strip() or None
        updated = self._repository.annotate_delivery(
            reminder.reminder_id,
            delivery_status=cast(SmsDeliveryStatus, status),
            error_code=error_code,
            now=now or self._clock(),
        )
        if status in {"failed", "undelivered"}:
            logger.warning(
                "sms for reminder %s reported %s (error code %s)", reminder.reminder_id, status, error_code or "-"
            )
        return _ack(updated or reminder, applied=updated is not None, detail=f"delivery {status}")
