from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Callable

from .gatekeeper import local_day, resolve_timezone
from .models import CallOutcome, DispatchPhase, ReminderStatus, UnknownChannelError, parse_channel
from .outcomes import OutcomeApplication, OutcomeHandler
from .phone import is_e164, mask_phone_number, sanitize_phone_number
from .reference_data import CustomerRecord, InvoiceRecord, ReferenceDataRepository
from .reminder_store import ReminderNotFoundError, ReminderRecord, ReminderRepository
from .sms import SMS_CHARACTER_LIMIT, SmsMessageData, SmsSender, format_sms_message
from .verification import InvoiceStatusVerifier
from .voice import VoiceDispatcher, build_call_context

logger = logging.getLogger(__name__)

INVOICE_MISSING_REASON = "Invoice not found in cache"


def _now_utc() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class ExecutionResult:
    reminder_id: str
    channel: str
    status: ReminderStatus
    dispatched: bool
    dispatch_phase: DispatchPhase | None = None
    external_id: str | None = None
    error_code: str | None = None
    error_message: str | None = None


def _result_from(
    reminder: ReminderRecord,
    application: OutcomeApplication,
    *,
    dispatched: bool = False,
    error_code: str | None = None,
    error_message: str | None = None,
) -> ExecutionResult:
    current = application.reminder or reminder
    return ExecutionResult(
        reminder_id=current.reminder_id,
        channel=current.channel,
        status=current.status,
        dispatched=dispatched and application.applied,
        dispatch_phase=current.dispatch_phase,  # type: ignore[arg-type]
        external_id=current.external_id,
        error_code=error_code,
        error_message=error_message,
    )


def _customer_phone(customer: CustomerRecord | None) -> str:
    if customer is None or not customer.primary_phone:
        return ""
    return customer.primary_phone.strip()


class VoiceReminderExecutor:
    def __init__(
        self,
        *,
        reference_data: ReferenceDataRepository,
        verifier: InvoiceStatusVerifier,
        outcomes: OutcomeHandler,
        dispatcher: VoiceDispatcher,
    ) -> None:
        self._reference_data = reference_data
        self._verifier = verifier
        self._outcomes = outcomes
        self._dispatcher = dispatcher

    def run(self, reminder: ReminderRecord, *, now: datetime) -> ExecutionResult:
        invoice = self._reference_data.get_invoice(reminder.invoice_id)
        if invoice is None:
            application = self._outcomes.apply_permanent_failure(
                reminder.reminder_id, reason=INVOICE_MISSING_REASON, phase="closed_synchronously", now=now
            )
            return _result_from(reminder, application, error_code="invoice_not_found")

        verification = self._verifier.verify(invoice.invoice_id)
        if verification.failed:
            application = self._outcomes.apply_transient_failure(
                reminder.reminder_id,
                reason=f"Invoice verification failed: {verification.error}",
                phase="closed_synchronously",
                now=now,
            )
            return _result_from(reminder, application, error_code="verification_failed", error_message=verification.error)
        if verification.is_paid:
            application = self._outcomes.apply_verified_paid(reminder.reminder_id, now=now)
            return _result_from(reminder, application)
        if not verification.should_proceed:
            application = self._outcomes.apply_permanent_failure(
                reminder.reminder_id,
                reason=(
                    f"Invoice not actionable (status={verification.current_status}, "
                    f"amount due={verification.amount_due:.2f})"
                ),
                status="skipped",
                phase="closed_synchronously",
                now=now,
            )
            return _result_from(reminder, application)

        customer = self._reference_data.get_customer(invoice.customer_id) if invoice.customer_id else None
        raw_phone = _customer_phone(customer)
        if not raw_phone:
            application = self._outcomes.apply_call_outcome(
                reminder.reminder_id,
                CallOutcome(connected=False, customer_response="no_phone_number"),
                now=now,
            )
            return _result_from(reminder, application, error_code="phone_missing")

        phone_number = sanitize_phone_number(raw_phone)
        if not is_e164(phone_number):
            message = f"Invalid phone number format: {mask_phone_number(phone_number)}"
            application = self._outcomes.apply_permanent_failure(
                reminder.reminder_id, reason=message, phase="failed_synchronously", now=now
            )
            return _result_from(reminder, application, error_code="invalid_phone_number", error_message=message)

        settings = self._reference_data.get_settings(reminder.user_id)
        context = build_call_context(
            reminder=reminder,
            invoice=invoice,
            customer=customer,
            profile=self._reference_data.get_business_profile(reminder.user_id),
            settings=settings,
            amount_due=verification.amount_due,
            today=local_day(now, resolve_timezone(settings.timezone)),
        )
        result = self._dispatcher.dispatch(phone_number, context)
        if result.accepted:
            logger.info(
                "voice call dispatched for reminder %s to %s (call=%s)",
                reminder.reminder_id,
                mask_phone_number(phone_number),
                result.provider_call_id,
            )
            application = self._outcomes.record_dispatch_accepted(
                reminder.reminder_id, external_id=result.provider_call_id, now=now
            )
            return _result_from(reminder, application, dispatched=True)

        reason = f"Voice dispatch failed ({result.error_code}): {result.error_message}"
        if result.permanent:
            application = self._outcomes.apply_permanent_failure(
                reminder.reminder_id, reason=reason, phase="failed_synchronously", now=now
            )
        else:
            application = self._outcomes.apply_transient_failure(
                reminder.reminder_id, reason=reason, phase="failed_synchronously", now=now
            )
        return _result_from(
            reminder, application, error_code=result.error_code, error_message=result.error_message
        )


class SmsReminderExecutor:
    def __init__(
        self,
        *,
        reference_data: ReferenceDataRepository,
        outcomes: OutcomeHandler,
        sender: SmsSender,
        character_limit: int = SMS_CHARACTER_LIMIT,
    ) -> None:
        self._reference_data = reference_data
        self._outcomes = outcomes
        self._sender = sender
        self._character_limit = character_limit

    def _message(self, reminder: ReminderRecord, invoice: InvoiceRecord, customer: CustomerRecord | None) -> str:
        settings = self._reference_data.get_settings(reminder.user_id)
        profile = self._reference_data.get_business_profile(reminder.user_id)
        data = SmsMessageData(
            customer_name=((customer.name or "").strip() if customer else "") or "Customer",
            invoice_number=(invoice.invoice_number or "").strip() or "Unknown",
            amount=invoice.balance,
            currency=invoice.currency,
            due_date=invoice.due_date,
            company_name=profile.company_name,
            language=settings.language,
        )
        return format_sms_message(data, limit=self._character_limit)

    def run(self, reminder: ReminderRecord, *, now: datetime) -> ExecutionResult:
        invoice = self._reference_data.get_invoice(reminder.invoice_id)
        if invoice is None:
            application = self._outcomes.apply_permanent_failure(
                reminder.reminder_id, reason=INVOICE_MISSING_REASON, phase="closed_synchronously", now=now
            )
            return _result_from(reminder, application, error_code="invoice_not_found")

        customer = self._reference_data.get_customer(invoice.customer_id) if invoice.customer_id else None
        raw_phone = _customer_phone(customer)
        if not raw_phone:
            application = self._outcomes.apply_call_outcome(
                reminder.reminder_id,
                CallOutcome(connected=False, customer_response="no_phone_number"),
                now=now,
            )
            return _result_from(reminder, application, error_code="phone_missing")

        phone_number = sanitize_phone_number(raw_phone)
        result = self._sender.send(phone_number, self._message(reminder, invoice, customer))
        if result.accepted:
            logger.info(
                "sms sent for reminder %s to %s (sid=%s)",
                reminder.reminder_id,
                mask_phone_number(phone_number),
                result.provider_message_id,
            )
            application = self._outcomes.apply_call_outcome(
                reminder.reminder_id,
                CallOutcome(
                    connected=True,
                    customer_response="other",
                    provider_call_id=result.provider_message_id,
                    delivery_status="queued",
                ),
                now=now,
            )
            return _result_from(reminder, application, dispatched=True)

        failure = CallOutcome(connected=False, delivery_status="failed", delivery_error_code=result.error_code)
        reason = f"SMS send failed ({result.error_code}): {result.error_message}"
        if result.permanent:
            application = self._outcomes.apply_permanent_failure(
                reminder.reminder_id, reason=reason, outcome=failure, phase="failed_synchronously", now=now
            )
        else:
            application = self._outcomes.apply_transient_failure(
                reminder.reminder_id, reason=reason, outcome=failure, phase="failed_synchronously", now=now
            )
        return _result_from(
            reminder, application, error_code=result.error_code, error_message=result.error_message
        )


class ReminderExecutor:
    """Claims a reminder for one attempt and routes it to its channel."""

    def __init__(
        self,
        *,
        repository: ReminderRepository,
        outcomes: OutcomeHandler,
        voice: VoiceReminderExecutor,
        sms: SmsReminderExecutor,
        clock: Callable[[], datetime] = _now_utc,
    ) -> None:
        self._repository = repository
        self._outcomes = outcomes
        self._voice = voice
        self._sms = sms
        self._clock = clock

    def execute(self, reminder_id: str, *, now: datetime | None = None) -> ExecutionResult:
        current = now or self._clock()
        reminder = self._repository.get_reminder(reminder_id)
        if reminder is None:
            raise ReminderNotFoundError(reminder_id)

        claimed = self._repository.transition(
            reminder_id,
            expected=("pending", "queued"),
            target="in_progress",
            changes={"last_attempt_at": current, "external_id": None, "dispatch_phase": None},
            now=current,
        )
        if claimed is None:
            latest = self._repository.get_reminder(reminder_id) or reminder
            return ExecutionResult(
                reminder_id=latest.reminder_id,
                channel=latest.channel,
                status=latest.status,
                dispatched=False,
                dispatch_phase=latest.dispatch_phase,  # type: ignore[arg-type]
                external_id=latest.external_id,
                error_code="not_claimable",
                error_message=f"reminder is {latest.status}",
            )

        try:
            channel = parse_channel(claimed.channel)
        except UnknownChannelError as exc:
            logger.error("reminder %s has unroutable channel %r", reminder_id, claimed.channel)
            application = self._outcomes.apply_permanent_failure(
                reminder_id, reason=str(exc), phase="closed_synchronously", now=current
            )
            return _result_from(claimed, application, error_code="unknown_channel", error_message=str(exc))

        if channel == "sms":
            return self._sms.run(claimed, now=current)
        return self._voice.run(claimed, now=current)
