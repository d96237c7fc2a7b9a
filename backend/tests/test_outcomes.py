from __future__ import annotations

from dataclasses import dataclass
from datetime import date, datetime, timedelta, timezone
from unittest.mock import MagicMock

from reminder_dispatch.accounting import CachedAccountingStatusClient
from reminder_dispatch.executors import ReminderExecutor, SmsReminderExecutor, VoiceReminderExecutor
from reminder_dispatch.models import CallOutcome, CallStatusWebhookRequest
from reminder_dispatch.outcomes import OutcomeHandler, plan_retry
from reminder_dispatch.reference_data import (
    CustomerRecord,
    InMemoryReferenceDataRepository,
    InvoiceRecord,
    ReminderSettingsRecord,
)
from reminder_dispatch.reminder_store import InMemoryReminderRepository, ReminderRecord
from reminder_dispatch.schedule_builder import ReminderPlanner
from reminder_dispatch.sms import SmsSendResult, StubSmsSender
from reminder_dispatch.verification import InvoiceStatusVerifier
from reminder_dispatch.voice import StubVoiceDispatcher, VoiceDispatchResult
from reminder_dispatch.webhooks import ReminderWebhookService

# Tuesday 2026-10-20, 10:00 in New York.
NOW = datetime(2026, 10, 20, 14, 0, tzinfo=timezone.utc)


@dataclass
class _Engine:
    reminders: InMemoryReminderRepository
    reference: InMemoryReferenceDataRepository
    outcomes: OutcomeHandler
    executor: ReminderExecutor
    webhooks: ReminderWebhookService
    voice: StubVoiceDispatcher
    sms: StubSmsSender


def _engine(
    *,
    phone: str | None = "+1 (555) 123-4567",
    invoice_status: str = "unpaid",
    balance: float = 250.0,
    voice: object | None = None,
    sms: object | None = None,
    accounting: object | None = None,
) -> _Engine:
    reminders = InMemoryReminderRepository()
    reference = InMemoryReferenceDataRepository()
    reference.upsert_invoice(
        InvoiceRecord(
            invoice_id="inv-1",
            user_id="user-1",
            customer_id="cust-1",
            invoice_number="INV-1001",
            amount_total=300.0,
            balance=balance,
            currency="USD",
            due_date=date(2026, 10, 23),
            status=invoice_status,
        )
    )
    reference.upsert_customer(
        CustomerRecord(customer_id="cust-1", user_id="user-1", name="Dana Smith", primary_phone=phone)
    )
    reference.upsert_settings(ReminderSettingsRecord(user_id="user-1", timezone="America/New_York"))

    verifier = InvoiceStatusVerifier(
        accounting=accounting or CachedAccountingStatusClient(reference),  # type: ignore[arg-type]
        reference_data=reference,
    )
    outcomes = OutcomeHandler(repository=reminders, reference_data=reference, verifier=verifier, clock=lambda: NOW)
    voice_dispatcher = voice or StubVoiceDispatcher()
    sms_sender = sms or StubSmsSender()
    executor = ReminderExecutor(
        repository=reminders,
        outcomes=outcomes,
        voice=VoiceReminderExecutor(
            reference_data=reference,
            verifier=verifier,
            outcomes=outcomes,
            dispatcher=voice_dispatcher,  # type: ignore[arg-type]
        ),
        sms=SmsReminderExecutor(reference_data=reference, outcomes=outcomes, sender=sms_sender),  # type: ignore[arg-type]
        clock=lambda: NOW,
    )
    webhooks = ReminderWebhookService(repository=reminders, outcomes=outcomes, clock=lambda: NOW)
    return _Engine(
        reminders=reminders,
        reference=reference,
        outcomes=outcomes,
        executor=executor,
        webhooks=webhooks,
        voice=voice_dispatcher,  # type: ignore[arg-type]
        sms=sms_sender,  # type: ignore[arg-type]
    )


def _reminder(engine: _Engine, *, channel: str = "voice", scheduled_date: datetime | None = None) -> ReminderRecord:
    return engine.reminders.create_reminder(
        invoice_id="inv-1",
        user_id="user-1",
        reminder_type="3_days_before" if channel == "voice" else "7_days_before",
        channel=channel,
        scheduled_date=scheduled_date or NOW - timedelta(hours=1),
        now=NOW - timedelta(days=10),
    )


def _burn_attempts(engine: _Engine, reminder_id: str, count: int) -> None:
    for _ in range(count):
        engine.reminders.transition(reminder_id, expected="pending", target="in_progress", now=NOW - timedelta(days=1))
        engine.reminders.transition(
            reminder_id,
            expected="in_progress",
            target="pending",
            increment_attempts=True,
            now=NOW - timedelta(days=1),
        )


def test_plan_retry_requeues_until_budget_spent() -> None:
    settings = ReminderSettingsRecord(user_id="user-1", max_retry_attempts=3, retry_delay_hours=4)
    engine = _engine()
    reminder = _reminder(engine)

    plan = plan_retry(reminder, settings, now=NOW, reason="no answer")

    assert plan.status == "pending"
    assert plan.scheduled_date == NOW + timedelta(hours=4)


def test_plan_retry_skips_days_held_by_open_siblings() -> None:
    settings = ReminderSettingsRecord(user_id="user-1", timezone="America/New_York", retry_delay_hours=24)
    engine = _engine()
    reminder = _reminder(engine)
    _reminder(engine, scheduled_date=NOW + timedelta(days=1, hours=2))
    _reminder(engine, channel="sms", scheduled_date=NOW + timedelta(days=2))
    closed = _reminder(engine, scheduled_date=NOW + timedelta(days=3))
    engine.reminders.transition(closed.reminder_id, expected="pending", target="skipped", now=NOW)

    plan = plan_retry(
        reminder,
        settings,
        now=NOW,
        reason="no answer",
        siblings=engine.reminders.list_for_invoice("inv-1"),
    )

    assert plan.status == "pending"
    assert plan.scheduled_date == NOW + timedelta(days=3)


def test_sms_retry_does_not_share_a_day_with_the_voice_reminder() -> None:
    sender = MagicMock()
    sender.send.return_value = SmsSendResult(
        accepted=False, attempted_at=NOW, error_code="network_error", error_message="connection reset"
    )
    engine = _engine(sms=sender)
    engine.reference.upsert_settings(
        ReminderSettingsRecord(user_id="user-1", timezone="America/New_York", retry_delay_hours=48)
    )
    sms_reminder = engine.reminders.create_reminder(
        invoice_id="inv-1",
        user_id="user-1",
        reminder_type="5_days_before",
        channel="sms",
        scheduled_date=NOW - timedelta(hours=1),
        now=NOW - timedelta(days=10),
    )
    engine.reminders.create_reminder(
        invoice_id="inv-1",
        user_id="user-1",
        reminder_type="3_days_before",
        channel="voice",
        scheduled_date=NOW + timedelta(days=2),
        now=NOW - timedelta(days=10),
    )

    result = engine.executor.execute(sms_reminder.reminder_id, now=NOW)

    assert result.status == "pending"
    retried = engine.reminders.get_reminder(sms_reminder.reminder_id)
    assert retried is not None
    assert retried.channel == "sms"
    assert retried.scheduled_date == NOW + timedelta(hours=72)
    open_days = [
        record.scheduled_date.date()
        for record in engine.reminders.list_for_invoice("inv-1")
        if record.status not in {"completed", "skipped", "failed"}
    ]
    assert len(open_days) == len(set(open_days)) == 2


def test_voice_no_answer_requeues_with_retry_delay() -> None:
    engine = _engine()
    reminder = _reminder(engine)
    _burn_attempts(engine, reminder.reminder_id, 2)

    dispatched = engine.executor.execute(reminder.reminder_id, now=NOW)

    assert dispatched.dispatched
    assert dispatched.status == "in_progress"
    assert dispatched.dispatch_phase == "awaiting_webhook"
    assert dispatched.external_id is not None
    assert engine.reminders.get_reminder(reminder.reminder_id).attempt_count == 2  # type: ignore[union-attr]
    phone_number, context = engine.voice.calls[0]
    assert phone_number == "+15551234567"
    assert context.customer_name == "Dana Smith"
    assert context.amount_due == 250.0
    assert context.days_until_due == 3

    ack = engine.webhooks.handle_call_status(
        CallStatusWebhookRequest(
            reminder_id=reminder.reminder_id,
            event="no_answer",
            provider_call_id=dispatched.external_id,
        )
    )

    assert ack.applied
    updated = engine.reminders.get_reminder(reminder.reminder_id)
    assert updated is not None
    assert updated.status == "pending"
    assert updated.attempt_count == 3
    assert updated.scheduled_date == NOW + timedelta(hours=2)
    assert updated.last_attempt_at == NOW
    assert updated.skip_reason == "no answer"
    assert updated.call_outcome is not None
    assert updated.call_outcome.customer_response == "no_answer"


def test_failure_beyond_budget_fails_and_cites_attempts() -> None:
    engine = _engine(voice=MagicMock())
    engine.voice.dispatch.return_value = VoiceDispatchResult(  # type: ignore[attr-defined]
        accepted=False, attempted_at=NOW, error_code="http_503", error_message="HTTP 503: Service Unavailable"
    )
    reminder = _reminder(engine)
    _burn_attempts(engine, reminder.reminder_id, 3)

    result = engine.executor.execute(reminder.reminder_id, now=NOW)

    assert result.status == "failed"
    assert result.dispatch_phase == "failed_synchronously"
    updated = engine.reminders.get_reminder(reminder.reminder_id)
    assert updated is not None
    assert updated.attempt_count == 4
    assert updated.skip_reason is not None
    assert "attempts, voice)" in updated.skip_reason


def test_sms_without_phone_is_skipped_once() -> None:
    engine = _engine(phone=None)
    reminder = _reminder(engine, channel="sms")

    result = engine.executor.execute(reminder.reminder_id, now=NOW)

    assert result.status == "skipped"
    assert result.error_code == "phone_missing"
    updated = engine.reminders.get_reminder(reminder.reminder_id)
    assert updated is not None
    assert updated.skip_reason == "phone number missing"
    assert updated.attempt_count == 1
    assert engine.sms.messages == []

    again = engine.executor.execute(reminder.reminder_id, now=NOW + timedelta(hours=3))
    assert again.error_code == "not_claimable"
    assert engine.reminders.get_reminder(reminder.reminder_id).attempt_count == 1  # type: ignore[union-attr]


def test_customer_reported_paid_cascades_when_provider_confirms() -> None:
    engine = _engine()
    reminder = _reminder(engine)
    later_sms = _reminder(engine, channel="sms", scheduled_date=NOW + timedelta(days=2))
    dispatched = engine.executor.execute(reminder.reminder_id, now=NOW)
    # The customer paid during the call; the provider now reports it.
    engine.reference.refresh_invoice_status("inv-1", status="paid", balance=0.0, last_modified_at=NOW)

    ack = engine.webhooks.handle_call_status(
        CallStatusWebhookRequest(
            reminder_id=reminder.reminder_id,
            event="completed",
            provider_call_id=dispatched.external_id,
            outcome=CallOutcome(connected=True, duration_seconds=42, customer_response="already_paid"),
        )
    )

    assert ack.applied
    assert ack.status == "skipped"
    assert ack.detail == "outcome applied; cancelled 1 pending reminders"
    updated = engine.reminders.get_reminder(reminder.reminder_id)
    assert updated is not None
    assert updated.skip_reason == "Customer reported invoice already paid"
    assert updated.attempt_count == 1
    assert updated.call_outcome is not None
    assert updated.call_outcome.provider_call_id == dispatched.external_id
    sibling = engine.reminders.get_reminder(later_sms.reminder_id)
    assert sibling is not None
    assert sibling.status == "skipped"
    assert sibling.skip_reason == "Invoice verified as paid"


def test_customer_reported_paid_keeps_siblings_when_unconfirmed() -> None:
    engine = _engine()
    reminder = _reminder(engine)
    later_sms = _reminder(engine, channel="sms", scheduled_date=NOW + timedelta(days=2))
    engine.executor.execute(reminder.reminder_id, now=NOW)

    application = engine.outcomes.apply_call_outcome(
        reminder.reminder_id, CallOutcome(connected=True, customer_response="already_paid")
    )

    assert application.applied
    assert application.cancelled_ids == ()
    assert engine.reminders.get_reminder(later_sms.reminder_id).status == "pending"  # type: ignore[union-attr]


def test_duplicate_outcome_is_a_no_op() -> None:
    engine = _engine()
    reminder = _reminder(engine)
    engine.executor.execute(reminder.reminder_id, now=NOW)
    outcome = CallOutcome(connected=True, customer_response="will_pay_today")

    first = engine.outcomes.apply_call_outcome(reminder.reminder_id, outcome, phase="awaiting_webhook")
    second = engine.outcomes.apply_transient_failure(reminder.reminder_id, reason="Call timeout - no provider callback")

    assert first.applied
    assert not second.applied
    updated = engine.reminders.get_reminder(reminder.reminder_id)
    assert updated is not None
    assert updated.status == "completed"
    assert updated.attempt_count == 1


def test_voice_skips_paid_invoice_without_calling() -> None:
    engine = _engine(invoice_status="paid", balance=0.0)
    reminder = _reminder(engine)
    sibling = _reminder(engine, channel="sms", scheduled_date=NOW + timedelta(days=2))

    result = engine.executor.execute(reminder.reminder_id, now=NOW)

    assert result.status == "skipped"
    assert not result.dispatched
    assert engine.voice.calls == []
    assert engine.reminders.get_reminder(sibling.reminder_id).status == "skipped"  # type: ignore[union-attr]


def test_voice_skips_invoice_that_is_not_actionable() -> None:
    engine = _engine(invoice_status="draft")
    reminder = _reminder(engine)

    engine.executor.execute(reminder.reminder_id, now=NOW)

    updated = engine.reminders.get_reminder(reminder.reminder_id)
    assert updated is not None
    assert updated.status == "skipped"
    assert updated.skip_reason == "Invoice not actionable (status=draft, amount due=250.00)"


def test_verification_failure_is_retried_without_calling() -> None:
    failing = MagicMock()
    failing.get_invoice_status.side_effect = RuntimeError("accounting API down")
    engine = _engine(accounting=failing)
    reminder = _reminder(engine)

    result = engine.executor.execute(reminder.reminder_id, now=NOW)

    assert result.status == "pending"
    assert result.error_code == "verification_failed"
    assert engine.voice.calls == []
    updated = engine.reminders.get_reminder(reminder.reminder_id)
    assert updated is not None
    assert updated.dispatch_phase == "closed_synchronously"
    assert updated.skip_reason == "Invoice verification failed: accounting API down"


def test_invalid_phone_number_fails_permanently() -> None:
    engine = _engine(phone="n/a")
    reminder = _reminder(engine)

    result = engine.executor.execute(reminder.reminder_id, now=NOW)

    assert result.status == "failed"
    assert result.error_code == "invalid_phone_number"
    assert result.dispatch_phase == "failed_synchronously"
    assert engine.voice.calls == []


def test_sms_send_completes_reminder() -> None:
    engine = _engine()
    reminder = _reminder(engine, channel="sms")

    result = engine.executor.execute(reminder.reminder_id, now=NOW)

    assert result.dispatched
    assert result.status == "completed"
    phone_number, message = engine.sms.messages[0]
    assert phone_number == "+15551234567"
    assert message == "Hi Dana Smith, reminder: Invoice #INV-1001 for $250.00 is due on Oct 23. - Your Company"
    updated = engine.reminders.get_reminder(reminder.reminder_id)
    assert updated is not None
    assert updated.external_id == result.external_id
    assert updated.call_outcome is not None
    assert updated.call_outcome.delivery_status == "queued"


def test_sms_transient_failure_requeues() -> None:
    sender = MagicMock()
    sender.send.return_value = SmsSendResult(
        accepted=False, attempted_at=NOW, error_code="rate_limited", error_message="Twilio rate limit exceeded"
    )
    engine = _engine(sms=sender)
    reminder = _reminder(engine, channel="sms")

    result = engine.executor.execute(reminder.reminder_id, now=NOW)

    assert result.status == "pending"
    assert result.error_code == "rate_limited"
    updated = engine.reminders.get_reminder(reminder.reminder_id)
    assert updated is not None
    assert updated.attempt_count == 1
    assert updated.call_outcome is not None
    assert updated.call_outcome.delivery_status == "failed"
    assert updated.call_outcome.delivery_error_code == "rate_limited"


def test_missing_invoice_fails_permanently() -> None:
    engine = _engine()
    reminder = engine.reminders.create_reminder(
        invoice_id="inv-gone",
        user_id="user-1",
        reminder_type="1_day_before",
        channel="voice",
        scheduled_date=NOW,
        now=NOW,
    )

    result = engine.executor.execute(reminder.reminder_id, now=NOW)

    assert result.status == "failed"
    assert result.error_code == "invoice_not_found"


def test_unknown_persisted_channel_fails_permanently() -> None:
    engine = _engine()
    reminder = _reminder(engine, channel="fax")

    result = engine.executor.execute(reminder.reminder_id, now=NOW)

    assert result.status == "failed"
    assert result.error_code == "unknown_channel"
    assert engine.voice.calls == []
    assert engine.sms.messages == []


def test_channel_survives_settings_change_and_retry() -> None:
    engine = _engine()
    planner = ReminderPlanner(repository=engine.reminders, reference_data=engine.reference, clock=lambda: NOW)
    created = {record.reminder_type: record for record in planner.create_reminders_for_invoice("inv-1")}
    reminder = created["3_days_before"]
    assert reminder.channel == "voice"
    assert created["on_due_date"].channel == "voice"

    engine.reference.upsert_settings(
        ReminderSettingsRecord(
            user_id="user-1", timezone="America/New_York", smart_mode=False, manual_channel="sms"
        )
    )
    dispatched = engine.executor.execute(reminder.reminder_id, now=NOW)
    engine.webhooks.handle_call_status(
        CallStatusWebhookRequest(
            reminder_id=reminder.reminder_id,
            event="no_answer",
            provider_call_id=dispatched.external_id,
        )
    )

    retried = engine.reminders.get_reminder(reminder.reminder_id)
    assert retried is not None
    assert retried.status == "pending"
    assert retried.channel == "voice"

    again = engine.executor.execute(reminder.reminder_id, now=NOW + timedelta(hours=3))

    assert again.channel == "voice"
    assert len(engine.voice.calls) == 2
    assert engine.sms.messages == []
    assert all(record.channel == "voice" for record in engine.reminders.list_for_invoice("inv-1"))
