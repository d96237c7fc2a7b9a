"""Outcome classification and the retry loop-back.

Every close of an attempt goes through ``OutcomeHandler``, which performs a
compare-and-swap on ``in_progress``. Whichever writer (synchronous provider
result, webhook, timeout sweep) arrives first applies its outcome; the rest
see ``applied=False`` and change nothing.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Callable, Iterable, Literal

from .gatekeeper import first_free_day
from .models import CallOutcome, DispatchPhase, is_terminal
from .reference_data import ReferenceDataRepository, ReminderSettingsRecord
from .reminder_store import ReminderNotFoundError, ReminderRecord, ReminderRepository
from .verification import InvoiceStatusVerifier

logger = logging.getLogger(__name__)

PHONE_MISSING_REASON = "phone number missing"
CUSTOMER_REPORTED_PAID_REASON = "Customer reported invoice already paid"
INVOICE_PAID_REASON = "Invoice already paid (verified before dispatch)"
CASCADE_CANCEL_REASON = "Invoice verified as paid"


def _now_utc() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class RetryPlan:
    status: Literal["pending", "failed"]
    reason: str
    scheduled_date: datetime | None = None


def plan_retry(
    reminder: ReminderRecord,
    settings: ReminderSettingsRecord,
    *,
    now: datetime,
    reason: str,
    siblings: Iterable[ReminderRecord] = (),
) -> RetryPlan:
    """Decide where a failed attempt goes next.

    ``reminder.attempt_count`` does not yet include the attempt being closed,
    so the budget is judged on attempts made before it. A reminder that ends
    up at the ceiling is failed by the gatekeeper on its next pass.

    The retry never lands on a local day already held by another open
    reminder for the same invoice; it moves to the next free day instead.
    """
    if reminder.attempt_count >= settings.max_retry_attempts:
        attempts_made = reminder.attempt_count + 1
        return RetryPlan(
            status="failed",
            reason=(
                f"{reason}; maximum retry attempts exhausted "
                f"({attempts_made}/{settings.max_retry_attempts} attempts, {reminder.channel})"
            ),
        )
    open_siblings = [
        sibling
        for sibling in siblings
        if sibling.reminder_id != reminder.reminder_id
        and sibling.invoice_id == reminder.invoice_id
        and not is_terminal(sibling.status)
    ]
    return RetryPlan(
        status="pending",
        reason=reason,
        scheduled_date=first_free_day(
            now + timedelta(hours=settings.retry_delay_hours),
            channel=reminder.channel,
            existing=open_siblings,
            settings=settings,
        ),
    )


def _attach_outcome(changes: dict[str, object], outcome: CallOutcome | None) -> None:
    if outcome is None:
        return
    changes["call_outcome"] = outcome
    if outcome.provider_call_id:
        changes["external_id"] = outcome.provider_call_id


@dataclass(frozen=True)
class OutcomeApplication:
    applied: bool
    reminder: ReminderRecord | None
    cancelled_ids: tuple[str, ...] = ()


class OutcomeHandler:
    def __init__(
        self,
        *,
        repository: ReminderRepository,
        reference_data: ReferenceDataRepository,
        verifier: InvoiceStatusVerifier,
        clock: Callable[[], datetime] = _now_utc,
    ) -> None:
        self._repository = repository
        self._reference_data = reference_data
        self._verifier = verifier
        self._clock = clock

    def _load(self, reminder_id: str) -> ReminderRecord:
        reminder = self._repository.get_reminder(reminder_id)
        if reminder is None:
            raise ReminderNotFoundError(reminder_id)
        return reminder

    def record_dispatch_accepted(
        self,
        reminder_id: str,
        *,
        external_id: str | None,
        now: datetime | None = None,
    ) -> OutcomeApplication:
        """Keep the reminder in progress until the provider reports back."""
        record = self._repository.transition(
            reminder_id,
            expected="in_progress",
            target="in_progress",
            changes={"external_id": external_id, "dispatch_phase": "awaiting_webhook"},
            now=now or self._clock(),
        )
        return OutcomeApplication(applied=record is not None, reminder=record)

    def apply_call_outcome(
        self,
        reminder_id: str,
        outcome: CallOutcome,
        *,
        phase: DispatchPhase = "closed_synchronously",
        now: datetime | None = None,
    ) -> OutcomeApplication:
        current = now or self._clock()
        reminder = self._load(reminder_id)
        if reminder.status != "in_progress":
            return OutcomeApplication(applied=False, reminder=reminder)

        if outcome.customer_response == "no_phone_number":
            return self._close(
                reminder, "skipped", reason=PHONE_MISSING_REASON, outcome=outcome, phase=phase, now=current
            )

        if not outcome.connected or outcome.customer_response == "no_answer":
            return self._retry(reminder, reason="no answer", outcome=outcome, phase=phase, now=current)

        if outcome.customer_response == "already_paid":
            application = self._close(
                reminder,
                "skipped",
                reason=CUSTOMER_REPORTED_PAID_REASON,
                outcome=outcome,
                phase=phase,
                now=current,
            )
            if not application.applied:
                return application
            cancelled = self.cascade_cancel_if_paid(reminder.invoice_id, exclude=(reminder_id,), now=current)
            return OutcomeApplication(applied=True, reminder=application.reminder, cancelled_ids=cancelled)

        return self._close(reminder, "completed", reason=None, outcome=outcome, phase=phase, now=current)

    def apply_transient_failure(
        self,
        reminder_id: str,
        *,
        reason: str,
        outcome: CallOutcome | None = None,
        phase: DispatchPhase | None = None,
        now: datetime | None = None,
    ) -> OutcomeApplication:
        reminder = self._load(reminder_id)
        if reminder.status != "in_progress":
            return OutcomeApplication(applied=False, reminder=reminder)
        return self._retry(reminder, reason=reason, outcome=outcome, phase=phase, now=now or self._clock())

    def apply_permanent_failure(
        self,
        reminder_id: str,
        *,
        reason: str,
        status: Literal["failed", "skipped"] = "failed",
        outcome: CallOutcome | None = None,
        phase: DispatchPhase | None = None,
        now: datetime | None = None,
    ) -> OutcomeApplication:
        reminder = self._load(reminder_id)
        if reminder.status != "in_progress":
            return OutcomeApplication(applied=False, reminder=reminder)
        return self._close(reminder, status, reason=reason, outcome=outcome, phase=phase, now=now or self._clock())

    def apply_verified_paid(self, reminder_id: str, *, now: datetime | None = None) -> OutcomeApplication:
        """Close a reminder whose invoice the accounting provider reports as paid."""
        current = now or self._clock()
        reminder = self._load(reminder_id)
        if reminder.status != "in_progress":
            return OutcomeApplication(applied=False, reminder=reminder)
        application = self._close(
            reminder, "skipped", reason=INVOICE_PAID_REASON, outcome=None, phase="closed_synchronously", now=current
        )
        if not application.applied:
            return application
        cancelled = self._repository.cancel_pending_for_invoice(
            reminder.invoice_id, reason=CASCADE_CANCEL_REASON, exclude_ids=(reminder_id,), now=current
        )
        if cancelled:
            logger.info("cancelled %d pending reminders for paid invoice %s", len(cancelled), reminder.invoice_id)
        return OutcomeApplication(applied=True, reminder=application.reminder, cancelled_ids=tuple(cancelled))

    def cascade_cancel_if_paid(
        self,
        invoice_id: str,
        *,
        exclude: tuple[str, ...] = (),
        now: datetime | None = None,
    ) -> tuple[str, ...]:
        verification = self._verifier.verify(invoice_id)
        if not verification.is_paid:
            logger.info(
                "invoice %s not confirmed paid (status=%s); pending reminders kept",
                invoice_id,
                verification.current_status,
            )
            return ()
        cancelled = self._repository.cancel_pending_for_invoice(
            invoice_id, reason=CASCADE_CANCEL_REASON, exclude_ids=exclude, now=now or self._clock()
        )
        if cancelled:
            logger.info("cancelled %d pending reminders for paid invoice %s", len(cancelled), invoice_id)
        return tuple(cancelled)

    def _retry(
        self,
        reminder: ReminderRecord,
        *,
        reason: str,
        outcome: CallOutcome | None,
        phase: DispatchPhase | None,
        now: datetime,
    ) -> OutcomeApplication:
        settings = self._reference_data.get_settings(reminder.user_id)
        plan = plan_retry(
            reminder,
            settings,
            now=now,
            reason=reason,
            siblings=self._repository.list_for_invoice(reminder.invoice_id),
        )
        if plan.status == "failed":
            return self._close(reminder, "failed", reason=plan.reason, outcome=outcome, phase=phase, now=now)

        changes: dict[str, object] = {
            "scheduled_date": plan.scheduled_date,
            "skip_reason": plan.reason,
            "dispatch_phase": phase,
        }
        _attach_outcome(changes, outcome)
        record = self._repository.transition(
            reminder.reminder_id,
            expected="in_progress",
            target="pending",
            changes=changes,
            increment_attempts=True,
            now=now,
        )
        if record is None:
            return OutcomeApplication(applied=False, reminder=self._repository.get_reminder(reminder.reminder_id))
        logger.info(
            "reminder %s requeued for %s (%s, attempt %d)",
            reminder.reminder_id,
            record.scheduled_date.isoformat(),
            reason,
            record.attempt_count,
        )
        return OutcomeApplication(applied=True, reminder=record)

    def _close(
        self,
        reminder: ReminderRecord,
        target: Literal["completed", "skipped", "failed"],
        *,
        reason: str | None,
        outcome: CallOutcome | None,
        phase: DispatchPhase | None,
        now: datetime,
    ) -> OutcomeApplication:
        changes: dict[str, object] = {"skip_reason": reason, "dispatch_phase": phase}
        _attach_outcome(changes, outcome)
        record = self._repository.transition(
            reminder.reminder_id,
            expected="in_progress",
            target=target,
            changes=changes,
            increment_attempts=True,
            now=now,
        )
        if record is None:
            return OutcomeApplication(applied=False, reminder=self._repository.get_reminder(reminder.reminder_id))
        if target == "failed":
            logger.warning("reminder %s failed: %s", reminder.reminder_id, reason)
        else:
            logger.info("reminder %s %s%s", reminder.reminder_id, target, f": {reason}" if reason else "")
        return OutcomeApplication(applied=True, reminder=record)
