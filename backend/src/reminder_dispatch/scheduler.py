"""Periodic scheduler pass over due reminders.

A pass first sweeps reminders abandoned mid-attempt, then walks the due
batch oldest first. Each reminder is gated, throttled, claimed with a
compare-and-swap and handed to the executor. One reminder raising never
aborts the rest of the batch.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, time, timedelta, timezone
from threading import Lock
from typing import Callable, Literal

from .executors import ReminderExecutor
from .gatekeeper import can_dispatch
from .models import is_terminal
from .outcomes import OutcomeHandler
from .reference_data import ReferenceDataRepository
from .reminder_store import ReminderRecord, ReminderRepository, SchedulerRunRecord, new_run_id
from .throttle import OutboundThrottleRepository, outbound_throttle_key

logger = logging.getLogger(__name__)

CALL_TIMEOUT_REASON = "Call timeout - no provider callback"
OUTBOUND_THROTTLED_REASON = "outbound rate limit reached"

PassOutcome = Literal["dispatched", "deferred", "failed", "closed", "contended"]


def _now_utc() -> datetime:
    return datetime.now(timezone.utc)


def end_of_day_utc(now: datetime) -> datetime:
    return datetime.combine(now.astimezone(timezone.utc).date(), time.max, tzinfo=timezone.utc)


class SchedulerBusyError(RuntimeError):
    pass


@dataclass
class _PassCounters:
    processed: int = 0
    dispatched: int = 0
    deferred: int = 0
    failed: int = 0
    errors: int = 0
    timed_out: int = 0
    requeued: int = 0


class ReminderScheduler:
    def __init__(
        self,
        *,
        repository: ReminderRepository,
        reference_data: ReferenceDataRepository,
        executor: ReminderExecutor,
        outcomes: OutcomeHandler,
        throttle: OutboundThrottleRepository,
        in_progress_timeout_minutes: int = 10,
        queued_stale_minutes: int = 10,
        error_rate_alert_threshold: float = 0.2,
        batch_limit: int = 500,
        rate_limit_max: int = 30,
        rate_limit_window_seconds: int = 60,
        clock: Callable[[], datetime] = _now_utc,
    ) -> None:
        self._repository = repository
        self._reference_data = reference_data
        self._executor = executor
        self._outcomes = outcomes
        self._throttle = throttle
        self._in_progress_timeout = timedelta(minutes=in_progress_timeout_minutes)
        self._queued_stale = timedelta(minutes=queued_stale_minutes)
        self._error_rate_alert_threshold = error_rate_alert_threshold
        self._batch_limit = batch_limit
        self._rate_limit_max = rate_limit_max
        self._rate_limit_window_seconds = rate_limit_window_seconds
        self._clock = clock
        self._pass_lock = Lock()

    def run_once(self, *, now: datetime | None = None) -> SchedulerRunRecord:
        if not self._pass_lock.acquire(blocking=False):
            raise SchedulerBusyError("a scheduler pass is already running")
        try:
            return self._run(now or self._clock())
        finally:
            self._pass_lock.release()

    def sweep_timeouts(self, *, now: datetime) -> tuple[int, int]:
        """Retry attempts with no provider callback and release stale claims.

        Returns ``(timed_out, requeued)``.
        """
        timed_out = 0
        for reminder in self._repository.list_stale(status="in_progress", updated_before=now - self._in_progress_timeout):
            try:
                application = self._outcomes.apply_transient_failure(
                    reminder.reminder_id,
                    reason=CALL_TIMEOUT_REASON,
                    phase=reminder.dispatch_phase,  # type: ignore[arg-type]
                    now=now,
                )
            except Exception:
                logger.exception("timeout sweep failed for reminder %s", reminder.reminder_id)
                continue
            if application.applied:
                timed_out += 1
                logger.warning("reminder %s timed out waiting for provider callback", reminder.reminder_id)

        requeued = 0
        for reminder in self._repository.list_stale(status="queued", updated_before=now - self._queued_stale):
            record = self._repository.transition(reminder.reminder_id, expected="queued", target="pending", now=now)
            if record is not None:
                requeued += 1
                logger.info("stale queued reminder %s returned to pending", reminder.reminder_id)
        return timed_out, requeued

    def _run(self, now: datetime) -> SchedulerRunRecord:
        counters = _PassCounters()
        counters.timed_out, counters.requeued = self.sweep_timeouts(now=now)

        for reminder in self._repository.list_due(cutoff=end_of_day_utc(now), limit=self._batch_limit):
            counters.processed += 1
            try:
                outcome = self._process(reminder, now=now)
            except Exception as exc:
                counters.errors += 1
                counters.failed += 1
                logger.exception("reminder %s failed during scheduler pass", reminder.reminder_id)
                self._fail_after_error(reminder, exc, now=now)
                continue
            if outcome == "dispatched":
                counters.dispatched += 1
            elif outcome == "deferred":
                counters.deferred += 1
            elif outcome == "failed":
                counters.failed += 1

        error_rate = counters.errors / counters.processed if counters.processed else 0.0
        run = SchedulerRunRecord(
            run_id=new_run_id(),
            started_at=now,
            finished_at=self._clock(),
            processed=counters.processed,
            dispatched=counters.dispatched,
            deferred=counters.deferred,
            failed=counters.failed,
            errors=counters.errors,
            timed_out=counters.timed_out,
            requeued=counters.requeued,
            error_rate=round(error_rate, 4),
        )
        self._repository.record_run(run)

        logger.info(
            "scheduler pass %s: processed=%d dispatched=%d deferred=%d failed=%d errors=%d timed_out=%d requeued=%d",
            run.run_id,
            run.processed,
            run.dispatched,
            run.deferred,
            run.failed,
            run.errors,
            run.timed_out,
            run.requeued,
        )
        if error_rate > self._error_rate_alert_threshold:
            logger.error(
                "ALERT: scheduler error rate %.1f%% exceeds %.1f%% (%d of %d reminders)",
                error_rate * 100,
                self._error_rate_alert_threshold * 100,
                counters.errors,
                counters.processed,
            )
        return run

    def _process(self, reminder: ReminderRecord, *, now: datetime) -> PassOutcome:
        settings = self._reference_data.get_settings(reminder.user_id)
        siblings = [
            row for row in self._repository.list_for_invoice(reminder.invoice_id) if row.reminder_id != reminder.reminder_id
        ]
        decision = can_dispatch(reminder, settings, now=now, siblings=siblings)
        if not decision.ok:
            if decision.permanent:
                record = self._repository.transition(
                    reminder.reminder_id,
                    expected="pending",
                    target="failed",
                    changes={"skip_reason": decision.reason},
                    now=now,
                )
                if record is None:
                    return "contended"
                logger.warning("reminder %s failed: %s", reminder.reminder_id, decision.reason)
                return "failed"
            logger.info("reminder %s deferred: %s", reminder.reminder_id, decision.reason)
            return "deferred"

        if not self._throttle.try_acquire(
            outbound_throttle_key(reminder.user_id),
            limit=self._rate_limit_max,
            window_seconds=self._rate_limit_window_seconds,
            now=now,
        ):
            logger.info("reminder %s deferred: %s for user %s", reminder.reminder_id, OUTBOUND_THROTTLED_REASON, reminder.user_id)
            return "deferred"

        claimed = self._repository.transition(reminder.reminder_id, expected="pending", target="queued", now=now)
        if claimed is None:
            logger.info("reminder %s was claimed elsewhere; skipping", reminder.reminder_id)
            return "contended"

        result = self._executor.execute(reminder.reminder_id, now=now)
        if result.dispatched:
            return "dispatched"
        if result.status == "failed":
            return "failed"
        return "closed"

    def _fail_after_error(self, reminder: ReminderRecord, exc: Exception, *, now: datetime) -> None:
        try:
            current = self._repository.get_reminder(reminder.reminder_id)
            if current is None or is_terminal(current.status):
                return
            self._repository.transition(
                reminder.reminder_id,
                expected=current.status,
                target="failed",
                changes={"skip_reason": f"Scheduler error: {exc}"},
                now=now,
            )
        except Exception:
            logger.exception("could not mark reminder %s failed after error", reminder.reminder_id)
