from __future__ import annotations

import secrets
from dataclasses import dataclass
from datetime import datetime, timezone
from threading import Lock
from typing import Iterable, Mapping, Protocol

from sqlalchemy import DateTime, Float, Integer, String, Text, create_engine, select, update
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, sessionmaker

from .models import CallOutcome, ReminderStatus, SmsDeliveryStatus
from .state_machine import ensure_transition

# Fields the engine may write alongside a status change. ``channel`` is absent on purpose.
_MUTABLE_FIELDS = frozenset(
    {
        "last_attempt_at",
        "scheduled_date",
        "external_id",
        "call_outcome",
        "skip_reason",
        "dispatch_phase",
    }
)


def _now_utc() -> datetime:
    return datetime.now(timezone.utc)


def _coerce_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def _optional_utc(value: datetime | None) -> datetime | None:
    return _coerce_utc(value) if value is not None else None


def _status_set(expected: str | Iterable[str]) -> frozenset[str]:
    if isinstance(expected, str):
        return frozenset({expected})
    return frozenset(expected)


def _validate_changes(changes: Mapping[str, object] | None) -> dict[str, object]:
    normalized = dict(changes or {})
    unknown = set(normalized) - _MUTABLE_FIELDS
    if unknown:
        raise ValueError(f"unsupported reminder fields: {', '.join(sorted(unknown))}")
    for key in ("last_attempt_at", "scheduled_date"):
        value = normalized.get(key)
        if isinstance(value, datetime):
            normalized[key] = _coerce_utc(value)
    return normalized


class ReminderNotFoundError(KeyError):
    pass


@dataclass(frozen=True)
class ReminderRecord:
    reminder_id: str
    invoice_id: str
    user_id: str
    reminder_type: str
    channel: str
    scheduled_date: datetime
    status: ReminderStatus
    attempt_count: int
    last_attempt_at: datetime | None
    external_id: str | None
    call_outcome: CallOutcome | None
    skip_reason: str | None
    dispatch_phase: str | None
    created_at: datetime
    updated_at: datetime


@dataclass(frozen=True)
class SchedulerRunRecord:
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


def new_run_id() -> str:
    return f"srun_{secrets.token_hex(8)}"


class ReminderRepository(Protocol):
    def reset(self) -> None: ...

    def create_reminder(
        self,
        *,
        invoice_id: str,
        user_id: str,
        reminder_type: str,
        channel: str,
        scheduled_date: datetime,
        now: datetime | None = None,
    ) -> ReminderRecord: ...

    def get_reminder(self, reminder_id: str) -> ReminderRecord | None: ...

    def find_by_external_id(self, external_id: str) -> ReminderRecord | None: ...

    def list_due(self, *, cutoff: datetime, limit: int) -> list[ReminderRecord]: ...

    def list_for_invoice(self, invoice_id: str) -> list[ReminderRecord]: ...

    def list_stale(self, *, status: ReminderStatus, updated_before: datetime) -> list[ReminderRecord]: ...

    def transition(
        self,
        reminder_id: str,
        *,
        expected: ReminderStatus | Iterable[ReminderStatus],
        target: ReminderStatus,
        changes: Mapping[str, object] | None = None,
        increment_attempts: bool = False,
        now: datetime | None = None,
    ) -> ReminderRecord | None: ...

    def cancel_pending_for_invoice(
        self,
        invoice_id: str,
        *,
        reason: str,
        exclude_ids: Iterable[str] = (),
        now: datetime | None = None,
    ) -> list[str]: ...

    def record_heartbeat(self, reminder_id: str, *, now: datetime | None = None) -> bool: ...

    def annotate_delivery(
        self,
        reminder_id: str,
        *,
        delivery_status: SmsDeliveryStatus,
        error_code: str | None,
        now: datetime | None = None,
    ) -> ReminderRecord | None: ...

    def record_run(self, run: SchedulerRunRecord) -> None: ...

    def get_latest_run(self) -> SchedulerRunRecord | None: ...


def _annotated_outcome(
    existing: CallOutcome | None,
    *,
    delivery_status: SmsDeliveryStatus,
    error_code: str | None,
) -> CallOutcome:
    base = existing or CallOutcome(connected=delivery_status in {"sent", "delivered"})
    return base.model_copy(update={"delivery_status": delivery_status, "delivery_error_code": error_code})


class InMemoryReminderRepository:
    def __init__(self) -> None:
        self._lock = Lock()
        self._reminders: dict[str, ReminderRecord] = {}
        self._runs: list[SchedulerRunRecord] = []

    def reset(self) -> None:
        with self._lock:
            self._reminders.clear()
            self._runs.clear()

    def create_reminder(
        self,
        *,
        invoice_id: str,
        user_id: str,
        reminder_type: str,
        channel: str,
        scheduled_date: datetime,
        now: datetime | None = None,
    ) -> ReminderRecord:
        created_at = _coerce_utc(now or _now_utc())
        record = ReminderRecord(
            reminder_id=f"rem_{secrets.token_hex(8)}",
            invoice_id=invoice_id,
            user_id=user_id,
            reminder_type=reminder_type,
            channel=channel,
            scheduled_date=_coerce_utc(scheduled_date),
            status="pending",
            attempt_count=0,
            last_attempt_at=None,
            external_id=None,
            call_outcome=None,
            skip_reason=None,
            dispatch_phase=None,
            created_at=created_at,
            updated_at=created_at,
        )
        with self._lock:
            self._reminders[record.reminder_id] = record
        return record

    def get_reminder(self, reminder_id: str) -> ReminderRecord | None:
        with self._lock:
            return self._reminders.get(reminder_id)

    def find_by_external_id(self, external_id: str) -> ReminderRecord | None:
        with self._lock:
            for record in self._reminders.values():
                if record.external_id == external_id:
                    return record
            return None

    def list_due(self, *, cutoff: datetime, limit: int) -> list[ReminderRecord]:
        cutoff = _coerce_utc(cutoff)
        with self._lock:
            due = [
                record
                for record in self._reminders.values()
                if record.status == "pending" and record.scheduled_date <= cutoff
            ]
        due.sort(key=lambda item: (item.scheduled_date, item.created_at, item.reminder_id))
        return due[:limit]

    def list_for_invoice(self, invoice_id: str) -> list[ReminderRecord]:
        with self._lock:
            rows = [record for record in self._reminders.values() if record.invoice_id == invoice_id]
        rows.sort(key=lambda item: (item.scheduled_date, item.created_at, item.reminder_id))
        return rows

    def list_stale(self, *, status: ReminderStatus, updated_before: datetime) -> list[ReminderRecord]:
        updated_before = _coerce_utc(updated_before)
        with self._lock:
            rows = [
                record
                for record in self._reminders.values()
                if record.status == status and record.updated_at < updated_before
            ]
        rows.sort(key=lambda item: (item.updated_at, item.reminder_id))
        return rows

    def transition(
        self,
        reminder_id: str,
        *,
        expected: ReminderStatus | Iterable[ReminderStatus],
        target: ReminderStatus,
        changes: Mapping[str, object] | None = None,
        increment_attempts: bool = False,
        now: datetime | None = None,
    ) -> ReminderRecord | None:
        sources = _status_set(expected)
        for source in sources:
            ensure_transition(source, target)
        updates = _validate_changes(changes)
        with self._lock:
            row = self._reminders.get(reminder_id)
            if row is None:
                raise ReminderNotFoundError(reminder_id)
            if row.status not in sources:
                return None
            updated = ReminderRecord(
                **{
                    **row.__dict__,
                    **updates,
                    "status": target,
                    "attempt_count": row.attempt_count + (1 if increment_attempts else 0),
                    "updated_at": _coerce_utc(now or _now_utc()),
                }
            )
            self._reminders[reminder_id] = updated
            return updated

    def cancel_pending_for_invoice(
        self,
        invoice_id: str,
        *,
        reason: str,
        exclude_ids: Iterable[str] = (),
        now: datetime | None = None,
    ) -> list[str]:
        excluded = set(exclude_ids)
        updated_at = _coerce_utc(now or _now_utc())
        cancelled: list[str] = []
        with self._lock:
            for reminder_id, row in self._reminders.items():
                if row.invoice_id != invoice_id or row.status != "pending" or reminder_id in excluded:
                    continue
                self._reminders[reminder_id] = ReminderRecord(
                    **{**row.__dict__, "status": "skipped", "skip_reason": reason, "updated_at": updated_at}
                )
                cancelled.append(reminder_id)
        return sorted(cancelled)

    def record_heartbeat(self, reminder_id: str, *, now: datetime | None = None) -> bool:
        with self._lock:
            row = self._reminders.get(reminder_id)
            if row is None or row.status != "in_progress":
                return False
            self._reminders[reminder_id] = ReminderRecord(
                **{**row.__dict__, "updated_at": _coerce_utc(now or _now_utc())}
            )
            return True

    def annotate_delivery(
        self,
        reminder_id: str,
        *,
        delivery_status: SmsDeliveryStatus,
        error_code: str | None,
        now: datetime | None = None,
    ) -> ReminderRecord | None:
        with self._lock:
            row = self._reminders.get(reminder_id)
            if row is None:
                return None
            updated = ReminderRecord(
                **{
                    **row.__dict__,
                    "call_outcome": _annotated_outcome(
                        row.call_outcome, delivery_status=delivery_status, error_code=error_code
                    ),
                    "updated_at": _coerce_utc(now or _now_utc()),
                }
            )
            self._reminders[reminder_id] = updated
            return updated

    def record_run(self, run: SchedulerRunRecord) -> None:
        with self._lock:
            self._runs.append(run)

    def get_latest_run(self) -> SchedulerRunRecord | None:
        with self._lock:
            if not self._runs:
                return None
            return max(self._runs, key=lambda item: item.started_at)


class ReminderStoreBase(DeclarativeBase):
    pass


class _PaymentReminderRow(ReminderStoreBase):
    __tablename__ = "payment_reminders"

    reminder_id: Mapped[str] = mapped_column(String(64), primary_key=True)
    invoice_id: Mapped[str] = mapped_column(String(128), nullable=False, index=True)
    user_id: Mapped[str] = mapped_column(String(128), nullable=False, index=True)
    reminder_type: Mapped[str] = mapped_column(String(64), nullable=False)
    channel: Mapped[str] = mapped_column(String(16), nullable=False)
    scheduled_date: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, index=True)
    status: Mapped[str] = mapped_column(String(32), nullable=False, default="pending", index=True)
    attempt_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    last_attempt_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    external_id: Mapped[str | None] = mapped_column(String(256), nullable=True, index=True)
    call_outcome_json: Mapped[str | None] = mapped_column(Text, nullable=True)
    skip_reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    dispatch_phase: Mapped[str | None] = mapped_column(String(32), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)


class _SchedulerRunRow(ReminderStoreBase):
    __tablename__ = "reminder_scheduler_runs"

    run_id: Mapped[str] = mapped_column(String(64), primary_key=True)
    started_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, index=True)
    finished_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    processed: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    dispatched: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    deferred: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    failed: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    errors: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    timed_out: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    requeued: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    error_rate: Mapped[float] = mapped_column(Float, nullable=False, default=0.0)


def _record_from_row(row: _PaymentReminderRow) -> ReminderRecord:
    outcome = CallOutcome.model_validate_json(row.call_outcome_json) if row.call_outcome_json else None
    return ReminderRecord(
        reminder_id=row.reminder_id,
        invoice_id=row.invoice_id,
        user_id=row.user_id,
        reminder_type=row.reminder_type,
        channel=row.channel,
        scheduled_date=_coerce_utc(row.scheduled_date),
        status=row.status,  # type: ignore[arg-type]
        attempt_count=row.attempt_count,
        last_attempt_at=_optional_utc(row.last_attempt_at),
        external_id=row.external_id,
        call_outcome=outcome,
        skip_reason=row.skip_reason,
        dispatch_phase=row.dispatch_phase,
        created_at=_coerce_utc(row.created_at),
        updated_at=_coerce_utc(row.updated_at),
    )


def _row_values(updates: dict[str, object]) -> dict[str, object]:
    values = dict(updates)
    if "call_outcome" in values:
        outcome = values.pop("call_outcome")
        values["call_outcome_json"] = outcome.model_dump_json() if isinstance(outcome, CallOutcome) else None
    return values


class SqlAlchemyReminderRepository:
    def __init__(self, database_url: str) -> None:
        if not database_url:
            raise RuntimeError("DATABASE_URL is required for REMINDER_STORE_BACKEND=postgres")
        self._engine = create_engine(database_url, future=True, pool_pre_ping=True)
        self._session_factory = sessionmaker(self._engine, expire_on_commit=False, future=True)
        if database_url.startswith("sqlite"):
            ReminderStoreBase.metadata.create_all(self._engine)

    def _session(self):
        return self._session_factory()

    def reset(self) -> None:
        with self._session() as session:
            with session.begin():
                session.query(_PaymentReminderRow).delete()
                session.query(_SchedulerRunRow).delete()

    def create_reminder(
        self,
        *,
        invoice_id: str,
        user_id: str,
        reminder_type: str,
        channel: str,
        scheduled_date: datetime,
        now: datetime | None = None,
    ) -> ReminderRecord:
        created_at = _coerce_utc(now or _now_utc())
        row = _PaymentReminderRow(
            reminder_id=f"rem_{secrets.token_hex(8)}",
            invoice_id=invoice_id,
            user_id=user_id,
            reminder_type=reminder_type,
            channel=channel,
            scheduled_date=_coerce_utc(scheduled_date),
            status="pending",
            attempt_count=0,
            created_at=created_at,
            updated_at=created_at,
        )
        with self._session() as session:
            with session.begin():
                session.add(row)
            return _record_from_row(row)

    def get_reminder(self, reminder_id: str) -> ReminderRecord | None:
        with self._session() as session:
            row = session.get(_PaymentReminderRow, reminder_id)
            return _record_from_row(row) if row is not None else None

    def find_by_external_id(self, external_id: str) -> ReminderRecord | None:
        with self._session() as session:
            row = session.execute(
                select(_PaymentReminderRow)
                .where(_PaymentReminderRow.external_id == external_id)
                .order_by(_PaymentReminderRow.updated_at.desc())
                .limit(1)
            ).scalar_one_or_none()
            return _record_from_row(row) if row is not None else None

    def list_due(self, *, cutoff: datetime, limit: int) -> list[ReminderRecord]:
        with self._session() as session:
            rows = session.execute(
                select(_PaymentReminderRow)
                .where(
                    _PaymentReminderRow.status == "pending",
                    _PaymentReminderRow.scheduled_date <= _coerce_utc(cutoff),
                )
                .order_by(
                    _PaymentReminderRow.scheduled_date.asc(),
                    _PaymentReminderRow.created_at.asc(),
                    _PaymentReminderRow.reminder_id.asc(),
                )
                .limit(limit)
            ).scalars()
            return [_record_from_row(row) for row in rows]

    def list_for_invoice(self, invoice_id: str) -> list[ReminderRecord]:
        with self._session() as session:
            rows = session.execute(
                select(_PaymentReminderRow)
                .where(_PaymentReminderRow.invoice_id == invoice_id)
                .order_by(
                    _PaymentReminderRow.scheduled_date.asc(),
                    _PaymentReminderRow.created_at.asc(),
                    _PaymentReminderRow.reminder_id.asc(),
                )
            ).scalars()
            return [_record_from_row(row) for row in rows]

    def list_stale(self, *, status: ReminderStatus, updated_before: datetime) -> list[ReminderRecord]:
        with self._session() as session:
            rows = session.execute(
                select(_PaymentReminderRow)
                .where(
                    _PaymentReminderRow.status == status,
                    _PaymentReminderRow.updated_at < _coerce_utc(updated_before),
                )
                .order_by(_PaymentReminderRow.updated_at.asc(), _PaymentReminderRow.reminder_id.asc())
            ).scalars()
            return [_record_from_row(row) for row in rows]

    def transition(
        self,
        reminder_id: str,
        *,
        expected: ReminderStatus | Iterable[ReminderStatus],
        target: ReminderStatus,
        changes: Mapping[str, object] | None = None,
        increment_attempts: bool = False,
        now: datetime | None = None,
    ) -> ReminderRecord | None:
        sources = _status_set(expected)
        for source in sources:
            ensure_transition(source, target)
        values = _row_values(_validate_changes(changes))
        values["status"] = target
        values["updated_at"] = _coerce_utc(now or _now_utc())
        if increment_attempts:
            values["attempt_count"] = _PaymentReminderRow.attempt_count + 1

        with self._session() as session:
            with session.begin():
                result = session.execute(
                    update(_PaymentReminderRow)
                    .where(
                        _PaymentReminderRow.reminder_id == reminder_id,
                        _PaymentReminderRow.status.in_(sorted(sources)),
                    )
                    .values(**values)
                    .execution_options(synchronize_session=False)
                )
                row = session.get(_PaymentReminderRow, reminder_id, populate_existing=True)
                if row is None:
                    raise ReminderNotFoundError(reminder_id)
                if result.rowcount == 0:
                    return None
                return _record_from_row(row)

    def cancel_pending_for_invoice(
        self,
        invoice_id: str,
        *,
        reason: str,
        exclude_ids: Iterable[str] = (),
        now: datetime | None = None,
    ) -> list[str]:
        excluded = set(exclude_ids)
        updated_at = _coerce_utc(now or _now_utc())
        with self._session() as session:
            with session.begin():
                rows = session.execute(
                    select(_PaymentReminderRow)
                    .where(
                        _PaymentReminderRow.invoice_id == invoice_id,
                        _PaymentReminderRow.status == "pending",
                    )
                    .with_for_update()
                ).scalars().all()
                cancelled: list[str] = []
                for row in rows:
                    if row.reminder_id in excluded:
                        continue
                    row.status = "skipped"
                    row.skip_reason = reason
                    row.updated_at = updated_at
                    cancelled.append(row.reminder_id)
        return sorted(cancelled)

    def record_heartbeat(self, reminder_id: str, *, now: datetime | None = None) -> bool:
        with self._session() as session:
            with session.begin():
                result = session.execute(
                    update(_PaymentReminderRow)
                    .where(
                        _PaymentReminderRow.reminder_id == reminder_id,
                        _PaymentReminderRow.status == "in_progress",
                    )
                    .values(updated_at=_coerce_utc(now or _now_utc()))
                    .execution_options(synchronize_session=False)
                )
                return result.rowcount > 0

    def annotate_delivery(
        self,
        reminder_id: str,
        *,
        delivery_status: SmsDeliveryStatus,
        error_code: str | None,
        now: datetime | None = None,
    ) -> ReminderRecord | None:
        with self._session() as session:
            with session.begin():
                row = session.execute(
                    select(_PaymentReminderRow)
                    .where(_PaymentReminderRow.reminder_id == reminder_id)
                    .with_for_update()
                ).scalar_one_or_none()
                if row is None:
                    return None
                existing = CallOutcome.model_validate_json(row.call_outcome_json) if row.call_outcome_json else None
                row.call_outcome_json = _annotated_outcome(
                    existing, delivery_status=delivery_status, error_code=error_code
                ).model_dump_json()
                row.updated_at = _coerce_utc(now or _now_utc())
                session.flush()
                return _record_from_row(row)

    def record_run(self, run: SchedulerRunRecord) -> None:
        with self._session() as session:
            with session.begin():
                session.add(_SchedulerRunRow(**run.__dict__))

    def get_latest_run(self) -> SchedulerRunRecord | None:
        with self._session() as session:
            row = session.execute(
                select(_SchedulerRunRow).order_by(_SchedulerRunRow.started_at.desc()).limit(1)
            ).scalar_one_or_none()
            if row is None:
                return None
            return SchedulerRunRecord(
                run_id=row.run_id,
                started_at=_coerce_utc(row.started_at),
                finished_at=_coerce_utc(row.finished_at),
                processed=row.processed,
                dispatched=row.dispatched,
                deferred=row.deferred,
                failed=row.failed,
                errors=row.errors,
                timed_out=row.timed_out,
                requeued=row.requeued,
                error_rate=row.error_rate,
            )


def create_reminder_repository(*, backend: str, database_url: str) -> ReminderRepository:
    normalized = backend.strip().lower()
    if normalized == "postgres":
        return SqlAlchemyReminderRepository(database_url)
    return InMemoryReminderRepository()
