from __future__ import annotations

import json
from dataclasses import dataclass, field
from datetime import date, datetime, time, timezone
from threading import Lock
from typing import Protocol

from sqlalchemy import Boolean, Date, DateTime, Float, Integer, String, Text, create_engine, select
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, sessionmaker

from .models import Channel, ReminderSettingsInput, parse_channel, parse_clock_time

DEFAULT_COMPANY_NAME = "Your Company"
DEFAULT_SUPPORT_PHONE = "1-800-555-0100"
DEFAULT_PAYMENT_METHODS: tuple[str, ...] = ("online payment portal", "bank transfer", "check")


def _now_utc() -> datetime:
    return datetime.now(timezone.utc)


def _coerce_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


@dataclass(frozen=True)
class InvoiceRecord:
    invoice_id: str
    user_id: str
    customer_id: str | None
    invoice_number: str | None
    amount_total: float
    balance: float
    currency: str
    due_date: date
    status: str
    last_modified_at: datetime | None = None


@dataclass(frozen=True)
class CustomerRecord:
    customer_id: str
    user_id: str
    name: str | None
    primary_phone: str | None
    email: str | None = None


@dataclass(frozen=True)
class ReminderSettingsRecord:
    user_id: str
    smart_mode: bool = True
    manual_channel: Channel = "voice"
    timezone: str = "UTC"
    call_start_time: time = time(9, 0)
    call_end_time: time = time(18, 0)
    # 0 = Sunday ... 6 = Saturday
    call_days_of_week: tuple[int, ...] = (1, 2, 3, 4, 5)
    max_retry_attempts: int = 3
    retry_delay_hours: int = 2
    language: str = "en"
    voice_gender: str = "female"
    standard_offsets_enabled: bool = True
    custom_reminder_days: tuple[int, ...] = ()

    @classmethod
    def from_input(cls, user_id: str, payload: ReminderSettingsInput) -> ReminderSettingsRecord:
        return cls(
            user_id=user_id,
            smart_mode=payload.smart_mode,
            manual_channel=payload.manual_channel,
            timezone=payload.timezone,
            call_start_time=parse_clock_time(payload.call_start_time),
            call_end_time=parse_clock_time(payload.call_end_time),
            call_days_of_week=tuple(payload.call_days_of_week),
            max_retry_attempts=payload.max_retry_attempts,
            retry_delay_hours=payload.retry_delay_hours,
            language=payload.language,
            voice_gender=payload.voice_gender,
            standard_offsets_enabled=payload.standard_offsets_enabled,
            custom_reminder_days=tuple(payload.custom_reminder_days),
        )


@dataclass(frozen=True)
class BusinessProfileRecord:
    user_id: str
    company_name: str = DEFAULT_COMPANY_NAME
    business_description: str | None = None
    industry: str | None = None
    support_phone: str = DEFAULT_SUPPORT_PHONE
    support_email: str | None = None
    preferred_payment_methods: tuple[str, ...] = field(default=DEFAULT_PAYMENT_METHODS)


class ReferenceDataRepository(Protocol):
    """Invoice/customer cache plus per-user settings and business profile.

    Owned by the sync and configuration collaborators; the engine only
    writes through ``refresh_invoice_status``.
    """

    def reset(self) -> None: ...

    def upsert_invoice(self, record: InvoiceRecord) -> None: ...

    def upsert_customer(self, record: CustomerRecord) -> None: ...

    def upsert_settings(self, record: ReminderSettingsRecord) -> None: ...

    def upsert_business_profile(self, record: BusinessProfileRecord) -> None: ...

    def get_invoice(self, invoice_id: str) -> InvoiceRecord | None: ...

    def get_customer(self, customer_id: str) -> CustomerRecord | None: ...

    def get_settings(self, user_id: str) -> ReminderSettingsRecord: ...

    def get_business_profile(self, user_id: str) -> BusinessProfileRecord: ...

    def refresh_invoice_status(
        self,
        invoice_id: str,
        *,
        status: str,
        balance: float,
        last_modified_at: datetime | None,
    ) -> None: ...


class InMemoryReferenceDataRepository:
    def __init__(self) -> None:
        self._lock = Lock()
        self._invoices: dict[str, InvoiceRecord] = {}
        self._customers: dict[str, CustomerRecord] = {}
        self._settings: dict[str, ReminderSettingsRecord] = {}
        self._profiles: dict[str, BusinessProfileRecord] = {}

    def reset(self) -> None:
        with self._lock:
            self._invoices.clear()
            self._customers.clear()
            self._settings.clear()
            self._profiles.clear()

    def upsert_invoice(self, record: InvoiceRecord) -> None:
        with self._lock:
            self._invoices[record.invoice_id] = record

    def upsert_customer(self, record: CustomerRecord) -> None:
        with self._lock:
            self._customers[record.customer_id] = record

    def upsert_settings(self, record: ReminderSettingsRecord) -> None:
        with self._lock:
            self._settings[record.user_id] = record

    def upsert_business_profile(self, record: BusinessProfileRecord) -> None:
        with self._lock:
            self._profiles[record.user_id] = record

    def get_invoice(self, invoice_id: str) -> InvoiceRecord | None:
        with self._lock:
            return self._invoices.get(invoice_id)

    def get_customer(self, customer_id: str) -> CustomerRecord | None:
        with self._lock:
            return self._customers.get(customer_id)

    def get_settings(self, user_id: str) -> ReminderSettingsRecord:
        with self._lock:
            return self._settings.get(user_id) or ReminderSettingsRecord(user_id=user_id)

    def get_business_profile(self, user_id: str) -> BusinessProfileRecord:
        with self._lock:
            return self._profiles.get(user_id) or BusinessProfileRecord(user_id=user_id)

    def refresh_invoice_status(
        self,
        invoice_id: str,
        *,
        status: str,
        balance: float,
        last_modified_at: datetime | None,
    ) -> None:
        with self._lock:
            row = self._invoices.get(invoice_id)
            if row is None:
                return
            self._invoices[invoice_id] = InvoiceRecord(
                **{
                    **row.__dict__,
                    "status": status,
                    "balance": balance,
                    "last_modified_at": last_modified_at or row.last_modified_at,
                }
            )


class ReferenceDataBase(DeclarativeBase):
    pass


class _InvoiceCacheRow(ReferenceDataBase):
    __tablename__ = "invoices_cache"

    invoice_id: Mapped[str] = mapped_column(String(128), primary_key=True)
    user_id: Mapped[str] = mapped_column(String(128), nullable=False, index=True)
    customer_id: Mapped[str | None] = mapped_column(String(128), nullable=True)
    invoice_number: Mapped[str | None] = mapped_column(String(128), nullable=True)
    amount_total: Mapped[float] = mapped_column(Float, nullable=False, default=0.0)
    balance: Mapped[float] = mapped_column(Float, nullable=False, default=0.0)
    currency: Mapped[str] = mapped_column(String(8), nullable=False, default="USD")
    due_date: Mapped[date] = mapped_column(Date, nullable=False)
    status: Mapped[str] = mapped_column(String(32), nullable=False)
    last_modified_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)


class _CustomerCacheRow(ReferenceDataBase):
    __tablename__ = "customers_cache"

    customer_id: Mapped[str] = mapped_column(String(128), primary_key=True)
    user_id: Mapped[str] = mapped_column(String(128), nullable=False, index=True)
    name: Mapped[str | None] = mapped_column(String(256), nullable=True)
    primary_phone: Mapped[str | None] = mapped_column(String(64), nullable=True)
    email: Mapped[str | None] = mapped_column(String(256), nullable=True)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)


class _ReminderSettingsRow(ReferenceDataBase):
    __tablename__ = "reminder_settings"

    user_id: Mapped[str] = mapped_column(String(128), primary_key=True)
    smart_mode: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    manual_channel: Mapped[str] = mapped_column(String(16), nullable=False, default="voice")
    timezone: Mapped[str] = mapped_column(String(64), nullable=False, default="UTC")
    call_start_time: Mapped[str] = mapped_column(String(8), nullable=False, default="09:00:00")
    call_end_time: Mapped[str] = mapped_column(String(8), nullable=False, default="18:00:00")
    call_days_of_week_json: Mapped[str] = mapped_column(Text, nullable=False, default="[1,2,3,4,5]")
    max_retry_attempts: Mapped[int] = mapped_column(Integer, nullable=False, default=3)
    retry_delay_hours: Mapped[int] = mapped_column(Integer, nullable=False, default=2)
    language: Mapped[str] = mapped_column(String(16), nullable=False, default="en")
    voice_gender: Mapped[str] = mapped_column(String(16), nullable=False, default="female")
    standard_offsets_enabled: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    custom_reminder_days_json: Mapped[str] = mapped_column(Text, nullable=False, default="[]")
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)


class _BusinessProfileRow(ReferenceDataBase):
    __tablename__ = "business_profiles"

    user_id: Mapped[str] = mapped_column(String(128), primary_key=True)
    company_name: Mapped[str] = mapped_column(String(256), nullable=False)
    business_description: Mapped[str | None] = mapped_column(Text, nullable=True)
    industry: Mapped[str | None] = mapped_column(String(128), nullable=True)
    support_phone: Mapped[str] = mapped_column(String(64), nullable=False)
    support_email: Mapped[str | None] = mapped_column(String(256), nullable=True)
    preferred_payment_methods_json: Mapped[str] = mapped_column(Text, nullable=False, default="[]")
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)


def _settings_from_row(row: _ReminderSettingsRow) -> ReminderSettingsRecord:
    return ReminderSettingsRecord(
        user_id=row.user_id,
        smart_mode=row.smart_mode,
        manual_channel=parse_channel(row.manual_channel),
        timezone=row.timezone,
        call_start_time=parse_clock_time(row.call_start_time),
        call_end_time=parse_clock_time(row.call_end_time),
        call_days_of_week=tuple(int(day) for day in json.loads(row.call_days_of_week_json)),
        max_retry_attempts=row.max_retry_attempts,
        retry_delay_hours=row.retry_delay_hours,
        language=row.language,
        voice_gender=row.voice_gender,
        standard_offsets_enabled=row.standard_offsets_enabled,
        custom_reminder_days=tuple(int(day) for day in json.loads(row.custom_reminder_days_json)),
    )


class SqlAlchemyReferenceDataRepository:
    def __init__(self, database_url: str) -> None:
        if not database_url:
            raise RuntimeError("DATABASE_URL is required for REMINDER_STORE_BACKEND=postgres")
        self._engine = create_engine(database_url, future=True, pool_pre_ping=True)
        self._session_factory = sessionmaker(self._engine, expire_on_commit=False, future=True)
        if database_url.startswith("sqlite"):
            ReferenceDataBase.metadata.create_all(self._engine)

    def _session(self):
        return self._session_factory()

    def reset(self) -> None:
        with self._session() as session:
            with session.begin():
                session.query(_InvoiceCacheRow).delete()
                session.query(_CustomerCacheRow).delete()
                session.query(_ReminderSettingsRow).delete()
                session.query(_BusinessProfileRow).delete()

    def upsert_invoice(self, record: InvoiceRecord) -> None:
        with self._session() as session:
            with session.begin():
                row = session.get(_InvoiceCacheRow, record.invoice_id)
                if row is None:
                    row = _InvoiceCacheRow(invoice_id=record.invoice_id)
                    session.add(row)
                row.user_id = record.user_id
                row.customer_id = record.customer_id
                row.invoice_number = record.invoice_number
                row.amount_total = record.amount_total
                row.balance = record.balance
                row.currency = record.currency
                row.due_date = record.due_date
                row.status = record.status
                row.last_modified_at = record.last_modified_at
                row.updated_at = _now_utc()

    def upsert_customer(self, record: CustomerRecord) -> None:
        with self._session() as session:
            with session.begin():
                row = session.get(_CustomerCacheRow, record.customer_id)
                if row is None:
                    row = _CustomerCacheRow(customer_id=record.customer_id)
                    session.add(row)
                row.user_id = record.user_id
                row.name = record.name
                row.primary_phone = record.primary_phone
                row.email = record.email
                row.updated_at = _now_utc()

    def upsert_settings(self, record: ReminderSettingsRecord) -> None:
        with self._session() as session:
            with session.begin():
                row = session.get(_ReminderSettingsRow, record.user_id)
                if row is None:
                    row = _ReminderSettingsRow(user_id=record.user_id)
                    session.add(row)
                row.smart_mode = record.smart_mode
                row.manual_channel = record.manual_channel
                row.timezone = record.timezone
                row.call_start_time = record.call_start_time.strftime("%H:%M:%S")
                row.call_end_time = record.call_end_time.strftime("%H:%M:%S")
                row.call_days_of_week_json = json.dumps(list(record.call_days_of_week))
                row.max_retry_attempts = record.max_retry_attempts
                row.retry_delay_hours = record.retry_delay_hours
                row.language = record.language
                row.voice_gender = record.voice_gender
                row.standard_offsets_enabled = record.standard_offsets_enabled
                row.custom_reminder_days_json = json.dumps(list(record.custom_reminder_days))
                row.updated_at = _now_utc()

    def upsert_business_profile(self, record: BusinessProfileRecord) -> None:
        with self._session() as session:
            with session.begin():
                row = session.get(_BusinessProfileRow, record.user_id)
                if row is None:
                    row = _BusinessProfileRow(user_id=record.user_id)
                    session.add(row)
                row.company_name = record.company_name
                row.business_description = record.business_description
                row.industry = record.industry
                row.support_phone = record.support_phone
                row.support_email = record.support_email
                row.preferred_payment_methods_json = json.dumps(list(record.preferred_payment_methods))
                row.updated_at = _now_utc()

    def get_invoice(self, invoice_id: str) -> InvoiceRecord | None:
        with self._session() as session:
            row = session.get(_InvoiceCacheRow, invoice_id)
            if row is None:
                return None
            return InvoiceRecord(
                invoice_id=row.invoice_id,
                user_id=row.user_id,
                customer_id=row.customer_id,
                invoice_number=row.invoice_number,
                amount_total=float(row.amount_total),
                balance=float(row.balance),
                currency=row.currency,
                due_date=row.due_date,
                status=row.status,
                last_modified_at=_coerce_utc(row.last_modified_at) if row.last_modified_at is not None else None,
            )

    def get_customer(self, customer_id: str) -> CustomerRecord | None:
        with self._session() as session:
            row = session.get(_CustomerCacheRow, customer_id)
            if row is None:
                return None
            return CustomerRecord(
                customer_id=row.customer_id,
                user_id=row.user_id,
                name=row.name,
                primary_phone=row.primary_phone,
                email=row.email,
            )

    def get_settings(self, user_id: str) -> ReminderSettingsRecord:
        with self._session() as session:
            row = session.get(_ReminderSettingsRow, user_id)
            if row is None:
                return ReminderSettingsRecord(user_id=user_id)
            return _settings_from_row(row)

    def get_business_profile(self, user_id: str) -> BusinessProfileRecord:
        with self._session() as session:
            row = session.get(_BusinessProfileRow, user_id)
            if row is None:
                return BusinessProfileRecord(user_id=user_id)
            methods = tuple(json.loads(row.preferred_payment_methods_json)) or DEFAULT_PAYMENT_METHODS
            return BusinessProfileRecord(
                user_id=row.user_id,
                company_name=row.company_name or DEFAULT_COMPANY_NAME,
                business_description=row.business_description,
                industry=row.industry,
                support_phone=row.support_phone or DEFAULT_SUPPORT_PHONE,
                support_email=row.support_email,
                preferred_payment_methods=methods,
            )

    def refresh_invoice_status(
        self,
        invoice_id: str,
        *,
        status: str,
        balance: float,
        last_modified_at: datetime | None,
    ) -> None:
        with self._session() as session:
            with session.begin():
                row = session.execute(
                    select(_InvoiceCacheRow).where(_InvoiceCacheRow.invoice_id == invoice_id).with_for_update()
                ).scalar_one_or_none()
                if row is None:
                    return
                row.status = status
                row.balance = balance
                if last_modified_at is not None:
                    row.last_modified_at = _coerce_utc(last_modified_at)
                row.updated_at = _now_utc()


def create_reference_data_repository(*, backend: str, database_url: str) -> ReferenceDataRepository:
    normalized = backend.strip().lower()
    if normalized == "postgres":
        return SqlAlchemyReferenceDataRepository(database_url)
    return InMemoryReferenceDataRepository()
