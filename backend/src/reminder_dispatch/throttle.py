from __future__ import annotations

from collections import deque
from datetime import datetime, timedelta, timezone
from threading import Lock
from typing import Protocol

from sqlalchemy import BigInteger, DateTime, Integer, String, create_engine, delete, func, select
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, sessionmaker


def _now_utc() -> datetime:
    return datetime.now(timezone.utc)


def _coerce_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def outbound_throttle_key(user_id: str) -> str:
    return f"outbound:{user_id}"


class OutboundThrottleRepository(Protocol):
    """Sliding-window counter of outbound sends shared by every scheduler process."""

    def reset(self) -> None: ...

    def try_acquire(self, key: str, *, limit: int, window_seconds: int, now: datetime | None = None) -> bool: ...

    def current_count(self, key: str, *, window_seconds: int, now: datetime | None = None) -> int: ...


class InMemoryOutboundThrottleRepository:
    def __init__(self) -> None:
        self._lock = Lock()
        self._events: dict[str, deque[datetime]] = {}

    def reset(self) -> None:
        with self._lock:
            self._events.clear()

    def _prune(self, key: str, cutoff: datetime) -> deque[datetime]:
        events = self._events.setdefault(key, deque())
        while events and events[0] <= cutoff:
            events.popleft()
        return events

    def try_acquire(self, key: str, *, limit: int, window_seconds: int, now: datetime | None = None) -> bool:
        current = _coerce_utc(now or _now_utc())
        with self._lock:
            events = self._prune(key, current - timedelta(seconds=window_seconds))
            if len(events) >= limit:
                return False
            events.append(current)
            return True

    def current_count(self, key: str, *, window_seconds: int, now: datetime | None = None) -> int:
        current = _coerce_utc(now or _now_utc())
        with self._lock:
            return len(self._prune(key, current - timedelta(seconds=window_seconds)))


class ThrottleBase(DeclarativeBase):
    pass


class _OutboundSendEventRow(ThrottleBase):
    __tablename__ = "outbound_send_events"

    # Integer on sqlite so the rowid alias autoincrements; BIGINT elsewhere.
    id: Mapped[int] = mapped_column(
        BigInteger().with_variant(Integer, "sqlite"), primary_key=True, autoincrement=True
    )
    throttle_key: Mapped[str] = mapped_column(String(160), nullable=False, index=True)
    sent_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, index=True)


class SqlAlchemyOutboundThrottleRepository:
    def __init__(self, database_url: str) -> None:
        if not database_url:
            raise RuntimeError("DATABASE_URL is required for REMINDER_STORE_BACKEND=postgres")
        self._engine = create_engine(database_url, future=True, pool_pre_ping=True)
        self._session_factory = sessionmaker(self._engine, expire_on_commit=False, future=True)
        self._lock = Lock()
        if database_url.startswith("sqlite"):
            ThrottleBase.metadata.create_all(self._engine)

    def _session(self):
        return self._session_factory()

    def reset(self) -> None:
        with self._session() as session:
            with session.begin():
                session.query(_OutboundSendEventRow).delete()

    def try_acquire(self, key: str, *, limit: int, window_seconds: int, now: datetime | None = None) -> bool:
        current = _coerce_utc(now or _now_utc())
        cutoff = current - timedelta(seconds=window_seconds)
        with self._lock, self._session() as session:
            with session.begin():
                # Count and insert must not interleave across workers sharing the key.
                if self._engine.dialect.name == "postgresql":
                    session.execute(select(func.pg_advisory_xact_lock(func.hashtext(key))))
                session.execute(
                    delete(_OutboundSendEventRow).where(
                        _OutboundSendEventRow.throttle_key == key,
                        _OutboundSendEventRow.sent_at <= cutoff,
                    )
                )
                sent = session.execute(
                    select(func.count())
                    .select_from(_OutboundSendEventRow)
                    .where(
                        _OutboundSendEventRow.throttle_key == key,
                        _OutboundSendEventRow.sent_at > cutoff,
                    )
                ).scalar_one()
                if int(sent) >= limit:
                    return False
                session.add(_OutboundSendEventRow(throttle_key=key, sent_at=current))
                return True

    def current_count(self, key: str, *, window_seconds: int, now: datetime | None = None) -> int:
        cutoff = _coerce_utc(now or _now_utc()) - timedelta(seconds=window_seconds)
        with self._session() as session:
            sent = session.execute(
                select(func.count())
                .select_from(_OutboundSendEventRow)
                .where(
                    _OutboundSendEventRow.throttle_key == key,
                    _OutboundSendEventRow.sent_at > cutoff,
                )
            ).scalar_one()
            return int(sent)


def create_outbound_throttle_repository(*, backend: str, database_url: str) -> OutboundThrottleRepository:
    normalized = backend.strip().lower()
    if normalized == "postgres":
        return SqlAlchemyOutboundThrottleRepository(database_url)
    return InMemoryOutboundThrottleRepository()
