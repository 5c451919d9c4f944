from __future__ import annotations

import calendar
import secrets
from dataclasses import dataclass
from datetime import datetime, timezone
from threading import Lock
from typing import Protocol

from sqlalchemy import DateTime, Float, ForeignKey, String, create_engine, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, sessionmaker

from .date_math import coerce_utc
from .models import SubscriptionCreateRequest, SubscriptionRecord


class SubscriptionNotFoundError(KeyError):
    """Raised when an operation references a subscription id that does not exist."""


class UserNotFoundError(KeyError):
    """Raised when an operation references a user id that does not exist."""


def _now_utc() -> datetime:
    return datetime.now(timezone.utc)


def _add_months(value: datetime, months: int) -> datetime:
    month_index = value.month - 1 + months
    year = value.year + month_index // 12
    month = month_index % 12 + 1
    day = min(value.day, calendar.monthrange(year, month)[1])
    return value.replace(year=year, month=month, day=day)


def default_renewal_date(start_date: datetime, frequency: str) -> datetime:
    if frequency == "yearly":
        return _add_months(start_date, 12)
    return _add_months(start_date, 1)


@dataclass(frozen=True)
class UserRecord:
    user_id: str
    username: str
    email: str
    created_at: datetime


@dataclass(frozen=True)
class Subscription:
    subscription_id: str
    user_id: str
    name: str
    price: float
    currency: str
    frequency: str
    category: str
    payment_method: str
    status: str
    start_date: datetime
    renewal_date: datetime
    created_at: datetime
    updated_at: datetime
    owner_email: str
    owner_username: str

    @property
    def is_active(self) -> bool:
        return self.status == "active"

    def to_record(self) -> SubscriptionRecord:
        return SubscriptionRecord(
            subscription_id=self.subscription_id,
            user_id=self.user_id,
            name=self.name,
            price=self.price,
            currency=self.currency,  # type: ignore[arg-type]
            frequency=self.frequency,  # type: ignore[arg-type]
            category=self.category,  # type: ignore[arg-type]
            payment_method=self.payment_method,  # type: ignore[arg-type]
            status=self.status,  # type: ignore[arg-type]
            start_date=self.start_date,
            renewal_date=self.renewal_date,
            created_at=self.created_at,
            updated_at=self.updated_at,
        )


class SubscriptionRepository(Protocol):
    def reset(self) -> None: ...

    def create_user(self, username: str, email: str) -> UserRecord: ...

    def get_user(self, user_id: str) -> UserRecord | None: ...

    def create_subscription(
        self,
        user_id: str,
        payload: SubscriptionCreateRequest,
        *,
        now: datetime | None = None,
    ) -> Subscription: ...

    def get_subscription(self, subscription_id: str) -> Subscription | None: ...

    def list_user_subscriptions(self, user_id: str) -> list[Subscription]: ...

    def list_due_subscriptions(self, window_start: datetime, window_end: datetime) -> list[Subscription]: ...

    def update_status(self, subscription_id: str, status: str) -> Subscription: ...

    def delete_subscription(self, subscription_id: str) -> bool: ...


@dataclass
class _SubscriptionRow:
    subscription_id: str
    user_id: str
    name: str
    price: float
    currency: str
    frequency: str
    category: str
    payment_method: str
    status: str
    start_date: datetime
    renewal_date: datetime
    created_at: datetime
    updated_at: datetime


class InMemorySubscriptionRepository:
    """Deterministic in-memory storage with incremental ids."""

    def __init__(self) -> None:
        self._lock = Lock()
        self._user_counter = 1
        self._subscription_counter = 1
        self._users: dict[str, UserRecord] = {}
        self._subscriptions: dict[str, _SubscriptionRow] = {}

    def reset(self) -> None:
        with self._lock:
            self._user_counter = 1
            self._subscription_counter = 1
            self._users.clear()
            self._subscriptions.clear()

    def create_user(self, username: str, email: str) -> UserRecord:
        with self._lock:
            normalized_email = email.strip().lower()
            for existing in self._users.values():
                if existing.username == username or existing.email == normalized_email:
                    raise ValueError("username or email already registered")
            user_id = f"usr_{self._user_counter:06d}"
            self._user_counter += 1
            record = UserRecord(
                user_id=user_id,
                username=username,
                email=normalized_email,
                created_at=_now_utc(),
            )
            self._users[user_id] = record
            return record

    def get_user(self, user_id: str) -> UserRecord | None:
        return self._users.get(user_id)

    def create_subscription(
        self,
        user_id: str,
        payload: SubscriptionCreateRequest,
        *,
        now: datetime | None = None,
    ) -> Subscription:
        with self._lock:
            if user_id not in self._users:
                raise UserNotFoundError(user_id)
            created_at = now or _now_utc()
            subscription_id = f"sub_{self._subscription_counter:06d}"
            self._subscription_counter += 1
            start_date = coerce_utc(payload.start_date)
            renewal_date = (
                coerce_utc(payload.renewal_date)
                if payload.renewal_date is not None
                else default_renewal_date(start_date, payload.frequency)
            )
            row = _SubscriptionRow(
                subscription_id=subscription_id,
                user_id=user_id,
                name=payload.name,
                price=payload.price,
                currency=payload.currency,
                frequency=payload.frequency,
                category=payload.category,
                payment_method=payload.payment_method,
                status="active",
                start_date=start_date,
                renewal_date=renewal_date,
                created_at=created_at,
                updated_at=created_at,
            )
            self._subscriptions[subscription_id] = row
            return self._to_subscription(row)

    def get_subscription(self, subscription_id: str) -> Subscription | None:
        row = self._subscriptions.get(subscription_id)
        if row is None:
            return None
        return self._to_subscription(row)

    def list_user_subscriptions(self, user_id: str) -> list[Subscription]:
        rows = [row for row in self._subscriptions.values() if row.user_id == user_id]
        rows.sort(key=lambda row: (row.created_at, row.subscription_id))
        return [self._to_subscription(row) for row in rows]

    def list_due_subscriptions(self, window_start: datetime, window_end: datetime) -> list[Subscription]:
        start = coerce_utc(window_start)
        end = coerce_utc(window_end)
        rows = [
            row
            for row in self._subscriptions.values()
            if row.status == "active" and start <= row.renewal_date <= end
        ]
        rows.sort(key=lambda row: (row.renewal_date, row.subscription_id))
        return [self._to_subscription(row) for row in rows]

    def update_status(self, subscription_id: str, status: str) -> Subscription:
        with self._lock:
            row = self._subscriptions.get(subscription_id)
            if row is None:
                raise SubscriptionNotFoundError(subscription_id)
            row.status = status
            row.updated_at = _now_utc()
            return self._to_subscription(row)

    def delete_subscription(self, subscription_id: str) -> bool:
        with self._lock:
            return self._subscriptions.pop(subscription_id, None) is not None

    def _to_subscription(self, row: _SubscriptionRow) -> Subscription:
        owner = self._users[row.user_id]
        return Subscription(
            subscription_id=row.subscription_id,
            user_id=row.user_id,
            name=row.name,
            price=row.price,
            currency=row.currency,
            frequency=row.frequency,
            category=row.category,
            payment_method=row.payment_method,
            status=row.status,
            start_date=row.start_date,
            renewal_date=row.renewal_date,
            created_at=row.created_at,
            updated_at=row.updated_at,
            owner_email=owner.email,
            owner_username=owner.username,
        )


class SubscriptionsBase(DeclarativeBase):
    pass


class _UserRow(SubscriptionsBase):
    __tablename__ = "users"

    user_id: Mapped[str] = mapped_column(String(64), primary_key=True)
    username: Mapped[str] = mapped_column(String(64), nullable=False, unique=True)
    email: Mapped[str] = mapped_column(String(256), nullable=False, unique=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)


class _SubscriptionTableRow(SubscriptionsBase):
    __tablename__ = "subscriptions"

    subscription_id: Mapped[str] = mapped_column(String(64), primary_key=True)
    user_id: Mapped[str] = mapped_column(String(64), ForeignKey("users.user_id"), nullable=False, index=True)
    name: Mapped[str] = mapped_column(String(50), nullable=False)
    price: Mapped[float] = mapped_column(Float, nullable=False)
    currency: Mapped[str] = mapped_column(String(8), nullable=False, default="USD")
    frequency: Mapped[str] = mapped_column(String(16), nullable=False)
    category: Mapped[str] = mapped_column(String(32), nullable=False, default="other")
    payment_method: Mapped[str] = mapped_column(String(32), nullable=False, default="other")
    status: Mapped[str] = mapped_column(String(16), nullable=False, default="active", index=True)
    start_date: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    renewal_date: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, index=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)


class SqlAlchemySubscriptionRepository:
    def __init__(self, database_url: str) -> None:
        if not database_url:
            raise RuntimeError("DATABASE_URL is required for SUBSCRIPTION_STORE_BACKEND=postgres")
        self._engine = create_engine(database_url, future=True, pool_pre_ping=True)
        self._session_factory = sessionmaker(self._engine, expire_on_commit=False, future=True)
        if database_url.startswith("sqlite"):
            SubscriptionsBase.metadata.create_all(self._engine)

    def _session(self):
        return self._session_factory()

    def reset(self) -> None:
        with self._session() as session:
            with session.begin():
                session.query(_SubscriptionTableRow).delete()
                session.query(_UserRow).delete()

    def create_user(self, username: str, email: str) -> UserRecord:
        record = UserRecord(
            user_id=f"usr_{secrets.token_hex(8)}",
            username=username,
            email=email.strip().lower(),
            created_at=_now_utc(),
        )
        try:
            with self._session() as session:
                with session.begin():
                    session.add(
                        _UserRow(
                            user_id=record.user_id,
                            username=record.username,
                            email=record.email,
                            created_at=record.created_at,
                        )
                    )
        except IntegrityError as exc:
            raise ValueError("username or email already registered") from exc
        return record

    def get_user(self, user_id: str) -> UserRecord | None:
        with self._session() as session:
            row = session.get(_UserRow, user_id)
            if row is None:
                return None
            return UserRecord(
                user_id=row.user_id,
                username=row.username,
                email=row.email,
                created_at=coerce_utc(row.created_at),
            )

    def create_subscription(
        self,
        user_id: str,
        payload: SubscriptionCreateRequest,
        *,
        now: datetime | None = None,
    ) -> Subscription:
        created_at = now or _now_utc()
        start_date = coerce_utc(payload.start_date)
        renewal_date = (
            coerce_utc(payload.renewal_date)
            if payload.renewal_date is not None
            else default_renewal_date(start_date, payload.frequency)
        )
        subscription_id = f"sub_{secrets.token_hex(8)}"
        with self._session() as session:
            with session.begin():
                owner = session.get(_UserRow, user_id)
                if owner is None:
                    raise UserNotFoundError(user_id)
                row = _SubscriptionTableRow(
                    subscription_id=subscription_id,
                    user_id=user_id,
                    name=payload.name,
                    price=payload.price,
                    currency=payload.currency,
                    frequency=payload.frequency,
                    category=payload.category,
                    payment_method=payload.payment_method,
                    status="active",
                    start_date=start_date,
                    renewal_date=renewal_date,
                    created_at=created_at,
                    updated_at=created_at,
                )
                session.add(row)
                return self._to_subscription(row, owner)

    def get_subscription(self, subscription_id: str) -> Subscription | None:
        with self._session() as session:
            result = session.execute(
                select(_SubscriptionTableRow, _UserRow)
                .join(_UserRow, _UserRow.user_id == _SubscriptionTableRow.user_id)
                .where(_SubscriptionTableRow.subscription_id == subscription_id)
            ).first()
            if result is None:
                return None
            row, owner = result
            return self._to_subscription(row, owner)

    def list_user_subscriptions(self, user_id: str) -> list[Subscription]:
        with self._session() as session:
            rows = session.execute(
                select(_SubscriptionTableRow, _UserRow)
                .join(_UserRow, _UserRow.user_id == _SubscriptionTableRow.user_id)
                .where(_SubscriptionTableRow.user_id == user_id)
                .order_by(_SubscriptionTableRow.created_at.asc(), _SubscriptionTableRow.subscription_id.asc())
            ).all()
            return [self._to_subscription(row, owner) for row, owner in rows]

    def list_due_subscriptions(self, window_start: datetime, window_end: datetime) -> list[Subscription]:
        with self._session() as session:
            rows = session.execute(
                select(_SubscriptionTableRow, _UserRow)
                .join(_UserRow, _UserRow.user_id == _SubscriptionTableRow.user_id)
                .where(_SubscriptionTableRow.status == "active")
                .where(_SubscriptionTableRow.renewal_date >= coerce_utc(window_start))
                .where(_SubscriptionTableRow.renewal_date <= coerce_utc(window_end))
                .order_by(_SubscriptionTableRow.renewal_date.asc(), _SubscriptionTableRow.subscription_id.asc())
            ).all()
            return [self._to_subscription(row, owner) for row, owner in rows]

    def update_status(self, subscription_id: str, status: str) -> Subscription:
        with self._session() as session:
            with session.begin():
                row = session.get(_SubscriptionTableRow, subscription_id)
                if row is None:
                    raise SubscriptionNotFoundError(subscription_id)
                row.status = status
                row.updated_at = _now_utc()
                owner = session.get(_UserRow, row.user_id)
                return self._to_subscription(row, owner)

    def delete_subscription(self, subscription_id: str) -> bool:
        with self._session() as session:
            with session.begin():
                row = session.get(_SubscriptionTableRow, subscription_id)
                if row is None:
                    return False
                session.delete(row)
                return True

    def _to_subscription(self, row: _SubscriptionTableRow, owner: _UserRow | None) -> Subscription:
        return Subscription(
            subscription_id=row.subscription_id,
            user_id=row.user_id,
            name=row.name,
            price=row.price,
            currency=row.currency,
            frequency=row.frequency,
            category=row.category,
            payment_method=row.payment_method,
            status=row.status,
            start_date=coerce_utc(row.start_date),
            renewal_date=coerce_utc(row.renewal_date),
            created_at=coerce_utc(row.created_at),
            updated_at=coerce_utc(row.updated_at),
            owner_email=owner.email if owner is not None else "",
            owner_username=owner.username if owner is not None else "",
        )


def create_subscription_repository(*, backend: str, database_url: str) -> SubscriptionRepository:
    normalized = backend.strip().lower()
    if normalized == "postgres":
        return SqlAlchemySubscriptionRepository(database_url)
    if normalized == "inmemory":
        return InMemorySubscriptionRepository()
    raise RuntimeError(f"unsupported SUBSCRIPTION_STORE_BACKEND: {backend}")

