"""Persistence and SQLModel definitions for the ledger engine."""
from __future__ import annotations

import json
import threading
from datetime import date, datetime
from typing import Callable, List, Optional, TypeVar

from sqlalchemy import UniqueConstraint
from sqlalchemy.engine import Engine
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.pool import StaticPool
from sqlmodel import Field, Session, SQLModel, create_engine, select

from ..clock import utcnow
from ..exceptions import LockTimeoutError, StorageError
from ..models import (
    Account,
    AllowanceConfig,
    BadgeGrant,
    Goal,
    InterestConfig,
    LedgerEntry,
    PointAward,
    PurchaseRequest,
    RequestStatus,
)
from ..money import from_cents, to_cents
from .base import Storage, UnitOfWork

T = TypeVar("T")


# ---------------------------------------------------------------------------
# Database models
# ---------------------------------------------------------------------------
class AccountRecord(SQLModel, table=True):
    account_id: str = Field(primary_key=True)
    family_id: str = Field(index=True)
    display_name: str
    balance_cents: int = 0
    total_earned_cents: int = 0
    total_spent_cents: int = 0
    level: int = 1
    points: int = 0
    streak_days: int = 0
    last_activity_date: Optional[date] = None
    is_frozen: bool = False
    metadata_json: str = "{}"
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)


class LedgerEntryRecord(SQLModel, table=True):
    id: Optional[int] = Field(default=None, primary_key=True)
    entry_id: str = Field(unique=True)
    account_id: str = Field(index=True)
    amount_cents: int
    type: str  # allowance|purchase|goal_deposit|goal_withdrawal|interest|manual_adjustment|request_approved
    description: str
    timestamp: datetime = Field(default_factory=utcnow, index=True)
    category: Optional[str] = None
    goal_id: Optional[str] = Field(default=None, index=True)
    request_id: Optional[str] = None
    actor_id: Optional[str] = None
    idempotency_key: Optional[str] = Field(default=None, unique=True)


class PurchaseRequestRecord(SQLModel, table=True):
    request_id: str = Field(primary_key=True)
    account_id: str = Field(index=True)
    amount_cents: int
    description: str
    category: Optional[str] = None
    status: str = "pending"  # pending|approved|rejected|cancelled
    created_at: datetime = Field(default_factory=utcnow)
    resolved_at: Optional[datetime] = None
    resolved_by: Optional[str] = None
    rejection_reason: Optional[str] = None
    entry_id: Optional[str] = None


class GoalRecord(SQLModel, table=True):
    goal_id: str = Field(primary_key=True)
    account_id: str = Field(index=True)
    title: str
    target_cents: int
    current_cents: int = 0
    category: Optional[str] = None
    is_active: bool = True
    is_completed: bool = False
    completed_at: Optional[datetime] = None
    fulfillment_status: Optional[str] = None  # pending|approved|rejected
    fulfillment_requested_at: Optional[datetime] = None
    fulfillment_resolved_at: Optional[datetime] = None
    fulfillment_resolved_by: Optional[str] = None
    created_at: datetime = Field(default_factory=utcnow)


class AllowanceConfigRecord(SQLModel, table=True):
    account_id: str = Field(primary_key=True)
    amount_cents: int
    frequency: str  # daily|weekly|biweekly|monthly
    next_payment_date: date
    day_of_month: Optional[int] = None
    day_of_week: Optional[int] = None
    is_active: bool = True
    last_paid_date: Optional[date] = None


class InterestConfigRecord(SQLModel, table=True):
    account_id: str = Field(primary_key=True)
    rate_bps: int
    minimum_balance_cents: int = 0
    compounding: str = "monthly"
    application_day: int = 1
    is_active: bool = True
    last_interest_date: Optional[date] = None


class BadgeGrantRecord(SQLModel, table=True):
    __table_args__ = (UniqueConstraint("account_id", "badge_key"),)

    id: Optional[int] = Field(default=None, primary_key=True)
    account_id: str = Field(index=True)
    badge_key: str
    granted_at: datetime = Field(default_factory=utcnow)


class PointAwardRecord(SQLModel, table=True):
    award_id: str = Field(primary_key=True)
    account_id: str = Field(index=True)
    points: int
    reason: str
    created_at: datetime = Field(default_factory=utcnow)


# ---------------------------------------------------------------------------
# Record <-> domain conversion
# ---------------------------------------------------------------------------
def _account_from_record(record: AccountRecord) -> Account:
    return Account(
        account_id=record.account_id,
        family_id=record.family_id,
        display_name=record.display_name,
        balance=from_cents(record.balance_cents),
        total_earned=from_cents(record.total_earned_cents),
        total_spent=from_cents(record.total_spent_cents),
        level=record.level,
        points=record.points,
        streak_days=record.streak_days,
        last_activity_date=record.last_activity_date,
        is_frozen=record.is_frozen,
        metadata=json.loads(record.metadata_json or "{}"),
        created_at=record.created_at,
        updated_at=record.updated_at,
    )


def _entry_from_record(record: LedgerEntryRecord) -> LedgerEntry:
    return LedgerEntry(
        account_id=record.account_id,
        amount=from_cents(record.amount_cents),
        type=record.type,
        description=record.description,
        timestamp=record.timestamp,
        category=record.category,
        goal_id=record.goal_id,
        request_id=record.request_id,
        actor_id=record.actor_id,
        idempotency_key=record.idempotency_key,
        entry_id=record.entry_id,
        sequence=record.id,
    )


def _request_from_record(record: PurchaseRequestRecord) -> PurchaseRequest:
    return PurchaseRequest(
        account_id=record.account_id,
        amount=from_cents(record.amount_cents),
        description=record.description,
        category=record.category,
        status=record.status,
        request_id=record.request_id,
        created_at=record.created_at,
        resolved_at=record.resolved_at,
        resolved_by=record.resolved_by,
        rejection_reason=record.rejection_reason,
        entry_id=record.entry_id,
    )


def _goal_from_record(record: GoalRecord) -> Goal:
    return Goal(
        account_id=record.account_id,
        title=record.title,
        target_amount=from_cents(record.target_cents),
        current_amount=from_cents(record.current_cents),
        category=record.category,
        goal_id=record.goal_id,
        is_active=record.is_active,
        is_completed=record.is_completed,
        completed_at=record.completed_at,
        fulfillment_status=record.fulfillment_status,
        fulfillment_requested_at=record.fulfillment_requested_at,
        fulfillment_resolved_at=record.fulfillment_resolved_at,
        fulfillment_resolved_by=record.fulfillment_resolved_by,
        created_at=record.created_at,
    )


def _allowance_from_record(record: AllowanceConfigRecord) -> AllowanceConfig:
    return AllowanceConfig(
        account_id=record.account_id,
        amount=from_cents(record.amount_cents),
        frequency=record.frequency,
        next_payment_date=record.next_payment_date,
        day_of_month=record.day_of_month,
        day_of_week=record.day_of_week,
        is_active=record.is_active,
        last_paid_date=record.last_paid_date,
    )


def _interest_from_record(record: InterestConfigRecord) -> InterestConfig:
    return InterestConfig(
        account_id=record.account_id,
        monthly_rate=from_cents(record.rate_bps),
        minimum_balance=from_cents(record.minimum_balance_cents),
        compounding=record.compounding,
        application_day=record.application_day,
        is_active=record.is_active,
        last_interest_date=record.last_interest_date,
    )


# ---------------------------------------------------------------------------
# Unit of work
# ---------------------------------------------------------------------------
class SQLModelUnitOfWork(UnitOfWork):
    """Wrap one SQLModel session; database errors surface as :class:`StorageError`."""

    def __init__(self, session: Session, *, release: Optional[Callable[[], None]] = None) -> None:
        super().__init__()
        self._session = session
        self._release = release

    def _run(self, operation: Callable[[], T]) -> T:
        try:
            return operation()
        except SQLAlchemyError as exc:
            raise StorageError(f"Database operation failed: {exc}") from exc

    def _merge(self, model: type[SQLModel], key: str, **values: object) -> None:
        def write() -> None:
            record = self._session.get(model, key)
            if record is None:
                self._session.add(model(**values))
                return
            for name, value in values.items():
                setattr(record, name, value)
            self._session.add(record)

        self._run(write)

    # ------------------------------------------------------------------
    # Accounts
    # ------------------------------------------------------------------
    def get_account(self, account_id: str) -> Optional[Account]:
        query = select(AccountRecord).where(AccountRecord.account_id == account_id).with_for_update()
        record = self._run(lambda: self._session.exec(query).first())
        return _account_from_record(record) if record else None

    def save_account(self, account: Account) -> None:
        self._merge(
            AccountRecord,
            account.account_id,
            account_id=account.account_id,
            family_id=account.family_id,
            display_name=account.display_name,
            balance_cents=to_cents(account.balance),
            total_earned_cents=to_cents(account.total_earned),
            total_spent_cents=to_cents(account.total_spent),
            level=account.level,
            points=account.points,
            streak_days=account.streak_days,
            last_activity_date=account.last_activity_date,
            is_frozen=account.is_frozen,
            metadata_json=json.dumps(account.metadata, sort_keys=True),
            created_at=account.created_at,
            updated_at=account.updated_at,
        )

    def account_ids(self) -> List[str]:
        query = select(AccountRecord.account_id).order_by(AccountRecord.account_id)
        return list(self._run(lambda: self._session.exec(query).all()))

    # ------------------------------------------------------------------
    # Ledger
    # ------------------------------------------------------------------
    def add_entry(self, entry: LedgerEntry) -> LedgerEntry:
        record = LedgerEntryRecord(
            entry_id=entry.entry_id,
            account_id=entry.account_id,
            amount_cents=to_cents(entry.amount),
            type=entry.type.value,
            description=entry.description,
            timestamp=entry.timestamp,
            category=entry.category,
            goal_id=entry.goal_id,
            request_id=entry.request_id,
            actor_id=entry.actor_id,
            idempotency_key=entry.idempotency_key,
        )

        def write() -> LedgerEntry:
            self._session.add(record)
            self._session.flush()
            return _entry_from_record(record)

        return self._run(write)

    def entries(self, account_id: str, *, since: Optional[datetime] = None) -> List[LedgerEntry]:
        query = select(LedgerEntryRecord).where(LedgerEntryRecord.account_id == account_id)
        if since is not None:
            query = query.where(LedgerEntryRecord.timestamp >= since)
        query = query.order_by(LedgerEntryRecord.id)
        return [_entry_from_record(record) for record in self._run(lambda: self._session.exec(query).all())]

    def find_entry_by_key(self, idempotency_key: str) -> Optional[LedgerEntry]:
        query = select(LedgerEntryRecord).where(LedgerEntryRecord.idempotency_key == idempotency_key)
        record = self._run(lambda: self._session.exec(query).first())
        return _entry_from_record(record) if record else None

    # ------------------------------------------------------------------
    # Purchase requests
    # ------------------------------------------------------------------
    def get_request(self, request_id: str) -> Optional[PurchaseRequest]:
        record = self._run(lambda: self._session.get(PurchaseRequestRecord, request_id))
        return _request_from_record(record) if record else None

    def save_request(self, request: PurchaseRequest) -> None:
        self._merge(
            PurchaseRequestRecord,
            request.request_id,
            request_id=request.request_id,
            account_id=request.account_id,
            amount_cents=to_cents(request.amount),
            description=request.description,
            category=request.category,
            status=request.status.value,
            created_at=request.created_at,
            resolved_at=request.resolved_at,
            resolved_by=request.resolved_by,
            rejection_reason=request.rejection_reason,
            entry_id=request.entry_id,
        )

    def requests(
        self, account_id: Optional[str] = None, *, status: Optional[RequestStatus] = None
    ) -> List[PurchaseRequest]:
        query = select(PurchaseRequestRecord)
        if account_id is not None:
            query = query.where(PurchaseRequestRecord.account_id == account_id)
        if status is not None:
            query = query.where(PurchaseRequestRecord.status == status.value)
        query = query.order_by(PurchaseRequestRecord.created_at)
        return [_request_from_record(record) for record in self._run(lambda: self._session.exec(query).all())]

    # ------------------------------------------------------------------
    # Goals
    # ------------------------------------------------------------------
    def get_goal(self, goal_id: str) -> Optional[Goal]:
        record = self._run(lambda: self._session.get(GoalRecord, goal_id))
        return _goal_from_record(record) if record else None

    def save_goal(self, goal: Goal) -> None:
        self._merge(
            GoalRecord,
            goal.goal_id,
            goal_id=goal.goal_id,
            account_id=goal.account_id,
            title=goal.title,
            target_cents=to_cents(goal.target_amount),
            current_cents=to_cents(goal.current_amount),
            category=goal.category,
            is_active=goal.is_active,
            is_completed=goal.is_completed,
            completed_at=goal.completed_at,
            fulfillment_status=goal.fulfillment_status.value if goal.fulfillment_status else None,
            fulfillment_requested_at=goal.fulfillment_requested_at,
            fulfillment_resolved_at=goal.fulfillment_resolved_at,
            fulfillment_resolved_by=goal.fulfillment_resolved_by,
            created_at=goal.created_at,
        )

    def goals(self, account_id: str) -> List[Goal]:
        query = select(GoalRecord).where(GoalRecord.account_id == account_id).order_by(GoalRecord.created_at)
        return [_goal_from_record(record) for record in self._run(lambda: self._session.exec(query).all())]

    # ------------------------------------------------------------------
    # Schedules
    # ------------------------------------------------------------------
    def get_allowance_config(self, account_id: str) -> Optional[AllowanceConfig]:
        record = self._run(lambda: self._session.get(AllowanceConfigRecord, account_id))
        return _allowance_from_record(record) if record else None

    def save_allowance_config(self, config: AllowanceConfig) -> None:
        self._merge(
            AllowanceConfigRecord,
            config.account_id,
            account_id=config.account_id,
            amount_cents=to_cents(config.amount),
            frequency=config.frequency.value,
            next_payment_date=config.next_payment_date,
            day_of_month=config.day_of_month,
            day_of_week=config.day_of_week,
            is_active=config.is_active,
            last_paid_date=config.last_paid_date,
        )

    def allowance_configs(self) -> List[AllowanceConfig]:
        query = select(AllowanceConfigRecord).order_by(AllowanceConfigRecord.account_id)
        return [_allowance_from_record(record) for record in self._run(lambda: self._session.exec(query).all())]

    def get_interest_config(self, account_id: str) -> Optional[InterestConfig]:
        record = self._run(lambda: self._session.get(InterestConfigRecord, account_id))
        return _interest_from_record(record) if record else None

    def save_interest_config(self, config: InterestConfig) -> None:
        self._merge(
            InterestConfigRecord,
            config.account_id,
            account_id=config.account_id,
            rate_bps=to_cents(config.monthly_rate),
            minimum_balance_cents=to_cents(config.minimum_balance),
            compounding=config.compounding.value,
            application_day=config.application_day,
            is_active=config.is_active,
            last_interest_date=config.last_interest_date,
        )

    def interest_configs(self) -> List[InterestConfig]:
        query = select(InterestConfigRecord).order_by(InterestConfigRecord.account_id)
        return [_interest_from_record(record) for record in self._run(lambda: self._session.exec(query).all())]

    # ------------------------------------------------------------------
    # Gamification
    # ------------------------------------------------------------------
    def badge_grants(self, account_id: str) -> List[BadgeGrant]:
        query = select(BadgeGrantRecord).where(BadgeGrantRecord.account_id == account_id).order_by(BadgeGrantRecord.id)
        return [
            BadgeGrant(account_id=record.account_id, badge_key=record.badge_key, granted_at=record.granted_at)
            for record in self._run(lambda: self._session.exec(query).all())
        ]

    def add_badge_grant(self, grant: BadgeGrant) -> None:
        record = BadgeGrantRecord(account_id=grant.account_id, badge_key=grant.badge_key, granted_at=grant.granted_at)

        def write() -> None:
            self._session.add(record)
            self._session.flush()

        self._run(write)

    def point_awards(self, account_id: str) -> List[PointAward]:
        query = select(PointAwardRecord).where(PointAwardRecord.account_id == account_id).order_by(PointAwardRecord.created_at)
        return [
            PointAward(
                account_id=record.account_id,
                points=record.points,
                reason=record.reason,
                award_id=record.award_id,
                created_at=record.created_at,
            )
            for record in self._run(lambda: self._session.exec(query).all())
        ]

    def add_point_award(self, award: PointAward) -> None:
        record = PointAwardRecord(
            award_id=award.award_id,
            account_id=award.account_id,
            points=award.points,
            reason=award.reason,
            created_at=award.created_at,
        )
        self._run(lambda: self._session.add(record))

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------
    def commit(self) -> None:
        self._run(self._session.commit)

    def rollback(self) -> None:
        self._run(self._session.rollback)

    def close(self) -> None:
        try:
            self._session.close()
        finally:
            if self._release is not None:
                self._release()
                self._release = None


# ---------------------------------------------------------------------------
# Storage
# ---------------------------------------------------------------------------
def build_engine(url: str) -> Engine:
    if url in {"sqlite://", "sqlite:///:memory:"}:
        return create_engine(
            url,
            echo=False,
            connect_args={"check_same_thread": False},
            poolclass=StaticPool,
        )
    if url.startswith("sqlite"):
        return create_engine(url, echo=False, connect_args={"check_same_thread": False})
    return create_engine(url, echo=False)


class SQLModelStorage(Storage):
    """Relational backend; money is stored as integer cents and rates as basis points."""

    def __init__(
        self,
        url: str = "sqlite://",
        *,
        engine: Optional[Engine] = None,
        lock_timeout: float = 5.0,
    ) -> None:
        super().__init__(lock_timeout=lock_timeout)
        self.engine = engine if engine is not None else build_engine(url)
        # SQLite allows one writer at a time, so units of work are serialised here.
        self._writer_lock = threading.RLock() if self.engine.dialect.name == "sqlite" else None
        self.create_db_and_tables()

    def create_db_and_tables(self) -> None:
        try:
            SQLModel.metadata.create_all(self.engine)
        except SQLAlchemyError as exc:
            raise StorageError(f"Could not create ledger tables: {exc}") from exc

    def _begin(self) -> UnitOfWork:
        release = None
        if self._writer_lock is not None:
            if not self._writer_lock.acquire(timeout=self.lock_timeout):
                raise LockTimeoutError("Timed out waiting for the database writer lock.")
            release = self._writer_lock.release
        return SQLModelUnitOfWork(Session(self.engine, expire_on_commit=False), release=release)


__all__ = [
    "AccountRecord",
    "AllowanceConfigRecord",
    "BadgeGrantRecord",
    "GoalRecord",
    "InterestConfigRecord",
    "LedgerEntryRecord",
    "PointAwardRecord",
    "PurchaseRequestRecord",
    "SQLModelStorage",
    "SQLModelUnitOfWork",
    "build_engine",
]
