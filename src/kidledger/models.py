"""Domain models used by the kidledger package."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date, datetime
from decimal import Decimal, ROUND_HALF_UP
from enum import Enum
from typing import Any, Dict, Mapping, Optional, Tuple
from uuid import uuid4

from .clock import utcnow
from .exceptions import InvalidStateError, ValidationError
from .money import ZERO, require_positive, to_decimal, to_rate


LAST_DAY_OF_MONTH = 30


def new_id() -> str:
    return str(uuid4())


class EntryType(str, Enum):
    """Closed set of ledger entry types."""

    ALLOWANCE = "allowance"
    PURCHASE = "purchase"
    GOAL_DEPOSIT = "goal_deposit"
    GOAL_WITHDRAWAL = "goal_withdrawal"
    INTEREST = "interest"
    MANUAL_ADJUSTMENT = "manual_adjustment"
    REQUEST_APPROVED = "request_approved"


EARNING_TYPES = frozenset({EntryType.ALLOWANCE, EntryType.INTEREST, EntryType.MANUAL_ADJUSTMENT})
SPENDING_TYPES = frozenset({EntryType.PURCHASE, EntryType.REQUEST_APPROVED})
GOAL_TYPES = frozenset({EntryType.GOAL_DEPOSIT, EntryType.GOAL_WITHDRAWAL})


class RequestStatus(str, Enum):
    """Lifecycle of a purchase request; every state but ``pending`` is terminal."""

    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"
    CANCELLED = "cancelled"


class ResolveAction(str, Enum):
    APPROVE = "approve"
    REJECT = "reject"


class AllowanceFrequency(str, Enum):
    DAILY = "daily"
    WEEKLY = "weekly"
    BIWEEKLY = "biweekly"
    MONTHLY = "monthly"


class CompoundingFrequency(str, Enum):
    MONTHLY = "monthly"


class FulfillmentStatus(str, Enum):
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"


class CycleStatus(str, Enum):
    APPLIED = "applied"
    SKIPPED = "skipped"
    ERROR = "error"


def _coerce_enum(enum_type: type[Enum], value: Any, label: str) -> Any:
    try:
        return enum_type(value)
    except ValueError as exc:
        raise ValidationError(f"Unsupported {label}: {value!r}") from exc


@dataclass(slots=True)
class Account:
    """A child's account with its cached projections of the ledger."""

    account_id: str
    family_id: str
    display_name: str
    balance: Decimal = ZERO
    total_earned: Decimal = ZERO
    total_spent: Decimal = ZERO
    level: int = 1
    points: int = 0
    streak_days: int = 0
    last_activity_date: Optional[date] = None
    is_frozen: bool = False
    metadata: Dict[str, str] = field(default_factory=dict)
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)

    def __post_init__(self) -> None:
        if not self.account_id:
            raise ValidationError("account_id is required.")
        self.balance = to_decimal(self.balance)
        self.total_earned = to_decimal(self.total_earned)
        self.total_spent = to_decimal(self.total_spent)


@dataclass(frozen=True, slots=True)
class LedgerEntry:
    """Immutable signed monetary movement against one account."""

    account_id: str
    amount: Decimal
    type: EntryType
    description: str
    timestamp: datetime = field(default_factory=utcnow)
    category: Optional[str] = None
    goal_id: Optional[str] = None
    request_id: Optional[str] = None
    actor_id: Optional[str] = None
    idempotency_key: Optional[str] = None
    entry_id: str = field(default_factory=new_id)
    sequence: Optional[int] = None

    def __post_init__(self) -> None:
        amount = to_decimal(self.amount)
        if amount == ZERO:
            raise ValidationError("Ledger entries cannot have a zero amount.")
        object.__setattr__(self, "amount", amount)
        object.__setattr__(self, "type", _coerce_enum(EntryType, self.type, "entry type"))


@dataclass(slots=True)
class PurchaseRequest:
    """A child's ask to spend money, awaiting a parent's decision."""

    account_id: str
    amount: Decimal
    description: str
    category: Optional[str] = None
    status: RequestStatus = RequestStatus.PENDING
    request_id: str = field(default_factory=new_id)
    created_at: datetime = field(default_factory=utcnow)
    resolved_at: Optional[datetime] = None
    resolved_by: Optional[str] = None
    rejection_reason: Optional[str] = None
    entry_id: Optional[str] = None

    def __post_init__(self) -> None:
        self.amount = require_positive(to_decimal(self.amount))
        self.status = _coerce_enum(RequestStatus, self.status, "request status")
        if not (self.description or "").strip():
            raise ValidationError("A description is required.")

    @property
    def is_terminal(self) -> bool:
        return self.status is not RequestStatus.PENDING

    def approve(self, actor: str, *, entry_id: str, when: datetime) -> None:
        self.ensure_pending()
        self.status = RequestStatus.APPROVED
        self.resolved_by = actor
        self.resolved_at = when
        self.entry_id = entry_id

    def reject(self, actor: str, *, reason: Optional[str], when: datetime) -> None:
        self.ensure_pending()
        self.status = RequestStatus.REJECTED
        self.resolved_by = actor
        self.resolved_at = when
        self.rejection_reason = reason

    def cancel(self, *, when: datetime) -> None:
        self.ensure_pending()
        self.status = RequestStatus.CANCELLED
        self.resolved_by = self.account_id
        self.resolved_at = when

    def ensure_pending(self) -> None:
        if self.is_terminal:
            raise InvalidStateError(
                f"Purchase request '{self.request_id}' was already {self.status.value}."
            )


@dataclass(slots=True)
class AllowanceConfig:
    """Recurring allowance rule for one account."""

    account_id: str
    amount: Decimal
    frequency: AllowanceFrequency
    next_payment_date: date
    day_of_month: Optional[int] = None
    day_of_week: Optional[int] = None
    is_active: bool = True
    last_paid_date: Optional[date] = None

    def __post_init__(self) -> None:
        self.amount = require_positive(to_decimal(self.amount))
        self.frequency = _coerce_enum(AllowanceFrequency, self.frequency, "allowance frequency")
        if self.day_of_month is not None and not 1 <= self.day_of_month <= 31:
            raise ValidationError("day_of_month must be between 1 and 31.")
        if self.day_of_week is not None and not 0 <= self.day_of_week <= 6:
            raise ValidationError("day_of_week must be between 0 (Monday) and 6 (Sunday).")


@dataclass(slots=True)
class InterestConfig:
    """Monthly interest accrual rule for one account."""

    account_id: str
    monthly_rate: Decimal
    minimum_balance: Decimal = ZERO
    compounding: CompoundingFrequency = CompoundingFrequency.MONTHLY
    application_day: int = 1
    is_active: bool = True
    last_interest_date: Optional[date] = None

    def __post_init__(self) -> None:
        self.monthly_rate = to_rate(self.monthly_rate)
        self.minimum_balance = require_positive(to_decimal(self.minimum_balance), allow_zero=True)
        self.compounding = _coerce_enum(CompoundingFrequency, self.compounding, "compounding frequency")
        if not (1 <= self.application_day <= 28 or self.application_day == LAST_DAY_OF_MONTH):
            raise ValidationError("application_day must be between 1 and 28, or 30 for the last day.")


@dataclass(slots=True)
class Goal:
    """Represents a savings goal that children can contribute towards."""

    account_id: str
    title: str
    target_amount: Decimal
    current_amount: Decimal = ZERO
    category: Optional[str] = None
    goal_id: str = field(default_factory=new_id)
    is_active: bool = True
    is_completed: bool = False
    completed_at: Optional[datetime] = None
    fulfillment_status: Optional[FulfillmentStatus] = None
    fulfillment_requested_at: Optional[datetime] = None
    fulfillment_resolved_at: Optional[datetime] = None
    fulfillment_resolved_by: Optional[str] = None
    created_at: datetime = field(default_factory=utcnow)

    def __post_init__(self) -> None:
        if not (self.title or "").strip():
            raise ValidationError("A goal title is required.")
        self.target_amount = require_positive(to_decimal(self.target_amount))
        self.current_amount = require_positive(to_decimal(self.current_amount), allow_zero=True)
        if self.fulfillment_status is not None:
            self.fulfillment_status = _coerce_enum(
                FulfillmentStatus, self.fulfillment_status, "fulfillment status"
            )

    @property
    def remaining(self) -> Decimal:
        """Return the amount still required to achieve the goal."""

        remainder = self.target_amount - self.current_amount
        return remainder if remainder > ZERO else ZERO

    @property
    def is_fulfilled(self) -> bool:
        return self.fulfillment_status is FulfillmentStatus.APPROVED

    def progress(self) -> Decimal:
        """Return the progress towards the goal as a decimal ratio (0-1)."""

        ratio = min(self.current_amount / self.target_amount, Decimal("1"))
        return ratio.quantize(Decimal("0.0001"), rounding=ROUND_HALF_UP)

    def latch_completion(self, when: datetime) -> bool:
        """Mark the goal complete once funded; never clears. Returns True on the transition."""

        if self.is_completed or self.current_amount < self.target_amount:
            return False
        self.is_completed = True
        self.completed_at = when
        return True


@dataclass(frozen=True, slots=True)
class BadgeGrant:
    account_id: str
    badge_key: str
    granted_at: datetime = field(default_factory=utcnow)


@dataclass(frozen=True, slots=True)
class PointAward:
    """Explicit points granted to a child outside the ledger."""

    account_id: str
    points: int
    reason: str
    award_id: str = field(default_factory=new_id)
    created_at: datetime = field(default_factory=utcnow)

    def __post_init__(self) -> None:
        if self.points <= 0:
            raise ValidationError("Point awards must be positive.")


@dataclass(frozen=True, slots=True)
class GamificationEvent:
    """Something worth celebrating that a command triggered."""

    kind: str
    account_id: str
    detail: Mapping[str, Any] = field(default_factory=dict)


@dataclass(frozen=True, slots=True)
class GamificationState:
    points: int
    level: int
    points_to_next_level: int
    level_progress: int
    badges: Tuple[str, ...]
    streak_days: int


@dataclass(frozen=True, slots=True)
class CycleResult:
    """Outcome of one account's unit of work in a batch cycle."""

    account_id: str
    status: CycleStatus
    amount: Optional[Decimal] = None
    reason: Optional[str] = None
    entry_id: Optional[str] = None
    events: Tuple[GamificationEvent, ...] = ()


@dataclass(frozen=True, slots=True)
class CommandResult:
    """Value returned by a command plus the gamification events it triggered."""

    value: Any
    events: Tuple[GamificationEvent, ...] = ()


@dataclass(slots=True)
class AuditEvent:
    """Represents an auditable actor action."""

    actor: str
    action: str
    target: str
    timestamp: datetime = field(default_factory=utcnow)
    details: Dict[str, Any] = field(default_factory=dict)


__all__ = [
    "Account",
    "AllowanceConfig",
    "AllowanceFrequency",
    "AuditEvent",
    "BadgeGrant",
    "CommandResult",
    "CompoundingFrequency",
    "CycleResult",
    "CycleStatus",
    "EARNING_TYPES",
    "EntryType",
    "FulfillmentStatus",
    "GOAL_TYPES",
    "GamificationEvent",
    "GamificationState",
    "Goal",
    "InterestConfig",
    "LAST_DAY_OF_MONTH",
    "LedgerEntry",
    "PointAward",
    "PurchaseRequest",
    "RequestStatus",
    "ResolveAction",
    "SPENDING_TYPES",
    "new_id",
]
