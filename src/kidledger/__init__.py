"""Kidledger package: the ledger and rules engine behind a family allowance bank."""

from .admin import AuditLog
from .clock import Clock, FixedClock
from .config import Settings
from .exceptions import (
    AccountFrozenError,
    AccountNotFoundError,
    DuplicateAccountError,
    GoalNotFoundError,
    InsufficientFundsError,
    IntegrityError,
    InvalidStateError,
    KidLedgerError,
    LockTimeoutError,
    NotFoundError,
    RequestNotFoundError,
    StorageError,
    ValidationError,
)
from .gamification import BADGE_CATALOG, Badge
from .interest import InterestPreview
from .ledger import Projection
from .models import (
    Account,
    AllowanceConfig,
    AllowanceFrequency,
    BadgeGrant,
    CommandResult,
    CompoundingFrequency,
    CycleResult,
    CycleStatus,
    EntryType,
    FulfillmentStatus,
    GamificationEvent,
    GamificationState,
    Goal,
    InterestConfig,
    LedgerEntry,
    PointAward,
    PurchaseRequest,
    RequestStatus,
    ResolveAction,
)
from .ops import StructuredLogger
from .service import KidLedger
from .storage import InMemoryStorage, SQLModelStorage, Storage, UnitOfWork

__all__ = [
    "Account",
    "AccountFrozenError",
    "AccountNotFoundError",
    "AllowanceConfig",
    "AllowanceFrequency",
    "AuditLog",
    "BADGE_CATALOG",
    "Badge",
    "BadgeGrant",
    "Clock",
    "CommandResult",
    "CompoundingFrequency",
    "CycleResult",
    "CycleStatus",
    "DuplicateAccountError",
    "EntryType",
    "FixedClock",
    "FulfillmentStatus",
    "GamificationEvent",
    "GamificationState",
    "Goal",
    "GoalNotFoundError",
    "InMemoryStorage",
    "InsufficientFundsError",
    "IntegrityError",
    "InterestConfig",
    "InterestPreview",
    "InvalidStateError",
    "KidLedger",
    "KidLedgerError",
    "LedgerEntry",
    "LockTimeoutError",
    "NotFoundError",
    "PointAward",
    "Projection",
    "PurchaseRequest",
    "RequestNotFoundError",
    "RequestStatus",
    "ResolveAction",
    "SQLModelStorage",
    "Settings",
    "Storage",
    "StorageError",
    "StructuredLogger",
    "UnitOfWork",
    "ValidationError",
]
