"""Custom exception hierarchy for the kidledger package."""

from __future__ import annotations


class KidLedgerError(Exception):
    """Base class for all ledger engine errors."""


class ValidationError(KidLedgerError, ValueError):
    """Raised for bad input; nothing has been written."""


class NotFoundError(KidLedgerError, LookupError):
    """Raised when an account, request or goal lookup fails."""


class AccountNotFoundError(NotFoundError):
    """Raised when an account lookup fails."""


class DuplicateAccountError(ValidationError):
    """Raised when attempting to open an account that already exists."""


class RequestNotFoundError(NotFoundError):
    """Raised when a purchase request cannot be found."""


class GoalNotFoundError(NotFoundError):
    """Raised when a requested savings goal cannot be found."""


class InvalidStateError(KidLedgerError):
    """Raised when an operation is not legal in the record's current state."""


class InsufficientFundsError(InvalidStateError):
    """Raised when an operation would result in a negative balance."""


class StorageError(KidLedgerError):
    """Raised when a transactional read or write fails; the operation was not applied."""


class LockTimeoutError(StorageError):
    """Raised when an account lock cannot be acquired in time."""


class IntegrityError(KidLedgerError):
    """Raised when a cached projection disagrees with the ledger."""


class AccountFrozenError(IntegrityError):
    """Raised when writing to an account halted by an integrity failure."""


__all__ = [
    "AccountFrozenError",
    "AccountNotFoundError",
    "DuplicateAccountError",
    "GoalNotFoundError",
    "InsufficientFundsError",
    "IntegrityError",
    "InvalidStateError",
    "KidLedgerError",
    "LockTimeoutError",
    "NotFoundError",
    "RequestNotFoundError",
    "StorageError",
    "ValidationError",
]
