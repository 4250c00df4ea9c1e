"""Append-only ledger with the account balance as a verified projection."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import date, datetime, time
from decimal import Decimal
from functools import partial
from typing import Iterable, List, Optional

from .clock import Clock
from .exceptions import AccountFrozenError, AccountNotFoundError, ValidationError
from .models import EARNING_TYPES, SPENDING_TYPES, Account, EntryType, LedgerEntry
from .money import ZERO, AmountLike, to_decimal
from .ops import StructuredLogger
from .storage import UnitOfWork


@dataclass(frozen=True, slots=True)
class Projection:
    """Values derived from an account's ledger."""

    balance: Decimal
    total_earned: Decimal
    total_spent: Decimal
    entry_count: int

    def matches(self, account: Account) -> bool:
        return (
            self.balance == account.balance
            and self.total_earned == account.total_earned
            and self.total_spent == account.total_spent
        )


def _earned(entry: LedgerEntry) -> Decimal:
    if entry.type in EARNING_TYPES and entry.amount > ZERO:
        return entry.amount
    return ZERO


def _spent(entry: LedgerEntry) -> Decimal:
    if entry.type in SPENDING_TYPES and entry.amount < ZERO:
        return -entry.amount
    return ZERO


def project(entries: Iterable[LedgerEntry]) -> Projection:
    """Recompute the balance and lifetime totals from scratch."""

    balance = total_earned = total_spent = ZERO
    count = 0
    for entry in entries:
        balance += entry.amount
        total_earned += _earned(entry)
        total_spent += _spent(entry)
        count += 1
    return Projection(balance=balance, total_earned=total_earned, total_spent=total_spent, entry_count=count)


def sort_entries(entries: Iterable[LedgerEntry]) -> List[LedgerEntry]:
    # Storage returns insertion order; timestamps win, insertion order breaks ties.
    indexed = list(enumerate(entries))
    indexed.sort(key=lambda pair: (pair[1].timestamp, pair[0]))
    return [entry for _, entry in indexed]


class LedgerStore:
    """Post entries and keep the cached account projection in step with them."""

    __slots__ = ("_clock", "_logger")

    def __init__(self, *, clock: Clock, logger: StructuredLogger) -> None:
        self._clock = clock
        self._logger = logger

    # ------------------------------------------------------------------
    # Accounts
    # ------------------------------------------------------------------
    def load_account(self, uow: UnitOfWork, account_id: str, *, for_write: bool = True) -> Account:
        account = uow.get_account(account_id)
        if account is None:
            raise AccountNotFoundError(f"Account '{account_id}' does not exist.")
        if for_write and account.is_frozen:
            raise AccountFrozenError(
                f"Account '{account_id}' is frozen after an integrity failure; reconcile it first."
            )
        return account

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------
    def append(self, uow: UnitOfWork, entry: LedgerEntry) -> LedgerEntry:
        account = self.load_account(uow, entry.account_id)
        return self._apply(uow, account, entry)

    def post(
        self,
        uow: UnitOfWork,
        account: Account,
        amount: AmountLike,
        entry_type: EntryType,
        description: str,
        *,
        category: Optional[str] = None,
        goal_id: Optional[str] = None,
        request_id: Optional[str] = None,
        actor_id: Optional[str] = None,
        idempotency_key: Optional[str] = None,
        timestamp: Optional[datetime] = None,
    ) -> LedgerEntry:
        if account.is_frozen:
            raise AccountFrozenError(f"Account '{account.account_id}' is frozen.")
        if not (description or "").strip():
            raise ValidationError("A description is required.")
        entry = LedgerEntry(
            account_id=account.account_id,
            amount=to_decimal(amount),
            type=entry_type,
            description=description.strip(),
            timestamp=timestamp or self._clock.now(),
            category=category,
            goal_id=goal_id,
            request_id=request_id,
            actor_id=actor_id,
            idempotency_key=idempotency_key,
        )
        return self._apply(uow, account, entry)

    def _apply(self, uow: UnitOfWork, account: Account, entry: LedgerEntry) -> LedgerEntry:
        stored = uow.add_entry(entry)
        account.balance += stored.amount
        account.total_earned += _earned(stored)
        account.total_spent += _spent(stored)
        account.updated_at = self._clock.now()
        uow.save_account(account)
        uow.after_commit(
            partial(
                self._logger.log,
                "ledger_entry",
                level="debug",
                account=account.account_id,
                entry_id=stored.entry_id,
                type=stored.type.value,
                amount=str(stored.amount),
                balance=str(account.balance),
            )
        )
        return stored

    def stamp_for(self, day: date) -> datetime:
        """Return the timestamp for an entry that belongs to ``day``."""

        now = self._clock.now()
        return now if now.date() == day else datetime.combine(day, time.min)

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------
    def entries(self, uow: UnitOfWork, account_id: str) -> List[LedgerEntry]:
        return sort_entries(uow.entries(account_id))

    def entries_since(self, uow: UnitOfWork, account_id: str, since: datetime) -> List[LedgerEntry]:
        return sort_entries(uow.entries(account_id, since=since))

    def recompute(self, uow: UnitOfWork, account_id: str) -> Projection:
        return project(uow.entries(account_id))

    def freeze(self, uow: UnitOfWork, account_id: str, projection: Projection) -> Account:
        account = self.load_account(uow, account_id, for_write=False)
        self._logger.error(
            "integrity_failure",
            account=account_id,
            cached_balance=str(account.balance),
            ledger_balance=str(projection.balance),
        )
        account.is_frozen = True
        account.updated_at = self._clock.now()
        uow.save_account(account)
        return account

    def reconcile(self, uow: UnitOfWork, account_id: str) -> Account:
        """Rebuild the cached projection from the ledger and lift any freeze."""

        account = self.load_account(uow, account_id, for_write=False)
        projection = self.recompute(uow, account_id)
        previous = account.balance
        account.balance = projection.balance
        account.total_earned = projection.total_earned
        account.total_spent = projection.total_spent
        account.is_frozen = False
        account.updated_at = self._clock.now()
        uow.save_account(account)
        uow.after_commit(
            partial(
                self._logger.log,
                "account_reconciled",
                account=account_id,
                previous_balance=str(previous),
                balance=str(projection.balance),
            )
        )
        return account


__all__ = ["LedgerStore", "Projection", "project", "sort_entries"]
