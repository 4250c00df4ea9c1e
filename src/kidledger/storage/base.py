"""Transactional storage contract shared by every backend."""

from __future__ import annotations

import threading
from abc import ABC, abstractmethod
from contextlib import contextmanager
from datetime import datetime
from typing import Callable, Dict, Iterator, List, Optional

from ..exceptions import LockTimeoutError
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


class UnitOfWork(ABC):
    """All reads and writes of one atomic operation.

    Nothing written through a unit of work is visible to other units until
    :meth:`commit` succeeds; :meth:`rollback` discards every staged change.
    Records handed out are copies, so callers must ``save_*`` what they mutate.
    """

    def __init__(self) -> None:
        self._after_commit: List[Callable[[], None]] = []

    def after_commit(self, callback: Callable[[], None]) -> None:
        """Run ``callback`` once this unit has committed; dropped on rollback."""
        self._after_commit.append(callback)

    def run_after_commit(self) -> None:
        callbacks, self._after_commit = self._after_commit, []
        for callback in callbacks:
            callback()

    # ------------------------------------------------------------------
    # Accounts
    # ------------------------------------------------------------------
    @abstractmethod
    def get_account(self, account_id: str) -> Optional[Account]: ...

    @abstractmethod
    def save_account(self, account: Account) -> None: ...

    @abstractmethod
    def account_ids(self) -> List[str]: ...

    # ------------------------------------------------------------------
    # Ledger
    # ------------------------------------------------------------------
    @abstractmethod
    def add_entry(self, entry: LedgerEntry) -> LedgerEntry: ...

    @abstractmethod
    def entries(self, account_id: str, *, since: Optional[datetime] = None) -> List[LedgerEntry]:
        """Return entries in insertion order, optionally from ``since`` onwards."""

    @abstractmethod
    def find_entry_by_key(self, idempotency_key: str) -> Optional[LedgerEntry]: ...

    # ------------------------------------------------------------------
    # Purchase requests
    # ------------------------------------------------------------------
    @abstractmethod
    def get_request(self, request_id: str) -> Optional[PurchaseRequest]: ...

    @abstractmethod
    def save_request(self, request: PurchaseRequest) -> None: ...

    @abstractmethod
    def requests(
        self, account_id: Optional[str] = None, *, status: Optional[RequestStatus] = None
    ) -> List[PurchaseRequest]: ...

    # ------------------------------------------------------------------
    # Goals
    # ------------------------------------------------------------------
    @abstractmethod
    def get_goal(self, goal_id: str) -> Optional[Goal]: ...

    @abstractmethod
    def save_goal(self, goal: Goal) -> None: ...

    @abstractmethod
    def goals(self, account_id: str) -> List[Goal]: ...

    # ------------------------------------------------------------------
    # Schedules
    # ------------------------------------------------------------------
    @abstractmethod
    def get_allowance_config(self, account_id: str) -> Optional[AllowanceConfig]: ...

    @abstractmethod
    def save_allowance_config(self, config: AllowanceConfig) -> None: ...

    @abstractmethod
    def allowance_configs(self) -> List[AllowanceConfig]: ...

    @abstractmethod
    def get_interest_config(self, account_id: str) -> Optional[InterestConfig]: ...

    @abstractmethod
    def save_interest_config(self, config: InterestConfig) -> None: ...

    @abstractmethod
    def interest_configs(self) -> List[InterestConfig]: ...

    # ------------------------------------------------------------------
    # Gamification
    # ------------------------------------------------------------------
    @abstractmethod
    def badge_grants(self, account_id: str) -> List[BadgeGrant]: ...

    @abstractmethod
    def add_badge_grant(self, grant: BadgeGrant) -> None: ...

    @abstractmethod
    def point_awards(self, account_id: str) -> List[PointAward]: ...

    @abstractmethod
    def add_point_award(self, award: PointAward) -> None: ...

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------
    @abstractmethod
    def commit(self) -> None: ...

    @abstractmethod
    def rollback(self) -> None: ...

    def close(self) -> None:
        return None


class Storage(ABC):
    """Factory for units of work, serialising writers per account."""

    def __init__(self, *, lock_timeout: float = 5.0) -> None:
        self._lock_timeout = lock_timeout
        self._locks: Dict[str, threading.RLock] = {}
        self._locks_guard = threading.Lock()

    @property
    def lock_timeout(self) -> float:
        return self._lock_timeout

    def _lock_for(self, account_id: str) -> threading.RLock:
        with self._locks_guard:
            lock = self._locks.get(account_id)
            if lock is None:
                lock = self._locks[account_id] = threading.RLock()
            return lock

    @abstractmethod
    def _begin(self) -> UnitOfWork: ...

    @contextmanager
    def transaction(self, account_id: Optional[str] = None) -> Iterator[UnitOfWork]:
        """Yield a unit of work that commits on success and rolls back on error.

        When ``account_id`` is given the account's lock is held for the whole
        unit, so two writers of the same account never interleave.
        """

        lock = self._lock_for(account_id) if account_id is not None else None
        if lock is not None and not lock.acquire(timeout=self._lock_timeout):
            raise LockTimeoutError(
                f"Timed out after {self._lock_timeout}s waiting for account '{account_id}'."
            )
        try:
            uow = self._begin()
            try:
                yield uow
            except BaseException:
                uow.rollback()
                raise
            else:
                uow.commit()
                uow.run_after_commit()
            finally:
                uow.close()
        finally:
            if lock is not None:
                lock.release()

    def account_ids(self) -> List[str]:
        with self.transaction() as uow:
            return uow.account_ids()


__all__ = ["Storage", "UnitOfWork"]
