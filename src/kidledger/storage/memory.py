"""In-process storage backend used by tests and single-process deployments."""

from __future__ import annotations

import copy
import threading
from dataclasses import dataclass, field, replace
from datetime import datetime
from typing import Dict, List, Optional

from ..exceptions import StorageError
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
from .base import Storage, UnitOfWork


@dataclass(slots=True)
class _State:
    accounts: Dict[str, Account] = field(default_factory=dict)
    entries: Dict[str, List[LedgerEntry]] = field(default_factory=dict)
    entry_keys: Dict[str, LedgerEntry] = field(default_factory=dict)
    requests: Dict[str, PurchaseRequest] = field(default_factory=dict)
    goals: Dict[str, Goal] = field(default_factory=dict)
    allowance: Dict[str, AllowanceConfig] = field(default_factory=dict)
    interest: Dict[str, InterestConfig] = field(default_factory=dict)
    badges: Dict[str, List[BadgeGrant]] = field(default_factory=dict)
    awards: Dict[str, List[PointAward]] = field(default_factory=dict)
    sequence: int = 0


class MemoryUnitOfWork(UnitOfWork):
    """Stage changes privately and publish them to the shared state on commit."""

    def __init__(self, state: _State, guard: threading.Lock) -> None:
        super().__init__()
        self._state = state
        self._guard = guard
        self._reset()

    def _reset(self) -> None:
        self._accounts: Dict[str, Account] = {}
        self._entries: List[LedgerEntry] = []
        self._requests: Dict[str, PurchaseRequest] = {}
        self._goals: Dict[str, Goal] = {}
        self._allowance: Dict[str, AllowanceConfig] = {}
        self._interest: Dict[str, InterestConfig] = {}
        self._badges: List[BadgeGrant] = []
        self._awards: List[PointAward] = []

    def _read(self, staged: dict, committed: dict, key: str):
        if key in staged:
            return copy.deepcopy(staged[key])
        with self._guard:
            return copy.deepcopy(committed.get(key))

    # ------------------------------------------------------------------
    # Accounts
    # ------------------------------------------------------------------
    def get_account(self, account_id: str) -> Optional[Account]:
        return self._read(self._accounts, self._state.accounts, account_id)

    def save_account(self, account: Account) -> None:
        self._accounts[account.account_id] = copy.deepcopy(account)

    def account_ids(self) -> List[str]:
        with self._guard:
            known = list(self._state.accounts)
        known.extend(key for key in self._accounts if key not in known)
        return sorted(known)

    # ------------------------------------------------------------------
    # Ledger
    # ------------------------------------------------------------------
    def add_entry(self, entry: LedgerEntry) -> LedgerEntry:
        if entry.idempotency_key and self.find_entry_by_key(entry.idempotency_key) is not None:
            raise StorageError(f"Idempotency key '{entry.idempotency_key}' is already used.")
        self._entries.append(entry)
        return entry

    def entries(self, account_id: str, *, since: Optional[datetime] = None) -> List[LedgerEntry]:
        with self._guard:
            records = list(self._state.entries.get(account_id, ()))
        records.extend(entry for entry in self._entries if entry.account_id == account_id)
        if since is not None:
            records = [entry for entry in records if entry.timestamp >= since]
        return records

    def find_entry_by_key(self, idempotency_key: str) -> Optional[LedgerEntry]:
        for entry in self._entries:
            if entry.idempotency_key == idempotency_key:
                return entry
        with self._guard:
            return self._state.entry_keys.get(idempotency_key)

    # ------------------------------------------------------------------
    # Purchase requests
    # ------------------------------------------------------------------
    def get_request(self, request_id: str) -> Optional[PurchaseRequest]:
        return self._read(self._requests, self._state.requests, request_id)

    def save_request(self, request: PurchaseRequest) -> None:
        self._requests[request.request_id] = copy.deepcopy(request)

    def requests(
        self, account_id: Optional[str] = None, *, status: Optional[RequestStatus] = None
    ) -> List[PurchaseRequest]:
        with self._guard:
            merged = dict(self._state.requests)
        merged.update(self._requests)
        records = [
            copy.deepcopy(request)
            for request in merged.values()
            if (account_id is None or request.account_id == account_id)
            and (status is None or request.status is status)
        ]
        return sorted(records, key=lambda request: request.created_at)

    # ------------------------------------------------------------------
    # Goals
    # ------------------------------------------------------------------
    def get_goal(self, goal_id: str) -> Optional[Goal]:
        return self._read(self._goals, self._state.goals, goal_id)

    def save_goal(self, goal: Goal) -> None:
        self._goals[goal.goal_id] = copy.deepcopy(goal)

    def goals(self, account_id: str) -> List[Goal]:
        with self._guard:
            merged = dict(self._state.goals)
        merged.update(self._goals)
        records = [copy.deepcopy(goal) for goal in merged.values() if goal.account_id == account_id]
        return sorted(records, key=lambda goal: goal.created_at)

    # ------------------------------------------------------------------
    # Schedules
    # ------------------------------------------------------------------
    def get_allowance_config(self, account_id: str) -> Optional[AllowanceConfig]:
        return self._read(self._allowance, self._state.allowance, account_id)

    def save_allowance_config(self, config: AllowanceConfig) -> None:
        self._allowance[config.account_id] = copy.deepcopy(config)

    def allowance_configs(self) -> List[AllowanceConfig]:
        with self._guard:
            merged = dict(self._state.allowance)
        merged.update(self._allowance)
        return [copy.deepcopy(merged[key]) for key in sorted(merged)]

    def get_interest_config(self, account_id: str) -> Optional[InterestConfig]:
        return self._read(self._interest, self._state.interest, account_id)

    def save_interest_config(self, config: InterestConfig) -> None:
        self._interest[config.account_id] = copy.deepcopy(config)

    def interest_configs(self) -> List[InterestConfig]:
        with self._guard:
            merged = dict(self._state.interest)
        merged.update(self._interest)
        return [copy.deepcopy(merged[key]) for key in sorted(merged)]

    # ------------------------------------------------------------------
    # Gamification
    # ------------------------------------------------------------------
    def badge_grants(self, account_id: str) -> List[BadgeGrant]:
        with self._guard:
            records = list(self._state.badges.get(account_id, ()))
        records.extend(grant for grant in self._badges if grant.account_id == account_id)
        return records

    def add_badge_grant(self, grant: BadgeGrant) -> None:
        if any(existing.badge_key == grant.badge_key for existing in self.badge_grants(grant.account_id)):
            raise StorageError(f"Badge '{grant.badge_key}' already granted to '{grant.account_id}'.")
        self._badges.append(grant)

    def point_awards(self, account_id: str) -> List[PointAward]:
        with self._guard:
            records = list(self._state.awards.get(account_id, ()))
        records.extend(award for award in self._awards if award.account_id == account_id)
        return records

    def add_point_award(self, award: PointAward) -> None:
        self._awards.append(award)

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------
    def commit(self) -> None:
        state = self._state
        with self._guard:
            for entry in self._entries:
                if entry.idempotency_key and entry.idempotency_key in state.entry_keys:
                    raise StorageError(f"Idempotency key '{entry.idempotency_key}' is already used.")
            state.accounts.update(self._accounts)
            for entry in self._entries:
                state.sequence += 1
                stored = replace(entry, sequence=state.sequence)
                state.entries.setdefault(entry.account_id, []).append(stored)
                if stored.idempotency_key:
                    state.entry_keys[stored.idempotency_key] = stored
            state.requests.update(self._requests)
            state.goals.update(self._goals)
            state.allowance.update(self._allowance)
            state.interest.update(self._interest)
            for grant in self._badges:
                state.badges.setdefault(grant.account_id, []).append(grant)
            for award in self._awards:
                state.awards.setdefault(award.account_id, []).append(award)
        self._reset()

    def rollback(self) -> None:
        self._reset()


class InMemoryStorage(Storage):
    """Keep every record in process memory behind a commit guard."""

    def __init__(self, *, lock_timeout: float = 5.0) -> None:
        super().__init__(lock_timeout=lock_timeout)
        self._state = _State()
        self._guard = threading.Lock()

    def _begin(self) -> UnitOfWork:
        return MemoryUnitOfWork(self._state, self._guard)


__all__ = ["InMemoryStorage", "MemoryUnitOfWork"]
