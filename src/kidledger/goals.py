"""Savings goals funded from the spendable balance."""

from __future__ import annotations

from decimal import Decimal
from typing import Iterable, List, Optional

from .clock import Clock
from .exceptions import GoalNotFoundError, InsufficientFundsError, InvalidStateError, ValidationError
from .ledger import LedgerStore
from .models import GOAL_TYPES, EntryType, FulfillmentStatus, Goal, LedgerEntry, ResolveAction
from .money import ZERO, AmountLike, require_positive, to_decimal
from .storage import UnitOfWork


def goal_balance(entries: Iterable[LedgerEntry], goal_id: str) -> Decimal:
    """Recompute a goal's saved amount from its deposit and withdrawal entries."""

    # Deposits are negative on the spendable balance, so the goal holds their negation.
    return -sum(
        (entry.amount for entry in entries if entry.goal_id == goal_id and entry.type in GOAL_TYPES),
        ZERO,
    )


class GoalTracker:
    """Move money between the spendable balance and savings goals."""

    __slots__ = ("_ledger", "_clock")

    def __init__(self, ledger: LedgerStore, *, clock: Clock) -> None:
        self._ledger = ledger
        self._clock = clock

    def create(
        self,
        uow: UnitOfWork,
        account_id: str,
        title: str,
        target_amount: AmountLike,
        *,
        category: Optional[str] = None,
    ) -> Goal:
        goal = Goal(
            account_id=account_id,
            title=(title or "").strip(),
            target_amount=target_amount,
            category=category,
            created_at=self._clock.now(),
        )
        self._ledger.load_account(uow, account_id)
        uow.save_goal(goal)
        return goal

    def get(self, uow: UnitOfWork, goal_id: str) -> Goal:
        goal = uow.get_goal(goal_id)
        if goal is None:
            raise GoalNotFoundError(f"Goal '{goal_id}' does not exist.")
        return goal

    def goals(self, uow: UnitOfWork, account_id: str) -> List[Goal]:
        return uow.goals(account_id)

    def _ensure_open(self, goal: Goal) -> None:
        if not goal.is_active:
            raise InvalidStateError(f"Goal '{goal.title}' is no longer active.")
        if goal.fulfillment_status in (FulfillmentStatus.PENDING, FulfillmentStatus.APPROVED):
            raise InvalidStateError(f"Goal '{goal.title}' is being fulfilled and cannot change.")

    def contribute(
        self,
        uow: UnitOfWork,
        goal_id: str,
        amount: AmountLike,
        *,
        description: Optional[str] = None,
    ) -> tuple[Goal, LedgerEntry, bool]:
        """Return the goal, the deposit entry and whether this deposit completed the goal."""

        value = require_positive(to_decimal(amount))
        goal = self.get(uow, goal_id)
        self._ensure_open(goal)
        account = self._ledger.load_account(uow, goal.account_id)
        if account.balance < value:
            raise InsufficientFundsError(
                f"Insufficient funds: balance {account.balance} is less than {value}."
            )
        entry = self._ledger.post(
            uow,
            account,
            -value,
            EntryType.GOAL_DEPOSIT,
            description or f"Saved towards {goal.title}",
            category=goal.category,
            goal_id=goal.goal_id,
        )
        goal.current_amount += value
        completed_now = goal.latch_completion(self._clock.now())
        uow.save_goal(goal)
        return goal, entry, completed_now

    def withdraw(self, uow: UnitOfWork, goal_id: str, amount: AmountLike) -> tuple[Goal, LedgerEntry]:
        value = require_positive(to_decimal(amount))
        goal = self.get(uow, goal_id)
        self._ensure_open(goal)
        if value > goal.current_amount:
            raise InvalidStateError(
                f"Goal '{goal.title}' holds {goal.current_amount}; cannot withdraw {value}."
            )
        account = self._ledger.load_account(uow, goal.account_id)
        entry = self._ledger.post(
            uow,
            account,
            value,
            EntryType.GOAL_WITHDRAWAL,
            f"Withdrawn from {goal.title}",
            category=goal.category,
            goal_id=goal.goal_id,
        )
        goal.current_amount -= value
        uow.save_goal(goal)
        return goal, entry

    def request_fulfillment(self, uow: UnitOfWork, goal_id: str) -> Goal:
        goal = self.get(uow, goal_id)
        self._ensure_open(goal)
        if not goal.is_completed:
            raise InvalidStateError(f"Goal '{goal.title}' has not reached its target yet.")
        if goal.current_amount <= ZERO:
            raise InvalidStateError(f"Goal '{goal.title}' has no saved funds to spend.")
        goal.fulfillment_status = FulfillmentStatus.PENDING
        goal.fulfillment_requested_at = self._clock.now()
        goal.fulfillment_resolved_at = None
        goal.fulfillment_resolved_by = None
        uow.save_goal(goal)
        return goal

    def resolve_fulfillment(
        self,
        uow: UnitOfWork,
        goal_id: str,
        action: ResolveAction | str,
        resolver_id: str,
    ) -> tuple[Goal, List[LedgerEntry]]:
        try:
            action = ResolveAction(action)
        except ValueError as exc:
            raise ValidationError(f"Unsupported action: {action!r}") from exc
        if not (resolver_id or "").strip():
            raise ValidationError("resolver_id is required.")
        goal = self.get(uow, goal_id)
        if goal.fulfillment_status is not FulfillmentStatus.PENDING:
            raise InvalidStateError(f"Goal '{goal.title}' has no pending fulfilment request.")
        now = self._clock.now()
        goal.fulfillment_resolved_at = now
        goal.fulfillment_resolved_by = resolver_id
        if action is ResolveAction.REJECT:
            goal.fulfillment_status = FulfillmentStatus.REJECTED
            uow.save_goal(goal)
            return goal, []

        saved = goal.current_amount
        account = self._ledger.load_account(uow, goal.account_id)
        released = self._ledger.post(
            uow,
            account,
            saved,
            EntryType.GOAL_WITHDRAWAL,
            f"Released from {goal.title}",
            category=goal.category,
            goal_id=goal.goal_id,
            actor_id=resolver_id,
        )
        purchase = self._ledger.post(
            uow,
            account,
            -saved,
            EntryType.PURCHASE,
            f"Goal purchase: {goal.title}",
            category=goal.category,
            goal_id=goal.goal_id,
            actor_id=resolver_id,
        )
        goal.current_amount = ZERO
        goal.fulfillment_status = FulfillmentStatus.APPROVED
        goal.latch_completion(now)
        uow.save_goal(goal)
        return goal, [released, purchase]

    def cancel(self, uow: UnitOfWork, goal_id: str) -> tuple[Goal, Optional[LedgerEntry]]:
        goal = self.get(uow, goal_id)
        self._ensure_open(goal)
        if goal.is_completed:
            raise InvalidStateError(f"Goal '{goal.title}' is completed and cannot be cancelled.")
        entry = None
        if goal.current_amount > ZERO:
            account = self._ledger.load_account(uow, goal.account_id)
            entry = self._ledger.post(
                uow,
                account,
                goal.current_amount,
                EntryType.GOAL_WITHDRAWAL,
                f"Goal cancelled: {goal.title}",
                category=goal.category,
                goal_id=goal.goal_id,
            )
            goal.current_amount = ZERO
        goal.is_active = False
        uow.save_goal(goal)
        return goal, entry

    def verify(self, uow: UnitOfWork, goal: Goal) -> bool:
        return goal_balance(uow.entries(goal.account_id), goal.goal_id) == goal.current_amount

    def reconcile(self, uow: UnitOfWork, account_id: str) -> int:
        """Reset every goal's saved amount from the ledger; returns how many changed."""

        entries = uow.entries(account_id)
        repaired = 0
        for goal in uow.goals(account_id):
            saved = goal_balance(entries, goal.goal_id)
            if saved != goal.current_amount:
                goal.current_amount = saved
                uow.save_goal(goal)
                repaired += 1
        return repaired


__all__ = ["GoalTracker", "goal_balance"]
