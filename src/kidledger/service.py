"""High level engine coordinating ledger, requests, goals, schedules and scoring."""

from __future__ import annotations

import threading
from concurrent.futures import ThreadPoolExecutor
from dataclasses import replace
from datetime import date, datetime
from decimal import Decimal
from typing import Callable, Dict, List, Optional, Sequence

from .admin import AuditLog
from .allowance import AllowanceScheduler, describe_frequency
from .clock import Clock
from .config import Settings
from .exceptions import DuplicateAccountError, IntegrityError, ValidationError
from .gamification import GamificationScorer
from .goals import GoalTracker
from .interest import InterestEngine, InterestPreview, preview
from .ledger import LedgerStore, Projection
from .models import (
    Account,
    AllowanceConfig,
    AllowanceFrequency,
    CommandResult,
    CycleResult,
    CycleStatus,
    EntryType,
    GamificationEvent,
    GamificationState,
    Goal,
    InterestConfig,
    LedgerEntry,
    PurchaseRequest,
    ResolveAction,
)
from .money import AmountLike, to_decimal
from .ops import StructuredLogger
from .requests import PurchaseRequestMachine
from .storage import SQLModelStorage, Storage, UnitOfWork

CycleStep = Callable[[UnitOfWork, str], CycleResult]


def _require(value: Optional[str], label: str) -> str:
    if not (value or "").strip():
        raise ValidationError(f"{label} is required.")
    return value.strip()


class KidLedger:
    """Command/query interface of the ledger and rules engine."""

    __slots__ = (
        "_settings",
        "_storage",
        "_clock",
        "_logger",
        "_audit_log",
        "_ledger",
        "_interest",
        "_allowance",
        "_requests",
        "_goals",
        "_scorer",
    )

    def __init__(
        self,
        storage: Optional[Storage] = None,
        *,
        settings: Optional[Settings] = None,
        clock: Optional[Clock] = None,
        logger: Optional[StructuredLogger] = None,
        audit_log: Optional[AuditLog] = None,
    ) -> None:
        self._settings = settings or Settings()
        self._storage = storage or SQLModelStorage(
            self._settings.database_url, lock_timeout=self._settings.lock_timeout
        )
        self._clock = clock or Clock()
        self._logger = logger or StructuredLogger(path=self._settings.log_file)
        self._audit_log = audit_log or AuditLog()
        self._ledger = LedgerStore(clock=self._clock, logger=self._logger)
        self._interest = InterestEngine(
            self._ledger,
            clock=self._clock,
            logger=self._logger,
            cooling_off_days=self._settings.cooling_off_days,
        )
        self._allowance = AllowanceScheduler(self._ledger, logger=self._logger)
        self._requests = PurchaseRequestMachine(
            self._ledger, clock=self._clock, allow_overdraft=self._settings.allow_overdraft
        )
        self._goals = GoalTracker(self._ledger, clock=self._clock)
        self._scorer = GamificationScorer(clock=self._clock, logger=self._logger)

    @property
    def storage(self) -> Storage:
        return self._storage

    @property
    def logger(self) -> StructuredLogger:
        return self._logger

    @property
    def audit_log(self) -> AuditLog:
        return self._audit_log

    def _today(self) -> date:
        return self._clock.today()

    def _owner_of_request(self, request_id: str) -> str:
        with self._storage.transaction() as uow:
            return self._requests.get(uow, request_id).account_id

    def _owner_of_goal(self, goal_id: str) -> str:
        with self._storage.transaction() as uow:
            return self._goals.get(uow, goal_id).account_id

    # ------------------------------------------------------------------
    # Accounts and manual adjustments
    # ------------------------------------------------------------------
    def open_account(
        self,
        account_id: str,
        *,
        family_id: str,
        display_name: str,
        metadata: Optional[Dict[str, str]] = None,
    ) -> Account:
        account_id = _require(account_id, "account_id")
        now = self._clock.now()
        account = Account(
            account_id=account_id,
            family_id=_require(family_id, "family_id"),
            display_name=_require(display_name, "display_name"),
            metadata=dict(metadata or {}),
            created_at=now,
            updated_at=now,
        )
        with self._storage.transaction(account_id) as uow:
            if uow.get_account(account_id) is not None:
                raise DuplicateAccountError(f"Account '{account_id}' already exists.")
            uow.save_account(account)
        self._logger.log("account_opened", account=account_id, family=account.family_id)
        return account

    def get_account(self, account_id: str) -> Account:
        with self._storage.transaction() as uow:
            return self._ledger.load_account(uow, account_id, for_write=False)

    def record_manual_adjustment(
        self,
        account_id: str,
        amount: AmountLike,
        reason: str,
        actor_id: str,
        *,
        category: Optional[str] = None,
    ) -> CommandResult:
        reason = _require(reason, "reason")
        actor_id = _require(actor_id, "actor_id")
        with self._storage.transaction(account_id) as uow:
            entry = self._ledger.append(
                uow,
                LedgerEntry(
                    account_id=account_id,
                    amount=amount,
                    type=EntryType.MANUAL_ADJUSTMENT,
                    description=reason,
                    timestamp=self._clock.now(),
                    category=category,
                    actor_id=actor_id,
                ),
            )
            events = self._scorer.evaluate_badges(uow, account_id, self._today())
        self._audit_log.record(
            actor_id, "manual_adjustment", account_id, details={"amount": str(entry.amount), "reason": reason}
        )
        self._logger.log("manual_adjustment", account=account_id, amount=str(entry.amount), actor=actor_id)
        return CommandResult(entry, tuple(events))

    # ------------------------------------------------------------------
    # Purchase requests
    # ------------------------------------------------------------------
    def submit_purchase_request(
        self,
        account_id: str,
        amount: AmountLike,
        description: str,
        *,
        category: Optional[str] = None,
    ) -> PurchaseRequest:
        with self._storage.transaction(account_id) as uow:
            request = self._requests.submit(uow, account_id, amount, description, category=category)
        self._logger.log(
            "purchase_requested", account=account_id, request=request.request_id, amount=str(request.amount)
        )
        return request

    def get_request(self, request_id: str) -> PurchaseRequest:
        with self._storage.transaction() as uow:
            return self._requests.get(uow, request_id)

    def resolve_purchase_request(
        self,
        request_id: str,
        action: ResolveAction | str,
        resolver_id: str,
        *,
        reason: Optional[str] = None,
    ) -> CommandResult:
        account_id = self._owner_of_request(request_id)
        events: List[GamificationEvent] = []
        with self._storage.transaction(account_id) as uow:
            request, entry = self._requests.resolve(uow, request_id, action, resolver_id, reason=reason)
            if entry is not None:
                events = self._scorer.evaluate_badges(uow, account_id, self._today())
        self._audit_log.record(
            resolver_id,
            f"purchase_request_{request.status.value}",
            request_id,
            details={"account": account_id, "amount": str(request.amount), "reason": reason},
        )
        self._logger.log(
            "purchase_request_resolved",
            account=account_id,
            request=request_id,
            status=request.status.value,
            resolver=resolver_id,
        )
        return CommandResult(request, tuple(events))

    def cancel_purchase_request(self, request_id: str, requester_id: str) -> PurchaseRequest:
        account_id = self._owner_of_request(request_id)
        with self._storage.transaction(account_id) as uow:
            request = self._requests.cancel(uow, request_id, requester_id)
        self._logger.log("purchase_request_cancelled", account=account_id, request=request_id)
        return request

    def pending_requests(self, account_id: Optional[str] = None) -> List[PurchaseRequest]:
        with self._storage.transaction() as uow:
            return self._requests.pending(uow, account_id)

    # ------------------------------------------------------------------
    # Goals
    # ------------------------------------------------------------------
    def create_goal(
        self,
        account_id: str,
        title: str,
        target_amount: AmountLike,
        *,
        category: Optional[str] = None,
    ) -> CommandResult:
        with self._storage.transaction(account_id) as uow:
            goal = self._goals.create(uow, account_id, title, target_amount, category=category)
            events = self._scorer.evaluate_badges(uow, account_id, self._today())
        self._logger.log("goal_created", account=account_id, goal=goal.goal_id, target=str(goal.target_amount))
        return CommandResult(goal, tuple(events))

    def get_goal(self, goal_id: str) -> Goal:
        with self._storage.transaction() as uow:
            return self._goals.get(uow, goal_id)

    def list_goals(self, account_id: str) -> List[Goal]:
        with self._storage.transaction() as uow:
            self._ledger.load_account(uow, account_id, for_write=False)
            return self._goals.goals(uow, account_id)

    def contribute_to_goal(
        self,
        goal_id: str,
        amount: AmountLike,
        *,
        description: Optional[str] = None,
    ) -> CommandResult:
        account_id = self._owner_of_goal(goal_id)
        with self._storage.transaction(account_id) as uow:
            goal, entry, completed_now = self._goals.contribute(uow, goal_id, amount, description=description)
            events = []
            if completed_now:
                events.append(GamificationEvent("goal_completed", account_id, {"goal": goal_id, "title": goal.title}))
            events.extend(self._scorer.evaluate_badges(uow, account_id, self._today()))
        self._logger.log(
            "goal_contribution",
            account=account_id,
            goal=goal_id,
            amount=str(-entry.amount),
            saved=str(goal.current_amount),
            completed=goal.is_completed,
        )
        return CommandResult(goal, tuple(events))

    def withdraw_from_goal(self, goal_id: str, amount: AmountLike) -> CommandResult:
        account_id = self._owner_of_goal(goal_id)
        with self._storage.transaction(account_id) as uow:
            goal, entry = self._goals.withdraw(uow, goal_id, amount)
            events = self._scorer.evaluate_badges(uow, account_id, self._today())
        self._logger.log("goal_withdrawal", account=account_id, goal=goal_id, amount=str(entry.amount))
        return CommandResult(goal, tuple(events))

    def request_goal_fulfillment(self, goal_id: str) -> Goal:
        account_id = self._owner_of_goal(goal_id)
        with self._storage.transaction(account_id) as uow:
            goal = self._goals.request_fulfillment(uow, goal_id)
        self._logger.log("goal_fulfillment_requested", account=account_id, goal=goal_id)
        return goal

    def resolve_goal_fulfillment(
        self,
        goal_id: str,
        action: ResolveAction | str,
        resolver_id: str,
    ) -> CommandResult:
        account_id = self._owner_of_goal(goal_id)
        events: List[GamificationEvent] = []
        with self._storage.transaction(account_id) as uow:
            goal, entries = self._goals.resolve_fulfillment(uow, goal_id, action, resolver_id)
            if entries:
                events = self._scorer.evaluate_badges(uow, account_id, self._today())
        status = goal.fulfillment_status.value if goal.fulfillment_status else None
        self._audit_log.record(resolver_id, f"goal_fulfillment_{status}", goal_id, details={"account": account_id})
        self._logger.log("goal_fulfillment_resolved", account=account_id, goal=goal_id, status=status)
        return CommandResult(goal, tuple(events))

    def cancel_goal(self, goal_id: str) -> CommandResult:
        account_id = self._owner_of_goal(goal_id)
        events: List[GamificationEvent] = []
        with self._storage.transaction(account_id) as uow:
            goal, entry = self._goals.cancel(uow, goal_id)
            if entry is not None:
                events = self._scorer.evaluate_badges(uow, account_id, self._today())
        self._logger.log("goal_cancelled", account=account_id, goal=goal_id)
        return CommandResult(goal, tuple(events))

    # ------------------------------------------------------------------
    # Schedules
    # ------------------------------------------------------------------
    def configure_allowance(
        self,
        account_id: str,
        amount: AmountLike,
        frequency: AllowanceFrequency | str,
        *,
        day_of_month: Optional[int] = None,
        day_of_week: Optional[int] = None,
        is_active: bool = True,
        start_date: Optional[date] = None,
        actor_id: str = "parent",
    ) -> AllowanceConfig:
        with self._storage.transaction(account_id) as uow:
            account = self._ledger.load_account(uow, account_id)
            config = self._allowance.configure(
                uow,
                account,
                amount=amount,
                frequency=frequency,
                today=self._today(),
                day_of_month=day_of_month,
                day_of_week=day_of_week,
                is_active=is_active,
                start_date=start_date,
            )
        self._audit_log.record(actor_id, "configure_allowance", account_id, details={"amount": str(config.amount)})
        self._logger.log(
            "allowance_configured",
            account=account_id,
            amount=str(config.amount),
            schedule=describe_frequency(config),
            next_payment=config.next_payment_date.isoformat(),
        )
        return config

    def configure_interest(
        self,
        account_id: str,
        monthly_rate: AmountLike,
        *,
        minimum_balance: AmountLike = 0,
        application_day: int = 1,
        is_active: bool = True,
        actor_id: str = "parent",
    ) -> InterestConfig:
        with self._storage.transaction(account_id) as uow:
            account = self._ledger.load_account(uow, account_id)
            config = self._interest.configure(
                uow,
                account,
                monthly_rate=monthly_rate,
                minimum_balance=minimum_balance,
                application_day=application_day,
                is_active=is_active,
            )
        self._audit_log.record(actor_id, "configure_interest", account_id, details={"rate": str(config.monthly_rate)})
        self._logger.log("interest_configured", account=account_id, rate=str(config.monthly_rate))
        return config

    # ------------------------------------------------------------------
    # Batch cycles
    # ------------------------------------------------------------------
    def run_allowance_cycle(
        self, as_of: Optional[date] = None, *, stop: Optional[threading.Event] = None
    ) -> List[CycleResult]:
        today = as_of or self._today()
        with self._storage.transaction() as uow:
            account_ids = [config.account_id for config in self._allowance.due_configs(uow, today)]
        return self._run_cycle(
            "allowance", account_ids, lambda uow, account_id: self._allowance.pay(uow, account_id, today), today, stop
        )

    def run_accrual_cycle(
        self, as_of: Optional[date] = None, *, stop: Optional[threading.Event] = None
    ) -> List[CycleResult]:
        today = as_of or self._today()
        with self._storage.transaction() as uow:
            account_ids = [config.account_id for config in uow.interest_configs()]
        return self._run_cycle(
            "accrual", account_ids, lambda uow, account_id: self._interest.accrue(uow, account_id, today), today, stop
        )

    def _run_cycle(
        self,
        name: str,
        account_ids: Sequence[str],
        step: CycleStep,
        today: date,
        stop: Optional[threading.Event],
    ) -> List[CycleResult]:
        def process(account_id: str) -> Optional[CycleResult]:
            if stop is not None and stop.is_set():
                return None
            try:
                with self._storage.transaction(account_id) as uow:
                    result = step(uow, account_id)
                    if result.status is CycleStatus.APPLIED:
                        events = self._scorer.evaluate_badges(uow, account_id, today)
                        result = replace(result, events=tuple(events))
            except Exception as exc:
                self._logger.error(
                    f"{name}_cycle_error",
                    account=account_id,
                    error_type=type(exc).__name__,
                    error=str(exc),
                )
                return CycleResult(
                    account_id=account_id,
                    status=CycleStatus.ERROR,
                    reason=f"{type(exc).__name__}: {exc}",
                )
            self._logger.log(
                f"{name}_cycle_result",
                account=account_id,
                status=result.status.value,
                amount=str(result.amount) if result.amount is not None else None,
                reason=result.reason,
            )
            return result

        workers = min(self._settings.max_workers, len(account_ids))
        if workers > 1:
            with ThreadPoolExecutor(max_workers=workers, thread_name_prefix=f"kidledger-{name}") as pool:
                outcomes = list(pool.map(process, account_ids))
        else:
            outcomes = []
            for account_id in account_ids:
                if stop is not None and stop.is_set():
                    break
                outcomes.append(process(account_id))
        results = [result for result in outcomes if result is not None]
        self._logger.log(
            f"{name}_cycle_finished",
            as_of=today.isoformat(),
            processed=len(results),
            skipped_by_stop=len(account_ids) - len(results),
            errors=sum(1 for result in results if result.status is CycleStatus.ERROR),
        )
        return results

    # ------------------------------------------------------------------
    # Balance queries and integrity
    # ------------------------------------------------------------------
    def verify_balance(self, account_id: str) -> Projection:
        """Recompute the account from its ledger, freezing it on any disagreement."""

        failure: Optional[str] = None
        with self._storage.transaction(account_id) as uow:
            account = self._ledger.load_account(uow, account_id, for_write=False)
            projection = self._ledger.recompute(uow, account_id)
            if not projection.matches(account):
                failure = f"cached balance {account.balance} != ledger balance {projection.balance}"
            else:
                drifted = [
                    goal.title for goal in self._goals.goals(uow, account_id) if not self._goals.verify(uow, goal)
                ]
                if drifted:
                    failure = f"goal savings disagree with the ledger: {', '.join(drifted)}"
            if failure is not None and not account.is_frozen:
                self._ledger.freeze(uow, account_id, projection)
        if failure is not None:
            self._audit_log.record("system", "freeze_account", account_id, details={"reason": failure})
            raise IntegrityError(f"Account '{account_id}' failed verification: {failure}.")
        return projection

    def get_balance(self, account_id: str) -> Decimal:
        return self.verify_balance(account_id).balance

    def get_ledger(self, account_id: str, since: Optional[datetime] = None) -> List[LedgerEntry]:
        with self._storage.transaction() as uow:
            self._ledger.load_account(uow, account_id, for_write=False)
            if since is None:
                return self._ledger.entries(uow, account_id)
            return self._ledger.entries_since(uow, account_id, since)

    def reconcile_account(self, account_id: str, actor_id: str) -> Account:
        actor_id = _require(actor_id, "actor_id")
        with self._storage.transaction(account_id) as uow:
            account = self._ledger.reconcile(uow, account_id)
            repaired = self._goals.reconcile(uow, account_id)
        self._audit_log.record(
            actor_id,
            "reconcile_account",
            account_id,
            details={"balance": str(account.balance), "goals_repaired": repaired},
        )
        return account

    # ------------------------------------------------------------------
    # Gamification
    # ------------------------------------------------------------------
    def get_gamification_state(self, account_id: str) -> GamificationState:
        with self._storage.transaction() as uow:
            self._ledger.load_account(uow, account_id, for_write=False)
            return self._scorer.state(uow, account_id, self._today())

    def award_points(self, account_id: str, points: int, reason: str, actor_id: str) -> CommandResult:
        actor_id = _require(actor_id, "actor_id")
        with self._storage.transaction(account_id) as uow:
            self._ledger.load_account(uow, account_id)
            award = self._scorer.award_points(uow, account_id, points, reason)
            events = self._scorer.evaluate_badges(uow, account_id, self._today())
        self._audit_log.record(actor_id, "award_points", account_id, details={"points": points, "reason": reason})
        self._logger.log("points_awarded", account=account_id, points=points)
        return CommandResult(award, tuple(events))

    # ------------------------------------------------------------------
    # Interest helpers
    # ------------------------------------------------------------------
    def interest_preview(self, balance: AmountLike, monthly_rate: AmountLike) -> InterestPreview:
        return preview(balance, monthly_rate)

    def estimate_interest(self, account_id: str, as_of: Optional[date] = None) -> Decimal:
        with self._storage.transaction() as uow:
            return self._interest.estimate(uow, account_id, as_of or self._today())

    def total_balance(self, family_id: Optional[str] = None) -> Decimal:
        total = to_decimal(0)
        with self._storage.transaction() as uow:
            for account_id in uow.account_ids():
                account = uow.get_account(account_id)
                if account is not None and (family_id is None or account.family_id == family_id):
                    total += account.balance
        return total


__all__ = ["KidLedger"]
