"""Monthly interest accrual on balances that have aged past the cooling-off window."""

from __future__ import annotations

import calendar
from dataclasses import dataclass
from datetime import date, datetime, time, timedelta
from decimal import Decimal
from typing import Iterable, Optional

from .clock import Clock
from .exceptions import NotFoundError, ValidationError
from .ledger import LedgerStore
from .models import (
    EARNING_TYPES,
    LAST_DAY_OF_MONTH,
    Account,
    CompoundingFrequency,
    CycleResult,
    CycleStatus,
    EntryType,
    InterestConfig,
    LedgerEntry,
)
from .money import CENT, ZERO, AmountLike, format_currency, round_cents, to_decimal, to_rate
from .ops import StructuredLogger
from .storage import UnitOfWork

HUNDRED = Decimal("100")


@dataclass(frozen=True, slots=True)
class InterestPreview:
    """Projected earnings on a balance at a monthly rate."""

    daily: Decimal
    weekly: Decimal
    monthly: Decimal
    yearly: Decimal


def application_date(config: InterestConfig, today: date) -> date:
    """Return the day of ``today``'s month on which interest may be applied."""

    last_day = calendar.monthrange(today.year, today.month)[1]
    if config.application_day == LAST_DAY_OF_MONTH:
        return today.replace(day=last_day)
    return today.replace(day=min(config.application_day, last_day))


def eligible_balance(balance: Decimal, recent_entries: Iterable[LedgerEntry]) -> Decimal:
    """Return ``balance`` less the earnings still inside the cooling-off window, never negative.

    Only earning-type credits are held back; a goal withdrawal releases money
    that was already in the balance.
    """

    recent_credits = sum(
        (entry.amount for entry in recent_entries if entry.amount > ZERO and entry.type in EARNING_TYPES),
        ZERO,
    )
    eligible = balance - recent_credits
    return eligible if eligible > ZERO else ZERO


def calculate_interest(eligible: Decimal, monthly_rate: Decimal) -> Decimal:
    return round_cents(eligible * monthly_rate / HUNDRED)


def preview(balance: AmountLike, monthly_rate: AmountLike) -> InterestPreview:
    amount = to_decimal(balance)
    rate = to_rate(monthly_rate)
    monthly = amount * rate / HUNDRED
    yearly = monthly * 12
    return InterestPreview(
        daily=round_cents(yearly / 365),
        weekly=round_cents(yearly / 52),
        monthly=round_cents(monthly),
        yearly=round_cents(yearly),
    )


def _format_rate(rate: Decimal) -> str:
    text = f"{rate:.2f}".rstrip("0")
    return text + "0" if text.endswith(".") else text


class InterestEngine:
    """Apply at most one interest entry per account per calendar month."""

    __slots__ = ("_ledger", "_clock", "_logger", "_cooling_off")

    def __init__(
        self,
        ledger: LedgerStore,
        *,
        clock: Clock,
        logger: StructuredLogger,
        cooling_off_days: int = 30,
    ) -> None:
        if cooling_off_days < 0:
            raise ValidationError("cooling_off_days cannot be negative.")
        self._ledger = ledger
        self._clock = clock
        self._logger = logger
        self._cooling_off = timedelta(days=cooling_off_days)

    def configure(
        self,
        uow: UnitOfWork,
        account: Account,
        *,
        monthly_rate: AmountLike,
        minimum_balance: AmountLike = 0,
        application_day: int = 1,
        compounding: CompoundingFrequency | str = CompoundingFrequency.MONTHLY,
        is_active: bool = True,
    ) -> InterestConfig:
        existing = uow.get_interest_config(account.account_id)
        config = InterestConfig(
            account_id=account.account_id,
            monthly_rate=monthly_rate,
            minimum_balance=minimum_balance,
            compounding=compounding,
            application_day=application_day,
            is_active=is_active,
            last_interest_date=existing.last_interest_date if existing else None,
        )
        uow.save_interest_config(config)
        return config

    def cutoff(self, today: date) -> datetime:
        return datetime.combine(today, time.min) - self._cooling_off

    def eligible_balance(self, uow: UnitOfWork, account: Account, today: date) -> Decimal:
        recent = self._ledger.entries_since(uow, account.account_id, self.cutoff(today))
        return eligible_balance(account.balance, recent)

    def estimate(self, uow: UnitOfWork, account_id: str, today: date) -> Decimal:
        """Interest that would be credited today if the date gates were open."""

        config = uow.get_interest_config(account_id)
        if config is None:
            raise NotFoundError(f"Account '{account_id}' has no interest configuration.")
        account = self._ledger.load_account(uow, account_id, for_write=False)
        eligible = self.eligible_balance(uow, account, today)
        if account.balance < config.minimum_balance or eligible < config.minimum_balance:
            return ZERO
        return calculate_interest(eligible, config.monthly_rate)

    def accrue(self, uow: UnitOfWork, account_id: str, today: date) -> CycleResult:
        config = uow.get_interest_config(account_id)
        skip = self._skip_reason(config, today)
        if skip is not None:
            return CycleResult(account_id=account_id, status=CycleStatus.SKIPPED, reason=skip)

        account = self._ledger.load_account(uow, account_id)
        eligible = self.eligible_balance(uow, account, today)
        if account.balance < config.minimum_balance or eligible < config.minimum_balance:
            return CycleResult(
                account_id=account_id,
                status=CycleStatus.SKIPPED,
                reason=f"eligible balance {eligible} is below the minimum of {config.minimum_balance}",
            )
        interest = calculate_interest(eligible, config.monthly_rate)
        if interest < CENT:
            return CycleResult(account_id=account_id, status=CycleStatus.SKIPPED, reason="interest below one cent")

        entry = self._ledger.post(
            uow,
            account,
            interest,
            EntryType.INTEREST,
            f"Monthly interest ({_format_rate(config.monthly_rate)}% on {format_currency(eligible)})",
            category="interest",
            timestamp=self._ledger.stamp_for(today),
        )
        config.last_interest_date = today
        uow.save_interest_config(config)
        return CycleResult(
            account_id=account_id,
            status=CycleStatus.APPLIED,
            amount=interest,
            entry_id=entry.entry_id,
        )

    def _skip_reason(self, config: Optional[InterestConfig], today: date) -> Optional[str]:
        if config is None:
            return "no interest configuration"
        if not config.is_active:
            return "interest is inactive"
        if today < application_date(config, today):
            return "application day has not arrived"
        last = config.last_interest_date
        if last is not None and (last.year, last.month) == (today.year, today.month):
            return "interest already applied this month"
        return None


__all__ = [
    "InterestEngine",
    "InterestPreview",
    "application_date",
    "calculate_interest",
    "eligible_balance",
    "preview",
]
