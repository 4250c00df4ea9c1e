"""Recurring allowance scheduling."""

from __future__ import annotations

import calendar
from datetime import date, timedelta
from typing import List, Optional

from .exceptions import ValidationError
from .ledger import LedgerStore
from .models import (
    Account,
    AllowanceConfig,
    AllowanceFrequency,
    CycleResult,
    CycleStatus,
    EntryType,
)
from .money import AmountLike
from .ops import StructuredLogger
from .storage import UnitOfWork

BIWEEKLY_DAYS = (1, 15)


def _clamped(year: int, month: int, day: int) -> date:
    return date(year, month, min(day, calendar.monthrange(year, month)[1]))


def _next_month(value: date) -> tuple[int, int]:
    return (value.year + 1, 1) if value.month == 12 else (value.year, value.month + 1)


def idempotency_key(account_id: str, payment_date: date) -> str:
    return f"allowance:{account_id}:{payment_date.isoformat()}"


def next_payment_date(config: AllowanceConfig, from_date: date) -> date:
    """Return the payment date that follows a payment made on ``from_date``."""

    frequency = config.frequency
    if frequency is AllowanceFrequency.DAILY:
        return from_date + timedelta(days=1)
    if frequency is AllowanceFrequency.WEEKLY:
        return from_date + timedelta(days=7)
    if frequency is AllowanceFrequency.BIWEEKLY:
        if from_date.day < 15:
            return from_date.replace(day=15)
        return date(*_next_month(from_date), 1)
    anchor = config.day_of_month or from_date.day
    return _clamped(*_next_month(from_date), anchor)


def initial_payment_date(config: AllowanceConfig, today: date) -> date:
    """Return the first payment date on or after ``today`` for a new rule."""

    frequency = config.frequency
    if frequency is AllowanceFrequency.DAILY:
        return today
    if frequency is AllowanceFrequency.WEEKLY:
        if config.day_of_week is None:
            return today
        return today + timedelta(days=(config.day_of_week - today.weekday()) % 7)
    if frequency is AllowanceFrequency.BIWEEKLY:
        if today.day in BIWEEKLY_DAYS:
            return today
        return next_payment_date(config, today)
    anchor = config.day_of_month or today.day
    this_month = _clamped(today.year, today.month, anchor)
    if this_month >= today:
        return this_month
    return _clamped(*_next_month(today), anchor)


def describe_frequency(config: AllowanceConfig) -> str:
    if config.frequency is AllowanceFrequency.WEEKLY and config.day_of_week is not None:
        return f"every {calendar.day_name[config.day_of_week]}"
    if config.frequency is AllowanceFrequency.BIWEEKLY:
        return "on the 1st and 15th"
    if config.frequency is AllowanceFrequency.MONTHLY:
        return f"monthly on day {config.day_of_month or config.next_payment_date.day}"
    return config.frequency.value


class AllowanceScheduler:
    """Pay due allowances and advance each rule to its next payment date."""

    __slots__ = ("_ledger", "_logger")

    def __init__(self, ledger: LedgerStore, *, logger: StructuredLogger) -> None:
        self._ledger = ledger
        self._logger = logger

    def configure(
        self,
        uow: UnitOfWork,
        account: Account,
        *,
        amount: AmountLike,
        frequency: AllowanceFrequency | str,
        today: date,
        day_of_month: Optional[int] = None,
        day_of_week: Optional[int] = None,
        is_active: bool = True,
        start_date: Optional[date] = None,
    ) -> AllowanceConfig:
        if start_date is not None and start_date < today:
            raise ValidationError("start_date cannot be in the past.")
        existing = uow.get_allowance_config(account.account_id)
        config = AllowanceConfig(
            account_id=account.account_id,
            amount=amount,
            frequency=frequency,
            next_payment_date=start_date or today,
            day_of_month=day_of_month,
            day_of_week=day_of_week,
            is_active=is_active,
            last_paid_date=existing.last_paid_date if existing else None,
        )
        if config.frequency is AllowanceFrequency.MONTHLY and config.day_of_month is None:
            # Pin the anchor so a short month does not pull later payments earlier.
            config.day_of_month = config.next_payment_date.day
        if start_date is None:
            config.next_payment_date = initial_payment_date(config, today)
        uow.save_allowance_config(config)
        return config

    def due_configs(self, uow: UnitOfWork, today: date) -> List[AllowanceConfig]:
        return [
            config
            for config in uow.allowance_configs()
            if config.is_active and config.next_payment_date == today
        ]

    def pay(self, uow: UnitOfWork, account_id: str, today: date) -> CycleResult:
        config = uow.get_allowance_config(account_id)
        if config is None or not config.is_active:
            return CycleResult(account_id=account_id, status=CycleStatus.SKIPPED, reason="no active allowance")
        if config.next_payment_date != today:
            return CycleResult(
                account_id=account_id,
                status=CycleStatus.SKIPPED,
                reason=f"next payment is due on {config.next_payment_date.isoformat()}",
            )

        key = idempotency_key(account_id, today)
        already_paid = uow.find_entry_by_key(key)
        config.next_payment_date = next_payment_date(config, today)
        if already_paid is not None:
            uow.save_allowance_config(config)
            self._logger.warning("allowance_already_paid", account=account_id, key=key)
            return CycleResult(
                account_id=account_id,
                status=CycleStatus.SKIPPED,
                reason="allowance already paid for this date",
                entry_id=already_paid.entry_id,
            )

        account = self._ledger.load_account(uow, account_id)
        entry = self._ledger.post(
            uow,
            account,
            config.amount,
            EntryType.ALLOWANCE,
            f"{config.frequency.value.capitalize()} allowance",
            category="allowance",
            idempotency_key=key,
            timestamp=self._ledger.stamp_for(today),
        )
        config.last_paid_date = today
        uow.save_allowance_config(config)
        return CycleResult(
            account_id=account_id,
            status=CycleStatus.APPLIED,
            amount=config.amount,
            entry_id=entry.entry_id,
        )


__all__ = [
    "AllowanceScheduler",
    "describe_frequency",
    "idempotency_key",
    "initial_payment_date",
    "next_payment_date",
]
