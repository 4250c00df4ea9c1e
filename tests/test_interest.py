from datetime import date, datetime
from decimal import Decimal

import pytest

from kidledger.clock import FixedClock
from kidledger.config import Settings
from kidledger.exceptions import NotFoundError, ValidationError
from kidledger.interest import application_date, calculate_interest, eligible_balance, preview
from kidledger.models import CycleStatus, EntryType, InterestConfig, LedgerEntry
from kidledger.service import KidLedger
from kidledger.storage import InMemoryStorage


def _engine_with_aged_and_fresh_money() -> tuple[KidLedger, FixedClock]:
    clock = FixedClock(datetime(2024, 1, 2, 10, 0))
    engine = KidLedger(InMemoryStorage(), clock=clock)
    engine.open_account("ava", family_id="smith", display_name="Ava")
    engine.record_manual_adjustment("ava", 60, "Birthday money", "grandma")
    clock.set(datetime(2024, 2, 10, 10, 0))
    engine.record_manual_adjustment("ava", 40, "Chores", "mom")
    clock.set(datetime(2024, 2, 15, 10, 0))
    engine.configure_interest("ava", 1, minimum_balance=10)
    return engine, clock


def test_fresh_deposits_do_not_earn_interest() -> None:
    engine, _ = _engine_with_aged_and_fresh_money()

    results = engine.run_accrual_cycle(date(2024, 2, 15))

    assert len(results) == 1
    result = results[0]
    assert result.status is CycleStatus.APPLIED
    assert result.amount == Decimal("0.60")
    interest = engine.get_ledger("ava")[-1]
    assert interest.type is EntryType.INTEREST
    assert interest.description == "Monthly interest (1.0% on $60.00)"
    assert engine.get_balance("ava") == Decimal("100.60")
    assert engine.get_account("ava").total_earned == Decimal("100.60")


def test_interest_is_applied_once_per_month() -> None:
    engine, clock = _engine_with_aged_and_fresh_money()
    engine.run_accrual_cycle(date(2024, 2, 15))

    clock.advance(days=5)
    second = engine.run_accrual_cycle(date(2024, 2, 20))

    assert second[0].status is CycleStatus.SKIPPED
    assert "already applied" in second[0].reason
    assert engine.get_balance("ava") == Decimal("100.60")


def test_interest_waits_for_application_day() -> None:
    engine, _ = _engine_with_aged_and_fresh_money()
    engine.configure_interest("ava", 1, minimum_balance=10, application_day=20)

    early = engine.run_accrual_cycle(date(2024, 2, 15))
    on_time = engine.run_accrual_cycle(date(2024, 2, 20))

    assert early[0].status is CycleStatus.SKIPPED
    assert on_time[0].status is CycleStatus.APPLIED


def test_interest_skips_balances_below_minimum() -> None:
    engine, _ = _engine_with_aged_and_fresh_money()
    engine.configure_interest("ava", 1, minimum_balance=75)

    result = engine.run_accrual_cycle(date(2024, 2, 15))[0]

    assert result.status is CycleStatus.SKIPPED
    assert "below the minimum" in result.reason
    assert engine.get_balance("ava") == Decimal("100.00")


def test_inactive_interest_is_skipped() -> None:
    engine, _ = _engine_with_aged_and_fresh_money()
    engine.configure_interest("ava", 1, is_active=False)

    result = engine.run_accrual_cycle(date(2024, 2, 15))[0]

    assert result.status is CycleStatus.SKIPPED
    assert result.reason == "interest is inactive"


def test_tiny_interest_is_treated_as_rounding_noise() -> None:
    clock = FixedClock(datetime(2024, 1, 1))
    engine = KidLedger(InMemoryStorage(), clock=clock)
    engine.open_account("leo", family_id="smith", display_name="Leo")
    engine.record_manual_adjustment("leo", "0.40", "Found coins", "dad")
    engine.configure_interest("leo", 1)
    clock.set(datetime(2024, 3, 1))

    result = engine.run_accrual_cycle(date(2024, 3, 1))[0]

    assert result.status is CycleStatus.SKIPPED
    assert result.reason == "interest below one cent"


def test_eligible_balance_only_subtracts_recent_credits_and_clamps() -> None:
    now = datetime(2024, 5, 1)
    recent = [
        LedgerEntry("ava", Decimal("30.00"), EntryType.ALLOWANCE, "Allowance", timestamp=now),
        LedgerEntry("ava", Decimal("-5.00"), EntryType.REQUEST_APPROVED, "Snack", timestamp=now),
    ]

    assert eligible_balance(Decimal("25.00"), recent) == Decimal("0.00")
    assert eligible_balance(Decimal("80.00"), recent) == Decimal("50.00")
    assert calculate_interest(Decimal("33.33"), Decimal("1.50")) == Decimal("0.50")


def test_application_day_thirty_means_last_day_of_month() -> None:
    config = InterestConfig(account_id="ava", monthly_rate=1, application_day=30)

    assert application_date(config, date(2024, 2, 3)) == date(2024, 2, 29)
    assert application_date(config, date(2024, 7, 3)) == date(2024, 7, 31)

    with pytest.raises(ValidationError):
        InterestConfig(account_id="ava", monthly_rate=1, application_day=29)
    with pytest.raises(ValidationError):
        InterestConfig(account_id="ava", monthly_rate=101)


def test_preview_projects_monthly_rate() -> None:
    projection = preview(100, 1)

    assert projection.monthly == Decimal("1.00")
    assert projection.yearly == Decimal("12.00")
    assert projection.weekly == Decimal("0.23")
    assert projection.daily == Decimal("0.03")


def test_estimate_ignores_date_gates() -> None:
    engine, _ = _engine_with_aged_and_fresh_money()
    engine.run_accrual_cycle(date(2024, 2, 15))

    assert engine.estimate_interest("ava", date(2024, 2, 16)) == Decimal("0.60")
    assert engine.estimate_interest("ava", date(2024, 3, 20)) == Decimal("1.01")

    engine.open_account("leo", family_id="smith", display_name="Leo")
    with pytest.raises(NotFoundError):
        engine.estimate_interest("leo")


def test_cooling_off_window_is_configurable() -> None:
    clock = FixedClock(datetime(2024, 2, 10))
    engine = KidLedger(InMemoryStorage(), clock=clock, settings=Settings(cooling_off_days=0))
    engine.open_account("ava", family_id="smith", display_name="Ava")
    engine.record_manual_adjustment("ava", 100, "Fresh deposit", "mom")
    engine.configure_interest("ava", 2)
    clock.advance(days=1)

    result = engine.run_accrual_cycle(date(2024, 2, 11))[0]

    assert result.amount == Decimal("2.00")


def test_goal_withdrawal_inside_the_window_keeps_earning() -> None:
    clock = FixedClock(datetime(2024, 1, 2, 10, 0))
    engine = KidLedger(InMemoryStorage(), clock=clock)
    engine.open_account("ava", family_id="smith", display_name="Ava")
    engine.record_manual_adjustment("ava", 100, "Savings jar", "mom")
    engine.configure_interest("ava", 1)
    clock.set(datetime(2024, 3, 1, 9, 0))
    goal = engine.create_goal("ava", "Scooter", 80).value
    engine.contribute_to_goal(goal.goal_id, 50)
    engine.withdraw_from_goal(goal.goal_id, 50)

    result = engine.run_accrual_cycle(date(2024, 3, 1))[0]

    assert result.status is CycleStatus.APPLIED
    assert result.amount == Decimal("1.00")
    release = LedgerEntry("ava", Decimal("50.00"), EntryType.GOAL_WITHDRAWAL, "Back from goal")
    assert eligible_balance(Decimal("100.00"), [release]) == Decimal("100.00")


def test_back_filled_accrual_is_stamped_on_its_own_day() -> None:
    engine, clock = _engine_with_aged_and_fresh_money()
    clock.set(datetime(2024, 3, 5, 10, 0))

    late = engine.run_accrual_cycle(date(2024, 2, 15))[0]

    assert late.status is CycleStatus.APPLIED
    interest = next(entry for entry in engine.get_ledger("ava") if entry.entry_id == late.entry_id)
    assert interest.timestamp == datetime(2024, 2, 15)

    current = engine.run_accrual_cycle(date(2024, 3, 5))[0]

    assert current.status is CycleStatus.APPLIED
    assert current.amount == Decimal("0.60")
    assert engine.get_ledger("ava")[-1].timestamp == datetime(2024, 3, 5, 10, 0)
