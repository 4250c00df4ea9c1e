from datetime import datetime, timedelta
from decimal import Decimal

import pytest

from kidledger.clock import FixedClock
from kidledger.exceptions import (
    AccountFrozenError,
    AccountNotFoundError,
    DuplicateAccountError,
    IntegrityError,
    ValidationError,
)
from kidledger.ledger import LedgerStore, project
from kidledger.models import EntryType, LedgerEntry
from kidledger.money import format_currency, from_cents, round_cents, to_cents, to_decimal
from kidledger.ops import StructuredLogger
from kidledger.service import KidLedger
from kidledger.storage import InMemoryStorage


def _engine(clock: FixedClock | None = None) -> KidLedger:
    engine = KidLedger(InMemoryStorage(), clock=clock or FixedClock(datetime(2024, 3, 15, 9, 0)))
    engine.open_account("ava", family_id="smith", display_name="Ava")
    return engine


def test_to_decimal_rejects_extra_precision() -> None:
    assert to_decimal("12.5") == Decimal("12.50")
    assert to_decimal(3) == Decimal("3.00")

    with pytest.raises(ValidationError):
        to_decimal("1.005")
    with pytest.raises(ValidationError):
        to_decimal("abc")
    with pytest.raises(ValidationError):
        to_decimal(True)


def test_money_helpers_round_half_up_and_convert_cents() -> None:
    assert round_cents(Decimal("0.605")) == Decimal("0.61")
    assert to_cents(Decimal("-12.34")) == -1234
    assert from_cents(1999) == Decimal("19.99")
    assert format_currency(Decimal("1234.5")) == "$1,234.50"


def test_zero_amount_entries_are_rejected() -> None:
    with pytest.raises(ValidationError):
        LedgerEntry(account_id="ava", amount=0, type=EntryType.MANUAL_ADJUSTMENT, description="Nothing")


def test_entry_type_is_a_closed_set() -> None:
    with pytest.raises(ValidationError):
        LedgerEntry(account_id="ava", amount=1, type="gift", description="Birthday")


def test_open_account_rejects_duplicates() -> None:
    engine = _engine()

    with pytest.raises(DuplicateAccountError):
        engine.open_account("ava", family_id="smith", display_name="Ava again")


def test_manual_adjustment_updates_balance_and_totals() -> None:
    engine = _engine()

    result = engine.record_manual_adjustment("ava", "12.50", "Birthday money", "mom")
    engine.record_manual_adjustment("ava", "-2.50", "Broke a window", "dad")

    entry = result.value
    assert entry.type is EntryType.MANUAL_ADJUSTMENT
    assert entry.actor_id == "mom"
    account = engine.get_account("ava")
    assert account.balance == Decimal("10.00")
    assert account.total_earned == Decimal("12.50")
    assert engine.get_balance("ava") == Decimal("10.00")
    assert engine.audit_log.entries(action="manual_adjustment", actor="dad")


def test_manual_adjustment_validates_before_writing() -> None:
    engine = _engine()

    with pytest.raises(ValidationError):
        engine.record_manual_adjustment("ava", "1.001", "Too precise", "mom")
    with pytest.raises(ValidationError):
        engine.record_manual_adjustment("ava", 5, "", "mom")
    with pytest.raises(AccountNotFoundError):
        engine.record_manual_adjustment("ghost", 5, "Who?", "mom")

    assert engine.get_ledger("ava") == []
    assert engine.get_balance("ava") == Decimal("0.00")


def test_balance_always_equals_sum_of_entries() -> None:
    engine = _engine()
    for amount in ("5.00", "2.35", "-1.10", "0.01", "-0.26"):
        engine.record_manual_adjustment("ava", amount, "Adjustment", "mom")
    goal = engine.create_goal("ava", "Kite", 20).value
    engine.contribute_to_goal(goal.goal_id, "3.00")
    engine.withdraw_from_goal(goal.goal_id, "1.00")

    entries = engine.get_ledger("ava")
    assert engine.get_balance("ava") == sum((entry.amount for entry in entries), Decimal("0.00"))
    assert engine.get_balance("ava") == Decimal("4.00")


def test_get_ledger_since_orders_by_timestamp() -> None:
    clock = FixedClock(datetime(2024, 3, 1, 8, 0))
    engine = _engine(clock)
    engine.record_manual_adjustment("ava", 1, "First", "mom")
    clock.advance(days=3)
    engine.record_manual_adjustment("ava", 2, "Second", "mom")
    clock.advance(days=3)
    engine.record_manual_adjustment("ava", 3, "Third", "mom")

    recent = engine.get_ledger("ava", since=datetime(2024, 3, 4))

    assert [entry.description for entry in recent] == ["Second", "Third"]
    assert [entry.timestamp for entry in recent] == sorted(entry.timestamp for entry in recent)


def test_projection_recomputes_totals() -> None:
    now = datetime(2024, 1, 1)
    entries = [
        LedgerEntry("ava", Decimal("10.00"), EntryType.ALLOWANCE, "Allowance", timestamp=now),
        LedgerEntry("ava", Decimal("-4.00"), EntryType.REQUEST_APPROVED, "Comic", timestamp=now),
        LedgerEntry("ava", Decimal("-3.00"), EntryType.GOAL_DEPOSIT, "Saving", timestamp=now + timedelta(days=1)),
    ]

    projection = project(entries)

    assert projection.balance == Decimal("3.00")
    assert projection.total_earned == Decimal("10.00")
    assert projection.total_spent == Decimal("4.00")
    assert projection.entry_count == 3


def test_integrity_failure_freezes_account_until_reconciled() -> None:
    engine = _engine()
    engine.record_manual_adjustment("ava", 10, "Gift", "grandma")
    with engine.storage.transaction("ava") as uow:
        account = uow.get_account("ava")
        account.balance += Decimal("5.00")
        uow.save_account(account)

    with pytest.raises(IntegrityError):
        engine.get_balance("ava")
    assert engine.get_account("ava").is_frozen
    assert engine.logger.tail(event="integrity_failure")
    with pytest.raises(AccountFrozenError):
        engine.record_manual_adjustment("ava", 1, "Blocked", "mom")

    reconciled = engine.reconcile_account("ava", "admin")

    assert not reconciled.is_frozen
    assert engine.get_balance("ava") == Decimal("10.00")
    assert engine.audit_log.entries(action="reconcile_account")
    engine.record_manual_adjustment("ava", 1, "Allowed again", "mom")
    assert engine.get_balance("ava") == Decimal("11.00")


def test_ledger_store_append_requires_known_account() -> None:
    storage = InMemoryStorage()
    store = LedgerStore(clock=FixedClock(datetime(2024, 1, 1)), logger=StructuredLogger())

    with pytest.raises(AccountNotFoundError):
        with storage.transaction("ghost") as uow:
            store.append(uow, LedgerEntry("ghost", Decimal("1.00"), EntryType.ALLOWANCE, "Allowance"))
