import threading
from datetime import date, datetime
from decimal import Decimal

from kidledger.clock import FixedClock
from kidledger.config import Settings
from kidledger.models import CycleStatus
from kidledger.ops import StructuredLogger
from kidledger.service import KidLedger
from kidledger.storage import InMemoryStorage

PAYDAY = date(2024, 7, 1)


class StopAfterFirstResult(StructuredLogger):
    def __init__(self, stop: threading.Event) -> None:
        super().__init__()
        self.stop = stop

    def log(self, event_type: str, *, level: str = "info", **fields: object) -> dict:
        if event_type == "allowance_cycle_result":
            self.stop.set()
        return super().log(event_type, level=level, **fields)


def _family(names=("ava", "leo", "mia"), **kwargs) -> KidLedger:
    engine = KidLedger(InMemoryStorage(), clock=FixedClock(datetime(2024, 7, 1, 6, 0)), **kwargs)
    for name in names:
        engine.open_account(name, family_id="smith", display_name=name.title())
        engine.configure_allowance(name, 5, "daily")
    return engine


def _freeze(engine: KidLedger, account_id: str) -> None:
    with engine.storage.transaction(account_id) as uow:
        account = uow.get_account(account_id)
        account.is_frozen = True
        uow.save_account(account)


def test_one_failing_account_does_not_stop_the_cycle() -> None:
    engine = _family()
    _freeze(engine, "leo")

    results = engine.run_allowance_cycle(PAYDAY)

    by_account = {result.account_id: result for result in results}
    assert by_account["ava"].status is CycleStatus.APPLIED
    assert by_account["mia"].status is CycleStatus.APPLIED
    assert by_account["leo"].status is CycleStatus.ERROR
    assert by_account["leo"].reason.startswith("AccountFrozenError")
    assert engine.total_balance("smith") == Decimal("10.00")
    finished = engine.logger.tail(event="allowance_cycle_finished")[-1]
    assert (finished["processed"], finished["errors"]) == (3, 1)


def test_preset_stop_signal_processes_nothing() -> None:
    engine = _family()
    stop = threading.Event()
    stop.set()

    results = engine.run_allowance_cycle(PAYDAY, stop=stop)

    assert results == []
    assert engine.total_balance() == Decimal("0.00")
    assert engine.logger.tail(event="allowance_cycle_finished")[-1]["skipped_by_stop"] == 3


def test_stop_signal_mid_cycle_leaves_remaining_accounts_for_the_next_run() -> None:
    stop = threading.Event()
    engine = _family(logger=StopAfterFirstResult(stop))

    results = engine.run_allowance_cycle(PAYDAY, stop=stop)

    assert [result.account_id for result in results] == ["ava"]
    assert engine.get_balance("ava") == Decimal("5.00")
    assert engine.get_balance("leo") == Decimal("0.00")

    rerun = engine.run_allowance_cycle(PAYDAY)

    assert sorted(result.account_id for result in rerun) == ["leo", "mia"]
    assert engine.total_balance("smith") == Decimal("15.00")


def test_parallel_cycle_pays_every_account_once() -> None:
    names = tuple(f"kid{index}" for index in range(8))
    engine = _family(names, settings=Settings(max_workers=4))

    results = engine.run_allowance_cycle(PAYDAY)

    assert len(results) == 8
    assert all(result.status is CycleStatus.APPLIED for result in results)
    assert engine.run_allowance_cycle(PAYDAY) == []
    assert engine.total_balance("smith") == Decimal("40.00")
    for name in names:
        assert len(engine.get_ledger(name)) == 1


def test_accrual_cycle_reports_every_configured_account() -> None:
    engine = _family()
    for name in ("ava", "leo"):
        engine.record_manual_adjustment(name, 100, "Opening deposit", "mom")
    engine.configure_interest("ava", 1)
    engine.configure_interest("leo", 1, is_active=False)

    results = engine.run_accrual_cycle(date(2024, 9, 1))

    statuses = {result.account_id: result.status for result in results}
    assert statuses == {"ava": CycleStatus.APPLIED, "leo": CycleStatus.SKIPPED}
    assert engine.get_balance("ava") == Decimal("101.00")
