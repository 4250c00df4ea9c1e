import json
from datetime import datetime
from decimal import Decimal
from pathlib import Path

import pytest

from kidledger import KidLedger, Settings
from kidledger.admin import AuditLog
from kidledger.clock import FixedClock
from kidledger.exceptions import AccountNotFoundError, DuplicateAccountError, KidLedgerError, ValidationError
from kidledger.ops import StructuredLogger
from kidledger.storage import InMemoryStorage, SQLModelStorage


def test_open_and_lookup_accounts() -> None:
    engine = KidLedger(InMemoryStorage(), clock=FixedClock(datetime(2024, 1, 5, 8, 0)))

    ava = engine.open_account("Ava", family_id="smith", display_name="Ava", metadata={"color": "teal"})
    assert ava.balance == Decimal("0.00")
    assert ava.level == 1
    assert engine.get_account("Ava").metadata == {"color": "teal"}

    with pytest.raises(DuplicateAccountError):
        engine.open_account("Ava", family_id="smith", display_name="Ava")
    with pytest.raises(ValidationError):
        engine.open_account("Ben", family_id=" ", display_name="Ben")
    with pytest.raises(AccountNotFoundError):
        engine.get_account("Nonexistent")
    with pytest.raises(AccountNotFoundError):
        engine.get_ledger("Nonexistent")


def test_every_domain_error_shares_one_base() -> None:
    engine = KidLedger(InMemoryStorage())

    with pytest.raises(KidLedgerError):
        engine.list_goals("nobody")
    with pytest.raises(LookupError):
        engine.get_gamification_state("nobody")
    with pytest.raises(ValueError):
        engine.open_account("", family_id="smith", display_name="Nobody")


def test_default_engine_uses_sqlmodel_storage() -> None:
    engine = KidLedger(settings=Settings(database_url="sqlite://"))

    engine.open_account("ava", family_id="smith", display_name="Ava")
    engine.record_manual_adjustment("ava", 3, "Found a coin jar", "mom")

    assert isinstance(engine.storage, SQLModelStorage)
    assert engine.get_balance("ava") == Decimal("3.00")


def test_total_balance_filters_by_family() -> None:
    engine = KidLedger(InMemoryStorage())
    engine.open_account("ava", family_id="smith", display_name="Ava")
    engine.open_account("ben", family_id="smith", display_name="Ben")
    engine.open_account("cara", family_id="jones", display_name="Cara")
    engine.record_manual_adjustment("ava", 2, "Gift", "mom")
    engine.record_manual_adjustment("ben", 3, "Gift", "mom")
    engine.record_manual_adjustment("cara", 7, "Gift", "dad")

    assert engine.total_balance("smith") == Decimal("5.00")
    assert engine.total_balance("jones") == Decimal("7.00")
    assert engine.total_balance() == Decimal("12.00")


def test_interest_preview_is_available_without_an_account() -> None:
    engine = KidLedger(InMemoryStorage())

    projection = engine.interest_preview("250.00", "0.5")

    assert projection.monthly == Decimal("1.25")
    assert projection.yearly == Decimal("15.00")


def test_settings_from_environment() -> None:
    settings = Settings.from_env(
        {
            "KIDLEDGER_DATABASE_URL": "sqlite:///family.db",
            "KIDLEDGER_COOLING_OFF_DAYS": "14",
            "KIDLEDGER_ALLOW_OVERDRAFT": "yes",
            "KIDLEDGER_MAX_WORKERS": "3",
            "KIDLEDGER_LOG_FILE": "logs/ledger.jsonl",
        }
    )

    assert settings.database_url == "sqlite:///family.db"
    assert settings.cooling_off_days == 14
    assert settings.allow_overdraft is True
    assert settings.max_workers == 3
    assert settings.lock_timeout == 5.0
    assert settings.log_file == Path("logs/ledger.jsonl")


def test_invalid_settings_are_reported() -> None:
    with pytest.raises(ValidationError):
        Settings.from_env({"KIDLEDGER_COOLING_OFF_DAYS": "a month"})
    with pytest.raises(ValidationError):
        Settings.from_env({"KIDLEDGER_MAX_WORKERS": "0"})
    with pytest.raises(ValidationError):
        Settings(lock_timeout=0)


def test_structured_logger_writes_json_lines(tmp_path: Path) -> None:
    path = tmp_path / "logs" / "ledger.jsonl"
    engine = KidLedger(InMemoryStorage(), logger=StructuredLogger(path=path))

    engine.open_account("ava", family_id="smith", display_name="Ava")
    engine.record_manual_adjustment("ava", "1.50", "Tooth fairy", "mom")

    lines = [json.loads(line) for line in path.read_text(encoding="utf-8").splitlines()]
    events = [line["event"] for line in lines]
    assert "account_opened" in events
    assert "manual_adjustment" in events
    assert all(line["level"] in {"debug", "info"} for line in lines)
    adjustment = next(line for line in lines if line["event"] == "manual_adjustment")
    assert adjustment["amount"] == "1.50"


def test_logger_keeps_a_bounded_tail() -> None:
    logger = StructuredLogger(max_entries=3)
    for index in range(5):
        logger.log("tick", index=index)
    logger.warning("slow")

    assert [entry.get("index") for entry in logger.tail()] == [3, 4, None]
    assert logger.tail(event="slow")[0]["level"] == "warning"


def test_audit_log_filters_by_action_and_actor() -> None:
    audit = AuditLog()
    engine = KidLedger(InMemoryStorage(), audit_log=audit)
    engine.open_account("ava", family_id="smith", display_name="Ava")
    engine.configure_allowance("ava", 5, "weekly", actor_id="mom")
    engine.configure_interest("ava", 1, actor_id="dad")

    assert [event.action for event in audit.entries(target="ava")] == ["configure_allowance", "configure_interest"]
    assert audit.entries(actor="dad")[0].details == {"rate": "1.00"}
    assert audit.latest().action == "configure_interest"
