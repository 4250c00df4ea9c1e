from datetime import date, datetime, timedelta
from decimal import Decimal

import pytest

from kidledger.clock import FixedClock
from kidledger.exceptions import ValidationError
from kidledger.gamification import (
    BADGE_CATALOG,
    compute_metrics,
    deposit_points,
    level_for,
    level_threshold,
    score,
)
from kidledger.models import EntryType, LedgerEntry, PointAward
from kidledger.service import KidLedger
from kidledger.storage import InMemoryStorage


def _engine(clock: FixedClock | None = None) -> KidLedger:
    engine = KidLedger(InMemoryStorage(), clock=clock or FixedClock(datetime(2024, 6, 1, 18, 0)))
    engine.open_account("ava", family_id="smith", display_name="Ava")
    return engine


def test_level_thresholds_grow_with_each_level() -> None:
    assert [level_threshold(level) for level in range(1, 6)] == [0, 100, 400, 850, 1450]
    assert level_for(0) == 1
    assert level_for(99) == 1
    assert level_for(100) == 2
    assert level_for(849) == 3
    assert level_for(1450) == 5


def test_score_reports_progress_within_the_level() -> None:
    state = score([], [], [PointAward("ava", 117, "Helped with dinner")])

    assert state.points == 117
    assert state.level == 2
    assert state.points_to_next_level == 283
    assert state.level_progress == 17
    assert state.badges == ()


def test_deposit_points_are_capped() -> None:
    assert deposit_points(Decimal("-9.99")) == 4
    assert deposit_points(Decimal("-500.00")) == 100


def test_badge_catalog_keys_are_unique() -> None:
    keys = [badge.key for badge in BADGE_CATALOG]

    assert len(keys) == len(set(keys))
    assert "streak_star" in keys


def test_first_goal_unlocks_badge_and_levels_up() -> None:
    engine = _engine()
    engine.record_manual_adjustment("ava", 20, "Pocket money", "mom")

    result = engine.create_goal("ava", "Kite", 20)

    kinds = [event.kind for event in result.events]
    assert kinds == ["badge_unlocked", "level_up"]
    assert result.events[0].detail["badge"] == "first_goal"
    assert result.events[1].detail == {"from": 1, "to": 2}
    state = engine.get_gamification_state("ava")
    assert state.points == 101
    assert state.level == 2
    assert state.badges == ("first_goal",)
    account = engine.get_account("ava")
    assert (account.points, account.level) == (101, 2)


def test_badges_are_granted_only_once() -> None:
    engine = _engine()
    engine.create_goal("ava", "Kite", 20)

    second = engine.create_goal("ava", "Bike", 40)

    assert "badge_unlocked" not in [event.kind for event in second.events]
    assert engine.get_gamification_state("ava").badges == ("first_goal",)
    with engine.storage.transaction() as uow:
        assert len(uow.badge_grants("ava")) == 1


def test_completing_a_goal_is_celebrated() -> None:
    engine = _engine()
    engine.record_manual_adjustment("ava", 20, "Pocket money", "mom")
    goal = engine.create_goal("ava", "Kite", 20).value

    result = engine.contribute_to_goal(goal.goal_id, 20)

    assert [event.kind for event in result.events] == ["goal_completed", "badge_unlocked", "level_up"]
    assert result.events[1].detail["badge"] == "goal_completer"
    assert engine.get_gamification_state("ava").level == 3


def test_seven_day_saving_streak_unlocks_streak_star() -> None:
    clock = FixedClock(datetime(2024, 6, 1, 18, 0))
    engine = _engine(clock)
    engine.record_manual_adjustment("ava", 10, "Pocket money", "mom")
    goal = engine.create_goal("ava", "Telescope", 100).value

    unlocked = []
    for _ in range(7):
        result = engine.contribute_to_goal(goal.goal_id, 1)
        unlocked.extend(event.detail["badge"] for event in result.events if event.kind == "badge_unlocked")
        clock.advance(days=1)

    assert unlocked == ["streak_star"]
    account = engine.get_account("ava")
    assert account.streak_days == 7
    assert account.last_activity_date == date(2024, 6, 7)


def test_streak_breaks_after_a_missed_day() -> None:
    start = datetime(2024, 6, 1, 12, 0)
    deposits = [
        LedgerEntry("ava", Decimal("-1.00"), EntryType.GOAL_DEPOSIT, "Save", timestamp=start + timedelta(days=offset))
        for offset in (0, 1, 2, 4, 5)
    ]

    metrics = compute_metrics(deposits, [], today=date(2024, 6, 6))
    stale = compute_metrics(deposits, [], today=date(2024, 6, 9))

    assert metrics.best_streak == 3
    assert metrics.current_streak == 2
    assert stale.current_streak == 0
    assert metrics.total_saved == Decimal("5.00")


def test_manual_point_awards_feed_the_level() -> None:
    engine = _engine()

    result = engine.award_points("ava", 117, "Helped with dinner", "mom")

    assert result.value.points == 117
    assert [event.kind for event in result.events] == ["level_up"]
    state = engine.get_gamification_state("ava")
    assert (state.points, state.level, state.points_to_next_level) == (117, 2, 283)
    assert engine.audit_log.entries(action="award_points", actor="mom")


def test_point_awards_must_be_positive_whole_numbers() -> None:
    engine = _engine()

    with pytest.raises(ValidationError):
        engine.award_points("ava", 0, "Nothing", "mom")
    with pytest.raises(ValidationError):
        engine.award_points("ava", 2.5, "Half", "mom")
    with pytest.raises(ValidationError):
        engine.award_points("ava", 5, " ", "mom")

    assert engine.get_gamification_state("ava").points == 0
