"""Points, levels and badges derived from ledger and goal history."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import date, timedelta
from decimal import Decimal, ROUND_FLOOR
from typing import Iterable, List, Optional, Sequence, Tuple

from .clock import Clock
from .config import (
    GOAL_DEPOSIT_POINT_CAP,
    LEVEL_BASE_POINTS,
    LEVEL_STEP_POINTS,
    POINTS_PER_APPROVED_REQUEST,
    POINTS_PER_ENTRY,
    POINTS_PER_GOAL_COMPLETED,
    POINTS_PER_GOAL_CREATED,
)
from .exceptions import AccountNotFoundError, ValidationError
from .models import (
    BadgeGrant,
    EntryType,
    GamificationEvent,
    GamificationState,
    Goal,
    LedgerEntry,
    PointAward,
)
from .money import ZERO
from .ops import StructuredLogger
from .storage import UnitOfWork

DEPOSIT_POINT_RATE = Decimal("0.5")


@dataclass(frozen=True, slots=True)
class Badge:
    key: str
    name: str
    description: str
    metric: str
    threshold: Decimal
    xp: int


BADGE_CATALOG: Tuple[Badge, ...] = (
    Badge("first_goal", "First Goal", "Create your first savings goal", "goals_created", Decimal("1"), 50),
    Badge("saver_bronze", "Bronze Saver", "Save $50 towards your goals", "total_saved", Decimal("50"), 100),
    Badge("saver_silver", "Silver Saver", "Save $200 towards your goals", "total_saved", Decimal("200"), 250),
    Badge("goal_completer", "Goal Getter", "Complete a savings goal", "goals_completed", Decimal("1"), 150),
    Badge("goal_master", "Goal Master", "Complete five savings goals", "goals_completed", Decimal("5"), 500),
    Badge(
        "transaction_master",
        "Transaction Master",
        "Log ten transactions",
        "transaction_count",
        Decimal("10"),
        100,
    ),
    Badge("streak_star", "Streak Star", "Save seven days in a row", "best_streak", Decimal("7"), 200),
)
BADGES_BY_KEY = {badge.key: badge for badge in BADGE_CATALOG}


@dataclass(frozen=True, slots=True)
class Metrics:
    total_saved: Decimal
    transaction_count: int
    goals_created: int
    goals_completed: int
    approved_requests: int
    best_streak: int
    current_streak: int
    last_activity_date: Optional[date]

    def value(self, metric: str) -> Decimal:
        return Decimal(getattr(self, metric))


def _streaks(days: Sequence[date], today: Optional[date]) -> tuple[int, int]:
    best = current = run = 0
    previous: Optional[date] = None
    for day in days:
        run = run + 1 if previous is not None and day - previous == timedelta(days=1) else 1
        best = max(best, run)
        previous = day
    if previous is not None and (today is None or today - previous <= timedelta(days=1)):
        current = run
    return best, current


def compute_metrics(
    entries: Iterable[LedgerEntry], goals: Iterable[Goal], *, today: Optional[date] = None
) -> Metrics:
    entries = list(entries)
    goals = list(goals)
    deposits = [entry for entry in entries if entry.type is EntryType.GOAL_DEPOSIT]
    days = sorted({entry.timestamp.date() for entry in deposits})
    best, current = _streaks(days, today)
    return Metrics(
        total_saved=sum((-entry.amount for entry in deposits), ZERO),
        transaction_count=len(entries),
        goals_created=len(goals),
        goals_completed=sum(1 for goal in goals if goal.is_completed),
        approved_requests=sum(1 for entry in entries if entry.type is EntryType.REQUEST_APPROVED),
        best_streak=best,
        current_streak=current,
        last_activity_date=days[-1] if days else None,
    )


def deposit_points(amount: Decimal) -> int:
    points = min(abs(amount) * DEPOSIT_POINT_RATE, Decimal(GOAL_DEPOSIT_POINT_CAP))
    return int(points.to_integral_value(rounding=ROUND_FLOOR))


def level_threshold(level: int) -> int:
    """Cumulative points needed to reach ``level`` (level 1 needs none)."""

    if level <= 1:
        return 0
    threshold = LEVEL_BASE_POINTS
    for step in range(2, level):
        threshold += step * LEVEL_STEP_POINTS
    return threshold


def level_for(points: int) -> int:
    level = 1
    while points >= level_threshold(level + 1):
        level += 1
    return level


def score(
    entries: Iterable[LedgerEntry],
    goals: Iterable[Goal],
    point_awards: Iterable[PointAward] = (),
    granted_badges: Iterable[str] = (),
    *,
    today: Optional[date] = None,
) -> GamificationState:
    """Derive the full gamification state from history; never reads cached values."""

    entries = list(entries)
    metrics = compute_metrics(entries, goals, today=today)
    badges = tuple(sorted(set(granted_badges)))
    points = (
        metrics.transaction_count * POINTS_PER_ENTRY
        + sum(deposit_points(entry.amount) for entry in entries if entry.type is EntryType.GOAL_DEPOSIT)
        + metrics.approved_requests * POINTS_PER_APPROVED_REQUEST
        + metrics.goals_created * POINTS_PER_GOAL_CREATED
        + metrics.goals_completed * POINTS_PER_GOAL_COMPLETED
        + sum(award.points for award in point_awards)
        + sum(BADGES_BY_KEY[key].xp for key in badges if key in BADGES_BY_KEY)
    )
    level = level_for(points)
    return GamificationState(
        points=points,
        level=level,
        points_to_next_level=level_threshold(level + 1) - points,
        level_progress=points - level_threshold(level),
        badges=badges,
        streak_days=metrics.current_streak,
    )


def unlocked_badges(metrics: Metrics, granted: Iterable[str]) -> List[Badge]:
    """Catalog badges whose criteria are met and that were not granted before."""

    already = set(granted)
    return [
        badge
        for badge in BADGE_CATALOG
        if badge.key not in already and metrics.value(badge.metric) >= badge.threshold
    ]


class GamificationScorer:
    """Grant badges once and refresh the points/level cache on the account."""

    __slots__ = ("_clock", "_logger")

    def __init__(self, *, clock: Clock, logger: StructuredLogger) -> None:
        self._clock = clock
        self._logger = logger

    def state(self, uow: UnitOfWork, account_id: str, today: date) -> GamificationState:
        return score(
            uow.entries(account_id),
            uow.goals(account_id),
            uow.point_awards(account_id),
            [grant.badge_key for grant in uow.badge_grants(account_id)],
            today=today,
        )

    def award_points(self, uow: UnitOfWork, account_id: str, points: int, reason: str) -> PointAward:
        if not (reason or "").strip():
            raise ValidationError("A reason is required.")
        if isinstance(points, bool) or not isinstance(points, int):
            raise ValidationError("Points must be a whole number.")
        award = PointAward(account_id=account_id, points=points, reason=reason.strip(), created_at=self._clock.now())
        uow.add_point_award(award)
        return award

    def evaluate_badges(self, uow: UnitOfWork, account_id: str, today: date) -> List[GamificationEvent]:
        account = uow.get_account(account_id)
        if account is None:
            raise AccountNotFoundError(f"Account '{account_id}' does not exist.")
        entries = uow.entries(account_id)
        goals = uow.goals(account_id)
        granted = [grant.badge_key for grant in uow.badge_grants(account_id)]
        metrics = compute_metrics(entries, goals, today=today)

        events: List[GamificationEvent] = []
        now = self._clock.now()
        for badge in unlocked_badges(metrics, granted):
            uow.add_badge_grant(BadgeGrant(account_id=account_id, badge_key=badge.key, granted_at=now))
            granted.append(badge.key)
            events.append(
                GamificationEvent("badge_unlocked", account_id, {"badge": badge.key, "name": badge.name, "xp": badge.xp})
            )
            self._logger.log("badge_unlocked", account=account_id, badge=badge.key)

        state = score(entries, goals, uow.point_awards(account_id), granted, today=today)
        if state.level > account.level:
            events.append(
                GamificationEvent("level_up", account_id, {"from": account.level, "to": state.level})
            )
            self._logger.log("level_up", account=account_id, level=state.level)
        account.points = state.points
        account.level = max(account.level, state.level)
        account.streak_days = metrics.current_streak
        account.last_activity_date = metrics.last_activity_date
        account.updated_at = now
        uow.save_account(account)
        return events


__all__ = [
    "BADGE_CATALOG",
    "Badge",
    "GamificationScorer",
    "Metrics",
    "compute_metrics",
    "deposit_points",
    "level_for",
    "level_threshold",
    "score",
    "unlocked_badges",
]
