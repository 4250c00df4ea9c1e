"""Configuration constants for the kidledger engine."""
from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path
from typing import Mapping, Optional

from dotenv import load_dotenv

from .exceptions import ValidationError

load_dotenv()


def _flag(value: str) -> bool:
    return value.strip().lower() in {"1", "true", "yes", "on"}


DATABASE_URL = os.environ.get("KIDLEDGER_DATABASE_URL", "sqlite://")
COOLING_OFF_DAYS = int(os.environ.get("KIDLEDGER_COOLING_OFF_DAYS", "30"))
LOCK_TIMEOUT_SECONDS = float(os.environ.get("KIDLEDGER_LOCK_TIMEOUT", "5"))
ALLOW_OVERDRAFT = _flag(os.environ.get("KIDLEDGER_ALLOW_OVERDRAFT", "0"))
MAX_WORKERS = int(os.environ.get("KIDLEDGER_MAX_WORKERS", "1"))
LOG_FILE = os.environ.get("KIDLEDGER_LOG_FILE") or None

LEVEL_BASE_POINTS = 100
LEVEL_STEP_POINTS = 150
POINTS_PER_ENTRY = 1
POINTS_PER_APPROVED_REQUEST = 25
POINTS_PER_GOAL_CREATED = 50
POINTS_PER_GOAL_COMPLETED = 200
GOAL_DEPOSIT_POINT_CAP = 100


@dataclass(frozen=True, slots=True)
class Settings:
    """Runtime options for a :class:`~kidledger.service.KidLedger` instance."""

    database_url: str = DATABASE_URL
    cooling_off_days: int = COOLING_OFF_DAYS
    lock_timeout: float = LOCK_TIMEOUT_SECONDS
    allow_overdraft: bool = ALLOW_OVERDRAFT
    max_workers: int = MAX_WORKERS
    log_file: Optional[Path] = Path(LOG_FILE) if LOG_FILE else None

    def __post_init__(self) -> None:
        if self.cooling_off_days < 0:
            raise ValidationError("cooling_off_days cannot be negative.")
        if self.lock_timeout <= 0:
            raise ValidationError("lock_timeout must be positive.")
        if self.max_workers < 1:
            raise ValidationError("max_workers must be at least 1.")

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None) -> "Settings":
        env = os.environ if environ is None else environ
        try:
            log_file = env.get("KIDLEDGER_LOG_FILE")
            return cls(
                database_url=env.get("KIDLEDGER_DATABASE_URL", "sqlite://"),
                cooling_off_days=int(env.get("KIDLEDGER_COOLING_OFF_DAYS", "30")),
                lock_timeout=float(env.get("KIDLEDGER_LOCK_TIMEOUT", "5")),
                allow_overdraft=_flag(env.get("KIDLEDGER_ALLOW_OVERDRAFT", "0")),
                max_workers=int(env.get("KIDLEDGER_MAX_WORKERS", "1")),
                log_file=Path(log_file) if log_file else None,
            )
        except ValueError as exc:
            if isinstance(exc, ValidationError):
                raise
            raise ValidationError(f"Invalid KIDLEDGER_* setting: {exc}") from exc


__all__ = [
    "ALLOW_OVERDRAFT",
    "COOLING_OFF_DAYS",
    "DATABASE_URL",
    "GOAL_DEPOSIT_POINT_CAP",
    "LEVEL_BASE_POINTS",
    "LEVEL_STEP_POINTS",
    "LOCK_TIMEOUT_SECONDS",
    "LOG_FILE",
    "MAX_WORKERS",
    "POINTS_PER_APPROVED_REQUEST",
    "POINTS_PER_ENTRY",
    "POINTS_PER_GOAL_COMPLETED",
    "POINTS_PER_GOAL_CREATED",
    "Settings",
]
