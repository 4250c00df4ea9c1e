"""Storage backends for the ledger engine."""

from .base import Storage, UnitOfWork
from .memory import InMemoryStorage, MemoryUnitOfWork
from .persistence import SQLModelStorage, SQLModelUnitOfWork, build_engine

__all__ = [
    "InMemoryStorage",
    "MemoryUnitOfWork",
    "SQLModelStorage",
    "SQLModelUnitOfWork",
    "Storage",
    "UnitOfWork",
    "build_engine",
]
