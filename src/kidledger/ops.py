"""Operational utilities for kidledger."""

from __future__ import annotations

import json
import threading
from pathlib import Path

from .clock import utcnow


class StructuredLogger:
    """Write JSON lines log entries for admin inspection."""

    def __init__(self, *, path: Path | None = None, max_entries: int = 1000) -> None:
        self.path = path
        self._max_entries = max_entries
        self._entries: list[dict] = []
        self._lock = threading.Lock()

    def log(self, event_type: str, *, level: str = "info", **fields: object) -> dict:
        entry = {"timestamp": utcnow().isoformat(), "level": level, "event": event_type, **fields}
        line = json.dumps(entry, default=str)
        with self._lock:
            self._entries.append(entry)
            if len(self._entries) > self._max_entries:
                del self._entries[: len(self._entries) - self._max_entries]
            if self.path:
                self.path.parent.mkdir(parents=True, exist_ok=True)
                with self.path.open("a", encoding="utf-8") as handle:
                    handle.write(line + "\n")
        return entry

    def warning(self, event_type: str, **fields: object) -> dict:
        return self.log(event_type, level="warning", **fields)

    def error(self, event_type: str, **fields: object) -> dict:
        return self.log(event_type, level="error", **fields)

    def tail(self, limit: int = 50, *, event: str | None = None) -> tuple[dict, ...]:
        with self._lock:
            entries = list(self._entries)
        if event is not None:
            entries = [entry for entry in entries if entry["event"] == event]
        return tuple(entries[-limit:])


__all__ = ["StructuredLogger"]
