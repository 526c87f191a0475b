"""Operational utilities for keyswallet."""

from __future__ import annotations

import json
import threading
from datetime import datetime
from pathlib import Path
from typing import TYPE_CHECKING, Optional

from .models import as_utc, utc_now

if TYPE_CHECKING:  # pragma: no cover
    from .ledger import LedgerStore


class StructuredLogger:
    """Write JSON lines log entries for operator inspection."""

    def __init__(self, *, path: Path | None = None, max_entries: int = 1000) -> None:
        self.path = path
        self._max_entries = max_entries
        self._entries: list[dict] = []
        self._lock = threading.Lock()

    def log(self, event_type: str, **fields: object) -> dict:
        entry = {"timestamp": utc_now().isoformat(), "event": event_type, **fields}
        with self._lock:
            self._entries.append(entry)
            if len(self._entries) > self._max_entries:
                del self._entries[: len(self._entries) - self._max_entries]
            if self.path:
                self.path.parent.mkdir(parents=True, exist_ok=True)
                with self.path.open("a", encoding="utf-8") as handle:
                    handle.write(json.dumps(entry, default=str) + "\n")
        return entry

    def tail(self, limit: int = 50) -> tuple[dict, ...]:
        with self._lock:
            return tuple(self._entries[-limit:])

    def events(self, event_type: str) -> tuple[dict, ...]:
        with self._lock:
            return tuple(entry for entry in self._entries if entry["event"] == event_type)


class HealthMonitor:
    """Aggregate runtime health information for the status endpoint."""

    def __init__(self, store: "LedgerStore") -> None:
        self._store = store

    def status(self) -> dict:
        online = self._store.ping()
        last_movement = self._store.latest_movement_at() if online else None
        return {
            "status": "ok" if online else "degraded",
            "database": "ok" if online else "down",
            "last_movement_at": as_utc(last_movement).isoformat() if last_movement else None,
            "last_movement_age_seconds": self.age_seconds(last_movement),
        }

    @staticmethod
    def age_seconds(moment: Optional[datetime]) -> Optional[int]:
        if not moment:
            return None
        return int((utc_now() - as_utc(moment)).total_seconds())


__all__ = ["HealthMonitor", "StructuredLogger"]
