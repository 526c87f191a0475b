"""In-process per-account locking."""

from __future__ import annotations

import threading
from contextlib import contextmanager
from dataclasses import dataclass, field
from typing import Dict, Iterator, List, Tuple

from .exceptions import ConcurrencyError


@dataclass(slots=True)
class _AccountLock:
    lock: threading.Lock = field(default_factory=threading.Lock)
    users: int = 0


class AccountLockRegistry:
    """Hand out one lock per account id and acquire them in a stable order.

    An entry lives only while some thread holds or waits for it, so ids that
    are requested once (including ids of accounts that don't exist) don't
    accumulate.
    """

    def __init__(self) -> None:
        self._guard = threading.Lock()
        self._locks: Dict[str, _AccountLock] = {}

    def __len__(self) -> int:
        with self._guard:
            return len(self._locks)

    def _checkout(self, account_id: str) -> _AccountLock:
        with self._guard:
            entry = self._locks.get(account_id)
            if entry is None:
                entry = _AccountLock()
                self._locks[account_id] = entry
            entry.users += 1
            return entry

    def _checkin(self, account_id: str) -> None:
        with self._guard:
            entry = self._locks[account_id]
            entry.users -= 1
            if entry.users == 0:
                del self._locks[account_id]

    @contextmanager
    def hold(self, *account_ids: str, timeout: float = 10.0) -> Iterator[Tuple[str, ...]]:
        """Hold every distinct account lock for the duration of the block.

        Locks are taken in sorted id order so two movements touching the same
        pair of accounts can't deadlock each other.
        """

        ordered = tuple(sorted(set(account_ids)))
        checked_out: List[str] = []
        acquired: List[threading.Lock] = []
        try:
            for account_id in ordered:
                entry = self._checkout(account_id)
                checked_out.append(account_id)
                if not entry.lock.acquire(timeout=timeout):
                    raise ConcurrencyError(f"Timed out waiting for account {account_id}")
                acquired.append(entry.lock)
            yield ordered
        finally:
            for lock in reversed(acquired):
                lock.release()
            for account_id in reversed(checked_out):
                self._checkin(account_id)

    def is_locked(self, account_id: str) -> bool:
        with self._guard:
            entry = self._locks.get(account_id)
        return bool(entry and entry.lock.locked())


__all__ = ["AccountLockRegistry"]
