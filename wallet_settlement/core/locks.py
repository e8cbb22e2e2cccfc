from __future__ import annotations

import threading
from collections.abc import Iterator
from contextlib import contextmanager
from uuid import UUID


class AccountLocks:
    """Process-wide registry of one mutex per account id.

    Every balance-affecting transition for an account runs inside
    ``hold(account_id)``. Distinct accounts never contend.
    """

    def __init__(self) -> None:
        self._guard = threading.Lock()
        self._locks: dict[UUID, threading.Lock] = {}

    def _lock_for(self, account_id: UUID) -> threading.Lock:
        with self._guard:
            lock = self._locks.get(account_id)
            if lock is None:
                lock = threading.Lock()
                self._locks[account_id] = lock
            return lock

    @contextmanager
    def hold(self, account_id: UUID) -> Iterator[None]:
        lock = self._lock_for(account_id)
        with lock:
            yield
