"""
In-process serialization of writers per (material, plant).

The database row lock on MaterialBalance serializes writers across
processes; this registry keeps threads of one process from even reaching
the database concurrently for the same material, which is also what makes
single-connection SQLite safe to share between threads.
"""

from __future__ import annotations

import threading
from collections.abc import Generator
from contextlib import contextmanager


class MaterialLockRegistry:
    """One re-entrant lock per (material, plant), created on first use."""

    def __init__(self) -> None:
        self._guard = threading.Lock()
        self._locks: dict[tuple[str, str], threading.RLock] = {}

    def lock_for(self, material_id: str, plant_id: str) -> threading.RLock:
        key = (material_id, plant_id)
        with self._guard:
            lock = self._locks.get(key)
            if lock is None:
                lock = threading.RLock()
                self._locks[key] = lock
            return lock

    @contextmanager
    def hold(self, material_id: str, plant_id: str) -> Generator[None, None, None]:
        lock = self.lock_for(material_id, plant_id)
        with lock:
            yield


material_locks = MaterialLockRegistry()
