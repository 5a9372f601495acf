#!/usr/bin/env python3
"""
Resource Lock Registry

Process-wide map from a resource identity (SubnetSet UID or backend Subnet
path) to a reader/writer lock. Entries are created on first use and dropped
by the garbage collector once the resource is gone.
"""

import threading
from contextlib import contextmanager
from typing import Dict, Iterable, Optional


class RWLock:
    """Reader/writer lock; a waiting writer blocks new readers."""

    def __init__(self):
        self._cond = threading.Condition(threading.Lock())
        self._readers = 0
        self._writer = False
        self._writers_waiting = 0

    def acquire_read(self):
        with self._cond:
            while self._writer or self._writers_waiting:
                self._cond.wait()
            self._readers += 1

    def release_read(self):
        with self._cond:
            if self._readers == 0:
                raise RuntimeError("release_read on a lock that is not read-held")
            self._readers -= 1
            if self._readers == 0:
                self._cond.notify_all()

    def acquire_write(self):
        with self._cond:
            self._writers_waiting += 1
            try:
                while self._writer or self._readers:
                    self._cond.wait()
            finally:
                self._writers_waiting -= 1
            self._writer = True

    def release_write(self):
        with self._cond:
            if not self._writer:
                raise RuntimeError("release_write on a lock that is not write-held")
            self._writer = False
            self._cond.notify_all()

    @property
    def readers(self) -> int:
        with self._cond:
            return self._readers

    @property
    def write_held(self) -> bool:
        with self._cond:
            return self._writer


class LockRegistry:
    """Identity to RWLock map guarded by its own mutex."""

    def __init__(self):
        self._mutex = threading.Lock()
        self._locks: Dict[str, RWLock] = {}

    def _get(self, key: str) -> RWLock:
        with self._mutex:
            lock = self._locks.get(key)
            if lock is None:
                lock = RWLock()
                self._locks[key] = lock
            return lock

    def acquire_read(self, key: str) -> RWLock:
        lock = self._get(key)
        lock.acquire_read()
        return lock

    def acquire_write(self, key: str) -> RWLock:
        lock = self._get(key)
        lock.acquire_write()
        return lock

    def release_read(self, key: str, lock: Optional[RWLock]):
        if lock is not None:
            lock.release_read()

    def release_write(self, key: str, lock: Optional[RWLock]):
        if lock is not None:
            lock.release_write()

    @contextmanager
    def read_locked(self, key: str):
        lock = self.acquire_read(key)
        try:
            yield lock
        finally:
            self.release_read(key, lock)

    @contextmanager
    def write_locked(self, key: str):
        lock = self.acquire_write(key)
        try:
            yield lock
        finally:
            self.release_write(key, lock)

    def sweep(self, live_keys: Iterable[str]) -> int:
        """
        Drop entries whose identity is no longer live.

        Holders of a dropped lock keep using their own reference; only the
        map entry goes away. Returns the number of entries removed.
        """
        live = set(live_keys)
        with self._mutex:
            stale = [key for key in self._locks if key not in live]
            for key in stale:
                del self._locks[key]
        return len(stale)

    def keys(self):
        with self._mutex:
            return list(self._locks)

    def __contains__(self, key: str) -> bool:
        with self._mutex:
            return key in self._locks

    def __len__(self) -> int:
        with self._mutex:
            return len(self._locks)
