#!/usr/bin/env python3
"""
Keyed work queue and the worker pool that drains it.

A key is never handed to two workers at once: a key added while it is being
processed is parked and re-queued when the worker calls done().
"""

import logging
import threading
import time
from collections import deque
from typing import Callable, List, Optional

from config import MAX_CONCURRENT_RECONCILES, REQUEUE_DELAY_SECONDS

logger = logging.getLogger(__name__)


class WorkQueue:
    def __init__(self):
        self._cond = threading.Condition()
        self._queue = deque()
        self._dirty = set()
        self._processing = set()
        self._timers: List[threading.Timer] = []
        self._shutting_down = False

    def add(self, key: str):
        with self._cond:
            if self._shutting_down or key in self._dirty:
                return
            self._dirty.add(key)
            if key in self._processing:
                return
            self._queue.append(key)
            self._cond.notify_all()

    def add_after(self, key: str, delay: float):
        if delay <= 0:
            self.add(key)
            return
        timer = threading.Timer(delay, self.add, args=(key,))
        timer.daemon = True
        with self._cond:
            if self._shutting_down:
                return
            self._timers = [t for t in self._timers if t.is_alive()]
            self._timers.append(timer)
        timer.start()

    def get(self, timeout: Optional[float] = None) -> Optional[str]:
        """Next key, or None once shut down (or on timeout)."""
        with self._cond:
            deadline = None if timeout is None else time.time() + timeout
            while not self._queue and not self._shutting_down:
                remaining = None if deadline is None else deadline - time.time()
                if remaining is not None and remaining <= 0:
                    return None
                self._cond.wait(remaining)
            if self._shutting_down:
                return None
            key = self._queue.popleft()
            self._processing.add(key)
            self._dirty.discard(key)
            return key

    def done(self, key: str):
        with self._cond:
            self._processing.discard(key)
            if key in self._dirty:
                self._queue.append(key)
            self._cond.notify_all()

    def wait_idle(self, timeout: float = 5.0) -> bool:
        """Block until nothing is queued or in flight; False on timeout."""
        deadline = time.time() + timeout
        with self._cond:
            while self._queue or self._processing:
                remaining = deadline - time.time()
                if remaining <= 0:
                    return False
                self._cond.wait(remaining)
            return True

    def shutdown(self):
        with self._cond:
            self._shutting_down = True
            for timer in self._timers:
                timer.cancel()
            self._timers = []
            self._cond.notify_all()

    def __len__(self):
        with self._cond:
            return len(self._queue)


class ReconciliationEngine:
    """
    Bounded pool of reconcile workers.

    reconcile_fn(namespace, name) returns a result with `success` and
    `requeue`; failed keys that ask for it are re-added after the delay.
    """

    def __init__(
        self,
        reconcile_fn: Callable,
        workers: int = MAX_CONCURRENT_RECONCILES,
        requeue_delay: float = REQUEUE_DELAY_SECONDS,
        name: str = "subnetset",
    ):
        self.reconcile_fn = reconcile_fn
        self.workers = workers
        self.requeue_delay = requeue_delay
        self.name = name
        self.queue = WorkQueue()
        self._threads: List[threading.Thread] = []
        self._metrics_lock = threading.Lock()
        self.metrics = {"reconciles": 0, "errors": 0, "requeues": 0}

    def enqueue(self, namespace: str, name: str):
        self.queue.add(f"{namespace}/{name}")

    def start(self):
        for i in range(self.workers):
            thread = threading.Thread(
                target=self._worker, name=f"{self.name}-worker-{i}", daemon=True
            )
            thread.start()
            self._threads.append(thread)
        logger.info(f"Reconciliation Engine: started {self.workers} {self.name} workers")

    def stop(self, timeout: float = 5.0):
        self.queue.shutdown()
        for thread in self._threads:
            thread.join(timeout)
        self._threads = []

    def _worker(self):
        while True:
            key = self.queue.get()
            if key is None:
                return
            try:
                self.process(key)
            finally:
                self.queue.done(key)

    def process(self, key: str):
        namespace, name = key.split("/", 1)
        try:
            result = self.reconcile_fn(namespace, name)
            failed, requeue = not result.success, result.requeue
        except Exception as e:
            logger.exception(f"Reconciliation Engine: unexpected error for {key}: {e}")
            failed, requeue = True, True

        with self._metrics_lock:
            self.metrics["reconciles"] += 1
            if failed:
                self.metrics["errors"] += 1
            if requeue:
                self.metrics["requeues"] += 1
        if requeue:
            self.queue.add_after(key, self.requeue_delay)
