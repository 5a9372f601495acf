"""Tests for the keyed work queue and reconciliation engine"""

import threading
import time
from types import SimpleNamespace

from reconciler.workqueue import ReconciliationEngine, WorkQueue


def test_duplicate_keys_are_collapsed():
    queue = WorkQueue()
    queue.add("ns1/web")
    queue.add("ns1/web")
    assert len(queue) == 1


def test_key_added_while_processing_waits_for_done():
    queue = WorkQueue()
    queue.add("ns1/web")
    key = queue.get(timeout=1)

    queue.add("ns1/web")
    assert len(queue) == 0

    queue.done(key)
    assert len(queue) == 1
    assert queue.get(timeout=1) == "ns1/web"


def test_get_times_out_and_stops_on_shutdown():
    queue = WorkQueue()
    assert queue.get(timeout=0.05) is None

    queue.add("ns1/web")
    queue.shutdown()
    assert queue.get(timeout=1) is None
    queue.add("ns1/api")
    assert len(queue) == 1


def test_add_after_delays_the_key():
    queue = WorkQueue()
    queue.add_after("ns1/web", 0.1)
    assert len(queue) == 0
    assert queue.get(timeout=2) == "ns1/web"


def test_engine_requeues_retryable_failures():
    calls = []

    def reconcile(namespace, name):
        calls.append((namespace, name))
        failed = len(calls) == 1
        return SimpleNamespace(success=not failed, requeue=failed)

    engine = ReconciliationEngine(reconcile, workers=2, requeue_delay=0.05)
    engine.start()
    try:
        engine.enqueue("ns1", "web")
        deadline = time.time() + 5
        while len(calls) < 2 and time.time() < deadline:
            time.sleep(0.01)
        assert engine.queue.wait_idle(5)
    finally:
        engine.stop()

    assert calls == [("ns1", "web"), ("ns1", "web")]
    assert engine.metrics == {"reconciles": 2, "errors": 1, "requeues": 1}


def test_engine_drops_terminal_failures():
    calls = []

    def reconcile(namespace, name):
        calls.append(name)
        return SimpleNamespace(success=False, requeue=False)

    engine = ReconciliationEngine(reconcile, workers=1, requeue_delay=0.01)
    engine.start()
    try:
        engine.enqueue("ns1", "web")
        assert engine.queue.wait_idle(5)
        time.sleep(0.1)
    finally:
        engine.stop()

    assert calls == ["web"]
    assert engine.metrics["requeues"] == 0


def test_engine_never_runs_one_key_twice_at_once():
    active = {"count": 0, "max": 0}
    lock = threading.Lock()
    seen = []

    def reconcile(namespace, name):
        with lock:
            active["count"] += 1
            active["max"] = max(active["max"], active["count"])
        time.sleep(0.02)
        with lock:
            active["count"] -= 1
            seen.append(name)
        return SimpleNamespace(success=True, requeue=False)

    engine = ReconciliationEngine(reconcile, workers=4)
    engine.start()
    try:
        for _ in range(5):
            engine.enqueue("ns1", "web")
            time.sleep(0.005)
        assert engine.queue.wait_idle(5)
    finally:
        engine.stop()

    assert active["max"] == 1
    assert len(seen) >= 1
