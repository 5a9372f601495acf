"""Tests for the resource lock registry"""

import threading
import time

import pytest

from reconciler.locks import LockRegistry, RWLock


def test_readers_share_the_lock():
    registry = LockRegistry()
    first = registry.acquire_read("uid-1")
    second = registry.acquire_read("uid-1")

    assert first is second
    assert first.readers == 2

    registry.release_read("uid-1", first)
    registry.release_read("uid-1", second)
    assert first.readers == 0


def test_writer_excludes_readers():
    registry = LockRegistry()
    lock = registry.acquire_write("uid-1")
    got_read = threading.Event()

    def reader():
        with registry.read_locked("uid-1"):
            got_read.set()

    thread = threading.Thread(target=reader)
    thread.start()
    assert not got_read.wait(0.1)

    registry.release_write("uid-1", lock)
    assert got_read.wait(2)
    thread.join(2)


def test_waiting_writer_blocks_new_readers():
    lock = RWLock()
    lock.acquire_read()
    order = []

    def writer():
        lock.acquire_write()
        order.append("writer")
        lock.release_write()

    def late_reader():
        lock.acquire_read()
        order.append("reader")
        lock.release_read()

    writer_thread = threading.Thread(target=writer)
    writer_thread.start()
    time.sleep(0.05)
    reader_thread = threading.Thread(target=late_reader)
    reader_thread.start()
    time.sleep(0.05)
    assert order == []

    lock.release_read()
    writer_thread.join(2)
    reader_thread.join(2)
    assert order == ["writer", "reader"]


def test_different_keys_do_not_block_each_other():
    registry = LockRegistry()
    with registry.write_locked("uid-1"):
        with registry.write_locked("uid-2") as lock:
            assert lock.write_held


def test_release_without_hold_raises():
    lock = RWLock()
    with pytest.raises(RuntimeError):
        lock.release_read()
    with pytest.raises(RuntimeError):
        lock.release_write()


def test_release_none_is_noop():
    registry = LockRegistry()
    registry.release_read("uid-1", None)
    registry.release_write("uid-1", None)
    assert len(registry) == 0


def test_sweep_drops_only_dead_entries():
    registry = LockRegistry()
    with registry.read_locked("live"):
        pass
    held = registry.acquire_write("gone")

    removed = registry.sweep(["live"])

    assert removed == 1
    assert "live" in registry
    assert "gone" not in registry
    # The holder keeps a working reference after the entry is dropped
    assert held.write_held
    registry.release_write("gone", held)
    assert not held.write_held

    # A fresh lock is created on next use
    fresh = registry.acquire_read("gone")
    assert fresh is not held
    registry.release_read("gone", fresh)
    assert sorted(registry.keys()) == ["gone", "live"]
