"""Tests for per-key locks."""

import threading
import time

import pytest

from thirsty.platform.keyed_locks import KeyedLockRegistry, LockTimeout


class TestKeyedLockRegistry:

    def test_same_key_is_exclusive(self):
        locks = KeyedLockRegistry()
        active = []
        overlaps = []

        def worker():
            with locks.hold("user:1"):
                active.append(1)
                if len(active) > 1:
                    overlaps.append(1)
                time.sleep(0.01)
                active.pop()

        threads = [threading.Thread(target=worker) for _ in range(5)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join(5)

        assert overlaps == []

    def test_different_keys_do_not_block(self):
        locks = KeyedLockRegistry()
        with locks.hold("user:1"):
            with locks.hold("user:2", timeout=0.1):
                assert len(locks) == 2

    def test_timeout_raises(self):
        locks = KeyedLockRegistry()
        held = threading.Event()
        release = threading.Event()

        def holder():
            with locks.hold("user:1"):
                held.set()
                release.wait(5)

        thread = threading.Thread(target=holder)
        thread.start()
        assert held.wait(2)
        try:
            with pytest.raises(LockTimeout) as exc_info:
                with locks.hold("user:1", timeout=0.05):
                    pass
            assert exc_info.value.key == "user:1"
        finally:
            release.set()
            thread.join(5)

    def test_registry_drops_released_keys(self):
        locks = KeyedLockRegistry()
        with locks.hold("user:1"):
            assert len(locks) == 1
        assert len(locks) == 0

    def test_lock_released_on_exception(self):
        locks = KeyedLockRegistry()
        with pytest.raises(RuntimeError):
            with locks.hold("user:1"):
                raise RuntimeError("boom")

        with locks.hold("user:1", timeout=0.1):
            pass
        assert len(locks) == 0
