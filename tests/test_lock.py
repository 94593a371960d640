"""Tests for per-asset FIFO locks."""

import threading
import time

import pytest

from assetincrement.lock import AssetLockRegistry, LockError


class TestAssetLockRegistry:
    def test_acquire_release(self):
        registry = AssetLockRegistry()

        registry.acquire("a")
        assert registry.is_locked("a")
        registry.release("a")

        assert not registry.is_locked("a")
        assert registry.active_keys() == 0

    def test_release_without_hold(self):
        with pytest.raises(LockError):
            AssetLockRegistry().release("a")

    def test_timeout(self):
        registry = AssetLockRegistry()
        registry.acquire("a")

        start = time.monotonic()
        with pytest.raises(LockError, match="Timed out"):
            registry.acquire("a", timeout=0.1)
        assert time.monotonic() - start >= 0.1

        registry.release("a")
        assert registry.active_keys() == 0

    def test_abandoned_ticket_is_skipped(self):
        registry = AssetLockRegistry()
        registry.acquire("a")
        with pytest.raises(LockError):
            registry.acquire("a", timeout=0.05)

        acquired = threading.Event()

        def waiter():
            registry.acquire("a")
            acquired.set()
            registry.release("a")

        thread = threading.Thread(target=waiter)
        thread.start()
        time.sleep(0.05)
        registry.release("a")
        thread.join(timeout=5)

        assert acquired.is_set()
        assert registry.active_keys() == 0

    def test_different_keys_do_not_block(self):
        registry = AssetLockRegistry()
        registry.acquire("a")
        registry.acquire("b", timeout=0.1)

        registry.release("b")
        registry.release("a")

    def test_waiters_are_served_in_arrival_order(self):
        registry = AssetLockRegistry()
        order = []
        registry.acquire("a")

        def worker(index):
            registry.acquire("a")
            order.append(index)
            registry.release("a")

        threads = []
        for index in range(5):
            thread = threading.Thread(target=worker, args=(index,))
            thread.start()
            threads.append(thread)
            # Each thread must take its ticket before the next starts
            deadline = time.monotonic() + 5
            while registry._states["a"].next_ticket < index + 2 and time.monotonic() < deadline:
                time.sleep(0.001)

        registry.release("a")
        for thread in threads:
            thread.join(timeout=5)

        assert order == [0, 1, 2, 3, 4]
        assert registry.active_keys() == 0

    def test_hold_releases_on_exception(self):
        registry = AssetLockRegistry()

        with pytest.raises(RuntimeError):
            with registry.hold("a", "b"):
                assert registry.is_locked("a")
                assert registry.is_locked("b")
                raise RuntimeError("fail")

        assert registry.active_keys() == 0

    def test_hold_same_key_twice_locks_once(self):
        registry = AssetLockRegistry()

        with registry.hold("a", "a", timeout=0.1):
            assert registry.is_locked("a")
        assert not registry.is_locked("a")

    def test_hold_pairs_in_opposite_order_do_not_deadlock(self):
        registry = AssetLockRegistry()
        done = []

        def worker(keys):
            for _ in range(50):
                with registry.hold(*keys, timeout=5):
                    pass
            done.append(keys)

        threads = [
            threading.Thread(target=worker, args=(("a", "b"),)),
            threading.Thread(target=worker, args=(("b", "a"),)),
        ]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join(timeout=10)

        assert len(done) == 2
        assert registry.active_keys() == 0
