"""Tests for per-key locks."""

import threading

from hidesis.engine.locks import KeyedLocks


class TestKeyedLocks:
    def test_one_lock_per_key(self) -> None:
        locks = KeyedLocks()
        assert locks.lock_for("HS-1") is locks.lock_for("HS-1")
        assert locks.lock_for("HS-1") is not locks.lock_for("W-1")

    def test_map_bounded_by_distinct_keys(self) -> None:
        locks = KeyedLocks()
        for _ in range(50):
            for key in ("HS-1", "HS-2", "W-1"):
                with locks.hold(key):
                    pass
        assert len(locks) == 3

    def test_hold_is_reentrant(self) -> None:
        locks = KeyedLocks()
        with locks.hold("HS-1"):
            with locks.hold("HS-1"):
                assert len(locks) == 1

    def test_distinct_keys_do_not_block(self) -> None:
        locks = KeyedLocks()
        done = threading.Event()

        def other() -> None:
            with locks.hold("HS-2"):
                done.set()

        with locks.hold("HS-1"):
            t = threading.Thread(target=other)
            t.start()
            assert done.wait(timeout=5)
            t.join()
