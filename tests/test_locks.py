"""Tests for the synchronisation helpers."""

from __future__ import annotations

import threading
import time

from vaultgraph.utils.locks import KeyedLocks, ReadWriteLock


class TestReadWriteLock:
    """Test ReadWriteLock class."""

    def test_shared_holders_overlap(self) -> None:
        """Should let several shared holders in at the same time."""
        lock = ReadWriteLock()
        barrier = threading.Barrier(3, timeout=5)
        errors: list[BaseException] = []

        def reader() -> None:
            try:
                with lock.shared():
                    barrier.wait()
            except threading.BrokenBarrierError as exc:
                errors.append(exc)

        threads = [threading.Thread(target=reader) for _ in range(3)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join(timeout=10)

        assert errors == []

    def test_exclusive_blocks_shared(self) -> None:
        """Should keep shared holders out while the exclusive side is held."""
        lock = ReadWriteLock()
        entered = threading.Event()

        def reader() -> None:
            with lock.shared():
                entered.set()

        with lock.exclusive():
            thread = threading.Thread(target=reader)
            thread.start()
            assert not entered.wait(0.2)

        assert entered.wait(5)
        thread.join(timeout=5)

    def test_exclusive_waits_for_shared(self) -> None:
        """Should not enter the exclusive side until shared holders leave."""
        lock = ReadWriteLock()
        acquired = threading.Event()

        def writer() -> None:
            with lock.exclusive():
                acquired.set()

        with lock.shared():
            thread = threading.Thread(target=writer)
            thread.start()
            assert not acquired.wait(0.2)

        assert acquired.wait(5)
        thread.join(timeout=5)

    def test_waiting_writer_holds_back_new_readers(self) -> None:
        """Should queue new shared holders behind a waiting writer."""
        lock = ReadWriteLock()
        order: list[str] = []
        writer_waiting = threading.Event()

        def writer() -> None:
            writer_waiting.set()
            with lock.exclusive():
                order.append("writer")

        def reader() -> None:
            with lock.shared():
                order.append("reader")

        with lock.shared():
            writer_thread = threading.Thread(target=writer)
            writer_thread.start()
            writer_waiting.wait(5)
            time.sleep(0.1)
            reader_thread = threading.Thread(target=reader)
            reader_thread.start()
            time.sleep(0.1)
            assert order == []

        writer_thread.join(timeout=5)
        reader_thread.join(timeout=5)
        assert order == ["writer", "reader"]


class TestKeyedLocks:
    """Test KeyedLocks class."""

    def test_same_key_serialised(self) -> None:
        """Should never let two holders of one key run together."""
        locks = KeyedLocks()
        active = 0
        peak = 0
        guard = threading.Lock()

        def work() -> None:
            nonlocal active, peak
            with locks.hold("a.md"):
                with guard:
                    active += 1
                    peak = max(peak, active)
                time.sleep(0.01)
                with guard:
                    active -= 1

        threads = [threading.Thread(target=work) for _ in range(8)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join(timeout=10)

        assert peak == 1

    def test_different_keys_independent(self) -> None:
        """Should not block holders of other keys."""
        locks = KeyedLocks()
        entered = threading.Event()

        def other() -> None:
            with locks.hold("b.md"):
                entered.set()

        with locks.hold("a.md"):
            thread = threading.Thread(target=other)
            thread.start()
            assert entered.wait(5)
        thread.join(timeout=5)

    def test_released_keys_forgotten(self) -> None:
        """Should drop a key's lock once its last holder leaves."""
        locks = KeyedLocks()

        with locks.hold("a.md"):
            with locks.hold("b.md"):
                assert len(locks) == 2
        assert len(locks) == 0

    def test_waiting_holder_keeps_lock(self) -> None:
        """Should keep the lock alive while another thread waits for it."""
        locks = KeyedLocks()
        entered = threading.Event()

        def waiter() -> None:
            with locks.hold("a.md"):
                entered.set()

        with locks.hold("a.md"):
            thread = threading.Thread(target=waiter)
            thread.start()
            time.sleep(0.1)
            assert not entered.is_set()
        thread.join(timeout=5)

        assert entered.is_set()
        assert len(locks) == 0
