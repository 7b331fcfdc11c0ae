"""Tests for the embedding execution ladder and the process-isolated embedder."""

from __future__ import annotations

from pathlib import Path
from typing import List
from unittest.mock import MagicMock

import numpy as np
import pytest

from vaultgraph.embedding.degradation import DegradationLadder, ExecutionMode
from vaultgraph.embedding.worker import WorkerEmbedder
from vaultgraph.errors import CircuitOpenError, EmbeddingError, WorkerCrashedError


class FakeClock:
    def __init__(self, now: float = 1000.0) -> None:
        self.now = now

    def __call__(self) -> float:
        return self.now


class CrashingHandle:
    def __init__(self, launched_at: float) -> None:
        self.launched_at = launched_at
        self.closed = False

    def wait_ready(self, timeout: float) -> int:
        raise WorkerCrashedError("worker died while loading")

    def embed(self, texts, timeout: float) -> np.ndarray:
        raise AssertionError("never ready")

    def is_alive(self) -> bool:
        return False

    def close(self) -> None:
        self.closed = True


class HealthyHandle:
    def __init__(self, launched_at: float, dimension: int = 4) -> None:
        self.launched_at = launched_at
        self.dimension = dimension
        self.alive = True

    def wait_ready(self, timeout: float) -> int:
        return self.dimension

    def embed(self, texts, timeout: float) -> np.ndarray:
        return np.ones((len(texts), self.dimension), dtype="float32")

    def is_alive(self) -> bool:
        return self.alive

    def close(self) -> None:
        self.alive = False


class TestDegradationLadder:
    """Test DegradationLadder class."""

    def test_early_crashes_walk_down(self) -> None:
        """Should move one rung down per crash inside the grace period."""
        clock = FakeClock()
        ladder = DegradationLadder(clock=clock)

        modes = [ladder.record_crash(clock.now) for _ in range(3)]

        assert modes == [
            ExecutionMode.SINGLE_THREAD_SIMD,
            ExecutionMode.SINGLE_THREAD_NO_SIMD,
            ExecutionMode.CIRCUIT_BREAKER_OPEN,
        ]
        assert ladder.next_mode() is None

    def test_late_crash_keeps_mode(self) -> None:
        """Should not degrade for crashes after the grace period."""
        clock = FakeClock()
        ladder = DegradationLadder(clock=clock, grace_seconds=10)
        launched = clock.now
        clock.now += 60

        assert ladder.record_crash(launched) is ExecutionMode.THREADED_SIMD
        assert ladder.state.crash_count == 1

    def test_cooldown_resets(self) -> None:
        """Should retry the fastest mode once the cooldown has elapsed."""
        clock = FakeClock()
        ladder = DegradationLadder(clock=clock, cooldown_seconds=300)
        for _ in range(3):
            ladder.record_crash(clock.now)

        clock.now += 299
        assert ladder.next_mode() is None
        clock.now += 2
        assert ladder.next_mode() is ExecutionMode.THREADED_SIMD

    def test_early_crash_on_retry_reopens_breaker(self) -> None:
        """Should go straight back to the open breaker when the post-cooldown retry crashes early."""
        clock = FakeClock()
        ladder = DegradationLadder(clock=clock, cooldown_seconds=300)
        for _ in range(3):
            ladder.record_crash(clock.now)
        clock.now += 301
        assert ladder.next_mode() is ExecutionMode.THREADED_SIMD
        assert ladder.state.retrying

        assert ladder.record_crash(clock.now) is ExecutionMode.CIRCUIT_BREAKER_OPEN
        assert ladder.next_mode() is None
        assert not ladder.state.retrying

    def test_stable_retry_walks_ladder_again(self) -> None:
        """Should degrade one rung at a time once the retry outlived its grace period."""
        clock = FakeClock()
        ladder = DegradationLadder(clock=clock, cooldown_seconds=300, grace_seconds=10)
        for _ in range(3):
            ladder.record_crash(clock.now)
        clock.now += 301
        ladder.next_mode()
        launched = clock.now
        clock.now += 30
        ladder.record_stable(launched)

        assert not ladder.state.retrying
        assert ladder.record_crash(clock.now) is ExecutionMode.SINGLE_THREAD_SIMD

    def test_retry_flag_persisted(self, tmp_path: Path) -> None:
        """Should remember a pending retry across restarts."""
        state_path = tmp_path / "ladder.json"
        clock = FakeClock()
        ladder = DegradationLadder(state_path, clock=clock, cooldown_seconds=300)
        for _ in range(3):
            ladder.record_crash(clock.now)
        clock.now += 301
        ladder.next_mode()

        restored = DegradationLadder(state_path, clock=clock, cooldown_seconds=300)

        assert restored.state.retrying
        assert restored.record_crash(clock.now) is ExecutionMode.CIRCUIT_BREAKER_OPEN

    def test_state_persisted(self, tmp_path: Path) -> None:
        """Should restore the rung from disk so a restart skips known-bad modes."""
        state_path = tmp_path / "ladder.json"
        clock = FakeClock()
        ladder = DegradationLadder(state_path, clock=clock)
        ladder.record_crash(clock.now)

        restored = DegradationLadder(state_path, clock=clock)

        assert restored.mode is ExecutionMode.SINGLE_THREAD_SIMD
        assert restored.state.crash_count == 1

    def test_unreadable_state(self, tmp_path: Path) -> None:
        """Should start fresh when the state file is corrupt."""
        state_path = tmp_path / "ladder.json"
        state_path.write_text("{not json", encoding="utf-8")

        assert DegradationLadder(state_path).mode is ExecutionMode.THREADED_SIMD

    def test_manual_reset(self) -> None:
        """Should return to the fastest mode on reset."""
        clock = FakeClock()
        ladder = DegradationLadder(clock=clock)
        ladder.record_crash(clock.now)
        ladder.reset()

        assert ladder.mode is ExecutionMode.THREADED_SIMD
        assert ladder.state.crash_count == 0

    def test_mode_properties(self) -> None:
        """Should describe thread and SIMD settings per mode."""
        assert ExecutionMode.THREADED_SIMD.threads is None
        assert ExecutionMode.SINGLE_THREAD_SIMD.threads == 1
        assert ExecutionMode.SINGLE_THREAD_NO_SIMD.simd is False


class TestWorkerEmbedder:
    """Test WorkerEmbedder class."""

    def test_circuit_opens_after_three_crashes(self) -> None:
        """Should refuse a fourth launch while the breaker is open."""
        clock = FakeClock()
        ladder = DegradationLadder(clock=clock, cooldown_seconds=300)
        launched_modes: List[ExecutionMode] = []

        def launcher(model_name, mode, options):
            launched_modes.append(mode)
            return CrashingHandle(clock.now)

        embedder = WorkerEmbedder("model", ladder=ladder, launcher=launcher)
        for _ in range(3):
            with pytest.raises(WorkerCrashedError):
                embedder.embed(["text"])

        with pytest.raises(CircuitOpenError) as excinfo:
            embedder.embed(["text"])

        assert launched_modes == [
            ExecutionMode.THREADED_SIMD,
            ExecutionMode.SINGLE_THREAD_SIMD,
            ExecutionMode.SINGLE_THREAD_NO_SIMD,
        ]
        assert excinfo.value.retry_at == clock.now + 300
        assert isinstance(excinfo.value, EmbeddingError)

    def test_retries_after_cooldown(self) -> None:
        """Should launch in the fastest mode again once the cooldown elapsed."""
        clock = FakeClock()
        ladder = DegradationLadder(clock=clock, cooldown_seconds=300)
        for _ in range(3):
            ladder.record_crash(clock.now)
        launcher = MagicMock(side_effect=lambda name, mode, options: HealthyHandle(clock.now))
        embedder = WorkerEmbedder("model", ladder=ladder, launcher=launcher)

        clock.now += 301
        vectors = embedder.embed(["a", "b"])

        assert vectors.shape == (2, 4)
        assert launcher.call_args[0][1] is ExecutionMode.THREADED_SIMD

    def test_reuses_live_worker(self) -> None:
        """Should keep using a healthy worker across calls."""
        clock = FakeClock()
        launcher = MagicMock(side_effect=lambda name, mode, options: HealthyHandle(clock.now))
        embedder = WorkerEmbedder("model", ladder=DegradationLadder(clock=clock), launcher=launcher)

        assert embedder.dimension == 4
        embedder.embed(["a"])
        embedder.embed_query("b")

        assert launcher.call_count == 1
        embedder.close()

    def test_crash_during_embed(self) -> None:
        """Should record a crash and relaunch on the next call."""
        clock = FakeClock()
        handle = HealthyHandle(clock.now)
        handle.embed = MagicMock(side_effect=WorkerCrashedError("segfault"))
        handles = [handle, HealthyHandle(clock.now)]
        embedder = WorkerEmbedder(
            "model",
            ladder=DegradationLadder(clock=clock),
            launcher=lambda name, mode, options: handles.pop(0),
        )

        with pytest.raises(WorkerCrashedError):
            embedder.embed(["a"])

        assert embedder.mode is ExecutionMode.SINGLE_THREAD_SIMD
        assert embedder.embed(["a"]).shape == (1, 4)

    def test_retry_settles_after_grace_period(self) -> None:
        """Should clear the pending retry once the relaunched worker serves past its grace period."""
        clock = FakeClock()
        ladder = DegradationLadder(clock=clock, cooldown_seconds=300, grace_seconds=10)
        for _ in range(3):
            ladder.record_crash(clock.now)
        clock.now += 301
        embedder = WorkerEmbedder(
            "model", ladder=ladder, launcher=lambda name, mode, options: HealthyHandle(clock.now)
        )

        embedder.embed(["a"])
        assert ladder.state.retrying
        clock.now += 30
        embedder.embed(["b"])

        assert not ladder.state.retrying
        embedder.close()
