"""Execution degradation ladder for the local inference worker.

Each crash of the inference process during its startup grace period moves
the ladder one rung down to a more conservative execution mode. The last
rung opens a circuit breaker which blocks inference until a cooldown has
elapsed, after which the ladder resets to the fastest mode for one retry.
An early crash during that retry reopens the breaker straight away.
The current rung and its transition time are persisted so a restart never
repeats a configuration already known to crash on this host.
"""

from __future__ import annotations

import json
import logging
import time
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Callable, Optional

LOGGER = logging.getLogger(__name__)

DEFAULT_COOLDOWN_SECONDS = 300.0
DEFAULT_GRACE_SECONDS = 10.0


class ExecutionMode(str, Enum):
    THREADED_SIMD = "threaded-simd"
    SINGLE_THREAD_SIMD = "single-thread-simd"
    SINGLE_THREAD_NO_SIMD = "single-thread-no-simd"
    CIRCUIT_BREAKER_OPEN = "circuit-breaker-open"

    @property
    def threads(self) -> int | None:
        """Thread count for the mode, ``None`` meaning library default."""
        return None if self is ExecutionMode.THREADED_SIMD else 1

    @property
    def simd(self) -> bool:
        return self in (ExecutionMode.THREADED_SIMD, ExecutionMode.SINGLE_THREAD_SIMD)


_LADDER = (
    ExecutionMode.THREADED_SIMD,
    ExecutionMode.SINGLE_THREAD_SIMD,
    ExecutionMode.SINGLE_THREAD_NO_SIMD,
    ExecutionMode.CIRCUIT_BREAKER_OPEN,
)


@dataclass(slots=True)
class LadderState:
    mode: ExecutionMode = ExecutionMode.THREADED_SIMD
    transitioned_at: float = 0.0
    crash_count: int = 0
    retrying: bool = False

    def to_dict(self) -> dict:
        return {
            "mode": self.mode.value,
            "transitioned_at": self.transitioned_at,
            "crash_count": self.crash_count,
            "retrying": self.retrying,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "LadderState":
        return cls(
            mode=ExecutionMode(data.get("mode", ExecutionMode.THREADED_SIMD.value)),
            transitioned_at=float(data.get("transitioned_at", 0.0)),
            crash_count=int(data.get("crash_count", 0)),
            retrying=bool(data.get("retrying", False)),
        )


class DegradationLadder:
    """Persisted state machine choosing the execution mode of the next worker launch."""

    def __init__(
        self,
        state_path: Path | None = None,
        *,
        cooldown_seconds: float = DEFAULT_COOLDOWN_SECONDS,
        grace_seconds: float = DEFAULT_GRACE_SECONDS,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.state_path = Path(state_path) if state_path is not None else None
        self.cooldown_seconds = cooldown_seconds
        self.grace_seconds = grace_seconds
        self._clock = clock
        self.state = self._load()

    @property
    def mode(self) -> ExecutionMode:
        return self.state.mode

    @property
    def retry_at(self) -> float:
        return self.state.transitioned_at + self.cooldown_seconds

    def _load(self) -> LadderState:
        if self.state_path is None or not self.state_path.exists():
            return LadderState()
        try:
            return LadderState.from_dict(json.loads(self.state_path.read_text(encoding="utf-8")))
        except (OSError, ValueError) as exc:
            LOGGER.warning("Ignoring unreadable ladder state %s: %s", self.state_path, exc)
            return LadderState()

    def _save(self) -> None:
        if self.state_path is None:
            return
        self.state_path.parent.mkdir(parents=True, exist_ok=True)
        self.state_path.write_text(json.dumps(self.state.to_dict()), encoding="utf-8")

    def _transition(self, mode: ExecutionMode) -> None:
        LOGGER.warning("Embedding execution mode %s -> %s", self.state.mode.value, mode.value)
        self.state.mode = mode
        self.state.transitioned_at = self._clock()
        self._save()

    def next_mode(self) -> Optional[ExecutionMode]:
        """Mode for the next launch, or ``None`` while the breaker is open."""
        if self.state.mode is ExecutionMode.CIRCUIT_BREAKER_OPEN:
            if self._clock() < self.retry_at:
                return None
            LOGGER.info("Circuit breaker cooldown elapsed, retrying fastest mode")
            self.state.crash_count = 0
            self.state.retrying = True
            self._transition(ExecutionMode.THREADED_SIMD)
        return self.state.mode

    def is_early_crash(self, launched_at: float) -> bool:
        return self._clock() - launched_at <= self.grace_seconds

    def record_crash(self, launched_at: float | None = None) -> ExecutionMode:
        """Register a worker crash; only crashes inside the grace period degrade."""
        self.state.crash_count += 1
        if launched_at is not None and not self.is_early_crash(launched_at):
            LOGGER.info("Worker crashed after grace period; keeping %s", self.state.mode.value)
            self.state.retrying = False
            self._save()
            return self.state.mode

        if self.state.retrying:
            LOGGER.error("Retry after cooldown crashed early; reopening circuit breaker")
            self.state.retrying = False
            self._transition(ExecutionMode.CIRCUIT_BREAKER_OPEN)
            return self.state.mode

        position = _LADDER.index(self.state.mode)
        self._transition(_LADDER[min(position + 1, len(_LADDER) - 1)])
        return self.state.mode

    def record_stable(self, launched_at: float) -> None:
        """Settle a post-cooldown retry once its worker has outlived the grace period."""
        if self.state.retrying and not self.is_early_crash(launched_at):
            LOGGER.info("Retry in %s survived the grace period", self.state.mode.value)
            self.state.retrying = False
            self._save()

    def reset(self) -> None:
        """Manual reset back to the fastest mode."""
        self.state = LadderState(transitioned_at=self._clock())
        self._save()
