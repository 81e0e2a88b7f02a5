import logging
import threading
from dataclasses import dataclass
from enum import Enum
from typing import Callable, Dict, List, Optional, Tuple

from crash_aim.services.rounds.params import RoundParameters
from crash_aim.services.rounds.scoring import diff_of, score

logger = logging.getLogger(__name__)

FRAME_INTERVAL_MS = 16
FALLBACK_INTERVAL_MS = 100
COUNTDOWN_INTERVAL_MS = 100


class EngineState(str, Enum):
    IDLE = 'idle'
    COUNTDOWN = 'countdown'
    RUNNING = 'running'
    STOPPED = 'stopped'
    EXPIRED = 'expired'


def clamp(value, low, high):
    return max(low, min(high, value))


def progress_at(params: RoundParameters, now_ms: int) -> float:
    return clamp((now_ms - params.start_at) / float(params.max_time_ms), 0.0, 1.0)


def value_at(params: RoundParameters, now_ms: int) -> float:
    """Displayed multiplier at ``now_ms``: a linear climb from 1.0 to the ceiling."""
    return 1.0 + (params.max_multiplier - 1.0) * progress_at(params, now_ms)


@dataclass(frozen=True)
class EngineSnapshot:
    state: EngineState
    now_ms: int
    countdown_ms: int
    progress: float
    value: float


@dataclass(frozen=True)
class RoundOutcome:
    round_id: str
    value: float
    target: float
    crashed: bool
    timestamp: int

    @property
    def diff(self) -> float:
        return diff_of(self.value, self.target)

    @property
    def score(self) -> int:
        return score(self.value, self.target)


class GrowthEngine:
    """Per-client round timeline.

    Every tick recomputes from the absolute ``startAt`` so skipped or late
    timer callbacks never accumulate drift. Timers scheduled for an older
    round carry a stale generation and do nothing when they fire.

    Listeners are called after the engine lock is released, so they may call
    back into the engine or take their own locks.
    """

    def __init__(self, clock, scheduler, frame_interval_ms=FRAME_INTERVAL_MS,
                 fallback_interval_ms=FALLBACK_INTERVAL_MS,
                 countdown_interval_ms=COUNTDOWN_INTERVAL_MS):
        self.clock = clock
        self.scheduler = scheduler
        self.frame_interval_ms = frame_interval_ms
        self.fallback_interval_ms = fallback_interval_ms
        self.countdown_interval_ms = countdown_interval_ms

        self.state = EngineState.IDLE
        self.params: Optional[RoundParameters] = None
        self.outcome: Optional[RoundOutcome] = None
        self._generation = 0
        self._timers: Dict[str, object] = {}
        self._last_instant: Optional[int] = None
        self._last_snapshot: Optional[EngineSnapshot] = None
        self._update_listeners: List[Callable[[EngineSnapshot], None]] = []
        self._finish_listeners: List[Callable[[RoundOutcome], None]] = []
        self._outbox: List[Tuple[List[Callable], object]] = []
        self._lock = threading.RLock()

    @classmethod
    def from_context(cls, context) -> 'GrowthEngine':
        return cls(context.clock, context.scheduler)

    @property
    def generation(self) -> int:
        return self._generation

    @property
    def active(self) -> bool:
        return self.state in (EngineState.COUNTDOWN, EngineState.RUNNING)

    def on_update(self, callback: Callable[[EngineSnapshot], None]) -> None:
        self._update_listeners.append(callback)

    def on_finish(self, callback: Callable[[RoundOutcome], None]) -> None:
        self._finish_listeners.append(callback)

    def reset(self) -> None:
        """Cancel every timer of the current round and return to idle."""
        with self._lock:
            self._reset()

    def load(self, params: RoundParameters) -> EngineSnapshot:
        """Start the countdown for a new round, dropping whatever was in progress."""
        with self._lock:
            self._reset()
            self.params = params
            self.state = EngineState.COUNTDOWN
            logger.debug(f"[engine-load] round={params.round_id} start_at={params.start_at} generation={self._generation}")
            self._loop('countdown', self.countdown_interval_ms, EngineState.COUNTDOWN)
            snap = self._tick(None)
        self._drain()
        return snap

    def tick(self, generation: Optional[int] = None) -> Optional[EngineSnapshot]:
        """Recompute the timeline for the current instant.

        Returns None for a stale generation. A second tick at an instant that
        was already processed returns the previous snapshot and notifies nobody.
        """
        with self._lock:
            snap = self._tick(generation)
        self._drain()
        return snap

    def stop(self) -> Optional[RoundOutcome]:
        """Player stop. Only valid while running; a round cannot be stopped twice."""
        with self._lock:
            outcome = None
            if self.active:
                self._tick(None)
                if self.state is EngineState.RUNNING:
                    now = self.clock.now_ms()
                    self._finish(now, crashed=now >= self.params.end_at)
                    outcome = self.outcome
        self._drain()
        return outcome

    def snapshot(self, now: Optional[int] = None) -> EngineSnapshot:
        with self._lock:
            return self._snapshot(self.clock.now_ms() if now is None else now)

    def _reset(self) -> None:
        for handle in self._timers.values():
            handle.cancel()
        self._timers.clear()
        self._generation += 1
        self.state = EngineState.IDLE
        self.params = None
        self.outcome = None
        self._last_instant = None
        self._last_snapshot = None

    def _tick(self, generation: Optional[int]) -> Optional[EngineSnapshot]:
        if generation is not None and generation != self._generation:
            return None
        if not self.active:
            return self._last_snapshot
        now = self.clock.now_ms()
        if now == self._last_instant:
            return self._last_snapshot
        self._last_instant = now

        params = self.params
        if self.state is EngineState.COUNTDOWN:
            if now < params.start_at:
                return self._publish(now)
            self.state = EngineState.RUNNING
            self._cancel('countdown')
            self._loop('frame', self.frame_interval_ms, EngineState.RUNNING)
            self._loop('fallback', self.fallback_interval_ms, EngineState.RUNNING)

        if now >= params.end_at:
            return self._finish(now, crashed=True)
        return self._publish(now)

    def _snapshot(self, now: int) -> EngineSnapshot:
        params = self.params
        if params is None:
            return EngineSnapshot(self.state, now, 0, 0.0, 1.0)
        if self.outcome is not None:
            # Frozen at the stop instant
            progress = 1.0 if self.outcome.crashed else progress_at(params, self.outcome.timestamp)
            return EngineSnapshot(self.state, now, 0, progress, self.outcome.value)
        return EngineSnapshot(
            state=self.state,
            now_ms=now,
            countdown_ms=max(0, params.start_at - now),
            progress=progress_at(params, now),
            value=value_at(params, now),
        )

    def _publish(self, now: int) -> EngineSnapshot:
        snap = self._snapshot(now)
        self._last_snapshot = snap
        self._outbox.append((list(self._update_listeners), snap))
        return snap

    def _finish(self, now: int, crashed: bool) -> EngineSnapshot:
        params = self.params
        for name in list(self._timers):
            self._cancel(name)
        self.state = EngineState.EXPIRED if crashed else EngineState.STOPPED
        self.outcome = RoundOutcome(
            round_id=params.round_id,
            value=params.max_multiplier if crashed else value_at(params, now),
            target=params.target,
            crashed=crashed,
            timestamp=now,
        )
        logger.info(
            f"[engine-finish] round={params.round_id} state={self.state.value} "
            f"value={self.outcome.value:.4f} target={params.target}"
        )
        snap = self._publish(now)
        self._outbox.append((list(self._finish_listeners), self.outcome))
        return snap

    def _drain(self) -> None:
        with self._lock:
            pending, self._outbox = self._outbox, []
        for callbacks, arg in pending:
            for callback in callbacks:
                callback(arg)

    def _cancel(self, name: str) -> None:
        handle = self._timers.pop(name, None)
        if handle is not None:
            handle.cancel()

    def _loop(self, name: str, interval_ms: int, while_state: EngineState) -> None:
        generation = self._generation

        def fire():
            with self._lock:
                if generation != self._generation:
                    return
                self._tick(generation)
                if self.state is while_state and generation == self._generation:
                    self._timers[name] = self.scheduler.call_later(interval_ms, fire)
            self._drain()

        self._timers[name] = self.scheduler.call_later(interval_ms, fire)
