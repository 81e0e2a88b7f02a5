import logging
from typing import Callable, List, Optional

from crash_aim.services.rounds.generator import generate_round
from crash_aim.services.rounds.params import RoundParameters, StopResult
from .engine import EngineState, GrowthEngine, RoundOutcome

logger = logging.getLogger(__name__)

SOLO_ROOM = 'solo'
SOLO_COUNTDOWN_MS = 3000


class SoloGame:
    """One-button solo play: press to start, press again to stop."""

    def __init__(self, context, engine: Optional[GrowthEngine] = None):
        self.context = context
        self.engine = engine or GrowthEngine.from_context(context)
        self.engine.on_finish(self._on_finish)
        self.history: List[StopResult] = []
        self._result_listeners: List[Callable[[StopResult], None]] = []

    def on_result(self, callback: Callable[[StopResult], None]) -> None:
        self._result_listeners.append(callback)

    def press(self) -> Optional[RoundParameters]:
        """Start a round when idle or finished, stop it while running.

        Presses during the countdown are ignored. Returns the new round when
        one was started.
        """
        state = self.engine.state
        if state is EngineState.COUNTDOWN:
            return None
        if state is EngineState.RUNNING:
            self.engine.stop()
            return None
        params = generate_round(
            SOLO_ROOM,
            self.context.settings,
            now=self.context.clock.now_ms(),
            start_delay_ms=SOLO_COUNTDOWN_MS,
            rng=self.context.rng,
        )
        logger.info(f"[solo-start] round={params.round_id} target={params.target} max_mult={params.max_multiplier}")
        self.engine.load(params)
        return params

    def _on_finish(self, outcome: RoundOutcome) -> None:
        params = self.engine.params
        if params is None or params.round_id != outcome.round_id:
            return
        user = self.context.prefs.user()
        result = StopResult.build(user.id, user.name, outcome.value, params,
                                  crashed=outcome.crashed, timestamp=outcome.timestamp)
        self.history.append(result)
        for callback in list(self._result_listeners):
            callback(result)
