import random
from dataclasses import dataclass, field
from typing import Any

from crash_aim.services.rounds.generator import RoundSettings
from .clock import SystemClock, ThreadingScheduler
from .prefs import Preferences


@dataclass
class ClientContext:
    """Everything a client needs, passed in explicitly instead of module globals."""

    clock: Any = field(default_factory=SystemClock)
    scheduler: Any = None
    prefs: Preferences = field(default_factory=Preferences)
    settings: RoundSettings = field(default_factory=RoundSettings)
    rng: random.Random = field(default_factory=random.SystemRandom)
    # Room gates
    min_players: int = 2
    start_lock_ms: int = 500
    result_grace_ms: int = 2500

    def __post_init__(self):
        if self.scheduler is None:
            self.scheduler = ThreadingScheduler(self.clock)

    @classmethod
    def from_config(cls, config, **overrides) -> 'ClientContext':
        """Build a context from the same keys the server's ``Config`` reads."""
        values = dict(
            settings=RoundSettings.from_config(config),
            min_players=int(config.get('MIN_PLAYERS', 2)),
            start_lock_ms=int(config.get('START_LOCK_MS', 500)),
            result_grace_ms=int(config.get('RESULT_GRACE_MS', 2500)),
        )
        values.update(overrides)
        return cls(**values)
