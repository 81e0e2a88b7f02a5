import random
import time
from dataclasses import dataclass
from typing import Mapping, Optional

from .errors import RoundGenerationError, RoundValidationError
from .params import RoundParameters, normalize_room


@dataclass(frozen=True)
class RoundSettings:
    max_time_ms: int = 8000
    min_multiplier: float = 3.8
    max_multiplier: float = 5.2
    target_min: float = 1.10
    target_margin: float = 0.05
    start_delay_ms: int = 3000
    min_start_delay_ms: int = 1000
    max_start_delay_ms: int = 15000

    @classmethod
    def from_config(cls, config: Mapping) -> 'RoundSettings':
        defaults = cls()
        return cls(
            max_time_ms=int(config.get('ROUND_MAX_TIME_MS', defaults.max_time_ms)),
            min_multiplier=float(config.get('ROUND_MIN_MULT', defaults.min_multiplier)),
            max_multiplier=float(config.get('ROUND_MAX_MULT', defaults.max_multiplier)),
            target_min=float(config.get('ROUND_TARGET_MIN', defaults.target_min)),
            target_margin=float(config.get('ROUND_TARGET_MARGIN', defaults.target_margin)),
            start_delay_ms=int(config.get('ROUND_START_DELAY_MS', defaults.start_delay_ms)),
            min_start_delay_ms=int(config.get('ROUND_MIN_START_DELAY_MS', defaults.min_start_delay_ms)),
            max_start_delay_ms=int(config.get('ROUND_MAX_START_DELAY_MS', defaults.max_start_delay_ms)),
        )

    def clamp_start_delay(self, delay_ms: Optional[float]) -> int:
        if delay_ms is None:
            delay_ms = self.start_delay_ms
        return int(max(self.min_start_delay_ms, min(self.max_start_delay_ms, float(delay_ms))))


def now_ms() -> int:
    return int(time.time() * 1000)


def generate_round(room: str, settings: Optional[RoundSettings] = None, now: Optional[int] = None,
                   start_delay_ms: Optional[float] = None,
                   rng: Optional[random.Random] = None) -> RoundParameters:
    """Draw an unsigned round for ``room``.

    The ceiling comes from the configured multiplier range and the target is
    drawn below ``ceiling - target_margin`` so it can always be reached before
    the crash. Both are rounded to two decimals.
    """
    room = normalize_room(room)
    if not room:
        raise RoundValidationError('room is required')
    settings = settings or RoundSettings()
    rng = rng or random.SystemRandom()
    now = now_ms() if now is None else int(now)

    max_multiplier = round(rng.uniform(settings.min_multiplier, settings.max_multiplier), 2)
    target_max = max(settings.target_min, max_multiplier - settings.target_margin)
    target = round(rng.uniform(settings.target_min, target_max), 2)
    if not 1.0 < target < max_multiplier:
        raise RoundGenerationError(
            f'target {target} not strictly inside (1.0, {max_multiplier})'
        )

    return RoundParameters(
        room=room,
        start_at=now + settings.clamp_start_delay(start_delay_ms),
        max_time_ms=int(settings.max_time_ms),
        max_multiplier=max_multiplier,
        target=target,
        seed=rng.randint(10 ** 12, 10 ** 13 - 1),
    )
