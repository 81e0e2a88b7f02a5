import math
import re
from dataclasses import dataclass, replace
from typing import Any, Dict, Mapping, Optional

from .errors import RoundValidationError
from .scoring import diff_of, score


ROOM_MAX_LENGTH = 64
NAME_MAX_LENGTH = 32
_ROOM_STRIP = re.compile(r'[^a-z0-9\-]')


def normalize_room(raw) -> str:
    """Lowercase and strip a room name down to ``[a-z0-9-]``."""
    return _ROOM_STRIP.sub('', str(raw or '').lower())[:ROOM_MAX_LENGTH]


def clean_name(raw, default: str = 'Player', max_length: int = NAME_MAX_LENGTH) -> str:
    name = ' '.join(str(raw or '').split())[:max_length]
    return name or default


def _number(payload: Mapping[str, Any], *keys, kind=float):
    for key in keys:
        if key in payload and payload[key] is not None and payload[key] != '':
            raw = payload[key]
            break
    else:
        raise RoundValidationError(f'{keys[0]} is required')
    if isinstance(raw, bool):
        raise RoundValidationError(f'{keys[0]} must be a number')
    try:
        value = float(raw)
    except (TypeError, ValueError):
        raise RoundValidationError(f'{keys[0]} must be a number')
    if not math.isfinite(value):
        raise RoundValidationError(f'{keys[0]} must be finite')
    return int(value) if kind is int else value


def parse_flag(payload: Mapping[str, Any], key: str) -> bool:
    raw = payload.get(key)
    if raw is None or isinstance(raw, bool):
        return bool(raw)
    if isinstance(raw, str) and raw.strip().lower() in ('true', 'false'):
        return raw.strip().lower() == 'true'
    raise RoundValidationError(f'{key} must be true or false')


@dataclass(frozen=True)
class RoundParameters:
    room: str
    start_at: int
    max_time_ms: int
    max_multiplier: float
    target: float
    seed: int
    signature: Optional[str] = None

    @property
    def round_id(self) -> str:
        return str(self.seed)

    @property
    def end_at(self) -> int:
        return self.start_at + self.max_time_ms

    @property
    def is_signed(self) -> bool:
        return bool(self.signature)

    def with_signature(self, signature: str) -> 'RoundParameters':
        return replace(self, signature=signature)

    def to_payload(self) -> Dict[str, Any]:
        payload = {
            'room': self.room,
            'startAt': self.start_at,
            'maxTimeMs': self.max_time_ms,
            'maxMultiplier': self.max_multiplier,
            'target': self.target,
            'seed': self.seed,
            'roundId': self.round_id,
        }
        if self.signature:
            payload['signature'] = self.signature
        return payload

    @classmethod
    def from_payload(cls, payload: Mapping[str, Any]) -> 'RoundParameters':
        """Parse a wire payload, accepting the legacy ``maxTime``/``maxMult``/``sig`` names.

        Raises RoundValidationError when a field is missing or malformed or when the
        target is not strictly between 1.0 and the ceiling.
        """
        if not isinstance(payload, Mapping):
            raise RoundValidationError('round must be an object')
        room = normalize_room(payload.get('room'))
        if not room:
            raise RoundValidationError('room is required')
        params = cls(
            room=room,
            start_at=_number(payload, 'startAt', kind=int),
            max_time_ms=_number(payload, 'maxTimeMs', 'maxTime', kind=int),
            max_multiplier=_number(payload, 'maxMultiplier', 'maxMult'),
            target=_number(payload, 'target'),
            seed=_number(payload, 'seed', kind=int),
            signature=str(payload.get('signature') or payload.get('sig') or '') or None,
        )
        params.check_invariants()
        return params

    def check_invariants(self) -> None:
        if self.max_time_ms <= 0:
            raise RoundValidationError('maxTimeMs must be positive')
        if not self.max_multiplier > 1.0:
            raise RoundValidationError('maxMultiplier must be greater than 1.0')
        if not 1.0 < self.target < self.max_multiplier:
            raise RoundValidationError('target must lie strictly between 1.0 and maxMultiplier')


@dataclass(frozen=True)
class StopResult:
    user_id: str
    name: str
    value: float
    target: float
    diff: float
    score: int
    crashed: bool
    timestamp: int
    round_id: str

    @classmethod
    def build(cls, user_id, name, value, round_params: RoundParameters, crashed=False,
              timestamp=None) -> 'StopResult':
        # A crashed round always lands on the ceiling
        value = round_params.max_multiplier if crashed else float(value)
        return cls(
            user_id=str(user_id),
            name=clean_name(name),
            value=value,
            target=round_params.target,
            diff=diff_of(value, round_params.target),
            score=score(value, round_params.target),
            crashed=bool(crashed),
            timestamp=int(timestamp if timestamp is not None else round_params.start_at),
            round_id=round_params.round_id,
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            'userId': self.user_id,
            'name': self.name,
            'value': self.value,
            'target': self.target,
            'diff': self.diff,
            'score': self.score,
            'crashed': self.crashed,
            'timestamp': self.timestamp,
            'roundId': self.round_id,
        }

    @classmethod
    def from_payload(cls, payload: Mapping[str, Any], round_params: RoundParameters) -> 'StopResult':
        """Rebuild a result against a known round; diff and score are recomputed."""
        if not isinstance(payload, Mapping):
            raise RoundValidationError('result must be an object')
        user_id = str(payload.get('userId') or '').strip()[:64]
        if not user_id:
            raise RoundValidationError('result.userId is required')
        crashed = parse_flag(payload, 'crashed')
        value = round_params.max_multiplier if crashed else _number(payload, 'value')
        # Small epsilon for float noise at the ceiling
        if not 1.0 <= value <= round_params.max_multiplier + 1e-9:
            raise RoundValidationError('result.value is out of range')
        timestamp = _number(payload, 'timestamp', 'ts', kind=int)
        return cls.build(user_id, payload.get('name'), value, round_params, crashed, timestamp)
