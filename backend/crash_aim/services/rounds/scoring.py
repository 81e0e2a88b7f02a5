import math
from typing import Any, Iterable, List, Mapping

MAX_SCORE = 1000


def diff_of(value: float, target: float) -> float:
    """Absolute distance to the target, rounded to 4 places for storage."""
    return round(abs(float(value) - float(target)), 4)


def score(value: float, target: float) -> int:
    """Score a stop against the target.

    1000 for a perfect stop, linear decay of one point per thousandth,
    0 from a distance of 1.0 upward. Halves round up so the result matches
    clients that use ``Math.round``.
    """
    raw = MAX_SCORE - abs(float(value) - float(target)) * MAX_SCORE
    return max(0, int(math.floor(raw + 0.5)))


def _field(result: Any, name: str):
    if isinstance(result, Mapping):
        return result[name]
    return getattr(result, name)


def rank_results(results: Iterable[Any]) -> List[Any]:
    """Order results closest-first; equal diffs fall back to the higher score."""
    return sorted(results, key=lambda r: (float(_field(r, 'diff')), -int(_field(r, 'score'))))
