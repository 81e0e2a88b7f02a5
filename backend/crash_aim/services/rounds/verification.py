from typing import Any, Mapping, Optional, Tuple

from .errors import InvalidSignature, OutsideTimeWindow, RoundValidationError
from .generator import now_ms
from .params import RoundParameters, StopResult, normalize_room
from .signing import verify

DEFAULT_TOLERANCE_MS = 2500
DEFAULT_GRACE_MS = 2500


def check_time_window(timestamp: int, params: RoundParameters,
                      tolerance_ms: int = DEFAULT_TOLERANCE_MS,
                      grace_ms: int = DEFAULT_GRACE_MS) -> None:
    """Accept stops in ``[startAt - tolerance, startAt + maxTimeMs + grace]``."""
    earliest = params.start_at - tolerance_ms
    latest = params.end_at + grace_ms
    if not earliest <= timestamp <= latest:
        raise OutsideTimeWindow(
            f'Outside time window ({timestamp} not in [{earliest}, {latest}])'
        )


def verify_submission(body: Mapping[str, Any], secret: Optional[str],
                      tolerance_ms: int = DEFAULT_TOLERANCE_MS,
                      grace_ms: int = DEFAULT_GRACE_MS,
                      now: Optional[int] = None) -> Tuple[str, RoundParameters, StopResult]:
    """Validate a ``{room, result, round}`` submission end to end.

    Returns the normalized room, the verified round and the recomputed result.
    Order matters: payload shape first, then the signature, then the clock.
    """
    if not isinstance(body, Mapping):
        raise RoundValidationError()
    room = normalize_room(body.get('room'))
    if not room or not body.get('result') or not body.get('round'):
        raise RoundValidationError('room, result and round are required')

    params = RoundParameters.from_payload(body['round'])
    if params.room != room:
        raise RoundValidationError('round does not belong to this room')
    result = StopResult.from_payload(body['result'], params)

    if not verify(params, params.signature, secret):
        raise InvalidSignature()

    check_time_window(result.timestamp, params, tolerance_ms, grace_ms)
    # A stop cannot be reported before it could have happened
    received_at = now_ms() if now is None else int(now)
    if received_at < params.start_at - tolerance_ms:
        raise OutsideTimeWindow('Result received before the round started')
    if result.timestamp > received_at + tolerance_ms:
        raise OutsideTimeWindow('Result timestamp is in the future')
    return room, params, result
