import hashlib
import hmac
import json
from typing import Optional

from .errors import SigningNotConfigured
from .params import RoundParameters, normalize_room

# Field order is part of the signature; signer and verifier must agree on it.
SIGNED_FIELDS = ('room', 'startAt', 'maxTimeMs', 'maxMultiplier', 'target', 'seed')


def canonical_payload(params: RoundParameters) -> str:
    """Serialize the signed fields of a round in their fixed order."""
    values = {
        'room': normalize_room(params.room),
        'startAt': int(params.start_at),
        'maxTimeMs': int(params.max_time_ms),
        'maxMultiplier': float(params.max_multiplier),
        'target': float(params.target),
        'seed': int(params.seed),
    }
    ordered = {key: values[key] for key in SIGNED_FIELDS}
    return json.dumps(ordered, separators=(',', ':'))


def _require_secret(secret: Optional[str]) -> bytes:
    if not secret:
        raise SigningNotConfigured()
    return secret.encode('utf-8')


def sign(params: RoundParameters, secret: Optional[str]) -> str:
    key = _require_secret(secret)
    return hmac.new(key, canonical_payload(params).encode('utf-8'), hashlib.sha256).hexdigest()


def verify(params: RoundParameters, signature: Optional[str], secret: Optional[str]) -> bool:
    """Check a signature in constant time. A missing signature is simply invalid."""
    expected = sign(params, secret)
    if not signature:
        return False
    # Bytes, so non-ASCII input is a mismatch rather than a TypeError
    return hmac.compare_digest(expected.encode('utf-8'), str(signature).encode('utf-8'))
