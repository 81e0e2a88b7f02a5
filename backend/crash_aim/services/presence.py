"""Realtime channel naming and subscription credentials.

A subscriber first asks the HTTP auth endpoint for a credential bound to its
socket id and channel name, then presents it when subscribing over the
Socket.IO namespace. Presence channels also bind the member identity
(``channel_data``) into the credential.
"""

import hashlib
import hmac
import json
from typing import Any, Dict, Optional

from crash_aim.services.rounds.errors import RealtimeNotConfigured

PRESENCE_PREFIX = 'presence-'
PRIVATE_PREFIX = 'private-'


def presence_channel(room: str) -> str:
    return f'{PRESENCE_PREFIX}{room}'


def control_channel(room: str) -> str:
    return f'{PRIVATE_PREFIX}room-{room}-control'


def results_channel(room: str) -> str:
    return f'{PRIVATE_PREFIX}room-{room}-results'


def is_presence_channel(name: str) -> bool:
    return name.startswith(PRESENCE_PREFIX)


def requires_auth(name: str) -> bool:
    return name.startswith(PRESENCE_PREFIX) or name.startswith(PRIVATE_PREFIX)


def _digest(secret: str, socket_id: str, channel_name: str, channel_data: Optional[str]) -> str:
    message = f'{socket_id}:{channel_name}'
    if channel_data:
        message = f'{message}:{channel_data}'
    return hmac.new(secret.encode('utf-8'), message.encode('utf-8'), hashlib.sha256).hexdigest()


def authorize_channel(key: str, secret: Optional[str], socket_id: str, channel_name: str,
                      presence_data: Optional[Dict[str, Any]] = None) -> Dict[str, str]:
    if not secret:
        raise RealtimeNotConfigured()
    channel_data = json.dumps(presence_data, separators=(',', ':')) if presence_data is not None else None
    payload = {'auth': f'{key}:{_digest(secret, socket_id, channel_name, channel_data)}'}
    if channel_data:
        payload['channel_data'] = channel_data
    return payload


def verify_channel_auth(key: str, secret: Optional[str], socket_id: str, channel_name: str,
                        auth: Optional[str], channel_data: Optional[str] = None) -> bool:
    if not secret:
        raise RealtimeNotConfigured()
    if not isinstance(auth, str) or ':' not in auth:
        return False
    auth_key, signature = auth.split(':', 1)
    if auth_key != key:
        return False
    if is_presence_channel(channel_name) and not channel_data:
        return False
    expected = _digest(secret, socket_id, channel_name, channel_data)
    return hmac.compare_digest(expected.encode('utf-8'), signature.encode('utf-8'))


def member_from_channel_data(channel_data: Optional[str]) -> Optional[Dict[str, str]]:
    try:
        data = json.loads(channel_data or '')
    except ValueError:
        return None
    if not isinstance(data, dict) or not data.get('user_id'):
        return None
    info = data.get('user_info') or {}
    return {'user_id': str(data['user_id']), 'name': str(info.get('name') or 'player').strip()}
