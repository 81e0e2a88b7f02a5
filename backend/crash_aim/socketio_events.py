from flask_socketio import join_room, leave_room, emit
from flask import current_app, request
from crash_aim import socketio
from crash_aim.services.presence import (
    is_presence_channel,
    member_from_channel_data,
    requires_auth,
    verify_channel_auth,
)
from crash_aim.services.rounds.errors import RealtimeNotConfigured
from typing import Any, Dict, List, Set

NAMESPACE = '/ws'

# channel -> sid -> member ({user_id, name}); private channels store None
_channel_members: Dict[str, Dict[str, Any]] = {}
_sid_channels: Dict[str, Set[str]] = {}


def _get_sid() -> str:
    return request.sid  # type: ignore


def _envelope(channel: str, data: Any) -> Dict[str, Any]:
    return {'channel': channel, 'data': data}


def channel_members(channel: str) -> List[Dict[str, str]]:
    """Distinct members of a presence channel (one entry per user id)."""
    seen = {}
    for member in _channel_members.get(channel, {}).values():
        if member and member['user_id'] not in seen:
            seen[member['user_id']] = member
    return list(seen.values())


def trigger(channel: str, event: str, data: Any) -> None:
    """Server-side event on a channel; safe to call from HTTP handlers."""
    socketio.emit(event, _envelope(channel, data), to=channel, namespace=NAMESPACE)


def reset_presence() -> None:
    _channel_members.clear()
    _sid_channels.clear()


def _drop_subscription(sid: str, channel: str) -> None:
    members = _channel_members.get(channel)
    if members is None or sid not in members:
        return
    member = members.pop(sid)
    _sid_channels.get(sid, set()).discard(channel)
    if not members:
        _channel_members.pop(channel, None)
    # Only announce when the user has no other socket left in the channel
    if member and all(m is None or m['user_id'] != member['user_id'] for m in members.values()):
        socketio.emit('member_removed', _envelope(channel, member), to=channel, namespace=NAMESPACE)


def handle_connect(auth=None):
    emit('connected', {'socket_id': _get_sid()})


def handle_disconnect(reason=None):
    sid = _get_sid()
    for channel in list(_sid_channels.get(sid, set())):
        _drop_subscription(sid, channel)
    _sid_channels.pop(sid, None)


def handle_subscribe(data):
    data = data or {}
    channel = str(data.get('channel') or '')
    if not channel:
        emit('subscription_error', {'channel': channel, 'status': 400, 'error': 'channel is required'})
        return
    sid = _get_sid()
    channel_data = data.get('channel_data')
    if requires_auth(channel):
        cfg = current_app.config
        try:
            ok = verify_channel_auth(
                cfg.get('REALTIME_KEY'), cfg.get('REALTIME_SECRET'), sid, channel,
                data.get('auth'), channel_data,
            )
        except RealtimeNotConfigured as exc:
            current_app.logger.error(f"[ws-subscribe] channel={channel} {exc}")
            emit('subscription_error', {'channel': channel, 'status': 500, 'error': str(exc)})
            return
        if not ok:
            current_app.logger.warning(f"[ws-subscribe] sid={sid} channel={channel} rejected")
            emit('subscription_error', {'channel': channel, 'status': 403, 'error': 'Invalid channel credentials'})
            return

    member = member_from_channel_data(channel_data) if is_presence_channel(channel) else None
    if is_presence_channel(channel) and member is None:
        emit('subscription_error', {'channel': channel, 'status': 400, 'error': 'channel_data is required'})
        return

    is_new_member = member is not None and all(
        m is None or m['user_id'] != member['user_id'] for m in _channel_members.get(channel, {}).values()
    )
    join_room(channel)
    _channel_members.setdefault(channel, {})[sid] = member
    _sid_channels.setdefault(sid, set()).add(channel)
    current_app.logger.info(f"[ws-subscribe] sid={sid} channel={channel} member={member}")

    emit('subscription_succeeded', {
        'channel': channel,
        'members': channel_members(channel),
        'me': member,
    })
    if is_new_member:
        emit('member_added', _envelope(channel, member), to=channel, include_self=False)


def handle_unsubscribe(data):
    channel = str((data or {}).get('channel') or '')
    if not channel:
        emit('error', {'message': 'channel is required'})
        return
    sid = _get_sid()
    leave_room(channel)
    _drop_subscription(sid, channel)


def handle_trigger(data):
    """Relay a ``client-*`` event to the other subscribers of a channel."""
    data = data or {}
    channel = str(data.get('channel') or '')
    event = str(data.get('event') or '')
    if not event.startswith('client-'):
        emit('error', {'message': 'only client-* events may be triggered'})
        return False
    if channel not in _sid_channels.get(_get_sid(), set()):
        emit('error', {'message': f'not subscribed to {channel}'})
        return False
    emit(event, _envelope(channel, data.get('data')), to=channel, include_self=False)
    return True


def register_socketio_handlers() -> None:
    """Register the realtime channel handlers on the '/ws' namespace."""
    socketio.on_event('connect', handle_connect, namespace=NAMESPACE)
    socketio.on_event('disconnect', handle_disconnect, namespace=NAMESPACE)
    socketio.on_event('subscribe', handle_subscribe, namespace=NAMESPACE)
    socketio.on_event('unsubscribe', handle_unsubscribe, namespace=NAMESPACE)
    socketio.on_event('trigger', handle_trigger, namespace=NAMESPACE)
