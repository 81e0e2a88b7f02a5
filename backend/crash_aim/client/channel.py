import logging
import threading
import uuid
from collections import defaultdict, namedtuple
from typing import Any, Callable, Dict, List, Optional

import socketio

from crash_aim.services.presence import is_presence_channel

logger = logging.getLogger(__name__)

Member = namedtuple('Member', ['user_id', 'name'])


class ChannelAuthError(Exception):
    """The channel service refused a subscription."""

    def __init__(self, message, status=403):
        super().__init__(message)
        self.status = status


class Channel:
    """A subscribed channel: bind handlers, trigger client events, list members."""

    def __init__(self, name: str, transport: 'Transport'):
        self.name = name
        self._transport = transport
        self._handlers: Dict[str, List[Callable]] = defaultdict(list)
        self._members: Dict[str, Member] = {}

    @property
    def members(self) -> List[Member]:
        return list(self._members.values())

    def bind(self, event: str, handler: Callable[[Any], None]) -> None:
        self._handlers[event].append(handler)

    def unbind(self, event: str, handler: Optional[Callable] = None) -> None:
        if handler is None:
            self._handlers.pop(event, None)
        elif handler in self._handlers.get(event, []):
            self._handlers[event].remove(handler)

    def trigger(self, event: str, payload: Any) -> bool:
        """Send a client event to the other subscribers; the sender does not get it back."""
        if not event.startswith('client-'):
            raise ValueError('client events must be prefixed with "client-"')
        return self._transport._send(self.name, event, payload)

    def _set_members(self, members) -> None:
        self._members = {}
        for m in members or []:
            self._add_member(m)

    def _add_member(self, member) -> Member:
        if isinstance(member, dict):
            member = Member(str(member['user_id']), str(member.get('name') or 'player').strip())
        self._members[member.user_id] = member
        return member

    def _remove_member(self, member) -> Optional[Member]:
        user_id = member['user_id'] if isinstance(member, dict) else member.user_id
        return self._members.pop(str(user_id), None)

    def _dispatch(self, event: str, data: Any) -> None:
        if event == 'member_added':
            data = self._add_member(data)
        elif event == 'member_removed':
            data = self._remove_member(data) or data
        for handler in list(self._handlers.get(event, [])):
            handler(data)


class Transport:
    """A connection to the channel service."""

    socket_id: str = ''

    def __init__(self):
        self._channels: Dict[str, Channel] = {}

    def channel(self, name: str) -> Optional[Channel]:
        return self._channels.get(name)

    def subscribe(self, name: str) -> Channel:
        raise NotImplementedError

    def unsubscribe(self, name: str) -> None:
        raise NotImplementedError

    def disconnect(self) -> None:
        for name in list(self._channels):
            self.unsubscribe(name)

    def _send(self, channel: str, event: str, payload: Any) -> bool:
        raise NotImplementedError


class LocalHub:
    """In-process channel service with presence, for solo play, bots and tests.

    ``authorizer(socket_id, channel_name, user)`` may raise ChannelAuthError
    to refuse a subscription.
    """

    def __init__(self, authorizer: Optional[Callable] = None):
        self.authorizer = authorizer
        self._subscribers: Dict[str, Dict[str, 'LocalTransport']] = defaultdict(dict)
        self._lock = threading.RLock()

    def transport(self, user_id: str, name: str) -> 'LocalTransport':
        return LocalTransport(self, user_id, name)

    def members(self, channel: str) -> List[Member]:
        with self._lock:
            return [t.member for t in self._subscribers.get(channel, {}).values()]

    def trigger(self, channel: str, event: str, payload: Any) -> None:
        """Server-side event: delivered to every subscriber."""
        self._deliver(channel, event, payload, exclude=None)

    def _join(self, channel: str, transport: 'LocalTransport') -> List[Member]:
        if self.authorizer is not None:
            self.authorizer(transport.socket_id, channel, transport.member)
        with self._lock:
            subscribers = self._subscribers[channel]
            is_new = is_presence_channel(channel) and transport.socket_id not in subscribers
            subscribers[transport.socket_id] = transport
            members = [t.member for t in subscribers.values()]
        if is_new:
            self._deliver(channel, 'member_added', transport.member._asdict(), exclude=transport.socket_id)
        return members

    def _leave(self, channel: str, transport: 'LocalTransport') -> None:
        with self._lock:
            subscribers = self._subscribers.get(channel, {})
            if subscribers.pop(transport.socket_id, None) is None:
                return
            if not subscribers:
                self._subscribers.pop(channel, None)
        if is_presence_channel(channel):
            self._deliver(channel, 'member_removed', transport.member._asdict(), exclude=transport.socket_id)

    def _deliver(self, channel: str, event: str, payload: Any, exclude: Optional[str]) -> bool:
        with self._lock:
            targets = [t for sid, t in self._subscribers.get(channel, {}).items() if sid != exclude]
        for target in targets:
            target._receive(channel, event, payload)
        return True


class LocalTransport(Transport):

    def __init__(self, hub: LocalHub, user_id: str, name: str):
        super().__init__()
        self.hub = hub
        self.socket_id = uuid.uuid4().hex
        self.member = Member(str(user_id), name)

    def subscribe(self, name: str) -> Channel:
        if name in self._channels:
            return self._channels[name]
        channel = Channel(name, self)
        self._channels[name] = channel
        try:
            members = self.hub._join(name, self)
        except ChannelAuthError:
            self._channels.pop(name, None)
            raise
        if is_presence_channel(name):
            channel._set_members(members)
        return channel

    def unsubscribe(self, name: str) -> None:
        if self._channels.pop(name, None) is not None:
            self.hub._leave(name, self)

    def _send(self, channel: str, event: str, payload: Any) -> bool:
        if channel not in self._channels:
            return False
        return self.hub._deliver(channel, event, payload, exclude=self.socket_id)

    def _receive(self, channel: str, event: str, payload: Any) -> None:
        subscribed = self._channels.get(channel)
        if subscribed is not None:
            subscribed._dispatch(event, payload)


class _PendingSubscription:

    def __init__(self):
        self.done = threading.Event()
        self.members: List[Dict[str, str]] = []
        self.error: Optional[Dict[str, Any]] = None


class SocketIOTransport(Transport):
    """Channel transport over the server's '/ws' Socket.IO namespace.

    ``authorizer(socket_id, channel_name)`` returns the credential dict from
    the realtime auth endpoint (see ``RoundApiClient.authorize_channel``).
    """

    def __init__(self, url: str, authorizer: Callable[[str, str], Dict[str, str]],
                 namespace: str = '/ws', timeout: float = 5.0, client: Optional[socketio.Client] = None):
        super().__init__()
        self.url = url
        self.namespace = namespace
        self.timeout = timeout
        self._authorizer = authorizer
        self._pending: Dict[str, _PendingSubscription] = {}
        self._sio = client or socketio.Client(reconnection=True)
        self._sio.on('*', self._on_event, namespace=namespace)

    def connect(self) -> None:
        self._sio.connect(self.url, namespaces=[self.namespace], wait_timeout=self.timeout)
        self.socket_id = self._sio.get_sid(namespace=self.namespace)
        logger.info(f"[ws-connect] url={self.url} socket_id={self.socket_id}")

    def subscribe(self, name: str) -> Channel:
        if name in self._channels:
            return self._channels[name]
        if not self._sio.connected:
            self.connect()
        credentials = self._authorizer(self.socket_id, name)
        pending = self._pending[name] = _PendingSubscription()
        channel = self._channels[name] = Channel(name, self)
        self._sio.emit('subscribe', dict(credentials, channel=name), namespace=self.namespace)
        try:
            if not pending.done.wait(self.timeout):
                raise ChannelAuthError(f'subscription to {name} timed out', status=408)
            if pending.error is not None:
                raise ChannelAuthError(pending.error.get('error') or 'subscription refused',
                                       status=pending.error.get('status', 403))
        except ChannelAuthError:
            self._channels.pop(name, None)
            raise
        finally:
            self._pending.pop(name, None)
        channel._set_members(pending.members)
        return channel

    def unsubscribe(self, name: str) -> None:
        if self._channels.pop(name, None) is not None and self._sio.connected:
            self._sio.emit('unsubscribe', {'channel': name}, namespace=self.namespace)

    def disconnect(self) -> None:
        super().disconnect()
        if self._sio.connected:
            self._sio.disconnect()

    def _send(self, channel: str, event: str, payload: Any) -> bool:
        if channel not in self._channels or not self._sio.connected:
            return False
        self._sio.emit('trigger', {'channel': channel, 'event': event, 'data': payload}, namespace=self.namespace)
        return True

    def _on_event(self, event, data=None):
        data = data or {}
        name = data.get('channel') if isinstance(data, dict) else None
        if event in ('subscription_succeeded', 'subscription_error'):
            pending = self._pending.get(name)
            if pending is None:
                return
            if event == 'subscription_error':
                pending.error = data
            else:
                pending.members = data.get('members') or []
            pending.done.set()
            return
        channel = self._channels.get(name) if name else None
        if channel is None:
            logger.debug(f"[ws-event] dropped event={event} channel={name}")
            return
        channel._dispatch(event, data.get('data'))
