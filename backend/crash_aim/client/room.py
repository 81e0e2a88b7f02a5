import logging
import threading
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Iterable, List, Optional, Tuple

from crash_aim.services.presence import control_channel, presence_channel, results_channel
from crash_aim.services.rounds.errors import RoundValidationError
from crash_aim.services.rounds.generator import generate_round
from crash_aim.services.rounds.params import RoundParameters, StopResult, normalize_room
from crash_aim.services.rounds.scoring import rank_results
from .api import SubmissionError
from .channel import Channel, ChannelAuthError
from .engine import GrowthEngine, RoundOutcome

logger = logging.getLogger(__name__)


def elect_host(names: Iterable) -> Optional[Any]:
    """The host is the lowest-sorting member.

    Pass (name, user_id) pairs so that equal display names are ordered by id.
    """
    names = [n for n in names if n]
    return min(names) if names else None


def _member_field(member, key):
    if isinstance(member, dict):
        return member.get(key)
    return getattr(member, key, None)


class JoinError(Exception):
    """Could not join a room; shown to the player, never fatal."""


class RoomActionRejected(Exception):
    """A room action failed a local gate before any network call."""

    MESSAGES = {
        'not_joined': 'You are not in a room.',
        'not_host': 'Only the host can start a round.',
        'not_enough_players': 'At least {min_players} players are required to start.',
        'not_all_ready': 'Everyone has to be ready before the round starts.',
        'locked': 'A round was just started.',
        'no_signer': 'No round signer is configured.',
        'broadcast_failed': 'Could not broadcast the round to the room.',
    }

    def __init__(self, reason: str, **details):
        self.reason = reason
        self.details = details
        super().__init__(self.MESSAGES.get(reason, reason).format(**details))


@dataclass(frozen=True)
class Membership:
    room: str
    user_id: str
    name: str


@dataclass
class RoundSummary:
    round_id: str
    target: float
    results: List[Dict[str, Any]]
    missing: List[str] = field(default_factory=list)
    reason: str = 'complete'  # complete, timeout, server

    def to_dict(self) -> Dict[str, Any]:
        return {
            'roundId': self.round_id,
            'target': self.target,
            'results': self.results,
            'missing': self.missing,
            'reason': self.reason,
        }


class RoomSession:
    """Room coordination for one player.

    Keeps presence, readiness and the active round in sync over a channel
    transport, runs the round on a ``GrowthEngine`` and turns everyone's
    stops into a ranked summary.

    ``signer(params) -> signature`` is required for hosting rounds.
    ``result_sink(params, result)`` is optional; it is called off the timing
    path and may raise SubmissionError, which is logged and ignored.
    """

    def __init__(self, transport, context, signer: Optional[Callable] = None,
                 result_sink: Optional[Callable] = None, engine: Optional[GrowthEngine] = None):
        self.transport = transport
        self.context = context
        self.signer = signer
        self.result_sink = result_sink
        self.engine = engine or GrowthEngine.from_context(context)
        self.engine.on_finish(self._on_engine_finished)
        self.user = context.prefs.user()

        self.room: Optional[str] = None
        self.ready_ids = set()
        self.active_round: Optional[RoundParameters] = None
        self.results: Dict[str, StopResult] = {}
        self.expected = set()
        self.summary: Optional[RoundSummary] = None
        self._presence: Optional[Channel] = None
        self._channel_names: List[str] = []
        self._lock_until = 0
        self._summary_timer = None
        self._round_listeners: List[Callable[[RoundParameters], None]] = []
        self._result_listeners: List[Callable[[StopResult], None]] = []
        self._summary_listeners: List[Callable[[RoundSummary], None]] = []
        self._lock = threading.RLock()

    # -- listeners ---------------------------------------------------------

    def on_round(self, callback: Callable[[RoundParameters], None]) -> None:
        self._round_listeners.append(callback)

    def on_result(self, callback: Callable[[StopResult], None]) -> None:
        self._result_listeners.append(callback)

    def on_summary(self, callback: Callable[[RoundSummary], None]) -> None:
        self._summary_listeners.append(callback)

    # -- membership --------------------------------------------------------

    def join(self, room: str, display_name: Optional[str] = None) -> Membership:
        if self.room:
            self.leave()
        room = normalize_room(room)
        if not room:
            raise JoinError('Enter a room name.')
        prefs = self.context.prefs
        if display_name:
            prefs.set_user_name(display_name)
            self.user = prefs.user()

        names = [presence_channel(room), control_channel(room), results_channel(room)]
        channels = []
        try:
            for name in names:
                channels.append(self.transport.subscribe(name))
        except ChannelAuthError as exc:
            logger.warning(f"[room-join] room={room} user={self.user.id} refused status={exc.status}: {exc}")
            for ch in channels:
                self.transport.unsubscribe(ch.name)
            raise JoinError(f'Could not join room {room}: {exc}')

        presence, control, results = channels
        presence.bind('member_added', self._on_member_added)
        presence.bind('member_removed', self._on_member_removed)
        presence.bind('client-ready', self._on_ready)
        presence.bind('client-round-start', self._on_client_round_start)
        presence.bind('client-round-result', self._on_round_result)
        control.bind('mp-start', self._on_server_round_start)
        results.bind('partial-result', self._on_round_result)
        results.bind('round-summary', self._on_server_summary)

        with self._lock:
            self.room = room
            self._presence = presence
            self._channel_names = names
            self.ready_ids = set()
        prefs.set_last_room(room)
        logger.info(f"[room-join] room={room} user={self.user.id} name={self.user.name} members={self.members}")
        return Membership(room, self.user.id, self.user.name)

    def leave(self) -> None:
        with self._lock:
            self.engine.reset()
            self._cancel_summary_timer()
            for name in self._channel_names:
                self.transport.unsubscribe(name)
            logger.info(f"[room-leave] room={self.room} user={self.user.id}")
            self.room = None
            self._presence = None
            self._channel_names = []
            self.ready_ids = set()
            self.active_round = None
            self.results = {}
            self.expected = set()
            self.summary = None

    @property
    def joined(self) -> bool:
        return self._presence is not None

    @property
    def members(self) -> List[str]:
        if self._presence is None:
            return []
        members = self._presence.members
        names = [m.name for m in members]
        if self.user.id not in [m.user_id for m in members]:
            names.append(self.user.name)
        return names

    @property
    def member_ids(self) -> List[str]:
        if self._presence is None:
            return []
        ids = [m.user_id for m in self._presence.members]
        if self.user.id not in ids:
            ids.append(self.user.id)
        return ids

    def _host_member(self) -> Optional[Tuple[str, str]]:
        """(name, user_id) of the host; equal names fall back to the user id."""
        if self._presence is None:
            return None
        candidates = {(m.name, m.user_id) for m in self._presence.members if m.name}
        candidates.add((self.user.name, self.user.id))
        return elect_host(candidates)

    @property
    def host(self) -> Optional[str]:
        member = self._host_member()
        return member[0] if member else None

    @property
    def host_id(self) -> Optional[str]:
        member = self._host_member()
        return member[1] if member else None

    @property
    def is_host(self) -> bool:
        return self.joined and self.host_id == self.user.id

    # -- readiness ---------------------------------------------------------

    def set_ready(self, ready: bool = True) -> None:
        self._require_joined()
        with self._lock:
            if ready:
                self.ready_ids.add(self.user.id)
            else:
                self.ready_ids.discard(self.user.id)
        # Client events are not echoed back, so the local flag is set above
        self._presence.trigger('client-ready', {'name': self.user.name, 'userId': self.user.id, 'ready': bool(ready)})

    def all_ready(self) -> bool:
        ids = self.member_ids
        if len(ids) < self.context.min_players:
            return False
        return all(i in self.ready_ids for i in ids)

    # -- rounds ------------------------------------------------------------

    def start_round(self) -> RoundParameters:
        """Host only: generate, sign and broadcast a round.

        Every gate is checked locally before the signer is contacted.
        """
        self._require_joined()
        if not self.is_host:
            raise RoomActionRejected('not_host', host=self.host)
        if len(self.member_ids) < self.context.min_players:
            raise RoomActionRejected('not_enough_players', min_players=self.context.min_players)
        if not self.all_ready():
            raise RoomActionRejected('not_all_ready')
        now = self.context.clock.now_ms()
        if now < self._lock_until:
            raise RoomActionRejected('locked')
        if self.signer is None:
            raise RoomActionRejected('no_signer')

        self._lock_until = now + self.context.start_lock_ms
        params = generate_round(self.room, self.context.settings, now=now, rng=self.context.rng)
        signed = params.with_signature(self.signer(params))
        self._lock_until = signed.start_at + self.context.start_lock_ms

        payload = signed.to_payload()
        payload['from'] = self.user.name
        payload['fromId'] = self.user.id
        if not self._presence.trigger('client-round-start', payload):
            raise RoomActionRejected('broadcast_failed')
        logger.info(f"[room-start] room={self.room} round={signed.round_id} start_at={signed.start_at} host={self.user.name}")
        self._begin_round(signed)
        return signed

    def stop(self) -> Optional[RoundOutcome]:
        return self.engine.stop()

    def _begin_round(self, params: RoundParameters) -> None:
        with self._lock:
            self._cancel_summary_timer()
            self.ready_ids = set()
            self.active_round = params
            self.results = {}
            self.summary = None
            self.expected = set(self.member_ids)
            deadline = params.end_at + self.context.result_grace_ms
            self._summary_timer = self.context.scheduler.call_at(deadline, self._on_summary_deadline, params.round_id)
        self.engine.load(params)
        for callback in list(self._round_listeners):
            callback(params)

    def _accept_round(self, payload, source: str) -> None:
        try:
            params = RoundParameters.from_payload(payload or {})
        except RoundValidationError as exc:
            logger.warning(f"[room-round] room={self.room} source={source} malformed round: {exc}")
            return
        with self._lock:
            if params.room != self.room:
                logger.debug(f"[room-round] ignored round for room={params.room}")
                return
            active = self.active_round
            if active is not None and params.round_id == active.round_id:
                logger.debug(f"[room-round] duplicate round={params.round_id}")
                return
            if active is not None and params.start_at < active.start_at:
                logger.debug(f"[room-round] stale round={params.round_id} active={active.round_id}")
                return
        logger.info(f"[room-round] room={self.room} round={params.round_id} source={source} start_at={params.start_at}")
        self._begin_round(params)

    def _on_client_round_start(self, payload) -> None:
        payload = payload or {}
        sender = payload.get('from')
        member = self._host_member()
        if member is None or payload.get('fromId') != member[1]:
            logger.warning(f"[room-round] room={self.room} ignored start from={sender} host={member}")
            return
        self._accept_round(payload, 'host')

    def _on_server_round_start(self, payload) -> None:
        self._accept_round(payload, 'server')

    # -- results -----------------------------------------------------------

    def _on_engine_finished(self, outcome: RoundOutcome) -> None:
        with self._lock:
            params = self.active_round
            if params is None or outcome.round_id != params.round_id:
                return
            result = StopResult.build(self.user.id, self.user.name, outcome.value, params,
                                      crashed=outcome.crashed, timestamp=outcome.timestamp)
            presence = self._presence
        if presence is not None:
            presence.trigger('client-round-result', result.to_dict())
        if self.result_sink is not None:
            self.context.scheduler.call_later(0, self._submit_result, params, result)
        self._record(result)

    def _submit_result(self, params: RoundParameters, result: StopResult) -> None:
        try:
            self.result_sink(params, result)
        except SubmissionError as exc:
            logger.warning(f"[room-result] room={params.room} round={params.round_id} submission failed: {exc}")

    def _on_round_result(self, payload) -> None:
        with self._lock:
            params = self.active_round
            if params is None or str((payload or {}).get('roundId')) != params.round_id:
                logger.debug(f"[room-result] stale result for round={(payload or {}).get('roundId')}")
                return
        try:
            result = StopResult.from_payload(payload, params)
        except RoundValidationError as exc:
            logger.warning(f"[room-result] room={self.room} malformed result: {exc}")
            return
        self._record(result)

    def _record(self, result: StopResult) -> None:
        with self._lock:
            if self.summary is not None:
                return
            self.results[result.user_id] = result
        for callback in list(self._result_listeners):
            callback(result)
        self._check_complete()

    def _check_complete(self) -> None:
        with self._lock:
            done = self.summary is None and self.expected and self.expected.issubset(self.results)
        if done:
            self._finish_summary('complete')

    def _on_summary_deadline(self, round_id: str) -> None:
        with self._lock:
            if self.active_round is None or self.active_round.round_id != round_id:
                return
        self._finish_summary('timeout')

    def _finish_summary(self, reason: str) -> None:
        with self._lock:
            params = self.active_round
            if params is None or self.summary is not None:
                return
            self._cancel_summary_timer()
            ranked = rank_results(self.results.values())
            self.summary = RoundSummary(
                round_id=params.round_id,
                target=params.target,
                results=[r.to_dict() for r in ranked],
                missing=sorted(self.expected - set(self.results)),
                reason=reason,
            )
            summary = self.summary
        logger.info(
            f"[room-summary] room={self.room} round={summary.round_id} reason={reason} "
            f"results={len(summary.results)} missing={len(summary.missing)}"
        )
        for callback in list(self._summary_listeners):
            callback(summary)

    def _on_server_summary(self, payload) -> None:
        payload = payload or {}
        with self._lock:
            params = self.active_round
            if params is None or str(payload.get('roundId')) != params.round_id:
                return
            self._cancel_summary_timer()
            reported = {str(r.get('userId')) for r in payload.get('results') or []}
            self.summary = RoundSummary(
                round_id=params.round_id,
                target=float(payload.get('target', params.target)),
                results=rank_results(payload.get('results') or []),
                missing=sorted(self.expected - reported),
                reason='server',
            )
            summary = self.summary
        for callback in list(self._summary_listeners):
            callback(summary)

    # -- membership events -------------------------------------------------

    def _on_member_added(self, member) -> None:
        logger.info(f"[room-member] room={self.room} added={_member_field(member, 'name')} host={self.host}")

    def _on_member_removed(self, member) -> None:
        name = _member_field(member, 'name')
        user_id = _member_field(member, 'user_id')
        with self._lock:
            self.ready_ids.discard(user_id)
            # A player who left can no longer report
            if self.summary is None and user_id in self.expected and user_id not in self.results:
                self.expected.discard(user_id)
        logger.info(f"[room-member] room={self.room} removed={name} host={self.host}")
        self._check_complete()

    def _on_ready(self, payload) -> None:
        payload = payload or {}
        user_id = payload.get('userId')
        if not user_id:
            return
        with self._lock:
            if payload.get('ready'):
                self.ready_ids.add(user_id)
            else:
                self.ready_ids.discard(user_id)

    # -- helpers -----------------------------------------------------------

    def _require_joined(self) -> None:
        if not self.joined:
            raise RoomActionRejected('not_joined')

    def _cancel_summary_timer(self) -> None:
        if self._summary_timer is not None:
            self._summary_timer.cancel()
            self._summary_timer = None
