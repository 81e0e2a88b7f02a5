import logging
from typing import Any, Dict, List, Optional

import requests

from crash_aim.services.rounds.params import RoundParameters, StopResult
from .channel import ChannelAuthError

logger = logging.getLogger(__name__)


class ApiError(Exception):

    def __init__(self, message, status=None):
        super().__init__(message)
        self.status = status


class SigningError(ApiError):
    """The trusted server would not sign a round."""


class SubmissionError(ApiError):
    """A result or score did not reach the server."""


class RoundApiClient:
    """HTTP client for the trusted round server."""

    def __init__(self, base_url: str, session: Optional[requests.Session] = None, timeout: float = 5.0):
        self.base_url = base_url.rstrip('/')
        self.session = session or requests.Session()
        self.timeout = timeout

    def _url(self, path: str) -> str:
        return f'{self.base_url}/api/{path.lstrip("/")}'

    def _post(self, path: str, payload: Dict[str, Any], error_cls=ApiError) -> Dict[str, Any]:
        try:
            resp = self.session.post(self._url(path), json=payload, timeout=self.timeout)
        except requests.RequestException as exc:
            raise error_cls(f'{path}: {exc}')
        return self._decode(path, resp, error_cls)

    @staticmethod
    def _decode(path: str, resp, error_cls) -> Dict[str, Any]:
        try:
            body = resp.json()
        except ValueError:
            body = {}
        if resp.status_code >= 400:
            raise error_cls(f"{path}: {body.get('error') or resp.status_code}", status=resp.status_code)
        return body

    def sign_round(self, params: RoundParameters) -> str:
        """Signer callable for ``RoomSession``."""
        payload = params.to_payload()
        payload.pop('signature', None)
        return self._post('round-sign', payload, SigningError)['signature']

    def submit_result(self, params: RoundParameters, result: StopResult) -> Dict[str, Any]:
        """Result sink for ``RoomSession``."""
        return self._post(
            'round-result',
            {'room': params.room, 'round': params.to_payload(), 'result': result.to_dict()},
            SubmissionError,
        )

    def start_round(self, room: str, start_delay_ms: Optional[int] = None) -> RoundParameters:
        payload = {'room': room}
        if start_delay_ms is not None:
            payload['startDelayMs'] = start_delay_ms
        return RoundParameters.from_payload(self._post('round-start', payload, SigningError))

    def round_summary(self, room: str, round_id: str) -> Dict[str, Any]:
        return self._post('round-summary', {'room': room, 'roundId': round_id})['summary']

    def authorize_channel(self, socket_id: str, channel_name: str, user) -> Dict[str, str]:
        try:
            return self._post(
                'realtime/auth',
                {'socket_id': socket_id, 'channel_name': channel_name,
                 'username': user.name, 'user_id': user.id},
            )
        except ApiError as exc:
            raise ChannelAuthError(str(exc), status=exc.status or 503)

    def submit_score(self, result: StopResult, room: Optional[str] = None) -> None:
        payload = result.to_dict()
        if room:
            payload['room'] = room
        self._post('score-submit', payload, SubmissionError)

    def top_scores(self, scope: str = 'day', limit: int = 25, room: Optional[str] = None) -> List[Dict[str, Any]]:
        params = {'scope': scope, 'limit': limit}
        if room:
            params['room'] = room
        try:
            resp = self.session.get(self._url('score-top'), params=params, timeout=self.timeout)
        except requests.RequestException as exc:
            raise ApiError(f'score-top: {exc}')
        return self._decode('score-top', resp, ApiError).get('items', [])
