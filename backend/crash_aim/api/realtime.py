import secrets
from flask import Blueprint, jsonify, request, current_app
from crash_aim.api.rounds import json_body
from crash_aim.services.presence import authorize_channel, is_presence_channel, requires_auth
from crash_aim.services.rounds.errors import RoundValidationError
from crash_aim.services.rounds.params import clean_name

realtime = Blueprint('realtime', __name__)


@realtime.route('/realtime/auth', methods=['POST', 'OPTIONS'])
def realtime_auth():
    """Issue a subscription credential for one socket and one channel.

    Accepts form-encoded or JSON bodies. The user name and id may also come
    from the ``X-Username`` / ``X-User-Id`` headers.
    """
    if request.method == 'OPTIONS':
        return '', 204
    data = json_body(fallback=request.form.to_dict())
    socket_id = data.get('socket_id') or data.get('socketId')
    channel_name = data.get('channel_name') or data.get('channel')
    if not socket_id or not channel_name:
        raise RoundValidationError('socket_id & channel_name required')
    if not requires_auth(channel_name):
        raise RoundValidationError('public channels do not need authorization')

    username = clean_name(data.get('username') or request.headers.get('X-Username'))
    user_id = str(data.get('user_id') or request.headers.get('X-User-Id') or f'anon_{secrets.token_hex(6)}')

    presence_data = None
    if is_presence_channel(channel_name):
        presence_data = {'user_id': user_id, 'user_info': {'name': username}}

    cfg = current_app.config
    payload = authorize_channel(
        cfg.get('REALTIME_KEY'), cfg.get('REALTIME_SECRET'), str(socket_id), channel_name, presence_data,
    )
    current_app.logger.info(f"[realtime-auth] channel={channel_name} user={user_id} name={username}")
    return jsonify(payload)
