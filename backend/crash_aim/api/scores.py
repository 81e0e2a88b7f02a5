import math
from datetime import timedelta
from flask import Blueprint, jsonify, request, current_app
from crash_aim import db
from crash_aim.models import Score, utcnow
from crash_aim.services.rounds.errors import RoundValidationError
from crash_aim.services.rounds.params import clean_name, normalize_room, parse_flag
from crash_aim.services.rounds.scoring import MAX_SCORE
from crash_aim.api.rounds import json_body

scores = Blueprint('scores', __name__)

SCOPE_WINDOWS = {
    'day': timedelta(days=1),
    'week': timedelta(days=7),
    'month': timedelta(days=30),
    'all': None,
}


def lower_bound_for_scope(scope, now=None):
    """Oldest ``created_at`` included for a leaderboard scope; unknown scopes mean a day."""
    window = SCOPE_WINDOWS.get((scope or 'day').lower(), SCOPE_WINDOWS['day'])
    if window is None:
        return None
    return (now or utcnow()) - window


def _float(data, key, default):
    raw = data.get(key)
    if raw is None:
        return default
    if isinstance(raw, bool):
        raise RoundValidationError(f'{key} must be a number')
    try:
        value = float(raw)
    except (TypeError, ValueError):
        raise RoundValidationError(f'{key} must be a number')
    if not math.isfinite(value):
        raise RoundValidationError(f'{key} must be finite')
    return value


@scores.route('/score-submit', methods=['POST'])
def score_submit():
    data = json_body()
    user_id = str(data.get('userId') or '').strip()[:64]
    if not user_id:
        raise RoundValidationError('userId required')

    room = normalize_room(data.get('room')) if data.get('room') else None
    row = Score(
        user_id=user_id,
        name=clean_name(data.get('name')),
        score=min(MAX_SCORE, max(0, int(_float(data, 'score', 0)))),
        value=_float(data, 'value', 1.0),
        target=_float(data, 'target', 1.5),
        diff=abs(_float(data, 'diff', 0.0)),
        crashed=parse_flag(data, 'crashed'),
        room=room or None,
        round_id=str(data['roundId'])[:64] if data.get('roundId') else None,
    )
    db.session.add(row)
    db.session.commit()
    current_app.logger.info(f"[score-submit] user={row.user_id} score={row.score} room={row.room}")
    return jsonify({'ok': True})


@scores.route('/score-top', methods=['GET'])
def score_top():
    cfg = current_app.config
    default_limit = int(cfg.get('SCORE_TOP_DEFAULT_LIMIT', 25))
    max_limit = int(cfg.get('SCORE_TOP_MAX_LIMIT', 100))
    try:
        limit = int(request.args.get('limit') or default_limit)
    except ValueError:
        limit = default_limit
    limit = max(1, min(max_limit, limit))

    query = Score.query
    bound = lower_bound_for_scope(request.args.get('scope'))
    if bound is not None:
        query = query.filter(Score.created_at >= bound)

    room = request.args.get('room')
    if room:
        query = query.filter(Score.room == normalize_room(room))
    elif request.args.get('onlyMp') == '1':
        query = query.filter(Score.room.isnot(None))

    rows = query.order_by(Score.score.desc(), Score.created_at.asc()).limit(limit).all()
    return jsonify({'ok': True, 'items': [r.to_dict() for r in rows]})
