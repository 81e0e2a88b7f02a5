from flask import Blueprint, jsonify, request, current_app
from sqlalchemy.exc import IntegrityError
from crash_aim import db
from crash_aim.models import Round, RoundResult
from crash_aim.services.presence import control_channel, results_channel
from crash_aim.services.rounds.errors import (
    AuthenticityError,
    RoundConflict,
    RoundError,
    RoundNotFound,
    RoundValidationError,
    SigningNotConfigured,
)
from crash_aim.services.rounds.generator import RoundSettings, generate_round, now_ms
from crash_aim.services.rounds.params import RoundParameters, normalize_room
from crash_aim.services.rounds.scoring import rank_results
from crash_aim.services.rounds.signing import sign
from crash_aim.services.rounds.verification import verify_submission
from crash_aim.socketio_events import trigger

rounds = Blueprint('rounds', __name__)

MIN_ROUND_TIME_MS = 1000
MAX_ROUND_TIME_MS = 60000


@rounds.app_errorhandler(RoundError)
def handle_round_error(exc):
    if exc.status >= 500:
        current_app.logger.error(f"[round-error] {type(exc).__name__}: {exc}")
    return jsonify({'ok': False, 'error': str(exc)}), exc.status


def json_body(fallback=None) -> dict:
    """The request's JSON object; a JSON array or scalar is a 400."""
    data = request.get_json(silent=True)
    if data is None:
        return fallback if fallback is not None else {}
    if not isinstance(data, dict):
        raise RoundValidationError('JSON object body required')
    return data


def _round_secret() -> str:
    secret = current_app.config.get('ROUND_SECRET')
    if not secret:
        raise SigningNotConfigured()
    return secret


def _persist_round(params: RoundParameters) -> Round:
    existing = Round.query.filter_by(round_id=params.round_id).first()
    if existing is None:
        try:
            existing = Round.from_params(params)
            db.session.add(existing)
            db.session.commit()
            return existing
        except IntegrityError:
            db.session.rollback()
            existing = Round.query.filter_by(round_id=params.round_id).one()
    if not existing.matches(params):
        raise RoundConflict()
    return existing


def _apply_result(row: RoundResult, result) -> None:
    row.name = result.name
    row.value = result.value
    row.diff = result.diff
    row.score = result.score
    row.crashed = result.crashed
    db.session.add(row)
    db.session.commit()


def store_result(params: RoundParameters, room: str, result) -> RoundResult:
    """Insert or update the one result row per (round, user)."""
    row = RoundResult.query.filter_by(round_id=params.round_id, user_id=result.user_id).first()
    if row is not None:
        _apply_result(row, result)
        return row
    try:
        row = RoundResult(round_id=params.round_id, user_id=result.user_id, room=room)
        _apply_result(row, result)
    except IntegrityError:
        # A concurrent submission inserted the row first
        db.session.rollback()
        current_app.logger.info(f"[round-result] concurrent insert round={params.round_id} user={result.user_id}")
        row = RoundResult.query.filter_by(round_id=params.round_id, user_id=result.user_id).one()
        _apply_result(row, result)
    return row


@rounds.route('/round-sign', methods=['POST'])
def round_sign():
    secret = _round_secret()
    data = json_body()
    params = RoundParameters.from_payload(data)
    if params.start_at <= now_ms():
        raise RoundValidationError('startAt must be in the future')
    if not MIN_ROUND_TIME_MS <= params.max_time_ms <= MAX_ROUND_TIME_MS:
        raise RoundValidationError(f'maxTimeMs must be between {MIN_ROUND_TIME_MS} and {MAX_ROUND_TIME_MS}')

    signature = sign(params, secret)
    _persist_round(params)
    current_app.logger.info(
        f"[round-sign] room={params.room} round={params.round_id} start_at={params.start_at} "
        f"max_time={params.max_time_ms} max_mult={params.max_multiplier}"
    )
    return jsonify({'ok': True, 'signature': signature, 'roundId': params.round_id})


@rounds.route('/round-result', methods=['POST'])
def round_result():
    secret = _round_secret()
    body = json_body()
    cfg = current_app.config
    try:
        room, params, result = verify_submission(
            body,
            secret,
            tolerance_ms=int(cfg.get('RESULT_TOLERANCE_MS', 2500)),
            grace_ms=int(cfg.get('RESULT_GRACE_MS', 2500)),
        )
    except AuthenticityError as exc:
        round_info = body.get('round') if isinstance(body.get('round'), dict) else {}
        current_app.logger.warning(
            f"[round-result] rejected room={body.get('room')} round={round_info.get('seed')} reason={exc}"
        )
        raise

    # The signature vouches for the round even if this server never signed it
    _persist_round(params)
    store_result(params, room, result)

    current_app.logger.info(
        f"[round-result] room={room} round={params.round_id} user={result.user_id} "
        f"value={result.value} diff={result.diff} score={result.score} crashed={result.crashed}"
    )
    trigger(results_channel(room), 'partial-result', result.to_dict())
    return jsonify({'ok': True, 'result': result.to_dict()})


@rounds.route('/round-start', methods=['POST'])
def round_start():
    """Generate, sign, persist and broadcast a round in one call."""
    secret = _round_secret()
    data = json_body()
    room = normalize_room(data.get('room'))
    if not room:
        raise RoundValidationError('room required')
    delay = data.get('startDelayMs')
    try:
        delay = float(delay) if delay is not None else None
    except (TypeError, ValueError):
        raise RoundValidationError('startDelayMs must be a number')

    params = generate_round(room, RoundSettings.from_config(current_app.config), start_delay_ms=delay)
    signed = params.with_signature(sign(params, secret))
    _persist_round(signed)
    payload = signed.to_payload()
    trigger(control_channel(room), 'mp-start', payload)
    current_app.logger.info(
        f"[round-start] room={room} round={signed.round_id} start_at={signed.start_at} target={signed.target}"
    )
    return jsonify({'ok': True, **payload})


@rounds.route('/round-summary', methods=['POST'])
def round_summary():
    data = json_body()
    room = normalize_room(data.get('room'))
    round_id = str(data.get('roundId') or '')
    if not room or not round_id:
        raise RoundValidationError('room & roundId required')

    round_row = Round.query.filter_by(round_id=round_id).first()
    if not round_row:
        raise RoundNotFound()

    rows = RoundResult.query.filter_by(round_id=round_id, room=room).all()
    summary = {
        'roundId': round_id,
        'target': round_row.target,
        'expectedPlayers': data.get('expectedPlayers'),
        'results': rank_results([r.to_dict() for r in rows]),
    }
    trigger(results_channel(room), 'round-summary', summary)

    round_row.status = 'finished'
    db.session.add(round_row)
    db.session.commit()
    current_app.logger.info(f"[round-summary] room={room} round={round_id} results={len(rows)}")
    return jsonify({'ok': True, 'summary': summary})
