from flask import Blueprint, jsonify, current_app

main = Blueprint('main', __name__)


def _mask(value):
    if not value:
        return None
    value = str(value)
    return f'{value[:3]}…{value[-3:]}'


@main.route('/')
def index():
    return jsonify({'message': 'Welcome to the Crash Aim server!'})


@main.route('/api/debug-env')
def debug_env():
    """Report which secrets are configured without revealing them."""
    cfg = current_app.config
    return jsonify({
        'round': {'secret': 'SET' if cfg.get('ROUND_SECRET') else 'MISSING'},
        'realtime': {
            'key': _mask(cfg.get('REALTIME_KEY')),
            'secret': 'SET' if cfg.get('REALTIME_SECRET') else 'MISSING',
        },
        'database': cfg.get('SQLALCHEMY_DATABASE_URI', '').split(':', 1)[0],
    })
