import os

class Config:
    SECRET_KEY = os.environ.get('SECRET_KEY') or 'you-will-never-guess'
    SQLALCHEMY_DATABASE_URI = os.environ.get('DATABASE_URL') or 'sqlite:///crash_aim.db'
    SQLALCHEMY_TRACK_MODIFICATIONS = False
    # Round signing secret; endpoints that sign or verify refuse to run without it
    ROUND_SECRET = os.environ.get('ROUND_SECRET')
    # Realtime channel credentials (key is public, secret signs subscriptions)
    REALTIME_KEY = os.environ.get('REALTIME_KEY', 'crash-aim')
    REALTIME_SECRET = os.environ.get('REALTIME_SECRET')
    # Round generation
    ROUND_MAX_TIME_MS = int(os.environ.get('ROUND_MAX_TIME_MS', '8000'))
    ROUND_MIN_MULT = float(os.environ.get('ROUND_MIN_MULT', '3.8'))
    ROUND_MAX_MULT = float(os.environ.get('ROUND_MAX_MULT', '5.2'))
    ROUND_TARGET_MIN = float(os.environ.get('ROUND_TARGET_MIN', '1.10'))
    ROUND_TARGET_MARGIN = float(os.environ.get('ROUND_TARGET_MARGIN', '0.05'))
    ROUND_START_DELAY_MS = int(os.environ.get('ROUND_START_DELAY_MS', '3000'))
    ROUND_MIN_START_DELAY_MS = int(os.environ.get('ROUND_MIN_START_DELAY_MS', '1000'))
    ROUND_MAX_START_DELAY_MS = int(os.environ.get('ROUND_MAX_START_DELAY_MS', '15000'))
    # Accepted result timestamps: [startAt - tolerance, startAt + maxTimeMs + grace]
    RESULT_TOLERANCE_MS = int(os.environ.get('RESULT_TOLERANCE_MS', '2500'))
    RESULT_GRACE_MS = int(os.environ.get('RESULT_GRACE_MS', '2500'))
    # Minimum players in a room before the host may start
    MIN_PLAYERS = int(os.environ.get('MIN_PLAYERS', '2'))
    # Lock after a start (ms past startAt) against double starts
    START_LOCK_MS = int(os.environ.get('START_LOCK_MS', '500'))
    # Leaderboard
    SCORE_TOP_DEFAULT_LIMIT = int(os.environ.get('SCORE_TOP_DEFAULT_LIMIT', '25'))
    SCORE_TOP_MAX_LIMIT = int(os.environ.get('SCORE_TOP_MAX_LIMIT', '100'))
    CORS_ORIGINS = [
        o.strip() for o in os.environ.get(
            'CORS_ORIGINS', 'http://localhost:5173,http://127.0.0.1:5173'
        ).split(',') if o.strip()
    ]
