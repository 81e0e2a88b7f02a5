from flask import Flask
from flask_sqlalchemy import SQLAlchemy
from flask_cors import CORS
from flask_migrate import Migrate
from flask_socketio import SocketIO
import click
import json
from config import Config

db = SQLAlchemy()
migrate = Migrate()
socketio = SocketIO(async_mode=None)

def create_app(config_class=Config):
    flask_app = Flask(__name__)
    flask_app.config.from_object(config_class)
    allowed_origins = flask_app.config.get('CORS_ORIGINS') or '*'

    db.init_app(flask_app)
    migrate.init_app(flask_app, db)
    CORS(flask_app, supports_credentials=True, origins=allowed_origins)

    # Initialize Socket.IO after app is created
    socketio.init_app(flask_app, cors_allowed_origins=allowed_origins)

    from crash_aim.main import main
    flask_app.register_blueprint(main)

    # Mount the round, leaderboard and channel-auth endpoints under /api
    from crash_aim.api.rounds import rounds
    from crash_aim.api.scores import scores
    from crash_aim.api.realtime import realtime
    flask_app.register_blueprint(rounds, url_prefix='/api')
    flask_app.register_blueprint(scores, url_prefix='/api')
    flask_app.register_blueprint(realtime, url_prefix='/api')

    from crash_aim.socketio_events import register_socketio_handlers
    register_socketio_handlers()

    if not flask_app.config.get('ROUND_SECRET'):
        flask_app.logger.warning('[config] ROUND_SECRET is not set; round signing endpoints will refuse requests')

    @click.command('db-reset')
    def db_reset_command():
        """Drops and recreates the round, result and score tables."""
        import crash_aim.models  # noqa: F401
        with flask_app.app_context():
            db.drop_all()
            db.create_all()
            print('Database has been reset!')

    @click.command('sign-round')
    @click.argument('room')
    @click.option('--delay-ms', type=int, default=None, help='Countdown before the round starts.')
    def sign_round_command(room, delay_ms):
        """Generates and signs a round for ROOM and prints its payload."""
        from crash_aim.services.rounds.generator import RoundSettings, generate_round
        from crash_aim.services.rounds.signing import sign
        settings = RoundSettings.from_config(flask_app.config)
        params = generate_round(room, settings, start_delay_ms=delay_ms)
        signed = params.with_signature(sign(params, flask_app.config.get('ROUND_SECRET')))
        print(json.dumps(signed.to_payload(), indent=2))

    flask_app.cli.add_command(db_reset_command)
    flask_app.cli.add_command(sign_round_command)

    return flask_app
