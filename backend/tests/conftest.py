import heapq
import itertools
import os
import random
import sys
import pytest

# Ensure the backend root (containing the `crash_aim` package) is on sys.path
CURRENT_DIR = os.path.dirname(__file__)
BACKEND_ROOT = os.path.abspath(os.path.join(CURRENT_DIR, '..'))
if BACKEND_ROOT not in sys.path:
    sys.path.insert(0, BACKEND_ROOT)

from crash_aim import create_app, db, socketio
from crash_aim.client.context import ClientContext
from crash_aim.client.prefs import MemoryStore, Preferences


class TestConfig:
    TESTING = True
    SECRET_KEY = os.environ.get('SECRET_KEY', 'test-secret')
    SQLALCHEMY_DATABASE_URI = 'sqlite://'
    SQLALCHEMY_TRACK_MODIFICATIONS = False
    ROUND_SECRET = 'round-test-secret'
    REALTIME_KEY = 'test-key'
    REALTIME_SECRET = 'realtime-test-secret'
    RESULT_TOLERANCE_MS = 2500
    RESULT_GRACE_MS = 2500
    CORS_ORIGINS = ['http://localhost:5173']


class _Handle:

    def __init__(self):
        self.cancelled = False

    def cancel(self):
        self.cancelled = True


class FakeTimeline:
    """Virtual clock plus scheduler; callbacks only run inside ``advance``."""

    def __init__(self, start_ms=1_700_000_000_000):
        self.now = start_ms
        self._queue = []
        self._seq = itertools.count()

    def now_ms(self):
        return self.now

    def call_later(self, delay_ms, fn, *args):
        return self.call_at(self.now + max(0, delay_ms), fn, *args)

    def call_at(self, when_ms, fn, *args):
        handle = _Handle()
        heapq.heappush(self._queue, (int(when_ms), next(self._seq), handle, fn, args))
        return handle

    def pending(self):
        return sum(1 for item in self._queue if not item[2].cancelled)

    def advance(self, ms):
        self.advance_to(self.now + ms)

    def advance_to(self, target_ms):
        while self._queue and self._queue[0][0] <= target_ms:
            when, _, handle, fn, args = heapq.heappop(self._queue)
            if handle.cancelled:
                continue
            self.now = max(self.now, when)
            fn(*args)
        self.now = max(self.now, target_ms)

    def set(self, now_ms):
        """Jump the clock without running anything (a stalled event loop)."""
        self.now = now_ms


@pytest.fixture()
def flask_app():
    application = create_app(TestConfig)
    with application.app_context():
        # Ensure models are imported so tables are created
        import crash_aim.models  # noqa: F401
        from crash_aim.socketio_events import reset_presence
        reset_presence()
        db.create_all()
        yield application
        db.session.remove()
        db.drop_all()


@pytest.fixture()
def client(flask_app):
    return flask_app.test_client()


@pytest.fixture()
def sio_client(flask_app):
    test_client = socketio.test_client(
        flask_app,
        flask_test_client=flask_app.test_client(),
        namespace='/ws'
    )
    yield test_client
    try:
        test_client.disconnect(namespace='/ws')
    except Exception:
        pass


@pytest.fixture()
def timeline():
    return FakeTimeline()


@pytest.fixture()
def make_context(timeline):
    def _make(name, user_id=None, seed=7):
        store = MemoryStore({'mp_uid': user_id or f'uid-{name}', 'mp_name': name})
        return ClientContext(
            clock=timeline,
            scheduler=timeline,
            prefs=Preferences(store),
            rng=random.Random(seed),
        )
    return _make
