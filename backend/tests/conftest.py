import os
import sys
import pytest

# Ensure the backend root (containing the `weatherguessr` package) is on sys.path
CURRENT_DIR = os.path.dirname(__file__)
BACKEND_ROOT = os.path.abspath(os.path.join(CURRENT_DIR, '..'))
if BACKEND_ROOT not in sys.path:
    sys.path.insert(0, BACKEND_ROOT)

from weatherguessr import create_app, db, socketio
from weatherguessr.services.multiplayer.realtime import hub
from weatherguessr.services.multiplayer.session import MultiplayerSession


class TestConfig:
    TESTING = True
    SECRET_KEY = os.environ.get('SECRET_KEY', 'test-secret')
    SQLALCHEMY_DATABASE_URI = 'sqlite://'
    SQLALCHEMY_TRACK_MODIFICATIONS = False
    HEARTBEAT_INTERVAL_SEC = 30
    POLL_INTERVAL_SEC = 10
    INVITE_TTL_SEC = 300
    PRESENCE_WINDOW_SEC = 1800
    CATEGORIES_PER_ROUND = 8
    MAX_CATEGORY_SCORE = 100
    PUBLIC_BASE_URL = 'http://localhost:5173/'
    ENABLE_TIMERS_IN_TESTS = False


class FixedRng:
    """Stand-in for random.Random that hands out scripted picks."""

    def __init__(self, *picks):
        self.picks = list(picks)

    def choice(self, pool):
        pick = self.picks.pop(0)
        assert pick in pool, f"{pick} is not available"
        return pick


@pytest.fixture()
def flask_app():
    application = create_app(TestConfig)
    with application.app_context():
        # Ensure models are imported so tables are created
        import weatherguessr.models  # noqa: F401
        db.create_all()
        yield application
        hub.reset()
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
def make_session(flask_app):
    """Factory for initialised, online sessions; disposed after the test."""
    sessions = []

    def _make(username, url=None, rng=None):
        notes = []
        renders = []
        session = MultiplayerSession(
            flask_app,
            notify=lambda message, level: notes.append((message, level)),
            render=lambda s: renders.append(s.current_game),
            rng=rng,
        )
        session.notes = notes
        session.renders = renders
        session.init()
        session.go_online(username, url=url)
        sessions.append(session)
        return session

    yield _make
    for session in sessions:
        session.dispose()
