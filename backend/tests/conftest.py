import os
import sys
import pytest

# Ensure the backend root (containing the `trainboard` package) is on sys.path
CURRENT_DIR = os.path.dirname(__file__)
BACKEND_ROOT = os.path.abspath(os.path.join(CURRENT_DIR, '..'))
if BACKEND_ROOT not in sys.path:
    sys.path.insert(0, BACKEND_ROOT)

from trainboard import create_app, db, socketio


class TestConfig:
    TESTING = True
    SECRET_KEY = os.environ.get('SECRET_KEY', 'test-secret')
    SQLALCHEMY_DATABASE_URI = 'sqlite://'
    SQLALCHEMY_TRACK_MODIFICATIONS = False
    BCRYPT_LOG_ROUNDS = 4
    CORS_ORIGINS = 'http://localhost:5173'
    SOCKETIO_MESSAGE_QUEUE = None
    JOIN_CODE_LENGTH = 8
    DEFAULT_SCALE_MIN = -50
    DEFAULT_SCALE_MAX = 50
    ACTIVITY_FEED_LIMIT = 20
    LEDGER_MAX_RETRIES = 5


@pytest.fixture()
def flask_app():
    application = create_app(TestConfig)
    with application.app_context():
        # Ensure models are imported so tables are created
        import trainboard.models  # noqa: F401
        db.create_all()
    # No context is held here: each test request pushes its own, so `g`
    # (and the logged-in user cached on it) never leaks between clients
    yield application
    with application.app_context():
        db.session.remove()
        db.drop_all()


@pytest.fixture()
def app_ctx(flask_app):
    """App context for tests that call services directly."""
    with flask_app.app_context():
        yield flask_app
        db.session.remove()


@pytest.fixture()
def client(flask_app):
    return flask_app.test_client()


@pytest.fixture()
def sio_client(flask_app, client):
    test_client = socketio.test_client(
        flask_app,
        flask_test_client=client,
        namespace='/ws'
    )
    yield test_client
    if test_client.is_connected('/ws'):
        test_client.disconnect(namespace='/ws')


@pytest.fixture()
def make_user(app_ctx):
    from trainboard.models import User

    def _make(username, email=None, password='password'):
        user = User(username=username, display_name=username.title(), email=email)
        user.set_password(password)
        db.session.add(user)
        db.session.commit()
        return user

    return _make


@pytest.fixture()
def trainer(make_user):
    return make_user('trainer1', email='trainer1@example.com')


@pytest.fixture()
def training_session(trainer):
    from trainboard.services.sessions import create_session
    return create_session({'name': 'Safety Onboarding', 'scoring_scale': {'min': -10, 'max': 10}}, trainer)


@pytest.fixture()
def add_guest(app_ctx):
    from trainboard.services.identity import create_guest

    def _add(session, name, **profile):
        return create_guest(session, dict(profile, name=name))

    return _add


def login(client, username, password='password'):
    res = client.post('/auth/login', json={'username': username, 'password': password})
    assert res.status_code == 200
    return res.get_json()['user']
