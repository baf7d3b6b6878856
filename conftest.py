"""
Shared pytest fixtures.

Each test gets a fresh app backed by an in-memory SQLite database and a
temporary storage root. Fixtures return ids rather than ORM objects;
open ``with app.app_context():`` to inspect the database.
"""
import pytest
from flask import has_app_context
from app import create_app, db
from models import User
from utils.rate_limiter import RateLimiter


@pytest.fixture
def app(tmp_path):
    RateLimiter.clear_memory_store()
    app = create_app({
        'TESTING': True,
        'SQLALCHEMY_DATABASE_URI': 'sqlite:///:memory:',
        'STORAGE_ROOT': str(tmp_path / 'storage'),
        'APP_BASE_URL': 'http://testserver',
        'STRIPE_SECRET_KEY': None,
        'STRIPE_WEBHOOK_SECRET': None,
        'CRON_SECRET': 'cron-secret',
        'ACCOUNT_PURGE_CRON_SECRET': None,
        'ACCOUNT_FORFEITURE_HASH_SALT': 'test-salt',
        'GEMINI_API_KEY': 'test-key',
        'REDIS_URL': None,
        'ADMIN_USER_IDS': [],
    })
    yield app
    with app.app_context():
        db.session.remove()
        db.drop_all()
    RateLimiter.clear_memory_store()


@pytest.fixture
def ctx(app):
    """Push an app context for service-level tests."""
    with app.app_context():
        yield app


@pytest.fixture
def client(app):
    return app.test_client()


@pytest.fixture
def make_user(app):
    """Factory creating a user and returning its id."""
    counter = {'n': 0}

    def _make(nickname=None, email=None, password='password123', is_admin=False, **fields):
        counter['n'] += 1
        nickname = nickname or f"user{counter['n']}"
        def create():
            user = User(
                email=email or f"{nickname}@example.com",
                nickname=nickname,
                is_admin=is_admin,
                auth_provider='email',
                **fields
            )
            user.set_password(password)
            db.session.add(user)
            db.session.commit()
            return user.id

        if has_app_context():
            return create()
        with app.app_context():
            return create()

    return _make


@pytest.fixture
def test_user(make_user):
    return make_user('alice')


@pytest.fixture
def other_user(make_user):
    return make_user('bob')


@pytest.fixture
def admin_user(make_user):
    return make_user('admin', is_admin=True)


def login(client, user_id):
    with client.session_transaction() as sess:
        sess['_user_id'] = str(user_id)
    return client


@pytest.fixture
def authenticated_client(client, test_user):
    return login(client, test_user)


@pytest.fixture
def admin_client(client, admin_user):
    return login(client, admin_user)
