"""
Shared pytest fixtures for backend tests.

Every test gets a fresh app on in-memory SQLite with the in-process queue
store, inline side effects and no background scheduler.
"""
import pytest

from shieldcsp import create_app
from shieldcsp.extensions import db as _db
from shieldcsp.models import Domain, Team

TEST_CONFIG = {
    "TESTING": True,
    "SQLALCHEMY_DATABASE_URI": "sqlite://",
    "QUEUE_BACKEND": "memory",
    "QUEUE_KEY_PREFIX": "shieldcsp-test",
    "SIDE_EFFECT_WORKERS": 0,
    "SCHEDULER_ENABLED": False,
}


@pytest.fixture
def app():
    app = create_app(dict(TEST_CONFIG))
    with app.app_context():
        _db.create_all()
        yield app
        _db.session.remove()
        _db.drop_all()


@pytest.fixture
def db(app):
    return _db


@pytest.fixture
def client(app):
    return app.test_client()


@pytest.fixture
def team(db):
    t = Team(name="Acme Security")
    db.session.add(t)
    db.session.commit()
    return t


@pytest.fixture
def make_domain(db, team):
    """Factory: make_domain(url="example.com", **fields) → committed Domain."""
    def _make(url="example.com", **fields):
        d = Domain(team_id=team.id, url=url, **fields)
        db.session.add(d)
        db.session.commit()
        return d
    return _make


@pytest.fixture
def domain(make_domain):
    return make_domain("https://example.com")
