import pytest

from config import TestConfig
from secureguard import create_app
from secureguard.campaigns import CampaignRegistry
from secureguard.catalog import TemplateCatalog
from secureguard.db import db
from secureguard.identity import IdentityStore
from secureguard.stats import StatsAggregator
from secureguard.tracking import TrackingRecorder

PASSWORD = "secret123"


@pytest.fixture
def app(tmp_path):
    # File-backed SQLite so worker threads get their own connections
    class Config(TestConfig):
        SQLALCHEMY_DATABASE_URI = f"sqlite:///{tmp_path / 'secureguard.db'}"
        SQLALCHEMY_ENGINE_OPTIONS = {"connect_args": {"timeout": 30, "check_same_thread": False}}

    app = create_app(Config)
    with app.app_context():
        db.create_all()
        yield app
        db.session.remove()
        db.drop_all()


@pytest.fixture
def client(app):
    return app.test_client()


@pytest.fixture
def identity(app):
    return IdentityStore(db.session)


@pytest.fixture
def catalog(app):
    return TemplateCatalog(db.session)


@pytest.fixture
def registry(app, identity, catalog):
    return CampaignRegistry(db.session, identity=identity, catalog=catalog)


@pytest.fixture
def recorder(app):
    return TrackingRecorder(db.session)


@pytest.fixture
def stats(app):
    return StatsAggregator(db.session)


@pytest.fixture
def make_user(identity):
    def _make(username, group=None, email=None, **kwargs):
        return identity.create(
            username=username,
            email=email or f"{username}@co.com",
            password=PASSWORD,
            group=group,
            **kwargs,
        )
    return _make


@pytest.fixture
def make_template(catalog):
    def _make(name="T1", **overrides):
        fields = {
            "name": name,
            "subject": "Urgent: Password Reset Required",
            "sender_name": "IT Support",
            "sender_email": "it@company.com",
            "body": "<p>Reset your password <a href='{{tracking_url}}'>here</a>.</p>",
            "category": "phishing",
        }
        fields.update(overrides)
        return catalog.create(**fields)
    return _make


@pytest.fixture
def admin(make_user):
    return make_user("admin", is_admin=True)


@pytest.fixture
def logged_in(client, admin):
    resp = client.post("/login", json={"username": "admin", "password": PASSWORD})
    assert resp.status_code == 200
    return client
