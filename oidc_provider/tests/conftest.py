"""
Pytest configuration for oidc_provider. In-memory SQLite; signing keys and the pairwise secret
live in a temp directory so tests don't touch the working tree.
"""
import os
import tempfile

_tmp = tempfile.mkdtemp(prefix="oidc-tests-")

# Must be set before oidc_provider.config is imported
os.environ["OIDC_DATABASE_URL"] = "sqlite:///:memory:"
os.environ["OIDC_ISSUER"] = "http://testserver"
os.environ["OIDC_SIGNING_KEY_PATH"] = os.path.join(_tmp, "signing_keys.json")
os.environ["OIDC_SERVER_SECRET"] = "test-pairwise-secret"
for name in ("OIDC_SEED_USER", "OIDC_SEED_PASSWORD", "OIDC_SEED_CLIENT_NAME"):
    os.environ.pop(name, None)

import pytest
from fastapi.testclient import TestClient

from oidc_provider import clients
from oidc_provider.database import SessionLocal, engine
from oidc_provider.main import app
from oidc_provider.models import Base, User, UserLevel
from oidc_provider.security import hash_password
from oidc_provider.tests.flow import PASSWORD, REDIRECT_URI


@pytest.fixture(autouse=True)
def fresh_db():
    """Every test starts from empty tables."""
    Base.metadata.drop_all(bind=engine)
    Base.metadata.create_all(bind=engine)
    yield


@pytest.fixture
def db():
    session = SessionLocal()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture
def client():
    # Browsers send Origin on form posts; the provider rejects posts from other origins
    return TestClient(app, follow_redirects=False, headers={"Origin": "http://testserver"})


@pytest.fixture
def make_user(db):
    def _make(username="alice", password=PASSWORD, user_lvl=UserLevel.VERIFIED, **kwargs):
        user = User(
            username=username,
            name=kwargs.pop("name", username.title() if username else None),
            password_hash=hash_password(password),
            user_lvl=user_lvl,
            **kwargs,
        )
        db.add(user)
        db.commit()
        return user

    return _make


@pytest.fixture
def user(make_user):
    return make_user(email="alice@example.org", email_verified=True)


@pytest.fixture
def make_rp(db, make_user):
    """Register a Relying Party; returns (Client, secret)."""
    owners = {}

    def _make(
        name="demo",
        scope=("openid", "profile", "offline_access"),
        redirect_uris=(REDIRECT_URI,),
        default_scope=None,
        auto_grant=False,
    ):
        if "owner" not in owners:
            owners["owner"] = make_user("rp-owner")
        registered = clients.register(
            db,
            owners["owner"].id,
            name,
            list(scope),
            list(redirect_uris),
            default_scope=list(default_scope) if default_scope else None,
        )
        rp = clients.lookup(db, registered.external_id)
        if auto_grant:
            rp.auto_grant = True
            db.commit()
        return rp, registered.secret

    return _make


@pytest.fixture
def rp(make_rp):
    return make_rp()
