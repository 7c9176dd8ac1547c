"""
Tests for the client registry: validation, limits, owner scoping, secrets and deletion.
"""
import pytest
from sqlalchemy import func, select

from oidc_provider import clients, codes, consents, tokens
from oidc_provider.clients import ClientRegistrationError
from oidc_provider.models import AccessToken, Consent, RefreshToken
from oidc_provider.tests.flow import REDIRECT_URI


@pytest.fixture
def owner(make_user):
    return make_user("owner")


def _register(db, owner, name="demo", scope=("openid", "profile"), uris=(REDIRECT_URI,), **kwargs):
    return clients.register(db, owner.id, name, list(scope), list(uris), **kwargs)


def test_register_returns_external_id_and_secret(db, owner):
    registered = _register(db, owner)
    assert registered.secret
    client = clients.lookup(db, registered.external_id)
    assert client is not None
    assert client.external_id != str(client.id)
    # only the hash is stored
    assert client.secret_hash != registered.secret
    assert client.get_redirect_uris_list() == [REDIRECT_URI]
    assert client.scope_set.to_list() == ["openid", "profile"]
    assert client.auto_grant is False


def test_register_filters_scope_to_allow_list(db, owner):
    registered = _register(db, owner, scope=("openid", "api.admin", "email"), default_scope=["email", "modtools"])
    client = clients.lookup(db, registered.external_id)
    assert client.scope_set.to_list() == ["email", "openid"]
    # default scope is cut down to the client's scope
    assert client.default_scope_set.to_list() == ["email"]


@pytest.mark.parametrize(
    "kwargs, message",
    [
        ({"scope": ("api.read",)}, "valid scope"),
        ({"uris": ()}, "No redirect_uris"),
        ({"uris": ("ftp://rp.example/cb",)}, "http"),
        ({"uris": tuple(f"https://rp{i}.example/cb" for i in range(6))}, "Only 5"),
        ({"uris": ("https://rp.example/" + "a" * 260,)}, "too long"),
        ({"uris": ("https://rp.example/" + "a" * 236,)}, "too long"),
        ({"name": ""}, "fill out"),
        ({"name": "x" * 256}, "too long"),
    ],
)
def test_register_validation(db, owner, kwargs, message):
    with pytest.raises(ClientRegistrationError, match=message):
        _register(db, owner, **kwargs)


def test_name_is_globally_unique(db, owner, make_user):
    _register(db, owner, name="taken")
    other = make_user("other")
    with pytest.raises(ClientRegistrationError, match="already taken"):
        _register(db, other, name="taken")


def test_owner_limit(db, owner):
    for i in range(5):
        _register(db, owner, name=f"app{i}")
    with pytest.raises(ClientRegistrationError, match="5 clients"):
        _register(db, owner, name="app5")


def test_update_by_owner_keeps_secret_unless_rerolled(db, owner):
    registered = _register(db, owner)
    updated = _register(
        db,
        owner,
        name="renamed",
        scope=("openid",),
        uris=("https://rp.example/other",),
        existing_external_id=registered.external_id,
    )
    assert updated.external_id == registered.external_id
    assert updated.secret is None
    client = clients.lookup(db, registered.external_id)
    assert client.name == "renamed"
    assert client.get_redirect_uris_list() == ["https://rp.example/other"]
    assert clients.authenticate(db, registered.external_id, registered.secret) is not None

    rerolled = _register(db, owner, name="renamed", existing_external_id=registered.external_id, reroll_secret=True)
    assert rerolled.secret and rerolled.secret != registered.secret
    assert clients.authenticate(db, registered.external_id, registered.secret) is None
    assert clients.authenticate(db, registered.external_id, rerolled.secret) is not None


def test_foreign_client_is_not_found(db, owner, make_user):
    registered = _register(db, owner)
    intruder = make_user("intruder")
    with pytest.raises(ClientRegistrationError, match="No such client"):
        _register(db, intruder, name="stolen", existing_external_id=registered.external_id)
    assert clients.delete_client(db, intruder.id, registered.external_id) is False
    assert clients.lookup(db, registered.external_id).name == "demo"


def test_authenticate(db, owner):
    registered = _register(db, owner)
    assert clients.authenticate(db, registered.external_id, registered.secret) is not None
    assert clients.authenticate(db, registered.external_id, "wrong") is None
    assert clients.authenticate(db, registered.external_id, None) is None
    assert clients.authenticate(db, "no-such-client", registered.secret) is None


def test_touch_sets_last_used(db, owner):
    registered = _register(db, owner)
    client = clients.lookup(db, registered.external_id)
    assert client.last_used is None
    clients.touch(db, client.id)
    db.expire_all()
    assert clients.lookup(db, registered.external_id).last_used is not None


def test_delete_removes_consents_and_tokens(db, owner, user):
    registered = _register(db, owner, scope=("openid", "offline_access"))
    client = clients.lookup(db, registered.external_id)
    consent_id = consents.grant(db, client.id, user.id, "openid offline_access", None)
    codes.issue(db, consent_id, "openid")
    tokens.issue_access_token(db, consent_id, "openid")
    tokens.issue_refresh_token(db, consent_id, "openid offline_access")

    assert clients.delete_client(db, owner.id, registered.external_id) is True
    assert clients.lookup(db, registered.external_id) is None
    for model in (Consent, AccessToken, RefreshToken):
        assert db.execute(select(func.count()).select_from(model)).scalar_one() == 0


def test_redirect_uris_just_under_the_limit(db, owner):
    uri = "https://rp.example/" + "a" * 235
    assert len(uri) == 254
    registered = _register(db, owner, uris=(uri,))
    assert clients.lookup(db, registered.external_id).get_redirect_uris_list() == [uri]
