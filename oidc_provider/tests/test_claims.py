"""
Tests for scope-gated claims and the signed ID token.
"""
import jwt
import pytest

from oidc_provider.claims import (
    ClaimContext,
    ProfileUnavailable,
    build_id_token,
    collect_claims,
    userinfo_claims,
)
from oidc_provider.keys import SigningKeyProvider
from oidc_provider.scopes import ScopeSet
from oidc_provider.security import pairwise_subject, token_hash_claim


@pytest.fixture
def keys(tmp_path):
    return SigningKeyProvider(str(tmp_path / "keys.json"))


def _decode(keys, token, audience):
    public = jwt.PyJWK(keys.public_key_set()[0]).key
    return jwt.decode(token, public, algorithms=["RS256"], audience=audience)


def test_openid_only_id_token_has_registered_claims(db, keys, user):
    token = build_id_token(db, keys, user.id, "client-1", ScopeSet.parse("openid"))
    claims = _decode(keys, token, "client-1")
    assert set(claims) == {"iss", "sub", "aud", "exp", "iat"}
    assert claims["iss"] == "http://testserver"
    assert claims["sub"] == pairwise_subject("client-1", user.id)
    assert claims["aud"] == "client-1"
    assert claims["exp"] > claims["iat"]


def test_id_token_header_names_current_key(db, keys, user):
    token = build_id_token(db, keys, user.id, "client-1", ScopeSet.parse("openid"))
    header = jwt.get_unverified_header(token)
    assert header["kid"] == keys.current().kid
    assert header["alg"] == "RS256"


def test_profile_and_email_claims(db, keys, user):
    token = build_id_token(db, keys, user.id, "client-1", ScopeSet.parse("openid profile email"))
    claims = _decode(keys, token, "client-1")
    assert claims["name"] == "Alice"
    assert claims["preferred_username"] == "alice"
    assert claims["email"] == "alice@example.org"
    assert claims["email_verified"] is True


def test_game_data_stays_out_of_id_token(db, keys, user):
    token = build_id_token(db, keys, user.id, "client-1", ScopeSet.parse("openid game_data achievements"))
    claims = _decode(keys, token, "client-1")
    assert "totalPixels" not in claims and "badges" not in claims


def test_nonce_auth_time_and_hashes(db, keys, user):
    token = build_id_token(
        db,
        keys,
        user.id,
        "client-1",
        ScopeSet.parse("openid"),
        auth_time=1700000000,
        nonce="n-0S6_WzA2Mj",
        access_token="access-token-value",
        code="code-value",
    )
    claims = _decode(keys, token, "client-1")
    assert claims["nonce"] == "n-0S6_WzA2Mj"
    assert claims["auth_time"] == 1700000000
    assert claims["at_hash"] == token_hash_claim("access-token-value")
    assert claims["c_hash"] == token_hash_claim("code-value")


def test_missing_user_yields_no_token(db, keys):
    assert build_id_token(db, keys, 9999, "client-1", ScopeSet.parse("openid profile")) is None
    assert userinfo_claims(db, 9999, "client-1", ScopeSet.parse("openid profile")) is None


def test_openid_only_needs_no_profile(db, keys):
    # sub comes from the user id alone
    assert build_id_token(db, keys, 9999, "client-1", ScopeSet.parse("openid")) is not None


def test_known_claims_skip_profile_load():
    calls = []

    def loader():
        calls.append(1)
        return None

    ctx = ClaimContext(1, "client-1", loader)
    known = {"name": "Known", "preferred_username": "known", "updated_at": 5}
    claims = collect_claims(ctx, ScopeSet.parse("openid profile"), known)
    assert claims["name"] == "Known"
    assert calls == []


def test_profile_loaded_once():
    calls = []

    def loader():
        calls.append(1)
        return None

    ctx = ClaimContext(1, "client-1", loader)
    for _ in range(2):
        with pytest.raises(ProfileUnavailable):
            ctx.profile()
    assert calls == [1]


def test_userinfo_claims_follow_scope(db, user):
    user.total_pixels = 12
    user.badges = '["first"]'
    db.commit()
    claims = userinfo_claims(db, user.id, "client-1", ScopeSet.parse("openid user_id game_data achievements"))
    assert claims["sub"] == pairwise_subject("client-1", user.id)
    assert claims["user_id"] == str(user.id)
    assert claims["verified"] is True
    assert claims["totalPixels"] == 12
    assert claims["badges"] == ["first"]
    assert "email" not in claims
