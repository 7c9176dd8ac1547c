"""
Tests for the signing key provider: generation, persistence, external rotation and the JWKS.
"""
import json
import os

import jwt
import pytest

from oidc_provider.keys import SigningKeyProvider


@pytest.fixture
def key_path(tmp_path):
    return tmp_path / "keys.json"


def test_current_generates_and_persists(key_path):
    provider = SigningKeyProvider(str(key_path))
    key = provider.current()
    assert key.kid
    assert key_path.exists()
    entries = json.loads(key_path.read_text())
    assert [e["kid"] for e in entries] == [key.kid]
    # same key on the next call
    assert provider.current().kid == key.kid


def test_second_provider_loads_same_key(key_path):
    first = SigningKeyProvider(str(key_path)).current()
    second = SigningKeyProvider(str(key_path)).current()
    assert first.kid == second.kid


def test_public_key_set_fields(key_path):
    provider = SigningKeyProvider(str(key_path))
    kid = provider.current().kid
    jwks = provider.public_key_set()
    assert len(jwks) == 1
    jwk = jwks[0]
    assert jwk["kid"] == kid
    assert jwk["kty"] == "RSA"
    assert jwk["alg"] == "RS256"
    assert jwk["use"] == "sig"
    assert jwk["n"] and jwk["e"] == "AQAB"


def test_signed_token_verifies_with_published_key(key_path):
    provider = SigningKeyProvider(str(key_path))
    key = provider.current()
    token = jwt.encode({"sub": "x"}, key.private_key, algorithm="RS256", headers={"kid": key.kid})
    kid = jwt.get_unverified_header(token)["kid"]
    public = jwt.PyJWK(provider.public_key_set()[0]).key
    assert kid == key.kid
    assert jwt.decode(token, public, algorithms=["RS256"])["sub"] == "x"


def test_deleted_key_file_regenerates(key_path):
    provider = SigningKeyProvider(str(key_path))
    old = provider.current()
    os.remove(key_path)
    new = provider.current()
    assert new.kid != old.kid
    assert key_path.exists()
    assert [k["kid"] for k in provider.public_key_set()] == [new.kid]
    assert provider.get_public_key(old.kid) is None


def test_external_rotation_is_picked_up(key_path):
    provider = SigningKeyProvider(str(key_path))
    provider.current()
    other = SigningKeyProvider(str(key_path))
    rotated = other.rotate(keep_previous=True)
    # the first provider sees the rewritten file on its next call
    assert provider.current().kid == rotated.kid
    assert len(provider.public_key_set()) == 2


def test_rotate_without_previous(key_path):
    provider = SigningKeyProvider(str(key_path))
    old = provider.current()
    new = provider.rotate(keep_previous=False)
    assert provider.current().kid == new.kid
    assert provider.get_public_key(old.kid) is None
    assert len(provider.public_key_set()) == 1


def test_corrupt_file_keeps_loaded_keys(key_path):
    provider = SigningKeyProvider(str(key_path))
    key = provider.current()
    key_path.write_text("{not json")
    assert provider.current().kid == key.kid


def test_reload_reads_file(key_path):
    provider = SigningKeyProvider(str(key_path))
    provider.current()
    rotated = SigningKeyProvider(str(key_path)).rotate(keep_previous=False)
    provider.reload()
    assert provider.current().kid == rotated.kid
