"""
Pytest tests for /oidc/auth and the consent callback.
"""
from datetime import datetime, timedelta, timezone

from fastapi.testclient import TestClient
from sqlalchemy import select, update
from sqlalchemy.exc import OperationalError

from oidc_provider import authorize, consents
from oidc_provider.main import app
from oidc_provider.models import AuditLog, LoginSession
from oidc_provider.tests.flow import REDIRECT_URI, auth_params, login, obtain_code, query_of

LOCAL_URI = "http://localhost:3000/cb"


def _consent_form(rp_client, decision="allow", granted=("openid", "profile"), **overrides):
    data = auth_params(rp_client, **overrides)
    data.update({"decision": decision, "granted_scope": list(granted), "expiration_hours": "24"})
    return data


# --- request validation (HTML error page, never a redirect) ---


def test_wrong_response_type(client, rp):
    r = client.get("/oidc/auth", params=auth_params(rp[0], response_type="token"))
    assert r.status_code == 400
    assert "location" not in r.headers
    assert "not support" in r.text


def test_unknown_client(client, rp):
    r = client.get("/oidc/auth", params=auth_params(rp[0], client_id="no-such-client"))
    assert r.status_code == 401
    assert "invalid_client" in r.text
    assert "location" not in r.headers


def test_unregistered_redirect_uri_is_not_followed(client, rp):
    r = client.get("/oidc/auth", params=auth_params(rp[0], redirect_uri="https://evil.example/cb"))
    assert r.status_code == 400
    assert "location" not in r.headers
    assert "evil.example" not in r.text


def test_unsupported_pkce_method(client, rp):
    r = client.get("/oidc/auth", params=auth_params(rp[0], code_challenge="abc", code_challenge_method="S512"))
    assert r.status_code == 400
    assert "PKCE" in r.text


def test_nonce_too_long(client, rp):
    r = client.get("/oidc/auth", params=auth_params(rp[0], nonce="n" * 256))
    assert r.status_code == 400
    assert "Nonce" in r.text


def test_missing_redirect_uri_with_several_registered(client, make_rp):
    rp_client, _ = make_rp(redirect_uris=(REDIRECT_URI, "https://rp.example/other"))
    r = client.get("/oidc/auth", params=auth_params(rp_client, redirect_uri=None))
    assert r.status_code == 400
    assert "location" not in r.headers


def test_single_registered_redirect_uri_is_the_default(client, user, make_rp):
    rp_client, _ = make_rp(auto_grant=True)
    login(client)
    r = client.get("/oidc/auth", params=auth_params(rp_client, redirect_uri=None))
    assert r.status_code == 302
    assert r.headers["location"].startswith(REDIRECT_URI + "?")


# --- consent page ---


def test_anonymous_user_gets_consent_page_with_credentials(client, rp):
    r = client.get("/oidc/auth", params=auth_params(rp[0]))
    assert r.status_code == 200
    assert 'name="username"' in r.text
    assert 'name="password"' in r.text
    assert "demo" in r.text
    assert r.headers["cache-control"] == "private, no-cache"


def test_logged_in_user_gets_consent_page_without_credentials(client, user, rp):
    login(client)
    r = client.get("/oidc/auth", params=auth_params(rp[0]))
    assert r.status_code == 200
    assert 'name="username"' not in r.text
    assert 'value="profile"' in r.text


def test_post_authorization_request(client, user, rp):
    login(client)
    r = client.post("/oidc/auth", data=auth_params(rp[0]))
    assert r.status_code == 200
    assert 'action="/oidc/consent"' in r.text


def test_scope_is_cut_down_to_client_scope(client, user, rp):
    login(client)
    r = client.get("/oidc/auth", params=auth_params(rp[0], scope="openid email"))
    assert r.status_code == 200
    assert "(email)" not in r.text
    assert "(openid)" in r.text


def test_allow_redirects_with_code_and_state(client, db, user, rp):
    login(client)
    r = client.post("/oidc/consent", data=_consent_form(rp[0]))
    assert r.status_code == 302
    assert r.headers["location"].startswith(REDIRECT_URI)
    query = query_of(r)
    assert query["code"]
    assert query["state"] == "xyz"
    assert "no-store" in r.headers["cache-control"]
    consent = consents.has_consent(db, user.id, rp[0].id)
    assert consent.scope_set.to_list() == ["openid", "profile"]


def test_deny_redirects_with_access_denied(client, db, user, rp):
    login(client)
    r = client.post("/oidc/consent", data=_consent_form(rp[0], decision="deny"))
    assert r.status_code == 302
    query = query_of(r)
    assert query["error"] == "access_denied"
    assert query["state"] == "xyz"
    assert "code" not in query
    assert consents.has_consent(db, user.id, rp[0].id) is None


def test_nothing_granted_is_access_denied(client, user, rp):
    login(client)
    r = client.post("/oidc/consent", data=_consent_form(rp[0], granted=(), scope="profile"))
    assert query_of(r)["error"] == "access_denied"


def test_openid_is_always_granted_when_requested(client, db, user, rp):
    login(client)
    r = client.post("/oidc/consent", data=_consent_form(rp[0], granted=("profile",)))
    assert "code" in query_of(r)
    assert consents.has_consent(db, user.id, rp[0].id).scope_set.to_list() == ["openid", "profile"]


def test_consent_without_login_is_login_required(client, rp):
    r = client.post("/oidc/consent", data=_consent_form(rp[0]))
    assert query_of(r)["error"] == "login_required"


def test_inline_credentials_log_in(client, db, user, rp):
    data = _consent_form(rp[0])
    data.update({"username": "alice", "password": "correct horse"})
    r = client.post("/oidc/consent", data=data)
    assert r.status_code == 302
    assert "code" in query_of(r)
    assert "oidc_session" in r.headers.get("set-cookie", "")


def test_inline_credentials_wrong_password(client, rp, user):
    data = _consent_form(rp[0])
    data.update({"username": "alice", "password": "wrong"})
    r = client.post("/oidc/consent", data=data)
    assert r.status_code == 401
    assert "Invalid username or password" in r.text
    assert "location" not in r.headers


# --- silent grants ---


def test_standing_consent_issues_code_without_page(client, user, rp):
    login(client)
    obtain_code(client, rp[0])
    r = client.get("/oidc/auth", params=auth_params(rp[0]))
    assert r.status_code == 302
    assert "code" in query_of(r)


def test_new_scope_asks_again_with_merged_scope(client, user, rp):
    login(client)
    obtain_code(client, rp[0], scope="openid")
    r = client.get("/oidc/auth", params=auth_params(rp[0], scope="profile"))
    assert r.status_code == 200
    assert 'value="openid"' in r.text
    assert 'value="profile"' in r.text


def test_prompt_consent_forces_page(client, user, rp):
    login(client)
    obtain_code(client, rp[0])
    r = client.get("/oidc/auth", params=auth_params(rp[0], prompt="consent"))
    assert r.status_code == 200


def test_auto_grant_issues_code(client, db, user, make_rp):
    rp_client, _ = make_rp(auto_grant=True)
    login(client)
    r = client.get("/oidc/auth", params=auth_params(rp_client))
    assert r.status_code == 302
    assert "code" in query_of(r)
    assert consents.has_consent(db, user.id, rp_client.id).expires_at is None


def test_auto_grant_not_used_for_local_redirect(client, user, make_rp):
    rp_client, _ = make_rp(auto_grant=True, redirect_uris=(LOCAL_URI,))
    login(client)
    r = client.get("/oidc/auth", params=auth_params(rp_client, redirect_uri=LOCAL_URI))
    assert r.status_code == 200


def test_user_without_username_is_never_granted_silently(client, db, user, make_rp):
    rp_client, _ = make_rp(auto_grant=True)
    login(client)
    user.username = None
    db.commit()
    r = client.get("/oidc/auth", params=auth_params(rp_client))
    assert r.status_code == 200
    assert "set a username" in r.text
    r = client.post("/oidc/consent", data=_consent_form(rp_client))
    assert query_of(r)["error"] == "interaction_required"


# --- prompt / max_age ---


def test_prompt_none_without_session(client, rp):
    r = client.get("/oidc/auth", params=auth_params(rp[0], prompt="none"))
    assert r.status_code == 302
    query = query_of(r)
    assert query["error"] == "login_required"
    assert query["state"] == "xyz"


def test_prompt_none_without_consent(client, user, rp):
    login(client)
    r = client.get("/oidc/auth", params=auth_params(rp[0], prompt="none"))
    assert query_of(r)["error"] == "interaction_required"


def test_prompt_none_with_standing_consent(client, user, rp):
    login(client)
    obtain_code(client, rp[0])
    r = client.get("/oidc/auth", params=auth_params(rp[0], prompt="none"))
    assert "code" in query_of(r)


def test_prompt_login_asks_for_credentials(client, user, rp):
    login(client)
    obtain_code(client, rp[0])
    r = client.get("/oidc/auth", params=auth_params(rp[0], prompt="login"))
    assert r.status_code == 200
    assert 'name="password"' in r.text


def _age_sessions(db, seconds):
    db.execute(update(LoginSession).values(created_at=datetime.now(timezone.utc) - timedelta(seconds=seconds)))
    db.commit()


def test_max_age_exceeded_asks_for_credentials(client, db, user, rp):
    login(client)
    obtain_code(client, rp[0])
    _age_sessions(db, 3600)
    r = client.get("/oidc/auth", params=auth_params(rp[0], max_age="60"))
    assert r.status_code == 200
    assert 'name="password"' in r.text
    r = client.get("/oidc/auth", params=auth_params(rp[0], max_age="60", prompt="none"))
    assert query_of(r)["error"] == "login_required"
    # without credentials the stale session is not enough
    r = client.post("/oidc/consent", data=_consent_form(rp[0], max_age="60"))
    assert query_of(r)["error"] == "login_required"


def test_max_age_within_session_age(client, db, user, rp):
    login(client)
    obtain_code(client, rp[0])
    _age_sessions(db, 30)
    r = client.get("/oidc/auth", params=auth_params(rp[0], max_age="3600"))
    assert r.status_code == 302


def test_invalid_max_age(client, rp):
    r = client.get("/oidc/auth", params=auth_params(rp[0], max_age="soon"))
    assert r.status_code == 400


def test_code_issue_is_audited(client, db, user, rp):
    login(client)
    obtain_code(client, rp[0])
    events = db.execute(select(AuditLog.event_type)).scalars().all()
    assert "consent_allow" in events
    assert "code_issued" in events


# --- store failures after redirect_uri is verified go back to the client ---


def _locked(*args, **kwargs):
    raise OperationalError("SELECT", {}, Exception("database is locked"))


def test_identity_lookup_failure_redirects_server_error(client, rp, monkeypatch):
    monkeypatch.setattr(authorize, "resolve_identity", _locked)
    r = client.get("/oidc/auth", params=auth_params(rp[0]))
    assert r.status_code == 302
    assert r.headers["location"].startswith(REDIRECT_URI)
    query = query_of(r)
    assert query["error"] == "server_error"
    assert query["state"] == "xyz"


def test_consent_identity_lookup_failure_redirects_server_error(client, user, rp, monkeypatch):
    login(client)
    monkeypatch.setattr(authorize, "resolve_identity", _locked)
    r = client.post("/oidc/consent", data=_consent_form(rp[0]))
    assert r.status_code == 302
    query = query_of(r)
    assert query["error"] == "server_error"
    assert query["state"] == "xyz"


def test_consent_session_failure_redirects_server_error(client, user, rp, monkeypatch):
    monkeypatch.setattr(authorize, "create_session", _locked)
    data = _consent_form(rp[0])
    data.update({"username": "alice", "password": "correct horse"})
    r = client.post("/oidc/consent", data=data)
    assert r.status_code == 302
    assert query_of(r)["error"] == "server_error"
    assert "oidc_session" not in r.headers.get("set-cookie", "")


# --- cross-origin form posts ---


def test_cross_origin_consent_is_rejected(client, db, user, rp):
    login(client)
    r = client.post("/oidc/consent", data=_consent_form(rp[0]), headers={"Origin": "https://evil.example"})
    assert r.status_code == 403
    assert "location" not in r.headers
    assert consents.has_consent(db, user.id, rp[0].id) is None


def test_consent_with_same_origin_referer(client, user, rp):
    login(client)
    headerless = TestClient(app, follow_redirects=False, cookies=client.cookies)
    r = headerless.post(
        "/oidc/consent",
        data=_consent_form(rp[0]),
        headers={"Referer": "http://testserver/oidc/auth?client_id=x"},
    )
    assert r.status_code == 302
    assert "code" in query_of(r)


def test_consent_without_origin_or_referer_is_rejected(client, user, rp):
    login(client)
    headerless = TestClient(app, follow_redirects=False, cookies=client.cookies)
    r = headerless.post("/oidc/consent", data=_consent_form(rp[0]))
    assert r.status_code == 403
