"""
Authorization endpoint (GET|POST /oidc/auth) and consent callback (POST /oidc/consent).

GET/POST /oidc/auth: validate the request, then issue a code silently (standing consent or auto-grant)
or render the consent page. POST /oidc/consent: record the user's choice and redirect with a code.
Errors before redirect_uri is verified render an HTML page; afterwards they go back to the client.
"""
import html
import logging
from dataclasses import dataclass, replace
from datetime import timedelta
from urllib.parse import urlencode

from fastapi import APIRouter, Depends, Form, Request
from fastapi.responses import HTMLResponse, RedirectResponse, Response
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from oidc_provider import clients, codes, consents
from oidc_provider.audit import (
    EVENT_CODE_ISSUED,
    EVENT_CONSENT_ALLOW,
    EVENT_CONSENT_DENY,
    EVENT_LOGIN_FAIL,
    EVENT_LOGIN_OK,
    OUTCOME_FAIL,
    OUTCOME_SUCCESS,
    get_client_ip,
    log_audit,
)
from oidc_provider.config import CONSENT_DURATION_HOURS, DEFAULT_CONSENT_DURATION_HOURS, MAX_NONCE_LENGTH
from oidc_provider.database import get_db
from oidc_provider.errors import (
    ACCESS_DENIED,
    INTERACTION_REQUIRED,
    INVALID_CLIENT,
    INVALID_REQUEST,
    LOGIN_REQUIRED,
    NO_STORE_HEADERS,
    SERVER_ERROR,
    AuthorizationError,
    error_page,
)
from oidc_provider.models import Client
from oidc_provider.scopes import SCOPE_DESCRIPTIONS, Scope, ScopeSet
from oidc_provider.security import PKCE_METHODS
from oidc_provider.session import (
    CurrentIdentity,
    authenticate_user,
    create_session,
    is_same_origin,
    resolve_identity,
)

logger = logging.getLogger(__name__)
router = APIRouter()

AUTH_PARAMS = (
    "response_type",
    "client_id",
    "redirect_uri",
    "scope",
    "state",
    "code_challenge",
    "code_challenge_method",
    "nonce",
    "max_age",
    "prompt",
)

_LOCAL_MARKERS = ("://localhost", "://127.0", "://192.168")


@dataclass(frozen=True)
class AuthRequest:
    """A validated authorization request; redirect_uri is registered for client."""

    client: Client
    redirect_uri: str
    scope: ScopeSet
    state: str | None = None
    code_challenge: str | None = None
    code_challenge_method: str | None = None
    nonce: str | None = None
    max_age: int | None = None
    prompt: str | None = None
    redirect_is_local: bool = False

    def fail(self, error_description: str, error: str = INVALID_REQUEST, status_code: int = 400) -> AuthorizationError:
        return AuthorizationError(
            error_description,
            error=error,
            status_code=status_code,
            redirect_uri=self.redirect_uri,
            state=self.state,
        )

    def need_reauth(self, identity: CurrentIdentity | None) -> bool:
        if identity is None:
            return False
        if self.prompt == "login":
            return True
        return self.max_age is not None and self.max_age < identity.session_age

    def params(self) -> dict[str, str]:
        """Normalized request parameters, for re-submission from the consent page."""
        values = {
            "response_type": "code",
            "client_id": self.client.external_id,
            "redirect_uri": self.redirect_uri,
            "scope": str(self.scope),
            "state": self.state,
            "code_challenge": self.code_challenge,
            "code_challenge_method": self.code_challenge_method,
            "nonce": self.nonce,
            "max_age": str(self.max_age) if self.max_age is not None else None,
            "prompt": self.prompt,
        }
        return {k: v for k, v in values.items() if v}


def is_local_redirect(uri: str) -> bool:
    return any(marker in uri for marker in _LOCAL_MARKERS)


def _parse_max_age(value: str | None) -> int | None:
    if value is None or str(value).strip() == "":
        return None
    try:
        return int(value)
    except (TypeError, ValueError):
        raise AuthorizationError("max_age must be a number of seconds")


def validate_auth_request(db: Session, params: dict) -> AuthRequest:
    """
    Check an authorization request. Raises AuthorizationError: as an HTML page until the
    client and its redirect_uri are verified, as a redirect afterwards.
    """
    if params.get("response_type") != "code":
        raise AuthorizationError("This application uses a login method we do not support")
    client_id = params.get("client_id")
    if not client_id:
        raise AuthorizationError("This application is not allowed to login")

    code_challenge = params.get("code_challenge") or None
    method = params.get("code_challenge_method") or None
    # RFC 7636 §4.3: method defaults to plain
    if code_challenge and not method:
        method = "plain"
    if method and method not in PKCE_METHODS:
        raise AuthorizationError("This application uses a PKCE method we do not support")
    nonce = params.get("nonce") or None
    if nonce and len(nonce) > MAX_NONCE_LENGTH:
        raise AuthorizationError(f"Nonce parameter too long, max length: {MAX_NONCE_LENGTH}")
    max_age = _parse_max_age(params.get("max_age"))

    client = clients.lookup(db, client_id)
    if client is None:
        raise AuthorizationError("This application is not allowed to login", error=INVALID_CLIENT, status_code=401)

    redirect_uri = params.get("redirect_uri")
    if not redirect_uri:
        uris = client.get_redirect_uris_list()
        if len(uris) != 1:
            raise AuthorizationError("This application sent a faulty login request with no redirection")
        redirect_uri = uris[0]
    elif not client.redirect_uri_allowed(redirect_uri):
        raise AuthorizationError("This application redirects to an unallowed page")

    # No scope: the client's default, which may be empty (and then is not an OIDC request)
    raw_scope = params.get("scope")
    requested = ScopeSet.parse(raw_scope) if raw_scope else client.default_scope_set

    return AuthRequest(
        client=client,
        redirect_uri=redirect_uri,
        scope=requested.intersection(client.scope_set),
        state=params.get("state") or None,
        code_challenge=code_challenge,
        code_challenge_method=method if code_challenge else None,
        nonce=nonce,
        max_age=max_age,
        prompt=params.get("prompt") or None,
        redirect_is_local=is_local_redirect(redirect_uri),
    )


def _code_redirect(req: AuthRequest, code: str) -> RedirectResponse:
    params = {"code": code}
    if req.state:
        params["state"] = req.state
    sep = "&" if "?" in req.redirect_uri else "?"
    return RedirectResponse(url=f"{req.redirect_uri}{sep}{urlencode(params)}", status_code=302)


def _issue_code(db: Session, req: AuthRequest, consent_id: int, scope: ScopeSet, session_age: int) -> str:
    return codes.issue(
        db,
        consent_id,
        scope,
        code_challenge=req.code_challenge,
        code_challenge_method=req.code_challenge_method,
        auth_age=session_age,
        nonce=req.nonce,
        redirect_uri=req.redirect_uri,
    )


def silent_grant(db: Session, req: AuthRequest, identity: CurrentIdentity | None) -> tuple[AuthRequest, str | None]:
    """
    Try to answer without user interaction. Returns the (possibly scope-widened) request and a
    code, or None for the code when the consent page is needed.
    A standing consent that lacks requested scopes is merged with them and asked again.
    """
    if (
        identity is None
        or req.need_reauth(identity)
        or not identity.user_is_valid
        or req.redirect_is_local
        or req.prompt == "consent"
    ):
        return req, None
    consent = consents.has_consent(db, identity.user_id, req.client.id)
    approved_id = None
    if consent is not None:
        if req.scope.issubset(consent.scope_set):
            approved_id = consent.id
        else:
            req = replace(req, scope=consent.scope_set.union(req.scope))
    if approved_id is None and req.client.auto_grant:
        approved_id = consents.grant(db, req.client.id, identity.user_id, req.scope, None, existing=consent)
        logger.info("Auto-granted client %s for user %s", req.client.external_id, identity.user_id)
    if approved_id is None:
        return req, None
    return req, _issue_code(db, req, approved_id, req.scope, identity.session_age)


async def _auth_params(request: Request) -> dict:
    if request.method == "POST":
        form = await request.form()
        return {k: form.get(k) for k in AUTH_PARAMS}
    return {k: request.query_params.get(k) for k in AUTH_PARAMS}


@router.api_route("/oidc/auth", methods=["GET", "POST"])
def authorize(request: Request, params: dict = Depends(_auth_params), db: Session = Depends(get_db)):
    """Authorization endpoint: 302 with a code, 302 with an error, the consent page or an error page."""
    req = validate_auth_request(db, params)
    try:
        identity = resolve_identity(request, db)
        req, code = silent_grant(db, req, identity)
    except SQLAlchemyError as e:
        db.rollback()
        logger.error("Authorization for client %s failed: %s", req.client.external_id, e.__class__.__name__)
        raise req.fail("Could not complete the authorization", SERVER_ERROR, 500)
    if code:
        log_audit(
            db,
            EVENT_CODE_ISSUED,
            client_id=req.client.external_id,
            user_id=identity.user_id,
            ip=get_client_ip(request),
            outcome=OUTCOME_SUCCESS,
        )
        return _code_redirect(req, code)

    if req.prompt == "none":
        if identity is None or req.need_reauth(identity):
            raise req.fail("Login is required", LOGIN_REQUIRED, 401)
        raise req.fail("User interaction is required", INTERACTION_REQUIRED)

    return consent_page(req, identity)


def consent_page(
    req: AuthRequest,
    identity: CurrentIdentity | None,
    error: str | None = None,
    status_code: int = 200,
) -> HTMLResponse:
    """Scope checkboxes, duration, Allow/Deny; asks for credentials when nobody (fresh) is logged in."""

    def e(s) -> str:
        return html.escape(str(s) if s is not None else "")

    hidden = "".join(
        f'<input type="hidden" name="{e(k)}" value="{e(v)}"/>' for k, v in req.params().items()
    )
    rows = []
    for s in req.scope:
        if s == Scope.OPENID:
            # required for an OpenID Connect login
            rows.append(
                f'<input type="hidden" name="granted_scope" value="{e(s.value)}"/>'
                f'<label><input type="checkbox" checked disabled/> {e(SCOPE_DESCRIPTIONS[s])} ({e(s.value)})</label><br/>'
            )
        else:
            rows.append(
                f'<label><input type="checkbox" name="granted_scope" value="{e(s.value)}" checked/> '
                f"{e(SCOPE_DESCRIPTIONS[s])} ({e(s.value)})</label><br/>"
            )
    durations = "".join(
        f'<option value="{h}"{" selected" if h == DEFAULT_CONSENT_DURATION_HOURS else ""}>{h} hours</option>'
        for h in CONSENT_DURATION_HOURS
    )
    credentials = ""
    if identity is None or req.need_reauth(identity):
        credentials = """
    <p>Please confirm who you are:</p>
    <label>Username: <input type="text" name="username"/></label><br/>
    <label>Password: <input type="password" name="password"/></label><br/>"""
    elif not identity.user_is_valid:
        credentials = "<p>You need to set a username before you can log in to other applications.</p>"
    error_html = f'<p style="color:red;">{e(error)}</p>' if error else ""

    body = f"""<!DOCTYPE html>
<html>
<head><meta charset="utf-8"><title>Consent</title></head>
<body>
  <h1>Consent</h1>
  {error_html}
  <p><strong>{e(req.client.name)}</strong> wants to:</p>
  <form method="post" action="/oidc/consent">
    {hidden}
    {"".join(rows) or "<p>(no data)</p>"}
    <label>Remember for: <select name="expiration_hours">{durations}<option value="forever">forever</option></select></label><br/>
    {credentials}
    <button type="submit" name="decision" value="allow">Allow</button>
    <button type="submit" name="decision" value="deny">Deny</button>
  </form>
</body>
</html>"""
    return HTMLResponse(body, status_code=status_code, headers={"Cache-Control": "private, no-cache"})


def parse_expiration(value: str | None) -> timedelta | None:
    """Consent lifetime from the form: 'forever' = no expiry; unknown values fall back to the default."""
    if value == "forever":
        return None
    try:
        hours = int(value)
    except (TypeError, ValueError):
        hours = DEFAULT_CONSENT_DURATION_HOURS
    if hours not in CONSENT_DURATION_HOURS:
        hours = DEFAULT_CONSENT_DURATION_HOURS
    return timedelta(hours=hours)


@router.post("/oidc/consent")
def consent(
    request: Request,
    params: dict = Depends(_auth_params),
    decision: str = Form("deny"),
    granted_scope: list[str] = Form([]),
    expiration_hours: str | None = Form(None),
    username: str | None = Form(None),
    password: str | None = Form(None),
    db: Session = Depends(get_db),
):
    """
    Consent callback. Re-validates the authorization request, optionally re-authenticates the user
    with inline credentials, records the consent for the chosen scope and redirects with a code.
    """
    if not is_same_origin(request):
        logger.warning("Cross-origin consent post rejected from %s", get_client_ip(request))
        return error_page(ACCESS_DENIED, "This form must be submitted from the consent page", 403)
    req = validate_auth_request(db, params)
    try:
        return _record_decision(request, db, req, decision, granted_scope, expiration_hours, username, password)
    except SQLAlchemyError as e:
        db.rollback()
        logger.error("Consent for client %s failed: %s", req.client.external_id, e.__class__.__name__)
        raise req.fail("Could not store the consent", SERVER_ERROR, 500)


def _record_decision(
    request: Request,
    db: Session,
    req: AuthRequest,
    decision: str,
    granted_scope: list[str],
    expiration_hours: str | None,
    username: str | None,
    password: str | None,
) -> Response:
    ip = get_client_ip(request)
    identity = resolve_identity(request, db)

    if decision != "allow":
        log_audit(
            db,
            EVENT_CONSENT_DENY,
            client_id=req.client.external_id,
            user_id=identity.user_id if identity else None,
            ip=ip,
            outcome=OUTCOME_SUCCESS,
        )
        return req.fail("The user denied the request", ACCESS_DENIED).to_response()

    reauthenticated_user_id = None
    if username or password:
        user = authenticate_user(db, username, password)
        if user is None:
            log_audit(db, EVENT_LOGIN_FAIL, client_id=req.client.external_id, ip=ip, outcome=OUTCOME_FAIL)
            return consent_page(req, identity, "Invalid username or password.", status_code=401)
        log_audit(db, EVENT_LOGIN_OK, client_id=req.client.external_id, user_id=user.id, ip=ip, outcome=OUTCOME_SUCCESS)
        reauthenticated_user_id = user.id
        identity = CurrentIdentity(
            user_id=user.id,
            session_age=0,
            user_is_valid=user.is_valid_for_oidc,
            user_lvl=user.user_lvl,
        )

    if identity is None or (req.need_reauth(identity) and reauthenticated_user_id is None):
        raise req.fail("Login is required", LOGIN_REQUIRED, 401)
    if not identity.user_is_valid:
        raise req.fail("User must set a username before proceeding", INTERACTION_REQUIRED)

    granted = ScopeSet.parse(granted_scope).intersection(req.scope)
    if Scope.OPENID in req.scope:
        granted = granted.union([Scope.OPENID])
    if req.scope and not granted:
        return req.fail("No scope was granted", ACCESS_DENIED).to_response()

    consent_id = consents.grant(db, req.client.id, identity.user_id, granted, parse_expiration(expiration_hours))
    clients.touch(db, req.client.id)
    code = _issue_code(db, req, consent_id, granted, identity.session_age)

    log_audit(db, EVENT_CONSENT_ALLOW, client_id=req.client.external_id, user_id=identity.user_id, ip=ip)
    log_audit(db, EVENT_CODE_ISSUED, client_id=req.client.external_id, user_id=identity.user_id, ip=ip)
    response: Response = _code_redirect(req, code)
    response.headers.update(NO_STORE_HEADERS)
    if reauthenticated_user_id is not None:
        create_session(db, response, reauthenticated_user_id)
    return response
