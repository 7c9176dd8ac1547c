"""
Client self-registration page (GET|POST /oidc/register) for verified users.
Create, edit (optionally reroll the secret) and delete the user's own applications.
The client_secret is only displayed right after it was generated.
"""
import html
import logging

from fastapi import APIRouter, Depends, Form, Request
from fastapi.responses import HTMLResponse
from sqlalchemy.orm import Session

from oidc_provider import clients
from oidc_provider.audit import EVENT_CLIENT_DELETED, EVENT_CLIENT_REGISTERED, get_client_ip, log_audit
from oidc_provider.claims import CLAIM_NAMES
from oidc_provider.clients import ClientRegistrationError
from oidc_provider.database import get_db
from oidc_provider.errors import NO_STORE_HEADERS, error_page
from oidc_provider.models import Client, UserLevel
from oidc_provider.scopes import SCOPE_DESCRIPTIONS, Scope
from oidc_provider.session import resolve_identity

logger = logging.getLogger(__name__)
router = APIRouter()


def e(s) -> str:
    return html.escape(str(s) if s is not None else "")


def parse_redirect_uris(text: str | None) -> list[str]:
    """One URI per line (or whitespace separated). Length limits are checked by the registry."""
    return (text or "").split()


def _scope_table() -> str:
    rows = "".join(
        f"<tr><td>{e(s.value)}</td><td>{e(SCOPE_DESCRIPTIONS[s])}</td><td>{e(', '.join(CLAIM_NAMES[s]))}</td></tr>"
        for s in Scope
    )
    return f"""<table>
  <thead><tr><th>Scope</th><th>Permission</th><th>Claims</th></tr></thead>
  <tbody>{rows}</tbody>
</table>"""


def _scope_checkboxes(field: str, selected) -> str:
    return "".join(
        f'<label><input type="checkbox" name="{field}" value="{e(s.value)}"{" checked" if s in selected else ""}/> '
        f"{e(s.value)}</label> "
        for s in Scope
    )


def _client_form(client: Client | None) -> str:
    if client is None:
        return f"""<form method="post" action="/oidc/register">
    <input type="hidden" name="action" value="save"/>
    <label>Client Name: <input type="text" name="name" required/></label><br/>
    <label>Redirect URIs (one per line):<br/><textarea name="redirect_uris" rows="3" cols="60"></textarea></label><br/>
    <p>Scope: {_scope_checkboxes("scope", ())}</p>
    <p>Default scope: {_scope_checkboxes("default_scope", ())}</p>
    <button type="submit">Add application</button>
  </form>"""
    return f"""<form method="post" action="/oidc/register">
    <input type="hidden" name="action" value="save"/>
    <input type="hidden" name="uuid" value="{e(client.external_id)}"/>
    <label>Client Name: <input type="text" name="name" value="{e(client.name)}" required/></label><br/>
    <label>client_id: <input type="text" value="{e(client.external_id)}" readonly/></label><br/>
    <label><input type="checkbox" name="reroll_secret" value="1"/> Generate a new client_secret</label><br/>
    <label>Redirect URIs (one per line):<br/><textarea name="redirect_uris" rows="3" cols="60">{e(chr(10).join(client.get_redirect_uris_list()))}</textarea></label><br/>
    <p>Scope: {_scope_checkboxes("scope", client.scope_set)}</p>
    <p>Default scope: {_scope_checkboxes("default_scope", client.default_scope_set)}</p>
    <button type="submit">Save</button>
  </form>
  <form method="post" action="/oidc/register">
    <input type="hidden" name="action" value="delete"/>
    <input type="hidden" name="uuid" value="{e(client.external_id)}"/>
    <button type="submit">Delete</button>
  </form>"""


def _page(db: Session, owner_id: int, message: str = "", status_code: int = 200) -> HTMLResponse:
    owned = "".join(
        f"<h3>{e(c.name)}</h3>\n  {_client_form(c)}" for c in clients.list_for_owner(db, owner_id)
    )
    body = f"""<!DOCTYPE html>
<html>
<head><meta charset="utf-8"><title>Add an Application (OIDC Client)</title></head>
<body>
  {message}
  <h2>OpenID Connect (oauth2)</h2>
  <p>Endpoints can be discovered via <a href="/.well-known/openid-configuration">.well-known/openid-configuration</a>.</p>
  <p>List of available scopes:</p>
  {_scope_table()}
  <h2>Add new application</h2>
  {_client_form(None)}
  <h2>Your applications</h2>
  {owned or "<p>None yet.</p>"}
</body>
</html>"""
    return HTMLResponse(body, status_code=status_code, headers=NO_STORE_HEADERS)


def _verified_owner(request: Request, db: Session) -> tuple[int | None, HTMLResponse | None]:
    identity = resolve_identity(request, db)
    if identity is None:
        return None, error_page("login_required", "You must be logged in to access this page", 401)
    if identity.user_lvl < UserLevel.VERIFIED:
        return None, error_page("access_denied", "Your account needs to be verified to access this page", 403)
    return identity.user_id, None


@router.get("/oidc/register", response_class=HTMLResponse)
def register_get(request: Request, db: Session = Depends(get_db)):
    owner_id, denied = _verified_owner(request, db)
    if denied:
        return denied
    return _page(db, owner_id)


@router.post("/oidc/register", response_class=HTMLResponse)
def register_post(
    request: Request,
    action: str | None = Form(None),
    name: str | None = Form(None),
    uuid: str | None = Form(None),
    reroll_secret: str | None = Form(None),
    redirect_uris: str | None = Form(None),
    scope: list[str] = Form([]),
    default_scope: list[str] = Form([]),
    db: Session = Depends(get_db),
):
    """Save (create or update) or delete one of the caller's clients, then show the page again."""
    owner_id, denied = _verified_owner(request, db)
    if denied:
        return denied
    return _handle_form(
        request,
        db,
        owner_id,
        action=action,
        name=name,
        uuid=uuid or None,
        reroll_secret=bool(reroll_secret),
        redirect_uris=redirect_uris,
        scope=scope,
        default_scope=default_scope,
    )


def _handle_form(
    request: Request,
    db: Session,
    owner_id: int,
    action: str | None,
    name: str | None,
    uuid: str | None,
    reroll_secret: bool,
    redirect_uris: str | None,
    scope: list[str],
    default_scope: list[str],
) -> HTMLResponse:
    ip = get_client_ip(request)
    try:
        if action == "delete":
            if not clients.delete_client(db, owner_id, uuid):
                raise ClientRegistrationError("No such client exists or you do not have access to it")
            log_audit(db, EVENT_CLIENT_DELETED, client_id=uuid, user_id=owner_id, ip=ip)
            return _page(db, owner_id, '<p style="color:#2a537d;">Application deleted</p>')

        if not name or not scope or not redirect_uris:
            raise ClientRegistrationError("You have to fill out all fields")
        registered = clients.register(
            db,
            owner_id,
            name,
            scope,
            parse_redirect_uris(redirect_uris),
            default_scope=default_scope or None,
            existing_external_id=uuid,
            reroll_secret=reroll_secret,
        )
    except ClientRegistrationError as err:
        return _page(db, owner_id, f'<p style="color:#b73c3c;">Error: {e(err)}</p>', status_code=400)

    log_audit(db, EVENT_CLIENT_REGISTERED, client_id=registered.external_id, user_id=owner_id, ip=ip)
    message = "Application changed successfully" if uuid else "Application successfully added"
    secret = ""
    if registered.secret:
        secret = (
            f"<p>client_id: <code>{e(registered.external_id)}</code><br/>"
            f"client_secret: <code>{e(registered.secret)}</code> (shown only once, store it now)</p>"
        )
    return _page(db, owner_id, f'<p style="color:#2a537d;">{message}</p>{secret}')
