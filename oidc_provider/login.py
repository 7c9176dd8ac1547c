"""
First-party login and logout (GET/POST /login, POST /logout).
After login the browser goes back to `next`, which must be a local path.
"""
import html
import logging

from fastapi import APIRouter, Depends, Form, Request
from fastapi.responses import HTMLResponse, RedirectResponse
from sqlalchemy.orm import Session

from oidc_provider.audit import (
    EVENT_LOGIN_FAIL,
    EVENT_LOGIN_OK,
    OUTCOME_FAIL,
    OUTCOME_SUCCESS,
    get_client_ip,
    log_audit,
)
from oidc_provider.database import get_db
from oidc_provider.session import authenticate_user, create_session, drop_session, is_same_origin

logger = logging.getLogger(__name__)
router = APIRouter()


def safe_next(next_url: str | None) -> str:
    """Only same-site paths; anything else (absolute or protocol-relative) goes to /."""
    if not next_url or not next_url.startswith("/") or next_url.startswith("//") or "\\" in next_url:
        return "/"
    return next_url


def _login_page(next_url: str, username: str = "", error: str | None = None, status_code: int = 200) -> HTMLResponse:
    def e(s: str) -> str:
        return html.escape(s or "")

    error_html = f'<p style="color:red;">{e(error)}</p>' if error else ""
    body = f"""<!DOCTYPE html>
<html>
<head><meta charset="utf-8"><title>Log in</title></head>
<body>
  <h1>Log in</h1>
  {error_html}
  <form method="post" action="/login">
    <input type="hidden" name="next" value="{e(next_url)}"/>
    <label>Username: <input type="text" name="username" value="{e(username)}" required/></label><br/>
    <label>Password: <input type="password" name="password" required/></label><br/>
    <button type="submit">Log in</button>
  </form>
</body>
</html>"""
    return HTMLResponse(body, status_code=status_code)


@router.get("/login", response_class=HTMLResponse)
def login_get(next: str | None = None):
    return _login_page(safe_next(next))


@router.post("/login")
def login_post(
    request: Request,
    username: str = Form(...),
    password: str = Form(...),
    next: str | None = Form(None),
    db: Session = Depends(get_db),
):
    """Check credentials, start a session and go back to `next`."""
    next_url = safe_next(next)
    if not is_same_origin(request):
        logger.warning("Cross-origin login post rejected from %s", get_client_ip(request))
        return _login_page(next_url, error="Sign in from this page.", status_code=403)
    user = authenticate_user(db, username, password)
    if user is None:
        log_audit(db, EVENT_LOGIN_FAIL, ip=get_client_ip(request), outcome=OUTCOME_FAIL)
        return _login_page(next_url, username, "Invalid username or password.", status_code=401)
    log_audit(db, EVENT_LOGIN_OK, user_id=user.id, ip=get_client_ip(request), outcome=OUTCOME_SUCCESS)
    response = RedirectResponse(url=next_url, status_code=303)
    create_session(db, response, user.id)
    return response


@router.post("/logout")
def logout(request: Request, db: Session = Depends(get_db)):
    response = RedirectResponse(url="/login", status_code=303)
    drop_session(request, db, response)
    return response
