"""
OAuth2 / OIDC error taxonomy. Every error carries an `error` code and a human-readable
`error_description`; the subclass decides how it reaches the caller (JSON, redirect, HTML page
or Bearer challenge). Never includes stack traces.
"""
import html
import logging
from urllib.parse import urlencode

from fastapi import Request
from fastapi.responses import HTMLResponse, JSONResponse, RedirectResponse, Response
from sqlalchemy.exc import SQLAlchemyError

logger = logging.getLogger(__name__)

INVALID_REQUEST = "invalid_request"
INVALID_CLIENT = "invalid_client"
INVALID_GRANT = "invalid_grant"
UNSUPPORTED_GRANT_TYPE = "unsupported_grant_type"
INSUFFICIENT_SCOPE = "insufficient_scope"
INVALID_TOKEN = "invalid_token"
LOGIN_REQUIRED = "login_required"
INTERACTION_REQUIRED = "interaction_required"
ACCESS_DENIED = "access_denied"
SERVER_ERROR = "server_error"

NO_STORE_HEADERS = {
    "Cache-Control": "no-cache, no-store, must-revalidate",
    "Pragma": "no-cache",
    "Expires": "0",
}


class OIDCError(Exception):
    """Rendered as JSON {error, error_description} (token endpoint, userinfo, APIs)."""

    def __init__(
        self,
        error_description: str,
        error: str = INVALID_REQUEST,
        status_code: int = 400,
        headers: dict[str, str] | None = None,
    ):
        super().__init__(error_description)
        self.error = error
        self.error_description = error_description
        self.status_code = status_code
        self.headers = headers or {}

    def to_dict(self) -> dict:
        return {"error": self.error, "error_description": self.error_description}

    def to_response(self) -> Response:
        return JSONResponse(
            self.to_dict(),
            status_code=self.status_code,
            headers={**NO_STORE_HEADERS, **self.headers},
        )


class InvalidClientError(OIDCError):
    """Unknown client or bad secret: 401 with a Basic challenge (RFC 6749 §5.2)."""

    def __init__(self, error_description: str = "Client authentication failed"):
        super().__init__(
            error_description,
            error=INVALID_CLIENT,
            status_code=401,
            headers={"WWW-Authenticate": 'Basic realm="oidc"'},
        )


class AuthorizationError(OIDCError):
    """
    Authorization endpoint error. Redirects to redirect_uri only when it has been verified
    against the client registration; otherwise an HTML page (open-redirect prevention).
    """

    def __init__(
        self,
        error_description: str,
        error: str = INVALID_REQUEST,
        status_code: int = 400,
        redirect_uri: str | None = None,
        state: str | None = None,
    ):
        super().__init__(error_description, error=error, status_code=status_code)
        self.redirect_uri = redirect_uri
        self.state = state

    def to_response(self) -> Response:
        if self.redirect_uri:
            params = self.to_dict()
            if self.state:
                params["state"] = self.state
            sep = "&" if "?" in self.redirect_uri else "?"
            return RedirectResponse(url=f"{self.redirect_uri}{sep}{urlencode(params)}", status_code=302)
        return error_page(self.error, self.error_description, self.status_code)


class BearerTokenError(OIDCError):
    """Protected resource error (RFC 6750 §3): empty body and a Bearer challenge."""

    def __init__(self, error_description: str, error: str = INVALID_TOKEN, status_code: int = 401):
        super().__init__(error_description, error=error, status_code=status_code)
        description = error_description.replace('"', "'")
        self.headers = {
            "WWW-Authenticate": f'Bearer error="{error}", error_description="{description}"',
            "Access-Control-Allow-Origin": "*",
        }

    def to_response(self) -> Response:
        return Response(status_code=self.status_code, headers={**NO_STORE_HEADERS, **self.headers})


def error_page(error: str, error_description: str, status_code: int = 400) -> HTMLResponse:
    body = f"""<!DOCTYPE html>
<html>
<head><meta charset="utf-8"><title>Authorization error</title></head>
<body>
  <h1>Invalid request</h1>
  <p>{html.escape(error_description)}</p>
  <p><small>{html.escape(error)}</small></p>
</body>
</html>"""
    return HTMLResponse(body, status_code=status_code, headers=NO_STORE_HEADERS)


async def oidc_error_handler(request: Request, exc: OIDCError) -> Response:
    return exc.to_response()


async def store_error_handler(request: Request, exc: SQLAlchemyError) -> Response:
    """Store unavailable / timed out: server_error, never a hang or a stack trace."""
    logger.error("Store failure on %s %s: %s", request.method, request.url.path, exc.__class__.__name__)
    return OIDCError(
        "The server could not complete the request",
        error=SERVER_ERROR,
        status_code=500,
    ).to_response()
