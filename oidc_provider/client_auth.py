"""
Client authentication at the token endpoint (RFC 6749 §2.3.1): client_secret_basic or client_secret_post.
Every client is confidential; a client without a matching secret is never authenticated.
"""
import base64
import binascii
import logging
from urllib.parse import unquote_plus

from fastapi import Request
from sqlalchemy.orm import Session

from oidc_provider import clients
from oidc_provider.errors import InvalidClientError
from oidc_provider.models import Client

logger = logging.getLogger(__name__)


def _parse_basic(header_value: str | None) -> tuple[str, str] | None:
    """Parse 'Basic <base64(client_id:client_secret)>'. Returns (client_id, client_secret) or None."""
    if not header_value or not header_value.strip().lower().startswith("basic "):
        return None
    encoded = header_value.strip()[6:].strip()
    try:
        decoded = base64.b64decode(encoded, validate=True).decode("utf-8")
    except (binascii.Error, UnicodeDecodeError):
        return None
    if ":" not in decoded:
        return None
    client_id, _, client_secret = decoded.partition(":")
    # RFC 6749 §2.3.1: both parts are form-urlencoded before base64
    return unquote_plus(client_id.strip()), unquote_plus(client_secret)


def get_client_credentials_from_request(
    request: Request,
    client_id_form: str | None,
    client_secret_form: str | None,
) -> tuple[str | None, str | None]:
    """(client_id, client_secret) from the Authorization header, else from the form body."""
    basic = _parse_basic(request.headers.get("Authorization"))
    if basic:
        return basic
    if client_id_form:
        return client_id_form.strip(), client_secret_form
    return None, None


def require_client_auth(
    db: Session,
    request: Request,
    client_id_form: str | None,
    client_secret_form: str | None,
) -> Client:
    """Authenticated Client or InvalidClientError (401)."""
    client_id, client_secret = get_client_credentials_from_request(request, client_id_form, client_secret_form)
    if not client_id:
        raise InvalidClientError("client_id is required")
    if not client_secret:
        raise InvalidClientError("client_secret is required")
    client = clients.authenticate(db, client_id, client_secret)
    if client is None:
        logger.info("Client authentication failed for client_id=%s", client_id)
        raise InvalidClientError("Invalid client credentials")
    return client
