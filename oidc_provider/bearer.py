"""
Resource access guard: FastAPI dependency resolving `Authorization: Bearer <access_token>`.
Failures answer 401 with a `WWW-Authenticate: Bearer error=...` challenge, never an empty 200.
"""
import logging
from dataclasses import dataclass

from fastapi import Depends, Request
from sqlalchemy.orm import Session

from oidc_provider import tokens
from oidc_provider.database import get_db
from oidc_provider.errors import INSUFFICIENT_SCOPE, INVALID_REQUEST, INVALID_TOKEN, BearerTokenError
from oidc_provider.scopes import Scope, ScopeSet

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class OIDCGrant:
    user_id: int
    scope: ScopeSet
    client_id: str
    client_internal_id: int


def _bearer_token(authorization: str | None) -> str:
    if not authorization or not authorization.strip():
        raise BearerTokenError("Authorization header required", error=INVALID_REQUEST)
    scheme, _, value = authorization.strip().partition(" ")
    if scheme.lower() != "bearer" or not value.strip():
        raise BearerTokenError("Invalid Authorization method", error=INVALID_REQUEST)
    return value.strip()


def require_oidc(required_scope: Scope | str | None = None, allow_unauthenticated: bool = False):
    """
    Dependency factory. The dependency returns an OIDCGrant, or None when the request carries no
    Authorization header and `allow_unauthenticated` is set.
    """

    def dependency(request: Request, db: Session = Depends(get_db)) -> OIDCGrant | None:
        authorization = request.headers.get("Authorization")
        if not authorization and allow_unauthenticated:
            return None
        token = _bearer_token(authorization)
        grant = tokens.resolve_access_token(db, token)
        if grant is None:
            raise BearerTokenError("Invalid access token", error=INVALID_TOKEN)
        if not grant.scope or (required_scope and required_scope not in grant.scope):
            logger.info("Access token of client %s lacks scope %s", grant.client_external_id, required_scope)
            raise BearerTokenError("Invalid scope of token", error=INSUFFICIENT_SCOPE)
        return OIDCGrant(
            user_id=grant.user_id,
            scope=grant.scope,
            client_id=grant.client_external_id,
            client_internal_id=grant.client_internal_id,
        )

    return dependency
