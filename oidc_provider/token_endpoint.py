"""
Token endpoint (POST /oidc/token): authorization_code and refresh_token grants.
The client authenticates first (Basic or POST body). Codes and refresh tokens are consumed atomically;
a code or token from another client's consent is an invalid_grant.
"""
import logging
from datetime import datetime, timezone

from fastapi import APIRouter, Depends, Form, Request
from fastapi.responses import JSONResponse
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from oidc_provider import codes, tokens
from oidc_provider.audit import (
    EVENT_CLIENT_MISMATCH,
    EVENT_CODE_REJECTED,
    EVENT_REFRESH_REJECTED,
    EVENT_TOKEN_ISSUED,
    EVENT_TOKEN_REFRESHED,
    OUTCOME_FAIL,
    get_client_ip,
    log_audit,
)
from oidc_provider.claims import build_id_token
from oidc_provider.client_auth import require_client_auth
from oidc_provider.config import ACCESS_TOKEN_EXPIRES, REFRESH_TOKEN_EXPIRES
from oidc_provider.database import get_db
from oidc_provider.errors import (
    INVALID_GRANT,
    NO_STORE_HEADERS,
    SERVER_ERROR,
    UNSUPPORTED_GRANT_TYPE,
    OIDCError,
)
from oidc_provider.keys import SigningKeyProvider, get_key_provider
from oidc_provider.models import Client
from oidc_provider.scopes import Scope, ScopeSet
from oidc_provider.security import verify_pkce

logger = logging.getLogger(__name__)
router = APIRouter()

TOKEN_HEADERS = {**NO_STORE_HEADERS, "Access-Control-Allow-Origin": "*"}


def _server_error(description: str) -> OIDCError:
    return OIDCError(description, error=SERVER_ERROR, status_code=500)


def _open_cors(err: OIDCError) -> OIDCError:
    """Error answers of the token endpoint are readable cross-origin like its successes."""
    err.headers = {**err.headers, "Access-Control-Allow-Origin": "*"}
    return err


@router.post("/oidc/token")
def token(
    request: Request,
    grant_type: str | None = Form(None),
    code: str | None = Form(None),
    redirect_uri: str | None = Form(None),
    code_verifier: str | None = Form(None),
    refresh_token: str | None = Form(None),
    scope: str | None = Form(None),
    client_id: str | None = Form(None),
    client_secret: str | None = Form(None),
    db: Session = Depends(get_db),
    keys: SigningKeyProvider = Depends(get_key_provider),
):
    """
    authorization_code: exchange code (+ code_verifier) for access token, refresh token if
    offline_access was granted, id_token if openid was granted.
    refresh_token: exchange a refresh token for a new access token and a new refresh token.
    """
    ip = get_client_ip(request)
    try:
        client = require_client_auth(db, request, client_id, client_secret)
        if not grant_type:
            raise OIDCError("No grant_type given")
        if grant_type == "authorization_code":
            payload = _authorization_code_grant(db, keys, client, code, code_verifier, redirect_uri, ip)
        elif grant_type == "refresh_token":
            payload = _refresh_token_grant(db, client, refresh_token, scope, ip)
        else:
            raise OIDCError(f"The grant type {grant_type} is not supported", error=UNSUPPORTED_GRANT_TYPE)
    except SQLAlchemyError as e:
        db.rollback()
        logger.error("Token request failed: %s", e.__class__.__name__)
        raise _open_cors(_server_error("Server experienced a storage error"))
    except OIDCError as e:
        _open_cors(e)
        raise
    return JSONResponse(payload, headers=TOKEN_HEADERS)


def _check_client(db: Session, client: Client, owner_internal_id: int, ip: str | None, what: str) -> None:
    """Cross-client substitution check; answered like any other bad grant."""
    if owner_internal_id == client.id:
        return
    logger.warning("%s issued to another client presented by client_id=%s", what, client.external_id)
    log_audit(db, EVENT_CLIENT_MISMATCH, client_id=client.external_id, ip=ip, outcome=OUTCOME_FAIL)
    raise OIDCError(f"Invalid {what}", error=INVALID_GRANT)


def _authorization_code_grant(
    db: Session,
    keys: SigningKeyProvider,
    client: Client,
    code: str | None,
    code_verifier: str | None,
    redirect_uri: str | None,
    ip: str | None,
) -> dict:
    if not code:
        raise OIDCError("Missing required parameter: code")
    redeemed = codes.redeem(db, code)
    if redeemed is None:
        # unknown, expired and replayed codes look the same to the caller
        logger.warning("Rejected authorization code from client_id=%s (unknown, expired or already used)", client.external_id)
        log_audit(db, EVENT_CODE_REJECTED, client_id=client.external_id, ip=ip, outcome=OUTCOME_FAIL)
        raise OIDCError("Invalid authorization code", error=INVALID_GRANT)
    _check_client(db, client, redeemed.client_internal_id, ip, "authorization code")

    if redeemed.code_challenge:
        if not code_verifier:
            raise OIDCError("Missing required parameter: code_verifier", error=INVALID_GRANT)
        if not verify_pkce(code_verifier, redeemed.code_challenge, redeemed.code_challenge_method):
            logger.info("PKCE verification failed for client_id=%s", client.external_id)
            raise OIDCError("Invalid code_verifier", error=INVALID_GRANT)
    if redirect_uri and redeemed.redirect_uri and redirect_uri != redeemed.redirect_uri:
        raise OIDCError("redirect_uri does not match the authorization request", error=INVALID_GRANT)

    # Client registration may have shrunk since the code was issued
    scope = redeemed.scope.intersection(client.scope_set)
    access_token = tokens.issue_access_token(db, redeemed.consent_id, scope)
    payload = {
        "access_token": access_token,
        "token_type": "Bearer",
        "expires_in": ACCESS_TOKEN_EXPIRES,
        "scope": str(scope),
    }
    if Scope.OFFLINE_ACCESS in scope:
        payload["refresh_token"] = tokens.issue_refresh_token(db, redeemed.consent_id, scope)
        payload["refresh_expires_in"] = REFRESH_TOKEN_EXPIRES

    if Scope.OPENID in scope:
        auth_time = None
        if redeemed.auth_age is not None:
            auth_time = int(redeemed.issued_at.timestamp()) - redeemed.auth_age
        id_token = build_id_token(
            db,
            keys,
            redeemed.user_id,
            client.external_id,
            scope,
            auth_time=auth_time,
            nonce=redeemed.nonce,
            access_token=access_token,
        )
        if id_token is None:
            raise _server_error("Server experienced an error on id_token creation")
        payload["id_token"] = id_token

    log_audit(db, EVENT_TOKEN_ISSUED, client_id=client.external_id, user_id=redeemed.user_id, ip=ip)
    logger.info("Tokens issued for client_id=%s scope='%s'", client.external_id, scope)
    return payload


def _refresh_token_grant(
    db: Session,
    client: Client,
    refresh_token: str | None,
    requested_scope: str | None,
    ip: str | None,
) -> dict:
    if not refresh_token:
        raise OIDCError("Missing required parameter: refresh_token")
    redeemed = tokens.redeem_refresh_token(db, refresh_token)
    if redeemed is None:
        # a rotated token presented again lands here
        logger.warning("Rejected refresh token from client_id=%s (unknown, expired or already used)", client.external_id)
        log_audit(db, EVENT_REFRESH_REJECTED, client_id=client.external_id, ip=ip, outcome=OUTCOME_FAIL)
        raise OIDCError("Refresh Token invalid or expired", error=INVALID_GRANT)
    _check_client(db, client, redeemed.client_internal_id, ip, "refresh token")

    scope = redeemed.scope
    if requested_scope:
        # only narrowing is possible
        scope = scope.intersection(ScopeSet.parse(requested_scope))
    scope = scope.intersection(client.scope_set)
    if Scope.OFFLINE_ACCESS not in client.scope_set:
        raise OIDCError("No scopes to give", error=INVALID_GRANT)

    access_token = tokens.issue_access_token(db, redeemed.consent_id, scope)
    new_refresh_token = tokens.issue_refresh_token(db, redeemed.consent_id, scope)
    log_audit(db, EVENT_TOKEN_REFRESHED, client_id=client.external_id, user_id=redeemed.user_id, ip=ip)
    logger.info("refresh_token grant: rotated for client_id=%s", client.external_id)
    return {
        "access_token": access_token,
        "token_type": "Bearer",
        "expires_in": ACCESS_TOKEN_EXPIRES,
        "scope": str(scope),
        "refresh_token": new_refresh_token,
        "refresh_expires_in": REFRESH_TOKEN_EXPIRES,
    }
