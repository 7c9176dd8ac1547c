"""
Access tokens (short-lived, never rotated) and refresh tokens (long-lived, single-use, rotated
by the token endpoint on every use). Both are opaque strings bound to one consent.
"""
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone

from sqlalchemy import delete, select
from sqlalchemy.orm import Session

from oidc_provider.config import ACCESS_TOKEN_EXPIRES, REFRESH_TOKEN_EXPIRES
from oidc_provider.consents import is_live, live_clause
from oidc_provider.models import AccessToken, AuthorizationCode, Client, Consent, RefreshToken
from oidc_provider.scopes import ScopeSet
from oidc_provider.security import generate_large_token

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class AccessGrant:
    user_id: int
    scope: ScopeSet
    client_external_id: str
    client_internal_id: int


@dataclass(frozen=True)
class RedeemedRefreshToken:
    consent_id: int
    user_id: int
    client_internal_id: int
    # Token scope narrowed to what the consent still grants
    scope: ScopeSet
    consented_scope: ScopeSet


def _scope_str(scope) -> str:
    return str(scope if isinstance(scope, ScopeSet) else ScopeSet.parse(scope))


def issue_access_token(db: Session, consent_id: int, scope) -> str:
    now = datetime.now(timezone.utc)
    token = generate_large_token()
    db.add(
        AccessToken(
            token=token,
            consent_id=consent_id,
            scope=_scope_str(scope),
            created_at=now,
            expires_at=now + timedelta(seconds=ACCESS_TOKEN_EXPIRES),
        )
    )
    db.commit()
    return token


def resolve_access_token(db: Session, token: str | None) -> AccessGrant | None:
    """Owner, scope and client of a live access token, or None."""
    if not token:
        return None
    now = datetime.now(timezone.utc)
    row = db.execute(
        select(AccessToken.scope, Consent.user_id, Client.id, Client.external_id, Client.scope)
        .join(Consent, Consent.id == AccessToken.consent_id)
        .join(Client, Client.id == Consent.client_id)
        .where(AccessToken.token == token, AccessToken.expires_at > now, live_clause(now))
    ).first()
    if row is None:
        return None
    scope, user_id, client_id, client_external_id, client_scope = row
    return AccessGrant(
        user_id=user_id,
        # the client registration may have shrunk since issue
        scope=ScopeSet.parse(scope).intersection(ScopeSet.parse(client_scope)),
        client_external_id=client_external_id,
        client_internal_id=client_id,
    )


def issue_refresh_token(db: Session, consent_id: int, scope) -> str:
    now = datetime.now(timezone.utc)
    token = generate_large_token()
    db.add(
        RefreshToken(
            token=token,
            consent_id=consent_id,
            scope=_scope_str(scope),
            created_at=now,
            expires_at=now + timedelta(seconds=REFRESH_TOKEN_EXPIRES),
        )
    )
    db.commit()
    return token


def redeem_refresh_token(db: Session, token: str | None) -> RedeemedRefreshToken | None:
    """
    Consume a refresh token in one DELETE ... RETURNING. None if unknown, expired or already used
    (a replayed token simply is not there anymore). Issuing the replacement is the caller's job.
    """
    if not token:
        return None
    now = datetime.now(timezone.utc)
    row = db.execute(
        delete(RefreshToken)
        .where(RefreshToken.token == token, RefreshToken.expires_at > now)
        .returning(RefreshToken.consent_id, RefreshToken.scope)
        .execution_options(synchronize_session=False)
    ).first()
    db.commit()
    if row is None:
        return None
    consent = db.execute(select(Consent).where(Consent.id == row.consent_id)).scalar_one_or_none()
    if consent is None or not is_live(consent, now):
        logger.info("Refresh token redeemed for consent %s that is gone or expired", row.consent_id)
        return None
    consented = consent.scope_set
    return RedeemedRefreshToken(
        consent_id=consent.id,
        user_id=consent.user_id,
        client_internal_id=consent.client_id,
        scope=ScopeSet.parse(row.scope).intersection(consented),
        consented_scope=consented,
    )


def purge_expired(db: Session) -> int:
    """Housekeeping: drop expired codes and tokens. Returns number of rows removed."""
    now = datetime.now(timezone.utc)
    removed = 0
    for model in (AuthorizationCode, AccessToken, RefreshToken):
        result = db.execute(
            delete(model).where(model.expires_at <= now).execution_options(synchronize_session=False)
        )
        removed += result.rowcount or 0
    db.commit()
    if removed:
        logger.info("Purged %d expired codes/tokens", removed)
    return removed
