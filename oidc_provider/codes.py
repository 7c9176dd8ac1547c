"""
Authorization codes: short-lived, single-use, bound to one consent.
Redemption is a single DELETE ... RETURNING, so of two concurrent redemptions at most one gets the row.
"""
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone

from sqlalchemy import delete, select
from sqlalchemy.orm import Session

from oidc_provider.config import CODE_TTL_SECONDS
from oidc_provider.consents import is_live
from oidc_provider.models import AuthorizationCode, Consent, as_utc
from oidc_provider.scopes import ScopeSet
from oidc_provider.security import generate_large_token

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RedeemedCode:
    consent_id: int
    user_id: int
    client_internal_id: int
    # Code scope narrowed to what the consent still grants
    scope: ScopeSet
    consented_scope: ScopeSet
    code_challenge: str | None
    code_challenge_method: str | None
    nonce: str | None
    auth_age: int | None
    redirect_uri: str | None
    issued_at: datetime


def issue(
    db: Session,
    consent_id: int,
    scope,
    code_challenge: str | None = None,
    code_challenge_method: str | None = None,
    auth_age: int | None = None,
    nonce: str | None = None,
    redirect_uri: str | None = None,
) -> str:
    """Create and persist a new authorization code (CODE_TTL_SECONDS lifetime)."""
    now = datetime.now(timezone.utc)
    code = generate_large_token()
    db.add(
        AuthorizationCode(
            code=code,
            consent_id=consent_id,
            scope=str(ScopeSet.parse(scope) if not isinstance(scope, ScopeSet) else scope),
            redirect_uri=redirect_uri,
            code_challenge=code_challenge or None,
            code_challenge_method=(code_challenge_method or "plain") if code_challenge else None,
            nonce=nonce or None,
            auth_age=auth_age,
            created_at=now,
            expires_at=now + timedelta(seconds=CODE_TTL_SECONDS),
        )
    )
    db.commit()
    return code


def redeem(db: Session, code: str | None) -> RedeemedCode | None:
    """
    Consume a code: delete it and return its data in one statement. None if unknown,
    expired or already redeemed; callers answer all of those with the same invalid_grant.
    """
    if not code:
        return None
    now = datetime.now(timezone.utc)
    row = db.execute(
        delete(AuthorizationCode)
        .where(AuthorizationCode.code == code, AuthorizationCode.expires_at > now)
        .returning(
            AuthorizationCode.consent_id,
            AuthorizationCode.scope,
            AuthorizationCode.code_challenge,
            AuthorizationCode.code_challenge_method,
            AuthorizationCode.nonce,
            AuthorizationCode.auth_age,
            AuthorizationCode.redirect_uri,
            AuthorizationCode.created_at,
        )
        .execution_options(synchronize_session=False)
    ).first()
    db.commit()
    if row is None:
        return None
    consent = db.execute(select(Consent).where(Consent.id == row.consent_id)).scalar_one_or_none()
    if consent is None or not is_live(consent, now):
        logger.info("Code redeemed for consent %s that is gone or expired", row.consent_id)
        return None
    consented = consent.scope_set
    return RedeemedCode(
        consent_id=consent.id,
        user_id=consent.user_id,
        client_internal_id=consent.client_id,
        scope=ScopeSet.parse(row.scope).intersection(consented),
        consented_scope=consented,
        code_challenge=row.code_challenge,
        code_challenge_method=row.code_challenge_method,
        nonce=row.nonce,
        auth_age=row.auth_age,
        redirect_uri=row.redirect_uri,
        issued_at=as_utc(row.created_at),
    )
