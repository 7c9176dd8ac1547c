"""
Consent store: standing grants of a user to a client, unique per (user, client).
Granted scope only grows (union) until the user revokes the consent. Expired consents count as absent.
"""
import logging
from datetime import datetime, timedelta, timezone
from urllib.parse import urlsplit

from sqlalchemy import delete, or_, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from oidc_provider.models import AccessToken, AuthorizationCode, Client, Consent, RefreshToken, as_utc
from oidc_provider.scopes import ScopeSet

logger = logging.getLogger(__name__)


def live_clause(now: datetime):
    """SQL condition: consent not expired."""
    return or_(Consent.expires_at.is_(None), Consent.expires_at > now)


def is_live(consent: Consent, now: datetime | None = None) -> bool:
    now = now or datetime.now(timezone.utc)
    return consent.expires_at is None or as_utc(consent.expires_at) > now


def has_consent(db: Session, user_id: int | None, client_internal_id: int | None) -> Consent | None:
    """Live consent of user for client, or None."""
    if not user_id or not client_internal_id:
        return None
    now = datetime.now(timezone.utc)
    return db.execute(
        select(Consent).where(
            Consent.user_id == user_id,
            Consent.client_id == client_internal_id,
            live_clause(now),
        )
    ).scalar_one_or_none()


def grant(
    db: Session,
    client_internal_id: int,
    user_id: int,
    scope,
    expires_in: timedelta | None,
    existing: Consent | None = None,
) -> int:
    """
    Record consent and return its id. `expires_in` None = until revoked.
    With `existing` of the same (user, client) pair, new scope is merged in and the row is
    only written if the scope changed. Otherwise insert-or-update by (user, client), merging
    with the stored scope if that consent is still live.
    """
    scope = ScopeSet.parse(scope) if not isinstance(scope, ScopeSet) else scope
    now = datetime.now(timezone.utc)
    expires_at = now + expires_in if expires_in is not None else None

    if existing is not None and existing.user_id == user_id and existing.client_id == client_internal_id:
        merged = existing.scope_set.union(scope)
        if merged != existing.scope_set:
            existing.scope = str(merged)
            existing.expires_at = expires_at
            existing.consented_at = now
            db.commit()
            logger.info("Consent %s extended to scope '%s'", existing.id, merged)
        return existing.id

    for attempt in range(2):
        row = db.execute(
            select(Consent)
            .where(Consent.user_id == user_id, Consent.client_id == client_internal_id)
            .with_for_update()
        ).scalar_one_or_none()
        if row is not None:
            base = row.scope_set if is_live(row, now) else ScopeSet()
            row.scope = str(base.union(scope))
            row.expires_at = expires_at
            row.consented_at = now
            db.commit()
            return row.id
        row = Consent(
            user_id=user_id,
            client_id=client_internal_id,
            scope=str(scope),
            expires_at=expires_at,
            consented_at=now,
        )
        db.add(row)
        try:
            db.commit()
        except IntegrityError:
            # concurrent first consent for the same pair; merge into that one
            db.rollback()
            if attempt:
                raise
            continue
        logger.info("Consent %s created (user=%s client=%s)", row.id, user_id, client_internal_id)
        return row.id
    raise RuntimeError("unreachable")


def _delete_artifacts(db: Session, consent_ids) -> None:
    for model in (AuthorizationCode, AccessToken, RefreshToken):
        db.execute(
            delete(model).where(model.consent_id.in_(consent_ids)).execution_options(synchronize_session=False)
        )


def revoke(db: Session, consent_id: int | None, user_id: int | None) -> bool:
    """Delete a consent of the granting user, with every code and token issued under it."""
    if not consent_id or not user_id:
        return False
    owned = select(Consent.id).where(Consent.id == consent_id, Consent.user_id == user_id)
    if db.execute(owned).first() is None:
        return False
    _delete_artifacts(db, owned)
    result = db.execute(
        delete(Consent)
        .where(Consent.id == consent_id, Consent.user_id == user_id)
        .execution_options(synchronize_session=False)
    )
    db.commit()
    return result.rowcount > 0


def delete_for_user(db: Session, user_id: int) -> None:
    """Account deletion: drop every consent of the user."""
    ids = select(Consent.id).where(Consent.user_id == user_id)
    _delete_artifacts(db, ids)
    db.execute(delete(Consent).where(Consent.user_id == user_id).execution_options(synchronize_session=False))
    db.commit()


def _domain_of(uri: str) -> str:
    return urlsplit(uri).netloc or uri


def list_for_user(db: Session, user_id: int) -> list[dict]:
    """Live consents of a user for the account page: id, client name/image, domain, expiry."""
    if not user_id:
        return []
    now = datetime.now(timezone.utc)
    rows = db.execute(
        select(Consent, Client)
        .join(Client, Client.id == Consent.client_id)
        .where(Consent.user_id == user_id, live_clause(now))
        .order_by(Consent.id)
    ).all()
    result = []
    for consent, client in rows:
        uris = client.get_redirect_uris_list()
        expires = as_utc(consent.expires_at)
        result.append(
            {
                "id": consent.id,
                "name": client.name,
                "image": client.image,
                "domain": _domain_of(uris[0]) if uris else "",
                "scope": consent.scope_set.to_list(),
                "expiresTs": int(expires.timestamp() * 1000) if expires else None,
            }
        )
    return result
