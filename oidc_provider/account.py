"""
Account API for the logged-in user: list and revoke consents given to applications.
"""
import logging

from fastapi import APIRouter, Depends, Request
from pydantic import BaseModel
from sqlalchemy.orm import Session

from oidc_provider import consents
from oidc_provider.audit import EVENT_CONSENT_REVOKED, get_client_ip, log_audit
from oidc_provider.database import get_db
from oidc_provider.errors import OIDCError
from oidc_provider.session import CurrentIdentity, resolve_identity

logger = logging.getLogger(__name__)
router = APIRouter()


class RevokeConsentRequest(BaseModel):
    id: int


def require_session(request: Request, db: Session = Depends(get_db)) -> CurrentIdentity:
    identity = resolve_identity(request, db)
    if identity is None:
        raise OIDCError("You are not logged in", status_code=401)
    return identity


@router.get("/api/auth/consents")
def list_consents(identity: CurrentIdentity = Depends(require_session), db: Session = Depends(get_db)):
    return {"consents": consents.list_for_user(db, identity.user_id)}


@router.post("/api/auth/revoke_consent")
def revoke_consent(
    request: Request,
    body: RevokeConsentRequest,
    identity: CurrentIdentity = Depends(require_session),
    db: Session = Depends(get_db),
):
    """Revoke one of the user's consents; every code and token issued under it dies with it."""
    if not consents.revoke(db, body.id, identity.user_id):
        raise OIDCError("Could not close this Session.")
    log_audit(db, EVENT_CONSENT_REVOKED, user_id=identity.user_id, ip=get_client_ip(request))
    logger.info("User %s revoked consent %s", identity.user_id, body.id)
    return {"success": True}
