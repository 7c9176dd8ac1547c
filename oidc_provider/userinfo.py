"""
OIDC UserInfo endpoint (GET /oidc/userinfo) and the bearer-protected modtools check.
"""
import logging

from fastapi import APIRouter, Depends
from fastapi.responses import JSONResponse
from sqlalchemy import select
from sqlalchemy.orm import Session

from oidc_provider.bearer import OIDCGrant, require_oidc
from oidc_provider.claims import userinfo_claims
from oidc_provider.database import get_db
from oidc_provider.errors import NO_STORE_HEADERS, SERVER_ERROR, OIDCError
from oidc_provider.models import User, UserLevel
from oidc_provider.scopes import Scope

logger = logging.getLogger(__name__)
router = APIRouter()

PUBLIC_HEADERS = {**NO_STORE_HEADERS, "Access-Control-Allow-Origin": "*"}


@router.api_route("/oidc/userinfo", methods=["GET", "POST"])
def userinfo(grant: OIDCGrant = Depends(require_oidc()), db: Session = Depends(get_db)):
    """
    Claims for the token's user, one producer per granted scope.
    openid -> sub (pairwise); profile -> name, preferred_username, updated_at; email -> email, email_verified; ...
    """
    claims = userinfo_claims(db, grant.user_id, grant.client_id, grant.scope)
    if claims is None:
        raise OIDCError("Server experienced an error", error=SERVER_ERROR, status_code=500)
    return JSONResponse(claims, headers=PUBLIC_HEADERS)


@router.get("/api/modtools")
def modtools(grant: OIDCGrant = Depends(require_oidc(Scope.MODTOOLS)), db: Session = Depends(get_db)):
    """Whether the token's user may use moderation tools."""
    user_lvl = db.execute(select(User.user_lvl).where(User.id == grant.user_id)).scalar_one_or_none()
    if user_lvl is None:
        raise OIDCError("Server experienced an error", error=SERVER_ERROR, status_code=500)
    return JSONResponse(
        {"allowed": user_lvl >= UserLevel.MOD, "user_lvl": user_lvl},
        headers=PUBLIC_HEADERS,
    )
