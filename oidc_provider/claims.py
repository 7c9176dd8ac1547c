"""
Scope-gated claims and the signed ID token.

Every Scope maps to one claim producer. The ID token carries openid/profile/email/user_id claims;
userinfo walks all granted scopes. The user profile is loaded at most once per build.
"""
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Callable

import jwt
from sqlalchemy import select
from sqlalchemy.orm import Session

from oidc_provider.config import ID_TOKEN_EXPIRES, ISSUER
from oidc_provider.keys import SIGNING_ALG, SigningKeyProvider
from oidc_provider.models import User, UserLevel, as_utc
from oidc_provider.scopes import Scope, ScopeSet
from oidc_provider.security import pairwise_subject, token_hash_claim

logger = logging.getLogger(__name__)


class ProfileUnavailable(Exception):
    """The user profile needed for a claim could not be loaded."""


@dataclass(frozen=True)
class UserProfile:
    user_id: int
    username: str | None
    name: str | None
    created_at: int
    email: str | None
    email_verified: bool
    user_lvl: int
    total_pixels: int
    daily_total_pixels: int
    ranking: int | None
    daily_ranking: int | None
    badges: list


def load_user_profile(db: Session, user_id: int) -> UserProfile | None:
    user = db.execute(select(User).where(User.id == user_id)).scalar_one_or_none()
    if user is None:
        return None
    created = as_utc(user.created_at)
    try:
        badges = user.get_badges_list()
    except (TypeError, ValueError):
        logger.warning("Unreadable badges of user %s", user_id)
        badges = []
    return UserProfile(
        user_id=user.id,
        username=user.username,
        name=user.name or user.username,
        created_at=int(created.timestamp()) if created else 0,
        email=user.email,
        email_verified=bool(user.email_verified),
        user_lvl=user.user_lvl,
        total_pixels=user.total_pixels,
        daily_total_pixels=user.daily_total_pixels,
        ranking=user.ranking,
        daily_ranking=user.daily_ranking,
        badges=badges,
    )


@dataclass
class ClaimContext:
    user_id: int
    client_external_id: str
    loader: Callable[[], UserProfile | None]
    _profile: UserProfile | None = field(default=None, init=False)
    _loaded: bool = field(default=False, init=False)

    def profile(self) -> UserProfile:
        if not self._loaded:
            self._profile = self.loader()
            self._loaded = True
        if self._profile is None:
            raise ProfileUnavailable(self.user_id)
        return self._profile


def _openid_claims(ctx: ClaimContext) -> dict:
    return {"sub": pairwise_subject(ctx.client_external_id, ctx.user_id)}


def _profile_claims(ctx: ClaimContext) -> dict:
    p = ctx.profile()
    return {"name": p.name, "preferred_username": p.username, "updated_at": p.created_at}


def _email_claims(ctx: ClaimContext) -> dict:
    p = ctx.profile()
    return {"email": p.email, "email_verified": p.email_verified}


def _user_id_claims(ctx: ClaimContext) -> dict:
    p = ctx.profile()
    return {
        "user_id": str(ctx.user_id),
        "user_lvl": p.user_lvl,
        "verified": p.user_lvl >= UserLevel.VERIFIED,
    }


def _game_data_claims(ctx: ClaimContext) -> dict:
    p = ctx.profile()
    return {
        "totalPixels": p.total_pixels,
        "dailyTotalPixels": p.daily_total_pixels,
        "ranking": p.ranking,
        "dailyRanking": p.daily_ranking,
    }


def _achievements_claims(ctx: ClaimContext) -> dict:
    return {"badges": ctx.profile().badges}


def _no_claims(ctx: ClaimContext) -> dict:
    return {}


CLAIM_PRODUCERS: dict[Scope, Callable[[ClaimContext], dict]] = {
    Scope.OPENID: _openid_claims,
    Scope.PROFILE: _profile_claims,
    Scope.EMAIL: _email_claims,
    Scope.USER_ID: _user_id_claims,
    Scope.GAME_DATA: _game_data_claims,
    Scope.ACHIEVEMENTS: _achievements_claims,
    Scope.OFFLINE_ACCESS: _no_claims,
    Scope.MODTOOLS: _no_claims,
}

# Claim names each scope yields; lets callers pass claims they already know
CLAIM_NAMES: dict[Scope, tuple[str, ...]] = {
    Scope.OPENID: ("sub",),
    Scope.PROFILE: ("name", "preferred_username", "updated_at"),
    Scope.EMAIL: ("email", "email_verified"),
    Scope.USER_ID: ("user_id", "user_lvl", "verified"),
    Scope.GAME_DATA: ("totalPixels", "dailyTotalPixels", "ranking", "dailyRanking"),
    Scope.ACHIEVEMENTS: ("badges",),
    Scope.OFFLINE_ACCESS: (),
    Scope.MODTOOLS: (),
}

ID_TOKEN_SCOPES = ScopeSet([Scope.OPENID, Scope.PROFILE, Scope.EMAIL, Scope.USER_ID])


def collect_claims(ctx: ClaimContext, scope: ScopeSet, known_claims: dict | None = None) -> dict:
    """Claims for every scope in `scope`. Raises ProfileUnavailable."""
    known_claims = known_claims or {}
    claims: dict = {}
    for s in scope:
        names = CLAIM_NAMES[s]
        if names and all(n in known_claims for n in names):
            claims.update({n: known_claims[n] for n in names})
        else:
            claims.update(CLAIM_PRODUCERS[s](ctx))
    return claims


def userinfo_claims(db: Session, user_id: int, client_external_id: str, scope: ScopeSet) -> dict | None:
    """Userinfo payload for the granted scope; None if the profile could not be loaded."""
    ctx = ClaimContext(user_id, client_external_id, lambda: load_user_profile(db, user_id))
    try:
        return collect_claims(ctx, scope)
    except ProfileUnavailable:
        logger.error("Userinfo: no profile for user %s", user_id)
        return None


def build_id_token(
    db: Session,
    keys: SigningKeyProvider,
    user_id: int,
    client_external_id: str,
    scope: ScopeSet,
    known_claims: dict | None = None,
    auth_time: int | None = None,
    nonce: str | None = None,
    access_token: str | None = None,
    code: str | None = None,
) -> str | None:
    """
    Signed ID token (RS256) or None if a needed profile lookup or signing failed; callers
    must answer server_error instead of emitting a partial token.
    at_hash / c_hash bind the token to the access token / code it is issued with.
    """
    now = int(datetime.now(timezone.utc).timestamp())
    ctx = ClaimContext(user_id, client_external_id, lambda: load_user_profile(db, user_id))
    try:
        scoped = collect_claims(ctx, scope.intersection(ID_TOKEN_SCOPES), known_claims)
    except ProfileUnavailable:
        logger.error("ID token: no profile for user %s", user_id)
        return None

    payload = {
        "iss": ISSUER,
        "sub": pairwise_subject(client_external_id, user_id),
        "aud": client_external_id,
        "exp": now + ID_TOKEN_EXPIRES,
        "iat": now,
    }
    payload.update(scoped)
    if nonce:
        payload["nonce"] = nonce
    if auth_time is not None:
        payload["auth_time"] = auth_time
    if access_token:
        payload["at_hash"] = token_hash_claim(access_token)
    if code:
        payload["c_hash"] = token_hash_claim(code)

    try:
        key = keys.current()
        token = jwt.encode(
            payload,
            key.private_key,
            algorithm=SIGNING_ALG,
            headers={"kid": key.kid, "typ": "JWT"},
        )
    except (jwt.PyJWTError, ValueError, TypeError) as e:
        logger.error("ID token signing failed: %s", e)
        return None
    if isinstance(token, bytes):
        token = token.decode("utf-8")
    return token
