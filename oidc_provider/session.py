"""
First-party login sessions: the end-user identity the provider acts on behalf of.
The cookie holds an opaque token; only its hash is stored.
"""
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone

from fastapi import Request, Response
from sqlalchemy import delete, select
from sqlalchemy.orm import Session

from oidc_provider.config import ISSUER, SESSION_COOKIE_NAME, SESSION_COOKIE_SECURE, SESSION_TTL_SECONDS
from oidc_provider.models import LoginSession, User, as_utc
from oidc_provider.security import generate_token, hash_session_token, verify_password

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class CurrentIdentity:
    user_id: int
    # Seconds since the user last entered credentials
    session_age: int
    user_is_valid: bool
    user_lvl: int


def is_same_origin(request: Request) -> bool:
    """Form posts that act on credentials must come from a page this provider served."""
    origin = request.headers.get("origin")
    if origin:
        return origin.rstrip("/") == ISSUER
    referer = request.headers.get("referer")
    if referer:
        return referer == ISSUER or referer.startswith(ISSUER + "/")
    return False


def authenticate_user(db: Session, username: str | None, password: str | None) -> User | None:
    if not username or not password:
        return None
    user = db.execute(select(User).where(User.username == username)).scalar_one_or_none()
    if user is None or not verify_password(password, user.password_hash):
        return None
    return user


def create_session(db: Session, response: Response, user_id: int) -> None:
    """Persist a new login session and set its cookie on `response`."""
    now = datetime.now(timezone.utc)
    token = generate_token()
    db.add(
        LoginSession(
            token_hash=hash_session_token(token),
            user_id=user_id,
            created_at=now,
            expires_at=now + timedelta(seconds=SESSION_TTL_SECONDS),
        )
    )
    db.commit()
    response.set_cookie(
        SESSION_COOKIE_NAME,
        token,
        max_age=SESSION_TTL_SECONDS,
        httponly=True,
        samesite="lax",
        secure=SESSION_COOKIE_SECURE,
    )


def resolve_identity(request: Request, db: Session) -> CurrentIdentity | None:
    """Logged-in user of this request, or None (no cookie, unknown or expired session)."""
    token = request.cookies.get(SESSION_COOKIE_NAME)
    if not token:
        return None
    now = datetime.now(timezone.utc)
    row = db.execute(
        select(LoginSession, User)
        .join(User, User.id == LoginSession.user_id)
        .where(LoginSession.token_hash == hash_session_token(token), LoginSession.expires_at > now)
    ).first()
    if row is None:
        return None
    session, user = row
    age = int((now - as_utc(session.created_at)).total_seconds())
    return CurrentIdentity(
        user_id=user.id,
        session_age=max(age, 0),
        user_is_valid=user.is_valid_for_oidc,
        user_lvl=user.user_lvl,
    )


def drop_session(request: Request, db: Session, response: Response) -> None:
    token = request.cookies.get(SESSION_COOKIE_NAME)
    if token:
        db.execute(
            delete(LoginSession)
            .where(LoginSession.token_hash == hash_session_token(token))
            .execution_options(synchronize_session=False)
        )
        db.commit()
    response.delete_cookie(SESSION_COOKIE_NAME)
