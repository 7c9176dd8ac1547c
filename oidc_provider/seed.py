"""
Seed a user and a first-party client from environment. No hardcoded credentials.
Optional: OIDC_SEED_USER + OIDC_SEED_PASSWORD; OIDC_SEED_CLIENT_NAME + OIDC_SEED_CLIENT_SECRET +
OIDC_SEED_REDIRECT_URIS (comma-separated), OIDC_SEED_CLIENT_AUTO_GRANT=1 to skip the consent page.
The seeded client's client_id is logged at startup.
"""
import json
import logging
import os
import uuid

from sqlalchemy import select
from sqlalchemy.orm import Session

from oidc_provider.models import Client, User, UserLevel
from oidc_provider.scopes import SUPPORTED_SCOPES
from oidc_provider.security import hash_password

logger = logging.getLogger(__name__)


def seed_from_env(db: Session) -> None:
    """Create one user and/or one client from env if set."""
    seed_user = os.environ.get("OIDC_SEED_USER")
    seed_password = os.environ.get("OIDC_SEED_PASSWORD")
    user = None
    if seed_user and seed_password:
        user = db.execute(select(User).where(User.username == seed_user)).scalar_one_or_none()
        if user is None:
            user = User(
                username=seed_user,
                name=seed_user,
                password_hash=hash_password(seed_password),
                user_lvl=UserLevel.ADMIN,
            )
            db.add(user)
            db.commit()
            logger.info("Seeded user: %s", seed_user)
        else:
            logger.debug("User already exists: %s", seed_user)

    name = os.environ.get("OIDC_SEED_CLIENT_NAME")
    secret = os.environ.get("OIDC_SEED_CLIENT_SECRET")
    uris = [u.strip() for u in os.environ.get("OIDC_SEED_REDIRECT_URIS", "").split(",") if u.strip()]
    if not (name and secret and uris):
        return
    if user is None:
        logger.warning("Seed client %s needs OIDC_SEED_USER as its owner; skipped", name)
        return
    existing = db.execute(select(Client).where(Client.name == name)).scalar_one_or_none()
    if existing is not None:
        logger.info("Seed client %s exists, client_id=%s", name, existing.external_id)
        return
    auto_grant = os.environ.get("OIDC_SEED_CLIENT_AUTO_GRANT", "").lower() in ("1", "true", "yes")
    client = Client(
        external_id=str(uuid.uuid4()),
        owner_id=user.id,
        name=name,
        secret_hash=hash_password(secret),
        redirect_uris=json.dumps(uris),
        scope=" ".join(sorted(SUPPORTED_SCOPES)),
        default_scope="openid profile",
        auto_grant=auto_grant,
    )
    db.add(client)
    db.commit()
    logger.info("Seeded client %s, client_id=%s (auto_grant=%s)", name, client.external_id, auto_grant)
