"""
Client registry: registered Relying Parties, their redirect URIs, allowed scope and grant policy.
Clients are created and managed by their owner; everything an owner does not own is "not found".
"""
import json
import logging
import uuid
from dataclasses import dataclass
from datetime import datetime, timezone

from sqlalchemy import delete, func, select, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from oidc_provider.config import (
    MAX_CLIENT_NAME_LENGTH,
    MAX_CLIENTS_PER_OWNER,
    MAX_REDIRECT_URIS,
    MAX_REDIRECT_URIS_LENGTH,
)
from oidc_provider.models import AccessToken, AuthorizationCode, Client, Consent, RefreshToken
from oidc_provider.scopes import SUPPORTED_SCOPES, ScopeSet
from oidc_provider.security import generate_token, hash_password, verify_password

logger = logging.getLogger(__name__)


class ClientRegistrationError(ValueError):
    """Registration rejected; the message is shown to the registering owner."""


@dataclass(frozen=True)
class RegisteredClient:
    external_id: str
    # Plain secret, only set when it was (re)generated by this call
    secret: str | None


def _validate_redirect_uris(redirect_uris: list[str]) -> list[str]:
    uris = [u.strip() for u in redirect_uris if u and u.strip()]
    if not uris:
        raise ClientRegistrationError("No redirect_uris given")
    if len(uris) > MAX_REDIRECT_URIS:
        raise ClientRegistrationError(f"Only {MAX_REDIRECT_URIS} redirect_uris are allowed per client")
    if len(" ".join(uris)) >= MAX_REDIRECT_URIS_LENGTH:
        raise ClientRegistrationError("Too many or too long redirect_uris")
    if any(not u.startswith(("https://", "http://")) for u in uris):
        raise ClientRegistrationError("redirect_uris must start with http:// or https://")
    # keep order, drop duplicates
    return list(dict.fromkeys(uris))


def _validate_scope(scope: list[str], default_scope: list[str] | None) -> tuple[ScopeSet, ScopeSet | None]:
    allowed = ScopeSet.parse([s for s in scope if s in SUPPORTED_SCOPES])
    if not allowed:
        raise ClientRegistrationError("You need to define a valid scope")
    default = None
    if default_scope:
        default = ScopeSet.parse(default_scope).intersection(allowed) or None
    return allowed, default


def _name_taken(db: Session, name: str, exclude_id: int | None = None) -> bool:
    q = select(Client.id).where(Client.name == name)
    if exclude_id is not None:
        q = q.where(Client.id != exclude_id)
    return db.execute(q).first() is not None


def register(
    db: Session,
    owner_id: int,
    name: str,
    scope: list[str],
    redirect_uris: list[str],
    default_scope: list[str] | None = None,
    existing_external_id: str | None = None,
    reroll_secret: bool = False,
    image: str | None = None,
) -> RegisteredClient:
    """
    Create a client, or update the caller's client `existing_external_id`.
    Raises ClientRegistrationError on invalid input, name collision, limits or foreign client ids.
    """
    if not owner_id:
        raise ClientRegistrationError("You are not logged in")
    name = (name or "").strip()
    if not name:
        raise ClientRegistrationError("You have to fill out all fields")
    if len(name) > MAX_CLIENT_NAME_LENGTH:
        raise ClientRegistrationError("Name is too long")
    uris = _validate_redirect_uris(redirect_uris)
    allowed, default = _validate_scope(scope, default_scope)

    if existing_external_id:
        client = db.execute(
            select(Client).where(Client.external_id == existing_external_id, Client.owner_id == owner_id)
        ).scalar_one_or_none()
        if client is None:
            raise ClientRegistrationError("No such client exists or you do not have access to it")
        if client.name != name and _name_taken(db, name, exclude_id=client.id):
            raise ClientRegistrationError("This name is already taken")
        secret = generate_token() if reroll_secret else None
        client.name = name
        client.image = image
        client.redirect_uris = json.dumps(uris)
        client.scope = str(allowed)
        client.default_scope = str(default) if default else None
        if secret:
            client.secret_hash = hash_password(secret)
        _commit_or_name_taken(db)
        logger.info("Updated client %s (owner=%s, secret rerolled=%s)", client.external_id, owner_id, bool(secret))
        return RegisteredClient(external_id=client.external_id, secret=secret)

    owned = db.execute(select(func.count(Client.id)).where(Client.owner_id == owner_id)).scalar_one()
    if owned >= MAX_CLIENTS_PER_OWNER:
        raise ClientRegistrationError(f"You can only register {MAX_CLIENTS_PER_OWNER} clients max")
    if _name_taken(db, name):
        raise ClientRegistrationError("This name is already taken")

    external_id = str(uuid.uuid4())
    while db.execute(select(Client.id).where(Client.external_id == external_id)).first() is not None:
        external_id = str(uuid.uuid4())
    secret = generate_token()
    db.add(
        Client(
            external_id=external_id,
            owner_id=owner_id,
            name=name,
            secret_hash=hash_password(secret),
            image=image,
            redirect_uris=json.dumps(uris),
            scope=str(allowed),
            default_scope=str(default) if default else None,
            auto_grant=False,
        )
    )
    _commit_or_name_taken(db)
    logger.info("Registered client %s (owner=%s)", external_id, owner_id)
    return RegisteredClient(external_id=external_id, secret=secret)


def _commit_or_name_taken(db: Session) -> None:
    try:
        db.commit()
    except IntegrityError:
        # concurrent registration won the unique name
        db.rollback()
        raise ClientRegistrationError("This name is already taken")


def lookup(db: Session, external_id: str | None) -> Client | None:
    """Client by its public client_id (indexed)."""
    if not external_id:
        return None
    return db.execute(select(Client).where(Client.external_id == external_id)).scalar_one_or_none()


def authenticate(db: Session, external_id: str | None, secret: str | None) -> Client | None:
    """Client if client_id is known and the secret matches, else None."""
    client = lookup(db, external_id)
    if client is None or not secret:
        return None
    if not verify_password(secret, client.secret_hash):
        return None
    return client


def touch(db: Session, internal_id: int) -> None:
    """Bump last_used. Telemetry only: failures are logged and dropped."""
    try:
        db.execute(update(Client).where(Client.id == internal_id).values(last_used=datetime.now(timezone.utc)))
        db.commit()
    except SQLAlchemyError as e:
        db.rollback()
        logger.warning("Could not touch client %s: %s", internal_id, e.__class__.__name__)


def list_for_owner(db: Session, owner_id: int) -> list[Client]:
    return list(db.execute(select(Client).where(Client.owner_id == owner_id).order_by(Client.id)).scalars())


def delete_client(db: Session, owner_id: int, external_id: str | None) -> bool:
    """Owner-scoped hard delete, including every consent and token issued for the client."""
    if not owner_id or not external_id:
        return False
    client = db.execute(
        select(Client).where(Client.external_id == external_id, Client.owner_id == owner_id)
    ).scalar_one_or_none()
    if client is None:
        return False
    consent_ids = select(Consent.id).where(Consent.client_id == client.id)
    for model in (AuthorizationCode, AccessToken, RefreshToken):
        db.execute(
            delete(model).where(model.consent_id.in_(consent_ids)).execution_options(synchronize_session=False)
        )
    db.execute(delete(Consent).where(Consent.client_id == client.id))
    db.delete(client)
    db.commit()
    logger.info("Deleted client %s (owner=%s)", external_id, owner_id)
    return True
