"""
Hashing and token helpers: bcrypt passwords/client secrets, opaque tokens, PKCE,
pairwise subject identifiers and the at_hash/c_hash binding for ID tokens.
"""
import hashlib
import hmac
import logging
import secrets
from base64 import urlsafe_b64encode
from pathlib import Path

import bcrypt

from oidc_provider import config

logger = logging.getLogger(__name__)

PKCE_METHODS = ("plain", "S256")


def _b64url(raw: bytes) -> str:
    return urlsafe_b64encode(raw).rstrip(b"=").decode("ascii")


def hash_password(password: str) -> str:
    # Bcrypt has a 72-byte limit
    raw = password.encode("utf-8")
    if len(raw) > 72:
        raw = raw[:72]
    return bcrypt.hashpw(raw, bcrypt.gensalt()).decode("utf-8")


def verify_password(plain: str, hashed: str | None) -> bool:
    if not plain or not hashed:
        return False
    raw = plain.encode("utf-8")[:72]
    try:
        return bcrypt.checkpw(raw, hashed.encode("utf-8"))
    except ValueError:
        # malformed stored hash
        return False


def generate_token() -> str:
    """Client secrets and session cookies (240 bits)."""
    return secrets.token_urlsafe(30)


def generate_large_token() -> str:
    """Authorization codes, access and refresh tokens (480 bits)."""
    return secrets.token_urlsafe(60)


def hash_session_token(token: str) -> str:
    return hashlib.sha224(token.encode("utf-8")).hexdigest()


def verify_pkce(verifier: str | None, challenge: str | None, method: str | None = "plain") -> bool:
    """
    RFC 7636: plain -> verifier == challenge; S256 -> BASE64URL(SHA256(verifier)) == challenge.
    Comparison is constant-time.
    """
    if not verifier or not challenge:
        return False
    if method in (None, "", "plain"):
        computed = verifier
    elif method == "S256":
        computed = _b64url(hashlib.sha256(verifier.encode("ascii", errors="replace")).digest())
    else:
        return False
    return hmac.compare_digest(computed.encode("utf-8"), challenge.encode("utf-8"))


def token_hash_claim(value: str) -> str:
    """at_hash / c_hash: base64url of the left half of SHA-256 (RS256) of the ASCII value."""
    digest = hashlib.sha256(value.encode("ascii")).digest()
    return _b64url(digest[: len(digest) // 2])


_server_secret: str | None = None


def load_or_create_server_secret(path: str | None = None) -> str:
    """Secret from env, else read from path, else generate and persist it."""
    if config.SERVER_SECRET:
        return config.SERVER_SECRET
    p = Path(path or config.SERVER_SECRET_PATH)
    if p.exists():
        try:
            value = p.read_text(encoding="utf-8").strip()
            if value:
                return value
        except OSError as e:
            logger.warning("Failed to read server secret from %s: %s; generating new secret", p, e)
    value = secrets.token_urlsafe(48)
    try:
        p.write_text(value, encoding="utf-8")
        logger.info("Generated and saved server secret to %s", p)
    except OSError as e:
        logger.warning("Could not save server secret to %s: %s", p, e)
    return value


def get_server_secret() -> str:
    global _server_secret
    if _server_secret is None:
        _server_secret = load_or_create_server_secret()
    return _server_secret


def pairwise_subject(client_external_id: str, user_id: int | str) -> str:
    """
    Pairwise pseudonymous identifier: stable per (client, user), unlinkable across clients
    and never the raw user id.
    """
    material = f"{client_external_id}:{user_id}:{get_server_secret()}"
    return _b64url(hashlib.sha256(material.encode("utf-8")).digest())
