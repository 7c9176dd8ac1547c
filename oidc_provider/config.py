"""
OpenID Connect Provider configuration.
No secrets in this file; credentials and key material come from env or from files generated at first start.
"""
import os

# Issuer URL (public identifier, also the base of every advertised endpoint)
ISSUER = os.environ.get("OIDC_ISSUER", "http://127.0.0.1:9000").rstrip("/")

# Any SQLAlchemy URL; SQLite for development
DATABASE_URL = os.environ.get("OIDC_DATABASE_URL", "sqlite:///./oidc_provider.db")

# Upper bound for waiting on the store (lock wait / pool checkout), in seconds
STORE_TIMEOUT_SECONDS = float(os.environ.get("OIDC_STORE_TIMEOUT_SECONDS", "5"))

# Authorization code lifetime (seconds). OIDC recommends at least 10 minutes.
CODE_TTL_SECONDS = 12 * 60

# Access token lifetime (seconds)
ACCESS_TOKEN_EXPIRES = 3600

# Refresh token lifetime (seconds); rotated on every use
REFRESH_TOKEN_EXPIRES = 90 * 24 * 3600

# ID token lifetime (seconds), same as the access token it is issued with
ID_TOKEN_EXPIRES = ACCESS_TOKEN_EXPIRES

# JSON file holding the signing keypairs (newest first). Generated if missing, watched for external changes.
SIGNING_KEY_PATH = os.environ.get("OIDC_SIGNING_KEY_PATH", ".oidc_signing_keys.json")

# Secret mixed into pairwise subject identifiers. Env wins; otherwise loaded from / generated into SERVER_SECRET_PATH.
SERVER_SECRET = os.environ.get("OIDC_SERVER_SECRET", "").strip() or None
SERVER_SECRET_PATH = os.environ.get("OIDC_SERVER_SECRET_PATH", ".oidc_server_secret")

# First-party login session (the identity the provider acts on behalf of)
SESSION_COOKIE_NAME = os.environ.get("OIDC_SESSION_COOKIE", "oidc_session")
SESSION_TTL_SECONDS = int(os.environ.get("OIDC_SESSION_TTL_SECONDS", str(30 * 24 * 3600)))
SESSION_COOKIE_SECURE = ISSUER.startswith("https://")

# Client registry limits
MAX_CLIENTS_PER_OWNER = 5
MAX_REDIRECT_URIS = 5
MAX_REDIRECT_URIS_LENGTH = 255
MAX_CLIENT_NAME_LENGTH = 255
MAX_NONCE_LENGTH = 255

# Consent durations offered on the consent page (hours); "forever" = no expiry
CONSENT_DURATION_HOURS = (1, 24, 168, 720)
DEFAULT_CONSENT_DURATION_HOURS = 1

# Cache lifetime for discovery document and JWKS
WELL_KNOWN_MAX_AGE = 24 * 3600
