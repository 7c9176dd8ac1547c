"""
Well-known endpoints: JWKS and OpenID Connect discovery. Both public, CORS-open and cacheable.
"""
from fastapi import APIRouter, Depends
from fastapi.responses import JSONResponse

from oidc_provider.claims import CLAIM_NAMES
from oidc_provider.config import ISSUER, WELL_KNOWN_MAX_AGE
from oidc_provider.keys import SIGNING_ALG, SigningKeyProvider, get_key_provider
from oidc_provider.scopes import SUPPORTED_SCOPES
from oidc_provider.security import PKCE_METHODS

router = APIRouter()

CACHE_HEADERS = {
    "Cache-Control": f"public, max-age={WELL_KNOWN_MAX_AGE}",
    "Access-Control-Allow-Origin": "*",
}


def discovery_document() -> dict:
    claims = {"iss", "aud", "exp", "iat", "auth_time", "nonce", "at_hash"}
    for names in CLAIM_NAMES.values():
        claims.update(names)
    return {
        "issuer": ISSUER,
        "authorization_endpoint": f"{ISSUER}/oidc/auth",
        "token_endpoint": f"{ISSUER}/oidc/token",
        "userinfo_endpoint": f"{ISSUER}/oidc/userinfo",
        "jwks_uri": f"{ISSUER}/.well-known/jwks.json",
        "registration_endpoint": f"{ISSUER}/oidc/register",
        "response_types_supported": ["code"],
        "grant_types_supported": ["authorization_code", "refresh_token"],
        "scopes_supported": list(SUPPORTED_SCOPES),
        "subject_types_supported": ["pairwise"],
        "id_token_signing_alg_values_supported": [SIGNING_ALG],
        "token_endpoint_auth_methods_supported": ["client_secret_basic", "client_secret_post"],
        "code_challenge_methods_supported": list(PKCE_METHODS),
        "claims_supported": sorted(claims),
    }


@router.get("/.well-known/jwks.json")
def jwks_json(keys: SigningKeyProvider = Depends(get_key_provider)):
    """JSON Web Key Set for ID token signature verification."""
    return JSONResponse({"keys": keys.public_key_set()}, headers=CACHE_HEADERS)


@router.get("/.well-known/openid-configuration")
def openid_configuration():
    """OpenID Connect discovery document."""
    return JSONResponse(discovery_document(), headers=CACHE_HEADERS)
