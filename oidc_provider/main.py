"""
OpenID Connect Provider.
Authorization code flow with PKCE, consent, rotating refresh tokens, userinfo, JWKS and discovery.
"""
import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI
from sqlalchemy.exc import SQLAlchemyError

from oidc_provider.account import router as account_router
from oidc_provider.authorize import router as authorize_router
from oidc_provider.database import SessionLocal, init_db
from oidc_provider.errors import OIDCError, oidc_error_handler, store_error_handler
from oidc_provider.keys import get_key_provider
from oidc_provider.login import router as login_router
from oidc_provider.register import router as register_router
from oidc_provider.seed import seed_from_env
from oidc_provider.token_endpoint import router as token_router
from oidc_provider.tokens import purge_expired
from oidc_provider.userinfo import router as userinfo_router
from oidc_provider.well_known import router as well_known_router

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Create tables, load signing keys, purge expired artifacts, seed user/client from env."""
    init_db()
    get_key_provider().current()
    db = SessionLocal()
    try:
        purge_expired(db)
        seed_from_env(db)
    finally:
        db.close()
    yield


app = FastAPI(title="OIDC Provider", version="1.0.0", lifespan=lifespan)
app.add_exception_handler(OIDCError, oidc_error_handler)
app.add_exception_handler(SQLAlchemyError, store_error_handler)
app.include_router(login_router, tags=["login"])
app.include_router(authorize_router, tags=["authorize"])
app.include_router(token_router, tags=["token"])
app.include_router(userinfo_router, tags=["userinfo"])
app.include_router(account_router, tags=["account"])
app.include_router(register_router, tags=["register"])
app.include_router(well_known_router, tags=["well-known"])


@app.get("/health")
def health():
    """Health check endpoint."""
    return {"status": "ok", "service": "oidc_provider"}


if __name__ == "__main__":
    import uvicorn

    logging.basicConfig(level=logging.INFO)
    uvicorn.run(
        "oidc_provider.main:app",
        host="127.0.0.1",
        port=9000,
        reload=True,
    )
