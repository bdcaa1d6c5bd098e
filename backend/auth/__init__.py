"""
Auth — Supabase session token validation for API routes.

Access tokens are verified against the project's JWKS endpoint; projects
still on the legacy shared secret fall back to HS256 via
``SUPABASE_JWT_SECRET``.  Nothing here talks to the database: membership and
role checks live in ``usage.validate_organization_access``.

Provides ``get_current_user`` / ``require_auth`` FastAPI dependencies.
"""

import os
import logging
import jwt
from jwt import PyJWKClient
from typing import Optional

from fastapi import HTTPException, Depends
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials
from pydantic import BaseModel

from config import SUPABASE_URL

logger = logging.getLogger(__name__)

AUDIENCE = "authenticated"

_jwks_client: Optional[PyJWKClient] = None
_legacy_secret = os.getenv("SUPABASE_JWT_SECRET", "")

security = HTTPBearer(auto_error=False)


def _get_jwks_client() -> PyJWKClient:
    """Lazy-init the JWKS client (caches keys for 10 min)."""
    global _jwks_client
    if _jwks_client is None:
        _jwks_client = PyJWKClient(
            f"{SUPABASE_URL}/auth/v1/.well-known/jwks.json",
            cache_jwk_set=True,
            lifespan=600,
        )
    return _jwks_client


class AuthUser(BaseModel):
    """Authenticated user extracted from a Supabase access token."""
    id: str
    email: Optional[str] = None
    role: Optional[str] = None


def _decode_with_jwks(token: str) -> Optional[dict]:
    if not SUPABASE_URL:
        return None
    try:
        signing_key = _get_jwks_client().get_signing_key_from_jwt(token)
        return jwt.decode(
            token,
            signing_key.key,
            algorithms=["RS256", "ES256"],
            audience=AUDIENCE,
            options={"verify_exp": True},
        )
    except (jwt.exceptions.PyJWKClientError, jwt.InvalidTokenError) as e:
        logger.debug("JWKS verification failed (%s), trying HS256 fallback", e)
        return None


def _decode_with_secret(token: str) -> Optional[dict]:
    if not _legacy_secret:
        return None
    try:
        return jwt.decode(
            token,
            _legacy_secret,
            algorithms=["HS256"],
            audience=AUDIENCE,
            options={"verify_exp": True},
        )
    except jwt.InvalidTokenError:
        return None


def decode_token(token: str) -> Optional[dict]:
    """Decode and validate an access token, or return None."""
    return _decode_with_jwks(token) or _decode_with_secret(token)


async def get_current_user(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(security),
) -> Optional[AuthUser]:
    """Return the caller, or ``None`` for anonymous requests."""
    if not credentials:
        return None

    payload = decode_token(credentials.credentials)
    if not payload or not payload.get("sub"):
        return None

    return AuthUser(
        id=payload["sub"],
        email=payload.get("email"),
        role=payload.get("role"),
    )


async def require_auth(
    user: Optional[AuthUser] = Depends(get_current_user),
) -> AuthUser:
    """Dependency that enforces authentication (401 otherwise)."""
    if not user:
        raise HTTPException(
            status_code=401,
            detail="Unauthorized",
            headers={"WWW-Authenticate": "Bearer"},
        )
    return user
