"""JWT authentication - validates bearer tokens and resolves the portal identity.

Tokens are issued by the external OIDC provider configured in settings.
The token only says who the caller is (the `sub` claim). Clearance,
department memberships and rank always come from the portal database,
since clearance is changed by portal administrators and must take effect
without waiting for a new token.

Shared helpers (decode_token, resolve_identity) are used by BOTH:
  - get_current_identity()  → FastAPI dependency for protected endpoints
  - /api/auth/me            → Profile endpoint in main.py
"""
import logging
import time
from typing import Optional
from fastapi import Depends, HTTPException, status
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials
from jose import jwt, JWTError, jwk
import httpx
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from ouroboros.access import Identity
from ouroboros.clearance import level_of
from ouroboros.config import settings
from ouroboros.database import get_db
from ouroboros.models import User
from ouroboros.store import identity_from_user

logger = logging.getLogger(__name__)

security_scheme = HTTPBearer()

# ─── JWKS Cache ────────────────────────────────────────────────────────────
_jwks_cache: dict = {}
_jwks_cache_time: float = 0
JWKS_CACHE_TTL = 300  # 5 minutes


async def get_jwks() -> dict:
    """Fetch and cache JWKS from the identity provider."""
    global _jwks_cache, _jwks_cache_time
    now = time.time()
    if _jwks_cache and (now - _jwks_cache_time) < JWKS_CACHE_TTL:
        return _jwks_cache

    async with httpx.AsyncClient() as client:
        try:
            resp = await client.get(settings.jwks_url, timeout=10)
            resp.raise_for_status()
            _jwks_cache = resp.json()
            _jwks_cache_time = now
        except httpx.HTTPError as e:
            if _jwks_cache:
                logger.warning("JWKS refresh failed, using stale keys: %s", e)
                return _jwks_cache
            raise HTTPException(
                status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
                detail=f"Cannot reach identity provider JWKS endpoint: {e}"
            )
    return _jwks_cache


def find_key(jwks: dict, kid: str) -> Optional[dict]:
    """Find a key in JWKS by kid."""
    for key in jwks.get("keys", []):
        if key.get("kid") == kid:
            return key
    return None


async def decode_token(token: str) -> dict:
    """
    Validate a JWT against the provider's JWKS and return the decoded payload.

    Raises JWTError or HTTPException on failure.
    """
    unverified_header = jwt.get_unverified_header(token)
    kid = unverified_header.get("kid")
    if not kid:
        raise HTTPException(status_code=401, detail="Token missing key ID")

    jwks = await get_jwks()
    key_data = find_key(jwks, kid)
    if not key_data:
        # Force refresh JWKS cache (key rotation scenario)
        global _jwks_cache_time
        _jwks_cache_time = 0
        jwks = await get_jwks()
        key_data = find_key(jwks, kid)
        if not key_data:
            raise HTTPException(status_code=401, detail="Unknown signing key")

    public_key = jwk.construct(key_data)
    return jwt.decode(
        token,
        public_key,
        algorithms=["RS256"],
        issuer=settings.AUTH_ISSUER_URL,
        options={"verify_aud": False},
    )


async def resolve_identity(db: AsyncSession, payload: dict) -> Optional[Identity]:
    """Map the token subject to an active portal user."""
    subject = payload.get("sub")
    if not subject:
        return None
    result = await db.execute(select(User).where(User.subject == subject))
    user = result.scalar_one_or_none()
    if user is None or not user.is_active:
        return None
    return identity_from_user(user)


async def get_current_identity(
    credentials: HTTPAuthorizationCredentials = Depends(security_scheme),
    db: AsyncSession = Depends(get_db),
) -> Identity:
    """Validate JWT and load the caller's identity (FastAPI dependency)."""
    try:
        payload = await decode_token(credentials.credentials)
    except JWTError as e:
        logger.warning("JWT validation failed: %s", e)
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail=f"Invalid token: {e}",
            headers={"WWW-Authenticate": "Bearer"},
        )

    identity = await resolve_identity(db, payload)
    if identity is None:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="No active portal account for this token",
            headers={"WWW-Authenticate": "Bearer"},
        )
    return identity


# ─── Clearance-based dependency helpers ───────────────────────────────────

def require_clearance(level: int):
    """Dependency that requires the caller to hold at least the given clearance."""
    async def checker(identity: Identity = Depends(get_current_identity)):
        if level_of(identity) < level:
            raise HTTPException(
                status_code=status.HTTP_403_FORBIDDEN,
                detail=f"Clearance Level {level}+ required",
            )
        return identity
    return checker
