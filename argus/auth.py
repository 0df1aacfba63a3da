"""
Argus Escrow — Authentication
Sources present a JWT bearer token; internal callers (bounty service,
operators) present the shared X-Internal-Key.

Components:
  - JWT access token creation / decoding via python-jose
  - get_current_source: FastAPI Dependency returning the source id
  - require_internal_key: FastAPI Dependency for service-to-service routes
"""
import hmac
import logging
from datetime import datetime, timedelta, timezone
from typing import Optional
from uuid import UUID

from fastapi import Depends, Header, HTTPException, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from jose import JWTError, jwt

from argus.config import get_settings

logger = logging.getLogger("argus.auth")


# ═══════════════════════════════════════════════════════
#  JWT Token Creation (python-jose)
# ═══════════════════════════════════════════════════════


def create_access_token(
    source_id: str,
    role: str = "source",
    expires_delta: Optional[timedelta] = None,
) -> str:
    """Create a signed JWT access token for a source."""
    settings = get_settings()
    now = datetime.now(timezone.utc)
    expire = now + (
        expires_delta or timedelta(minutes=settings.ACCESS_TOKEN_EXPIRE_MINUTES)
    )
    payload = {
        "sub": str(source_id),
        "role": role,
        "type": "access",
        "exp": expire,
        "iat": now,
    }
    return jwt.encode(
        payload,
        settings.JWT_SECRET_KEY,
        algorithm=settings.JWT_ALGORITHM,
    )


def decode_access_token(token: str) -> dict:
    """Decode and validate an access token."""
    settings = get_settings()
    return jwt.decode(
        token,
        settings.JWT_SECRET_KEY,
        algorithms=[settings.JWT_ALGORITHM],
    )


# ═══════════════════════════════════════════════════════
#  get_current_source — FastAPI Dependency
# ═══════════════════════════════════════════════════════

bearer_scheme = HTTPBearer(auto_error=False)


async def get_current_source(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(bearer_scheme),
) -> UUID:
    """
    Validate the Bearer JWT access token and return the source id.

    Raises HTTP 401 if the token is missing, invalid or expired.
    """
    credentials_exception = HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail="Could not validate credentials",
        headers={"WWW-Authenticate": "Bearer"},
    )
    if credentials is None:
        raise credentials_exception

    try:
        payload = decode_access_token(credentials.credentials)
        source_id = payload.get("sub")
        if source_id is None or payload.get("type") != "access":
            raise credentials_exception
        return UUID(source_id)
    except (JWTError, ValueError):
        raise credentials_exception


# ═══════════════════════════════════════════════════════
#  require_internal_key — service-to-service guard
# ═══════════════════════════════════════════════════════


async def require_internal_key(
    x_internal_key: Optional[str] = Header(default=None, alias="X-Internal-Key"),
) -> None:
    """Reject the request unless X-Internal-Key matches INTERNAL_API_KEY."""
    expected = get_settings().INTERNAL_API_KEY
    if not expected or not x_internal_key or not hmac.compare_digest(x_internal_key, expected):
        logger.warning("Rejected internal call with missing or invalid X-Internal-Key")
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Unauthorized",
        )
