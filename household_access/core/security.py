"""
Bearer-credential helpers.

- `CredentialIssuer` is the seam the engine talks to: subject + claims
  + ttl in, opaque credential out.  The engine never decodes tokens.
- `JoseCredentialIssuer` is the default implementation (HS256 JWTs via
  python-jose, same signing config as the rest of the platform).
- `get_current_user_token` is the request-layer dependency that turns
  an `Authorization: Bearer` header into a claims dict.
"""

from datetime import datetime, timedelta, timezone
from typing import Any, Protocol

from fastapi import Depends, HTTPException, status
from fastapi.security import OAuth2PasswordBearer
from jose import JWTError, jwt

from household_access.core.config import settings


class CredentialIssuer(Protocol):
    def issue(self, subject: str, claims: dict[str, Any], ttl: timedelta) -> str: ...


class JoseCredentialIssuer:
    """Signs short JWTs with the platform secret."""

    def __init__(self, secret_key: str | None = None, algorithm: str | None = None):
        self.secret_key = secret_key or settings.SECRET_KEY
        self.algorithm = algorithm or settings.JWT_ALGORITHM

    def issue(self, subject: str, claims: dict[str, Any], ttl: timedelta) -> str:
        to_encode = dict(claims)
        to_encode.update(
            {
                "sub": subject,
                "user_id": subject,  # backward compat with older clients
                "exp": datetime.now(timezone.utc) + ttl,
            }
        )
        return jwt.encode(to_encode, self.secret_key, algorithm=self.algorithm)


def default_token_ttl() -> timedelta:
    return timedelta(minutes=settings.ACCESS_TOKEN_EXPIRE_MINUTES)


def impersonation_token_ttl() -> timedelta:
    """A quarter of the default lifetime unless configured otherwise."""
    return default_token_ttl() / max(settings.IMPERSONATION_TOKEN_TTL_DIVISOR, 1)


# ── Request-layer decoding ───────────────────────────────────────────
oauth2_scheme = OAuth2PasswordBearer(tokenUrl="/api/auth/login")


def decode_access_token(token: str) -> dict[str, Any]:
    """Decode & validate a JWT.  Raises HTTPException on failure."""
    try:
        return jwt.decode(token, settings.SECRET_KEY, algorithms=[settings.JWT_ALGORITHM])
    except JWTError:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid or expired token",
            headers={"WWW-Authenticate": "Bearer"},
        )


async def get_current_user_token(token: str = Depends(oauth2_scheme)) -> dict[str, Any]:
    """FastAPI dependency: returns the verified claims of the caller."""
    payload = decode_access_token(token)
    if not (payload.get("sub") or payload.get("user_id")):
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid token payload",
            headers={"WWW-Authenticate": "Bearer"},
        )
    return payload
