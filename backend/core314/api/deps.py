"""
Core314 Automation Engine - API Dependencies
=============================================

Bearer-token authentication and shared services for FastAPI endpoints.

Two token kinds are accepted:

- access: issued to a user; grants every scope
- delegation: short-lived token a backend service obtains to act for one
  user, limited to the scopes it names (``act`` records the service)
"""

import secrets
from collections.abc import AsyncGenerator
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Annotated, Callable, Optional
from uuid import UUID

from fastapi import Depends
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from jose import JWTError, jwt
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from core314.core.automation.notifications import NotificationService
from core314.core.config import settings
from core314.core.database import get_db
from core314.core.exceptions import AuthenticationError
from core314.core.models import User


# ==========================================================================
# Security
# ==========================================================================

security = HTTPBearer(auto_error=False)

SCOPE_ORCHESTRATOR_TRIGGER = "orchestrator:trigger"
SCOPE_EXECUTOR_EXECUTE = "executor:execute"
SCOPE_ESCALATIONS_TRIGGER = "escalations:trigger"
SCOPE_FLOWS_MANAGE = "flows:manage"
SCOPE_QUEUE_MANAGE = "queue:manage"
SCOPE_ESCALATIONS_MANAGE = "escalations:manage"


# ==========================================================================
# Token Utilities
# ==========================================================================

def create_access_token(
    user_id: UUID,
    expires_delta: Optional[timedelta] = None,
) -> str:
    """
    Create a new access token.

    Args:
        user_id: User's UUID
        expires_delta: Optional custom expiration time

    Returns:
        Encoded JWT token
    """
    if expires_delta is None:
        expires_delta = timedelta(minutes=settings.ACCESS_TOKEN_EXPIRE_MINUTES)

    now = datetime.now(timezone.utc)
    payload = {
        "sub": str(user_id),
        "exp": now + expires_delta,
        "iat": now,
        "type": "access",
        "jti": secrets.token_hex(16),
    }
    return jwt.encode(payload, settings.SECRET_KEY, algorithm=settings.ALGORITHM)


def create_delegation_token(
    user_id: UUID,
    service: str,
    scopes: list[str],
    expires_delta: Optional[timedelta] = None,
) -> str:
    """
    Create a scoped token letting ``service`` act for ``user_id``.

    Args:
        user_id: User the service acts for
        service: Name of the calling backend service
        scopes: Operations the token allows
        expires_delta: Optional custom expiration time

    Returns:
        Encoded JWT token
    """
    if expires_delta is None:
        expires_delta = timedelta(minutes=settings.DELEGATION_TOKEN_EXPIRE_MINUTES)

    now = datetime.now(timezone.utc)
    payload = {
        "sub": str(user_id),
        "exp": now + expires_delta,
        "iat": now,
        "type": "delegation",
        "act": service,
        "scope": list(scopes),
        "jti": secrets.token_hex(16),
    }
    return jwt.encode(payload, settings.SECRET_KEY, algorithm=settings.ALGORITHM)


def decode_token(token: str) -> dict:
    """
    Decode and validate a JWT token.

    Raises:
        AuthenticationError: If token is invalid or expired
    """
    try:
        return jwt.decode(token, settings.SECRET_KEY, algorithms=[settings.ALGORITHM])
    except JWTError as e:
        raise AuthenticationError("Invalid or expired token") from e


# ==========================================================================
# Principal
# ==========================================================================

@dataclass
class Principal:
    """Authenticated caller: a user, possibly represented by a service."""
    user: User
    token_type: str
    scopes: Optional[frozenset[str]] = None  # None: unrestricted
    actor: Optional[str] = None

    @property
    def user_id(self) -> UUID:
        return self.user.id

    def allows(self, scope: str) -> bool:
        return self.scopes is None or scope in self.scopes


async def get_principal(
    credentials: Annotated[Optional[HTTPAuthorizationCredentials], Depends(security)],
    db: Annotated[AsyncSession, Depends(get_db)],
) -> Principal:
    """
    Resolve the bearer token to an active user.

    Raises:
        AuthenticationError: missing, invalid, expired or malformed token,
            or unknown / deactivated user
    """
    if credentials is None:
        raise AuthenticationError("Not authenticated")

    payload = decode_token(credentials.credentials)

    token_type = payload.get("type")
    if token_type not in ("access", "delegation"):
        raise AuthenticationError("Invalid token type")

    try:
        user_id = UUID(str(payload.get("sub")))
    except ValueError as e:
        raise AuthenticationError("Invalid user ID in token") from e

    scopes = None
    actor = None
    if token_type == "delegation":
        raw_scopes = payload.get("scope")
        actor = payload.get("act")
        if not isinstance(raw_scopes, list) or not actor:
            raise AuthenticationError("Invalid delegation token")
        scopes = frozenset(str(s) for s in raw_scopes)

    user = (await db.execute(select(User).where(User.id == user_id))).scalar_one_or_none()
    if user is None:
        raise AuthenticationError("User not found")
    if not user.is_active:
        raise AuthenticationError("User account is deactivated")

    return Principal(user=user, token_type=token_type, scopes=scopes, actor=actor)


def require_scope(scope: str) -> Callable:
    """Dependency factory: the caller must be allowed ``scope``."""

    async def dependency(principal: Annotated[Principal, Depends(get_principal)]) -> Principal:
        if not principal.allows(scope):
            raise AuthenticationError(f"Token does not grant {scope}")
        return principal

    return dependency


# ==========================================================================
# Services
# ==========================================================================

async def get_notification_service() -> AsyncGenerator[NotificationService, None]:
    """Outbound HTTP for one request; overridden in tests with a mock transport."""
    service = NotificationService()
    try:
        yield service
    finally:
        await service.aclose()


# ==========================================================================
# Type Aliases for Dependency Injection
# ==========================================================================

DbSession = Annotated[AsyncSession, Depends(get_db)]
Notifier = Annotated[NotificationService, Depends(get_notification_service)]
