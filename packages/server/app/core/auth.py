"""
Authentication and authorization for the channel API.

Supports:
- Bearer JWTs carrying the caller's user global id (``sub``) and permissions
- Permission checks for privileged channel operations
- Shared-secret authentication for the bounce webhook
"""

from __future__ import annotations

import secrets
import uuid
from datetime import datetime, timedelta, timezone
from typing import Iterable, Optional

import jwt
import structlog
from fastapi import Depends, HTTPException, Request
from fastapi.security import APIKeyHeader

from app.core.config import get_settings

log = structlog.get_logger()
settings = get_settings()

api_key_header = APIKeyHeader(name="Authorization", auto_error=False)
webhook_secret_header = APIKeyHeader(name="X-Bounce-Webhook-Secret", auto_error=False)

# Permissions a token may carry
MANAGE_CHANNELS = "manage_channels"
FORCE_CONFIRM = "force_confirm"
READ_BOUNCE_DETAILS = "read_bounce_details"
RESET_BOUNCE_COUNT = "reset_bounce_count"


# ---------------------------------------------------------------------------
# JWT
# ---------------------------------------------------------------------------

def create_jwt(
    user_id: str,
    permissions: Iterable[str] = (),
    *,
    expires_delta: timedelta | None = None,
) -> tuple[str, str]:
    """Create a signed JWT. Returns (token, jti)."""
    jti = str(uuid.uuid4())
    now = datetime.now(timezone.utc)
    exp = now + (expires_delta or timedelta(minutes=settings.jwt_expire_minutes))
    payload = {
        "sub": user_id,
        "permissions": sorted(set(permissions)),
        "iat": now,
        "exp": exp,
        "jti": jti,
    }
    token = jwt.encode(payload, settings.secret_key, algorithm=settings.jwt_algorithm)
    return token, jti


def decode_jwt(token: str) -> dict:
    """Decode and verify a JWT. Raises jwt.PyJWTError on failure."""
    return jwt.decode(token, settings.secret_key, algorithms=[settings.jwt_algorithm])


# ---------------------------------------------------------------------------
# Authentication dependencies
# ---------------------------------------------------------------------------

class AuthenticatedUser:
    """The caller behind a request: a user global id plus granted permissions."""

    def __init__(self, user_id: str, permissions: Iterable[str] = ()):
        self.user_id = user_id
        self.permissions = frozenset(permissions)

    def has(self, permission: str) -> bool:
        return permission in self.permissions

    def can_manage(self, user_global_id: str) -> bool:
        """Callers manage their own channels; others need ``manage_channels``."""
        return user_global_id == self.user_id or self.has(MANAGE_CHANNELS)

    @property
    def can_force_confirm(self) -> bool:
        return self.has(FORCE_CONFIRM)

    @property
    def can_read_bounce_details(self) -> bool:
        return self.has(READ_BOUNCE_DETAILS)

    @property
    def can_reset_bounce_count(self) -> bool:
        return self.has(RESET_BOUNCE_COUNT)


async def get_authenticated_user(
    request: Request,
    authorization: Optional[str] = Depends(api_key_header),
) -> AuthenticatedUser:
    """Main authentication dependency: a bearer JWT is required."""
    if not authorization or not authorization.startswith("Bearer "):
        raise HTTPException(status_code=401, detail="Authentication required")

    try:
        payload = decode_jwt(authorization[7:].strip())
    except jwt.PyJWTError:
        raise HTTPException(status_code=401, detail="Invalid or expired token")

    user_id = payload.get("sub")
    if not user_id:
        raise HTTPException(status_code=401, detail="Invalid or expired token")

    auth_user = AuthenticatedUser(user_id, payload.get("permissions") or [])
    request.state.auth = auth_user
    structlog.contextvars.bind_contextvars(caller_id=user_id)
    return auth_user


def require_permission(permission: str):
    """Dependency factory: the caller must hold ``permission``."""

    async def _check(
        auth: AuthenticatedUser = Depends(get_authenticated_user),
    ) -> AuthenticatedUser:
        if not auth.has(permission):
            raise HTTPException(status_code=403, detail=f"Permission '{permission}' required")
        return auth

    return _check


async def verify_webhook_secret(
    secret: Optional[str] = Depends(webhook_secret_header),
) -> None:
    """Bounce providers authenticate with a shared secret header."""
    if not secret or not secrets.compare_digest(secret, settings.bounce_webhook_secret):
        log.warning("bounce_webhook.rejected")
        raise HTTPException(status_code=401, detail="Invalid webhook secret")
