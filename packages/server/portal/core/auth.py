"""
Session verification for the chat core.

Sessions are issued by the portal's identity service as signed JWTs; this
module only verifies them and loads the matching user row.

Supports:
- REST: ``Authorization: Bearer <token>`` or the session cookie
- WebSocket: ``?token=<token>`` query parameter or the session cookie
- Admin gate for channel management (is_admin or admin_level >= 1)

Secret, algorithm and cookie name come from the application's ``Settings``
(``app.state.settings``); the helpers fall back to the environment settings
when called outside a request.
"""

from __future__ import annotations

import uuid
from datetime import datetime, timedelta, timezone
from typing import Mapping, Optional

import jwt
import structlog
from fastapi import Depends, HTTPException, Request
from fastapi.security import APIKeyHeader
from sqlalchemy.ext.asyncio import AsyncSession

from portal.core.config import Settings, get_settings
from portal.core.database import get_session
from portal.models.user import User
from portal_shared.schemas.common import AdminLevel

log = structlog.get_logger()

bearer_header = APIKeyHeader(name="Authorization", auto_error=False)


# ---------------------------------------------------------------------------
# JWT
# ---------------------------------------------------------------------------

def create_jwt(
    user_id: str,
    *,
    expires_delta: timedelta | None = None,
    settings: Settings | None = None,
) -> tuple[str, str]:
    """Create a signed session token. Returns (token, jti)."""
    settings = settings or get_settings()
    jti = str(uuid.uuid4())
    now = datetime.now(timezone.utc)
    exp = now + (expires_delta or timedelta(minutes=settings.jwt_expire_minutes))
    payload = {"sub": user_id, "iat": now, "exp": exp, "jti": jti}
    token = jwt.encode(payload, settings.secret_key, algorithm=settings.jwt_algorithm)
    return token, jti


def decode_jwt(token: str, settings: Settings | None = None) -> dict:
    """Decode and verify a JWT. Raises jwt.PyJWTError on failure."""
    settings = settings or get_settings()
    return jwt.decode(token, settings.secret_key, algorithms=[settings.jwt_algorithm])


def is_admin(user: User) -> bool:
    return user.is_admin or user.admin_level >= AdminLevel.ADMIN


def _token_from(
    authorization: Optional[str],
    cookies: Mapping[str, str],
    cookie_name: str,
) -> Optional[str]:
    if authorization and authorization.startswith("Bearer "):
        return authorization[7:].strip() or None
    return cookies.get(cookie_name)


async def _load_user(token: str, session: AsyncSession, settings: Settings) -> User:
    try:
        payload = decode_jwt(token, settings)
    except jwt.PyJWTError:
        raise HTTPException(status_code=401, detail="Invalid or expired session")

    user_id = payload.get("sub")
    user = await session.get(User, user_id) if user_id else None
    if user is None:
        raise HTTPException(status_code=401, detail="User not found")
    if user.is_banned:
        raise HTTPException(status_code=403, detail="Account is suspended")
    return user


# ---------------------------------------------------------------------------
# Dependencies
# ---------------------------------------------------------------------------

async def get_current_user(
    request: Request,
    authorization: Optional[str] = Depends(bearer_header),
    session: AsyncSession = Depends(get_session),
) -> User:
    """Authenticate a REST request. Bearer header first, then cookie."""
    settings: Settings = request.app.state.settings
    token = _token_from(authorization, request.cookies, settings.session_cookie_name)
    if not token:
        raise HTTPException(status_code=401, detail="Authentication required")
    user = await _load_user(token, session, settings)
    request.state.user = user
    return user


async def require_admin(user: User = Depends(get_current_user)) -> User:
    """Requires an administrator."""
    if not is_admin(user):
        log.info("auth.admin_required", user_id=user.id)
        raise HTTPException(status_code=403, detail="Administrator access required")
    return user


async def authenticate_websocket(
    token: Optional[str],
    cookies: Mapping[str, str],
    session: AsyncSession,
    settings: Settings,
) -> Optional[User]:
    """
    Resolve the user behind a WebSocket handshake.

    Returns None when no credentials were presented. Raises HTTPException
    when credentials were presented but do not verify.
    """
    token = token or cookies.get(settings.session_cookie_name)
    if not token:
        return None
    return await _load_user(token, session, settings)
