from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Dict
from uuid import UUID

from fastapi import Depends, HTTPException, Header, Request, status
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from .core.security import decode_access_token
from .db import get_session
from .models import User
from .services.context import AppContext
from .services.roles import CapabilitySet, ProfileSnapshot, resolve_capabilities
from .services.session import Session

# alias for DB dependency use
get_db = get_session


def get_ctx(request: Request) -> AppContext:
    return request.app.state.ctx


def _bearer(authorization: str | None) -> str | None:
    if not authorization or not authorization.lower().startswith("bearer "):
        return None
    return authorization.split(" ", 1)[1].strip() or None


def session_from_token(token: str) -> Session:
    """Decode an access token into a Session; raises on any invalid token."""
    payload = decode_access_token(token)
    return Session(
        access_token=token,
        refresh_token=None,
        user_id=UUID(payload["sub"]),
        expires_at=datetime.fromtimestamp(payload["exp"], tz=timezone.utc),
        metadata=dict(payload.get("meta") or {}),
    )


async def get_claims(authorization: str | None = Header(default=None)) -> Dict[str, Any]:
    token = _bearer(authorization)
    if token is None:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Missing token")
    try:
        payload = decode_access_token(token)
        UUID(payload["sub"])
    except Exception:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid token")
    payload.setdefault("meta", {})
    return payload


async def get_optional_session(authorization: str | None = Header(default=None)) -> Session | None:
    token = _bearer(authorization)
    if token is None:
        return None
    try:
        return session_from_token(token)
    except Exception:
        return None


async def get_current_user(
    claims: Dict[str, Any] = Depends(get_claims),
    db: AsyncSession = Depends(get_db),
) -> User:
    user = (await db.execute(select(User).where(User.id == UUID(claims["sub"])))).scalar_one_or_none()
    if not user or not user.is_active:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="User not active")
    return user


async def get_capabilities(
    user: User = Depends(get_current_user),
    claims: Dict[str, Any] = Depends(get_claims),
) -> CapabilitySet:
    # always from the current row, never from the token's role claim
    return resolve_capabilities(ProfileSnapshot.from_user(user), claims.get("meta"))


async def require_admin(
    user: User = Depends(get_current_user), caps: CapabilitySet = Depends(get_capabilities)
) -> User:
    if not caps.is_admin:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Admin role required")
    return user


async def require_teacher(
    user: User = Depends(get_current_user), caps: CapabilitySet = Depends(get_capabilities)
) -> User:
    if not (caps.is_teacher or caps.is_admin):
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Teacher role required")
    return user


def require_capability(*names: str):
    async def _dep(
        user: User = Depends(get_current_user), caps: CapabilitySet = Depends(get_capabilities)
    ) -> User:
        if not caps.has_all(names):
            raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Missing permission")
        return user
    return _dep


def same_madrassah(user: User, madrassah_id: UUID | None) -> bool:
    return user.madrassah_id is not None and user.madrassah_id == madrassah_id
