from __future__ import annotations

import uuid
from datetime import datetime, timedelta, timezone
from typing import Tuple
from uuid import UUID

from sqlalchemy import select, delete
from sqlalchemy.ext.asyncio import AsyncSession

from ..models import Credential, Madrassah, RefreshToken, User, UserRole
from ..core.security import create_token_pair, hash_password, hash_refresh_token, verify_password
from ..core.config import get_settings

settings = get_settings()


def _aware(dt: datetime) -> datetime:
    # SQLite hands back naive datetimes
    return dt if dt.tzinfo else dt.replace(tzinfo=timezone.utc)


async def _issue_tokens(db: AsyncSession, user: User) -> Tuple[str, str, int]:
    pair = create_token_pair(
        user_id=user.id,
        role=user.role.value if user.role else None,
        madrassah_id=user.madrassah_id,
        meta=user.meta,
    )
    db.add(RefreshToken(
        id=uuid.uuid4(),
        user_id=user.id,
        token_hash=pair.refresh_hash,
        expires_at=datetime.now(timezone.utc) + timedelta(minutes=settings.refresh_token_exp_minutes),
        revoked=False,
    ))
    await db.commit()
    return pair.access_token, pair.refresh_token, pair.expires_in


async def _create_user(
    db: AsyncSession, *, email: str, password: str, name: str, role: UserRole | None, madrassah_id: UUID
) -> User:
    exists = (await db.execute(select(User.id).where(User.email == email))).scalar_one_or_none()
    if exists:
        raise ValueError("Email already registered")
    user = User(
        id=uuid.uuid4(),
        email=email,
        name=name,
        role=role,
        madrassah_id=madrassah_id,
        capabilities=[],
        meta={"role": role.value} if role else {},
        is_active=True,
    )
    db.add(user)
    await db.flush()  # get user.id
    db.add(Credential(user_id=user.id, password_hash=hash_password(password)))
    return user


async def signup(
    db: AsyncSession, *, email: str, password: str, name: str, role: UserRole, madrassah_id: UUID
) -> Tuple[User, str, str, int]:
    if role not in (UserRole.TEACHER, UserRole.PARENT):
        raise PermissionError("Only teacher or parent accounts can self-register")
    if await db.get(Madrassah, madrassah_id) is None:
        raise LookupError("Madrassah not found")
    user = await _create_user(db, email=email, password=password, name=name, role=role, madrassah_id=madrassah_id)
    await db.commit()
    access, refresh_raw, expires_in = await _issue_tokens(db, user)
    return user, access, refresh_raw, expires_in


async def bootstrap_admin(
    db: AsyncSession, *, madrassah_name: str, location: str | None, email: str, password: str, name: str
) -> Tuple[User, str, str, int]:
    taken = (await db.execute(select(Madrassah.id).where(Madrassah.name == madrassah_name))).scalar_one_or_none()
    if taken:
        raise ValueError("Madrassah already exists")
    madrassah = Madrassah(id=uuid.uuid4(), name=madrassah_name, location=location)
    db.add(madrassah)
    await db.flush()
    user = await _create_user(
        db, email=email, password=password, name=name, role=UserRole.ADMIN, madrassah_id=madrassah.id
    )
    await db.commit()
    access, refresh_raw, expires_in = await _issue_tokens(db, user)
    return user, access, refresh_raw, expires_in


async def login(db: AsyncSession, *, email: str, password: str) -> Tuple[User, str, str, int]:
    user = (await db.execute(select(User).where(User.email == email))).scalar_one_or_none()
    if not user or not user.is_active:
        raise PermissionError("Invalid credentials")

    cred = (await db.execute(select(Credential).where(Credential.user_id == user.id))).scalar_one_or_none()
    if not cred or not verify_password(password, cred.password_hash):
        raise PermissionError("Invalid credentials")

    access, refresh_raw, expires_in = await _issue_tokens(db, user)
    return user, access, refresh_raw, expires_in


async def refresh(db: AsyncSession, *, presented_refresh: str) -> Tuple[str, str, int]:
    token_hash = hash_refresh_token(presented_refresh)

    rt = (await db.execute(
        select(RefreshToken).where(
            RefreshToken.token_hash == token_hash,
            RefreshToken.revoked == False,  # noqa: E712
        )
    )).scalar_one_or_none()
    if not rt or _aware(rt.expires_at) <= datetime.now(timezone.utc):
        raise PermissionError("Invalid refresh")

    # rotate: revoke old, create new
    rt.revoked = True
    user = (await db.execute(select(User).where(User.id == rt.user_id))).scalar_one()
    if not user.is_active:
        await db.commit()
        raise PermissionError("User not active")
    return await _issue_tokens(db, user)


async def logout(db: AsyncSession, *, user_id: UUID, presented_refresh: str) -> None:
    token_hash = hash_refresh_token(presented_refresh)
    await db.execute(
        delete(RefreshToken).where(RefreshToken.user_id == user_id, RefreshToken.token_hash == token_hash)
    )
    await db.commit()
