from __future__ import annotations

import logging
import secrets

from fastapi import APIRouter, Depends, HTTPException, status
from sqlalchemy.ext.asyncio import AsyncSession

from ..deps import get_db, get_current_user
from ..models import UserRole, User
from ..schemas import (
    AuthResponse, BootstrapAdminRequest, LoginRequest, RefreshBody, SignUpRequest, TokenPair, UserRead,
)
from ..services import auth_service
from ..core.config import get_settings

router = APIRouter(prefix="/auth", tags=["auth"])
settings = get_settings()
logger = logging.getLogger(__name__)


def user_read(user: User) -> UserRead:
    return UserRead(
        id=user.id,
        email=user.email,
        name=user.name,
        role=user.role.value if user.role else None,
        madrassah_id=user.madrassah_id,
        section=user.section,
    )


@router.post("/signup", response_model=AuthResponse)
async def signup(payload: SignUpRequest, db: AsyncSession = Depends(get_db)):
    try:
        user, access, refresh, expires_in = await auth_service.signup(
            db,
            email=payload.email,
            password=payload.password,
            name=payload.name,
            role=UserRole(payload.role),
            madrassah_id=payload.madrassah_id,
        )
    except ValueError as e:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(e))
    except LookupError as e:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(e))
    except PermissionError as e:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=str(e))

    return AuthResponse(
        user=user_read(user),
        tokens=TokenPair(access_token=access, refresh_token=refresh, expires_in=expires_in),
    )


@router.post("/login", response_model=AuthResponse)
async def login(payload: LoginRequest, db: AsyncSession = Depends(get_db)):
    try:
        user, access, refresh, expires_in = await auth_service.login(
            db, email=payload.email, password=payload.password
        )
    except PermissionError:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid credentials")
    return AuthResponse(
        user=user_read(user),
        tokens=TokenPair(access_token=access, refresh_token=refresh, expires_in=expires_in),
    )


@router.post("/refresh", response_model=TokenPair)
async def refresh(body: RefreshBody, db: AsyncSession = Depends(get_db)):
    # the refresh token alone identifies the session; the access token may have expired
    try:
        access, refresh_raw, expires_in = await auth_service.refresh(db, presented_refresh=body.refresh_token)
    except PermissionError:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid refresh")
    return TokenPair(access_token=access, refresh_token=refresh_raw, expires_in=expires_in)


@router.post("/logout", status_code=204)
async def logout(body: RefreshBody, user: User = Depends(get_current_user), db: AsyncSession = Depends(get_db)):
    await auth_service.logout(db, user_id=user.id, presented_refresh=body.refresh_token)


@router.post("/bootstrap-admin", response_model=AuthResponse, status_code=201)
async def bootstrap_admin(payload: BootstrapAdminRequest, db: AsyncSession = Depends(get_db)):
    if not settings.service_client_id or not settings.service_client_secret:
        raise HTTPException(status_code=503, detail="Service credentials not configured")

    if not (
        secrets.compare_digest(payload.client_id, settings.service_client_id)
        and secrets.compare_digest(payload.client_secret, settings.service_client_secret)
    ):
        raise HTTPException(status_code=401, detail="Invalid client credentials")

    try:
        user, access, refresh, expires_in = await auth_service.bootstrap_admin(
            db,
            madrassah_name=payload.madrassah_name,
            location=payload.location,
            email=payload.email,
            password=payload.password,
            name=payload.name,
        )
    except ValueError as e:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(e))
    logger.info("bootstrapped madrassah %s with admin %s", user.madrassah_id, user.id)
    return AuthResponse(
        user=user_read(user),
        tokens=TokenPair(access_token=access, refresh_token=refresh, expires_in=expires_in),
    )
