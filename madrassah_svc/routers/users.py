from __future__ import annotations

import logging
from uuid import UUID

from fastapi import APIRouter, Depends, HTTPException, status
from sqlalchemy.ext.asyncio import AsyncSession

from ..deps import get_capabilities, get_ctx, get_db, get_current_user, require_admin, same_madrassah
from ..models import Capability, User, UserRole
from ..schemas import AccessUpdate, ProfileRead
from ..services.context import AppContext
from ..services.roles import CapabilitySet, ProfileSnapshot, resolve_capabilities

router = APIRouter(prefix="/users", tags=["users"])
logger = logging.getLogger(__name__)

_KNOWN = {c.value for c in Capability}


def profile_read(user: User, caps: CapabilitySet) -> ProfileRead:
    return ProfileRead(
        id=user.id,
        email=user.email,
        name=user.name,
        role=user.role.value if user.role else None,
        madrassah_id=user.madrassah_id,
        section=user.section,
        capabilities=caps.effective_capabilities(),
    )


@router.get("/me", response_model=ProfileRead)
async def me(user: User = Depends(get_current_user), caps: CapabilitySet = Depends(get_capabilities)):
    return profile_read(user, caps)


@router.patch("/{user_id}/access", response_model=ProfileRead)
async def update_access(
    user_id: UUID,
    body: AccessUpdate,
    admin: User = Depends(require_admin),
    ctx: AppContext = Depends(get_ctx),
    db: AsyncSession = Depends(get_db),
):
    target = await db.get(User, user_id)
    if target is None or not same_madrassah(admin, target.madrassah_id):
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="User not found")

    if body.capabilities is not None:
        unknown = sorted(set(body.capabilities) - _KNOWN)
        if unknown:
            raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=f"Unknown capabilities: {unknown}")
        target.capabilities = sorted(set(body.capabilities))
    if body.role is not None:
        if target.id == admin.id and body.role != UserRole.ADMIN.value:
            raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Admins cannot demote themselves")
        target.role = UserRole(body.role)
    if body.section is not None:
        target.section = body.section or None
    await db.commit()

    caps = resolve_capabilities(ProfileSnapshot.from_user(target))
    # stale hints would mislead the timeout fallback
    try:
        if caps.role is not None:
            await ctx.hints.remember(str(target.id), caps.role.value)
        else:
            await ctx.hints.forget(str(target.id))
    except Exception:
        logger.exception("failed to update role hint for %s", target.id)
    logger.info("admin %s updated access of %s: role=%s caps=%s", admin.id, target.id, body.role, body.capabilities)
    return profile_read(target, caps)
