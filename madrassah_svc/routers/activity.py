from __future__ import annotations

import logging
from uuid import UUID

from fastapi import APIRouter, Depends, HTTPException, Query, status
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from ..deps import get_capabilities, get_ctx, get_db, get_current_user, require_teacher, same_madrassah
from ..models import ActivityKind, ActivityRecord, QualityRating, StudentTeacher, User
from ..schemas import ActivityCreate, ActivityRead, ActivityUpdate
from ..services.bridge import ChangeType
from ..services.context import ACTIVITY_TABLE, AppContext
from ..services.roles import CapabilitySet
from .students import get_tenant_student

router = APIRouter(prefix="/activity", tags=["activity"])
logger = logging.getLogger(__name__)


def activity_read(r: ActivityRecord) -> ActivityRead:
    return ActivityRead(
        id=r.id, student_id=r.student_id, author_id=r.author_id, kind=r.kind.value,
        activity_date=r.activity_date, quality=r.quality.value if r.quality else None,
        juz_number=r.juz_number, notes=r.notes,
    )


def _change_record(r: ActivityRecord) -> dict:
    return {
        "id": r.id, "madrassah_id": r.madrassah_id, "student_id": r.student_id,
        "kind": r.kind.value, "activity_date": r.activity_date,
    }


async def _teaches(db: AsyncSession, teacher_id: UUID, student_id: UUID) -> bool:
    row = (await db.execute(
        select(StudentTeacher.id).where(
            StudentTeacher.teacher_id == teacher_id,
            StudentTeacher.student_id == student_id,
            StudentTeacher.active == True,  # noqa: E712
        )
    )).first()
    return row is not None


@router.post("", response_model=ActivityRead, status_code=201)
async def create_activity(
    body: ActivityCreate,
    user: User = Depends(require_teacher),
    caps: CapabilitySet = Depends(get_capabilities),
    ctx: AppContext = Depends(get_ctx),
    db: AsyncSession = Depends(get_db),
):
    student = await get_tenant_student(db, user, body.student_id)
    if not caps.is_admin and not await _teaches(db, user.id, student.id):
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Student is not assigned to you")

    rec = ActivityRecord(
        madrassah_id=student.madrassah_id,
        student_id=student.id,
        author_id=user.id,
        kind=ActivityKind(body.kind),
        activity_date=body.activity_date,
        quality=QualityRating(body.quality) if body.quality else None,
        juz_number=body.juz_number,
        notes=body.notes,
    )
    db.add(rec)
    await db.commit()
    await ctx.publish_change(ACTIVITY_TABLE, ChangeType.INSERT, _change_record(rec))
    return activity_read(rec)


@router.patch("/{record_id}", response_model=ActivityRead)
async def update_activity(
    record_id: UUID,
    body: ActivityUpdate,
    user: User = Depends(require_teacher),
    caps: CapabilitySet = Depends(get_capabilities),
    ctx: AppContext = Depends(get_ctx),
    db: AsyncSession = Depends(get_db),
):
    rec = await db.get(ActivityRecord, record_id)
    if rec is None or not same_madrassah(user, rec.madrassah_id):
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Record not found")
    # corrections only; the author or an admin
    if rec.author_id != user.id and not caps.is_admin:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Only the author or an admin may edit")

    changes = body.model_dump(exclude_unset=True)
    if "quality" in changes:
        rec.quality = QualityRating(changes["quality"]) if changes["quality"] else None
    if "juz_number" in changes:
        rec.juz_number = changes["juz_number"]
    if "notes" in changes:
        rec.notes = changes["notes"]
    if changes.get("activity_date") is not None:
        rec.activity_date = changes["activity_date"]
    await db.commit()
    await ctx.publish_change(ACTIVITY_TABLE, ChangeType.UPDATE, _change_record(rec))
    return activity_read(rec)


@router.get("/students/{student_id}", response_model=list[ActivityRead])
async def student_activity(
    student_id: UUID,
    kind: ActivityKind | None = Query(default=None),
    limit: int = Query(100, ge=1, le=500),
    user: User = Depends(get_current_user),
    caps: CapabilitySet = Depends(get_capabilities),
    db: AsyncSession = Depends(get_db),
):
    student = await get_tenant_student(db, user, student_id)
    if caps.is_parent:
        if not student.guardian_email or student.guardian_email.lower() != user.email.lower():
            raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Not your student")
    elif not (caps.is_admin or caps.is_teacher):
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Not allowed")

    q = select(ActivityRecord).where(
        ActivityRecord.madrassah_id == student.madrassah_id, ActivityRecord.student_id == student.id
    )
    if kind is not None:
        q = q.where(ActivityRecord.kind == kind)
    rows = (await db.execute(
        q.order_by(ActivityRecord.activity_date.desc(), ActivityRecord.created_at.desc()).limit(limit)
    )).scalars().all()
    return [activity_read(r) for r in rows]
