from __future__ import annotations

import logging
from uuid import UUID

from fastapi import APIRouter, Depends, HTTPException, status
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from ..deps import get_capabilities, get_ctx, get_db, get_current_user, require_admin, same_madrassah
from ..models import Student, StudentStatus, StudentTeacher, User, UserRole
from ..schemas import AssignmentRead, AssignRequest, StudentCreate, StudentRead, StudentStatusUpdate
from ..services.bridge import ChangeType
from ..services.context import ASSIGNMENTS_TABLE, STUDENTS_TABLE, AppContext
from ..services.roles import CapabilitySet

router = APIRouter(prefix="/students", tags=["students"])
logger = logging.getLogger(__name__)


def student_read(s: Student) -> StudentRead:
    return StudentRead(
        id=s.id, madrassah_id=s.madrassah_id, name=s.name, section=s.section,
        status=s.status.value, guardian_email=s.guardian_email,
    )


async def get_tenant_student(db: AsyncSession, user: User, student_id: UUID) -> Student:
    s = await db.get(Student, student_id)
    if s is None or not same_madrassah(user, s.madrassah_id):
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Student not found")
    return s


@router.post("", response_model=StudentRead, status_code=201)
async def create_student(body: StudentCreate, admin: User = Depends(require_admin),
                         ctx: AppContext = Depends(get_ctx), db: AsyncSession = Depends(get_db)):
    s = Student(
        madrassah_id=admin.madrassah_id,
        name=body.name,
        section=body.section,
        guardian_email=body.guardian_email,
        status=StudentStatus.ACTIVE,
    )
    db.add(s)
    await db.commit()
    await ctx.publish_change(STUDENTS_TABLE, ChangeType.INSERT, {"id": s.id, "madrassah_id": s.madrassah_id})
    return student_read(s)


@router.get("", response_model=list[StudentRead])
async def list_students(
    user: User = Depends(get_current_user),
    caps: CapabilitySet = Depends(get_capabilities),
    db: AsyncSession = Depends(get_db),
):
    q = select(Student).where(Student.madrassah_id == user.madrassah_id)
    if caps.is_teacher and not caps.is_admin:
        q = q.join(StudentTeacher, StudentTeacher.student_id == Student.id).where(
            StudentTeacher.teacher_id == user.id, StudentTeacher.active == True  # noqa: E712
        )
    elif not (caps.is_admin or caps.has_capability("attendance_access")):
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Not allowed to list students")
    rows = (await db.execute(q.order_by(Student.name.asc()))).scalars().all()
    return [student_read(s) for s in rows]


@router.patch("/{student_id}/status", response_model=StudentRead)
async def set_status(
    student_id: UUID,
    body: StudentStatusUpdate,
    admin: User = Depends(require_admin),
    ctx: AppContext = Depends(get_ctx),
    db: AsyncSession = Depends(get_db),
):
    s = await get_tenant_student(db, admin, student_id)
    s.status = StudentStatus(body.status)
    await db.commit()
    await ctx.publish_change(
        STUDENTS_TABLE, ChangeType.UPDATE, {"id": s.id, "madrassah_id": s.madrassah_id, "status": s.status.value}
    )
    return student_read(s)


@router.put("/{student_id}/teachers", response_model=AssignmentRead)
async def assign_teacher(
    student_id: UUID,
    body: AssignRequest,
    admin: User = Depends(require_admin),
    ctx: AppContext = Depends(get_ctx),
    db: AsyncSession = Depends(get_db),
):
    s = await get_tenant_student(db, admin, student_id)
    teacher = await db.get(User, body.teacher_id)
    if teacher is None or not same_madrassah(admin, teacher.madrassah_id):
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Teacher not found")
    if teacher.role not in (UserRole.TEACHER, UserRole.ADMIN):
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="User is not a teacher")

    link = (await db.execute(
        select(StudentTeacher).where(StudentTeacher.student_id == s.id, StudentTeacher.teacher_id == teacher.id)
    )).scalar_one_or_none()
    event = ChangeType.INSERT if link is None else ChangeType.UPDATE
    if link is None:
        link = StudentTeacher(student_id=s.id, teacher_id=teacher.id, active=body.active)
        db.add(link)
    else:
        link.active = body.active
    await db.commit()
    await ctx.publish_change(ASSIGNMENTS_TABLE, event, {
        "student_id": s.id, "teacher_id": teacher.id, "madrassah_id": s.madrassah_id, "active": link.active,
    })
    logger.info("student %s %s teacher %s", s.id, "assigned to" if body.active else "unassigned from", teacher.id)
    return AssignmentRead(
        student_id=link.student_id, teacher_id=link.teacher_id, active=link.active, assigned_date=link.assigned_date
    )
