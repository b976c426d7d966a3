from __future__ import annotations
import uuid
from datetime import date
from fastapi import APIRouter, Depends, Query
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy import select
from ..deps import get_ctx, get_db, require_capability
from ..models import Attendance, AttendanceStatus, Capability, Student, User
from ..schemas import AttendanceRow, AttendanceUpsert
from ..services.bridge import ChangeType
from ..services.context import ATTENDANCE_TABLE, AppContext
from .students import get_tenant_student

router = APIRouter(prefix="/attendance", tags=["attendance"])

require_attendance = require_capability(Capability.ATTENDANCE_ACCESS.value)


def attendance_row(r: Attendance) -> AttendanceRow:
    return AttendanceRow(
        id=r.id, student_id=r.student_id, date=r.attendance_date, status=r.status.value, time=r.time,
        notes=r.notes, late_reason=r.late_reason, recorded_by=r.recorded_by,
    )


# one row per student per day; a second write for the same day overwrites it
@router.put("", response_model=AttendanceRow)
async def upsert_attendance(
    body: AttendanceUpsert,
    user: User = Depends(require_attendance),
    ctx: AppContext = Depends(get_ctx),
    db: AsyncSession = Depends(get_db),
):
    student = await get_tenant_student(db, user, body.student_id)
    row = (await db.execute(
        select(Attendance).where(Attendance.student_id == student.id, Attendance.attendance_date == body.date)
    )).scalar_one_or_none()
    event = ChangeType.UPDATE if row else ChangeType.INSERT
    if row is None:
        row = Attendance(
            id=uuid.uuid4(),
            madrassah_id=student.madrassah_id,
            student_id=student.id,
            attendance_date=body.date,
        )
        db.add(row)
    row.status = AttendanceStatus(body.status)
    row.time = body.time
    row.notes = body.notes
    row.late_reason = body.late_reason if row.status is AttendanceStatus.LATE else None
    row.recorded_by = user.id
    await db.commit()
    await ctx.publish_change(ATTENDANCE_TABLE, event, {
        "id": row.id, "madrassah_id": row.madrassah_id, "student_id": row.student_id,
        "date": row.attendance_date, "status": row.status.value,
    })
    return attendance_row(row)


# roster view for a day
@router.get("", response_model=list[AttendanceRow])
async def day_attendance(
    on: date = Query(..., alias="date"),
    user: User = Depends(require_attendance),
    db: AsyncSession = Depends(get_db),
):
    rows = (await db.execute(
        select(Attendance).join(Student, Student.id == Attendance.student_id)
        .where(Attendance.madrassah_id == user.madrassah_id, Attendance.attendance_date == on)
        .order_by(Student.name.asc())
    )).scalars().all()
    return [attendance_row(r) for r in rows]
