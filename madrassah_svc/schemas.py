from __future__ import annotations

from datetime import date, datetime
from typing import Literal, Annotated
from uuid import UUID
from pydantic import BaseModel, Field, StringConstraints

Str255 = Annotated[str, StringConstraints(strip_whitespace=True, min_length=1, max_length=255)]
Email = Annotated[str, StringConstraints(strip_whitespace=True, to_lower=True, pattern=r"^[^@\s]+@[^@\s]+\.[^@\s]+$", max_length=255)]
Password = Annotated[str, Field(min_length=8, max_length=128)]

RoleName = Literal["admin", "teacher", "parent", "attendance_taker"]


# -------- Auth --------
class SignUpRequest(BaseModel):
    email: Email
    password: Password
    name: Str255
    role: Literal["teacher", "parent"]
    madrassah_id: UUID


class LoginRequest(BaseModel):
    email: Email
    password: Password


class RefreshBody(BaseModel):
    refresh_token: str


class TokenPair(BaseModel):
    access_token: str
    refresh_token: str
    token_type: Literal["bearer"] = "bearer"
    expires_in: int


class BootstrapAdminRequest(BaseModel):
    client_id: str
    client_secret: str
    madrassah_name: Str255
    location: str | None = None
    email: Email
    password: Password
    name: Str255


# -------- Users --------
class UserRead(BaseModel):
    id: UUID
    email: str
    name: str
    role: RoleName | None = None
    madrassah_id: UUID | None = None
    section: str | None = None


class ProfileRead(UserRead):
    capabilities: list[str] = Field(default_factory=list)


class AuthResponse(BaseModel):
    user: UserRead
    tokens: TokenPair


class AccessUpdate(BaseModel):
    role: RoleName | None = None
    capabilities: list[str] | None = None
    section: str | None = None


# -------- Gate --------
class RouteRequirementsIn(BaseModel):
    require_admin: bool = False
    require_teacher: bool = False
    required_capabilities: list[str] = Field(default_factory=list)
    path: str = "/"
    # per-browser id; keeps anonymous redirect counters apart behind one address
    navigation_id: str | None = Field(default=None, min_length=1, max_length=128)


class NoticeOut(BaseModel):
    title: str
    description: str
    variant: str = "destructive"


class AccessDecisionOut(BaseModel):
    state: Literal["checking", "timed_out", "allowed", "denied_redirecting", "loop_guarded"]
    render: bool
    reason: str
    redirect_to: str | None = None
    notice: NoticeOut | None = None
    warning: str | None = None
    fail_open: bool = False
    redirect_count: int = 0


# -------- Roster --------
class StudentCreate(BaseModel):
    name: Str255
    section: str | None = None
    guardian_email: Email | None = None


class StudentRead(BaseModel):
    id: UUID
    madrassah_id: UUID
    name: str
    section: str | None = None
    status: Literal["active", "inactive"]
    guardian_email: str | None = None


class StudentStatusUpdate(BaseModel):
    status: Literal["active", "inactive"]


class AssignRequest(BaseModel):
    teacher_id: UUID
    active: bool = True


class AssignmentRead(BaseModel):
    student_id: UUID
    teacher_id: UUID
    active: bool
    assigned_date: date


# -------- Activity --------
ActivityKindName = Literal["sabaq", "sabaq_para", "dhor"]
QualityName = Literal["excellent", "good", "average", "needsWork", "horrible"]


class ActivityCreate(BaseModel):
    student_id: UUID
    kind: ActivityKindName
    activity_date: date
    quality: QualityName | None = None
    juz_number: int | None = Field(default=None, ge=1, le=30)
    notes: str | None = None


class ActivityUpdate(BaseModel):
    quality: QualityName | None = None
    juz_number: int | None = Field(default=None, ge=1, le=30)
    notes: str | None = None
    activity_date: date | None = None


class ActivityRead(BaseModel):
    id: UUID
    student_id: UUID
    author_id: UUID
    kind: ActivityKindName
    activity_date: date
    quality: QualityName | None = None
    juz_number: int | None = None
    notes: str | None = None


# -------- Leaderboard --------
class LeaderRow(BaseModel):
    student_id: UUID
    name: str
    rank: int
    sabaqs: int
    sabaq_para: int
    dhor: int
    total_points: int
    last_activity: date | None = None


class LeaderboardOut(BaseModel):
    entries: list[LeaderRow] = Field(default_factory=list)
    error: str | None = None


# -------- Messages --------
class MessageCreate(BaseModel):
    recipient_id: UUID
    subject: Str255
    body: str = Field(min_length=1)
    parent_message_id: UUID | None = None


class MessageRead(BaseModel):
    id: UUID
    sender_id: UUID
    recipient_id: UUID
    parent_message_id: UUID | None = None
    subject: str
    body: str
    read: bool
    created_at: datetime


# -------- Attendance --------
class AttendanceUpsert(BaseModel):
    student_id: UUID
    date: date
    status: Literal["present", "absent", "late"]
    time: str | None = Field(default=None, pattern=r"^\d{2}:\d{2}(:\d{2})?$")
    notes: str | None = None
    late_reason: str | None = None


class AttendanceRow(BaseModel):
    id: UUID
    student_id: UUID
    date: date
    status: Literal["present", "absent", "late"]
    time: str | None = None
    notes: str | None = None
    late_reason: str | None = None
    recorded_by: UUID
