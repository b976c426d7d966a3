from __future__ import annotations

import uuid
from datetime import date, datetime, timezone
from enum import Enum

from sqlalchemy import (
    JSON, Boolean, Date, DateTime, Enum as SqlEnum, ForeignKey, Index, Integer, String, Text, UniqueConstraint,
)
from sqlalchemy.orm import Mapped, declarative_base, mapped_column, relationship

Base = declarative_base()


def utcnow():
    return datetime.now(timezone.utc)


class UserRole(str, Enum):
    ADMIN = "admin"
    TEACHER = "teacher"
    PARENT = "parent"
    ATTENDANCE_TAKER = "attendance_taker"


class Capability(str, Enum):
    ATTENDANCE_ACCESS = "attendance_access"
    DAILY_PROGRESS_EMAIL = "daily_progress_email"
    VIEW_REPORTS = "view_reports"
    EXPORT_REPORTS = "export_reports"
    MANAGE_STUDENTS = "manage_students"
    MANAGE_TEACHERS = "manage_teachers"
    MANAGE_SCHEDULES = "manage_schedules"
    MANAGE_ROLES = "manage_roles"
    BULK_ACTIONS = "bulk_actions"
    MANAGE_CLASSES = "manage_classes"


class StudentStatus(str, Enum):
    ACTIVE = "active"
    INACTIVE = "inactive"


class ActivityKind(str, Enum):
    SABAQ = "sabaq"
    SABAQ_PARA = "sabaq_para"
    DHOR = "dhor"


class QualityRating(str, Enum):
    EXCELLENT = "excellent"
    GOOD = "good"
    AVERAGE = "average"
    NEEDS_WORK = "needsWork"
    HORRIBLE = "horrible"


class AttendanceStatus(str, Enum):
    PRESENT = "present"
    ABSENT = "absent"
    LATE = "late"


class Madrassah(Base):
    __tablename__ = "madrassahs"
    __table_args__ = (UniqueConstraint("name", name="uq_madrassahs_name"),)

    id: Mapped[uuid.UUID] = mapped_column(primary_key=True, default=uuid.uuid4)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    location: Mapped[str | None] = mapped_column(String(255), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)


class User(Base):
    """Auth identity and profile in one row; ``madrassah_id`` is the tenant partition."""

    __tablename__ = "users"
    __table_args__ = (
        UniqueConstraint("email", name="uq_users_email"),
        Index("ix_users_email", "email"),
        Index("ix_users_madrassah", "madrassah_id"),
    )

    id: Mapped[uuid.UUID] = mapped_column(primary_key=True, default=uuid.uuid4)
    email: Mapped[str] = mapped_column(String(255), nullable=False)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    role: Mapped[UserRole | None] = mapped_column(SqlEnum(UserRole), nullable=True)
    madrassah_id: Mapped[uuid.UUID | None] = mapped_column(
        ForeignKey("madrassahs.id", ondelete="SET NULL"), nullable=True
    )
    section: Mapped[str | None] = mapped_column(String(64), nullable=True)
    # additive capability flags on top of the role
    capabilities: Mapped[list] = mapped_column(JSON, default=list, nullable=False)
    # auth-provided metadata (role hint stamped at signup)
    meta: Mapped[dict] = mapped_column(JSON, default=dict, nullable=False)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, onupdate=utcnow)

    credentials: Mapped["Credential"] = relationship(
        "Credential", back_populates="user", uselist=False, cascade="all, delete-orphan"
    )
    refresh_tokens: Mapped[list["RefreshToken"]] = relationship(
        "RefreshToken", back_populates="user", cascade="all, delete-orphan"
    )


class Credential(Base):
    __tablename__ = "credentials"

    user_id: Mapped[uuid.UUID] = mapped_column(
        ForeignKey("users.id", ondelete="CASCADE"), primary_key=True
    )
    password_hash: Mapped[str] = mapped_column(String(255), nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)

    user: Mapped[User] = relationship("User", back_populates="credentials")


class RefreshToken(Base):
    __tablename__ = "refresh_tokens"
    __table_args__ = (
        UniqueConstraint("token_hash", name="uq_refresh_token_hash"),
        Index("ix_refresh_user", "user_id"),
        Index("ix_refresh_exp", "expires_at"),
    )

    id: Mapped[uuid.UUID] = mapped_column(primary_key=True, default=uuid.uuid4)
    user_id: Mapped[uuid.UUID] = mapped_column(
        ForeignKey("users.id", ondelete="CASCADE"), nullable=False
    )
    token_hash: Mapped[str] = mapped_column(String(128), nullable=False)
    expires_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    revoked: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)

    user: Mapped[User] = relationship("User", back_populates="refresh_tokens")


class Student(Base):
    __tablename__ = "students"
    __table_args__ = (Index("ix_students_madrassah", "madrassah_id"),)

    id: Mapped[uuid.UUID] = mapped_column(primary_key=True, default=uuid.uuid4)
    madrassah_id: Mapped[uuid.UUID] = mapped_column(
        ForeignKey("madrassahs.id", ondelete="CASCADE"), nullable=False
    )
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    section: Mapped[str | None] = mapped_column(String(64), nullable=True)
    status: Mapped[StudentStatus] = mapped_column(SqlEnum(StudentStatus), default=StudentStatus.ACTIVE, nullable=False)
    guardian_email: Mapped[str | None] = mapped_column(String(255), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)


class StudentTeacher(Base):
    __tablename__ = "students_teachers"
    __table_args__ = (
        UniqueConstraint("student_id", "teacher_id", name="uq_students_teachers_pair"),
        Index("ix_students_teachers_teacher", "teacher_id"),
    )

    id: Mapped[uuid.UUID] = mapped_column(primary_key=True, default=uuid.uuid4)
    student_id: Mapped[uuid.UUID] = mapped_column(ForeignKey("students.id", ondelete="CASCADE"), nullable=False)
    teacher_id: Mapped[uuid.UUID] = mapped_column(ForeignKey("users.id", ondelete="CASCADE"), nullable=False)
    active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    assigned_date: Mapped[date] = mapped_column(Date, default=lambda: utcnow().date())
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)


# sabaq / sabaq para / dhor entries; never deleted, corrected in place by the author or an admin
class ActivityRecord(Base):
    __tablename__ = "activity_records"
    __table_args__ = (
        Index("ix_activity_scope", "madrassah_id", "student_id", "activity_date"),
    )

    id: Mapped[uuid.UUID] = mapped_column(primary_key=True, default=uuid.uuid4)
    madrassah_id: Mapped[uuid.UUID] = mapped_column(
        ForeignKey("madrassahs.id", ondelete="CASCADE"), nullable=False
    )
    student_id: Mapped[uuid.UUID] = mapped_column(ForeignKey("students.id", ondelete="CASCADE"), nullable=False)
    author_id: Mapped[uuid.UUID] = mapped_column(ForeignKey("users.id"), nullable=False)
    kind: Mapped[ActivityKind] = mapped_column(SqlEnum(ActivityKind), nullable=False)
    activity_date: Mapped[date] = mapped_column(Date, nullable=False)
    quality: Mapped[QualityRating | None] = mapped_column(SqlEnum(QualityRating), nullable=True)
    juz_number: Mapped[int | None] = mapped_column(Integer, nullable=True)
    notes: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, onupdate=utcnow)


class Message(Base):
    __tablename__ = "messages"
    __table_args__ = (
        Index("ix_messages_recipient", "recipient_id", "created_at"),
        Index("ix_messages_sender", "sender_id", "created_at"),
    )

    id: Mapped[uuid.UUID] = mapped_column(primary_key=True, default=uuid.uuid4)
    madrassah_id: Mapped[uuid.UUID] = mapped_column(
        ForeignKey("madrassahs.id", ondelete="CASCADE"), nullable=False
    )
    sender_id: Mapped[uuid.UUID] = mapped_column(ForeignKey("users.id", ondelete="CASCADE"), nullable=False)
    recipient_id: Mapped[uuid.UUID] = mapped_column(ForeignKey("users.id", ondelete="CASCADE"), nullable=False)
    parent_message_id: Mapped[uuid.UUID | None] = mapped_column(ForeignKey("messages.id"), nullable=True)
    subject: Mapped[str] = mapped_column(String(255), nullable=False)
    body: Mapped[str] = mapped_column(Text, nullable=False)
    read: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)


class Attendance(Base):
    __tablename__ = "attendance"
    # one row per student per day; writes are upserts on this key
    __table_args__ = (UniqueConstraint("student_id", "date", name="uq_attendance_student_date"),)

    id: Mapped[uuid.UUID] = mapped_column(primary_key=True, default=uuid.uuid4)
    madrassah_id: Mapped[uuid.UUID] = mapped_column(
        ForeignKey("madrassahs.id", ondelete="CASCADE"), nullable=False
    )
    student_id: Mapped[uuid.UUID] = mapped_column(ForeignKey("students.id", ondelete="CASCADE"), nullable=False)
    attendance_date: Mapped[date] = mapped_column("date", Date, nullable=False)
    status: Mapped[AttendanceStatus] = mapped_column(SqlEnum(AttendanceStatus), nullable=False)
    time: Mapped[str | None] = mapped_column(String(8), nullable=True)
    notes: Mapped[str | None] = mapped_column(Text, nullable=True)
    late_reason: Mapped[str | None] = mapped_column(String(255), nullable=True)
    recorded_by: Mapped[uuid.UUID] = mapped_column(ForeignKey("users.id"), nullable=False)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, onupdate=utcnow)
