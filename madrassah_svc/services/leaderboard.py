from __future__ import annotations
import logging
import uuid
from dataclasses import dataclass, field
from datetime import date, datetime, timedelta, timezone
from enum import Enum
from typing import Iterable, Sequence

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from ..models import ActivityKind, ActivityRecord, Student, StudentStatus, StudentTeacher

logger = logging.getLogger(__name__)

TRACKED_KINDS: tuple[ActivityKind, ...] = (ActivityKind.SABAQ, ActivityKind.SABAQ_PARA, ActivityKind.DHOR)


class TimeRange(str, Enum):
    TODAY = "today"
    WEEK = "week"
    MONTH = "month"
    ALL = "all"


class MetricPriority(str, Enum):
    SABAQS = "sabaqs"
    SABAQ_PARA = "sabaqPara"
    TOTAL = "total"


class Participation(str, Enum):
    ALL = "all"
    ACTIVE = "active"
    INACTIVE = "inactive"


class Completion(str, Enum):
    ALL = "all"
    COMPLETE = "complete"
    INCOMPLETE = "incomplete"


@dataclass(frozen=True)
class LeaderboardFilters:
    time_range: TimeRange = TimeRange.WEEK
    metric_priority: MetricPriority = MetricPriority.TOTAL
    participation: Participation = Participation.ALL
    completion: Completion = Completion.ALL

    def cache_key(self) -> tuple[str, ...]:
        return (self.time_range.value, self.metric_priority.value, self.participation.value, self.completion.value)


@dataclass(frozen=True)
class RosterStudent:
    id: uuid.UUID
    name: str


@dataclass(frozen=True)
class ActivityRow:
    student_id: uuid.UUID
    kind: ActivityKind
    activity_date: date


@dataclass
class LeaderboardEntry:
    student_id: uuid.UUID
    name: str
    sabaqs: int = 0
    sabaq_para: int = 0
    dhor: int = 0
    last_activity: date | None = None
    rank: int = 0

    @property
    def total_points(self) -> int:
        return self.sabaqs + self.sabaq_para

    @property
    def has_activity(self) -> bool:
        return (self.sabaqs + self.sabaq_para + self.dhor) > 0

    @property
    def is_complete(self) -> bool:
        return self.sabaqs > 0 and self.sabaq_para > 0 and self.dhor > 0

    def bump(self, kind: ActivityKind) -> None:
        if kind is ActivityKind.SABAQ:
            self.sabaqs += 1
        elif kind is ActivityKind.SABAQ_PARA:
            self.sabaq_para += 1
        elif kind is ActivityKind.DHOR:
            self.dhor += 1


@dataclass
class LeaderboardResult:
    entries: list[LeaderboardEntry] = field(default_factory=list)
    error: str | None = None


def today_utc() -> date:
    return datetime.now(timezone.utc).date()


def cutoff_for(time_range: TimeRange, today: date | None = None) -> date | None:
    today = today or today_utc()
    if time_range is TimeRange.TODAY:
        return today
    if time_range is TimeRange.WEEK:
        return today - timedelta(days=7)
    if time_range is TimeRange.MONTH:
        return today - timedelta(days=30)
    return None


def _sort_key(priority: MetricPriority):
    if priority is MetricPriority.SABAQS:
        return lambda e: -e.sabaqs
    if priority is MetricPriority.SABAQ_PARA:
        return lambda e: -e.sabaq_para
    return lambda e: (-e.sabaqs, -e.total_points)


def aggregate(
    roster: Sequence[RosterStudent],
    rows: Iterable[ActivityRow],
    filters: LeaderboardFilters = LeaderboardFilters(),
    *,
    today: date | None = None,
) -> list[LeaderboardEntry]:
    """Group activity rows per roster student, filter, sort and rank.

    Pure: rows for students outside the roster or older than the time window
    are ignored, and ties keep roster order (the sort is stable).
    """
    cutoff = cutoff_for(filters.time_range, today)
    buckets: dict[uuid.UUID, LeaderboardEntry] = {}
    for s in roster:
        buckets.setdefault(s.id, LeaderboardEntry(student_id=s.id, name=s.name))

    for row in rows:
        entry = buckets.get(row.student_id)
        if entry is None:
            continue
        if cutoff is not None and row.activity_date < cutoff:
            continue
        entry.bump(row.kind)
        if entry.last_activity is None or row.activity_date > entry.last_activity:
            entry.last_activity = row.activity_date

    entries = list(buckets.values())
    if filters.participation is Participation.ACTIVE:
        entries = [e for e in entries if e.has_activity]
    elif filters.participation is Participation.INACTIVE:
        entries = [e for e in entries if not e.has_activity]

    if filters.completion is Completion.COMPLETE:
        entries = [e for e in entries if e.is_complete]
    elif filters.completion is Completion.INCOMPLETE:
        entries = [e for e in entries if not e.is_complete]

    entries.sort(key=_sort_key(filters.metric_priority))
    for idx, e in enumerate(entries, start=1):
        e.rank = idx
    return entries


async def load_roster(db: AsyncSession, *, teacher_id: uuid.UUID, madrassah_id: uuid.UUID) -> list[RosterStudent]:
    rows = (await db.execute(
        select(Student.id, Student.name)
        .join(StudentTeacher, StudentTeacher.student_id == Student.id)
        .where(
            StudentTeacher.teacher_id == teacher_id,
            StudentTeacher.active == True,  # noqa: E712
            Student.madrassah_id == madrassah_id,
            Student.status == StudentStatus.ACTIVE,
        )
        .order_by(StudentTeacher.assigned_date.asc(), Student.name.asc())
    )).all()
    return [RosterStudent(id=r[0], name=r[1]) for r in rows]


async def load_activity(
    db: AsyncSession, *, madrassah_id: uuid.UUID, student_ids: Sequence[uuid.UUID], since: date | None
) -> list[ActivityRow]:
    if not student_ids:
        return []
    q = select(ActivityRecord.student_id, ActivityRecord.kind, ActivityRecord.activity_date).where(
        ActivityRecord.madrassah_id == madrassah_id,
        ActivityRecord.student_id.in_(list(student_ids)),
        ActivityRecord.kind.in_(TRACKED_KINDS),
    )
    if since is not None:
        q = q.where(ActivityRecord.activity_date >= since)
    rows = (await db.execute(q)).all()
    return [ActivityRow(student_id=r[0], kind=r[1], activity_date=r[2]) for r in rows]


async def build_leaderboard(
    db: AsyncSession,
    *,
    teacher_id: uuid.UUID,
    madrassah_id: uuid.UUID,
    filters: LeaderboardFilters,
    today: date | None = None,
) -> LeaderboardResult:
    today = today or today_utc()
    try:
        roster = await load_roster(db, teacher_id=teacher_id, madrassah_id=madrassah_id)
        rows = await load_activity(
            db,
            madrassah_id=madrassah_id,
            student_ids=[s.id for s in roster],
            since=cutoff_for(filters.time_range, today),
        )
    except SQLAlchemyError as e:
        logger.error("leaderboard fetch failed for teacher %s: %s", teacher_id, e)
        return LeaderboardResult(entries=[], error="leaderboard data unavailable")
    return LeaderboardResult(entries=aggregate(roster, rows, filters, today=today))
