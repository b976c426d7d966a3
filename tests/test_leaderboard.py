import uuid
from datetime import date, timedelta

import pytest
from sqlalchemy.exc import OperationalError

from madrassah_svc.models import ActivityKind
from madrassah_svc.services.leaderboard import (
    ActivityRow, Completion, LeaderboardFilters, MetricPriority, Participation, RosterStudent, TimeRange,
    aggregate, build_leaderboard, cutoff_for,
)

TODAY = date(2024, 3, 20)
A = RosterStudent(id=uuid.uuid4(), name="A")
B = RosterStudent(id=uuid.uuid4(), name="B")


def row(student, kind, days_ago=0):
    return ActivityRow(student_id=student.id, kind=kind, activity_date=TODAY - timedelta(days=days_ago))


ROWS = [
    row(A, ActivityKind.SABAQ, 1),
    row(A, ActivityKind.SABAQ, 2),
    row(B, ActivityKind.SABAQ_PARA, 1),
]


def test_total_priority_ranks_sabaqs_first():
    entries = aggregate([A, B], ROWS, LeaderboardFilters(metric_priority=MetricPriority.TOTAL), today=TODAY)
    assert [(e.name, e.rank) for e in entries] == [("A", 1), ("B", 2)]
    assert entries[0].sabaqs == 2 and entries[0].total_points == 2
    assert entries[1].sabaq_para == 1 and entries[1].total_points == 1


def test_inactive_filter_excludes_students_with_activity():
    entries = aggregate([A, B], ROWS, LeaderboardFilters(participation=Participation.INACTIVE), today=TODAY)
    assert entries == []


def test_week_window_excludes_older_rows():
    rows = [row(A, ActivityKind.SABAQ, 8), row(A, ActivityKind.SABAQ, 3)]
    (entry,) = aggregate([A], rows, LeaderboardFilters(time_range=TimeRange.WEEK), today=TODAY)
    assert entry.sabaqs == 1
    assert entry.last_activity == TODAY - timedelta(days=3)


def test_time_window_cutoffs():
    assert cutoff_for(TimeRange.TODAY, TODAY) == TODAY
    assert cutoff_for(TimeRange.WEEK, TODAY) == TODAY - timedelta(days=7)
    assert cutoff_for(TimeRange.MONTH, TODAY) == TODAY - timedelta(days=30)
    assert cutoff_for(TimeRange.ALL, TODAY) is None


def test_rows_outside_roster_are_ignored():
    outsider = RosterStudent(id=uuid.uuid4(), name="X")
    rows = ROWS + [row(outsider, ActivityKind.SABAQ)] * 5
    entries = aggregate([A, B], rows, today=TODAY)
    assert {e.student_id for e in entries} == {A.id, B.id}


def test_roster_students_without_rows_appear_zeroed():
    c = RosterStudent(id=uuid.uuid4(), name="C")
    entries = aggregate([A, B, c], ROWS, today=TODAY)
    assert entries[-1].student_id == c.id
    assert (entries[-1].sabaqs, entries[-1].sabaq_para, entries[-1].dhor, entries[-1].rank) == (0, 0, 0, 3)
    assert entries[-1].last_activity is None


def test_ties_keep_roster_order_and_are_deterministic():
    rows = [row(A, ActivityKind.SABAQ), row(B, ActivityKind.SABAQ)]
    first = aggregate([B, A], rows, today=TODAY)
    again = aggregate([B, A], list(reversed(rows)), today=TODAY)
    assert [e.name for e in first] == ["B", "A"]
    assert [(e.student_id, e.rank) for e in first] == [(e.student_id, e.rank) for e in again]


def test_completion_requires_every_tracked_kind():
    rows = [
        row(A, ActivityKind.SABAQ), row(A, ActivityKind.SABAQ_PARA), row(A, ActivityKind.DHOR),
        row(B, ActivityKind.SABAQ),
    ]
    complete = aggregate([A, B], rows, LeaderboardFilters(completion=Completion.COMPLETE), today=TODAY)
    incomplete = aggregate([A, B], rows, LeaderboardFilters(completion=Completion.INCOMPLETE), today=TODAY)
    assert [e.name for e in complete] == ["A"]
    assert [e.name for e in incomplete] == ["B"]
    assert complete[0].rank == 1 and incomplete[0].rank == 1


def test_sabaq_para_priority():
    entries = aggregate([A, B], ROWS, LeaderboardFilters(metric_priority=MetricPriority.SABAQ_PARA), today=TODAY)
    assert [e.name for e in entries] == ["B", "A"]


class _Rows:
    def __init__(self, rows):
        self._rows = rows

    def all(self):
        return self._rows


class FailingDB:
    """Answers the first ``ok`` queries with ``rows`` and then fails."""

    def __init__(self, ok=0, rows=()):
        self.ok = ok
        self.rows = list(rows)
        self.calls = 0

    async def execute(self, stmt):
        self.calls += 1
        if self.calls <= self.ok:
            return _Rows(self.rows)
        raise OperationalError("SELECT", {}, Exception("database is locked"))


@pytest.mark.anyio
async def test_fetch_error_yields_empty_board_with_error():
    result = await build_leaderboard(
        FailingDB(), teacher_id=uuid.uuid4(), madrassah_id=uuid.uuid4(), filters=LeaderboardFilters(), today=TODAY,
    )
    assert result.entries == []
    assert result.error == "leaderboard data unavailable"


@pytest.mark.anyio
async def test_activity_error_after_roster_never_gives_partial_ranks():
    db = FailingDB(ok=1, rows=[(A.id, A.name), (B.id, B.name)])
    result = await build_leaderboard(
        db, teacher_id=uuid.uuid4(), madrassah_id=uuid.uuid4(), filters=LeaderboardFilters(), today=TODAY,
    )
    assert db.calls == 2
    assert result.entries == [] and result.error
