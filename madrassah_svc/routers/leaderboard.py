from __future__ import annotations

from uuid import UUID

from fastapi import APIRouter, Depends, HTTPException, Query
from sqlalchemy.ext.asyncio import AsyncSession

from ..deps import get_capabilities, get_ctx, get_db, get_current_user
from ..models import User
from ..schemas import LeaderboardOut, LeaderRow
from ..services.context import AppContext, leaderboard_prefix
from ..services.leaderboard import (
    Completion, LeaderboardFilters, LeaderboardResult, MetricPriority, Participation, TimeRange, build_leaderboard,
)
from ..services.roles import CapabilitySet

router = APIRouter(prefix="/leaderboard", tags=["leaderboard"])


def _allow_actor_for_teacher(user: User, caps: CapabilitySet, teacher_id: UUID) -> bool:
    """Teachers see their own board; admins see any board in their madrassah."""
    return caps.is_admin or (caps.is_teacher and user.id == teacher_id)


def leaderboard_out(result: LeaderboardResult) -> LeaderboardOut:
    return LeaderboardOut(
        entries=[
            LeaderRow(
                student_id=e.student_id, name=e.name, rank=e.rank, sabaqs=e.sabaqs, sabaq_para=e.sabaq_para,
                dhor=e.dhor, total_points=e.total_points, last_activity=e.last_activity,
            )
            for e in result.entries
        ],
        error=result.error,
    )


@router.get("/teachers/{teacher_id}", response_model=LeaderboardOut)
async def teacher_leaderboard(
    teacher_id: UUID,
    time_range: TimeRange = Query(TimeRange.WEEK, alias="timeRange"),
    metric_priority: MetricPriority = Query(MetricPriority.TOTAL, alias="metricPriority"),
    participation: Participation = Query(Participation.ALL),
    completion: Completion = Query(Completion.ALL),
    user: User = Depends(get_current_user),
    caps: CapabilitySet = Depends(get_capabilities),
    ctx: AppContext = Depends(get_ctx),
    db: AsyncSession = Depends(get_db),
):
    if not _allow_actor_for_teacher(user, caps, teacher_id):
        raise HTTPException(status_code=403, detail="Teacher or admin required")
    if user.madrassah_id is None:
        return LeaderboardOut()

    filters = LeaderboardFilters(
        time_range=time_range, metric_priority=metric_priority, participation=participation, completion=completion,
    )
    key = leaderboard_prefix(user.madrassah_id) + (str(teacher_id),) + filters.cache_key()

    async def load() -> LeaderboardResult:
        result = await build_leaderboard(db, teacher_id=teacher_id, madrassah_id=user.madrassah_id, filters=filters)
        if result.error:
            # errors are not cached
            raise _Unavailable(result)
        return result

    try:
        result = await ctx.cache.fetch(key, load)
    except _Unavailable as e:
        result = e.result
    return leaderboard_out(result)


class _Unavailable(Exception):
    def __init__(self, result: LeaderboardResult):
        super().__init__(result.error)
        self.result = result
