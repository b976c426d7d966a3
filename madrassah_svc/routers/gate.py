from __future__ import annotations

from fastapi import APIRouter, Depends, Request

from ..deps import get_ctx, get_optional_session
from ..schemas import AccessDecisionOut, NoticeOut, RouteRequirementsIn
from ..services.context import AppContext
from ..services.gate import AccessDecision, RouteRequirements
from ..services.session import Session

router = APIRouter(prefix="/gate", tags=["gate"])


def decision_out(d: AccessDecision) -> AccessDecisionOut:
    return AccessDecisionOut(
        state=d.state.value,
        render=d.render,
        reason=d.reason.value,
        redirect_to=d.redirect_to,
        notice=NoticeOut(title=d.notice.title, description=d.notice.description, variant=d.notice.variant)
        if d.notice else None,
        warning=d.warning,
        fail_open=d.fail_open,
        redirect_count=d.redirect_count,
    )


def navigation_key(request: Request, session: Session | None, body: RouteRequirementsIn) -> str:
    if session is not None:
        who = f"user:{session.user_id}"
    elif body.navigation_id:
        who = f"nav:{body.navigation_id}"
    else:
        who = f"anon:{request.client.host if request.client else 'unknown'}"
    return f"{who}:{body.path}"


@router.post("/check", response_model=AccessDecisionOut)
async def check(
    body: RouteRequirementsIn,
    request: Request,
    session: Session | None = Depends(get_optional_session),
    ctx: AppContext = Depends(get_ctx),
):
    """Navigation decision for a protected route; privileged endpoints re-check on their own."""
    resolver = ctx.role_resolver()

    async def load_session():
        return session

    decision = await ctx.gate().check(
        RouteRequirements(
            require_admin=body.require_admin,
            require_teacher=body.require_teacher,
            required_capabilities=tuple(body.required_capabilities),
        ),
        key=navigation_key(request, session, body),
        load_session=load_session,
        load_role=resolver.resolve,
    )
    return decision_out(decision)
