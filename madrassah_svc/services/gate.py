"""Route-level access gate.

States: CHECKING -> ALLOWED | TIMED_OUT | DENIED_REDIRECTING | LOOP_GUARDED.
LOOP_GUARDED replaces a redirect once the per-key redirect limit is reached.

The gate is a navigation/UX decision. Rendering after a timeout or after the
redirect-loop guard trips is fail-open on purpose and is flagged as such
(``fail_open=True``); the service re-checks authorization on every privileged
request regardless of what the gate decided.
"""
from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, Protocol

from .roles import CapabilitySet, RoleHintStore

logger = logging.getLogger(__name__)


class GateState(str, Enum):
    CHECKING = "checking"
    TIMED_OUT = "timed_out"
    ALLOWED = "allowed"
    DENIED_REDIRECTING = "denied_redirecting"
    LOOP_GUARDED = "loop_guarded"


class DecisionReason(str, Enum):
    OK = "ok"
    NO_SESSION = "no_session"
    ADMIN_REQUIRED = "admin_required"
    TEACHER_REQUIRED = "teacher_required"
    CAPABILITY_MISSING = "capability_missing"
    ROLE_ERROR = "role_error"
    TIMEOUT_FALLBACK = "timeout_fallback"
    REDIRECT_LOOP_GUARD = "redirect_loop_guard"


@dataclass(frozen=True)
class RouteRequirements:
    require_admin: bool = False
    require_teacher: bool = False
    required_capabilities: tuple[str, ...] = ()


@dataclass(frozen=True)
class Notice:
    title: str
    description: str
    variant: str = "destructive"


@dataclass(frozen=True)
class AccessDecision:
    state: GateState
    render: bool
    reason: DecisionReason
    redirect_to: str | None = None
    notice: Notice | None = None
    warning: str | None = None
    fail_open: bool = False
    redirect_count: int = 0


class RedirectCounter(Protocol):
    async def get(self, key: str) -> int: ...
    async def incr(self, key: str) -> int: ...
    async def reset(self, key: str) -> None: ...


class MemoryRedirectCounter:
    def __init__(self) -> None:
        self._counts: Dict[str, int] = {}

    async def get(self, key: str) -> int:
        return self._counts.get(key, 0)

    async def incr(self, key: str) -> int:
        self._counts[key] = self._counts.get(key, 0) + 1
        return self._counts[key]

    async def reset(self, key: str) -> None:
        self._counts.pop(key, None)


SessionLoader = Callable[[], Awaitable[Any]]
RoleLoader = Callable[[Any], Awaitable[CapabilitySet]]

_NOTICES = {
    DecisionReason.NO_SESSION: Notice("Authentication required", "Please sign in to access this page"),
    DecisionReason.ADMIN_REQUIRED: Notice("Access Denied", "This area requires administrator privileges"),
    DecisionReason.TEACHER_REQUIRED: Notice("Access Denied", "This area requires teacher privileges"),
    DecisionReason.CAPABILITY_MISSING: Notice(
        "Permission Denied", "You don't have the necessary permissions to access this feature"
    ),
    DecisionReason.ROLE_ERROR: Notice("Access Denied", "Your permissions could not be verified"),
}


def evaluate_requirements(caps: CapabilitySet, req: RouteRequirements) -> DecisionReason:
    """Pure role/permission check; admins satisfy teacher requirements."""
    if req.require_admin and not caps.is_admin:
        return DecisionReason.ADMIN_REQUIRED
    if req.require_teacher and not (caps.is_teacher or caps.is_admin):
        return DecisionReason.TEACHER_REQUIRED
    if req.required_capabilities and not caps.has_all(req.required_capabilities):
        return DecisionReason.CAPABILITY_MISSING
    return DecisionReason.OK


@dataclass
class AccessGate:
    counter: RedirectCounter = field(default_factory=MemoryRedirectCounter)
    hints: RoleHintStore | None = None
    timeout: float = 3.0
    max_redirects: int = 3
    login_path: str = "/auth"
    home_path: str = "/"

    async def check(
        self,
        requirements: RouteRequirements,
        *,
        key: str,
        load_session: SessionLoader,
        load_role: RoleLoader,
    ) -> AccessDecision:
        state = GateState.CHECKING
        session_box: list[Any] = []

        async def _resolve() -> tuple[Any, CapabilitySet | None]:
            session = await load_session()
            session_box.append(session)
            if session is None:
                return None, None
            return session, await load_role(session)

        task = asyncio.ensure_future(_resolve())
        task.add_done_callback(_consume_exception)
        role_error: BaseException | None = None
        session: Any = None
        caps: CapabilitySet | None = None
        try:
            # session and role settle together; the fetch outlives the timeout
            session, caps = await asyncio.wait_for(asyncio.shield(task), self.timeout)
        except asyncio.TimeoutError:
            state = GateState.TIMED_OUT
        except Exception as exc:
            role_error = exc
            session = session_box[0] if session_box else None
            logger.error("access check for %s failed: %r", key, exc)

        if state is GateState.TIMED_OUT:
            if session_box and session_box[0] is None:
                return await self._redirect(key, DecisionReason.NO_SESSION, self.login_path)
            logger.warning("access check for %s timed out after %.1fs; continuing with limited access", key, self.timeout)
            return AccessDecision(
                state=GateState.TIMED_OUT,
                render=True,
                reason=DecisionReason.TIMEOUT_FALLBACK,
                warning="Permissions are taking longer than expected to load. Continuing with limited access.",
                fail_open=True,
                redirect_count=await self.counter.get(key),
            )

        if session is None:
            return await self._redirect(key, DecisionReason.NO_SESSION, self.login_path)
        if role_error is not None or caps is None:
            return await self._redirect(key, DecisionReason.ROLE_ERROR, self.home_path)

        reason = evaluate_requirements(caps, requirements)
        if reason is not DecisionReason.OK:
            return await self._redirect(key, reason, self.home_path)

        await self.counter.reset(key)
        if self.hints is not None and caps.role is not None:
            try:
                await self.hints.remember(str(session.user_id), caps.role.value)
            except Exception:
                logger.exception("failed to store last-known role for %s", key)
        return AccessDecision(state=GateState.ALLOWED, render=True, reason=DecisionReason.OK)

    async def _redirect(self, key: str, reason: DecisionReason, target: str) -> AccessDecision:
        attempts = await self.counter.get(key)
        if attempts >= self.max_redirects:
            logger.warning(
                "redirect loop guard for %s after %d redirects (%s); rendering without redirect",
                key, attempts, reason.value,
            )
            return AccessDecision(
                state=GateState.LOOP_GUARDED,
                render=True,
                reason=DecisionReason.REDIRECT_LOOP_GUARD,
                warning=f"Redirect limit reached ({reason.value}); server-side authorization still applies.",
                fail_open=True,
                redirect_count=attempts,
            )
        count = await self.counter.incr(key)
        logger.info("access denied for %s (%s); redirecting to %s", key, reason.value, target)
        return AccessDecision(
            state=GateState.DENIED_REDIRECTING,
            render=False,
            reason=reason,
            redirect_to=target,
            notice=_NOTICES.get(reason),
            redirect_count=count,
        )


def _consume_exception(task: asyncio.Future) -> None:
    if not task.cancelled():
        task.exception()
