"""Role resolution: one place that turns a profile into a capability set.

Every consumer (route dependencies, the access gate, the SDK) calls
:func:`resolve_capabilities` instead of re-deriving role logic.
"""
from __future__ import annotations

import asyncio
import json
import logging
import os
import uuid
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Awaitable, Callable, Dict, Iterable, Mapping, Protocol

from ..models import Capability, User, UserRole

logger = logging.getLogger(__name__)

ALL_CAPABILITIES: frozenset[str] = frozenset(c.value for c in Capability)

# admin is handled separately: it implies every capability
ROLE_IMPLIED: Dict[UserRole, frozenset[str]] = {
    UserRole.TEACHER: frozenset({Capability.VIEW_REPORTS.value}),
    UserRole.ATTENDANCE_TAKER: frozenset({Capability.ATTENDANCE_ACCESS.value}),
    UserRole.PARENT: frozenset(),
}


@dataclass(frozen=True)
class ProfileSnapshot:
    id: uuid.UUID
    role: str | None = None
    madrassah_id: uuid.UUID | None = None
    section: str | None = None
    capabilities: tuple[str, ...] = ()
    name: str | None = None

    @classmethod
    def from_user(cls, user: User) -> "ProfileSnapshot":
        return cls(
            id=user.id,
            role=user.role.value if user.role else None,
            madrassah_id=user.madrassah_id,
            section=user.section,
            capabilities=tuple(user.capabilities or ()),
            name=user.name,
        )


@dataclass(frozen=True)
class CapabilitySet:
    role: UserRole | None = None
    capabilities: frozenset[str] = frozenset()
    madrassah_id: uuid.UUID | None = None
    section: str | None = None
    is_loading: bool = False
    # "profile" (fresh), "cache" (last known role hint), "none"
    source: str = "none"

    @property
    def is_admin(self) -> bool:
        return self.role is UserRole.ADMIN

    @property
    def is_teacher(self) -> bool:
        return self.role is UserRole.TEACHER

    @property
    def is_parent(self) -> bool:
        return self.role is UserRole.PARENT

    @property
    def is_attendance_taker(self) -> bool:
        return self.role is UserRole.ATTENDANCE_TAKER

    def has_capability(self, name: str | Capability) -> bool:
        value = name.value if isinstance(name, Capability) else str(name)
        if self.is_admin:
            return True
        if value in self.capabilities:
            return True
        return self.role is not None and value in ROLE_IMPLIED.get(self.role, frozenset())

    def has_all(self, names: Iterable[str | Capability]) -> bool:
        return all(self.has_capability(n) for n in names)

    def effective_capabilities(self) -> list[str]:
        if self.is_admin:
            return sorted(ALL_CAPABILITIES | self.capabilities)
        implied = ROLE_IMPLIED.get(self.role, frozenset()) if self.role else frozenset()
        return sorted(self.capabilities | implied)


NO_CAPABILITIES = CapabilitySet()


def parse_role(value: Any) -> UserRole | None:
    if value is None or value == "":
        return None
    if isinstance(value, UserRole):
        return value
    try:
        return UserRole(str(value).strip().lower())
    except ValueError:
        logger.warning("ignoring unknown role %r", value)
        return None


def resolve_capabilities(
    profile: ProfileSnapshot | None,
    metadata: Mapping[str, Any] | None = None,
    *,
    source: str = "profile",
) -> CapabilitySet:
    """Merge a profile record with auth metadata.

    The profile role wins; the metadata role hint only applies when the
    profile carries no role. Capability flags come from the profile and are
    additive; unknown flag names are kept so custom flags still match.
    """
    metadata = metadata or {}
    if profile is None and not metadata:
        return NO_CAPABILITIES

    role = parse_role(profile.role) if profile else None
    if role is None:
        role = parse_role(metadata.get("role"))

    flags = frozenset(str(c) for c in (profile.capabilities if profile else ()))
    return CapabilitySet(
        role=role,
        capabilities=flags,
        madrassah_id=profile.madrassah_id if profile else None,
        section=profile.section if profile else None,
        source=source if role is not None or flags else "none",
    )


class RoleHintStore(Protocol):
    async def remember(self, user_id: str, role: str) -> None: ...
    async def recall(self, user_id: str) -> str | None: ...
    async def forget(self, user_id: str) -> None: ...


class MemoryRoleHintStore:
    """Process-local last-known-role cache."""

    def __init__(self) -> None:
        self._roles: Dict[str, str] = {}

    async def remember(self, user_id: str, role: str) -> None:
        self._roles[str(user_id)] = role

    async def recall(self, user_id: str) -> str | None:
        return self._roles.get(str(user_id))

    async def forget(self, user_id: str) -> None:
        self._roles.pop(str(user_id), None)


class FileRoleHintStore:
    """Last-known roles kept in a small JSON file so they survive a restart."""

    def __init__(self, path: str | os.PathLike[str]) -> None:
        self.path = Path(path)

    def _read(self) -> Dict[str, str]:
        try:
            data = json.loads(self.path.read_text(encoding="utf-8"))
        except FileNotFoundError:
            return {}
        except ValueError:
            logger.warning("ignoring unreadable role hint file %s", self.path)
            return {}
        return data if isinstance(data, dict) else {}

    def _write(self, roles: Dict[str, str]) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        tmp = self.path.with_name(self.path.name + ".tmp")
        tmp.write_text(json.dumps(roles, sort_keys=True), encoding="utf-8")
        tmp.replace(self.path)

    async def remember(self, user_id: str, role: str) -> None:
        roles = self._read()
        roles[str(user_id)] = role
        self._write(roles)

    async def recall(self, user_id: str) -> str | None:
        return self._read().get(str(user_id))

    async def forget(self, user_id: str) -> None:
        roles = self._read()
        if roles.pop(str(user_id), None) is not None:
            self._write(roles)


ProfileLoader = Callable[[str], Awaitable[ProfileSnapshot | None]]


@dataclass
class RoleResolver:
    """Resolve the capability set of a session's user.

    ``load_profile`` is the backend fetch. The last resolved role is written to
    ``hints`` so that a slow or failing fetch can degrade to it; the hint is a
    UX aid only, every privileged operation is re-checked by the service.
    """

    load_profile: ProfileLoader
    hints: RoleHintStore = field(default_factory=MemoryRoleHintStore)
    timeout: float = 3.0

    async def resolve(self, session: Any) -> CapabilitySet:
        if session is None:
            return NO_CAPABILITIES
        user_id = str(session.user_id)
        profile = await self.load_profile(user_id)
        caps = resolve_capabilities(profile, getattr(session, "metadata", None))
        await self._remember(user_id, caps)
        return caps

    async def resolve_with_fallback(self, session: Any) -> CapabilitySet:
        if session is None:
            return NO_CAPABILITIES
        task = asyncio.ensure_future(self.resolve(session))
        # the fetch keeps running after a timeout and still refreshes the hint
        task.add_done_callback(_log_late_failure)
        try:
            return await asyncio.wait_for(asyncio.shield(task), self.timeout)
        except asyncio.TimeoutError:
            logger.warning("role resolution for %s exceeded %.1fs; using cached role", session.user_id, self.timeout)
        except Exception:
            logger.exception("role resolution for %s failed; using cached role", session.user_id)
        return await self.from_hint(session)

    async def from_hint(self, session: Any) -> CapabilitySet:
        try:
            hint = await self.hints.recall(str(session.user_id))
        except Exception:
            logger.exception("role hint lookup failed")
            hint = None
        role = parse_role(hint)
        if role is None:
            return CapabilitySet(source="none")
        return CapabilitySet(role=role, source="cache")

    async def _remember(self, user_id: str, caps: CapabilitySet) -> None:
        try:
            if caps.role is not None:
                await self.hints.remember(user_id, caps.role.value)
            else:
                await self.hints.forget(user_id)
        except Exception:
            logger.exception("failed to store role hint for %s", user_id)


def _log_late_failure(task: asyncio.Future) -> None:
    if task.cancelled():
        return
    exc = task.exception()
    if exc is not None:
        logger.debug("background role resolution failed: %r", exc)
