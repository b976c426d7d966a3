from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass
from typing import Any, Dict

from ..core.config import Settings
from ..db import async_session_maker
from ..models import User
from .bridge import ChangeBridge, ChangeEvent, ChangeFeed, ChangeType, LocalChangeFeed, Watch
from .cache import QueryCache
from .gate import AccessGate, MemoryRedirectCounter, RedirectCounter
from .roles import MemoryRoleHintStore, ProfileSnapshot, RoleHintStore, RoleResolver

logger = logging.getLogger(__name__)

ACTIVITY_TABLE = "activity_records"
MESSAGES_TABLE = "messages"
ATTENDANCE_TABLE = "attendance"
STUDENTS_TABLE = "students"
ASSIGNMENTS_TABLE = "students_teachers"


def leaderboard_prefix(madrassah_id: Any) -> tuple:
    return ("leaderboard", str(madrassah_id))


def inbox_key(user_id: Any) -> tuple:
    return ("inbox", str(user_id))


def sent_key(user_id: Any) -> tuple:
    return ("sent", str(user_id))


SERVICE_WATCHES = (
    Watch(ACTIVITY_TABLE, keys=lambda e: [leaderboard_prefix(e.record.get("madrassah_id"))]),
    Watch(STUDENTS_TABLE, keys=lambda e: [leaderboard_prefix(e.record.get("madrassah_id"))]),
    Watch(ASSIGNMENTS_TABLE, keys=lambda e: [leaderboard_prefix(e.record.get("madrassah_id"))]),
    Watch(MESSAGES_TABLE, keys=lambda e: [inbox_key(e.record.get("recipient_id")), sent_key(e.record.get("sender_id"))]),
)


async def load_profile(user_id: str) -> ProfileSnapshot | None:
    # own session: the fetch may outlive the request that started it
    async with async_session_maker() as db:
        user = await db.get(User, uuid.UUID(str(user_id)))
        if user is None or not user.is_active:
            return None
        return ProfileSnapshot.from_user(user)


@dataclass
class AppContext:
    """Process state owned by the app lifespan and injected into routes."""

    settings: Settings
    cache: QueryCache
    feed: ChangeFeed
    bridge: ChangeBridge
    hints: RoleHintStore
    redirects: RedirectCounter

    @classmethod
    def build(cls, settings: Settings, *, feed: ChangeFeed | None = None,
              hints: RoleHintStore | None = None, redirects: RedirectCounter | None = None) -> "AppContext":
        cache = QueryCache(ttl_seconds=settings.cache_ttl_sec)
        feed = feed or LocalChangeFeed()
        return cls(
            settings=settings,
            cache=cache,
            feed=feed,
            bridge=ChangeBridge(feed, cache, SERVICE_WATCHES),
            hints=hints or MemoryRoleHintStore(),
            redirects=redirects or MemoryRedirectCounter(),
        )

    def role_resolver(self) -> RoleResolver:
        return RoleResolver(load_profile=load_profile, hints=self.hints, timeout=self.settings.role_check_timeout_sec)

    def gate(self) -> AccessGate:
        return AccessGate(
            counter=self.redirects,
            hints=self.hints,
            timeout=self.settings.role_check_timeout_sec,
            max_redirects=self.settings.max_auth_redirects,
            login_path=self.settings.login_path,
            home_path=self.settings.home_path,
        )

    async def publish_change(self, table: str, event_type: ChangeType, record: Dict[str, Any]) -> None:
        """Emit a change event; never fails the caller.

        The writing process invalidates its own views before responding so the
        writer reads its own write; other replicas follow through the feed.
        """
        evt = ChangeEvent(table=table, event_type=event_type, record={k: _plain(v) for k, v in record.items()})
        self.bridge.apply(evt)
        try:
            await self.feed.publish(evt)
        except Exception:
            logger.warning("publishing %s change on %s failed", event_type.value, table, exc_info=True)

    async def refresh_stale_views(self) -> int:
        """Polling fallback: while the feed is down, age every cached view out."""
        if self.feed.is_connected and self.bridge.is_bound:
            return self.cache.evict_expired()
        return self.cache.invalidate_all()


def _plain(v: Any) -> Any:
    if v is None or isinstance(v, (str, int, float, bool)):
        return v
    return str(v)
