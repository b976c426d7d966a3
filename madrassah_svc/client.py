"""Async SDK for madrassah-svc.

``MadrassahClient`` holds the per-user state of a front end: the session, the
resolved role, the access gate and a query cache kept fresh by the change
bridge. It talks to the service over HTTP with httpx.
"""
from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Set
from uuid import UUID

import httpx
import jwt

from .services.bridge import ChangeBridge, ChangeFeed, Watch
from .services.cache import QueryCache
from .services.gate import AccessDecision, AccessGate, MemoryRedirectCounter, RouteRequirements
from .services.leaderboard import LeaderboardFilters
from .services.roles import CapabilitySet, MemoryRoleHintStore, ProfileSnapshot, RoleHintStore, RoleResolver
from .services.session import Session, SessionEvent, SessionListener, SessionProvider

logger = logging.getLogger(__name__)

CLIENT_WATCHES = (
    Watch("messages", keys=lambda e: [("inbox",)], match_field="recipient_id"),
    Watch("messages", keys=lambda e: [("sent",)], match_field="sender_id"),
    Watch("activity_records", keys=lambda e: [("leaderboard",)]),
    Watch("students_teachers", keys=lambda e: [("leaderboard",)]),
)


def session_from_tokens(access_token: str, refresh_token: str | None) -> Session:
    # the service verifies signatures; the client only reads its own claims
    claims = jwt.decode(access_token, options={"verify_signature": False})
    return Session(
        access_token=access_token,
        refresh_token=refresh_token,
        user_id=UUID(claims["sub"]),
        expires_at=datetime.fromtimestamp(claims["exp"], tz=timezone.utc),
        metadata=dict(claims.get("meta") or {}),
    )


class HttpAuthBackend:
    """Auth backend over the service's /auth endpoints."""

    def __init__(self, http: httpx.AsyncClient):
        self.http = http
        self._session: Session | None = None
        self._listeners: List[SessionListener] = []

    def on_session_change(self, callback: SessionListener) -> Callable[[], None]:
        self._listeners.append(callback)

        def _unsubscribe() -> None:
            if callback in self._listeners:
                self._listeners.remove(callback)
        return _unsubscribe

    def _emit(self, event: SessionEvent) -> None:
        for cb in list(self._listeners):
            cb(event, self._session)

    async def get_session(self) -> Session | None:
        if self._session is not None and self._session.expired and self._session.refresh_token:
            return await self.refresh_session()
        return self._session

    async def sign_in(self, email: str, password: str) -> Session:
        r = await self.http.post("/auth/login", json={"email": email, "password": password})
        r.raise_for_status()
        tokens = r.json()["tokens"]
        self._session = session_from_tokens(tokens["access_token"], tokens["refresh_token"])
        self._emit(SessionEvent.SIGNED_IN)
        return self._session

    async def refresh_session(self) -> Session | None:
        if self._session is None or not self._session.refresh_token:
            return None
        r = await self.http.post("/auth/refresh", json={"refresh_token": self._session.refresh_token})
        if r.status_code == 401:
            self._session = None
            self._emit(SessionEvent.SIGNED_OUT)
            return None
        r.raise_for_status()
        data = r.json()
        self._session = session_from_tokens(data["access_token"], data["refresh_token"])
        self._emit(SessionEvent.TOKEN_REFRESHED)
        return self._session

    async def sign_out(self) -> None:
        session = self._session
        if session is not None and session.refresh_token:
            r = await self.http.post(
                "/auth/logout",
                json={"refresh_token": session.refresh_token},
                headers={"Authorization": f"Bearer {session.access_token}"},
            )
            if r.status_code not in (204, 401):
                r.raise_for_status()
        self._session = None
        self._emit(SessionEvent.SIGNED_OUT)


class MadrassahClient:
    def __init__(
        self,
        base_url: str = "http://localhost:8000",
        *,
        http: httpx.AsyncClient | None = None,
        feed: ChangeFeed | None = None,
        role_timeout: float = 3.0,
        cache_ttl: float = 300.0,
        max_redirects: int = 3,
        hints: RoleHintStore | None = None,
    ):
        self.http = http or httpx.AsyncClient(base_url=base_url, timeout=10.0)
        self._owns_http = http is None
        self.auth = HttpAuthBackend(self.http)
        self.sessions = SessionProvider(self.auth)
        # pass a FileRoleHintStore to keep the last-known role across restarts
        self.hints = hints if hints is not None else MemoryRoleHintStore()
        self.resolver = RoleResolver(load_profile=self._load_profile, hints=self.hints, timeout=role_timeout)
        self.gate = AccessGate(
            counter=MemoryRedirectCounter(), hints=self.hints, timeout=role_timeout, max_redirects=max_redirects,
        )
        self.cache = QueryCache(ttl_seconds=cache_ttl)
        self.bridge = ChangeBridge(feed, self.cache, CLIENT_WATCHES) if feed is not None else None
        self._tasks: Set[asyncio.Task] = set()
        self._bind_lock = asyncio.Lock()
        self.sessions.subscribe(self._on_session)

    # ---- session ----
    async def start(self) -> Session | None:
        return await self.sessions.start()

    async def sign_in(self, email: str, password: str) -> Session:
        if self.sessions.is_loading:
            await self.sessions.start()
        return await self.auth.sign_in(email, password)

    async def sign_out(self) -> bool:
        return await self.sessions.sign_out()

    def _on_session(self, event: SessionEvent, session: Session | None) -> None:
        # cached views belong to one user
        if event in (SessionEvent.SIGNED_IN, SessionEvent.SIGNED_OUT):
            self.cache.invalidate_all()
        if self.bridge is not None and event is not SessionEvent.TOKEN_REFRESHED:
            self._spawn(self._rebind(str(session.user_id) if session else None))

    async def _rebind(self, user_id: str | None) -> None:
        if self.bridge is None:
            return
        # one rebind at a time so bindings never stack
        async with self._bind_lock:
            logger.debug("binding change bridge to %s", user_id)
            await self.bridge.bind(user_id)

    def _spawn(self, coro) -> None:
        task = asyncio.ensure_future(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def settle(self) -> None:
        """Wait for pending bridge rebinds and queued invalidations."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)
        if self.bridge is not None:
            await self.bridge.drain()

    async def _authorized(self, method: str, url: str, **kwargs: Any) -> httpx.Response:
        session = await self.sessions.current()
        if session is None:
            raise PermissionError("not signed in")
        headers = {"Authorization": f"Bearer {session.access_token}"}
        r = await self.http.request(method, url, headers=headers, **kwargs)
        if r.status_code == 401 and session.refresh_token:
            session = await self.sessions.refresh()
            if session is not None:
                headers = {"Authorization": f"Bearer {session.access_token}"}
                r = await self.http.request(method, url, headers=headers, **kwargs)
        r.raise_for_status()
        return r

    # ---- roles / gate ----
    async def _load_profile(self, user_id: str) -> ProfileSnapshot | None:
        data = (await self._authorized("GET", "/users/me")).json()
        if str(data["id"]) != str(user_id):
            return None
        return ProfileSnapshot(
            id=UUID(data["id"]),
            role=data.get("role"),
            madrassah_id=UUID(data["madrassah_id"]) if data.get("madrassah_id") else None,
            section=data.get("section"),
            capabilities=tuple(data.get("capabilities") or ()),
            name=data.get("name"),
        )

    async def capabilities(self) -> CapabilitySet:
        return await self.resolver.resolve_with_fallback(await self.sessions.current())

    async def check_access(self, requirements: RouteRequirements, path: str = "/") -> AccessDecision:
        return await self.gate.check(
            requirements, key=path, load_session=self.sessions.current, load_role=self.resolver.resolve,
        )

    # ---- cached views ----
    async def leaderboard(self, teacher_id: UUID, filters: LeaderboardFilters = LeaderboardFilters()) -> Dict[str, Any]:
        params = {
            "timeRange": filters.time_range.value,
            "metricPriority": filters.metric_priority.value,
            "participation": filters.participation.value,
            "completion": filters.completion.value,
        }

        async def load() -> Dict[str, Any]:
            return (await self._authorized("GET", f"/leaderboard/teachers/{teacher_id}", params=params)).json()

        return await self.cache.fetch(("leaderboard", str(teacher_id)) + filters.cache_key(), load)

    async def inbox(self) -> List[Dict[str, Any]]:
        async def load() -> List[Dict[str, Any]]:
            return (await self._authorized("GET", "/messages/inbox")).json()
        return await self.cache.fetch(("inbox",), load)

    async def sent(self) -> List[Dict[str, Any]]:
        async def load() -> List[Dict[str, Any]]:
            return (await self._authorized("GET", "/messages/sent")).json()
        return await self.cache.fetch(("sent",), load)

    async def send_message(self, recipient_id: UUID, subject: str, body: str) -> Dict[str, Any]:
        r = await self._authorized(
            "POST", "/messages", json={"recipient_id": str(recipient_id), "subject": subject, "body": body}
        )
        self.cache.invalidate(("sent",))
        return r.json()

    async def close(self) -> None:
        if self.bridge is not None:
            await self.bridge.unbind()
        for task in list(self._tasks):
            task.cancel()
        self.sessions.close()
        if self._owns_http:
            await self.http.aclose()
