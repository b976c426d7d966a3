from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Callable, Dict, List, Protocol

logger = logging.getLogger(__name__)


class SessionEvent(str, Enum):
    INITIAL = "INITIAL_SESSION"
    SIGNED_IN = "SIGNED_IN"
    SIGNED_OUT = "SIGNED_OUT"
    TOKEN_REFRESHED = "TOKEN_REFRESHED"


@dataclass(frozen=True)
class Session:
    access_token: str
    refresh_token: str | None
    user_id: uuid.UUID
    expires_at: datetime
    metadata: Dict[str, Any] = field(default_factory=dict)

    @property
    def expired(self) -> bool:
        return self.expires_at <= datetime.now(timezone.utc)


SessionListener = Callable[[SessionEvent, "Session | None"], Any]


class AuthBackend(Protocol):
    async def get_session(self) -> Session | None: ...
    def on_session_change(self, callback: SessionListener) -> Callable[[], None]: ...
    async def sign_out(self) -> None: ...
    async def refresh_session(self) -> Session | None: ...


class SessionProvider:
    """Owns the current session; everything else reads it.

    ``is_loading`` stays True until the first ``start()`` settles, then goes
    False whether or not a session exists or the backend failed.
    """

    def __init__(self, backend: AuthBackend):
        self.backend = backend
        self.session: Session | None = None
        self.is_loading = True
        self.error: str | None = None
        self._listeners: List[SessionListener] = []
        self._unsubscribe: Callable[[], None] | None = None

    @property
    def user_id(self) -> uuid.UUID | None:
        return self.session.user_id if self.session else None

    async def start(self) -> Session | None:
        # listen first so no change between the two steps is lost
        if self._unsubscribe is None:
            self._unsubscribe = self.backend.on_session_change(self._on_change)
        try:
            current = await self.backend.get_session()
        except Exception as e:
            logger.error("Error retrieving session: %s", e)
            self.error = "Failed to retrieve session"
            current = None
        self._set(SessionEvent.INITIAL, current)
        self.is_loading = False
        return self.session

    async def current(self) -> Session | None:
        if self.is_loading:
            await self.start()
        return self.session

    async def refresh(self) -> Session | None:
        try:
            refreshed = await self.backend.refresh_session()
        except Exception as e:
            logger.error("Error refreshing session: %s", e)
            self.error = "Failed to refresh session"
            return self.session
        if refreshed is None:
            self.error = "Failed to refresh session"
            return self.session
        self.error = None
        self._set(SessionEvent.TOKEN_REFRESHED, refreshed)
        return self.session

    async def sign_out(self) -> bool:
        try:
            await self.backend.sign_out()
        except Exception as e:
            logger.error("Error signing out: %s", e)
            self.error = "Failed to sign out"
            return False
        self.error = None
        self._set(SessionEvent.SIGNED_OUT, None)
        return True

    def subscribe(self, listener: SessionListener) -> Callable[[], None]:
        self._listeners.append(listener)

        def _unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)
        return _unsubscribe

    def close(self) -> None:
        if self._unsubscribe is not None:
            self._unsubscribe()
            self._unsubscribe = None
        self._listeners.clear()

    def _on_change(self, event: SessionEvent, session: Session | None) -> None:
        logger.debug("auth state changed: %s (%s)", event.value, session is not None)
        self._set(event, session)
        self.is_loading = False

    def _set(self, event: SessionEvent, session: Session | None) -> None:
        if session is self.session and event is not SessionEvent.INITIAL:
            return
        self.session = session
        for listener in list(self._listeners):
            try:
                listener(event, session)
            except Exception:
                logger.exception("session listener failed")

