import uuid
from datetime import datetime, timedelta, timezone

import pytest

from madrassah_svc.services.session import Session, SessionEvent, SessionProvider

pytestmark = pytest.mark.anyio


def make_session():
    return Session(
        access_token="a", refresh_token="r", user_id=uuid.uuid4(),
        expires_at=datetime.now(timezone.utc) + timedelta(minutes=15),
    )


class FakeBackend:
    def __init__(self, session=None, fail=False):
        self.session = session
        self.fail = fail
        self.listeners = []

    async def get_session(self):
        if self.fail:
            raise RuntimeError("auth backend down")
        return self.session

    def on_session_change(self, callback):
        self.listeners.append(callback)
        return lambda: self.listeners.remove(callback)

    def emit(self, event, session):
        self.session = session
        for cb in list(self.listeners):
            cb(event, session)

    async def sign_out(self):
        if self.fail:
            raise RuntimeError("auth backend down")
        self.emit(SessionEvent.SIGNED_OUT, None)

    async def refresh_session(self):
        return make_session()


async def test_start_settles_loading_with_existing_session():
    s = make_session()
    provider = SessionProvider(FakeBackend(s))
    assert provider.is_loading
    assert await provider.start() is s
    assert not provider.is_loading and provider.user_id == s.user_id


async def test_start_settles_loading_on_backend_error():
    provider = SessionProvider(FakeBackend(fail=True))
    assert await provider.start() is None
    assert not provider.is_loading
    assert provider.error == "Failed to retrieve session"


async def test_listeners_see_sign_in_and_sign_out():
    backend = FakeBackend()
    provider = SessionProvider(backend)
    seen = []
    provider.subscribe(lambda event, session: seen.append((event, session is not None)))
    await provider.start()

    backend.emit(SessionEvent.SIGNED_IN, make_session())
    assert provider.session is not None
    assert await provider.sign_out()
    assert provider.session is None
    assert seen == [
        (SessionEvent.INITIAL, False),
        (SessionEvent.SIGNED_IN, True),
        (SessionEvent.SIGNED_OUT, False),
    ]


async def test_failed_sign_out_keeps_session():
    s = make_session()
    provider = SessionProvider(FakeBackend(s, fail=False))
    await provider.start()
    provider.backend.fail = True
    assert not await provider.sign_out()
    assert provider.session is s and provider.error == "Failed to sign out"


async def test_refresh_replaces_session_and_close_stops_updates():
    backend = FakeBackend(make_session())
    provider = SessionProvider(backend)
    await provider.start()
    old = provider.session
    await provider.refresh()
    assert provider.session is not old

    provider.close()
    backend.emit(SessionEvent.SIGNED_OUT, None)
    assert provider.session is not None
