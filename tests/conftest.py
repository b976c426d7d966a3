# tests/conftest.py
from __future__ import annotations

import os
import sys
import logging
import tempfile
import uuid
from typing import Any, Dict, Tuple

import pytest

# settings are read at import time, so the environment goes first
_DB_DIR = tempfile.mkdtemp(prefix="madrassah-tests-")
os.environ["DATABASE_URL"] = f"sqlite+aiosqlite:///{_DB_DIR}/test.db"
os.environ["ENABLE_NATS"] = "false"
os.environ["REDIS_URL"] = ""
os.environ["SERVICE_CLIENT_ID"] = "test-client"
os.environ["SERVICE_CLIENT_SECRET"] = "test-secret"
os.environ["CACHE_SWEEP_INTERVAL_SEC"] = "3600"

from httpx import AsyncClient, ASGITransport  # noqa: E402

PASSWORD = "correct-horse-battery"


@pytest.fixture(scope="session", autouse=True)
def _tests_log_to_stdout():
    root = logging.getLogger()
    if not any(isinstance(h, logging.StreamHandler) and getattr(h, "stream", None) is sys.stdout for h in root.handlers):
        h = logging.StreamHandler(sys.stdout)
        h.setFormatter(logging.Formatter("%(levelname)s %(name)s: %(message)s"))
        root.addHandler(h)
    root.setLevel(os.getenv("TEST_LOG_LEVEL", "INFO").upper())


# Make anyio run on asyncio
@pytest.fixture(scope="session")
def anyio_backend():
    return "asyncio"


@pytest.fixture
async def app():
    from madrassah_svc.db import engine, reset_db
    from madrassah_svc.main import app as fastapi_app

    await reset_db()
    async with fastapi_app.router.lifespan_context(fastapi_app):
        yield fastapi_app
    # pooled aiosqlite connections are tied to this test's event loop
    await engine.dispose()


@pytest.fixture
async def client(app):
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as c:
        yield c


def bearer(tokens: Dict[str, Any]) -> Dict[str, str]:
    return {"Authorization": f"Bearer {tokens['access_token']}"}


async def bootstrap(client: AsyncClient, name: str | None = None) -> Tuple[Dict[str, str], Dict[str, Any]]:
    tag = uuid.uuid4().hex[:8]
    r = await client.post("/auth/bootstrap-admin", json={
        "client_id": "test-client",
        "client_secret": "test-secret",
        "madrassah_name": name or f"Madrassah {tag}",
        "email": f"admin-{tag}@example.org",
        "password": PASSWORD,
        "name": f"Admin {tag}",
    })
    assert r.status_code == 201, r.text
    data = r.json()
    return bearer(data["tokens"]), data["user"]


async def signup(
    client: AsyncClient, madrassah_id: str, role: str = "teacher", name: str | None = None
) -> Tuple[Dict[str, str], Dict[str, Any]]:
    tag = uuid.uuid4().hex[:8]
    r = await client.post("/auth/signup", json={
        "email": f"{role}-{tag}@example.org",
        "password": PASSWORD,
        "name": name or f"{role.title()} {tag}",
        "role": role,
        "madrassah_id": madrassah_id,
    })
    assert r.status_code == 200, r.text
    data = r.json()
    return bearer(data["tokens"]), data["user"]


async def add_student(client: AsyncClient, admin_headers, name: str, teacher_id: str | None = None, **extra) -> Dict[str, Any]:
    r = await client.post("/students", json={"name": name, **extra}, headers=admin_headers)
    assert r.status_code == 201, r.text
    student = r.json()
    if teacher_id:
        r = await client.put(f"/students/{student['id']}/teachers", json={"teacher_id": teacher_id}, headers=admin_headers)
        assert r.status_code == 200, r.text
    return student
