import pytest

from conftest import PASSWORD, bearer, bootstrap, signup

pytestmark = pytest.mark.anyio


async def test_health(client):
    r = await client.get("/health")
    assert r.status_code == 200
    assert r.json()["status"] == "ok"


async def test_bootstrap_requires_client_credentials(client):
    r = await client.post("/auth/bootstrap-admin", json={
        "client_id": "test-client", "client_secret": "wrong", "madrassah_name": "M",
        "email": "a@example.org", "password": PASSWORD, "name": "A",
    })
    assert r.status_code == 401


async def test_signup_login_me(client):
    _, admin = await bootstrap(client)
    headers, teacher = await signup(client, admin["madrassah_id"], "teacher")
    assert teacher["role"] == "teacher"

    r = await client.get("/users/me", headers=headers)
    assert r.status_code == 200
    assert "view_reports" in r.json()["capabilities"]

    r = await client.post("/auth/login", json={"email": teacher["email"], "password": PASSWORD})
    assert r.status_code == 200
    r = await client.post("/auth/login", json={"email": teacher["email"], "password": "not-the-password"})
    assert r.status_code == 401


async def test_duplicate_email_conflicts(client):
    _, admin = await bootstrap(client)
    _, teacher = await signup(client, admin["madrassah_id"])
    r = await client.post("/auth/signup", json={
        "email": teacher["email"], "password": PASSWORD, "name": "Again", "role": "parent",
        "madrassah_id": admin["madrassah_id"],
    })
    assert r.status_code == 409


async def test_admin_role_cannot_be_self_registered(client):
    _, admin = await bootstrap(client)
    r = await client.post("/auth/signup", json={
        "email": "sneaky@example.org", "password": PASSWORD, "name": "S", "role": "admin",
        "madrassah_id": admin["madrassah_id"],
    })
    assert r.status_code == 422


async def test_refresh_rotates_tokens(client):
    _, admin = await bootstrap(client)
    r = await client.post("/auth/login", json={"email": admin["email"], "password": PASSWORD})
    tokens = r.json()["tokens"]

    r = await client.post("/auth/refresh", json={"refresh_token": tokens["refresh_token"]})
    assert r.status_code == 200
    rotated = r.json()
    # the old refresh token is revoked
    r = await client.post("/auth/refresh", json={"refresh_token": tokens["refresh_token"]})
    assert r.status_code == 401

    r = await client.post("/auth/logout", json={"refresh_token": rotated["refresh_token"]}, headers=bearer(rotated))
    assert r.status_code == 204
    r = await client.post("/auth/refresh", json={"refresh_token": rotated["refresh_token"]})
    assert r.status_code == 401


async def test_missing_or_bad_token(client):
    assert (await client.get("/users/me")).status_code == 401
    r = await client.get("/users/me", headers={"Authorization": "Bearer nope"})
    assert r.status_code == 401


async def test_admin_grants_capabilities_in_own_madrassah_only(client):
    admin_h, admin = await bootstrap(client)
    other_h, _ = await bootstrap(client)
    _, parent = await signup(client, admin["madrassah_id"], "parent")

    r = await client.patch(f"/users/{parent['id']}/access", json={"capabilities": ["attendance_access"]}, headers=admin_h)
    assert r.status_code == 200
    assert r.json()["capabilities"] == ["attendance_access"]

    r = await client.patch(f"/users/{parent['id']}/access", json={"role": "teacher"}, headers=other_h)
    assert r.status_code == 404

    r = await client.patch(f"/users/{parent['id']}/access", json={"capabilities": ["fly"]}, headers=admin_h)
    assert r.status_code == 400


async def test_non_admin_cannot_change_access(client):
    _, admin = await bootstrap(client)
    teacher_h, teacher = await signup(client, admin["madrassah_id"])
    r = await client.patch(f"/users/{teacher['id']}/access", json={"role": "admin"}, headers=teacher_h)
    assert r.status_code == 403
