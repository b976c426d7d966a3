import pytest

from conftest import bootstrap, signup

pytestmark = pytest.mark.anyio


async def test_inbox_refreshes_after_new_message(client):
    _, admin = await bootstrap(client)
    teacher_h, teacher = await signup(client, admin["madrassah_id"])
    parent_h, parent = await signup(client, admin["madrassah_id"], "parent")

    assert (await client.get("/messages/inbox", headers=parent_h)).json() == []

    r = await client.post("/messages", json={
        "recipient_id": parent["id"], "subject": "Progress", "body": "Great week",
    }, headers=teacher_h)
    assert r.status_code == 201
    msg = r.json()

    inbox = (await client.get("/messages/inbox", headers=parent_h)).json()
    assert [m["id"] for m in inbox] == [msg["id"]]
    sent = (await client.get("/messages/sent", headers=teacher_h)).json()
    assert [m["id"] for m in sent] == [msg["id"]]

    r = await client.post(f"/messages/{msg['id']}/read", headers=teacher_h)
    assert r.status_code == 403
    r = await client.post(f"/messages/{msg['id']}/read", headers=parent_h)
    assert r.status_code == 200 and r.json()["read"] is True
    inbox = (await client.get("/messages/inbox", headers=parent_h)).json()
    assert inbox[0]["read"] is True


async def test_cannot_message_another_madrassah(client):
    _, admin = await bootstrap(client)
    _, other_admin = await bootstrap(client)
    teacher_h, _ = await signup(client, admin["madrassah_id"])
    r = await client.post("/messages", json={
        "recipient_id": other_admin["id"], "subject": "Hi", "body": "there",
    }, headers=teacher_h)
    assert r.status_code == 404


async def test_gate_check_without_session_redirects_to_login(client):
    r = await client.post("/gate/check", json={"require_admin": True, "path": "/admin"})
    assert r.status_code == 200
    d = r.json()
    assert d["state"] == "denied_redirecting"
    assert d["redirect_to"] == "/auth"
    assert d["notice"]["title"] == "Authentication required"


async def test_gate_check_allows_admin_on_teacher_route(client):
    admin_h, _ = await bootstrap(client)
    r = await client.post("/gate/check", json={"require_teacher": True, "path": "/dashboard"}, headers=admin_h)
    d = r.json()
    assert d["state"] == "allowed" and d["render"] and not d["fail_open"]


async def test_gate_loop_guard_trips_after_three_redirects(client):
    _, admin = await bootstrap(client)
    parent_h, _ = await signup(client, admin["madrassah_id"], "parent")
    body = {"require_admin": True, "path": "/admin/settings"}
    states = [(await client.post("/gate/check", json=body, headers=parent_h)).json() for _ in range(4)]
    assert [d["state"] for d in states[:3]] == ["denied_redirecting"] * 3
    assert states[0]["notice"]["title"] == "Access Denied"
    assert states[3]["state"] == "loop_guarded"
    assert states[3]["reason"] == "redirect_loop_guard"
    assert states[3]["render"] and states[3]["fail_open"]


async def test_fail_open_gate_does_not_grant_server_access(client):
    _, admin = await bootstrap(client)
    parent_h, parent = await signup(client, admin["madrassah_id"], "parent")
    body = {"require_admin": True, "path": "/admin"}
    for _ in range(4):
        await client.post("/gate/check", json=body, headers=parent_h)
    r = await client.patch(f"/users/{parent['id']}/access", json={"role": "admin"}, headers=parent_h)
    assert r.status_code == 403


async def test_anonymous_navigation_ids_keep_separate_redirect_counts(client):
    first = {"require_teacher": True, "path": "/dashboard", "navigation_id": "browser-a"}
    second = {**first, "navigation_id": "browser-b"}
    for _ in range(4):
        tripped = (await client.post("/gate/check", json=first)).json()
    assert tripped["state"] == "loop_guarded"

    other = (await client.post("/gate/check", json=second)).json()
    assert other["state"] == "denied_redirecting"
    assert other["redirect_count"] == 1
