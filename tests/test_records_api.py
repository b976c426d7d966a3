from datetime import date

import pytest

from conftest import add_student, bootstrap, signup

pytestmark = pytest.mark.anyio


async def test_activity_corrections_by_author_or_admin_only(client):
    admin_h, admin = await bootstrap(client)
    teacher_h, teacher = await signup(client, admin["madrassah_id"])
    other_h, other = await signup(client, admin["madrassah_id"])
    s = await add_student(client, admin_h, "Aisha", teacher["id"])
    await client.put(f"/students/{s['id']}/teachers", json={"teacher_id": other["id"]}, headers=admin_h)

    r = await client.post("/activity", json={
        "student_id": s["id"], "kind": "sabaq", "activity_date": date.today().isoformat(),
    }, headers=teacher_h)
    rec = r.json()

    r = await client.patch(f"/activity/{rec['id']}", json={"notes": "not mine"}, headers=other_h)
    assert r.status_code == 403
    r = await client.patch(f"/activity/{rec['id']}", json={"quality": "excellent"}, headers=teacher_h)
    assert r.status_code == 200 and r.json()["quality"] == "excellent"
    r = await client.patch(f"/activity/{rec['id']}", json={"notes": "checked"}, headers=admin_h)
    assert r.status_code == 200 and r.json()["notes"] == "checked"

    # no delete route
    assert (await client.delete(f"/activity/{rec['id']}", headers=admin_h)).status_code == 405


async def test_teacher_only_records_for_assigned_students(client):
    admin_h, admin = await bootstrap(client)
    teacher_h, _ = await signup(client, admin["madrassah_id"])
    s = await add_student(client, admin_h, "Unassigned")
    r = await client.post("/activity", json={
        "student_id": s["id"], "kind": "dhor", "activity_date": date.today().isoformat(),
    }, headers=teacher_h)
    assert r.status_code == 403


async def test_parent_reads_own_childs_activity(client):
    admin_h, admin = await bootstrap(client)
    teacher_h, teacher = await signup(client, admin["madrassah_id"])
    parent_h, parent = await signup(client, admin["madrassah_id"], "parent")
    child = await add_student(client, admin_h, "Child", teacher["id"], guardian_email=parent["email"])
    stranger = await add_student(client, admin_h, "Stranger", teacher["id"])
    await client.post("/activity", json={
        "student_id": child["id"], "kind": "sabaq", "activity_date": date.today().isoformat(),
    }, headers=teacher_h)

    r = await client.get(f"/activity/students/{child['id']}", headers=parent_h)
    assert r.status_code == 200 and len(r.json()) == 1
    r = await client.get(f"/activity/students/{stranger['id']}", headers=parent_h)
    assert r.status_code == 403


async def test_cross_tenant_records_are_hidden(client):
    admin_h, admin = await bootstrap(client)
    other_admin_h, _ = await bootstrap(client)
    s = await add_student(client, admin_h, "Aisha")

    r = await client.get(f"/activity/students/{s['id']}", headers=other_admin_h)
    assert r.status_code == 404
    r = await client.post("/activity", json={
        "student_id": s["id"], "kind": "sabaq", "activity_date": date.today().isoformat(),
    }, headers=other_admin_h)
    assert r.status_code == 404
    r = await client.patch(f"/students/{s['id']}/status", json={"status": "inactive"}, headers=other_admin_h)
    assert r.status_code == 404


async def test_attendance_requires_capability_and_upserts(client):
    admin_h, admin = await bootstrap(client)
    teacher_h, teacher = await signup(client, admin["madrassah_id"])
    s = await add_student(client, admin_h, "Aisha", teacher["id"])
    today = date.today().isoformat()
    payload = {"student_id": s["id"], "date": today, "status": "late", "time": "08:15", "late_reason": "bus"}

    r = await client.put("/attendance", json=payload, headers=teacher_h)
    assert r.status_code == 403

    r = await client.patch(
        f"/users/{teacher['id']}/access", json={"capabilities": ["attendance_access"]}, headers=admin_h
    )
    assert r.status_code == 200

    first = await client.put("/attendance", json=payload, headers=teacher_h)
    assert first.status_code == 200 and first.json()["late_reason"] == "bus"
    second = await client.put("/attendance", json={**payload, "status": "present"}, headers=teacher_h)
    assert second.status_code == 200
    assert second.json()["id"] == first.json()["id"]
    assert second.json()["late_reason"] is None

    rows = (await client.get("/attendance", params={"date": today}, headers=admin_h)).json()
    assert [(row["student_id"], row["status"]) for row in rows] == [(s["id"], "present")]
