"""Tests for the Daily Activity Tracker API endpoints."""
import os
import tempfile
import pytest
from httpx import AsyncClient, ASGITransport

# Use a separate test database
os.environ["DATABASE_URL"] = ""
os.environ.setdefault("TRACKER_DB_PATH", os.path.join(tempfile.gettempdir(), "tracker_test.db"))
os.environ.setdefault("PASSWORD_HASH_ITERATIONS", "1000")

import app as backend  # noqa: E402
from app import app, sessions  # noqa: E402
import database  # noqa: E402


def _remove_db():
    for suffix in ("", "-wal", "-shm"):
        if os.path.exists(database.DB_PATH + suffix):
            os.remove(database.DB_PATH + suffix)


@pytest.fixture(autouse=True)
def setup_db():
    """Initialize a fresh test database for each test."""
    _remove_db()
    database.init_db()
    database.ensure_demo_users()
    database.seed_data()
    sessions.clear()
    yield
    sessions.clear()
    _remove_db()


def client():
    return AsyncClient(transport=ASGITransport(app=app), base_url="http://test")


async def login(ac, username, password):
    r = await ac.post("/api/auth/login", json={"username": username, "password": password})
    assert r.status_code == 200, r.text
    return {"Authorization": f"Bearer {r.json()['token']}"}


async def login_all(ac):
    return {
        "md": await login(ac, "md", "md123"),
        "itadmin": await login(ac, "itadmin", "admin123"),
        "lead": await login(ac, "lead", "lead123"),
        "employee": await login(ac, "employee", "emp123"),
    }


PROJECT = {
    "name": "Billing revamp",
    "description": "Replace the legacy billing pipeline",
    "start_date": "2026-01-01",
    "end_date": "2026-12-31",
    "team_id": "demo-team",
}


async def create_project(ac, headers, **overrides):
    r = await ac.post("/api/projects", headers=headers, json=dict(PROJECT, **overrides))
    assert r.status_code == 200, r.text
    return r.json()["id"]


async def create_task(ac, headers, project_id, **overrides):
    body = {"title": "Write migration", "project_id": project_id, "assigned_to": "demo-employee"}
    body.update(overrides)
    r = await ac.post("/api/tasks", headers=headers, json=body)
    assert r.status_code == 200, r.text
    return r.json()["id"]


# ── Health & auth ──

@pytest.mark.asyncio
async def test_health_check():
    async with client() as ac:
        r = await ac.get("/health")
    assert r.status_code == 200
    assert r.json()["status"] == "ok"


@pytest.mark.asyncio
async def test_login_success():
    async with client() as ac:
        r = await ac.post("/api/auth/login", json={"username": "md", "password": "md123"})
    assert r.status_code == 200
    data = r.json()
    assert "token" in data
    assert data["user"]["role"] == "managing_director"
    assert "password_hash" not in data["user"]
    assert data["user"]["full_name"] == "Maria Director"


@pytest.mark.asyncio
async def test_login_with_email():
    async with client() as ac:
        r = await ac.post("/api/auth/login", json={"username": "Lead@Tracker.local", "password": "lead123"})
    assert r.status_code == 200
    assert r.json()["user"]["username"] == "lead"


@pytest.mark.asyncio
async def test_login_failure_is_audited():
    async with client() as ac:
        r = await ac.post("/api/auth/login", json={"username": "md", "password": "wrong"})
        assert r.status_code == 401
        h = await login(ac, "itadmin", "admin123")
        r = await ac.get("/api/audit/logs", headers=h, params={"action": "ACCESS_DENIED"})
    assert r.status_code == 200
    logs = r.json()["logs"]
    assert any(log["resource_type"] == "Auth" and log["user_id"] == "demo-md" for log in logs)


@pytest.mark.asyncio
async def test_missing_or_forged_token_rejected():
    async with client() as ac:
        r = await ac.get("/api/auth/me")
        assert r.status_code == 401
        r = await ac.get("/api/auth/me", headers={"Authorization": "Bearer abc.def"})
        assert r.status_code == 401
        h = await login(ac, "employee", "emp123")
        body, sig = h["Authorization"].split(" ")[1].split(".")
        r = await ac.get("/api/auth/me", headers={"Authorization": f"Bearer {body}.{'0' * len(sig)}"})
    assert r.status_code == 401


@pytest.mark.asyncio
async def test_signup_always_creates_employee():
    async with client() as ac:
        r = await ac.post("/api/auth/signup", json={
            "username": "newbie", "email": "Newbie@Example.com", "password": "secret1",
            "first_name": "New", "last_name": "Bie", "department": "Sales", "role": "it_admin",
        })
        assert r.status_code == 200
        data = r.json()
        assert data["user"]["role"] == "employee"
        assert data["user"]["email"] == "newbie@example.com"
        r = await ac.get("/api/auth/me", headers={"Authorization": f"Bearer {data['token']}"})
    assert r.status_code == 200
    assert r.json()["username"] == "newbie"


@pytest.mark.asyncio
async def test_signup_duplicate_and_invalid():
    body = {"username": "employee", "email": "x@example.com", "password": "secret1",
            "first_name": "A", "last_name": "B", "department": "Sales"}
    async with client() as ac:
        r = await ac.post("/api/auth/signup", json=body)
        assert r.status_code == 409
        r = await ac.post("/api/auth/signup", json=dict(body, username="fresh", email="not-an-email"))
        assert r.status_code == 400
        r = await ac.post("/api/auth/signup", json=dict(body, username="fresh", password="123"))
    assert r.status_code == 400


@pytest.mark.asyncio
async def test_me_includes_permissions():
    async with client() as ac:
        h = await login(ac, "employee", "emp123")
        r = await ac.get("/api/auth/me", headers=h)
    assert r.status_code == 200
    perms = r.json()["permissions"]
    assert perms["view_own_tasks"] is True
    assert perms["create_project"] is False
    assert "password_hash" not in r.json()


@pytest.mark.asyncio
async def test_logout_invalidates_token():
    async with client() as ac:
        h = await login(ac, "employee", "emp123")
        r = await ac.post("/api/auth/logout", headers=h)
        assert r.status_code == 200
        r = await ac.get("/api/auth/me", headers=h)
    assert r.status_code == 401


@pytest.mark.asyncio
async def test_logout_all_sessions():
    async with client() as ac:
        h1 = await login(ac, "lead", "lead123")
        h2 = await login(ac, "lead", "lead123")
        r = await ac.post("/api/auth/logout-all", headers=h1)
        assert r.status_code == 200
        assert r.json()["sessions_invalidated"] == 2
        assert (await ac.get("/api/auth/me", headers=h1)).status_code == 401
        assert (await ac.get("/api/auth/me", headers=h2)).status_code == 401


@pytest.mark.asyncio
async def test_concurrent_session_limit_drops_oldest():
    async with client() as ac:
        headers = [await login(ac, "employee", "emp123") for _ in range(sessions.config["max_concurrent_sessions"] + 1)]
        assert (await ac.get("/api/auth/me", headers=headers[0])).status_code == 401
        for h in headers[1:]:
            assert (await ac.get("/api/auth/me", headers=h)).status_code == 200


@pytest.mark.asyncio
async def test_refresh_token():
    async with client() as ac:
        h = await login(ac, "employee", "emp123")
        r = await ac.post("/api/auth/refresh", headers=h)
        assert r.status_code == 200
        r = await ac.get("/api/auth/me", headers={"Authorization": f"Bearer {r.json()['token']}"})
    assert r.status_code == 200


@pytest.mark.asyncio
async def test_expired_token_rejected(monkeypatch):
    async with client() as ac:
        h = await login(ac, "employee", "emp123")
        monkeypatch.setattr(backend, "TOKEN_TTL_SECONDS", -1)
        r = await ac.get("/api/auth/me", headers=h)
    assert r.status_code == 401
    assert r.json()["detail"] == "Token expired"


@pytest.mark.asyncio
async def test_change_password():
    async with client() as ac:
        h = await login(ac, "employee", "emp123")
        r = await ac.put("/api/auth/password", headers=h,
                         json={"current_password": "wrong", "new_password": "newpass1"})
        assert r.status_code == 400
        r = await ac.put("/api/auth/password", headers=h,
                         json={"current_password": "emp123", "new_password": "newpass1"})
        assert r.status_code == 200
        new_h = {"Authorization": f"Bearer {r.json()['token']}"}
        assert (await ac.get("/api/auth/me", headers=h)).status_code == 401
        assert (await ac.get("/api/auth/me", headers=new_h)).status_code == 200
        r = await ac.post("/api/auth/login", json={"username": "employee", "password": "emp123"})
        assert r.status_code == 401
        await login(ac, "employee", "newpass1")


@pytest.mark.asyncio
async def test_session_security_and_stats():
    async with client() as ac:
        hs = await login_all(ac)
        r = await ac.get("/api/auth/session", headers=hs["employee"])
        assert r.status_code == 200
        assert r.json()["valid"] is True
        assert r.json()["suspicious"] is False
        r = await ac.get("/api/auth/sessions/stats", headers=hs["employee"])
        assert r.status_code == 403
        r = await ac.get("/api/auth/sessions/stats", headers=hs["md"])
    assert r.status_code == 200
    assert r.json()["active_sessions"] == 4


# ── Users ──

@pytest.mark.asyncio
async def test_user_visibility_by_role():
    async with client() as ac:
        hs = await login_all(ac)
        emp = (await ac.get("/api/users", headers=hs["employee"])).json()
        lead = (await ac.get("/api/users", headers=hs["lead"])).json()
        md = (await ac.get("/api/users", headers=hs["md"])).json()
    assert [u["id"] for u in emp] == ["demo-employee"]
    assert {u["id"] for u in lead} == {"demo-lead", "demo-employee"}
    assert {u["id"] for u in md} >= {"demo-md", "demo-itadmin", "demo-lead", "demo-employee"}
    assert all("password_hash" not in u for u in md)


@pytest.mark.asyncio
async def test_filter_users_by_role():
    async with client() as ac:
        h = await login(ac, "md", "md123")
        r = await ac.get("/api/users", headers=h, params={"role": "team_lead"})
    assert [u["username"] for u in r.json()] == ["lead"]


@pytest.mark.asyncio
async def test_employee_cannot_view_other_user():
    async with client() as ac:
        h = await login(ac, "employee", "emp123")
        r = await ac.get("/api/users/demo-md", headers=h)
        assert r.status_code == 403
        r = await ac.get("/api/users/nobody", headers=h)
    assert r.status_code == 404


@pytest.mark.asyncio
async def test_lead_creates_only_employees():
    body = {"username": "junior", "email": "junior@tracker.local", "password": "secret1",
            "first_name": "Jun", "last_name": "Ior", "department": "Engineering", "team_id": "demo-team"}
    async with client() as ac:
        hs = await login_all(ac)
        r = await ac.post("/api/users", headers=hs["lead"], json=dict(body, role="team_lead"))
        assert r.status_code == 403
        r = await ac.post("/api/users", headers=hs["employee"], json=body)
        assert r.status_code == 403
        r = await ac.post("/api/users", headers=hs["lead"], json=body)
        assert r.status_code == 200
        assert r.json()["user"]["role"] == "employee"
        team = (await ac.get("/api/teams/demo-team", headers=hs["lead"])).json()
    assert r.json()["id"] in team["members"]


@pytest.mark.asyncio
async def test_update_user_permissions():
    async with client() as ac:
        hs = await login_all(ac)
        r = await ac.put("/api/users/demo-lead", headers=hs["employee"], json={"first_name": "X"})
        assert r.status_code == 403
        r = await ac.put("/api/users/demo-employee", headers=hs["employee"], json={"role": "it_admin"})
        assert r.status_code == 403
        r = await ac.put("/api/users/demo-employee", headers=hs["employee"], json={"first_name": "Eric"})
        assert r.status_code == 200
        r = await ac.put("/api/users/demo-employee", headers=hs["lead"], json={"last_name": "Smith"})
        assert r.status_code == 200
        me = (await ac.get("/api/auth/me", headers=hs["employee"])).json()
    assert me["first_name"] == "Eric"
    assert me["last_name"] == "Smith"
    assert me["role"] == "employee"


@pytest.mark.asyncio
async def test_only_admins_move_users_between_teams():
    async with client() as ac:
        hs = await login_all(ac)
        r = await ac.post("/api/teams", headers=hs["md"],
                          json={"name": "Finance Ops", "department": "Finance", "team_lead_id": "demo-md"})
        other = r.json()["id"]
        pid = await create_project(ac, hs["md"], team_id=other)
        assert (await ac.put(f"/api/projects/{pid}", headers=hs["lead"], json={"name": "Taken"})).status_code == 403
        r = await ac.put("/api/users/demo-lead", headers=hs["lead"], json={"team_id": other})
        assert r.status_code == 403
        r = await ac.put("/api/users/demo-lead", headers=hs["lead"], json={"first_name": "L", "department": "Finance"})
        assert r.status_code == 403
        r = await ac.put("/api/users/demo-employee", headers=hs["lead"], json={"team_id": other})
        assert r.status_code == 403
        assert (await ac.put(f"/api/projects/{pid}", headers=hs["lead"], json={"name": "Taken"})).status_code == 403
        lead = (await ac.get("/api/auth/me", headers=hs["lead"])).json()
        team = (await ac.get(f"/api/teams/{other}", headers=hs["md"])).json()
        assert lead["team_id"] == "demo-team"
        assert lead["department"] == "Engineering"
        assert lead["first_name"] == "Lena"
        assert "demo-lead" not in team["members"]

        r = await ac.put("/api/users/demo-employee", headers=hs["md"], json={"department": "Finance"})
        assert r.status_code == 200
        emp = (await ac.get("/api/auth/me", headers=hs["employee"])).json()
    assert emp["department"] == "Finance"


@pytest.mark.asyncio
async def test_duplicate_email_on_update():
    async with client() as ac:
        h = await login(ac, "md", "md123")
        r = await ac.put("/api/users/demo-employee", headers=h, json={"email": "lead@tracker.local"})
    assert r.status_code == 409


@pytest.mark.asyncio
async def test_deactivate_and_reactivate_user():
    async with client() as ac:
        hs = await login_all(ac)
        r = await ac.delete("/api/users/demo-employee", headers=hs["lead"])
        assert r.status_code == 403
        r = await ac.delete("/api/users/demo-md", headers=hs["md"])
        assert r.status_code == 400
        r = await ac.delete("/api/users/demo-employee", headers=hs["itadmin"])
        assert r.status_code == 200
        assert (await ac.get("/api/auth/me", headers=hs["employee"])).status_code == 401
        r = await ac.post("/api/auth/login", json={"username": "employee", "password": "emp123"})
        assert r.status_code == 401
        r = await ac.post("/api/users/demo-employee/reactivate", headers=hs["md"])
        assert r.status_code == 200
        await login(ac, "employee", "emp123")


# ── Departments & teams ──

@pytest.mark.asyncio
async def test_departments():
    async with client() as ac:
        hs = await login_all(ac)
        r = await ac.get("/api/departments", headers=hs["employee"])
        assert len(r.json()) == len(database.DEFAULT_DEPARTMENTS)
        r = await ac.post("/api/departments", headers=hs["employee"], json={"name": "Legal"})
        assert r.status_code == 403
        r = await ac.post("/api/departments", headers=hs["md"], json={"name": "Legal"})
        assert r.status_code == 200
        r = await ac.post("/api/departments", headers=hs["md"], json={"name": "Legal"})
    assert r.status_code == 409


@pytest.mark.asyncio
async def test_team_visibility():
    async with client() as ac:
        hs = await login_all(ac)
        emp = (await ac.get("/api/teams", headers=hs["employee"])).json()
        r = await ac.get("/api/teams/demo-team", headers=hs["employee"])
    assert [t["id"] for t in emp] == ["demo-team"]
    assert r.json()["is_member"] is True
    assert r.json()["is_team_lead"] is False


@pytest.mark.asyncio
async def test_create_team_adds_lead_as_member():
    async with client() as ac:
        hs = await login_all(ac)
        body = {"name": "Growth", "department": "Marketing", "team_lead_id": "demo-lead"}
        r = await ac.post("/api/teams", headers=hs["lead"], json=body)
        assert r.status_code == 403
        r = await ac.post("/api/teams", headers=hs["md"], json=body)
        assert r.status_code == 200
        team = (await ac.get(f"/api/teams/{r.json()['id']}", headers=hs["md"])).json()
    assert team["members"] == ["demo-lead"]
    assert team["member_count"] == 1


@pytest.mark.asyncio
async def test_team_member_management():
    async with client() as ac:
        hs = await login_all(ac)
        r = await ac.post("/api/teams/demo-team/members", headers=hs["lead"], json={"user_id": "demo-itadmin"})
        assert r.status_code == 200
        assert r.json()["member_count"] == 3
        r = await ac.post("/api/teams/demo-team/members", headers=hs["lead"], json={"user_id": "demo-itadmin"})
        assert r.json()["member_count"] == 3
        r = await ac.delete("/api/teams/demo-team/members/demo-lead", headers=hs["lead"])
        assert r.status_code == 400
        r = await ac.post("/api/teams/demo-team/members", headers=hs["employee"], json={"user_id": "demo-md"})
        assert r.status_code == 403
        r = await ac.delete("/api/teams/demo-team/members/demo-itadmin", headers=hs["lead"])
        assert r.status_code == 200
        members = (await ac.get("/api/teams/demo-team/members", headers=hs["lead"])).json()
    assert {m["id"] for m in members} == {"demo-lead", "demo-employee"}


# ── Projects ──

@pytest.mark.asyncio
async def test_create_project_permissions():
    async with client() as ac:
        hs = await login_all(ac)
        r = await ac.post("/api/projects", headers=hs["employee"], json=PROJECT)
        assert r.status_code == 403
        r = await ac.post("/api/projects", headers=hs["lead"], json=dict(PROJECT, end_date="2025-06-01"))
        assert r.status_code == 400
        r = await ac.post("/api/projects", headers=hs["lead"], json=dict(PROJECT, status="archived"))
        assert r.status_code == 400
        pid = await create_project(ac, hs["lead"])
        project = (await ac.get(f"/api/projects/{pid}", headers=hs["lead"])).json()
    assert project["status"] == "planning"
    assert project["created_by"] == "demo-lead"
    assert project["duration_days"] == 364
    assert project["can_modify"] is True


@pytest.mark.asyncio
async def test_project_visibility_for_employee():
    async with client() as ac:
        hs = await login_all(ac)
        pid = await create_project(ac, hs["lead"])
        assert (await ac.get("/api/projects", headers=hs["employee"])).json() == []
        r = await ac.get(f"/api/projects/{pid}", headers=hs["employee"])
        assert r.status_code == 403
        r = await ac.post(f"/api/projects/{pid}/members", headers=hs["lead"], json={"user_id": "demo-employee"})
        assert r.status_code == 200
        visible = (await ac.get("/api/projects", headers=hs["employee"])).json()
        mine = (await ac.get("/api/projects/my", headers=hs["employee"])).json()
    assert [p["id"] for p in visible] == [pid]
    assert [p["id"] for p in mine] == [pid]
    assert visible[0]["member_count"] == 1


@pytest.mark.asyncio
async def test_team_projects():
    async with client() as ac:
        hs = await login_all(ac)
        pid = await create_project(ac, hs["lead"])
        lead = (await ac.get("/api/projects/team", headers=hs["lead"])).json()
        md = (await ac.get("/api/projects/team", headers=hs["md"])).json()
    assert [p["id"] for p in lead] == [pid]
    assert md == []


@pytest.mark.asyncio
async def test_update_project():
    async with client() as ac:
        hs = await login_all(ac)
        pid = await create_project(ac, hs["lead"], assigned_members=["demo-employee"])
        r = await ac.put(f"/api/projects/{pid}", headers=hs["employee"], json={"status": "active"})
        assert r.status_code == 403
        r = await ac.put(f"/api/projects/{pid}", headers=hs["lead"], json={"end_date": "2025-12-01"})
        assert r.status_code == 400
        r = await ac.put(f"/api/projects/{pid}", headers=hs["lead"],
                         json={"status": "active", "assigned_members": []})
        assert r.status_code == 200
        project = (await ac.get(f"/api/projects/{pid}", headers=hs["lead"])).json()
    assert project["status"] == "active"
    assert project["assigned_members"] == []


@pytest.mark.asyncio
async def test_delete_project_removes_tasks():
    async with client() as ac:
        hs = await login_all(ac)
        pid = await create_project(ac, hs["lead"])
        tid = await create_task(ac, hs["lead"], pid)
        r = await ac.delete(f"/api/projects/{pid}", headers=hs["employee"])
        assert r.status_code == 403
        r = await ac.delete(f"/api/projects/{pid}", headers=hs["lead"])
        assert r.status_code == 200
        assert (await ac.get(f"/api/tasks/{tid}", headers=hs["md"])).status_code == 404


# ── Tasks ──

@pytest.mark.asyncio
async def test_task_lifecycle_stamps_dates_and_completion():
    async with client() as ac:
        hs = await login_all(ac)
        pid = await create_project(ac, hs["lead"])
        tid = await create_task(ac, hs["lead"], pid)

        task = (await ac.get(f"/api/tasks/{tid}", headers=hs["employee"])).json()
        assert task["status"] == "new"
        assert task["status_color"] == "#6c757d"

        r = await ac.patch(f"/api/tasks/{tid}/status", headers=hs["employee"], json={"status": "in_progress"})
        assert r.status_code == 200
        started = r.json()["start_date"]
        assert started

        r = await ac.patch(f"/api/tasks/{tid}/status", headers=hs["employee"], json={"status": "completed"})
        task = r.json()
        assert task["completed_date"]
        assert task["progress"] == 100
        assert task["start_date"] == started
        project = (await ac.get(f"/api/projects/{pid}", headers=hs["lead"])).json()
        assert project["completion_percentage"] == 100

        r = await ac.patch(f"/api/tasks/{tid}/status", headers=hs["employee"], json={"status": "in_progress"})
        assert r.json()["completed_date"] is None
        project = (await ac.get(f"/api/projects/{pid}", headers=hs["lead"])).json()
    assert project["completion_percentage"] == 0


@pytest.mark.asyncio
async def test_invalid_status_rejected():
    async with client() as ac:
        hs = await login_all(ac)
        pid = await create_project(ac, hs["lead"])
        tid = await create_task(ac, hs["lead"], pid)
        r = await ac.patch(f"/api/tasks/{tid}/status", headers=hs["employee"], json={"status": "review"})
    assert r.status_code == 400


@pytest.mark.asyncio
async def test_create_scheduled_task_stamps_date():
    async with client() as ac:
        hs = await login_all(ac)
        pid = await create_project(ac, hs["lead"])
        tid = await create_task(ac, hs["lead"], pid, status="scheduled")
        task = (await ac.get(f"/api/tasks/{tid}", headers=hs["lead"])).json()
    assert task["status"] == "scheduled"
    assert task["scheduled_date"]


@pytest.mark.asyncio
async def test_status_change_needs_permission():
    async with client() as ac:
        hs = await login_all(ac)
        pid = await create_project(ac, hs["lead"])
        tid = await create_task(ac, hs["lead"], pid, assigned_to="demo-lead")
        r = await ac.patch(f"/api/tasks/{tid}/status", headers=hs["employee"], json={"status": "completed"})
        assert r.status_code == 403
        r = await ac.get(f"/api/tasks/{tid}", headers=hs["employee"])
    assert r.status_code == 403


@pytest.mark.asyncio
async def test_employee_creates_own_task_in_member_project():
    async with client() as ac:
        hs = await login_all(ac)
        pid = await create_project(ac, hs["lead"], assigned_members=["demo-employee"])
        r = await ac.post("/api/tasks", headers=hs["employee"],
                          json={"title": "Self task", "project_id": pid, "assigned_to": "demo-lead"})
        assert r.status_code == 403
        tid = await create_task(ac, hs["employee"], pid, assigned_to=None)
        task = (await ac.get(f"/api/tasks/{tid}", headers=hs["employee"])).json()
    assert task["assigned_to"] == "demo-employee"
    assert task["created_by"] == "demo-employee"


@pytest.mark.asyncio
async def test_update_task_fields():
    async with client() as ac:
        hs = await login_all(ac)
        pid = await create_project(ac, hs["lead"])
        tid = await create_task(ac, hs["lead"], pid)
        r = await ac.put(f"/api/tasks/{tid}", headers=hs["employee"], json={"title": "Mine now"})
        assert r.status_code == 403
        r = await ac.put(f"/api/tasks/{tid}", headers=hs["lead"], json={"progress": 150})
        assert r.status_code == 400
        r = await ac.put(f"/api/tasks/{tid}", headers=hs["lead"],
                         json={"title": "Write the migration", "priority": "urgent", "status": "completed"})
    assert r.status_code == 200
    task = r.json()
    assert task["title"] == "Write the migration"
    assert task["priority_color"] == "#dc3545"
    assert task["status"] == "completed"
    assert task["completed_date"]


@pytest.mark.asyncio
async def test_update_task_requires_an_assignee():
    async with client() as ac:
        hs = await login_all(ac)
        pid = await create_project(ac, hs["lead"])
        tid = await create_task(ac, hs["lead"], pid)
        for value in (None, "", "ghost"):
            r = await ac.put(f"/api/tasks/{tid}", headers=hs["md"], json={"assigned_to": value})
            assert r.status_code == 400
        task = (await ac.get(f"/api/tasks/{tid}", headers=hs["md"])).json()
    assert task["assigned_to"] == "demo-employee"


@pytest.mark.asyncio
async def test_task_board_and_stats():
    async with client() as ac:
        hs = await login_all(ac)
        pid = await create_project(ac, hs["lead"])
        t1 = await create_task(ac, hs["lead"], pid)
        await create_task(ac, hs["lead"], pid, title="Overdue", due_date="2020-01-01")
        await create_task(ac, hs["lead"], pid, title="Lead only", assigned_to="demo-lead")
        await ac.patch(f"/api/tasks/{t1}/status", headers=hs["employee"], json={"status": "completed"})
        board = (await ac.get("/api/tasks/board", headers=hs["employee"])).json()
        stats = (await ac.get("/api/tasks/stats", headers=hs["employee"])).json()
    assert set(board) == {"new", "scheduled", "in_progress", "completed"}
    assert len(board["completed"]) == 1
    assert len(board["new"]) == 1
    assert board["scheduled"] == []
    assert stats["total"] == 2
    assert stats["overdue"] == 1


@pytest.mark.asyncio
async def test_delete_task_recomputes_completion():
    async with client() as ac:
        hs = await login_all(ac)
        pid = await create_project(ac, hs["lead"])
        t1 = await create_task(ac, hs["lead"], pid)
        t2 = await create_task(ac, hs["lead"], pid, title="Second")
        await ac.patch(f"/api/tasks/{t1}/status", headers=hs["lead"], json={"status": "completed"})
        assert (await ac.get(f"/api/projects/{pid}", headers=hs["lead"])).json()["completion_percentage"] == 50
        r = await ac.delete(f"/api/tasks/{t2}", headers=hs["lead"])
        assert r.status_code == 200
        stats = (await ac.get(f"/api/projects/{pid}/stats", headers=hs["lead"])).json()
    assert stats["completion_percentage"] == 100
    assert stats["task_count"] == 1


# ── Daily task logs ──

@pytest.mark.asyncio
async def test_daily_update_once_per_day():
    async with client() as ac:
        hs = await login_all(ac)
        pid = await create_project(ac, hs["lead"])
        tid = await create_task(ac, hs["lead"], pid)
        body = {"task_id": tid, "progress": 40, "remark": "Schema drafted", "hours_worked": 3}
        r = await ac.post("/api/task-logs", headers=hs["employee"], json=body)
        assert r.status_code == 200
        r = await ac.post("/api/task-logs", headers=hs["employee"], json=dict(body, progress=60))
        assert r.status_code == 400
        task = (await ac.get(f"/api/tasks/{tid}", headers=hs["employee"])).json()
    assert task["progress"] == 40


@pytest.mark.asyncio
async def test_daily_update_validation_and_permission():
    async with client() as ac:
        hs = await login_all(ac)
        pid = await create_project(ac, hs["lead"])
        tid = await create_task(ac, hs["lead"], pid, assigned_to="demo-lead")
        r = await ac.post("/api/task-logs", headers=hs["employee"],
                          json={"task_id": tid, "progress": 10, "remark": "peek"})
        assert r.status_code == 403
        r = await ac.post("/api/task-logs", headers=hs["lead"],
                          json={"task_id": tid, "progress": 101, "remark": "too much"})
        assert r.status_code == 400
        r = await ac.post("/api/task-logs", headers=hs["lead"],
                          json={"task_id": tid, "progress": 10, "remark": "   "})
    assert r.status_code == 400


@pytest.mark.asyncio
async def test_task_log_queries():
    async with client() as ac:
        hs = await login_all(ac)
        pid = await create_project(ac, hs["lead"])
        tid = await create_task(ac, hs["lead"], pid)
        for day, progress in (("2026-03-01", 10), ("2026-03-02", 30), ("2026-03-05", 50)):
            r = await ac.post("/api/task-logs", headers=hs["employee"],
                              json={"task_id": tid, "progress": progress, "remark": f"day {day}", "log_date": day})
            assert r.status_code == 200
        newest = (await ac.get(f"/api/task-logs/task/{tid}", headers=hs["employee"])).json()
        ranged = (await ac.get(f"/api/task-logs/task/{tid}/range", headers=hs["lead"],
                               params={"start": "2026-03-01", "end": "2026-03-02"})).json()
        missing = await ac.get(f"/api/task-logs/task/{tid}/range", headers=hs["lead"], params={"start": "2026-03-01"})
        history = (await ac.get(f"/api/task-logs/task/{tid}/history", headers=hs["lead"])).json()
        mine = (await ac.get("/api/task-logs/my-daily", headers=hs["employee"], params={"date": "2026-03-02"})).json()
    assert [log["progress"] for log in newest] == [50, 30, 10]
    assert sorted(log["progress"] for log in ranged) == [10, 30]
    assert missing.status_code == 400
    assert [h["progress"] for h in history] == [10, 30, 50]
    assert len(mine) == 1 and mine[0]["task_title"] == "Write migration"


@pytest.mark.asyncio
async def test_team_daily_updates():
    async with client() as ac:
        hs = await login_all(ac)
        pid = await create_project(ac, hs["lead"])
        tid = await create_task(ac, hs["lead"], pid)
        await ac.post("/api/task-logs", headers=hs["employee"],
                      json={"task_id": tid, "progress": 20, "remark": "started", "log_date": "2026-04-01"})
        r = await ac.get("/api/task-logs/team-daily", headers=hs["employee"], params={"date": "2026-04-01"})
        assert r.status_code == 403
        r = await ac.get("/api/task-logs/team-daily", headers=hs["lead"], params={"date": "2026-04-01"})
    assert r.status_code == 200
    assert [log["username"] for log in r.json()] == ["employee"]


@pytest.mark.asyncio
async def test_update_and_delete_task_log():
    async with client() as ac:
        hs = await login_all(ac)
        pid = await create_project(ac, hs["lead"])
        tid = await create_task(ac, hs["lead"], pid)
        r = await ac.post("/api/task-logs", headers=hs["employee"],
                          json={"task_id": tid, "progress": 20, "remark": "started"})
        log_id = r.json()["id"]
        r = await ac.put(f"/api/task-logs/{log_id}", headers=hs["lead"], json={"progress": 90})
        assert r.status_code == 403
        r = await ac.put(f"/api/task-logs/{log_id}", headers=hs["employee"], json={"progress": 35})
        assert r.status_code == 200
        assert (await ac.get(f"/api/tasks/{tid}", headers=hs["employee"])).json()["progress"] == 35
        r = await ac.delete(f"/api/task-logs/{log_id}", headers=hs["employee"])
        assert r.status_code == 403
        r = await ac.delete(f"/api/task-logs/{log_id}", headers=hs["md"])
        assert r.status_code == 200
        logs = (await ac.get(f"/api/task-logs/task/{tid}", headers=hs["employee"])).json()
    assert logs == []


# ── Dashboard, calendar, timeline ──

@pytest.mark.asyncio
async def test_dashboard_scope_by_role():
    async with client() as ac:
        hs = await login_all(ac)
        pid = await create_project(ac, hs["lead"], assigned_members=["demo-employee"])
        await create_task(ac, hs["lead"], pid)
        await create_task(ac, hs["lead"], pid, title="Lead work", assigned_to="demo-lead")
        md = (await ac.get("/api/dashboard", headers=hs["md"])).json()
        lead = (await ac.get("/api/dashboard", headers=hs["lead"])).json()
        emp = (await ac.get("/api/dashboard", headers=hs["employee"])).json()
    assert md["scope"] == "company"
    assert lead["scope"] == "team"
    assert emp["scope"] == "personal"
    assert md["stats"]["total_tasks"] == 2
    assert lead["stats"]["total_tasks"] == 2
    assert emp["stats"]["total_tasks"] == 1
    assert emp["stats"]["tasks_by_status"] == {"new": 1, "scheduled": 0, "in_progress": 0, "completed": 0}
    assert emp["permissions"]["create_project"] is False
    assert md["permissions"]["delete_user"] is True
    assert "password_hash" not in emp["user"]


@pytest.mark.asyncio
async def test_calendar_events():
    async with client() as ac:
        hs = await login_all(ac)
        pid = await create_project(ac, hs["lead"], assigned_members=["demo-employee"])
        tid = await create_task(ac, hs["lead"], pid, due_date="2026-06-15")
        events = (await ac.get("/api/dashboard/calendar", headers=hs["employee"])).json()
        june = (await ac.get("/api/dashboard/calendar", headers=hs["employee"],
                             params={"start": "2026-06-01", "end": "2026-06-30"})).json()
        bad = await ac.get("/api/dashboard/calendar", headers=hs["employee"], params={"start": "soon"})
    assert [e["id"] for e in events] == [f"{pid}-start", tid, f"{pid}-end"]
    assert events[1]["type"] == "task-due"
    assert [e["id"] for e in june] == [tid]
    assert bad.status_code == 400


@pytest.mark.asyncio
async def test_project_timeline():
    async with client() as ac:
        hs = await login_all(ac)
        empty = (await ac.get("/api/projects/timeline", headers=hs["lead"])).json()
        pid = await create_project(ac, hs["lead"], assigned_members=["demo-employee"])
        tid = await create_task(ac, hs["lead"], pid, status="scheduled")
        timeline = (await ac.get("/api/projects/timeline", headers=hs["lead"])).json()
    assert empty == {"groups": [], "items": []}
    assert timeline["groups"] == [{"id": pid, "title": "Billing revamp", "right_title": "planning | 1 members"}]
    item = timeline["items"][0]
    assert item["id"] == tid
    assert item["group"] == pid
    assert item["end_time"] > item["start_time"]


@pytest.mark.asyncio
async def test_my_permissions():
    async with client() as ac:
        h = await login(ac, "lead", "lead123")
        r = await ac.get("/api/permissions/my", headers=h)
    data = r.json()
    assert data["scope"] == "team"
    assert data["permissions"]["assign_tasks"] is True
    assert data["permissions"]["delete_user"] is False


# ── Reports ──

async def seed_report_tasks(ac, hs):
    pid = await create_project(ac, hs["lead"])
    done = await create_task(ac, hs["lead"], pid, title="Done", priority="high")
    await create_task(ac, hs["lead"], pid, title="Open")
    r = await ac.put(f"/api/tasks/{done}", headers=hs["lead"], json={"status": "completed"})
    assert r.status_code == 200
    return pid


async def report(ac, headers, report_type, **body):
    return await ac.post("/api/reports/generate", headers=headers, json=dict(body, report_type=report_type))


@pytest.mark.asyncio
async def test_reports_restricted_to_leads_and_admins():
    async with client() as ac:
        hs = await login_all(ac)
        assert (await report(ac, hs["employee"], "task_summary")).status_code == 403
        assert (await report(ac, hs["lead"], "burn_down")).status_code == 400
        r = await report(ac, hs["lead"], "task_summary", start_date="2026-02-01", end_date="2026-01-01")
        assert r.status_code == 400
        r = await report(ac, hs["lead"], "task_summary")
    assert r.status_code == 200
    assert r.json()["metadata"]["generated_by"] == "demo-lead"


@pytest.mark.asyncio
async def test_task_summary_report():
    async with client() as ac:
        hs = await login_all(ac)
        await seed_report_tasks(ac, hs)
        r = await report(ac, hs["md"], "task_summary")
        old = await report(ac, hs["md"], "task_summary", start_date="2020-01-01", end_date="2020-12-31")
    assert r.status_code == 200
    summary = r.json()["summary"]
    assert summary["total_tasks"] == 2
    assert summary["status_breakdown"] == {"completed": 1, "new": 1}
    assert summary["priority_breakdown"] == {"high": 1, "medium": 1}
    assert summary["completion_rate"] == 50
    assert {row["assigned_to"] for row in r.json()["tasks"]} == {"Erik Employee"}
    assert old.json()["summary"]["total_tasks"] == 0


@pytest.mark.asyncio
async def test_project_and_team_reports():
    async with client() as ac:
        hs = await login_all(ac)
        pid = await seed_report_tasks(ac, hs)
        projects = (await report(ac, hs["lead"], "project_progress", project_id=pid)).json()["projects"]
        teams = (await report(ac, hs["lead"], "team_performance", team_id="demo-team")).json()["teams"]
    assert [p["project_id"] for p in projects] == [pid]
    assert projects[0]["progress"]["completion_percentage"] == 50
    assert projects[0]["progress"]["pending_tasks"] == 1
    assert teams[0]["total_tasks"] == 2
    members = {m["user_id"]: m for m in teams[0]["member_performance"]}
    assert members["demo-employee"]["completed_tasks"] == 1
    assert members["demo-employee"]["completion_rate"] == 50
    assert members["demo-lead"]["total_tasks"] == 0


@pytest.mark.asyncio
async def test_reports_respect_visibility():
    async with client() as ac:
        hs = await login_all(ac)
        r = await ac.post("/api/teams", headers=hs["md"],
                          json={"name": "Finance Ops", "department": "Finance", "team_lead_id": "demo-md"})
        other = r.json()["id"]
        pid = await create_project(ac, hs["md"], team_id=other)
        assert (await report(ac, hs["lead"], "project_progress", project_id=pid)).status_code == 403
        assert (await report(ac, hs["lead"], "team_performance", team_id=other)).status_code == 403
        assert (await report(ac, hs["lead"], "user_activity", user_id="demo-md")).status_code == 403
        r = await report(ac, hs["lead"], "project_progress")
    assert pid not in [p["project_id"] for p in r.json()["projects"]]


@pytest.mark.asyncio
async def test_user_activity_report():
    async with client() as ac:
        hs = await login_all(ac)
        await seed_report_tasks(ac, hs)
        by_lead = (await report(ac, hs["lead"], "user_activity", user_id="demo-employee")).json()
        by_md = (await report(ac, hs["md"], "user_activity", user_id="demo-employee")).json()
    assert by_lead["user"]["name"] == "Erik Employee"
    assert by_lead["summary"]["total_tasks"] == 2
    assert by_lead["summary"]["completed_tasks"] == 1
    assert "activity" not in by_lead
    assert "LOGIN" in {g["action"] for g in by_md["activity"]["summary"]}


# ── Audit trail ──

@pytest.mark.asyncio
async def test_audit_logs_admin_only():
    async with client() as ac:
        hs = await login_all(ac)
        r = await ac.get("/api/audit/logs", headers=hs["lead"])
        assert r.status_code == 403
        r = await ac.get("/api/audit/logs", headers=hs["md"], params={"action": "LOGIN", "limit": 2})
    data = r.json()
    assert data["pagination"]["total"] == 4
    assert data["pagination"]["pages"] == 2
    assert len(data["logs"]) == 2
    assert all(log["action"] == "LOGIN" for log in data["logs"])


@pytest.mark.asyncio
async def test_audit_integrity_detects_tampering():
    async with client() as ac:
        hs = await login_all(ac)
        pid = await create_project(ac, hs["lead"])
        await ac.put(f"/api/projects/{pid}", headers=hs["lead"], json={"status": "active"})
        logs = (await ac.get("/api/audit/resource/Project/" + pid, headers=hs["md"])).json()
        assert {log["action"] for log in logs} == {"CREATE", "UPDATE"}
        update_log = next(log for log in logs if log["action"] == "UPDATE")
        assert update_log["changes"]["before"]["status"] == "planning"
        assert update_log["changes"]["after"]["status"] == "active"
        r = await ac.get(f"/api/audit/verify/{update_log['id']}", headers=hs["md"])
        assert r.json()["valid"] is True

        db = database.get_db()
        db.execute("UPDATE audit_logs SET action='DELETE' WHERE id=?", (update_log["id"],))
        db.commit(); db.close()

        r = await ac.get(f"/api/audit/verify/{update_log['id']}", headers=hs["md"])
        assert r.json()["valid"] is False
        r = await ac.post("/api/audit/verify-bulk", headers=hs["md"], json={})
    bulk = r.json()
    assert bulk["invalid"] == 1
    assert bulk["invalid_ids"] == [update_log["id"]]
    assert bulk["valid"] == bulk["total"] - 1


@pytest.mark.asyncio
async def test_access_denied_is_audited():
    async with client() as ac:
        hs = await login_all(ac)
        await ac.get("/api/users/demo-md", headers=hs["employee"])
        r = await ac.get("/api/audit/logs", headers=hs["md"], params={"action": "ACCESS_DENIED"})
    logs = r.json()["logs"]
    assert len(logs) == 1
    assert logs[0]["user_id"] == "demo-employee"
    assert logs[0]["resource_id"] == "demo-md"
    assert logs[0]["request_method"] == "GET"


@pytest.mark.asyncio
async def test_audit_summary_and_export():
    async with client() as ac:
        hs = await login_all(ac)
        summary = (await ac.get("/api/audit/summary", headers=hs["itadmin"])).json()
        csv_r = await ac.get("/api/audit/export", headers=hs["itadmin"], params={"format": "csv"})
        json_r = await ac.get("/api/audit/export", headers=hs["itadmin"], params={"format": "json", "action": "LOGIN"})
        bad = await ac.get("/api/audit/export", headers=hs["itadmin"], params={"format": "xml"})
    assert summary["total_activities"] == 4
    assert summary["summary"][0] == {"action": "LOGIN", "resource_type": "Auth", "count": 4,
                                     "last_activity": summary["summary"][0]["last_activity"]}
    assert csv_r.headers["content-type"].startswith("text/csv")
    assert "attachment" in csv_r.headers["content-disposition"]
    assert csv_r.content.decode("utf-8-sig").splitlines()[0].startswith("timestamp,action,resource_type")
    assert len(json_r.json()) == 4
    assert bad.status_code == 400


@pytest.mark.asyncio
async def test_audit_trail_access():
    async with client() as ac:
        hs = await login_all(ac)
        r = await ac.get("/api/audit/resource/User/demo-employee", headers=hs["employee"])
        assert r.status_code == 200
        r = await ac.get("/api/audit/resource/User/demo-lead", headers=hs["employee"])
        assert r.status_code == 403
        r = await ac.get("/api/audit/resource/Project/x", headers=hs["lead"])
        assert r.status_code == 200
        r = await ac.get("/api/audit/user/demo-employee", headers=hs["employee"])
        assert r.status_code == 200
        assert "LOGIN" in [e["action"] for e in r.json()]
        r = await ac.get("/api/audit/user/demo-lead", headers=hs["employee"])
    assert r.status_code == 403
