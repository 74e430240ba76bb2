"""Daily Activity Tracker FastAPI backend: users, teams, projects, tasks, daily logs and the audit trail"""
import os, json, uuid, threading, logging, copy, time, hashlib, hmac, base64, secrets, traceback
from contextlib import asynccontextmanager
from datetime import datetime
from fastapi import FastAPI, HTTPException, Depends, Request
from fastapi.responses import Response
from fastapi.middleware.cors import CORSMiddleware
from pydantic import BaseModel
from typing import Optional
import re

import database
import models
import permissions
import schedule
import reports
import audit
from sessions import SessionManager

logger = logging.getLogger("uvicorn.error")

_db_ready = False

DB_INIT_MAX_RETRIES = int(os.environ.get("DB_INIT_MAX_RETRIES", 5))
DB_INIT_RETRY_DELAY = int(os.environ.get("DB_INIT_RETRY_DELAY", 3))
SESSION_CLEANUP_INTERVAL = int(os.environ.get("SESSION_CLEANUP_INTERVAL", 60 * 60))

sessions = SessionManager()

def _init_database():
    global _db_ready
    for attempt in range(1, DB_INIT_MAX_RETRIES + 1):
        try:
            database.init_db()
            database.ensure_demo_users()
            database.seed_data()
            _db_ready = True
            logger.info("Database initialized successfully")
            return
        except Exception as e:
            logger.warning("Database initialization error (attempt %d/%d): %s", attempt, DB_INIT_MAX_RETRIES, e)
            if attempt < DB_INIT_MAX_RETRIES:
                time.sleep(DB_INIT_RETRY_DELAY)
            else:
                traceback.print_exc()

def _session_janitor():
    while True:
        time.sleep(SESSION_CLEANUP_INTERVAL)
        sessions.cleanup_expired_sessions()

@asynccontextmanager
async def lifespan(app):
    threading.Thread(target=_init_database, daemon=True).start()
    threading.Thread(target=_session_janitor, daemon=True).start()
    yield
    logger.info("Application shutting down gracefully")

app = FastAPI(title="Daily Activity Tracker", lifespan=lifespan)
# CORS: Restrict to specific origins in production. Use "*" only for development.
ALLOWED_ORIGINS = os.environ.get("ALLOWED_ORIGINS", "*").split(",")
app.add_middleware(
    CORSMiddleware,
    allow_origins=ALLOWED_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"]
)

SECRET_KEY = os.environ.get("TRACKER_TOKEN_SECRET")
if not SECRET_KEY:
    if os.environ.get("ENV") == "production":
        raise ValueError("TRACKER_TOKEN_SECRET environment variable must be set in production")
    SECRET_KEY = "tracker-dev-secret"
TOKEN_TTL_SECONDS = int(os.environ.get("TRACKER_TOKEN_TTL", 60 * 60 * 24 * 7))

def _b64url_encode(data: bytes) -> str:
    return base64.urlsafe_b64encode(data).decode().rstrip("=")

def _b64url_decode(data: str) -> bytes:
    padding = "=" * ((4 - len(data) % 4) % 4)
    return base64.urlsafe_b64decode(data + padding)

def make_token(user_id, role, session_id):
    payload = {"u": user_id, "r": role, "sid": session_id,
               "iat": int(time.time()), "jti": secrets.token_hex(8)}
    body = _b64url_encode(json.dumps(payload, separators=(",", ":")).encode())
    sig = hmac.new(SECRET_KEY.encode(), body.encode(), hashlib.sha256).hexdigest()
    return f"{body}.{sig}"

def _parse_token(token: str):
    try:
        body, sig = token.split(".", 1)
    except ValueError:
        raise HTTPException(401, "Unauthorized")
    expected = hmac.new(SECRET_KEY.encode(), body.encode(), hashlib.sha256).hexdigest()
    if not hmac.compare_digest(sig, expected):
        raise HTTPException(401, "Unauthorized")
    try:
        payload = json.loads(_b64url_decode(body).decode())
    except Exception:
        raise HTTPException(401, "Unauthorized")
    if int(time.time()) - int(payload.get("iat", 0)) > TOKEN_TTL_SECONDS:
        raise HTTPException(401, "Token expired")
    return payload

def get_user(request: Request):
    token = request.headers.get("Authorization","").replace("Bearer ","")
    if not token:
        raise HTTPException(401, "Unauthorized")
    payload = _parse_token(token)
    user_id, session_id = payload.get("u"), payload.get("sid")
    if not user_id or not session_id:
        raise HTTPException(401, "Unauthorized")
    session = sessions.renew_session(session_id)
    if session is None or session["user_id"] != user_id:
        raise HTTPException(401, "Session expired")
    db = database.get_db()
    try:
        u = db.execute("SELECT * FROM users WHERE id=? AND active=1", (user_id,)).fetchone()
    finally:
        db.close()
    if not u:
        raise HTTPException(401, "Unauthorized")
    user = dict(u)
    if models.changed_password_after(user, payload.get("iat", 0)):
        raise HTTPException(401, "Password recently changed. Please log in again")
    user["session_id"] = session_id
    return user

def _public_user(u: dict) -> dict:
    out = {k: v for k, v in u.items() if k not in ("password_hash", "session_id")}
    out["full_name"] = models.full_name(u)
    return out

def _client_ip(request: Request) -> str:
    forwarded = request.headers.get("x-forwarded-for", "")
    if forwarded:
        return forwarded.split(",")[0].strip()
    return request.client.host if request.client else ""

# Whitelist of allowed table names to prevent SQL injection
ALLOWED_TABLES = {
    "users", "departments", "teams", "team_members", "projects",
    "project_members", "tasks", "task_logs", "audit_logs",
}

# Table-specific allowed order columns for validation
TABLE_ORDER_COLUMNS = {
    "users": ["id", "created_at", "username", "last_name"],
    "departments": ["id", "name"],
    "teams": ["id", "created_at", "name"],
    "team_members": ["added_at", "user_id"],
    "projects": ["id", "created_at", "name", "start_date", "end_date"],
    "project_members": ["added_at", "user_id"],
    "tasks": ["id", "created_at", "due_date"],
    "task_logs": ["id", "created_at", "log_date"],
    "audit_logs": ["id", "timestamp"],
}

def _validate_table_name(table: str):
    """Validate table name to prevent SQL injection"""
    if table not in ALLOWED_TABLES:
        raise HTTPException(400, f"Invalid table name: {table}")
    return table

def _validate_order_clause(order: str, table: str):
    """Validate ORDER BY clause to prevent SQL injection"""
    for part in (p.strip() for p in order.split(',')):
        match = re.match(r'^(\w+)(\s+(DESC|ASC))?$', part, re.IGNORECASE)
        if not match:
            raise HTTPException(400, f"Invalid order clause part: {part}")
        if match.group(1) not in TABLE_ORDER_COLUMNS.get(table, ["id"]):
            raise HTTPException(400, f"Invalid order column '{match.group(1)}' for table '{table}'")
    return order

def q(table, where="1=1", params=(), order="id DESC", limit=500):
    _validate_table_name(table)
    _validate_order_clause(order, table)
    try:
        limit = int(limit)
        if limit <= 0 or limit > 1000:
            limit = 500
    except (ValueError, TypeError):
        limit = 500
    db = database.get_db()
    try:
        rows = db.execute(f"SELECT * FROM {table} WHERE {where} ORDER BY {order} LIMIT {limit}", params).fetchall()
        return [dict(r) for r in rows]
    finally:
        db.close()

def q1(table, where, params=()):
    rows = q(table, where, params, order=TABLE_ORDER_COLUMNS[table][0], limit=1)
    return rows[0] if rows else None

def insert(table, data: dict):
    _validate_table_name(table)
    db = database.get_db()
    try:
        cols = ",".join(data.keys())
        phs = ",".join(["?"]*len(data))
        db.execute(f"INSERT INTO {table}({cols}) VALUES({phs})", list(data.values()))
        db.commit()
    finally:
        db.close()

def update(table, id_col, id_val, data: dict):
    _validate_table_name(table)
    db = database.get_db()
    try:
        sets = ",".join(f"{k}=?" for k in data.keys())
        db.execute(f"UPDATE {table} SET {sets} WHERE {id_col}=?", list(data.values())+[id_val])
        db.commit()
    finally:
        db.close()

def execute(sql, params=()):
    db = database.get_db()
    try:
        cur = db.execute(sql, params)
        db.commit()
        return cur.rowcount
    finally:
        db.close()

def fetchall(sql, params=()):
    db = database.get_db()
    try:
        return [dict(r) for r in db.execute(sql, params).fetchall()]
    finally:
        db.close()

def audit_log(request: Request, user_id, action: str, resource_type: str, resource_id=None,
              description: str = "", changes=None, error_details=None):
    audit.record(action, resource_type, resource_id, user_id,
                 description=description, changes=changes, error_details=error_details,
                 ip_address=_client_ip(request), user_agent=request.headers.get("user-agent"),
                 request_method=request.method, request_url=request.url.path)

def _deny(request: Request, user: dict, resource_type: str, resource_id, message="Access denied"):
    audit_log(request, user["id"], "ACCESS_DENIED", resource_type, resource_id,
              f"{user['username']} denied {request.method} {request.url.path}")
    raise HTTPException(403, message)

def _require(user: dict, permission: str):
    if not permissions.has_permission(user.get("role"), permission):
        raise HTTPException(403, "Insufficient permissions")

def _require_admin(user: dict):
    if not permissions.is_admin(user):
        raise HTTPException(403, "Only Managing Director or IT Admin can perform this action")

def _check(validator, data, partial=False):
    try:
        validator(data, partial)
    except (ValueError, TypeError) as e:
        raise HTTPException(400, str(e))

def _dates(data: dict, *fields):
    """Normalize the given date fields in place; bad input is a 400."""
    for field in fields:
        if field in data:
            try:
                data[field] = models.normalize_dt(data[field])
            except ValueError as e:
                raise HTTPException(400, str(e))
    return data

def _diff(before: dict, after: dict) -> dict:
    return {"before": {k: before.get(k) for k in after}, "after": after}

# ── Loaders: rows plus link-table memberships ──

def _load_projects(where="1=1", params=()):
    projects = fetchall(f"SELECT * FROM projects WHERE {where} ORDER BY created_at DESC, id", params)
    members, counts = {}, {}
    for r in fetchall("SELECT project_id, user_id FROM project_members ORDER BY added_at, user_id"):
        members.setdefault(r["project_id"], []).append(r["user_id"])
    for r in fetchall("SELECT project_id, COUNT(*) AS n FROM tasks GROUP BY project_id"):
        counts[r["project_id"]] = r["n"]
    for p in projects:
        p["assigned_members"] = members.get(p["id"], [])
        p["task_count"] = counts.get(p["id"], 0)
        p.update(models.project_metrics(p))
    return projects

def _load_tasks(where="1=1", params=()):
    rows = fetchall(f"""SELECT t.*, p.team_id AS team_id, p.name AS project_name
                        FROM tasks t LEFT JOIN projects p ON p.id=t.project_id
                        WHERE {where} ORDER BY t.created_at DESC, t.id""", params)
    return [models.decorate_task(t) for t in rows]

def _load_teams(where="1=1", params=()):
    teams = fetchall(f"SELECT * FROM teams WHERE {where} ORDER BY name, id", params)
    members = {}
    for r in fetchall("SELECT team_id, user_id FROM team_members ORDER BY added_at, user_id"):
        members.setdefault(r["team_id"], []).append(r["user_id"])
    for t in teams:
        t["members"] = members.get(t["id"], [])
        t["member_count"] = len(t["members"])
    return teams

def _get_project(pid):
    found = _load_projects("id=?", (pid,))
    if not found:
        raise HTTPException(404, "Project not found")
    return found[0]

def _get_task(tid):
    found = _load_tasks("t.id=?", (tid,))
    if not found:
        raise HTTPException(404, "Task not found")
    return found[0]

def _get_team(team_id):
    found = _load_teams("id=?", (team_id,))
    if not found:
        raise HTTPException(404, "Team not found")
    return found[0]

def _get_user_row(uid):
    u = q1("users", "id=?", (uid,))
    if not u:
        raise HTTPException(404, "User not found")
    return u

def _refresh_completion(project_id):
    statuses = [r["status"] for r in fetchall("SELECT status FROM tasks WHERE project_id=?", (project_id,))]
    update("projects", "id", project_id, {"completion_percentage": models.calculate_completion(statuses),
                                          "updated_at": models.now_iso()})

def _add_team_member(team_id, user_id):
    execute("INSERT INTO team_members(team_id,user_id) VALUES(?,?) ON CONFLICT DO NOTHING", (team_id, user_id))
    # a user's home team is the first one they join
    execute("UPDATE users SET team_id=? WHERE id=? AND (team_id IS NULL OR team_id='')", (team_id, user_id))

def _set_project_members(project_id, member_ids):
    for uid in member_ids:
        if not q1("users", "id=? AND active=1", (uid,)):
            raise HTTPException(400, f"Unknown user: {uid}")
    execute("DELETE FROM project_members WHERE project_id=?", (project_id,))
    for uid in dict.fromkeys(member_ids):
        insert("project_members", {"project_id": project_id, "user_id": uid})

@app.get("/health")
def health():
    return {"status": "ok", "db_ready": _db_ready}

# ── Auth ──
class SignupReq(BaseModel):
    username: str
    email: str
    password: str
    first_name: str
    last_name: str
    department: str

class LoginReq(BaseModel):
    username: str
    password: str

class PasswordChangeReq(BaseModel):
    current_password: str
    new_password: str

def _start_session(request: Request, user: dict):
    session = sessions.create_session(user["id"], _client_ip(request), request.headers.get("user-agent", ""))
    token = make_token(user["id"], user["role"], session["session_id"])
    return token, session

@app.post("/api/auth/signup")
def signup(body: SignupReq, request: Request):
    data = body.model_dump()
    data["email"] = data["email"].strip().lower()
    data["username"] = data["username"].strip()
    _check(models.validate_user, data)
    if q1("users", "username=?", (data["username"],)):
        raise HTTPException(409, "Username already exists")
    if q1("users", "email=?", (data["email"],)):
        raise HTTPException(409, "Email already exists")
    now = models.now_iso()
    user = {
        "id": uuid.uuid4().hex, "username": data["username"], "email": data["email"],
        "password_hash": database.hash_password(data["password"]),
        "first_name": data["first_name"].strip(), "last_name": data["last_name"].strip(),
        "role": "employee", "department": data["department"].strip(), "active": 1,
        "password_changed_at": database.password_stamp(), "created_at": now, "updated_at": now,
    }
    insert("users", user)
    audit_log(request, user["id"], "CREATE", "User", user["id"], f"Signup: {user['username']}")
    token, _ = _start_session(request, user)
    return {"token": token, "user": _public_user(user)}

@app.post("/api/auth/login")
def login(body: LoginReq, request: Request):
    ident = body.username.strip()
    u = q1("users", "username=? OR email=?", (ident, ident.lower()))
    if not u or not u.get("active") or not database.verify_password(body.password, u["password_hash"]):
        logger.warning("Failed login for %s from %s", ident, _client_ip(request))
        audit_log(request, u["id"] if u else None, "ACCESS_DENIED", "Auth", None,
                  f"Failed login attempt for {ident}")
        raise HTTPException(401, "Invalid credentials")
    now = models.now_iso()
    update("users", "id", u["id"], {"last_login": now})
    u["last_login"] = now
    token, session = _start_session(request, u)
    audit_log(request, u["id"], "LOGIN", "Auth", u["id"], f"{u['username']} logged in")
    logger.info("User %s logged in", u["username"])
    return {"token": token, "user": _public_user(u),
            "session": {"expires_at": session["expires_at"]}}

@app.post("/api/auth/logout")
def logout(request: Request, user=Depends(get_user)):
    sessions.invalidate_session(user["session_id"])
    audit_log(request, user["id"], "LOGOUT", "Auth", user["id"], f"{user['username']} logged out")
    return {"ok": True}

@app.post("/api/auth/logout-all")
def logout_all(request: Request, user=Depends(get_user)):
    count = sessions.invalidate_user_sessions(user["id"])
    audit_log(request, user["id"], "LOGOUT", "Auth", user["id"],
              f"{user['username']} logged out of {count} sessions")
    return {"ok": True, "sessions_invalidated": count}

@app.post("/api/auth/refresh")
def refresh(user=Depends(get_user)):
    return {"token": make_token(user["id"], user["role"], user["session_id"])}

@app.get("/api/auth/me")
def me(user=Depends(get_user)):
    out = _public_user(user)
    out["permissions"] = permissions.permissions_for(user["role"])
    return out

@app.get("/api/auth/session")
def session_security(request: Request, user=Depends(get_user)):
    result = sessions.validate_session_security(user["session_id"], _client_ip(request),
                                                request.headers.get("user-agent", ""))
    if result.get("suspicious"):
        logger.warning("Suspicious session for user %s", user["username"])
    return result

@app.put("/api/auth/password")
def change_password(body: PasswordChangeReq, request: Request, user=Depends(get_user)):
    if not database.verify_password(body.current_password, user["password_hash"]):
        raise HTTPException(400, "Current password is incorrect")
    _check(models.validate_user, {"password": body.new_password}, partial=True)
    update("users", "id", user["id"], {
        "password_hash": database.hash_password(body.new_password),
        "password_changed_at": database.password_stamp(),
        "updated_at": models.now_iso(),
    })
    sessions.invalidate_user_sessions(user["id"])
    audit_log(request, user["id"], "UPDATE", "User", user["id"], "Password changed")
    token, _ = _start_session(request, user)
    return {"ok": True, "token": token}

@app.get("/api/auth/sessions/stats")
def session_stats(user=Depends(get_user)):
    _require_admin(user)
    return sessions.get_stats()

# ── Users ──
class UserCreateReq(BaseModel):
    username: str
    email: str
    password: str
    first_name: str
    last_name: str
    department: str
    role: str = "employee"
    team_id: Optional[str] = None

USER_EDITABLE = {"first_name", "last_name", "email"}
USER_ADMIN_EDITABLE = USER_EDITABLE | {"department", "team_id", "role", "active"}

@app.get("/api/users")
def list_users(role: Optional[str] = None, department: Optional[str] = None,
               team_id: Optional[str] = None, include_inactive: bool = False,
               user=Depends(get_user)):
    conditions, params = [], []
    if not (include_inactive and permissions.is_admin(user)):
        conditions.append("active=1")
    if role:
        conditions.append("role=?"); params.append(role)
    if department:
        conditions.append("department=?"); params.append(department)
    if team_id:
        conditions.append("team_id=?"); params.append(team_id)
    where = " AND ".join(conditions) or "1=1"
    rows = q("users", where, tuple(params), order="last_name, username", limit=1000)
    return [_public_user(u) for u in permissions.visible_users(user, rows)]

@app.get("/api/users/{uid}")
def get_user_detail(uid: str, request: Request, user=Depends(get_user)):
    other = _get_user_row(uid)
    if not permissions.can_view_user(user, other):
        _deny(request, user, "User", uid)
    return _public_user(other)

@app.post("/api/users")
def create_user(body: UserCreateReq, request: Request, user=Depends(get_user)):
    _require(user, "create_user")
    data = body.model_dump()
    data["email"] = data["email"].strip().lower()
    data["username"] = data["username"].strip()
    _check(models.validate_user, data)
    if not permissions.is_admin(user) and data["role"] != "employee":
        raise HTTPException(403, "Team leads can only create employees")
    if q1("users", "username=?", (data["username"],)):
        raise HTTPException(409, "Username already exists")
    if q1("users", "email=?", (data["email"],)):
        raise HTTPException(409, "Email already exists")
    if data["team_id"] and not q1("teams", "id=? AND active=1", (data["team_id"],)):
        raise HTTPException(400, "Team not found")
    now = models.now_iso()
    new_user = {
        "id": uuid.uuid4().hex, "username": data["username"], "email": data["email"],
        "password_hash": database.hash_password(data["password"]),
        "first_name": data["first_name"].strip(), "last_name": data["last_name"].strip(),
        "role": data["role"], "department": data["department"].strip(), "active": 1,
        "password_changed_at": database.password_stamp(), "created_at": now, "updated_at": now,
    }
    insert("users", new_user)
    if data["team_id"]:
        _add_team_member(data["team_id"], new_user["id"])
        new_user["team_id"] = data["team_id"]
    audit_log(request, user["id"], "CREATE", "User", new_user["id"],
              f"Created user {new_user['username']} ({new_user['role']})")
    return {"ok": True, "id": new_user["id"], "user": _public_user(new_user)}

@app.put("/api/users/{uid}")
async def update_user(uid: str, request: Request, user=Depends(get_user)):
    data = await request.json()
    other = _get_user_row(uid)
    if not permissions.can_modify_user(user, other):
        _deny(request, user, "User", uid)
    allowed = USER_ADMIN_EDITABLE if permissions.is_admin(user) else USER_EDITABLE
    restricted = sorted(k for k in data if k in USER_ADMIN_EDITABLE and k not in allowed)
    if restricted:
        _deny(request, user, "User", uid, f"Only administrators can change {', '.join(restricted)}")
    changes = {k: v for k, v in data.items() if k in allowed}
    if not changes:
        raise HTTPException(400, "No editable fields")
    if "email" in changes:
        changes["email"] = (changes["email"] or "").strip().lower()
        if q1("users", "email=? AND id<>?", (changes["email"], uid)):
            raise HTTPException(409, "Email already exists")
    _check(models.validate_user, changes, partial=True)
    if changes.get("team_id") and not q1("teams", "id=?", (changes["team_id"],)):
        raise HTTPException(400, "Team not found")
    changes["updated_at"] = models.now_iso()
    update("users", "id", uid, changes)
    if changes.get("team_id") and changes["team_id"] != other.get("team_id"):
        _add_team_member(changes["team_id"], uid)
    audit_log(request, user["id"], "UPDATE", "User", uid, f"Updated user {other['username']}",
              changes=_diff(other, changes))
    return {"ok": True}

@app.delete("/api/users/{uid}")
def delete_user(uid: str, request: Request, user=Depends(get_user)):
    _require(user, "delete_user")
    other = _get_user_row(uid)
    if uid == user["id"]:
        raise HTTPException(400, "You cannot deactivate your own account")
    update("users", "id", uid, {"active": 0, "updated_at": models.now_iso()})
    sessions.invalidate_user_sessions(uid)
    audit_log(request, user["id"], "DELETE", "User", uid, f"Deactivated user {other['username']}")
    return {"ok": True}

@app.post("/api/users/{uid}/reactivate")
def reactivate_user(uid: str, request: Request, user=Depends(get_user)):
    _require_admin(user)
    other = _get_user_row(uid)
    update("users", "id", uid, {"active": 1, "updated_at": models.now_iso()})
    audit_log(request, user["id"], "UPDATE", "User", uid, f"Reactivated user {other['username']}",
              changes={"before": {"active": other["active"]}, "after": {"active": 1}})
    return {"ok": True}

# ── Departments ──
class DepartmentReq(BaseModel):
    name: str
    description: str = ""

@app.get("/api/departments")
def list_departments(user=Depends(get_user)):
    return q("departments", "active=1", order="name")

@app.post("/api/departments")
def create_department(body: DepartmentReq, request: Request, user=Depends(get_user)):
    _require_admin(user)
    name = body.name.strip()
    if not name or len(name) > 100:
        raise HTTPException(400, "Department name is required (max 100 characters)")
    if q1("departments", "name=?", (name,)):
        raise HTTPException(409, "Department already exists")
    dept = {"id": uuid.uuid4().hex, "name": name, "description": body.description, "active": 1}
    insert("departments", dept)
    audit_log(request, user["id"], "CREATE", "Department", dept["id"], f"Created department {name}")
    return {"ok": True, "id": dept["id"]}

# ── Teams ──
class TeamCreateReq(BaseModel):
    name: str
    department: str
    team_lead_id: str
    description: str = ""
    members: list[str] = []

class MemberReq(BaseModel):
    user_id: str

@app.get("/api/teams")
def list_teams(department: Optional[str] = None, lead_id: Optional[str] = None, user=Depends(get_user)):
    conditions, params = ["active=1"], []
    if department:
        conditions.append("department=?"); params.append(department)
    if lead_id:
        conditions.append("team_lead_id=?"); params.append(lead_id)
    return permissions.visible_teams(user, _load_teams(" AND ".join(conditions), tuple(params)))

@app.get("/api/teams/{team_id}")
def get_team(team_id: str, request: Request, user=Depends(get_user)):
    team = _get_team(team_id)
    if not permissions.can_view_team(user, team):
        _deny(request, user, "Team", team_id)
    team["is_member"] = user["id"] in team["members"]
    team["is_team_lead"] = team["team_lead_id"] == user["id"]
    return team

@app.get("/api/teams/{team_id}/members")
def team_members(team_id: str, request: Request, user=Depends(get_user)):
    team = _get_team(team_id)
    if not permissions.can_view_team(user, team):
        _deny(request, user, "Team", team_id)
    if not team["members"]:
        return []
    phs = ",".join("?" * len(team["members"]))
    return [_public_user(u) for u in q("users", f"id IN ({phs})", tuple(team["members"]),
                                       order="last_name, username")]

@app.post("/api/teams")
def create_team(body: TeamCreateReq, request: Request, user=Depends(get_user)):
    _require_admin(user)
    name = body.name.strip()
    if not name or len(name) > 100:
        raise HTTPException(400, "Team name is required (max 100 characters)")
    if not body.department.strip():
        raise HTTPException(400, "Department is required")
    if not q1("users", "id=? AND active=1", (body.team_lead_id,)):
        raise HTTPException(400, "Team lead not found")
    now = models.now_iso()
    team = {"id": uuid.uuid4().hex, "name": name, "department": body.department.strip(),
            "team_lead_id": body.team_lead_id, "description": body.description, "active": 1,
            "created_at": now, "updated_at": now}
    insert("teams", team)
    for uid in dict.fromkeys([body.team_lead_id] + body.members):
        if not q1("users", "id=?", (uid,)):
            raise HTTPException(400, f"Unknown user: {uid}")
        _add_team_member(team["id"], uid)
    audit_log(request, user["id"], "CREATE", "Team", team["id"], f"Created team {name}")
    return {"ok": True, "id": team["id"]}

@app.put("/api/teams/{team_id}")
async def update_team(team_id: str, request: Request, user=Depends(get_user)):
    data = await request.json()
    team = _get_team(team_id)
    if not permissions.can_manage_team(user, team):
        _deny(request, user, "Team", team_id)
    allowed = {"name", "description"}
    if permissions.is_admin(user):
        allowed |= {"department", "team_lead_id"}
    changes = {k: v for k, v in data.items() if k in allowed}
    if not changes:
        raise HTTPException(400, "No editable fields")
    if "team_lead_id" in changes and not q1("users", "id=? AND active=1", (changes["team_lead_id"],)):
        raise HTTPException(400, "Team lead not found")
    changes["updated_at"] = models.now_iso()
    update("teams", "id", team_id, changes)
    if "team_lead_id" in changes:
        _add_team_member(team_id, changes["team_lead_id"])
    audit_log(request, user["id"], "UPDATE", "Team", team_id, f"Updated team {team['name']}",
              changes=_diff(team, changes))
    return {"ok": True}

@app.delete("/api/teams/{team_id}")
def delete_team(team_id: str, request: Request, user=Depends(get_user)):
    _require_admin(user)
    team = _get_team(team_id)
    update("teams", "id", team_id, {"active": 0, "updated_at": models.now_iso()})
    audit_log(request, user["id"], "DELETE", "Team", team_id, f"Deactivated team {team['name']}")
    return {"ok": True}

@app.post("/api/teams/{team_id}/members")
def add_team_member(team_id: str, body: MemberReq, request: Request, user=Depends(get_user)):
    team = _get_team(team_id)
    if not permissions.can_manage_team(user, team):
        _deny(request, user, "Team", team_id)
    if not q1("users", "id=? AND active=1", (body.user_id,)):
        raise HTTPException(400, "User not found")
    already = body.user_id in team["members"]
    _add_team_member(team_id, body.user_id)
    if not already:
        audit_log(request, user["id"], "UPDATE", "Team", team_id, f"Added member {body.user_id}",
                  changes={"before": {"members": team["members"]},
                           "after": {"members": team["members"] + [body.user_id]}})
    return {"ok": True, "member_count": len(team["members"]) + (0 if already else 1)}

@app.delete("/api/teams/{team_id}/members/{member_id}")
def remove_team_member(team_id: str, member_id: str, request: Request, user=Depends(get_user)):
    team = _get_team(team_id)
    if not permissions.can_manage_team(user, team):
        _deny(request, user, "Team", team_id)
    if member_id == team["team_lead_id"]:
        raise HTTPException(400, "The team lead cannot be removed from the team")
    execute("DELETE FROM team_members WHERE team_id=? AND user_id=?", (team_id, member_id))
    execute("UPDATE users SET team_id=NULL WHERE id=? AND team_id=?", (member_id, team_id))
    audit_log(request, user["id"], "UPDATE", "Team", team_id, f"Removed member {member_id}")
    return {"ok": True}

# ── Projects ──
class ProjectCreateReq(BaseModel):
    name: str
    description: str
    start_date: str
    end_date: str
    status: str = "planning"
    priority: str = "medium"
    team_id: Optional[str] = None
    assigned_members: list[str] = []
    budget: float = 0

PROJECT_EDITABLE = {"name", "description", "start_date", "end_date", "status", "priority",
                    "budget", "actual_cost"}

@app.get("/api/projects")
def list_projects(status: Optional[str] = None, team_id: Optional[str] = None, user=Depends(get_user)):
    conditions, params = [], []
    if status:
        conditions.append("status=?"); params.append(status)
    if team_id:
        conditions.append("team_id=?"); params.append(team_id)
    return permissions.visible_projects(user, _load_projects(" AND ".join(conditions) or "1=1", tuple(params)))

@app.get("/api/projects/my")
def my_projects(user=Depends(get_user)):
    return [p for p in _load_projects()
            if user["id"] in p["assigned_members"] or p["created_by"] == user["id"]]

@app.get("/api/projects/team")
def team_projects(user=Depends(get_user)):
    if not user.get("team_id"):
        return []
    return permissions.visible_projects(user, _load_projects("team_id=?", (user["team_id"],)))

@app.get("/api/projects/timeline")
def project_timeline(user=Depends(get_user)):
    projects = permissions.visible_projects(user, _load_projects())
    tasks = permissions.visible_tasks(user, _load_tasks())
    return schedule.build_timeline(tasks, projects)

@app.get("/api/projects/{pid}")
def get_project(pid: str, request: Request, user=Depends(get_user)):
    project = _get_project(pid)
    if not permissions.can_view_project(user, project):
        _deny(request, user, "Project", pid)
    project["can_modify"] = permissions.can_modify_project(user, project)
    return project

@app.post("/api/projects")
def create_project(body: ProjectCreateReq, request: Request, user=Depends(get_user)):
    _require(user, "create_project")
    data = body.model_dump()
    data["team_id"] = data["team_id"] or user.get("team_id")
    _check(models.validate_project, data)
    if not data["team_id"] or not q1("teams", "id=? AND active=1", (data["team_id"],)):
        raise HTTPException(400, "A valid team_id is required")
    if not permissions.is_admin(user) and data["team_id"] != user.get("team_id"):
        raise HTTPException(403, "Team leads can only create projects for their own team")
    _dates(data, "start_date", "end_date")
    now = models.now_iso()
    project = {"id": uuid.uuid4().hex, "name": data["name"].strip(), "description": data["description"].strip(),
               "start_date": data["start_date"], "end_date": data["end_date"], "status": data["status"],
               "priority": data["priority"], "team_id": data["team_id"], "created_by": user["id"],
               "budget": data["budget"], "actual_cost": 0, "completion_percentage": 0,
               "created_at": now, "updated_at": now}
    insert("projects", project)
    _set_project_members(project["id"], data["assigned_members"])
    audit_log(request, user["id"], "CREATE", "Project", project["id"], f"Created project {project['name']}")
    return {"ok": True, "id": project["id"]}

@app.put("/api/projects/{pid}")
async def update_project(pid: str, request: Request, user=Depends(get_user)):
    data = await request.json()
    project = _get_project(pid)
    if not permissions.can_modify_project(user, project):
        _deny(request, user, "Project", pid)
    changes = {k: v for k, v in data.items() if k in PROJECT_EDITABLE}
    members = data.get("assigned_members")
    if not changes and members is None:
        raise HTTPException(400, "No editable fields")
    merged = dict(changes, start_date=changes.get("start_date", project["start_date"]),
                  end_date=changes.get("end_date", project["end_date"]))
    _check(models.validate_project, merged, partial=True)
    _dates(changes, "start_date", "end_date")
    if changes:
        changes["updated_at"] = models.now_iso()
        update("projects", "id", pid, changes)
    if members is not None:
        _set_project_members(pid, members)
        changes["assigned_members"] = members
    audit_log(request, user["id"], "UPDATE", "Project", pid, f"Updated project {project['name']}",
              changes=_diff(project, changes))
    return {"ok": True}

@app.delete("/api/projects/{pid}")
def delete_project(pid: str, request: Request, user=Depends(get_user)):
    project = _get_project(pid)
    if not permissions.can_modify_project(user, project):
        _deny(request, user, "Project", pid)
    execute("DELETE FROM task_logs WHERE task_id IN (SELECT id FROM tasks WHERE project_id=?)", (pid,))
    execute("DELETE FROM tasks WHERE project_id=?", (pid,))
    execute("DELETE FROM project_members WHERE project_id=?", (pid,))
    execute("DELETE FROM projects WHERE id=?", (pid,))
    audit_log(request, user["id"], "DELETE", "Project", pid, f"Deleted project {project['name']}",
              changes={"before": {"name": project["name"], "task_count": project["task_count"]}, "after": None})
    return {"ok": True}

@app.post("/api/projects/{pid}/members")
def add_project_member(pid: str, body: MemberReq, request: Request, user=Depends(get_user)):
    project = _get_project(pid)
    if not permissions.can_modify_project(user, project):
        _deny(request, user, "Project", pid)
    if body.user_id not in project["assigned_members"]:
        _set_project_members(pid, project["assigned_members"] + [body.user_id])
        audit_log(request, user["id"], "UPDATE", "Project", pid, f"Added member {body.user_id}")
    return {"ok": True}

@app.delete("/api/projects/{pid}/members/{member_id}")
def remove_project_member(pid: str, member_id: str, request: Request, user=Depends(get_user)):
    project = _get_project(pid)
    if not permissions.can_modify_project(user, project):
        _deny(request, user, "Project", pid)
    execute("DELETE FROM project_members WHERE project_id=? AND user_id=?", (pid, member_id))
    audit_log(request, user["id"], "UPDATE", "Project", pid, f"Removed member {member_id}")
    return {"ok": True}

@app.get("/api/projects/{pid}/tasks")
def project_tasks(pid: str, request: Request, user=Depends(get_user)):
    project = _get_project(pid)
    if not permissions.can_view_project(user, project):
        _deny(request, user, "Project", pid)
    return permissions.visible_tasks(user, _load_tasks("t.project_id=?", (pid,)))

@app.get("/api/projects/{pid}/stats")
def project_stats(pid: str, request: Request, user=Depends(get_user)):
    project = _get_project(pid)
    if not permissions.can_view_project(user, project):
        _deny(request, user, "Project", pid)
    tasks = _load_tasks("t.project_id=?", (pid,))
    return {
        "project_id": pid,
        "completion_percentage": models.calculate_completion(t["status"] for t in tasks),
        "task_count": len(tasks),
        "overdue_tasks": sum(1 for t in tasks if t["is_overdue"]),
        "by_status": models.status_stats(tasks),
        **models.project_metrics(project),
    }

# ── Tasks ──
class TaskCreateReq(BaseModel):
    title: str
    project_id: str
    description: str = ""
    assigned_to: Optional[str] = None
    status: str = "new"
    priority: str = "medium"
    due_date: Optional[str] = None
    scheduled_date: Optional[str] = None
    estimated_hours: float = 0

class StatusReq(BaseModel):
    status: str

TASK_EDITABLE = {"title", "description", "priority", "due_date", "scheduled_date", "start_date",
                 "estimated_hours", "actual_hours", "progress", "assigned_to"}
TASK_COLUMNS = {"id", "title", "description", "status", "priority", "project_id", "assigned_to",
                "created_by", "due_date", "scheduled_date", "start_date", "completed_date",
                "estimated_hours", "actual_hours", "progress", "created_at", "updated_at"}

@app.get("/api/tasks")
def list_tasks(status: Optional[str] = None, priority: Optional[str] = None,
               project_id: Optional[str] = None, assigned_to: Optional[str] = None,
               user=Depends(get_user)):
    conditions, params = [], []
    if status:
        conditions.append("t.status=?"); params.append(status)
    if priority:
        conditions.append("t.priority=?"); params.append(priority)
    if project_id:
        conditions.append("t.project_id=?"); params.append(project_id)
    if assigned_to:
        conditions.append("t.assigned_to=?"); params.append(assigned_to)
    return permissions.visible_tasks(user, _load_tasks(" AND ".join(conditions) or "1=1", tuple(params)))

@app.get("/api/tasks/board")
def task_board(project_id: Optional[str] = None, user=Depends(get_user)):
    where, params = ("t.project_id=?", (project_id,)) if project_id else ("1=1", ())
    return models.partition_by_status(permissions.visible_tasks(user, _load_tasks(where, params)))

@app.get("/api/tasks/stats")
def task_stats(user=Depends(get_user)):
    tasks = permissions.visible_tasks(user, _load_tasks())
    return {
        "total": len(tasks),
        "overdue": sum(1 for t in tasks if t["is_overdue"]),
        "by_status": models.status_stats(tasks),
    }

@app.get("/api/tasks/{tid}")
def get_task(tid: str, request: Request, user=Depends(get_user)):
    task = _get_task(tid)
    if not permissions.can_view_task(user, task):
        _deny(request, user, "Task", tid)
    return task

@app.post("/api/tasks")
def create_task(body: TaskCreateReq, request: Request, user=Depends(get_user)):
    data = body.model_dump()
    data["assigned_to"] = data["assigned_to"] or user["id"]
    _check(models.validate_task, data)
    project = _get_project(data["project_id"])
    may_assign = data["assigned_to"] == user["id"] or permissions.has_permission(user["role"], "assign_tasks")
    if not (permissions.can_modify_project(user, project)
            or (may_assign and permissions.can_view_project(user, project))):
        _deny(request, user, "Project", project["id"], "You cannot add tasks to this project")
    if not q1("users", "id=? AND active=1", (data["assigned_to"],)):
        raise HTTPException(400, "Assignee not found")
    _dates(data, "due_date", "scheduled_date")
    now = models.now_iso()
    task = {"id": uuid.uuid4().hex, "title": data["title"].strip(), "description": data["description"],
            "priority": data["priority"], "project_id": project["id"], "assigned_to": data["assigned_to"],
            "created_by": user["id"], "due_date": data["due_date"], "scheduled_date": data["scheduled_date"],
            "estimated_hours": data["estimated_hours"], "actual_hours": 0, "progress": 0,
            "created_at": now, "updated_at": now}
    models.update_status(task, data["status"])
    insert("tasks", {k: v for k, v in task.items() if k in TASK_COLUMNS})
    _refresh_completion(project["id"])
    audit_log(request, user["id"], "CREATE", "Task", task["id"], f"Created task {task['title']}")
    return {"ok": True, "id": task["id"]}

@app.put("/api/tasks/{tid}")
async def update_task(tid: str, request: Request, user=Depends(get_user)):
    data = await request.json()
    task = _get_task(tid)
    project = _get_project(task["project_id"])
    if not permissions.can_modify_task(user, task, project):
        _deny(request, user, "Task", tid)
    changes = {k: v for k, v in data.items() if k in TASK_EDITABLE}
    to_check = dict(changes)
    if "status" in data:
        to_check["status"] = data["status"]
    _check(models.validate_task, to_check, partial=True)
    _dates(changes, "due_date", "scheduled_date", "start_date")
    if "assigned_to" in changes and not (changes["assigned_to"] and
                                         q1("users", "id=? AND active=1", (changes["assigned_to"],))):
        raise HTTPException(400, "Assignee not found")
    before = dict(task)
    if "status" in data and data["status"] != task["status"]:
        working = {k: v for k, v in task.items() if k in TASK_COLUMNS}
        working.update(changes)
        changes.update(models.update_status(working, data["status"]))
    if not changes:
        raise HTTPException(400, "No editable fields")
    changes["updated_at"] = models.now_iso()
    update("tasks", "id", tid, changes)
    if "status" in changes:
        _refresh_completion(task["project_id"])
    audit_log(request, user["id"], "UPDATE", "Task", tid, f"Updated task {task['title']}",
              changes=_diff(before, changes))
    return _get_task(tid)

@app.patch("/api/tasks/{tid}/status")
def update_task_status(tid: str, body: StatusReq, request: Request, user=Depends(get_user)):
    task = _get_task(tid)
    project = _get_project(task["project_id"])
    if not permissions.can_update_task_status(user, task, project):
        _deny(request, user, "Task", tid, "You cannot change the status of this task")
    before = dict(task)
    try:
        changes = models.update_status(task, body.status)
    except ValueError as e:
        raise HTTPException(400, str(e))
    changes["updated_at"] = models.now_iso()
    update("tasks", "id", tid, changes)
    _refresh_completion(task["project_id"])
    audit_log(request, user["id"], "UPDATE", "Task", tid,
              f"Status {before['status']} -> {body.status}", changes=_diff(before, changes))
    return _get_task(tid)

@app.delete("/api/tasks/{tid}")
def delete_task(tid: str, request: Request, user=Depends(get_user)):
    task = _get_task(tid)
    project = _get_project(task["project_id"])
    if not permissions.can_modify_task(user, task, project):
        _deny(request, user, "Task", tid)
    execute("DELETE FROM task_logs WHERE task_id=?", (tid,))
    execute("DELETE FROM tasks WHERE id=?", (tid,))
    _refresh_completion(task["project_id"])
    audit_log(request, user["id"], "DELETE", "Task", tid, f"Deleted task {task['title']}")
    return {"ok": True}

# ── Daily task logs ──
class TaskLogCreateReq(BaseModel):
    task_id: str
    progress: int
    remark: str
    hours_worked: float = 0
    log_date: Optional[str] = None

def _task_for_logs(tid, request, user, write=False):
    task = _get_task(tid)
    allowed = permissions.can_log_progress(user, task) if write else permissions.can_view_task(user, task)
    if not allowed:
        _deny(request, user, "Task", tid)
    return task

@app.post("/api/task-logs")
def create_task_log(body: TaskLogCreateReq, request: Request, user=Depends(get_user)):
    data = body.model_dump()
    _check(models.validate_task_log, data)
    task = _task_for_logs(data["task_id"], request, user, write=True)
    try:
        log_date = models.normalize_dt(data["log_date"]) or models.now_iso()
        day_start, day_end = models.day_bounds(log_date)
    except ValueError as e:
        raise HTTPException(400, str(e))
    if q1("task_logs", "task_id=? AND updated_by=? AND log_date BETWEEN ? AND ?",
          (task["id"], user["id"], day_start, day_end)):
        raise HTTPException(400, "A daily update for this task already exists for this day")
    now = models.now_iso()
    entry = {"id": uuid.uuid4().hex, "task_id": task["id"], "updated_by": user["id"], "log_date": log_date,
             "progress": data["progress"], "remark": data["remark"].strip(),
             "hours_worked": data["hours_worked"], "created_at": now, "updated_at": now}
    insert("task_logs", entry)
    update("tasks", "id", task["id"], {"progress": data["progress"], "updated_at": now})
    audit_log(request, user["id"], "CREATE", "TaskLog", entry["id"],
              f"Daily update on {task['title']}: {data['progress']}%")
    return {"ok": True, "id": entry["id"]}

@app.get("/api/task-logs/my-daily")
def my_daily_logs(date: Optional[str] = None, user=Depends(get_user)):
    try:
        day_start, day_end = models.day_bounds(date or models.now_iso())
    except ValueError as e:
        raise HTTPException(400, str(e))
    return fetchall("""SELECT l.*, t.title AS task_title, t.project_id FROM task_logs l
                       JOIN tasks t ON t.id=l.task_id
                       WHERE l.updated_by=? AND l.log_date BETWEEN ? AND ?
                       ORDER BY l.log_date DESC""", (user["id"], day_start, day_end))

@app.get("/api/task-logs/team-daily")
def team_daily_logs(date: Optional[str] = None, team_id: Optional[str] = None, user=Depends(get_user)):
    if user["role"] not in permissions.ADMIN_ROLES + ("team_lead",):
        raise HTTPException(403, "Only team leads and admins can view team updates")
    team_id = team_id or user.get("team_id")
    if not team_id:
        return []
    if not permissions.is_admin(user) and team_id != user.get("team_id"):
        raise HTTPException(403, "You can only view your own team's updates")
    try:
        day_start, day_end = models.day_bounds(date or models.now_iso())
    except ValueError as e:
        raise HTTPException(400, str(e))
    return fetchall("""SELECT l.*, t.title AS task_title, u.username, u.first_name, u.last_name
                       FROM task_logs l
                       JOIN tasks t ON t.id=l.task_id
                       JOIN team_members m ON m.user_id=l.updated_by
                       JOIN users u ON u.id=l.updated_by
                       WHERE m.team_id=? AND l.log_date BETWEEN ? AND ?
                       ORDER BY l.log_date DESC""", (team_id, day_start, day_end))

@app.get("/api/task-logs/task/{tid}")
def task_logs(tid: str, request: Request, limit: int = 30, user=Depends(get_user)):
    _task_for_logs(tid, request, user)
    return q("task_logs", "task_id=?", (tid,), order="log_date DESC, created_at DESC", limit=limit)

@app.get("/api/task-logs/task/{tid}/range")
def task_logs_range(tid: str, request: Request, start: Optional[str] = None, end: Optional[str] = None,
                    user=Depends(get_user)):
    if not start or not end:
        raise HTTPException(400, "Both start and end dates are required")
    _task_for_logs(tid, request, user)
    try:
        lo, hi = models.day_bounds(start)[0], models.day_bounds(end)[1]
    except ValueError as e:
        raise HTTPException(400, str(e))
    return q("task_logs", "task_id=? AND log_date BETWEEN ? AND ?", (tid, lo, hi),
             order="log_date DESC", limit=1000)

@app.get("/api/task-logs/task/{tid}/history")
def task_progress_history(tid: str, request: Request, user=Depends(get_user)):
    _task_for_logs(tid, request, user)
    rows = q("task_logs", "task_id=?", (tid,), order="log_date ASC, created_at ASC", limit=1000)
    return [{k: r[k] for k in ("log_date", "progress", "remark", "hours_worked", "updated_by")} for r in rows]

@app.put("/api/task-logs/{log_id}")
async def update_task_log(log_id: str, request: Request, user=Depends(get_user)):
    data = await request.json()
    entry = q1("task_logs", "id=?", (log_id,))
    if not entry:
        raise HTTPException(404, "Task log not found")
    if entry["updated_by"] != user["id"] and not permissions.is_admin(user):
        _deny(request, user, "TaskLog", log_id, "You can only edit your own updates")
    changes = {k: v for k, v in data.items() if k in ("progress", "remark", "hours_worked")}
    if not changes:
        raise HTTPException(400, "No editable fields")
    _check(models.validate_task_log, changes, partial=True)
    changes["updated_at"] = models.now_iso()
    update("task_logs", "id", log_id, changes)
    if "progress" in changes:
        update("tasks", "id", entry["task_id"], {"progress": changes["progress"], "updated_at": changes["updated_at"]})
    audit_log(request, user["id"], "UPDATE", "TaskLog", log_id, "Updated daily update",
              changes=_diff(entry, changes))
    return {"ok": True}

@app.delete("/api/task-logs/{log_id}")
def delete_task_log(log_id: str, request: Request, user=Depends(get_user)):
    _require_admin(user)
    entry = q1("task_logs", "id=?", (log_id,))
    if not entry:
        raise HTTPException(404, "Task log not found")
    execute("DELETE FROM task_logs WHERE id=?", (log_id,))
    audit_log(request, user["id"], "DELETE", "TaskLog", log_id, "Deleted daily update")
    return {"ok": True}

# ── Dashboard & calendar ──
SCOPE_LABELS = {"all": "company", "team": "team", "own": "personal", "none": "none"}

@app.get("/api/dashboard")
def dashboard(user=Depends(get_user)):
    projects = permissions.visible_projects(user, _load_projects())
    tasks = permissions.visible_tasks(user, _load_tasks())
    teams = permissions.visible_teams(user, _load_teams("active=1"))
    board = models.partition_by_status(tasks)
    completion = [p["completion_percentage"] or 0 for p in projects]
    return {
        "scope": SCOPE_LABELS[permissions.data_scope(user["role"])],
        "user": _public_user(user),
        "projects": projects,
        "tasks": tasks,
        "teams": teams,
        "stats": {
            "total_projects": len(projects),
            "total_tasks": len(tasks),
            "total_teams": len(teams),
            "tasks_by_status": {status: len(items) for status, items in board.items()},
            "overdue_tasks": sum(1 for t in tasks if t["is_overdue"]),
            "average_completion": round(sum(completion) / len(completion)) if completion else 0,
        },
        "permissions": permissions.permissions_for(user["role"]),
    }

@app.get("/api/dashboard/calendar")
def calendar(start: Optional[str] = None, end: Optional[str] = None, user=Depends(get_user)):
    try:
        return schedule.calendar_events(user, _load_tasks(), _load_projects(), start, end)
    except ValueError as e:
        raise HTTPException(400, str(e))

@app.get("/api/permissions/my")
def my_permissions(user=Depends(get_user)):
    return {
        "role": user["role"],
        "scope": permissions.data_scope(user["role"]),
        "permissions": permissions.permissions_for(user["role"]),
    }

# ── Reports ──
class ReportReq(BaseModel):
    report_type: str
    start_date: Optional[str] = None
    end_date: Optional[str] = None
    team_id: Optional[str] = None
    project_id: Optional[str] = None
    user_id: Optional[str] = None

@app.post("/api/reports/generate")
def generate_report(body: ReportReq, request: Request, user=Depends(get_user)):
    _require(user, "generate_reports")
    if body.report_type not in reports.REPORT_TYPES:
        raise HTTPException(400, "Invalid report type")
    try:
        begin, finish = reports.report_window(body.start_date, body.end_date)
    except ValueError as e:
        raise HTTPException(400, str(e))
    if body.project_id and not permissions.can_view_project(user, _get_project(body.project_id)):
        _deny(request, user, "Project", body.project_id)
    if body.team_id and not permissions.can_view_team(user, _get_team(body.team_id)):
        _deny(request, user, "Team", body.team_id)
    target = _get_user_row(body.user_id) if body.user_id else user
    if not permissions.can_view_user(user, target):
        _deny(request, user, "User", target["id"])

    tasks = reports.tasks_in_window(permissions.visible_tasks(user, _load_tasks()), begin, finish,
                                    team_id=body.team_id, project_id=body.project_id, user_id=body.user_id)
    names = {u["id"]: models.full_name(u) for u in fetchall("SELECT id, first_name, last_name FROM users")}
    if body.report_type == "task_summary":
        report = reports.task_summary(tasks, names)
    elif body.report_type == "project_progress":
        projects = [p for p in permissions.visible_projects(user, _load_projects())
                    if (not body.project_id or p["id"] == body.project_id)
                    and (not body.team_id or p["team_id"] == body.team_id)]
        report = reports.project_progress(tasks, projects, names)
    elif body.report_type == "team_performance":
        teams = [t for t in permissions.visible_teams(user, _load_teams("active=1"))
                 if not body.team_id or t["id"] == body.team_id]
        report = reports.team_performance(tasks, teams, names)
    else:
        entries = None
        # other people's audit trail stays with those who may read audit logs
        if target["id"] == user["id"] or permissions.has_permission(user["role"], "view_audit_logs"):
            entries = _audit_entries("user_id=? AND timestamp>=? AND timestamp<=?",
                                     (target["id"], begin.isoformat(timespec="seconds"),
                                      finish.isoformat(timespec="seconds") + ".999999"))
        report = reports.user_activity(tasks, target, names, entries)

    report["metadata"] = {
        "report_type": body.report_type,
        "date_range": {"start": begin.isoformat(timespec="seconds"), "end": finish.isoformat(timespec="seconds")},
        "generated_at": models.now_iso(),
        "generated_by": user["id"],
        "filters": {"team_id": body.team_id, "project_id": body.project_id, "user_id": body.user_id},
    }
    logger.info("Report %s generated by %s", body.report_type, user["username"])
    return report

# ── Audit trail ──
class VerifyBulkReq(BaseModel):
    ids: list[str] = []

def _audit_filters(action=None, resource_type=None, user_id=None, start=None, end=None):
    conditions, params = [], []
    if action:
        conditions.append("action=?"); params.append(action)
    if resource_type:
        conditions.append("resource_type=?"); params.append(resource_type)
    if user_id:
        conditions.append("user_id=?"); params.append(user_id)
    try:
        if start:
            conditions.append("timestamp>=?"); params.append(models.day_bounds(start)[0])
        if end:
            conditions.append("timestamp<=?"); params.append(models.day_bounds(end)[1] + ".999999")
    except ValueError as e:
        raise HTTPException(400, str(e))
    return " AND ".join(conditions) or "1=1", tuple(params)

def _audit_entries(where, params, limit=1000):
    return [audit.load_entry(r) for r in q("audit_logs", where, params, order="timestamp DESC", limit=limit)]

@app.get("/api/audit/logs")
def audit_logs(action: Optional[str] = None, resource_type: Optional[str] = None,
               user_id: Optional[str] = None, start: Optional[str] = None, end: Optional[str] = None,
               page: int = 1, limit: int = 50, user=Depends(get_user)):
    _require(user, "view_audit_logs")
    where, params = _audit_filters(action, resource_type, user_id, start, end)
    page, limit = max(page, 1), min(max(limit, 1), 200)
    total = fetchall(f"SELECT COUNT(*) AS n FROM audit_logs WHERE {where}", params)[0]["n"]
    rows = fetchall(f"SELECT * FROM audit_logs WHERE {where} ORDER BY timestamp DESC LIMIT {limit} OFFSET {(page - 1) * limit}",
                    params)
    return {
        "logs": [audit.load_entry(r) for r in rows],
        "pagination": {"page": page, "limit": limit, "total": total, "pages": -(-total // limit)},
    }

@app.get("/api/audit/summary")
def audit_summary(start: Optional[str] = None, end: Optional[str] = None, user=Depends(get_user)):
    _require(user, "view_audit_logs")
    where, params = _audit_filters(start=start, end=end)
    return audit.activity_summary(fetchall(f"SELECT action, resource_type, timestamp FROM audit_logs WHERE {where}", params))

@app.get("/api/audit/export")
def audit_export(request: Request, format: str = "json", action: Optional[str] = None, resource_type: Optional[str] = None,
                 user_id: Optional[str] = None, start: Optional[str] = None, end: Optional[str] = None,
                 user=Depends(get_user)):
    _require(user, "view_audit_logs")
    if format not in ("json", "csv"):
        raise HTTPException(400, "Format must be json or csv")
    entries = _audit_entries(*_audit_filters(action, resource_type, user_id, start, end))
    audit_log(request, user["id"], "UPDATE", "System", None, f"Exported {len(entries)} audit records as {format}")
    stamp = datetime.now().strftime("%Y%m%d")
    if format == "csv":
        return Response(content=audit.to_csv(entries).encode("utf-8-sig"), media_type="text/csv",
                        headers={"Content-Disposition": f'attachment; filename="audit_logs_{stamp}.csv"'})
    return Response(content=json.dumps(entries, indent=2, default=str), media_type="application/json",
                    headers={"Content-Disposition": f'attachment; filename="audit_logs_{stamp}.json"'})

@app.get("/api/audit/verify/{log_id}")
def audit_verify(log_id: str, user=Depends(get_user)):
    _require(user, "view_audit_logs")
    row = q1("audit_logs", "id=?", (log_id,))
    if not row:
        raise HTTPException(404, "Audit log not found")
    return {"id": log_id, "valid": audit.verify_integrity(audit.load_entry(row))}

@app.post("/api/audit/verify-bulk")
def audit_verify_bulk(body: VerifyBulkReq, user=Depends(get_user)):
    _require(user, "view_audit_logs")
    if body.ids:
        phs = ",".join("?" * len(body.ids))
        entries = _audit_entries(f"id IN ({phs})", tuple(body.ids))
    else:
        entries = _audit_entries("1=1", ())
    invalid = [e["id"] for e in entries if not audit.verify_integrity(e)]
    if invalid:
        logger.warning("Audit integrity check failed for %d records", len(invalid))
    return {"total": len(entries), "valid": len(entries) - len(invalid),
            "invalid": len(invalid), "invalid_ids": invalid}

@app.get("/api/audit/resource/{resource_type}/{resource_id}")
def audit_resource_trail(resource_type: str, resource_id: str, request: Request, user=Depends(get_user)):
    if not permissions.can_view_audit_trail(user, resource_type, resource_id):
        _deny(request, user, resource_type if resource_type in audit.RESOURCE_TYPES else "System", resource_id)
    return _audit_entries("resource_type=? AND resource_id=?", (resource_type, resource_id))

@app.get("/api/audit/user/{uid}")
def audit_user_activity(uid: str, request: Request, limit: int = 100, user=Depends(get_user)):
    if uid != user["id"] and not permissions.is_admin(user):
        _deny(request, user, "User", uid)
    return _audit_entries("user_id=?", (uid,), limit=limit)

if __name__ == "__main__":
    import uvicorn
    port = int(os.environ.get("PORT", 8080))

    # Configure uvicorn logging to use stdout instead of stderr.
    log_config = copy.deepcopy(uvicorn.config.LOGGING_CONFIG)
    log_config["handlers"]["default"]["stream"] = "ext://sys.stdout"
    log_config["handlers"]["access"]["stream"] = "ext://sys.stdout"

    uvicorn.run(app, host="0.0.0.0", port=port, log_config=log_config)
