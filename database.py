"""Daily Activity Tracker Database
Storage for users, teams, projects, tasks, daily logs and the audit trail.
Runs on SQLite by default; a postgres:// DATABASE_URL switches to PostgreSQL.
"""
import os, re, hashlib, hmac, secrets, logging
from datetime import datetime, timedelta

logger = logging.getLogger(__name__)

DB_PATH = os.environ.get("TRACKER_DB_PATH") or os.path.join(os.path.dirname(__file__), "tracker.db")
DATABASE_URL = os.environ.get("DATABASE_URL", "")

USE_POSTGRES = DATABASE_URL.startswith(("postgresql://", "postgres://"))

if USE_POSTGRES:
    import psycopg2
    import psycopg2.extras
else:
    import sqlite3

PASSWORD_HASH_ITERATIONS = int(os.environ.get("PASSWORD_HASH_ITERATIONS", 100_000))

DEFAULT_DEPARTMENTS = [
    ("Management", "Company leadership"),
    ("IT", "Internal systems and infrastructure"),
    ("Engineering", "Product development"),
    ("Marketing", "Brand and campaigns"),
    ("Sales", "Customer acquisition"),
    ("HR", "People operations"),
    ("Finance", "Accounting and budgeting"),
]

# A ? outside single-quoted literals
_QMARK = re.compile(r"('(?:[^']|'')*')|\?")

SQLITE_TO_PG = [
    ("DEFAULT (datetime('now'))", "DEFAULT CURRENT_TIMESTAMP"),
    ("datetime('now')", "CURRENT_TIMESTAMP"),
]


class Row(dict):
    """RealDictRow that also indexes by position, the way sqlite3.Row does"""
    def __getitem__(self, key):
        if isinstance(key, int):
            key = list(self.keys())[key]
        return super().__getitem__(key)


class Cursor:
    def __init__(self, raw, pg):
        self.raw, self.pg = raw, pg

    def execute(self, sql, params=()):
        if self.pg:
            sql = _QMARK.sub(lambda m: m.group(1) or "%s", sql)
        self.raw.execute(sql, tuple(params))
        return self

    def fetchone(self):
        row = self.raw.fetchone()
        return Row(row) if self.pg and row is not None else row

    def fetchall(self):
        rows = self.raw.fetchall()
        return [Row(r) for r in rows] if self.pg else rows

    @property
    def rowcount(self):
        return self.raw.rowcount


class Connection:
    """One connection; SQL is written in SQLite dialect with ? placeholders"""
    def __init__(self, raw, pg=False):
        self.raw, self.pg = raw, pg

    def cursor(self):
        if self.pg:
            return Cursor(self.raw.cursor(cursor_factory=psycopg2.extras.RealDictCursor), True)
        return Cursor(self.raw.cursor(), False)

    def execute(self, sql, params=()):
        return self.cursor().execute(sql, params)

    def commit(self):
        self.raw.commit()

    def rollback(self):
        self.raw.rollback()

    def close(self):
        self.raw.close()


def get_db():
    if USE_POSTGRES:
        return Connection(psycopg2.connect(DATABASE_URL, connect_timeout=5), pg=True)
    conn = sqlite3.connect(DB_PATH)
    conn.row_factory = sqlite3.Row
    conn.execute("PRAGMA journal_mode=WAL")
    return Connection(conn)


def _dialect(sql):
    if USE_POSTGRES:
        for sqlite_form, pg_form in SQLITE_TO_PG:
            sql = sql.replace(sqlite_form, pg_form)
    return sql

def init_db():
    conn = get_db(); c = conn.cursor()
    tables = [
    # ── Users ──
    """CREATE TABLE IF NOT EXISTS users (
        id TEXT PRIMARY KEY, username TEXT NOT NULL UNIQUE, email TEXT NOT NULL UNIQUE,
        password_hash TEXT NOT NULL, first_name TEXT NOT NULL, last_name TEXT NOT NULL,
        role TEXT NOT NULL DEFAULT 'employee', department TEXT NOT NULL,
        team_id TEXT, active INTEGER DEFAULT 1, last_login TEXT,
        password_changed_at TEXT,
        created_at TEXT DEFAULT (datetime('now')), updated_at TEXT DEFAULT (datetime('now')))""",
    # ── Departments ──
    """CREATE TABLE IF NOT EXISTS departments (
        id TEXT PRIMARY KEY, name TEXT NOT NULL UNIQUE, description TEXT DEFAULT '',
        active INTEGER DEFAULT 1, created_at TEXT DEFAULT (datetime('now')))""",
    # ── Teams ──
    """CREATE TABLE IF NOT EXISTS teams (
        id TEXT PRIMARY KEY, name TEXT NOT NULL, department TEXT NOT NULL,
        team_lead_id TEXT NOT NULL, description TEXT DEFAULT '', active INTEGER DEFAULT 1,
        created_at TEXT DEFAULT (datetime('now')), updated_at TEXT DEFAULT (datetime('now')))""",
    """CREATE TABLE IF NOT EXISTS team_members (
        team_id TEXT NOT NULL, user_id TEXT NOT NULL,
        added_at TEXT DEFAULT (datetime('now')),
        PRIMARY KEY (team_id, user_id))""",
    # ── Projects ──
    """CREATE TABLE IF NOT EXISTS projects (
        id TEXT PRIMARY KEY, name TEXT NOT NULL, description TEXT NOT NULL,
        start_date TEXT NOT NULL, end_date TEXT NOT NULL,
        status TEXT NOT NULL DEFAULT 'planning', priority TEXT DEFAULT 'medium',
        team_id TEXT NOT NULL, created_by TEXT NOT NULL,
        budget REAL DEFAULT 0, actual_cost REAL DEFAULT 0,
        completion_percentage INTEGER DEFAULT 0,
        created_at TEXT DEFAULT (datetime('now')), updated_at TEXT DEFAULT (datetime('now')))""",
    """CREATE TABLE IF NOT EXISTS project_members (
        project_id TEXT NOT NULL, user_id TEXT NOT NULL,
        added_at TEXT DEFAULT (datetime('now')),
        PRIMARY KEY (project_id, user_id))""",
    # ── Tasks ──
    """CREATE TABLE IF NOT EXISTS tasks (
        id TEXT PRIMARY KEY, title TEXT NOT NULL, description TEXT DEFAULT '',
        status TEXT NOT NULL DEFAULT 'new', priority TEXT DEFAULT 'medium',
        project_id TEXT NOT NULL, assigned_to TEXT NOT NULL, created_by TEXT NOT NULL,
        due_date TEXT, scheduled_date TEXT, start_date TEXT, completed_date TEXT,
        estimated_hours REAL DEFAULT 0, actual_hours REAL DEFAULT 0,
        progress INTEGER DEFAULT 0,
        created_at TEXT DEFAULT (datetime('now')), updated_at TEXT DEFAULT (datetime('now')))""",
    # ── Daily task logs ──
    """CREATE TABLE IF NOT EXISTS task_logs (
        id TEXT PRIMARY KEY, task_id TEXT NOT NULL, updated_by TEXT NOT NULL,
        log_date TEXT NOT NULL, progress INTEGER NOT NULL, remark TEXT NOT NULL,
        hours_worked REAL DEFAULT 0,
        created_at TEXT DEFAULT (datetime('now')), updated_at TEXT DEFAULT (datetime('now')))""",
    # ── Audit trail ──
    """CREATE TABLE IF NOT EXISTS audit_logs (
        id TEXT PRIMARY KEY, action TEXT NOT NULL, resource_type TEXT NOT NULL,
        resource_id TEXT, user_id TEXT, ip_address TEXT, user_agent TEXT,
        description TEXT, changes TEXT, error_details TEXT,
        request_method TEXT, request_url TEXT,
        integrity_hash TEXT NOT NULL, timestamp TEXT NOT NULL)""",
    ]
    for sql in tables:
        c.execute(_dialect(sql))

    indexes = [
        "CREATE INDEX IF NOT EXISTS idx_users_role ON users(role)",
        "CREATE INDEX IF NOT EXISTS idx_users_department ON users(department)",
        "CREATE INDEX IF NOT EXISTS idx_users_team ON users(team_id)",
        "CREATE INDEX IF NOT EXISTS idx_teams_department ON teams(department)",
        "CREATE INDEX IF NOT EXISTS idx_projects_team ON projects(team_id)",
        "CREATE INDEX IF NOT EXISTS idx_projects_status ON projects(status)",
        "CREATE INDEX IF NOT EXISTS idx_tasks_project ON tasks(project_id)",
        "CREATE INDEX IF NOT EXISTS idx_tasks_assigned ON tasks(assigned_to)",
        "CREATE INDEX IF NOT EXISTS idx_tasks_status ON tasks(status)",
        "CREATE INDEX IF NOT EXISTS idx_task_logs_task_date ON task_logs(task_id, log_date)",
        "CREATE INDEX IF NOT EXISTS idx_task_logs_user ON task_logs(updated_by)",
        "CREATE INDEX IF NOT EXISTS idx_audit_user_time ON audit_logs(user_id, timestamp)",
        "CREATE INDEX IF NOT EXISTS idx_audit_resource ON audit_logs(resource_type, resource_id, timestamp)",
        "CREATE INDEX IF NOT EXISTS idx_audit_action_time ON audit_logs(action, timestamp)",
    ]
    for idx_sql in indexes:
        c.execute(_dialect(idx_sql))

    conn.commit(); conn.close()


def hash_password(password, salt=None):
    """Salted PBKDF2-SHA256, stored as pbkdf2_sha256$iterations$salt$hexdigest"""
    salt = salt or secrets.token_hex(16)
    digest = hashlib.pbkdf2_hmac("sha256", password.encode(), salt.encode(), PASSWORD_HASH_ITERATIONS).hex()
    return f"pbkdf2_sha256${PASSWORD_HASH_ITERATIONS}${salt}${digest}"


def verify_password(password, hashed):
    try:
        _, iterations, salt, digest = hashed.split("$")
    except (AttributeError, ValueError):
        return False
    candidate = hashlib.pbkdf2_hmac("sha256", password.encode(), salt.encode(), int(iterations)).hex()
    return hmac.compare_digest(candidate, digest)


def password_stamp():
    # One second in the past so tokens issued right after a password change stay valid
    return (datetime.now() - timedelta(seconds=1)).isoformat(timespec="seconds")


def ensure_demo_users():
    """Make sure one demo account per role is usable"""
    demo_users = [
        ("demo-md", "md", "md@tracker.local", "md123", "Maria", "Director", "managing_director", "Management"),
        ("demo-itadmin", "itadmin", "itadmin@tracker.local", "admin123", "Ivan", "Admin", "it_admin", "IT"),
        ("demo-lead", "lead", "lead@tracker.local", "lead123", "Lena", "Lead", "team_lead", "Engineering"),
        ("demo-employee", "employee", "employee@tracker.local", "emp123", "Erik", "Employee", "employee", "Engineering"),
    ]
    conn = get_db(); c = conn.cursor()
    for uid, username, email, password, first, last, role, department in demo_users:
        c.execute(
            """INSERT INTO users(id,username,email,password_hash,first_name,last_name,role,department,active,password_changed_at)
               VALUES(?,?,?,?,?,?,?,?,1,?)
               ON CONFLICT(username) DO UPDATE SET
                   password_hash=excluded.password_hash,
                   role=excluded.role,
                   active=1""",
            (uid, username, email, hash_password(password), first, last, role, department, password_stamp()),
        )
    conn.commit(); conn.close()


def seed_data():
    """Seed departments and the demo team. Runs once, after ensure_demo_users()."""
    conn = get_db(); c = conn.cursor()
    if c.execute("SELECT COUNT(*) FROM departments").fetchone()[0] > 0:
        conn.close(); return

    for i, (name, description) in enumerate(DEFAULT_DEPARTMENTS, start=1):
        c.execute("INSERT INTO departments(id,name,description,active) VALUES(?,?,?,1)",
                  (f"dept-{i}", name, description))

    c.execute("""INSERT INTO teams(id,name,department,team_lead_id,description,active)
                 VALUES(?,?,?,?,?,1)""",
              ("demo-team", "Core Platform", "Engineering", "demo-lead", "Demo engineering team"))
    for uid in ("demo-lead", "demo-employee"):
        c.execute("INSERT INTO team_members(team_id,user_id) VALUES(?,?)", ("demo-team", uid))
        c.execute("UPDATE users SET team_id=? WHERE id=?", ("demo-team", uid))

    conn.commit(); conn.close()
    logger.info("Seeded %d departments and the demo team", len(DEFAULT_DEPARTMENTS))
