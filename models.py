"""Record rules for users, projects, tasks and daily logs.

Rows travel through the app as plain dicts; the functions here validate them,
derive computed fields and apply status transitions. Nothing in this module
touches the database.
"""
import math
import re
from datetime import datetime, date, timedelta
from typing import Optional

ROLES = ("managing_director", "it_admin", "team_lead", "employee")

TASK_STATUSES = ("new", "scheduled", "in_progress", "completed")
TASK_PRIORITIES = ("low", "medium", "high", "urgent")
PROJECT_STATUSES = ("planning", "active", "completed", "on_hold")

DEFAULT_COLOR = "#6c757d"
STATUS_COLORS = {
    "new": "#6c757d",          # gray
    "scheduled": "#007bff",    # blue
    "in_progress": "#ffc107",  # amber
    "completed": "#28a745",    # green
}
PRIORITY_COLORS = {
    "low": "#28a745",
    "medium": "#ffc107",
    "high": "#fd7e14",
    "urgent": "#dc3545",
}

# Date field stamped when a task enters each status
STATUS_DATE_FIELDS = {
    "scheduled": "scheduled_date",
    "in_progress": "start_date",
    "completed": "completed_date",
}

EMAIL_RE = re.compile(r"^\w+([.-]?\w+)*@\w+([.-]?\w+)*(\.\w{2,3})+$")
USERNAME_RE = re.compile(r"^[A-Za-z0-9_.-]+$")


def now_iso() -> str:
    return datetime.now().isoformat(timespec="seconds")


def parse_dt(value) -> Optional[datetime]:
    """Accept datetime, date or ISO string (date-only or full). Empty -> None."""
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return value
    if isinstance(value, date):
        return datetime(value.year, value.month, value.day)
    text = str(value).strip()
    if text.endswith("Z"):
        text = text[:-1]
    try:
        parsed = datetime.fromisoformat(text)
    except ValueError:
        raise ValueError(f"Invalid date: {value}")
    # Stored timestamps are naive local time
    return parsed.replace(tzinfo=None) if parsed.tzinfo else parsed


def normalize_dt(value) -> Optional[str]:
    parsed = parse_dt(value)
    return parsed.isoformat(timespec="seconds") if parsed else None


def get_status_color(status: str) -> str:
    return STATUS_COLORS.get(status, DEFAULT_COLOR)


def get_priority_color(priority: str) -> str:
    return PRIORITY_COLORS.get(priority, DEFAULT_COLOR)


# ── Users ──

def full_name(user: dict) -> str:
    return f"{user.get('first_name', '')} {user.get('last_name', '')}".strip()


def changed_password_after(user: dict, token_iat: int) -> bool:
    """True when the password changed after the token was issued."""
    changed = parse_dt(user.get("password_changed_at"))
    if not changed:
        return False
    return int(token_iat) < int(changed.timestamp())


def validate_user(data: dict, partial: bool = False):
    """Raise ValueError on the first invalid field."""
    if not partial or "username" in data:
        username = (data.get("username") or "").strip()
        if not 3 <= len(username) <= 30:
            raise ValueError("Username must be between 3 and 30 characters")
        if not USERNAME_RE.match(username):
            raise ValueError("Username may only contain letters, digits, '_', '.' and '-'")
    if not partial or "email" in data:
        if not EMAIL_RE.match((data.get("email") or "").strip().lower()):
            raise ValueError("Please enter a valid email")
    if not partial or "password" in data:
        if len(data.get("password") or "") < 6:
            raise ValueError("Password must be at least 6 characters long")
    for field, label in (("first_name", "First name"), ("last_name", "Last name")):
        if not partial or field in data:
            value = (data.get(field) or "").strip()
            if not value:
                raise ValueError(f"{label} is required")
            if len(value) > 50:
                raise ValueError(f"{label} cannot exceed 50 characters")
    if not partial or "department" in data:
        department = (data.get("department") or "").strip()
        if not department or len(department) > 100:
            raise ValueError("Department is required (max 100 characters)")
    if "role" in data and data["role"] not in ROLES:
        raise ValueError(f"Role must be one of: {', '.join(ROLES)}")


# ── Projects ──

def validate_project(data: dict, partial: bool = False):
    if not partial or "name" in data:
        name = (data.get("name") or "").strip()
        if not name or len(name) > 200:
            raise ValueError("Project name is required (max 200 characters)")
    if not partial or "description" in data:
        description = (data.get("description") or "").strip()
        if not description or len(description) > 1000:
            raise ValueError("Project description is required (max 1000 characters)")
    if "status" in data and data["status"] not in PROJECT_STATUSES:
        raise ValueError(f"Status must be one of: {', '.join(PROJECT_STATUSES)}")
    if "priority" in data and data["priority"] not in TASK_PRIORITIES:
        raise ValueError(f"Priority must be one of: {', '.join(TASK_PRIORITIES)}")
    for field in ("budget", "actual_cost"):
        if data.get(field) is not None and float(data[field]) < 0:
            raise ValueError(f"{field} cannot be negative")
    start, end = parse_dt(data.get("start_date")), parse_dt(data.get("end_date"))
    if not partial and (start is None or end is None):
        raise ValueError("Start date and end date are required")
    if start and end and end <= start:
        raise ValueError("End date must be after start date")


def calculate_completion(statuses) -> int:
    """Percent of tasks completed, rounded; 0 for a project with no tasks."""
    statuses = list(statuses)
    if not statuses:
        return 0
    done = sum(1 for s in statuses if s == "completed")
    return round(done / len(statuses) * 100)


def project_metrics(project: dict, now: Optional[datetime] = None) -> dict:
    now = now or datetime.now()
    start, end = parse_dt(project.get("start_date")), parse_dt(project.get("end_date"))
    duration = math.ceil(abs((end - start).total_seconds()) / 86400) if start and end else 0
    remaining = math.ceil((end - now).total_seconds() / 86400) if end else 0
    return {
        "duration_days": duration,
        "days_remaining": remaining,
        "is_overdue": bool(end and end < now and project.get("status") != "completed"),
        "member_count": len(project.get("assigned_members") or []),
    }


# ── Tasks ──

def validate_task(data: dict, partial: bool = False):
    if not partial or "title" in data:
        title = (data.get("title") or "").strip()
        if not title or len(title) > 200:
            raise ValueError("Task title is required (max 200 characters)")
    if len(data.get("description") or "") > 1000:
        raise ValueError("Description cannot exceed 1000 characters")
    if "status" in data and data["status"] not in TASK_STATUSES:
        raise ValueError(f"Status must be one of: {', '.join(TASK_STATUSES)}")
    if "priority" in data and data["priority"] not in TASK_PRIORITIES:
        raise ValueError(f"Priority must be one of: {', '.join(TASK_PRIORITIES)}")
    if data.get("progress") is not None and not 0 <= int(data["progress"]) <= 100:
        raise ValueError("Progress must be between 0 and 100")
    for field in ("estimated_hours", "actual_hours"):
        if data.get(field) is not None and float(data[field]) < 0:
            raise ValueError(f"{field} cannot be negative")


def update_status(task: dict, new_status: str, now: Optional[datetime] = None) -> dict:
    """Move a task to new_status and return the changed fields.

    The task dict is updated in place. Entering a status stamps its date field
    unless one is already set; completed_date is stamped on every entry into
    completed and cleared on leaving it.
    """
    if new_status not in TASK_STATUSES:
        raise ValueError(f"Invalid task status: {new_status}")
    stamp = (now or datetime.now()).isoformat(timespec="seconds")
    old_status = task.get("status")
    changes = {"status": new_status}

    if new_status == "completed":
        if old_status != "completed" or not task.get("completed_date"):
            changes["completed_date"] = stamp
        changes["progress"] = 100
    else:
        if old_status == "completed":
            changes["completed_date"] = None
        date_field = STATUS_DATE_FIELDS.get(new_status)
        if date_field and not task.get(date_field):
            changes[date_field] = stamp

    task.update(changes)
    return changes


def partition_by_status(tasks) -> dict:
    board = {status: [] for status in TASK_STATUSES}
    for task in tasks:
        board.setdefault(task.get("status"), []).append(task)
    return board


def is_task_overdue(task: dict, now: Optional[datetime] = None) -> bool:
    due = parse_dt(task.get("due_date"))
    return bool(due and due < (now or datetime.now()) and task.get("status") != "completed")


def status_stats(tasks) -> list:
    stats = {}
    for task in tasks:
        entry = stats.setdefault(task.get("status"), {
            "status": task.get("status"), "count": 0,
            "total_estimated_hours": 0.0, "total_actual_hours": 0.0,
        })
        entry["count"] += 1
        entry["total_estimated_hours"] += float(task.get("estimated_hours") or 0)
        entry["total_actual_hours"] += float(task.get("actual_hours") or 0)
    return [stats[s] for s in TASK_STATUSES if s in stats]


def decorate_task(task: dict) -> dict:
    task["status_color"] = get_status_color(task.get("status"))
    task["priority_color"] = get_priority_color(task.get("priority"))
    task["is_overdue"] = is_task_overdue(task)
    return task


# ── Daily logs ──

def validate_task_log(data: dict, partial: bool = False):
    if not partial or "progress" in data:
        progress = data.get("progress")
        if progress is None or not 0 <= int(progress) <= 100:
            raise ValueError("Progress must be between 0 and 100")
    if not partial or "remark" in data:
        remark = (data.get("remark") or "").strip()
        if not remark:
            raise ValueError("Remark is required")
        if len(remark) > 500:
            raise ValueError("Remark cannot exceed 500 characters")
    if data.get("hours_worked") is not None and float(data["hours_worked"]) < 0:
        raise ValueError("Hours worked cannot be negative")


def day_bounds(day) -> tuple:
    """ISO strings for the first and last second of the given day."""
    start = parse_dt(day).replace(hour=0, minute=0, second=0, microsecond=0)
    end = start + timedelta(days=1) - timedelta(seconds=1)
    return start.isoformat(timespec="seconds"), end.isoformat(timespec="seconds")
