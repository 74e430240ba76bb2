"""On-demand reports over a date window.

Four kinds: a task summary, per-project progress, per-team performance and
one user's activity. Callers pass rows the requesting user may already see;
nothing here checks permissions. Tasks fall in the window by ``created_at``.
"""
from datetime import datetime, timedelta
from typing import Optional

import audit
import models

REPORT_TYPES = ("task_summary", "project_progress", "team_performance", "user_activity")
DEFAULT_WINDOW_DAYS = 30


def report_window(start=None, end=None, now: Optional[datetime] = None) -> tuple:
    """Inclusive (begin, finish) datetimes; defaults to the last 30 days.

    A date-only end covers that whole day.
    """
    now = now or datetime.now()
    begin = models.parse_dt(start) or now - timedelta(days=DEFAULT_WINDOW_DAYS)
    if isinstance(end, str) and len(end.strip()) == 10:
        finish = models.parse_dt(models.day_bounds(end)[1])
    else:
        finish = models.parse_dt(end) or now
    if finish < begin:
        raise ValueError("end_date must not be before start_date")
    return begin, finish


def tasks_in_window(tasks, begin, finish, team_id=None, project_id=None, user_id=None) -> list:
    selected = []
    for task in tasks:
        created = models.parse_dt(task.get("created_at"))
        if created is None or not begin <= created <= finish:
            continue
        if team_id and task.get("team_id") != team_id:
            continue
        if project_id and task.get("project_id") != project_id:
            continue
        if user_id and task.get("assigned_to") != user_id:
            continue
        selected.append(task)
    return selected


def _count(tasks, status):
    return sum(1 for t in tasks if t.get("status") == status)


def _average_completion_days(tasks):
    spans = []
    for task in tasks:
        created, done = models.parse_dt(task.get("created_at")), models.parse_dt(task.get("completed_date"))
        if task.get("status") == "completed" and created and done:
            spans.append((done - created).total_seconds() / 86400)
    return round(sum(spans) / len(spans)) if spans else 0


def _task_row(task, names):
    return {
        "id": task["id"],
        "title": task.get("title"),
        "status": task.get("status"),
        "priority": task.get("priority"),
        "assigned_to": names.get(task.get("assigned_to"), "Unassigned"),
        "project": task.get("project_name") or "No Project",
        "created_at": task.get("created_at"),
        "due_date": task.get("due_date"),
        "completed_date": task.get("completed_date"),
    }


def task_summary(tasks, names) -> dict:
    status_breakdown, priority_breakdown = {}, {}
    for task in tasks:
        status_breakdown[task.get("status")] = status_breakdown.get(task.get("status"), 0) + 1
        priority_breakdown[task.get("priority")] = priority_breakdown.get(task.get("priority"), 0) + 1
    return {
        "type": "task_summary",
        "summary": {
            "total_tasks": len(tasks),
            "status_breakdown": status_breakdown,
            "priority_breakdown": priority_breakdown,
            "completion_rate": models.calculate_completion(t.get("status") for t in tasks),
            "average_completion_days": _average_completion_days(tasks),
            "hours_by_status": models.status_stats(tasks),
        },
        "tasks": [_task_row(t, names) for t in tasks],
    }


def project_progress(tasks, projects, names) -> dict:
    reports = []
    for project in projects:
        mine = [t for t in tasks if t.get("project_id") == project["id"]]
        reports.append({
            "project_id": project["id"],
            "project_name": project.get("name"),
            "description": project.get("description"),
            "start_date": project.get("start_date"),
            "end_date": project.get("end_date"),
            "status": project.get("status"),
            "progress": {
                "total_tasks": len(mine),
                "completed_tasks": _count(mine, "completed"),
                "in_progress_tasks": _count(mine, "in_progress"),
                "pending_tasks": _count(mine, "new") + _count(mine, "scheduled"),
                "completion_percentage": models.calculate_completion(t.get("status") for t in mine),
            },
            "tasks": [_task_row(t, names) for t in mine],
        })
    return {"type": "project_progress", "projects": reports}


def team_performance(tasks, teams, names) -> dict:
    reports = []
    for team in teams:
        mine = [t for t in tasks if t.get("team_id") == team["id"]]
        members = []
        for member_id in team.get("members") or []:
            assigned = [t for t in mine if t.get("assigned_to") == member_id]
            members.append({
                "user_id": member_id,
                "name": names.get(member_id, ""),
                "total_tasks": len(assigned),
                "completed_tasks": _count(assigned, "completed"),
                "completion_rate": models.calculate_completion(t.get("status") for t in assigned),
            })
        reports.append({
            "team_id": team["id"],
            "team_name": team.get("name"),
            "department": team.get("department"),
            "total_members": len(members),
            "total_tasks": len(mine),
            "completed_tasks": _count(mine, "completed"),
            "member_performance": members,
        })
    return {"type": "team_performance", "teams": reports}


def user_activity(tasks, user, names, audit_entries=None, now: Optional[datetime] = None) -> dict:
    """Tasks assigned to one user, plus their audit activity when given."""
    mine = [t for t in tasks if t.get("assigned_to") == user["id"]]
    report = {
        "type": "user_activity",
        "user": {
            "id": user["id"],
            "name": models.full_name(user),
            "username": user.get("username"),
            "role": user.get("role"),
            "department": user.get("department"),
        },
        "summary": {
            "total_tasks": len(mine),
            "completed_tasks": _count(mine, "completed"),
            "in_progress_tasks": _count(mine, "in_progress"),
            "pending_tasks": _count(mine, "new") + _count(mine, "scheduled"),
            "overdue_tasks": sum(1 for t in mine if models.is_task_overdue(t, now)),
        },
        "tasks": [_task_row(t, names) for t in mine],
    }
    if audit_entries is not None:
        report["activity"] = audit.activity_summary(audit_entries)
    return report
