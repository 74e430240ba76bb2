"""Calendar and timeline views built from task and project rows."""
from datetime import datetime, timedelta

import permissions
from models import parse_dt


def task_event(task: dict) -> dict:
    """A task lands on its due date, else scheduled, start, then creation date."""
    if task.get("due_date"):
        event_type, when = "task-due", task["due_date"]
    elif task.get("scheduled_date"):
        event_type, when = "task-scheduled", task["scheduled_date"]
    elif task.get("start_date"):
        event_type, when = "task-start", task["start_date"]
    else:
        event_type, when = "task", task.get("created_at")
    return {
        "id": task["id"],
        "type": event_type,
        "date": when,
        "title": task.get("title"),
        "description": task.get("description"),
        "status": task.get("status"),
        "priority": task.get("priority"),
        "assigned_to": task.get("assigned_to"),
        "project_id": task.get("project_id"),
        "is_task": True,
    }


def project_milestones(projects) -> list:
    events = []
    for project in projects:
        for suffix, field, label, verb in (("start", "start_date", "Start", "begins"),
                                           ("end", "end_date", "Deadline", "deadline")):
            if not project.get(field):
                continue
            events.append({
                "id": f"{project['id']}-{suffix}",
                "type": f"project-{suffix}",
                "date": project[field],
                "title": f"{project['name']} - {label}",
                "description": f'Project "{project["name"]}" {verb}',
                "project_id": project["id"],
                "project_name": project["name"],
                "is_milestone": True,
            })
    return events


def calendar_events(user, tasks, projects, start=None, end=None) -> list:
    """Visible tasks plus visible projects' milestones, sorted by date.

    start/end (inclusive) narrow the window when given. Events without a
    date are dropped.
    """
    events = [task_event(t) for t in permissions.visible_tasks(user, tasks)]
    events += project_milestones(permissions.visible_projects(user, projects))
    lo, hi = parse_dt(start), parse_dt(end)

    dated = []
    for event in events:
        when = parse_dt(event["date"])
        if when is None:
            continue
        if (lo and when < lo) or (hi and when > hi):
            continue
        dated.append((when, event))
    dated.sort(key=lambda pair: pair[0])
    return [event for _, event in dated]


def _task_span(task: dict):
    created = parse_dt(task.get("created_at")) or datetime.now()
    started = parse_dt(task.get("start_date"))
    scheduled = parse_dt(task.get("scheduled_date"))
    due = parse_dt(task.get("due_date"))
    completed = parse_dt(task.get("completed_date"))
    status = task.get("status")

    if status == "completed" and completed:
        begin = started or scheduled or created
        finish = completed
        if finish < begin:
            finish = begin + timedelta(hours=1)
    elif status == "in_progress" and started:
        begin = started
        finish = due or started + timedelta(days=1)
        if finish < begin:
            finish = begin + timedelta(days=1)
    elif scheduled:
        begin = scheduled
        finish = due or scheduled + timedelta(days=1)
        if finish < begin:
            finish = begin + timedelta(days=1)
    else:
        begin = created
        finish = created + timedelta(hours=1)
    return begin, finish


def build_timeline(tasks, projects) -> dict:
    """Projects become groups and tasks become items with a start/end span.

    Tasks whose project is not among the groups are left out.
    """
    if not tasks or not projects:
        return {"groups": [], "items": []}

    groups = [{
        "id": p["id"],
        "title": p["name"],
        "right_title": f"{p.get('status')} | {len(p.get('assigned_members') or [])} members",
    } for p in projects]

    group_ids = {g["id"] for g in groups}
    items = []
    for task in tasks:
        if task.get("project_id") not in group_ids:
            continue
        begin, finish = _task_span(task)
        items.append({
            "id": task["id"],
            "group": task.get("project_id"),
            "title": task.get("title"),
            "status": task.get("status"),
            "start_time": begin.isoformat(timespec="seconds"),
            "end_time": finish.isoformat(timespec="seconds"),
        })
    items.sort(key=lambda item: item["start_time"])
    return {"groups": groups, "items": items}
