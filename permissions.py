"""Role-based access control.

Roles: managing_director > it_admin > team_lead > employee.
MD and IT Admin see and change everything; team leads work within their own
team (and department, for teams and people); employees see what is assigned
to them or what they created.

Every function takes plain row dicts. Users carry id/role/team_id/department;
projects carry team_id/created_by/assigned_members; tasks carry
assigned_to/created_by and the team_id of their project.
"""

ADMIN_ROLES = ("managing_director", "it_admin")

ROLE_PERMISSIONS = {
    "managing_director": ["*"],
    "it_admin": ["*"],
    "team_lead": [
        "view_team_data",
        "create_project",
        "create_user",
        "assign_tasks",
        "manage_team_members",
        "view_own_tasks",
        "update_task_status",
        "view_assigned_projects",
        "generate_reports",
    ],
    "employee": [
        "view_own_tasks",
        "update_task_status",
        "view_assigned_projects",
    ],
}

# Every named permission the API checks, for listing a role's effective rights
KNOWN_PERMISSIONS = (
    "view_team_data", "create_project", "create_user", "delete_user",
    "assign_tasks", "manage_team_members", "view_own_tasks",
    "update_task_status", "view_assigned_projects", "view_audit_logs",
    "generate_reports",
)

ROLE_LEVELS = {
    "managing_director": 100,
    "it_admin": 90,
    "team_lead": 50,
    "employee": 10,
}


def has_permission(role, permission) -> bool:
    granted = ROLE_PERMISSIONS.get(role, [])
    return "*" in granted or permission in granted


def permissions_for(role) -> dict:
    return {p: has_permission(role, p) for p in KNOWN_PERMISSIONS}


def is_admin(user) -> bool:
    return user.get("role") in ADMIN_ROLES


def data_scope(role) -> str:
    """'all' for admins, 'team' for team leads, 'own' for employees, 'none' otherwise."""
    if role in ADMIN_ROLES:
        return "all"
    if role == "team_lead":
        return "team"
    if role == "employee":
        return "own"
    return "none"


def _same_team(user, team_id) -> bool:
    return bool(user.get("team_id")) and user.get("team_id") == team_id


# ── Projects ──

def can_view_project(user, project) -> bool:
    role = user.get("role")
    if role in ADMIN_ROLES:
        return True
    if role not in ROLE_PERMISSIONS:
        return False
    if project.get("created_by") == user.get("id"):
        return True
    if role == "team_lead":
        return _same_team(user, project.get("team_id"))
    return user.get("id") in (project.get("assigned_members") or [])


def can_modify_project(user, project) -> bool:
    role = user.get("role")
    if role in ADMIN_ROLES:
        return True
    if role == "team_lead" and _same_team(user, project.get("team_id")):
        return True
    return role in ROLE_PERMISSIONS and project.get("created_by") == user.get("id")


# ── Tasks ──

def can_view_task(user, task) -> bool:
    role = user.get("role")
    if role in ADMIN_ROLES:
        return True
    if role not in ROLE_PERMISSIONS:
        return False
    if task.get("assigned_to") == user.get("id") or task.get("created_by") == user.get("id"):
        return True
    return role == "team_lead" and _same_team(user, task.get("team_id"))


def can_modify_task(user, task, project=None) -> bool:
    if is_admin(user):
        return True
    if user.get("role") in ROLE_PERMISSIONS and task.get("created_by") == user.get("id"):
        return True
    return project is not None and can_modify_project(user, project)


def can_update_task_status(user, task, project=None) -> bool:
    if can_modify_task(user, task, project):
        return True
    return has_permission(user.get("role"), "update_task_status") and task.get("assigned_to") == user.get("id")


def can_log_progress(user, task) -> bool:
    """Assignee, any team lead, MD or IT Admin may submit a daily update."""
    if user.get("role") in ADMIN_ROLES or user.get("role") == "team_lead":
        return True
    return task.get("assigned_to") == user.get("id")


# ── Teams & users ──

def can_view_team(user, team) -> bool:
    role = user.get("role")
    if role in ADMIN_ROLES:
        return True
    if role == "team_lead":
        return team.get("department") == user.get("department") or team.get("id") == user.get("team_id")
    if role == "employee":
        return user.get("id") in (team.get("members") or [])
    return False


def can_manage_team(user, team) -> bool:
    if is_admin(user):
        return True
    return user.get("role") == "team_lead" and team.get("team_lead_id") == user.get("id")


def can_view_user(user, other) -> bool:
    role = user.get("role")
    if role in ADMIN_ROLES or other.get("id") == user.get("id"):
        return True
    if role == "team_lead":
        return other.get("department") == user.get("department") or _same_team(user, other.get("team_id"))
    return False


def can_modify_user(user, other) -> bool:
    if is_admin(user) or other.get("id") == user.get("id"):
        return True
    return (user.get("role") == "team_lead" and other.get("role") == "employee"
            and other.get("department") == user.get("department"))


def can_view_audit_trail(user, resource_type, resource_id) -> bool:
    role = user.get("role")
    if role in ADMIN_ROLES or role == "team_lead":
        return True
    return role == "employee" and resource_type == "User" and resource_id == user.get("id")


# ── Filters: exact subsets, input order preserved ──

def visible_projects(user, projects) -> list:
    return [p for p in projects if can_view_project(user, p)]


def visible_tasks(user, tasks) -> list:
    return [t for t in tasks if can_view_task(user, t)]


def visible_teams(user, teams) -> list:
    return [t for t in teams if can_view_team(user, t)]


def visible_users(user, users) -> list:
    return [u for u in users if can_view_user(user, u)]
