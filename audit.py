"""Audit trail: tamper-evident records of who did what to which resource."""
import csv, hashlib, hmac, io, json, logging, uuid
from datetime import datetime
from typing import Optional

import database

logger = logging.getLogger(__name__)

AUDIT_ACTIONS = ("CREATE", "UPDATE", "DELETE", "LOGIN", "LOGOUT", "ACCESS_DENIED", "ERROR")
RESOURCE_TYPES = ("User", "Team", "Project", "Task", "TaskLog", "Department", "Auth", "System")

HASHED_FIELDS = ("action", "resource_type", "resource_id", "user_id", "timestamp", "changes")

CSV_FIELDS = ["timestamp", "action", "resource_type", "resource_id", "user_id",
              "ip_address", "description", "request_method", "request_url"]


def _normalize_changes(changes):
    # Same shape whether freshly built or read back from the JSON column
    if changes is None:
        return None
    return json.loads(json.dumps(changes, default=str))


def compute_integrity_hash(record: dict) -> str:
    payload = {field: record.get(field) for field in HASHED_FIELDS}
    payload["changes"] = _normalize_changes(payload["changes"])
    canonical = json.dumps(payload, sort_keys=True, separators=(",", ":"), default=str)
    return hashlib.sha256(canonical.encode()).hexdigest()


def verify_integrity(record: dict) -> bool:
    stored = record.get("integrity_hash") or ""
    return hmac.compare_digest(stored, compute_integrity_hash(record))


def build_entry(action, resource_type, resource_id=None, user_id=None, description="",
                changes=None, error_details=None, ip_address=None, user_agent=None,
                request_method=None, request_url=None) -> dict:
    if action not in AUDIT_ACTIONS:
        raise ValueError(f"Invalid audit action: {action}")
    if resource_type not in RESOURCE_TYPES:
        raise ValueError(f"Invalid audit resource type: {resource_type}")
    entry = {
        "id": uuid.uuid4().hex,
        "action": action,
        "resource_type": resource_type,
        "resource_id": resource_id,
        "user_id": user_id,
        "ip_address": ip_address,
        "user_agent": user_agent,
        "description": description,
        "changes": _normalize_changes(changes),
        "error_details": error_details,
        "request_method": request_method,
        "request_url": request_url,
        "timestamp": datetime.now().isoformat(),
    }
    entry["integrity_hash"] = compute_integrity_hash(entry)
    return entry


def record(action, resource_type, resource_id=None, user_id=None, **kwargs) -> Optional[dict]:
    """Write an audit entry. Failures are logged and never raised."""
    try:
        entry = build_entry(action, resource_type, resource_id, user_id, **kwargs)
        row = dict(entry)
        row["changes"] = json.dumps(entry["changes"]) if entry["changes"] is not None else None
        db = database.get_db()
        try:
            cols = ",".join(row.keys())
            phs = ",".join(["?"] * len(row))
            db.execute(f"INSERT INTO audit_logs({cols}) VALUES({phs})", list(row.values()))
            db.commit()
        finally:
            db.close()
        return entry
    except Exception as e:
        logger.error("Audit log failure: %s %s/%s by %s - %s", action, resource_type, resource_id, user_id, e)
        return None


def load_entry(row) -> dict:
    """Row from audit_logs -> dict with changes decoded."""
    entry = dict(row)
    if isinstance(entry.get("changes"), str):
        try:
            entry["changes"] = json.loads(entry["changes"])
        except ValueError:
            pass
    return entry


def activity_summary(entries) -> dict:
    """Counts per (action, resource_type), busiest first, with overall totals."""
    groups = {}
    for entry in entries:
        key = (entry.get("action"), entry.get("resource_type"))
        group = groups.setdefault(key, {"action": key[0], "resource_type": key[1],
                                        "count": 0, "last_activity": None})
        group["count"] += 1
        ts = entry.get("timestamp")
        if ts and (group["last_activity"] is None or ts > group["last_activity"]):
            group["last_activity"] = ts
    summary = sorted(groups.values(), key=lambda g: (-g["count"], g["action"], g["resource_type"]))
    return {
        "summary": summary,
        "total_activities": sum(g["count"] for g in summary),
        "unique_actions": len({g["action"] for g in summary}),
        "unique_resource_types": len({g["resource_type"] for g in summary}),
    }


def to_csv(entries) -> str:
    output = io.StringIO()
    writer = csv.writer(output)
    writer.writerow(CSV_FIELDS)
    for entry in entries:
        writer.writerow(["" if entry.get(f) is None else entry.get(f) for f in CSV_FIELDS])
    return output.getvalue()
