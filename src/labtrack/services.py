"""Create/read/update/delete operations for the lab tables.

Each function validates its payload before touching the store, raising
:class:`ValidationError`; missing rows raise :class:`NotFoundError`; store
failures propagate as :class:`StoreError`.
"""
from __future__ import annotations

import logging
import random
from datetime import datetime
from typing import Any, Dict, Iterable, List, Mapping, Optional

from . import budget, identifiers, progress
from .attendance import ATTENDANCE_STATUSES, attendance_stats
from .errors import NotFoundError, StoreError, ValidationError
from .inventory import STOCK_STATUSES, classify_stock
from .progress import Activity, Milestone, Task
from .store import RecordStore, now_iso

logger = logging.getLogger(__name__)

MAX_ID_ATTEMPTS = 10


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def _text(payload: Mapping[str, Any], key: str) -> Optional[str]:
    value = payload.get(key)
    if value is None:
        return None
    value = str(value).strip()
    return value or None


def _required(payload: Mapping[str, Any], key: str, label: str) -> str:
    value = _text(payload, key)
    if value is None:
        raise ValidationError(f"{label} is required")
    return value


def _optional_date(payload: Mapping[str, Any], key: str) -> Optional[str]:
    value = _text(payload, key)
    if value is None:
        return None
    if progress.parse_datetime(value) is None:
        raise ValidationError(f"Invalid date for {key}: '{value}'")
    return value


def _optional_number(payload: Mapping[str, Any], key: str) -> Optional[float]:
    value = payload.get(key)
    if value in (None, ""):
        return None
    try:
        number = float(value)
    except (TypeError, ValueError) as exc:
        raise ValidationError(f"{key} must be a number") from exc
    if number < 0:
        raise ValidationError(f"{key} cannot be negative")
    return number


def _existing(store: RecordStore, table: str, row_id: Optional[str], label: str) -> Dict[str, Any]:
    if not row_id:
        raise ValidationError(f"Invalid {label} id: cannot be empty")
    row = store.get(table, row_id)
    if row is None:
        raise NotFoundError(f"{label.capitalize()} '{row_id}' not found")
    return row


def _only_changed(payload: Mapping[str, Any], mapping: Mapping[str, Any]) -> Dict[str, Any]:
    updates: Dict[str, Any] = {}
    for key, parse in mapping.items():
        if key in payload and payload[key] not in (None, ""):
            value = parse(payload, key)
            if value is not None:
                updates[key] = value
    return updates


# ---------------------------------------------------------------------------
# Projects
# ---------------------------------------------------------------------------

def create_project(store: RecordStore, payload: Mapping[str, Any]) -> Dict[str, Any]:
    name = _required(payload, "name", "Project name")
    return store.insert(
        "projects",
        {
            "name": name,
            "description": _text(payload, "description"),
            "status": _text(payload, "status") or "active",
            "start_date": _optional_date(payload, "start_date"),
            "end_date": _optional_date(payload, "end_date"),
            "budget_total": _optional_number(payload, "budget_total"),
        },
    )


def list_projects(store: RecordStore) -> List[Dict[str, Any]]:
    return store.select("projects", order_by="created_at")


def get_project(store: RecordStore, project_id: str) -> Dict[str, Any]:
    return _existing(store, "projects", project_id, "project")


def update_project(store: RecordStore, project_id: str, payload: Mapping[str, Any]) -> Dict[str, Any]:
    get_project(store, project_id)
    updates = _only_changed(
        payload,
        {
            "name": _text,
            "description": _text,
            "status": _text,
            "start_date": _optional_date,
            "end_date": _optional_date,
            "budget_total": _optional_number,
        },
    )
    if not updates:
        raise ValidationError("No updates specified")
    return store.update("projects", updates, {"id": project_id})[0]


def delete_project(store: RecordStore, project_id: str) -> None:
    if store.delete("projects", {"id": project_id}) == 0:
        raise NotFoundError(f"Project '{project_id}' not found")


# ---------------------------------------------------------------------------
# Milestones and activities
# ---------------------------------------------------------------------------

def _priority(payload: Mapping[str, Any], key: str = "priority") -> str:
    value = (_text(payload, key) or progress.DEFAULT_PRIORITY).lower()
    if value not in progress.PRIORITIES:
        raise ValidationError(f"Priority must be one of: {', '.join(progress.PRIORITIES)}")
    return value


def create_milestone(store: RecordStore, payload: Mapping[str, Any]) -> Dict[str, Any]:
    name = _required(payload, "name", "Milestone name")
    project = _existing(store, "projects", _text(payload, "project_id"), "project")
    return store.insert(
        "milestones",
        {
            "project_id": project["id"],
            "name": name,
            "description": _text(payload, "description"),
            "start_date": _optional_date(payload, "start_date"),
            "end_date": _optional_date(payload, "end_date"),
            "priority": _priority(payload),
            "status": progress.PENDING,
            "progress": 0,
        },
    )


def update_milestone(store: RecordStore, milestone_id: str, payload: Mapping[str, Any]) -> Dict[str, Any]:
    _existing(store, "milestones", milestone_id, "milestone")
    updates = _only_changed(
        payload,
        {
            "name": _text,
            "description": _text,
            "start_date": _optional_date,
            "end_date": _optional_date,
            "priority": _priority,
        },
    )
    if not updates:
        raise ValidationError("No updates specified")
    return store.update("milestones", updates, {"id": milestone_id})[0]


def delete_milestone(store: RecordStore, milestone_id: str) -> None:
    if store.delete("milestones", {"id": milestone_id}) == 0:
        raise NotFoundError(f"Milestone '{milestone_id}' not found")


def create_activity(store: RecordStore, payload: Mapping[str, Any]) -> Dict[str, Any]:
    milestone_id = _text(payload, "milestone_id")
    if milestone_id is None:
        raise ValidationError("Invalid milestone_id: cannot be empty")
    name = _required(payload, "name", "Activity name")
    _existing(store, "milestones", milestone_id, "milestone")
    return store.insert(
        "activities",
        {
            "milestone_id": milestone_id,
            "name": name,
            "description": _text(payload, "description"),
            "start_date": _optional_date(payload, "start_date"),
            "end_date": _optional_date(payload, "end_date"),
            "estimated_hours": _optional_number(payload, "estimated_hours"),
            "actual_hours": _optional_number(payload, "actual_hours"),
            "status": progress.PENDING,
            "progress": 0,
        },
    )


def update_activity(store: RecordStore, activity_id: str, payload: Mapping[str, Any]) -> Dict[str, Any]:
    _existing(store, "activities", activity_id, "activity")
    updates = _only_changed(
        payload,
        {
            "name": _text,
            "description": _text,
            "start_date": _optional_date,
            "end_date": _optional_date,
            "estimated_hours": _optional_number,
            "actual_hours": _optional_number,
        },
    )
    if not updates:
        raise ValidationError("No updates specified")
    return store.update("activities", updates, {"id": activity_id})[0]


def delete_activity(store: RecordStore, activity_id: str) -> None:
    if store.delete("activities", {"id": activity_id}) == 0:
        raise NotFoundError(f"Activity '{activity_id}' not found")


def _load_activities(store: RecordStore, milestone_id: str) -> List[Activity]:
    activities: List[Activity] = []
    for row in store.select("activities", {"milestone_id": milestone_id}, order_by="created_at"):
        tasks = [Task.from_row(task) for task in store.select("todos", {"activity_id": row["id"]}, order_by="created_at")]
        activities.append(Activity.from_row(row, tasks))
    return activities


def load_milestones(store: RecordStore, project_id: str, now: Optional[datetime] = None) -> List[Milestone]:
    """Milestones of a project with activities and tasks, freshly derived."""
    rows = store.select("milestones", {"project_id": project_id}, order_by="created_at")
    milestones = [Milestone.from_row(row, _load_activities(store, row["id"])) for row in rows]
    return progress.derive_all(milestones, now)


def load_milestone(store: RecordStore, milestone_id: str, now: Optional[datetime] = None) -> Milestone:
    row = _existing(store, "milestones", milestone_id, "milestone")
    return progress.derive_milestone(Milestone.from_row(row, _load_activities(store, milestone_id)), now)


def refresh_cached_progress(store: RecordStore, milestone_id: str, now: Optional[datetime] = None) -> Milestone:
    """Recompute a milestone and write status/progress back onto its rows."""
    milestone = load_milestone(store, milestone_id, now)
    for activity in milestone.activities:
        store.update("activities", {"status": activity.status, "progress": activity.progress}, {"id": activity.id})
    store.update("milestones", {"status": milestone.status, "progress": milestone.progress}, {"id": milestone.id})
    return milestone


def milestone_stats(store: RecordStore, project_id: str, now: Optional[datetime] = None) -> Dict[str, int]:
    return progress.status_counts(load_milestones(store, project_id, now))


def activity_stats(store: RecordStore, milestone_id: str, now: Optional[datetime] = None) -> Dict[str, float]:
    return progress.activity_stats(load_milestone(store, milestone_id, now).activities)


# ---------------------------------------------------------------------------
# Tasks
# ---------------------------------------------------------------------------

def create_task(store: RecordStore, payload: Mapping[str, Any]) -> Dict[str, Any]:
    text = _required(payload, "task", "Task description")
    activity_id = _text(payload, "activity_id")
    project_id = _text(payload, "project_id")
    if activity_id:
        activity = _existing(store, "activities", activity_id, "activity")
        if project_id is None:
            milestone = store.get("milestones", activity["milestone_id"])
            project_id = milestone["project_id"] if milestone else None
    if project_id:
        _existing(store, "projects", project_id, "project")
    return store.insert(
        "todos",
        {
            "task": text,
            "completed": 0,
            "deadline": _optional_date(payload, "deadline"),
            "activity_id": activity_id,
            "project_id": project_id,
        },
    )


def list_tasks(store: RecordStore, activity_id: Optional[str] = None, project_id: Optional[str] = None) -> List[Dict[str, Any]]:
    filters: Dict[str, Any] = {}
    if activity_id:
        filters["activity_id"] = activity_id
    if project_id:
        filters["project_id"] = project_id
    return store.select("todos", filters or None, order_by="created_at")


def set_task_completed(
    store: RecordStore,
    task_id: str,
    completed: bool,
    completed_by: Optional[str] = None,
) -> Dict[str, Any]:
    """Toggle a task, stamping or clearing who completed it and when.

    When ``completed_by`` is given and the task belongs to a project, the
    resulting change in project progress is recorded as a contribution.
    """
    task = _existing(store, "todos", task_id, "task")
    project_id = task.get("project_id")
    previous = project_progress(store, project_id) if project_id and completed_by else None

    timestamp = now_iso()
    updates: Dict[str, Any] = {"completed": 1 if completed else 0, "updated_at": timestamp}
    if completed:
        updates["completed_at"] = timestamp
        updates["completed_by"] = completed_by or "system"
    else:
        updates["completed_at"] = None
        updates["completed_by"] = None
    row = store.update("todos", updates, {"id": task_id})[0]

    if previous is not None and completed:
        current = project_progress(store, project_id)
        record_task_completion(store, project_id, task_id, completed_by, current - previous, previous, current, task["task"])
    return row


def project_progress(store: RecordStore, project_id: str, now: Optional[datetime] = None) -> int:
    return progress.project_progress(load_milestones(store, project_id, now))


# ---------------------------------------------------------------------------
# Progress breakdown
# ---------------------------------------------------------------------------

def record_progress(
    store: RecordStore,
    project_id: str,
    user_email: str,
    progress_added: int,
    previous_progress: int,
    new_progress: int,
    reason: str,
    details: Optional[str] = None,
    todo_id: Optional[str] = None,
) -> Dict[str, Any]:
    if not user_email:
        raise ValidationError("User email is required")
    if not reason:
        raise ValidationError("Reason is required")
    _existing(store, "projects", project_id, "project")
    return store.insert(
        "progress_breakdown",
        {
            "project_id": project_id,
            "todo_id": todo_id,
            "user_email": user_email,
            "progress_added": int(progress_added),
            "previous_progress": int(previous_progress),
            "new_progress": int(new_progress),
            "reason": reason,
            "details": details or f"Manual progress update: {reason}",
        },
    )


def record_task_completion(
    store: RecordStore,
    project_id: str,
    todo_id: str,
    user_email: str,
    progress_added: int,
    previous_progress: int,
    new_progress: int,
    task_text: str,
) -> Dict[str, Any]:
    return record_progress(
        store,
        project_id,
        user_email,
        progress_added,
        previous_progress,
        new_progress,
        reason=f"Task completed: {task_text}",
        details=f'Completed task "{task_text}" which contributed {progress_added}% to project progress.',
        todo_id=todo_id,
    )


def progress_summary(store: RecordStore, project_id: str) -> Dict[str, Any]:
    breakdown = store.select("progress_breakdown", {"project_id": project_id}, order_by="created_at", descending=True)
    contributors: List[str] = []
    for record in breakdown:
        if record["user_email"] not in contributors:
            contributors.append(record["user_email"])
    return {
        "total_progress": sum(record["progress_added"] for record in breakdown),
        "total_contributions": len(breakdown),
        "contributors": contributors,
        "unique_contributors": len(contributors),
        "reasons": [record["reason"] for record in breakdown],
        "latest_update": breakdown[0]["created_at"] if breakdown else None,
        "breakdown": breakdown,
    }


# ---------------------------------------------------------------------------
# Patients and samples
# ---------------------------------------------------------------------------

def register_patient(store: RecordStore, payload: Mapping[str, Any], today: Any = None) -> Dict[str, Any]:
    name = _required(payload, "name", "Patient name")
    date_of_birth = _optional_date(payload, "date_of_birth")
    age = identifiers.age_in_years(date_of_birth, today)
    gender = _text(payload, "gender")
    ethnicity = _text(payload, "ethnicity")
    site = _text(payload, "site")
    record_number = _text(payload, "medical_record_number") or identifiers.patient_record_number(
        name, age, gender, ethnicity, site
    )
    return store.insert(
        "patients",
        {
            "name": name,
            "medical_record_number": record_number or None,
            "date_of_birth": date_of_birth,
            "gender": gender,
            "ethnicity": ethnicity,
            "site": site,
        },
    )


def list_patients(store: RecordStore) -> List[Dict[str, Any]]:
    return store.select("patients", order_by="name")


def register_sample(store: RecordStore, payload: Mapping[str, Any], rng: Optional[random.Random] = None) -> Dict[str, Any]:
    """Store a bio, DBS or plaquette sample, generating its identifier.

    A generated identifier that already exists for the same kind is drawn
    again; after ``MAX_ID_ATTEMPTS`` collisions the insert is refused.
    """
    kind = (_text(payload, "kind") or "").lower()
    if kind not in identifiers.SAMPLE_KINDS:
        raise ValidationError(f"Sample kind must be one of: {', '.join(identifiers.SAMPLE_KINDS)}")
    collection_date = _optional_date(payload, "collection_date")
    if collection_date is None:
        raise ValidationError("Collection date is required")
    sample_type = _text(payload, "sample_type")
    if kind == "bio" and sample_type is None:
        raise ValidationError("Sample type is required")
    patient_id = _text(payload, "patient_id")
    if patient_id:
        _existing(store, "patients", patient_id, "patient")

    explicit = _text(payload, "sample_id")
    if explicit:
        if store.select("samples", {"kind": kind, "sample_id": explicit}):
            raise ValidationError(f"Sample ID '{explicit}' already exists")
        sample_code = explicit
    else:
        sample_code = ""
        for _ in range(MAX_ID_ATTEMPTS):
            candidate = identifiers.sample_id(kind, collection_date, sample_type, rng)
            if not store.select("samples", {"kind": kind, "sample_id": candidate}):
                sample_code = candidate
                break
            logger.info("generated sample id %s already taken, drawing again", candidate)
        if not sample_code:
            raise StoreError(f"Could not allocate a unique sample ID after {MAX_ID_ATTEMPTS} attempts")

    return store.insert(
        "samples",
        {
            "kind": kind,
            "sample_id": sample_code,
            "sample_type": sample_type,
            "patient_id": patient_id,
            "collection_date": collection_date,
            "collection_year": identifiers.collection_year(collection_date),
        },
    )


def list_samples(store: RecordStore, kind: Optional[str] = None) -> List[Dict[str, Any]]:
    return store.select("samples", {"kind": kind} if kind else None, order_by="created_at")


# ---------------------------------------------------------------------------
# Inventory
# ---------------------------------------------------------------------------

def add_inventory_item(store: RecordStore, payload: Mapping[str, Any]) -> Dict[str, Any]:
    name = _required(payload, "name", "Item name")
    remaining = _optional_number(payload, "quantite_restante") or 0.0
    threshold = _optional_number(payload, "seuil_alerte")
    return store.insert(
        "inventory_items",
        {
            "name": name,
            "quantite_restante": remaining,
            "seuil_alerte": threshold,
            "status": classify_stock(remaining, threshold),
        },
    )


def update_inventory_item(store: RecordStore, item_id: str, payload: Mapping[str, Any]) -> Dict[str, Any]:
    item = _existing(store, "inventory_items", item_id, "inventory item")
    updates = _only_changed(
        payload,
        {"name": _text, "quantite_restante": _optional_number, "seuil_alerte": _optional_number},
    )
    if not updates:
        raise ValidationError("No updates specified")
    merged = {**item, **updates}
    updates["status"] = classify_stock(merged["quantite_restante"], merged["seuil_alerte"])
    return store.update("inventory_items", updates, {"id": item_id})[0]


def list_inventory(store: RecordStore, status: Optional[str] = None) -> List[Dict[str, Any]]:
    if status and status not in STOCK_STATUSES:
        raise ValidationError(f"Stock status must be one of: {', '.join(STOCK_STATUSES)}")
    return store.select("inventory_items", {"status": status} if status else None, order_by="name")


def inventory_summary(store: RecordStore) -> Dict[str, int]:
    counts = {status: 0 for status in STOCK_STATUSES}
    for item in store.select("inventory_items"):
        counts[item["status"]] = counts.get(item["status"], 0) + 1
    counts["total"] = sum(counts[status] for status in STOCK_STATUSES)
    return counts


# ---------------------------------------------------------------------------
# Attendance
# ---------------------------------------------------------------------------

def record_attendance(store: RecordStore, payload: Mapping[str, Any]) -> Dict[str, Any]:
    member_id = _required(payload, "team_member_id", "Team member")
    day = _optional_date(payload, "date")
    if day is None:
        raise ValidationError("Date is required")
    status = (_text(payload, "status") or "").lower()
    if status not in ATTENDANCE_STATUSES:
        raise ValidationError(f"Attendance status must be one of: {', '.join(ATTENDANCE_STATUSES)}")
    return store.insert(
        "team_attendance",
        {
            "team_member_id": member_id,
            "date": day,
            "status": status,
            "notes": _text(payload, "notes"),
            "recorded_by": _text(payload, "recorded_by"),
        },
    )


def _in_range(day: str, start_date: Optional[str], end_date: Optional[str]) -> bool:
    if start_date and day < start_date:
        return False
    if end_date and day > end_date:
        return False
    return True


def member_attendance_stats(
    store: RecordStore,
    member_id: str,
    start_date: Optional[str] = None,
    end_date: Optional[str] = None,
) -> Dict[str, float]:
    records = store.select("team_attendance", {"team_member_id": member_id})
    return attendance_stats(record for record in records if _in_range(record["date"], start_date, end_date))


def team_attendance_stats(
    store: RecordStore,
    member_ids: Iterable[str],
    start_date: Optional[str] = None,
    end_date: Optional[str] = None,
) -> Dict[str, float]:
    valid = [member_id for member_id in member_ids if member_id]
    records: List[Dict[str, Any]] = []
    for member_id in valid:
        records.extend(store.select("team_attendance", {"team_member_id": member_id}))
    return attendance_stats(record for record in records if _in_range(record["date"], start_date, end_date))


# ---------------------------------------------------------------------------
# Budget
# ---------------------------------------------------------------------------

def set_budget(store: RecordStore, project_id: str, total: Any) -> Dict[str, Any]:
    get_project(store, project_id)
    amount = _optional_number({"budget_total": total}, "budget_total")
    if amount is None:
        raise ValidationError("Budget total is required")
    return store.update("projects", {"budget_total": amount}, {"id": project_id})[0]


def list_allocations(store: RecordStore, project_id: str) -> List[Dict[str, Any]]:
    return store.select("budget_allocation", {"project_id": project_id}, order_by="created_at")


def save_allocations(
    store: RecordStore, project_id: str, allocations: Iterable[Mapping[str, Any]]
) -> List[Dict[str, Any]]:
    """Replace the project's allocations with ``allocations``."""
    get_project(store, project_id)
    rows = []
    for allocation in allocations:
        if not isinstance(allocation, Mapping):
            raise ValidationError("Each allocation must be an object")
        rows.append(
            {
                "category": _text(allocation, "category") or "",
                "percentage": _optional_number(allocation, "percentage") or 0.0,
                "color": _text(allocation, "color"),
            }
        )
    budget.validate_allocations(rows)
    store.delete("budget_allocation", {"project_id": project_id})
    saved = [store.insert("budget_allocation", {"project_id": project_id, **row}) for row in rows]
    logger.info("saved %d budget allocations for project %s", len(saved), project_id)
    return saved


def record_spending(store: RecordStore, payload: Mapping[str, Any]) -> Dict[str, Any]:
    project_id = _required(payload, "project_id", "Project")
    get_project(store, project_id)
    category = _required(payload, "category", "Category")
    description = _required(payload, "description", "Description")
    try:
        amount = float(payload.get("amount"))
    except (TypeError, ValueError) as exc:
        raise ValidationError("Please enter a valid amount") from exc
    if not amount > 0:
        raise ValidationError("Please enter a valid amount")
    return store.insert(
        "spending",
        {
            "project_id": project_id,
            "category": category,
            "amount": amount,
            "description": description,
            "date": _optional_date(payload, "date") or now_iso()[:10],
        },
    )


def list_spending(store: RecordStore, project_id: str) -> List[Dict[str, Any]]:
    return store.select("spending", {"project_id": project_id}, order_by="date")


def delete_spending(store: RecordStore, spending_id: str) -> None:
    if not spending_id:
        raise ValidationError("Invalid spending id: cannot be empty")
    if store.delete("spending", {"id": spending_id}) == 0:
        raise NotFoundError(f"Spending entry '{spending_id}' not found")


def budget_report(store: RecordStore, project_id: str, today: Any = None) -> Dict[str, Any]:
    project = get_project(store, project_id)
    return budget.budget_summary(
        project.get("budget_total"),
        list_allocations(store, project_id),
        list_spending(store, project_id),
        today,
    )
