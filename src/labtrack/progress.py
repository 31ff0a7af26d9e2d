"""Milestone / activity / task model and the progress roll-up.

Status and progress on activities and milestones are never authoritative:
whatever was stored is replaced by a value recomputed from the children
every time a view is built or a child changes.
"""
from __future__ import annotations

import logging
import math
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, List, Mapping, Optional, Sequence

logger = logging.getLogger(__name__)

PENDING = "pending"
IN_PROGRESS = "in_progress"
COMPLETED = "completed"
DELAYED = "delayed"
STATUSES = (PENDING, IN_PROGRESS, COMPLETED, DELAYED)

PRIORITIES = ("low", "medium", "high", "critical")
DEFAULT_PRIORITY = "medium"


def parse_datetime(value: Any) -> Optional[datetime]:
    """Parse an ISO date or timestamp; naive values are taken as UTC."""
    if value is None:
        return None
    if isinstance(value, datetime):
        dt = value
    else:
        value = str(value).strip()
        if not value:
            return None
        if "T" not in value and " " not in value:
            value = f"{value}T00:00:00"
        else:
            value = value.replace(" ", "T")
        if value.endswith("Z"):
            value = value[:-1]
        try:
            dt = datetime.fromisoformat(value)
        except ValueError:
            return None
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def round_half_up(value: float) -> int:
    return int(math.floor(value + 0.5))


def percent(part: int, whole: int) -> int:
    if whole <= 0:
        return 0
    return round_half_up(100 * part / whole)


def status_from_progress(progress: int) -> str:
    if progress >= 100:
        return COMPLETED
    if progress > 0:
        return IN_PROGRESS
    return PENDING


@dataclass(frozen=True)
class Task:
    id: str
    text: str
    completed: bool = False
    deadline: Optional[datetime] = None
    completed_at: Optional[str] = None
    completed_by: Optional[str] = None

    def is_overdue(self, now: datetime) -> bool:
        return self.deadline is not None and not self.completed and self.deadline < now

    @classmethod
    def from_row(cls, row: Mapping[str, Any]) -> "Task":
        return cls(
            id=row["id"],
            text=row.get("task") or row.get("text") or "",
            completed=bool(row.get("completed")),
            deadline=parse_datetime(row.get("deadline")),
            completed_at=row.get("completed_at"),
            completed_by=row.get("completed_by"),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "text": self.text,
            "completed": self.completed,
            "deadline": self.deadline.isoformat() if self.deadline else None,
            "completedAt": self.completed_at,
            "completedBy": self.completed_by,
        }


@dataclass(frozen=True)
class Activity:
    id: str
    name: str
    status: str = PENDING
    progress: int = 0
    tasks: Sequence[Task] = field(default_factory=tuple)
    estimated_hours: Optional[float] = None
    actual_hours: Optional[float] = None

    @classmethod
    def from_row(cls, row: Mapping[str, Any], tasks: Iterable[Task] = ()) -> "Activity":
        return cls(
            id=row["id"],
            name=row.get("name") or "",
            status=row.get("status") or PENDING,
            progress=int(row.get("progress") or 0),
            tasks=tuple(tasks),
            estimated_hours=row.get("estimated_hours"),
            actual_hours=row.get("actual_hours"),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "status": self.status,
            "progress": self.progress,
            "estimatedHours": self.estimated_hours,
            "actualHours": self.actual_hours,
            "tasks": [task.to_dict() for task in self.tasks],
        }


@dataclass(frozen=True)
class Milestone:
    id: str
    name: str
    priority: str = DEFAULT_PRIORITY
    status: str = PENDING
    progress: int = 0
    activities: Sequence[Activity] = field(default_factory=tuple)

    @classmethod
    def from_row(cls, row: Mapping[str, Any], activities: Iterable[Activity] = ()) -> "Milestone":
        return cls(
            id=row["id"],
            name=row.get("name") or "",
            priority=row.get("priority") or DEFAULT_PRIORITY,
            status=row.get("status") or PENDING,
            progress=int(row.get("progress") or 0),
            activities=tuple(activities),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "priority": self.priority,
            "status": self.status,
            "progress": self.progress,
            "activities": [activity.to_dict() for activity in self.activities],
        }


def _now(now: Optional[datetime]) -> datetime:
    if now is None:
        return datetime.now(timezone.utc)
    return parse_datetime(now) or datetime.now(timezone.utc)


def derive_activity(activity: Activity, now: Optional[datetime] = None) -> Activity:
    """Return ``activity`` with status and progress recomputed from its tasks."""
    tasks = tuple(activity.tasks or ())
    if not tasks:
        return replace(activity, tasks=tasks, status=PENDING, progress=0)

    moment = _now(now)
    completed = sum(1 for task in tasks if task.completed)
    progress = percent(completed, len(tasks))
    status = status_from_progress(progress)
    if status != COMPLETED and any(task.is_overdue(moment) for task in tasks):
        status = DELAYED
    logger.debug("activity %s: %d/%d tasks -> %d%% %s", activity.name, completed, len(tasks), progress, status)
    return replace(activity, tasks=tasks, status=status, progress=progress)


def derive_milestone(milestone: Milestone, now: Optional[datetime] = None) -> Milestone:
    """Return ``milestone`` with activities, status and progress recomputed.

    Progress is weighted by task: every task in the milestone counts the same
    regardless of which activity it belongs to. Only when no activity has any
    task does the milestone fall back to the mean of its (task-less)
    activities' own progress.
    """
    moment = _now(now)
    activities = tuple(derive_activity(activity, moment) for activity in milestone.activities or ())
    if not activities:
        return replace(milestone, activities=activities, status=PENDING, progress=0)

    total_tasks = 0
    completed_tasks = 0
    for activity in activities:
        if activity.tasks:
            total_tasks += len(activity.tasks)
            completed_tasks += sum(1 for task in activity.tasks if task.completed)

    progress = 0
    if total_tasks > 0:
        progress = percent(completed_tasks, total_tasks)
    else:
        empty = [activity for activity in activities if not activity.tasks]
        if empty:
            progress = round_half_up(sum(activity.progress for activity in empty) / len(empty))

    status = status_from_progress(progress)
    if status != COMPLETED and any(activity.status == DELAYED for activity in activities):
        status = DELAYED
    logger.debug(
        "milestone %s: %d/%d tasks -> %d%% %s", milestone.name, completed_tasks, total_tasks, progress, status
    )
    return replace(milestone, activities=activities, status=status, progress=progress)


def derive_all(milestones: Iterable[Milestone], now: Optional[datetime] = None) -> List[Milestone]:
    moment = _now(now)
    return [derive_milestone(milestone, moment) for milestone in milestones]


def project_progress(milestones: Iterable[Milestone]) -> int:
    """Task-weighted completion across every milestone of a project."""
    total = 0
    completed = 0
    for milestone in milestones:
        for activity in milestone.activities:
            total += len(activity.tasks)
            completed += sum(1 for task in activity.tasks if task.completed)
    return percent(completed, total)


def status_counts(items: Iterable[Any]) -> Dict[str, int]:
    """Count milestones or activities per status."""
    counts = {"total": 0, COMPLETED: 0, IN_PROGRESS: 0, PENDING: 0, DELAYED: 0}
    for item in items:
        counts["total"] += 1
        if item.status in counts:
            counts[item.status] += 1
    return counts


def activity_stats(activities: Iterable[Activity]) -> Dict[str, float]:
    activities = list(activities)
    stats: Dict[str, float] = dict(status_counts(activities))
    stats["estimated_hours"] = float(sum(activity.estimated_hours or 0 for activity in activities))
    stats["actual_hours"] = float(sum(activity.actual_hours or 0 for activity in activities))
    return stats
