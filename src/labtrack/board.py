"""Locally cached, derived view of a project's milestones.

The board plays the part of the screen state: it loads milestones once,
re-derives progress after every local change, applies task toggles and
deletions optimistically and rolls them back when the store refuses them.
"""
from __future__ import annotations

import logging
from dataclasses import replace
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Mapping, Optional, Tuple

from . import progress, services
from .errors import LabtrackError
from .notify import Notifier
from .optimistic import InFlightKeys, Intent, OptimisticRunner
from .progress import Activity, Milestone, Task
from .store import RecordStore

logger = logging.getLogger(__name__)

WATCHED_TABLES = ("milestones", "activities", "todos")


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class ProjectBoard:
    def __init__(
        self,
        store: RecordStore,
        project_id: str,
        notifier: Optional[Notifier] = None,
        clock: Callable[[], datetime] = _utcnow,
        in_flight: Optional[InFlightKeys] = None,
    ) -> None:
        self.store = store
        self.project_id = project_id
        self.notifier = notifier or Notifier()
        self.clock = clock
        self.runner = OptimisticRunner(self.notifier, call=store.call, in_flight=in_flight)
        self.milestones: List[Milestone] = []
        self._unsubscribers: List[Callable[[], None]] = []

    # ------------------------------------------------------------------
    # Loading
    # ------------------------------------------------------------------

    def refresh(self) -> List[Milestone]:
        try:
            self.milestones = services.load_milestones(self.store, self.project_id, self.clock())
        except LabtrackError as exc:
            logger.error("failed to load milestones for %s: %s", self.project_id, exc)
            self.notifier.error("Failed to load milestones. Please try again.")
            self.milestones = []
        return self.milestones

    def watch(self) -> None:
        """Re-fetch whenever a milestone, activity or task row changes."""
        if self._unsubscribers:
            return
        for table in WATCHED_TABLES:
            self._unsubscribers.append(self.store.subscribe(table, self._on_change))

    def stop(self) -> None:
        for unsubscribe in self._unsubscribers:
            unsubscribe()
        self._unsubscribers = []

    def _on_change(self, event: Dict[str, Any]) -> None:
        logger.debug("%s %s, refreshing board %s", event["type"], event["table"], self.project_id)
        self.refresh()

    # ------------------------------------------------------------------
    # Lookups
    # ------------------------------------------------------------------

    def milestone(self, milestone_id: str) -> Optional[Milestone]:
        return next((item for item in self.milestones if item.id == milestone_id), None)

    def _locate_task(self, task_id: str) -> Optional[Tuple[int, int, int]]:
        for m_index, milestone in enumerate(self.milestones):
            for a_index, activity in enumerate(milestone.activities):
                for t_index, task in enumerate(activity.tasks):
                    if task.id == task_id:
                        return m_index, a_index, t_index
        return None

    def _locate_activity(self, activity_id: str) -> Optional[Tuple[int, int]]:
        for m_index, milestone in enumerate(self.milestones):
            for a_index, activity in enumerate(milestone.activities):
                if activity.id == activity_id:
                    return m_index, a_index
        return None

    def _replace_activity(self, m_index: int, a_index: int, activity: Activity) -> None:
        milestone = self.milestones[m_index]
        activities = list(milestone.activities)
        activities[a_index] = activity
        updated = list(self.milestones)
        updated[m_index] = progress.derive_milestone(replace(milestone, activities=tuple(activities)), self.clock())
        self.milestones = updated

    # ------------------------------------------------------------------
    # Mutations
    # ------------------------------------------------------------------

    def toggle_task(self, task_id: str, completed: bool, completed_by: Optional[str] = None) -> Optional[Intent]:
        location = self._locate_task(task_id)
        if location is None:
            self.notifier.error("Task not found")
            return None
        m_index, a_index, t_index = location
        snapshot = list(self.milestones)

        def apply() -> None:
            activity = self.milestones[m_index].activities[a_index]
            tasks = list(activity.tasks)
            tasks[t_index] = replace(tasks[t_index], completed=completed)
            self._replace_activity(m_index, a_index, replace(activity, tasks=tuple(tasks)))

        def commit() -> Dict[str, Any]:
            return services.set_task_completed(self.store, task_id, completed, completed_by)

        def revert() -> None:
            self.milestones = snapshot

        return self.runner.run(
            f"task:{task_id}",
            apply,
            commit,
            revert,
            success=f"Task {'completed' if completed else 'marked as incomplete'}.",
            failure="Failed to update task status",
        )

    def delete_milestone(self, milestone_id: str) -> Optional[Intent]:
        existing = self.milestone(milestone_id)
        if existing is None:
            self.notifier.error("Milestone not found")
            return None
        snapshot = list(self.milestones)

        def apply() -> None:
            self.milestones = [item for item in self.milestones if item.id != milestone_id]

        def revert() -> None:
            self.milestones = snapshot

        return self.runner.run(
            f"milestone:{milestone_id}",
            apply,
            lambda: services.delete_milestone(self.store, milestone_id),
            revert,
            success=f"{existing.name} has been deleted successfully",
            failure="Failed to delete milestone",
        )

    def create_milestone(self, payload: Mapping[str, Any]) -> Optional[Milestone]:
        try:
            row = self.store.call(services.create_milestone, self.store, {**payload, "project_id": self.project_id})
        except LabtrackError as exc:
            self.notifier.error(f"Failed to create milestone: {exc.message}")
            return None
        milestone = progress.derive_milestone(Milestone.from_row(row), self.clock())
        self.milestones = [*self.milestones, milestone]
        self.notifier.success("Milestone created successfully.")
        return milestone

    def create_activity(self, milestone_id: str, payload: Mapping[str, Any]) -> Optional[Activity]:
        if not milestone_id or not milestone_id.strip():
            self.notifier.error("Invalid milestone ID. Please try again.")
            return None
        m_index = next((i for i, item in enumerate(self.milestones) if item.id == milestone_id), None)
        if m_index is None:
            self.notifier.error("Milestone not found")
            return None
        try:
            row = self.store.call(services.create_activity, self.store, {**payload, "milestone_id": milestone_id})
        except LabtrackError as exc:
            self.notifier.error(f"Failed to create activity: {exc.message}")
            return None
        milestone = self.milestones[m_index]
        activity = Activity.from_row(row)
        updated = list(self.milestones)
        updated[m_index] = progress.derive_milestone(
            replace(milestone, activities=(*milestone.activities, activity)), self.clock()
        )
        self.milestones = updated
        self.notifier.success("Activity created successfully.")
        return updated[m_index].activities[-1]

    def add_task(self, activity_id: str, text: str, deadline: Optional[str] = None) -> Optional[Task]:
        location = self._locate_activity(activity_id)
        if location is None:
            self.notifier.error("Activity not found")
            return None
        try:
            row = self.store.call(
                services.create_task,
                self.store,
                {"task": text, "activity_id": activity_id, "project_id": self.project_id, "deadline": deadline},
            )
        except LabtrackError as exc:
            self.notifier.error(f"Failed to add task: {exc.message}")
            return None
        task = Task.from_row(row)
        m_index, a_index = location
        activity = self.milestones[m_index].activities[a_index]
        self._replace_activity(m_index, a_index, replace(activity, tasks=(*activity.tasks, task)))
        self.notifier.success("Task added.")
        return task

    # ------------------------------------------------------------------
    # Views
    # ------------------------------------------------------------------

    def stats(self) -> Dict[str, int]:
        return progress.status_counts(self.milestones)

    def overall_progress(self) -> int:
        return progress.project_progress(self.milestones)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "projectId": self.project_id,
            "progress": self.overall_progress(),
            "stats": self.stats(),
            "milestones": [milestone.to_dict() for milestone in self.milestones],
        }
