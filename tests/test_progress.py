from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest

from labtrack import progress
from labtrack.progress import Activity, Milestone, Task

NOW = datetime(2024, 6, 1, 12, 0, tzinfo=timezone.utc)


def _tasks(*flags, deadline=None):
    return tuple(Task(id=f"t{i}", text=f"task {i}", completed=flag, deadline=deadline) for i, flag in enumerate(flags))


def _activity(*flags, deadline=None, name="a"):
    return Activity(id=name, name=name, tasks=_tasks(*flags, deadline=deadline))


def test_two_of_three_tasks_done_is_in_progress():
    derived = progress.derive_activity(_activity(True, True, False), NOW)
    assert derived.progress == 67
    assert derived.status == progress.IN_PROGRESS


def test_all_tasks_done_is_completed():
    derived = progress.derive_activity(_activity(True, True), NOW)
    assert derived.progress == 100
    assert derived.status == progress.COMPLETED


def test_activity_without_tasks_is_pending_even_if_stored_otherwise():
    stale = Activity(id="a", name="a", status=progress.COMPLETED, progress=80)
    derived = progress.derive_activity(stale, NOW)
    assert (derived.progress, derived.status) == (0, progress.PENDING)


@pytest.mark.parametrize("flags", [(False,), (True, False)])
def test_overdue_incomplete_task_marks_activity_delayed(flags):
    derived = progress.derive_activity(_activity(*flags, deadline=NOW - timedelta(days=1)), NOW)
    assert derived.status == progress.DELAYED


def test_overdue_deadline_ignored_once_everything_is_done():
    derived = progress.derive_activity(_activity(True, deadline=NOW - timedelta(days=1)), NOW)
    assert derived.status == progress.COMPLETED


def test_future_deadline_does_not_delay():
    derived = progress.derive_activity(_activity(False, deadline=NOW + timedelta(days=1)), NOW)
    assert derived.status == progress.PENDING


def test_milestone_progress_is_weighted_by_task():
    milestone = Milestone(
        id="m",
        name="m",
        activities=(_activity(True, name="one"), _activity(False, False, False, name="three")),
    )
    derived = progress.derive_milestone(milestone, NOW)
    assert [activity.progress for activity in derived.activities] == [100, 0]
    assert derived.progress == 25
    assert derived.status == progress.IN_PROGRESS


def test_milestone_without_activities_is_pending():
    derived = progress.derive_milestone(Milestone(id="m", name="m", status=progress.DELAYED, progress=40), NOW)
    assert (derived.progress, derived.status) == (0, progress.PENDING)


def test_milestone_with_only_empty_activities_is_pending():
    milestone = Milestone(id="m", name="m", activities=(Activity(id="a", name="a", progress=60),))
    derived = progress.derive_milestone(milestone, NOW)
    assert (derived.progress, derived.status) == (0, progress.PENDING)


def test_delayed_activity_delays_unfinished_milestone():
    milestone = Milestone(
        id="m",
        name="m",
        activities=(_activity(True, name="done"), _activity(False, deadline=NOW - timedelta(hours=1), name="late")),
    )
    derived = progress.derive_milestone(milestone, NOW)
    assert derived.progress == 50
    assert derived.status == progress.DELAYED


def test_derivation_is_idempotent():
    milestone = Milestone(id="m", name="m", activities=(_activity(True, False, False),))
    once = progress.derive_milestone(milestone, NOW)
    assert progress.derive_milestone(once, NOW) == once


def test_rounding_is_half_up():
    assert progress.percent(1, 8) == 13
    assert progress.percent(1, 3) == 33
    assert progress.percent(0, 0) == 0
    assert progress.round_half_up(2.5) == 3


def test_parse_datetime_treats_naive_values_as_utc():
    parsed = progress.parse_datetime("2024-03-15")
    assert parsed == datetime(2024, 3, 15, tzinfo=timezone.utc)
    assert progress.parse_datetime("2024-03-15T10:00:00Z").hour == 10
    assert progress.parse_datetime("not a date") is None
    assert progress.parse_datetime("") is None


def test_project_progress_and_counts():
    milestones = progress.derive_all(
        [
            Milestone(id="m1", name="m1", activities=(_activity(True, True),)),
            Milestone(id="m2", name="m2", activities=(_activity(False, False),)),
            Milestone(id="m3", name="m3"),
        ],
        NOW,
    )
    assert progress.project_progress(milestones) == 50
    counts = progress.status_counts(milestones)
    assert counts == {"total": 3, "completed": 1, "in_progress": 0, "pending": 2, "delayed": 0}


def test_activity_stats_sum_hours():
    activities = [
        Activity(id="a", name="a", estimated_hours=4, actual_hours=2.5),
        Activity(id="b", name="b", estimated_hours=None, actual_hours=1),
    ]
    stats = progress.activity_stats(activities)
    assert stats["total"] == 2
    assert stats["estimated_hours"] == 4.0
    assert stats["actual_hours"] == 3.5
