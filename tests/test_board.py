from __future__ import annotations

import threading
import time

import pytest

from labtrack import progress, services
from labtrack.board import ProjectBoard
from labtrack.errors import StoreError
from labtrack.notify import DESTRUCTIVE
from labtrack.optimistic import InFlightKeys

from .conftest import NOW, seed_milestone


@pytest.fixture
def board(store, project):
    seed_milestone(store, project["id"], [[True, False], [False]])
    project_board = ProjectBoard(store, project["id"], clock=lambda: NOW)
    project_board.refresh()
    return project_board


def _open_task_id(board):
    return board.milestones[0].activities[0].tasks[1].id


def test_refresh_derives_progress(board):
    [milestone] = board.milestones
    assert milestone.progress == 33
    assert board.overall_progress() == 33
    assert board.stats()["in_progress"] == 1


def test_toggle_task_commits_and_rederives(board, store):
    intent = board.toggle_task(_open_task_id(board), True, "ana@lab.org")

    assert intent.succeeded
    assert board.milestones[0].activities[0].status == progress.COMPLETED
    assert board.milestones[0].progress == 67
    assert store.get("todos", _open_task_id(board))["completed_by"] == "ana@lab.org"
    assert board.notifier.last().description == "Task completed."


def test_toggle_task_rolls_back_when_store_fails(board, store, monkeypatch):
    def refuse(*args, **kwargs):
        raise StoreError("permission denied for table todos")

    monkeypatch.setattr(services, "set_task_completed", refuse)
    before = list(board.milestones)

    intent = board.toggle_task(_open_task_id(board), True)

    assert intent.state == "rolled_back"
    assert board.milestones == before
    assert store.get("todos", _open_task_id(board))["completed"] == 0
    toast = board.notifier.last()
    assert toast.variant == DESTRUCTIVE
    assert toast.description == "Failed to update task status: permission denied for table todos"


def test_toggle_task_rolls_back_on_timeout(board, monkeypatch):
    def slow(*args, **kwargs):
        time.sleep(0.3)

    monkeypatch.setattr(services, "set_task_completed", slow)
    board.store.timeout = 0.05

    intent = board.toggle_task(_open_task_id(board), True)

    assert not intent.succeeded
    assert board.milestones[0].progress == 33
    assert "timed out" in board.notifier.last().description


def test_unknown_task_is_reported(board):
    assert board.toggle_task("missing", True) is None
    assert board.notifier.last().description == "Task not found"


def test_delete_milestone(board, store):
    milestone_id = board.milestones[0].id
    intent = board.delete_milestone(milestone_id)
    assert intent.succeeded
    assert board.milestones == []
    assert store.get("milestones", milestone_id) is None
    assert board.notifier.last().description == "Sampling has been deleted successfully"


def test_create_milestone_activity_and_task(board):
    milestone = board.create_milestone({"name": "Analysis", "priority": "high"})
    assert milestone.priority == "high"
    activity = board.create_activity(milestone.id, {"name": "Sequencing"})
    assert activity.status == progress.PENDING
    task = board.add_task(activity.id, "Run plate 1")
    assert task.text == "Run plate 1"
    analysis = board.milestone(milestone.id)
    assert analysis.progress == 0
    assert board.overall_progress() == 25


def test_create_activity_requires_milestone(board):
    assert board.create_activity(" ", {"name": "x"}) is None
    assert board.notifier.last().description == "Invalid milestone ID. Please try again."


def test_failed_create_reports_error(board):
    assert board.create_milestone({"name": ""}) is None
    assert board.notifier.last().description == "Failed to create milestone: Milestone name is required"


def test_watch_refreshes_on_external_changes(board, store):
    board.watch()
    services.set_task_completed(store, _open_task_id(board), True)
    assert board.milestones[0].progress == 67
    board.stop()
    services.create_milestone(store, {"project_id": board.project_id, "name": "Later"})
    assert len(board.milestones) == 1


def test_load_failure_leaves_empty_board(board, monkeypatch):
    def broken(*args, **kwargs):
        raise StoreError("connection lost")

    monkeypatch.setattr(services, "load_milestones", broken)
    assert board.refresh() == []
    assert board.notifier.last().description == "Failed to load milestones. Please try again."


def test_boards_sharing_in_flight_keys_drop_duplicate_toggles(store, project, monkeypatch):
    seed_milestone(store, project["id"], [[False]])
    shared = InFlightKeys()
    first = ProjectBoard(store, project["id"], clock=lambda: NOW, in_flight=shared)
    second = ProjectBoard(store, project["id"], clock=lambda: NOW, in_flight=shared)
    first.refresh()
    second.refresh()
    task_id = first.milestones[0].activities[0].tasks[0].id
    started = threading.Event()
    release = threading.Event()

    def hold(*args, **kwargs):
        started.set()
        release.wait(5)
        return {}

    monkeypatch.setattr(services, "set_task_completed", hold)
    intents = []
    worker = threading.Thread(target=lambda: intents.append(first.toggle_task(task_id, True)))
    worker.start()
    try:
        assert started.wait(5)
        assert second.toggle_task(task_id, True) is None
        assert second.milestones[0].progress == 0
    finally:
        release.set()
        worker.join(5)

    assert intents[0].succeeded
    assert second.notifier.last() is None
