from __future__ import annotations

import sqlite3
import time

import pytest

from labtrack import state
from labtrack.errors import StoreError
from labtrack.store import RecordStore


def test_insert_assigns_id_and_timestamps(store):
    row = store.insert("projects", {"name": "Cohort"})
    assert row["id"]
    assert row["created_at"] == row["updated_at"]
    assert store.get("projects", row["id"])["name"] == "Cohort"


def test_select_filters_and_orders(store):
    for name in ("b", "a", "c"):
        store.insert("patients", {"name": name})
    assert [row["name"] for row in store.select("patients", order_by="name")] == ["a", "b", "c"]
    assert [row["name"] for row in store.select("patients", order_by="name", descending=True, limit=2)] == ["c", "b"]
    assert [row["name"] for row in store.select("patients", {"name": "b"})] == ["b"]
    assert len(store.select("patients", {"site": None})) == 3


def test_update_and_delete(store):
    row = store.insert("patients", {"name": "a"})
    updated = store.update("patients", {"site": "Kinshasa"}, {"id": row["id"]})
    assert updated[0]["site"] == "Kinshasa"
    assert store.update("patients", {"site": "x"}, {"id": "missing"}) == []
    assert store.delete("patients", {"id": row["id"]}) == 1
    assert store.get("patients", row["id"]) is None


def test_unfiltered_writes_are_refused(store):
    with pytest.raises(StoreError):
        store.update("patients", {"site": "x"}, {})
    with pytest.raises(StoreError):
        store.delete("patients", {})


def test_unknown_table_and_column(store):
    with pytest.raises(StoreError, match="does not exist"):
        store.select("nope")
    with pytest.raises(StoreError, match="column"):
        store.insert("patients", {"name": "a", "shoe_size": 44})


def test_constraint_violation_is_a_store_error(store):
    with pytest.raises(StoreError):
        store.insert("milestones", {"name": "orphan", "project_id": "missing"})


def test_deleting_a_milestone_cascades_to_activities(store, project):
    milestone = store.insert("milestones", {"name": "m", "project_id": project["id"]})
    store.insert("activities", {"name": "a", "milestone_id": milestone["id"]})
    store.delete("milestones", {"id": milestone["id"]})
    assert store.select("activities") == []


def test_subscribers_receive_change_events(store):
    events = []
    unsubscribe = store.subscribe("patients", events.append)
    row = store.insert("patients", {"name": "a"})
    store.update("patients", {"name": "b"}, {"id": row["id"]})
    store.delete("patients", {"id": row["id"]})
    unsubscribe()
    store.insert("patients", {"name": "c"})

    assert [event["type"] for event in events] == ["INSERT", "UPDATE", "DELETE"]
    assert events[1]["old"]["name"] == "a"
    assert events[1]["new"]["name"] == "b"
    assert events[2]["new"] is None


def test_failing_subscriber_does_not_break_writes(store):
    def explode(event):
        raise RuntimeError("boom")

    store.subscribe("patients", explode)
    assert store.insert("patients", {"name": "a"})["name"] == "a"


def test_call_returns_result(store):
    assert store.call(store.insert, "patients", {"name": "a"})["name"] == "a"


def test_call_times_out(store):
    with pytest.raises(StoreError, match="timed out"):
        store.call(time.sleep, 0.5, timeout=0.05)


def test_timeout_comes_from_environment(monkeypatch):
    monkeypatch.setenv(state.TIMEOUT_ENV, "1.5")
    with RecordStore() as configured:
        assert configured.timeout == 1.5
    monkeypatch.setenv(state.TIMEOUT_ENV, "soon")
    assert state.store_timeout() == state.DEFAULT_STORE_TIMEOUT


def test_open_requires_existing_database(tmp_path):
    with pytest.raises(FileNotFoundError):
        RecordStore.open(tmp_path)


def test_close_waits_for_a_timed_out_call(tmp_path):
    path = tmp_path / "labtrack.db"
    store = RecordStore(path)

    def slow_insert():
        time.sleep(0.2)
        return store.insert("patients", {"name": "late"})

    with pytest.raises(StoreError, match="timed out"):
        store.call(slow_insert, timeout=0.05)
    store.close()

    with RecordStore(path) as reopened:
        assert [row["name"] for row in reopened.select("patients")] == ["late"]


def test_budget_column_is_added_to_older_databases(tmp_path):
    path = tmp_path / "labtrack.db"
    conn = sqlite3.connect(path)
    conn.execute(
        "CREATE TABLE projects (id TEXT PRIMARY KEY, name TEXT NOT NULL, description TEXT, status TEXT, "
        "start_date TEXT, end_date TEXT, created_at TEXT NOT NULL, updated_at TEXT NOT NULL)"
    )
    conn.commit()
    conn.close()

    with RecordStore(path) as upgraded:
        project = upgraded.insert("projects", {"name": "Cohort", "budget_total": 500.0})
        assert project["budget_total"] == 500.0
