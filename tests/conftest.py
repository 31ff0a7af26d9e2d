from __future__ import annotations

from datetime import datetime, timezone
from pathlib import Path

import pytest

from labtrack import services, state
from labtrack.store import RecordStore, db_path

NOW = datetime(2024, 6, 1, 12, 0, tzinfo=timezone.utc)


@pytest.fixture(autouse=True)
def labtrack_home(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> Path:
    home = tmp_path / "home"
    monkeypatch.setenv(state.HOME_ENV, str(home))
    monkeypatch.delenv(state.TIMEOUT_ENV, raising=False)
    return home


@pytest.fixture
def store():
    with RecordStore() as record_store:
        yield record_store


@pytest.fixture
def project(store: RecordStore) -> dict:
    return services.create_project(store, {"name": "Malaria cohort"})


@pytest.fixture
def lab_dir(tmp_path: Path) -> Path:
    root = tmp_path / "lab"
    target = state.state_dir(root)
    target.mkdir(parents=True)
    RecordStore(db_path(target)).close()
    return root


def seed_milestone(store: RecordStore, project_id: str, layout, name: str = "Sampling") -> dict:
    """Create a milestone whose activities hold tasks done/not-done per ``layout``.

    ``layout`` is a list of activities, each a list of booleans.
    """
    milestone = services.create_milestone(store, {"project_id": project_id, "name": name})
    for index, tasks in enumerate(layout):
        activity = services.create_activity(store, {"milestone_id": milestone["id"], "name": f"Activity {index + 1}"})
        for position, done in enumerate(tasks):
            task = services.create_task(store, {"task": f"Step {position + 1}", "activity_id": activity["id"]})
            if done:
                services.set_task_completed(store, task["id"], True)
    return milestone
