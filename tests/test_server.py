from __future__ import annotations

import threading

import pytest

from labtrack import services, state
from labtrack.errors import StoreError
from labtrack.server import STATE_DIR_KEY, app
from labtrack.store import RecordStore


@pytest.fixture
def client(lab_dir):
    app.config.update(TESTING=True)
    app.config[STATE_DIR_KEY] = str(state.state_dir(lab_dir))
    with app.test_client() as test_client:
        yield test_client
    app.config.pop(STATE_DIR_KEY, None)


@pytest.fixture
def seeded(lab_dir):
    """A project with one milestone, one activity and two open tasks."""
    with RecordStore.open(state.state_dir(lab_dir)) as store:
        project = services.create_project(store, {"name": "Cohort"})
        milestone = services.create_milestone(store, {"project_id": project["id"], "name": "Sampling"})
        activity = services.create_activity(store, {"milestone_id": milestone["id"], "name": "Collect"})
        tasks = [services.create_task(store, {"task": text, "activity_id": activity["id"]}) for text in ("a", "b")]
    return {"project": project, "milestone": milestone, "activity": activity, "tasks": tasks}


def test_health(client):
    assert client.get("/__health").get_json() == {"status": "ok"}


def test_create_and_list_projects(client):
    response = client.post("/api/projects/create", json={"name": "Cohort"})
    assert response.status_code == 200
    projects = client.get("/api/projects").get_json()["projects"]
    assert [project["name"] for project in projects] == ["Cohort"]


def test_validation_errors_are_400(client):
    response = client.post("/api/projects/create", json={"name": ""})
    assert response.status_code == 400
    assert "Project name is required" in response.get_data(as_text=True)
    assert client.post("/api/projects/create", data="not json").status_code == 400


def test_unknown_project_is_404(client):
    assert client.get("/api/milestones?project=missing").status_code == 404
    assert client.get("/api/milestones").status_code == 400


def test_milestones_are_derived(client, seeded):
    body = client.get(f"/api/milestones?project={seeded['project']['id']}").get_json()
    assert body["progress"] == 0
    [milestone] = body["milestones"]
    assert milestone["status"] == "pending"
    assert [task["text"] for task in milestone["activities"][0]["tasks"]] == ["a", "b"]


def test_toggle_task(client, seeded):
    project_id = seeded["project"]["id"]
    task_id = seeded["tasks"][0]["id"]
    response = client.post(
        f"/api/tasks/toggle?project={project_id}",
        json={"id": task_id, "completed": True, "completedBy": "ana@lab.org"},
    )
    assert response.status_code == 200
    body = response.get_json()
    assert body["board"]["progress"] == 50
    assert body["board"]["milestones"][0]["status"] == "in_progress"
    assert body["toasts"][0]["description"] == "Task completed."

    breakdown = client.get(f"/api/progress/breakdown?project={project_id}").get_json()
    assert breakdown["contributors"] == ["ana@lab.org"]


def test_toggle_unknown_task_is_404(client, seeded):
    response = client.post(f"/api/tasks/toggle?project={seeded['project']['id']}", json={"id": "nope", "completed": True})
    assert response.status_code == 404
    assert response.get_json()["toasts"][0]["description"] == "Task not found"


def test_toggle_failure_rolls_back(client, seeded, monkeypatch):
    def refuse(*args, **kwargs):
        raise StoreError("database is locked")

    monkeypatch.setattr(services, "set_task_completed", refuse)
    response = client.post(
        f"/api/tasks/toggle?project={seeded['project']['id']}",
        json={"id": seeded["tasks"][0]["id"], "completed": True},
    )
    assert response.status_code == 502
    body = response.get_json()
    assert body["board"]["progress"] == 0
    assert body["toasts"][-1]["variant"] == "destructive"


def test_create_milestone_and_activity(client, seeded):
    project_id = seeded["project"]["id"]
    response = client.post(f"/api/milestones/create?project={project_id}", json={"name": "Analysis"})
    assert response.status_code == 200
    milestone_id = response.get_json()["milestone"]["id"]

    response = client.post(
        f"/api/activities/create?project={project_id}", json={"milestone_id": milestone_id, "name": "Sequencing"}
    )
    assert response.status_code == 200
    assert response.get_json()["activity"]["status"] == "pending"

    response = client.post(f"/api/activities/create?project={project_id}", json={"milestone_id": "", "name": "x"})
    assert response.status_code == 400


def test_delete_milestone(client, seeded):
    project_id = seeded["project"]["id"]
    response = client.post(f"/api/milestones/delete?project={project_id}", json={"id": seeded["milestone"]["id"]})
    assert response.status_code == 200
    assert response.get_json()["board"]["milestones"] == []


def test_stats_endpoints(client, seeded):
    stats = client.get(f"/api/stats/milestones?project={seeded['project']['id']}").get_json()
    assert stats["total"] == 1
    activity_stats = client.get(f"/api/stats/activities?milestone={seeded['milestone']['id']}").get_json()
    assert activity_stats["pending"] == 1


def test_manual_progress(client, seeded):
    project_id = seeded["project"]["id"]
    response = client.post(
        "/api/progress/manual",
        json={"projectId": project_id, "userEmail": "ana@lab.org", "progressAdded": 5, "previousProgress": 10, "reason": "Ethics"},
    )
    assert response.status_code == 200
    assert response.get_json()["record"]["new_progress"] == 15
    bad = client.post("/api/progress/manual", json={"projectId": project_id, "progressAdded": "lots"})
    assert bad.status_code == 400


def test_sample_id_preview_and_registration(client):
    preview = client.get("/api/samples/preview-id?kind=bio&collection_date=2024-03-15&sample_type=serum").get_json()
    assert preview["sampleId"].startswith("SER-20240315-")
    assert preview["collectionYear"] == 2024
    assert client.get("/api/samples/preview-id?kind=urine").status_code == 400

    response = client.post("/api/samples/create", json={"kind": "dbs", "collection_date": "2024-03-15"})
    assert response.status_code == 200
    assert client.get("/api/samples?kind=dbs").get_json()["samples"][0]["sample_id"].startswith("DBS-20240315-")


def test_patient_preview(client):
    body = client.get(
        "/api/patients/preview-id?name=john&date_of_birth=1990-01-01&gender=male&ethnicity=bantu&site=kinshasa"
    ).get_json()
    assert body["medicalRecordNumber"].startswith("JO")
    assert body["medicalRecordNumber"].endswith("MBAKI")


def test_inventory_and_attendance(client):
    client.post("/api/inventory/create", json={"name": "Tips", "quantite_restante": 2, "seuil_alerte": 10})
    body = client.get("/api/inventory").get_json()
    assert body["items"][0]["status"] == "low"
    assert body["summary"]["low"] == 1

    client.post("/api/attendance/record", json={"team_member_id": "u1", "date": "2024-05-01", "status": "present"})
    client.post("/api/attendance/record", json={"team_member_id": "u2", "date": "2024-05-01", "status": "absent"})
    single = client.get("/api/attendance/stats?member=u1").get_json()
    assert single["attendance_rate"] == 100.0
    team = client.get("/api/attendance/stats?member=u1&member=u2").get_json()
    assert team["total_days"] == 2
    assert client.get("/api/attendance/stats").status_code == 400


def test_missing_state_dir_is_400(client):
    app.config[STATE_DIR_KEY] = ""
    assert client.get("/api/projects").status_code == 400


def test_toggle_requires_a_boolean(client, seeded, lab_dir):
    response = client.post(
        f"/api/tasks/toggle?project={seeded['project']['id']}",
        json={"id": seeded["tasks"][0]["id"], "completed": "false"},
    )
    assert response.status_code == 400
    with RecordStore.open(state.state_dir(lab_dir)) as store:
        assert store.get("todos", seeded["tasks"][0]["id"])["completed"] == 0


def test_second_toggle_while_first_is_running_is_409(client, seeded, monkeypatch):
    started = threading.Event()
    release = threading.Event()

    def hold(*args, **kwargs):
        started.set()
        release.wait(5)
        return {}

    monkeypatch.setattr(services, "set_task_completed", hold)
    url = f"/api/tasks/toggle?project={seeded['project']['id']}"
    body = {"id": seeded["tasks"][0]["id"], "completed": True}
    first = {}

    def toggle_in_background():
        with app.test_client() as other:
            first["response"] = other.post(url, json=body)

    worker = threading.Thread(target=toggle_in_background)
    worker.start()
    try:
        assert started.wait(5)
        duplicate = client.post(url, json=body)
    finally:
        release.set()
        worker.join(5)

    assert duplicate.status_code == 409
    assert duplicate.get_json()["toasts"] == []
    assert first["response"].status_code == 200
    assert client.post(url, json=body).status_code == 200


def test_budget_endpoints(client, seeded):
    project_id = seeded["project"]["id"]
    response = client.post("/api/budget/total", json={"project_id": project_id, "total": 1000})
    assert response.status_code == 200
    assert response.get_json()["project"]["budget_total"] == 1000

    allocations = [{"category": "Reagents", "percentage": 40}, {"category": "Travel", "percentage": 60}]
    response = client.post("/api/budget/allocations", json={"project_id": project_id, "allocations": allocations})
    assert response.get_json()["message"] == "Budget allocation saved successfully"
    bad = client.post("/api/budget/allocations", json={"project_id": project_id, "allocations": allocations[:1]})
    assert bad.status_code == 400
    assert bad.get_data(as_text=True) == "Total percentage must equal 100%"

    idle = client.get(f"/api/budget?project={project_id}").get_json()
    assert idle["months_remaining"] is None
    assert len(idle["allocations"]) == 2

    response = client.post(
        "/api/budget/spending",
        json={"project_id": project_id, "category": "Reagents", "amount": 300, "description": "Kits", "date": "2024-06-10"},
    )
    assert response.status_code == 200
    entry_id = response.get_json()["spending"]["id"]
    assert client.post("/api/budget/spending", json={"project_id": project_id, "category": "Reagents", "amount": 0, "description": "x"}).status_code == 400

    report = client.get(f"/api/budget?project={project_id}&today=2024-06-15").get_json()
    assert report["monthly_burn_rate"] == 300
    assert report["months_remaining"] == pytest.approx(700 / 300)
    assert report["categories"][0]["utilization"] == pytest.approx(75)
    assert "High monthly burn rate" in report["risk_factors"]

    assert client.post("/api/budget/spending/delete", json={"id": entry_id}).status_code == 200
    assert client.get(f"/api/budget?project={project_id}").get_json()["spending"] == []
    assert client.get("/api/budget?project=nope").status_code == 404
