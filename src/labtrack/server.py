"""Flask application serving the labtrack JSON API."""
from __future__ import annotations

import argparse
import logging
import math
import os
import signal
import threading
import time
from pathlib import Path
from typing import Any, Dict, List, Optional

from flask import Flask, g, jsonify, request

from . import identifiers, services, state
from .board import ProjectBoard
from .errors import NotFoundError, StoreError, ValidationError
from .optimistic import InFlightKeys, Intent
from .store import RecordStore

logger = logging.getLogger(__name__)

STATE_DIR_KEY = "LABTRACK_STATE_DIR"
IN_FLIGHT_KEY = "labtrack.in_flight"

app = Flask(__name__)
app.extensions[IN_FLIGHT_KEY] = InFlightKeys()


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def _store() -> RecordStore:
    if "store" not in g:
        configured = app.config.get(STATE_DIR_KEY)
        if not configured:
            raise FileNotFoundError("Server started without a state directory")
        g.store = RecordStore.open(Path(configured))
    return g.store


@app.teardown_appcontext
def _close_store(exc: Optional[BaseException]) -> None:
    store = g.pop("store", None)
    if store is not None:
        store.close()


def _payload() -> Dict[str, Any]:
    payload = request.get_json(force=True, silent=True)
    if not isinstance(payload, dict):
        raise ValidationError("Expected a JSON object body")
    return payload


def _arg(name: str) -> str:
    value = request.args.get(name)
    if not value:
        raise ValidationError(f"Missing '{name}' query parameter")
    return value


def _board(project_id: str) -> ProjectBoard:
    store = _store()
    services.get_project(store, project_id)
    board = ProjectBoard(store, project_id, in_flight=app.extensions[IN_FLIGHT_KEY])
    board.refresh()
    return board


def _board_response(board: ProjectBoard, intent: Optional[Intent]):
    toasts = [toast.to_dict() for toast in board.notifier.drain()]
    body = {"board": board.to_dict(), "toasts": toasts}
    if intent is None:
        # no toast means the trigger was dropped as a duplicate
        code = 404 if toasts else 409
        return jsonify({"status": "error", **body}), code
    if not intent.succeeded:
        return jsonify({"status": "error", **body}), 502
    return jsonify({"status": "ok", **body})


@app.errorhandler(ValidationError)
def _validation_error(exc: ValidationError):
    return (exc.message, 400)


@app.errorhandler(NotFoundError)
def _not_found(exc: NotFoundError):
    return (exc.message, 404)


@app.errorhandler(StoreError)
def _store_error(exc: StoreError):
    logger.error("store error: %s", exc.message)
    return (exc.message, 502)


@app.errorhandler(FileNotFoundError)
def _missing_database(exc: FileNotFoundError):
    return (str(exc), 400)


# ---------------------------------------------------------------------------
# Projects
# ---------------------------------------------------------------------------

@app.get("/api/projects")
def api_projects():
    return jsonify({"projects": services.list_projects(_store())})


@app.post("/api/projects/create")
def api_create_project():
    project = services.create_project(_store(), _payload())
    return jsonify({"status": "ok", "project": project})


@app.post("/api/projects/update")
def api_update_project():
    payload = _payload()
    project = services.update_project(_store(), payload.get("id", ""), payload)
    return jsonify({"status": "ok", "project": project})


@app.post("/api/projects/delete")
def api_delete_project():
    services.delete_project(_store(), _payload().get("id", ""))
    return jsonify({"status": "ok"})


# ---------------------------------------------------------------------------
# Milestones, activities, tasks
# ---------------------------------------------------------------------------

@app.get("/api/milestones")
def api_milestones():
    board = _board(_arg("project"))
    toasts = [toast.to_dict() for toast in board.notifier.drain()]
    return jsonify({**board.to_dict(), "toasts": toasts})


@app.post("/api/milestones/create")
def api_create_milestone():
    project_id = _arg("project")
    board = _board(project_id)
    milestone = board.create_milestone(_payload())
    toasts = [toast.to_dict() for toast in board.notifier.drain()]
    if milestone is None:
        return jsonify({"status": "error", "toasts": toasts}), 400
    return jsonify({"status": "ok", "milestone": milestone.to_dict(), "toasts": toasts})


@app.post("/api/milestones/update")
def api_update_milestone():
    payload = _payload()
    milestone = services.update_milestone(_store(), payload.get("id", ""), payload)
    return jsonify({"status": "ok", "milestone": milestone})


@app.post("/api/milestones/delete")
def api_delete_milestone():
    board = _board(_arg("project"))
    intent = board.delete_milestone(_payload().get("id", ""))
    return _board_response(board, intent)


@app.post("/api/milestones/refresh")
def api_refresh_milestone():
    milestone = services.refresh_cached_progress(_store(), _payload().get("id", ""))
    return jsonify({"status": "ok", "milestone": milestone.to_dict()})


@app.post("/api/activities/create")
def api_create_activity():
    board = _board(_arg("project"))
    payload = _payload()
    activity = board.create_activity(payload.get("milestone_id", ""), payload)
    toasts = [toast.to_dict() for toast in board.notifier.drain()]
    if activity is None:
        return jsonify({"status": "error", "toasts": toasts}), 400
    return jsonify({"status": "ok", "activity": activity.to_dict(), "toasts": toasts})


@app.post("/api/activities/update")
def api_update_activity():
    payload = _payload()
    activity = services.update_activity(_store(), payload.get("id", ""), payload)
    return jsonify({"status": "ok", "activity": activity})


@app.post("/api/activities/delete")
def api_delete_activity():
    services.delete_activity(_store(), _payload().get("id", ""))
    return jsonify({"status": "ok"})


@app.post("/api/tasks/create")
def api_create_task():
    task = services.create_task(_store(), _payload())
    return jsonify({"status": "ok", "task": task})


@app.post("/api/tasks/toggle")
def api_toggle_task():
    payload = _payload()
    completed = payload.get("completed")
    if not isinstance(completed, bool):
        raise ValidationError("'completed' must be true or false")
    board = _board(_arg("project"))
    intent = board.toggle_task(payload.get("id", ""), completed, payload.get("completedBy"))
    return _board_response(board, intent)


@app.get("/api/stats/milestones")
def api_milestone_stats():
    return jsonify(services.milestone_stats(_store(), _arg("project")))


@app.get("/api/stats/activities")
def api_activity_stats():
    return jsonify(services.activity_stats(_store(), _arg("milestone")))


# ---------------------------------------------------------------------------
# Progress breakdown
# ---------------------------------------------------------------------------

@app.get("/api/progress/breakdown")
def api_progress_breakdown():
    return jsonify(services.progress_summary(_store(), _arg("project")))


@app.post("/api/progress/manual")
def api_manual_progress():
    payload = _payload()
    try:
        added = int(payload.get("progressAdded", 0))
        previous = int(payload.get("previousProgress", 0))
    except (TypeError, ValueError) as exc:
        raise ValidationError("Progress values must be integers") from exc
    record = services.record_progress(
        _store(),
        payload.get("projectId", ""),
        payload.get("userEmail", ""),
        added,
        previous,
        previous + added,
        payload.get("reason", ""),
        payload.get("details"),
    )
    return jsonify({"status": "ok", "record": record})


# ---------------------------------------------------------------------------
# Samples and patients
# ---------------------------------------------------------------------------

@app.get("/api/samples")
def api_samples():
    return jsonify({"samples": services.list_samples(_store(), request.args.get("kind"))})


@app.get("/api/samples/preview-id")
def api_preview_sample_id():
    kind = _arg("kind")
    if kind not in identifiers.SAMPLE_KINDS:
        raise ValidationError(f"Sample kind must be one of: {', '.join(identifiers.SAMPLE_KINDS)}")
    collection_date = request.args.get("collection_date")
    return jsonify(
        {
            "sampleId": identifiers.sample_id(kind, collection_date, request.args.get("sample_type")),
            "collectionYear": identifiers.collection_year(collection_date),
        }
    )


@app.post("/api/samples/create")
def api_create_sample():
    sample = services.register_sample(_store(), _payload())
    return jsonify({"status": "ok", "sample": sample})


@app.get("/api/patients")
def api_patients():
    return jsonify({"patients": services.list_patients(_store())})


@app.get("/api/patients/preview-id")
def api_preview_patient_id():
    args = request.args
    age = identifiers.age_in_years(args.get("date_of_birth"))
    return jsonify(
        {
            "age": age,
            "medicalRecordNumber": identifiers.patient_record_number(
                args.get("name"), age, args.get("gender"), args.get("ethnicity"), args.get("site")
            ),
        }
    )


@app.post("/api/patients/create")
def api_create_patient():
    patient = services.register_patient(_store(), _payload())
    return jsonify({"status": "ok", "patient": patient})


# ---------------------------------------------------------------------------
# Inventory and attendance
# ---------------------------------------------------------------------------

@app.get("/api/inventory")
def api_inventory():
    store = _store()
    return jsonify(
        {
            "items": services.list_inventory(store, request.args.get("status")),
            "summary": services.inventory_summary(store),
        }
    )


@app.post("/api/inventory/create")
def api_create_inventory_item():
    item = services.add_inventory_item(_store(), _payload())
    return jsonify({"status": "ok", "item": item})


@app.post("/api/inventory/update")
def api_update_inventory_item():
    payload = _payload()
    item = services.update_inventory_item(_store(), payload.get("id", ""), payload)
    return jsonify({"status": "ok", "item": item})


@app.post("/api/attendance/record")
def api_record_attendance():
    record = services.record_attendance(_store(), _payload())
    return jsonify({"status": "ok", "record": record})


@app.get("/api/attendance/stats")
def api_attendance_stats():
    members: List[str] = request.args.getlist("member")
    if not members:
        raise ValidationError("Missing 'member' query parameter")
    start, end = request.args.get("start"), request.args.get("end")
    store = _store()
    if len(members) == 1:
        return jsonify(services.member_attendance_stats(store, members[0], start, end))
    return jsonify(services.team_attendance_stats(store, members, start, end))


# ---------------------------------------------------------------------------
# Budget
# ---------------------------------------------------------------------------

@app.get("/api/budget")
def api_budget():
    project_id = _arg("project")
    store = _store()
    report = services.budget_report(store, project_id, request.args.get("today"))
    if math.isinf(report["months_remaining"]):
        report["months_remaining"] = None
    return jsonify(
        {
            **report,
            "allocations": services.list_allocations(store, project_id),
            "spending": services.list_spending(store, project_id),
        }
    )


@app.post("/api/budget/total")
def api_set_budget():
    payload = _payload()
    project = services.set_budget(_store(), payload.get("project_id", ""), payload.get("total"))
    return jsonify({"status": "ok", "project": project})


@app.post("/api/budget/allocations")
def api_save_allocations():
    payload = _payload()
    allocations = payload.get("allocations")
    if not isinstance(allocations, list):
        raise ValidationError("'allocations' must be a list")
    saved = services.save_allocations(_store(), payload.get("project_id", ""), allocations)
    return jsonify({"status": "ok", "allocations": saved, "message": "Budget allocation saved successfully"})


@app.post("/api/budget/spending")
def api_record_spending():
    entry = services.record_spending(_store(), _payload())
    return jsonify({"status": "ok", "spending": entry, "message": "Spending recorded successfully"})


@app.post("/api/budget/spending/delete")
def api_delete_spending():
    services.delete_spending(_store(), _payload().get("id", ""))
    return jsonify({"status": "ok"})


# ---------------------------------------------------------------------------
# Service control
# ---------------------------------------------------------------------------

@app.post("/__stop")
def shutdown_server() -> dict:
    def _shutdown():
        time.sleep(1)
        os.kill(os.getpid(), signal.SIGTERM)

    threading.Thread(target=_shutdown, daemon=True).start()
    return {"status": "stopping"}


@app.get("/__health")
def healthcheck() -> dict:
    return {"status": "ok"}


def main(argv: Optional[List[str]] = None) -> None:
    parser = argparse.ArgumentParser(description="labtrack Flask server")
    parser.add_argument("--port", type=int, default=state.DEFAULT_PORT, help="Port to bind")
    parser.add_argument("--host", default="127.0.0.1", help="Host to bind")
    parser.add_argument("--state-dir", required=True, help="Directory holding labtrack.db")
    args = parser.parse_args(argv)

    logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s %(name)s: %(message)s")
    app.config[STATE_DIR_KEY] = str(Path(args.state_dir).resolve())
    logger.info("serving %s on %s:%d", app.config[STATE_DIR_KEY], args.host, args.port)
    app.run(host=args.host, port=args.port)


if __name__ == "__main__":  # pragma: no cover
    main()
