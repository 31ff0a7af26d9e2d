"""Command-line interface for labtrack."""
from __future__ import annotations

import json
import math
import os
import subprocess
import sys
import time
from contextlib import contextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Iterator, List, Optional
from urllib import error as urllib_error, request as urllib_request

import typer
from rich import print as rprint
from rich.table import Table
from rich.tree import Tree

from . import identifiers, services, state
from .board import ProjectBoard
from .errors import LabtrackError
from .progress import Milestone, project_progress, status_counts
from .store import RecordStore, db_path

app = typer.Typer(help="Track lab projects, samples, inventory and attendance")
project_app = typer.Typer(help="Project-level commands")
milestone_app = typer.Typer(help="Create, list and delete milestones")
activity_app = typer.Typer(help="Manage milestone activities")
task_app = typer.Typer(help="Add and complete tasks")
sample_app = typer.Typer(help="Register bio, DBS and plaquette samples")
patient_app = typer.Typer(help="Register patients")
inventory_app = typer.Typer(help="Track consumable stock levels")
attendance_app = typer.Typer(help="Record team attendance")
budget_app = typer.Typer(help="Allocate budgets and track spending")
service_app = typer.Typer(help="Background service utilities")

SERVER_MODULE_PATH = "labtrack.server"
REPORT_FILENAME = "labtrack_status.md"
SHORT_ID = 8

STATUS_STYLES = {
    "completed": "green",
    "in_progress": "yellow",
    "pending": "white",
    "delayed": "red",
    "ok": "green",
    "low": "yellow",
    "critical": "red",
    "overstock": "cyan",
    "good": "green",
    "warning": "yellow",
    "over": "red",
}


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def _connect_existing(base_path: Path) -> RecordStore:
    """Open the nearest lab database or raise if init not run."""
    found = state.find_state_dir(base_path)
    if found is None or not db_path(found).exists():
        raise typer.BadParameter("Missing .labtrack database. Run `labtrack init` first.")
    return RecordStore.open(found)


@contextmanager
def _session(path: Path) -> Iterator[RecordStore]:
    store = _connect_existing(path.resolve())
    try:
        yield store
    except LabtrackError as exc:
        raise typer.BadParameter(exc.message) from exc
    finally:
        store.close()


def _short(row_id: Optional[str]) -> str:
    return (row_id or "")[:SHORT_ID]


def _resolve_id(store: RecordStore, table: str, value: str) -> str:
    """Accept a full id or an unambiguous prefix of one."""
    if store.get(table, value):
        return value
    matches = [row["id"] for row in store.select(table) if row["id"].startswith(value)]
    if len(matches) == 1:
        return matches[0]
    if not matches:
        raise typer.BadParameter(f"No {table} entry matches '{value}'.")
    raise typer.BadParameter(f"'{value}' is ambiguous in {table}; use more characters.")


def _styled(status: str) -> str:
    style = STATUS_STYLES.get(status, "white")
    return f"[{style}]{status}[/{style}]"


def _echo_toasts(board: ProjectBoard) -> None:
    for toast in board.notifier.drain():
        style = "red" if toast.variant == "destructive" else "green"
        rprint(f"[{style}]{toast.title}[/{style}]: {toast.description}")


def _milestone_tree(title: str, milestones: List[Milestone]) -> Tree:
    tree = Tree(f"[bold]{title}[/bold]")
    for milestone in milestones:
        branch = tree.add(
            f"[cyan]{_short(milestone.id)}[/cyan] • {milestone.name} • {_styled(milestone.status)} "
            f"• {milestone.progress}% • priority: {milestone.priority}"
        )
        for activity in milestone.activities:
            leaf = branch.add(
                f"[cyan]{_short(activity.id)}[/cyan] • {activity.name} • {_styled(activity.status)} • {activity.progress}%"
            )
            for task in activity.tasks:
                mark = "[green]✔[/green]" if task.completed else "[ ]"
                due = f" • due: {task.deadline.date().isoformat()}" if task.deadline else ""
                leaf.add(f"{mark} [cyan]{_short(task.id)}[/cyan] {task.text}{due}")
    return tree


# ---------------------------------------------------------------------------
# Setup and projects
# ---------------------------------------------------------------------------

@app.command("init")
def init(path: Path = typer.Argument(Path("."), help="Directory to initialize")) -> None:
    """Create the .labtrack directory and database."""

    root = path.resolve()
    target = state.state_dir(root)
    target.mkdir(parents=True, exist_ok=True)
    RecordStore(db_path(target)).close()
    typer.echo(f"Initialized labtrack in {target}")


@project_app.command("create")
def project_create(
    name: str = typer.Argument(..., help="Project name"),
    path: Path = typer.Option(Path("."), "--path", help="Directory containing .labtrack"),
    description: Optional[str] = typer.Option(None, "--description", "-d", help="Optional description"),
    start_date: Optional[str] = typer.Option(None, "--start-date", help="ISO formatted start date"),
) -> None:
    """Create a project."""

    with _session(path) as store:
        project = services.create_project(store, {"name": name, "description": description, "start_date": start_date})
    typer.echo(f"Created project '{name}' ({project['id']}).")


@project_app.command("list")
def project_list(path: Path = typer.Option(Path("."), "--path", help="Directory containing .labtrack")) -> None:
    """List projects with their task-weighted progress."""

    with _session(path) as store:
        rows = [(project, services.project_progress(store, project["id"])) for project in services.list_projects(store)]
    if not rows:
        typer.echo("No projects found.")
        return
    table = Table(title="Projects")
    table.add_column("ID", style="cyan")
    table.add_column("Name")
    table.add_column("Status")
    table.add_column("Progress", justify="right")
    for project, percent in rows:
        table.add_row(_short(project["id"]), project["name"], project["status"], f"{percent}%")
    rprint(table)


@project_app.command("report")
def project_report(
    project: str = typer.Argument(..., help="Project id (or prefix)"),
    path: Path = typer.Option(Path("."), "--path", help="Directory containing .labtrack"),
    output: Optional[Path] = typer.Option(None, "--output", "-o", help="Markdown path (defaults to CWD/labtrack_status.md)"),
) -> None:
    """Write a markdown status report for a project."""

    with _session(path) as store:
        project_id = _resolve_id(store, "projects", project)
        info = services.get_project(store, project_id)
        milestones = services.load_milestones(store, project_id)
        breakdown = services.progress_summary(store, project_id)
    markdown = _render_report_markdown(info, milestones, breakdown)
    output_path = (output if output is not None else Path.cwd() / REPORT_FILENAME).resolve()
    output_path.write_text(markdown, encoding="utf-8")
    typer.echo(f"Wrote {output_path}")


def _render_report_markdown(project: Dict[str, Any], milestones: List[Milestone], breakdown: Dict[str, Any]) -> str:
    generated_ts = datetime.now(timezone.utc).strftime("%Y-%m-%d %H:%M %Z")
    counts = status_counts(milestones)
    lines: List[str] = [
        "# Lab Project Status Report",
        f"_Generated on {generated_ts}_",
        "",
        f"**Project:** {project['name']}",
    ]
    if project.get("description"):
        lines.append(f"**Description:** {project['description']}")
    lines.extend(
        [
            "",
            "## Progress Overview",
            f"- Overall progress: {project_progress(milestones)}%",
            f"- Milestones completed: {counts['completed']}/{counts['total']}",
            f"- In progress: {counts['in_progress']} | Pending: {counts['pending']} | Delayed: {counts['delayed']}",
            f"- Recorded contributions: {breakdown['total_contributions']} "
            f"from {breakdown['unique_contributors']} contributor(s)",
            "",
            "## Milestones",
        ]
    )
    if not milestones:
        lines.append("_No milestones defined yet._")
    for milestone in milestones:
        lines.append(f"- **{milestone.name}** ({milestone.priority}) | {milestone.status} | {milestone.progress}%")
        for activity in milestone.activities:
            done = sum(1 for task in activity.tasks if task.completed)
            lines.append(
                f"  - {activity.name} | {activity.status} | {activity.progress}% ({done}/{len(activity.tasks)} tasks)"
            )
    return "\n".join(lines) + "\n"


# ---------------------------------------------------------------------------
# Milestones, activities, tasks
# ---------------------------------------------------------------------------

@milestone_app.command("add")
def milestone_add(
    project: str = typer.Argument(..., help="Project id (or prefix)"),
    name: str = typer.Argument(..., help="Milestone name"),
    path: Path = typer.Option(Path("."), "--path", help="Directory containing .labtrack"),
    priority: str = typer.Option("medium", "--priority", "-r", help="low, medium, high or critical"),
    description: Optional[str] = typer.Option(None, "--description", "-d", help="Additional context"),
    start_date: Optional[str] = typer.Option(None, "--start-date", help="ISO formatted start date"),
    end_date: Optional[str] = typer.Option(None, "--end-date", help="ISO formatted end date"),
) -> None:
    """Create a milestone."""

    with _session(path) as store:
        project_id = _resolve_id(store, "projects", project)
        milestone = services.create_milestone(
            store,
            {
                "project_id": project_id,
                "name": name,
                "priority": priority,
                "description": description,
                "start_date": start_date,
                "end_date": end_date,
            },
        )
    typer.echo(f"Created milestone '{name}' ({milestone['id']}).")


@milestone_app.command("list")
def milestone_list(
    project: str = typer.Argument(..., help="Project id (or prefix)"),
    path: Path = typer.Option(Path("."), "--path", help="Directory containing .labtrack"),
    status: Optional[str] = typer.Option(None, "--status", "-s", help="Only show milestones with this status"),
) -> None:
    """Show milestones with derived progress, activities and tasks."""

    with _session(path) as store:
        project_id = _resolve_id(store, "projects", project)
        info = services.get_project(store, project_id)
        milestones = services.load_milestones(store, project_id)
    if status:
        milestones = [milestone for milestone in milestones if milestone.status == status]
    if not milestones:
        typer.echo("No milestones found.")
        raise typer.Exit(code=0)
    rprint(_milestone_tree(f"Milestones ({info['name']})", milestones))


@milestone_app.command("delete")
def milestone_delete(
    project: str = typer.Argument(..., help="Project id (or prefix)"),
    milestone: str = typer.Argument(..., help="Milestone id (or prefix)"),
    path: Path = typer.Option(Path("."), "--path", help="Directory containing .labtrack"),
) -> None:
    """Delete a milestone and its activities."""

    with _session(path) as store:
        project_id = _resolve_id(store, "projects", project)
        milestone_id = _resolve_id(store, "milestones", milestone)
        board = ProjectBoard(store, project_id)
        board.refresh()
        intent = board.delete_milestone(milestone_id)
        _echo_toasts(board)
    if intent is None or not intent.succeeded:
        raise typer.Exit(code=1)


@milestone_app.command("stats")
def milestone_stats(
    project: str = typer.Argument(..., help="Project id (or prefix)"),
    path: Path = typer.Option(Path("."), "--path", help="Directory containing .labtrack"),
) -> None:
    """Count milestones per derived status."""

    with _session(path) as store:
        stats = services.milestone_stats(store, _resolve_id(store, "projects", project))
    typer.echo(
        f"{stats['total']} milestones: {stats['completed']} completed, {stats['in_progress']} in progress, "
        f"{stats['pending']} pending, {stats['delayed']} delayed"
    )


@activity_app.command("add")
def activity_add(
    milestone: str = typer.Argument(..., help="Milestone id (or prefix)"),
    name: str = typer.Argument(..., help="Activity name"),
    path: Path = typer.Option(Path("."), "--path", help="Directory containing .labtrack"),
    description: Optional[str] = typer.Option(None, "--description", "-d", help="Additional context"),
    estimated_hours: Optional[float] = typer.Option(None, "--estimated-hours", help="Estimated effort"),
) -> None:
    """Create an activity under a milestone."""

    with _session(path) as store:
        milestone_id = _resolve_id(store, "milestones", milestone)
        activity = services.create_activity(
            store,
            {"milestone_id": milestone_id, "name": name, "description": description, "estimated_hours": estimated_hours},
        )
    typer.echo(f"Created activity '{name}' ({activity['id']}).")


@activity_app.command("stats")
def activity_stats(
    milestone: str = typer.Argument(..., help="Milestone id (or prefix)"),
    path: Path = typer.Option(Path("."), "--path", help="Directory containing .labtrack"),
) -> None:
    """Count a milestone's activities per status and sum their hours."""

    with _session(path) as store:
        stats = services.activity_stats(store, _resolve_id(store, "milestones", milestone))
    typer.echo(
        f"{stats['total']} activities: {stats['completed']} completed, {stats['in_progress']} in progress, "
        f"{stats['pending']} pending, {stats['delayed']} delayed; "
        f"{stats['estimated_hours']:.2f}h estimated, {stats['actual_hours']:.2f}h actual"
    )


@task_app.command("add")
def task_add(
    activity: str = typer.Argument(..., help="Activity id (or prefix)"),
    text: str = typer.Argument(..., help="What needs doing"),
    path: Path = typer.Option(Path("."), "--path", help="Directory containing .labtrack"),
    deadline: Optional[str] = typer.Option(None, "--deadline", help="ISO formatted deadline"),
) -> None:
    """Add a task to an activity."""

    with _session(path) as store:
        activity_id = _resolve_id(store, "activities", activity)
        task = services.create_task(store, {"task": text, "activity_id": activity_id, "deadline": deadline})
    typer.echo(f"Added task {task['id']}.")


def _set_completed(task: str, path: Path, completed: bool, completed_by: Optional[str]) -> None:
    with _session(path) as store:
        task_id = _resolve_id(store, "todos", task)
        row = store.get("todos", task_id)
        if row and row.get("project_id") and row.get("activity_id"):
            board = ProjectBoard(store, row["project_id"])
            board.refresh()
            intent = board.toggle_task(task_id, completed, completed_by)
            _echo_toasts(board)
            if intent is None or not intent.succeeded:
                raise typer.Exit(code=1)
            return
        services.set_task_completed(store, task_id, completed, completed_by)
    typer.echo(f"Task {'completed' if completed else 'marked as incomplete'}.")


@task_app.command("done")
def task_done(
    task: str = typer.Argument(..., help="Task id (or prefix)"),
    path: Path = typer.Option(Path("."), "--path", help="Directory containing .labtrack"),
    by: Optional[str] = typer.Option(None, "--by", help="Email of whoever completed it"),
) -> None:
    """Mark a task completed."""

    _set_completed(task, path, True, by)


@task_app.command("undo")
def task_undo(
    task: str = typer.Argument(..., help="Task id (or prefix)"),
    path: Path = typer.Option(Path("."), "--path", help="Directory containing .labtrack"),
) -> None:
    """Mark a task as not completed."""

    _set_completed(task, path, False, None)


# ---------------------------------------------------------------------------
# Samples, patients, inventory, attendance
# ---------------------------------------------------------------------------

@sample_app.command("preview-id")
def sample_preview_id(
    kind: str = typer.Argument(..., help="bio, dbs or plaquette"),
    collection_date: str = typer.Argument(..., help="ISO formatted collection date"),
    sample_type: Optional[str] = typer.Option(None, "--type", "-t", help="Sample type (bio samples)"),
) -> None:
    """Show the identifier a sample would receive (not reserved)."""

    try:
        typer.echo(identifiers.sample_id(kind, collection_date, sample_type) or "(incomplete)")
    except ValueError as exc:
        raise typer.BadParameter(str(exc)) from exc


@sample_app.command("add")
def sample_add(
    kind: str = typer.Argument(..., help="bio, dbs or plaquette"),
    collection_date: str = typer.Argument(..., help="ISO formatted collection date"),
    path: Path = typer.Option(Path("."), "--path", help="Directory containing .labtrack"),
    sample_type: Optional[str] = typer.Option(None, "--type", "-t", help="Sample type (bio samples)"),
    patient: Optional[str] = typer.Option(None, "--patient", help="Patient id (or prefix)"),
) -> None:
    """Register a sample and print its generated identifier."""

    with _session(path) as store:
        patient_id = _resolve_id(store, "patients", patient) if patient else None
        sample = services.register_sample(
            store,
            {"kind": kind, "collection_date": collection_date, "sample_type": sample_type, "patient_id": patient_id},
        )
    typer.echo(f"Registered sample {sample['sample_id']}.")


@sample_app.command("list")
def sample_list(
    path: Path = typer.Option(Path("."), "--path", help="Directory containing .labtrack"),
    kind: Optional[str] = typer.Option(None, "--kind", "-k", help="Only this kind of sample"),
) -> None:
    """List registered samples."""

    with _session(path) as store:
        rows = services.list_samples(store, kind)
    if not rows:
        typer.echo("No samples found.")
        return
    table = Table(title="Samples")
    table.add_column("Sample ID", style="cyan")
    table.add_column("Kind")
    table.add_column("Type")
    table.add_column("Collected")
    for row in rows:
        table.add_row(row["sample_id"], row["kind"], row["sample_type"] or "", row["collection_date"] or "")
    rprint(table)


@patient_app.command("add")
def patient_add(
    name: str = typer.Argument(..., help="Patient name"),
    path: Path = typer.Option(Path("."), "--path", help="Directory containing .labtrack"),
    date_of_birth: Optional[str] = typer.Option(None, "--dob", help="ISO formatted date of birth"),
    gender: Optional[str] = typer.Option(None, "--gender"),
    ethnicity: Optional[str] = typer.Option(None, "--ethnicity"),
    site: Optional[str] = typer.Option(None, "--site"),
) -> None:
    """Register a patient; the record number is derived from the details given."""

    with _session(path) as store:
        patient = services.register_patient(
            store,
            {"name": name, "date_of_birth": date_of_birth, "gender": gender, "ethnicity": ethnicity, "site": site},
        )
    number = patient["medical_record_number"] or "(not enough details for a record number)"
    typer.echo(f"Registered patient {number} ({patient['id']}).")


@inventory_app.command("add")
def inventory_add(
    name: str = typer.Argument(..., help="Item name"),
    remaining: float = typer.Argument(..., help="Quantity remaining"),
    path: Path = typer.Option(Path("."), "--path", help="Directory containing .labtrack"),
    threshold: Optional[float] = typer.Option(None, "--threshold", help="Alert threshold"),
) -> None:
    """Add a stock item."""

    with _session(path) as store:
        item = services.add_inventory_item(store, {"name": name, "quantite_restante": remaining, "seuil_alerte": threshold})
    rprint(f"Added {name}: {_styled(item['status'])}")


@inventory_app.command("update")
def inventory_update(
    item: str = typer.Argument(..., help="Item id (or prefix)"),
    path: Path = typer.Option(Path("."), "--path", help="Directory containing .labtrack"),
    remaining: Optional[float] = typer.Option(None, "--remaining", help="New quantity remaining"),
    threshold: Optional[float] = typer.Option(None, "--threshold", help="New alert threshold"),
) -> None:
    """Change an item's quantity or threshold; its status is recomputed."""

    with _session(path) as store:
        item_id = _resolve_id(store, "inventory_items", item)
        updated = services.update_inventory_item(store, item_id, {"quantite_restante": remaining, "seuil_alerte": threshold})
    rprint(f"Updated {updated['name']}: {_styled(updated['status'])}")


@inventory_app.command("list")
def inventory_list(
    path: Path = typer.Option(Path("."), "--path", help="Directory containing .labtrack"),
    status: Optional[str] = typer.Option(None, "--status", "-s", help="ok, low, critical or overstock"),
) -> None:
    """List stock items and their status."""

    with _session(path) as store:
        rows = services.list_inventory(store, status)
        summary = services.inventory_summary(store)
    table = Table(title=f"Inventory ({summary['total']} items)")
    table.add_column("ID", style="cyan")
    table.add_column("Item")
    table.add_column("Remaining", justify="right")
    table.add_column("Threshold", justify="right")
    table.add_column("Status")
    for row in rows:
        threshold = "" if row["seuil_alerte"] is None else f"{row['seuil_alerte']:g}"
        table.add_row(_short(row["id"]), row["name"], f"{row['quantite_restante']:g}", threshold, _styled(row["status"]))
    rprint(table)


@attendance_app.command("record")
def attendance_record(
    member: str = typer.Argument(..., help="Team member id"),
    status: str = typer.Argument(..., help="present, absent, late or excused"),
    path: Path = typer.Option(Path("."), "--path", help="Directory containing .labtrack"),
    date: Optional[str] = typer.Option(None, "--date", help="ISO date (defaults to today)"),
    notes: Optional[str] = typer.Option(None, "--notes"),
) -> None:
    """Record attendance for one member on one day."""

    day = date or datetime.now(timezone.utc).date().isoformat()
    with _session(path) as store:
        services.record_attendance(store, {"team_member_id": member, "date": day, "status": status, "notes": notes})
    typer.echo(f"Recorded {status} for {member} on {day}.")


@attendance_app.command("stats")
def attendance_stats(
    members: List[str] = typer.Argument(..., help="One or more team member ids"),
    path: Path = typer.Option(Path("."), "--path", help="Directory containing .labtrack"),
    start: Optional[str] = typer.Option(None, "--start", help="First ISO date included"),
    end: Optional[str] = typer.Option(None, "--end", help="Last ISO date included"),
) -> None:
    """Attendance rate over a period."""

    with _session(path) as store:
        stats = services.team_attendance_stats(store, members, start, end)
    typer.echo(
        f"{stats['present_days']}/{stats['total_days']} days present ({stats['attendance_rate']:.1f}%), "
        f"{stats['late_days']} late, {stats['absent_days']} absent, {stats['excused_days']} excused"
    )


# ---------------------------------------------------------------------------
# Budget
# ---------------------------------------------------------------------------

def _parse_allocation(value: str) -> Dict[str, Any]:
    category, sep, percentage = value.rpartition("=")
    if not sep:
        raise typer.BadParameter(f"Expected CATEGORY=PERCENT, got '{value}'.")
    try:
        return {"category": category.strip(), "percentage": float(percentage)}
    except ValueError as exc:
        raise typer.BadParameter(f"Percentage must be a number in '{value}'.") from exc


@budget_app.command("set")
def budget_set(
    project: str = typer.Argument(..., help="Project id (or prefix)"),
    total: float = typer.Argument(..., help="Total budget"),
    path: Path = typer.Option(Path("."), "--path", help="Directory containing .labtrack"),
) -> None:
    """Set a project's total budget."""

    with _session(path) as store:
        updated = services.set_budget(store, _resolve_id(store, "projects", project), total)
    typer.echo(f"Budget for {updated['name']} set to {updated['budget_total']:,.2f}.")


@budget_app.command("allocate")
def budget_allocate(
    project: str = typer.Argument(..., help="Project id (or prefix)"),
    categories: List[str] = typer.Option(..., "--category", "-c", help="CATEGORY=PERCENT, repeat for each category"),
    path: Path = typer.Option(Path("."), "--path", help="Directory containing .labtrack"),
) -> None:
    """Replace the project's allocations; percentages must total 100."""

    allocations = [_parse_allocation(value) for value in categories]
    with _session(path) as store:
        saved = services.save_allocations(store, _resolve_id(store, "projects", project), allocations)
    typer.echo(f"Budget allocation saved successfully ({len(saved)} categories).")


@budget_app.command("spend")
def budget_spend(
    project: str = typer.Argument(..., help="Project id (or prefix)"),
    category: str = typer.Argument(..., help="Budget category"),
    amount: float = typer.Argument(..., help="Amount spent"),
    description: str = typer.Argument(..., help="What the money went on"),
    path: Path = typer.Option(Path("."), "--path", help="Directory containing .labtrack"),
    date: Optional[str] = typer.Option(None, "--date", help="ISO date (defaults to today)"),
) -> None:
    """Record a spending entry against a category."""

    with _session(path) as store:
        entry = services.record_spending(
            store,
            {
                "project_id": _resolve_id(store, "projects", project),
                "category": category,
                "amount": amount,
                "description": description,
                "date": date,
            },
        )
    typer.echo(f"Spending recorded successfully ({_short(entry['id'])}).")


@budget_app.command("report")
def budget_report(
    project: str = typer.Argument(..., help="Project id (or prefix)"),
    path: Path = typer.Option(Path("."), "--path", help="Directory containing .labtrack"),
) -> None:
    """Show utilization per category, burn rate and risks."""

    with _session(path) as store:
        report = services.budget_report(store, _resolve_id(store, "projects", project))
    table = Table(title=f"Budget ({report['total_spent']:,.2f} of {report['total_budget']:,.2f} spent)")
    table.add_column("Category")
    table.add_column("Allocated", justify="right")
    table.add_column("Spent", justify="right")
    table.add_column("Remaining", justify="right")
    table.add_column("Used", justify="right")
    table.add_column("Status")
    for row in report["categories"]:
        table.add_row(
            row["category"],
            f"{row['allocated']:,.2f}",
            f"{row['spent']:,.2f}",
            f"{row['remaining']:,.2f}",
            f"{row['utilization']:.1f}%",
            _styled(row["status"]),
        )
    rprint(table)
    months = report["months_remaining"]
    runway = "no recent spending" if math.isinf(months) else f"{months:.1f} months left"
    typer.echo(f"Monthly burn rate: {report['monthly_burn_rate']:,.2f} ({runway})")
    for risk in report["risk_factors"]:
        rprint(f"[red]![/red] {risk}")


# ---------------------------------------------------------------------------
# Background service
# ---------------------------------------------------------------------------

def _ping_server(port: int, timeout: float = 0.5) -> bool:
    try:
        with urllib_request.urlopen(f"http://127.0.0.1:{port}/__health", timeout=timeout) as response:
            return response.status == 200
    except (urllib_error.URLError, urllib_error.HTTPError, ConnectionError, TimeoutError):
        return False


def _start_server_process(port: int, target_state: Path) -> subprocess.Popen:
    server_log = state.server_log_path()
    cmd = [
        sys.executable,
        "-m",
        SERVER_MODULE_PATH,
        "--port",
        str(port),
        "--state-dir",
        str(target_state),
    ]
    # the child keeps its own duplicate of the descriptor
    with open(server_log, "a", encoding="utf-8", buffering=1) as log_handle:
        return subprocess.Popen(
            cmd,
            stdout=log_handle,
            stderr=log_handle,
            stdin=subprocess.DEVNULL,
            close_fds=os.name != "nt",
            start_new_session=os.name != "nt",
        )


def _shutdown_service(port: int) -> bool:
    if not _ping_server(port):
        return False
    request_obj = urllib_request.Request(
        f"http://127.0.0.1:{port}/__stop",
        data=b"{}",
        headers={"Content-Type": "application/json"},
    )
    try:
        with urllib_request.urlopen(request_obj, timeout=1) as resp:
            if resp.status == 200:
                for _ in range(25):
                    if not _ping_server(port):
                        return True
                    time.sleep(0.2)
    except (urllib_error.URLError, ConnectionError):
        return False
    return False


def _running_port() -> int:
    info = state.read_server_info() or {}
    return int(info.get("port", state.DEFAULT_PORT))


@service_app.command("start")
def service_start(
    path: Path = typer.Option(Path("."), "--path", help="Directory containing .labtrack"),
    port: int = typer.Option(state.DEFAULT_PORT, "--port", help="Port to bind"),
) -> None:
    """Start the background API server for a lab directory."""

    if _ping_server(port):
        typer.echo(f"labtrack web service is already running on port {port}.")
        return
    target_state = state.find_state_dir(path.resolve())
    if target_state is None:
        raise typer.BadParameter("Missing .labtrack state. Run `labtrack init` first.")

    process = _start_server_process(port, target_state)
    start = time.time()
    while time.time() - start < 5:
        if process.poll() is not None:
            break
        if _ping_server(port):
            state.write_server_info({"port": port, "pid": process.pid, "stateDir": str(target_state)})
            typer.echo(f"labtrack web service started on port {port}.")
            typer.echo(f"Server logs: {state.server_log_path()}")
            return
        time.sleep(0.2)
    process.terminate()
    raise typer.BadParameter(f"Failed to start labtrack web server. Check log file for details:\n{state.server_log_path()}")


@service_app.command("stop")
def service_stop() -> None:
    """Stop the background API server."""

    port = _running_port()
    if not _ping_server(port):
        typer.echo("labtrack web service is not running.")
        state.clear_server_info()
        return
    typer.echo(f"Stopping labtrack web service on port {port}...")
    graceful = _shutdown_service(port)
    state.clear_server_info()
    typer.echo("Service stopped cleanly." if graceful else "Service stopped.")


@service_app.command("status")
def service_status() -> None:
    """Report whether the API server is running."""

    info = state.read_server_info() or {}
    port = _running_port()
    if _ping_server(port):
        typer.echo(f"labtrack web service is running on port {port}.")
        if info.get("stateDir"):
            typer.echo(f"Serving: {info['stateDir']}")
    else:
        typer.echo("labtrack web service is not running.")
    typer.echo(f"Server logs: {state.server_log_path()}")


@service_app.command("logs")
def service_logs() -> None:
    """Show the location of the server log file."""

    log_path = state.server_log_path()
    typer.echo(f"Server log file: {log_path}")
    if log_path.exists():
        typer.echo(f"Log file size: {log_path.stat().st_size / 1024:.2f} KB")
    else:
        typer.echo("Log file does not exist yet (server has not been started).")


app.add_typer(project_app, name="project")
app.add_typer(milestone_app, name="milestone")
app.add_typer(activity_app, name="activity")
app.add_typer(task_app, name="task")
app.add_typer(sample_app, name="sample")
app.add_typer(patient_app, name="patient")
app.add_typer(inventory_app, name="inventory")
app.add_typer(attendance_app, name="attendance")
app.add_typer(budget_app, name="budget")
app.add_typer(service_app, name="service")


if __name__ == "__main__":
    app()
