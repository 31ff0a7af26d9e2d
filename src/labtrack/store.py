"""Generic record store over SQLite, addressed by table name.

Rows go in and come out as plain dicts. Every failure is raised as
:class:`~labtrack.errors.StoreError` carrying a ``message``. Writers can be
observed through :meth:`RecordStore.subscribe`, which is how cached views learn
that they must re-fetch.
"""
from __future__ import annotations

import logging
import sqlite3
import threading
import uuid
from concurrent.futures import ThreadPoolExecutor, TimeoutError as FutureTimeoutError
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Callable, Dict, List, Mapping, Optional, Union

from . import state
from .errors import StoreError

logger = logging.getLogger(__name__)

DB_FILENAME = "labtrack.db"

SCHEMA_SQL = """
PRAGMA journal_mode=WAL;

CREATE TABLE IF NOT EXISTS projects (
    id TEXT PRIMARY KEY,
    name TEXT NOT NULL,
    description TEXT,
    status TEXT NOT NULL DEFAULT 'active',
    start_date TEXT,
    end_date TEXT,
    budget_total REAL,
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS milestones (
    id TEXT PRIMARY KEY,
    project_id TEXT NOT NULL REFERENCES projects(id) ON DELETE CASCADE,
    name TEXT NOT NULL,
    description TEXT,
    start_date TEXT,
    end_date TEXT,
    status TEXT NOT NULL DEFAULT 'pending',
    progress INTEGER NOT NULL DEFAULT 0,
    priority TEXT NOT NULL DEFAULT 'medium',
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS activities (
    id TEXT PRIMARY KEY,
    milestone_id TEXT NOT NULL REFERENCES milestones(id) ON DELETE CASCADE,
    name TEXT NOT NULL,
    description TEXT,
    start_date TEXT,
    end_date TEXT,
    status TEXT NOT NULL DEFAULT 'pending',
    progress INTEGER NOT NULL DEFAULT 0,
    estimated_hours REAL,
    actual_hours REAL,
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS todos (
    id TEXT PRIMARY KEY,
    task TEXT NOT NULL,
    completed INTEGER NOT NULL DEFAULT 0,
    deadline TEXT,
    completed_at TEXT,
    completed_by TEXT,
    project_id TEXT REFERENCES projects(id) ON DELETE SET NULL,
    activity_id TEXT REFERENCES activities(id) ON DELETE SET NULL,
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS progress_breakdown (
    id TEXT PRIMARY KEY,
    project_id TEXT NOT NULL REFERENCES projects(id) ON DELETE CASCADE,
    todo_id TEXT REFERENCES todos(id) ON DELETE SET NULL,
    user_email TEXT NOT NULL,
    progress_added INTEGER NOT NULL,
    previous_progress INTEGER NOT NULL,
    new_progress INTEGER NOT NULL,
    reason TEXT NOT NULL,
    details TEXT,
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS patients (
    id TEXT PRIMARY KEY,
    name TEXT NOT NULL,
    medical_record_number TEXT,
    date_of_birth TEXT,
    gender TEXT,
    ethnicity TEXT,
    site TEXT,
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS samples (
    id TEXT PRIMARY KEY,
    kind TEXT NOT NULL,
    sample_id TEXT NOT NULL,
    sample_type TEXT,
    patient_id TEXT REFERENCES patients(id) ON DELETE SET NULL,
    collection_date TEXT,
    collection_year INTEGER,
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS inventory_items (
    id TEXT PRIMARY KEY,
    name TEXT NOT NULL,
    quantite_restante REAL NOT NULL DEFAULT 0,
    seuil_alerte REAL,
    status TEXT NOT NULL DEFAULT 'ok',
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS team_attendance (
    id TEXT PRIMARY KEY,
    team_member_id TEXT NOT NULL,
    date TEXT NOT NULL,
    status TEXT NOT NULL,
    notes TEXT,
    recorded_by TEXT,
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS budget_allocation (
    id TEXT PRIMARY KEY,
    project_id TEXT NOT NULL REFERENCES projects(id) ON DELETE CASCADE,
    category TEXT NOT NULL,
    percentage REAL NOT NULL,
    color TEXT,
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS spending (
    id TEXT PRIMARY KEY,
    project_id TEXT NOT NULL REFERENCES projects(id) ON DELETE CASCADE,
    category TEXT NOT NULL,
    amount REAL NOT NULL,
    description TEXT,
    date TEXT NOT NULL,
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL
);
"""

TABLES = (
    "projects",
    "milestones",
    "activities",
    "todos",
    "progress_breakdown",
    "patients",
    "samples",
    "inventory_items",
    "team_attendance",
    "budget_allocation",
    "spending",
)

INSERT = "INSERT"
UPDATE = "UPDATE"
DELETE = "DELETE"

ChangeCallback = Callable[[Dict[str, Any]], None]


def now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def db_path(state_dir: Path) -> Path:
    return state_dir / DB_FILENAME


def _column_names(conn: sqlite3.Connection, table: str) -> List[str]:
    rows = conn.execute(f"PRAGMA table_info({table})").fetchall()
    return [row[1] for row in rows]


def _maybe_add_column(conn: sqlite3.Connection, table: str, column: str, column_sql: str) -> None:
    if column not in _column_names(conn, table):
        conn.execute(f"ALTER TABLE {table} ADD COLUMN {column_sql}")
        conn.commit()


def _ensure_schema(conn: sqlite3.Connection) -> None:
    conn.executescript(SCHEMA_SQL)
    _maybe_add_column(conn, "projects", "budget_total", "budget_total REAL")


class RecordStore:
    """CRUD over the lab tables with eq-filters and change notifications."""

    def __init__(self, path: Union[str, Path] = ":memory:", timeout: Optional[float] = None) -> None:
        self.path = str(path)
        self.timeout = state.store_timeout() if timeout is None else timeout
        self._conn = sqlite3.connect(self.path, check_same_thread=False)
        self._conn.row_factory = sqlite3.Row
        self._conn.execute("PRAGMA foreign_keys = ON")
        self._lock = threading.RLock()
        self._subscribers: Dict[str, List[ChangeCallback]] = {}
        self._columns: Dict[str, List[str]] = {}
        self._executor: Optional[ThreadPoolExecutor] = None
        with self._lock:
            _ensure_schema(self._conn)

    @classmethod
    def open(cls, state_dir: Path, timeout: Optional[float] = None) -> "RecordStore":
        path = db_path(state_dir)
        if not path.exists():
            raise FileNotFoundError(f"Missing database at {path}")
        return cls(path, timeout=timeout)

    def close(self) -> None:
        """Close the connection once any call abandoned by :meth:`call` has finished.

        A timed-out call keeps running in the worker and completes all of its
        writes before the connection goes away.
        """
        if self._executor is not None:
            self._executor.shutdown(wait=True)
            self._executor = None
        self._conn.close()

    def __enter__(self) -> "RecordStore":
        return self

    def __exit__(self, *exc_info: Any) -> None:
        self.close()

    # ------------------------------------------------------------------
    # Validation
    # ------------------------------------------------------------------

    def _check_table(self, table: str) -> List[str]:
        if table not in TABLES:
            raise StoreError(f'relation "{table}" does not exist')
        if table not in self._columns:
            self._columns[table] = _column_names(self._conn, table)
        return self._columns[table]

    def _check_columns(self, table: str, names: Any) -> None:
        columns = self._check_table(table)
        unknown = [name for name in names if name not in columns]
        if unknown:
            raise StoreError(f"column \"{unknown[0]}\" of relation \"{table}\" does not exist")

    @staticmethod
    def _where(filters: Optional[Mapping[str, Any]]) -> tuple[str, List[Any]]:
        if not filters:
            return "", []
        fragments: List[str] = []
        values: List[Any] = []
        for column, value in filters.items():
            if value is None:
                fragments.append(f"{column} IS NULL")
            else:
                fragments.append(f"{column} = ?")
                values.append(value)
        return " WHERE " + " AND ".join(fragments), values

    def _execute(self, sql: str, params: Any = ()) -> sqlite3.Cursor:
        try:
            return self._conn.execute(sql, params)
        except sqlite3.Error as exc:
            raise StoreError(str(exc)) from exc

    # ------------------------------------------------------------------
    # CRUD
    # ------------------------------------------------------------------

    def select(
        self,
        table: str,
        filters: Optional[Mapping[str, Any]] = None,
        order_by: Optional[str] = None,
        descending: bool = False,
        limit: Optional[int] = None,
    ) -> List[Dict[str, Any]]:
        with self._lock:
            self._check_columns(table, list(filters or {}) + ([order_by] if order_by else []))
            where, values = self._where(filters)
            direction = "DESC" if descending else "ASC"
            order = f" ORDER BY {order_by} {direction}, rowid {direction}" if order_by else " ORDER BY rowid"
            sql = f"SELECT * FROM {table}{where}{order}"
            if limit is not None:
                sql += " LIMIT ?"
                values.append(int(limit))
            return [dict(row) for row in self._execute(sql, values).fetchall()]

    def get(self, table: str, row_id: str) -> Optional[Dict[str, Any]]:
        rows = self.select(table, {"id": row_id})
        return rows[0] if rows else None

    def insert(self, table: str, values: Mapping[str, Any]) -> Dict[str, Any]:
        row = dict(values)
        row.setdefault("id", str(uuid.uuid4()))
        timestamp = now_iso()
        row.setdefault("created_at", timestamp)
        row.setdefault("updated_at", timestamp)
        with self._lock:
            self._check_columns(table, row)
            columns = ", ".join(row)
            placeholders = ", ".join("?" for _ in row)
            with self._conn:
                self._execute(f"INSERT INTO {table} ({columns}) VALUES ({placeholders})", list(row.values()))
            inserted = self.get(table, row["id"])
        logger.debug("inserted %s into %s", row["id"], table)
        self._emit(table, INSERT, inserted, None)
        return inserted or row

    def update(self, table: str, values: Mapping[str, Any], filters: Mapping[str, Any]) -> List[Dict[str, Any]]:
        if not filters:
            raise StoreError("UPDATE requires a WHERE clause")
        updates = dict(values)
        if not updates:
            raise StoreError("No updates specified")
        updates.setdefault("updated_at", now_iso())
        with self._lock:
            self._check_columns(table, list(updates) + list(filters))
            before = self.select(table, filters)
            if not before:
                return []
            where, where_values = self._where(filters)
            set_clause = ", ".join(f"{column} = ?" for column in updates)
            with self._conn:
                self._execute(f"UPDATE {table} SET {set_clause}{where}", list(updates.values()) + where_values)
            after = [self.get(table, row["id"]) for row in before]
        updated = [row for row in after if row is not None]
        for old, new in zip(before, updated):
            self._emit(table, UPDATE, new, old)
        return updated

    def delete(self, table: str, filters: Mapping[str, Any]) -> int:
        if not filters:
            raise StoreError("DELETE requires a WHERE clause")
        with self._lock:
            self._check_columns(table, filters)
            before = self.select(table, filters)
            where, values = self._where(filters)
            with self._conn:
                cursor = self._execute(f"DELETE FROM {table}{where}", values)
        for old in before:
            self._emit(table, DELETE, None, old)
        return cursor.rowcount

    # ------------------------------------------------------------------
    # Timeout race
    # ------------------------------------------------------------------

    def call(self, fn: Callable[..., Any], *args: Any, timeout: Optional[float] = None, **kwargs: Any) -> Any:
        """Run ``fn`` against the store, failing if it has not finished in time.

        The call is not cancelled when the deadline passes; its result is
        simply ignored.
        """
        limit = self.timeout if timeout is None else timeout
        if self._executor is None:
            self._executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix="labtrack-store")
        future = self._executor.submit(fn, *args, **kwargs)
        try:
            return future.result(timeout=limit)
        except FutureTimeoutError as exc:
            logger.warning("store call %s timed out after %.1fs", getattr(fn, "__name__", fn), limit)
            raise StoreError(f"Request timed out after {limit:g}s") from exc

    # ------------------------------------------------------------------
    # Change subscriptions
    # ------------------------------------------------------------------

    def subscribe(self, table: str, callback: ChangeCallback) -> Callable[[], None]:
        """Call ``callback`` on every insert, update or delete in ``table``.

        Returns a function that removes the subscription.
        """
        self._check_table(table)
        self._subscribers.setdefault(table, []).append(callback)

        def unsubscribe() -> None:
            callbacks = self._subscribers.get(table, [])
            if callback in callbacks:
                callbacks.remove(callback)

        return unsubscribe

    def _emit(self, table: str, event_type: str, new: Optional[Dict[str, Any]], old: Optional[Dict[str, Any]]) -> None:
        event = {"type": event_type, "table": table, "new": new, "old": old}
        for callback in list(self._subscribers.get(table, [])):
            try:
                callback(event)
            except Exception:
                logger.exception("change subscriber for %s failed", table)
