from __future__ import annotations

import os
import sqlite3
from typing import Any, Iterable

from .models import ActionOutcome, ConvergenceRecord, DesiredState, Outcome, Phase, utc_now
from .settings import settings


def _resolve_db_path() -> str:
    """Return a file path usable by sqlite.

    If the configured path is a directory (Docker creates one when a missing
    bind-mounted file is mounted), the DB file is placed inside it.
    """

    p = os.path.abspath(settings.db_path)

    if os.path.isdir(p):
        p = os.path.join(p, "cdr.db")

    parent = os.path.dirname(p)
    if parent and not os.path.exists(parent):
        os.makedirs(parent, exist_ok=True)

    return p


def connect() -> sqlite3.Connection:
    conn = sqlite3.connect(_resolve_db_path(), check_same_thread=False, timeout=10)
    conn.row_factory = sqlite3.Row
    return conn


def init_db() -> None:
    """Create tables if they do not exist."""
    with connect() as conn:
        conn.executescript(
            """
            CREATE TABLE IF NOT EXISTS desired_states (
              app TEXT NOT NULL,
              revision INTEGER NOT NULL,
              image_reference TEXT NOT NULL,
              replica_count INTEGER NOT NULL,
              exposed_port INTEGER NOT NULL,
              source TEXT NOT NULL,
              created_at TEXT NOT NULL,
              PRIMARY KEY(app, revision)
            );

            CREATE TABLE IF NOT EXISTS convergence_records (
              app TEXT NOT NULL,
              revision INTEGER NOT NULL,
              started_at TEXT NOT NULL,
              completed_at TEXT,
              outcome TEXT NOT NULL, -- in_progress|converged|failed
              phase TEXT NOT NULL,
              reason TEXT NOT NULL DEFAULT '',
              attempts INTEGER NOT NULL DEFAULT 0,
              PRIMARY KEY(app, revision)
            );

            CREATE TABLE IF NOT EXISTS action_outcomes (
              id INTEGER PRIMARY KEY AUTOINCREMENT,
              app TEXT NOT NULL,
              revision INTEGER NOT NULL,
              kind TEXT NOT NULL, -- create|update|delete
              instance_id TEXT NOT NULL,
              image TEXT,
              ok INTEGER NOT NULL,
              permanent INTEGER NOT NULL DEFAULT 0,
              reason TEXT NOT NULL DEFAULT '',
              attempts INTEGER NOT NULL,
              ts TEXT NOT NULL
            );

            CREATE TABLE IF NOT EXISTS events (
              id INTEGER PRIMARY KEY AUTOINCREMENT,
              ts TEXT NOT NULL,
              level TEXT NOT NULL,
              app TEXT,
              revision INTEGER,
              message TEXT NOT NULL
            );

            CREATE INDEX IF NOT EXISTS idx_events_ts ON events(ts);
            CREATE INDEX IF NOT EXISTS idx_action_outcomes_rev ON action_outcomes(app, revision);
            """
        )


def log_event(level: str, message: str, app: str | None = None, revision: int | None = None) -> None:
    with connect() as conn:
        conn.execute(
            "INSERT INTO events (ts, level, app, revision, message) VALUES (?, ?, ?, ?, ?)",
            (utc_now(), level.upper(), app, revision, message),
        )


def latest_events(limit: int = 100) -> list[dict[str, Any]]:
    with connect() as conn:
        rows = conn.execute("SELECT * FROM events ORDER BY id DESC LIMIT ?", (limit,)).fetchall()
        return [dict(r) for r in rows]


def _rows_to_dataclass(rows: Iterable[sqlite3.Row], cls: Any) -> list[Any]:
    out: list[Any] = []
    for r in rows:
        out.append(cls(**dict(r)))
    return out


# --- desired state ---


def insert_desired_state(app: str, image_reference: str, replica_count: int, exposed_port: int, source: str) -> DesiredState:
    """Append the next revision for `app`. Revision = previous max + 1."""
    with connect() as conn:
        conn.execute("BEGIN IMMEDIATE")
        row = conn.execute("SELECT COALESCE(MAX(revision), 0) FROM desired_states WHERE app=?", (app,)).fetchone()
        revision = int(row[0]) + 1
        conn.execute(
            """
            INSERT INTO desired_states (app, revision, image_reference, replica_count, exposed_port, source, created_at)
            VALUES (?, ?, ?, ?, ?, ?, ?)
            """,
            (app, revision, image_reference, replica_count, exposed_port, source, utc_now()),
        )
        cur = conn.execute("SELECT * FROM desired_states WHERE app=? AND revision=?", (app, revision))
        return DesiredState(**dict(cur.fetchone()))


def get_desired_state(app: str, revision: int) -> DesiredState | None:
    with connect() as conn:
        row = conn.execute("SELECT * FROM desired_states WHERE app=? AND revision=?", (app, revision)).fetchone()
        return DesiredState(**dict(row)) if row else None


def latest_desired_state(app: str) -> DesiredState | None:
    with connect() as conn:
        row = conn.execute(
            "SELECT * FROM desired_states WHERE app=? ORDER BY revision DESC LIMIT 1", (app,)
        ).fetchone()
        return DesiredState(**dict(row)) if row else None


def list_desired_states(app: str, limit: int = 50) -> list[DesiredState]:
    with connect() as conn:
        rows = conn.execute(
            "SELECT * FROM desired_states WHERE app=? ORDER BY revision DESC LIMIT ?", (app, limit)
        ).fetchall()
        return _rows_to_dataclass(rows, DesiredState)


# --- convergence records ---


def _record_from_row(row: sqlite3.Row) -> ConvergenceRecord:
    d = dict(row)
    d.pop("app", None)
    d["outcome"] = Outcome(d["outcome"])
    d["phase"] = Phase(d["phase"])
    return ConvergenceRecord(**d)


def save_record(app: str, rec: ConvergenceRecord) -> None:
    with connect() as conn:
        conn.execute(
            """
            INSERT INTO convergence_records (app, revision, started_at, completed_at, outcome, phase, reason, attempts)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?)
            ON CONFLICT(app, revision) DO UPDATE SET
              completed_at=excluded.completed_at,
              outcome=excluded.outcome,
              phase=excluded.phase,
              reason=excluded.reason,
              attempts=excluded.attempts
            """,
            (
                app,
                rec.revision,
                rec.started_at,
                rec.completed_at,
                rec.outcome.value,
                rec.phase.value,
                rec.reason,
                rec.attempts,
            ),
        )


def get_record(app: str, revision: int) -> ConvergenceRecord | None:
    with connect() as conn:
        row = conn.execute(
            "SELECT * FROM convergence_records WHERE app=? AND revision=?", (app, revision)
        ).fetchone()
        return _record_from_row(row) if row else None


def list_records(app: str, limit: int = 50) -> list[ConvergenceRecord]:
    with connect() as conn:
        rows = conn.execute(
            "SELECT * FROM convergence_records WHERE app=? ORDER BY revision DESC LIMIT ?", (app, limit)
        ).fetchall()
        return [_record_from_row(r) for r in rows]


# --- action outcomes ---


def insert_action_outcome(app: str, revision: int, outcome: ActionOutcome) -> None:
    action = outcome.action
    image = getattr(action, "image", None) or getattr(action, "new_image", None)
    with connect() as conn:
        conn.execute(
            """
            INSERT INTO action_outcomes (app, revision, kind, instance_id, image, ok, permanent, reason, attempts, ts)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                app,
                revision,
                action.kind,
                action.instance_id,
                image,
                int(outcome.ok),
                int(outcome.permanent),
                outcome.reason,
                outcome.attempts,
                utc_now(),
            ),
        )


def list_action_outcomes(app: str, revision: int) -> list[dict[str, Any]]:
    with connect() as conn:
        rows = conn.execute(
            "SELECT * FROM action_outcomes WHERE app=? AND revision=? ORDER BY id", (app, revision)
        ).fetchall()
        out = []
        for r in rows:
            d = dict(r)
            d["ok"] = bool(d["ok"])
            d["permanent"] = bool(d["permanent"])
            out.append(d)
        return out
