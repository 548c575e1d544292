from __future__ import annotations

import json
import os
import sqlite3
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Iterable

from .errors import ConflictError, NotFoundError
from .settings import settings


def utc_now() -> str:
    return datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")


def _resolve_db_path() -> str:
    """Return a file path usable by sqlite.

    If the configured path is a directory (e.g. a bind mount created by the
    container runtime) the DB file is placed inside it.
    """

    p = os.path.abspath(settings.db_path)

    if os.path.isdir(p):
        p = os.path.join(p, "pdc.db")

    parent = os.path.dirname(p)
    if parent and not os.path.exists(parent):
        os.makedirs(parent, exist_ok=True)

    return p


def connect() -> sqlite3.Connection:
    conn = sqlite3.connect(_resolve_db_path(), timeout=settings.db_timeout_s, check_same_thread=False)
    conn.row_factory = sqlite3.Row
    conn.execute("PRAGMA foreign_keys=ON")
    return conn


def init_db() -> None:
    """Create tables if they do not exist."""
    with connect() as conn:
        conn.executescript(
            """
            CREATE TABLE IF NOT EXISTS rollouts (
              name TEXT PRIMARY KEY,
              api_version TEXT NOT NULL,
              kind TEXT NOT NULL,
              generation INTEGER NOT NULL,
              resource_version INTEGER NOT NULL,
              annotations TEXT NOT NULL,
              labels TEXT NOT NULL,
              spec TEXT NOT NULL,
              status TEXT NOT NULL,
              created_at TEXT NOT NULL,
              updated_at TEXT NOT NULL
            );

            CREATE TABLE IF NOT EXISTS workloads (
              kind TEXT NOT NULL,
              name TEXT NOT NULL,
              api_version TEXT NOT NULL,
              template TEXT NOT NULL,
              updated_at TEXT NOT NULL,
              PRIMARY KEY(kind, name)
            );

            CREATE TABLE IF NOT EXISTS replica_sets (
              id INTEGER PRIMARY KEY AUTOINCREMENT,
              rollout TEXT NOT NULL,
              pod_hash TEXT NOT NULL,
              name TEXT NOT NULL,
              template TEXT NOT NULL,
              replicas INTEGER NOT NULL,
              role TEXT, -- stable|canary|experiment|NULL
              revision INTEGER NOT NULL,
              resource_version INTEGER NOT NULL DEFAULT 1,
              created_at TEXT NOT NULL,
              UNIQUE(rollout, pod_hash)
            );

            CREATE TABLE IF NOT EXISTS analysis_templates (
              name TEXT PRIMARY KEY,
              spec TEXT NOT NULL,
              updated_at TEXT NOT NULL
            );

            CREATE TABLE IF NOT EXISTS analysis_runs (
              name TEXT PRIMARY KEY,
              rollout TEXT NOT NULL,
              template_name TEXT NOT NULL,
              args TEXT NOT NULL,
              metrics TEXT NOT NULL,
              phase TEXT NOT NULL,
              message TEXT NOT NULL,
              metric_results TEXT NOT NULL,
              terminated INTEGER NOT NULL DEFAULT 0,
              created_at TEXT NOT NULL,
              updated_at TEXT NOT NULL
            );

            CREATE TABLE IF NOT EXISTS events (
              id INTEGER PRIMARY KEY AUTOINCREMENT,
              ts TEXT NOT NULL,
              level TEXT NOT NULL,
              rollout TEXT,
              reason TEXT,
              message TEXT NOT NULL
            );

            CREATE INDEX IF NOT EXISTS idx_events_ts ON events(ts);
            CREATE INDEX IF NOT EXISTS idx_replica_sets_rollout ON replica_sets(rollout);
            CREATE INDEX IF NOT EXISTS idx_analysis_runs_rollout ON analysis_runs(rollout);
            """
        )


def log_event(level: str, message: str, rollout: str | None = None, reason: str | None = None) -> None:
    with connect() as conn:
        conn.execute(
            "INSERT INTO events (ts, level, rollout, reason, message) VALUES (?, ?, ?, ?, ?)",
            (utc_now(), level.upper(), rollout, reason, message),
        )


def latest_events(limit: int = 100, rollout: str | None = None) -> list[dict[str, Any]]:
    with connect() as conn:
        if rollout:
            rows = conn.execute(
                "SELECT * FROM events WHERE rollout=? ORDER BY id DESC LIMIT ?", (rollout, limit)
            ).fetchall()
        else:
            rows = conn.execute("SELECT * FROM events ORDER BY id DESC LIMIT ?", (limit,)).fetchall()
        return [dict(r) for r in rows]


@dataclass(frozen=True)
class RolloutRow:
    name: str
    api_version: str
    kind: str
    generation: int
    resource_version: int
    annotations: dict[str, str]
    labels: dict[str, str]
    spec: dict[str, Any]
    status: dict[str, Any]
    created_at: str
    updated_at: str


@dataclass(frozen=True)
class WorkloadRow:
    kind: str
    name: str
    api_version: str
    template: dict[str, Any]
    updated_at: str


@dataclass(frozen=True)
class ReplicaSetRow:
    id: int
    rollout: str
    pod_hash: str
    name: str
    template: dict[str, Any]
    replicas: int
    role: str | None
    revision: int
    resource_version: int
    created_at: str


@dataclass(frozen=True)
class AnalysisRunRow:
    name: str
    rollout: str
    template_name: str
    args: dict[str, str]
    metrics: list[dict[str, Any]]
    phase: str
    message: str
    metric_results: list[dict[str, Any]]
    terminated: bool
    created_at: str
    updated_at: str


_JSON_COLUMNS = {"annotations", "labels", "spec", "status", "template", "args", "metrics", "metric_results"}


def _decode(row: sqlite3.Row) -> dict[str, Any]:
    out = dict(row)
    for key in _JSON_COLUMNS & out.keys():
        if isinstance(out[key], str):
            out[key] = json.loads(out[key])
    if "terminated" in out:
        out["terminated"] = bool(out["terminated"])
    return out


def _rows_to_dataclass(rows: Iterable[sqlite3.Row], cls: Any) -> list[Any]:
    out: list[Any] = []
    for r in rows:
        out.append(cls(**_decode(r)))
    return out


def _dumps(value: Any) -> str:
    return json.dumps(value, sort_keys=True, separators=(",", ":"))


# --- Rollouts --------------------------------------------------------------------


def _select_rollout(conn: sqlite3.Connection, name: str) -> RolloutRow | None:
    row = conn.execute("SELECT * FROM rollouts WHERE name=?", (name,)).fetchone()
    return RolloutRow(**_decode(row)) if row else None


def get_rollout(name: str) -> RolloutRow | None:
    with connect() as conn:
        return _select_rollout(conn, name)


def list_rollouts() -> list[RolloutRow]:
    with connect() as conn:
        rows = conn.execute("SELECT * FROM rollouts ORDER BY name").fetchall()
        return _rows_to_dataclass(rows, RolloutRow)


def create_rollout(
    name: str,
    api_version: str,
    kind: str,
    annotations: dict[str, str],
    labels: dict[str, str],
    spec: dict[str, Any],
) -> RolloutRow:
    now = utc_now()
    with connect() as conn:
        try:
            conn.execute(
                """
                INSERT INTO rollouts (name, api_version, kind, generation, resource_version, annotations, labels, spec, status, created_at, updated_at)
                VALUES (?, ?, ?, 1, 1, ?, ?, ?, ?, ?, ?)
                """,
                (name, api_version, kind, _dumps(annotations), _dumps(labels), _dumps(spec), _dumps({}), now, now),
            )
        except sqlite3.IntegrityError as e:
            raise ConflictError(f"rollout {name!r} already exists") from e
        return _select_rollout(conn, name)  # type: ignore[return-value]


def _cas_failure(conn: sqlite3.Connection, name: str, expected_version: int) -> Exception:
    cur = conn.execute("SELECT resource_version FROM rollouts WHERE name=?", (name,)).fetchone()
    if cur is None:
        return NotFoundError(f"rollout {name!r} not found")
    return ConflictError(
        f"rollout {name!r} was modified (expected resourceVersion {expected_version}, found {cur[0]})"
    )


def update_rollout_spec(
    name: str,
    annotations: dict[str, str],
    labels: dict[str, str],
    spec: dict[str, Any],
    expected_version: int,
) -> RolloutRow:
    """Replace metadata and spec. Generation only moves when the spec changes."""
    with connect() as conn:
        cur = conn.execute(
            """
            UPDATE rollouts
            SET annotations=?, labels=?,
                generation=generation + (CASE WHEN spec=? THEN 0 ELSE 1 END),
                spec=?, resource_version=resource_version+1, updated_at=?
            WHERE name=? AND resource_version=?
            """,
            (_dumps(annotations), _dumps(labels), _dumps(spec), _dumps(spec), utc_now(), name, expected_version),
        )
        if cur.rowcount == 0:
            raise _cas_failure(conn, name, expected_version)
        return _select_rollout(conn, name)  # type: ignore[return-value]


def update_rollout_status(name: str, status: dict[str, Any], expected_version: int) -> RolloutRow:
    """Compare-and-swap write of a rollout status.

    Raises ConflictError when the row moved past ``expected_version``.
    """
    with connect() as conn:
        cur = conn.execute(
            """
            UPDATE rollouts
            SET status=?, resource_version=resource_version+1, updated_at=?
            WHERE name=? AND resource_version=?
            """,
            (_dumps(status), utc_now(), name, expected_version),
        )
        if cur.rowcount == 0:
            raise _cas_failure(conn, name, expected_version)
        return _select_rollout(conn, name)  # type: ignore[return-value]


def delete_rollout(name: str) -> bool:
    with connect() as conn:
        cur = conn.execute("DELETE FROM rollouts WHERE name=?", (name,))
        return cur.rowcount > 0


# --- Workloads ---------------------------------------------------------------------


def upsert_workload(kind: str, name: str, api_version: str, template: dict[str, Any]) -> WorkloadRow:
    with connect() as conn:
        conn.execute(
            """
            INSERT INTO workloads (kind, name, api_version, template, updated_at)
            VALUES (?, ?, ?, ?, ?)
            ON CONFLICT(kind, name) DO UPDATE SET
              api_version=excluded.api_version,
              template=excluded.template,
              updated_at=excluded.updated_at
            """,
            (kind, name, api_version, _dumps(template), utc_now()),
        )
        row = conn.execute("SELECT * FROM workloads WHERE kind=? AND name=?", (kind, name)).fetchone()
        return WorkloadRow(**_decode(row))


def get_workload(kind: str, name: str) -> WorkloadRow | None:
    with connect() as conn:
        row = conn.execute("SELECT * FROM workloads WHERE kind=? AND name=?", (kind, name)).fetchone()
        return WorkloadRow(**_decode(row)) if row else None


# --- Replica sets ------------------------------------------------------------------


def list_replica_sets(rollout: str) -> list[ReplicaSetRow]:
    with connect() as conn:
        rows = conn.execute("SELECT * FROM replica_sets WHERE rollout=? ORDER BY revision", (rollout,)).fetchall()
        return _rows_to_dataclass(rows, ReplicaSetRow)


def get_replica_set(rollout: str, pod_hash: str) -> ReplicaSetRow | None:
    with connect() as conn:
        row = conn.execute(
            "SELECT * FROM replica_sets WHERE rollout=? AND pod_hash=?", (rollout, pod_hash)
        ).fetchone()
        return ReplicaSetRow(**_decode(row)) if row else None


def insert_replica_set(
    rollout: str, pod_hash: str, template: dict[str, Any], replicas: int, role: str | None
) -> ReplicaSetRow:
    with connect() as conn:
        revision = conn.execute(
            "SELECT COALESCE(MAX(revision), 0) + 1 FROM replica_sets WHERE rollout=?", (rollout,)
        ).fetchone()[0]
        try:
            conn.execute(
                """
                INSERT INTO replica_sets (rollout, pod_hash, name, template, replicas, role, revision, created_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (rollout, pod_hash, f"{rollout}-{pod_hash}", _dumps(template), replicas, role, revision, utc_now()),
            )
        except sqlite3.IntegrityError as e:
            raise ConflictError(f"replica set {rollout}-{pod_hash} already exists") from e
        row = conn.execute(
            "SELECT * FROM replica_sets WHERE rollout=? AND pod_hash=?", (rollout, pod_hash)
        ).fetchone()
        return ReplicaSetRow(**_decode(row))


def scale_replica_set(rs_id: int, replicas: int, expected_version: int) -> bool:
    """Set desired replicas if the row is still at ``expected_version``."""
    with connect() as conn:
        cur = conn.execute(
            """
            UPDATE replica_sets SET replicas=?, resource_version=resource_version+1
            WHERE id=? AND resource_version=?
            """,
            (replicas, rs_id, expected_version),
        )
        return cur.rowcount > 0


def set_replica_set_role(rs_id: int, role: str | None, expected_version: int) -> bool:
    with connect() as conn:
        cur = conn.execute(
            """
            UPDATE replica_sets SET role=?, resource_version=resource_version+1
            WHERE id=? AND resource_version=?
            """,
            (role, rs_id, expected_version),
        )
        return cur.rowcount > 0


def delete_replica_set(rs_id: int) -> None:
    with connect() as conn:
        conn.execute("DELETE FROM replica_sets WHERE id=?", (rs_id,))


def delete_replica_sets_for(rollout: str) -> None:
    with connect() as conn:
        conn.execute("DELETE FROM replica_sets WHERE rollout=?", (rollout,))


# --- Analysis templates / runs -------------------------------------------------------


def upsert_analysis_template(name: str, spec: dict[str, Any]) -> None:
    with connect() as conn:
        conn.execute(
            """
            INSERT INTO analysis_templates (name, spec, updated_at) VALUES (?, ?, ?)
            ON CONFLICT(name) DO UPDATE SET spec=excluded.spec, updated_at=excluded.updated_at
            """,
            (name, _dumps(spec), utc_now()),
        )


def get_analysis_template(name: str) -> dict[str, Any] | None:
    with connect() as conn:
        row = conn.execute("SELECT spec FROM analysis_templates WHERE name=?", (name,)).fetchone()
        return json.loads(row["spec"]) if row else None


def list_analysis_templates() -> list[dict[str, Any]]:
    with connect() as conn:
        rows = conn.execute("SELECT * FROM analysis_templates ORDER BY name").fetchall()
        return [_decode(r) for r in rows]


def insert_analysis_run(
    name: str,
    rollout: str,
    template_name: str,
    args: dict[str, str],
    metrics: list[dict[str, Any]],
    phase: str,
    message: str = "",
) -> AnalysisRunRow:
    now = utc_now()
    with connect() as conn:
        conn.execute(
            """
            INSERT INTO analysis_runs (name, rollout, template_name, args, metrics, phase, message, metric_results, created_at, updated_at)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (name, rollout, template_name, _dumps(args), _dumps(metrics), phase, message, _dumps([]), now, now),
        )
        row = conn.execute("SELECT * FROM analysis_runs WHERE name=?", (name,)).fetchone()
        return AnalysisRunRow(**_decode(row))


def get_analysis_run(name: str) -> AnalysisRunRow | None:
    with connect() as conn:
        row = conn.execute("SELECT * FROM analysis_runs WHERE name=?", (name,)).fetchone()
        return AnalysisRunRow(**_decode(row)) if row else None


def list_analysis_runs(rollout: str | None = None) -> list[AnalysisRunRow]:
    with connect() as conn:
        if rollout:
            rows = conn.execute(
                "SELECT * FROM analysis_runs WHERE rollout=? ORDER BY rowid DESC", (rollout,)
            ).fetchall()
        else:
            rows = conn.execute("SELECT * FROM analysis_runs ORDER BY rowid DESC").fetchall()
        return _rows_to_dataclass(rows, AnalysisRunRow)


def update_analysis_run(
    name: str,
    phase: str,
    message: str,
    metric_results: list[dict[str, Any]],
    terminated: bool | None = None,
) -> None:
    with connect() as conn:
        if terminated is None:
            conn.execute(
                "UPDATE analysis_runs SET phase=?, message=?, metric_results=?, updated_at=? WHERE name=?",
                (phase, message, _dumps(metric_results), utc_now(), name),
            )
        else:
            conn.execute(
                """
                UPDATE analysis_runs SET phase=?, message=?, metric_results=?, terminated=?, updated_at=?
                WHERE name=?
                """,
                (phase, message, _dumps(metric_results), int(terminated), utc_now(), name),
            )


def delete_analysis_run(name: str) -> None:
    with connect() as conn:
        conn.execute("DELETE FROM analysis_runs WHERE name=?", (name,))


def delete_analysis_runs_for(rollout: str) -> None:
    with connect() as conn:
        conn.execute("DELETE FROM analysis_runs WHERE rollout=?", (rollout,))
