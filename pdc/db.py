from __future__ import annotations

import json
import os
import sqlite3
from typing import Any

from .models import Deployment, DeploymentState, HistoryEntry, Pool, Strategy, utc_now
from .settings import settings


def _resolve_db_path() -> str:
    """Return a file path usable by sqlite.

    A bind-mounted path that did not exist on the host shows up as a
    directory inside the container; in that case the DB file goes inside it.
    """
    p = os.path.abspath(settings.db_path)

    if os.path.isdir(p):
        p = os.path.join(p, "pdc.db")

    parent = os.path.dirname(p)
    if parent and not os.path.exists(parent):
        os.makedirs(parent, exist_ok=True)

    return p


def connect() -> sqlite3.Connection:
    conn = sqlite3.connect(_resolve_db_path(), check_same_thread=False)
    conn.row_factory = sqlite3.Row
    conn.execute("PRAGMA foreign_keys=ON")
    return conn


def init_db() -> None:
    """Create tables if they do not exist."""
    with connect() as conn:
        conn.executescript(
            """
            CREATE TABLE IF NOT EXISTS deployments (
              name TEXT PRIMARY KEY,
              strategy TEXT NOT NULL, -- blue-green|canary
              state TEXT NOT NULL,
              total_capacity INTEGER NOT NULL,
              candidate_weight INTEGER NOT NULL,
              shift_direction INTEGER NOT NULL DEFAULT 0,
              stable_pool TEXT, -- JSON
              candidate_pool TEXT, -- JSON
              created_at TEXT NOT NULL,
              updated_at TEXT NOT NULL
            );

            CREATE TABLE IF NOT EXISTS history (
              deployment TEXT NOT NULL,
              seq INTEGER NOT NULL,
              ts TEXT NOT NULL,
              from_state TEXT NOT NULL,
              to_state TEXT NOT NULL,
              verb TEXT NOT NULL,
              parameters TEXT NOT NULL, -- JSON
              PRIMARY KEY(deployment, seq),
              FOREIGN KEY(deployment) REFERENCES deployments(name) ON DELETE CASCADE
            );

            CREATE TABLE IF NOT EXISTS events (
              id INTEGER PRIMARY KEY AUTOINCREMENT,
              ts TEXT NOT NULL,
              level TEXT NOT NULL,
              service_name TEXT,
              version TEXT,
              message TEXT NOT NULL
            );

            CREATE INDEX IF NOT EXISTS idx_events_ts ON events(ts);
            """
        )


def log_event(level: str, message: str, service_name: str | None = None, version: str | None = None) -> None:
    with connect() as conn:
        conn.execute(
            "INSERT INTO events (ts, level, service_name, version, message) VALUES (?, ?, ?, ?, ?)",
            (utc_now(), level.upper(), service_name, version, message),
        )


def _pool_json(pool: Pool | None) -> str | None:
    if pool is None:
        return None
    return json.dumps(
        {
            "name": pool.name,
            "label": pool.label,
            "image": pool.image,
            "replica_count": pool.replica_count,
            "ready_count": pool.ready_count,
        }
    )


def save_deployment(dep: Deployment) -> None:
    """Upsert the record and append history entries not stored yet.

    Both writes share one transaction, so a record is never persisted with
    a state its history does not explain.
    """
    with connect() as conn:
        conn.execute(
            """
            INSERT INTO deployments (name, strategy, state, total_capacity, candidate_weight, shift_direction,
                                     stable_pool, candidate_pool, created_at, updated_at)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            ON CONFLICT(name) DO UPDATE SET
              strategy=excluded.strategy,
              state=excluded.state,
              total_capacity=excluded.total_capacity,
              candidate_weight=excluded.candidate_weight,
              shift_direction=excluded.shift_direction,
              stable_pool=excluded.stable_pool,
              candidate_pool=excluded.candidate_pool,
              updated_at=excluded.updated_at
            """,
            (
                dep.name,
                dep.strategy.value,
                dep.state.value,
                dep.total_capacity,
                dep.candidate_weight,
                dep.shift_direction,
                _pool_json(dep.stable_pool),
                _pool_json(dep.candidate_pool),
                dep.created_at,
                dep.updated_at,
            ),
        )
        row = conn.execute("SELECT COUNT(*) AS n FROM history WHERE deployment=?", (dep.name,)).fetchone()
        stored = int(row["n"])
        for seq, entry in enumerate(dep.history[stored:], start=stored):
            conn.execute(
                """
                INSERT INTO history (deployment, seq, ts, from_state, to_state, verb, parameters)
                VALUES (?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    dep.name,
                    seq,
                    entry.timestamp,
                    entry.from_state,
                    entry.to_state,
                    entry.verb,
                    json.dumps(entry.parameters, sort_keys=True),
                ),
            )


def _row_to_deployment(conn: sqlite3.Connection, row: sqlite3.Row) -> Deployment:
    hist_rows = conn.execute(
        "SELECT * FROM history WHERE deployment=? ORDER BY seq", (row["name"],)
    ).fetchall()
    history = [
        HistoryEntry(
            timestamp=h["ts"],
            from_state=h["from_state"],
            to_state=h["to_state"],
            verb=h["verb"],
            parameters=json.loads(h["parameters"]),
        )
        for h in hist_rows
    ]
    return Deployment(
        name=row["name"],
        strategy=Strategy(row["strategy"]),
        total_capacity=int(row["total_capacity"]),
        state=DeploymentState(row["state"]),
        stable_pool=Pool.from_dict(json.loads(row["stable_pool"]) if row["stable_pool"] else None),
        candidate_pool=Pool.from_dict(json.loads(row["candidate_pool"]) if row["candidate_pool"] else None),
        candidate_weight=int(row["candidate_weight"]),
        shift_direction=int(row["shift_direction"]),
        history=history,
        created_at=row["created_at"],
        updated_at=row["updated_at"],
    )


def load_deployment(name: str) -> Deployment | None:
    with connect() as conn:
        row = conn.execute("SELECT * FROM deployments WHERE name=?", (name,)).fetchone()
        return _row_to_deployment(conn, row) if row else None


def list_deployments() -> list[Deployment]:
    with connect() as conn:
        rows = conn.execute("SELECT * FROM deployments ORDER BY name").fetchall()
        return [_row_to_deployment(conn, r) for r in rows]


def delete_deployment(name: str) -> None:
    with connect() as conn:
        conn.execute("DELETE FROM deployments WHERE name=?", (name,))


def latest_events(limit: int = 100, service_name: str | None = None) -> list[dict[str, Any]]:
    with connect() as conn:
        if service_name:
            rows = conn.execute(
                "SELECT * FROM events WHERE service_name=? ORDER BY id DESC LIMIT ?", (service_name, limit)
            ).fetchall()
        else:
            rows = conn.execute("SELECT * FROM events ORDER BY id DESC LIMIT ?", (limit,)).fetchall()
        return [dict(r) for r in rows]
