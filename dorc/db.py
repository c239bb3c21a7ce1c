from __future__ import annotations

import json
import os
import sqlite3
from typing import Any

from .api_models import RevisionDocument
from .errors import ConflictError, InvalidRevisionError, ServiceNotFoundError
from .models import Phase, RevisionDescriptor, Service, utc_now
from .settings import settings


def _resolve_db_path() -> str:
    """Return a file path usable by sqlite.

    If the configured path is a directory (Docker creates one when a bind
    mounted file does not exist yet), the DB file is placed inside it.
    """
    p = os.path.abspath(settings.db_path)
    if os.path.isdir(p):
        p = os.path.join(p, "dorc.db")
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
            CREATE TABLE IF NOT EXISTS services (
              service_id TEXT PRIMARY KEY,
              current_revision TEXT,
              target_revision TEXT,
              phase TEXT NOT NULL, -- IDLE|LAUNCHING|STABILIZING|COMMITTED|ROLLING_BACK|FAILED
              generation INTEGER NOT NULL,
              last_error TEXT,
              updated_at TEXT NOT NULL
            );

            CREATE TABLE IF NOT EXISTS revisions (
              service_id TEXT NOT NULL,
              revision_id TEXT NOT NULL,
              body TEXT NOT NULL, -- JSON revision document
              created_at TEXT NOT NULL,
              PRIMARY KEY(service_id, revision_id)
            );

            CREATE TABLE IF NOT EXISTS events (
              id INTEGER PRIMARY KEY AUTOINCREMENT,
              ts TEXT NOT NULL,
              level TEXT NOT NULL,
              kind TEXT,
              service_id TEXT,
              revision_id TEXT,
              message TEXT NOT NULL,
              data TEXT
            );

            CREATE INDEX IF NOT EXISTS idx_events_ts ON events(ts);
            CREATE INDEX IF NOT EXISTS idx_events_service ON events(service_id);
            """
        )


def log_event(
    level: str,
    message: str,
    service_id: str | None = None,
    revision_id: str | None = None,
    kind: str | None = None,
    data: dict[str, Any] | None = None,
) -> None:
    with connect() as conn:
        conn.execute(
            "INSERT INTO events (ts, level, kind, service_id, revision_id, message, data) VALUES (?, ?, ?, ?, ?, ?, ?)",
            (
                utc_now(),
                level.upper(),
                kind,
                service_id,
                revision_id,
                message,
                json.dumps(data, sort_keys=True) if data is not None else None,
            ),
        )


def latest_events(limit: int = 100, service_id: str | None = None) -> list[dict[str, Any]]:
    with connect() as conn:
        if service_id:
            rows = conn.execute(
                "SELECT * FROM events WHERE service_id=? ORDER BY id DESC LIMIT ?", (service_id, limit)
            ).fetchall()
        else:
            rows = conn.execute("SELECT * FROM events ORDER BY id DESC LIMIT ?", (limit,)).fetchall()
    out = []
    for r in rows:
        ev = dict(r)
        ev["data"] = json.loads(ev["data"]) if ev["data"] else None
        out.append(ev)
    return out


def _row_to_service(row: sqlite3.Row) -> Service:
    d = dict(row)
    d["phase"] = Phase(d["phase"])
    return Service(**d)


class StateStore:
    """Durable Service records with compare-and-swap saves.

    ``save`` succeeds only if the record still has the generation the caller
    loaded; otherwise someone else changed it and ConflictError is raised.
    """

    def load(self, service_id: str) -> Service:
        with connect() as conn:
            row = conn.execute("SELECT * FROM services WHERE service_id=?", (service_id,)).fetchone()
        if not row:
            raise ServiceNotFoundError(f"Unknown service '{service_id}'")
        return _row_to_service(row)

    def save(self, service: Service) -> Service:
        stored = service.evolve(generation=service.generation + 1)
        values = (
            stored.current_revision,
            stored.target_revision,
            stored.phase.value,
            stored.generation,
            stored.last_error,
            stored.updated_at,
        )
        with connect() as conn:
            if service.generation == 0:
                try:
                    conn.execute(
                        """
                        INSERT INTO services (current_revision, target_revision, phase, generation, last_error, updated_at, service_id)
                        VALUES (?, ?, ?, ?, ?, ?, ?)
                        """,
                        values + (stored.service_id,),
                    )
                except sqlite3.IntegrityError as e:
                    raise ConflictError(f"Service '{service.service_id}' was created concurrently") from e
            else:
                cur = conn.execute(
                    """
                    UPDATE services
                    SET current_revision=?, target_revision=?, phase=?, generation=?, last_error=?, updated_at=?
                    WHERE service_id=? AND generation=?
                    """,
                    values + (stored.service_id, service.generation),
                )
                if cur.rowcount != 1:
                    raise ConflictError(
                        f"Service '{service.service_id}' changed since generation {service.generation}"
                    )
        return stored

    def list(self) -> list[Service]:
        with connect() as conn:
            rows = conn.execute("SELECT * FROM services ORDER BY service_id").fetchall()
        return [_row_to_service(r) for r in rows]

    def save_revision(self, service_id: str, revision: RevisionDescriptor) -> None:
        """Record a revision. Revisions are immutable: reusing an id for
        different content is rejected."""
        existing = self.get_revision(service_id, revision.revision_id)
        if existing is not None:
            if existing != revision:
                raise InvalidRevisionError(
                    f"Revision '{revision.revision_id}' already exists for '{service_id}' with different content"
                )
            return
        body = RevisionDocument.from_descriptor(revision).model_dump_json()
        with connect() as conn:
            conn.execute(
                "INSERT INTO revisions (service_id, revision_id, body, created_at) VALUES (?, ?, ?, ?)",
                (service_id, revision.revision_id, body, utc_now()),
            )

    def get_revision(self, service_id: str, revision_id: str) -> RevisionDescriptor | None:
        with connect() as conn:
            row = conn.execute(
                "SELECT body FROM revisions WHERE service_id=? AND revision_id=?", (service_id, revision_id)
            ).fetchone()
        if not row:
            return None
        return RevisionDocument.model_validate_json(row["body"]).to_descriptor()
