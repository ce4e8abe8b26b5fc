"""Append-only log of orchestrator transitions.

Insertion order (the autoincrement id) is authoritative; timestamps are only
used for filtering.
"""

import json
import sqlite3
from datetime import datetime

from build_orchestrator.db.engine import format_ts, parse_ts, utcnow
from build_orchestrator.db.models import OrchestratorEvent


def append(db: sqlite3.Connection, event: OrchestratorEvent) -> OrchestratorEvent:
    """Persist one event. Never overwrites."""
    timestamp = event.timestamp or utcnow()
    cur = db.execute(
        """INSERT INTO orchestrator_events (project_id, task_id, event, data, timestamp)
           VALUES (?, ?, ?, ?, ?)""",
        (
            event.project_id,
            event.task_id,
            event.event,
            json.dumps(event.data) if event.data is not None else None,
            format_ts(timestamp),
        ),
    )
    db.commit()
    return OrchestratorEvent(
        id=cur.lastrowid,
        project_id=event.project_id,
        task_id=event.task_id,
        event=event.event,
        data=event.data,
        timestamp=parse_ts(format_ts(timestamp)),
    )


def log(
    db: sqlite3.Connection,
    project_id: str,
    event: str,
    task_id: str | None = None,
    **data,
) -> OrchestratorEvent:
    """Shorthand for appending an event built from keyword data."""
    return append(
        db,
        OrchestratorEvent(project_id=project_id, event=event, task_id=task_id, data=data or None),
    )


def read_recent(db: sqlite3.Connection, project_id: str, n: int = 50) -> list[OrchestratorEvent]:
    """The n most recent events, oldest first."""
    rows = db.execute(
        "SELECT * FROM orchestrator_events WHERE project_id = ? ORDER BY id DESC LIMIT ?",
        (project_id, n),
    ).fetchall()
    return [_row_to_event(r) for r in reversed(rows)]


def read_since(
    db: sqlite3.Connection,
    project_id: str,
    since: datetime,
) -> list[OrchestratorEvent]:
    """All events with timestamp >= since, in insertion order."""
    rows = db.execute(
        """SELECT * FROM orchestrator_events
           WHERE project_id = ? AND timestamp >= ? ORDER BY id ASC""",
        (project_id, format_ts(since)),
    ).fetchall()
    return [_row_to_event(r) for r in rows]


def read_for_task(
    db: sqlite3.Connection,
    project_id: str,
    task_id: str,
) -> list[OrchestratorEvent]:
    rows = db.execute(
        """SELECT * FROM orchestrator_events
           WHERE project_id = ? AND task_id = ? ORDER BY id ASC""",
        (project_id, task_id),
    ).fetchall()
    return [_row_to_event(r) for r in rows]


def purge_before(db: sqlite3.Connection, project_id: str, before: datetime) -> int:
    """Administrative retention: delete events older than a cutoff."""
    cur = db.execute(
        "DELETE FROM orchestrator_events WHERE project_id = ? AND timestamp < ?",
        (project_id, format_ts(before)),
    )
    db.commit()
    return cur.rowcount


def to_dict(e: OrchestratorEvent) -> dict:
    return {
        "id": e.id,
        "timestamp": e.timestamp.isoformat() if e.timestamp else None,
        "project_id": e.project_id,
        "task_id": e.task_id,
        "event": e.event,
        "data": e.data,
    }


def _row_to_event(row: sqlite3.Row) -> OrchestratorEvent:
    return OrchestratorEvent(
        id=row["id"],
        project_id=row["project_id"],
        task_id=row["task_id"],
        event=row["event"],
        data=json.loads(row["data"]) if row["data"] else None,
        timestamp=parse_ts(row["timestamp"]),
    )
