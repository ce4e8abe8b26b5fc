"""Persisted backoff state per task and done/failed totals per project."""

import sqlite3

from build_orchestrator.db.engine import format_ts, parse_ts
from build_orchestrator.db.models import TaskCounters


def get_task_counters(db: sqlite3.Connection, project_id: str, task_id: str) -> TaskCounters:
    row = db.execute(
        "SELECT * FROM task_counters WHERE project_id = ? AND task_id = ?",
        (project_id, task_id),
    ).fetchone()
    if not row:
        return TaskCounters(project_id=project_id, task_id=task_id)
    return _row_to_counters(row)


def list_task_counters(db: sqlite3.Connection, project_id: str) -> list[TaskCounters]:
    rows = db.execute(
        "SELECT * FROM task_counters WHERE project_id = ?", (project_id,)
    ).fetchall()
    return [_row_to_counters(r) for r in rows]


def save_task_counters(db: sqlite3.Connection, counters: TaskCounters) -> None:
    db.execute(
        """INSERT INTO task_counters
           (project_id, task_id, infra_retries, timeouts, consecutive_failures,
            cooldown_until, last_failure_at)
           VALUES (?, ?, ?, ?, ?, ?, ?)
           ON CONFLICT(project_id, task_id) DO UPDATE SET
             infra_retries = excluded.infra_retries,
             timeouts = excluded.timeouts,
             consecutive_failures = excluded.consecutive_failures,
             cooldown_until = excluded.cooldown_until,
             last_failure_at = excluded.last_failure_at""",
        (
            counters.project_id,
            counters.task_id,
            counters.infra_retries,
            counters.timeouts,
            counters.consecutive_failures,
            format_ts(counters.cooldown_until) if counters.cooldown_until else None,
            format_ts(counters.last_failure_at) if counters.last_failure_at else None,
        ),
    )
    db.commit()


def clear_task_counters(db: sqlite3.Connection, project_id: str, task_id: str) -> None:
    db.execute(
        "DELETE FROM task_counters WHERE project_id = ? AND task_id = ?",
        (project_id, task_id),
    )
    db.commit()


def get_project_totals(db: sqlite3.Connection, project_id: str) -> tuple[int, int]:
    """(total_done, total_failed) for a project."""
    row = db.execute(
        "SELECT total_done, total_failed FROM orchestrator_counters WHERE project_id = ?",
        (project_id,),
    ).fetchone()
    if not row:
        return 0, 0
    return row["total_done"], row["total_failed"]


def save_project_totals(
    db: sqlite3.Connection,
    project_id: str,
    total_done: int,
    total_failed: int,
) -> None:
    db.execute(
        """INSERT INTO orchestrator_counters (project_id, total_done, total_failed)
           VALUES (?, ?, ?)
           ON CONFLICT(project_id) DO UPDATE SET
             total_done = excluded.total_done,
             total_failed = excluded.total_failed,
             updated_at = datetime('now')""",
        (project_id, total_done, total_failed),
    )
    db.commit()


def _row_to_counters(row: sqlite3.Row) -> TaskCounters:
    return TaskCounters(
        project_id=row["project_id"],
        task_id=row["task_id"],
        infra_retries=row["infra_retries"],
        timeouts=row["timeouts"],
        consecutive_failures=row["consecutive_failures"],
        cooldown_until=parse_ts(row["cooldown_until"]),
        last_failure_at=parse_ts(row["last_failure_at"]),
    )
