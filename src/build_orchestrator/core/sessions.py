"""Archive of agent sessions: one record per attempt, kept for audit."""

import sqlite3

from build_orchestrator.db.engine import format_ts, parse_ts
from build_orchestrator.db.models import AgentSession

# Output logs can be megabytes; keep the tail, which holds the failure.
MAX_ARCHIVED_LOG_CHARS = 200_000


def archive_session(db: sqlite3.Connection, session: AgentSession) -> AgentSession:
    output_log = session.output_log
    if output_log and len(output_log) > MAX_ARCHIVED_LOG_CHARS:
        output_log = output_log[-MAX_ARCHIVED_LOG_CHARS:]
    cur = db.execute(
        """INSERT INTO agent_sessions
           (project_id, task_id, attempt, agent_name, agent_command, branch_name, status,
            output_log, git_diff, test_output, failure_reason, summary, started_at)
           VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)""",
        (
            session.project_id,
            session.task_id,
            session.attempt,
            session.agent_name,
            session.agent_command,
            session.branch_name,
            session.status,
            output_log,
            session.git_diff,
            session.test_output,
            session.failure_reason,
            session.summary,
            format_ts(session.started_at) if session.started_at else None,
        ),
    )
    db.commit()
    row = db.execute("SELECT * FROM agent_sessions WHERE id = ?", (cur.lastrowid,)).fetchone()
    return _row_to_session(row)


def list_sessions(db: sqlite3.Connection, task_id: str) -> list[AgentSession]:
    rows = db.execute(
        "SELECT * FROM agent_sessions WHERE task_id = ? ORDER BY id",
        (task_id,),
    ).fetchall()
    return [_row_to_session(r) for r in rows]


def get_session(db: sqlite3.Connection, task_id: str, attempt: int) -> AgentSession | None:
    """Latest archived session for a given attempt of a task."""
    row = db.execute(
        "SELECT * FROM agent_sessions WHERE task_id = ? AND attempt = ? ORDER BY id DESC LIMIT 1",
        (task_id, attempt),
    ).fetchone()
    if not row:
        return None
    return _row_to_session(row)


def _row_to_session(row: sqlite3.Row) -> AgentSession:
    return AgentSession(
        id=row["id"],
        project_id=row["project_id"],
        task_id=row["task_id"],
        attempt=row["attempt"],
        agent_name=row["agent_name"],
        agent_command=row["agent_command"],
        branch_name=row["branch_name"],
        status=row["status"],
        output_log=row["output_log"],
        git_diff=row["git_diff"],
        test_output=row["test_output"],
        failure_reason=row["failure_reason"],
        summary=row["summary"],
        started_at=parse_ts(row["started_at"]),
        completed_at=parse_ts(row["completed_at"]),
    )
