"""Task graph operations: ready set, claiming, status transitions, blockers."""

import json
import re
import sqlite3

from build_orchestrator.db.engine import format_ts, parse_ts, utcnow
from build_orchestrator.db.models import Task, TaskComment

STATUSES = ("open", "in_progress", "blocked", "closed")
KINDS = ("task", "gate", "epic")
MIN_PRIORITY = 0
MAX_PRIORITY = 4

_UNSET = object()


def slugify(title: str) -> str:
    """Convert a title to a URL-friendly slug."""
    slug = title.lower().strip()
    slug = re.sub(r"[^\w\s-]", "", slug)
    slug = re.sub(r"[\s_]+", "-", slug)
    slug = re.sub(r"-+", "-", slug)
    return slug.strip("-")[:60]


def _unique_id(db: sqlite3.Connection, base_slug: str) -> str:
    """Generate a unique task ID from a slug, appending a number if needed."""
    base_slug = base_slug or "task"
    candidate = base_slug
    i = 2
    while db.execute("SELECT 1 FROM tasks WHERE id = ?", (candidate,)).fetchone():
        candidate = f"{base_slug}-{i}"
        i += 1
    return candidate


def _clamp_priority(priority: int) -> int:
    return max(MIN_PRIORITY, min(MAX_PRIORITY, priority))


def create_task(
    db: sqlite3.Connection,
    title: str,
    project_id: str = "default",
    description: str = "",
    depends_on: list[str] | None = None,
    priority: int = 2,
    complexity: int = 5,
    kind: str = "task",
    file_scope: list[str] | None = None,
) -> Task:
    """Create a new open task."""
    if kind not in KINDS:
        raise ValueError(f"Invalid task kind: {kind}")
    task_id = _unique_id(db, slugify(title))
    complexity = max(1, min(10, complexity))
    seq = db.execute("SELECT COALESCE(MAX(seq), 0) + 1 FROM tasks").fetchone()[0]

    db.execute(
        """INSERT INTO tasks
           (id, seq, project_id, title, description, priority, complexity, kind, file_scope)
           VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)""",
        (
            task_id,
            seq,
            project_id,
            title,
            description,
            _clamp_priority(priority),
            complexity,
            kind,
            json.dumps(file_scope) if file_scope is not None else None,
        ),
    )

    for dep_id in depends_on or []:
        if not db.execute("SELECT 1 FROM tasks WHERE id = ?", (dep_id,)).fetchone():
            db.rollback()
            raise ValueError(f"Dependency task not found: {dep_id}")
        db.execute(
            "INSERT INTO task_dependencies (task_id, depends_on_task_id) VALUES (?, ?)",
            (task_id, dep_id),
        )

    db.commit()
    return get_task(db, task_id)


def get_task(db: sqlite3.Connection, task_id: str) -> Task | None:
    """Get a task by ID with its dependencies."""
    row = db.execute("SELECT * FROM tasks WHERE id = ?", (task_id,)).fetchone()
    if not row:
        return None
    task = _row_to_task(row)
    task.depends_on = _dependency_ids(db, task_id)
    return task


def list_tasks(
    db: sqlite3.Connection,
    project_id: str = "default",
    status: str | None = None,
) -> list[Task]:
    """List tasks in dispatch order (priority, then creation)."""
    query = "SELECT * FROM tasks WHERE project_id = ?"
    params: list = [project_id]

    if status:
        query += " AND status = ?"
        params.append(status)

    query += " ORDER BY priority ASC, seq ASC"
    tasks = []
    for row in db.execute(query, params).fetchall():
        task = _row_to_task(row)
        task.depends_on = _dependency_ids(db, task.id)
        tasks.append(task)
    return tasks


def get_blockers(db: sqlite3.Connection, task_id: str) -> list[str]:
    """IDs of dependencies of a task that are not closed yet."""
    rows = db.execute(
        """SELECT d.depends_on_task_id AS id FROM task_dependencies d
           LEFT JOIN tasks t ON t.id = d.depends_on_task_id
           WHERE d.task_id = ? AND (t.status IS NULL OR t.status != 'closed')
           ORDER BY d.depends_on_task_id""",
        (task_id,),
    ).fetchall()
    return [r["id"] for r in rows]


def get_ready_tasks(db: sqlite3.Connection, project_id: str = "default") -> list[Task]:
    """Open dispatchable tasks whose dependencies are all closed.

    Gates and epics are never ready: gates close by human approval and epics
    only group other tasks.
    """
    ready = []
    for task in list_tasks(db, project_id, status="open"):
        if task.kind != "task":
            continue
        if get_blockers(db, task.id):
            continue
        ready.append(task)
    return ready


def list_blocked_tasks(db: sqlite3.Connection, project_id: str = "default") -> list[Task]:
    return list_tasks(db, project_id, status="blocked")


def list_in_progress_with_agent_assignee(
    db: sqlite3.Connection,
    project_id: str = "default",
) -> list[Task]:
    """Tasks in progress whose assignee is one of the orchestrator's agents."""
    from build_orchestrator.core.agents import is_agent_assignee

    return [
        t for t in list_tasks(db, project_id, status="in_progress")
        if is_agent_assignee(t.assignee)
    ]


def claim_task(db: sqlite3.Connection, task_id: str, assignee: str) -> bool:
    """Move an open task to in_progress for an agent. False if someone got there first."""
    cur = db.execute(
        """UPDATE tasks SET status = 'in_progress', assignee = ?, updated_at = datetime('now')
           WHERE id = ? AND status = 'open'""",
        (assignee, task_id),
    )
    db.commit()
    return cur.rowcount == 1


def update_task(
    db: sqlite3.Connection,
    task_id: str,
    status: str | None = None,
    assignee=_UNSET,
    priority: int | None = None,
    block_reason=_UNSET,
) -> Task | None:
    """Update status, assignee, priority or block reason. Returns the updated task."""
    task = get_task(db, task_id)
    if not task:
        return None

    updates: dict = {}
    if status is not None:
        if status not in STATUSES:
            raise ValueError(f"Invalid status: {status}")
        updates["status"] = status
        if status == "blocked" and task.status != "blocked":
            updates["blocked_at"] = format_ts(utcnow())
        elif status != "blocked":
            updates["blocked_at"] = None
            if block_reason is _UNSET:
                updates["block_reason"] = None
        if status == "closed" and task.status != "closed":
            updates["closed_at"] = format_ts(utcnow())
    if assignee is not _UNSET:
        updates["assignee"] = assignee
    if priority is not None:
        updates["priority"] = _clamp_priority(priority)
    if block_reason is not _UNSET:
        updates["block_reason"] = block_reason

    if not updates:
        return task

    set_parts = [f"{k} = ?" for k in updates]
    set_parts.append("updated_at = datetime('now')")
    db.execute(
        f"UPDATE tasks SET {', '.join(set_parts)} WHERE id = ?",
        list(updates.values()) + [task_id],
    )
    db.commit()
    return get_task(db, task_id)


def close_task(db: sqlite3.Connection, task_id: str, reason: str = "Done") -> Task | None:
    """Close a task and record why."""
    task = update_task(db, task_id, status="closed", assignee=None)
    if not task:
        return None
    db.execute("UPDATE tasks SET close_reason = ? WHERE id = ?", (reason, task_id))
    db.commit()
    return get_task(db, task_id)


def reopen_task(db: sqlite3.Connection, task_id: str) -> Task | None:
    """Put a task back to open with no assignee."""
    return update_task(db, task_id, status="open", assignee=None)


def block_task(db: sqlite3.Connection, task_id: str, reason: str) -> Task | None:
    return update_task(db, task_id, status="blocked", assignee=None, block_reason=reason)


def mark_auto_retried(db: sqlite3.Connection, task_id: str) -> Task | None:
    """Reopen a blocked task and stamp the auto-retry time."""
    db.execute(
        "UPDATE tasks SET last_auto_retry_at = ? WHERE id = ?",
        (format_ts(utcnow()), task_id),
    )
    return reopen_task(db, task_id)


def set_attempts(db: sqlite3.Connection, task_id: str, attempts: int) -> Task | None:
    """Store the cumulative logical attempt count of a task."""
    db.execute(
        "UPDATE tasks SET attempts = ?, updated_at = datetime('now') WHERE id = ?",
        (attempts, task_id),
    )
    db.commit()
    return get_task(db, task_id)


def update_task_priority(
    db: sqlite3.Connection,
    task_id: str,
    priority: int,
) -> Task | None:
    """Update a task's priority (0-4, 0=most urgent)."""
    return update_task(db, task_id, priority=priority)


def add_dependency(
    db: sqlite3.Connection,
    task_id: str,
    depends_on_id: str,
) -> Task | None:
    """Add a dependency to an existing task."""
    task = get_task(db, task_id)
    if not task:
        return None
    if task_id == depends_on_id:
        raise ValueError("A task cannot depend on itself")
    dep = get_task(db, depends_on_id)
    if not dep:
        raise ValueError(f"Dependency task not found: {depends_on_id}")
    if depends_on_id in task.depends_on:
        return task
    db.execute(
        "INSERT INTO task_dependencies (task_id, depends_on_task_id) VALUES (?, ?)",
        (task_id, depends_on_id),
    )
    db.commit()
    return get_task(db, task_id)


def remove_dependency(
    db: sqlite3.Connection,
    task_id: str,
    depends_on_id: str,
) -> Task | None:
    """Remove a dependency from a task."""
    task = get_task(db, task_id)
    if not task:
        return None
    db.execute(
        "DELETE FROM task_dependencies WHERE task_id = ? AND depends_on_task_id = ?",
        (task_id, depends_on_id),
    )
    db.commit()
    return get_task(db, task_id)


# ── Comments ─────────────────────────────────────────────────────────────────


def add_comment(
    db: sqlite3.Connection,
    task_id: str,
    body: str,
    author: str | None = None,
) -> TaskComment:
    cur = db.execute(
        "INSERT INTO task_comments (task_id, author, body) VALUES (?, ?, ?)",
        (task_id, author, body),
    )
    db.commit()
    row = db.execute("SELECT * FROM task_comments WHERE id = ?", (cur.lastrowid,)).fetchone()
    return _row_to_comment(row)


def list_comments(db: sqlite3.Connection, task_id: str) -> list[TaskComment]:
    rows = db.execute(
        "SELECT * FROM task_comments WHERE task_id = ? ORDER BY id",
        (task_id,),
    ).fetchall()
    return [_row_to_comment(r) for r in rows]


# ── Row helpers ──────────────────────────────────────────────────────────────


def _dependency_ids(db: sqlite3.Connection, task_id: str) -> list[str]:
    rows = db.execute(
        "SELECT depends_on_task_id FROM task_dependencies WHERE task_id = ? ORDER BY depends_on_task_id",
        (task_id,),
    ).fetchall()
    return [r["depends_on_task_id"] for r in rows]


def _row_to_task(row: sqlite3.Row) -> Task:
    return Task(
        id=row["id"],
        project_id=row["project_id"],
        title=row["title"],
        description=row["description"] or "",
        status=row["status"],
        priority=row["priority"] if row["priority"] is not None else 2,
        assignee=row["assignee"],
        complexity=row["complexity"] or 5,
        kind=row["kind"] or "task",
        file_scope=json.loads(row["file_scope"]) if row["file_scope"] is not None else None,
        attempts=row["attempts"] or 0,
        block_reason=row["block_reason"],
        blocked_at=parse_ts(row["blocked_at"]),
        last_auto_retry_at=parse_ts(row["last_auto_retry_at"]),
        close_reason=row["close_reason"],
        seq=row["seq"],
        created_at=parse_ts(row["created_at"]),
        updated_at=parse_ts(row["updated_at"]),
        closed_at=parse_ts(row["closed_at"]),
    )


def _row_to_comment(row: sqlite3.Row) -> TaskComment:
    return TaskComment(
        id=row["id"],
        task_id=row["task_id"],
        author=row["author"],
        body=row["body"],
        created_at=parse_ts(row["created_at"]),
    )
