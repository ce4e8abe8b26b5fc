"""Project management operations."""

import sqlite3
from datetime import datetime

from build_orchestrator.db.models import Project

GIT_WORKING_MODES = ("worktree", "branches")
UNKNOWN_SCOPE_STRATEGIES = ("conservative", "optimistic")
REVIEW_MODES = ("always", "never", "on-failure-only")

_SETTINGS = {
    "name",
    "repo_path",
    "default_branch",
    "max_concurrent_coders",
    "git_working_mode",
    "unknown_scope_strategy",
    "review_mode",
    "test_command",
    "simple_agent",
    "complex_agent",
    "slack_channel",
}


def create_project(
    db: sqlite3.Connection,
    project_id: str,
    name: str,
    repo_path: str,
    default_branch: str = "main",
    slack_channel: str | None = None,
    **settings,
) -> Project:
    """Create a new project. Extra keyword arguments are orchestrator settings."""
    _validate_settings({k: v for k, v in settings.items() if v is not None})
    db.execute(
        """INSERT INTO projects (id, name, repo_path, default_branch, slack_channel)
           VALUES (?, ?, ?, ?, ?)""",
        (project_id, name, repo_path, default_branch, slack_channel),
    )
    db.commit()
    if settings:
        return update_project(db, project_id, **settings)
    return get_project(db, project_id)


def get_project(db: sqlite3.Connection, project_id: str) -> Project | None:
    """Get a project by ID."""
    row = db.execute("SELECT * FROM projects WHERE id = ?", (project_id,)).fetchone()
    if not row:
        return None
    return _row_to_project(row)


def list_projects(db: sqlite3.Connection) -> list[Project]:
    """List all projects."""
    rows = db.execute("SELECT * FROM projects ORDER BY created_at DESC").fetchall()
    return [_row_to_project(r) for r in rows]


def update_project(
    db: sqlite3.Connection,
    project_id: str,
    **kwargs,
) -> Project | None:
    """Update project fields and orchestrator settings."""
    updates = {k: v for k, v in kwargs.items() if k in _SETTINGS and v is not None}
    _validate_settings(updates)
    if not updates:
        return get_project(db, project_id)

    set_clause = ", ".join(f"{k} = ?" for k in updates)
    values = list(updates.values()) + [project_id]
    db.execute(
        f"UPDATE projects SET {set_clause}, updated_at = datetime('now') WHERE id = ?",
        values,
    )
    db.commit()
    return get_project(db, project_id)


def _validate_settings(updates: dict):
    if "git_working_mode" in updates and updates["git_working_mode"] not in GIT_WORKING_MODES:
        raise ValueError(f"Invalid git working mode: {updates['git_working_mode']}")
    if (
        "unknown_scope_strategy" in updates
        and updates["unknown_scope_strategy"] not in UNKNOWN_SCOPE_STRATEGIES
    ):
        raise ValueError(f"Invalid unknown scope strategy: {updates['unknown_scope_strategy']}")
    if "review_mode" in updates and updates["review_mode"] not in REVIEW_MODES:
        raise ValueError(f"Invalid review mode: {updates['review_mode']}")
    if "max_concurrent_coders" in updates and int(updates["max_concurrent_coders"]) < 1:
        raise ValueError("max_concurrent_coders must be at least 1")


def _row_to_project(row: sqlite3.Row) -> Project:
    return Project(
        id=row["id"],
        name=row["name"],
        repo_path=row["repo_path"],
        default_branch=row["default_branch"] or "main",
        max_concurrent_coders=row["max_concurrent_coders"] or 1,
        git_working_mode=row["git_working_mode"] or "worktree",
        unknown_scope_strategy=row["unknown_scope_strategy"] or "conservative",
        review_mode=row["review_mode"] or "never",
        test_command=row["test_command"],
        simple_agent=row["simple_agent"],
        complex_agent=row["complex_agent"],
        slack_channel=row["slack_channel"],
        created_at=_parse_dt(row["created_at"]),
        updated_at=_parse_dt(row["updated_at"]),
    )


def _parse_dt(val: str | None) -> datetime | None:
    if val is None:
        return None
    return datetime.fromisoformat(val)
