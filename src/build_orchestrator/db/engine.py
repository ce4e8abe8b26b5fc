"""SQLite database connection management and schema initialization."""

import sqlite3
from contextlib import contextmanager
from datetime import datetime, timezone
from pathlib import Path

SCHEMA = """
CREATE TABLE IF NOT EXISTS projects (
    id TEXT PRIMARY KEY,
    name TEXT NOT NULL,
    repo_path TEXT NOT NULL,
    default_branch TEXT DEFAULT 'main',
    max_concurrent_coders INTEGER DEFAULT 1,
    git_working_mode TEXT DEFAULT 'worktree' CHECK (git_working_mode IN ('worktree', 'branches')),
    unknown_scope_strategy TEXT DEFAULT 'conservative'
        CHECK (unknown_scope_strategy IN ('conservative', 'optimistic')),
    review_mode TEXT DEFAULT 'never' CHECK (review_mode IN ('always', 'never', 'on-failure-only')),
    test_command TEXT,
    simple_agent TEXT,
    complex_agent TEXT,
    slack_channel TEXT,
    created_at TEXT DEFAULT (datetime('now')),
    updated_at TEXT DEFAULT (datetime('now'))
);

CREATE TABLE IF NOT EXISTS tasks (
    id TEXT PRIMARY KEY,
    seq INTEGER NOT NULL DEFAULT 0,
    project_id TEXT NOT NULL REFERENCES projects(id),
    title TEXT NOT NULL,
    description TEXT DEFAULT '',
    status TEXT DEFAULT 'open' CHECK (status IN ('open', 'in_progress', 'blocked', 'closed')),
    priority INTEGER DEFAULT 2,
    assignee TEXT,
    complexity INTEGER DEFAULT 5,
    kind TEXT DEFAULT 'task' CHECK (kind IN ('task', 'gate', 'epic')),
    file_scope TEXT,
    attempts INTEGER DEFAULT 0,
    block_reason TEXT,
    blocked_at TEXT,
    last_auto_retry_at TEXT,
    close_reason TEXT,
    created_at TEXT DEFAULT (datetime('now')),
    updated_at TEXT DEFAULT (datetime('now')),
    closed_at TEXT
);

CREATE TABLE IF NOT EXISTS task_dependencies (
    task_id TEXT NOT NULL REFERENCES tasks(id) ON DELETE CASCADE,
    depends_on_task_id TEXT NOT NULL REFERENCES tasks(id) ON DELETE CASCADE,
    PRIMARY KEY (task_id, depends_on_task_id)
);

CREATE TABLE IF NOT EXISTS task_comments (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    task_id TEXT NOT NULL REFERENCES tasks(id) ON DELETE CASCADE,
    author TEXT,
    body TEXT NOT NULL,
    created_at TEXT DEFAULT (datetime('now'))
);

CREATE TABLE IF NOT EXISTS orchestrator_events (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    project_id TEXT NOT NULL,
    task_id TEXT,
    event TEXT NOT NULL,
    data TEXT,
    timestamp TEXT NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_events_project ON orchestrator_events(project_id, id);

CREATE TABLE IF NOT EXISTS orchestrator_counters (
    project_id TEXT PRIMARY KEY,
    total_done INTEGER DEFAULT 0,
    total_failed INTEGER DEFAULT 0,
    updated_at TEXT DEFAULT (datetime('now'))
);

CREATE TABLE IF NOT EXISTS project_leases (
    project_id TEXT PRIMARY KEY,
    owner TEXT NOT NULL,
    heartbeat_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS task_counters (
    project_id TEXT NOT NULL,
    task_id TEXT NOT NULL,
    infra_retries INTEGER DEFAULT 0,
    timeouts INTEGER DEFAULT 0,
    consecutive_failures INTEGER DEFAULT 0,
    cooldown_until TEXT,
    last_failure_at TEXT,
    PRIMARY KEY (project_id, task_id)
);

CREATE TABLE IF NOT EXISTS agent_sessions (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    project_id TEXT NOT NULL,
    task_id TEXT NOT NULL,
    attempt INTEGER NOT NULL,
    agent_name TEXT,
    agent_command TEXT,
    branch_name TEXT,
    status TEXT NOT NULL CHECK (status IN ('approved', 'failed', 'rejected')),
    output_log TEXT,
    git_diff TEXT,
    test_output TEXT,
    failure_reason TEXT,
    summary TEXT,
    started_at TEXT,
    completed_at TEXT DEFAULT (datetime('now'))
);
"""


def _run_migrations(conn: sqlite3.Connection):
    """Run schema migrations idempotently."""
    migrations = [
        "ALTER TABLE tasks ADD COLUMN last_auto_retry_at TEXT",
        "ALTER TABLE projects ADD COLUMN unknown_scope_strategy TEXT DEFAULT 'conservative'",
    ]
    for sql in migrations:
        try:
            conn.execute(sql)
        except sqlite3.OperationalError:
            pass  # Column already exists
    conn.commit()


def init_db(db_path: Path) -> sqlite3.Connection:
    """Initialize the database, creating tables if needed.

    Each thread that touches the database opens its own connection through
    this function; WAL mode and the busy timeout let them coexist.
    """
    db_path.parent.mkdir(parents=True, exist_ok=True)
    conn = sqlite3.connect(str(db_path), timeout=30)
    conn.row_factory = sqlite3.Row
    conn.execute("PRAGMA journal_mode=WAL")
    conn.execute("PRAGMA foreign_keys=ON")
    conn.executescript(SCHEMA)
    _run_migrations(conn)
    conn.commit()
    return conn


@contextmanager
def get_db(db_path: Path):
    """Context manager for database connections."""
    conn = init_db(db_path)
    try:
        yield conn
    finally:
        conn.close()


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def format_ts(dt: datetime) -> str:
    """Serialize a timestamp in a fixed-width form so stored values sort as text."""
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc).isoformat(timespec="microseconds")


def parse_ts(val: str | None) -> datetime | None:
    """Parse a stored or user-supplied ISO timestamp. A trailing Z and naive values mean UTC."""
    if val is None:
        return None
    if val.endswith("Z"):
        val = val[:-1] + "+00:00"
    dt = datetime.fromisoformat(val)
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt
