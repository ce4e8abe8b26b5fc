"""Data models for the build orchestrator."""

from dataclasses import dataclass, field
from datetime import datetime


@dataclass
class Project:
    id: str
    name: str
    repo_path: str
    default_branch: str = "main"
    max_concurrent_coders: int = 1
    git_working_mode: str = "worktree"
    unknown_scope_strategy: str = "conservative"
    review_mode: str = "never"
    test_command: str | None = None
    simple_agent: str | None = None
    complex_agent: str | None = None
    slack_channel: str | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None


@dataclass
class Task:
    id: str
    project_id: str
    title: str
    description: str = ""
    status: str = "open"
    priority: int = 2
    assignee: str | None = None
    complexity: int = 5
    kind: str = "task"
    # None means the set of files the task touches is unknown.
    file_scope: list[str] | None = None
    attempts: int = 0
    block_reason: str | None = None
    blocked_at: datetime | None = None
    last_auto_retry_at: datetime | None = None
    close_reason: str | None = None
    seq: int = 0
    created_at: datetime | None = None
    updated_at: datetime | None = None
    closed_at: datetime | None = None
    depends_on: list[str] = field(default_factory=list)


@dataclass
class TaskComment:
    id: int | None = None
    task_id: str = ""
    author: str | None = None
    body: str = ""
    created_at: datetime | None = None


@dataclass
class OrchestratorEvent:
    project_id: str
    event: str
    task_id: str | None = None
    data: dict | None = None
    timestamp: datetime | None = None
    id: int | None = None


@dataclass
class TaskCounters:
    project_id: str
    task_id: str
    infra_retries: int = 0
    timeouts: int = 0
    consecutive_failures: int = 0
    cooldown_until: datetime | None = None
    last_failure_at: datetime | None = None


@dataclass
class AgentSession:
    project_id: str
    task_id: str
    attempt: int
    status: str
    agent_name: str | None = None
    agent_command: str | None = None
    branch_name: str | None = None
    output_log: str | None = None
    git_diff: str | None = None
    test_output: str | None = None
    failure_reason: str | None = None
    summary: str | None = None
    started_at: datetime | None = None
    completed_at: datetime | None = None
    id: int | None = None
