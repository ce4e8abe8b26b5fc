"""Startup reconciliation of orphaned tasks and periodic retry of technical blocks."""

import logging
import sqlite3
from datetime import datetime, timedelta
from pathlib import Path

from build_orchestrator.core import counters as counters_mod
from build_orchestrator.core import events as events_mod
from build_orchestrator.core import tasks as tasks_mod
from build_orchestrator.core import worktrees as worktrees_mod
from build_orchestrator.core.failures import AUTO_RETRY_BLOCKED_INTERVAL, is_technical_block
from build_orchestrator.db.engine import utcnow
from build_orchestrator.db.models import Project
from build_orchestrator.integrations.git import GitError, get_current_branch

logger = logging.getLogger(__name__)


def recover_orphaned_tasks(
    db: sqlite3.Connection,
    project: Project,
    worktree_base: str | Path,
    exclude_task_id: str | None = None,
) -> list[str]:
    """Reset tasks a dead process left in progress. Returns the recovered IDs.

    Never checks out a branch. A task branch is only deleted when it carries
    no commits beyond the base branch, so WIP commits from a shutdown survive
    into the next attempt.
    """
    recovered = []
    for task in tasks_mod.list_in_progress_with_agent_assignee(db, project.id):
        if task.id == exclude_task_id:
            continue
        tasks_mod.reopen_task(db, task.id)
        _remove_stale_workspace(project, task.id, worktree_base)
        events_mod.log(db, project.id, "task.recovered", task.id, assignee=task.assignee)
        recovered.append(task.id)

    if recovered:
        logger.warning(
            "Recovered %d orphaned task(s) in project %s: %s",
            len(recovered), project.id, ", ".join(recovered),
        )
    return recovered


def _remove_stale_workspace(project: Project, task_id: str, worktree_base: str | Path):
    repo = project.repo_path
    branch = worktrees_mod.branch_name_for(task_id)
    worktrees_mod.remove_task_worktree(repo, task_id, worktree_base)
    try:
        if get_current_branch(repo) == branch:
            return
        if worktrees_mod.commits_ahead(repo, branch, project.default_branch) == 0:
            worktrees_mod.delete_branch(repo, branch)
        else:
            logger.info("Keeping %s: it has commits not on %s", branch, project.default_branch)
    except GitError as e:
        # The branch usually just does not exist.
        logger.debug("No stale branch cleanup for %s: %s", task_id, e)


def run_blocked_auto_retry_pass(
    db: sqlite3.Connection,
    project_id: str,
    now: datetime | None = None,
    interval: timedelta = AUTO_RETRY_BLOCKED_INTERVAL,
) -> list[str]:
    """Reopen technically blocked tasks whose last block or retry is older than interval.

    Blocks waiting on a human (anything that is not a technical block reason)
    are left alone.
    """
    now = now or utcnow()
    retried = []
    for task in tasks_mod.list_blocked_tasks(db, project_id):
        if not is_technical_block(task.block_reason):
            continue
        stamps = [t for t in (task.blocked_at, task.last_auto_retry_at) if t is not None]
        if stamps and now - max(stamps) < interval:
            continue
        tasks_mod.mark_auto_retried(db, task.id)
        counters = counters_mod.get_task_counters(db, project_id, task.id)
        counters.consecutive_failures = 0
        counters.cooldown_until = None
        counters_mod.save_task_counters(db, counters)
        events_mod.log(db, project_id, "task.auto_retried", task.id, block_reason=task.block_reason)
        retried.append(task.id)

    if retried:
        logger.info("Auto-retrying %d blocked task(s) in %s: %s", len(retried), project_id, ", ".join(retried))
    return retried
