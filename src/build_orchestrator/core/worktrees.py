"""Per-task git isolation: task branches, worktrees, diffs, WIP commits and cleanup."""

import logging
import shutil
from pathlib import Path

from build_orchestrator.integrations import git

logger = logging.getLogger(__name__)

BRANCH_PREFIX = "task/"


def branch_name_for(task_id: str) -> str:
    """Branch a task works on. Derivable from the task ID alone."""
    return f"{BRANCH_PREFIX}{task_id}"


def worktree_path_for(base_dir: str | Path, task_id: str) -> Path:
    return Path(base_dir) / f"task-{task_id}"


# ── Workspace creation ───────────────────────────────────────────────────────


def create_task_branch(
    repo_path: str | Path,
    task_id: str,
    base_branch: str = "main",
) -> str:
    """Check out the task branch in the repository itself (branches mode).

    An existing branch is reused so preserved WIP commits carry over to the
    next attempt.
    """
    branch = branch_name_for(task_id)
    git.checkout(repo_path, base_branch)
    if not git.branch_exists(repo_path, branch):
        git.create_branch(repo_path, branch, base_branch)
    git.checkout(repo_path, branch)
    return branch


def create_task_worktree(
    repo_path: str | Path,
    task_id: str,
    base_dir: str | Path,
    base_branch: str = "main",
) -> Path:
    """Create a fresh worktree for the task on its own branch (worktree mode)."""
    branch = branch_name_for(task_id)
    wt_path = worktree_path_for(base_dir, task_id)

    if wt_path.exists():
        logger.info("Removing stale worktree for %s at %s", task_id, wt_path)
        remove_task_worktree(repo_path, task_id, base_dir)

    wt_path.parent.mkdir(parents=True, exist_ok=True)
    create = not git.branch_exists(repo_path, branch)
    git.worktree_add(repo_path, wt_path, branch, base_branch, create_branch=create)
    return wt_path


# ── Diffs and commits ────────────────────────────────────────────────────────


def capture_branch_diff(
    repo_path: str | Path,
    branch: str,
    base_branch: str = "main",
) -> str:
    """Committed changes on a branch relative to its merge base. No checkout."""
    return git.diff(repo_path, f"{base_branch}...{branch}")


def capture_uncommitted_diff(path: str | Path) -> str:
    """Staged, unstaged and untracked changes in a working directory.

    Stages everything to include untracked files, then restores the index.
    The working tree is left exactly as it was.
    """
    git.add_all(path)
    try:
        return git.diff(path, "HEAD", cached=True)
    finally:
        git.reset(path)


def commit_wip(path: str | Path, task_id: str) -> bool:
    """Commit whatever is uncommitted as a WIP commit tagged with the task ID."""
    return commit_all(path, f"WIP: {task_id}")


def commit_all(path: str | Path, message: str) -> bool:
    """Stage and commit everything. Returns False when there was nothing to commit."""
    if not git.get_status(path):
        return False
    git.add_all(path)
    git.commit(path, message)
    return True


def commits_ahead(repo_path: str | Path, branch: str, base_branch: str = "main") -> int:
    return git.count_commits_ahead(repo_path, branch, base_branch)


def merge_to_main(
    repo_path: str | Path,
    branch: str,
    base_branch: str = "main",
    message: str | None = None,
) -> None:
    """Merge the task branch into the base branch of the main checkout.

    Raises MergeConflictError (with the merge aborted) on conflicts.
    """
    git.checkout(repo_path, base_branch)
    git.merge(repo_path, branch, message or f"Merge {branch}")


# ── Cleanup ──────────────────────────────────────────────────────────────────


def remove_task_worktree(
    repo_path: str | Path,
    task_id: str,
    base_dir: str | Path,
) -> None:
    """Detach and delete the task's worktree. No error if it is already gone."""
    wt_path = worktree_path_for(base_dir, task_id)
    if wt_path.exists():
        try:
            git.worktree_remove(repo_path, wt_path, force=True)
        except git.GitError as e:
            logger.warning("git worktree remove failed for %s (%s); deleting directory", wt_path, e)
            shutil.rmtree(wt_path, ignore_errors=True)
    try:
        git.worktree_prune(repo_path)
    except git.GitError as e:
        logger.warning("git worktree prune failed: %s", e)


def delete_branch(repo_path: str | Path, branch: str) -> None:
    """Force-delete a branch. No error if it does not exist."""
    if git.branch_exists(repo_path, branch):
        git.delete_branch(repo_path, branch, force=True)


def revert_and_return_to_main(
    repo_path: str | Path,
    branch: str,
    base_branch: str = "main",
) -> None:
    """Discard the branch's work, switch back to the base branch and delete it.

    The single cleanup primitive for branches mode.
    """
    try:
        git.reset(repo_path, hard=True)
        git.clean(repo_path)
        git.checkout(repo_path, base_branch)
    except git.GitError as e:
        logger.warning("Clean return to %s failed (%s); forcing checkout", base_branch, e)
        git.checkout(repo_path, base_branch, force=True)
    delete_branch(repo_path, branch)
