"""Git subprocess wrappers for worktree and branch operations."""

import subprocess
from dataclasses import dataclass
from pathlib import Path


class GitError(Exception):
    """Raised when a git command fails."""


class MergeConflictError(GitError):
    """Raised when merging a task branch into the base branch conflicts."""


@dataclass
class WorktreeInfo:
    path: str
    branch: str
    head: str
    is_bare: bool = False


def run_git(args: list[str], cwd: str | Path | None = None, strip: bool = True) -> str:
    """Run a git command and return stdout. Raises GitError on failure."""
    cmd = ["git"] + args
    try:
        result = subprocess.run(
            cmd,
            cwd=cwd,
            capture_output=True,
            text=True,
            check=True,
        )
        return result.stdout.strip() if strip else result.stdout
    except subprocess.CalledProcessError as e:
        raise GitError(f"git {' '.join(args)} failed: {e.stderr.strip()}") from e


def worktree_add(
    repo_path: str | Path,
    worktree_path: str | Path,
    branch: str,
    base_branch: str = "main",
    create_branch: bool = True,
) -> str:
    """Create a new git worktree."""
    args = ["worktree", "add"]
    if create_branch:
        args += ["-b", branch, str(worktree_path), base_branch]
    else:
        args += [str(worktree_path), branch]
    return run_git(args, cwd=repo_path)


def worktree_list(repo_path: str | Path) -> list[WorktreeInfo]:
    """List all worktrees in porcelain format."""
    output = run_git(["worktree", "list", "--porcelain"], cwd=repo_path)
    worktrees = []
    current: dict = {}

    def flush():
        if current:
            worktrees.append(
                WorktreeInfo(
                    path=current.get("worktree", ""),
                    branch=current.get("branch", "").replace("refs/heads/", ""),
                    head=current.get("HEAD", ""),
                    is_bare=current.get("bare", False),
                )
            )

    for line in output.split("\n"):
        if not line:
            flush()
            current = {}
        elif line.startswith("worktree "):
            current["worktree"] = line[len("worktree "):]
        elif line.startswith("HEAD "):
            current["HEAD"] = line[len("HEAD "):]
        elif line.startswith("branch "):
            current["branch"] = line[len("branch "):]
        elif line == "bare":
            current["bare"] = True
    flush()

    return worktrees


def worktree_remove(repo_path: str | Path, worktree_path: str | Path, force: bool = False) -> str:
    """Remove a git worktree."""
    args = ["worktree", "remove", str(worktree_path)]
    if force:
        args.append("--force")
    return run_git(args, cwd=repo_path)


def worktree_prune(repo_path: str | Path) -> str:
    return run_git(["worktree", "prune"], cwd=repo_path)


def branch_exists(repo_path: str | Path, branch: str) -> bool:
    """Check if a branch exists."""
    try:
        run_git(["rev-parse", "--verify", f"refs/heads/{branch}"], cwd=repo_path)
        return True
    except GitError:
        return False


def create_branch(repo_path: str | Path, branch: str, start_point: str) -> str:
    return run_git(["branch", branch, start_point], cwd=repo_path)


def delete_branch(repo_path: str | Path, branch: str, force: bool = False) -> str:
    """Delete a branch."""
    flag = "-D" if force else "-d"
    return run_git(["branch", flag, branch], cwd=repo_path)


def checkout(cwd: str | Path, ref: str, force: bool = False) -> str:
    args = ["checkout"]
    if force:
        args.append("-f")
    args.append(ref)
    return run_git(args, cwd=cwd)


def get_status(cwd: str | Path) -> str:
    """Get git status of a working directory."""
    return run_git(["status", "--porcelain"], cwd=cwd)


def get_current_branch(cwd: str | Path) -> str:
    """Get the current branch name."""
    return run_git(["branch", "--show-current"], cwd=cwd)


def add_all(cwd: str | Path) -> str:
    return run_git(["add", "-A"], cwd=cwd)


def commit(cwd: str | Path, message: str) -> str:
    return run_git(["commit", "-m", message], cwd=cwd)


def diff(cwd: str | Path, *refs: str, cached: bool = False) -> str:
    args = ["diff"]
    if cached:
        args.append("--cached")
    args += list(refs)
    return run_git(args, cwd=cwd, strip=False)


def reset(cwd: str | Path, ref: str | None = None, hard: bool = False) -> str:
    args = ["reset"]
    if hard:
        args.append("--hard")
    if ref:
        args.append(ref)
    return run_git(args, cwd=cwd)


def clean(cwd: str | Path) -> str:
    return run_git(["clean", "-fd"], cwd=cwd)


def merge(cwd: str | Path, branch: str, message: str) -> str:
    """Merge a branch with a merge commit. Raises MergeConflictError on conflicts."""
    try:
        return run_git(["merge", "--no-ff", "-m", message, branch], cwd=cwd)
    except GitError as e:
        try:
            run_git(["merge", "--abort"], cwd=cwd)
        except GitError:
            pass  # Nothing to abort when the merge never started
        raise MergeConflictError(str(e)) from e


def count_commits_ahead(repo_path: str | Path, branch: str, base_branch: str) -> int:
    out = run_git(["rev-list", "--count", f"{base_branch}..{branch}"], cwd=repo_path)
    return int(out or 0)
