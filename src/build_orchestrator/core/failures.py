"""Post-failure recovery for tasks in flight.

The handler decides between infra retry, retry, demotion and blocking, cleans
the task's git workspace, archives the session and hands the slot back. It
never dispatches work itself; the orchestrator is nudged afterwards.
"""

import logging
import sqlite3
from datetime import timedelta
from enum import Enum
from typing import Callable

from build_orchestrator.core import counters as counters_mod
from build_orchestrator.core import events as events_mod
from build_orchestrator.core import sessions as sessions_mod
from build_orchestrator.core import tasks as tasks_mod
from build_orchestrator.core import worktrees as worktrees_mod
from build_orchestrator.core.slots import Slot
from build_orchestrator.db.engine import utcnow
from build_orchestrator.db.models import AgentSession, Project, Task, TaskCounters

logger = logging.getLogger(__name__)

BACKOFF_FAILURE_THRESHOLD = 3
MAX_PRIORITY_BEFORE_BLOCK = 4
MAX_INFRA_RETRIES = 2
AUTO_RETRY_BLOCKED_INTERVAL = timedelta(hours=8)

CODING_FAILURE_REASON = "Coding Failure"
MERGE_FAILURE_REASON = "Merge Failure"
TECHNICAL_BLOCK_REASONS = (CODING_FAILURE_REASON, MERGE_FAILURE_REASON)


class FailureKind(str, Enum):
    AGENT_CRASH = "agent_crash"
    TIMEOUT = "timeout"
    MERGE_CONFLICT = "merge_conflict"
    INFRA_ERROR = "infra_error"
    CODING_FAILURE = "coding_failure"
    TEST_FAILURE = "test_failure"
    REVIEW_REJECTION = "review_rejection"

    @property
    def is_infra(self) -> bool:
        return self in _INFRA_KINDS


_INFRA_KINDS = frozenset(
    {FailureKind.AGENT_CRASH, FailureKind.TIMEOUT, FailureKind.MERGE_CONFLICT, FailureKind.INFRA_ERROR}
)


class Disposition(str, Enum):
    INFRA_RETRY = "infra_retry"
    RETRY = "retry"
    DEMOTED = "demoted"
    BLOCKED = "blocked"


class GitWorkingMode(str, Enum):
    WORKTREE = "worktree"
    BRANCHES = "branches"


def is_technical_block(reason: str | None) -> bool:
    """Blocks the orchestrator caused itself, as opposed to ones awaiting a human."""
    return reason in TECHNICAL_BLOCK_REASONS


def decide_disposition(
    kind: FailureKind,
    attempts: int,
    priority: int,
    infra_retries: int,
) -> Disposition:
    """Disposition for a failure given the counts before it.

    An infra kind that has used up its infra retries is judged as a logical
    failure, so repeated timeouts still reach the demotion threshold.
    """
    if kind.is_infra and infra_retries < MAX_INFRA_RETRIES:
        return Disposition.INFRA_RETRY
    if (attempts + 1) % BACKOFF_FAILURE_THRESHOLD != 0:
        return Disposition.RETRY
    if priority >= MAX_PRIORITY_BEFORE_BLOCK:
        return Disposition.BLOCKED
    return Disposition.DEMOTED


class FailureHandler:
    def __init__(
        self,
        worktree_base: str,
        retry_backoff_seconds: float = 30.0,
        on_released: Callable[[str, str, Disposition | None], None] | None = None,
        notifier=None,
    ):
        self.worktree_base = worktree_base
        self.retry_backoff_seconds = retry_backoff_seconds
        self.on_released = on_released
        self.notifier = notifier

    def handle_task_failure(
        self,
        db: sqlite3.Connection,
        project: Project,
        task: Task,
        branch_name: str,
        failure_message: str,
        test_output: str | None,
        failure_kind: FailureKind | str,
        slot: Slot,
        review_feedback: str | None = None,
    ) -> Disposition | None:
        kind = FailureKind(failure_kind)
        mode = GitWorkingMode(project.git_working_mode)
        counters = counters_mod.get_task_counters(db, project.id, task.id)
        disposition = None

        try:
            logger.warning(
                "Task %s attempt %s failed (%s): %s",
                task.id, slot.attempt, kind.value, failure_message,
            )
            comment = f"Attempt {slot.attempt} failed ({kind.value}): {failure_message}"
            if review_feedback:
                comment += f"\n\nReview feedback:\n{review_feedback}"
            self._best_effort("comment", tasks_mod.add_comment, db, task.id, comment, author=slot.agent_name)
            self._best_effort(
                "event",
                events_mod.log,
                db,
                project.id,
                "task.failed",
                task.id,
                kind=kind.value,
                attempt=slot.attempt,
                message=failure_message[:2000],
            )
            self._archive(db, project, task, branch_name, failure_message, test_output, kind, slot, mode)

            disposition = decide_disposition(kind, task.attempts, task.priority, counters.infra_retries)
            if disposition is Disposition.INFRA_RETRY:
                self._infra_retry(db, project, task, branch_name, kind, slot, mode, counters)
            else:
                self._logical_failure(
                    db, project, task, branch_name, kind, slot, mode, counters, disposition
                )
            return disposition
        finally:
            self._best_effort("counters", counters_mod.save_task_counters, db, counters)
            if self.on_released:
                self._best_effort("release", self.on_released, project.id, task.id, disposition)

    # ── Dispositions ──────────────────────────────────────────────────────────

    def _infra_retry(self, db, project, task, branch_name, kind, slot, mode, counters: TaskCounters):
        counters.infra_retries += 1
        if kind is FailureKind.TIMEOUT:
            counters.timeouts += 1
        self._cleanup(project, task.id, branch_name, slot, mode, delete_branch=False)
        self._best_effort("reopen", tasks_mod.reopen_task, db, task.id)
        self._best_effort(
            "event",
            events_mod.log,
            db,
            project.id,
            "task.infra_retry",
            task.id,
            kind=kind.value,
            infra_retries=counters.infra_retries,
        )

    def _logical_failure(self, db, project, task, branch_name, kind, slot, mode, counters, disposition):
        now = utcnow()
        attempts = task.attempts + 1
        counters.infra_retries = 0
        if kind is FailureKind.TIMEOUT:
            counters.timeouts += 1
        counters.consecutive_failures += 1
        counters.last_failure_at = now
        counters.cooldown_until = now + timedelta(
            seconds=self.retry_backoff_seconds * counters.consecutive_failures
        )
        self._best_effort("attempts", tasks_mod.set_attempts, db, task.id, attempts)

        if disposition is Disposition.RETRY:
            self._cleanup(project, task.id, branch_name, slot, mode, delete_branch=False)
            self._best_effort("reopen", tasks_mod.reopen_task, db, task.id)
            self._best_effort(
                "event", events_mod.log, db, project.id, "task.retry", task.id, attempts=attempts
            )
        elif disposition is Disposition.DEMOTED:
            self._cleanup(project, task.id, branch_name, slot, mode, delete_branch=True)
            new_priority = task.priority + 1
            self._best_effort(
                "demote",
                tasks_mod.update_task,
                db,
                task.id,
                status="open",
                assignee=None,
                priority=new_priority,
            )
            self._best_effort(
                "event",
                events_mod.log,
                db,
                project.id,
                "task.demoted",
                task.id,
                attempts=attempts,
                priority=new_priority,
            )
        elif disposition is Disposition.BLOCKED:
            self._cleanup(project, task.id, branch_name, slot, mode, delete_branch=True)
            reason = MERGE_FAILURE_REASON if kind is FailureKind.MERGE_CONFLICT else CODING_FAILURE_REASON
            self._best_effort("block", tasks_mod.block_task, db, task.id, reason)
            self._best_effort(
                "event",
                events_mod.log,
                db,
                project.id,
                "task.blocked",
                task.id,
                attempts=attempts,
                reason=reason,
            )
            if self.notifier:
                self._best_effort("notify", self.notifier.task_blocked, project, task, reason)
        else:
            raise ValueError(f"Not a logical disposition: {disposition}")

    # ── Workspace cleanup ─────────────────────────────────────────────────────

    def _cleanup(self, project: Project, task_id: str, branch_name: str, slot: Slot, mode, delete_branch: bool):
        """Worktree mode removes the worktree; branches mode reverts and returns to base."""
        if mode is GitWorkingMode.WORKTREE:
            self._best_effort(
                "remove worktree",
                worktrees_mod.remove_task_worktree,
                project.repo_path,
                task_id,
                self.worktree_base,
            )
            if delete_branch:
                self._best_effort("delete branch", worktrees_mod.delete_branch, project.repo_path, branch_name)
            slot.worktree_path = None
        elif mode is GitWorkingMode.BRANCHES:
            self._best_effort(
                "revert branch",
                worktrees_mod.revert_and_return_to_main,
                project.repo_path,
                branch_name,
                project.default_branch,
            )
        else:
            raise ValueError(f"Unknown git working mode: {mode}")

    def _archive(self, db, project, task, branch_name, failure_message, test_output, kind, slot, mode):
        diff_parts = []
        branch_diff = self._best_effort(
            "branch diff",
            worktrees_mod.capture_branch_diff,
            project.repo_path,
            branch_name,
            project.default_branch,
        )
        if branch_diff:
            diff_parts.append(branch_diff)
        work_dir = slot.worktree_path if mode is GitWorkingMode.WORKTREE else project.repo_path
        if work_dir and (mode is GitWorkingMode.BRANCHES or slot.worktree_path.exists()):
            uncommitted = self._best_effort("uncommitted diff", worktrees_mod.capture_uncommitted_diff, work_dir)
            if uncommitted:
                diff_parts.append(uncommitted)

        status = "rejected" if kind is FailureKind.REVIEW_REJECTION else "failed"
        session = AgentSession(
            project_id=project.id,
            task_id=task.id,
            attempt=slot.attempt,
            status=status,
            agent_name=slot.agent_name,
            agent_command=slot.agent_command,
            branch_name=branch_name,
            output_log=slot.output.text(),
            git_diff="\n".join(diff_parts) or None,
            test_output=test_output,
            failure_reason=f"{kind.value}: {failure_message}",
            summary=slot.coding_summary or None,
            started_at=slot.started_at,
        )
        self._best_effort("archive session", sessions_mod.archive_session, db, session)

    @staticmethod
    def _best_effort(step: str, fn, *args, **kwargs):
        try:
            return fn(*args, **kwargs)
        except Exception:
            logger.exception("Failure handling step '%s' failed; continuing", step)
            return None
