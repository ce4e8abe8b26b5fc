"""Tests for failure classification and the failure handler."""

from unittest.mock import MagicMock, patch

import pytest

from build_orchestrator.core import counters as counters_mod
from build_orchestrator.core import events as events_mod
from build_orchestrator.core import projects as projects_mod
from build_orchestrator.core import sessions as sessions_mod
from build_orchestrator.core import tasks as tasks_mod
from build_orchestrator.core.failures import (
    Disposition,
    FailureHandler,
    FailureKind,
    decide_disposition,
    is_technical_block,
)
from build_orchestrator.core.slots import Slot


@pytest.fixture
def git_ops():
    """Replace workspace operations so calls can be inspected."""
    with patch("build_orchestrator.core.failures.worktrees_mod") as mock:
        mock.capture_branch_diff.return_value = "+change\n"
        mock.capture_uncommitted_diff.return_value = ""
        yield mock


@pytest.fixture
def handler(tmp_path):
    return FailureHandler(worktree_base=str(tmp_path / "worktrees"), retry_backoff_seconds=30)


def _claimed(db, title="Add feature", priority=2, attempts=0):
    task = tasks_mod.create_task(db, title, "demo", priority=priority)
    tasks_mod.claim_task(db, task.id, "Frodo")
    if attempts:
        tasks_mod.set_attempts(db, task.id, attempts)
    task = tasks_mod.get_task(db, task.id)
    slot = Slot(
        project_id="demo",
        task_id=task.id,
        agent_name="Frodo",
        attempt=task.attempts + 1,
        branch_name=f"task/{task.id}",
    )
    return task, slot


def _fail(handler, db, project, task, slot, kind, message="boom", **kwargs):
    return handler.handle_task_failure(
        db, project, task, slot.branch_name, message, kwargs.pop("test_output", None), kind, slot, **kwargs
    )


class TestDecideDisposition:
    def test_infra_kinds_retry_without_counting(self):
        for kind in (FailureKind.AGENT_CRASH, FailureKind.TIMEOUT, FailureKind.MERGE_CONFLICT, FailureKind.INFRA_ERROR):
            assert decide_disposition(kind, attempts=0, priority=2, infra_retries=0) is Disposition.INFRA_RETRY
            assert decide_disposition(kind, attempts=2, priority=4, infra_retries=1) is Disposition.INFRA_RETRY

    def test_exhausted_infra_retries_count_as_logical(self):
        assert decide_disposition(FailureKind.TIMEOUT, 0, 2, infra_retries=2) is Disposition.RETRY
        assert decide_disposition(FailureKind.TIMEOUT, 2, 2, infra_retries=2) is Disposition.DEMOTED

    def test_every_third_logical_failure_demotes(self):
        kind = FailureKind.TEST_FAILURE
        assert decide_disposition(kind, 0, 2, 0) is Disposition.RETRY
        assert decide_disposition(kind, 1, 2, 0) is Disposition.RETRY
        assert decide_disposition(kind, 2, 2, 0) is Disposition.DEMOTED
        assert decide_disposition(kind, 3, 3, 0) is Disposition.RETRY
        assert decide_disposition(kind, 5, 3, 0) is Disposition.DEMOTED

    def test_lowest_priority_blocks(self):
        assert decide_disposition(FailureKind.CODING_FAILURE, 2, 4, 0) is Disposition.BLOCKED
        assert decide_disposition(FailureKind.CODING_FAILURE, 1, 4, 0) is Disposition.RETRY

    def test_technical_block_reasons(self):
        assert is_technical_block("Coding Failure")
        assert is_technical_block("Merge Failure")
        assert not is_technical_block("Needs product decision")
        assert not is_technical_block(None)


class TestInfraRetry:
    def test_attempts_preserved_and_branch_kept(self, db, project, handler, git_ops):
        task, slot = _claimed(db)
        disposition = _fail(handler, db, project, task, slot, FailureKind.AGENT_CRASH)

        assert disposition is Disposition.INFRA_RETRY
        after = tasks_mod.get_task(db, task.id)
        assert after.status == "open"
        assert after.assignee is None
        assert after.attempts == 0
        counters = counters_mod.get_task_counters(db, "demo", task.id)
        assert counters.infra_retries == 1
        assert counters.consecutive_failures == 0
        assert counters.cooldown_until is None
        git_ops.remove_task_worktree.assert_called_once_with(project.repo_path, task.id, handler.worktree_base)
        git_ops.delete_branch.assert_not_called()

    def test_timeouts_counted(self, db, project, handler, git_ops):
        task, slot = _claimed(db)
        _fail(handler, db, project, task, slot, FailureKind.TIMEOUT)
        counters = counters_mod.get_task_counters(db, "demo", task.id)
        assert counters.timeouts == 1
        assert counters.infra_retries == 1

    def test_third_crash_is_logical(self, db, project, handler, git_ops):
        task, slot = _claimed(db)
        counters = counters_mod.get_task_counters(db, "demo", task.id)
        counters.infra_retries = 2
        counters_mod.save_task_counters(db, counters)

        assert _fail(handler, db, project, task, slot, FailureKind.AGENT_CRASH) is Disposition.RETRY
        assert tasks_mod.get_task(db, task.id).attempts == 1
        assert counters_mod.get_task_counters(db, "demo", task.id).infra_retries == 0


class TestLogicalFailures:
    def test_retry_sets_backoff(self, db, project, handler, git_ops):
        task, slot = _claimed(db)
        disposition = _fail(
            handler, db, project, task, slot, FailureKind.TEST_FAILURE, "Tests failed", test_output="1 failed"
        )

        assert disposition is Disposition.RETRY
        after = tasks_mod.get_task(db, task.id)
        assert after.status == "open"
        assert after.attempts == 1
        assert after.priority == 2
        counters = counters_mod.get_task_counters(db, "demo", task.id)
        assert counters.consecutive_failures == 1
        assert counters.cooldown_until is not None
        assert counters.last_failure_at is not None
        git_ops.delete_branch.assert_not_called()

    def test_third_failure_demotes(self, db, project, handler, git_ops):
        task, slot = _claimed(db, attempts=2)
        assert _fail(handler, db, project, task, slot, FailureKind.CODING_FAILURE) is Disposition.DEMOTED

        after = tasks_mod.get_task(db, task.id)
        assert after.status == "open"
        assert after.priority == 3
        assert after.attempts == 3
        git_ops.delete_branch.assert_called_once_with(project.repo_path, slot.branch_name)
        assert [e.event for e in events_mod.read_for_task(db, "demo", task.id)][-1] == "task.demoted"

    def test_blocks_at_lowest_priority(self, db, project, handler, git_ops):
        handler.notifier = MagicMock()
        task, slot = _claimed(db, priority=4, attempts=2)
        assert _fail(handler, db, project, task, slot, FailureKind.TEST_FAILURE) is Disposition.BLOCKED

        after = tasks_mod.get_task(db, task.id)
        assert after.status == "blocked"
        assert after.block_reason == "Coding Failure"
        assert after.blocked_at is not None
        git_ops.delete_branch.assert_called_once()
        handler.notifier.task_blocked.assert_called_once_with(project, task, "Coding Failure")

    def test_merge_conflict_block_reason(self, db, project, handler, git_ops):
        task, slot = _claimed(db, priority=4, attempts=2)
        counters = counters_mod.get_task_counters(db, "demo", task.id)
        counters.infra_retries = 2
        counters_mod.save_task_counters(db, counters)

        assert _fail(handler, db, project, task, slot, FailureKind.MERGE_CONFLICT) is Disposition.BLOCKED
        assert tasks_mod.get_task(db, task.id).block_reason == "Merge Failure"


class TestCleanupModes:
    def test_worktree_mode_never_reverts(self, db, project, handler, git_ops):
        task, slot = _claimed(db, attempts=2)
        _fail(handler, db, project, task, slot, FailureKind.CODING_FAILURE)
        git_ops.remove_task_worktree.assert_called_once()
        git_ops.revert_and_return_to_main.assert_not_called()

    def test_branches_mode_only_reverts(self, db, project, handler, git_ops):
        project = projects_mod.update_project(db, "demo", git_working_mode="branches")
        for attempts, kind in ((0, FailureKind.AGENT_CRASH), (0, FailureKind.TEST_FAILURE), (2, FailureKind.TEST_FAILURE)):
            task, slot = _claimed(db, title=f"Branch work {attempts} {kind.value}", attempts=attempts)
            _fail(handler, db, project, task, slot, kind)
            git_ops.revert_and_return_to_main.assert_called_with(
                project.repo_path, slot.branch_name, project.default_branch
            )
        assert git_ops.revert_and_return_to_main.call_count == 3
        git_ops.remove_task_worktree.assert_not_called()
        git_ops.delete_branch.assert_not_called()


class TestRecordKeeping:
    def test_comment_event_and_session(self, db, project, handler, git_ops):
        task, slot = _claimed(db)
        slot.record_output("agent says hi\n")
        _fail(handler, db, project, task, slot, FailureKind.TEST_FAILURE, "Tests failed", test_output="E assert 1 == 2")

        comments = tasks_mod.list_comments(db, task.id)
        assert len(comments) == 1
        assert "Attempt 1 failed (test_failure): Tests failed" in comments[0].body
        assert comments[0].author == "Frodo"

        session = sessions_mod.get_session(db, task.id, 1)
        assert session.status == "failed"
        assert session.output_log == "agent says hi\n"
        assert session.git_diff == "+change\n"
        assert session.test_output == "E assert 1 == 2"

        events = [e.event for e in events_mod.read_for_task(db, "demo", task.id)]
        assert events == ["task.failed", "task.retry"]

    def test_review_rejection_archived_as_rejected(self, db, project, handler, git_ops):
        task, slot = _claimed(db)
        _fail(
            handler, db, project, task, slot, FailureKind.REVIEW_REJECTION,
            "Review rejected the change", review_feedback="- missing tests",
        )
        assert sessions_mod.get_session(db, task.id, 1).status == "rejected"
        assert "missing tests" in tasks_mod.list_comments(db, task.id)[0].body


class TestRelease:
    def test_released_once_with_disposition(self, db, project, git_ops, tmp_path):
        released = []
        handler = FailureHandler(str(tmp_path), on_released=lambda *args: released.append(args))
        task, slot = _claimed(db)
        _fail(handler, db, project, task, slot, FailureKind.TEST_FAILURE)
        assert released == [("demo", task.id, Disposition.RETRY)]

    def test_step_failures_do_not_stop_handling(self, db, project, git_ops, tmp_path):
        released = []
        handler = FailureHandler(str(tmp_path), on_released=lambda *args: released.append(args))
        git_ops.remove_task_worktree.side_effect = OSError("disk gone")
        git_ops.capture_branch_diff.side_effect = RuntimeError("no branch")
        task, slot = _claimed(db)

        assert _fail(handler, db, project, task, slot, FailureKind.AGENT_CRASH) is Disposition.INFRA_RETRY
        assert tasks_mod.get_task(db, task.id).status == "open"
        assert released == [("demo", task.id, Disposition.INFRA_RETRY)]
