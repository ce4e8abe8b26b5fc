"""End-to-end tests for the orchestrator against a real repository and a scripted agent."""

import json
import sqlite3
import threading
import time
from datetime import timedelta
from pathlib import Path

import pytest

from build_orchestrator.config import Config
from build_orchestrator.core import counters as counters_mod
from build_orchestrator.core import events as events_mod
from build_orchestrator.core import leases as leases_mod
from build_orchestrator.core import projects as projects_mod
from build_orchestrator.core import recovery as recovery_mod
from build_orchestrator.core import sessions as sessions_mod
from build_orchestrator.core import tasks as tasks_mod
from build_orchestrator.core.agents import CODER_NAMES
from build_orchestrator.core.orchestrator import (
    Orchestrator,
    _free_agent_name,
    _needs_review,
    _scope_conflict,
    inline_worker,
)
from build_orchestrator.core.slots import Slot
from build_orchestrator.db.engine import utcnow
from build_orchestrator.db.models import Project, Task
from build_orchestrator.integrations.git import branch_exists, run_git

AGENT_SCRIPT = r"""#!/bin/sh
prompt="$1"
run_dir=$(dirname "$prompt")
first=$(head -n 1 "$prompt")
slug=$(grep '^Task ID:' "$prompt" | sed 's/^Task ID: //')

case "$first" in
  "# Review:"*sloppy*)
    printf '{"status": "rejected", "summary": "Not good enough", "issues": ["no tests"]}' > "$run_dir/result.json"
    exit 0 ;;
  "# Review:"*)
    printf '{"status": "approved", "summary": "LGTM"}' > "$run_dir/result.json"
    exit 0 ;;
  *crash*)
    echo "crashing"
    exit 2 ;;
  *silent*)
    sleep 30
    exit 0 ;;
  *nothing*)
    printf '{"status": "success", "summary": "nothing to do"}' > "$run_dir/result.json"
    exit 0 ;;
  *giveup*)
    echo "partial" > "$slug.txt"
    printf '{"status": "failed", "summary": "could not do it"}' > "$run_dir/result.json"
    exit 0 ;;
  *graceful*)
    echo "half done" > "$slug.txt"
    trap 'exit 0' TERM
    echo "started"
    sleep 30 &
    wait
    exit 0 ;;
  *slow*)
    echo "partial" > "$slug.txt"
    echo "started"
    sleep 30
    exit 0 ;;
  *conflict*)
    echo "mine" > README.md
    echo "theirs" > "$MAIN_REPO/README.md"
    git -C "$MAIN_REPO" commit -qam "main edit"
    ;;
  *)
    echo "$first" > "$slug.txt" ;;
esac

echo "wrote $slug"
printf '{"status": "success", "summary": "did %s"}' "$slug" > "$run_dir/result.json"
"""


@pytest.fixture
def agent_setting(tmp_path, git_repo, monkeypatch):
    script = tmp_path / "agent.sh"
    script.write_text(AGENT_SCRIPT)
    monkeypatch.setenv("MAIN_REPO", str(git_repo))
    return json.dumps({"type": "custom", "cli_command": f"sh {script}"})


@pytest.fixture
def demo(db, project, agent_setting):
    return projects_mod.update_project(db, "demo", simple_agent=agent_setting)


@pytest.fixture
def make_orchestrator(db_path, tmp_path):
    created = []

    def make(**overrides):
        settings = dict(
            db_path=db_path,
            state_dir=tmp_path / "state",
            poll_interval=0.05,
            agent_inactivity_timeout=10,
            test_timeout=30,
            retry_backoff_seconds=0,
            shutdown_grace_seconds=1,
        )
        settings.update(overrides)
        worker = settings.pop("worker_factory", inline_worker)
        orch = Orchestrator(Config(**settings), worker_factory=worker)
        created.append(orch)
        return orch

    yield make
    for orch in created:
        orch.stop_all(grace_seconds=1)


def _events(db, task_id=None):
    evts = events_mod.read_recent(db, "demo", 1000)
    return [(e.event, e.task_id) for e in evts if task_id is None or e.task_id == task_id]


def _wait_for(predicate, timeout=20.0):
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(0.05)
    return False


class TestHappyPath:
    def test_dependency_chain_runs_in_order(self, db, demo, git_repo, make_orchestrator):
        tasks_mod.create_task(db, "Task A", "demo")
        tasks_mod.create_task(db, "Task B", "demo", depends_on=["task-a"])
        orch = make_orchestrator()
        orch.register_project("demo")

        assert orch.dispatch_pass("demo") == ["task-a"]
        assert tasks_mod.get_task(db, "task-a").status == "closed"
        assert orch.dispatch_pass("demo") == ["task-b"]
        assert tasks_mod.get_task(db, "task-b").status == "closed"

        assert (git_repo / "task-a.txt").exists()
        assert (git_repo / "task-b.txt").exists()
        assert not branch_exists(git_repo, "task/task-a")
        events = _events(db)
        assert events.index(("transition.complete", "task-a")) < events.index(("task.dispatched", "task-b"))
        assert [e for e, _ in _events(db, "task-a")] == [
            "task.dispatched",
            "transition.coding",
            "transition.testing",
            "transition.done",
            "transition.complete",
        ]

        status = orch.get_status("demo")
        assert status.total_done == 2
        assert status.active_tasks == []
        assert counters_mod.get_project_totals(db, "demo") == (2, 0)

        session = sessions_mod.get_session(db, "task-a", 1)
        assert session.status == "approved"
        assert "task-a.txt" in session.git_diff
        assert "wrote task-a" in session.output_log

    def test_nothing_ready_claims_nothing(self, db, demo, make_orchestrator):
        tasks_mod.create_task(db, "Gate", "demo", kind="gate")
        orch = make_orchestrator()
        orch.register_project("demo")
        assert orch.dispatch_pass("demo") == []

    def test_unregistered_project(self, make_orchestrator):
        with pytest.raises(ValueError):
            make_orchestrator().dispatch_pass("nope")

    def test_loop_drains_queue(self, db, demo, make_orchestrator):
        from build_orchestrator.core.orchestrator import thread_worker

        tasks_mod.create_task(db, "Loop one", "demo")
        tasks_mod.create_task(db, "Loop two", "demo", depends_on=["loop-one"])
        orch = make_orchestrator(worker_factory=thread_worker)
        assert orch.ensure_running("demo") is True
        assert orch.ensure_running("demo") is False

        assert _wait_for(lambda: tasks_mod.get_task(db, "loop-two").status == "closed")
        assert orch.get_status("demo").running is True
        orch.stop_all(grace_seconds=1)
        assert orch.get_status("demo").running is False


class TestFailures:
    def test_crash_is_infra_retry(self, db, demo, make_orchestrator):
        tasks_mod.create_task(db, "crash please", "demo")
        orch = make_orchestrator()
        orch.register_project("demo")
        orch.dispatch_pass("demo")

        task = tasks_mod.get_task(db, "crash-please")
        assert task.status == "open"
        assert task.attempts == 0
        assert counters_mod.get_task_counters(db, "demo", "crash-please").infra_retries == 1
        assert ("task.infra_retry", "crash-please") in _events(db)
        assert orch.get_status("demo").active_tasks == []

        # Two infra retries, then it counts as a logical failure.
        orch.dispatch_pass("demo")
        orch.dispatch_pass("demo")
        assert tasks_mod.get_task(db, "crash-please").attempts == 1
        runs = Path(orch.config.runs_dir) / "demo"
        assert sorted(p.name for p in runs.iterdir()) == ["crash-please-1-0", "crash-please-1-1", "crash-please-1-2"]

    def test_failing_tests_block_low_priority_task_then_auto_retry(self, db, demo, make_orchestrator):
        projects_mod.update_project(db, "demo", test_command="! test -f flaky-y.txt")
        tasks_mod.create_task(db, "flaky y", "demo", priority=4)
        orch = make_orchestrator()
        orch.register_project("demo")

        for _ in range(3):
            assert orch.dispatch_pass("demo") == ["flaky-y"]

        task = tasks_mod.get_task(db, "flaky-y")
        assert task.status == "blocked"
        assert task.block_reason == "Coding Failure"
        assert task.attempts == 3
        assert not branch_exists(demo.repo_path, "task/flaky-y")
        assert orch.dispatch_pass("demo") == []
        assert orch.get_status("demo").total_failed == 1

        second_prompt = (Path(orch.config.runs_dir) / "demo" / "flaky-y-2-0" / "prompt.md").read_text()
        assert "Previous Attempt Failed" in second_prompt
        assert "test_failure" in second_prompt

        later = utcnow() + timedelta(hours=8, minutes=1)
        assert recovery_mod.run_blocked_auto_retry_pass(db, "demo", now=later) == ["flaky-y"]
        assert tasks_mod.get_task(db, "flaky-y").status == "open"

    def test_empty_diff_is_coding_failure(self, db, demo, make_orchestrator):
        tasks_mod.create_task(db, "nothing to change", "demo")
        orch = make_orchestrator()
        orch.register_project("demo")
        orch.dispatch_pass("demo")

        task = tasks_mod.get_task(db, "nothing-to-change")
        assert task.status == "open"
        assert task.attempts == 1
        assert "coding_failure" in tasks_mod.list_comments(db, task.id)[0].body

    def test_agent_reported_failure(self, db, demo, make_orchestrator):
        tasks_mod.create_task(db, "giveup early", "demo")
        orch = make_orchestrator()
        orch.register_project("demo")
        orch.dispatch_pass("demo")
        assert "could not do it" in tasks_mod.list_comments(db, "giveup-early")[0].body

    def test_silent_agent_times_out(self, db, demo, make_orchestrator):
        tasks_mod.create_task(db, "silent agent", "demo")
        orch = make_orchestrator(agent_inactivity_timeout=1)
        orch.register_project("demo")
        orch.dispatch_pass("demo")

        counters = counters_mod.get_task_counters(db, "demo", "silent-agent")
        assert counters.timeouts == 1
        assert counters.infra_retries == 1
        assert tasks_mod.get_task(db, "silent-agent").status == "open"

    def test_merge_conflict(self, db, demo, git_repo, make_orchestrator):
        tasks_mod.create_task(db, "conflict edit", "demo")
        orch = make_orchestrator()
        orch.register_project("demo")
        orch.dispatch_pass("demo")

        assert tasks_mod.get_task(db, "conflict-edit").status == "open"
        failed = [e for e in events_mod.read_for_task(db, "demo", "conflict-edit") if e.event == "task.failed"]
        assert failed[0].data["kind"] == "merge_conflict"
        assert (git_repo / "README.md").read_text() == "theirs\n"
        assert run_git(["status", "--porcelain"], cwd=git_repo) == ""

    def test_review_rejection(self, db, demo, make_orchestrator):
        projects_mod.update_project(db, "demo", review_mode="always")
        tasks_mod.create_task(db, "sloppy change", "demo")
        orch = make_orchestrator()
        orch.register_project("demo")
        orch.dispatch_pass("demo")

        assert tasks_mod.get_task(db, "sloppy-change").attempts == 1
        assert sessions_mod.get_session(db, "sloppy-change", 1).status == "rejected"
        assert "no tests" in tasks_mod.list_comments(db, "sloppy-change")[0].body

    def test_review_approval(self, db, demo, make_orchestrator):
        projects_mod.update_project(db, "demo", review_mode="always")
        tasks_mod.create_task(db, "tidy change", "demo")
        orch = make_orchestrator()
        orch.register_project("demo")
        orch.dispatch_pass("demo")

        assert tasks_mod.get_task(db, "tidy-change").status == "closed"
        assert ("transition.reviewing", "tidy-change") in _events(db)


class TestDispatch:
    def _recording(self):
        claimed = []
        lock = threading.Lock()

        def worker(target, slot):
            with lock:
                claimed.append(slot.task_id)
            return None

        return claimed, worker

    def test_concurrent_passes_claim_each_task_once(self, db, demo, make_orchestrator):
        projects_mod.update_project(db, "demo", max_concurrent_coders=6)
        for i in range(6):
            tasks_mod.create_task(db, f"Part {i}", "demo", file_scope=[f"part{i}/"])
        claimed, worker = self._recording()
        orchestrators = [make_orchestrator(worker_factory=worker) for _ in range(2)]
        for orch in orchestrators:
            orch.register_project("demo")

        barrier = threading.Barrier(4)

        def run(orch):
            barrier.wait()
            orch.dispatch_pass("demo")

        threads = [threading.Thread(target=run, args=(o,)) for o in orchestrators * 2]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert sorted(claimed) == sorted(f"part-{i}" for i in range(6))
        assert all(t.status == "in_progress" for t in tasks_mod.list_tasks(db, "demo"))

    def test_slots_capped(self, db, demo, make_orchestrator):
        projects_mod.update_project(db, "demo", max_concurrent_coders=2)
        for i in range(3):
            tasks_mod.create_task(db, f"Capped {i}", "demo", file_scope=[f"c{i}.py"])
        claimed, worker = self._recording()
        orch = make_orchestrator(worker_factory=worker)
        orch.register_project("demo")

        assert orch.dispatch_pass("demo") == ["capped-0", "capped-1"]
        assert orch.get_status("demo").queue_depth == 1
        assert {t["agent"] for t in orch.get_status("demo").active_tasks} == {"Frodo", "Samwise"}
        assert orch.dispatch_pass("demo") == []

    def test_branches_mode_runs_one_at_a_time(self, db, demo, make_orchestrator):
        projects_mod.update_project(db, "demo", max_concurrent_coders=3, git_working_mode="branches")
        for i in range(3):
            tasks_mod.create_task(db, f"Serial {i}", "demo", file_scope=[f"s{i}.py"])
        claimed, worker = self._recording()
        orch = make_orchestrator(worker_factory=worker)
        orch.register_project("demo")
        assert orch.dispatch_pass("demo") == ["serial-0"]

    def test_conservative_unknown_scope(self, db, demo, make_orchestrator):
        projects_mod.update_project(db, "demo", max_concurrent_coders=3)
        for i in range(3):
            tasks_mod.create_task(db, f"Unknown {i}", "demo")
        claimed, worker = self._recording()
        orch = make_orchestrator(worker_factory=worker)
        orch.register_project("demo")
        assert orch.dispatch_pass("demo") == ["unknown-0"]

    def test_optimistic_unknown_scope(self, db, demo, make_orchestrator):
        projects_mod.update_project(db, "demo", max_concurrent_coders=3, unknown_scope_strategy="optimistic")
        for i in range(3):
            tasks_mod.create_task(db, f"Hopeful {i}", "demo")
        claimed, worker = self._recording()
        orch = make_orchestrator(worker_factory=worker)
        orch.register_project("demo")
        assert len(orch.dispatch_pass("demo")) == 3

    def test_cooldown_skipped(self, db, demo, make_orchestrator):
        tasks_mod.create_task(db, "Cooling", "demo")
        counters = counters_mod.get_task_counters(db, "demo", "cooling")
        counters.cooldown_until = utcnow() + timedelta(minutes=10)
        counters_mod.save_task_counters(db, counters)
        claimed, worker = self._recording()
        orch = make_orchestrator(worker_factory=worker)
        orch.register_project("demo")
        assert orch.dispatch_pass("demo") == []


class TestScopeRules:
    def _slot(self, scope):
        return Slot(project_id="p", task_id="busy", agent_name="Frodo", attempt=1, file_scope=scope)

    def _task(self, scope):
        return Task(id="new", project_id="p", title="New", file_scope=scope)

    def test_no_work_in_flight(self):
        assert not _scope_conflict(self._task(None), [], "conservative")

    def test_known_overlap_always_conflicts(self):
        for strategy in ("conservative", "optimistic"):
            assert _scope_conflict(self._task(["src/app.py"]), [self._slot(["src/"])], strategy)
            assert not _scope_conflict(self._task(["src/app.py"]), [self._slot(["docs/"])], strategy)

    def test_prefix_is_not_overlap(self):
        assert not _scope_conflict(self._task(["src/app"]), [self._slot(["src/application.py"])], "optimistic")

    def test_unknown_scope(self):
        assert _scope_conflict(self._task(None), [self._slot(["docs/"])], "conservative")
        assert _scope_conflict(self._task(["docs/"]), [self._slot(None)], "conservative")
        assert not _scope_conflict(self._task(None), [self._slot(["docs/"])], "optimistic")

    def test_review_modes(self):
        project = Project(id="p", name="P", repo_path="/r", review_mode="on-failure-only")
        assert not _needs_review(project, Task(id="t", project_id="p", title="T", attempts=0))
        assert _needs_review(project, Task(id="t", project_id="p", title="T", attempts=1))
        project.review_mode = "never"
        assert not _needs_review(project, Task(id="t", project_id="p", title="T", attempts=5))


class TestShutdown:
    def test_stop_all_commits_wip_and_recovery_keeps_it(self, db, demo, git_repo, make_orchestrator):
        from build_orchestrator.core.orchestrator import thread_worker

        tasks_mod.create_task(db, "slow work", "demo")
        orch = make_orchestrator(worker_factory=thread_worker)
        orch.register_project("demo")
        assert orch.dispatch_pass("demo") == ["slow-work"]
        assert _wait_for(lambda: "started" in orch.get_live_output("demo", "slow-work"))

        orch.stop_all(grace_seconds=2)
        assert orch.registry.pids() == []
        task = tasks_mod.get_task(db, "slow-work")
        assert task.status == "in_progress"
        assert task.attempts == 0
        assert run_git(["log", "-1", "--format=%s", "task/slow-work"], cwd=git_repo) == "WIP: slow-work"
        assert run_git(["show", "task/slow-work:slow-work.txt"], cwd=git_repo) == "partial"

        fresh = make_orchestrator()
        fresh.register_project("demo")
        assert tasks_mod.get_task(db, "slow-work").status == "open"
        assert branch_exists(git_repo, "task/slow-work")
        assert ("task.recovered", "slow-work") in _events(db)

    def test_agent_exiting_cleanly_on_sigterm_is_not_merged(self, db, demo, git_repo, make_orchestrator):
        from build_orchestrator.core.orchestrator import thread_worker

        tasks_mod.create_task(db, "graceful half work", "demo")
        orch = make_orchestrator(worker_factory=thread_worker)
        orch.register_project("demo")
        assert orch.dispatch_pass("demo") == ["graceful-half-work"]
        assert _wait_for(lambda: "started" in orch.get_live_output("demo", "graceful-half-work"))

        orch.stop_all(grace_seconds=3)
        assert tasks_mod.get_task(db, "graceful-half-work").status == "in_progress"
        assert run_git(["log", "-1", "--format=%s", "main"], cwd=git_repo) == "init"
        assert not (git_repo / "graceful-half-work.txt").exists()
        assert (
            run_git(["log", "-1", "--format=%s", "task/graceful-half-work"], cwd=git_repo)
            == "WIP: graceful-half-work"
        )
        assert ("transition.testing", "graceful-half-work") not in _events(db)


class TestCompletion:
    def test_bookkeeping_error_after_merge_keeps_task_closed(
        self, db, demo, git_repo, make_orchestrator, monkeypatch
    ):
        real_archive = sessions_mod.archive_session

        def archive(conn, session):
            if session.status == "approved":
                raise sqlite3.OperationalError("database is locked")
            return real_archive(conn, session)

        monkeypatch.setattr(sessions_mod, "archive_session", archive)
        tasks_mod.create_task(db, "Plain work", "demo")
        orch = make_orchestrator()
        orch.register_project("demo")

        assert orch.dispatch_pass("demo") == ["plain-work"]
        task = tasks_mod.get_task(db, "plain-work")
        assert task.status == "closed"
        assert task.attempts == 0
        assert (git_repo / "plain-work.txt").exists()
        status = orch.get_status("demo")
        assert status.total_done == 1
        assert status.active_tasks == []
        assert counters_mod.get_project_totals(db, "demo") == (1, 0)
        assert ("task.failed", "plain-work") not in _events(db)
        assert orch.dispatch_pass("demo") == []


class TestNudge:
    def test_nudges_during_a_pass_coalesce_into_one_more(self, demo, make_orchestrator):
        orch = make_orchestrator(poll_interval=60)
        real_pass = orch.dispatch_pass
        calls = []
        entered = threading.Event()
        release = threading.Event()

        def counting_pass(project_id):
            calls.append(project_id)
            entered.set()
            release.wait(10)
            return real_pass(project_id)

        orch.dispatch_pass = counting_pass
        assert orch.ensure_running("demo") is True
        assert entered.wait(10)
        for _ in range(5):
            orch.nudge("demo")
        release.set()

        assert _wait_for(lambda: len(calls) == 2)
        time.sleep(0.5)
        assert calls == ["demo", "demo"]

    def test_nudge_for_unknown_project_is_ignored(self, make_orchestrator):
        make_orchestrator().nudge("nowhere")


class TestOwnership:
    @staticmethod
    def _hold(target, slot):
        return None

    def test_second_orchestrator_leaves_live_tasks_alone(self, db, demo, make_orchestrator):
        tasks_mod.create_task(db, "Live work", "demo")
        running = make_orchestrator(worker_factory=self._hold)
        running.register_project("demo")
        assert running.dispatch_pass("demo") == ["live-work"]

        other = make_orchestrator(worker_factory=self._hold)
        assert other.ensure_running("demo") is False
        assert other.get_status("demo").running is False
        assert tasks_mod.get_task(db, "live-work").status == "in_progress"
        assert ("task.recovered", "live-work") not in _events(db)
        assert leases_mod.holder(db, "demo") == running.owner_id

        running.stop_all(grace_seconds=1)
        assert leases_mod.holder(db, "demo") is None
        assert other.ensure_running("demo") is True
        assert ("task.recovered", "live-work") in _events(db)
        assert leases_mod.holder(db, "demo") == other.owner_id

    def test_stale_lease_is_taken_over(self, db, demo, make_orchestrator):
        tasks_mod.create_task(db, "Abandoned", "demo")
        tasks_mod.claim_task(db, "abandoned", "Gimli")
        leases_mod.acquire(db, "demo", "crashed-process", now=utcnow() - timedelta(minutes=5))

        orch = make_orchestrator(worker_factory=self._hold)
        orch.register_project("demo")
        assert leases_mod.holder(db, "demo") == orch.owner_id
        assert tasks_mod.get_task(db, "abandoned").status == "open"

    def test_loop_stops_when_lease_is_lost(self, db, demo, make_orchestrator):
        orch = make_orchestrator(worker_factory=self._hold)
        assert orch.ensure_running("demo") is True
        leases_mod.release(db, "demo", orch.owner_id)
        leases_mod.acquire(db, "demo", "usurper")
        assert _wait_for(lambda: not orch.get_status("demo").running)


class TestAgentNames:
    def test_unique_past_the_roster(self):
        slots = []
        for i in range(len(CODER_NAMES) + 2):
            slots.append(Slot(project_id="p", task_id=f"t{i}", agent_name=_free_agent_name(slots), attempt=1))
        names = [s.agent_name for s in slots]
        assert len(set(names)) == len(names)
        assert names[len(CODER_NAMES)] == "Frodo 2"
        assert names[len(CODER_NAMES) + 1] == "Samwise 2"

    def test_freed_name_is_reused(self):
        slots = [Slot(project_id="p", task_id="a", agent_name="Samwise", attempt=1)]
        assert _free_agent_name(slots) == "Frodo"
