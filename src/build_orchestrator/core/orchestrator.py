"""The always-on build orchestrator.

One loop thread per project keeps the slot pool full: it claims ready tasks,
and a worker thread per slot drives each task through coding, testing,
review and merge. Failures go to the FailureHandler. Anything that may free
a slot or create work nudges the loop.
"""

import logging
import os
import sqlite3
import subprocess
import threading
import time
import uuid
from dataclasses import dataclass, field
from datetime import timedelta
from pathlib import Path
from typing import Callable

from build_orchestrator.config import Config
from build_orchestrator.core import agents as agents_mod
from build_orchestrator.core import counters as counters_mod
from build_orchestrator.core import events as events_mod
from build_orchestrator.core import leases as leases_mod
from build_orchestrator.core import projects as projects_mod
from build_orchestrator.core import recovery as recovery_mod
from build_orchestrator.core import sessions as sessions_mod
from build_orchestrator.core import tasks as tasks_mod
from build_orchestrator.core import worktrees as worktrees_mod
from build_orchestrator.core.agents import AgentClient, AgentConfig, AgentSpawnError, ProcessRegistry
from build_orchestrator.core.failures import Disposition, FailureHandler, FailureKind, GitWorkingMode
from build_orchestrator.core.slots import Slot
from build_orchestrator.db.engine import init_db, utcnow
from build_orchestrator.db.models import AgentSession, Project, Task
from build_orchestrator.integrations.git import GitError, MergeConflictError

logger = logging.getLogger(__name__)

TASK_GRAPH_RETRIES = 3
TASK_GRAPH_RETRY_DELAY = 0.5


class TaskFailure(Exception):
    """A task could not finish a phase. Carries what the failure handler needs."""

    def __init__(
        self,
        kind: FailureKind,
        message: str,
        test_output: str | None = None,
        review_feedback: str | None = None,
    ):
        super().__init__(message)
        self.kind = kind
        self.message = message
        self.test_output = test_output
        self.review_feedback = review_feedback


class ShutdownInterrupted(Exception):
    """The orchestrator began stopping while a task was in flight."""


@dataclass
class OrchestratorStatus:
    project_id: str
    running: bool = False
    current_task_id: str | None = None
    current_phase: str | None = None
    queue_depth: int = 0
    total_done: int = 0
    total_failed: int = 0
    active_tasks: list[dict] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {
            "project_id": self.project_id,
            "running": self.running,
            "current_task_id": self.current_task_id,
            "current_phase": self.current_phase,
            "queue_depth": self.queue_depth,
            "total_done": self.total_done,
            "total_failed": self.total_failed,
            "active_tasks": self.active_tasks,
        }


class _ProjectState:
    def __init__(self, project_id: str, total_done: int, total_failed: int):
        self.project_id = project_id
        self.wake = threading.Event()
        self.dispatch_lock = threading.Lock()
        # Serializes everything that touches the main checkout (worktree add, merge).
        self.main_lock = threading.Lock()
        self.slots: dict[str, Slot] = {}
        self.queue_depth = 0
        self.total_done = total_done
        self.total_failed = total_failed
        self.loop_thread: threading.Thread | None = None
        self.last_auto_retry_check = 0.0
        self.owns_lease = False


def thread_worker(target: Callable[[Slot], None], slot: Slot) -> threading.Thread:
    """Run a slot on its own daemon thread."""
    t = threading.Thread(target=target, args=(slot,), name=f"slot-{slot.task_id}", daemon=True)
    t.start()
    return t


def inline_worker(target: Callable[[Slot], None], slot: Slot) -> None:
    """Run a slot to completion on the calling thread."""
    target(slot)
    return None


class Orchestrator:
    def __init__(
        self,
        config: Config,
        registry: ProcessRegistry | None = None,
        agent_client: AgentClient | None = None,
        notifier=None,
        worker_factory: Callable[[Callable[[Slot], None], Slot], threading.Thread | None] = thread_worker,
    ):
        self.config = config
        self.registry = registry or ProcessRegistry()
        self.agent_client = agent_client or AgentClient(self.registry)
        self.notifier = notifier
        self.worker_factory = worker_factory
        self.failure_handler = FailureHandler(
            worktree_base=str(config.worktree_base),
            retry_backoff_seconds=config.retry_backoff_seconds,
            on_released=self._release_after_failure,
            notifier=notifier,
        )
        self._projects: dict[str, _ProjectState] = {}
        self._lock = threading.Lock()
        self._stopping = threading.Event()
        self.owner_id = f"{os.getpid()}-{uuid.uuid4().hex[:8]}"
        self._lease_ttl = timedelta(seconds=config.lease_ttl_seconds)

    def _connect(self) -> sqlite3.Connection:
        return init_db(self.config.db_path)

    # ── Lifecycle ─────────────────────────────────────────────────────────────

    def register_project(self, project_id: str) -> None:
        """Take the project's lease, recover orphans and load persisted counters.

        Idempotent; starts no thread. When another live orchestrator holds the
        lease the project is still registered, but its in-progress tasks belong
        to that orchestrator and are left alone.
        """
        with self._lock:
            if project_id in self._projects:
                return
            db = self._connect()
            try:
                project = projects_mod.get_project(db, project_id)
                if not project:
                    raise ValueError(f"Project not found: {project_id}")
                owns_lease = self._take_ownership(db, project, recover=True)
                total_done, total_failed = counters_mod.get_project_totals(db, project_id)
            finally:
                db.close()
            state = _ProjectState(project_id, total_done, total_failed)
            state.owns_lease = owns_lease
            self._projects[project_id] = state

    def _take_ownership(self, db: sqlite3.Connection, project: Project, recover: bool) -> bool:
        if not leases_mod.acquire(db, project.id, self.owner_id, self._lease_ttl):
            logger.warning(
                "Project %s is run by orchestrator %s; leaving its in-progress tasks alone",
                project.id,
                leases_mod.holder(db, project.id),
            )
            return False
        if recover:
            recovery_mod.recover_orphaned_tasks(db, project, self.config.worktree_base)
        return True

    def ensure_running(self, project_id: str) -> bool:
        """Start the project's loop unless it is already running. True if started now.

        Only the lease holder runs a loop; a project run by another process is
        left to that process.
        """
        self.register_project(project_id)
        with self._lock:
            state = self._projects[project_id]
            if state.loop_thread and state.loop_thread.is_alive():
                return False
            if self._stopping.is_set():
                return False
            if not state.owns_lease:
                db = self._connect()
                try:
                    project = projects_mod.get_project(db, project_id)
                    # Slots already in flight here would look like orphans.
                    state.owns_lease = self._take_ownership(db, project, recover=not state.slots)
                finally:
                    db.close()
                if not state.owns_lease:
                    return False
            state.loop_thread = threading.Thread(
                target=self._loop, args=(state,), name=f"orchestrator-{project_id}", daemon=True
            )
            state.loop_thread.start()
        logger.info("Orchestrator started for project %s", project_id)
        return True

    def nudge(self, project_id: str) -> None:
        """Ask the project's loop for another pass. Extra nudges before it wakes coalesce."""
        state = self._projects.get(project_id)
        if state is None:
            logger.debug("Nudge for inactive project %s ignored", project_id)
            return
        state.wake.set()

    def _loop(self, state: _ProjectState):
        while not self._stopping.is_set():
            state.wake.clear()
            try:
                if not self._renew_lease(state):
                    logger.warning("Lost the lease on %s; stopping its loop", state.project_id)
                    state.owns_lease = False
                    return
                self._maybe_auto_retry(state)
                self.dispatch_pass(state.project_id)
            except Exception:
                logger.exception("Error in orchestrator loop for %s", state.project_id)
            state.wake.wait(self.config.poll_interval)

    def _renew_lease(self, state: _ProjectState) -> bool:
        db = self._connect()
        try:
            return leases_mod.renew(db, state.project_id, self.owner_id)
        finally:
            db.close()

    def _maybe_auto_retry(self, state: _ProjectState):
        now = time.monotonic()
        if now - state.last_auto_retry_check < self.config.auto_retry_check_interval:
            return
        state.last_auto_retry_check = now
        db = self._connect()
        try:
            recovery_mod.run_blocked_auto_retry_pass(db, state.project_id)
        finally:
            db.close()

    def stop_all(self, grace_seconds: float | None = None) -> None:
        """Cooperative shutdown.

        Loops stop, agent process groups get SIGTERM then SIGKILL, workers are
        joined with a bound, and each in-flight slot's work is committed as WIP
        as the final change to it. Tasks stay in_progress for orphan recovery;
        releasing the project leases afterwards lets the next start recover them.
        """
        grace = self.config.shutdown_grace_seconds if grace_seconds is None else grace_seconds
        self._stopping.set()
        states = list(self._projects.values())
        for state in states:
            state.wake.set()
        for state in states:
            if state.loop_thread:
                state.loop_thread.join(timeout=grace)

        killed = self.registry.terminate_all(grace)
        if killed:
            logger.info("Terminated %d agent process(es)", len(killed))

        for state in states:
            for slot in list(state.slots.values()):
                if slot.thread and slot.thread is not threading.current_thread():
                    slot.thread.join(timeout=grace)

        for state in states:
            for slot in list(state.slots.values()):
                self._commit_wip(slot)
        self._release_leases(states)
        logger.info("Orchestrator stopped")

    def _release_leases(self, states):
        # After the WIP commits, so a successor's recovery never races them.
        owned = [s for s in states if s.owns_lease]
        if not owned:
            return
        db = self._connect()
        try:
            for state in owned:
                leases_mod.release(db, state.project_id, self.owner_id)
                state.owns_lease = False
        except sqlite3.Error:
            logger.exception("Could not release project leases; they expire on their own")
        finally:
            db.close()

    def _commit_wip(self, slot: Slot):
        if not slot.work_dir or not Path(slot.work_dir).exists():
            return
        try:
            if worktrees_mod.commit_wip(slot.work_dir, slot.task_id):
                logger.info("Saved WIP commit for %s in %s", slot.task_id, slot.work_dir)
        except GitError:
            logger.exception("WIP commit failed for %s", slot.task_id)

    # ── Status ────────────────────────────────────────────────────────────────

    def get_status(self, project_id: str) -> OrchestratorStatus:
        """Current status from memory only."""
        state = self._projects.get(project_id)
        if state is None:
            return OrchestratorStatus(project_id=project_id)
        slots = list(state.slots.values())
        running = bool(state.loop_thread and state.loop_thread.is_alive()) and not self._stopping.is_set()
        return OrchestratorStatus(
            project_id=project_id,
            running=running,
            current_task_id=slots[0].task_id if slots else None,
            current_phase=slots[0].phase if slots else None,
            queue_depth=state.queue_depth,
            total_done=state.total_done,
            total_failed=state.total_failed,
            active_tasks=[
                {
                    "task_id": s.task_id,
                    "agent": s.agent_name,
                    "phase": s.phase,
                    "attempt": s.attempt,
                    "branch": s.branch_name,
                    "started_at": s.started_at.isoformat() if s.started_at else None,
                }
                for s in slots
            ],
        )

    def get_live_output(self, project_id: str, task_id: str) -> str:
        state = self._projects.get(project_id)
        if state is None:
            return ""
        slot = state.slots.get(task_id)
        return slot.output.text() if slot else ""

    # ── Dispatch ──────────────────────────────────────────────────────────────

    def dispatch_pass(self, project_id: str) -> list[str]:
        """Fill free slots with ready tasks. Returns the IDs claimed in this pass.

        Claiming happens under the project's dispatch lock with nothing
        blocking between reading the ready set and marking a task claimed.
        """
        state = self._projects.get(project_id)
        if state is None:
            raise ValueError(f"Project not registered: {project_id}")
        if self._stopping.is_set():
            return []

        claimed: list[Slot] = []
        db = self._connect()
        try:
            with state.dispatch_lock:
                project = projects_mod.get_project(db, project_id)
                max_slots = (
                    1 if project.git_working_mode == GitWorkingMode.BRANCHES.value
                    else project.max_concurrent_coders
                )
                ready = [t for t in tasks_mod.get_ready_tasks(db, project_id) if t.id not in state.slots]
                task_counters = {c.task_id: c for c in counters_mod.list_task_counters(db, project_id)}
                now = utcnow()

                for task in ready:
                    if len(state.slots) >= max_slots:
                        break
                    counters = task_counters.get(task.id)
                    if counters and counters.cooldown_until and counters.cooldown_until > now:
                        continue
                    if _scope_conflict(task, state.slots.values(), project.unknown_scope_strategy):
                        logger.debug("Skipping %s: file scope conflicts with work in flight", task.id)
                        continue
                    agent_name = _free_agent_name(state.slots.values())
                    if not tasks_mod.claim_task(db, task.id, agent_name):
                        continue
                    slot = Slot(
                        project_id=project_id,
                        task_id=task.id,
                        agent_name=agent_name,
                        attempt=task.attempts + 1,
                        infra_retries=counters.infra_retries if counters else 0,
                        branch_name=worktrees_mod.branch_name_for(task.id),
                        file_scope=task.file_scope,
                    )
                    state.slots[task.id] = slot
                    claimed.append(slot)
                    events_mod.log(
                        db, project_id, "task.dispatched", task.id, agent=agent_name, attempt=slot.attempt
                    )

                state.queue_depth = len(ready) - len(claimed)
        finally:
            db.close()

        for slot in claimed:
            logger.info("Dispatched %s to %s (attempt %s)", slot.task_id, slot.agent_name, slot.attempt)
            slot.thread = self.worker_factory(self._run_slot, slot)
        return [s.task_id for s in claimed]

    # ── Per-slot execution ────────────────────────────────────────────────────

    def _run_slot(self, slot: Slot):
        db = None
        try:
            db = self._connect()
            project = projects_mod.get_project(db, slot.project_id)
            task = self._task_call(tasks_mod.get_task, db, slot.task_id)
            failure = None
            try:
                self._execute(db, project, task, slot)
            except ShutdownInterrupted:
                logger.info("Shutdown in progress; leaving %s in progress for recovery", slot.task_id)
                return
            except TaskFailure as e:
                failure = e
            except Exception as e:
                logger.exception("Unexpected error while running %s", slot.task_id)
                failure = TaskFailure(FailureKind.INFRA_ERROR, f"{type(e).__name__}: {e}")

            if failure is None:
                return
            if self._stopping.is_set():
                logger.info("Shutdown in progress; leaving %s in progress for recovery", slot.task_id)
                return
            slot.phase = "failure"
            self.failure_handler.handle_task_failure(
                db,
                project,
                task,
                slot.branch_name,
                failure.message,
                failure.test_output,
                failure.kind,
                slot,
                review_feedback=failure.review_feedback,
            )
        except Exception:
            logger.exception("Slot for %s crashed; releasing it", slot.task_id)
            self._drop_slot(slot)
        finally:
            if db is not None:
                db.close()

    def _execute(self, db: sqlite3.Connection, project: Project, task: Task, slot: Slot):
        state = self._projects[project.id]
        mode = GitWorkingMode(project.git_working_mode)
        slot.run_dir = self.config.runs_dir / project.id / f"{task.id}-{slot.attempt}-{slot.infra_retries}"
        self._check_stopping(slot)

        try:
            with state.main_lock:
                if mode is GitWorkingMode.WORKTREE:
                    slot.worktree_path = worktrees_mod.create_task_worktree(
                        project.repo_path, task.id, self.config.worktree_base, project.default_branch
                    )
                    slot.work_dir = slot.worktree_path
                else:
                    worktrees_mod.create_task_branch(project.repo_path, task.id, project.default_branch)
                    slot.work_dir = Path(project.repo_path)
        except GitError as e:
            raise TaskFailure(FailureKind.INFRA_ERROR, f"Could not create workspace: {e}") from e

        self._coding_phase(db, project, task, slot)
        self._check_stopping(slot)
        self._testing_phase(db, project, slot)
        if _needs_review(project, task):
            self._check_stopping(slot)
            self._review_phase(db, project, task, slot)
        self._check_stopping(slot)
        self._complete(db, project, task, slot)

    def _check_stopping(self, slot: Slot):
        """Stop before the next phase once shutdown began. The slot stays for the WIP commit."""
        if self._stopping.is_set():
            raise ShutdownInterrupted(slot.task_id)

    def _coding_phase(self, db, project: Project, task: Task, slot: Slot):
        self._set_phase(db, slot, "coding")
        previous_failure, review_feedback = _previous_outcome(db, task.id)
        prompt = agents_mod.assemble_prompt(
            db, task, project, slot.run_dir, slot.branch_name, previous_failure, review_feedback
        )
        exit_code = self._run_agent(slot, agents_mod.select_agent_config(project, task), prompt)
        self._check_stopping(slot)
        if slot.killed_for_timeout:
            raise TaskFailure(
                FailureKind.TIMEOUT,
                f"Agent produced no output for {self.config.agent_inactivity_timeout:.0f}s",
            )
        if exit_code != 0:
            raise TaskFailure(FailureKind.AGENT_CRASH, f"Agent exited with code {exit_code}")

        result = agents_mod.read_result(slot.run_dir) or {}
        slot.coding_summary = str(result.get("summary", ""))
        if result.get("status") == "failed":
            raise TaskFailure(FailureKind.CODING_FAILURE, slot.coding_summary or "Agent reported failure")

        try:
            slot.coding_diff = worktrees_mod.capture_branch_diff(
                project.repo_path, slot.branch_name, project.default_branch
            ) + worktrees_mod.capture_uncommitted_diff(slot.work_dir)
        except GitError as e:
            raise TaskFailure(FailureKind.INFRA_ERROR, f"Could not capture diff: {e}") from e
        if not slot.coding_diff.strip():
            raise TaskFailure(FailureKind.CODING_FAILURE, "Agent produced no changes")

    def _testing_phase(self, db, project: Project, slot: Slot):
        self._set_phase(db, slot, "testing")
        if not project.test_command:
            slot.test_passed = True
            return
        try:
            proc = subprocess.run(
                project.test_command,
                shell=True,
                cwd=str(slot.work_dir),
                capture_output=True,
                text=True,
                timeout=self.config.test_timeout,
            )
        except subprocess.TimeoutExpired as e:
            raise TaskFailure(
                FailureKind.INFRA_ERROR, f"Test command timed out after {self.config.test_timeout:.0f}s"
            ) from e
        slot.test_output = (proc.stdout or "") + (proc.stderr or "")
        slot.test_passed = proc.returncode == 0
        if not slot.test_passed:
            raise TaskFailure(
                FailureKind.TEST_FAILURE,
                f"Tests failed with exit code {proc.returncode}",
                test_output=slot.test_output,
            )

    def _review_phase(self, db, project: Project, task: Task, slot: Slot):
        self._set_phase(db, slot, "reviewing")
        review_dir = slot.run_dir / "review"
        prompt = agents_mod.assemble_review_prompt(task, slot.coding_diff, slot.test_output, review_dir)
        config = AgentConfig.parse(project.complex_agent or project.simple_agent)
        exit_code = self._run_agent(slot, config, prompt)
        self._check_stopping(slot)
        if slot.killed_for_timeout:
            raise TaskFailure(FailureKind.TIMEOUT, "Review agent stopped producing output")
        verdict = agents_mod.read_result(review_dir)
        if exit_code != 0 or verdict is None:
            raise TaskFailure(FailureKind.AGENT_CRASH, f"Review agent gave no verdict (exit code {exit_code})")
        if verdict.get("status") != "approved":
            issues = verdict.get("issues") or []
            feedback = "\n".join([str(verdict.get("summary", ""))] + [f"- {i}" for i in issues]).strip()
            raise TaskFailure(
                FailureKind.REVIEW_REJECTION, "Review rejected the change", review_feedback=feedback
            )

    def _complete(self, db, project: Project, task: Task, slot: Slot):
        state = self._projects[project.id]
        try:
            worktrees_mod.commit_all(slot.work_dir, f"{task.id}: {task.title}")
            with state.main_lock:
                worktrees_mod.merge_to_main(
                    project.repo_path,
                    slot.branch_name,
                    project.default_branch,
                    f"Merge {slot.branch_name}: {task.title}",
                )
        except MergeConflictError as e:
            raise TaskFailure(FailureKind.MERGE_CONFLICT, str(e)) from e
        except GitError as e:
            raise TaskFailure(FailureKind.INFRA_ERROR, f"Could not merge: {e}") from e

        self._task_call(tasks_mod.close_task, db, task.id, f"Completed by {slot.agent_name}")

        # The work is merged and the task closed; nothing below may reopen it.
        try:
            self._record_completion(db, project, task, slot)
        except Exception:
            logger.exception("Bookkeeping after completing %s failed; task stays closed", task.id)
        finally:
            with state.dispatch_lock:
                state.slots.pop(task.id, None)
                state.total_done += 1
                try:
                    counters_mod.save_project_totals(db, project.id, state.total_done, state.total_failed)
                except sqlite3.Error:
                    logger.exception("Could not persist totals for %s", project.id)
            self.nudge(project.id)

    def _record_completion(self, db, project: Project, task: Task, slot: Slot):
        self._set_phase(db, slot, "done")

        try:
            if project.git_working_mode == GitWorkingMode.WORKTREE.value:
                worktrees_mod.remove_task_worktree(project.repo_path, task.id, self.config.worktree_base)
                slot.worktree_path = None
            worktrees_mod.delete_branch(project.repo_path, slot.branch_name)
        except GitError:
            logger.exception("Cleanup after completing %s failed", task.id)

        sessions_mod.archive_session(
            db,
            AgentSession(
                project_id=project.id,
                task_id=task.id,
                attempt=slot.attempt,
                status="approved",
                agent_name=slot.agent_name,
                agent_command=slot.agent_command,
                branch_name=slot.branch_name,
                output_log=slot.output.text(),
                git_diff=slot.coding_diff,
                test_output=slot.test_output,
                summary=slot.coding_summary or None,
                started_at=slot.started_at,
            ),
        )
        counters_mod.clear_task_counters(db, project.id, task.id)
        events_mod.log(db, project.id, "transition.complete", task.id, agent=slot.agent_name, attempt=slot.attempt)
        logger.info("Task %s completed by %s", task.id, slot.agent_name)

        if self.notifier:
            try:
                self.notifier.task_completed(project, task)
            except Exception:
                logger.exception("Completion notification for %s failed", task.id)

    def _run_agent(self, slot: Slot, config: AgentConfig, prompt_path: Path) -> int | None:
        """Run an agent to exit, killing it after too long without output."""
        slot.agent_command = config.describe()
        slot.started_at = slot.started_at or utcnow()
        slot.last_output_at = time.monotonic()
        slot.killed_for_timeout = False
        try:
            handle = self.agent_client.spawn_with_task_file(
                config,
                prompt_path,
                slot.work_dir,
                slot.record_output,
                lambda code: logger.info("Agent for %s exited with code %s", slot.task_id, code),
            )
        except AgentSpawnError as e:
            raise TaskFailure(FailureKind.AGENT_CRASH, str(e)) from e

        slot.process = handle
        timeout = self.config.agent_inactivity_timeout
        try:
            while not handle.finished:
                handle.wait(timeout=min(1.0, timeout))
                if handle.finished:
                    break
                if time.monotonic() - slot.last_output_at > timeout:
                    logger.warning("Agent for %s silent for %.0fs; killing it", slot.task_id, timeout)
                    slot.killed_for_timeout = True
                    handle.kill(self.config.shutdown_grace_seconds)
                    handle.wait(timeout=self.config.shutdown_grace_seconds)
                    break
        finally:
            slot.process = None
        return handle.exit_code

    def _set_phase(self, db, slot: Slot, phase: str):
        slot.phase = phase
        events_mod.log(db, slot.project_id, f"transition.{phase}", slot.task_id, attempt=slot.attempt)

    def _task_call(self, fn, db, *args, **kwargs):
        """Call the task graph, retrying when the database is busy."""
        for attempt in range(1, TASK_GRAPH_RETRIES + 1):
            try:
                return fn(db, *args, **kwargs)
            except sqlite3.OperationalError as e:
                if attempt == TASK_GRAPH_RETRIES:
                    raise TaskFailure(
                        FailureKind.INFRA_ERROR, f"Task graph unavailable: {e}"
                    ) from e
                logger.warning("Task graph call %s failed (%s); retrying", fn.__name__, e)
                time.sleep(TASK_GRAPH_RETRY_DELAY * attempt)

    # ── Slot release ──────────────────────────────────────────────────────────

    def _release_after_failure(self, project_id: str, task_id: str, disposition: Disposition | None):
        state = self._projects.get(project_id)
        if state is None:
            return
        with state.dispatch_lock:
            state.slots.pop(task_id, None)
            if disposition in (Disposition.DEMOTED, Disposition.BLOCKED):
                state.total_failed += 1
                db = self._connect()
                try:
                    counters_mod.save_project_totals(db, project_id, state.total_done, state.total_failed)
                finally:
                    db.close()
        self.nudge(project_id)

    def _drop_slot(self, slot: Slot):
        state = self._projects.get(slot.project_id)
        if state is None:
            return
        with state.dispatch_lock:
            state.slots.pop(slot.task_id, None)
        self.nudge(slot.project_id)


# ── Dispatch helpers ─────────────────────────────────────────────────────────


def _free_agent_name(slots) -> str:
    used = {s.agent_name for s in slots}
    i = 0
    while agents_mod.agent_name_for(i) in used:
        i += 1
    return agents_mod.agent_name_for(i)


def _paths_overlap(a: str, b: str) -> bool:
    a, b = a.rstrip("/"), b.rstrip("/")
    return a == b or a.startswith(b + "/") or b.startswith(a + "/")


def _scopes_overlap(a: list[str], b: list[str]) -> bool:
    return any(_paths_overlap(x, y) for x in a for y in b)


def _scope_conflict(task: Task, in_flight, strategy: str) -> bool:
    """Whether dispatching task now risks editing files another slot is editing.

    Known overlapping scopes always conflict. Under the conservative strategy
    an unknown scope on either side conflicts with any work in flight.
    """
    others = list(in_flight)
    if not others:
        return False
    if strategy == "conservative":
        if task.file_scope is None or any(s.file_scope is None for s in others):
            return True
    if task.file_scope is None:
        return False
    return any(s.file_scope is not None and _scopes_overlap(task.file_scope, s.file_scope) for s in others)


def _needs_review(project: Project, task: Task) -> bool:
    if project.review_mode == "always":
        return True
    if project.review_mode == "on-failure-only":
        return task.attempts > 0
    return False


def _previous_outcome(db: sqlite3.Connection, task_id: str) -> tuple[str | None, str | None]:
    """(previous failure reason, review feedback) from the last archived attempt."""
    sessions = sessions_mod.list_sessions(db, task_id)
    if not sessions:
        return None, None
    last = sessions[-1]
    if last.status == "rejected":
        comments = tasks_mod.list_comments(db, task_id)
        feedback = comments[-1].body if comments else last.failure_reason
        return None, feedback
    if last.status == "failed":
        reason = last.failure_reason or ""
        if last.test_output:
            reason += f"\n\nTest output (tail):\n{last.test_output[-3000:]}"
        return reason, None
    return None, None
