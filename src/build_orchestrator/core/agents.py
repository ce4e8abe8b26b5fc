"""Agent client: spawning coding-agent CLIs, streaming their output, tracking their processes."""

import codecs
import json
import logging
import os
import shlex
import signal
import sqlite3
import subprocess
import threading
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Callable

from build_orchestrator.core import tasks as tasks_mod
from build_orchestrator.db.models import Project, Task

logger = logging.getLogger(__name__)

CODER_NAMES = (
    "Frodo", "Samwise", "Merry", "Pippin", "Aragorn", "Legolas", "Gimli",
    "Faramir", "Eowyn", "Galadriel", "Elrond", "Bilbo", "Treebeard",
)
REVIEWER_NAMES = ("Boromir", "Theoden", "Eomer", "Haldir", "Glorfindel")

# Complexity at or below this runs on the project's simple agent profile.
SIMPLE_COMPLEXITY_MAX = 5

PROMPT_FILE = "prompt.md"
RESULT_FILE = "result.json"


class AgentSpawnError(Exception):
    """Raised when the agent CLI cannot be started."""


# ── Roster ───────────────────────────────────────────────────────────────────


def agent_name_for(index: int, role: str = "coder") -> str:
    """Roster name for an index. Past the end of the roster names get a round suffix: "Frodo 2"."""
    names = REVIEWER_NAMES if role == "reviewer" else CODER_NAMES
    name = names[index % len(names)]
    rnd = index // len(names)
    return f"{name} {rnd + 1}" if rnd else name


def is_agent_assignee(name: str | None) -> bool:
    """True when an assignee is one of the orchestrator's agents rather than a human."""
    if not name:
        return False
    base, _, suffix = name.rpartition(" ")
    if base and suffix.isdigit():
        name = base
    return name in CODER_NAMES or name in REVIEWER_NAMES


# ── Agent configuration ──────────────────────────────────────────────────────


@dataclass
class AgentConfig:
    type: str = "claude"
    model: str | None = None
    cli_command: str | None = None

    @classmethod
    def parse(cls, value: str | None) -> "AgentConfig":
        """Build a config from a project setting.

        The setting is either a JSON object ({"type": "custom", "cli_command": ...})
        or a bare Claude model name.
        """
        if not value:
            return cls()
        value = value.strip()
        if value.startswith("{"):
            data = json.loads(value)
            config = cls(
                type=data.get("type", "claude"),
                model=data.get("model"),
                cli_command=data.get("cli_command"),
            )
        else:
            config = cls(model=value)
        if config.type not in ("claude", "custom"):
            raise ValueError(f"Unknown agent type: {config.type}")
        if config.type == "custom" and not config.cli_command:
            raise ValueError("Custom agents need a cli_command")
        return config

    def command(self, prompt_path: Path) -> list[str]:
        if self.type == "custom":
            return shlex.split(self.cli_command) + [str(prompt_path)]
        cmd = ["claude", "-p", prompt_path.read_text(), "--permission-mode", "acceptEdits"]
        if self.model:
            cmd += ["--model", self.model]
        return cmd

    def describe(self) -> str:
        if self.type == "custom":
            return self.cli_command
        return f"claude ({self.model or 'default'})"


def select_agent_config(project: Project, task: Task) -> AgentConfig:
    """Pick the simple or complex agent profile by task complexity."""
    if task.complexity <= SIMPLE_COMPLEXITY_MAX:
        return AgentConfig.parse(project.simple_agent)
    return AgentConfig.parse(project.complex_agent or project.simple_agent)


# ── Process registry ─────────────────────────────────────────────────────────


class ProcessRegistry:
    """Every agent child process the orchestrator has started and not yet reaped.

    One instance is created at process start and torn down by terminate_all()
    on shutdown. Children run in their own process group, so signalling the
    group also reaches anything the agent spawned.
    """

    def __init__(self):
        self._lock = threading.Lock()
        self._processes: dict[int, subprocess.Popen] = {}

    def register(self, proc: subprocess.Popen):
        with self._lock:
            self._processes[proc.pid] = proc

    def unregister(self, pid: int):
        with self._lock:
            self._processes.pop(pid, None)

    def pids(self) -> list[int]:
        with self._lock:
            return list(self._processes)

    def terminate_all(self, grace_seconds: float = 5.0) -> list[int]:
        """SIGTERM every tracked group, then SIGKILL whatever outlives the grace window."""
        with self._lock:
            procs = list(self._processes.values())
        for proc in procs:
            _signal_group(proc.pid, signal.SIGTERM)

        deadline = time.monotonic() + grace_seconds
        for proc in procs:
            remaining = max(0.0, deadline - time.monotonic())
            try:
                proc.wait(timeout=remaining)
            except subprocess.TimeoutExpired:
                logger.warning("Agent PID %s ignored SIGTERM; sending SIGKILL", proc.pid)
                _signal_group(proc.pid, signal.SIGKILL)

        with self._lock:
            for proc in procs:
                self._processes.pop(proc.pid, None)
        return [p.pid for p in procs]


def _signal_group(pid: int, sig: int):
    try:
        os.killpg(pid, sig)
    except ProcessLookupError:
        pass  # Already exited
    except PermissionError:
        try:
            os.kill(pid, sig)
        except ProcessLookupError:
            pass


# ── Agent process handle ─────────────────────────────────────────────────────


class AgentProcess:
    """Handle on one running agent. on_exit fires exactly once, however it ends."""

    def __init__(self, proc: subprocess.Popen, on_exit: Callable[[int], None], command: str):
        self.proc = proc
        self.pid = proc.pid
        self.command = command
        self.exit_code: int | None = None
        self._on_exit = on_exit
        self._done = threading.Event()
        self._finish_lock = threading.Lock()

    def _finish(self, code: int):
        with self._finish_lock:
            if self._done.is_set():
                return
            self.exit_code = code
            self._done.set()
        try:
            self._on_exit(code)
        except Exception:
            logger.exception("on_exit callback failed for agent PID %s", self.pid)

    def kill(self, grace_seconds: float = 5.0):
        """Terminate the agent's process group, escalating to SIGKILL."""
        if self._done.is_set():
            return
        _signal_group(self.pid, signal.SIGTERM)
        try:
            self.proc.wait(timeout=grace_seconds)
        except subprocess.TimeoutExpired:
            _signal_group(self.pid, signal.SIGKILL)

    def wait(self, timeout: float | None = None) -> int | None:
        """Block until on_exit has run. Returns the exit code, or None on timeout."""
        self._done.wait(timeout)
        return self.exit_code

    @property
    def finished(self) -> bool:
        return self._done.is_set()


class AgentClient:
    """Spawns agent CLIs with a prompt file in a working directory."""

    def __init__(self, registry: ProcessRegistry):
        self.registry = registry

    def spawn_with_task_file(
        self,
        agent_config: AgentConfig,
        prompt_path: Path,
        cwd: str | Path,
        on_chunk: Callable[[str], None],
        on_exit: Callable[[int], None],
    ) -> AgentProcess:
        cmd = agent_config.command(Path(prompt_path))
        try:
            proc = subprocess.Popen(
                cmd,
                cwd=str(cwd),
                stdin=subprocess.DEVNULL,
                stdout=subprocess.PIPE,
                stderr=subprocess.STDOUT,
                start_new_session=True,
            )
        except (FileNotFoundError, PermissionError) as e:
            raise AgentSpawnError(f"Could not start agent {cmd[0]!r}: {e}") from e

        self.registry.register(proc)
        handle = AgentProcess(proc, on_exit, agent_config.describe())
        reader = threading.Thread(
            target=self._pump,
            args=(proc, handle, on_chunk),
            name=f"agent-reader-{proc.pid}",
            daemon=True,
        )
        reader.start()
        logger.info("Agent started: PID %s (%s) in %s", proc.pid, handle.command, cwd)
        return handle

    def _pump(self, proc: subprocess.Popen, handle: AgentProcess, on_chunk: Callable[[str], None]):
        # Multibyte characters may straddle two reads.
        decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        try:
            for chunk in iter(lambda: proc.stdout.read1(4096), b""):
                self._emit(proc, on_chunk, decoder.decode(chunk))
            self._emit(proc, on_chunk, decoder.decode(b"", final=True))
        finally:
            proc.stdout.close()
            code = proc.wait()
            self.registry.unregister(proc.pid)
            handle._finish(code)

    @staticmethod
    def _emit(proc: subprocess.Popen, on_chunk: Callable[[str], None], text: str):
        if not text:
            return
        try:
            on_chunk(text)
        except Exception:
            logger.exception("on_chunk callback failed for agent PID %s", proc.pid)


# ── Prompts and results ──────────────────────────────────────────────────────


def assemble_prompt(
    db: sqlite3.Connection,
    task: Task,
    project: Project,
    run_dir: Path,
    branch_name: str,
    previous_failure: str | None = None,
    review_feedback: str | None = None,
) -> Path:
    """Write the coding prompt for a task into its run directory."""
    parts = []
    parts.append(f"# Task: {task.title}")
    parts.append(f"Task ID: {task.id}")
    if task.description:
        parts.append(f"\n## Description\n{task.description}")

    parts.append("\n## Project Context")
    parts.append(f"Project: {project.name} ({project.id})")
    parts.append(f"Base branch: {project.default_branch}")
    parts.append(f"Working branch: {branch_name}")
    if task.file_scope:
        parts.append("Files in scope: " + ", ".join(task.file_scope))

    if task.depends_on:
        parts.append("\n## Completed Dependencies")
        for dep_id in task.depends_on:
            dep = tasks_mod.get_task(db, dep_id)
            if dep:
                summary = f": {dep.description.splitlines()[0]}" if dep.description else ""
                parts.append(f"- {dep.title} ({dep.id}){summary}")

    if previous_failure:
        parts.append(
            "\n## Previous Attempt Failed\n"
            "An earlier attempt at this task failed. Avoid repeating the problem:\n"
            f"{previous_failure}"
        )

    if review_feedback:
        parts.append(f"\n## Review Feedback\n{review_feedback}")

    parts.append(
        "\n## Completion\n"
        "Make the change in the current working directory. Do not switch branches "
        "and do not merge. When you are finished, write a JSON file to "
        f"`{run_dir / RESULT_FILE}` of the form "
        '`{"status": "success" | "failed", "summary": "..."}` describing what you did.'
    )

    run_dir.mkdir(parents=True, exist_ok=True)
    (run_dir / RESULT_FILE).unlink(missing_ok=True)
    prompt_path = run_dir / PROMPT_FILE
    prompt_path.write_text("\n".join(parts))
    return prompt_path


def assemble_review_prompt(task: Task, diff: str, test_output: str | None, run_dir: Path) -> Path:
    parts = [
        f"# Review: {task.title}",
        f"Task ID: {task.id}",
    ]
    if task.description:
        parts.append(f"\n## Task Description\n{task.description}")
    parts.append(f"\n## Diff\n```diff\n{diff}\n```")
    if test_output:
        parts.append(f"\n## Test Output\n```\n{test_output[-5000:]}\n```")
    parts.append(
        "\n## Verdict\n"
        "Check the diff against the task. Write a JSON file to "
        f"`{run_dir / RESULT_FILE}` of the form "
        '`{"status": "approved" | "rejected", "summary": "...", "issues": ["..."]}`.'
    )
    run_dir.mkdir(parents=True, exist_ok=True)
    (run_dir / RESULT_FILE).unlink(missing_ok=True)
    prompt_path = run_dir / PROMPT_FILE
    prompt_path.write_text("\n".join(parts))
    return prompt_path


def read_result(run_dir: Path) -> dict | None:
    """The result.json an agent wrote, or None if missing or unreadable."""
    path = run_dir / RESULT_FILE
    if not path.exists():
        return None
    try:
        data = json.loads(path.read_text())
    except (json.JSONDecodeError, OSError) as e:
        logger.warning("Unreadable agent result %s: %s", path, e)
        return None
    return data if isinstance(data, dict) else None
