"""In-memory slot state for tasks in flight."""

import threading
import time
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path

# Live output kept per slot for reconnecting clients.
MAX_OUTPUT_CHARS = 256 * 1024

PHASES = ("dispatch_pending", "coding", "testing", "reviewing", "done", "failure")


class OutputBuffer:
    """Thread-safe, bounded tail of an agent's streamed output."""

    def __init__(self, max_chars: int = MAX_OUTPUT_CHARS):
        self.max_chars = max_chars
        self._chunks: deque[str] = deque()
        self._size = 0
        self._lock = threading.Lock()

    def append(self, chunk: str):
        if not chunk:
            return
        with self._lock:
            self._chunks.append(chunk)
            self._size += len(chunk)
            while self._size > self.max_chars and len(self._chunks) > 1:
                self._size -= len(self._chunks.popleft())
            if self._size > self.max_chars:
                only = self._chunks.pop()[-self.max_chars:]
                self._chunks.append(only)
                self._size = len(only)

    def text(self) -> str:
        with self._lock:
            return "".join(self._chunks)


@dataclass
class Slot:
    """One task in flight. Owned by the orchestrator; read by the failure handler."""

    project_id: str
    task_id: str
    agent_name: str
    attempt: int
    infra_retries: int = 0
    branch_name: str | None = None
    worktree_path: Path | None = None
    work_dir: Path | None = None
    run_dir: Path | None = None
    phase: str = "dispatch_pending"
    file_scope: list[str] | None = None
    # Phase results
    coding_diff: str = ""
    coding_summary: str = ""
    test_output: str | None = None
    test_passed: bool | None = None
    review_feedback: str | None = None
    # Agent run
    agent_command: str | None = None
    output: OutputBuffer = field(default_factory=OutputBuffer)
    started_at: datetime | None = None
    last_output_at: float = field(default_factory=time.monotonic)
    killed_for_timeout: bool = False
    process: object | None = None
    thread: threading.Thread | None = None

    def record_output(self, chunk: str):
        self.output.append(chunk)
        self.last_output_at = time.monotonic()
