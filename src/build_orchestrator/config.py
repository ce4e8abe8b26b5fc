"""Configuration loading from environment variables."""

import os
from dataclasses import dataclass, field
from pathlib import Path


def _default_state_dir() -> Path:
    return Path.home() / ".build_orchestrator"


@dataclass
class Config:
    db_path: Path = field(default_factory=lambda: _default_state_dir() / "bo.db")
    repo_path: Path = field(default_factory=lambda: Path.cwd())
    state_dir: Path = field(default_factory=_default_state_dir)
    slack_bot_token: str | None = None
    # Worktrees live outside the repository so agents never see each other's trees.
    worktree_dir: Path | None = None
    poll_interval: float = 5.0
    agent_inactivity_timeout: float = 600.0
    test_timeout: float = 600.0
    retry_backoff_seconds: float = 30.0
    auto_retry_check_interval: float = 300.0
    shutdown_grace_seconds: float = 5.0
    # How long a project stays owned by an orchestrator that stopped renewing it.
    lease_ttl_seconds: float = 60.0
    log_level: str = "INFO"

    @property
    def worktree_base(self) -> Path:
        return self.worktree_dir or self.state_dir / "worktrees"

    @property
    def runs_dir(self) -> Path:
        return self.state_dir / "runs"

    @classmethod
    def from_env(cls) -> "Config":
        config = cls()

        if db := os.environ.get("BO_DB_PATH"):
            config.db_path = Path(db)

        if repo := os.environ.get("BO_REPO_PATH"):
            config.repo_path = Path(repo)

        if state := os.environ.get("BO_STATE_DIR"):
            config.state_dir = Path(state)

        config.slack_bot_token = os.environ.get("SLACK_BOT_TOKEN")

        if wt_dir := os.environ.get("BO_WORKTREE_DIR"):
            config.worktree_dir = Path(wt_dir)

        if poll := os.environ.get("BO_POLL_INTERVAL"):
            config.poll_interval = float(poll)

        if inactivity := os.environ.get("BO_AGENT_INACTIVITY_TIMEOUT"):
            config.agent_inactivity_timeout = float(inactivity)

        if test_timeout := os.environ.get("BO_TEST_TIMEOUT"):
            config.test_timeout = float(test_timeout)

        if backoff := os.environ.get("BO_RETRY_BACKOFF"):
            config.retry_backoff_seconds = float(backoff)

        if ttl := os.environ.get("BO_LEASE_TTL"):
            config.lease_ttl_seconds = float(ttl)

        if level := os.environ.get("BO_LOG_LEVEL"):
            config.log_level = level.upper()

        return config


def get_config() -> Config:
    return Config.from_env()
