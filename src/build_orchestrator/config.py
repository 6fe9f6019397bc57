"""Configuration loading from environment variables."""

import os
from dataclasses import dataclass, field
from pathlib import Path


@dataclass
class Config:
    db_path: Path = field(default_factory=lambda: Path.home() / ".build_orchestrator" / "bo.db")
    repo_path: Path = field(default_factory=lambda: Path.cwd())
    slack_bot_token: str | None = None
    worktree_dir: str = ".worktrees"
    agent_command: str = "claude -p --dangerously-skip-permissions --model {model}"
    agent_default_model: str = "sonnet"
    retry_limit: int = 2
    review_feedback_retention: str = "latest"
    # Seconds
    inactivity_timeout: float = 600.0
    inactivity_check_interval: float = 30.0
    heartbeat_interval: float = 10.0
    heartbeat_stale: float = 120.0
    loop_stuck_guard: float = 300.0
    poll_interval: float = 5.0
    loop_error_backoff: float = 10.0
    merger_timeout: float = 600.0
    test_timeout: float = 900.0

    @classmethod
    def from_env(cls) -> "Config":
        config = cls()

        if db := os.environ.get("BO_DB_PATH"):
            config.db_path = Path(db)

        if repo := os.environ.get("BO_REPO_PATH"):
            config.repo_path = Path(repo)

        config.slack_bot_token = os.environ.get("SLACK_BOT_TOKEN")

        if wt_dir := os.environ.get("BO_WORKTREE_DIR"):
            config.worktree_dir = wt_dir

        if command := os.environ.get("BO_AGENT_COMMAND"):
            config.agent_command = command

        if model := os.environ.get("BO_AGENT_DEFAULT_MODEL"):
            config.agent_default_model = model

        if limit := os.environ.get("BO_RETRY_LIMIT"):
            config.retry_limit = int(limit)

        if retention := os.environ.get("BO_REVIEW_FEEDBACK_RETENTION"):
            if retention not in ("latest", "all"):
                raise ValueError(
                    f"BO_REVIEW_FEEDBACK_RETENTION must be 'latest' or 'all', got {retention!r}"
                )
            config.review_feedback_retention = retention

        for env_name, attr in (
            ("BO_INACTIVITY_TIMEOUT", "inactivity_timeout"),
            ("BO_HEARTBEAT_STALE", "heartbeat_stale"),
            ("BO_LOOP_STUCK_GUARD", "loop_stuck_guard"),
            ("BO_POLL_INTERVAL", "poll_interval"),
            ("BO_MERGER_TIMEOUT", "merger_timeout"),
            ("BO_TEST_TIMEOUT", "test_timeout"),
        ):
            if value := os.environ.get(env_name):
                setattr(config, attr, float(value))

        return config


def get_config() -> Config:
    return Config.from_env()
