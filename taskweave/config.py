"""
Configuration
=============

Runtime settings for the task orchestrator, read from the environment
(and an optional .env file) so the same scripts work locally and in CI.

Per-project workflow settings (auto-commit, commit message template,
parallel execution) live in the task file itself, see task_store.
"""

from dataclasses import dataclass, field
from pathlib import Path
from typing import List, Optional
import logging
import os
import shlex

from dotenv import load_dotenv

logger = logging.getLogger(__name__)


DEFAULT_AGENT_COMMAND = [
    "claude",
    "-p",
    "--dangerously-skip-permissions",
    "--output-format",
    "stream-json",
    "--verbose",
]


def _env_int(name: str, default: int) -> int:
    raw = os.environ.get(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        return int(raw)
    except ValueError:
        logger.warning(f"Ignoring invalid {name}={raw!r}, using {default}")
        return default


def _env_float(name: str, default: Optional[float]) -> Optional[float]:
    raw = os.environ.get(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        return float(raw)
    except ValueError:
        logger.warning(f"Ignoring invalid {name}={raw!r}, using {default}")
        return default


@dataclass
class Config:
    """
    Orchestrator settings.

    Attributes:
        max_retries: Agent attempts per item before giving up
        retry_delay: Seconds to wait between agent attempts
        agent_command: argv of the external agent process
        agent_timeout: Optional per-attempt timeout in seconds
        tasks_file: Path of the task store document
        worktree_dir: Directory (relative to the repo) holding workspaces
        log_dir: Directory for session logs and per-item transcripts
        branch_prefix: Branch name prefix that marks workspace branches
        refresh_interval: Seconds between progress table refreshes
    """
    max_retries: int = 2
    retry_delay: float = 5.0
    agent_command: List[str] = field(default_factory=lambda: list(DEFAULT_AGENT_COMMAND))
    agent_timeout: Optional[float] = None
    tasks_file: str = "tasks.json"
    worktree_dir: str = ".taskweave-worktrees"
    log_dir: str = ".taskweave-logs"
    branch_prefix: str = "taskweave/"
    refresh_interval: float = 0.5

    @classmethod
    def from_env(cls, env_file: Optional[Path] = None) -> "Config":
        """
        Build a Config from environment variables.

        Args:
            env_file: Optional .env file to load first (defaults to ./.env)

        Returns:
            Config with environment overrides applied
        """
        load_dotenv(env_file)

        config = cls()
        config.max_retries = _env_int("MAX_RETRIES", config.max_retries)
        config.retry_delay = _env_float("RETRY_DELAY", config.retry_delay)
        config.agent_timeout = _env_float("TASKWEAVE_AGENT_TIMEOUT", None)
        config.refresh_interval = _env_float("TASKWEAVE_REFRESH_INTERVAL", config.refresh_interval)

        command = os.environ.get("TASKWEAVE_AGENT_COMMAND")
        if command:
            config.agent_command = shlex.split(command)

        config.tasks_file = os.environ.get("TASKWEAVE_TASKS_FILE", config.tasks_file)
        config.worktree_dir = os.environ.get("TASKWEAVE_WORKTREE_DIR", config.worktree_dir)
        config.log_dir = os.environ.get("TASKWEAVE_LOG_DIR", config.log_dir)
        config.branch_prefix = os.environ.get("TASKWEAVE_BRANCH_PREFIX", config.branch_prefix)

        if config.max_retries < 1:
            logger.warning(f"MAX_RETRIES={config.max_retries} is below 1, using 1")
            config.max_retries = 1

        logger.debug(f"Loaded config: {config}")
        return config
