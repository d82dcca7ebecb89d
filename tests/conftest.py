"""
Shared fixtures: git identity, task files, throwaway repositories and
the fake agent command.
"""

import json
import os
import subprocess
import sys
from pathlib import Path

import pytest

# Add project root to path
sys.path.insert(0, str(Path(__file__).parent.parent))

from taskweave.git_repository import GitRepository

FAKE_AGENT = Path(__file__).parent / "fake_agent.py"


@pytest.fixture(autouse=True)
def git_identity(monkeypatch):
    """Make commits work on machines without a global git identity."""
    monkeypatch.setenv("GIT_AUTHOR_NAME", "Test Runner")
    monkeypatch.setenv("GIT_AUTHOR_EMAIL", "tests@example.com")
    monkeypatch.setenv("GIT_COMMITTER_NAME", "Test Runner")
    monkeypatch.setenv("GIT_COMMITTER_EMAIL", "tests@example.com")
    monkeypatch.setenv("GIT_CONFIG_NOSYSTEM", "1")
    monkeypatch.setenv("GIT_CONFIG_GLOBAL", os.devnull)
    monkeypatch.delenv("CLAUDECODE", raising=False)


def write_tasks(path: Path, tasks, workflow=None, **extra) -> Path:
    document = {"projectName": "demo", "version": "1.0", "tasks": tasks}
    if workflow is not None:
        document["workflow"] = workflow
    document.update(extra)
    path.write_text(json.dumps(document, indent=2), encoding="utf-8")
    return path


def git(cwd: Path, *args: str) -> str:
    return subprocess.run(
        ["git", *args], cwd=cwd, check=True, capture_output=True, text=True
    ).stdout.strip()


@pytest.fixture
def project(tmp_path) -> Path:
    directory = tmp_path / "project"
    directory.mkdir()
    return directory


@pytest.fixture
async def repo(project) -> GitRepository:
    """Initialised repository with one commit and the engine dirs excluded."""
    repository = GitRepository(str(project))
    await repository.ensure_initialized()
    await repository.exclude_paths([".taskweave-worktrees", ".taskweave-logs"])
    await repository.ensure_initial_commit()
    return repository


@pytest.fixture
def agent_command():
    return [sys.executable, str(FAKE_AGENT)]
