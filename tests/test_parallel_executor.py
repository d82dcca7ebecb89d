"""
End-to-end tests for ParallelExecutor with real git repositories and the
fake agent.
"""

import asyncio
import json
import sys
from io import StringIO
from pathlib import Path
from unittest.mock import patch

from rich.console import Console

# Add project root to path
sys.path.insert(0, str(Path(__file__).parent.parent))

from conftest import git, write_tasks
from taskweave.config import Config
from taskweave.git_repository import GitRepository
from taskweave.parallel.agent_runner import AgentRunner
from taskweave.parallel.parallel_executor import (
    EXIT_FAILURE,
    EXIT_INTERRUPTED,
    EXIT_PRECONDITION_FAILED,
    EXIT_SUCCESS,
    ParallelExecutor,
)
from taskweave.parallel.worktree_manager import WorktreeManager
from taskweave.task_store import TaskStore


def make_executor(project, agent_command, tasks, show_progress=False, **kwargs):
    path = write_tasks(project / "tasks.json", tasks)
    store = TaskStore.load(path)
    repo = GitRepository(str(project))
    return ParallelExecutor(
        store,
        repo,
        AgentRunner(agent_command, max_retries=1, retry_delay=0),
        console=Console(file=StringIO(), width=120),
        show_progress=show_progress,
        **kwargs
    )


def done_map(executor):
    data = json.loads(executor.store.path.read_text(encoding="utf-8"))
    return {t["id"]: t.get("done", False) for t in data["tasks"]}


def task(item_id, prompt, deps=None, files=None):
    entry = {"id": item_id, "title": f"Task {item_id}", "prompt": prompt}
    if deps:
        entry["dependsOn"] = deps
    if files:
        entry["outputFiles"] = files
    return entry


class TestScheduling:

    async def test_batch_then_direct(self, repo, project, agent_command):
        """a and b run together in worktrees; c runs directly afterwards"""
        tasks = [
            task("a", "WRITE a.txt from a", files=["a.txt"]),
            task("b", "WRITE b.txt from b", files=["b.txt"]),
            task("c", "WRITE c.txt from c", deps=["a", "b"]),
        ]
        executor = make_executor(project, agent_command, tasks, show_progress=True)

        with patch.object(executor, "run_parallel_batch", wraps=executor.run_parallel_batch) as batch_spy, \
                patch.object(executor.task_runner, "run_task", wraps=executor.task_runner.run_task) as direct_spy:
            result = await executor.execute()

        assert result.exit_code == EXIT_SUCCESS
        assert result.completed == ["a", "b", "c"]
        assert batch_spy.await_count == 1
        assert list(batch_spy.await_args.args[0]) == ["a", "b"]
        assert [c.args[0] for c in direct_spy.await_args_list] == ["c"]

        assert done_map(executor) == {"a": True, "b": True, "c": True}
        for name in ("a", "b", "c"):
            assert (project / f"{name}.txt").read_text() == f"from {name}\n"

        log = git(project, "log", "--format=%s")
        assert "Merge taskweave/a" in log
        assert "Merge taskweave/b" in log
        assert "[Task #c] Task c" in log

        assert git(project, "branch", "--list", "taskweave/*") == ""
        assert not (project / ".taskweave-worktrees").exists()
        assert "=== Task: a" in (project / ".taskweave-logs" / "a.log").read_text()

    async def test_overlapping_files_run_directly(self, repo, project, agent_command):
        tasks = [
            task("x", "WRITE shared.txt from x", files=["shared.txt"]),
            task("y", "WRITE other.txt from y", files=["Shared.txt"]),
        ]
        executor = make_executor(project, agent_command, tasks)

        with patch.object(executor, "run_parallel_batch", wraps=executor.run_parallel_batch) as batch_spy, \
                patch.object(executor.task_runner, "run_task", wraps=executor.task_runner.run_task) as direct_spy:
            result = await executor.execute()

        assert result.exit_code == EXIT_SUCCESS
        batch_spy.assert_not_called()
        assert [c.args[0] for c in direct_spy.await_args_list] == ["x", "y"]
        assert done_map(executor) == {"x": True, "y": True}

    async def test_concurrency_of_one_never_batches(self, repo, project, agent_command):
        tasks = [task(i, f"WRITE {i}.txt {i}") for i in ("a", "b", "c")]
        executor = make_executor(project, agent_command, tasks, max_concurrency=1)

        with patch.object(executor, "run_parallel_batch", wraps=executor.run_parallel_batch) as batch_spy:
            result = await executor.execute()

        assert result.exit_code == EXIT_SUCCESS
        batch_spy.assert_not_called()
        assert result.completed == ["a", "b", "c"]

    async def test_batch_capped_at_max_concurrency(self, repo, project, agent_command):
        tasks = [task(i, f"WRITE {i}.txt {i}") for i in ("a", "b", "c", "d")]
        executor = make_executor(project, agent_command, tasks, max_concurrency=2)

        with patch.object(executor, "run_parallel_batch", wraps=executor.run_parallel_batch) as batch_spy:
            result = await executor.execute()

        assert result.exit_code == EXIT_SUCCESS
        assert [list(c.args[0]) for c in batch_spy.await_args_list] == [["a", "b"], ["c", "d"]]

    async def test_ids_that_clean_alike_get_own_workspaces(self, repo, project, agent_command):
        tasks = [
            task("a b", "WRITE first.txt from a b"),
            task("a/b", "WRITE second.txt from a/b"),
        ]
        executor = make_executor(project, agent_command, tasks)

        with patch.object(executor, "run_parallel_batch", wraps=executor.run_parallel_batch) as batch_spy:
            result = await executor.execute()

        assert result.exit_code == EXIT_SUCCESS
        assert list(batch_spy.await_args.args[0]) == ["a b", "a/b"]
        assert result.completed == ["a b", "a/b"]
        assert done_map(executor) == {"a b": True, "a/b": True}
        assert (project / "first.txt").read_text() == "from a b\n"
        assert (project / "second.txt").read_text() == "from a/b\n"

        merges = [s for s in git(project, "log", "--format=%s").splitlines() if s.startswith("Merge taskweave/")]
        assert len(set(merges)) == 2
        assert len(list((project / ".taskweave-logs").glob("*.log"))) == 2


class TestConflicts:

    async def test_abort_strategy_reruns_directly(self, repo, project, agent_command):
        tasks = [
            task("a", "WRITE conflict.txt from a"),
            task("b", "WRITE conflict.txt from b"),
        ]
        executor = make_executor(project, agent_command, tasks, conflict_strategy="abort")

        with patch.object(executor.task_runner, "run_task", wraps=executor.task_runner.run_task) as direct_spy:
            result = await executor.execute()

        assert result.exit_code == EXIT_SUCCESS
        assert [c.args[0] for c in direct_spy.await_args_list] == ["b"]
        assert (project / "conflict.txt").read_text() == "from b\n"
        assert done_map(executor) == {"a": True, "b": True}
        assert git(project, "diff", "--name-only", "--diff-filter=U") == ""

    async def test_agent_strategy_merges_both_sides(self, repo, project, agent_command):
        tasks = [
            task("a", "WRITE conflict.txt from a"),
            task("b", "WRITE conflict.txt from b"),
        ]
        executor = make_executor(project, agent_command, tasks, conflict_strategy="agent")

        result = await executor.execute()

        assert result.exit_code == EXIT_SUCCESS
        assert (project / "conflict.txt").read_text() == "from a\nfrom b\n"
        assert git(project, "diff", "--name-only", "--diff-filter=U") == ""
        assert done_map(executor) == {"a": True, "b": True}

    async def test_unresolved_conflict_keeps_earlier_merges(self, repo, project, agent_command):
        tasks = [
            task("a", "WRITE conflict.txt from a"),
            task("b", "WRITE conflict.txt from b"),
        ]
        executor = make_executor(project, agent_command, tasks, conflict_strategy="agent")
        # The conflict-resolving agent gives up
        executor.conflict_resolver.agent_runner = AgentRunner(
            [sys.executable, "-c", "import sys; sys.stdin.read(); sys.exit(3)"],
            max_retries=1,
            retry_delay=0
        )

        result = await executor.execute()

        assert result.exit_code == EXIT_FAILURE
        assert result.completed == ["a"]
        assert result.failed == ["b"]
        assert done_map(executor) == {"a": True, "b": False}
        assert (project / "conflict.txt").read_text() == "from a\n"
        assert git(project, "diff", "--name-only", "--diff-filter=U") == ""
        assert git(project, "branch", "--list", "taskweave/*") == ""

    async def test_biased_strategy_leftover_conflict_fails_round(self, repo, project, agent_command):
        (project / "shared.txt").write_text("base\n")
        git(project, "add", "shared.txt")
        git(project, "commit", "-m", "add shared")
        # -X theirs cannot settle a modify/delete conflict
        tasks = [
            task("a", "WRITE shared.txt from a"),
            task("b", "DELETE shared.txt"),
        ]
        executor = make_executor(project, agent_command, tasks, conflict_strategy="auto-theirs")

        with patch.object(executor.task_runner, "run_task", wraps=executor.task_runner.run_task) as direct_spy:
            result = await executor.execute()

        assert result.exit_code == EXIT_FAILURE
        assert result.completed == ["a"]
        assert result.failed == ["b"]
        direct_spy.assert_not_called()
        assert done_map(executor) == {"a": True, "b": False}
        assert (project / "shared.txt").read_text() == "from a\n"
        assert git(project, "diff", "--name-only", "--diff-filter=U") == ""
        assert git(project, "branch", "--list", "taskweave/*") == ""
        assert "Conflict remains under auto-theirs" in executor.console.file.getvalue()


class TestFailures:

    async def test_cycle_refuses_to_start(self, project, agent_command):
        tasks = [
            task("p", "x", deps=["r"]),
            task("q", "x", deps=["p"]),
            task("r", "x", deps=["q"]),
        ]
        executor = make_executor(project, agent_command, tasks)
        before = executor.store.path.read_bytes()

        result = await executor.execute()

        assert result.exit_code == EXIT_PRECONDITION_FAILED
        assert set(result.offending) == {"p", "q", "r"}
        assert executor.store.path.read_bytes() == before
        assert not (project / ".git").exists()

    async def test_blocked_items_fail(self, repo, project, agent_command):
        executor = make_executor(project, agent_command, [task("a", "x", deps=["ghost"])])

        result = await executor.execute()

        assert result.exit_code == EXIT_FAILURE
        assert result.blocked == {"a": ["ghost"]}

    async def test_all_failed_batch(self, repo, project, agent_command):
        tasks = [task("a", "FAIL"), task("b", "FAIL")]
        executor = make_executor(project, agent_command, tasks)
        before = executor.store.path.read_bytes()

        result = await executor.execute()

        assert result.exit_code == EXIT_FAILURE
        assert result.failed == ["a", "b"]
        assert executor.store.path.read_bytes() == before
        assert git(project, "branch", "--list", "taskweave/*") == ""

    async def test_failed_member_does_not_block_others(self, repo, project, agent_command):
        tasks = [
            task("a", "FAIL"),
            task("b", "WRITE b.txt from b"),
            task("c", "WRITE c.txt from c", deps=["b"]),
        ]
        executor = make_executor(project, agent_command, tasks)

        result = await executor.execute()

        assert result.exit_code == EXIT_FAILURE
        assert result.failed == ["a"]
        assert result.completed == ["b", "c"]
        assert done_map(executor) == {"a": False, "b": True, "c": True}
        assert "a.log" in [p.name for p in (project / ".taskweave-logs").iterdir()]


class TestLifecycle:

    async def test_orphaned_worktrees_swept_on_start(self, repo, project, agent_command):
        base = await repo.current_branch()
        await WorktreeManager(repo).create_worktree("leftover", base)

        executor = make_executor(project, agent_command, [task("a", "WRITE a.txt a")])
        result = await executor.execute()

        assert result.exit_code == EXIT_SUCCESS
        assert git(project, "branch", "--list", "taskweave/*") == ""
        assert "Found 1 leftover worktree" in executor.console.file.getvalue()

    async def test_cancel_leaves_store_untouched(self, repo, project, agent_command, monkeypatch):
        monkeypatch.setenv("FAKE_AGENT_SLEEP", "30")
        tasks = [task("a", "WRITE a.txt a"), task("b", "WRITE b.txt b")]
        executor = make_executor(project, agent_command, tasks)
        before = executor.store.path.read_bytes()

        run = asyncio.create_task(executor.execute())
        for _ in range(400):
            if executor.get_status()["active_task_count"] == 2:
                break
            await asyncio.sleep(0.05)
        assert executor.get_status()["state"] == "batch_run"

        executor.cancel()
        result = await asyncio.wait_for(run, timeout=20)

        assert result.exit_code == EXIT_INTERRUPTED
        assert executor.store.path.read_bytes() == before
        assert not (project / ".taskweave-worktrees" / "a").exists()
        assert git(project, "branch", "--list", "taskweave/*") == ""

    async def test_cancel_during_startup_exits_interrupted(self, repo, project, agent_command):
        executor = make_executor(project, agent_command, [task("a", "WRITE a.txt a")])
        before = executor.store.path.read_bytes()
        started = asyncio.Event()

        async def slow_initial_commit():
            started.set()
            await asyncio.sleep(30)

        with patch.object(executor.repo, "ensure_initial_commit", side_effect=slow_initial_commit):
            run = asyncio.create_task(executor.execute())
            await asyncio.wait_for(started.wait(), timeout=10)
            executor.cancel()
            result = await asyncio.wait_for(run, timeout=10)

        assert result.exit_code == EXIT_INTERRUPTED
        assert result.error == "cancelled"
        assert executor.store.path.read_bytes() == before
        assert not (project / "a.txt").exists()

    def test_status_before_run(self, project, agent_command):
        executor = make_executor(project, agent_command, [task("a", "x")])
        status = executor.get_status()
        assert status["state"] == "idle"
        assert status["round"] == 0
        assert status["current_batch"] == []
        assert status["active_task_count"] == 0

    def test_settings_from_task_file(self, project, agent_command):
        path = write_tasks(
            project / "tasks.json",
            [task("a", "x")],
            {"parallel": {"enabled": True, "maxConcurrent": 4, "conflictStrategy": "abort"}}
        )
        executor = ParallelExecutor(
            TaskStore.load(path),
            GitRepository(str(project)),
            AgentRunner(agent_command),
            config=Config(worktree_dir="wt"),
            console=Console(file=StringIO())
        )
        assert executor.max_concurrency == 4
        assert executor.conflict_strategy.value == "abort"
        assert executor.worktree_manager.worktree_path("a") == project.resolve() / "wt" / "a"
