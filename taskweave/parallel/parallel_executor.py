"""
Parallel Executor
=================

Orchestrates execution of the task file across isolated git worktrees.

Each round recomputes the ready set. A lone ready item runs directly in
the main working tree; several ready items are packed into a batch with
no overlapping declared files, run concurrently in their own worktrees,
merged back one at a time in store order, and then marked done under a
single lock.

Key Features:
- Refuses to start on a dependency cycle or an unusable repository
- Sweeps orphaned worktrees from interrupted runs
- Caps batch size at the configured concurrency
- Live progress table while a batch runs
- Conflict handling by strategy (agent, abort, side preference)
- Cancellation kills agents and always tears worktrees down
"""

from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Dict, List, Optional, Sequence, Union
import asyncio
import logging
import os
import time

from rich.console import Console
from rich.live import Live
from rich.markup import escape

from taskweave.config import Config
from taskweave.git_repository import GitCommandError, GitRepository
from taskweave.parallel.agent_runner import AgentRunner
from taskweave.parallel.conflict_resolver import ConflictResolver
from taskweave.parallel.dependency_resolver import DependencyResolver
from taskweave.parallel.progress_tracker import TaskProgressStatus, TaskProgressTracker
from taskweave.parallel.worktree_manager import WorktreeManager
from taskweave.session_log import log_task_end, log_task_start
from taskweave.task_runner import EXIT_SUCCESS as DIRECT_SUCCESS, TaskRunner
from taskweave.task_store import ConflictStrategy, TaskStore, TaskStoreError

logger = logging.getLogger(__name__)

EXIT_SUCCESS = 0
EXIT_FAILURE = 1
EXIT_PRECONDITION_FAILED = 2
EXIT_INTERRUPTED = 130


class PreconditionError(Exception):
    """Raised when the engine refuses to start."""
    pass


class EngineState(str, Enum):
    IDLE = "idle"
    PLANNING = "planning"
    DIRECT_RUN = "direct_run"
    BATCH_RUN = "batch_run"
    MERGING = "merging"
    PERSISTING = "persisting"
    DONE = "done"
    FAILED = "failed"


@dataclass
class ExecutionResult:
    """
    Result of running one item inside its worktree.

    Attributes:
        task_id: Work item id
        success: Whether the agent run (and workspace commit) succeeded
        duration: Execution time in seconds
        error: Error message if failed
        log_file: Transcript written for this run
    """
    task_id: str
    success: bool
    duration: float
    error: Optional[str] = None
    log_file: Optional[str] = None


@dataclass
class EngineResult:
    """
    Outcome of a full engine run.

    Attributes:
        exit_code: 0 success, 1 failure, 2 refused to start, 130 interrupted
        completed: Items completed during this run, in completion order
        failed: Items whose run or merge failed
        blocked: Pending items mapped to their unmet dependencies
        offending: Items involved in a dependency cycle
        error: Description of the failure, if any
    """
    exit_code: int = EXIT_SUCCESS
    completed: List[str] = field(default_factory=list)
    failed: List[str] = field(default_factory=list)
    blocked: Dict[str, List[str]] = field(default_factory=dict)
    offending: List[str] = field(default_factory=list)
    error: Optional[str] = None


class ParallelExecutor:
    """
    Runs every pending work item, in parallel batches where possible.

    Workflow per round:
    1. Compute the ready set
    2. Run a lone item directly, or a capped conflict-free batch in worktrees
    3. Merge successful worktrees serially into the base branch
    4. Persist completion under the store lock
    5. Destroy this round's worktrees
    """

    def __init__(
        self,
        store: TaskStore,
        repo: GitRepository,
        agent_runner: AgentRunner,
        worktree_manager: Optional[WorktreeManager] = None,
        resolver: Optional[DependencyResolver] = None,
        max_concurrency: Optional[int] = None,
        conflict_strategy: Optional[Union[ConflictStrategy, str]] = None,
        config: Optional[Config] = None,
        console: Optional[Console] = None,
        show_progress: bool = True
    ):
        """
        Initialize parallel executor.

        Args:
            store: Task store (the executor's single owned instance)
            repo: Repository wrapper for the main working tree
            agent_runner: Runner for the external agent
            worktree_manager: Defaults to one built from config
            resolver: Defaults to a new DependencyResolver
            max_concurrency: Overrides the task file's maxConcurrent
            conflict_strategy: Overrides the task file's conflictStrategy
            config: Runtime settings (defaults to Config())
            console: Console for progress and messages
            show_progress: Render the live progress table during batches
        """
        self.config = config or Config()
        self.store = store
        self.repo = repo
        self.agent_runner = agent_runner
        self.console = console or Console()
        self.show_progress = show_progress

        settings = store.parallel_settings
        self.max_concurrency = max(1, max_concurrency or settings.max_concurrent)
        self.conflict_strategy = (
            ConflictStrategy(conflict_strategy) if conflict_strategy else settings.conflict_strategy
        )

        self.worktree_manager = worktree_manager or WorktreeManager(
            repo,
            worktree_dir=self.config.worktree_dir,
            branch_prefix=self.config.branch_prefix
        )
        self.resolver = resolver or DependencyResolver()
        self.task_runner = TaskRunner(store, agent_runner, repo, console=self.console)
        self.conflict_resolver = ConflictResolver(
            repo, self.worktree_manager, agent_runner, self.task_runner, console=self.console
        )
        self.tracker = TaskProgressTracker()

        log_dir = Path(self.config.log_dir)
        self.log_dir = log_dir if log_dir.is_absolute() else repo.project_path / log_dir

        self.cancel_event = asyncio.Event()
        self._persist_lock = asyncio.Lock()
        self._execute_task: Optional[asyncio.Task] = None
        self._failed_items: List[str] = []

        self.state = EngineState.IDLE
        self.current_batch: List[str] = []
        self.round_number = 0
        self.execution_start_time: Optional[float] = None

        logger.info(
            f"ParallelExecutor initialized (max_concurrency={self.max_concurrency}, "
            f"conflict_strategy={self.conflict_strategy.value})"
        )

    async def execute(self) -> EngineResult:
        """
        Run until every item is done, something fails, or items stay blocked.

        Returns:
            EngineResult with the exit code and per-item outcome
        """
        self._execute_task = asyncio.current_task()
        self.execution_start_time = time.time()
        self._failed_items = []
        result = EngineResult()

        try:
            base_branch = await self._check_preconditions(result)
            logger.info(f"Parallel execution starting on branch: {base_branch}")

            result.exit_code = await self._run_rounds(base_branch, result)
            if result.exit_code == EXIT_SUCCESS:
                await self.worktree_manager.cleanup_all()

        except PreconditionError as e:
            self.state = EngineState.FAILED
            result.exit_code = EXIT_PRECONDITION_FAILED
            result.error = str(e)
            logger.error(f"Refusing to start: {e}")
            self.console.print(f"[red]Refusing to start: {escape(str(e))}[/red]")

        except asyncio.CancelledError:
            if not self.cancel_event.is_set():
                raise
            current = asyncio.current_task()
            if current is not None and hasattr(current, "uncancel"):
                current.uncancel()
            self.state = EngineState.FAILED
            result.exit_code = EXIT_INTERRUPTED
            result.error = "cancelled"
            logger.warning("Execution cancelled; task file keeps its last saved state")
            self.console.print("\n[yellow]Execution cancelled[/yellow]")

        except (GitCommandError, TaskStoreError, OSError) as e:
            self.state = EngineState.FAILED
            result.exit_code = EXIT_FAILURE
            result.error = str(e)
            logger.error(f"Parallel execution failed: {e}", exc_info=True)
            self.console.print(f"[red]Execution failed: {escape(str(e))}[/red]")

        finally:
            self.current_batch = []
            self._execute_task = None

        return result

    async def _check_preconditions(self, result: EngineResult) -> str:
        """
        Validate the graph and prepare the repository.

        Returns:
            Name of the base branch

        Raises:
            PreconditionError: On a cycle, an unwritable task file or git failure
        """
        has_cycle, offending = self.resolver.detect_cycle(self.store.items)
        if has_cycle:
            result.offending = offending
            self.console.print("[red]Circular dependency detected among:[/red]")
            self.console.print(f"  {escape(' -> '.join(offending))}")
            raise PreconditionError(f"Circular dependency among: {', '.join(offending)}")

        if not os.access(self.store.path, os.W_OK):
            raise PreconditionError(f"Task file is not writable: {self.store.path}")

        try:
            await self.repo.ensure_initialized()
            await self.repo.exclude_paths(self._engine_dirs())

            orphans = await self.worktree_manager.detect_orphaned_worktrees()
            if orphans:
                self.console.print(f"[yellow]Found {len(orphans)} leftover worktree(s), cleaning up...[/yellow]")
                await self.worktree_manager.cleanup_all()

            await self.repo.ensure_initial_commit()
            return await self.repo.current_branch()
        except GitCommandError as e:
            raise PreconditionError(str(e)) from e

    def _engine_dirs(self) -> List[str]:
        dirs = []
        for directory in (self.config.worktree_dir, self.config.log_dir):
            path = Path(directory)
            if not path.is_absolute():
                dirs.append(path.as_posix())
        return dirs

    async def _run_rounds(self, base_branch: str, result: EngineResult) -> int:
        while True:
            self.state = EngineState.PLANNING
            items = self.store.items
            ready = [i for i in self.resolver.ready(items) if i not in self._failed_items]

            if not ready:
                if not self.store.pending():
                    self.state = EngineState.DONE
                    self.console.print("\n[green]All tasks completed![/green]")
                    logger.info("All tasks completed")
                    return EXIT_SUCCESS

                self.state = EngineState.FAILED
                result.blocked = self.store.blocked_report()
                self.console.print("\n[red]Remaining tasks cannot run:[/red]")
                for task_id, deps in result.blocked.items():
                    if task_id in self._failed_items:
                        self.console.print(f"  {escape(task_id)}: failed")
                    else:
                        self.console.print(f"  {escape(task_id)}: depends on {escape(', '.join(deps))}")
                logger.warning("Execution stopped: remaining tasks are blocked")
                return EXIT_FAILURE

            if len(ready) == 1:
                batch = ready
            else:
                batch = self.resolver.conflict_free_batches(items, ready)[0][:self.max_concurrency]

            self.round_number += 1
            if len(batch) == 1:
                self.state = EngineState.DIRECT_RUN
                self.current_batch = list(batch)
                self.console.print(f"\n[blue]Running task: {escape(batch[0])}[/blue]")
                code = await self.task_runner.run_task(batch[0])
                self.current_batch = []
                if code != DIRECT_SUCCESS:
                    self.state = EngineState.FAILED
                    result.failed.append(batch[0])
                    return EXIT_FAILURE
                result.completed.append(batch[0])
            else:
                self.console.print(f"\n[green]Running {len(batch)} tasks in parallel:[/green]")
                for task_id in batch:
                    self.console.print(f"  [cyan]->[/cyan] {escape(task_id)}")
                if not await self.run_parallel_batch(batch, base_branch, result):
                    self.state = EngineState.FAILED
                    return EXIT_FAILURE

    async def run_parallel_batch(
        self,
        task_ids: Sequence[str],
        base_branch: str,
        result: Optional[EngineResult] = None
    ) -> bool:
        """
        Run a batch in worktrees, merge the survivors and persist them.

        Args:
            task_ids: Batch members in store order
            base_branch: Branch worktrees start from and merge into
            result: Accumulates completed and failed ids

        Returns:
            False if every member failed or a conflict stayed unresolved
        """
        if result is None:
            result = EngineResult()
        self.state = EngineState.BATCH_RUN
        self.current_batch = list(task_ids)
        self.tracker = TaskProgressTracker()
        self.log_dir.mkdir(parents=True, exist_ok=True)
        created: List[str] = []

        try:
            self.console.print("\n[blue]Creating worktrees...[/blue]")
            for task_id in task_ids:
                info = await self.worktree_manager.create_worktree(task_id, base_branch)
                created.append(task_id)
                item = self.store.require(task_id)
                self.tracker.register(task_id, item.title, str(self._log_file(task_id)))
                self.console.print(f"  [dim]-> {escape(task_id)}: {escape(info.path)}[/dim]")

            results = await self._run_batch_with_progress(task_ids)

            failed = [r.task_id for r in results if not r.success]
            if failed:
                self.console.print(f"\n[red]{len(failed)} task(s) failed:[/red]")
                for task_id in failed:
                    self.console.print(f"  [red]x[/red] {escape(task_id)}")
                    await self.worktree_manager.cleanup_worktree(task_id)
                result.failed.extend(failed)
                self._failed_items.extend(failed)

            survivors = [t for t in task_ids if t not in failed]
            if not survivors:
                return False

            merged = await self._merge_survivors(survivors, base_branch, result)
            if merged:
                await self._persist_completed(merged)
                result.completed.extend(merged)
                for task_id in merged:
                    item = self.store.require(task_id)
                    self.console.print(f"[green]Task completed: {escape(item.title)}[/green]")
                    log_task_end(logger, task_id, "completed")

            return len(merged) == len(survivors)

        finally:
            self.console.print("\n[dim]Cleaning up worktrees...[/dim]")
            for task_id in created:
                if self.worktree_manager.worktree_path(task_id).exists():
                    await self.worktree_manager.cleanup_worktree(task_id)
            self.current_batch = []

    async def _merge_survivors(
        self,
        survivors: List[str],
        base_branch: str,
        result: EngineResult
    ) -> List[str]:
        """Merge in order; stops at the first unresolved conflict."""
        self.state = EngineState.MERGING
        self.console.print("\n[blue]Merging into base branch...[/blue]")

        biased = self.conflict_strategy in (ConflictStrategy.PREFER_INCOMING, ConflictStrategy.PREFER_BASE)
        merged = []
        for task_id in survivors:
            self.tracker.update_status(task_id, TaskProgressStatus.MERGING)
            merge = await self.worktree_manager.merge_worktree(
                task_id, base_branch, self.conflict_strategy if biased else None
            )
            if merge.success:
                self.console.print(f"  [green]+[/green] {escape(task_id)} merged")
                merged.append(task_id)
                continue

            self.console.print(f"  [red]x[/red] {escape(task_id)} merge conflict")
            resolved = await self.conflict_resolver.resolve(
                task_id, base_branch, merge, self.conflict_strategy
            )
            if not resolved:
                logger.error(f"Merge conflict unresolved for {task_id}")
                result.failed.append(task_id)
                break
            merged.append(task_id)

        return merged

    async def _persist_completed(self, task_ids: List[str]) -> None:
        async with self._persist_lock:
            self.state = EngineState.PERSISTING
            self.store.reload()
            for task_id in task_ids:
                self.store.mark_all_subitems_done(task_id)
                self.store.mark_done(task_id)
            self.store.save()
            logger.info(f"Persisted completion of {task_ids}")

    async def _run_batch_with_progress(self, task_ids: Sequence[str]) -> List[ExecutionResult]:
        runs = asyncio.gather(*(self._run_in_worktree(task_id) for task_id in task_ids))
        if not self.show_progress:
            return list(await runs)

        with Live(self.tracker.build_table(), console=self.console, auto_refresh=False) as live:
            refresh = asyncio.create_task(self._refresh_progress(live))
            try:
                results = await runs
            finally:
                refresh.cancel()
                try:
                    await refresh
                except asyncio.CancelledError:
                    pass
            self.tracker.refresh_all_output_sizes()
            live.update(self.tracker.build_table(), refresh=True)
        return list(results)

    async def _refresh_progress(self, live: Live) -> None:
        while True:
            await asyncio.sleep(self.config.refresh_interval)
            self.tracker.refresh_all_output_sizes()
            live.update(self.tracker.build_table(), refresh=True)

    def _log_file(self, task_id: str) -> Path:
        return self.log_dir / f"{self.worktree_manager.worktree_path(task_id).name}.log"

    async def _run_in_worktree(self, task_id: str) -> ExecutionResult:
        """
        Run one batch member in its worktree, writing its own transcript.

        The worktree is committed silently on success so the branch can be
        merged.
        """
        item = self.store.require(task_id)
        worktree_path = self.worktree_manager.worktree_path(task_id)
        log_file = self._log_file(task_id)
        started = time.time()

        log_task_start(logger, task_id, item.title)
        self.tracker.update_status(task_id, TaskProgressStatus.RUNNING)

        try:
            with open(log_file, "w", encoding="utf-8") as log:
                log.write(f"=== Task: {task_id} - {item.title} ===\n")
                log.write(f"=== Started: {time.strftime('%Y-%m-%d %H:%M:%S')} ===\n\n")
                log.flush()

                if item.prompt:
                    agent_result = await self.agent_runner.execute_with_retry(
                        self.task_runner.build_prompt(item),
                        working_directory=worktree_path,
                        output=log
                    )
                    if not agent_result.success:
                        log.write(f"\n=== FAILED (exit code: {agent_result.exit_code}) ===\n")
                        self.tracker.update_status(task_id, TaskProgressStatus.FAILED)
                        log_task_end(logger, task_id, "failed")
                        return ExecutionResult(
                            task_id=task_id,
                            success=False,
                            duration=time.time() - started,
                            error=f"agent exited with {agent_result.exit_code}",
                            log_file=str(log_file)
                        )

                await self.repo.commit_changes(
                    task_id, item.title, self.store.commit_template,
                    cwd=worktree_path, silent=True
                )
                log.write(f"\n=== Completed: {time.strftime('%Y-%m-%d %H:%M:%S')} ===\n")

        except (GitCommandError, OSError) as e:
            self.tracker.update_status(task_id, TaskProgressStatus.FAILED)
            logger.error(f"Task {task_id} failed in worktree: {e}")
            return ExecutionResult(
                task_id=task_id,
                success=False,
                duration=time.time() - started,
                error=str(e),
                log_file=str(log_file)
            )

        self.tracker.update_status(task_id, TaskProgressStatus.COMPLETED)
        log_task_end(logger, task_id, "completed-in-worktree")
        return ExecutionResult(
            task_id=task_id,
            success=True,
            duration=time.time() - started,
            log_file=str(log_file)
        )

    def cancel(self) -> None:
        """
        Stop the run.

        Cancels the running execute() task: agent processes are killed,
        worktrees are removed, and the task file keeps its last saved state.
        """
        logger.info("Cancellation requested")
        self.cancel_event.set()
        if self._execute_task is not None and not self._execute_task.done():
            self._execute_task.cancel()

    def get_status(self) -> dict:
        """
        Get current execution status.

        Returns:
            Dict with state, round, current batch, running items and duration
        """
        total_duration = 0.0
        if self.execution_start_time is not None:
            total_duration = time.time() - self.execution_start_time

        running = [
            {"task_id": e.task_id, "title": e.title, "duration": e.elapsed}
            for e in self.tracker.snapshot()
            if e.status == TaskProgressStatus.RUNNING
        ]
        return {
            "state": self.state.value,
            "round": self.round_number,
            "current_batch": list(self.current_batch),
            "running_tasks": running,
            "active_task_count": len(running),
            "total_duration": total_duration
        }
