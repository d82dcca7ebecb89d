"""
Task Runner
===========

Runs single work items directly against the main working tree, and the
plain sequential loop used when parallel execution is disabled.

Key Features:
- Dependency check before running (exit code 2 when blocked)
- Agent run with retry, sub-items and item marked done, atomic save
- Optional auto-commit after completion
- Dry-run mode that never calls the agent and restores the task file
"""

from contextlib import contextmanager
from typing import Iterator, Optional
import logging

from rich.console import Console
from rich.markup import escape
from rich.panel import Panel
from rich.rule import Rule

from taskweave.git_repository import GitCommandError, GitRepository
from taskweave.session_log import log_task_end, log_task_start
from taskweave.task_store import TaskStore, WorkItem

logger = logging.getLogger(__name__)

EXIT_SUCCESS = 0
EXIT_FAILURE = 1
EXIT_BLOCKED = 2


class TaskRunner:
    """
    Direct (non-isolated) execution of work items.

    Used for lone ready items by the parallel executor and for the whole
    run when parallel execution is off.
    """

    def __init__(
        self,
        store: TaskStore,
        agent_runner,
        repo: Optional[GitRepository] = None,
        tasks_file_name: Optional[str] = None,
        console: Optional[Console] = None
    ):
        self.store = store
        self.agent_runner = agent_runner
        self.repo = repo
        self.tasks_file_name = tasks_file_name or store.path.name
        self.console = console or Console()

    @property
    def working_directory(self):
        if self.repo is not None:
            return self.repo.project_path
        return self.store.path.parent.resolve()

    def build_prompt(self, item: WorkItem) -> str:
        return (
            f"Task ID: {item.id}\n"
            f"Task: {item.title}\n"
            "\n"
            f"{item.prompt or ''}\n"
            "\n"
            f"Note: see {self.tasks_file_name} for additional project context.\n"
            "When finished, list the files you created or modified.\n"
        )

    def display_task(self, item: WorkItem) -> None:
        index = self.store.index_of(item.id)
        total = len(self.store.items)
        self.console.print()
        self.console.print(Rule(style="blue"))
        self.console.print(f"[yellow]\\[{index}/{total}][/yellow] [green]Task ID:[/green] {escape(item.id)}")
        self.console.print(f"[green]Title:[/green] {escape(item.title)}")
        if item.phase:
            self.console.print(f"[green]Phase:[/green] {escape(item.phase)}")
        if item.dependencies:
            self.console.print(f"[green]Depends on:[/green] {escape(', '.join(item.dependencies))}")
        self.console.print(Rule(style="blue"))

    async def run_task(self, task_id: str, dry_run: bool = False, commit: Optional[bool] = None) -> int:
        """
        Run one work item in the main working tree.

        Args:
            task_id: Work item id
            dry_run: Skip the agent and commit, still mark done and save
            commit: Override the task file's commitChanges setting

        Returns:
            0 on success, 1 if the agent failed, 2 if dependencies are unmet

        Raises:
            TaskNotFoundError: If task_id does not exist
        """
        item = self.store.require(task_id)

        ok, blocked_by = self.store.check_dependencies(task_id)
        if not ok:
            self.console.print("[yellow]Skipping task due to unmet dependencies.[/yellow]")
            for dep in blocked_by:
                self.console.print(f"  [red]Blocked by:[/red] {escape(dep)}")
            logger.warning(f"Skipped {task_id}: blocked by {', '.join(blocked_by)}")
            return EXIT_BLOCKED

        log_task_start(logger, task_id, item.title)
        self.display_task(item)

        if item.prompt:
            self.console.print("[cyan]Prompt:[/cyan]")
            self.console.print(Panel(escape(item.prompt)))
            if dry_run:
                self.console.print("[cyan]\\[DRY-RUN] Would run the agent with the prompt above[/cyan]")
                logger.info("[DRY-RUN] Skipped agent execution")
            else:
                self.console.print("\n[cyan]Running agent...[/cyan]\n")
                result = await self.agent_runner.execute_with_retry(
                    self.build_prompt(item),
                    working_directory=self.working_directory,
                    output=self.console.file
                )
                if not result.success:
                    self.console.print("\n[red]Agent execution failed[/red]")
                    log_task_end(logger, task_id, "failed")
                    return EXIT_FAILURE
                self.console.print("\n[green]Agent execution completed[/green]")
        else:
            self.console.print("[yellow]No prompt defined for this task. Skipping agent execution.[/yellow]")
            logger.info(f"No prompt for task {task_id}")

        for sub_id in self.store.mark_all_subitems_done(task_id):
            self.console.print(f"  [green]Subtask completed:[/green] {escape(sub_id)}")

        self.store.mark_done(task_id)
        self.store.save()

        if dry_run:
            log_task_end(logger, task_id, "dry-run")
            return EXIT_SUCCESS

        self.console.print(f"[green]Task completed: {escape(item.title)}[/green]")
        log_task_end(logger, task_id, "completed")

        should_commit = self.store.commit_on_complete if commit is None else commit
        if should_commit and self.repo is not None:
            try:
                await self.repo.commit_changes(task_id, item.title, self.store.commit_template)
            except GitCommandError as e:
                logger.error(f"Auto-commit for {task_id} failed: {e}")
                self.console.print(f"[yellow]Auto-commit failed: {escape(str(e))}[/yellow]")

        return EXIT_SUCCESS

    @contextmanager
    def preserve_task_file(self) -> Iterator[None]:
        """Restore the task file's original bytes on exit."""
        backup = self.store.path.read_bytes()
        try:
            yield
        finally:
            self.store.path.write_bytes(backup)
            self.store.reload()
            logger.info("Restored task file after dry run")

    async def run_sequential(self, dry_run: bool = False) -> int:
        """
        Run every ready item one at a time until all are done.

        Returns:
            0 when everything is done, 1 on failure or when items stay blocked
        """
        if dry_run:
            self.console.print("[cyan]\\[DRY-RUN] No agent runs or commits; the task file will be restored[/cyan]")
            with self.preserve_task_file():
                return await self._run_loop(dry_run=True)
        return await self._run_loop(dry_run=False)

    async def _run_loop(self, dry_run: bool) -> int:
        while True:
            next_id = self.store.next_ready()
            if next_id is None:
                pending = self.store.pending()
                if not pending:
                    self.console.print("[green]All tasks completed![/green]")
                    return EXIT_SUCCESS

                self.console.print("[red]Remaining tasks are blocked by unmet dependencies:[/red]")
                for task_id, deps in self.store.blocked_report().items():
                    self.console.print(f"  {escape(task_id)}: depends on {escape(', '.join(deps))}")
                logger.error(f"Blocked tasks: {[t.id for t in pending]}")
                return EXIT_FAILURE

            code = await self.run_task(next_id, dry_run=dry_run)
            if code != EXIT_SUCCESS:
                return EXIT_FAILURE
