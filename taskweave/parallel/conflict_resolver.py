"""
Conflict Resolver
=================

Applies the configured conflict strategy when merging a workspace branch
back into the base branch fails.

Strategies:
- agent: ask the agent to reconcile the conflicted files in place, then
  stage them and complete the merge commit
- abort: abort the merge, drop the workspace and re-run the item directly
  against the updated base branch
- auto-theirs / auto-ours: the side preference was already passed to the
  merge, so a conflict here is unresolved
"""

from typing import Optional
import logging

from rich.console import Console
from rich.markup import escape

from taskweave.git_repository import GitCommandError, GitRepository
from taskweave.parallel.agent_runner import AgentRunner
from taskweave.parallel.worktree_manager import MergeResult, WorktreeManager
from taskweave.task_runner import EXIT_SUCCESS, TaskRunner
from taskweave.task_store import ConflictStrategy

logger = logging.getLogger(__name__)


def build_conflict_prompt(item_id: str, conflict_files) -> str:
    file_list = "\n".join(f"  - {path}" for path in conflict_files)
    return (
        "Resolve the following git merge conflict.\n"
        "\n"
        f"Task: {item_id}\n"
        "Conflicted files:\n"
        f"{file_list}\n"
        "\n"
        "Open each conflicted file, find the conflict markers "
        "(<<<<<<< HEAD, =======, >>>>>>> branch) and resolve them so that "
        "the changes from both sides are kept. Save the files when done.\n"
    )


class ConflictResolver:
    """
    Resolves a failed workspace merge according to a ConflictStrategy.
    """

    def __init__(
        self,
        repo: GitRepository,
        worktree_manager: WorktreeManager,
        agent_runner: AgentRunner,
        task_runner: TaskRunner,
        console: Optional[Console] = None
    ):
        self.repo = repo
        self.worktree_manager = worktree_manager
        self.agent_runner = agent_runner
        self.task_runner = task_runner
        self.console = console or Console()

    async def resolve(
        self,
        item_id: str,
        base_branch: str,
        merge_result: MergeResult,
        strategy: ConflictStrategy
    ) -> bool:
        """
        Resolve a failed merge.

        Args:
            item_id: Work item whose branch failed to merge
            base_branch: Branch being merged into
            merge_result: The failed merge
            strategy: Conflict strategy to apply

        Returns:
            True if the item's changes ended up on the base branch
        """
        files = merge_result.conflict_files or []
        logger.warning(f"Merge conflict for {item_id} ({strategy.value}): {files}")
        self.console.print(f"[red]Merge conflict: {escape(item_id)}[/red]")
        for path in files:
            self.console.print(f"  [red]-[/red] {escape(path)}")

        if strategy == ConflictStrategy.AGENT:
            return await self._resolve_with_agent(item_id, merge_result)

        if strategy == ConflictStrategy.ABORT:
            return await self._abort_and_rerun(item_id, base_branch)

        # Side preference was already applied by the merge
        await self.worktree_manager.abort_merge()
        self.console.print(
            f"[red]Conflict remains under {strategy.value}; "
            f"resolve {escape(item_id)} manually[/red]"
        )
        logger.error(f"Strategy {strategy.value} left conflicts for {item_id}")
        return False

    async def _resolve_with_agent(self, item_id: str, merge_result: MergeResult) -> bool:
        files = merge_result.conflict_files or []
        if not files:
            # Not a content conflict, nothing for the agent to fix
            await self.worktree_manager.abort_merge()
            logger.error(f"Merge of {item_id} failed without conflicted files: {merge_result.error}")
            return False

        self.console.print(f"[cyan]Resolving {len(files)} conflicted file(s) with the agent...[/cyan]")
        result = await self.agent_runner.execute_with_retry(
            build_conflict_prompt(item_id, files),
            working_directory=self.repo.project_path
        )
        if not result.success:
            logger.error(f"Agent could not resolve conflicts for {item_id}")
            await self.worktree_manager.abort_merge()
            return False

        try:
            await self.repo.stage(files)
            await self.repo.complete_merge()
        except GitCommandError as e:
            logger.error(f"Completing merge for {item_id} failed: {e}")
            await self.worktree_manager.abort_merge()
            return False

        self.console.print(f"[green]Conflict resolved: {escape(item_id)}[/green]")
        logger.info(f"Conflict resolved by agent for {item_id}")
        return True

    async def _abort_and_rerun(self, item_id: str, base_branch: str) -> bool:
        await self.worktree_manager.abort_merge()
        await self.worktree_manager.cleanup_worktree(item_id)

        self.console.print(f"[yellow]Re-running {escape(item_id)} directly on {escape(base_branch)}[/yellow]")
        logger.info(f"Re-running {item_id} sequentially after aborted merge")
        code = await self.task_runner.run_task(item_id, commit=True)
        return code == EXIT_SUCCESS
