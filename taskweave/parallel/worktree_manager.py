"""
Worktree Manager
================

Manages git worktrees for isolated parallel task execution.
Each work item in a batch gets its own worktree on its own branch.

Key Features:
- Deterministic worktree path and branch name per item, unique per id
- Replaces stale worktrees left behind by an interrupted run
- Merges worktree branches back with optional side preference
- Reports conflicted files instead of raising on conflict
- Sweeps orphaned worktrees and branches
"""

from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import List, Optional
import hashlib
import logging
import re
import shutil

from taskweave.git_repository import GitCommandError, GitRepository
from taskweave.task_store import ConflictStrategy

logger = logging.getLogger(__name__)


@dataclass
class WorktreeInfo:
    """
    Information about a worktree.

    Attributes:
        path: Filesystem path to worktree
        branch: Git branch name
        item_id: Work item this worktree belongs to
        created_at: When worktree was created
    """
    path: str
    branch: str
    item_id: str
    created_at: datetime


@dataclass
class MergeResult:
    """Outcome of merging a worktree branch into the base branch."""
    success: bool
    item_id: str
    branch: str
    conflict_files: Optional[List[str]] = None
    error: Optional[str] = None


class WorktreeManager:
    """
    Manages git worktrees for parallel execution isolation.

    Creates one worktree per work item so several agents can edit the
    project at once without touching the main working tree.
    """

    def __init__(
        self,
        repo: GitRepository,
        worktree_dir: str = ".taskweave-worktrees",
        branch_prefix: str = "taskweave/"
    ):
        """
        Initialize worktree manager.

        Args:
            repo: Repository wrapper for the main working tree
            worktree_dir: Directory for worktrees (relative to project root)
            branch_prefix: Prefix marking branches owned by this manager
        """
        self.repo = repo
        self.project_path = repo.project_path
        self.worktree_dir = worktree_dir
        self.branch_prefix = branch_prefix

    def branch_name(self, item_id: str) -> str:
        return f"{self.branch_prefix}{self._sanitize_branch_name(item_id)}"

    def worktree_path(self, item_id: str) -> Path:
        return self.project_path / self.worktree_dir / self._sanitize_branch_name(item_id)

    async def create_worktree(self, item_id: str, base_branch: str) -> WorktreeInfo:
        """
        Create a fresh worktree for a work item.

        Any worktree or branch left over under the same name is removed first.

        Args:
            item_id: Work item id
            base_branch: Branch to start the worktree from

        Returns:
            WorktreeInfo for created worktree

        Raises:
            GitCommandError: If worktree creation fails
        """
        branch_name = self.branch_name(item_id)
        worktree_path = self.worktree_path(item_id)
        logger.info(f"Creating worktree for {item_id} at {worktree_path} ({branch_name})")

        if worktree_path.exists():
            logger.warning(f"Stale worktree found for {item_id}, removing")
            await self.cleanup_worktree(item_id)

        await self.repo.run(["worktree", "prune"], timeout=30, check=False)
        await self.repo.run(["branch", "-D", branch_name], timeout=30, check=False)

        worktree_path.parent.mkdir(parents=True, exist_ok=True)
        try:
            await self.repo.run(
                ["worktree", "add", "-b", branch_name, str(worktree_path), base_branch],
                timeout=60
            )
        except GitCommandError as e:
            logger.error(f"Failed to create worktree for {item_id}: {e}")
            if worktree_path.exists():
                shutil.rmtree(worktree_path, ignore_errors=True)
            raise

        return WorktreeInfo(
            path=str(worktree_path),
            branch=branch_name,
            item_id=item_id,
            created_at=datetime.now()
        )

    async def merge_worktree(
        self,
        item_id: str,
        target_branch: str,
        strategy: Optional[ConflictStrategy] = None
    ) -> MergeResult:
        """
        Merge a worktree branch into the target branch of the main tree.

        A conflicted merge is left in progress so the caller can resolve
        or abort it.

        Args:
            item_id: Work item id
            target_branch: Branch to merge into
            strategy: PREFER_INCOMING / PREFER_BASE add a -X side preference

        Returns:
            MergeResult; on failure conflict_files lists unmerged paths
        """
        branch_name = self.branch_name(item_id)
        logger.info(f"Merging {branch_name} into {target_branch}")

        try:
            current = await self.repo.current_branch()
        except GitCommandError:
            current = None
        if current != target_branch:
            try:
                await self.repo.run(["checkout", target_branch], timeout=30)
            except GitCommandError as e:
                return MergeResult(False, item_id, branch_name, [], str(e))

        args = ["merge", branch_name, "--no-ff", "-m", f"Merge {branch_name}"]
        if strategy == ConflictStrategy.PREFER_INCOMING:
            args += ["-X", "theirs"]
        elif strategy == ConflictStrategy.PREFER_BASE:
            args += ["-X", "ours"]

        result = await self.repo.run(args, timeout=120, check=False)

        if result.ok:
            logger.info(f"Merged {branch_name}")
            return MergeResult(True, item_id, branch_name)

        conflict_files = await self.repo.conflicted_files()
        error = result.stderr or result.stdout
        logger.warning(f"Merge of {branch_name} failed; conflicted files: {conflict_files}")
        return MergeResult(False, item_id, branch_name, conflict_files, error)

    async def abort_merge(self) -> None:
        result = await self.repo.run(["merge", "--abort"], timeout=30, check=False)
        if result.ok:
            logger.info("Merge aborted")
        else:
            logger.debug(f"No merge to abort: {result.stderr}")

    async def cleanup_worktree(self, item_id: str) -> None:
        """
        Remove a worktree and delete its branch.

        Falls back to deleting the directory when git cannot remove it.
        """
        worktree_path = self.worktree_path(item_id)
        branch_name = self.branch_name(item_id)
        logger.info(f"Cleaning up worktree for {item_id}")

        if worktree_path.exists():
            result = await self.repo.run(
                ["worktree", "remove", "--force", str(worktree_path)],
                timeout=60,
                check=False
            )
            if not result.ok:
                logger.warning(f"Git worktree remove failed: {result.stderr}")
            if worktree_path.exists():
                shutil.rmtree(worktree_path, ignore_errors=True)
                await self.repo.run(["worktree", "prune"], timeout=30, check=False)

        result = await self.repo.run(["branch", "-D", branch_name], timeout=30, check=False)
        if not result.ok:
            logger.debug(f"Branch {branch_name} not deleted: {result.stderr}")

    async def detect_orphaned_worktrees(self) -> List[str]:
        """
        Find worktrees on prefixed branches.

        Returns:
            Branch names of orphaned worktrees
        """
        result = await self.repo.run(["worktree", "list", "--porcelain"], timeout=30)
        marker = f"branch refs/heads/{self.branch_prefix}"
        orphans = []
        for line in result.stdout.splitlines():
            if line.startswith(marker):
                orphans.append(line[len("branch refs/heads/"):])
        if orphans:
            logger.warning(f"Found orphaned worktrees: {orphans}")
        return orphans

    async def cleanup_all(self) -> List[str]:
        """
        Remove every prefixed branch and the worktree directory.

        Returns:
            Branch names that were deleted
        """
        worktree_root = self.project_path / self.worktree_dir
        if worktree_root.exists():
            for child in worktree_root.iterdir():
                if child.is_dir():
                    await self.repo.run(
                        ["worktree", "remove", "--force", str(child)], timeout=60, check=False
                    )
            shutil.rmtree(worktree_root, ignore_errors=True)

        await self.repo.run(["worktree", "prune"], timeout=30, check=False)

        result = await self.repo.run(
            ["branch", "--list", f"{self.branch_prefix}*", "--format=%(refname:short)"],
            timeout=30,
            check=False
        )
        deleted = []
        for line in result.stdout.splitlines():
            branch = line.strip()
            if not branch:
                continue
            delete = await self.repo.run(["branch", "-D", branch], timeout=30, check=False)
            if delete.ok:
                deleted.append(branch)
            else:
                logger.warning(f"Could not delete branch {branch}: {delete.stderr}")

        if deleted:
            logger.info(f"Removed workspace branches: {deleted}")
        return deleted

    def _sanitize_branch_name(self, name: str) -> str:
        """
        Turn a work item id into a valid branch and directory name.

        Case is preserved. When cleaning changes the id, a short hash of the
        raw id is appended so ids that clean to the same text stay apart.
        """
        branch = re.sub(r"\s+", "-", name.strip())
        branch = re.sub(r"[^A-Za-z0-9\-._]", "-", branch)
        branch = re.sub(r"\.{2,}", ".", branch)
        branch = re.sub(r"-+", "-", branch)
        branch = branch.strip("-.")
        if branch.endswith(".lock"):
            branch = branch[:-len(".lock")] + "-lock"

        reserved_names = ["con", "prn", "aux", "nul"]
        reserved_names += [f"com{i}" for i in range(1, 10)]
        reserved_names += [f"lpt{i}" for i in range(1, 10)]
        if branch.lower() in reserved_names:
            branch = f"item-{branch}"

        if not branch:
            branch = "item"
        if branch != name:
            digest = hashlib.sha1(name.encode("utf-8")).hexdigest()[:8]
            branch = f"{branch}-{digest}"
        return branch
