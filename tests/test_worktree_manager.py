"""
Test WorktreeManager implementation
"""

import hashlib
import sys
from pathlib import Path

import pytest

# Add project root to path
sys.path.insert(0, str(Path(__file__).parent.parent))

from conftest import git
from taskweave.git_repository import GitCommandError
from taskweave.parallel.worktree_manager import MergeResult, WorktreeManager
from taskweave.task_store import ConflictStrategy


@pytest.fixture
def manager(repo) -> WorktreeManager:
    return WorktreeManager(repo)


async def make_branch_change(manager, project, item_id, base, name, text):
    info = await manager.create_worktree(item_id, base)
    worktree = Path(info.path)
    (worktree / name).write_text(text)
    git(worktree, "add", "-A")
    git(worktree, "commit", "-m", f"{item_id} work")
    return info


def suffix(item_id: str) -> str:
    return hashlib.sha1(item_id.encode("utf-8")).hexdigest()[:8]


class TestNaming:

    def test_valid_ids_used_as_is(self, manager):
        assert manager.branch_name("1.2") == "taskweave/1.2"
        assert manager.branch_name("Add-Login_Form") == "taskweave/Add-Login_Form"

    def test_sanitize_branch_names(self, manager):
        cases = {
            "Add Login Form": "Add-Login-Form",
            "a..b": "a.b",
            "x:y?z": "x-y-z",
            "feature.lock": "feature-lock",
            "CON": "item-CON",
            "///": "item",
        }
        for item_id, cleaned in cases.items():
            assert manager.branch_name(item_id) == f"taskweave/{cleaned}-{suffix(item_id)}"

    def test_ids_that_clean_alike_stay_distinct(self, manager):
        assert manager.branch_name("a b") != manager.branch_name("a/b")
        assert manager.worktree_path("a b") != manager.worktree_path("a/b")
        assert manager.branch_name("a b") != manager.branch_name("a-b")
        # Stable across calls
        assert manager.branch_name("a b") == manager.branch_name("a b")

    def test_worktree_path(self, manager, project):
        assert manager.worktree_path("1.2") == project.resolve() / ".taskweave-worktrees" / "1.2"

    async def test_colliding_ids_get_separate_worktrees(self, manager, repo):
        base = await repo.current_branch()
        first = await manager.create_worktree("a b", base)
        second = await manager.create_worktree("a/b", base)

        assert first.path != second.path
        assert Path(first.path).is_dir()
        assert Path(second.path).is_dir()
        assert git(Path(first.path), "symbolic-ref", "--short", "HEAD") == first.branch
        assert git(Path(second.path), "symbolic-ref", "--short", "HEAD") == second.branch


class TestCreate:

    async def test_create_worktree(self, manager, repo, project):
        base = await repo.current_branch()
        info = await manager.create_worktree("a", base)

        assert info.branch == "taskweave/a"
        assert Path(info.path).is_dir()
        assert git(Path(info.path), "symbolic-ref", "--short", "HEAD") == "taskweave/a"

    async def test_recreate_replaces_stale_worktree(self, manager, repo, project):
        base = await repo.current_branch()
        stale = await make_branch_change(manager, project, "a", base, "stale.txt", "old")

        fresh = await WorktreeManager(repo).create_worktree("a", base)

        assert fresh.path == stale.path
        assert not (Path(fresh.path) / "stale.txt").exists()

    async def test_unknown_base_raises(self, manager):
        with pytest.raises(GitCommandError):
            await manager.create_worktree("a", "no-such-branch")
        assert not manager.worktree_path("a").exists()


class TestMerge:

    async def test_merge_success(self, manager, repo, project):
        base = await repo.current_branch()
        await make_branch_change(manager, project, "a", base, "a.txt", "from a\n")

        result = await manager.merge_worktree("a", base)

        assert isinstance(result, MergeResult)
        assert result.success
        assert (project / "a.txt").read_text() == "from a\n"

    async def test_conflict_reports_files_and_aborts_cleanly(self, manager, repo, project):
        base = await repo.current_branch()
        await make_branch_change(manager, project, "a", base, "shared.txt", "from a\n")
        await make_branch_change(manager, project, "b", base, "shared.txt", "from b\n")
        assert (await manager.merge_worktree("a", base)).success

        result = await manager.merge_worktree("b", base)

        assert not result.success
        assert result.conflict_files == ["shared.txt"]

        await manager.abort_merge()
        assert not await repo.has_uncommitted_changes()
        assert (project / "shared.txt").read_text() == "from a\n"

    async def test_prefer_incoming_takes_branch_side(self, manager, repo, project):
        base = await repo.current_branch()
        (project / "shared.txt").write_text("base\n")
        git(project, "add", "shared.txt")
        git(project, "commit", "-m", "base")
        await make_branch_change(manager, project, "a", base, "shared.txt", "from a\n")
        await make_branch_change(manager, project, "b", base, "shared.txt", "from b\n")
        assert (await manager.merge_worktree("a", base)).success

        result = await manager.merge_worktree("b", base, ConflictStrategy.PREFER_INCOMING)

        assert result.success
        assert (project / "shared.txt").read_text() == "from b\n"

    async def test_prefer_base_keeps_target_side(self, manager, repo, project):
        base = await repo.current_branch()
        (project / "shared.txt").write_text("base\n")
        git(project, "add", "shared.txt")
        git(project, "commit", "-m", "base")
        await make_branch_change(manager, project, "a", base, "shared.txt", "from a\n")
        await make_branch_change(manager, project, "b", base, "shared.txt", "from b\n")
        assert (await manager.merge_worktree("a", base)).success

        result = await manager.merge_worktree("b", base, ConflictStrategy.PREFER_BASE)

        assert result.success
        assert (project / "shared.txt").read_text() == "from a\n"


class TestCleanup:

    async def test_cleanup_worktree(self, manager, repo, project):
        base = await repo.current_branch()
        info = await manager.create_worktree("a", base)

        await manager.cleanup_worktree("a")

        assert not Path(info.path).exists()
        assert git(project, "branch", "--list", "taskweave/*") == ""

    async def test_orphans_detected_and_swept(self, manager, repo, project):
        base = await repo.current_branch()
        await manager.create_worktree("a", base)
        await manager.create_worktree("b", base)

        # A fresh manager knows nothing about the earlier run
        other = WorktreeManager(repo)
        assert sorted(await other.detect_orphaned_worktrees()) == ["taskweave/a", "taskweave/b"]

        deleted = await other.cleanup_all()

        assert sorted(deleted) == ["taskweave/a", "taskweave/b"]
        assert not (project / ".taskweave-worktrees").exists()
        assert await other.detect_orphaned_worktrees() == []
        assert git(project, "worktree", "list").count("\n") == 0

    async def test_cleanup_all_without_worktrees(self, manager):
        assert await manager.cleanup_all() == []
