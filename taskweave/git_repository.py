"""
Git Repository
==============

Thin async wrapper around the ``git`` executable for the main working tree.

Every command runs through ``asyncio.create_subprocess_exec`` with a
timeout; failures surface as ``GitCommandError`` unless the caller asks
for the raw result with ``check=False``.

Key Features:
- Repository bootstrap (init, first revision, local excludes)
- Safe auto-commit that never stages secrets
- Conflict inspection and merge completion helpers
"""

from dataclasses import dataclass
from fnmatch import fnmatch
from pathlib import Path
from typing import Iterable, List, Optional
import asyncio
import logging

from rich.console import Console

from taskweave.task_store import DEFAULT_COMMIT_TEMPLATE, format_commit_message

logger = logging.getLogger(__name__)


# Pathspecs unstaged after ``git add -A`` so credentials never reach history
SENSITIVE_PATTERNS = [
    ".env",
    ".env.*",
    "*.pem",
    "*.key",
    "*.p12",
    "*.pfx",
    "credentials.json",
    "service-account*.json",
    ".secret*",
    "*.secrets",
    "id_rsa",
    "id_ed25519",
]

SENSITIVE_EXTENSIONS = [".env", ".pem", ".key", ".p12", ".pfx", ".secrets"]


class GitCommandError(Exception):
    """Raised when a git command fails."""
    pass


@dataclass
class GitResult:
    """Outcome of a git invocation."""
    exit_code: int
    stdout: str
    stderr: str

    @property
    def ok(self) -> bool:
        return self.exit_code == 0


def is_sensitive_path(path: str) -> bool:
    """True if a path looks like it holds credentials."""
    name = Path(path).name
    if any(fnmatch(name, pattern) for pattern in SENSITIVE_PATTERNS):
        return True
    return any(name.lower().endswith(ext) for ext in SENSITIVE_EXTENSIONS)


class GitRepository:
    """
    Git operations against a project's main working tree.

    Worktree-specific operations live in ``WorktreeManager``; both share
    ``run`` so every subprocess is created the same way.
    """

    def __init__(self, project_path: str, console: Optional[Console] = None):
        self.project_path = Path(project_path).resolve()
        self.console = console

    async def run(
        self,
        args: List[str],
        cwd: Optional[Path] = None,
        timeout: int = 60,
        check: bool = True
    ) -> GitResult:
        """
        Run a git command asynchronously.

        Args:
            args: Git command arguments (e.g., ['status', '--short'])
            cwd: Working directory for command (defaults to project_path)
            timeout: Command timeout in seconds (default 60)
            check: Raise on a non-zero exit status

        Returns:
            GitResult with decoded, stripped output

        Raises:
            GitCommandError: If the command fails (with check), times out,
                or git is not installed
        """
        if cwd is None:
            cwd = self.project_path

        cmd = ["git"] + args
        logger.debug(f"Running git command: {' '.join(cmd)} in {cwd}")

        try:
            process = await asyncio.create_subprocess_exec(
                *cmd,
                cwd=str(cwd),
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE
            )
        except FileNotFoundError:
            raise GitCommandError("Git command not found. Is git installed?")
        except OSError as e:
            raise GitCommandError(f"Failed to run git command: {e}")

        try:
            stdout, stderr = await asyncio.wait_for(process.communicate(), timeout=timeout)
        except asyncio.TimeoutError:
            process.kill()
            await process.wait()
            raise GitCommandError(f"Git command timed out after {timeout}s: {' '.join(cmd)}")
        except asyncio.CancelledError:
            if process.returncode is None:
                process.kill()
                await process.wait()
            raise

        result = GitResult(
            exit_code=process.returncode,
            stdout=stdout.decode("utf-8", errors="replace").strip(),
            stderr=stderr.decode("utf-8", errors="replace").strip()
        )

        if check and not result.ok:
            detail = result.stderr or result.stdout
            raise GitCommandError(
                f"Git command failed (exit {result.exit_code}): {' '.join(cmd)}\n{detail}"
            )

        return result

    # ------------------------------------------------------------------
    # Repository bootstrap
    # ------------------------------------------------------------------

    async def is_initialized(self) -> bool:
        result = await self.run(["rev-parse", "--is-inside-work-tree"], timeout=10, check=False)
        return result.ok and result.stdout == "true"

    async def init(self) -> None:
        await self.run(["init"], timeout=30)
        logger.info(f"Initialized git repository at {self.project_path}")

    async def ensure_initialized(self) -> None:
        """Initialise a repository in the project directory if there is none."""
        if not await self.is_initialized():
            await self.init()

    async def has_revision(self) -> bool:
        result = await self.run(["rev-parse", "--verify", "HEAD"], timeout=10, check=False)
        return result.ok

    async def ensure_initial_commit(self) -> None:
        """
        Create an empty "Initial commit" when the repository has no revisions.

        Workspaces are branched from a revision, so at least one must exist.
        """
        if await self.has_revision():
            return
        await self.run(["commit", "--allow-empty", "-m", "Initial commit"], timeout=30)
        logger.info("Created initial commit")

    async def current_branch(self, cwd: Optional[Path] = None) -> str:
        """
        Get the current branch name.

        Raises:
            GitCommandError: If HEAD is detached
        """
        result = await self.run(["symbolic-ref", "--short", "HEAD"], cwd=cwd, timeout=10, check=False)
        if not result.ok or not result.stdout:
            raise GitCommandError("Not currently on a branch (detached HEAD)")
        return result.stdout

    async def exclude_paths(self, paths: Iterable[str]) -> List[str]:
        """
        Add entries to ``.git/info/exclude`` unless already present.

        Returns:
            Entries that were added
        """
        result = await self.run(["rev-parse", "--git-path", "info/exclude"], timeout=10)
        exclude_file = Path(result.stdout)
        if not exclude_file.is_absolute():
            exclude_file = self.project_path / exclude_file

        existing = []
        if exclude_file.exists():
            existing = exclude_file.read_text(encoding="utf-8").splitlines()

        added = []
        for path in paths:
            entry = "/" + path.strip("/") + "/"
            if entry not in existing and entry not in added:
                added.append(entry)

        if added:
            exclude_file.parent.mkdir(parents=True, exist_ok=True)
            prefix = "" if not existing or existing[-1] == "" else "\n"
            with open(exclude_file, "a", encoding="utf-8") as f:
                f.write(prefix + "\n".join(added) + "\n")
            logger.debug(f"Excluded {added} in {exclude_file}")
        return added

    # ------------------------------------------------------------------
    # Working tree state
    # ------------------------------------------------------------------

    async def stage(self, paths: Iterable[str], cwd: Optional[Path] = None) -> None:
        for path in paths:
            await self.run(["add", "--", path], cwd=cwd, timeout=30)

    async def conflicted_files(self, cwd: Optional[Path] = None) -> List[str]:
        result = await self.run(
            ["diff", "--name-only", "--diff-filter=U"], cwd=cwd, timeout=30, check=False
        )
        return [line.strip() for line in result.stdout.splitlines() if line.strip()]

    async def has_uncommitted_changes(self, cwd: Optional[Path] = None) -> bool:
        result = await self.run(["status", "--porcelain"], cwd=cwd, timeout=30)
        has_changes = len(result.stdout) > 0
        logger.debug(f"Uncommitted changes: {has_changes}")
        return has_changes

    async def complete_merge(self, cwd: Optional[Path] = None) -> None:
        """Conclude an in-progress merge whose conflicts have been staged."""
        await self.run(["commit", "--no-edit"], cwd=cwd, timeout=30)

    # ------------------------------------------------------------------
    # Commit
    # ------------------------------------------------------------------

    async def commit_changes(
        self,
        item_id: str,
        title: str,
        template: str = DEFAULT_COMMIT_TEMPLATE,
        cwd: Optional[Path] = None,
        silent: bool = False
    ) -> bool:
        """
        Stage and commit everything except sensitive files.

        Args:
            item_id: Work item id for the commit message
            title: Work item title for the commit message
            template: Message template with {taskId}/{taskTitle} placeholders
            cwd: Working tree to commit in (defaults to project_path)
            silent: Suppress console output (used inside batch runs)

        Returns:
            True if a commit was created, False if there was nothing to commit
        """
        await self.run(["add", "-A"], cwd=cwd, timeout=60)

        for pattern in SENSITIVE_PATTERNS:
            # Fails harmlessly when nothing matches
            await self.run(["reset", "HEAD", "--", pattern], cwd=cwd, timeout=30, check=False)

        status = await self.run(["status", "--porcelain"], cwd=cwd, timeout=30)
        for line in status.stdout.splitlines():
            if not line.startswith("??"):
                continue
            path = line[3:].strip().strip('"')
            if is_sensitive_path(path):
                logger.warning(f"Sensitive file left uncommitted: {path}")
                if not silent and self.console:
                    self.console.print(f"[yellow]Warning: not committing sensitive file {path}[/yellow]")

        message = format_commit_message(template, item_id, title)
        result = await self.run(["commit", "-m", message], cwd=cwd, timeout=60, check=False)
        if not result.ok:
            logger.warning(f"Nothing committed for {item_id}: {result.stdout or result.stderr}")
            if not silent and self.console:
                self.console.print(f"[yellow]Nothing to commit for {item_id}[/yellow]")
            return False

        logger.info(f"Committed changes for {item_id}: {message}")
        if not silent and self.console:
            self.console.print(f"[green]Committed:[/green] {message}")
        return True
