#!/usr/bin/env python3
"""
Run Tasks

Command-line entry point for running a task file with a coding agent.

Usage:
    python scripts/run_tasks.py run                       # Sequential (or parallel if enabled in the task file)
    python scripts/run_tasks.py run --parallel --max-concurrency 4
    python scripts/run_tasks.py run --parallel --conflict-strategy abort
    python scripts/run_tasks.py dry-run                   # Walk the plan without running the agent
    python scripts/run_tasks.py task 1.2                  # Run one task
    python scripts/run_tasks.py status
    python scripts/run_tasks.py graph [--mermaid]
    python scripts/run_tasks.py reset
    python scripts/run_tasks.py cleanup                   # Remove leftover worktrees

Environment:
    Optional settings are read from .env, see taskweave/config.py
"""

import argparse
import asyncio
import logging
import signal
import sys
from pathlib import Path

# Add project root to path
sys.path.insert(0, str(Path(__file__).parent.parent))

from rich.console import Console
from rich.table import Table

from taskweave.config import Config
from taskweave.git_repository import GitCommandError, GitRepository
from taskweave.parallel import AgentRunner, DependencyResolver, ParallelExecutor, WorktreeManager
from taskweave.parallel.parallel_executor import EXIT_INTERRUPTED
from taskweave.session_log import setup_session_logging
from taskweave.task_runner import TaskRunner
from taskweave.task_store import ConflictStrategy, TaskStore, TaskStoreError

console = Console()
logger = logging.getLogger("taskweave.cli")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Run a task file with a coding agent",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  # Sequential execution (default unless the task file enables parallel)
  python scripts/run_tasks.py run

  # Parallel execution with 4 concurrent agents
  python scripts/run_tasks.py run --parallel --max-concurrency 4

  # Re-run conflicting tasks directly instead of asking the agent to merge
  python scripts/run_tasks.py run --parallel --conflict-strategy abort

Exit codes: 0 success, 1 failure, 2 blocked task or refused to start, 130 interrupted
        """
    )
    parser.add_argument('--tasks-file', default=None, help='Task file (default: tasks.json)')
    parser.add_argument('--verbose', action='store_true', help='Write debug output to the session log')

    sub = parser.add_subparsers(dest='command', required=True)

    run = sub.add_parser('run', help='Run all pending tasks')
    run.add_argument('--parallel', action='store_true', help='Run independent tasks in parallel worktrees')
    run.add_argument('--max-concurrency', type=int, default=None, help='Concurrent agents per batch')
    run.add_argument(
        '--conflict-strategy',
        choices=[s.value for s in ConflictStrategy],
        default=None,
        help='How merge conflicts are handled (default: from task file)'
    )

    sub.add_parser('dry-run', help='Walk the plan without running the agent or committing')

    task = sub.add_parser('task', help='Run a single task')
    task.add_argument('task_id')
    task.add_argument('--no-commit', action='store_true', help='Do not commit after completion')

    sub.add_parser('status', help='Show task progress')

    graph = sub.add_parser('graph', help='Show the dependency graph')
    graph.add_argument('--mermaid', action='store_true', help='Print a Mermaid diagram')

    sub.add_parser('reset', help='Mark every task pending again')
    sub.add_parser('cleanup', help='Remove leftover worktrees and branches')
    return parser


def print_status(store: TaskStore) -> None:
    ready = set(DependencyResolver().ready(store.items))
    table = Table(title=store.data.project_name or "Tasks", header_style="bold cyan")
    table.add_column("ID", style="cyan")
    table.add_column("Title")
    table.add_column("Status")
    table.add_column("Depends on", style="dim")

    for item in store.items:
        if item.done:
            status = "[green]done[/green]"
        elif item.id in ready:
            status = "[yellow]ready[/yellow]"
        else:
            status = "[dim]blocked[/dim]"
        table.add_row(item.id, item.title, status, ", ".join(item.dependencies) or "-")

    console.print(table)
    done = len(store.items) - len(store.pending())
    console.print(f"{done}/{len(store.items)} tasks done")


async def run_command(args, config: Config, store: TaskStore) -> int:
    repo = GitRepository(str(store.path.resolve().parent), console=console)
    agent = AgentRunner(
        command=config.agent_command,
        max_retries=config.max_retries,
        retry_delay=config.retry_delay,
        timeout=config.agent_timeout
    )
    loop = asyncio.get_running_loop()

    if args.command == 'cleanup':
        manager = WorktreeManager(repo, config.worktree_dir, config.branch_prefix)
        deleted = await manager.cleanup_all()
        console.print(f"[green]Removed {len(deleted)} workspace branch(es)[/green]")
        return 0

    if args.command == 'dry-run':
        runner = TaskRunner(store, agent, repo, console=console)
        return await runner.run_sequential(dry_run=True)

    await repo.ensure_initialized()
    await repo.exclude_paths(
        [d for d in (config.worktree_dir, config.log_dir) if not Path(d).is_absolute()]
    )

    if args.command == 'task':
        runner = TaskRunner(store, agent, repo, console=console)
        return await runner.run_task(args.task_id, commit=False if args.no_commit else None)

    parallel = args.parallel or store.parallel_settings.enabled
    if not parallel:
        runner = TaskRunner(store, agent, repo, console=console)
        main_task = asyncio.current_task()
        loop.add_signal_handler(signal.SIGINT, main_task.cancel)
        try:
            return await runner.run_sequential()
        except asyncio.CancelledError:
            console.print("\n[yellow]Interrupted[/yellow]")
            return EXIT_INTERRUPTED
        finally:
            loop.remove_signal_handler(signal.SIGINT)

    executor = ParallelExecutor(
        store,
        repo,
        agent,
        max_concurrency=args.max_concurrency,
        conflict_strategy=args.conflict_strategy,
        config=config,
        console=console
    )
    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, executor.cancel)
    try:
        result = await executor.execute()
    finally:
        for sig in (signal.SIGINT, signal.SIGTERM):
            loop.remove_signal_handler(sig)

    if result.completed:
        console.print(f"Completed: {', '.join(result.completed)}")
    if result.failed:
        console.print(f"[red]Failed: {', '.join(result.failed)}[/red]")
    return result.exit_code


def main(argv=None) -> int:
    args = build_parser().parse_args(argv)

    if getattr(args, 'max_concurrency', None) is not None and args.max_concurrency < 1:
        print(f"Error: --max-concurrency must be at least 1 (got {args.max_concurrency})")
        return 1

    config = Config.from_env()
    if args.tasks_file:
        config.tasks_file = args.tasks_file

    log_file = setup_session_logging(
        config.log_dir,
        level=logging.DEBUG if args.verbose else logging.INFO,
        console=console
    )
    logger.info(f"Command: {args.command} (log: {log_file})")

    try:
        store = TaskStore.load(Path(config.tasks_file))
    except TaskStoreError as e:
        console.print(f"[red]{e}[/red]")
        return 1

    if args.command == 'status':
        print_status(store)
        return 0

    if args.command == 'graph':
        resolver = DependencyResolver()
        print(resolver.to_mermaid(store.items) if args.mermaid else resolver.to_ascii(store.items))
        return 0

    if args.command == 'reset':
        store.reset_all()
        store.save()
        console.print(f"[green]Reset {len(store.items)} tasks to pending[/green]")
        return 0

    try:
        return asyncio.run(run_command(args, config, store))
    except (GitCommandError, TaskStoreError) as e:
        logger.error(f"{args.command} failed: {e}", exc_info=True)
        console.print(f"[red]{e}[/red]")
        return 1


if __name__ == "__main__":
    sys.exit(main())
