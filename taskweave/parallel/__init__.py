"""
Parallel Execution Module
==========================

Infrastructure for running work items in parallel using git worktrees
and dependency-based scheduling.

Main Components:
- DependencyResolver: Ready set, cycle check, layers and conflict-free batches
- AgentRunner: Runs the external agent and streams its output
- WorktreeManager: Manages git worktrees for isolated parallel execution
- TaskProgressTracker: Live progress table for a running batch
- ConflictResolver: Applies the conflict strategy to a failed merge
- ParallelExecutor: Orchestrates rounds of direct runs and batches

Usage:
    from taskweave.parallel import ParallelExecutor

    executor = ParallelExecutor(store, repo, agent_runner, max_concurrency=3)
    result = await executor.execute()
"""

from taskweave.parallel.agent_runner import AgentResult, AgentRunner
from taskweave.parallel.conflict_resolver import ConflictResolver
from taskweave.parallel.dependency_resolver import DependencyGraph, DependencyResolver
from taskweave.parallel.parallel_executor import (
    EXIT_FAILURE,
    EXIT_PRECONDITION_FAILED,
    EXIT_SUCCESS,
    EngineResult,
    EngineState,
    ParallelExecutor,
    PreconditionError,
)
from taskweave.parallel.progress_tracker import TaskProgressStatus, TaskProgressTracker
from taskweave.parallel.worktree_manager import (
    MergeResult,
    WorktreeInfo,
    WorktreeManager,
)

__all__ = [
    'AgentResult',
    'AgentRunner',
    'ConflictResolver',
    'DependencyGraph',
    'DependencyResolver',
    'EXIT_FAILURE',
    'EXIT_PRECONDITION_FAILED',
    'EXIT_SUCCESS',
    'EngineResult',
    'EngineState',
    'MergeResult',
    'ParallelExecutor',
    'PreconditionError',
    'TaskProgressStatus',
    'TaskProgressTracker',
    'WorktreeInfo',
    'WorktreeManager',
]
