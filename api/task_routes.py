"""
Task API Routes
===============

REST API endpoints exposing task file status, the dependency graph,
workspace cleanup and recent session logs.
"""

from pathlib import Path
from typing import Any, Dict, List, Optional
import logging

from fastapi import APIRouter, Depends, HTTPException
from fastapi.responses import PlainTextResponse
from pydantic import BaseModel, Field

from taskweave.config import Config
from taskweave.git_repository import GitCommandError, GitRepository
from taskweave.parallel.dependency_resolver import DependencyResolver
from taskweave.parallel.worktree_manager import WorktreeManager
from taskweave.session_log import list_recent_logs
from taskweave.task_store import TaskNotFoundError, TaskStore, TaskStoreError

logger = logging.getLogger(__name__)

router = APIRouter(tags=["tasks"])


# =============================================================================
# Response Models
# =============================================================================

class TaskResponse(BaseModel):
    """Response model for a work item."""
    id: str
    title: str
    done: bool
    ready: bool
    depends_on: List[str] = Field(default_factory=list)
    blocked_by: List[str] = Field(default_factory=list)
    touched_files: List[str] = Field(default_factory=list)
    subtasks_done: int = 0
    subtasks_total: int = 0


class StatusResponse(BaseModel):
    """Response model for overall progress."""
    project_name: Optional[str] = None
    total: int
    done: int
    pending: int
    ready: int
    blocked: int
    next_task: Optional[str] = None


class GraphResponse(BaseModel):
    """Response model for the dependency graph."""
    layers: List[List[str]]
    has_cycle: bool
    cycle_members: List[str]
    missing_deps: List[str]
    ready_batches: List[List[str]]


class WorkspaceListResponse(BaseModel):
    orphaned_branches: List[str]


class CleanupResponse(BaseModel):
    deleted_branches: List[str]
    message: str


class LogFileResponse(BaseModel):
    name: str
    path: str
    size: int
    modified_at: str


# =============================================================================
# Dependencies
# =============================================================================

def get_config() -> Config:
    return Config.from_env()


def get_task_store(config: Config = Depends(get_config)) -> TaskStore:
    """
    Load the task file named by the configuration.

    Raises:
        HTTPException: 500 if the file cannot be loaded
    """
    try:
        return TaskStore.load(Path(config.tasks_file))
    except TaskStoreError as e:
        logger.error(f"Failed to load task file: {e}")
        raise HTTPException(status_code=500, detail=str(e))


def get_worktree_manager(
    store: TaskStore = Depends(get_task_store),
    config: Config = Depends(get_config)
) -> WorktreeManager:
    repo = GitRepository(str(store.path.resolve().parent))
    return WorktreeManager(repo, worktree_dir=config.worktree_dir, branch_prefix=config.branch_prefix)


def _task_response(store: TaskStore, task_id: str, ready_ids: List[str]) -> TaskResponse:
    item = store.require(task_id)
    _, blocked_by = store.check_dependencies(task_id)
    subtasks = item.subtasks or []
    return TaskResponse(
        id=item.id,
        title=item.title,
        done=item.done,
        ready=item.id in ready_ids,
        depends_on=item.dependencies,
        blocked_by=[] if item.done else blocked_by,
        touched_files=sorted(item.touched_files),
        subtasks_done=sum(1 for s in subtasks if s.done),
        subtasks_total=len(subtasks)
    )


# =============================================================================
# API Endpoints
# =============================================================================

@router.get("/api/tasks", response_model=List[TaskResponse])
async def list_tasks(store: TaskStore = Depends(get_task_store)):
    """
    List all work items with their readiness.
    """
    ready_ids = DependencyResolver().ready(store.items)
    return [_task_response(store, item.id, ready_ids) for item in store.items]


@router.get("/api/tasks/status", response_model=StatusResponse)
async def get_status(store: TaskStore = Depends(get_task_store)):
    """
    Summarize progress across the task file.
    """
    ready_ids = DependencyResolver().ready(store.items)
    pending = store.pending()
    done = len(store.items) - len(pending)
    return StatusResponse(
        project_name=store.data.project_name,
        total=len(store.items),
        done=done,
        pending=len(pending),
        ready=len(ready_ids),
        blocked=len(pending) - len(ready_ids),
        next_task=store.next_ready()
    )


@router.get("/api/tasks/graph", response_model=GraphResponse)
async def get_graph(store: TaskStore = Depends(get_task_store)):
    """
    Dependency layers, cycle check and conflict-free batches of the ready set.
    """
    resolver = DependencyResolver()
    has_cycle, offending = resolver.detect_cycle(store.items)
    graph = resolver.resolve(store.items)
    return GraphResponse(
        layers=graph.batches,
        has_cycle=has_cycle,
        cycle_members=offending,
        missing_deps=graph.missing_deps,
        ready_batches=resolver.conflict_free_batches(store.items)
    )


@router.get("/api/tasks/graph/ascii", response_class=PlainTextResponse)
async def get_graph_ascii(store: TaskStore = Depends(get_task_store)):
    return DependencyResolver().to_ascii(store.items)


@router.get("/api/tasks/{task_id}", response_model=TaskResponse)
async def get_task(task_id: str, store: TaskStore = Depends(get_task_store)):
    """
    Get a single work item by id.
    """
    ready_ids = DependencyResolver().ready(store.items)
    try:
        return _task_response(store, task_id, ready_ids)
    except TaskNotFoundError:
        raise HTTPException(status_code=404, detail=f"Task '{task_id}' not found")


@router.post("/api/tasks/reset", response_model=StatusResponse)
async def reset_tasks(store: TaskStore = Depends(get_task_store)):
    """
    Mark every work item and sub-item pending again.
    """
    try:
        store.reset_all()
        store.save()
    except TaskStoreError as e:
        logger.error(f"Failed to reset tasks: {e}")
        raise HTTPException(status_code=500, detail=str(e))
    return await get_status(store)


@router.get("/api/workspaces", response_model=WorkspaceListResponse)
async def list_workspaces(manager: WorktreeManager = Depends(get_worktree_manager)):
    """
    List workspace branches left behind by interrupted runs.
    """
    try:
        return WorkspaceListResponse(orphaned_branches=await manager.detect_orphaned_worktrees())
    except GitCommandError as e:
        logger.error(f"Git command failed: {e}")
        raise HTTPException(status_code=500, detail=f"Git operation failed: {str(e)}")


@router.delete("/api/workspaces", response_model=CleanupResponse)
async def cleanup_workspaces(manager: WorktreeManager = Depends(get_worktree_manager)):
    """
    Remove every workspace and workspace branch.
    """
    try:
        deleted = await manager.cleanup_all()
    except GitCommandError as e:
        logger.error(f"Git command failed: {e}")
        raise HTTPException(status_code=500, detail=f"Git operation failed: {str(e)}")
    return CleanupResponse(
        deleted_branches=deleted,
        message=f"Removed {len(deleted)} workspace branch(es)"
    )


@router.get("/api/logs", response_model=List[LogFileResponse])
async def get_logs(limit: int = 10, config: Config = Depends(get_config)) -> List[Dict[str, Any]]:
    """
    List the most recent session logs.
    """
    return list_recent_logs(config.log_dir, limit=limit)
