"""
Task Store
==========

Durable representation of the work items and their completion state.

The store is a single JSON document (``tasks.json`` by default) holding
project metadata, the ordered list of work items and workflow settings.
Models are pydantic so the document is validated on load and again before
every save; unknown keys are preserved so hand-written extras round-trip.

Key Features:
- Validated load / reload from disk
- Atomic save (temp file + validate + rename)
- Dependency checks and readiness queries in store order
- Idempotent completion marking, bulk reset
"""

from enum import Enum
from pathlib import Path
from typing import Dict, List, Optional, Set, Tuple
import json
import logging
import os
import uuid

from pydantic import BaseModel, ConfigDict, Field, ValidationError, model_validator

logger = logging.getLogger(__name__)

DEFAULT_COMMIT_TEMPLATE = "[Task #{taskId}] {taskTitle}"


class TaskStoreError(Exception):
    """Raised when the task store cannot be loaded, validated or saved."""
    pass


class TaskNotFoundError(TaskStoreError, KeyError):
    """Raised when a work item or sub-item id does not exist."""
    pass


class ConflictStrategy(str, Enum):
    """How a failed merge of a workspace branch is resolved."""
    AGENT = "agent"
    ABORT = "abort"
    PREFER_INCOMING = "auto-theirs"
    PREFER_BASE = "auto-ours"


class _StoreModel(BaseModel):
    model_config = ConfigDict(extra="allow", populate_by_name=True)


class SubItem(_StoreModel):
    """Fine-grained checkpoint under a work item. Bookkeeping only."""
    id: str
    title: str = ""
    done: bool = False
    prompt: Optional[str] = None


class WorkItem(_StoreModel):
    """A schedulable unit of work."""
    id: str
    title: str = ""
    description: Optional[str] = None
    phase: Optional[str] = None
    category: Optional[str] = None
    done: bool = False
    prompt: Optional[str] = None
    depends_on: Optional[List[str]] = Field(None, alias="dependsOn")
    output_files: Optional[List[str]] = Field(None, alias="outputFiles")
    modified_files: Optional[List[str]] = Field(None, alias="modifiedFiles")
    subtasks: Optional[List[SubItem]] = None

    @property
    def dependencies(self) -> List[str]:
        return list(self.depends_on or [])

    @property
    def touched_files(self) -> Set[str]:
        """Advisory set of files this item creates or modifies (case-insensitive)."""
        files = set()
        for path in (self.output_files or []) + (self.modified_files or []):
            files.add(path.casefold())
        return files


class OnTaskComplete(_StoreModel):
    commit_changes: bool = Field(True, alias="commitChanges")
    commit_message_template: str = Field(DEFAULT_COMMIT_TEMPLATE, alias="commitMessageTemplate")


class ParallelSettings(_StoreModel):
    enabled: bool = False
    max_concurrent: int = Field(3, alias="maxConcurrent", ge=1)
    conflict_strategy: ConflictStrategy = Field(ConflictStrategy.AGENT, alias="conflictStrategy")


class WorkflowSettings(_StoreModel):
    on_task_complete: Optional[OnTaskComplete] = Field(None, alias="onTaskComplete")
    parallel: Optional[ParallelSettings] = None


class TaskFile(_StoreModel):
    """Top-level task document."""
    project_name: Optional[str] = Field(None, alias="projectName")
    version: Optional[str] = None
    tasks: List[WorkItem]
    workflow: Optional[WorkflowSettings] = None

    @model_validator(mode="after")
    def _check_unique_ids(self) -> "TaskFile":
        seen = set()
        duplicates = []
        for item in self.tasks:
            if item.id in seen and item.id not in duplicates:
                duplicates.append(item.id)
            seen.add(item.id)
        if duplicates:
            raise ValueError(f"Duplicate task ids: {', '.join(duplicates)}")
        return self


def format_commit_message(template: str, item_id: str, title: str) -> str:
    """Substitute item placeholders into a commit message template."""
    return (
        template
        .replace("{taskId}", item_id)
        .replace("{itemId}", item_id)
        .replace("{taskTitle}", title)
        .replace("{title}", title)
    )


def _parse(text: str, source: str) -> TaskFile:
    try:
        return TaskFile.model_validate_json(text)
    except ValidationError as e:
        raise TaskStoreError(f"Invalid task file {source}: {e}") from e


class TaskStore:
    """
    Owned, file-backed collection of work items.

    Only one instance should mutate a given file; concurrent writers are
    serialised by the parallel executor's persistence lock.
    """

    def __init__(self, path: Path, data: TaskFile):
        self.path = Path(path)
        self.data = data

    @classmethod
    def load(cls, path: Path) -> "TaskStore":
        """
        Load and validate a task file.

        Raises:
            TaskStoreError: If the file is missing, unreadable or invalid
        """
        path = Path(path)
        try:
            text = path.read_text(encoding="utf-8")
        except OSError as e:
            raise TaskStoreError(f"Cannot read task file {path}: {e}") from e

        data = _parse(text, str(path))
        logger.info(f"Loaded {len(data.tasks)} tasks from {path}")
        return cls(path, data)

    def reload(self) -> None:
        """Re-read durable state, discarding in-memory changes."""
        try:
            text = self.path.read_text(encoding="utf-8")
        except OSError as e:
            raise TaskStoreError(f"Cannot read task file {self.path}: {e}") from e
        self.data = _parse(text, str(self.path))
        logger.debug(f"Reloaded task store from {self.path}")

    def serialize(self) -> str:
        payload = self.data.model_dump(mode="json", by_alias=True, exclude_none=True)
        return json.dumps(payload, indent=2, ensure_ascii=False) + "\n"

    def save(self) -> None:
        """
        Atomically persist the store.

        The document is serialised, re-validated (it must still contain the
        tasks list), written to a temporary sibling file and renamed over the
        original. On any failure the temporary file is removed and the
        original is left untouched.

        Raises:
            TaskStoreError: If serialisation, validation or the write fails
        """
        tmp_path = self.path.with_name(f"{self.path.name}.tmp.{uuid.uuid4().hex}")
        try:
            text = self.serialize()

            # Validate before writing
            verify = json.loads(text)
            if not isinstance(verify, dict) or not isinstance(verify.get("tasks"), list):
                raise TaskStoreError("Validation failed: tasks array missing")
            _parse(text, str(tmp_path))

            tmp_path.write_text(text, encoding="utf-8")
            os.replace(tmp_path, self.path)
            logger.debug(f"Saved task store to {self.path}")
        except Exception as e:
            if tmp_path.exists():
                tmp_path.unlink()
            if isinstance(e, TaskStoreError):
                raise
            raise TaskStoreError(f"Failed to save {self.path}: {e}") from e

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    @property
    def items(self) -> List[WorkItem]:
        return self.data.tasks

    def get(self, task_id: str) -> Optional[WorkItem]:
        return next((t for t in self.data.tasks if t.id == task_id), None)

    def require(self, task_id: str) -> WorkItem:
        task = self.get(task_id)
        if task is None:
            raise TaskNotFoundError(f"Task '{task_id}' not found")
        return task

    def pending(self) -> List[WorkItem]:
        return [t for t in self.data.tasks if not t.done]

    def check_dependencies(self, task_id: str) -> Tuple[bool, List[str]]:
        """
        Check whether every dependency of a task is complete.

        Dependencies that do not exist in the store count as blocking.

        Returns:
            Tuple of (all satisfied, list of blocking dependency ids)
        """
        task = self.require(task_id)
        blocked_by = []
        for dep_id in task.dependencies:
            dep = self.get(dep_id)
            if dep is None or not dep.done:
                blocked_by.append(dep_id)
        return len(blocked_by) == 0, blocked_by

    def next_ready(self) -> Optional[str]:
        for task in self.pending():
            ok, _ = self.check_dependencies(task.id)
            if ok:
                return task.id
        return None

    def index_of(self, task_id: str) -> int:
        """1-based position of a task in the store, or -1."""
        for i, task in enumerate(self.data.tasks):
            if task.id == task_id:
                return i + 1
        return -1

    def blocked_report(self) -> Dict[str, List[str]]:
        """Map each pending task to its unmet dependencies."""
        return {t.id: self.check_dependencies(t.id)[1] for t in self.pending()}

    # ------------------------------------------------------------------
    # Mutations
    # ------------------------------------------------------------------

    def mark_done(self, task_id: str) -> None:
        task = self.require(task_id)
        if not task.done:
            task.done = True
            logger.debug(f"Task {task_id} marked done")

    def mark_subitem_done(self, task_id: str, subitem_id: str) -> None:
        task = self.require(task_id)
        sub = next((s for s in (task.subtasks or []) if s.id == subitem_id), None)
        if sub is None:
            raise TaskNotFoundError(f"Subtask '{subitem_id}' not found in task '{task_id}'")
        sub.done = True

    def mark_all_subitems_done(self, task_id: str) -> List[str]:
        """Mark every open sub-item of a task done; returns the ids marked."""
        task = self.require(task_id)
        marked = []
        for sub in task.subtasks or []:
            if not sub.done:
                self.mark_subitem_done(task_id, sub.id)
                marked.append(sub.id)
        return marked

    def reset_all(self) -> None:
        """Revert every task and sub-item to pending."""
        for task in self.data.tasks:
            task.done = False
            for sub in task.subtasks or []:
                sub.done = False
        logger.info(f"Reset {len(self.data.tasks)} tasks to pending")

    # ------------------------------------------------------------------
    # Workflow settings
    # ------------------------------------------------------------------

    @property
    def commit_on_complete(self) -> bool:
        workflow = self.data.workflow
        if workflow is None or workflow.on_task_complete is None:
            return True
        return workflow.on_task_complete.commit_changes

    @property
    def commit_template(self) -> str:
        workflow = self.data.workflow
        if workflow is None or workflow.on_task_complete is None:
            return DEFAULT_COMMIT_TEMPLATE
        return workflow.on_task_complete.commit_message_template

    @property
    def parallel_settings(self) -> ParallelSettings:
        workflow = self.data.workflow
        if workflow is None or workflow.parallel is None:
            return ParallelSettings()
        return workflow.parallel
