"""
Task Record - ordered task list with a constrained lifecycle

Status Flow:
    PENDING → IN_PROGRESS → (COMPLETED | FAILED | BLOCKED)
    BLOCKED → IN_PROGRESS
    FAILED → IN_PROGRESS (retry)

Tasks are never deleted; a status change is the only lifecycle operation.
"""

from datetime import datetime
from pathlib import Path
from typing import Callable, Optional
import json
import logging
import os
import threading
import uuid

from pydantic import ValidationError

from .errors import RecordValidationError, TaskDeletionError, TaskNotFoundError
from .models import (
    BlockCategory,
    Decision,
    Task,
    TaskList,
    TaskPriority,
    TaskStatus,
    utc_now,
)
from .schema import validate_document

logger = logging.getLogger(__name__)


VALID_TASK_TRANSITIONS = {
    TaskStatus.PENDING: {TaskStatus.IN_PROGRESS},
    TaskStatus.IN_PROGRESS: {TaskStatus.COMPLETED, TaskStatus.FAILED, TaskStatus.BLOCKED},
    TaskStatus.BLOCKED: {TaskStatus.IN_PROGRESS},
    TaskStatus.FAILED: {TaskStatus.IN_PROGRESS},
    TaskStatus.COMPLETED: set(),
}


def generate_task_id() -> str:
    return f"task_{uuid.uuid4().hex[:12]}"


def can_transition(from_status: TaskStatus, to_status: TaskStatus) -> bool:
    return to_status in VALID_TASK_TRANSITIONS.get(from_status, set())


def parse_task_document(raw: bytes) -> TaskList:
    """
    Parse and validate a task record.

    Raises:
        RecordValidationError: With every defect found
    """
    try:
        document = json.loads(raw.decode("utf-8"))
    except (UnicodeDecodeError, json.JSONDecodeError) as e:
        raise RecordValidationError("tasks", [f"not valid JSON: {e}"]) from e

    defects = validate_document("tasks", document)
    if defects:
        raise RecordValidationError("tasks", defects)

    try:
        return TaskList.model_validate(document)
    except ValidationError as e:
        raise RecordValidationError(
            "tasks",
            [f"{'/'.join(str(p) for p in err['loc'])}: {err['msg']}" for err in e.errors()],
        ) from e


class TaskStore:
    """File-backed task record (one JSON document)."""

    def __init__(self, path: Path, clock: Callable[[], datetime] = utc_now):
        self.path = Path(path)
        self.clock = clock
        self._lock = threading.Lock()

    def load(self) -> TaskList:
        """Current task list (empty when the file does not exist yet)."""
        if not self.path.exists():
            return TaskList()
        return parse_task_document(self.path.read_bytes())

    def get(self, task_id: str) -> Task:
        task = self.load().find(task_id)
        if task is None:
            raise TaskNotFoundError(f"No task {task_id}")
        return task

    def add(
        self,
        title: str,
        description: str = "",
        priority: TaskPriority = TaskPriority.MEDIUM,
        now: Optional[datetime] = None,
    ) -> Task:
        """Append a PENDING task."""
        now = now or self.clock()
        task = Task(
            id=generate_task_id(),
            title=title,
            description=description,
            status=TaskStatus.PENDING,
            priority=priority,
            created_at=now,
            updated_at=now,
        )
        with self._lock:
            current = self.load()
            self._write(current, TaskList(tasks=list(current.tasks) + [task]))
        logger.info(f"Task {task.id} added: {title}")
        return task

    def transition(
        self,
        task_id: str,
        new_status,
        session_id: Optional[str] = None,
        now: Optional[datetime] = None,
        on_decided: Optional[Callable[[Decision], None]] = None,
    ) -> Decision:
        """
        Change a task's status.

        Args:
            task_id: Task to change
            new_status: Target TaskStatus (or its string value)
            session_id: Session taking the task (recorded as assignedSession)
            on_decided: Called with the decision before the write; if it
                raises, nothing is written

        Returns:
            Decision (denials carry blocked_by, never raise)
        """
        now = now or self.clock()
        with self._lock:
            current = self.load()
            task = current.find(task_id)
            if task is None:
                decision = Decision.deny("task_not_found", BlockCategory.VALIDATION, task_id=task_id)
                if on_decided is not None:
                    on_decided(decision)
                return decision

            try:
                target = TaskStatus(new_status)
            except ValueError:
                target = None

            if target is None or not can_transition(task.status, target):
                decision = Decision.deny(
                    "task_transition_invalid",
                    BlockCategory.VALIDATION,
                    task_id=task_id,
                    from_status=task.status.value,
                    requested_status=str(getattr(new_status, "value", new_status)),
                )
                if on_decided is not None:
                    on_decided(decision)
                return decision

            update = {"status": target, "updated_at": now}
            if session_id is not None:
                update["assigned_session"] = session_id
            updated = task.model_copy(update=update)
            tasks = [updated if t.id == task_id else t for t in current.tasks]

            decision = Decision.allow(
                task_id=task_id,
                from_status=task.status.value,
                to_status=target.value,
            )
            if on_decided is not None:
                on_decided(decision)
            self._write(current, TaskList(tasks=tasks))
            logger.info(f"Task {task_id}: {task.status.value} -> {target.value}")
            return decision

    def save(self, task_list: TaskList):
        """
        Replace the record with task_list.

        Raises:
            TaskDeletionError: If any existing task would be dropped
        """
        with self._lock:
            self._write(self.load(), task_list)

    def _write(self, current: TaskList, new: TaskList):
        dropped = {t.id for t in current.tasks} - {t.id for t in new.tasks}
        if dropped:
            raise TaskDeletionError(f"Tasks cannot be deleted: {sorted(dropped)}")

        payload = json.dumps(new.to_document(), indent=2).encode("utf-8")
        defects = validate_document("tasks", json.loads(payload))
        if defects:
            raise RecordValidationError("tasks", defects)

        self.path.parent.mkdir(parents=True, exist_ok=True)
        tmp_path = self.path.with_suffix(self.path.suffix + ".tmp")
        with open(tmp_path, "wb") as f:
            f.write(payload)
            f.flush()
            os.fsync(f.fileno())
        os.replace(tmp_path, self.path)
