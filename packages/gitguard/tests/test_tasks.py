"""
Tests for the Task Store
"""

import json

import pytest

from gitguard import (
    RecordValidationError,
    TaskDeletionError,
    TaskList,
    TaskNotFoundError,
    TaskPriority,
    TaskStatus,
    TaskStore,
)
from gitguard.tasks import can_transition, parse_task_document


@pytest.fixture
def tasks(temp_dir, clock):
    return TaskStore(temp_dir / ".agent" / "tasks.json", clock=clock)


def test_missing_file_is_empty(tasks):
    assert tasks.load().tasks == []


def test_add_and_load(tasks):
    task = tasks.add("Write rate limiter", description="Sliding window", priority=TaskPriority.HIGH)

    loaded = tasks.get(task.id)
    assert loaded == task
    assert loaded.status == TaskStatus.PENDING
    assert loaded.priority == TaskPriority.HIGH


def test_order_is_preserved(tasks):
    first = tasks.add("First")
    second = tasks.add("Second")

    assert [t.id for t in tasks.load().tasks] == [first.id, second.id]


def test_transition_records_session(tasks, clock):
    task = tasks.add("Write docs")
    clock.advance(60)

    decision = tasks.transition(task.id, "in_progress", session_id="session_abc")

    assert decision.allowed
    assert decision.details["from_status"] == "pending"
    updated = tasks.get(task.id)
    assert updated.status == TaskStatus.IN_PROGRESS
    assert updated.assigned_session == "session_abc"
    assert updated.updated_at == clock.now
    assert updated.created_at == task.created_at


def test_invalid_transition(tasks):
    task = tasks.add("Write docs")

    decision = tasks.transition(task.id, TaskStatus.COMPLETED)

    assert decision.blocked_by == "task_transition_invalid"
    assert tasks.get(task.id).status == TaskStatus.PENDING


def test_blocked_and_failed_can_resume(tasks):
    task = tasks.add("Flaky job")
    tasks.transition(task.id, TaskStatus.IN_PROGRESS)
    assert tasks.transition(task.id, TaskStatus.BLOCKED).allowed
    assert tasks.transition(task.id, TaskStatus.IN_PROGRESS).allowed
    assert tasks.transition(task.id, TaskStatus.FAILED).allowed
    assert tasks.transition(task.id, TaskStatus.IN_PROGRESS).allowed
    assert tasks.transition(task.id, TaskStatus.COMPLETED).allowed

    assert not tasks.transition(task.id, TaskStatus.IN_PROGRESS).allowed


def test_unknown_task(tasks):
    assert tasks.transition("task_nope", "in_progress").blocked_by == "task_not_found"
    with pytest.raises(TaskNotFoundError):
        tasks.get("task_nope")


def test_tasks_cannot_be_deleted(tasks):
    tasks.add("Keep me")

    with pytest.raises(TaskDeletionError):
        tasks.save(TaskList(tasks=[]))

    assert len(tasks.load().tasks) == 1


def test_on_decided_failure_writes_nothing(tasks):
    task = tasks.add("Write docs")

    def explode(decision):
        raise RuntimeError("audit down")

    with pytest.raises(RuntimeError):
        tasks.transition(task.id, TaskStatus.IN_PROGRESS, on_decided=explode)

    assert tasks.get(task.id).status == TaskStatus.PENDING


def test_corrupt_file(tasks):
    tasks.path.parent.mkdir(parents=True, exist_ok=True)
    tasks.path.write_text(json.dumps({"tasks": [{"id": "t1", "status": "done"}]}))

    with pytest.raises(RecordValidationError) as exc_info:
        tasks.load()

    assert exc_info.value.kind == "tasks"
    assert len(exc_info.value.defects) >= 2


def test_round_trip(tasks):
    tasks.add("One")
    tasks.add("Two", priority=TaskPriority.CRITICAL)

    raw = tasks.path.read_bytes()
    document = json.loads(raw)

    assert set(document["tasks"][0]) >= {"id", "title", "status", "priority", "createdAt", "updatedAt"}
    assert parse_task_document(raw) == tasks.load()
    assert TaskList.model_validate(tasks.load().to_document()) == tasks.load()


def test_can_transition_table():
    assert can_transition(TaskStatus.PENDING, TaskStatus.IN_PROGRESS)
    assert not can_transition(TaskStatus.PENDING, TaskStatus.BLOCKED)
    assert not can_transition(TaskStatus.COMPLETED, TaskStatus.IN_PROGRESS)
