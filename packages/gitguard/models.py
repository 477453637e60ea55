"""
gitguard Data Models

Two families of types live here:
- Request/response values (Operation, Decision, ValidationResult): frozen
  dataclasses passed by value through the Guard.
- Persisted records (SessionState, Task): pydantic models serialized with
  camelCase keys, validated against the JSON schemas in schemas/.

Philosophy:
- An Operation is immutable once created
- A Decision is created exactly once and never mutated
- Records on disk are always schema-checked before use
"""

from __future__ import annotations

import hashlib
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from enum import Enum
from types import MappingProxyType
from typing import Any, Dict, List, Mapping, Optional, Tuple

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


def utc_now() -> datetime:
    """Current time as an aware UTC datetime."""
    return datetime.now(timezone.utc)


# ==================== Enums ====================

class OperationKind(str, Enum):
    """Kinds of operation an agent may propose."""
    READ = "read"
    WRITE = "write"
    DELETE = "delete"
    COMMIT = "commit"
    COMMIT_MAIN = "commit_main"
    BRANCH_CREATE = "branch_create"
    PR_CREATE = "pr_create"
    PR_UPDATE = "pr_update"
    STATE_UPDATE = "state_update"
    PUSH = "push"


PATH_KINDS = frozenset({OperationKind.READ, OperationKind.WRITE, OperationKind.DELETE})
COMMIT_KINDS = frozenset({OperationKind.COMMIT, OperationKind.COMMIT_MAIN})


class Severity(str, Enum):
    """Prohibition severity. CRITICAL aborts the session."""
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


class BlockCategory(str, Enum):
    """Which stage of the Guard stopped an operation."""
    SESSION = "session"
    PROHIBITION = "prohibition"
    RATE_LIMIT = "rate_limit"
    VALIDATION = "validation"


class SessionStatus(str, Enum):
    IDLE = "idle"
    RUNNING = "running"
    PAUSED = "paused"
    COMPLETED = "completed"
    FAILED = "failed"


TERMINAL_STATUSES = frozenset({SessionStatus.COMPLETED, SessionStatus.FAILED})


class TaskStatus(str, Enum):
    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    FAILED = "failed"
    BLOCKED = "blocked"


class TaskPriority(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


# ==================== Operation ====================

@dataclass(frozen=True)
class StagedFile:
    """One file of a commit change set."""
    path: str
    content: bytes
    binary: Optional[bool] = None  # None = detect from content/extension

    @property
    def size_bytes(self) -> int:
        return len(self.content)


def _to_bytes(content: Any) -> bytes:
    if content is None:
        return b""
    if isinstance(content, (bytes, bytearray)):
        return bytes(content)
    return str(content).encode("utf-8")


@dataclass(frozen=True)
class Operation:
    """
    A single proposed action submitted to the Guard.

    payload shapes by kind:
        write:          bytes | str | {"content": ..., "binary": bool}
        commit(_main):  {"files": [{"path", "content", "binary"?}], "message"?}
        pr_create/update: {"branch", "title", "description"}
        push:           {"command"?: str, "force"?: bool}
        state_update:   {"status", "checkpoint"?, "error"?}
    """
    kind: OperationKind
    target: str
    session_id: str
    payload: Any = None
    timestamp: datetime = field(default_factory=utc_now)

    def __post_init__(self):
        if not isinstance(self.kind, OperationKind):
            object.__setattr__(self, "kind", OperationKind(self.kind))
        if isinstance(self.payload, dict):
            object.__setattr__(self, "payload", MappingProxyType(dict(self.payload)))
        if self.timestamp.tzinfo is None:
            object.__setattr__(self, "timestamp", self.timestamp.replace(tzinfo=timezone.utc))

    def payload_field(self, name: str, default: Any = None) -> Any:
        if isinstance(self.payload, Mapping):
            return self.payload.get(name, default)
        return default

    def content_bytes(self) -> bytes:
        """Content of a write operation, encoded as UTF-8 when given as text."""
        if isinstance(self.payload, Mapping):
            return _to_bytes(self.payload.get("content"))
        return _to_bytes(self.payload)

    def declared_binary(self) -> Optional[bool]:
        return self.payload_field("binary")

    def staged_files(self) -> List[StagedFile]:
        """Files of a commit change set."""
        files = self.payload_field("files") or []
        return [
            StagedFile(
                path=str(entry.get("path", "")),
                content=_to_bytes(entry.get("content")),
                binary=entry.get("binary"),
            )
            for entry in files
        ]

    def command_text(self) -> str:
        """
        Command shape carried by the operation.

        A push with force=True is rendered as its command form so the same
        destructive-command rules cover both spellings.
        """
        command = self.payload_field("command")
        if command:
            return str(command)
        if self.kind == OperationKind.PUSH and self.payload_field("force"):
            return f"git push --force origin {self.target}"
        return ""

    def summary(self) -> Dict[str, Any]:
        """Audit-safe summary (content is hashed, never logged)."""
        data: Dict[str, Any] = {
            "kind": self.kind.value,
            "target": self.target,
            "session_id": self.session_id,
            "timestamp": self.timestamp.isoformat(),
        }
        if self.kind == OperationKind.WRITE:
            content = self.content_bytes()
            data["payload_bytes"] = len(content)
            data["payload_sha256"] = hashlib.sha256(content).hexdigest()
        elif self.kind in COMMIT_KINDS:
            files = self.staged_files()
            data["files"] = [f.path for f in files]
            data["payload_bytes"] = sum(f.size_bytes for f in files)
        elif self.kind == OperationKind.STATE_UPDATE:
            data["status"] = self.payload_field("status")
        elif self.kind == OperationKind.PUSH and self.command_text():
            data["command"] = self.command_text()
        return data


# ==================== Decision ====================

@dataclass(frozen=True)
class ValidationResult:
    """Outcome of one validator. valid=False is an error and stops the chain."""
    id: str
    valid: bool
    error: Optional[str] = None
    warning: Optional[str] = None
    suggestion: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {"id": self.id, "valid": self.valid}
        for key in ("error", "warning", "suggestion"):
            value = getattr(self, key)
            if value is not None:
                data[key] = value
        return data


@dataclass(frozen=True)
class Decision:
    """The engine's verdict on one Operation."""
    allowed: bool
    blocked_by: Optional[str] = None
    warnings: Tuple[str, ...] = ()
    details: Mapping[str, Any] = field(default_factory=dict)

    def __post_init__(self):
        object.__setattr__(self, "warnings", tuple(self.warnings))
        object.__setattr__(self, "details", MappingProxyType(dict(self.details)))

    @classmethod
    def allow(cls, warnings=(), **details) -> "Decision":
        return cls(allowed=True, warnings=tuple(warnings), details=details)

    @classmethod
    def deny(cls, blocked_by: str, category: BlockCategory, warnings=(), **details) -> "Decision":
        details["block_category"] = category.value
        return cls(allowed=False, blocked_by=blocked_by, warnings=tuple(warnings), details=details)

    @property
    def block_category(self) -> Optional[BlockCategory]:
        value = self.details.get("block_category")
        return BlockCategory(value) if value else None

    @property
    def severity(self) -> Optional[Severity]:
        value = self.details.get("severity")
        return Severity(value) if value else None

    @property
    def retry_after(self) -> Optional[float]:
        return self.details.get("retry_after_seconds")

    def with_details(self, **extra) -> "Decision":
        """Copy with additional details (the original is left untouched)."""
        merged = dict(self.details)
        merged.update(extra)
        return Decision(
            allowed=self.allowed,
            blocked_by=self.blocked_by,
            warnings=self.warnings,
            details=merged,
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "allowed": self.allowed,
            "blocked_by": self.blocked_by,
            "warnings": list(self.warnings),
            "details": dict(self.details),
        }


# ==================== Persisted Records ====================

class _Record(BaseModel):
    """Base for on-disk records: camelCase keys, no unknown fields."""
    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        extra="forbid",
        frozen=True,
    )

    def to_document(self) -> Dict[str, Any]:
        """JSON-ready dict using the on-disk field names."""
        return self.model_dump(mode="json", by_alias=True, exclude_none=True)


class SessionError(_Record):
    """One entry of SessionState.errors (append-only)."""
    timestamp: datetime
    code: str
    message: str
    details: Dict[str, Any] = Field(default_factory=dict)


class SessionState(_Record):
    """The single persisted record of one working session."""
    session_id: str
    status: SessionStatus
    last_updated: datetime
    created_at: Optional[datetime] = None
    current_task: Optional[str] = None
    checkpoint: Optional[Dict[str, Any]] = None
    errors: List[SessionError] = Field(default_factory=list)
    resumed_from: Optional[str] = None

    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    def age(self, now: datetime) -> timedelta:
        return now - self.last_updated

    def is_stale(self, now: datetime, max_age: timedelta) -> bool:
        """Running and not refreshed within max_age (exactly max_age is still fresh)."""
        return self.status == SessionStatus.RUNNING and self.age(now) > max_age


class Task(_Record):
    """One entry of the task record file."""
    id: str
    title: str
    description: str = ""
    status: TaskStatus = TaskStatus.PENDING
    priority: TaskPriority = TaskPriority.MEDIUM
    assigned_session: Optional[str] = None
    created_at: datetime
    updated_at: datetime


class TaskList(_Record):
    """Ordered task list as stored in the task record file."""
    tasks: List[Task] = Field(default_factory=list)

    def find(self, task_id: str) -> Optional[Task]:
        for task in self.tasks:
            if task.id == task_id:
                return task
        return None
