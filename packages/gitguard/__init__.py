"""
gitguard - policy enforcement for autonomous repository agents

Mediates every file and version-control operation an agent proposes.

Components:
- guard: Guard engine (evaluate(operation) -> Decision)
- prohibitions: absolute blocklist (paths, command shapes, secrets)
- rate_limiter: sliding-window counters per (category, scope)
- validators: ordered, short-circuiting checks per operation type
- session / tasks: persisted records with constrained lifecycles
- audit: append-only JSONL decision log
- rollback: revert-vs-reset advice

Philosophy:
- Guard = Judge (decides), not Executor (runs git)
- Every decision is logged before it is returned
- Policy is an immutable, hashed snapshot
"""

__version__ = "0.1.0"

from .errors import (
    GitGuardError,
    ConfigError,
    AuditWriteError,
    AuditIntegrityError,
    RecordValidationError,
    SessionNotFoundError,
    TaskNotFoundError,
    InvalidTransitionError,
    TaskDeletionError
)

from .models import (
    OperationKind,
    Severity,
    BlockCategory,
    SessionStatus,
    TaskStatus,
    TaskPriority,
    StagedFile,
    Operation,
    ValidationResult,
    Decision,
    SessionError,
    SessionState,
    Task,
    TaskList,
    utc_now
)

from .config import GuardConfig, Limits, RuleSpec, DEFAULT_POLICY_PATH

from .audit import AuditEvent, AuditEventName, AuditLevel, AuditSink

from .prohibitions import ProhibitionMatcher, Violation

from .rate_limiter import RateLimiter, RateCheck, RateWindow, GLOBAL_SCOPE

from .validators import ValidationContext, ValidatorChain

from .session import (
    SessionStore,
    SessionStateMachine,
    SessionLoad,
    generate_session_id
)

from .tasks import TaskStore, generate_task_id

from .rollback import RollbackAdvisor, RollbackAdvice, RollbackStrategy, recommend

from .guard import Guard

__all__ = [
    "__version__",

    # Errors
    "GitGuardError",
    "ConfigError",
    "AuditWriteError",
    "AuditIntegrityError",
    "RecordValidationError",
    "SessionNotFoundError",
    "TaskNotFoundError",
    "InvalidTransitionError",
    "TaskDeletionError",

    # Enums
    "OperationKind",
    "Severity",
    "BlockCategory",
    "SessionStatus",
    "TaskStatus",
    "TaskPriority",

    # Models
    "StagedFile",
    "Operation",
    "ValidationResult",
    "Decision",
    "SessionError",
    "SessionState",
    "Task",
    "TaskList",
    "utc_now",

    # Configuration
    "GuardConfig",
    "Limits",
    "RuleSpec",
    "DEFAULT_POLICY_PATH",

    # Components
    "AuditEvent",
    "AuditEventName",
    "AuditLevel",
    "AuditSink",
    "ProhibitionMatcher",
    "Violation",
    "RateLimiter",
    "RateCheck",
    "RateWindow",
    "GLOBAL_SCOPE",
    "ValidationContext",
    "ValidatorChain",
    "SessionStore",
    "SessionStateMachine",
    "SessionLoad",
    "generate_session_id",
    "TaskStore",
    "generate_task_id",
    "RollbackAdvisor",
    "RollbackAdvice",
    "RollbackStrategy",
    "recommend",

    # Engine
    "Guard",
]
