"""
gitguard exceptions.

Policy outcomes (prohibitions, validation failures, rate limits) are never
raised - they come back as Decisions. Exceptions are reserved for conditions
the caller cannot treat as a normal verdict.
"""


class GitGuardError(Exception):
    """Base class for all gitguard errors."""
    pass


class ConfigError(GitGuardError):
    """Raised when the policy file is missing or malformed."""
    pass


class AuditWriteError(GitGuardError):
    """
    Raised when an audit event cannot be committed to storage.

    Fatal for the operation being evaluated: the action must not proceed
    without its audit record.
    """
    pass


class AuditIntegrityError(GitGuardError):
    """Raised when an audit segment was modified or removed in place."""

    def __init__(self, defects):
        self.defects = list(defects)
        super().__init__("Audit log integrity check failed: " + "; ".join(self.defects))


class RecordValidationError(GitGuardError):
    """Raised when a session or task document fails schema validation."""

    def __init__(self, kind: str, defects):
        self.kind = kind
        self.defects = list(defects)
        super().__init__(f"Invalid {kind} record: " + "; ".join(self.defects))


class SessionNotFoundError(GitGuardError):
    """Raised when no record exists for a session id."""
    pass


class TaskNotFoundError(GitGuardError):
    """Raised when a task id is not present in the task record."""
    pass


class InvalidTransitionError(GitGuardError):
    """Raised when a requested lifecycle change is not allowed."""
    pass


class TaskDeletionError(GitGuardError):
    """Raised when a write would drop entries from the task record."""
    pass
