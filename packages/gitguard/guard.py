"""
gitguard Guard - policy enforcement engine

Philosophy: the Guard is the JUDGE, not the EXECUTOR.
- Evaluates one proposed Operation at a time
- Returns a Decision: allowed, or blocked_by a named rule
- Writes exactly one audit event per decision before returning it
- NEVER runs git; an executor carries out allowed operations and reports
  back through record_completion()

Evaluation order (first block wins):
    1. Aborted session     -> session_aborted
    2. Prohibition matcher -> rule id (critical aborts the session)
    3. Rate limiter        -> rate_limit.<category>
    4. Validator chain     -> validator id
    5. Apply               -> state transition / session heartbeat

Key Principles:
- Prohibitions and rate limits are checked before any validator runs
- Warnings never block; they ride along in the success event's details
- policy_hash in every decision pins it to the rule table that produced it
- Audit write failure is fatal: AuditWriteError propagates and nothing is
  persisted for the operation. A critical abort is the exception: the
  session is failed before the event is written and stays failed
- An abort is persisted in the session record, so every Guard over the same
  state directory refuses the session
"""

from datetime import datetime
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Set, Tuple
import logging
import threading

from .audit import AuditEvent, AuditEventName, AuditLevel, AuditSink, DEFAULT_MAX_FILE_BYTES, DEFAULT_RETENTION
from .config import GuardConfig
from .errors import RecordValidationError
from .models import (
    BlockCategory,
    COMMIT_KINDS,
    Decision,
    Operation,
    OperationKind,
    SessionState,
    utc_now,
)
from .prohibitions import ProhibitionMatcher, Violation
from .rate_limiter import GLOBAL_SCOPE, RateCheck, RateLimiter
from .session import ABORT_ERROR_CODE, SESSION_ID_PATTERN, SessionLoad, SessionStateMachine, SessionStore
from .tasks import TaskStore
from .validators import (
    SESSION_TARGET,
    TASK_TARGET_PREFIX,
    ValidationContext,
    ValidatorChain,
    first_failure,
    warnings_of,
)

logger = logging.getLogger(__name__)


_EVENT_FOR_CATEGORY = {
    BlockCategory.SESSION: AuditEventName.SESSION_BLOCKED,
    BlockCategory.PROHIBITION: AuditEventName.PROHIBITION_BLOCKED,
    BlockCategory.RATE_LIMIT: AuditEventName.RATE_LIMIT_EXCEEDED,
    BlockCategory.VALIDATION: AuditEventName.VALIDATION_FAILED,
}


class Guard:
    """
    Policy enforcement engine - evaluates operations.

    Flow:
        1. guard = Guard(state_dir, audit_dir)
        2. session = guard.start_session()
        3. guard.evaluate(operation) -> Decision
        4. executor runs allowed operations, then guard.record_completion()

    Each Guard owns its rate windows and abort list; two Guards never share
    counters.
    """

    def __init__(
        self,
        state_dir: Path,
        audit_dir: Path,
        config: Optional[GuardConfig] = None,
        tasks_path: Optional[Path] = None,
        clock: Callable[[], datetime] = utc_now,
        max_audit_bytes: int = DEFAULT_MAX_FILE_BYTES,
        audit_retention: int = DEFAULT_RETENTION,
    ):
        """
        Initialize Guard.

        Args:
            state_dir: Directory for session records and their history
            audit_dir: Directory for the audit log
            config: Policy snapshot (default: bundled policy)
            tasks_path: Task record file (default: <state_dir>/tasks.json)
            clock: Source of "now" for session bookkeeping and audit stamps
            max_audit_bytes: Size ceiling per audit segment
            audit_retention: Archived session logs to keep
        """
        self.config = config or GuardConfig.default()
        self.clock = clock

        self.matcher = ProhibitionMatcher(self.config)
        self.rate_limiter = RateLimiter(self.config.rate_limits, self.config.limits.rate_window)
        self.validators = ValidatorChain(self.config)
        self.sessions = SessionStateMachine(
            SessionStore(state_dir),
            staleness=self.config.limits.staleness,
            clock=clock,
            on_recovered=self._session_recovered,
        )
        self.tasks = TaskStore(tasks_path or Path(state_dir) / "tasks.json", clock=clock)
        self.audit = AuditSink(audit_dir, max_file_bytes=max_audit_bytes, retention=audit_retention)

        self._aborted: Set[str] = set()
        self._aborted_lock = threading.Lock()

    # ==================== Evaluation ====================

    def evaluate(self, operation: Operation) -> Decision:
        """
        Decide whether operation may proceed.

        Args:
            operation: Proposed operation

        Returns:
            Decision (already written to the audit log)

        Raises:
            AuditWriteError: If the decision could not be logged
        """
        base = {
            "policy_hash": self.config.policy_hash,
            "policy_version": self.config.version,
        }

        # Check 1: Aborted session
        if self.is_aborted(operation.session_id):
            decision = Decision.deny(
                "session_aborted",
                BlockCategory.SESSION,
                session_id=operation.session_id,
                reason="Session was aborted by a critical prohibition; start a new session",
                **base,
            )
            return self._log(operation, decision, error=decision.details["reason"])

        # Check 2: Prohibitions (absolute, skip everything else)
        violation = self.matcher.check(operation)
        if violation is not None:
            return self._block_prohibited(operation, violation, base)

        # Check 3: Rate limits
        category, scope = self.rate_key(operation)
        check = self.rate_limiter.acquire(category, scope, operation.timestamp)
        if not check.admitted:
            return self._block_rate_limited(operation, check, base)

        # Check 4: Validator chain
        context = ValidationContext(now=operation.timestamp, session=self._session_for(operation))
        results = self.validators.validate(operation, context)
        warnings = warnings_of(results)
        base["validations"] = [r.to_dict() for r in results]

        failure = first_failure(results)
        if failure is not None:
            decision = Decision.deny(
                failure.id,
                BlockCategory.VALIDATION,
                warnings=warnings,
                error=failure.error,
                suggestion=failure.suggestion,
                **base,
            )
            return self._log(operation, decision, error=failure.error)

        # Step 5: Apply
        if operation.kind == OperationKind.STATE_UPDATE:
            return self._apply_state_update(operation, warnings, base)

        decision = Decision.allow(warnings=warnings, rate_scope=scope, **base)
        decision = self._log(operation, decision)

        if operation.kind in COMMIT_KINDS:
            self.sessions.heartbeat(operation.session_id, now=operation.timestamp)
        return decision

    def rate_key(self, operation: Operation) -> Tuple[str, str]:
        """
        Rate category and scope of an operation.

        A plain commit aimed at a protected branch counts as commit_main.
        Per-branch categories are scoped by branch name, all others are global.
        """
        category = operation.kind.value
        if operation.kind == OperationKind.COMMIT and self.config.is_protected_branch(operation.target):
            category = OperationKind.COMMIT_MAIN.value

        if category in self.config.per_branch_categories:
            return category, operation.target
        return category, GLOBAL_SCOPE

    # ==================== Sessions ====================

    def start_session(
        self,
        current_task: Optional[str] = None,
        resumed_from: Optional[str] = None,
    ) -> SessionState:
        """
        Create a new IDLE session and rotate the audit log to it.

        Raises:
            InvalidTransitionError: If resumed_from is not terminal
            AuditWriteError: If rotation or the start event fails
        """
        state = self.sessions.start(current_task=current_task, resumed_from=resumed_from, now=self.clock())
        archived = self.audit.rotate(state.session_id)
        self._emit(
            AuditEventName.SESSION_STARTED,
            AuditLevel.INFO,
            session_id=state.session_id,
            success=True,
            details={
                "status": state.status.value,
                "resumed_from": resumed_from,
                "archived_log": archived.name if archived else None,
                "policy_hash": self.config.policy_hash,
            },
        )
        return state

    def recover_session(self, session_id: str) -> SessionLoad:
        """
        Load a session record, recovering it if it is corrupt.

        A recovery is logged as session_recovered, here or wherever else
        the record is first read.

        Raises:
            SessionNotFoundError: If the session never existed
        """
        return self.sessions.load(session_id, now=self.clock())

    def recover_stale(self, session_id: str) -> SessionState:
        """
        Continue a stale session as a new RUNNING session.

        Raises:
            InvalidTransitionError: If the session is not stale
        """
        successor = self.sessions.recover_stale(session_id, now=self.clock())
        self.audit.rotate(successor.session_id)
        self._emit(
            AuditEventName.SESSION_RECOVERED,
            AuditLevel.WARN,
            session_id=successor.session_id,
            success=True,
            details={
                "reason": "stale_session",
                "original_session_id": session_id,
                "status": successor.status.value,
            },
        )
        return successor

    def is_aborted(self, session_id: str) -> bool:
        """True if a critical prohibition aborted the session, in this Guard or a persisted record."""
        with self._aborted_lock:
            if session_id in self._aborted:
                return True
        return self._has_record(session_id) and self.sessions.was_aborted(session_id)

    # ==================== Executor Feedback ====================

    def record_completion(
        self,
        operation: Operation,
        success: bool,
        error: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
    ) -> AuditEvent:
        """
        Log the executor's outcome for an allowed operation.

        Raises:
            AuditWriteError: If the event could not be logged
        """
        return self._emit(
            AuditEventName.OPERATION_COMPLETED,
            AuditLevel.INFO if success else AuditLevel.ERROR,
            session_id=operation.session_id,
            success=success,
            operation=operation.summary(),
            details=details,
            error=error,
        )

    # ==================== Internals ====================

    def _block_prohibited(self, operation: Operation, violation: Violation, base: Dict[str, Any]) -> Decision:
        decision = Decision.deny(
            violation.rule_id,
            BlockCategory.PROHIBITION,
            severity=violation.severity.value,
            message=violation.message,
            matched=violation.matched,
            subject=violation.subject,
            session_aborted=violation.aborts_session,
            **base,
        )
        if not violation.aborts_session:
            return self._log(operation, decision, level=AuditLevel.WARN, error=violation.message)

        # Abort is persisted before the event is written
        failed = self._abort(operation, violation)
        decision = self._log(operation, decision, level=AuditLevel.ERROR, error=violation.message)
        if failed is not None and failed.allowed:
            self._emit(
                AuditEventName.STATE_TRANSITION,
                AuditLevel.ERROR,
                session_id=operation.session_id,
                success=True,
                operation=operation.summary(),
                details={**failed.details, "reason": ABORT_ERROR_CODE, "rule_id": violation.rule_id},
            )
        return decision

    def _block_rate_limited(self, operation: Operation, check: RateCheck, base: Dict[str, Any]) -> Decision:
        retry_after = check.retry_after(operation.timestamp)
        decision = Decision.deny(
            check.limit_id,
            BlockCategory.RATE_LIMIT,
            rate_category=check.category,
            scope=check.scope,
            count=check.count,
            ceiling=check.ceiling,
            retry_at=check.retry_at.isoformat(),
            retry_after_seconds=retry_after,
            **base,
        )
        return self._log(
            operation,
            decision,
            error=f"Rate limit {check.ceiling}/window for {check.category} reached; retry in {retry_after:.1f}s",
        )

    def _abort(self, operation: Operation, violation: Violation) -> Optional[Decision]:
        """
        Refuse further operations from the session and force its record to FAILED.

        Returns:
            The forced transition's Decision, None when there is no record
        """
        with self._aborted_lock:
            self._aborted.add(operation.session_id)
        logger.error(f"Session {operation.session_id} aborted by critical prohibition {violation.rule_id}")

        if not self._has_record(operation.session_id):
            return None
        return self.sessions.abort(
            operation.session_id,
            error={
                "code": ABORT_ERROR_CODE,
                "message": violation.message or f"Critical prohibition {violation.rule_id}",
                "details": {"rule_id": violation.rule_id, "subject": violation.subject},
            },
            now=operation.timestamp,
        )

    def _session_recovered(self, session_id: str, loaded: SessionLoad):
        """Log a corrupt-record recovery, wherever the record was read."""
        self._emit(
            AuditEventName.SESSION_RECOVERED,
            AuditLevel.WARN,
            session_id=loaded.state.session_id,
            success=True,
            details={
                "reason": "corrupt_record",
                "original_session_id": session_id,
                "recovered_from": loaded.recovered_from,
                "defects": loaded.defects,
                "status": loaded.state.status.value,
            },
            error="; ".join(loaded.defects),
        )

    def _apply_state_update(self, operation: Operation, warnings: List[str], base: Dict[str, Any]) -> Decision:
        status = operation.payload_field("status")
        holder: Dict[str, Decision] = {}

        def on_decided(inner: Decision):
            final = Decision(
                allowed=inner.allowed,
                blocked_by=inner.blocked_by,
                warnings=tuple(warnings) + inner.warnings,
                details={**base, **inner.details},
            )
            event = AuditEventName.STATE_TRANSITION if final.allowed else None
            holder["decision"] = self._log(operation, final, event=event)

        if operation.target == SESSION_TARGET:
            session_id = operation.payload_field("session_id") or operation.session_id
            if not SESSION_ID_PATTERN.match(session_id):
                on_decided(Decision.deny("session_not_found", BlockCategory.SESSION, session_id=session_id))
            else:
                self.sessions.transition(
                    session_id,
                    status,
                    actor_session_id=operation.session_id,
                    checkpoint=operation.payload_field("checkpoint"),
                    error=operation.payload_field("error"),
                    now=operation.timestamp,
                    on_decided=on_decided,
                )
        else:
            task_id = operation.target[len(TASK_TARGET_PREFIX):]
            try:
                self.tasks.transition(
                    task_id,
                    status,
                    session_id=operation.session_id,
                    now=operation.timestamp,
                    on_decided=on_decided,
                )
            except RecordValidationError as e:
                if "decision" in holder:
                    raise
                logger.error(f"Task record unreadable: {e}")
                on_decided(Decision.deny(
                    "task_record_invalid",
                    BlockCategory.VALIDATION,
                    task_id=task_id,
                    defects=e.defects,
                    error=str(e),
                ))
        return holder["decision"]

    def _session_for(self, operation: Operation) -> Optional[SessionState]:
        if operation.kind not in COMMIT_KINDS or not self._has_record(operation.session_id):
            return None
        return self.sessions.current(operation.session_id, now=operation.timestamp)

    def _has_record(self, session_id: str) -> bool:
        return bool(session_id) and bool(SESSION_ID_PATTERN.match(session_id)) and self.sessions.store.exists(session_id)

    def _log(
        self,
        operation: Operation,
        decision: Decision,
        level: Optional[AuditLevel] = None,
        event: Optional[AuditEventName] = None,
        error: Optional[str] = None,
    ) -> Decision:
        """Write the one audit event for decision, then hand the decision back."""
        if event is None:
            if decision.allowed:
                event = AuditEventName.OPERATION_ALLOWED
            else:
                event = _EVENT_FOR_CATEGORY[decision.block_category]
        if level is None:
            level = AuditLevel.INFO if decision.allowed else AuditLevel.WARN

        details = dict(decision.details)
        details["allowed"] = decision.allowed
        details["blocked_by"] = decision.blocked_by
        details["warnings"] = list(decision.warnings)

        self._emit(
            event,
            level,
            session_id=operation.session_id,
            success=decision.allowed,
            operation=operation.summary(),
            details=details,
            error=error if error is not None else details.get("error"),
        )

        if decision.allowed:
            logger.info(f"ALLOW {operation.kind.value} {operation.target} ({len(decision.warnings)} warnings)")
        else:
            logger.warning(f"DENY {operation.kind.value} {operation.target}: {decision.blocked_by}")
        return decision

    def _emit(
        self,
        event: AuditEventName,
        level: AuditLevel,
        session_id: Optional[str],
        success: bool,
        operation: Optional[Dict[str, Any]] = None,
        details: Optional[Dict[str, Any]] = None,
        error: Optional[str] = None,
    ) -> AuditEvent:
        audit_event = AuditEvent.create(
            event=event,
            level=level,
            session_id=session_id,
            success=success,
            operation=operation,
            details=details,
            error=error,
            timestamp=self.clock(),
        )
        self.audit.emit(audit_event)
        return audit_event
