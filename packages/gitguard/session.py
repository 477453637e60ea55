"""
Session State Machine - lifecycle of one working session

State Flow:
    IDLE → RUNNING → (PAUSED | COMPLETED | FAILED)
    PAUSED → RUNNING (resume) | FAILED

COMPLETED and FAILED are terminal for a session id. A new session may point
at a terminal one through resumedFrom, it never reopens it.

Key Principles:
- Isolation: only the session itself may change its record
- Staleness: a RUNNING record not refreshed within the staleness interval
  blocks every transition until recover_stale() starts a successor session
- Every accepted transition refreshes lastUpdated in the same write
- Corrupt records are recovered from history snapshots, never silently dropped
"""

from dataclasses import dataclass, field
from datetime import datetime, timedelta
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Tuple
import json
import logging
import os
import re
import uuid

from pydantic import ValidationError

from .errors import InvalidTransitionError, SessionNotFoundError
from .locks import KeyedLocks
from .models import (
    BlockCategory,
    Decision,
    SessionError,
    SessionState,
    SessionStatus,
    TERMINAL_STATUSES,
    utc_now,
)
from .schema import validate_document

logger = logging.getLogger(__name__)

SESSION_ID_PATTERN = re.compile(r"^[A-Za-z0-9][A-Za-z0-9_.-]{0,127}$")

# Error code of a session failed by a critical prohibition
ABORT_ERROR_CODE = "critical_prohibition"


def generate_session_id() -> str:
    return f"session_{uuid.uuid4().hex[:16]}"


# ==================== Storage ====================

class SessionStore:
    """
    File-backed session records.

    Layout:
        <state_dir>/<session_id>.json              live record
        <state_dir>/history/<session_id>/NNNNNN.json snapshot per write
    """

    def __init__(self, state_dir: Path):
        self.state_dir = Path(state_dir)
        self.history_root = self.state_dir / "history"
        self.state_dir.mkdir(parents=True, exist_ok=True)

    def record_path(self, session_id: str) -> Path:
        _check_session_id(session_id)
        return self.state_dir / f"{session_id}.json"

    def history_dir(self, session_id: str) -> Path:
        _check_session_id(session_id)
        return self.history_root / session_id

    def exists(self, session_id: str) -> bool:
        return self.record_path(session_id).exists()

    def read(self, session_id: str) -> Tuple[Optional[SessionState], List[str]]:
        """
        Read and validate the live record.

        Returns:
            (state, []) when valid, (None, defects) when corrupt

        Raises:
            SessionNotFoundError: If no record file exists
        """
        path = self.record_path(session_id)
        if not path.exists():
            raise SessionNotFoundError(f"No session record for {session_id}")
        state, defects = parse_session_document(path.read_bytes())
        if state is not None and state.session_id != session_id:
            return None, [f"sessionId {state.session_id!r} does not match record name {session_id!r}"]
        return state, defects

    def save(self, state: SessionState):
        """Write the live record atomically and snapshot it into history."""
        payload = json.dumps(state.to_document(), indent=2, sort_keys=True).encode("utf-8")

        path = self.record_path(state.session_id)
        tmp_path = path.with_suffix(".json.tmp")
        with open(tmp_path, "wb") as f:
            f.write(payload)
            f.flush()
            os.fsync(f.fileno())
        os.replace(tmp_path, path)

        history = self.history_dir(state.session_id)
        history.mkdir(parents=True, exist_ok=True)
        sequence = len(list(history.glob("*.json"))) + 1
        (history / f"{sequence:06d}.json").write_bytes(payload)

    def snapshots(self, session_id: str) -> List[Path]:
        """History snapshots, newest first."""
        history = self.history_dir(session_id)
        if not history.exists():
            return []
        return sorted(history.glob("*.json"), reverse=True)

    def quarantine(self, session_id: str, now: datetime) -> Optional[Path]:
        """Move a corrupt live record aside so it is kept for inspection."""
        path = self.record_path(session_id)
        if not path.exists():
            return None
        target = path.with_name(f"{session_id}.corrupt-{now.strftime('%Y%m%dT%H%M%S%f')}.json.bad")
        os.replace(path, target)
        return target


def parse_session_document(raw: bytes) -> Tuple[Optional[SessionState], List[str]]:
    """Parse bytes into a SessionState, collecting every defect found."""
    try:
        document = json.loads(raw.decode("utf-8"))
    except (UnicodeDecodeError, json.JSONDecodeError) as e:
        return None, [f"not valid JSON: {e}"]

    defects = validate_document("session", document)
    if defects:
        return None, defects

    try:
        return SessionState.model_validate(document), []
    except ValidationError as e:
        return None, [f"{'/'.join(str(p) for p in err['loc'])}: {err['msg']}" for err in e.errors()]


def _failure_entry(error: Dict[str, Any], now: datetime) -> SessionError:
    return SessionError(
        timestamp=now,
        code=str(error.get("code", "session_failed")),
        message=str(error.get("message", "Session marked failed")),
        details=dict(error.get("details", {})),
    )


def _check_session_id(session_id: str):
    if not session_id or not SESSION_ID_PATTERN.match(session_id):
        raise ValueError(f"Invalid session id: {session_id!r}")


# ==================== State Machine ====================

@dataclass(frozen=True)
class SessionLoad:
    """Result of loading a record, including any recovery that happened."""
    state: SessionState
    recovered: bool = False
    defects: List[str] = field(default_factory=list)
    recovered_from: Optional[str] = None  # snapshot name, None if nothing usable


class SessionStateMachine:
    """
    Enforces session transitions against the persisted record.

    All reads and writes of a record happen under that session's lock;
    sessions never contend with each other.
    """

    VALID_TRANSITIONS = {
        SessionStatus.IDLE: {SessionStatus.RUNNING},
        SessionStatus.RUNNING: {
            SessionStatus.PAUSED,
            SessionStatus.COMPLETED,
            SessionStatus.FAILED,
        },
        SessionStatus.PAUSED: {
            SessionStatus.RUNNING,  # resume
            SessionStatus.FAILED,
        },
        SessionStatus.COMPLETED: set(),  # Terminal state
        SessionStatus.FAILED: set(),  # Terminal state
    }

    def __init__(
        self,
        store: SessionStore,
        staleness: timedelta = timedelta(minutes=5),
        clock: Callable[[], datetime] = utc_now,
        on_recovered: Optional[Callable[[str, SessionLoad], None]] = None,
    ):
        """
        Initialize state machine.

        Args:
            store: Persistence for session records
            staleness: Max age of a RUNNING record's lastUpdated
            clock: Source of "now" when callers do not pass one
            on_recovered: Called with (session_id, SessionLoad) after a
                corrupt record was replaced, wherever the load happened
        """
        self.store = store
        self.staleness = staleness
        self.clock = clock
        self.on_recovered = on_recovered
        self._locks = KeyedLocks()

    # ==================== Lifecycle ====================

    def start(
        self,
        current_task: Optional[str] = None,
        resumed_from: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> SessionState:
        """
        Create a new IDLE session.

        Args:
            current_task: Optional task description
            resumed_from: Terminal session this one continues

        Raises:
            InvalidTransitionError: If resumed_from is not terminal
        """
        now = now or self.clock()
        checkpoint = None

        if resumed_from is not None:
            previous = self.load(resumed_from, now=now).state
            if not previous.is_terminal():
                raise InvalidTransitionError(
                    f"Cannot resume from {resumed_from}: status is {previous.status.value}, not terminal"
                )
            checkpoint = previous.checkpoint
            current_task = current_task or previous.current_task

        state = SessionState(
            session_id=generate_session_id(),
            status=SessionStatus.IDLE,
            last_updated=now,
            created_at=now,
            current_task=current_task,
            checkpoint=checkpoint,
            resumed_from=resumed_from,
        )
        with self._locks.hold(state.session_id):
            self.store.save(state)
        logger.info(f"Session {state.session_id} created (resumed_from={resumed_from})")
        return state

    def load(self, session_id: str, now: Optional[datetime] = None) -> SessionLoad:
        """
        Load a record, recovering it if it fails validation.

        Raises:
            SessionNotFoundError: If the session never existed
        """
        now = now or self.clock()
        with self._locks.hold(session_id):
            return self._load_locked(session_id, now)

    def current(self, session_id: str, now: Optional[datetime] = None) -> Optional[SessionState]:
        """The session's record, or None if there is none."""
        try:
            return self.load(session_id, now=now).state
        except SessionNotFoundError:
            return None

    def is_stale(self, state: SessionState, now: Optional[datetime] = None) -> bool:
        return state.is_stale(now or self.clock(), self.staleness)

    # ==================== Transitions ====================

    def transition(
        self,
        session_id: str,
        new_status: Any,
        actor_session_id: Optional[str] = None,
        checkpoint: Optional[Dict[str, Any]] = None,
        error: Optional[Dict[str, Any]] = None,
        now: Optional[datetime] = None,
        on_decided: Optional[Callable[[Decision], None]] = None,
    ) -> Decision:
        """
        Request a status change.

        Args:
            session_id: Record to change
            new_status: Target status (SessionStatus or its string value)
            actor_session_id: Session making the request (default: session_id)
            checkpoint: Replacement checkpoint (None keeps the current one)
            error: {"code", "message", "details"?} appended when failing
            on_decided: Called with the decision before anything is persisted;
                if it raises, the transition is abandoned

        Returns:
            Decision (denials carry blocked_by, never raise)
        """
        now = now or self.clock()
        actor = actor_session_id or session_id

        with self._locks.hold(session_id):
            decision, new_state = self._decide(session_id, new_status, actor, checkpoint, error, now)
            if on_decided is not None:
                on_decided(decision)
            if new_state is not None:
                self.store.save(new_state)
                logger.info(
                    f"Session {session_id}: {decision.details['from_status']} -> {new_state.status.value}"
                )
            return decision

    def abort(
        self,
        session_id: str,
        error: Dict[str, Any],
        now: Optional[datetime] = None,
    ) -> Decision:
        """
        Force a non-terminal record to FAILED.

        Neither staleness nor the transition table is consulted; an IDLE or
        stale RUNNING session fails all the same. A terminal record is left
        as it is.

        Args:
            session_id: Record to fail
            error: {"code", "message", "details"?} appended to errors
        """
        now = now or self.clock()
        with self._locks.hold(session_id):
            try:
                state = self._load_locked(session_id, now).state
            except SessionNotFoundError:
                return Decision.deny("session_not_found", BlockCategory.SESSION, session_id=session_id)

            # A corrupt terminal record comes back as a successor under a new id
            if state.session_id != session_id or state.is_terminal():
                return Decision.deny(
                    "session_terminal",
                    BlockCategory.SESSION,
                    session_id=session_id,
                    requested_status=SessionStatus.FAILED.value,
                )

            self.store.save(state.model_copy(update={
                "status": SessionStatus.FAILED,
                "last_updated": now,
                "errors": list(state.errors) + [_failure_entry(error, now)],
            }))

        logger.error(f"Session {session_id}: {state.status.value} -> failed (forced, {error.get('code')})")
        return Decision.allow(
            session_id=session_id,
            from_status=state.status.value,
            to_status=SessionStatus.FAILED.value,
            last_updated=now.isoformat(),
            forced=True,
        )

    def was_aborted(self, session_id: str) -> bool:
        """True when the persisted record failed through a critical abort."""
        with self._locks.hold(session_id):
            try:
                state, _ = self.store.read(session_id)
            except SessionNotFoundError:
                return False
        if state is None or state.status != SessionStatus.FAILED:
            return False
        return any(entry.code == ABORT_ERROR_CODE for entry in state.errors)

    def heartbeat(
        self,
        session_id: str,
        now: Optional[datetime] = None,
        current_task: Optional[str] = None,
    ) -> Decision:
        """Refresh lastUpdated of a RUNNING, non-stale session."""
        now = now or self.clock()
        with self._locks.hold(session_id):
            try:
                state = self._load_locked(session_id, now).state
            except SessionNotFoundError:
                return Decision.deny("session_not_found", BlockCategory.SESSION, session_id=session_id)

            if state.status != SessionStatus.RUNNING:
                return Decision.deny(
                    "session_not_running",
                    BlockCategory.SESSION,
                    session_id=session_id,
                    status=state.status.value,
                )
            if state.is_stale(now, self.staleness):
                return self._stale_decision(state, now)

            update: Dict[str, Any] = {"last_updated": now}
            if current_task is not None:
                update["current_task"] = current_task
            self.store.save(state.model_copy(update=update))
            return Decision.allow(session_id=session_id, last_updated=now.isoformat())

    def recover_stale(
        self,
        session_id: str,
        actor_session_id: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> SessionState:
        """
        Start a RUNNING successor for a stale session.

        The stale record is left untouched; the successor references it via
        resumedFrom and carries its checkpoint forward.

        Raises:
            InvalidTransitionError: If the session is not stale, or the actor
                is a different session
        """
        now = now or self.clock()
        actor = actor_session_id or session_id
        if actor != session_id:
            raise InvalidTransitionError(f"Session {actor} may not recover session {session_id}")

        with self._locks.hold(session_id):
            old = self._load_locked(session_id, now).state
            if not old.is_stale(now, self.staleness):
                raise InvalidTransitionError(
                    f"Session {session_id} is not stale (status {old.status.value})"
                )

        checkpoint = dict(old.checkpoint or {})
        checkpoint["recovery"] = {
            "reason": "stale_session",
            "recovered_from": old.session_id,
            "stale_seconds": int(old.age(now).total_seconds()),
            "recovered_at": now.isoformat(),
        }
        successor = SessionState(
            session_id=generate_session_id(),
            status=SessionStatus.RUNNING,
            last_updated=now,
            created_at=now,
            current_task=old.current_task,
            checkpoint=checkpoint,
            resumed_from=old.session_id,
        )
        with self._locks.hold(successor.session_id):
            self.store.save(successor)
        logger.warning(
            f"Session {session_id} was stale; continuing as {successor.session_id}"
        )
        return successor

    # ==================== Internals ====================

    def _decide(
        self,
        session_id: str,
        new_status: Any,
        actor: str,
        checkpoint: Optional[Dict[str, Any]],
        error: Optional[Dict[str, Any]],
        now: datetime,
    ) -> Tuple[Decision, Optional[SessionState]]:
        if actor != session_id:
            logger.warning(f"Session {actor} attempted to modify session {session_id}")
            return Decision.deny(
                "session_isolation",
                BlockCategory.SESSION,
                session_id=session_id,
                actor_session_id=actor,
            ), None

        try:
            state = self._load_locked(session_id, now).state
        except SessionNotFoundError:
            return Decision.deny("session_not_found", BlockCategory.SESSION, session_id=session_id), None

        try:
            target = SessionStatus(new_status)
        except ValueError:
            return Decision.deny(
                "session_status_invalid",
                BlockCategory.SESSION,
                session_id=session_id,
                requested_status=str(new_status),
            ), None

        if state.status in TERMINAL_STATUSES:
            return Decision.deny(
                "session_terminal",
                BlockCategory.SESSION,
                session_id=session_id,
                status=state.status.value,
                requested_status=target.value,
            ), None

        if state.is_stale(now, self.staleness):
            return self._stale_decision(state, now), None

        if target not in self.VALID_TRANSITIONS[state.status]:
            return Decision.deny(
                "session_transition_invalid",
                BlockCategory.SESSION,
                session_id=session_id,
                from_status=state.status.value,
                requested_status=target.value,
            ), None

        errors = list(state.errors)
        if target == SessionStatus.FAILED:
            errors.append(_failure_entry(error or {}, now))

        new_state = state.model_copy(update={
            "status": target,
            "last_updated": now,
            "checkpoint": checkpoint if checkpoint is not None else state.checkpoint,
            "errors": errors,
        })
        decision = Decision.allow(
            session_id=session_id,
            from_status=state.status.value,
            to_status=target.value,
            last_updated=now.isoformat(),
        )
        return decision, new_state

    def _stale_decision(self, state: SessionState, now: datetime) -> Decision:
        age = int(state.age(now).total_seconds())
        logger.warning(f"Session {state.session_id} is stale ({age}s since last update)")
        return Decision.deny(
            "session_stale",
            BlockCategory.SESSION,
            session_id=state.session_id,
            stale_seconds=age,
            max_age_seconds=int(self.staleness.total_seconds()),
        )

    def _load_locked(self, session_id: str, now: datetime) -> SessionLoad:
        state, defects = self.store.read(session_id)
        if state is not None:
            return SessionLoad(state=state)
        loaded = self._recover_corrupt(session_id, defects, now)
        if self.on_recovered is not None:
            self.on_recovered(session_id, loaded)
        return loaded

    def _recover_corrupt(self, session_id: str, defects: List[str], now: datetime) -> SessionLoad:
        """
        Replace a corrupt record.

        Newest structurally valid snapshot wins and re-enters RUNNING with a
        checkpoint describing the recovery. A terminal snapshot cannot be
        reopened, so it gets a successor session instead. With no usable
        snapshot a fresh IDLE record is written and the loss is logged.
        """
        logger.error(f"Session record {session_id} is corrupt: {'; '.join(defects)}")
        quarantined = self.store.quarantine(session_id, now)

        for snapshot in self.store.snapshots(session_id):
            prior, snapshot_defects = parse_session_document(snapshot.read_bytes())
            if prior is None or prior.session_id != session_id:
                logger.warning(f"Skipping unusable snapshot {snapshot.name}: {snapshot_defects}")
                continue

            checkpoint = dict(prior.checkpoint or {})
            checkpoint["recovery"] = {
                "reason": "corrupt_record",
                "snapshot": snapshot.name,
                "defects": defects,
                "quarantined_as": quarantined.name if quarantined else None,
                "recovered_at": now.isoformat(),
            }
            errors = list(prior.errors) + [SessionError(
                timestamp=now,
                code="state_corrupted",
                message=f"Record failed validation; restored from snapshot {snapshot.name}",
                details={"defects": defects},
            )]

            if prior.is_terminal():
                recovered = SessionState(
                    session_id=generate_session_id(),
                    status=SessionStatus.RUNNING,
                    last_updated=now,
                    created_at=now,
                    current_task=prior.current_task,
                    checkpoint=checkpoint,
                    errors=errors,
                    resumed_from=prior.session_id,
                )
                # Put the terminal record back; it was valid in history
                self.store.save(prior)
            else:
                recovered = prior.model_copy(update={
                    "status": SessionStatus.RUNNING,
                    "last_updated": now,
                    "checkpoint": checkpoint,
                    "errors": errors,
                })

            self.store.save(recovered)
            logger.warning(
                f"Session {session_id} recovered from snapshot {snapshot.name} "
                f"as {recovered.session_id}"
            )
            return SessionLoad(state=recovered, recovered=True, defects=defects, recovered_from=snapshot.name)

        fresh = SessionState(
            session_id=session_id,
            status=SessionStatus.IDLE,
            last_updated=now,
            created_at=now,
            errors=[SessionError(
                timestamp=now,
                code="state_lost",
                message="Record failed validation and no valid snapshot exists",
                details={"defects": defects},
            )],
        )
        self.store.save(fresh)
        logger.error(f"Session {session_id} state lost; started a fresh idle record")
        return SessionLoad(state=fresh, recovered=True, defects=defects, recovered_from=None)
