"""
Audit Sink - append-only decision log

The system of record for every decision the Guard makes.

Philosophy:
- Append-only: lines are never edited or deleted in place
- Log-then-act: an event is durable (flushed + fsynced) before control
  returns, so a crash after a decision still leaves the decision on disk
- Fail closed: if an event cannot be written, the operation cannot proceed

Layout:
    <audit_dir>/audit.jsonl               active segment 0
    <audit_dir>/audit.<n>.jsonl           further segments of the same session
    <audit_dir>/<segment>.digest          line count + chained SHA-256 per segment
    <audit_dir>/active_session            session the active log belongs to
    <audit_dir>/archive/<seq>-<session_id>/     rotated logs of earlier sessions

Integrity: each digest chains the SHA-256 of every line written. An edited,
truncated or missing segment no longer matches its digest and is reported
as corruption (equivalent to a missing log).
"""

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import Any, Dict, List, Optional
import hashlib
import json
import logging
import os
import re
import shutil
import threading

from .errors import AuditIntegrityError, AuditWriteError
from .models import utc_now

logger = logging.getLogger(__name__)

DEFAULT_MAX_FILE_BYTES = 10 * 1024 * 1024
DEFAULT_RETENTION = 10

ACTIVE_BASENAME = "audit"
_SEGMENT_RE = re.compile(r"^audit(?:\.(\d+))?\.jsonl$")


class AuditLevel(str, Enum):
    DEBUG = "DEBUG"
    INFO = "INFO"
    WARN = "WARN"
    ERROR = "ERROR"


class AuditEventName(str, Enum):
    """Mandatory event names."""
    SESSION_STARTED = "session_started"
    SESSION_RECOVERED = "session_recovered"
    OPERATION_ALLOWED = "operation_allowed"
    PROHIBITION_BLOCKED = "prohibition_blocked"
    RATE_LIMIT_EXCEEDED = "rate_limit_exceeded"
    VALIDATION_FAILED = "validation_failed"
    SESSION_BLOCKED = "session_blocked"
    STATE_TRANSITION = "state_transition"
    OPERATION_COMPLETED = "operation_completed"


@dataclass
class AuditEvent:
    """
    One line of the audit log.

    Serialized keys: timestamp, level, event, sessionId, operation,
    success, details, error.
    """
    timestamp: str  # ISO8601 UTC
    level: str  # AuditLevel value
    event: str  # AuditEventName value
    session_id: Optional[str]
    operation: Optional[Dict[str, Any]]
    success: bool
    details: Dict[str, Any] = field(default_factory=dict)
    error: Optional[str] = None

    def to_json(self) -> str:
        """Serialize to a single JSON line (no trailing newline)."""
        return json.dumps(
            {
                "timestamp": self.timestamp,
                "level": self.level,
                "event": self.event,
                "sessionId": self.session_id,
                "operation": self.operation,
                "success": self.success,
                "details": self.details,
                "error": self.error,
            },
            separators=(",", ":"),
            ensure_ascii=False,
            default=_json_default,
        )

    @classmethod
    def from_json(cls, json_str: str) -> "AuditEvent":
        data = json.loads(json_str)
        return cls(
            timestamp=data["timestamp"],
            level=data["level"],
            event=data["event"],
            session_id=data.get("sessionId"),
            operation=data.get("operation"),
            success=data["success"],
            details=data.get("details") or {},
            error=data.get("error"),
        )

    @classmethod
    def create(
        cls,
        event: AuditEventName,
        level: AuditLevel,
        session_id: Optional[str],
        success: bool,
        operation: Optional[Dict[str, Any]] = None,
        details: Optional[Dict[str, Any]] = None,
        error: Optional[str] = None,
        timestamp: Optional[datetime] = None,
    ) -> "AuditEvent":
        """Create an event stamped with the current time (or timestamp)."""
        return cls(
            timestamp=(timestamp or utc_now()).isoformat(),
            level=level.value,
            event=event.value,
            session_id=session_id,
            operation=operation,
            success=success,
            details=dict(details or {}),
            error=error,
        )


def _json_default(value: Any):
    if isinstance(value, datetime):
        return value.isoformat()
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, (set, frozenset, tuple)):
        return list(value)
    if hasattr(value, "items"):
        return dict(value.items())
    return str(value)


def _chain(previous: str, line: str) -> str:
    return hashlib.sha256((previous + line).encode("utf-8")).hexdigest()


class AuditSink:
    """
    Writes audit events to JSONL segments.

    Thread-safe; one writer lock per sink.
    """

    def __init__(
        self,
        audit_dir: Path,
        max_file_bytes: int = DEFAULT_MAX_FILE_BYTES,
        retention: int = DEFAULT_RETENTION,
    ):
        """
        Initialize audit sink.

        Args:
            audit_dir: Directory for active segments and archives
            max_file_bytes: Size ceiling per segment file
            retention: Archived session logs to keep
        """
        self.audit_dir = Path(audit_dir)
        self.archive_dir = self.audit_dir / "archive"
        self.max_file_bytes = max_file_bytes
        self.retention = retention
        self._lock = threading.Lock()

        self.audit_dir.mkdir(parents=True, exist_ok=True)

    # ==================== Writing ====================

    def emit(self, event: AuditEvent):
        """
        Append one event durably.

        Raises:
            AuditWriteError: If the event could not be committed
        """
        line = event.to_json()
        encoded = (line + "\n").encode("utf-8")

        with self._lock:
            try:
                segment = self._writable_segment(len(encoded))
                digest = self._read_digest(segment)
                self._check_unmodified(segment, digest)

                with open(segment, "ab") as f:
                    f.write(encoded)
                    f.flush()
                    os.fsync(f.fileno())

                self._write_digest(segment, {
                    "lines": digest["lines"] + 1,
                    "bytes": digest["bytes"] + len(encoded),
                    "sha256": _chain(digest["sha256"], line),
                })
            except AuditWriteError:
                raise
            except (OSError, ValueError) as e:
                logger.error(f"Audit write failed for event {event.event}: {e}")
                raise AuditWriteError(f"Could not write audit event {event.event}: {e}") from e

    def rotate(self, new_session_id: str) -> Optional[Path]:
        """
        Archive the active log and start one for new_session_id.

        Called synchronously at session start. Archives beyond the retention
        count are pruned oldest-first.

        Returns:
            Archive directory of the previous session, or None if there was
            nothing to archive
        """
        with self._lock:
            try:
                archived = None
                segments = self._segments()
                if segments:
                    previous = self.active_session_id() or "unknown"
                    archived = self.archive_dir / f"{self._next_archive_sequence():06d}-{previous}"
                    archived.mkdir(parents=True, exist_ok=False)
                    for segment in segments:
                        os.replace(segment, archived / segment.name)
                        digest_path = self._digest_path(segment)
                        if digest_path.exists():
                            os.replace(digest_path, archived / digest_path.name)
                    logger.info(f"Archived audit log of session {previous} to {archived.name}")
                    self._prune_archives()

                (self.audit_dir / "active_session").write_text(new_session_id, encoding="utf-8")
                return archived
            except OSError as e:
                raise AuditWriteError(f"Audit log rotation failed: {e}") from e

    def active_session_id(self) -> Optional[str]:
        marker = self.audit_dir / "active_session"
        if not marker.exists():
            return None
        return marker.read_text(encoding="utf-8").strip() or None

    def archives(self) -> List[Path]:
        """Archived session logs, oldest first."""
        if not self.archive_dir.exists():
            return []
        return sorted(p for p in self.archive_dir.iterdir() if p.is_dir())

    # ==================== Reading ====================

    def read_events(self, session_id: Optional[str] = None) -> List[AuditEvent]:
        """Events of the active log in emission order, optionally for one session."""
        events = []
        for segment in self._segments():
            with open(segment, "r", encoding="utf-8") as f:
                for line in f:
                    line = line.strip()
                    if not line:
                        continue
                    event = AuditEvent.from_json(line)
                    if session_id is None or event.session_id == session_id:
                        events.append(event)
        return events

    def verify(self, directory: Optional[Path] = None) -> List[str]:
        """
        Check every segment in directory (default: active log) against its digest.

        Returns:
            List of defects (empty means intact)
        """
        directory = Path(directory) if directory else self.audit_dir
        defects = []

        segments = {p.name for p in directory.glob("audit*.jsonl") if _SEGMENT_RE.match(p.name)}
        digests = {p.name[: -len(".digest")] for p in directory.glob("audit*.jsonl.digest")}

        for name in sorted(digests - segments):
            defects.append(f"{name}: segment missing")
        for name in sorted(segments - digests):
            defects.append(f"{name}: digest missing")

        for name in sorted(segments & digests):
            segment = directory / name
            expected = json.loads(self._digest_path(segment).read_text(encoding="utf-8"))
            chain = ""
            lines = 0
            with open(segment, "r", encoding="utf-8") as f:
                for raw in f:
                    chain = _chain(chain, raw.rstrip("\n"))
                    lines += 1
            if lines != expected["lines"]:
                defects.append(f"{name}: {lines} lines on disk, {expected['lines']} recorded")
            elif chain != expected["sha256"]:
                defects.append(f"{name}: content does not match recorded digest")
        return defects

    def verify_or_raise(self, directory: Optional[Path] = None):
        defects = self.verify(directory)
        if defects:
            raise AuditIntegrityError(defects)

    # ==================== Internals ====================

    def _segments(self) -> List[Path]:
        found = []
        for path in self.audit_dir.glob("audit*.jsonl"):
            match = _SEGMENT_RE.match(path.name)
            if match:
                found.append((int(match.group(1) or 0), path))
        return [path for _, path in sorted(found)]

    def _segment_path(self, index: int) -> Path:
        if index == 0:
            return self.audit_dir / f"{ACTIVE_BASENAME}.jsonl"
        return self.audit_dir / f"{ACTIVE_BASENAME}.{index}.jsonl"

    def _writable_segment(self, incoming_bytes: int) -> Path:
        segments = self._segments()
        if not segments:
            return self._segment_path(0)
        current = segments[-1]
        size = current.stat().st_size
        if size > 0 and size + incoming_bytes > self.max_file_bytes:
            index = len(segments)
            logger.info(f"Audit segment {current.name} reached {size} bytes; starting segment {index}")
            return self._segment_path(index)
        return current

    @staticmethod
    def _digest_path(segment: Path) -> Path:
        return segment.with_name(segment.name + ".digest")

    def _read_digest(self, segment: Path) -> Dict[str, Any]:
        path = self._digest_path(segment)
        if not path.exists():
            return {"lines": 0, "bytes": 0, "sha256": ""}
        return json.loads(path.read_text(encoding="utf-8"))

    def _write_digest(self, segment: Path, digest: Dict[str, Any]):
        path = self._digest_path(segment)
        tmp_path = path.with_name(path.name + ".tmp")
        with open(tmp_path, "w", encoding="utf-8") as f:
            json.dump(digest, f)
            f.flush()
            os.fsync(f.fileno())
        os.replace(tmp_path, path)

    def _check_unmodified(self, segment: Path, digest: Dict[str, Any]):
        """Cheap pre-append check: the segment must be exactly as we left it."""
        size = segment.stat().st_size if segment.exists() else None
        if digest["lines"] == 0 and size in (None, 0):
            return
        if size is None:
            raise AuditWriteError(f"Audit segment {segment.name} is missing; log treated as corrupt")
        if size != digest["bytes"]:
            raise AuditWriteError(
                f"Audit segment {segment.name} changed outside the sink "
                f"({size} bytes on disk, {digest['bytes']} recorded)"
            )

    def _next_archive_sequence(self) -> int:
        sequences = [0]
        for archive in self.archives():
            prefix = archive.name.split("-", 1)[0]
            if prefix.isdigit():
                sequences.append(int(prefix))
        return max(sequences) + 1

    def _prune_archives(self):
        archives = self.archives()
        excess = len(archives) - self.retention
        for archive in archives[:max(excess, 0)]:
            shutil.rmtree(archive)
            logger.info(f"Pruned audit archive {archive.name}")
