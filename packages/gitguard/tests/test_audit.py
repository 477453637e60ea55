"""
Tests for the Audit Sink

Validates:
- One JSON object per line with exactly the documented keys
- Segmenting at the size ceiling
- Rotation into per-session archives and retention pruning
- Digest chain detects edits and missing segments
- Write failures surface as AuditWriteError
"""

import json
import os

import pytest

from gitguard import (
    AuditEvent,
    AuditEventName,
    AuditIntegrityError,
    AuditLevel,
    AuditSink,
    AuditWriteError,
)


EVENT_KEYS = {"timestamp", "level", "event", "sessionId", "operation", "success", "details", "error"}


@pytest.fixture
def sink(temp_dir):
    return AuditSink(temp_dir / "audit")


def make_event(session_id="session_a", n=0, **details):
    return AuditEvent.create(
        event=AuditEventName.OPERATION_ALLOWED,
        level=AuditLevel.INFO,
        session_id=session_id,
        success=True,
        operation={"kind": "write", "target": f"src/file{n}.py"},
        details=details,
    )


def test_emit_writes_one_line_per_event(sink):
    sink.emit(make_event(n=1))
    sink.emit(make_event(n=2))

    lines = (sink.audit_dir / "audit.jsonl").read_text(encoding="utf-8").splitlines()
    assert len(lines) == 2
    for line in lines:
        assert set(json.loads(line)) == EVENT_KEYS


def test_event_round_trip(sink):
    event = make_event(warnings=["big file"])
    sink.emit(event)

    assert sink.read_events() == [event]
    assert AuditEvent.from_json(event.to_json()) == event


def test_read_events_filters_by_session(sink):
    sink.emit(make_event("session_a"))
    sink.emit(make_event("session_b"))
    sink.emit(make_event("session_a"))

    assert len(sink.read_events("session_a")) == 2


def test_segments_at_size_ceiling(temp_dir):
    sink = AuditSink(temp_dir / "audit", max_file_bytes=600)
    for n in range(10):
        sink.emit(make_event(n=n))

    segments = sorted(p.name for p in sink.audit_dir.glob("audit*.jsonl"))
    assert len(segments) > 1
    assert "audit.1.jsonl" in segments
    for segment in sink.audit_dir.glob("audit*.jsonl"):
        assert segment.stat().st_size <= 600

    events = sink.read_events()
    assert [e.operation["target"] for e in events] == [f"src/file{n}.py" for n in range(10)]
    assert sink.verify() == []


# ==================== Rotation ====================

def test_rotation_archives_previous_session(sink):
    assert sink.rotate("session_a") is None
    sink.emit(make_event("session_a"))

    archived = sink.rotate("session_b")

    assert archived.name.endswith("-session_a")
    assert (archived / "audit.jsonl").exists()
    assert (archived / "audit.jsonl.digest").exists()
    assert sink.read_events() == []
    assert sink.active_session_id() == "session_b"
    assert sink.verify(archived) == []


def test_retention_prunes_oldest(temp_dir):
    sink = AuditSink(temp_dir / "audit", retention=3)
    for i in range(6):
        sink.rotate(f"session_{i}")
        sink.emit(make_event(f"session_{i}"))
    sink.rotate("session_last")

    names = [p.name for p in sink.archives()]
    assert len(names) == 3
    assert [n.split("-", 1)[1] for n in names] == ["session_3", "session_4", "session_5"]


# ==================== Integrity ====================

def test_verify_clean_log(sink):
    for n in range(3):
        sink.emit(make_event(n=n))

    assert sink.verify() == []
    sink.verify_or_raise()


def test_in_place_edit_is_detected(sink):
    for n in range(3):
        sink.emit(make_event(n=n))
    segment = sink.audit_dir / "audit.jsonl"
    segment.write_text(segment.read_text(encoding="utf-8").replace("file1", "fileX"), encoding="utf-8")

    defects = sink.verify()

    assert defects and "does not match" in defects[0]
    with pytest.raises(AuditIntegrityError) as exc_info:
        sink.verify_or_raise()
    assert exc_info.value.defects == defects


def test_truncation_blocks_further_writes(sink):
    sink.emit(make_event(n=1))
    sink.emit(make_event(n=2))
    segment = sink.audit_dir / "audit.jsonl"
    first_line = segment.read_text(encoding="utf-8").splitlines(keepends=True)[0]
    segment.write_text(first_line, encoding="utf-8")

    assert any("lines on disk" in d for d in sink.verify())
    with pytest.raises(AuditWriteError):
        sink.emit(make_event(n=3))


def test_missing_segment_is_corruption(sink):
    sink.emit(make_event())
    (sink.audit_dir / "audit.jsonl").unlink()

    assert sink.verify() == ["audit.jsonl: segment missing"]
    with pytest.raises(AuditWriteError):
        sink.emit(make_event())


def test_fsync_failure_is_fatal(sink, monkeypatch):
    def disk_full(fd):
        raise OSError(28, "No space left on device")

    monkeypatch.setattr(os, "fsync", disk_full)

    with pytest.raises(AuditWriteError, match="No space left"):
        sink.emit(make_event())
