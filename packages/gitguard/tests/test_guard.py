"""
Tests for the Guard engine

Validates:
- Acceptance scenarios A-E
- Prohibition and rate limit run before validation
- Exactly one audit event per decision, warnings folded into details
- Session lifecycle through state_update operations
- Staleness boundary at the commit path
- Audit failure is fatal and persists nothing
"""

import threading

import pytest

from gitguard import (
    AuditEventName,
    AuditWriteError,
    BlockCategory,
    Guard,
    Operation,
    OperationKind,
    SessionStatus,
    Severity,
    TaskStatus,
)


KIB = 1024
MIB = 1024 * KIB


@pytest.fixture
def guard(temp_dir, clock):
    return Guard(temp_dir / "state", temp_dir / "audit", clock=clock)


@pytest.fixture
def session_id(guard, clock):
    """A RUNNING session."""
    state = guard.start_session(current_task="Ship rate limits")
    decision = guard.evaluate(Operation(
        OperationKind.STATE_UPDATE,
        "session",
        state.session_id,
        {"status": "running"},
        timestamp=clock.now,
    ))
    assert decision.allowed, decision.blocked_by
    return state.session_id


def at(clock):
    """Operation factory stamped with the fake clock's current time."""
    def make(kind, target, session_id, payload=None):
        return Operation(kind, target, session_id, payload, timestamp=clock.now)
    return make


def changelog(date):
    return {"path": "CHANGELOG.md", "content": f"# Changelog\n\n## [2.1.0] - {date}\n- Fixed things\n"}


# ==================== Acceptance Scenarios ====================

def test_scenario_a_small_text_write(guard, session_id, clock):
    decision = guard.evaluate(at(clock)(OperationKind.WRITE, "src/app.py", session_id, "x" * (2 * KIB)))

    assert decision.allowed
    assert decision.blocked_by is None
    assert decision.warnings == ()


def test_scenario_b_large_binary_write(guard, session_id, clock):
    content = b"\x00" + b"\xff" * int(1.2 * MIB)

    decision = guard.evaluate(at(clock)(OperationKind.WRITE, "assets/video.bin", session_id, content))

    assert not decision.allowed
    assert decision.blocked_by == "file_size_hard"
    assert decision.block_category == BlockCategory.VALIDATION
    assert decision.details["suggestion"]


def test_scenario_c_protected_commit_with_stale_changelog(guard, session_id, clock):
    files = [{"path": "src/app.py", "content": "print('v2')\n"}, changelog("2026-10-18")]

    decision = guard.evaluate(at(clock)(OperationKind.COMMIT, "main", session_id, {"files": files, "message": "Release"}))

    assert not decision.allowed
    assert decision.blocked_by == "changelog_entry"


def test_scenario_c_passes_with_entry_for_today(guard, session_id, clock):
    files = [{"path": "src/app.py", "content": "print('v2')\n"}, changelog("2026-10-19")]

    decision = guard.evaluate(at(clock)(OperationKind.COMMIT, "main", session_id, {"files": files, "message": "Release"}))

    assert decision.allowed, decision.blocked_by


def test_scenario_d_eleventh_write_in_window(guard, session_id, clock):
    make = at(clock)
    for i in range(10):
        assert guard.evaluate(make(OperationKind.WRITE, f"src/f{i}.py", session_id, "pass\n")).allowed
        clock.advance(1)

    decision = guard.evaluate(make(OperationKind.WRITE, "src/f10.py", session_id, "pass\n"))

    assert not decision.allowed
    assert decision.blocked_by == "rate_limit.write"
    assert decision.retry_after == 50.0
    assert decision.details["ceiling"] == 10
    assert decision.details["rate_category"] == "write"
    assert decision.details["scope"] == "global"


def test_scenario_e_git_internals_aborts_session(guard, session_id, clock):
    make = at(clock)

    decision = guard.evaluate(make(OperationKind.WRITE, ".git/config", session_id, "[core]\n"))

    assert not decision.allowed
    assert decision.blocked_by == "git_internals"
    assert decision.severity == Severity.CRITICAL
    assert decision.details["session_aborted"] is True
    assert guard.is_aborted(session_id)
    assert guard.sessions.load(session_id).state.status == SessionStatus.FAILED

    follow_up = guard.evaluate(make(OperationKind.READ, "src/app.py", session_id))
    assert follow_up.blocked_by == "session_aborted"

    fresh = guard.start_session()
    assert not guard.is_aborted(fresh.session_id)
    assert guard.evaluate(make(OperationKind.READ, "src/app.py", fresh.session_id)).allowed


def test_critical_abort_fails_idle_session(guard, temp_dir, clock):
    """An IDLE session is forced to FAILED and stays refused by any Guard."""
    session_id = guard.start_session().session_id

    decision = guard.evaluate(at(clock)(OperationKind.READ, ".git/config", session_id))

    assert decision.blocked_by == "git_internals"
    state = guard.sessions.load(session_id).state
    assert state.status == SessionStatus.FAILED
    assert state.errors[-1].code == "critical_prohibition"
    assert [e.event for e in guard.audit.read_events()[-2:]] == [
        AuditEventName.PROHIBITION_BLOCKED.value,
        AuditEventName.STATE_TRANSITION.value,
    ]

    other = Guard(temp_dir / "state", temp_dir / "audit", clock=clock)
    follow_up = other.evaluate(at(clock)(OperationKind.READ, "src/app.py", session_id))
    assert follow_up.blocked_by == "session_aborted"


def test_critical_abort_of_stale_session(guard, session_id, clock):
    clock.advance(10 * 60)

    guard.evaluate(at(clock)(OperationKind.WRITE, ".git/HEAD", session_id, "ref: refs/heads/main\n"))

    assert guard.sessions.load(session_id).state.status == SessionStatus.FAILED


def test_critical_abort_survives_audit_failure(guard, session_id, clock, monkeypatch):
    def broken(event):
        raise AuditWriteError("disk full")

    monkeypatch.setattr(guard.audit, "emit", broken)
    with pytest.raises(AuditWriteError):
        guard.evaluate(at(clock)(OperationKind.WRITE, ".git/config", session_id, "[core]\n"))
    monkeypatch.undo()

    assert guard.is_aborted(session_id)
    assert guard.sessions.load(session_id).state.status == SessionStatus.FAILED
    decision = guard.evaluate(at(clock)(OperationKind.WRITE, "src/a.py", session_id, "pass\n"))
    assert decision.blocked_by == "session_aborted"


def test_high_severity_prohibition_does_not_abort(guard, session_id, clock):
    decision = guard.evaluate(at(clock)(OperationKind.DELETE, "LICENSE", session_id))

    assert decision.blocked_by == "undeletable_file"
    assert decision.details["session_aborted"] is False
    assert not guard.is_aborted(session_id)


# ==================== Ordering ====================

def test_prohibition_runs_before_validation(guard, session_id, clock):
    """An op both prohibited and invalid reports the prohibition; no validator runs."""
    decision = guard.evaluate(at(clock)(OperationKind.WRITE, ".git/objects/blob", session_id, b"\x00" * (6 * MIB)))

    assert decision.blocked_by == "git_internals"
    assert "validations" not in decision.details
    assert guard.rate_limiter.count("write", "global", clock.now) == 0


def test_rate_limit_runs_before_validation(guard, session_id, clock):
    make = at(clock)
    for i in range(10):
        guard.evaluate(make(OperationKind.WRITE, f"src/f{i}.py", session_id, "pass\n"))

    decision = guard.evaluate(make(OperationKind.WRITE, "not/allowed.py", session_id, "pass\n"))

    assert decision.blocked_by == "rate_limit.write"
    assert "validations" not in decision.details


def test_protected_commit_uses_per_branch_ceiling(guard, session_id, clock):
    make = at(clock)
    files = [changelog("2026-10-19")]
    for _ in range(3):
        assert guard.evaluate(make(OperationKind.COMMIT, "main", session_id, {"files": files})).allowed

    assert guard.evaluate(make(OperationKind.COMMIT, "main", session_id, {"files": files})).blocked_by == "rate_limit.commit_main"
    assert guard.evaluate(make(OperationKind.COMMIT, "release/2.1", session_id, {"files": files})).allowed


def test_evaluation_is_idempotent(guard, session_id, clock):
    operation = at(clock)(OperationKind.WRITE, "etc/hosts", session_id, "127.0.0.1 localhost\n")

    first = guard.evaluate(operation)
    second = guard.evaluate(operation)

    assert first.blocked_by == second.blocked_by == "path_allowlist"
    assert first.details["validations"] == second.details["validations"]


# ==================== Audit ====================

def test_one_audit_event_per_decision(guard, session_id, clock):
    make = at(clock)
    before = len(guard.audit.read_events())

    guard.evaluate(make(OperationKind.WRITE, "src/ok.py", session_id, "pass\n"))
    guard.evaluate(make(OperationKind.WRITE, "etc/nope", session_id, "x"))
    guard.evaluate(make(OperationKind.DELETE, "README.md", session_id))

    events = guard.audit.read_events()[before:]
    assert [e.event for e in events] == [
        AuditEventName.OPERATION_ALLOWED.value,
        AuditEventName.VALIDATION_FAILED.value,
        AuditEventName.PROHIBITION_BLOCKED.value,
    ]
    assert [e.success for e in events] == [True, False, False]
    assert all(e.details["policy_hash"] == guard.config.policy_hash for e in events)


def test_audit_never_contains_content(guard, session_id, clock):
    guard.evaluate(at(clock)(OperationKind.WRITE, "src/notes.txt", session_id, "top secret plans\n"))

    raw = (guard.audit.audit_dir / "audit.jsonl").read_text(encoding="utf-8")
    assert "top secret plans" not in raw
    assert "payload_sha256" in raw


def test_warnings_folded_into_success_event(guard, session_id, clock):
    decision = guard.evaluate(at(clock)(OperationKind.WRITE, "docs/huge.md", session_id, "a" * (2 * MIB)))

    assert decision.allowed
    assert len(decision.warnings) == 1

    event = guard.audit.read_events()[-1]
    assert event.event == AuditEventName.OPERATION_ALLOWED.value
    assert event.details["warnings"] == list(decision.warnings)


def test_session_start_rotates_log(guard, session_id, clock):
    guard.evaluate(at(clock)(OperationKind.READ, "src/app.py", session_id))

    guard.start_session()

    archives = guard.audit.archives()
    assert len(archives) == 1
    assert archives[0].name.endswith(session_id)
    assert [e.event for e in guard.audit.read_events()] == [AuditEventName.SESSION_STARTED.value]


def test_record_completion(guard, session_id, clock):
    operation = at(clock)(OperationKind.WRITE, "src/app.py", session_id, "pass\n")
    guard.evaluate(operation)

    guard.record_completion(operation, success=False, error="disk quota")

    event = guard.audit.read_events()[-1]
    assert event.event == AuditEventName.OPERATION_COMPLETED.value
    assert event.level == "ERROR"
    assert event.error == "disk quota"


def test_audit_failure_persists_nothing(guard, clock, monkeypatch):
    state = guard.start_session()

    def broken(event):
        raise AuditWriteError("disk full")

    monkeypatch.setattr(guard.audit, "emit", broken)

    with pytest.raises(AuditWriteError):
        guard.evaluate(at(clock)(OperationKind.STATE_UPDATE, "session", state.session_id, {"status": "running"}))

    assert guard.sessions.load(state.session_id).state.status == SessionStatus.IDLE


# ==================== Sessions & Tasks ====================

def test_session_lifecycle_through_state_updates(guard, session_id, clock):
    make = at(clock)

    paused = guard.evaluate(make(OperationKind.STATE_UPDATE, "session", session_id, {"status": "paused", "checkpoint": {"step": 2}}))
    assert paused.allowed
    assert paused.details["to_status"] == "paused"
    assert guard.audit.read_events()[-1].event == AuditEventName.STATE_TRANSITION.value

    invalid = guard.evaluate(make(OperationKind.STATE_UPDATE, "session", session_id, {"status": "idle"}))
    assert invalid.blocked_by == "session_transition_invalid"
    assert guard.audit.read_events()[-1].event == AuditEventName.SESSION_BLOCKED.value

    assert guard.sessions.load(session_id).state.checkpoint == {"step": 2}


def test_session_isolation_through_guard(guard, session_id, clock):
    other = guard.start_session().session_id

    decision = guard.evaluate(at(clock)(
        OperationKind.STATE_UPDATE, "session", other, {"status": "paused", "session_id": session_id},
    ))

    assert decision.blocked_by == "session_isolation"
    assert guard.sessions.load(session_id).state.status == SessionStatus.RUNNING


def test_commit_refreshes_session(guard, session_id, clock):
    clock.advance(4 * 60)
    files = [{"path": "src/app.py", "content": "pass\n"}]

    decision = guard.evaluate(at(clock)(OperationKind.COMMIT, "feature/limits", session_id, {"files": files}))

    assert decision.allowed
    assert guard.sessions.load(session_id).state.last_updated == clock.now


def test_commit_staleness_boundary(guard, session_id, clock):
    files = [{"path": "src/app.py", "content": "pass\n"}]
    make = at(clock)

    clock.advance(4 * 60 + 59)
    assert guard.evaluate(make(OperationKind.COMMIT, "feature/limits", session_id, {"files": files})).allowed

    clock.advance(5 * 60 + 1)
    decision = guard.evaluate(make(OperationKind.COMMIT, "feature/limits", session_id, {"files": files}))
    assert decision.blocked_by == "state_freshness"

    stale_update = guard.evaluate(make(OperationKind.STATE_UPDATE, "session", session_id, {"status": "paused"}))
    assert stale_update.blocked_by == "session_stale"


def test_recover_stale_through_guard(guard, session_id, clock):
    clock.advance(6 * 60)

    successor = guard.recover_stale(session_id)

    assert successor.status == SessionStatus.RUNNING
    assert successor.resumed_from == session_id
    event = guard.audit.read_events()[-1]
    assert event.event == AuditEventName.SESSION_RECOVERED.value
    assert event.details["reason"] == "stale_session"


def test_recover_corrupt_session(guard, session_id):
    guard.sessions.store.record_path(session_id).write_text("garbage")

    loaded = guard.recover_session(session_id)

    assert loaded.recovered
    assert loaded.state.status == SessionStatus.RUNNING
    assert guard.audit.read_events()[-1].event == AuditEventName.SESSION_RECOVERED.value


def test_commit_against_corrupt_record_logs_recovery(guard, session_id, clock):
    guard.sessions.store.record_path(session_id).write_text("garbage")
    before = len(guard.audit.read_events())
    files = [{"path": "src/app.py", "content": "pass\n"}]

    decision = guard.evaluate(at(clock)(OperationKind.COMMIT, "feature/limits", session_id, {"files": files}))

    assert decision.allowed, decision.blocked_by
    events = guard.audit.read_events()[before:]
    assert [e.event for e in events] == [
        AuditEventName.SESSION_RECOVERED.value,
        AuditEventName.OPERATION_ALLOWED.value,
    ]
    assert events[0].details["reason"] == "corrupt_record"


def test_corrupt_task_record_is_denied(guard, session_id, clock):
    guard.tasks.path.write_text("{not json")

    decision = guard.evaluate(at(clock)(OperationKind.STATE_UPDATE, "task:task_abc", session_id, {"status": "in_progress"}))

    assert decision.blocked_by == "task_record_invalid"
    assert decision.details["defects"]
    assert guard.audit.read_events()[-1].event == AuditEventName.VALIDATION_FAILED.value


def test_task_state_update(guard, session_id, clock):
    task = guard.tasks.add("Write the changelog")

    decision = guard.evaluate(at(clock)(OperationKind.STATE_UPDATE, f"task:{task.id}", session_id, {"status": "in_progress"}))

    assert decision.allowed
    updated = guard.tasks.get(task.id)
    assert updated.status == TaskStatus.IN_PROGRESS
    assert updated.assigned_session == session_id

    invalid = guard.evaluate(at(clock)(OperationKind.STATE_UPDATE, f"task:{task.id}", session_id, {"status": "pending"}))
    assert invalid.blocked_by == "task_transition_invalid"
    assert guard.audit.read_events()[-1].event == AuditEventName.VALIDATION_FAILED.value


# ==================== Concurrency & Isolation ====================

def test_concurrent_writes_respect_ceiling(guard, session_id, clock):
    make = at(clock)
    decisions = []
    lock = threading.Lock()

    def worker(i):
        decision = guard.evaluate(make(OperationKind.WRITE, f"src/t{i}.py", session_id, "pass\n"))
        with lock:
            decisions.append(decision)

    threads = [threading.Thread(target=worker, args=(i,)) for i in range(30)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert sum(d.allowed for d in decisions) == 10
    assert len(guard.audit.read_events(session_id)) >= 30
    assert guard.audit.verify() == []


def test_guards_do_not_share_rate_windows(temp_dir, clock):
    first = Guard(temp_dir / "a" / "state", temp_dir / "a" / "audit", clock=clock)
    second = Guard(temp_dir / "b" / "state", temp_dir / "b" / "audit", clock=clock)
    make = at(clock)

    for i in range(10):
        first.evaluate(make(OperationKind.WRITE, f"src/f{i}.py", "session_x", "pass\n"))

    assert not first.evaluate(make(OperationKind.WRITE, "src/more.py", "session_x", "pass\n")).allowed
    assert second.evaluate(make(OperationKind.WRITE, "src/more.py", "session_x", "pass\n")).allowed


def test_decision_is_read_only(guard, session_id, clock):
    decision = guard.evaluate(at(clock)(OperationKind.READ, "src/app.py", session_id))

    with pytest.raises(TypeError):
        decision.details["allowed"] = False
