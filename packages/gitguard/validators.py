"""
Validator Chain - ordered, short-circuiting checks per operation type

Chains:
- write:   path_allowlist -> file_size_hard -> file_size_soft -> schema -> secret_scan
- delete:  path_allowlist
- read:    path_canonical
- commit:  write chain per staged file -> state_freshness -> commit_secret_scan
           -> commit_size -> changelog_entry (protected branches only)
- pr:      branch_name -> pr_description -> pr_title
- branch:  branch_name
- state:   state_payload

The first valid=False result stops the chain and is its verdict. Every
validator that ran is reported so the audit record shows exactly what was
checked. Warnings never stop a chain.
"""

from dataclasses import dataclass
from datetime import date, datetime
from typing import Callable, Iterable, Iterator, List, Optional
import json
import logging
import re

import yaml

from .config import GuardConfig
from .models import (
    COMMIT_KINDS,
    Operation,
    OperationKind,
    SessionState,
    SessionStatus,
    StagedFile,
    TaskStatus,
    ValidationResult,
)
from .path_utils import canonicalize_path, first_match, path_policy_check
from .schema import validate_document

logger = logging.getLogger(__name__)

# git's own heuristic: a NUL byte in the first 8000 bytes means binary
BINARY_SNIFF_BYTES = 8000

SESSION_TARGET = "session"
TASK_TARGET_PREFIX = "task:"


@dataclass(frozen=True)
class ValidationContext:
    """State a chain may consult besides the operation itself."""
    now: datetime
    session: Optional[SessionState] = None


Step = Callable[[], ValidationResult]


def first_failure(results: Iterable[ValidationResult]) -> Optional[ValidationResult]:
    for result in results:
        if not result.valid:
            return result
    return None


def warnings_of(results: Iterable[ValidationResult]) -> List[str]:
    return [r.warning for r in results if r.warning]


class ValidatorChain:
    """Builds and runs the chain for an operation."""

    def __init__(self, config: GuardConfig):
        self.config = config
        self.limits = config.limits
        self._branch_re = re.compile(config.branch_pattern)
        self._changelog_date_re = re.compile(config.changelog_date_pattern, re.MULTILINE)
        self._heuristics = [
            (heuristic_id, re.compile(pattern))
            for heuristic_id, pattern in config.secret_heuristics.items()
        ]

    # ==================== Entry Point ====================

    def validate(self, operation: Operation, context: ValidationContext) -> List[ValidationResult]:
        """
        Run the chain for operation.kind.

        Returns:
            Results of every validator that ran, in order
        """
        kind = operation.kind

        if kind == OperationKind.WRITE:
            steps = self._write_steps(
                operation.target,
                operation.content_bytes(),
                operation.declared_binary(),
            )
            return _run(steps)

        if kind == OperationKind.DELETE:
            return _run([lambda: self.path_allowlist(operation.target)])

        if kind == OperationKind.READ:
            return _run([lambda: self.path_canonical(operation.target)])

        if kind in COMMIT_KINDS:
            return self._validate_commit(operation, context)

        if kind == OperationKind.PR_CREATE:
            return _run(self._pr_steps(operation, partial=False))

        if kind == OperationKind.PR_UPDATE:
            return _run(self._pr_steps(operation, partial=True))

        if kind == OperationKind.BRANCH_CREATE:
            return _run([lambda: self.branch_name(operation.target)])

        if kind == OperationKind.STATE_UPDATE:
            return _run([lambda: self.state_payload(operation)])

        # push: command shape is the prohibition matcher's job
        return []

    # ==================== Chains ====================

    def _write_steps(self, path: str, content: bytes, declared_binary: Optional[bool]) -> List[Step]:
        binary = self.is_binary(path, content, declared_binary)
        return [
            lambda: self.path_allowlist(path),
            lambda: self.file_size_hard(path, len(content), binary),
            lambda: self.file_size_soft(path, len(content), binary),
            lambda: self.schema(path, content),
            lambda: self.secret_scan(path, content),
        ]

    def _validate_commit(self, operation: Operation, context: ValidationContext) -> List[ValidationResult]:
        files = operation.staged_files()
        results: List[ValidationResult] = []

        for staged in files:
            results.extend(_run(self._write_steps(staged.path, staged.content, staged.binary)))
            if first_failure(results):
                return results

        protected = operation.kind == OperationKind.COMMIT_MAIN or self.config.is_protected_branch(operation.target)

        tail: List[Step] = [
            lambda: self.state_freshness(context),
            lambda: self.commit_secret_scan(files, operation.payload_field("message")),
            lambda: self.commit_size(files),
        ]
        if protected:
            tail.append(lambda: self.changelog_entry(files, context.now.date()))

        results.extend(_run(tail))
        return results

    def _pr_steps(self, operation: Operation, partial: bool) -> List[Step]:
        branch = operation.payload_field("branch")
        title = operation.payload_field("title")
        description = operation.payload_field("description")

        if not partial and branch is None:
            branch = operation.target

        steps: List[Step] = []
        if not partial or branch is not None:
            steps.append(lambda: self.branch_name(branch or ""))
        if not partial or description is not None:
            steps.append(lambda: self.pr_description(description or ""))
        if not partial or title is not None:
            steps.append(lambda: self.pr_title(title or ""))
        return steps

    # ==================== Path Validators ====================

    def path_canonical(self, path: str) -> ValidationResult:
        result = canonicalize_path(path)
        if result.ok:
            return ValidationResult(id="path_canonical", valid=True)
        return ValidationResult(
            id="path_canonical",
            valid=False,
            error=f"{result.violation.value}: {path}",
            suggestion="Use a path relative to the repository root",
        )

    def path_allowlist(self, path: str) -> ValidationResult:
        allowed, reason = path_policy_check(path, self.config.allowed_paths)
        if allowed:
            return ValidationResult(id="path_allowlist", valid=True)
        return ValidationResult(
            id="path_allowlist",
            valid=False,
            error=f"Path '{path}' is not writable: {reason}",
            suggestion="Write only under the allowed workspace paths",
        )

    # ==================== Size Validators ====================

    def is_binary(self, path: str, content: bytes, declared: Optional[bool] = None) -> bool:
        if declared is not None:
            return bool(declared)
        lowered = path.lower()
        if any(lowered.endswith(ext) for ext in self.config.binary_extensions):
            return True
        return b"\x00" in content[:BINARY_SNIFF_BYTES]

    def file_size_hard(self, path: str, size: int, binary: bool) -> ValidationResult:
        """
        Block files at or over the ceiling.

        Binary files use the soft threshold as their ceiling.
        """
        ceiling = self.limits.file_size_soft_bytes if binary else self.limits.file_size_hard_bytes
        if size < ceiling:
            return ValidationResult(id="file_size_hard", valid=True)
        kind = "binary" if binary else "text"
        return ValidationResult(
            id="file_size_hard",
            valid=False,
            error=f"{path}: {kind} file is {size} bytes; ceiling is {ceiling} bytes",
            suggestion="Store large artifacts outside the repository (e.g. Git LFS or release assets)",
        )

    def file_size_soft(self, path: str, size: int, binary: bool) -> ValidationResult:
        if binary or size < self.limits.file_size_soft_bytes:
            return ValidationResult(id="file_size_soft", valid=True)
        return ValidationResult(
            id="file_size_soft",
            valid=True,
            warning=f"{path}: text file is {size} bytes (soft limit {self.limits.file_size_soft_bytes})",
            suggestion="Consider splitting the file",
        )

    # ==================== Content Validators ====================

    def schema(self, path: str, content: bytes) -> ValidationResult:
        """Validate content against the schema registered for path, if any."""
        norm = canonicalize_path(path)
        pattern = first_match(norm.norm_path, self.config.schemas) if norm.ok else None
        if pattern is None:
            return ValidationResult(id="schema", valid=True)

        schema_name = self.config.schemas[pattern]
        try:
            document = _parse_structured(path, content)
        except ValueError as e:
            return ValidationResult(
                id="schema",
                valid=False,
                error=f"{path}: cannot parse as {schema_name} record: {e}",
                suggestion="Write well-formed JSON/YAML",
            )

        defects = validate_document(schema_name, document)
        if not defects:
            return ValidationResult(id="schema", valid=True)
        return ValidationResult(
            id="schema",
            valid=False,
            error=f"{path}: {schema_name} schema violation: " + "; ".join(defects[:5]),
            suggestion=f"Fix the document to match the {schema_name} schema",
        )

    def secret_scan(self, path: str, content: bytes) -> ValidationResult:
        hit = self._find_secret(content.decode("utf-8", errors="replace"))
        if hit is None:
            return ValidationResult(id="secret_scan", valid=True)
        return ValidationResult(
            id="secret_scan",
            valid=False,
            error=f"{path}: possible credential ({hit})",
            suggestion="Read credentials from the environment instead of committing them",
        )

    def _find_secret(self, text: str) -> Optional[str]:
        for heuristic_id, regex in self._heuristics:
            if regex.search(text):
                return heuristic_id
        return None

    # ==================== Commit Validators ====================

    def state_freshness(self, context: ValidationContext) -> ValidationResult:
        session = context.session
        if session is None:
            return ValidationResult(
                id="state_freshness",
                valid=False,
                error="No session record for this operation",
                suggestion="Start a session before committing",
            )
        if session.status != SessionStatus.RUNNING:
            return ValidationResult(
                id="state_freshness",
                valid=False,
                error=f"Session {session.session_id} is {session.status.value}, not running",
                suggestion="Resume the session before committing",
            )
        if session.is_stale(context.now, self.limits.staleness):
            age = int(session.age(context.now).total_seconds())
            return ValidationResult(
                id="state_freshness",
                valid=False,
                error=f"Session state is stale ({age}s since last update, max {self.limits.staleness_seconds}s)",
                suggestion="Recover the session before committing",
            )
        return ValidationResult(id="state_freshness", valid=True)

    def commit_secret_scan(self, files: List[StagedFile], message: Optional[str]) -> ValidationResult:
        for staged in files:
            hit = self._find_secret(staged.content.decode("utf-8", errors="replace"))
            if hit is not None:
                return ValidationResult(
                    id="commit_secret_scan",
                    valid=False,
                    error=f"{staged.path}: possible credential ({hit})",
                    suggestion="Remove the credential from the change set",
                )
        if message:
            hit = self._find_secret(str(message))
            if hit is not None:
                return ValidationResult(
                    id="commit_secret_scan",
                    valid=False,
                    error=f"commit message: possible credential ({hit})",
                    suggestion="Remove the credential from the commit message",
                )
        return ValidationResult(id="commit_secret_scan", valid=True)

    def commit_size(self, files: List[StagedFile]) -> ValidationResult:
        count = len(files)
        total = sum(f.size_bytes for f in files)

        if count == 0:
            return ValidationResult(
                id="commit_size",
                valid=False,
                error="Commit stages no files",
                suggestion="Stage the files to commit",
            )
        if count > self.limits.commit_max_files:
            return ValidationResult(
                id="commit_size",
                valid=False,
                error=f"Commit stages {count} files (max {self.limits.commit_max_files})",
                suggestion="Split the change into smaller commits",
            )
        if total >= self.limits.commit_max_bytes:
            return ValidationResult(
                id="commit_size",
                valid=False,
                error=f"Commit totals {total} bytes (ceiling {self.limits.commit_max_bytes})",
                suggestion="Split the change into smaller commits",
            )
        return ValidationResult(id="commit_size", valid=True)

    def changelog_entry(self, files: List[StagedFile], today: date) -> ValidationResult:
        """A protected-branch commit must carry a changelog entry dated today or later."""
        latest = None
        for staged in files:
            norm = canonicalize_path(staged.path)
            if not norm.ok or norm.norm_path not in self.config.changelog_paths:
                continue
            for entry_date in self._changelog_dates(staged.content):
                if latest is None or entry_date > latest:
                    latest = entry_date

        if latest is None:
            return ValidationResult(
                id="changelog_entry",
                valid=False,
                error="Commit to a protected branch carries no dated changelog entry",
                suggestion=f"Add a '## {today.isoformat()}' entry to {self.config.changelog_paths[0]}",
            )
        if latest < today:
            return ValidationResult(
                id="changelog_entry",
                valid=False,
                error=f"Latest changelog entry is dated {latest.isoformat()}, before {today.isoformat()}",
                suggestion=f"Add an entry dated {today.isoformat()}",
            )
        return ValidationResult(id="changelog_entry", valid=True)

    def _changelog_dates(self, content: bytes) -> Iterator[date]:
        text = content.decode("utf-8", errors="replace")
        for match in self._changelog_date_re.finditer(text):
            try:
                yield date.fromisoformat(match.group(1))
            except ValueError:
                logger.debug(f"Ignoring malformed changelog date {match.group(1)!r}")

    # ==================== Pull Request / Branch Validators ====================

    def branch_name(self, branch: str) -> ValidationResult:
        if branch and self._branch_re.match(branch):
            return ValidationResult(id="branch_name", valid=True)
        return ValidationResult(
            id="branch_name",
            valid=False,
            error=f"Branch name '{branch}' does not follow the naming convention",
            suggestion="Use <type>/<short-description>, e.g. feature/add-rate-limits",
        )

    def pr_description(self, description: str) -> ValidationResult:
        length = len(description.strip())
        if length >= self.limits.pr_description_min:
            return ValidationResult(id="pr_description", valid=True)
        return ValidationResult(
            id="pr_description",
            valid=False,
            error=f"PR description is {length} characters (min {self.limits.pr_description_min})",
            suggestion="Describe what changed, why, and how it was tested",
        )

    def pr_title(self, title: str) -> ValidationResult:
        length = len(title.strip())
        low, high = self.limits.pr_title_min, self.limits.pr_title_max
        if low <= length <= high:
            return ValidationResult(id="pr_title", valid=True)
        return ValidationResult(
            id="pr_title",
            valid=False,
            error=f"PR title is {length} characters (allowed {low}-{high})",
            suggestion="Summarize the change in one short line",
        )

    # ==================== State Validators ====================

    def state_payload(self, operation: Operation) -> ValidationResult:
        target = operation.target
        status = operation.payload_field("status")

        if target == SESSION_TARGET:
            allowed = {s.value for s in SessionStatus}
        elif target.startswith(TASK_TARGET_PREFIX) and len(target) > len(TASK_TARGET_PREFIX):
            allowed = {s.value for s in TaskStatus}
        else:
            return ValidationResult(
                id="state_payload",
                valid=False,
                error=f"Unknown state target '{target}'",
                suggestion=f"Use '{SESSION_TARGET}' or '{TASK_TARGET_PREFIX}<task id>'",
            )

        if status not in allowed:
            return ValidationResult(
                id="state_payload",
                valid=False,
                error=f"Invalid status {status!r} for '{target}'",
                suggestion="Allowed: " + ", ".join(sorted(allowed)),
            )
        checkpoint = operation.payload_field("checkpoint")
        if checkpoint is not None and not isinstance(checkpoint, dict):
            return ValidationResult(
                id="state_payload",
                valid=False,
                error="Checkpoint must be a mapping",
            )
        return ValidationResult(id="state_payload", valid=True)


def _run(steps: List[Step]) -> List[ValidationResult]:
    results = []
    for step in steps:
        result = step()
        results.append(result)
        if not result.valid:
            break
    return results


def _parse_structured(path: str, content: bytes):
    text = content.decode("utf-8")
    if path.lower().endswith((".yaml", ".yml")):
        try:
            return yaml.safe_load(text)
        except yaml.YAMLError as e:
            raise ValueError(str(e)) from e
    try:
        return json.loads(text)
    except json.JSONDecodeError as e:
        raise ValueError(str(e)) from e
