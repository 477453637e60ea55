"""
Path Utilities - Canonical target handling for policy matching

Operation targets are repository-relative paths. Before any rule sees a
target it is normalized here so that spellings like "./src/../.git/config"
or "src\\app.py" cannot slip past a pattern.

Security principles:
1. Targets must be relative to the repository root
2. Traversal above the root is a violation, not something to resolve away
3. Matching always runs on the normalized POSIX form

Matching is purely lexical: the Guard decides on proposed operations and
never touches the filesystem.
"""

from dataclasses import dataclass
from enum import Enum
from pathlib import PurePosixPath
from typing import Iterable, Optional
import fnmatch
import re


class PathViolation(Enum):
    """Target normalization failures."""
    EMPTY_PATH = "empty_path"
    ABSOLUTE_PATH_DENIED = "absolute_path_denied"
    UNC_PATH_DENIED = "unc_path_denied"
    PATH_TRAVERSAL = "path_traversal"


@dataclass(frozen=True)
class CanonicalPathResult:
    """Result of target canonicalization."""
    original: str
    norm_path: str  # POSIX, no leading ./, no .. segments
    violation: Optional[PathViolation] = None

    @property
    def ok(self) -> bool:
        return self.violation is None


_DRIVE_RE = re.compile(r"^[A-Za-z]:[/\\]")


def canonicalize_path(path: str) -> CanonicalPathResult:
    """
    Normalize a repository-relative target.

    - Backslashes become forward slashes
    - "." segments and duplicate separators are dropped
    - ".." is folded in; climbing above the root is PATH_TRAVERSAL
    - Absolute, drive-letter and UNC paths are rejected

    Args:
        path: Target as submitted by the caller

    Returns:
        CanonicalPathResult (norm_path is "" when a violation is reported)
    """
    if path is None or str(path).strip() == "":
        return CanonicalPathResult(original=str(path or ""), norm_path="", violation=PathViolation.EMPTY_PATH)

    raw = str(path)
    if raw.startswith("\\\\") or raw.startswith("//"):
        return CanonicalPathResult(original=raw, norm_path="", violation=PathViolation.UNC_PATH_DENIED)

    if raw.startswith("/") or raw.startswith("\\") or _DRIVE_RE.match(raw):
        return CanonicalPathResult(original=raw, norm_path="", violation=PathViolation.ABSOLUTE_PATH_DENIED)

    parts = []
    for segment in raw.replace("\\", "/").split("/"):
        if segment in ("", "."):
            continue
        if segment == "..":
            if not parts:
                return CanonicalPathResult(original=raw, norm_path="", violation=PathViolation.PATH_TRAVERSAL)
            parts.pop()
            continue
        parts.append(segment)

    if not parts:
        return CanonicalPathResult(original=raw, norm_path="", violation=PathViolation.EMPTY_PATH)

    return CanonicalPathResult(original=raw, norm_path="/".join(parts))


def match_pattern(path: str, pattern: str) -> bool:
    """
    Match a normalized path against a glob pattern.

    Supports:
    - Exact match: "README.md"
    - Wildcard: "*.md" (top level only; "*" never crosses "/")
    - Recursive: "**/*.py", "docs/**", "src/**/test_*.py"

    Args:
        path: Normalized path string (forward slashes)
        pattern: Glob pattern

    Returns:
        True if matches
    """
    return _match_parts(PurePosixPath(path).parts, PurePosixPath(pattern).parts)


def _match_parts(path_parts, pattern_parts) -> bool:
    if not pattern_parts:
        return not path_parts

    head, rest = pattern_parts[0], pattern_parts[1:]

    if head == "**":
        # ** consumes zero or more whole segments
        for i in range(len(path_parts) + 1):
            if _match_parts(path_parts[i:], rest):
                return True
        return False

    if not path_parts:
        return False

    if fnmatch.fnmatchcase(path_parts[0], head):
        return _match_parts(path_parts[1:], rest)
    return False


def first_match(path: str, patterns: Iterable[str]) -> Optional[str]:
    """Return the first pattern the path matches, or None."""
    for pattern in patterns:
        if match_pattern(path, pattern):
            return pattern
    return None


def path_policy_check(target_path: str, allowed_patterns: Iterable[str]) -> tuple[bool, str]:
    """
    Check whether a target is inside the allowlist.

    Policy precedence:
        1. Canonicalize (absolute/UNC/traversal -> DENY)
        2. allowed_patterns -> ALLOW
        3. Default -> DENY

    Returns:
        (is_allowed: bool, reason: str)
    """
    result = canonicalize_path(target_path)
    if not result.ok:
        return False, f"{result.violation.value}: {target_path}"

    pattern = first_match(result.norm_path, allowed_patterns)
    if pattern is not None:
        return True, f"allowed_by_policy: matches '{pattern}'"

    return False, "not_in_allowed_paths"
