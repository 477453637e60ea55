"""
Prohibition Matcher - absolute blocklist

Philosophy: a prohibition is not a judgement call.
- A match is always a hard deny, never a warning
- Severity travels with the rule; CRITICAL aborts the session
- Pure function over (operation, static rule table), no side effects

Rule types:
- path:    target (or each staged file of a commit) against glob patterns
- command: the operation's command shape against regexes (force push, ...)
- content: payload bytes of writes/commits against secret signatures
"""

from dataclasses import dataclass
from typing import Iterable, List, Optional, Tuple
import re

from .config import GuardConfig, RuleSpec
from .models import COMMIT_KINDS, Operation, OperationKind, Severity
from .path_utils import canonicalize_path, first_match


# Commits are checked file-by-file with the rules that guard writes
_COMMIT_PATH_KIND = OperationKind.WRITE

# Payload fields scanned for secrets besides file content
_TEXT_FIELDS = ("title", "description", "message")


@dataclass(frozen=True)
class Violation:
    """A matched prohibition."""
    rule_id: str
    severity: Severity
    message: str
    matched: str  # pattern (path rules) or regex (command/content rules)
    subject: str  # path or field the rule fired on

    @property
    def aborts_session(self) -> bool:
        return self.severity == Severity.CRITICAL

    def to_dict(self) -> dict:
        return {
            "rule_id": self.rule_id,
            "severity": self.severity.value,
            "message": self.message,
            "matched": self.matched,
            "subject": self.subject,
        }


class _CompiledRule:
    def __init__(self, spec: RuleSpec):
        self.spec = spec
        if spec.type == "path":
            self.regexes: Tuple[re.Pattern, ...] = ()
        else:
            self.regexes = tuple(re.compile(p, re.MULTILINE) for p in spec.patterns)

    def search(self, text: str) -> Optional[str]:
        for regex in self.regexes:
            if regex.search(text):
                return regex.pattern
        return None


class ProhibitionMatcher:
    """
    Evaluates operations against the prohibition table.

    Rules are tried in declaration order; the first match wins.
    """

    def __init__(self, config: GuardConfig):
        self.config = config
        self._rules = [_CompiledRule(spec) for spec in config.prohibitions]

    @property
    def version(self) -> str:
        return self.config.version

    def check(self, operation: Operation) -> Optional[Violation]:
        """
        Return the first violated rule, or None.

        Args:
            operation: Proposed operation

        Returns:
            Violation or None
        """
        for rule in self._rules:
            violation = self._check_rule(rule, operation)
            if violation is not None:
                return violation
        return None

    def _check_rule(self, rule: _CompiledRule, operation: Operation) -> Optional[Violation]:
        spec = rule.spec

        if spec.type == "path":
            for path, kind in self._paths(operation):
                if not spec.applies(kind):
                    continue
                pattern = first_match(path, spec.patterns)
                if pattern is not None:
                    return self._violation(spec, pattern, path)
            return None

        if not spec.applies(operation.kind):
            return None

        if spec.type == "command":
            command = operation.command_text()
            if command:
                regex = rule.search(command)
                if regex is not None:
                    return self._violation(spec, regex, command)
            return None

        # content
        for subject, text in self._texts(operation):
            regex = rule.search(text)
            if regex is not None:
                return self._violation(spec, regex, subject)
        return None

    def _paths(self, operation: Operation) -> Iterable[Tuple[str, OperationKind]]:
        if operation.kind in COMMIT_KINDS:
            for staged in operation.staged_files():
                yield _normalized(staged.path), _COMMIT_PATH_KIND
            return
        yield _normalized(operation.target), operation.kind

    def _texts(self, operation: Operation) -> List[Tuple[str, str]]:
        texts: List[Tuple[str, str]] = []
        if operation.kind == OperationKind.WRITE:
            texts.append((operation.target, _decode(operation.content_bytes())))
        elif operation.kind in COMMIT_KINDS:
            for staged in operation.staged_files():
                texts.append((staged.path, _decode(staged.content)))
        for name in _TEXT_FIELDS:
            value = operation.payload_field(name)
            if value:
                texts.append((f"payload.{name}", str(value)))
        return texts

    @staticmethod
    def _violation(spec: RuleSpec, matched: str, subject: str) -> Violation:
        return Violation(
            rule_id=spec.id,
            severity=spec.severity,
            message=spec.message or f"Prohibited by rule '{spec.id}'",
            matched=matched,
            subject=subject,
        )


def _normalized(path: str) -> str:
    # Unparseable targets are still matched as given; the allowlist
    # validator rejects them on its own.
    result = canonicalize_path(path)
    return result.norm_path if result.ok else str(path)


def _decode(content: bytes) -> str:
    return content.decode("utf-8", errors="replace")
