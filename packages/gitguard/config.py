"""
Policy Configuration - immutable snapshot of the guard's rule tables

Philosophy:
- Loaded once per process from policies/default.yaml (or a caller-supplied file)
- A value type: frozen dataclasses, tuples and read-only mappings, no mutators
- policy_hash pins every decision to the exact rule table that produced it
"""

from dataclasses import dataclass
from datetime import timedelta
from functools import lru_cache
from pathlib import Path
from types import MappingProxyType
from typing import Any, Dict, FrozenSet, Mapping, Optional, Tuple
import fnmatch
import hashlib
import logging

import yaml

from .errors import ConfigError
from .models import OperationKind, Severity

logger = logging.getLogger(__name__)

DEFAULT_POLICY_PATH = Path(__file__).parent / "policies" / "default.yaml"

RULE_TYPES = ("path", "command", "content")


@dataclass(frozen=True)
class RuleSpec:
    """One absolute prohibition rule as declared in the policy file."""
    id: str
    type: str  # path | command | content
    severity: Severity
    patterns: Tuple[str, ...]
    applies_to: FrozenSet[OperationKind]
    message: str = ""

    def applies(self, kind: OperationKind) -> bool:
        return kind in self.applies_to


@dataclass(frozen=True)
class Limits:
    file_size_soft_bytes: int = 1_048_576
    file_size_hard_bytes: int = 5_242_880
    commit_max_files: int = 50
    commit_max_bytes: int = 10_485_760
    staleness_seconds: int = 300
    rate_window_seconds: int = 60
    pr_title_min: int = 10
    pr_title_max: int = 72
    pr_description_min: int = 30

    @property
    def staleness(self) -> timedelta:
        return timedelta(seconds=self.staleness_seconds)

    @property
    def rate_window(self) -> timedelta:
        return timedelta(seconds=self.rate_window_seconds)


@dataclass(frozen=True)
class GuardConfig:
    """
    Read-only policy snapshot.

    Build with GuardConfig.load() or GuardConfig.from_mapping(); there is no
    way to change a loaded instance.
    """
    version: str
    policy_hash: str
    limits: Limits
    rate_limits: Mapping[str, int]
    per_branch_categories: FrozenSet[str]
    protected_branches: Tuple[str, ...]
    branch_pattern: str
    allowed_paths: Tuple[str, ...]
    binary_extensions: FrozenSet[str]
    schemas: Mapping[str, str]
    changelog_paths: Tuple[str, ...]
    changelog_date_pattern: str
    prohibitions: Tuple[RuleSpec, ...]
    secret_heuristics: Mapping[str, str]

    @classmethod
    def load(cls, policy_path: Optional[Path] = None) -> "GuardConfig":
        """
        Load a policy file.

        Args:
            policy_path: YAML policy (default: bundled policies/default.yaml)

        Raises:
            ConfigError: If the file is missing or malformed
        """
        policy_path = Path(policy_path) if policy_path else DEFAULT_POLICY_PATH
        data = load_policy_document(policy_path)
        content = policy_path.read_bytes()
        config = cls.from_mapping(data, policy_hash=hashlib.sha256(content).hexdigest())
        logger.info(
            f"Loaded policy {config.version} from {policy_path} "
            f"({len(config.prohibitions)} prohibitions, hash {config.policy_hash[:12]})"
        )
        return config

    @classmethod
    def default(cls) -> "GuardConfig":
        """Process-wide snapshot of the bundled policy."""
        return _default_config()

    @classmethod
    def from_mapping(cls, data: Mapping[str, Any], policy_hash: Optional[str] = None) -> "GuardConfig":
        """Build a snapshot from an already-parsed policy mapping."""
        try:
            limits = Limits(**dict(data.get("limits", {})))
        except TypeError as e:
            raise ConfigError(f"Unknown key in limits: {e}") from e

        rate_limits = {str(k): int(v) for k, v in dict(data.get("rate_limits", {})).items()}
        for category, ceiling in rate_limits.items():
            if ceiling <= 0:
                raise ConfigError(f"Rate ceiling for '{category}' must be positive, got {ceiling}")

        changelog = dict(data.get("changelog", {}))
        heuristics = {
            str(entry["id"]): str(entry["pattern"])
            for entry in data.get("secret_heuristics", [])
        }

        if policy_hash is None:
            canonical = yaml.safe_dump(_plain(data), sort_keys=True).encode("utf-8")
            policy_hash = hashlib.sha256(canonical).hexdigest()

        return cls(
            version=str(data.get("version", "unversioned")),
            policy_hash=policy_hash,
            limits=limits,
            rate_limits=MappingProxyType(rate_limits),
            per_branch_categories=frozenset(data.get("per_branch_categories", [])),
            protected_branches=tuple(data.get("protected_branches", [])),
            branch_pattern=str(data.get("branch_pattern", r"^[a-z0-9][a-z0-9._/-]*$")),
            allowed_paths=tuple(data.get("allowed_paths", [])),
            binary_extensions=frozenset(ext.lower() for ext in data.get("binary_extensions", [])),
            schemas=MappingProxyType(dict(data.get("schemas", {}))),
            changelog_paths=tuple(changelog.get("paths", ["CHANGELOG.md"])),
            changelog_date_pattern=str(changelog.get("date_pattern", r"(\d{4}-\d{2}-\d{2})")),
            prohibitions=tuple(_parse_rule(entry) for entry in data.get("prohibitions", [])),
            secret_heuristics=MappingProxyType(heuristics),
        )

    def rate_ceiling(self, category: str) -> Optional[int]:
        return self.rate_limits.get(category)

    def is_protected_branch(self, branch: str) -> bool:
        return any(fnmatch.fnmatchcase(branch, pattern) for pattern in self.protected_branches)


def load_policy_document(policy_path: Path) -> Dict[str, Any]:
    """
    Read a policy YAML file into one mapping.

    Policies may be split into several documents with --- separators;
    later documents override earlier keys.
    """
    if not policy_path.exists():
        raise ConfigError(f"Policy file not found: {policy_path}")

    content = policy_path.read_text(encoding="utf-8")
    try:
        documents = [doc for doc in yaml.safe_load_all(content) if doc]
    except yaml.YAMLError as e:
        raise ConfigError(f"Policy file {policy_path} is not valid YAML: {e}") from e

    merged: Dict[str, Any] = {}
    for doc in documents:
        if not isinstance(doc, dict):
            raise ConfigError(f"Policy document in {policy_path} must be a mapping")
        merged.update(doc)
    return merged


@lru_cache(maxsize=1)
def _default_config() -> GuardConfig:
    return GuardConfig.load(DEFAULT_POLICY_PATH)


def _parse_rule(entry: Mapping[str, Any]) -> RuleSpec:
    rule_id = entry.get("id")
    if not rule_id:
        raise ConfigError(f"Prohibition without id: {entry!r}")

    rule_type = entry.get("type")
    if rule_type not in RULE_TYPES:
        raise ConfigError(f"Prohibition '{rule_id}' has unknown type {rule_type!r}")

    try:
        severity = Severity(entry.get("severity", "high"))
    except ValueError as e:
        raise ConfigError(f"Prohibition '{rule_id}': {e}") from e

    patterns = entry.get("patterns") or []
    if not patterns:
        raise ConfigError(f"Prohibition '{rule_id}' declares no patterns")

    if entry.get("applies_to"):
        applies_to = frozenset(OperationKind(kind) for kind in entry["applies_to"])
    else:
        applies_to = frozenset(OperationKind)

    return RuleSpec(
        id=str(rule_id),
        type=rule_type,
        severity=severity,
        patterns=tuple(str(p) for p in patterns),
        applies_to=applies_to,
        message=str(entry.get("message", "")),
    )


def _plain(value: Any) -> Any:
    """Turn read-only mappings/tuples back into plain YAML-dumpable values."""
    if isinstance(value, Mapping):
        return {str(k): _plain(v) for k, v in value.items()}
    if isinstance(value, (list, tuple, set, frozenset)):
        return [_plain(v) for v in value]
    return value
