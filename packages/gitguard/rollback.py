"""
Rollback Advisor - revert or reset?

Offline decision table, independent of the evaluate() hot path:

    pushed?  shared?   strategy
    no       no        RESET   (history is private, rewrite it)
    no       yes       REVERT  (someone may have fetched it)
    yes      any       REVERT  (published history is never rewritten)

Force-rewriting pushed history is never recommended; the prohibition
matcher rejects the force-push it would need anyway.
"""

from dataclasses import dataclass
from enum import Enum


class RollbackStrategy(str, Enum):
    REVERT = "revert"
    RESET = "reset"


@dataclass(frozen=True)
class RollbackAdvice:
    """What the executor should run to undo a change."""
    strategy: RollbackStrategy
    reason: str
    command: str  # command shape, e.g. "git revert --no-edit <ref>"


def recommend(has_been_pushed: bool, is_shared: bool) -> RollbackStrategy:
    """Pick the rollback strategy for a change."""
    if has_been_pushed or is_shared:
        return RollbackStrategy.REVERT
    return RollbackStrategy.RESET


class RollbackAdvisor:
    """Turns the decision table into concrete advice for an executor."""

    REVERT_COMMAND = "git revert --no-edit {ref}"
    RESET_COMMAND = "git reset --hard {ref}"

    def advise(self, ref: str, has_been_pushed: bool, is_shared: bool) -> RollbackAdvice:
        """
        Advise how to undo ref.

        Args:
            ref: For REVERT, the commit to undo; for RESET, the commit to return to
            has_been_pushed: The change exists on a remote
            is_shared: Someone else may have the change locally

        Returns:
            RollbackAdvice
        """
        strategy = recommend(has_been_pushed, is_shared)

        if strategy == RollbackStrategy.RESET:
            return RollbackAdvice(
                strategy=strategy,
                reason="Change is local and unshared; history can be rewritten safely",
                command=self.RESET_COMMAND.format(ref=ref),
            )

        if has_been_pushed:
            reason = "Change has been pushed; published history is never rewritten"
        else:
            reason = "Change is shared; others may have fetched it"
        return RollbackAdvice(
            strategy=strategy,
            reason=reason,
            command=self.REVERT_COMMAND.format(ref=ref),
        )
