"""Permission strategies.

Each strategy is one pure function from a capability request and its
context to a verdict. Storage, prompting and auditing belong to
:class:`~tessera.permissions.manager.PermissionManager`.
"""

from __future__ import annotations

from collections.abc import Callable
from enum import StrEnum

from tessera.permissions.models import PermissionContext, SubjectKind, Verdict
from tessera.protocol.manifest import CapabilityRequest


class Strategy(StrEnum):
    """Selectable permission policies."""

    DEFAULT = "default"
    STRICT = "strict"
    PERMISSIVE = "permissive"
    CI = "ci"
    TRUST_ALL = "trust_all"  # Development only

    @property
    def decision_subject(self) -> SubjectKind:
        """Subject kind decisions are recorded under."""
        return SubjectKind.COMMAND if self is Strategy.STRICT else SubjectKind.PLUGIN

    @property
    def is_dangerous(self) -> bool:
        return self is Strategy.TRUST_ALL


def _existing_allows(context: PermissionContext) -> bool:
    return context.existing is not None and context.existing.verdict is Verdict.ALLOW


def default_strategy(request: CapabilityRequest, context: PermissionContext) -> Verdict:
    """Use a stored decision if there is one, otherwise ask the operator."""
    if context.existing is not None:
        return context.existing.verdict
    return Verdict.PROMPT if context.interactive else Verdict.DENY


def strict_strategy(request: CapabilityRequest, context: PermissionContext) -> Verdict:
    """Only pre-existing grants are honoured; never prompts."""
    return Verdict.ALLOW if _existing_allows(context) else Verdict.DENY


def permissive_strategy(request: CapabilityRequest, context: PermissionContext) -> Verdict:
    """Allow local resources without asking; refuse network-equivalent access."""
    if request.kind.is_network:
        return Verdict.DENY
    if context.existing is not None and context.existing.verdict is Verdict.DENY:
        return Verdict.DENY
    return Verdict.ALLOW


def ci_strategy(request: CapabilityRequest, context: PermissionContext) -> Verdict:
    """Everything must be granted ahead of time."""
    return Verdict.ALLOW if _existing_allows(context) else Verdict.DENY


def trust_all_strategy(request: CapabilityRequest, context: PermissionContext) -> Verdict:
    return Verdict.ALLOW


StrategyFn = Callable[[CapabilityRequest, PermissionContext], Verdict]

STRATEGIES: dict[Strategy, StrategyFn] = {
    Strategy.DEFAULT: default_strategy,
    Strategy.STRICT: strict_strategy,
    Strategy.PERMISSIVE: permissive_strategy,
    Strategy.CI: ci_strategy,
    Strategy.TRUST_ALL: trust_all_strategy,
}


def evaluate(strategy: Strategy, request: CapabilityRequest, context: PermissionContext) -> Verdict:
    return STRATEGIES[Strategy(strategy)](request, context)
