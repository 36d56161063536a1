"""Evaluate a plugin's declared capabilities before it is published.

For every capability in a manifest the manager looks up the stored decision,
lets the active strategy judge the request, asks the prompt handler when the
strategy wants a human, records any new decision and appends the verdict to
the audit trail.

Example:
    >>> from tessera.permissions import PermissionManager, Strategy
    >>> from tessera.permissions.store import MemoryGrantStore
    >>>
    >>> manager = PermissionManager(Strategy.CI, store=MemoryGrantStore())
    >>> outcome = await manager.evaluate("env_reader", manifest)
    >>> outcome.allowed
    False
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field

from tessera.audit import AuditEventType, AuditLog, AuditSink
from tessera.permissions.models import (
    Grant,
    GrantSource,
    PermissionContext,
    Scope,
    Subject,
    SubjectKind,
    Verdict,
)
from tessera.permissions.prompt import PromptHandler, PromptRequest
from tessera.permissions.store import BaseGrantStore, MemoryGrantStore
from tessera.permissions.strategy import Strategy, evaluate
from tessera.permissions.trust import TrustDirectives
from tessera.protocol.manifest import CapabilityRequest, PluginManifest

logger = logging.getLogger(__name__)


@dataclass
class EvaluationOutcome:
    """Result of evaluating one manifest."""

    plugin_id: str
    command: str
    capabilities_hash: str
    granted: frozenset[CapabilityRequest] = frozenset()
    denied: tuple[CapabilityRequest, ...] = ()
    decisions: list[Grant] = field(default_factory=list)
    escalated: bool = False

    @property
    def allowed(self) -> bool:
        return not self.denied


class PermissionManager:
    """Applies a strategy, a grant store and a prompt handler to manifests.

    Evaluations are serialized, so two loads of the same plugin cannot both
    observe an undecided capability and race to record conflicting answers.
    """

    def __init__(
        self,
        strategy: Strategy = Strategy.DEFAULT,
        store: BaseGrantStore | None = None,
        prompt: PromptHandler | None = None,
        audit: AuditSink | AuditLog | None = None,
        interactive: bool | None = None,
        allow_trust_all: bool = False,
    ):
        """Initialize permission manager.

        Args:
            strategy: Policy applied to undecided capabilities
            store: Grant store (in-memory if omitted)
            prompt: Handler used when the strategy asks for a human
            audit: Audit sink or log for every verdict
            interactive: Override for whether prompting is possible.
                Defaults to the prompt handler's own view.
            allow_trust_all: Must be set to use ``Strategy.TRUST_ALL``

        Raises:
            ValueError: If TRUST_ALL is requested without ``allow_trust_all``
        """
        strategy = Strategy(strategy)
        if strategy.is_dangerous and not allow_trust_all:
            raise ValueError(
                "Strategy 'trust_all' disables permission checks and must be enabled explicitly"
            )
        self.strategy = strategy
        self.store = store if store is not None else MemoryGrantStore()
        self.prompt = prompt
        self.audit = audit if isinstance(audit, AuditLog) else AuditLog(audit)
        if interactive is None:
            interactive = prompt is not None and prompt.is_interactive
        self.interactive = interactive
        self.allow_trust_all = allow_trust_all
        self.persist_decisions = True
        self._lock = asyncio.Lock()

        if strategy.is_dangerous:
            logger.warning("Permission checks are disabled (strategy=trust_all); development use only")

    def trust(self, subject: Subject, scope: Scope = Scope.SESSION) -> Grant:
        """Pre-seed a blanket allow for one plugin or command."""
        grant = Grant.wildcard(subject, scope)
        self.store.put(grant)
        self.audit.record(
            AuditEventType.PERMISSION_GRANTED,
            subject,
            capability="*",
            pattern="*",
            verdict=Verdict.ALLOW,
            source=GrantSource.TRUST.value,
            scope=scope.value,
        )
        logger.info(f"Trusted {subject} ({scope.value})")
        return grant

    def apply_directives(self, directives: TrustDirectives) -> None:
        """Turn parsed trust flags into session grants."""
        for name in directives.trusted_plugins:
            self.trust(Subject.plugin(name))
        for name in directives.trusted_commands:
            self.trust(Subject.command(name))
        if directives.trust_session:
            self.persist_decisions = False
        if directives.trust_all:
            if self.allow_trust_all:
                self.strategy = Strategy.TRUST_ALL
                logger.warning("Trust-all flag given; permission checks are disabled for this run")
            else:
                logger.warning("Ignoring trust-all flag: not permitted by configuration")

    def revoke(self, subject: Subject) -> int:
        return self.store.revoke(subject)

    def _lookup(
        self, subjects: tuple[Subject, ...], request: CapabilityRequest, digest: str
    ) -> tuple[Grant | None, Grant | None]:
        """Find the decision that applies to a request.

        Returns:
            ``(current, stale)``. ``current`` is a trust grant or a decision
            made for this exact declared set. ``stale`` is a decision made
            for a different declared set, which signals escalation.
        """
        for subject in subjects:
            grant = self.store.get(subject, "*", "*")
            if grant is not None:
                return grant, None

        stale = None
        for subject in subjects:
            grant = self.store.get(subject, request.kind.value, request.pattern)
            if grant is None:
                continue
            if grant.matches_hash(digest):
                return grant, None
            stale = stale or grant
        return None, stale

    async def evaluate(self, plugin_id: str, manifest: PluginManifest) -> EvaluationOutcome:
        """Decide every capability the manifest declares.

        Args:
            plugin_id: Module identity, usually the file stem
            manifest: Validated manifest

        Returns:
            Granted and denied requests; the plugin may only be published
            when nothing was denied
        """
        async with self._lock:
            return await self._evaluate(plugin_id, manifest)

    async def _evaluate(self, plugin_id: str, manifest: PluginManifest) -> EvaluationOutcome:
        command = manifest.command.name
        digest = manifest.capabilities.compute_hash()
        plugin_subject = Subject.plugin(plugin_id)
        command_subject = Subject.command(command)
        # Either subject's decisions count, the strategy's own first.
        if self.strategy.decision_subject is SubjectKind.COMMAND:
            decision_subject = command_subject
            subjects = (command_subject, plugin_subject)
        else:
            decision_subject = plugin_subject
            subjects = (plugin_subject, command_subject)

        outcome = EvaluationOutcome(plugin_id=plugin_id, command=command, capabilities_hash=digest)
        granted: list[CapabilityRequest] = []
        denied: list[CapabilityRequest] = []

        for request in manifest.capabilities.requests():
            self.audit.record(
                AuditEventType.PERMISSION_REQUESTED,
                decision_subject,
                request.kind,
                request.pattern,
                command=command,
            )

            if self.strategy is Strategy.TRUST_ALL:
                verdict = Verdict.ALLOW
            else:
                existing, stale = self._lookup(subjects, request, digest)
                if stale is not None:
                    outcome.escalated = True
                    self.audit.record(
                        AuditEventType.ESCALATION_DETECTED,
                        decision_subject,
                        request.kind,
                        request.pattern,
                        previous_hash=stale.capabilities_hash,
                        current_hash=digest,
                    )
                context = PermissionContext(
                    subject=decision_subject, interactive=self.interactive, existing=existing
                )
                verdict = evaluate(self.strategy, request, context)

                if verdict is Verdict.PROMPT:
                    verdict = await self._ask(
                        decision_subject, command, request, digest, stale is not None, outcome
                    )

            (granted if verdict is Verdict.ALLOW else denied).append(request)
            self.audit.record(
                AuditEventType.PERMISSION_GRANTED
                if verdict is Verdict.ALLOW
                else AuditEventType.PERMISSION_DENIED,
                decision_subject,
                request.kind,
                request.pattern,
                verdict,
                strategy=self.strategy.value,
            )

        outcome.granted = frozenset(granted)
        outcome.denied = tuple(denied)
        if denied:
            logger.warning(
                f"{plugin_subject} ({command}) denied: {', '.join(str(r) for r in denied)}"
            )
        else:
            logger.debug(f"{plugin_subject} ({command}) cleared {len(granted)} capabilities")
        return outcome

    async def _ask(
        self,
        subject: Subject,
        command: str,
        request: CapabilityRequest,
        digest: str,
        escalation: bool,
        outcome: EvaluationOutcome,
    ) -> Verdict:
        if self.prompt is None:
            return Verdict.DENY

        answer = await self.prompt.ask(
            PromptRequest(subject=subject, command=command, request=request, escalation=escalation)
        )
        if not answer.remembered:
            return answer.verdict
        scope = answer.scope if self.persist_decisions else Scope.SESSION
        grant = Grant.for_request(subject, request, answer.verdict, scope, digest)
        # Another evaluation may have recorded a decision in the meantime.
        grant = self.store.put_if_absent(grant)
        outcome.decisions.append(grant)
        return grant.verdict
