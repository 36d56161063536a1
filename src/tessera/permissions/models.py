"""Core types for capability decisions."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import StrEnum

from tessera.protocol.manifest import CapabilityRequest

# Capability/pattern value of a grant that covers everything for its subject.
WILDCARD = "*"


class SubjectKind(StrEnum):
    """What a decision is attached to."""

    PLUGIN = "plugin"  # Module identity (file stem)
    COMMAND = "command"  # Command name the module registers


@dataclass(frozen=True, order=True)
class Subject:
    kind: SubjectKind
    name: str

    @classmethod
    def plugin(cls, name: str) -> Subject:
        return cls(SubjectKind.PLUGIN, name)

    @classmethod
    def command(cls, name: str) -> Subject:
        return cls(SubjectKind.COMMAND, name)

    @classmethod
    def parse(cls, value: str) -> Subject:
        """Parse ``plugin:NAME`` or ``command:NAME``; a bare name is a plugin."""
        kind, sep, name = value.partition(":")
        if sep and kind in (SubjectKind.PLUGIN.value, SubjectKind.COMMAND.value):
            return cls(SubjectKind(kind), name)
        return cls.plugin(value)

    def __str__(self) -> str:
        return f"{self.kind.value}:{self.name}"


class Verdict(StrEnum):
    """Outcome of evaluating one capability request."""

    ALLOW = "allow"
    DENY = "deny"
    PROMPT = "prompt"  # Only produced by strategies, never stored


class Scope(StrEnum):
    """How long a decision lives."""

    SESSION = "session"  # Until the process exits
    PERSISTENT = "persistent"  # Survives restarts


class GrantSource(StrEnum):
    PROMPT = "prompt"
    TRUST = "trust"
    STRATEGY = "strategy"


@dataclass(frozen=True)
class Grant:
    """A stored allow/deny decision for one subject and capability."""

    subject: Subject
    capability: str
    pattern: str
    verdict: Verdict
    scope: Scope = Scope.SESSION
    capabilities_hash: str | None = None
    source: GrantSource = GrantSource.PROMPT
    decided_at: datetime = field(default_factory=lambda: datetime.now(UTC))

    def __post_init__(self) -> None:
        if self.verdict is Verdict.PROMPT:
            raise ValueError("a stored decision must be allow or deny")

    @classmethod
    def wildcard(cls, subject: Subject, scope: Scope = Scope.SESSION) -> Grant:
        """Blanket allow for one plugin or command, as seeded by trust flags."""
        return cls(
            subject=subject,
            capability=WILDCARD,
            pattern=WILDCARD,
            verdict=Verdict.ALLOW,
            scope=scope,
            source=GrantSource.TRUST,
        )

    @classmethod
    def for_request(
        cls,
        subject: Subject,
        request: CapabilityRequest,
        verdict: Verdict,
        scope: Scope,
        capabilities_hash: str | None,
        source: GrantSource = GrantSource.PROMPT,
    ) -> Grant:
        return cls(
            subject=subject,
            capability=request.kind.value,
            pattern=request.pattern,
            verdict=verdict,
            scope=scope,
            capabilities_hash=capabilities_hash,
            source=source,
        )

    @property
    def is_wildcard(self) -> bool:
        return self.capability == WILDCARD

    @property
    def key(self) -> tuple[str, str, str, str]:
        return (self.subject.kind.value, self.subject.name, self.capability, self.pattern)

    def matches_hash(self, capabilities_hash: str) -> bool:
        """Wildcard grants are not bound to a declared set."""
        return self.is_wildcard or self.capabilities_hash == capabilities_hash


@dataclass(frozen=True)
class PermissionContext:
    """What a strategy may look at when judging one request.

    ``existing`` is only set when a stored decision still applies, that is
    when it is a trust grant or was made for the same declared set.
    """

    subject: Subject
    interactive: bool
    existing: Grant | None = None
