"""Ready-made permission setups.

Each preset bundles a strategy with a grant store, a prompt handler and an
audit sink. ``from_settings`` builds the bundle described by the YAML config.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from pathlib import Path

from pydantic import BaseModel, Field, model_validator

from tessera.audit import AuditSink, FileAuditSink, MemoryAuditSink, NullAuditSink
from tessera.permissions.manager import PermissionManager
from tessera.permissions.prompt import AutoPromptHandler, PromptHandler, RichPromptHandler
from tessera.permissions.store import BaseGrantStore, MemoryGrantStore, SqliteGrantStore
from tessera.permissions.strategy import Strategy
from tessera.permissions.trust import TrustEffect, TrustFlagConfig

logger = logging.getLogger(__name__)


class PermissionSettings(BaseModel):
    """Permission section of tessera.yaml."""

    strategy: Strategy = Field(default=Strategy.DEFAULT, description="Policy for undecided capabilities")
    interactive: bool | None = Field(
        default=None, description="Force prompting on/off (default: detect a terminal)"
    )
    grants_db: Path = Field(
        default=Path("~/.tessera/grants.db"), description="SQLite file for persistent grants"
    )
    audit_log: Path | None = Field(
        default=Path("~/.tessera/audit.jsonl"), description="JSON Lines audit trail (null disables)"
    )
    prompt_timeout: float = Field(default=60.0, gt=0, description="Seconds before a prompt auto-denies")
    trust_flag_template: str = Field(default="--trust-{target}", description="Trust flag spelling")
    allow_dangerous_trust_all: bool = Field(
        default=False, description="Permit the trust_all strategy and trust-all flags"
    )

    @model_validator(mode="after")
    def _check_trust_all(self) -> PermissionSettings:
        if self.strategy is Strategy.TRUST_ALL and not self.allow_dangerous_trust_all:
            raise ValueError("strategy 'trust_all' requires allow_dangerous_trust_all: true")
        return self

    def trust_flag_config(self) -> TrustFlagConfig:
        """Trust flags accepted on the command line, plus ``--trust-session``."""
        return TrustFlagConfig(flag_template=self.trust_flag_template).with_alias(
            "--trust-session", TrustEffect.trust_session()
        )


@dataclass
class PermissionConfig:
    """Everything needed to build a :class:`PermissionManager`."""

    strategy: Strategy
    store: BaseGrantStore
    prompt: PromptHandler | None = None
    audit: AuditSink = field(default_factory=NullAuditSink)
    trust_flags: TrustFlagConfig = field(default_factory=TrustFlagConfig)
    interactive: bool | None = None
    allow_trust_all: bool = False

    def build_manager(self) -> PermissionManager:
        return PermissionManager(
            strategy=self.strategy,
            store=self.store,
            prompt=self.prompt,
            audit=self.audit,
            interactive=self.interactive,
            allow_trust_all=self.allow_trust_all,
        )


def _audit_sink(path: Path | None) -> AuditSink:
    return FileAuditSink(path) if path is not None else NullAuditSink()


class PermissionPresets:
    """Common configurations."""

    @staticmethod
    def interactive(
        grants_db: Path | str = "~/.tessera/grants.db",
        audit_log: Path | str | None = None,
        prompt_timeout: float = 60.0,
    ) -> PermissionConfig:
        """Ask the operator for anything undecided and remember 'always' answers."""
        return PermissionConfig(
            strategy=Strategy.DEFAULT,
            store=SqliteGrantStore(grants_db),
            prompt=RichPromptHandler(timeout=prompt_timeout),
            audit=_audit_sink(Path(audit_log) if audit_log else None),
        )

    @staticmethod
    def strict(
        grants_db: Path | str = "~/.tessera/grants.db", audit_log: Path | str | None = None
    ) -> PermissionConfig:
        """Only pre-existing grants count; nothing is ever prompted."""
        return PermissionConfig(
            strategy=Strategy.STRICT,
            store=SqliteGrantStore(grants_db),
            audit=_audit_sink(Path(audit_log) if audit_log else None),
            interactive=False,
        )

    @staticmethod
    def ci(
        grants_db: Path | str = "~/.tessera/grants.db", audit_log: Path | str | None = None
    ) -> PermissionConfig:
        """Non-interactive automation; grants come from the store or trust flags."""
        return PermissionConfig(
            strategy=Strategy.CI,
            store=SqliteGrantStore(grants_db),
            audit=_audit_sink(Path(audit_log) if audit_log else None),
            interactive=False,
        )

    @staticmethod
    def permissive(audit_log: Path | str | None = None) -> PermissionConfig:
        """Local resources are allowed without asking."""
        return PermissionConfig(
            strategy=Strategy.PERMISSIVE,
            store=MemoryGrantStore(),
            audit=_audit_sink(Path(audit_log) if audit_log else None),
            interactive=False,
        )

    @staticmethod
    def testing() -> PermissionConfig:
        """In-memory everything; every prompt is answered 'always'."""
        return PermissionConfig(
            strategy=Strategy.DEFAULT,
            store=MemoryGrantStore(),
            prompt=AutoPromptHandler.always_allow(),
            audit=MemoryAuditSink(),
        )

    @staticmethod
    def trust_all_dangerous() -> PermissionConfig:
        """No permission checks at all. Development only."""
        logger.warning("Using trust_all_dangerous permission preset")
        return PermissionConfig(
            strategy=Strategy.TRUST_ALL,
            store=MemoryGrantStore(),
            audit=MemoryAuditSink(),
            allow_trust_all=True,
        )

    @staticmethod
    def from_settings(settings: PermissionSettings) -> PermissionConfig:
        prompt = None
        if settings.strategy is Strategy.DEFAULT:
            prompt = RichPromptHandler(timeout=settings.prompt_timeout)
        return PermissionConfig(
            strategy=settings.strategy,
            store=SqliteGrantStore(settings.grants_db),
            prompt=prompt,
            audit=_audit_sink(settings.audit_log),
            trust_flags=settings.trust_flag_config(),
            interactive=settings.interactive,
            allow_trust_all=settings.allow_dangerous_trust_all,
        )
