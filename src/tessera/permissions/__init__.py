"""Capability-based permission system for plugins.

Provides pluggable strategies, a grant store with session and persistent
scopes, operator prompts, call-site trust flags and ready-made presets.
"""

from tessera.permissions.manager import EvaluationOutcome, PermissionManager
from tessera.permissions.models import (
    Grant,
    GrantSource,
    PermissionContext,
    Scope,
    Subject,
    SubjectKind,
    Verdict,
)
from tessera.permissions.presets import PermissionConfig, PermissionPresets, PermissionSettings
from tessera.permissions.prompt import (
    AutoPromptHandler,
    PromptAnswer,
    PromptHandler,
    PromptRequest,
    RecordingPromptHandler,
    RichPromptHandler,
)
from tessera.permissions.store import BaseGrantStore, MemoryGrantStore, SqliteGrantStore
from tessera.permissions.strategy import Strategy
from tessera.permissions.trust import (
    TrustDirectives,
    TrustEffect,
    TrustFlagConfig,
    TrustFlagPresets,
    TrustTarget,
)

__all__ = [
    "AutoPromptHandler",
    "BaseGrantStore",
    "EvaluationOutcome",
    "Grant",
    "GrantSource",
    "MemoryGrantStore",
    "PermissionConfig",
    "PermissionContext",
    "PermissionManager",
    "PermissionPresets",
    "PermissionSettings",
    "PromptAnswer",
    "PromptHandler",
    "PromptRequest",
    "RecordingPromptHandler",
    "RichPromptHandler",
    "Scope",
    "SqliteGrantStore",
    "Strategy",
    "Subject",
    "SubjectKind",
    "TrustDirectives",
    "TrustEffect",
    "TrustFlagConfig",
    "TrustFlagPresets",
    "TrustTarget",
    "Verdict",
]
