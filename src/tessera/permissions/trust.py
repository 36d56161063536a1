"""Call-site trust flags.

Trust flags let automation pre-approve one specific plugin or command for a
single run (``--trust-plugin=hello``, ``--trust-command=db:migrate``)
without loosening the policy for anything else. The flag spelling is
configurable so hosts can match their own CLI conventions.
"""

from __future__ import annotations

from collections.abc import Sequence
from dataclasses import dataclass, field, replace
from enum import StrEnum


class TrustTarget(StrEnum):
    PLUGIN = "plugin"
    COMMAND = "command"


class TrustEffectKind(StrEnum):
    NAMED = "named"  # Trust one plugin or command
    TRUST_ALL = "trust_all"  # Trust every plugin (dangerous)
    TRUST_SESSION = "trust_session"  # Do not persist decisions made this run


@dataclass(frozen=True)
class TrustEffect:
    kind: TrustEffectKind
    target: TrustTarget | None = None
    name: str | None = None

    @classmethod
    def named(cls, target: TrustTarget, name: str) -> TrustEffect:
        return cls(TrustEffectKind.NAMED, target, name)

    @classmethod
    def trust_all(cls) -> TrustEffect:
        return cls(TrustEffectKind.TRUST_ALL)

    @classmethod
    def trust_session(cls) -> TrustEffect:
        return cls(TrustEffectKind.TRUST_SESSION)

    @property
    def description(self) -> str:
        if self.kind is TrustEffectKind.NAMED:
            return f"Trust {self.target} '{self.name}'"
        if self.kind is TrustEffectKind.TRUST_ALL:
            return "Trust all plugins (dangerous)"
        return "Trust permissions for this session only"


@dataclass(frozen=True)
class TrustFlagAlias:
    flag: str
    effect: TrustEffect
    description: str = ""


@dataclass
class TrustDirectives:
    """Trust requests parsed from one command line."""

    trusted_plugins: list[str] = field(default_factory=list)
    trusted_commands: list[str] = field(default_factory=list)
    trust_all: bool = False
    trust_session: bool = False

    def is_plugin_trusted(self, name: str) -> bool:
        return self.trust_all or name in self.trusted_plugins

    def is_command_trusted(self, name: str) -> bool:
        return self.trust_all or name in self.trusted_commands

    def has_any(self) -> bool:
        return bool(
            self.trust_all or self.trust_session or self.trusted_plugins or self.trusted_commands
        )


@dataclass(frozen=True)
class TrustFlagConfig:
    """Spelling of the trust flags a host accepts.

    Attributes:
        enabled: When False, :meth:`parse_args` ignores everything.
        flag_template: Flag spelling; ``{target}`` becomes ``plugin``/``command``.
        help_template: Help text; ``{target}`` and ``{name}`` are substituted.
        aliases: Extra fixed flags with their own effect.
        hidden: Hide the flags from generated help.
    """

    enabled: bool = True
    flag_template: str = "--trust-{target}"
    help_template: str = "Trust {target} '{name}' for this run"
    aliases: tuple[TrustFlagAlias, ...] = ()
    hidden: bool = False

    @classmethod
    def disabled(cls) -> TrustFlagConfig:
        return cls(enabled=False)

    def with_flag_template(self, template: str) -> TrustFlagConfig:
        return replace(self, flag_template=template)

    def with_alias(self, flag: str, effect: TrustEffect, description: str | None = None) -> TrustFlagConfig:
        alias = TrustFlagAlias(flag, effect, description or effect.description)
        return replace(self, aliases=(*self.aliases, alias))

    def generate_flag(self, target: TrustTarget) -> str:
        return self.flag_template.replace("{target}", target.value)

    def generate_help(self, target: TrustTarget, name: str) -> str:
        return self.help_template.replace("{target}", target.value).replace("{name}", name)

    def parse_args(self, args: Sequence[str]) -> TrustDirectives:
        """Extract trust directives from raw host arguments.

        Both ``FLAG=NAME`` and ``FLAG NAME`` forms are understood. Unrelated
        arguments are ignored.
        """
        directives = TrustDirectives()
        if not self.enabled:
            return directives

        index = 0
        while index < len(args):
            consumed = self._consume(args, index, directives)
            index = consumed if consumed is not None else index + 1
        return directives

    def split_args(self, args: Sequence[str]) -> tuple[TrustDirectives, list[str]]:
        """Separate leading trust flags from the rest of a command line.

        Parsing stops at the first argument that is not a trust flag, so the
        command name and everything after it come back untouched.
        """
        directives = TrustDirectives()
        index = 0
        if self.enabled:
            while index < len(args):
                consumed = self._consume(args, index, directives)
                if consumed is None:
                    break
                index = consumed
        return directives, list(args[index:])

    def _consume(self, args: Sequence[str], index: int, directives: TrustDirectives) -> int | None:
        """Apply the flag at ``args[index]``; return the index after it, or None."""
        arg = args[index]
        for alias in self.aliases:
            if arg == alias.flag:
                self._apply(directives, alias.effect)
                return index + 1

        for target in TrustTarget:
            flag = self.generate_flag(target)
            if arg.startswith(f"{flag}="):
                name, after = arg[len(flag) + 1 :], index + 1
            elif arg == flag and index + 1 < len(args):
                name, after = args[index + 1], index + 2
            else:
                continue
            if name:
                self._apply(directives, TrustEffect.named(target, name))
            return after
        return None

    @staticmethod
    def _apply(directives: TrustDirectives, effect: TrustEffect) -> None:
        if effect.kind is TrustEffectKind.TRUST_ALL:
            directives.trust_all = True
        elif effect.kind is TrustEffectKind.TRUST_SESSION:
            directives.trust_session = True
        elif effect.target is TrustTarget.PLUGIN:
            directives.trusted_plugins.append(effect.name or "")
        else:
            directives.trusted_commands.append(effect.name or "")


class TrustFlagPresets:
    """Common flag spellings."""

    @staticmethod
    def standard() -> TrustFlagConfig:
        """``--trust-plugin`` / ``--trust-command``."""
        return TrustFlagConfig()

    @staticmethod
    def allow_style() -> TrustFlagConfig:
        """``--allow-plugin`` / ``--allow-command``."""
        return TrustFlagConfig().with_flag_template("--allow-{target}")

    @staticmethod
    def short_style() -> TrustFlagConfig:
        """``-tplugin`` / ``-tcommand``, plus ``-ta`` to trust everything."""
        return TrustFlagConfig().with_flag_template("-t{target}").with_alias("-ta", TrustEffect.trust_all())

    @staticmethod
    def disabled() -> TrustFlagConfig:
        return TrustFlagConfig.disabled()
