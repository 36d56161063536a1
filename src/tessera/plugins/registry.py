"""Registry of invocable plugin commands.

The registry maps command names to immutable :class:`PluginEntry` rows.
Publishing never mutates the live mapping: a new dict is built off to the
side and swapped in under a lock, so a lookup sees either the whole old
mapping or the whole new one. An invocation binds its entry up front and
keeps running against that module even if a reload replaces it meanwhile.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Iterable
from dataclasses import dataclass, field
from datetime import UTC, datetime
from pathlib import Path

from tessera.audit import AuditEventType, AuditLog
from tessera.errors import (
    CapabilityDenied,
    CommandCollision,
    CommandNotFound,
    LoadError,
    ProtocolError,
    SandboxFault,
    TesseraError,
    WasiError,
)
from tessera.permissions.manager import PermissionManager
from tessera.permissions.models import Grant, Scope, Subject
from tessera.permissions.trust import TrustTarget
from tessera.plugins.discovery import DiscoveryFailure, DiscoveryResult, iter_module_files
from tessera.protocol.manifest import CapabilityRequest, CommandSpec, ExecuteResult, PluginManifest
from tessera.sandbox.runtime import PluginModule, SandboxRuntime

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class PluginEntry:
    """One published command."""

    name: str
    manifest: PluginManifest
    module: PluginModule
    plugin_id: str
    source_path: Path | None = None
    granted: frozenset[CapabilityRequest] = frozenset()
    loaded_at: datetime = field(default_factory=lambda: datetime.now(UTC))

    @property
    def command(self) -> CommandSpec:
        return self.manifest.command


def _normalize(path: Path | str) -> Path:
    return Path(path).expanduser().resolve()


class PluginRegistry:
    """Maps command names to sandboxed plugin modules."""

    def __init__(
        self,
        runtime: SandboxRuntime,
        permissions: PermissionManager,
        reserved_names: Iterable[str] = (),
        audit: AuditLog | None = None,
    ) -> None:
        """
        Initialize plugin registry.

        Args:
            runtime: Sandbox used to compile and run modules
            permissions: Evaluates capabilities before anything is published
            reserved_names: Built-in command names plugins may not take
            audit: Audit log for lifecycle events (defaults to the manager's)
        """
        self.runtime = runtime
        self.permissions = permissions
        self.reserved_names = frozenset(reserved_names)
        self.audit = audit or permissions.audit
        self._entries: dict[str, PluginEntry] = {}
        self._paths: dict[Path, str] = {}
        self._lock = asyncio.Lock()

    # -- lookup ---------------------------------------------------------------

    def get(self, name: str) -> PluginEntry | None:
        return self._entries.get(name)

    def has_command(self, name: str) -> bool:
        return name in self._entries

    def names(self) -> list[str]:
        return sorted(self._entries)

    def list(self) -> list[CommandSpec]:
        """Command specs of every published plugin, sorted by name."""
        entries = self._entries
        return [entries[name].command for name in sorted(entries)]

    def get_manifest(self, name: str) -> PluginManifest | None:
        entry = self._entries.get(name)
        return entry.manifest if entry is not None else None

    def command_for_path(self, path: Path | str) -> str | None:
        return self._paths.get(_normalize(path))

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, name: object) -> bool:
        return name in self._entries

    # -- loading --------------------------------------------------------------

    async def load_plugin(self, path: Path | str) -> PluginEntry:
        """Compile, evaluate and publish the module at ``path``.

        Replaces the entry previously loaded from the same file, if any.
        On failure the previous entry stays in place.

        Raises:
            LoadError: Malformed, incompatible or colliding module
            CapabilityDenied: A declared capability was not granted
            SandboxFault: The guest trapped while producing its manifest
            ProtocolError: The manifest bytes were malformed
        """
        path = _normalize(path)
        try:
            module = await asyncio.to_thread(self.runtime.compile_file, path)
        except TesseraError as e:
            self._record_failure(path.stem, path, e)
            raise
        return await self.register(module, plugin_id=path.stem, source_path=path)

    async def reload_by_path(self, path: Path | str) -> PluginEntry:
        return await self.load_plugin(path)

    async def register(
        self,
        module: PluginModule,
        plugin_id: str | None = None,
        source_path: Path | str | None = None,
    ) -> PluginEntry:
        """Evaluate an already compiled module and publish it."""
        plugin_id = plugin_id or module.name
        source = _normalize(source_path) if source_path is not None else None
        manifest = module.manifest
        name = manifest.command.name

        try:
            self._check_collision(name, plugin_id, source, self._entries)

            outcome = await self.permissions.evaluate(plugin_id, manifest)
            if not outcome.allowed:
                raise CapabilityDenied(str(Subject.plugin(plugin_id)), outcome.denied)

            try:
                self.runtime.validator.check(outcome.granted)
            except WasiError as e:
                raise LoadError(str(e), source) from e
        except TesseraError as e:
            self._record_failure(plugin_id, source, e)
            raise

        async with self._lock:
            entries = dict(self._entries)
            paths = dict(self._paths)
            try:
                self._check_collision(name, plugin_id, source, entries)
            except LoadError as e:
                self._record_failure(plugin_id, source, e)
                raise

            replaced = entries.get(name)
            if source is not None:
                previous_name = paths.get(source)
                if previous_name is not None and previous_name != name:
                    replaced = entries.pop(previous_name, None) or replaced
                paths[source] = name

            entry = PluginEntry(
                name=name,
                manifest=manifest,
                module=module,
                plugin_id=plugin_id,
                source_path=source,
                granted=outcome.granted,
            )
            entries[name] = entry
            self._entries, self._paths = entries, paths

        event = AuditEventType.PLUGIN_RELOADED if replaced else AuditEventType.PLUGIN_LOADED
        self.audit.record(
            event,
            Subject.plugin(plugin_id),
            command=name,
            path=str(source) if source else None,
            digest=module.digest,
        )
        action = "Reloaded" if replaced else "Loaded"
        logger.info(f"{action} plugin '{plugin_id}' as command '{name}'")
        return entry

    def _check_collision(
        self,
        name: str,
        plugin_id: str,
        source: Path | None,
        entries: dict[str, PluginEntry],
    ) -> None:
        if name in self.reserved_names:
            raise CommandCollision(name, "a built-in command", source)
        current = entries.get(name)
        if current is None:
            return
        if source is not None and current.source_path is not None:
            same = current.source_path == source
        else:
            same = current.plugin_id == plugin_id
        if not same:
            owner = f"plugin '{current.plugin_id}'"
            if current.source_path is not None:
                owner += f" ({current.source_path})"
            raise CommandCollision(name, owner, source)

    def _record_failure(self, plugin_id: str, path: Path | None, error: Exception) -> None:
        logger.warning(f"Failed to load plugin '{plugin_id}': {error}")
        self.audit.record(
            AuditEventType.PLUGIN_LOAD_FAILED,
            Subject.plugin(plugin_id),
            path=str(path) if path else None,
            error=str(error),
            error_type=type(error).__name__,
        )

    async def load_directories(
        self, directories: Iterable[Path | str], blocked: Iterable[str] = ()
    ) -> DiscoveryResult:
        """Load every module found in ``directories``; failures are collected."""
        blocked = set(blocked)
        result = DiscoveryResult()
        for path in iter_module_files(directories):
            if path.stem in blocked:
                logger.info(f"Plugin '{path.stem}' is blocked, skipping")
                continue
            try:
                entry = await self.load_plugin(path)
            except TesseraError as e:
                result.failures.append(DiscoveryFailure(path, str(e)))
                continue
            result.plugins.append(entry.module)
        return result

    # -- unloading ------------------------------------------------------------

    async def unload(self, name: str) -> bool:
        """Remove a command. In-flight invocations finish on their module."""
        async with self._lock:
            entry = self._entries.get(name)
            if entry is None:
                return False
            entries = dict(self._entries)
            del entries[name]
            paths = {path: cmd for path, cmd in self._paths.items() if cmd != name}
            self._entries, self._paths = entries, paths

        self.audit.record(AuditEventType.PLUGIN_UNLOADED, Subject.plugin(entry.plugin_id), command=name)
        logger.info(f"Unloaded plugin '{entry.plugin_id}' (command '{name}')")
        return True

    async def unload_by_path(self, path: Path | str) -> str | None:
        """Remove whatever command was loaded from ``path``."""
        name = self._paths.get(_normalize(path))
        if name is None:
            return None
        return name if await self.unload(name) else None

    # -- router surface -------------------------------------------------------

    def trust(
        self,
        name: str,
        scope: Scope = Scope.SESSION,
        target: TrustTarget = TrustTarget.PLUGIN,
    ) -> Grant:
        """Pre-seed a blanket grant for a plugin id or command name."""
        subject = Subject.plugin(name) if target is TrustTarget.PLUGIN else Subject.command(name)
        return self.permissions.trust(subject, scope)

    async def invoke(self, name: str, argv: Iterable[str] = ()) -> ExecuteResult:
        """Run a command with its raw argument tail.

        Guest misbehaviour (sandbox faults, protocol violations) and host-side
        setup errors come back as a system-error result rather than an exception.

        Raises:
            CommandNotFound: If no plugin provides ``name``
        """
        entry = self._entries.get(name)
        if entry is None:
            raise CommandNotFound(name)

        args = [str(arg) for arg in argv]
        logger.debug(f"Invoking '{name}' with {len(args)} args")
        try:
            return await asyncio.to_thread(entry.module.execute, args, entry.granted)
        except SandboxFault as e:
            self.audit.record(
                AuditEventType.SANDBOX_FAULT,
                Subject.plugin(entry.plugin_id),
                command=name,
                kind=e.kind.value,
                error=e.message,
            )
            return ExecuteResult.system_error(f"plugin '{name}' was stopped ({e.kind.value}): {e.message}")
        except (ProtocolError, WasiError) as e:
            logger.warning(f"Plugin '{name}' failed: {e}")
            return ExecuteResult.system_error(f"plugin '{name}' failed: {e}")
        except Exception as e:
            logger.exception(f"Unexpected host error running '{name}'")
            return ExecuteResult.system_error(f"plugin '{name}' failed: {e}")
