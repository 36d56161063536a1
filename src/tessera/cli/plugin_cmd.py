"""CLI commands for running and managing plugins."""

from __future__ import annotations

import asyncio
from dataclasses import dataclass

from rich.console import Console
from rich.table import Table

from tessera.config.schema import TesseraConfig
from tessera.errors import CommandNotFound
from tessera.permissions.manager import PermissionManager
from tessera.permissions.models import Scope, Subject, Verdict
from tessera.permissions.presets import PermissionPresets
from tessera.permissions.trust import TrustDirectives, TrustTarget
from tessera.plugins.discovery import DiscoveryResult
from tessera.plugins.registry import PluginRegistry
from tessera.protocol.manifest import SYSTEM_ERROR_CODE, CommandSpec
from tessera.sandbox.runtime import SandboxRuntime

console = Console()
err_console = Console(stderr=True)


@dataclass
class PluginHost:
    config: TesseraConfig
    runtime: SandboxRuntime
    permissions: PermissionManager
    registry: PluginRegistry

    async def load(self) -> DiscoveryResult:
        return await self.registry.load_directories(
            self.config.plugins.resolved_dirs(), blocked=self.config.plugins.blocked
        )

    def close(self) -> None:
        self.runtime.close()
        self.permissions.store.close()
        self.permissions.audit.close()


def build_host(config: TesseraConfig, directives: TrustDirectives | None = None) -> PluginHost:
    """Wire runtime, permissions and registry from configuration."""
    permissions = PermissionPresets.from_settings(config.permissions).build_manager()
    if directives is not None and directives.has_any():
        permissions.apply_directives(directives)
    runtime = SandboxRuntime(config.sandbox)
    registry = PluginRegistry(
        runtime, permissions, reserved_names=config.plugins.reserved_names
    )
    return PluginHost(config, runtime, permissions, registry)


def _print_failures(result: DiscoveryResult) -> None:
    for failure in result.failures:
        err_console.print(f"Skipped {failure.path.name}: {failure.error}", style="yellow", markup=False)


def list_commands(config: TesseraConfig) -> int:
    """List every command the installed plugins provide."""
    host = build_host(config)
    try:
        result = asyncio.run(host.load())
        _print_failures(result)
        commands = host.registry.list()
        if not commands:
            console.print("[dim]No plugins loaded.[/dim]")
            dirs = ", ".join(config.plugins.resolved_dirs())
            console.print(f"Drop .wasm files in {dirs}.")
            return 0

        table = Table(title="Plugin Commands")
        table.add_column("Command", style="cyan")
        table.add_column("Version")
        table.add_column("Plugin")
        table.add_column("Description")
        for spec in commands:
            entry = host.registry.get(spec.name)
            table.add_row(
                spec.name,
                spec.version or "-",
                entry.plugin_id if entry else "-",
                spec.about or "",
            )
        console.print(table)
        return 0
    finally:
        host.close()


def _print_args(spec: CommandSpec, indent: str = "    ") -> None:
    for arg in spec.args:
        flags = ", ".join(
            flag for flag in (f"-{arg.short}" if arg.short else None, f"--{arg.long}" if arg.long else None) if flag
        )
        label = flags or arg.name
        required = " [red](required)[/red]" if arg.required else ""
        console.print(f"{indent}{label}{required}  {arg.help or ''}")
    for sub in spec.subcommands:
        console.print(f"{indent}[cyan]{sub.name}[/cyan]  {sub.about or ''}")
        _print_args(sub, indent + "  ")


def info_command(config: TesseraConfig, name: str) -> int:
    """Show detailed info about a plugin command."""
    host = build_host(config)
    try:
        _print_failures(asyncio.run(host.load()))
        entry = host.registry.get(name)
        if entry is None:
            err_console.print(f"[red]Command '{name}' not found.[/red]")
            return 1

        spec = entry.command
        manifest = entry.manifest
        version = f" v{spec.version}" if spec.version else ""
        console.print(f"\n[bold cyan]{spec.name}[/bold cyan]{version}")
        if spec.about:
            console.print(f"  {spec.about}")
        if spec.author:
            console.print(f"  Author: {spec.author}")
        console.print(f"  Plugin: {entry.plugin_id}")
        if entry.source_path:
            console.print(f"  Source: {entry.source_path}")
        console.print(f"  API version: {manifest.api_version}")

        requests = manifest.capabilities.requests()
        console.print("  Capabilities:")
        if not requests:
            console.print("    none")
        for request in requests:
            console.print(f"    {request}")

        if spec.args or spec.subcommands:
            console.print("  Arguments:")
            _print_args(spec)
        return 0
    finally:
        host.close()


def run_command(
    config: TesseraConfig,
    name: str,
    args: list[str],
    directives: TrustDirectives | None = None,
) -> int:
    """Load plugins, run one command and map its result to an exit code."""
    host = build_host(config, directives)
    try:

        async def _run():
            _print_failures(await host.load())
            return await host.registry.invoke(name, args)

        try:
            result = asyncio.run(_run())
        except CommandNotFound as e:
            err_console.print(str(e), style="red", markup=False, highlight=False)
            return 1

        if result.success:
            if result.output:
                console.print(result.output, markup=False, highlight=False)
            return 0

        err_console.print(result.message, markup=False, highlight=False, style="red")
        return SYSTEM_ERROR_CODE if result.is_system_error else result.code or 1
    finally:
        host.close()


def trust_subject(config: TesseraConfig, name: str, command: bool = False, persistent: bool = False) -> int:
    """Store a blanket grant for a plugin or command."""
    host = build_host(config)
    try:
        scope = Scope.PERSISTENT if persistent else Scope.SESSION
        target = TrustTarget.COMMAND if command else TrustTarget.PLUGIN
        grant = host.registry.trust(name, scope=scope, target=target)
        console.print(f"[green]Trusted {grant.subject} ({scope.value}).[/green]")
        if scope is Scope.SESSION:
            console.print("[dim]Session grants end with this process; use --persistent to keep it.[/dim]")
        return 0
    finally:
        host.close()


def list_grants(config: TesseraConfig, subject: str | None = None) -> int:
    """List stored decisions."""
    host = build_host(config)
    try:
        grants = host.permissions.store.list(Subject.parse(subject) if subject else None)
        if not grants:
            console.print("[dim]No stored decisions.[/dim]")
            return 0

        table = Table(title="Permission Decisions")
        table.add_column("Subject", style="cyan", no_wrap=True)
        table.add_column("Capability")
        table.add_column("Pattern")
        table.add_column("Verdict")
        table.add_column("Scope")
        table.add_column("Decided")
        for grant in grants:
            verdict = "[green]allow[/green]" if grant.verdict is Verdict.ALLOW else "[red]deny[/red]"
            table.add_row(
                str(grant.subject),
                grant.capability,
                grant.pattern or "-",
                verdict,
                grant.scope.value,
                grant.decided_at.strftime("%Y-%m-%d %H:%M"),
            )
        console.print(table)
        return 0
    finally:
        host.close()


def revoke_grants(config: TesseraConfig, subject: str) -> int:
    """Forget every decision for a subject."""
    host = build_host(config)
    try:
        parsed = Subject.parse(subject)
        removed = host.permissions.revoke(parsed)
        if removed:
            console.print(f"[yellow]Revoked {removed} decision(s) for {parsed}.[/yellow]")
        else:
            console.print(f"[dim]No decisions stored for {parsed}.[/dim]")
        return 0
    finally:
        host.close()


def watch_command(config: TesseraConfig) -> int:
    """Keep the registry in step with the plugin directories until interrupted."""
    from tessera.plugins.watcher import HotReloadWatcher

    if not config.watcher.enabled:
        err_console.print("[yellow]The watcher is disabled in the configuration.[/yellow]")
        return 1

    host = build_host(config)
    watcher = HotReloadWatcher(host.registry, config.plugins.resolved_dirs(), config.watcher)

    async def _watch():
        await watcher.start()
        console.print(f"[green]Watching[/green] {', '.join(config.plugins.resolved_dirs())}")
        try:
            while True:
                await asyncio.sleep(3600)
        finally:
            await watcher.stop()

    try:
        asyncio.run(_watch())
    except KeyboardInterrupt:
        console.print("\n[dim]Stopped.[/dim]")
    finally:
        host.close()
    return 0
