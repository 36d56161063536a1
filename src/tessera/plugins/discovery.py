"""Plugin discovery.

Finds ``*.wasm`` modules in plugin directories:
1. The per-user directory (``~/.tessera/plugins/``)
2. ``./plugins`` next to where the host runs

Scanning compiles and validates each module but publishes nothing; the
registry decides what becomes invocable.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable, Iterator
from dataclasses import dataclass, field
from pathlib import Path

from tessera.errors import TesseraError
from tessera.sandbox.runtime import PluginModule, SandboxRuntime

logger = logging.getLogger(__name__)

MODULE_SUFFIX = ".wasm"


def default_plugin_dirs(app_name: str = "tessera") -> list[Path]:
    """Directories searched when the config names none."""
    return [Path(f"~/.{app_name}/plugins").expanduser(), Path("plugins")]


def iter_module_files(directories: Iterable[Path | str]) -> Iterator[Path]:
    """Yield module files in each existing directory, sorted by name."""
    for directory in directories:
        directory = Path(directory).expanduser()
        if not directory.is_dir():
            continue
        for path in sorted(directory.glob(f"*{MODULE_SUFFIX}")):
            if path.is_file() and not path.name.startswith("."):
                yield path.resolve()


@dataclass
class DiscoveryFailure:
    path: Path
    error: str


@dataclass
class DiscoveryResult:
    plugins: list[PluginModule] = field(default_factory=list)
    failures: list[DiscoveryFailure] = field(default_factory=list)

    def extend(self, other: DiscoveryResult) -> None:
        self.plugins.extend(other.plugins)
        self.failures.extend(other.failures)


class PluginScanner:
    """Compiles every module found in a set of directories."""

    def __init__(self, runtime: SandboxRuntime, blocked: Iterable[str] | None = None) -> None:
        self.runtime = runtime
        self.blocked = set(blocked or [])

    def scan_directory(self, directory: Path | str) -> DiscoveryResult:
        result = DiscoveryResult()
        for path in iter_module_files([directory]):
            if path.stem in self.blocked:
                logger.info(f"Plugin '{path.stem}' is blocked, skipping")
                continue
            try:
                plugin = self.runtime.compile_file(path)
            except TesseraError as e:
                logger.warning(f"Failed to load plugin '{path.name}': {e}")
                result.failures.append(DiscoveryFailure(path, str(e)))
                continue
            result.plugins.append(plugin)
        return result

    def scan_directories(self, directories: Iterable[Path | str]) -> DiscoveryResult:
        result = DiscoveryResult()
        for directory in directories:
            result.extend(self.scan_directory(directory))
        return result
