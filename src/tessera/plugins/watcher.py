"""Hot reload for plugin directories.

The watcher polls the plugin directories and keeps a signature
(``mtime_ns``, size, SHA-256) per module file. A changed signature is only
acted on once it has stayed the same for ``debounce_seconds``, so a file that
is still being written is not loaded half-way. New and modified files are
(re)loaded through the registry; deleted files are unloaded.

Example:
    >>> watcher = HotReloadWatcher(registry, ["~/.tessera/plugins"])
    >>> await watcher.start()
    >>> ...
    >>> await watcher.stop()
"""

from __future__ import annotations

import asyncio
import contextlib
import hashlib
import logging
import time
from collections.abc import Callable, Iterable
from dataclasses import dataclass
from enum import StrEnum
from pathlib import Path

from pydantic import BaseModel, Field

from tessera.errors import TesseraError
from tessera.plugins.discovery import iter_module_files
from tessera.plugins.registry import PluginRegistry

logger = logging.getLogger(__name__)


class WatcherSettings(BaseModel):
    """Watcher section of tessera.yaml."""

    enabled: bool = Field(default=True, description="Reload plugins when their files change")
    debounce_seconds: float = Field(default=0.5, ge=0, description="Quiet period before acting")
    poll_interval_seconds: float = Field(default=0.25, gt=0, description="Seconds between scans")
    load_existing: bool = Field(default=True, description="Load modules already present on start")


@dataclass(frozen=True)
class FileSignature:
    mtime_ns: int
    size: int
    digest: str


class WatchEventKind(StrEnum):
    LOADED = "loaded"
    UNLOADED = "unloaded"
    FAILED = "failed"


@dataclass(frozen=True)
class WatchEvent:
    """Something the watcher did to the registry."""

    kind: WatchEventKind
    path: Path
    command: str | None = None
    error: str | None = None


class HotReloadWatcher:
    """Polls plugin directories and keeps the registry in step with them."""

    def __init__(
        self,
        registry: PluginRegistry,
        directories: Iterable[Path | str],
        config: WatcherSettings | None = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        """
        Initialize the watcher.

        Args:
            registry: Registry that loads and unloads modules
            directories: Directories to watch (missing ones are skipped)
            config: Debounce and polling settings
            clock: Monotonic time source
        """
        self.registry = registry
        self.directories = [Path(d).expanduser() for d in directories]
        self.config = config or WatcherSettings()
        self._clock = clock
        # Signature last acted on, per file.
        self._applied: dict[Path, FileSignature] = {}
        # Signature seen but not yet acted on, and when it was first seen.
        self._pending: dict[Path, tuple[FileSignature | None, float]] = {}
        self._stat_cache: dict[Path, FileSignature] = {}
        self.last_errors: dict[Path, str] = {}
        self._task: asyncio.Task[None] | None = None

    @property
    def debounce_seconds(self) -> float:
        return self.config.debounce_seconds

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def _signature(self, path: Path) -> FileSignature | None:
        try:
            stat = path.stat()
        except OSError:
            return None
        cached = self._stat_cache.get(path)
        if cached is not None and (cached.mtime_ns, cached.size) == (stat.st_mtime_ns, stat.st_size):
            return cached
        try:
            digest = hashlib.sha256(path.read_bytes()).hexdigest()
        except OSError:
            return None
        signature = FileSignature(stat.st_mtime_ns, stat.st_size, digest)
        self._stat_cache[path] = signature
        return signature

    def _scan(self) -> dict[Path, FileSignature]:
        found: dict[Path, FileSignature] = {}
        for path in iter_module_files(self.directories):
            signature = self._signature(path)
            if signature is not None:
                found[path] = signature
        for path in set(self._stat_cache) - set(found):
            del self._stat_cache[path]
        return found

    async def load_existing(self) -> list[WatchEvent]:
        """Load every module currently present, without debouncing."""
        current = await asyncio.to_thread(self._scan)
        events = []
        for path, signature in sorted(current.items()):
            events.append(await self._apply(path, signature))
        return events

    async def poll_once(self) -> list[WatchEvent]:
        """Scan once and act on every change that has settled."""
        now = self._clock()
        current = await asyncio.to_thread(self._scan)
        events = []

        for path in sorted(set(current) | set(self._applied) | set(self._pending)):
            signature = current.get(path)
            if signature == self._applied.get(path):
                self._pending.pop(path, None)
                continue

            pending = self._pending.get(path)
            if pending is None or pending[0] != signature:
                pending = (signature, now)
                self._pending[path] = pending
            if now - pending[1] < self.debounce_seconds:
                continue

            del self._pending[path]
            events.append(await self._apply(path, signature))
        return events

    async def _apply(self, path: Path, signature: FileSignature | None) -> WatchEvent:
        if signature is None:
            self._applied.pop(path, None)
            self.last_errors.pop(path, None)
            name = await self.registry.unload_by_path(path)
            logger.info(f"Plugin file removed: {path.name}")
            return WatchEvent(WatchEventKind.UNLOADED, path, command=name)

        # Recorded even on failure, so a broken file is retried only once it changes.
        self._applied[path] = signature
        try:
            entry = await self.registry.load_plugin(path)
        except TesseraError as e:
            self.last_errors[path] = str(e)
            logger.warning(f"Reload of {path.name} failed: {e}")
            return WatchEvent(WatchEventKind.FAILED, path, error=str(e))

        self.last_errors.pop(path, None)
        return WatchEvent(WatchEventKind.LOADED, path, command=entry.name)

    async def _run(self) -> None:
        while True:
            try:
                await self.poll_once()
            except Exception:
                logger.exception("Plugin watcher poll failed")
            await asyncio.sleep(self.config.poll_interval_seconds)

    async def start(self) -> None:
        """Optionally load what is present, then poll in a background task."""
        if self.running:
            return
        if self.config.load_existing:
            await self.load_existing()
        self._task = asyncio.create_task(self._run(), name="tessera-watcher")
        watched = ", ".join(str(d) for d in self.directories)
        logger.info(f"Watching {watched}")

    async def stop(self) -> None:
        task, self._task = self._task, None
        if task is None:
            return
        task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await task
