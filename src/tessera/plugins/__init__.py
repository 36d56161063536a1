"""Plugin discovery, registry and hot reload."""

from tessera.plugins.discovery import (
    DiscoveryFailure,
    DiscoveryResult,
    PluginScanner,
    default_plugin_dirs,
    iter_module_files,
)
from tessera.plugins.registry import PluginEntry, PluginRegistry
from tessera.plugins.watcher import (
    FileSignature,
    HotReloadWatcher,
    WatchEvent,
    WatchEventKind,
    WatcherSettings,
)

__all__ = [
    "DiscoveryFailure",
    "DiscoveryResult",
    "FileSignature",
    "HotReloadWatcher",
    "PluginEntry",
    "PluginRegistry",
    "PluginScanner",
    "WatchEvent",
    "WatchEventKind",
    "WatcherSettings",
    "default_plugin_dirs",
    "iter_module_files",
]
