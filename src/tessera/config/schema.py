"""Pydantic models for tessera.yaml configuration."""

from typing import Literal

from pydantic import BaseModel, Field

from tessera.permissions.presets import PermissionSettings
from tessera.plugins.discovery import default_plugin_dirs
from tessera.plugins.watcher import WatcherSettings
from tessera.sandbox.runtime import SandboxConfig


class PluginSettings(BaseModel):
    """Plugin discovery configuration."""

    app_name: str = Field(default="tessera", description="Name used for default directories")
    dirs: list[str] = Field(
        default_factory=list,
        description="Directories scanned for .wasm plugins (empty: ~/.<app_name>/plugins and ./plugins)",
    )
    reserved_names: list[str] = Field(
        default_factory=list,
        description="Command names plugins may not register",
    )
    blocked: list[str] = Field(
        default_factory=list,
        description="Plugin ids (file stems) to skip",
    )

    def resolved_dirs(self) -> list[str]:
        if self.dirs:
            return list(self.dirs)
        return [str(path) for path in default_plugin_dirs(self.app_name)]


class LoggingSettings(BaseModel):
    """Logging configuration."""

    level: Literal["DEBUG", "INFO", "WARNING", "ERROR"] = Field(
        default="WARNING", description="Log level for the tessera logger"
    )


class TesseraConfig(BaseModel):
    """Root configuration schema for tessera."""

    sandbox: SandboxConfig = Field(
        default_factory=SandboxConfig,
        description="Resource limits applied to every guest call",
    )
    permissions: PermissionSettings = Field(
        default_factory=PermissionSettings,
        description="Capability strategy, grant store and audit trail",
    )
    plugins: PluginSettings = Field(default_factory=PluginSettings)
    watcher: WatcherSettings = Field(default_factory=WatcherSettings)
    logging: LoggingSettings = Field(default_factory=LoggingSettings)
