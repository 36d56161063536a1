"""Configuration loading and validation."""

from pathlib import Path

import yaml
from pydantic import ValidationError

from tessera.config.schema import TesseraConfig
from tessera.errors import TesseraError

DEFAULT_CONFIG_PATH = Path.home() / ".tessera" / "tessera.yaml"


class ConfigError(TesseraError):
    """Configuration loading or validation error."""


def load_config(path: Path | str | None = None) -> TesseraConfig:
    """Load and validate tessera configuration from YAML file.

    Args:
        path: Path to config file. If None, tries default location.
              If file doesn't exist, returns default config.

    Returns:
        Validated configuration object

    Raises:
        ConfigError: If config file exists but is invalid
    """
    path = Path(path).expanduser() if path is not None else DEFAULT_CONFIG_PATH

    # Zero-config mode: if file doesn't exist, use all defaults
    if not path.exists():
        return TesseraConfig()

    try:
        with open(path) as f:
            config_data = yaml.safe_load(f)
    except yaml.YAMLError as e:
        raise ConfigError(f"Invalid YAML in {path}: {e}") from e
    except OSError as e:
        raise ConfigError(f"Failed to load config from {path}: {e}") from e

    # Handle empty file
    if config_data is None:
        return TesseraConfig()
    if not isinstance(config_data, dict):
        raise ConfigError(f"Invalid config in {path}: top level must be a mapping")

    try:
        return TesseraConfig(**config_data)
    except ValidationError as e:
        raise ConfigError(f"Configuration validation failed: {e}") from e


def save_config(config: TesseraConfig, path: Path | str | None = None) -> Path:
    """Save configuration to YAML file.

    Args:
        config: Configuration object to save
        path: Destination path. If None, uses default location.

    Returns:
        The path written
    """
    path = Path(path).expanduser() if path is not None else DEFAULT_CONFIG_PATH

    # Ensure directory exists
    path.parent.mkdir(parents=True, exist_ok=True)

    config_dict = config.model_dump(mode="json")

    with open(path, "w") as f:
        yaml.safe_dump(config_dict, f, default_flow_style=False, sort_keys=False)
    return path
