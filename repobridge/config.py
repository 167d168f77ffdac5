"""Bridge configuration: loading, saving, paths.

Settings live in ~/.config/repobridge/config.json. A missing file yields the
defaults below; anything present must match the BridgeConfig schema.
"""

from __future__ import annotations

import json
import logging
from dataclasses import asdict, dataclass, field
from enum import Enum
from pathlib import Path

import dacite

from .exceptions import (
    ConfigLoadError,
    ConfigSaveError,
    ConfigValidationError,
    record_error,
)

logger = logging.getLogger(__name__)

# Configuration file locations
CONFIG_DIR = Path.home() / ".config" / "repobridge"
CONFIG_PATH = CONFIG_DIR / "config.json"


class MutationPolicy(Enum):
    """What to do when a mutation is issued while another is pending."""

    REJECT = "reject"  # Raise MutationInProgressError
    REPLACE = "replace"  # Abandon the pending mutation and track the new one


@dataclass
class RetryPolicy:
    """Exponential backoff for queries rejected with a retryable error."""

    max_attempts: int = 3
    initial_delay: float = 0.5
    multiplier: float = 2.0
    max_delay: float = 8.0

    def delay_for(self, attempt: int) -> float:
        """Return the sleep before retry number ``attempt`` (1-based)."""
        if attempt < 1:
            return 0.0
        return min(self.initial_delay * self.multiplier ** (attempt - 1), self.max_delay)


@dataclass
class ChannelNames:
    """Wire names of the backend notification channels."""

    repo_config: str = "gg://repo/config"
    repo_status: str = "gg://repo/status"
    revision_select: str = "gg://revision/select"


@dataclass
class BridgeConfig:
    """Runtime settings for a RepoSession."""

    query_timeout: float | None = 30.0  # None disables the local timer
    load_timeout: float | None = 60.0
    hung_after: float = 10.0
    retry: RetryPolicy = field(default_factory=RetryPolicy)
    mutation_policy: MutationPolicy = MutationPolicy.REPLACE
    clear_on_success: bool = True
    channels: ChannelNames = field(default_factory=ChannelNames)


def _validate(config: BridgeConfig) -> BridgeConfig:
    for name in ("query_timeout", "load_timeout"):
        value = getattr(config, name)
        if value is not None and value <= 0:
            raise ConfigValidationError(
                f"{name} must be positive or null", field=name, value=value
            )
    if config.hung_after <= 0:
        raise ConfigValidationError(
            "hung_after must be positive", field="hung_after", value=config.hung_after
        )
    if config.retry.max_attempts < 1:
        raise ConfigValidationError(
            "retry.max_attempts must be at least 1",
            field="retry.max_attempts",
            value=config.retry.max_attempts,
        )
    return config


def load_config_from_dict(data: dict) -> BridgeConfig:
    """Build a BridgeConfig from parsed JSON.

    Raises:
        ConfigValidationError: If the data does not match the schema.
    """
    try:
        config = dacite.from_dict(
            data_class=BridgeConfig,
            data=data,
            config=dacite.Config(cast=[Enum], type_hooks={float: float}, strict=True),
        )
    except (dacite.DaciteError, ValueError) as e:
        logger.error("Config schema validation failed: %s", e)
        record_error(e)
        raise ConfigValidationError(
            f"Config schema validation failed: {e}",
            cause=e,
        ) from e
    return _validate(config)


def load_config(path: Path | None = None) -> BridgeConfig:
    """
    Load bridge configuration.

    Args:
        path: Config file to read. Defaults to ~/.config/repobridge/config.json.

    Returns:
        BridgeConfig with file settings, or defaults if the file does not exist.

    Raises:
        ConfigLoadError: If the config file exists but cannot be parsed.
        ConfigValidationError: If the config does not match the schema.
    """
    config_path = path or CONFIG_PATH
    if not config_path.exists():
        logger.debug("No config found at %s, using defaults", config_path)
        return BridgeConfig()

    try:
        with open(config_path, encoding="utf-8") as f:
            data = json.load(f)
        logger.debug("Loaded config from %s", config_path)
    except json.JSONDecodeError as e:
        logger.error("Invalid JSON in config file: %s", e)
        record_error(e)
        raise ConfigLoadError(
            f"Invalid JSON in config file at line {e.lineno}",
            file_path=str(config_path),
            context={"line": e.lineno, "column": e.colno},
            cause=e,
        ) from e
    except OSError as e:
        logger.error("Failed to read config file: %s", e)
        record_error(e)
        raise ConfigLoadError(
            "Failed to read config file",
            file_path=str(config_path),
            cause=e,
        ) from e

    if not isinstance(data, dict):
        raise ConfigValidationError(
            "Config file must contain a JSON object",
            context={"file_path": str(config_path)},
        )
    return load_config_from_dict(data)


def config_to_dict(config: BridgeConfig) -> dict:
    """Convert a BridgeConfig to JSON-compatible data."""
    data = asdict(config)
    data["mutation_policy"] = config.mutation_policy.value
    return data


def save_config(config: BridgeConfig, path: Path | None = None) -> None:
    """
    Save bridge configuration, creating the directory if needed.

    Raises:
        ConfigSaveError: If the config cannot be saved.
    """
    config_path = path or CONFIG_PATH
    try:
        config_path.parent.mkdir(parents=True, exist_ok=True)
        with open(config_path, "w", encoding="utf-8") as f:
            json.dump(config_to_dict(config), f, indent=2)
        logger.debug("Saved config to %s", config_path)
    except OSError as e:
        logger.error("Failed to write config file: %s", e)
        record_error(e)
        raise ConfigSaveError(
            "Failed to write config file",
            file_path=str(config_path),
            cause=e,
        ) from e


def get_config_path() -> Path:
    """Return the path to the config file."""
    return CONFIG_PATH


def get_config_dir() -> Path:
    """Return the path to the config directory."""
    return CONFIG_DIR
