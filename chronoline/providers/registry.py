"""Model registry and TOML configuration loader.

Loads model definitions from models.toml and application defaults from
defaults.toml. The config directory can be overridden with the
CHRONOLINE_CONFIG_DIR environment variable.
"""

from __future__ import annotations

import os
import tomllib
from pathlib import Path

from pydantic import ValidationError

from chronoline.exceptions import ConfigError
from chronoline.schemas.config import AppConfig, ModelConfig

# Default config directory relative to the chronoline package
_CONFIG_DIR = Path(__file__).parent.parent / "config"

CONFIG_DIR_ENV = "CHRONOLINE_CONFIG_DIR"


def config_dir() -> Path:
    """Return the active config directory."""
    override = os.environ.get(CONFIG_DIR_ENV, "")
    return Path(override) if override else _CONFIG_DIR


def _read_toml(path: Path) -> dict:
    if not path.exists():
        raise ConfigError(f"Config file not found: {path}")
    try:
        with open(path, "rb") as f:
            return tomllib.load(f)
    except tomllib.TOMLDecodeError as e:
        raise ConfigError(f"Invalid TOML in {path}: {e}") from e


def load_models(config_path: Path | None = None) -> dict[str, ModelConfig]:
    """Load the model registry from a TOML file.

    Args:
        config_path: Path to models.toml. Defaults to <config dir>/models.toml.

    Returns:
        Dictionary mapping model keys to ModelConfig instances.

    Raises:
        ConfigError: If the file is missing or its structure is invalid.
    """
    path = config_path or config_dir() / "models.toml"
    raw = _read_toml(path)

    models_section = raw.get("models")
    if not models_section or not isinstance(models_section, dict):
        raise ConfigError(f"No [models] section found in {path}")

    registry: dict[str, ModelConfig] = {}
    for key, entry in models_section.items():
        if not isinstance(entry, dict):
            continue
        try:
            registry[key] = ModelConfig(**entry)
        except ValidationError as e:
            raise ConfigError(f"Invalid model '{key}' in {path}: {e}") from e

    return registry


def load_app_config(config_path: Path | None = None) -> AppConfig:
    """Load application defaults from a TOML file.

    Args:
        config_path: Path to defaults.toml. Defaults to <config dir>/defaults.toml.

    Returns:
        AppConfig with values from the [timeline] and [server] sections.

    Raises:
        ConfigError: If the file is missing or its values are invalid.
    """
    path = config_path or config_dir() / "defaults.toml"
    raw = _read_toml(path)

    timeline_section = raw.get("timeline", {})
    server_section = raw.get("server", {})
    try:
        return AppConfig(**timeline_section, **server_section)
    except (TypeError, ValidationError) as e:
        raise ConfigError(f"Invalid defaults in {path}: {e}") from e


def validate_config(app_config: AppConfig, registry: dict[str, ModelConfig]) -> None:
    """Check that every model the app config names exists in the registry.

    Raises:
        ConfigError: Naming the first missing model key.
    """
    for field in ("classifier_model", "generator_model"):
        key = getattr(app_config, field)
        if key not in registry:
            raise ConfigError(f"{field} '{key}' is not in the model registry")
