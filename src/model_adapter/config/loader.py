"""TOML configuration loader for backend profiles."""

import tomllib
from pathlib import Path

from pydantic import ValidationError

from model_adapter.config.models import AdapterConfig, BackendProfile

DEFAULT_CONFIG_FILE = "model_adapter.toml"


def load_config(config_path: Path | None = None) -> AdapterConfig:
    """Load backend configuration from TOML file.

    Args:
        config_path: Path to the TOML file (default: model_adapter.toml in cwd)

    Returns:
        AdapterConfig with all profiles

    Raises:
        FileNotFoundError: If config file doesn't exist
        ValueError: If config format is invalid
    """
    if config_path is None:
        config_path = Path.cwd() / DEFAULT_CONFIG_FILE

    if not config_path.exists():
        raise FileNotFoundError(
            f"Config not found: {config_path}\n"
            f"Create {DEFAULT_CONFIG_FILE} and define at least one profile."
        )

    try:
        with open(config_path, "rb") as f:
            data = tomllib.load(f)
    except tomllib.TOMLDecodeError as e:
        raise ValueError(f"Invalid TOML in {config_path}: {e}") from e

    try:
        profiles = {
            name: BackendProfile(**profile_data)
            for name, profile_data in data.get("profiles", {}).items()
        }
        engine_settings = data.get("engine", {})
        config = AdapterConfig(
            profiles=profiles,
            default_profile=engine_settings.get("default_profile"),
            link_separator=engine_settings.get("link_separator", "_"),
        )
    except (TypeError, ValidationError) as e:
        raise ValueError(f"Invalid config in {config_path}: {e}") from e

    if config.default_profile and config.default_profile not in config.profiles:
        raise ValueError(
            f"default_profile '{config.default_profile}' is not a configured profile"
        )

    return config
