"""Backend and engine factory.

Resolves a profile from ``model_adapter.toml`` (or an explicit URL) and
builds the matching storage backend, then wraps it in an ``AdapterEngine``.

Profile resolution order:
1. Explicit ``profile_name`` argument
2. ``{env_prefix}MODEL_ADAPTER_PROFILE`` environment variable
3. ``[engine] default_profile`` in the config file
4. Raise ``ProfileNotFoundError``

Usage:
    engine = await create_engine([Author, Book], profile_name="dev")
    async with engine:
        await engine.save(Author(name="Ursula"))
"""

import logging
import os
from collections.abc import Iterable
from pathlib import Path
from urllib.parse import quote

from model_adapter.adapters.base import StorageBackend
from model_adapter.adapters.engine import AdapterEngine
from model_adapter.adapters.memory import MemoryBackend
from model_adapter.adapters.sql import AsyncSQLBackend
from model_adapter.config.loader import load_config
from model_adapter.config.models import AdapterConfig, BackendProfile
from model_adapter.metadata.registry import ModelRegistry

logger = logging.getLogger(__name__)

PROFILE_ENV_VAR = "MODEL_ADAPTER_PROFILE"


class ProfileNotFoundError(Exception):
    """Raised when no backend profile is configured or the name is unknown."""

    pass


# ============================================================================
# Profile Resolution
# ============================================================================


def get_active_profile_name(
    profile_name: str | None = None,
    env_prefix: str = "",
    config: AdapterConfig | None = None,
) -> str:
    """Get the active profile name.

    Args:
        profile_name: Explicit profile name; wins when given.
        env_prefix: Prefix for the environment variable lookup
            (e.g. ``"APP_"`` reads ``APP_MODEL_ADAPTER_PROFILE``).
        config: Loaded config, consulted for ``default_profile``.

    Returns:
        Profile name

    Raises:
        ProfileNotFoundError: If no profile is configured
    """
    if profile_name:
        return profile_name

    env_profile = os.environ.get(f"{env_prefix}{PROFILE_ENV_VAR}")
    if env_profile:
        return env_profile

    if config is not None and config.default_profile:
        return config.default_profile

    raise ProfileNotFoundError(
        "No backend profile configured.\n"
        f"Set {env_prefix}{PROFILE_ENV_VAR}=<name>, pass a profile name, "
        "or set engine.default_profile in model_adapter.toml."
    )


def get_profile(
    profile_name: str | None = None,
    env_prefix: str = "",
    config: AdapterConfig | None = None,
) -> tuple[str, BackendProfile]:
    """Resolve the active profile name and its configuration.

    Raises:
        ProfileNotFoundError: If no profile is configured or the name is unknown
    """
    if config is None:
        config = load_config()
    name = get_active_profile_name(profile_name, env_prefix, config)
    if name not in config.profiles:
        available = ", ".join(config.profiles) or "(none)"
        raise ProfileNotFoundError(
            f"Profile '{name}' not found. Available profiles: {available}"
        )
    return name, config.profiles[name]


def resolve_url(profile: BackendProfile) -> str:
    """Resolve profile URL with password substitution.

    Args:
        profile: Backend profile from config

    Returns:
        Connection URL with password substituted
    """
    url = profile.url
    if profile.db_password and "[YOUR-PASSWORD]" in url:
        url = url.replace("[YOUR-PASSWORD]", quote(profile.db_password, safe=""))
    return url


# ============================================================================
# Backend Factory
# ============================================================================


def backend_from_profile(profile: BackendProfile) -> StorageBackend:
    """Build the storage backend a profile describes.

    Raises:
        ValueError: If a SQL profile has no URL.
    """
    if profile.provider == "memory":
        return MemoryBackend()
    url = resolve_url(profile)
    if not url:
        raise ValueError("SQL profile requires a url")
    return AsyncSQLBackend(url)


def get_backend(
    profile_name: str | None = None,
    url: str | None = None,
    env_prefix: str = "",
    config_path: Path | None = None,
) -> StorageBackend:
    """Create a storage backend from a profile or a direct URL.

    Args:
        profile_name: Profile from model_adapter.toml.
        url: Direct SQL connection URL; bypasses profile lookup entirely.
        env_prefix: Prefix for the profile environment variable.
        config_path: Alternate config file.

    Returns:
        StorageBackend instance

    Raises:
        ProfileNotFoundError: If no profile can be resolved
        FileNotFoundError: If the config file is needed but missing

    Example:
        >>> backend = get_backend(url="sqlite:///local.db")
    """
    if url:
        logger.debug("Using direct URL backend")
        return AsyncSQLBackend(url)

    name, profile = get_profile(profile_name, env_prefix, load_config(config_path))
    logger.debug("Using profile %s (%s)", name, profile.provider)
    return backend_from_profile(profile)


async def create_engine(
    models: Iterable[type],
    profile_name: str | None = None,
    url: str | None = None,
    env_prefix: str = "",
    config_path: Path | None = None,
    registry: ModelRegistry | None = None,
    ensure: bool = True,
) -> AdapterEngine:
    """Create an ``AdapterEngine`` over the backend of the active profile.

    Profile settings ``default_location`` and ``[engine] link_separator``
    are applied to the engine.  With ``ensure`` (the default) every model's
    schema is created before returning.

    Raises:
        ProfileNotFoundError: If no profile can be resolved
        SchemaError: If ensuring the schema fails
    """
    default_location = ""
    link_separator = "_"
    if url:
        backend: StorageBackend = AsyncSQLBackend(url)
    else:
        config = load_config(config_path)
        name, profile = get_profile(profile_name, env_prefix, config)
        logger.debug("Creating engine for profile %s", name)
        backend = backend_from_profile(profile)
        default_location = profile.default_location
        link_separator = config.link_separator

    engine = AdapterEngine(
        models,
        backend,
        registry=registry,
        default_location=default_location,
        link_separator=link_separator,
    )
    if ensure:
        try:
            await engine.ensure()
        except Exception:
            await engine.close()
            raise
    return engine
