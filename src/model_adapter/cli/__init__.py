"""CLI module for inspecting model metadata and managing backend schemas.

Usage:
    model-adapter profiles
    model-adapter describe myapp.models:MODELS
    MODEL_ADAPTER_PROFILE=dev model-adapter ensure myapp.models:MODELS
    model-adapter ensure myapp.models:MODELS --url sqlite:///local.db

``MODULE:ATTR`` names a module attribute holding a model class or an
iterable of model classes.

Commands:
    profiles  - List available profiles
    describe  - Show registered metadata, including synthesized link models
    ensure    - Create tables and indexes for every model on a backend
"""

import argparse
import asyncio
import importlib
import sys
from pathlib import Path

from rich.console import Console
from rich.table import Table

from model_adapter.adapters.engine import AdapterEngine
from model_adapter.adapters.memory import MemoryBackend
from model_adapter.config.loader import load_config
from model_adapter.errors import ModelAdapterError
from model_adapter.factory import (
    ProfileNotFoundError,
    create_engine,
    get_active_profile_name,
)
from model_adapter.metadata.models import ModelInfo

console = Console()


# ============================================================================
# Model loading (CLI-internal helper)
# ============================================================================


def _load_models(target: str) -> list[type]:
    """Import ``MODULE:ATTR`` and return the model classes it names.

    Raises:
        ValueError: If *target* is malformed or does not name model classes.
        ImportError: If the module cannot be imported.
    """
    module_name, sep, attr = target.partition(":")
    if not sep or not module_name or not attr:
        raise ValueError(f"Expected MODULE:ATTR, got '{target}'")

    module = importlib.import_module(module_name)
    try:
        value = getattr(module, attr)
    except AttributeError as e:
        raise ValueError(f"Module '{module_name}' has no attribute '{attr}'") from e

    models = [value] if isinstance(value, type) else list(value)
    if not models or not all(isinstance(m, type) for m in models):
        raise ValueError(f"'{target}' must be a model class or a list of model classes")
    return models


def _flags(info: ModelInfo, field_key: str) -> str:
    column = info.column(field_key)
    flags = []
    if field_key == info.primary_field:
        flags.append("primary")
    if column is not None:
        if column.secondary:
            flags.append("secondary")
        if column.computed:
            flags.append("computed")
    return ", ".join(flags)


def _describe_model(model_type: type, info: ModelInfo) -> Table:
    location = f"{info.storage_location}." if info.storage_location else ""
    table = Table(
        title=f"{model_type.__name__} -> {location}{info.table}",
        show_header=True,
        header_style="bold",
    )
    table.add_column("Field")
    table.add_column("Storage key")
    table.add_column("Flags")
    table.add_column("Tags")

    for column in info.columns:
        table.add_row(
            column.field_key,
            column.key,
            _flags(info, column.field_key),
            ", ".join(sorted(column.tags)),
        )
    for index in info.indexes:
        table.add_row(f"[dim]index {index.name}[/dim]", ", ".join(index.keys), "", "")
    for relationship in info.relationships:
        table.add_row(
            f"[cyan]{relationship.key}[/cyan]",
            relationship.foreign_key,
            relationship.kind.value,
            "",
        )
    return table


# ============================================================================
# Async command implementations
# ============================================================================


async def _async_ensure(args: argparse.Namespace) -> int:
    """Async implementation for ensure command.

    Returns:
        0 on success, 1 on failure.
    """
    try:
        models = _load_models(args.models)
    except (ImportError, ValueError) as e:
        console.print(f"[red]Error: {e}[/red]")
        return 1

    try:
        engine = await create_engine(
            models,
            profile_name=args.profile,
            url=args.url,
            env_prefix=getattr(args, "env_prefix", ""),
            config_path=args.config,
        )
    except (FileNotFoundError, ValueError, ProfileNotFoundError, ModelAdapterError) as e:
        console.print(f"[bold red]x[/bold red] {e}")
        return 1

    async with engine:
        for model_type in engine.models:
            info = engine.info(model_type)
            console.print(f"  [green]v[/green] {info.table}")

    console.print(
        f"\n[bold green]v[/bold green] Ensured {len(engine.models)} tables"
    )
    return 0


# ============================================================================
# Command handlers
# ============================================================================


def cmd_profiles(args: argparse.Namespace) -> int:
    """List available profiles from model_adapter.toml.

    Reads only local TOML config -- no backend calls.

    Returns:
        0 on success, 1 if the config is missing or invalid.
    """
    try:
        config = load_config(args.config)
    except (FileNotFoundError, ValueError) as e:
        console.print(f"[red]Error: {e}[/red]")
        return 1

    try:
        current = get_active_profile_name(
            env_prefix=getattr(args, "env_prefix", ""), config=config
        )
    except ProfileNotFoundError:
        current = None

    table = Table(title="Backend Profiles", show_header=True, header_style="bold")
    table.add_column("", width=2)
    table.add_column("Profile")
    table.add_column("Provider")
    table.add_column("Description")

    for name, profile in config.profiles.items():
        marker = "[bold green]*[/bold green]" if name == current else " "
        name_style = "bold cyan" if name == current else ""
        table.add_row(
            marker,
            f"[{name_style}]{name}[/{name_style}]" if name_style else name,
            profile.provider,
            profile.description or "",
        )

    console.print(table)

    if current:
        console.print("\n[bold green]*[/bold green] = active profile")

    return 0


def cmd_describe(args: argparse.Namespace) -> int:
    """Print the merged metadata of each model and its link models.

    No backend is contacted.

    Returns:
        0 on success, 1 on failure.
    """
    try:
        models = _load_models(args.models)
        engine = AdapterEngine(models, MemoryBackend())
    except (ImportError, ValueError, ModelAdapterError) as e:
        console.print(f"[red]Error: {e}[/red]")
        return 1

    for model_type in engine.models:
        console.print(_describe_model(model_type, engine.info(model_type)))
    return 0


def cmd_ensure(args: argparse.Namespace) -> int:
    """Create tables and indexes for every model on the selected backend.

    Wraps the async implementation with ``asyncio.run()``.

    Returns:
        0 on success, 1 on failure.
    """
    return asyncio.run(_async_ensure(args))


# ============================================================================
# Main entry point
# ============================================================================


def main(argv: list[str] | None = None) -> int:
    """Main CLI entry point.

    Parses command line arguments and dispatches to appropriate handler.

    Returns:
        Exit code (0 for success, non-zero for errors).
    """
    parser = argparse.ArgumentParser(
        prog="model-adapter",
        description="Storage-agnostic model metadata and schema toolkit",
    )

    # Global options
    parser.add_argument(
        "--env-prefix",
        default="",
        help=(
            "Prefix for environment variable lookup "
            "(e.g., --env-prefix APP_ reads APP_MODEL_ADAPTER_PROFILE)"
        ),
    )
    parser.add_argument(
        "--config",
        type=Path,
        default=None,
        help="Path to config file (default: ./model_adapter.toml)",
    )

    subparsers = parser.add_subparsers(dest="command", required=True)

    # profiles command
    p_profiles = subparsers.add_parser(
        "profiles",
        help="List available profiles",
    )
    p_profiles.set_defaults(func=cmd_profiles)

    # describe command
    p_describe = subparsers.add_parser(
        "describe",
        help="Show registered metadata for a set of models",
    )
    p_describe.add_argument("models", help="MODULE:ATTR naming the model classes")
    p_describe.set_defaults(func=cmd_describe)

    # ensure command
    p_ensure = subparsers.add_parser(
        "ensure",
        help="Create tables and indexes for a set of models",
    )
    p_ensure.add_argument("models", help="MODULE:ATTR naming the model classes")
    p_ensure.add_argument("--profile", default=None, help="Profile to use")
    p_ensure.add_argument(
        "--url",
        default=None,
        help="Direct SQL connection URL (bypasses profiles)",
    )
    p_ensure.set_defaults(func=cmd_ensure)

    args = parser.parse_args(argv)
    return args.func(args)


if __name__ == "__main__":
    sys.exit(main())
