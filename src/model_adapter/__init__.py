"""model-adapter: storage-agnostic model metadata and an async adapter engine.

Declare models once (columns, tags, indexes, relationships), then drive any
``StorageBackend`` through the generic ``AdapterEngine``.

Usage:
    from model_adapter import AdapterEngine, MemoryBackend, model, column, has_many
    from model_adapter import pick, without, to_dict
    from model_adapter import create_engine, load_config
"""

__version__ = "0.1.0"

# Errors
from model_adapter.errors import (
    MissingKey,
    ModelAdapterError,
    NotRegistered,
    SchemaError,
    UnhandledKind,
    UnknownRelationship,
)

# Metadata
from model_adapter.metadata import (
    ColumnInfo,
    IndexInfo,
    IndexOptions,
    ModelInfo,
    ModelRegistry,
    RelationshipInfo,
    RelationshipKind,
    belongs_to,
    column,
    declare,
    has_and_belongs_to_many,
    has_many,
    has_one,
    index,
    lookup,
    merge_info,
    model,
    registry,
)

# Hooks and projection
from model_adapter.hooks import Hook, notify
from model_adapter.projection import (
    Projection,
    assign,
    construct,
    pick,
    pick_assign,
    project,
    to_dict,
    without,
)

# Adapters
from model_adapter.adapters.base import QueryOptions, StorageBackend
from model_adapter.adapters.engine import AdapterEngine, LinkModel, engine_for
from model_adapter.adapters.memory import MemoryBackend
from model_adapter.adapters.sql import AsyncSQLBackend

# Config and factory
from model_adapter.config.loader import load_config
from model_adapter.config.models import AdapterConfig, BackendProfile
from model_adapter.factory import (
    ProfileNotFoundError,
    create_engine,
    get_backend,
    resolve_url,
)

__all__ = [
    # Errors
    "ModelAdapterError",
    "NotRegistered",
    "SchemaError",
    "MissingKey",
    "UnknownRelationship",
    "UnhandledKind",
    # Metadata
    "ColumnInfo",
    "IndexInfo",
    "IndexOptions",
    "ModelInfo",
    "RelationshipInfo",
    "RelationshipKind",
    "ModelRegistry",
    "registry",
    "merge_info",
    "declare",
    "lookup",
    "model",
    "column",
    "index",
    "has_many",
    "has_one",
    "belongs_to",
    "has_and_belongs_to_many",
    # Hooks and projection
    "Hook",
    "notify",
    "Projection",
    "project",
    "pick",
    "without",
    "pick_assign",
    "construct",
    "assign",
    "to_dict",
    # Adapters
    "StorageBackend",
    "QueryOptions",
    "AdapterEngine",
    "LinkModel",
    "engine_for",
    "MemoryBackend",
    "AsyncSQLBackend",
    # Config and factory
    "load_config",
    "AdapterConfig",
    "BackendProfile",
    "get_backend",
    "create_engine",
    "resolve_url",
    "ProfileNotFoundError",
]
