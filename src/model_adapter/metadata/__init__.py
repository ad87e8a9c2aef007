"""Model metadata: types, merge logic, registry and declaration API.

Usage:
    from model_adapter.metadata import ModelInfo, registry, column, has_many
"""

from model_adapter.metadata.models import (
    DEFAULT_PRIMARY_KEY,
    ColumnInfo,
    IndexInfo,
    IndexOptions,
    ModelInfo,
    RelationshipInfo,
    RelationshipKind,
    merge_info,
)
from model_adapter.metadata.registry import (
    ModelRegistry,
    belongs_to,
    column,
    declare,
    has_and_belongs_to_many,
    has_many,
    has_one,
    index,
    is_registered,
    lookup,
    model,
    registry,
    relationship,
)

__all__ = [
    "DEFAULT_PRIMARY_KEY",
    "ColumnInfo",
    "IndexInfo",
    "IndexOptions",
    "ModelInfo",
    "RelationshipInfo",
    "RelationshipKind",
    "merge_info",
    "ModelRegistry",
    "registry",
    "declare",
    "lookup",
    "is_registered",
    "column",
    "index",
    "relationship",
    "has_many",
    "has_one",
    "belongs_to",
    "has_and_belongs_to_many",
    "model",
]
