"""Pydantic models describing registered model types.

``ModelInfo`` is built incrementally: every declaration produces a partial
``ModelInfo`` fragment which is folded into the current one with
``merge_info()``.  The merge is pure logic -- no I/O, no registry access.

Usage:
    from model_adapter.metadata.models import ColumnInfo, ModelInfo, merge_info

    info = merge_info(
        ModelInfo(table="books"),
        ModelInfo(columns=[ColumnInfo(field_key="title", tags={"public"})]),
    )
"""

from collections.abc import Callable
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field

DEFAULT_PRIMARY_KEY = "id"


# ============================================================================
# Columns and Indexes
# ============================================================================


class ColumnInfo(BaseModel):
    """A declared field of a model type."""

    field_key: str                                   # attribute name on the instance
    storage_key: str | None = None                   # physical name (None = field_key)
    tags: set[str] = Field(default_factory=set)
    primary: bool = False
    secondary: bool = False                          # implies a single-key index
    computed: bool = False                           # read-only, never persisted
    meta: dict[str, Any] = Field(default_factory=dict)  # backend hints

    @property
    def key(self) -> str:
        """Effective storage key."""
        return self.storage_key or self.field_key


class IndexOptions(BaseModel):
    """Backend-neutral index options."""

    unique: bool = False
    multi: bool = False
    geo: bool = False


class IndexInfo(BaseModel):
    """A named index over one or more storage paths (dotted paths allowed)."""

    name: str
    keys: list[str]
    options: IndexOptions = Field(default_factory=IndexOptions)


# ============================================================================
# Relationships
# ============================================================================


class RelationshipKind(str, Enum):
    HAS_MANY = "has_many"
    BELONGS_TO = "belongs_to"
    HAS_ONE = "has_one"
    HAS_AND_BELONGS_TO_MANY = "has_and_belongs_to_many"


class RelationshipInfo(BaseModel):
    """A relationship from one model type to another.

    ``target`` maps the source (an instance, or the model type itself while an
    engine is being constructed) to the related model type.  It is called on
    every use and never cached, so a relationship may resolve to a different
    type per instance.
    """

    model_config = ConfigDict(arbitrary_types_allowed=True)

    kind: RelationshipKind
    key: str                                         # attribute receiving joined data
    foreign_key: str = ""                            # meaning depends on kind
    target: Callable[[Any], Any]

    def resolve_target(self, source: Any) -> type:
        """Resolve the related model type for *source*."""
        return self.target(source)


# ============================================================================
# Model Info
# ============================================================================


class ModelInfo(BaseModel):
    """Everything the engine knows about one model type."""

    storage_location: str = ""                       # database / namespace
    table: str = ""
    columns: list[ColumnInfo] = Field(default_factory=list)
    indexes: list[IndexInfo] = Field(default_factory=list)
    primary_key: str | None = None                   # explicit override
    tags: dict[str, set[str]] = Field(default_factory=dict)
    relationships: list[RelationshipInfo] = Field(default_factory=list)

    @property
    def primary_field(self) -> str:
        """Field key acting as the unique identifier.

        An explicit ``primary_key`` wins, then the first column marked
        primary, then ``DEFAULT_PRIMARY_KEY``.
        """
        if self.primary_key:
            return self.primary_key
        for column in self.columns:
            if column.primary:
                return column.field_key
        return DEFAULT_PRIMARY_KEY

    @property
    def primary_storage_key(self) -> str:
        """Storage key under which the primary key is persisted."""
        column = self.column(self.primary_field)
        return column.key if column else self.primary_field

    @property
    def stored_columns(self) -> list[ColumnInfo]:
        """Columns that are written on save (everything but computed)."""
        return [c for c in self.columns if not c.computed]

    def column(self, field_key: str) -> ColumnInfo | None:
        for column in self.columns:
            if column.field_key == field_key:
                return column
        return None

    def column_for_storage(self, storage_key: str) -> ColumnInfo | None:
        for column in self.columns:
            if column.key == storage_key:
                return column
        return None

    def index(self, name: str) -> IndexInfo | None:
        for index in self.indexes:
            if index.name == name:
                return index
        return None

    def relationship(self, key: str) -> RelationshipInfo | None:
        for relationship in self.relationships:
            if relationship.key == key:
                return relationship
        return None


# ============================================================================
# Merge
# ============================================================================


def merge_column(a: ColumnInfo, b: ColumnInfo) -> ColumnInfo:
    """Merge two declarations of the same field."""
    return ColumnInfo(
        field_key=a.field_key,
        storage_key=b.storage_key or a.storage_key,
        tags=a.tags | b.tags,
        primary=a.primary or b.primary,
        secondary=a.secondary or b.secondary,
        computed=a.computed or b.computed,
        meta={**a.meta, **b.meta},
    )


def _merge_columns(a: list[ColumnInfo], b: list[ColumnInfo]) -> list[ColumnInfo]:
    merged = list(a)
    positions = {column.field_key: i for i, column in enumerate(merged)}
    for column in b:
        if column.field_key in positions:
            i = positions[column.field_key]
            merged[i] = merge_column(merged[i], column)
        else:
            positions[column.field_key] = len(merged)
            merged.append(column)
    return merged


def _merge_by_name(a: list, b: list, attr: str) -> list:
    # Later declarations replace earlier ones in place.
    merged = list(a)
    positions = {getattr(item, attr): i for i, item in enumerate(merged)}
    for item in b:
        name = getattr(item, attr)
        if name in positions:
            merged[positions[name]] = item
        else:
            positions[name] = len(merged)
            merged.append(item)
    return merged


def _merge_tags(
    a: dict[str, set[str]], b: dict[str, set[str]]
) -> dict[str, set[str]]:
    merged = {tag: set(keys) for tag, keys in a.items()}
    for tag, keys in b.items():
        merged.setdefault(tag, set()).update(keys)
    return merged


def merge_info(base: ModelInfo, fragment: ModelInfo) -> ModelInfo:
    """Fold *fragment* into *base* and return a new ``ModelInfo``.

    List-valued fields are additive (de-duplicated by column field key, index
    name and relationship key), ``tags`` is deep-merged, and scalar fields
    take the most recent non-empty value.  Neither argument is mutated.

    Examples:
        >>> a = ModelInfo(columns=[ColumnInfo(field_key="email", tags={"private"})])
        >>> b = ModelInfo(columns=[ColumnInfo(field_key="email", tags={"contact"})])
        >>> merge_info(a, b).columns[0].tags == {"private", "contact"}
        True
    """
    return ModelInfo(
        storage_location=fragment.storage_location or base.storage_location,
        table=fragment.table or base.table,
        columns=_merge_columns(base.columns, fragment.columns),
        indexes=_merge_by_name(base.indexes, fragment.indexes, "name"),
        primary_key=fragment.primary_key or base.primary_key,
        tags=_merge_tags(base.tags, fragment.tags),
        relationships=_merge_by_name(
            base.relationships, fragment.relationships, "key"
        ),
    )
