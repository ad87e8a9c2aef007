"""Metadata registry and declaration API.

The registry maps each model type to its merged ``ModelInfo``.  Declarations
are explicit calls (``column()``, ``index()``, ``has_many()``, ...) or the
``@model(...)`` class decorator; each call builds a ``ModelInfo`` fragment and
merges it into the model's current info.

Usage:
    from model_adapter.metadata.registry import column, has_many, model

    @model(table="authors", columns=["id", "name"])
    class Author:
        pass

    @model(table="books")
    class Book:
        pass

    column(Book, "id", primary=True)
    column(Book, "author_id", secondary=True)
    has_many(Author, "books", Book, foreign_key="author_id")
"""

import inspect
from collections.abc import Callable, Iterable
from typing import Any

from model_adapter.errors import NotRegistered
from model_adapter.metadata.models import (
    ColumnInfo,
    IndexInfo,
    IndexOptions,
    ModelInfo,
    RelationshipInfo,
    RelationshipKind,
    merge_info,
)


class ModelRegistry:
    """Per-process store of ``ModelInfo`` keyed by model type.

    A subclass declared for the first time starts from a copy of its nearest
    registered base class, so declarations are additive along the
    inheritance chain.  ``lookup()`` falls back to the nearest registered
    base when the type itself was never declared.
    """

    def __init__(self) -> None:
        self._infos: dict[type, ModelInfo] = {}

    def declare(self, model_type: type, fragment: ModelInfo | None = None) -> ModelInfo:
        """Merge *fragment* into the info for *model_type* and return the result."""
        current = self._infos.get(model_type)
        if current is None:
            base = self._nearest(model_type.__mro__[1:])
            current = base.model_copy(deep=True) if base else ModelInfo()

        merged = merge_info(current, fragment or ModelInfo())
        if not merged.table:
            merged.table = model_type.__name__.lower()

        self._infos[model_type] = merged
        return merged

    def lookup(self, model_type: type) -> ModelInfo:
        """Return the info for *model_type*.

        Raises:
            NotRegistered: If neither the type nor any base was declared.
        """
        info = self._nearest(getattr(model_type, "__mro__", ()))
        if info is None:
            name = getattr(model_type, "__name__", repr(model_type))
            raise NotRegistered(f"Model '{name}' is not registered")
        return info

    def is_registered(self, model_type: type) -> bool:
        return self._nearest(getattr(model_type, "__mro__", ())) is not None

    def registered(self) -> list[type]:
        """All explicitly declared model types, in declaration order."""
        return list(self._infos)

    def forget(self, model_type: type) -> None:
        self._infos.pop(model_type, None)

    def clear(self) -> None:
        """Drop every registration. Primarily for testing."""
        self._infos.clear()

    def _nearest(self, mro: Iterable[type]) -> ModelInfo | None:
        for klass in mro:
            if klass in self._infos:
                return self._infos[klass]
        return None


# Default process-wide registry
registry = ModelRegistry()


def _registry(reg: ModelRegistry | None) -> ModelRegistry:
    return reg if reg is not None else registry


def _resolver(target: type | Callable[[Any], type]) -> Callable[[Any], type]:
    if isinstance(target, type):
        return lambda _source: target
    if not callable(target):
        raise TypeError(f"Relationship target must be a class or callable, got {target!r}")
    return target


# ============================================================================
# Declaration API
# ============================================================================


def declare(
    model_type: type,
    fragment: ModelInfo,
    registry: ModelRegistry | None = None,
) -> ModelInfo:
    """Merge a raw ``ModelInfo`` fragment into *model_type*."""
    return _registry(registry).declare(model_type, fragment)


def lookup(model_type: type, registry: ModelRegistry | None = None) -> ModelInfo:
    return _registry(registry).lookup(model_type)


def is_registered(model_type: type, registry: ModelRegistry | None = None) -> bool:
    return _registry(registry).is_registered(model_type)


def column(
    model_type: type,
    field_key: str,
    *,
    storage_key: str | None = None,
    tags: Iterable[str] = (),
    primary: bool = False,
    secondary: bool = False,
    computed: bool | None = None,
    meta: dict[str, Any] | None = None,
    registry: ModelRegistry | None = None,
) -> ModelInfo:
    """Declare a column on *model_type*.

    ``computed`` defaults to ``True`` when the class attribute is a
    ``property``.  Declaring the same field again merges the declarations
    (tag union, flags OR-ed).  A ``secondary`` column also declares an index
    named after its storage key.

    Raises:
        TypeError: If *field_key* names a method.
    """
    static = inspect.getattr_static(model_type, field_key, None)
    if inspect.isfunction(static):
        raise TypeError(f"Cannot declare a column on method '{field_key}'")
    if computed is None:
        computed = isinstance(static, property)

    info = ColumnInfo(
        field_key=field_key,
        storage_key=storage_key,
        tags=set(tags),
        primary=primary,
        secondary=secondary,
        computed=computed,
        meta=meta or {},
    )
    return _declare_column(model_type, info, _registry(registry))


def _declare_column(model_type: type, info: ColumnInfo, reg: ModelRegistry) -> ModelInfo:
    fragment = ModelInfo(
        columns=[info],
        tags={tag: {info.field_key} for tag in info.tags},
    )
    if info.secondary:
        fragment.indexes.append(IndexInfo(name=info.key, keys=[info.key]))
    return reg.declare(model_type, fragment)


def index(
    model_type: type,
    name: str,
    keys: list[str] | str,
    *,
    unique: bool = False,
    multi: bool = False,
    geo: bool = False,
    registry: ModelRegistry | None = None,
) -> ModelInfo:
    """Declare a named (possibly composite) index over storage paths."""
    if isinstance(keys, str):
        keys = [keys]
    fragment = ModelInfo(
        indexes=[
            IndexInfo(
                name=name,
                keys=list(keys),
                options=IndexOptions(unique=unique, multi=multi, geo=geo),
            )
        ]
    )
    return _registry(registry).declare(model_type, fragment)


def relationship(
    model_type: type,
    kind: RelationshipKind,
    key: str,
    target: type | Callable[[Any], type],
    foreign_key: str = "",
    registry: ModelRegistry | None = None,
) -> ModelInfo:
    info = RelationshipInfo(
        kind=kind,
        key=key,
        foreign_key=foreign_key,
        target=_resolver(target),
    )
    return _registry(registry).declare(model_type, ModelInfo(relationships=[info]))


def has_many(model_type, key, target, foreign_key, registry=None) -> ModelInfo:
    """*target* rows reference this model through their *foreign_key* index."""
    return relationship(
        model_type, RelationshipKind.HAS_MANY, key, target, foreign_key, registry
    )


def has_one(model_type, key, target, foreign_key, registry=None) -> ModelInfo:
    """Like ``has_many`` but resolves a single row."""
    return relationship(
        model_type, RelationshipKind.HAS_ONE, key, target, foreign_key, registry
    )


def belongs_to(model_type, key, target, foreign_key, registry=None) -> ModelInfo:
    """This model holds the related primary key in its *foreign_key* field."""
    return relationship(
        model_type, RelationshipKind.BELONGS_TO, key, target, foreign_key, registry
    )


def has_and_belongs_to_many(model_type, key, target, registry=None) -> ModelInfo:
    """Many-to-many through a link table synthesized by the engine."""
    return relationship(
        model_type,
        RelationshipKind.HAS_AND_BELONGS_TO_MANY,
        key,
        target,
        registry=registry,
    )


def model(
    *,
    table: str = "",
    storage_location: str = "",
    primary_key: str | None = None,
    columns: Iterable[str | ColumnInfo] = (),
    indexes: Iterable[IndexInfo] = (),
    registry: ModelRegistry | None = None,
) -> Callable[[type], type]:
    """Class decorator declaring table-level info and, optionally, columns and indexes.

    Example:
        @model(table="users", columns=["id", ColumnInfo(field_key="email", tags={"private"})])
        class User:
            pass
    """

    def decorator(cls: type) -> type:
        reg = _registry(registry)
        reg.declare(
            cls,
            ModelInfo(
                table=table,
                storage_location=storage_location,
                primary_key=primary_key,
                indexes=list(indexes),
            ),
        )
        for col in columns:
            if isinstance(col, str):
                column(cls, col, registry=reg)
            else:
                _declare_column(cls, col, reg)
        return cls

    return decorator
