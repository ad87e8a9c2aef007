"""Generic adapter engine.

``AdapterEngine`` is written once against the ``StorageBackend`` primitives
and implements save, delete, retrieval and relationship joins for every
registered model type.  Many-to-many relationships are backed by link models
the engine synthesizes at construction time: one per unordered pair of
tables, named ``<a>_<b>`` with the two table names in lexicographic order,
holding a generated primary key and one indexed ``<table>_id`` column per
side.

``save()`` and ``join()`` mutate the instance they are given (generated
primary keys and joined data are assigned onto it) and return that same
instance.  Hooks observe the mutation in that order.

Usage:
    from model_adapter.adapters.engine import AdapterEngine
    from model_adapter.adapters.memory import MemoryBackend

    engine = AdapterEngine([Author, Book], MemoryBackend())
    await engine.ensure()

    author = await engine.save(Author(name="Ursula"))
    await engine.save(Book(title="The Dispossessed", author_id=author.id))
    await engine.join(author, "books")
    print([book.title for book in author.books])
"""

import asyncio
import inspect
import logging
import weakref
from collections.abc import Callable, Iterable
from typing import Any, TypeVar

from model_adapter.adapters.base import QueryOptions, StorageBackend
from model_adapter.errors import (
    MissingKey,
    NotRegistered,
    SchemaError,
    UnhandledKind,
    UnknownRelationship,
)
from model_adapter.hooks import Hook, notify
from model_adapter.metadata.models import (
    ColumnInfo,
    IndexInfo,
    ModelInfo,
    RelationshipInfo,
    RelationshipKind,
)
from model_adapter.metadata.registry import ModelRegistry
from model_adapter.metadata.registry import registry as default_registry
from model_adapter.projection import construct

logger = logging.getLogger(__name__)

M = TypeVar("M")

Predicate = Callable[[Any], Any]

# Model type -> owning engine
_ENGINES: "weakref.WeakValueDictionary[type, AdapterEngine]" = weakref.WeakValueDictionary()


def engine_for(model: Any) -> "AdapterEngine":
    """Return the engine a model type (or instance) was registered with.

    Raises:
        NotRegistered: If no engine was constructed with the model type.
    """
    model_type = model if isinstance(model, type) else type(model)
    for klass in model_type.__mro__:
        engine = _ENGINES.get(klass)
        if engine is not None:
            return engine
    raise NotRegistered(f"No engine registered for model '{model_type.__name__}'")


def link_table_name(left: str, right: str, separator: str = "_") -> str:
    """Deterministic link-table name for two tables, independent of order."""
    if left < right:
        return f"{left}{separator}{right}"
    return f"{right}{separator}{left}"


def link_key(table: str) -> str:
    """Name of the link-model column referencing *table*."""
    return f"{table}_id"


class LinkModel:
    """Base class of synthesized many-to-many link models."""

    def __repr__(self) -> str:
        fields = ", ".join(f"{k}={v!r}" for k, v in vars(self).items())
        return f"{type(self).__name__}({fields})"


def _unset(value: Any) -> bool:
    return value is None or value == ""


def _set_path(target: dict[str, Any], path: str, value: Any) -> None:
    # "a.b.c" -> {"a": {"b": {"c": value}}}
    *parents, last = path.split(".")
    for key in parents:
        target = target.setdefault(key, {})
    target[last] = value


async def _apply(predicate: Predicate, items: Iterable[Any]) -> None:
    results = [predicate(item) for item in items]
    pending = [r for r in results if inspect.isawaitable(r)]
    if pending:
        await asyncio.gather(*pending)


class AdapterEngine:
    """Drives any ``StorageBackend`` from declared model metadata.

    Args:
        models: Model types served by this engine.  Each must be declared in
            *registry*.
        backend: Storage backend implementing the primitive contract.
        registry: Metadata registry (defaults to the process-wide one).
        default_location: Storage location used for models that declare
            none.
        link_separator: Separator between the two table names of a
            synthesized link table.

    Raises:
        NotRegistered: If a model (or a many-to-many target) is undeclared.

    Example:
        engine = AdapterEngine([Student, Course], MemoryBackend())
        await engine.ensure()
        await engine.link(student, "courses", course)
        await engine.join(student, "courses")
    """

    def __init__(
        self,
        models: Iterable[type],
        backend: StorageBackend,
        *,
        registry: ModelRegistry | None = None,
        default_location: str = "",
        link_separator: str = "_",
    ) -> None:
        self.backend = backend
        self._registry = registry if registry is not None else default_registry
        self._default_location = default_location
        self._link_separator = link_separator
        self._models: list[type] = []
        self._links: dict[str, type] = {}

        declared = list(models)
        for model_type in declared:
            self._register(model_type)
        for model_type in declared:
            self._synthesize_links(model_type)

    @property
    def models(self) -> list[type]:
        """Every model served, synthesized link models last."""
        return list(self._models)

    @property
    def link_models(self) -> dict[str, type]:
        return dict(self._links)

    # ------------------------------------------------------------------
    # Registration
    # ------------------------------------------------------------------

    def _register(self, model_type: type) -> None:
        self._registry.lookup(model_type)
        if model_type not in self._models:
            self._models.append(model_type)
        _ENGINES[model_type] = self

    def _synthesize_links(self, model_type: type) -> None:
        info = self.info(model_type)
        for relationship in info.relationships:
            if relationship.kind != RelationshipKind.HAS_AND_BELONGS_TO_MANY:
                continue
            target_info = self.info(relationship.resolve_target(model_type))
            name = link_table_name(info.table, target_info.table, self._link_separator)
            if name in self._links:
                continue
            self._links[name] = self._build_link_model(name, info, target_info)
            logger.debug("Synthesized link model %s", name)

    def _build_link_model(self, name: str, left: ModelInfo, right: ModelInfo) -> type:
        class_name = "".join(part.title() for part in name.split("_")) + "Link"
        link_type = type(class_name, (LinkModel,), {"__module__": __name__})
        keys = [link_key(left.table), link_key(right.table)]
        self._registry.declare(
            link_type,
            ModelInfo(
                storage_location=left.storage_location,
                table=name,
                columns=[ColumnInfo(field_key="id", primary=True)]
                + [ColumnInfo(field_key=key, secondary=True) for key in keys],
                indexes=[IndexInfo(name=key, keys=[key]) for key in keys],
            ),
        )
        self._register(link_type)
        return link_type

    def info(self, model_type: type) -> ModelInfo:
        """``ModelInfo`` for *model_type* with the default location applied."""
        info = self._registry.lookup(model_type)
        if not info.storage_location and self._default_location:
            info = info.model_copy(update={"storage_location": self._default_location})
        return info

    def link_model(self, left: type, right: type) -> type:
        """The synthesized link model joining two model types.

        Raises:
            NotRegistered: If no many-to-many relationship joins them.
        """
        return self._link_for(self.info(left).table, self.info(right).table)

    def _link_for(self, left_table: str, right_table: str) -> type:
        name = link_table_name(left_table, right_table, self._link_separator)
        if name not in self._links:
            raise NotRegistered(f"No link model '{name}' registered")
        return self._links[name]

    # ------------------------------------------------------------------
    # Schema
    # ------------------------------------------------------------------

    async def ensure(self) -> None:
        """Create or verify the schema of every model, concurrently.

        Raises:
            SchemaError: If any model's schema fails.  Models that succeeded
                are left in place; calling again is safe.
        """
        infos = [self.info(model_type) for model_type in self._models]
        try:
            await asyncio.gather(*(self.backend.ensure_schema(info) for info in infos))
        except SchemaError:
            raise
        except Exception as e:
            raise SchemaError(f"Failed to ensure schema: {e}") from e
        logger.debug("Ensured %d tables", len(infos))

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    async def save(self, instance: M, replace: bool = False) -> M:
        """Persist every non-computed column of *instance*.

        Inserts when the primary key is unset and writes the generated key
        back onto the instance; otherwise updates (or replaces) the record.
        """
        info = self.info(type(instance))

        await notify(instance, Hook.BEFORE_SAVE)

        payload = {
            column.key: getattr(instance, column.field_key, None)
            for column in info.stored_columns
        }
        key = getattr(instance, info.primary_field, None)
        if _unset(key):
            key = None

        generated = await self.backend.upsert(info, key, payload, replace)
        if key is None and generated is not None:
            setattr(instance, info.primary_field, generated)
        logger.debug("Saved %s %s", info.table, getattr(instance, info.primary_field, None))

        await notify(instance, Hook.AFTER_SAVE)
        return instance

    async def delete(self, instance: Any) -> None:
        """Remove *instance*'s record.

        Raises:
            MissingKey: If the primary key is not populated.  The backend is
                not called.
        """
        info = self.info(type(instance))

        await notify(instance, Hook.BEFORE_DELETE)

        key = getattr(instance, info.primary_field, None)
        if _unset(key):
            raise MissingKey("Cannot delete model without a populated primary key.")

        await self.backend.remove_by_key(info, key)
        logger.debug("Deleted %s %s", info.table, key)

        await notify(instance, Hook.AFTER_DELETE)

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    async def all(self, model_type: type[M], options: QueryOptions | None = None) -> list[M]:
        info = self.info(model_type)
        rows = await self.backend.fetch_all(info, options)
        return [await self._to_instance(model_type, info, row) for row in rows]

    async def find(
        self,
        model_type: type[M],
        filters: dict[str, Any],
        options: QueryOptions | None = None,
    ) -> list[M]:
        """Instances whose fields equal every entry of *filters*.

        Filter keys may be field keys or storage keys.
        """
        info = self.info(model_type)
        return await self._find(model_type, info, self._storage_filters(info, filters), options)

    async def find_one(
        self,
        model_type: type[M],
        filters: dict[str, Any],
        options: QueryOptions | None = None,
    ) -> M | None:
        """First matching instance, or ``None``."""
        info = self.info(model_type)
        return await self._find_one(model_type, info, self._storage_filters(info, filters), options)

    async def get(
        self,
        model_type: type[M],
        value: Any,
        index: str | None = None,
        options: QueryOptions | None = None,
    ) -> list[M]:
        """Instances whose *index* equals *value* (primary key by default).

        For a composite index, *value* is a sequence distributed positionally
        over the index keys.
        """
        info = self.info(model_type)
        filters, options = self._index_query(info, index, value, options)
        return await self._find(model_type, info, filters, options)

    async def get_one(
        self,
        model_type: type[M],
        value: Any,
        index: str | None = None,
        options: QueryOptions | None = None,
    ) -> M | None:
        info = self.info(model_type)
        filters, options = self._index_query(info, index, value, options)
        return await self._find_one(model_type, info, filters, options)

    async def count(self, model_type: type, filters: dict[str, Any] | None = None) -> int:
        info = self.info(model_type)
        if filters:
            rows = await self.backend.fetch_filtered(info, self._storage_filters(info, filters))
        else:
            rows = await self.backend.fetch_all(info)
        return len(rows)

    async def _find(self, model_type, info, filters, options) -> list:
        rows = await self.backend.fetch_filtered(info, filters, options)
        return [await self._to_instance(model_type, info, row) for row in rows]

    async def _find_one(self, model_type, info, filters, options) -> Any | None:
        row = await self.backend.fetch_one(info, filters, options)
        if row is None:
            return None
        return await self._to_instance(model_type, info, row)

    def _storage_filters(self, info: ModelInfo, filters: dict[str, Any]) -> dict[str, Any]:
        result: dict[str, Any] = {}
        for key, value in filters.items():
            column = info.column(key)
            result[column.key if column else key] = value
        return result

    def _index_query(
        self,
        info: ModelInfo,
        index: str | None,
        value: Any,
        options: QueryOptions | None,
    ) -> tuple[dict[str, Any], QueryOptions]:
        if index is None or index in (info.primary_field, info.primary_storage_key):
            filters = {info.primary_storage_key: value}
            index = info.primary_field
        else:
            declared = info.index(index)
            column = None if declared else info.column(index)
            if column is not None:
                index = column.key
                declared = info.index(index)
            # An undeclared index name is taken as a single storage path.
            keys = declared.keys if declared else [index]
            if len(keys) == 1:
                values = [value]
            else:
                values = list(value) if isinstance(value, list | tuple) else [value]
            if len(values) != len(keys):
                raise ValueError(
                    f"Index '{index}' expects {len(keys)} values, got {len(values)}"
                )
            filters = {}
            for key, item in zip(keys, values):
                _set_path(filters, key, item)

        options = (options or QueryOptions()).model_copy(update={"index": index})
        return filters, options

    async def _to_instance(self, model_type: type, info: ModelInfo, row: dict) -> Any:
        data: dict[str, Any] = {}
        for key, value in row.items():
            column = info.column_for_storage(key)
            if column is not None:
                if column.computed:
                    continue
                key = column.field_key
            elif isinstance(inspect.getattr_static(model_type, key, None), property):
                continue
            data[key] = value

        instance = construct(model_type, data)
        await notify(instance, Hook.AFTER_RETRIEVE)
        return instance

    # ------------------------------------------------------------------
    # Relationships
    # ------------------------------------------------------------------

    def _relationship(self, instance: Any, info: ModelInfo, key: str) -> RelationshipInfo:
        relationship = info.relationship(key)
        if relationship is None:
            raise UnknownRelationship(
                f"No relationship found for '{key}' on {type(instance).__name__}"
            )
        return relationship

    async def join(
        self,
        instance: M,
        relationship_key: str,
        predicate: Predicate | None = None,
    ) -> M:
        """Resolve a relationship and assign the result onto *instance*.

        The related type is resolved from *instance* on every call.
        *predicate* (plain or async) is applied to each resolved instance;
        for to-many kinds the calls run concurrently.

        Raises:
            UnknownRelationship: If *relationship_key* is not declared.
            UnhandledKind: If the relationship kind is not supported.
        """
        info = self.info(type(instance))
        relationship = self._relationship(instance, info, relationship_key)

        await notify(instance, Hook.BEFORE_JOIN, relationship)

        target = relationship.resolve_target(instance)
        primary = getattr(instance, info.primary_field, None)
        kind = relationship.kind
        # An unsaved instance owns nothing.
        unsaved = _unset(primary)

        if kind == RelationshipKind.HAS_MANY:
            data = [] if unsaved else await self.get(
                target, primary, index=relationship.foreign_key
            )
            if predicate:
                await _apply(predicate, data)
        elif kind == RelationshipKind.BELONGS_TO:
            value = getattr(instance, relationship.foreign_key, None)
            data = None if _unset(value) else await self.get_one(target, value)
            if predicate and data is not None:
                await _apply(predicate, [data])
        elif kind == RelationshipKind.HAS_ONE:
            data = None if unsaved else await self.get_one(
                target, primary, index=relationship.foreign_key
            )
            if predicate and data is not None:
                await _apply(predicate, [data])
        elif kind == RelationshipKind.HAS_AND_BELONGS_TO_MANY:
            data = [] if unsaved else await self._join_linked(info, target, primary)
            if predicate:
                await _apply(predicate, [item for item in data if item is not None])
        else:
            raise UnhandledKind(f"Unhandled relationship type {kind!r}")

        setattr(instance, relationship.key, data)

        await notify(instance, Hook.AFTER_JOIN, relationship)
        return instance

    async def _join_linked(self, info: ModelInfo, target: type, primary: Any) -> list:
        target_info = self.info(target)
        link_type = self._link_for(info.table, target_info.table)
        links = await self.get(link_type, primary, index=link_key(info.table))

        target_key = link_key(target_info.table)
        found = await asyncio.gather(
            *(self.get_one(target, getattr(link, target_key, None)) for link in links)
        )
        missing = sum(1 for item in found if item is None)
        if missing:
            logger.debug("%d dangling %s links", missing, link_type.__name__)
        return list(found)

    async def _link_keys(
        self, instance: Any, relationship_key: str, other: Any
    ) -> tuple[type, dict[str, Any]]:
        info = self.info(type(instance))
        relationship = self._relationship(instance, info, relationship_key)
        if relationship.kind != RelationshipKind.HAS_AND_BELONGS_TO_MANY:
            raise UnhandledKind(f"Relationship '{relationship_key}' is not many-to-many")

        other_info = self.info(type(other))
        left = getattr(instance, info.primary_field, None)
        right = getattr(other, other_info.primary_field, None)
        if _unset(left) or _unset(right):
            raise MissingKey("Cannot link models without populated primary keys.")

        link_type = self._link_for(info.table, other_info.table)
        return link_type, {link_key(info.table): left, link_key(other_info.table): right}

    async def link(self, instance: Any, relationship_key: str, other: Any) -> Any:
        """Record that *instance* and *other* are related many-to-many.

        Idempotent: an existing link is returned instead of duplicated.

        Raises:
            MissingKey: If either side has no primary key yet.
        """
        link_type, keys = await self._link_keys(instance, relationship_key, other)
        existing = await self.find_one(link_type, keys)
        if existing is not None:
            return existing
        return await self.save(construct(link_type, keys))

    async def unlink(self, instance: Any, relationship_key: str, other: Any) -> int:
        """Remove the links between *instance* and *other*; returns how many."""
        link_type, keys = await self._link_keys(instance, relationship_key, other)
        links = await self.find(link_type, keys)
        for link in links:
            await self.delete(link)
        return len(links)

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def close(self) -> None:
        """Close the backend and release this engine's model bindings."""
        for model_type in self._models:
            if _ENGINES.get(model_type) is self:
                del _ENGINES[model_type]
        await self.backend.close()

    async def __aenter__(self) -> "AdapterEngine":
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self.close()
