"""In-process storage backend.

Provides ``MemoryBackend``, a dict-based implementation of the
``StorageBackend`` protocol.  Records live in insertion order per
``(storage_location, table)``; filters match by equality, with nested dicts
matching nested values.  Rows are deep-copied on the way in and out so
callers never share state with the store.

Usage:
    from model_adapter.adapters.memory import MemoryBackend

    backend = MemoryBackend()
    engine = AdapterEngine([Author, Book], backend)
    await engine.ensure()
"""

import copy
import logging
import uuid
from collections.abc import Callable
from typing import Any

from model_adapter.adapters.base import QueryOptions
from model_adapter.errors import SchemaError
from model_adapter.metadata.models import IndexInfo, ModelInfo

logger = logging.getLogger(__name__)


def _matches(row: Any, filters: dict[str, Any]) -> bool:
    if not isinstance(row, dict):
        return False
    for key, expected in filters.items():
        if key not in row:
            if expected is None:
                continue
            return False
        actual = row[key]
        if isinstance(expected, dict) and isinstance(actual, dict):
            if not _matches(actual, expected):
                return False
        elif actual != expected:
            return False
    return True


def _sort_key(order_by: str) -> Callable[[dict], tuple]:
    # None sorts first
    def key(row: dict) -> tuple:
        value = row.get(order_by)
        return (value is not None, value if value is not None else "")

    return key


class MemoryBackend:
    """Dict-backed implementation of the ``StorageBackend`` protocol.

    Args:
        key_factory: Callable producing primary keys for inserts.  Defaults
            to ``uuid4().hex``.

    Example:
        backend = MemoryBackend(key_factory=itertools.count(1).__next__)
    """

    def __init__(self, key_factory: Callable[[], Any] | None = None) -> None:
        self._key_factory = key_factory or (lambda: uuid.uuid4().hex)
        self._tables: dict[tuple[str, str], dict[Any, dict]] = {}
        self._indexes: dict[tuple[str, str], dict[str, IndexInfo]] = {}

    def _store(self, info: ModelInfo) -> dict[Any, dict]:
        name = (info.storage_location, info.table)
        if name not in self._tables:
            raise SchemaError(f"Table '{info.table}' does not exist; call ensure() first")
        return self._tables[name]

    def indexes(self, info: ModelInfo) -> list[str]:
        """Names of the indexes created for the model's table."""
        return list(self._indexes.get((info.storage_location, info.table), {}))

    # ------------------------------------------------------------------
    # Primitive contract
    # ------------------------------------------------------------------

    async def ensure_schema(self, info: ModelInfo) -> None:
        if not info.table:
            raise SchemaError("Cannot create a table without a name")

        name = (info.storage_location, info.table)
        self._tables.setdefault(name, {})
        indexes = self._indexes.setdefault(name, {})
        for index in info.indexes:
            if not index.keys:
                raise SchemaError(f"Index '{index.name}' on '{info.table}' has no keys")
            indexes.setdefault(index.name, index)
        logger.debug("Ensured memory table %s", info.table)

    async def fetch_all(
        self, info: ModelInfo, options: QueryOptions | None = None
    ) -> list[dict]:
        return self._apply_options(list(self._store(info).values()), options)

    async def fetch_filtered(
        self,
        info: ModelInfo,
        filters: dict[str, Any],
        options: QueryOptions | None = None,
    ) -> list[dict]:
        rows = [row for row in self._store(info).values() if _matches(row, filters)]
        return self._apply_options(rows, options)

    async def fetch_one(
        self,
        info: ModelInfo,
        filters: dict[str, Any],
        options: QueryOptions | None = None,
    ) -> dict | None:
        rows = await self.fetch_filtered(info, filters, options)
        return rows[0] if rows else None

    async def upsert(
        self,
        info: ModelInfo,
        key: Any | None,
        payload: dict[str, Any],
        replace: bool = False,
    ) -> Any | None:
        store = self._store(info)
        pk = info.primary_storage_key
        record = copy.deepcopy(payload)

        if key is None:
            generated = self._key_factory()
            record[pk] = generated
            store[generated] = record
            return generated

        record[pk] = key
        if replace or key not in store:
            store[key] = record
        else:
            store[key].update(record)
        return None

    async def remove_by_key(self, info: ModelInfo, key: Any) -> None:
        self._store(info).pop(key, None)

    async def close(self) -> None:
        """Nothing to release; the data stays available."""
        return None

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _apply_options(self, rows: list[dict], options: QueryOptions | None) -> list[dict]:
        if options is not None:
            if options.order_by:
                rows = sorted(
                    rows, key=_sort_key(options.order_by), reverse=options.descending
                )
            if options.limit is not None:
                rows = rows[: options.limit]
        return [copy.deepcopy(row) for row in rows]
