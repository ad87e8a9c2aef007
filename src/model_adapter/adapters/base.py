"""Storage backend protocol definition.

Defines the ``StorageBackend`` Protocol that every storage backend must
implement to be driven by ``AdapterEngine``.  All methods are ``async def``
-- the library is async-first.

Each primitive receives the resolved ``ModelInfo`` of the model type it
operates on.  Rows, filters and payloads are plain dicts keyed by *storage*
keys; the primary key travels under ``info.primary_storage_key``.

Usage:
    from model_adapter.adapters.base import StorageBackend

    async def do_work(backend: StorageBackend, info: ModelInfo) -> None:
        await backend.ensure_schema(info)
        key = await backend.upsert(info, None, {"title": "Dune"})
        row = await backend.fetch_one(info, {info.primary_storage_key: key})
        await backend.remove_by_key(info, key)
        await backend.close()
"""

from typing import Any, Protocol, runtime_checkable

from pydantic import BaseModel

from model_adapter.metadata.models import ModelInfo


class QueryOptions(BaseModel):
    """Backend-neutral fetch options.

    ``index`` is a hint naming the index a filter was assembled from;
    backends may ignore it.
    """

    order_by: str | None = None
    descending: bool = False
    limit: int | None = None
    index: str | None = None


@runtime_checkable
class StorageBackend(Protocol):
    """Primitive operations every storage backend must implement.

    All primitives are single-record or single-query operations; no
    cross-call transaction is assumed.
    """

    async def ensure_schema(self, info: ModelInfo) -> None:
        """Create the table/collection and its declared indexes if missing.

        Must be idempotent.

        Raises:
            SchemaError: If the backend rejects the schema.
        """
        ...

    async def fetch_all(
        self, info: ModelInfo, options: QueryOptions | None = None
    ) -> list[dict]:
        """Return every row of the model's table.  Empty list if none."""
        ...

    async def fetch_filtered(
        self,
        info: ModelInfo,
        filters: dict[str, Any],
        options: QueryOptions | None = None,
    ) -> list[dict]:
        """Return rows matching every filter entry (AND).

        Nested dicts in *filters* match nested values in the row.

        Example:
            rows = await backend.fetch_filtered(
                info, {"author_id": "a1", "meta": {"lang": "en"}}
            )
        """
        ...

    async def fetch_one(
        self,
        info: ModelInfo,
        filters: dict[str, Any],
        options: QueryOptions | None = None,
    ) -> dict | None:
        """Return the first matching row, or ``None`` if nothing matches."""
        ...

    async def upsert(
        self,
        info: ModelInfo,
        key: Any | None,
        payload: dict[str, Any],
        replace: bool = False,
    ) -> Any | None:
        """Insert or update a single record.

        Args:
            info: Model info of the record's type.
            key: Primary key of an existing record, or ``None`` to insert.
            payload: Storage-keyed field values.
            replace: When updating, overwrite the whole record instead of
                merging *payload* into it.

        Returns:
            The backend-generated primary key on insert, otherwise ``None``.
        """
        ...

    async def remove_by_key(self, info: ModelInfo, key: Any) -> None:
        """Delete the record with primary key *key* (no-op if absent)."""
        ...

    async def close(self) -> None:
        """Release connections and other resources."""
        ...
