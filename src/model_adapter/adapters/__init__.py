"""Storage backends and the generic adapter engine.

Provides the ``StorageBackend`` Protocol, the ``AdapterEngine`` written
against it, and two concrete backends: ``MemoryBackend`` (in-process) and
``AsyncSQLBackend`` (SQLAlchemy async engine).

Usage:
    from model_adapter.adapters import AdapterEngine, MemoryBackend

    engine = AdapterEngine([Author, Book], MemoryBackend())
"""

from model_adapter.adapters.base import QueryOptions, StorageBackend
from model_adapter.adapters.engine import (
    AdapterEngine,
    LinkModel,
    engine_for,
    link_key,
    link_table_name,
)
from model_adapter.adapters.memory import MemoryBackend
from model_adapter.adapters.sql import AsyncSQLBackend

__all__ = [
    "StorageBackend",
    "QueryOptions",
    "AdapterEngine",
    "LinkModel",
    "engine_for",
    "link_key",
    "link_table_name",
    "MemoryBackend",
    "AsyncSQLBackend",
]
