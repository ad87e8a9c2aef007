"""Lifecycle hooks invoked on model instances.

A model opts into a hook simply by defining a method with the hook's name.
Hooks may be plain or ``async`` methods; awaitable results are awaited
before the calling operation continues.

Usage:
    class User:
        async def before_save(self) -> None:
            self.email = self.email.lower()

        def after_join(self, relationship: RelationshipInfo) -> None:
            ...
"""

import inspect
import logging
from enum import Enum
from typing import Any, Protocol

from model_adapter.metadata.models import RelationshipInfo

logger = logging.getLogger(__name__)


class Hook(str, Enum):
    BEFORE_SAVE = "before_save"
    AFTER_SAVE = "after_save"
    BEFORE_DELETE = "before_delete"
    AFTER_DELETE = "after_delete"
    BEFORE_JOIN = "before_join"
    AFTER_JOIN = "after_join"
    AFTER_RETRIEVE = "after_retrieve"


# ============================================================================
# Hook Signatures
# ============================================================================


class BeforeSave(Protocol):
    def before_save(self) -> Any: ...


class AfterSave(Protocol):
    def after_save(self) -> Any: ...


class BeforeDelete(Protocol):
    def before_delete(self) -> Any: ...


class AfterDelete(Protocol):
    def after_delete(self) -> Any: ...


class BeforeJoin(Protocol):
    def before_join(self, relationship: RelationshipInfo) -> Any: ...


class AfterJoin(Protocol):
    def after_join(self, relationship: RelationshipInfo) -> Any: ...


class AfterRetrieve(Protocol):
    def after_retrieve(self) -> Any: ...


# ============================================================================
# Dispatch
# ============================================================================


async def notify(instance: Any, hook: Hook | str, *args: Any) -> Any:
    """Call ``instance.<hook>(*args)`` if the instance defines it.

    Returns the hook's (awaited) result, or ``None`` when the instance does
    not implement the hook.
    """
    name = hook.value if isinstance(hook, Hook) else hook
    method = getattr(instance, name, None)
    if not callable(method):
        return None

    logger.debug("Dispatching %s on %s", name, type(instance).__name__)
    result = method(*args)
    if inspect.isawaitable(result):
        result = await result
    return result
