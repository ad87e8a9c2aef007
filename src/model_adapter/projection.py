"""Field projection and instance construction helpers.

A projection is a *new* instance of the model type holding only the
requested fields (``pick``) or every present field but the requested ones
(``without``).  Tokens naming a tag expand to the tag's field set; any other
token is taken as a literal field key.

Computed fields (read-only properties) are captured at their current value:
the projection is then an instance of a cached subclass in which those
properties are replaced by plain attributes, so the value is never
re-derived.

Usage:
    from model_adapter.projection import pick, without, to_dict

    public = pick(user, "public")
    safe = without(user, "private", "password_hash")
    payload = to_dict(public)
"""

import functools
import inspect
from collections.abc import Iterable, Mapping
from enum import Enum
from typing import Any, TypeVar

from model_adapter.metadata.models import ModelInfo
from model_adapter.metadata.registry import ModelRegistry, is_registered, lookup

M = TypeVar("M")

_MISSING = object()


class Projection(str, Enum):
    INCLUDE = "include"
    EXCLUDE = "exclude"


# ============================================================================
# Construction
# ============================================================================


def construct(model_type: type[M], data: Mapping[str, Any]) -> M:
    """Build an instance with the zero-argument constructor, then assign *data*."""
    return assign(model_type(), data)


def assign(instance: M, *sources: Mapping[str, Any] | Any) -> M:
    """Assign every field of each source onto *instance* (later sources win)."""
    for source in sources:
        for key, value in _items(source):
            setattr(instance, key, value)
    return instance


def _items(source: Mapping[str, Any] | Any) -> Iterable[tuple[str, Any]]:
    if source is None:
        return ()
    if isinstance(source, Mapping):
        return source.items()
    return ((k, v) for k, v in vars(source).items() if not k.startswith("_"))


# ============================================================================
# Key Resolution
# ============================================================================


def resolve_keys(info: ModelInfo, tags_or_keys: Iterable[str]) -> list[str]:
    """Expand tags to their field keys; pass other tokens through.

    Field keys of a tag are returned in column declaration order.  Duplicates
    are dropped, keeping the first occurrence.
    """
    order = {column.field_key: i for i, column in enumerate(info.columns)}
    keys: list[str] = []
    for token in tags_or_keys:
        if token in info.tags:
            keys.extend(
                sorted(info.tags[token], key=lambda k: order.get(k, len(order)))
            )
        else:
            keys.append(token)
    return list(dict.fromkeys(keys))


def present_fields(instance: Any, info: ModelInfo) -> list[str]:
    """Declared columns currently readable on *instance*, then other public attributes."""
    keys = [
        column.field_key
        for column in info.columns
        if getattr(instance, column.field_key, _MISSING) is not _MISSING
    ]
    for key in getattr(instance, "__dict__", {}):
        if not key.startswith("_") and key not in keys:
            keys.append(key)
    return keys


# ============================================================================
# Projection
# ============================================================================


@functools.lru_cache(maxsize=None)
def _frozen_type(model_type: type, names: frozenset[str]) -> type:
    # Plain class attributes shadow the properties so instance values stick.
    attrs: dict[str, Any] = {name: None for name in names}
    attrs["__qualname__"] = model_type.__qualname__
    attrs["__module__"] = model_type.__module__
    return type(model_type.__name__, (model_type,), attrs)


def _projection_type(model_type: type, keys: Iterable[str]) -> type:
    computed = frozenset(
        key
        for key in keys
        if isinstance(inspect.getattr_static(model_type, key, None), property)
    )
    if not computed:
        return model_type
    return _frozen_type(model_type, computed)


def project(
    instance: M,
    mode: Projection,
    *tags_or_keys: str,
    registry: ModelRegistry | None = None,
) -> M:
    """Return a new instance holding the projected fields of *instance*.

    Raises:
        NotRegistered: If the instance's model type was never declared.
    """
    model_type = type(instance)
    info = lookup(model_type, registry)
    keys = resolve_keys(info, tags_or_keys)

    if mode == Projection.INCLUDE:
        selected = keys
    else:
        excluded = set(keys)
        selected = [k for k in present_fields(instance, info) if k not in excluded]

    data = {key: getattr(instance, key, None) for key in selected}
    return construct(_projection_type(model_type, selected), data)


def pick(instance: M, *tags_or_keys: str, registry: ModelRegistry | None = None) -> M:
    """Projection keeping only the given tags / field keys."""
    return project(instance, Projection.INCLUDE, *tags_or_keys, registry=registry)


def without(instance: M, *tags_or_keys: str, registry: ModelRegistry | None = None) -> M:
    """Projection keeping every present field except the given tags / field keys."""
    return project(instance, Projection.EXCLUDE, *tags_or_keys, registry=registry)


def pick_assign(
    instance: M,
    tags_or_keys: str | Iterable[str],
    *sources: Mapping[str, Any] | Any,
    registry: ModelRegistry | None = None,
) -> M:
    """Assign onto *instance* only the resolved keys present in each source.

    Example:
        pick_assign(user, "editable", request_body)
    """
    if isinstance(tags_or_keys, str):
        tags_or_keys = [tags_or_keys]
    keys = resolve_keys(lookup(type(instance), registry), tags_or_keys)
    for source in sources:
        data = dict(_items(source))
        assign(instance, {key: data[key] for key in keys if key in data})
    return instance


def to_dict(instance: Any, registry: ModelRegistry | None = None) -> dict[str, Any]:
    """Plain-dict view of declared columns and relationships that are set.

    Related model instances (and lists of them) are converted recursively.
    """
    info = lookup(type(instance), registry)
    result: dict[str, Any] = {}
    for key in [c.field_key for c in info.columns] + [r.key for r in info.relationships]:
        value = getattr(instance, key, _MISSING)
        if value is not _MISSING:
            result[key] = _plain(value, registry)
    return result


def _plain(value: Any, registry: ModelRegistry | None) -> Any:
    if isinstance(value, list | tuple):
        return [_plain(v, registry) for v in value]
    if value is not None and is_registered(type(value), registry):
        return to_dict(value, registry)
    return value
