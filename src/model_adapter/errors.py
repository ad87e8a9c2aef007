"""Exception types raised by the registry and the adapter engine.

Usage:
    from model_adapter.errors import MissingKey, NotRegistered

    try:
        await engine.delete(book)
    except MissingKey:
        ...
"""


class ModelAdapterError(Exception):
    """Base class for all model-adapter errors."""

    pass


class NotRegistered(ModelAdapterError):
    """Raised when an operation targets a model type that was never declared."""

    pass


class SchemaError(ModelAdapterError):
    """Raised when a backend rejects schema creation or verification."""

    pass


class MissingKey(ModelAdapterError):
    """Raised when deleting an instance whose primary key is not populated."""

    pass


class UnknownRelationship(ModelAdapterError):
    """Raised when joining a relationship key the model does not declare."""

    pass


class UnhandledKind(ModelAdapterError):
    """Raised when a relationship has a kind the engine cannot resolve."""

    pass
