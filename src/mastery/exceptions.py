"""
Exceptions raised by the mastery engine.

Store operations never raise these to callers; they surface only where
external input is parsed (lesson catalogs) or inside the storage layer,
where the persistence writer catches and logs them.
"""


class MasteryError(Exception):
    """Base class for mastery engine errors."""


class CatalogError(MasteryError):
    """A lesson/module catalog could not be parsed."""


class StorageError(MasteryError):
    """A key/value backend failed to read, write or remove a key."""

    def __init__(self, operation: str, key: str, cause: Exception | None = None):
        self.operation = operation
        self.key = key
        self.cause = cause
        message = f"{operation} failed for key {key!r}"
        if cause is not None:
            message = f"{message}: {cause}"
        super().__init__(message)


class SnapshotError(MasteryError):
    """A stored snapshot is not valid JSON or has the wrong shape."""
