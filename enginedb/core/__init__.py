"""
Core domain package.

This package contains the library integrity engine: schema mapping, entity
repositories, the consistency checker and the housekeeping engine. It is
independent of the CLI layer.

We intentionally keep exports minimal; consumers should usually import from the
specific module they need (e.g. `enginedb.core.checker`). Only the exception
hierarchy lives here so every layer can raise and catch it without import cycles.
"""

from __future__ import annotations

__all__: list[str] = [
    "CoreError",
    "SchemaMismatchError",
    "NotFoundError",
    "ConflictError",
    "ReferentialViolationError",
    "InvariantViolationError",
    "TransactionAbortedError",
    "PoolExhaustedError",
    "RepairFailure",
]


class CoreError(Exception):
    """Base class for core-layer exceptions."""


class SchemaMismatchError(CoreError):
    """
    Raised when the on-disk layout does not match a supported schema declaration.

    This is fatal: the engine refuses to touch data of a library it does not
    understand.
    """

    def __init__(self, table: str, column: str | None, reason: str) -> None:
        self.table = table
        self.column = column
        self.reason = reason
        where = f"{table}.{column}" if column else table
        super().__init__(f"{where}: {reason}")


class NotFoundError(CoreError):
    """Raised when an entity (track/crate/artwork/etc.) cannot be found."""

    def __init__(self, entity: str, entity_id: int) -> None:
        self.entity = entity
        self.entity_id = entity_id
        super().__init__(f"{entity} {entity_id} not found")


class ConflictError(CoreError):
    """Raised when an insert or update would violate a uniqueness invariant."""


class ReferentialViolationError(CoreError):
    """Raised when a delete without cascade is blocked by existing references."""


class InvariantViolationError(CoreError):
    """Raised when an entity violates a local invariant and must not be stored."""


class TransactionAbortedError(CoreError):
    """Raised when the storage engine fails to commit a unit of work."""


class PoolExhaustedError(CoreError):
    """Raised when no pooled connection becomes available in time."""


class RepairFailure(CoreError):
    """
    One housekeeping item failed.

    Instances are collected in the batch outcome; they are never raised out of
    a batch run.
    """

    def __init__(self, key: str, cause: BaseException) -> None:
        self.key = key
        self.cause = cause
        super().__init__(f"{key}: {type(cause).__name__}: {cause}")
