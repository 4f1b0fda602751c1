"""
Type definitions for remote-mongo.

Provides the result types returned by mutations, the option sets
recognized by each command, and the error taxonomy surfaced by
collection operations.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Mapping, Sequence


@dataclass
class InsertOneResult:
    """
    Result of an insert_one operation.

    Attributes:
        inserted_id: The _id of the inserted document.
    """

    inserted_id: Any


@dataclass
class InsertManyResult:
    """
    Result of an insert_many operation.

    Attributes:
        inserted_ids: Mapping of the index in the input list to the _id
            actually used for that document.
    """

    inserted_ids: dict[int, Any] = field(default_factory=dict)


@dataclass
class UpdateResult:
    """
    Result of an update_one or update_many operation.

    Attributes:
        matched_count: Number of documents matched.
        modified_count: Number of documents modified.
        upserted_id: The _id of the upserted document (if any).
    """

    matched_count: int = 0
    modified_count: int = 0
    upserted_id: Any = None


@dataclass
class DeleteResult:
    """
    Result of a delete_one or delete_many operation.

    Attributes:
        deleted_count: Number of documents deleted.
    """

    deleted_count: int = 0


@dataclass(frozen=True)
class CountOptions:
    """
    Options for count.

    Attributes:
        limit: Maximum number of documents to count.
    """

    limit: int | None = None

    def __post_init__(self) -> None:
        if self.limit is not None and self.limit < 0:
            raise ValueError(f"limit must be >= 0, got {self.limit}")


@dataclass(frozen=True)
class FindOptions:
    """
    Options for find and find_one.

    Attributes:
        limit: Maximum number of documents to return.
        projection: Fields to include/exclude.
        sort: Sort specification document, e.g. {"age": -1}.
        batch_size: Page size hint when the service paginates results.
    """

    limit: int | None = None
    projection: Mapping[str, Any] | None = None
    sort: Mapping[str, Any] | None = None
    batch_size: int | None = None

    def __post_init__(self) -> None:
        if self.limit is not None and self.limit < 0:
            raise ValueError(f"limit must be >= 0, got {self.limit}")
        if self.batch_size is not None and self.batch_size <= 0:
            raise ValueError(f"batch_size must be > 0, got {self.batch_size}")


@dataclass(frozen=True)
class FindOneAndModifyOptions:
    """
    Options for find_one_and_update, find_one_and_replace and
    find_one_and_delete.

    Attributes:
        projection: Fields to include/exclude in the returned document.
        sort: Sort order used to pick the document to modify.
        upsert: If True, insert when no document matches.
        return_new_document: If True, return the document after the
            modification instead of before.
    """

    projection: Mapping[str, Any] | None = None
    sort: Mapping[str, Any] | None = None
    upsert: bool = False
    return_new_document: bool = False


@dataclass(frozen=True)
class UpdateOptions:
    """
    Options for update_one and update_many.

    Attributes:
        upsert: If True, insert when no document matches.
        array_filters: Filters selecting array elements for positional
            update operators.
    """

    upsert: bool = False
    array_filters: Sequence[Mapping[str, Any]] | None = None


# Type aliases for clarity
Filter = Mapping[str, Any]
Update = Mapping[str, Any]
Pipeline = Sequence[Mapping[str, Any]]


class MongoError(Exception):
    """Base exception for remote collection operations."""

    def __init__(self, message: str, code: int | str | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.code = code


class ServiceError(MongoError):
    """
    Error raised when the remote service rejects a request.

    Covers malformed filters, updates or pipelines, unsupported
    aggregation stages, permission denials and unauthenticated callers.
    """

    pass


class TransportError(MongoError):
    """Error raised when the transport fails or a response is malformed."""

    pass


class ConnectionError(TransportError):
    """Error raised when connection to the service fails."""

    pass
