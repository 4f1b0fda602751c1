"""
Database - access to the collections of one remote database.
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Any, TypeVar

from .collection import RemoteMongoCollection

if TYPE_CHECKING:
    from .channel import CommandChannel
    from .client import RemoteMongoClient
    from .codec import Codec

T = TypeVar("T")

__all__ = ["RemoteMongoDatabase"]


class RemoteMongoDatabase:
    """
    A remote database.

    Collections can be accessed using either attribute access or
    subscript notation; both return collections of plain dict documents.
    Use collection() to bind a different codec.

    Example:
        db = client["myapp"]

        users = db.users
        orders = db["orders"]
        typed = db.collection("users", ClassCodec(User))
    """

    __slots__ = ("_channel", "_client", "_name", "_collections")

    def __init__(
        self,
        channel: CommandChannel,
        client: RemoteMongoClient,
        name: str,
    ) -> None:
        """
        Initialize a database.

        Args:
            channel: The channel commands are sent over.
            client: Parent client instance.
            name: Database name.

        Raises:
            ValueError: If the database name is invalid.
        """
        if not isinstance(name, str) or not name or any(c in name for c in "./ $"):
            raise ValueError(f"Invalid database name: {name!r}")
        self._channel = channel
        self._client = client
        self._name = name
        self._collections: dict[str, RemoteMongoCollection[Any]] = {}

    @property
    def name(self) -> str:
        """Get the database name."""
        return self._name

    @property
    def client(self) -> RemoteMongoClient:
        """Get the parent client."""
        return self._client

    def __getitem__(self, name: str) -> RemoteMongoCollection[dict[str, Any]]:
        """
        Get a collection by name using subscript notation.

        Example:
            users = db["users"]
        """
        if name not in self._collections:
            self._collections[name] = RemoteMongoCollection(self._channel, self, name)
        return self._collections[name]

    def __getattr__(self, name: str) -> RemoteMongoCollection[dict[str, Any]]:
        """
        Get a collection by name using attribute access.

        Example:
            users = db.users
        """
        if name.startswith("_"):
            raise AttributeError(f"'{type(self).__name__}' has no attribute '{name}'")

        return self[name]

    def collection(
        self,
        name: str,
        codec: Codec[T] | None = None,
    ) -> RemoteMongoCollection[T]:
        """
        Get a collection, optionally with a codec.

        Args:
            name: Collection name.
            codec: Codec for the collection's documents. Defaults to
                plain dicts.

        Returns:
            RemoteMongoCollection instance.
        """
        if codec is None:
            return self[name]  # type: ignore[return-value]
        return self[name].with_collection_type(codec)

    def __repr__(self) -> str:
        return f"RemoteMongoDatabase({self._name!r})"
