"""
RemoteMongoClient - entry point to a remote MongoDB service.

Connects an rpc-do transport and hands out databases, whose collections
send their commands over the client's channel.
"""

from __future__ import annotations

import logging
import os
from types import TracebackType
from typing import TYPE_CHECKING, Any

from .channel import RpcCommandChannel
from .database import RemoteMongoDatabase
from .types import ConnectionError

if TYPE_CHECKING:
    from .channel import CommandChannel

__all__ = ["RemoteMongoClient"]

logger = logging.getLogger(__name__)

DEFAULT_URI = "https://mongo.do"
DEFAULT_TIMEOUT = 30.0


class RemoteMongoClient:
    """
    Client for a remote MongoDB service.

    Databases can be accessed using either attribute access or subscript
    notation once the client is connected.

    Example:
        client = RemoteMongoClient("https://mongo.do")
        await client.connect()

        db = client["myapp"]
        users = db["users"]
        await users.insert_one({"name": "Alice"})

        await client.close()

        # Or use as async context manager
        async with RemoteMongoClient("https://mongo.do") as client:
            db = client.myapp
            ...
    """

    __slots__ = ("_uri", "_channel", "_owns_channel", "_databases", "_options")

    def __init__(
        self,
        uri: str | None = None,
        **options: Any,
    ) -> None:
        """
        Initialize the client.

        Args:
            uri: Service URI (e.g., "https://mongo.do" or "wss://mongo.do/rpc").
                 If not provided, uses MONGO_URL environment variable.
            **options: Additional connection options.
                - timeout: Timeout passed to the transport (default: 30.0).
        """
        self._uri = uri or os.environ.get("MONGO_URL", DEFAULT_URI)
        self._channel: CommandChannel | None = None
        self._owns_channel = False
        self._databases: dict[str, RemoteMongoDatabase] = {}
        self._options = options

    @classmethod
    def from_channel(cls, channel: CommandChannel, uri: str | None = None) -> RemoteMongoClient:
        """
        Create a client around an existing channel.

        The client is connected immediately and close() leaves the
        channel open.

        Args:
            channel: A CommandChannel implementation.
            uri: Optional URI, for display only.
        """
        client = cls(uri)
        client._channel = channel
        return client

    @property
    def uri(self) -> str:
        """Get the connection URI."""
        return self._uri

    @property
    def is_connected(self) -> bool:
        """Check if the client is connected."""
        return self._channel is not None

    @property
    def channel(self) -> CommandChannel:
        """Get the command channel of a connected client."""
        self._ensure_connected()
        assert self._channel is not None
        return self._channel

    async def connect(self) -> RemoteMongoClient:
        """
        Connect to the service.

        Returns:
            Self for chaining.

        Raises:
            ConnectionError: If connection fails.
        """
        if self._channel is not None:
            return self

        try:
            from rpc_do import connect

            timeout = self._options.get("timeout", DEFAULT_TIMEOUT)
            rpc = await connect(self._uri, timeout=timeout)
        except ImportError as e:
            raise ConnectionError(
                "rpc-do package is required. Install with: pip install rpc-do"
            ) from e
        except Exception as e:
            raise ConnectionError(f"Failed to connect to {self._uri}: {e}") from e

        self._channel = RpcCommandChannel(rpc)
        self._owns_channel = True
        logger.debug(f"connected to {self._uri}")
        return self

    async def close(self) -> None:
        """Close the connection."""
        channel, self._channel = self._channel, None
        self._databases.clear()
        if channel is not None and self._owns_channel:
            self._owns_channel = False
            await channel.close()  # type: ignore[attr-defined]
            logger.debug(f"closed connection to {self._uri}")

    def _ensure_connected(self) -> None:
        """Ensure the client is connected."""
        if self._channel is None:
            raise ConnectionError("Client is not connected. Call connect() first.")

    def __getitem__(self, name: str) -> RemoteMongoDatabase:
        """
        Get a database by name using subscript notation.

        Example:
            db = client["myapp"]
        """
        self._ensure_connected()

        if name not in self._databases:
            self._databases[name] = RemoteMongoDatabase(self.channel, self, name)
        return self._databases[name]

    def __getattr__(self, name: str) -> RemoteMongoDatabase:
        """
        Get a database by name using attribute access.

        Example:
            db = client.myapp
        """
        if name.startswith("_"):
            raise AttributeError(f"'{type(self).__name__}' has no attribute '{name}'")

        return self[name]

    def get_database(self, name: str) -> RemoteMongoDatabase:
        """Get a database by name."""
        return self[name]

    async def __aenter__(self) -> RemoteMongoClient:
        """Async context manager entry."""
        await self.connect()
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc_val: BaseException | None,
        exc_tb: TracebackType | None,
    ) -> None:
        """Async context manager exit."""
        await self.close()

    def __repr__(self) -> str:
        status = "connected" if self.is_connected else "disconnected"
        return f"RemoteMongoClient({self._uri!r}, {status})"
