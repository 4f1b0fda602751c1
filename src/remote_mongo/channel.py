"""
Channel - the transport seam beneath a collection.

Defines the CommandChannel and EventSource contracts the collection is
written against, and RpcCommandChannel, the adapter that runs them over
an rpc-do client.
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Any, AsyncIterator, Mapping, Protocol

from .types import ServiceError, TransportError

if TYPE_CHECKING:
    from rpc_do import RpcClient

__all__ = ["CommandChannel", "EventSource", "RpcCommandChannel", "RpcEventSource"]

logger = logging.getLogger(__name__)


class EventSource(Protocol):
    """
    Ordered source of raw change event documents.

    open() establishes the connection and returns once the service has
    acknowledged the subscription. Iteration then yields raw event
    documents in server order; it ends on graceful end-of-stream and
    raises TransportError on transport failure. close() releases the
    connection and may be called more than once.
    """

    async def open(self) -> None:
        ...

    def __aiter__(self) -> AsyncIterator[Mapping[str, Any]]:
        ...

    async def close(self) -> None:
        ...


class CommandChannel(Protocol):
    """Request/response transport to the remote service."""

    async def execute(self, name: str, args: dict[str, Any]) -> Any:
        """
        Execute a named command.

        Raises:
            ServiceError: If the service rejects the command.
            TransportError: If the command could not be delivered or the
                response could not be read.
        """
        ...

    def open_stream(self, name: str, args: dict[str, Any]) -> EventSource:
        """Create an unopened event source for a streaming command."""
        ...


def _check_response(name: str, result: Any) -> Any:
    """Raise ServiceError if the response carries an error marker."""
    if isinstance(result, Mapping) and result.get("error"):
        error = result["error"]
        message = result.get("message") or (
            error if isinstance(error, str) else f"{name} failed"
        )
        raise ServiceError(message, code=result.get("code"))
    return result


class RpcEventSource:
    """
    EventSource backed by a streaming rpc-do call.

    The call returns an async iterable of raw event documents once the
    service has accepted the subscription.
    """

    __slots__ = ("_rpc", "_name", "_args", "_stream", "_closed")

    def __init__(self, rpc: RpcClient, name: str, args: dict[str, Any]) -> None:
        self._rpc = rpc
        self._name = name
        self._args = args
        self._stream: Any = None
        self._closed = False

    async def open(self) -> None:
        if self._stream is not None:
            raise TransportError("event source is already open")

        try:
            result = await getattr(self._rpc.mongo, self._name)(self._args)
        except Exception as e:
            raise TransportError(f"Failed to open {self._name} stream: {e}") from e

        self._stream = _check_response(self._name, result)

    async def __aiter__(self) -> AsyncIterator[Mapping[str, Any]]:
        if self._stream is None:
            raise TransportError("event source is not open")

        iterator = self._stream.__aiter__()
        while not self._closed:
            try:
                raw = await iterator.__anext__()
            except StopAsyncIteration:
                return
            except Exception as e:
                raise TransportError(f"{self._name} stream failed: {e}") from e
            yield raw

    async def close(self) -> None:
        if self._closed:
            return
        self._closed = True

        stream, self._stream = self._stream, None
        if stream is None:
            return
        for attr in ("aclose", "close"):
            if attr == "aclose" and getattr(stream, "ag_running", False):
                # a pending read owns the generator
                continue
            closer = getattr(stream, attr, None)
            if closer is not None:
                result = closer()
                if hasattr(result, "__await__"):
                    await result
                break


class RpcCommandChannel:
    """
    CommandChannel over an rpc-do client.

    Each command is sent as ``rpc.mongo.<name>(args)``. A mapping response
    with a truthy ``error`` key becomes a ServiceError; any exception
    raised by the RPC client becomes a TransportError.

    Example:
        from rpc_do import connect

        rpc = await connect("https://mongo.do")
        channel = RpcCommandChannel(rpc)
        count = await channel.execute(
            "count", {"database": "app", "collection": "users", "query": {}}
        )
    """

    __slots__ = ("_rpc",)

    def __init__(self, rpc: RpcClient) -> None:
        self._rpc = rpc

    @property
    def rpc(self) -> RpcClient:
        return self._rpc

    async def execute(self, name: str, args: dict[str, Any]) -> Any:
        try:
            result = await getattr(self._rpc.mongo, name)(args)
        except Exception as e:
            logger.debug(f"{name} raised {type(e).__name__}: {e}")
            raise TransportError(f"{name} failed: {e}") from e
        return _check_response(name, result)

    def open_stream(self, name: str, args: dict[str, Any]) -> RpcEventSource:
        return RpcEventSource(self._rpc, name, args)

    async def close(self) -> None:
        await self._rpc.close()

    def __repr__(self) -> str:
        return f"RpcCommandChannel({self._rpc!r})"
