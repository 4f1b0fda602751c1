"""
ReadOperation - deferred, re-executable query or aggregation.

A ReadOperation captures a find query or an aggregation pipeline and
only talks to the service when one of its terminal methods runs. Every
terminal call is a fresh execution; nothing is cached on the descriptor.
"""

from __future__ import annotations

import contextlib
import dataclasses
import enum
import logging
from typing import TYPE_CHECKING, Any, AsyncIterator, Generic, Mapping, TypeVar

from .types import FindOptions, TransportError

if TYPE_CHECKING:
    from .channel import CommandChannel
    from .codec import Codec
    from .types import Filter, Pipeline

T = TypeVar("T")

__all__ = ["CommandKind", "ReadOperation", "check_count"]

logger = logging.getLogger(__name__)


class CommandKind(enum.Enum):
    """Command a ReadOperation sends when executed."""

    FIND = "find"
    AGGREGATE = "aggregate"


def check_count(result: Any) -> int:
    """Return a count response, or raise TransportError if it is not a count."""
    if not isinstance(result, int) or isinstance(result, bool) or result < 0:
        raise TransportError(f"Malformed count response: {result!r}")
    return result


class ReadOperation(Generic[T]):
    """
    Deferred query or aggregation over a remote collection.

    Constructing a ReadOperation performs no I/O. Results are produced by
    the terminal methods first(), to_list(), count() and async iteration,
    each of which sends its own command.

    Example:
        op = collection.find({"status": "active"}).sort({"name": 1})

        docs = await op.to_list()
        async with op.cursor() as cursor:
            async for doc in cursor:
                print(doc)
        first = await op.first()
        total = await op.count()
    """

    __slots__ = (
        "_channel",
        "_database",
        "_collection",
        "_codec",
        "_kind",
        "_query",
        "_options",
    )

    def __init__(
        self,
        channel: CommandChannel,
        database: str,
        collection: str,
        codec: Codec[T],
        kind: CommandKind,
        query: Filter | Pipeline,
        options: FindOptions | None = None,
    ) -> None:
        """
        Initialize a read operation.

        Args:
            channel: The channel commands are sent over.
            database: Database name.
            collection: Collection name.
            codec: Codec used to decode result documents.
            kind: FIND or AGGREGATE.
            query: Query filter (FIND) or pipeline stages (AGGREGATE).
            options: Limit, projection, sort and batch size.
        """
        self._channel = channel
        self._database = database
        self._collection = collection
        self._codec = codec
        self._kind = kind
        self._query = query
        self._options = options or FindOptions()

    @property
    def kind(self) -> CommandKind:
        return self._kind

    @property
    def query(self) -> Filter | Pipeline:
        """The query filter or aggregation pipeline, as captured."""
        return self._query

    @property
    def options(self) -> FindOptions:
        return self._options

    @property
    def namespace(self) -> str:
        return f"{self._database}.{self._collection}"

    def with_options(self, **changes: Any) -> ReadOperation[T]:
        """
        Return a new ReadOperation with some options replaced.

        Args:
            **changes: FindOptions fields to replace.

        Returns:
            A new descriptor; this one is left unchanged.
        """
        if self._kind is CommandKind.AGGREGATE and set(changes) - {"batch_size"}:
            raise TypeError(
                "aggregate operations only accept batch_size; "
                "add pipeline stages for limit, sort or projection"
            )
        return ReadOperation(
            self._channel,
            self._database,
            self._collection,
            self._codec,
            self._kind,
            self._query,
            dataclasses.replace(self._options, **changes),
        )

    def limit(self, limit: int) -> ReadOperation[T]:
        """Return a new ReadOperation returning at most ``limit`` documents."""
        return self.with_options(limit=limit)

    def sort(self, sort: Mapping[str, Any]) -> ReadOperation[T]:
        """Return a new ReadOperation with the given sort document."""
        return self.with_options(sort=sort)

    def project(self, projection: Mapping[str, Any]) -> ReadOperation[T]:
        """Return a new ReadOperation with the given projection."""
        return self.with_options(projection=projection)

    def batch_size(self, size: int) -> ReadOperation[T]:
        """Return a new ReadOperation requesting pages of ``size`` documents."""
        return self.with_options(batch_size=size)

    def _base_args(self) -> dict[str, Any]:
        return {"database": self._database, "collection": self._collection}

    def _command(self, limit: int | None) -> tuple[str, dict[str, Any]]:
        """Build the command name and argument document."""
        args = self._base_args()
        options = self._options

        if self._kind is CommandKind.FIND:
            args["query"] = dict(self._query)  # type: ignore[arg-type]
            if limit:
                args["limit"] = limit
            if options.projection:
                args["project"] = dict(options.projection)
            if options.sort:
                args["sort"] = dict(options.sort)
        else:
            args["pipeline"] = [dict(stage) for stage in self._query]  # type: ignore[union-attr]

        if options.batch_size:
            args["batchSize"] = options.batch_size

        return self._kind.value, args

    def _read_page(self, name: str, response: Any) -> tuple[list[Any], Any]:
        """Split a response into its documents and the cursor to continue."""
        if isinstance(response, list):
            return response, None
        if isinstance(response, Mapping) and isinstance(response.get("documents"), list):
            return response["documents"], response.get("cursorId") or None
        raise TransportError(f"Malformed {name} response: {type(response).__name__}")

    async def _raw_documents(self, limit: int | None) -> AsyncIterator[Any]:
        """
        Run the command and yield raw documents across all pages.

        Subsequent pages are requested with getMore until the cursor is
        exhausted or ``limit`` documents were yielded. A cursor still open
        on exit is released with killCursors.
        """
        name, args = self._command(limit)
        logger.debug(f"{name} on '{self.namespace}'")
        documents, cursor_id = self._read_page(name, await self._channel.execute(name, args))

        delivered = 0
        try:
            while True:
                for document in documents:
                    if limit and delivered >= limit:
                        return
                    yield document
                    delivered += 1

                if not cursor_id or (limit and delivered >= limit):
                    return

                more = self._base_args()
                more["cursorId"], cursor_id = cursor_id, None
                if self._options.batch_size:
                    more["batchSize"] = self._options.batch_size
                documents, cursor_id = self._read_page(
                    "getMore", await self._channel.execute("getMore", more)
                )
        finally:
            # cursor_id is only set while the service holds an open cursor
            if cursor_id:
                kill = self._base_args()
                kill["cursorId"] = cursor_id
                logger.debug(f"killCursors {cursor_id!r} on '{self.namespace}'")
                await self._channel.execute("killCursors", kill)
            logger.debug(f"finished {name} on '{self.namespace}' ({delivered} documents)")

    async def _iterate(self, limit: int | None) -> AsyncIterator[T]:
        raw = self._raw_documents(limit)
        try:
            async for document in raw:
                yield self._codec.decode(document)
        except Exception:
            # releasing the cursor must not replace the error being raised
            try:
                await raw.aclose()
            except Exception as e:
                logger.warning(f"failed to release cursor on '{self.namespace}': {e}")
            raise
        finally:
            await raw.aclose()

    def __aiter__(self) -> AsyncIterator[T]:
        """
        Execute the operation and iterate over the decoded results.

        A server cursor left open by breaking out of the loop is released
        only when the iterator is finalized. Use cursor() to release it as
        soon as the block exits.
        """
        return self._iterate(self._options.limit)

    def cursor(self) -> contextlib.aclosing[AsyncIterator[T]]:
        """
        Execute the operation inside an ``async with`` block.

        The open server cursor, if any, is killed when the block exits,
        including after a break or an exception.

        Example:
            async with collection.find({}).cursor() as docs:
                async for doc in docs:
                    if doc["done"]:
                        break
        """
        return contextlib.aclosing(self._iterate(self._options.limit))

    async def to_list(self) -> list[T]:
        """
        Execute the operation and collect all results.

        Returns:
            Decoded documents in the order the service returned them.
        """
        return [document async for document in self]

    async def first(self) -> T | None:
        """
        Execute the operation and return its first result.

        Find operations request a single document; aggregations are
        truncated locally.

        Returns:
            The first decoded document, or None if there are no results.
        """
        limit = 1 if self._kind is CommandKind.FIND else self._options.limit
        results = self._iterate(limit)
        try:
            async for document in results:
                return document
            return None
        finally:
            await results.aclose()

    async def count(self) -> int:
        """
        Count the documents this operation would return.

        Find operations send a count command with the same query and
        limit; aggregations run the pipeline with a trailing $count stage.

        Returns:
            Number of matching documents.
        """
        if self._kind is CommandKind.FIND:
            args = self._base_args()
            args["query"] = dict(self._query)  # type: ignore[arg-type]
            if self._options.limit:
                args["limit"] = self._options.limit
            return check_count(await self._channel.execute("count", args))

        counting = ReadOperation(
            self._channel,
            self._database,
            self._collection,
            self._codec,
            CommandKind.AGGREGATE,
            [*self._query, {"$count": "count"}],  # type: ignore[misc]
            self._options,
        )
        raw = counting._raw_documents(1)
        try:
            async for document in raw:
                return check_count(
                    document.get("count") if isinstance(document, Mapping) else document
                )
            return 0
        finally:
            await raw.aclose()

    def __repr__(self) -> str:
        return f"ReadOperation({self._kind.value}, {self.namespace!r}, {self._query!r})"
