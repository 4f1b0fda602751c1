"""
Collection - typed access to one remote collection.

Provides RemoteMongoCollection, the entry point for querying, mutating
and watching a single collection through a CommandChannel. Every call is
a single round trip; nothing is retried or validated locally beyond the
documents being encodable.
"""

from __future__ import annotations

import functools
import logging
import uuid
from typing import TYPE_CHECKING, Any, Generic, Iterable, Mapping, Sequence, TypeVar

from .change_stream import (
    ChangeEvent,
    ChangeStream,
    CompactChangeEvent,
    Ids,
    MatchFilter,
    decode_change_event,
    decode_compact_change_event,
    watch_target,
)
from .codec import DocumentCodec, check_codec
from .read_operation import CommandKind, ReadOperation, check_count
from .types import (
    CountOptions,
    DeleteResult,
    FindOneAndModifyOptions,
    FindOptions,
    InsertManyResult,
    InsertOneResult,
    TransportError,
    UpdateOptions,
    UpdateResult,
)

if TYPE_CHECKING:
    from .channel import CommandChannel
    from .codec import Codec
    from .database import RemoteMongoDatabase
    from .types import Filter, Pipeline, Update

T = TypeVar("T")
U = TypeVar("U")

__all__ = ["RemoteMongoCollection"]

logger = logging.getLogger(__name__)


class RemoteMongoCollection(Generic[T]):
    """
    A remote collection holding documents of type T.

    Documents are encoded and decoded with the collection's codec. The
    read operations are find(), find_one(), count() and aggregate(); the
    write operations are insert_one(), insert_many(), update_one(),
    update_many(), delete_one(), delete_many() and the find_one_and_*
    family; watch() and watch_compact() open change streams.

    Example:
        users = db["users"]

        result = await users.insert_one({"name": "Alice", "status": "A"})
        print(result.inserted_id)

        user = await users.find_one({"name": "Alice"})
        active = await users.find({"status": "A"}).to_list()

        await users.update_many({"status": "A"}, {"$set": {"status": "B"}})
        await users.delete_one({"name": "Alice"})

        async with await users.watch([result.inserted_id]) as stream:
            async for event in stream:
                print(event.operation_type)
    """

    __slots__ = ("_channel", "_database", "_name", "_namespace", "_codec")

    def __init__(
        self,
        channel: CommandChannel,
        database: RemoteMongoDatabase,
        name: str,
        codec: Codec[T] | None = None,
    ) -> None:
        """
        Initialize a collection.

        Args:
            channel: The channel commands are sent over.
            database: Parent database instance.
            name: Collection name.
            codec: Codec for the collection's documents. Defaults to
                DocumentCodec (plain dicts).

        Raises:
            ValueError: If the collection name is invalid.
            TypeError: If the codec does not provide encode and decode.
        """
        if not isinstance(name, str) or not name or "$" in name:
            raise ValueError(f"Invalid collection name: {name!r}")
        codec = codec if codec is not None else DocumentCodec()  # type: ignore[assignment]
        check_codec(codec)

        self._channel = channel
        self._database = database
        self._name = name
        self._namespace = f"{database.name}.{name}"
        self._codec: Codec[T] = codec  # type: ignore[assignment]

    @property
    def name(self) -> str:
        """Get the collection name."""
        return self._name

    @property
    def namespace(self) -> str:
        """Get the namespace (database.collection)."""
        return self._namespace

    @property
    def database(self) -> RemoteMongoDatabase:
        """Get the parent database."""
        return self._database

    @property
    def database_name(self) -> str:
        """Get the name of the parent database."""
        return self._database.name

    @property
    def codec(self) -> Codec[T]:
        return self._codec

    def with_collection_type(self, codec: Codec[U]) -> RemoteMongoCollection[U]:
        """
        Get this collection with a different codec.

        Args:
            codec: Codec the new collection encodes and decodes with.

        Returns:
            A new RemoteMongoCollection on the same namespace. This one
            is left unchanged.
        """
        return RemoteMongoCollection(self._channel, self._database, self._name, codec)

    def _args(self, **extra: Any) -> dict[str, Any]:
        args: dict[str, Any] = {"database": self._database.name, "collection": self._name}
        args.update(extra)
        return args

    async def _execute(self, name: str, args: dict[str, Any]) -> Any:
        logger.debug(f"{name} on '{self._namespace}'")
        result = await self._channel.execute(name, args)
        logger.debug(f"finished {name} on '{self._namespace}'")
        return result

    async def _execute_for_mapping(self, name: str, args: dict[str, Any]) -> Mapping[str, Any]:
        result = await self._execute(name, args)
        if not isinstance(result, Mapping):
            raise TransportError(f"Malformed {name} response: {result!r}")
        return result

    def _decode_optional(self, name: str, result: Any) -> T | None:
        if result is None:
            return None
        if not isinstance(result, Mapping):
            raise TransportError(f"Malformed {name} response: {result!r}")
        return self._codec.decode(result)

    def _generate_id(self) -> str:
        """Generate a unique document ID."""
        return str(uuid.uuid4())

    def _encode_for_insert(self, document: T) -> dict[str, Any]:
        doc = dict(self._codec.encode(document))
        if doc.get("_id") is None:
            doc["_id"] = self._generate_id()
        return doc

    async def count(
        self,
        filter: Filter | None = None,
        options: CountOptions | None = None,
    ) -> int:
        """
        Count the documents matching a filter.

        Args:
            filter: Query filter. Defaults to matching every document.
            options: Count options (limit).

        Returns:
            Number of matching documents.
        """
        args = self._args(query=dict(filter or {}))
        if options is not None and options.limit:
            args["limit"] = options.limit

        return check_count(await self._execute("count", args))

    def find(
        self,
        filter: Filter | None = None,
        options: FindOptions | None = None,
    ) -> ReadOperation[T]:
        """
        Find the documents matching a filter.

        Nothing is sent until a terminal method of the returned
        ReadOperation runs.

        Args:
            filter: Query filter. Defaults to matching every document.
            options: Limit, projection, sort and batch size.

        Returns:
            A ReadOperation for the query.

        Example:
            docs = await collection.find({"status": "A"}).to_list()

            async for doc in collection.find({}, FindOptions(sort={"name": 1})):
                print(doc)
        """
        return ReadOperation(
            self._channel,
            self._database.name,
            self._name,
            self._codec,
            CommandKind.FIND,
            dict(filter or {}),
            options,
        )

    async def find_one(
        self,
        filter: Filter | None = None,
        options: FindOptions | None = None,
    ) -> T | None:
        """
        Find a single document.

        Args:
            filter: Query filter. Defaults to matching every document.
            options: Projection and sort (limit is ignored).

        Returns:
            The matching document, or None if nothing matched.
        """
        args = self._args(query=dict(filter or {}))
        if options is not None:
            if options.projection:
                args["project"] = dict(options.projection)
            if options.sort:
                args["sort"] = dict(options.sort)

        return self._decode_optional("findOne", await self._execute("findOne", args))

    async def _find_one_and_modify(
        self,
        name: str,
        args: dict[str, Any],
        options: FindOneAndModifyOptions | None,
    ) -> T | None:
        if options is not None:
            if options.projection:
                args["projection"] = dict(options.projection)
            if options.sort:
                args["sort"] = dict(options.sort)
            if name != "findOneAndDelete":
                if options.upsert:
                    args["upsert"] = True
                if options.return_new_document:
                    args["returnNewDocument"] = True

        return self._decode_optional(name, await self._execute(name, args))

    async def find_one_and_update(
        self,
        filter: Filter,
        update: Update,
        options: FindOneAndModifyOptions | None = None,
    ) -> T | None:
        """
        Update one document and return it.

        Args:
            filter: Query filter selecting the document.
            update: Update operators ($set, $inc, ...) to apply.
            options: Projection, sort, upsert and return_new_document.

        Returns:
            The document before the update (or after, with
            return_new_document), or None if nothing matched.
        """
        args = self._args(filter=dict(filter), update=dict(update))
        return await self._find_one_and_modify("findOneAndUpdate", args, options)

    async def find_one_and_replace(
        self,
        filter: Filter,
        replacement: Mapping[str, Any],
        options: FindOneAndModifyOptions | None = None,
    ) -> T | None:
        """
        Replace one document and return it.

        Args:
            filter: Query filter selecting the document.
            replacement: The full replacement document.
            options: Projection, sort, upsert and return_new_document.

        Returns:
            The document before the replacement (or after, with
            return_new_document), or None if nothing matched.
        """
        args = self._args(filter=dict(filter), update=dict(replacement))
        return await self._find_one_and_modify("findOneAndReplace", args, options)

    async def find_one_and_delete(
        self,
        filter: Filter,
        options: FindOneAndModifyOptions | None = None,
    ) -> T | None:
        """
        Delete one document and return it.

        Args:
            filter: Query filter selecting the document.
            options: Projection and sort.

        Returns:
            The deleted document, or None if nothing matched.
        """
        args = self._args(filter=dict(filter))
        return await self._find_one_and_modify("findOneAndDelete", args, options)

    def aggregate(self, pipeline: Pipeline) -> ReadOperation[T]:
        """
        Run an aggregation pipeline.

        Nothing is sent until a terminal method of the returned
        ReadOperation runs.

        Args:
            pipeline: List of aggregation stages.

        Returns:
            A ReadOperation for the aggregation.
        """
        if isinstance(pipeline, Mapping):
            raise TypeError("pipeline must be a list of stages, not a single document")
        return ReadOperation(
            self._channel,
            self._database.name,
            self._name,
            self._codec,
            CommandKind.AGGREGATE,
            [dict(stage) for stage in pipeline],
        )

    async def insert_one(self, document: T) -> InsertOneResult:
        """
        Insert a single document.

        A document without an _id gets a generated one.

        Args:
            document: The document to insert.

        Returns:
            InsertOneResult with the _id actually used.
        """
        doc = self._encode_for_insert(document)
        result = await self._execute_for_mapping("insertOne", self._args(document=doc))
        return InsertOneResult(inserted_id=result.get("insertedId", doc["_id"]))

    async def insert_many(self, documents: Iterable[T]) -> InsertManyResult:
        """
        Insert multiple documents.

        Documents without an _id get a generated one.

        Args:
            documents: The documents to insert.

        Returns:
            InsertManyResult mapping each input index to its _id.

        Raises:
            ValueError: If no documents are given.
        """
        docs = [self._encode_for_insert(document) for document in documents]
        if not docs:
            raise ValueError("insert_many() requires at least one document")

        result = await self._execute_for_mapping("insertMany", self._args(documents=docs))

        inserted_ids = {index: doc["_id"] for index, doc in enumerate(docs)}
        reported = result.get("insertedIds")
        if isinstance(reported, Mapping):
            inserted_ids.update({int(index): _id for index, _id in reported.items()})
        elif isinstance(reported, list):
            inserted_ids.update(enumerate(reported))
        return InsertManyResult(inserted_ids=inserted_ids)

    async def _delete(self, name: str, filter: Filter) -> DeleteResult:
        result = await self._execute_for_mapping(name, self._args(query=dict(filter)))
        return DeleteResult(deleted_count=int(result.get("deletedCount", 0)))

    async def delete_one(self, filter: Filter) -> DeleteResult:
        """
        Delete at most one document matching the filter.

        Args:
            filter: Query filter to match the document.

        Returns:
            DeleteResult with the deleted count (0 if nothing matched).
        """
        return await self._delete("deleteOne", filter)

    async def delete_many(self, filter: Filter) -> DeleteResult:
        """
        Delete every document matching the filter.

        Args:
            filter: Query filter to match documents.

        Returns:
            DeleteResult with the deleted count (0 if nothing matched).
        """
        return await self._delete("deleteMany", filter)

    async def _update(
        self,
        name: str,
        filter: Filter,
        update: Update,
        options: UpdateOptions | None,
    ) -> UpdateResult:
        args = self._args(query=dict(filter), update=dict(update))
        if options is not None:
            if options.upsert:
                args["upsert"] = True
            if options.array_filters:
                args["arrayFilters"] = [dict(f) for f in options.array_filters]

        result = await self._execute_for_mapping(name, args)
        return UpdateResult(
            matched_count=int(result.get("matchedCount", 0)),
            modified_count=int(result.get("modifiedCount", 0)),
            upserted_id=result.get("upsertedId"),
        )

    async def update_one(
        self,
        filter: Filter,
        update: Update,
        options: UpdateOptions | None = None,
    ) -> UpdateResult:
        """
        Update a single document.

        Args:
            filter: Query filter to match the document.
            update: Update operators ($set, $unset, $inc, ...) only.
            options: Upsert and array filters.

        Returns:
            UpdateResult with match/modify counts and the upserted _id.
        """
        return await self._update("updateOne", filter, update, options)

    async def update_many(
        self,
        filter: Filter,
        update: Update,
        options: UpdateOptions | None = None,
    ) -> UpdateResult:
        """
        Update every document matching the filter.

        Args:
            filter: Query filter to match documents.
            update: Update operators ($set, $unset, $inc, ...) only.
            options: Upsert and array filters.

        Returns:
            UpdateResult with match/modify counts and the upserted _id.
        """
        return await self._update("updateMany", filter, update, options)

    async def watch(
        self,
        target: Sequence[Any] | Mapping[str, Any] | None = None,
    ) -> ChangeStream[ChangeEvent[T]]:
        """
        Open a change stream on the collection.

        Args:
            target: None to watch the whole collection, a list of _ids to
                watch only those documents, or a $match expression over
                the raw change events.

        Returns:
            An open ChangeStream of ChangeEvents.

        Raises:
            TypeError: If target is not a list of ids or a document.
            ValueError: If target is an empty list of ids.
        """
        resolved = watch_target(target)
        args = self._args()
        if isinstance(resolved, Ids):
            args["ids"] = list(resolved.ids)
        elif isinstance(resolved, MatchFilter):
            args["filter"] = dict(resolved.filter)

        decode = functools.partial(decode_change_event, codec=self._codec)
        return await self._open_stream(args, decode)

    async def watch_compact(self, ids: Sequence[Any]) -> ChangeStream[CompactChangeEvent[T]]:
        """
        Open a compact change stream on specific documents.

        Compact events omit the full document and other metadata, which
        saves bandwidth when watching large documents. Watching the whole
        collection or a filter is not supported in this mode.

        Args:
            ids: The _ids of the documents to watch. Must not be empty.

        Returns:
            An open ChangeStream of CompactChangeEvents.

        Raises:
            TypeError: If ids is not a list of ids.
            ValueError: If ids is empty.
        """
        if isinstance(ids, (str, bytes, Mapping)) or not isinstance(
            ids, (list, tuple, set, frozenset)
        ):
            raise TypeError("watch_compact() requires a list of document ids")
        target = Ids(tuple(ids))

        args = self._args(ids=list(target.ids), useCompactEvents=True)
        return await self._open_stream(args, decode_compact_change_event)

    async def _open_stream(self, args: dict[str, Any], decode: Any) -> ChangeStream[Any]:
        logger.debug(f"watch on '{self._namespace}'")
        source = self._channel.open_stream("watch", args)
        stream: ChangeStream[Any] = ChangeStream(source, decode, self._namespace)
        return await stream.open()

    def __repr__(self) -> str:
        return f"RemoteMongoCollection({self._namespace!r}, {self._codec!r})"
