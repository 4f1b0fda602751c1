"""
remote-mongo - typed async client for a remote MongoDB collection.

This package provides typed access to collections hosted behind a remote
service, reached over an RPC command channel:
- Queries as deferred, re-executable read operations (find, aggregate)
- Single round trip mutations (insert, update, delete, find-and-modify)
- Change streams, full or compact, as async iterators
- Pluggable codecs converting documents to application types

Example usage:
    from remote_mongo import RemoteMongoClient

    async def main():
        async with RemoteMongoClient("https://mongo.do") as client:
            users = client["myapp"]["users"]

            result = await users.insert_one({"name": "Alice", "status": "A"})
            print(result.inserted_id)

            # Read operations run when a terminal method is called
            active = users.find({"status": "A"})
            print(await active.count())
            async for user in active:
                print(user["name"])

            await users.update_many({"status": "A"}, {"$set": {"status": "B"}})

            # Watch the inserted document
            async with await users.watch([result.inserted_id]) as stream:
                async for event in stream:
                    print(event.operation_type, event.document_key)

    import asyncio
    asyncio.run(main())
"""

from __future__ import annotations

__version__ = "0.1.0"

from .change_stream import (
    AllDocuments,
    ChangeEvent,
    ChangeStream,
    CompactChangeEvent,
    DeleteEvent,
    Ids,
    InsertEvent,
    MatchFilter,
    Namespace,
    OperationType,
    OtherEvent,
    ReplaceEvent,
    StreamState,
    UpdateDescription,
    UpdateEvent,
)
from .channel import CommandChannel, EventSource, RpcCommandChannel
from .client import RemoteMongoClient
from .codec import ClassCodec, Codec, DocumentCodec
from .collection import RemoteMongoCollection
from .database import RemoteMongoDatabase
from .read_operation import CommandKind, ReadOperation
from .types import (
    ConnectionError,
    CountOptions,
    DeleteResult,
    FindOneAndModifyOptions,
    FindOptions,
    InsertManyResult,
    InsertOneResult,
    MongoError,
    ServiceError,
    TransportError,
    UpdateOptions,
    UpdateResult,
)

__all__ = [
    # Main classes
    "RemoteMongoClient",
    "RemoteMongoDatabase",
    "RemoteMongoCollection",
    "ReadOperation",
    "CommandKind",
    # Transport
    "CommandChannel",
    "EventSource",
    "RpcCommandChannel",
    # Codecs
    "Codec",
    "DocumentCodec",
    "ClassCodec",
    # Change streams
    "ChangeStream",
    "StreamState",
    "ChangeEvent",
    "InsertEvent",
    "UpdateEvent",
    "ReplaceEvent",
    "DeleteEvent",
    "OtherEvent",
    "CompactChangeEvent",
    "OperationType",
    "UpdateDescription",
    "Namespace",
    "AllDocuments",
    "Ids",
    "MatchFilter",
    # Options
    "CountOptions",
    "FindOptions",
    "FindOneAndModifyOptions",
    "UpdateOptions",
    # Result types
    "InsertOneResult",
    "InsertManyResult",
    "UpdateResult",
    "DeleteResult",
    # Exceptions
    "MongoError",
    "ServiceError",
    "TransportError",
    "ConnectionError",
    # Version
    "__version__",
]
