"""
Pytest fixtures for remote-mongo tests.

Provides an in-memory command channel and scripted event sources for
testing without actual network connections.
"""

from __future__ import annotations

import asyncio
import copy
import itertools
import sys
from typing import Any
from unittest.mock import AsyncMock, MagicMock

import pytest

from remote_mongo import RemoteMongoClient, ServiceError


class MockEventSource:
    """Scripted EventSource yielding a fixed list of raw events."""

    def __init__(
        self,
        events: list[Any] | None = None,
        error: Exception | None = None,
        open_error: Exception | None = None,
        hold: bool = False,
    ) -> None:
        self.events = list(events or [])
        self.error = error
        self.open_error = open_error
        self.hold = hold
        self.waiting = False
        self._released = asyncio.Event()
        self.opened = False
        self.closed = False
        self.close_calls = 0

    async def open(self) -> None:
        if self.open_error is not None:
            raise self.open_error
        self.opened = True

    async def __aiter__(self):
        for event in self.events:
            if self.closed:
                return
            yield event
        if self.error is not None:
            raise self.error
        if self.hold:
            # stay silent until closed, like an idle subscription
            self.waiting = True
            await self._released.wait()

    async def close(self) -> None:
        self.closed = True
        self._released.set()
        self.close_calls += 1


class MockCommandChannel:
    """In-memory CommandChannel recording every command it receives."""

    def __init__(self, page_size: int | None = None) -> None:
        self._data: dict[str, dict[str, list[dict[str, Any]]]] = {}
        self._cursors: dict[str, list[dict[str, Any]]] = {}
        self._cursor_ids = itertools.count(1)
        self._upsert_ids = itertools.count(1)
        self.page_size = page_size
        self.calls: list[tuple[str, dict[str, Any]]] = []
        self.failures: dict[str, Exception] = {}
        self.responses: dict[str, Any] = {}
        self.next_source: MockEventSource | None = None
        self.stream_calls: list[tuple[str, dict[str, Any]]] = []

    def command_names(self) -> list[str]:
        return [name for name, _ in self.calls]

    async def execute(self, name: str, args: dict[str, Any]) -> Any:
        self.calls.append((name, copy.deepcopy(args)))
        if name in self.failures:
            raise self.failures[name]
        if name in self.responses:
            return self.responses[name]
        return getattr(self, f"_{name}")(args)

    def open_stream(self, name: str, args: dict[str, Any]) -> MockEventSource:
        self.stream_calls.append((name, copy.deepcopy(args)))
        source = self.next_source or MockEventSource()
        self.next_source = None
        return source

    def documents(self, database: str, collection: str) -> list[dict[str, Any]]:
        """Get or create collection data."""
        return self._data.setdefault(database, {}).setdefault(collection, [])

    def _collection(self, args: dict[str, Any]) -> list[dict[str, Any]]:
        return self.documents(args["database"], args["collection"])

    def _page(self, results: list[dict[str, Any]], batch_size: int | None) -> Any:
        size = batch_size or self.page_size
        if not size or len(results) <= size:
            return results
        cursor_id = f"cursor-{next(self._cursor_ids)}"
        self._cursors[cursor_id] = results[size:]
        return {"documents": results[:size], "cursorId": cursor_id}

    def _count(self, args: dict[str, Any]) -> int:
        count = sum(1 for doc in self._collection(args) if self._matches(doc, args["query"]))
        limit = args.get("limit")
        return min(count, limit) if limit else count

    def _find(self, args: dict[str, Any]) -> Any:
        results = [
            copy.deepcopy(doc) for doc in self._collection(args) if self._matches(doc, args["query"])
        ]
        results = self._sort(results, args.get("sort"))
        if args.get("limit"):
            results = results[: args["limit"]]
        results = [self._project(doc, args.get("project")) for doc in results]
        return self._page(results, args.get("batchSize"))

    def _getMore(self, args: dict[str, Any]) -> dict[str, Any]:
        remaining = self._cursors.pop(args["cursorId"], None)
        if remaining is None:
            raise ServiceError(f"cursor {args['cursorId']} not found", code=43)
        size = args.get("batchSize") or self.page_size or len(remaining)
        page = {"documents": remaining[:size], "cursorId": None}
        if len(remaining) > size:
            self._cursors[args["cursorId"]] = remaining[size:]
            page["cursorId"] = args["cursorId"]
        return page

    def _killCursors(self, args: dict[str, Any]) -> dict[str, Any]:
        self._cursors.pop(args["cursorId"], None)
        return {"ok": 1}

    def open_cursors(self) -> list[str]:
        return list(self._cursors)

    def _findOne(self, args: dict[str, Any]) -> dict[str, Any] | None:
        results = [doc for doc in self._collection(args) if self._matches(doc, args["query"])]
        results = self._sort(results, args.get("sort"))
        if not results:
            return None
        return self._project(copy.deepcopy(results[0]), args.get("project"))

    def _aggregate(self, args: dict[str, Any]) -> Any:
        results = [copy.deepcopy(doc) for doc in self._collection(args)]
        for stage in args["pipeline"]:
            (op, value), = stage.items()
            if op == "$match":
                results = [doc for doc in results if self._matches(doc, value)]
            elif op == "$sort":
                results = self._sort(results, value)
            elif op == "$limit":
                results = results[:value]
            elif op == "$skip":
                results = results[value:]
            elif op == "$project":
                results = [self._project(doc, value) for doc in results]
            elif op == "$count":
                results = [{value: len(results)}] if results else []
            else:
                raise ServiceError(f"Unsupported aggregation stage: {op}")
        return self._page(results, args.get("batchSize"))

    def _insertOne(self, args: dict[str, Any]) -> dict[str, Any]:
        data = self._collection(args)
        document = args["document"]
        for doc in data:
            if doc.get("_id") == document.get("_id"):
                raise ServiceError("E11000 duplicate key error", code=11000)
        data.append(copy.deepcopy(document))
        return {"insertedId": document["_id"]}

    def _insertMany(self, args: dict[str, Any]) -> dict[str, Any]:
        data = self._collection(args)
        inserted_ids = {}
        for index, doc in enumerate(args["documents"]):
            data.append(copy.deepcopy(doc))
            inserted_ids[str(index)] = doc["_id"]
        return {"insertedIds": inserted_ids}

    def _deleteOne(self, args: dict[str, Any]) -> dict[str, Any]:
        data = self._collection(args)
        for i, doc in enumerate(data):
            if self._matches(doc, args["query"]):
                del data[i]
                return {"deletedCount": 1}
        return {"deletedCount": 0}

    def _deleteMany(self, args: dict[str, Any]) -> dict[str, Any]:
        data = self._collection(args)
        kept = [doc for doc in data if not self._matches(doc, args["query"])]
        deleted = len(data) - len(kept)
        data[:] = kept
        return {"deletedCount": deleted}

    def _upsert(self, args: dict[str, Any], update: dict[str, Any], replace: bool) -> dict[str, Any]:
        filter = args.get("query", args.get("filter", {}))
        new_doc = {k: v for k, v in filter.items() if not k.startswith("$")}
        if replace:
            new_doc.update(update)
        else:
            self._apply_update(new_doc, update)
        new_doc.setdefault("_id", f"upserted-{next(self._upsert_ids)}")
        self._collection(args).append(new_doc)
        return new_doc

    def _update(self, args: dict[str, Any], many: bool) -> dict[str, Any]:
        self._check_update(args["update"])
        matched = 0
        modified = 0
        for doc in self._collection(args):
            if self._matches(doc, args["query"]):
                matched += 1
                if self._apply_update(doc, args["update"]):
                    modified += 1
                if not many:
                    break

        result: dict[str, Any] = {"matchedCount": matched, "modifiedCount": modified}
        if matched == 0 and args.get("upsert"):
            result["upsertedId"] = self._upsert(args, args["update"], replace=False)["_id"]
        return result

    def _updateOne(self, args: dict[str, Any]) -> dict[str, Any]:
        return self._update(args, many=False)

    def _updateMany(self, args: dict[str, Any]) -> dict[str, Any]:
        return self._update(args, many=True)

    def _find_and_modify(self, args: dict[str, Any], mode: str) -> dict[str, Any] | None:
        data = self._collection(args)
        matches = self._sort(
            [doc for doc in data if self._matches(doc, args["filter"])], args.get("sort")
        )
        if not matches:
            if mode != "delete" and args.get("upsert"):
                new_doc = self._upsert(args, args["update"], replace=(mode == "replace"))
                if args.get("returnNewDocument"):
                    return self._project(copy.deepcopy(new_doc), args.get("projection"))
            return None

        doc = matches[0]
        before = copy.deepcopy(doc)
        if mode == "delete":
            data.remove(doc)
            return self._project(before, args.get("projection"))
        if mode == "replace":
            replacement = args["update"]
            if any(k.startswith("$") for k in replacement):
                raise ServiceError("replacement document must not contain update operators")
            doc.clear()
            doc.update(copy.deepcopy(replacement))
            doc.setdefault("_id", before["_id"])
        else:
            self._check_update(args["update"])
            self._apply_update(doc, args["update"])
        after = copy.deepcopy(doc)
        return self._project(after if args.get("returnNewDocument") else before, args.get("projection"))

    def _findOneAndUpdate(self, args: dict[str, Any]) -> dict[str, Any] | None:
        return self._find_and_modify(args, "update")

    def _findOneAndReplace(self, args: dict[str, Any]) -> dict[str, Any] | None:
        return self._find_and_modify(args, "replace")

    def _findOneAndDelete(self, args: dict[str, Any]) -> dict[str, Any] | None:
        return self._find_and_modify(args, "delete")

    def _check_update(self, update: dict[str, Any]) -> None:
        if not update or not all(k.startswith("$") for k in update):
            raise ServiceError("update document must contain only update operators", code=9)

    def _sort(self, results: list[dict[str, Any]], sort: dict[str, int] | None) -> list[dict[str, Any]]:
        if sort:
            for field, direction in reversed(list(sort.items())):
                results = sorted(results, key=lambda x: x.get(field, ""), reverse=(direction == -1))
        return results

    def _matches(self, doc: dict[str, Any], filter: dict[str, Any]) -> bool:
        """Check if document matches filter."""
        if not filter:
            return True

        for key, value in filter.items():
            if key.startswith("$"):
                if key == "$and":
                    if not all(self._matches(doc, f) for f in value):
                        return False
                elif key == "$or":
                    if not any(self._matches(doc, f) for f in value):
                        return False
                else:
                    raise ServiceError(f"unknown top level operator: {key}", code=2)
                continue

            doc_value = doc.get(key)

            if isinstance(value, dict) and value and all(k.startswith("$") for k in value):
                for op, op_value in value.items():
                    if op == "$eq":
                        if doc_value != op_value:
                            return False
                    elif op == "$ne":
                        if doc_value == op_value:
                            return False
                    elif op == "$gt":
                        if doc_value is None or doc_value <= op_value:
                            return False
                    elif op == "$gte":
                        if doc_value is None or doc_value < op_value:
                            return False
                    elif op == "$lt":
                        if doc_value is None or doc_value >= op_value:
                            return False
                    elif op == "$lte":
                        if doc_value is None or doc_value > op_value:
                            return False
                    elif op == "$in":
                        if doc_value not in op_value:
                            return False
                    elif op == "$nin":
                        if doc_value in op_value:
                            return False
                    elif op == "$exists":
                        if bool(op_value) != (key in doc):
                            return False
                    else:
                        raise ServiceError(f"unknown operator: {op}", code=2)
            elif doc_value != value:
                return False

        return True

    def _apply_update(self, doc: dict[str, Any], update: dict[str, Any]) -> bool:
        """Apply update operators to document."""
        modified = False

        for op, fields in update.items():
            if op == "$set":
                for key, value in fields.items():
                    if doc.get(key) != value:
                        doc[key] = value
                        modified = True
            elif op == "$unset":
                for key in fields:
                    if key in doc:
                        del doc[key]
                        modified = True
            elif op == "$inc":
                for key, value in fields.items():
                    doc[key] = doc.get(key, 0) + value
                    modified = True
            elif op == "$push":
                for key, value in fields.items():
                    doc.setdefault(key, []).append(value)
                    modified = True
            else:
                raise ServiceError(f"unknown update operator: {op}", code=9)

        return modified

    def _project(self, doc: dict[str, Any], projection: dict[str, int] | None) -> dict[str, Any]:
        """Apply projection to document."""
        if not projection:
            return doc

        include_mode = any(v for k, v in projection.items() if k != "_id")

        if include_mode:
            result = {key: doc[key] for key, include in projection.items() if include and key in doc}
            if "_id" in doc and projection.get("_id", 1) != 0:
                result["_id"] = doc["_id"]
            return result
        return {k: v for k, v in doc.items() if projection.get(k, 1) != 0}


@pytest.fixture
def channel() -> MockCommandChannel:
    """Create an in-memory command channel."""
    return MockCommandChannel()


@pytest.fixture
def client(channel: MockCommandChannel) -> RemoteMongoClient:
    """Create a client connected to the in-memory channel."""
    return RemoteMongoClient.from_channel(channel, "https://test.mongo.do")


@pytest.fixture
def database(client):
    """Create a database."""
    return client["testdb"]


@pytest.fixture
def collection(database):
    """Create a collection."""
    return database["testcollection"]


@pytest.fixture
def mock_rpc() -> MagicMock:
    """Create a mock rpc-do client."""
    rpc = MagicMock()
    rpc.close = AsyncMock()
    return rpc


@pytest.fixture
def mock_connect(mock_rpc: MagicMock, monkeypatch: pytest.MonkeyPatch):
    """Mock the rpc_do.connect function."""
    mock_rpc_do = MagicMock()
    mock_rpc_do.connect = AsyncMock(return_value=mock_rpc)

    monkeypatch.setitem(sys.modules, "rpc_do", mock_rpc_do)

    return mock_rpc_do
