"""
ChangeStream - live change notifications for a remote collection.

Provides the change event types, the watch targets accepted by
RemoteMongoCollection.watch(), and ChangeStream, the subscription that
decodes raw events from an EventSource one at a time, in arrival order.
"""

from __future__ import annotations

import enum
import logging
from dataclasses import dataclass, field
from types import TracebackType
from typing import (
    TYPE_CHECKING,
    Any,
    AsyncIterator,
    Callable,
    ClassVar,
    Generic,
    Mapping,
    TypeVar,
    Union,
)

from .types import MongoError, ServiceError, TransportError

if TYPE_CHECKING:
    from .channel import EventSource
    from .codec import Codec

T = TypeVar("T")
E = TypeVar("E")

__all__ = [
    "AllDocuments",
    "ChangeEvent",
    "ChangeStream",
    "CompactChangeEvent",
    "DeleteEvent",
    "Ids",
    "InsertEvent",
    "MatchFilter",
    "Namespace",
    "OperationType",
    "OtherEvent",
    "ReplaceEvent",
    "StreamState",
    "UpdateDescription",
    "UpdateEvent",
    "WatchTarget",
    "decode_change_event",
    "decode_compact_change_event",
    "watch_target",
]

logger = logging.getLogger(__name__)


class OperationType(str, enum.Enum):
    """Kind of change a change event reports."""

    INSERT = "insert"
    UPDATE = "update"
    REPLACE = "replace"
    DELETE = "delete"
    OTHER = "other"

    @classmethod
    def from_remote(cls, value: Any) -> OperationType:
        """Map a remote operation type (full name or compact code)."""
        if isinstance(value, str):
            value = _COMPACT_CODES.get(value, value)
            try:
                return cls(value)
            except ValueError:
                pass
        return cls.OTHER


_COMPACT_CODES = {"i": "insert", "u": "update", "r": "replace", "d": "delete"}


@dataclass(frozen=True)
class Namespace:
    """Database and collection a change event happened in."""

    db: str
    coll: str

    def __str__(self) -> str:
        return f"{self.db}.{self.coll}"


@dataclass(frozen=True)
class UpdateDescription:
    """
    Fields changed by an update.

    Attributes:
        updated_fields: Mapping of dotted field path to new value.
        removed_fields: Dotted paths of fields that were removed.
    """

    updated_fields: dict[str, Any] = field(default_factory=dict)
    removed_fields: tuple[str, ...] = ()


@dataclass(frozen=True)
class ChangeEvent(Generic[T]):
    """
    A change to a watched document.

    ChangeEvent is never instantiated directly; the concrete event is one
    of InsertEvent, UpdateEvent, ReplaceEvent, DeleteEvent or OtherEvent,
    and ``operation_type`` tells them apart.

    Attributes:
        id: Resume token of the event.
        namespace: Where the change happened.
        document_key: Identifier of the changed document, e.g. {"_id": ...}.
        write_pending: Whether the write is not yet committed remotely.
    """

    operation_type: ClassVar[OperationType]

    id: Any
    namespace: Namespace | None
    document_key: dict[str, Any]
    write_pending: bool = False


@dataclass(frozen=True)
class InsertEvent(ChangeEvent[T]):
    operation_type: ClassVar[OperationType] = OperationType.INSERT

    full_document: T | None = None


@dataclass(frozen=True)
class UpdateEvent(ChangeEvent[T]):
    """An update; full_document is the document after the update, if sent."""

    operation_type: ClassVar[OperationType] = OperationType.UPDATE

    full_document: T | None = None
    update_description: UpdateDescription = field(default_factory=UpdateDescription)


@dataclass(frozen=True)
class ReplaceEvent(ChangeEvent[T]):
    operation_type: ClassVar[OperationType] = OperationType.REPLACE

    full_document: T | None = None


@dataclass(frozen=True)
class DeleteEvent(ChangeEvent[T]):
    """A delete. Deleted documents have no body to report."""

    operation_type: ClassVar[OperationType] = OperationType.DELETE


@dataclass(frozen=True)
class OtherEvent(ChangeEvent[T]):
    """Any other operation, e.g. drop or invalidate."""

    operation_type: ClassVar[OperationType] = OperationType.OTHER

    operation_name: str = ""


@dataclass(frozen=True)
class CompactChangeEvent(Generic[T]):
    """
    Bandwidth-reduced change event.

    Only available when watching explicit document ids. It never carries
    the document body, only its identifier and change metadata.

    Attributes:
        operation_type: Kind of change.
        document_key: Identifier of the changed document.
        update_description: Changed and removed fields, for updates.
        document_version: Version metadata of the document, if sent.
        document_hash: Hash of the document after the change, if sent.
        write_pending: Whether the write is not yet committed remotely.
    """

    operation_type: OperationType
    document_key: dict[str, Any]
    update_description: UpdateDescription | None = None
    document_version: Any = None
    document_hash: int | None = None
    write_pending: bool = False


@dataclass(frozen=True)
class AllDocuments:
    """Watch every document in the collection."""


@dataclass(frozen=True)
class Ids:
    """Watch only the documents with these _ids."""

    ids: tuple[Any, ...]

    def __post_init__(self) -> None:
        if not self.ids:
            raise ValueError("at least one document id is required")


@dataclass(frozen=True)
class MatchFilter:
    """Watch the change events matching a $match expression."""

    filter: Mapping[str, Any]


WatchTarget = Union[AllDocuments, Ids, MatchFilter]


def watch_target(arg: Any = None) -> WatchTarget:
    """
    Interpret the argument of watch().

    Args:
        arg: None for the whole collection, a list, tuple or set of ids,
            a mapping holding a $match expression, or a WatchTarget.

    Raises:
        TypeError: If arg is none of the above.
        ValueError: If an empty id list is given.
    """
    if arg is None:
        return AllDocuments()
    if isinstance(arg, (AllDocuments, Ids, MatchFilter)):
        return arg
    if isinstance(arg, Mapping):
        return MatchFilter(dict(arg))
    if isinstance(arg, (list, tuple, set, frozenset)):
        return Ids(tuple(arg))
    raise TypeError(
        f"watch() takes a list of ids or a filter document, got {type(arg).__name__}"
    )


def _namespace(raw: Any) -> Namespace | None:
    if isinstance(raw, Mapping) and "db" in raw and "coll" in raw:
        return Namespace(db=raw["db"], coll=raw["coll"])
    return None


def _update_description(
    raw: Any, updated_key: str, removed_key: str
) -> UpdateDescription | None:
    if not isinstance(raw, Mapping):
        return None
    return UpdateDescription(
        updated_fields=dict(raw.get(updated_key) or {}),
        removed_fields=tuple(raw.get(removed_key) or ()),
    )


def decode_change_event(raw: Mapping[str, Any], codec: Codec[T]) -> ChangeEvent[T]:
    """
    Decode a raw change event document.

    The full document, when present on inserts, updates and replaces, is
    decoded through ``codec``. Delete events never carry a document.
    """
    operation = OperationType.from_remote(raw.get("operationType"))
    common: dict[str, Any] = {
        "id": raw.get("_id"),
        "namespace": _namespace(raw.get("ns")),
        "document_key": dict(raw.get("documentKey") or {}),
        "write_pending": bool(raw.get("writePending", False)),
    }

    if operation is OperationType.DELETE:
        return DeleteEvent(**common)
    if operation is OperationType.OTHER:
        return OtherEvent(operation_name=str(raw.get("operationType", "")), **common)

    full = raw.get("fullDocument")
    document = codec.decode(full) if full is not None else None

    if operation is OperationType.INSERT:
        return InsertEvent(full_document=document, **common)
    if operation is OperationType.REPLACE:
        return ReplaceEvent(full_document=document, **common)
    description = _update_description(
        raw.get("updateDescription"), "updatedFields", "removedFields"
    )
    return UpdateEvent(
        full_document=document,
        update_description=description or UpdateDescription(),
        **common,
    )


def decode_compact_change_event(raw: Mapping[str, Any]) -> CompactChangeEvent[Any]:
    """
    Decode a raw compact change event document.

    Compact events use short keys: ot, dk, ud (sf/rf), sdv, sdh and wp.
    Any document body in the raw event is ignored.
    """
    operation = OperationType.from_remote(raw.get("ot"))
    description = None
    if operation is OperationType.UPDATE:
        description = _update_description(raw.get("ud"), "sf", "rf")
    return CompactChangeEvent(
        operation_type=operation,
        document_key=dict(raw.get("dk") or {}),
        update_description=description,
        document_version=raw.get("sdv"),
        document_hash=raw.get("sdh"),
        write_pending=bool(raw.get("wp", False)),
    )


async def _close_events(events: Any) -> None:
    # an async generator suspended in a pending next() cannot be closed from
    # here; closing the source ends it instead
    if events is None or getattr(events, "ag_running", False):
        return
    aclose = getattr(events, "aclose", None)
    if aclose is not None:
        await aclose()


class StreamState(enum.Enum):
    """Lifecycle of a ChangeStream."""

    IDLE = "idle"
    OPENING = "opening"
    OPEN = "open"
    CLOSED = "closed"
    ERRORED = "errored"


class ChangeStream(Generic[E]):
    """
    Subscription to the change events of a remote collection.

    Returned already open by RemoteMongoCollection.watch() and
    watch_compact(). Events are delivered in arrival order as a lazy,
    possibly infinite async sequence. A transport failure ends the
    sequence with a TransportError; there is no automatic reconnection.

    Use it as an async context manager so the connection is released on
    every exit path:

        async with await collection.watch(["id-1"]) as stream:
            async for event in stream:
                print(event.operation_type, event.document_key)
    """

    __slots__ = ("_source", "_decode", "_namespace", "_state", "_events", "_resume_token")

    def __init__(
        self,
        source: EventSource,
        decode: Callable[[Mapping[str, Any]], E],
        namespace: str,
    ) -> None:
        """
        Initialize a change stream.

        Args:
            source: Unopened source of raw event documents.
            decode: Converts one raw event into the delivered event type.
            namespace: Namespace of the watched collection, for logging.
        """
        self._source = source
        self._decode = decode
        self._namespace = namespace
        self._state = StreamState.IDLE
        self._events: AsyncIterator[Mapping[str, Any]] | None = None
        self._resume_token: Any = None

    @property
    def state(self) -> StreamState:
        return self._state

    @property
    def is_open(self) -> bool:
        return self._state is StreamState.OPEN

    @property
    def resume_token(self) -> Any:
        """The _id of the last event delivered, if the service sent one."""
        return self._resume_token

    async def open(self) -> ChangeStream[E]:
        """
        Open the underlying event source.

        Returns:
            Self for chaining.

        Raises:
            ServiceError: If the service rejects the subscription.
            TransportError: If the connection cannot be established.
        """
        if self._state is not StreamState.IDLE:
            raise MongoError(f"Change stream is already {self._state.value}")

        self._state = StreamState.OPENING
        try:
            await self._source.open()
        except BaseException:
            self._state = StreamState.ERRORED
            await self._source.close()
            raise

        self._events = self._source.__aiter__()
        self._state = StreamState.OPEN
        logger.debug(f"change stream opened on '{self._namespace}'")
        return self

    async def _finish(self, state: StreamState) -> None:
        self._state = state
        events, self._events = self._events, None
        try:
            await _close_events(events)
        finally:
            await self._source.close()

    async def _fail(self, error: MongoError) -> MongoError:
        logger.warning(f"change stream on '{self._namespace}' failed: {error}")
        await self._finish(StreamState.ERRORED)
        return error

    async def next(self) -> E:
        """
        Wait for the next change event.

        Returns:
            The next decoded event.

        Raises:
            StopAsyncIteration: When the stream is closed or has ended.
            ServiceError: If the service reports an error on the stream.
            TransportError: If the connection fails or an event cannot be
                decoded. The stream is ERRORED afterwards.
        """
        if self._state is StreamState.IDLE or self._state is StreamState.OPENING:
            raise MongoError("Change stream is not open. Call open() first.")
        if self._state is not StreamState.OPEN or self._events is None:
            raise StopAsyncIteration

        events = self._events
        try:
            raw = await events.__anext__()
        except StopAsyncIteration:
            if self._state is StreamState.OPEN:
                logger.debug(f"change stream on '{self._namespace}' ended")
                await self._finish(StreamState.CLOSED)
            raise
        except Exception as e:
            if self._state is not StreamState.OPEN:
                # close() ran while this call was waiting
                raise StopAsyncIteration from None
            if isinstance(e, MongoError):
                raise await self._fail(e)
            error = TransportError(f"Change stream failed: {e}")
            raise await self._fail(error) from e

        if self._state is not StreamState.OPEN:
            await _close_events(events)
            raise StopAsyncIteration

        if isinstance(raw, Mapping) and raw.get("error"):
            error = raw["error"]
            message = raw.get("message") or (error if isinstance(error, str) else "stream error")
            raise await self._fail(ServiceError(message, code=raw.get("code")))

        try:
            event = self._decode(raw)
        except Exception as e:
            error = TransportError(f"Malformed change event: {e}")
            raise await self._fail(error) from e

        if isinstance(raw, Mapping) and "_id" in raw:
            self._resume_token = raw["_id"]
        return event

    def __aiter__(self) -> ChangeStream[E]:
        return self

    async def __anext__(self) -> E:
        return await self.next()

    async def close(self) -> None:
        """
        Close the stream and release its connection. Safe to call twice.

        A next() waiting in another task ends with StopAsyncIteration.
        """
        if self._state is StreamState.CLOSED or self._state is StreamState.ERRORED:
            return
        await self._finish(StreamState.CLOSED)
        logger.debug(f"change stream closed on '{self._namespace}'")

    async def __aenter__(self) -> ChangeStream[E]:
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc_val: BaseException | None,
        exc_tb: TracebackType | None,
    ) -> None:
        await self.close()

    def __repr__(self) -> str:
        return f"ChangeStream({self._namespace!r}, {self._state.value})"
