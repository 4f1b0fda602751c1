"""
Codec - conversion between documents and application values.

A collection encodes every value it sends through its codec and decodes
every document it receives. Codecs are swapped per collection with
RemoteMongoCollection.with_collection_type().
"""

from __future__ import annotations

import dataclasses
from typing import Any, Generic, Mapping, Protocol, TypeVar, runtime_checkable

T = TypeVar("T")

__all__ = ["Codec", "DocumentCodec", "ClassCodec", "check_codec"]


@runtime_checkable
class Codec(Protocol[T]):
    """Converts values of type T to and from documents."""

    def encode(self, value: T) -> dict[str, Any]:
        ...

    def decode(self, document: Mapping[str, Any]) -> T:
        ...


class DocumentCodec:
    """
    Identity codec for plain dict documents.

    This is the default codec of a collection.
    """

    def encode(self, value: Mapping[str, Any]) -> dict[str, Any]:
        return dict(value)

    def decode(self, document: Mapping[str, Any]) -> dict[str, Any]:
        return dict(document)

    def __repr__(self) -> str:
        return "DocumentCodec()"


class ClassCodec(Generic[T]):
    """
    Codec building instances of a class from documents.

    Decoding calls ``cls(**document)``. Encoding uses
    ``dataclasses.asdict`` for dataclass instances and ``vars`` for
    anything else.

    Example:
        @dataclass
        class User:
            _id: str
            name: str

        users = db.collection("users", ClassCodec(User))
        user = await users.find_one({"name": "Alice"})  # -> User
    """

    __slots__ = ("_cls",)

    def __init__(self, cls: type[T]) -> None:
        self._cls = cls

    @property
    def cls(self) -> type[T]:
        return self._cls

    def encode(self, value: T) -> dict[str, Any]:
        if dataclasses.is_dataclass(value) and not isinstance(value, type):
            return dataclasses.asdict(value)
        return dict(vars(value))

    def decode(self, document: Mapping[str, Any]) -> T:
        return self._cls(**document)

    def __repr__(self) -> str:
        return f"ClassCodec({self._cls.__name__})"


def check_codec(codec: Any) -> None:
    """Raise TypeError if codec does not provide encode and decode."""
    if not isinstance(codec, Codec):
        raise TypeError(
            f"codec must provide encode() and decode(), got {type(codec).__name__}"
        )
