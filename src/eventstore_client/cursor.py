"""Positions, cursors and stream identifiers.

A cursor tells a read or subscription where to begin:

- start: the beginning of the stream (or of the global log)
- end: the tail; for live subscriptions, only events written from now on
- specified: an explicit revision or global position, carrying its own
  read direction

Resolving a cursor produces the wire start condition and the read direction
flag. Resolution is pure and never touches the network.
"""

from __future__ import annotations

import codecs
from dataclasses import dataclass
from enum import Enum
from typing import Any, Generic, TypeVar

from .errors import RequestBuildError

UINT64_MAX = 2**64 - 1


def _check_uint64(name: str, value: int) -> None:
    if isinstance(value, bool) or not isinstance(value, int):
        raise TypeError(f"{name} must be an int, got {type(value).__name__}")
    if not 0 <= value <= UINT64_MAX:
        raise ValueError(f"{name} must be an unsigned 64-bit integer, got {value}")


class Direction(str, Enum):
    """Read direction."""

    FORWARDS = "forwards"
    BACKWARDS = "backwards"


@dataclass(frozen=True, order=True)
class Position:
    """Location in the global event log.

    Ordered by commit offset first, prepare offset second.
    """

    commit: int
    prepare: int

    def __post_init__(self) -> None:
        _check_uint64("commit", self.commit)
        _check_uint64("prepare", self.prepare)

    @classmethod
    def at(cls, commit: int, prepare: int | None = None) -> Position:
        """Position whose prepare offset defaults to its commit offset."""
        return cls(commit=commit, prepare=commit if prepare is None else prepare)

    def to_wire(self) -> dict[str, int]:
        return {"commit_position": self.commit, "prepare_position": self.prepare}

    @classmethod
    def from_wire(cls, data: dict[str, Any]) -> Position:
        return cls(
            commit=int(data["commit_position"]),
            prepare=int(data.get("prepare_position", data["commit_position"])),
        )


@dataclass(frozen=True)
class RevisionPointer:
    """An explicit stream revision plus the direction to read from it."""

    revision: int
    direction: Direction = Direction.FORWARDS

    def __post_init__(self) -> None:
        _check_uint64("revision", self.revision)


@dataclass(frozen=True)
class PositionPointer:
    """An explicit global position plus the direction to read from it."""

    position: Position
    direction: Direction = Direction.FORWARDS


class CursorKind(str, Enum):
    START = "start"
    END = "end"
    SPECIFIED = "specified"


P = TypeVar("P", RevisionPointer, PositionPointer)


@dataclass(frozen=True)
class Cursor(Generic[P]):
    """Where a read or subscription begins.

    Build with Cursor.start(), Cursor.end() or Cursor.specified(pointer).
    """

    kind: CursorKind
    pointer: P | None = None

    def __post_init__(self) -> None:
        if (self.kind == CursorKind.SPECIFIED) != (self.pointer is not None):
            raise ValueError("A pointer is required for, and only for, specified cursors")

    @classmethod
    def start(cls) -> Cursor[Any]:
        return cls(CursorKind.START)

    @classmethod
    def end(cls) -> Cursor[Any]:
        return cls(CursorKind.END)

    @classmethod
    def specified(cls, pointer: P) -> Cursor[P]:
        return cls(CursorKind.SPECIFIED, pointer)

    @classmethod
    def revision(
        cls, revision: int, direction: Direction = Direction.FORWARDS
    ) -> Cursor[RevisionPointer]:
        return cls(CursorKind.SPECIFIED, RevisionPointer(revision, direction))

    @classmethod
    def position(
        cls, position: Position, direction: Direction = Direction.FORWARDS
    ) -> Cursor[PositionPointer]:
        return cls(CursorKind.SPECIFIED, PositionPointer(position, direction))


RevisionCursor = Cursor[RevisionPointer]
PositionCursor = Cursor[PositionPointer]


@dataclass(frozen=True)
class ReadStart:
    """A resolved cursor: the wire start condition plus read direction."""

    origin: CursorKind
    direction: Direction
    revision: int | None = None
    position: Position | None = None

    def to_wire(self) -> dict[str, Any]:
        """Start condition under its wire key, e.g. {"start": {}} or {"revision": 7}."""
        if self.origin == CursorKind.START:
            return {"start": {}}
        if self.origin == CursorKind.END:
            return {"end": {}}
        if self.revision is not None:
            return {"revision": self.revision}
        if self.position is not None:
            return {"position": self.position.to_wire()}
        raise RequestBuildError("Specified read start has no revision or position", "start")


def _resolve(
    cursor: Cursor[Any],
    pointer_type: type,
    direction: Direction | None,
    live: bool,
) -> tuple[CursorKind, Direction, Any]:
    if not isinstance(cursor, Cursor):
        raise TypeError(f"Expected a Cursor, got {type(cursor).__name__}")

    match cursor.kind:
        case CursorKind.START:
            if live:
                return cursor.kind, Direction.FORWARDS, None
            return cursor.kind, direction or Direction.FORWARDS, None
        case CursorKind.END:
            # Live subscriptions from the end only see events written after now.
            if live:
                return cursor.kind, Direction.FORWARDS, None
            return cursor.kind, direction or Direction.BACKWARDS, None
        case CursorKind.SPECIFIED:
            pointer = cursor.pointer
            if not isinstance(pointer, pointer_type):
                raise TypeError(
                    f"Expected a {pointer_type.__name__} cursor, got {type(pointer).__name__}"
                )
            if live:
                return cursor.kind, Direction.FORWARDS, pointer
            return cursor.kind, pointer.direction, pointer
        case _:
            raise TypeError(f"Unknown cursor kind: {cursor.kind!r}")


def resolve_revision_cursor(
    cursor: Cursor[RevisionPointer],
    direction: Direction | None = None,
    *,
    live: bool = False,
) -> ReadStart:
    """Resolve a stream-revision cursor.

    `direction` overrides the default for start/end cursors only; a specified
    cursor always reads in its pointer's direction. Live subscriptions always
    read forwards.
    """
    kind, resolved, pointer = _resolve(cursor, RevisionPointer, direction, live)
    return ReadStart(
        origin=kind,
        direction=resolved,
        revision=pointer.revision if pointer is not None else None,
    )


def resolve_position_cursor(
    cursor: Cursor[PositionPointer],
    direction: Direction | None = None,
    *,
    live: bool = False,
) -> ReadStart:
    """Resolve a global-position cursor. Same policy as resolve_revision_cursor."""
    kind, resolved, pointer = _resolve(cursor, PositionPointer, direction, live)
    return ReadStart(
        origin=kind,
        direction=resolved,
        position=pointer.position if pointer is not None else None,
    )


@dataclass(frozen=True)
class StreamIdentifier:
    """A stream name and the encoding used to put it on the wire.

    Equal and hashable by (name, encoding). Encoding failures raise
    RequestBuildError rather than truncating the name.
    """

    name: str
    encoding: str = "utf-8"

    @classmethod
    def of(cls, stream: str | StreamIdentifier) -> StreamIdentifier:
        if isinstance(stream, StreamIdentifier):
            return stream
        return cls(stream)

    def encode(self) -> bytes:
        try:
            codecs.lookup(self.encoding)
        except LookupError as e:
            raise RequestBuildError(
                f"Unknown encoding {self.encoding!r} for stream {self.name!r}",
                field="stream_identifier",
            ) from e
        try:
            return self.name.encode(self.encoding, errors="strict")
        except UnicodeEncodeError as e:
            raise RequestBuildError(
                f"Stream name {self.name!r} cannot be encoded as {self.encoding}",
                field="stream_identifier",
            ) from e

    def to_wire(self) -> dict[str, bytes]:
        return {"stream_name": self.encode()}

    @property
    def is_metadata_stream(self) -> bool:
        return self.name.startswith("$$")

    def metadata_stream(self) -> StreamIdentifier:
        """The `$$<name>` stream holding this stream's metadata."""
        return StreamIdentifier(f"$${self.name}", self.encoding)

    def __str__(self) -> str:
        return self.name
