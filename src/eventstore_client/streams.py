"""Stream operations.

Appends, reads, subscriptions, deletes and tombstones against individual
streams and the $all stream. Each class is one operation in one call shape;
EventStoreClient wires them to a node selector.
"""

from __future__ import annotations

import json
import logging
import re
from collections.abc import Iterable, Sequence
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from .cursor import (
    UINT64_MAX,
    Cursor,
    Direction,
    Position,
    PositionPointer,
    ReadStart,
    RevisionPointer,
    StreamIdentifier,
    resolve_position_cursor,
    resolve_revision_cursor,
)
from .errors import (
    DecodeError,
    RequestBuildError,
    WrongExpectedVersionError,
)
from .events import (
    AppendResult,
    CaughtUp,
    Checkpoint,
    DeleteResult,
    EventData,
    EventEnvelope,
    FellBehind,
    FirstStreamPosition,
    LastAllStreamPosition,
    LastStreamPosition,
    MultiAppendResult,
    ReadContent,
    SubscriptionConfirmation,
)
from .protocol.messages import MessageKind, RawMessage, Request
from .streaming import StreamingBridge
from .subscription import Subscription
from .translate import ReadContentTranslator, ResponseTranslator
from .usecase import StreamUnary, UnaryStream, UnaryUnary

logger = logging.getLogger(__name__)

STREAMS_SERVICE = "event_store.client.streams.Streams"
STREAMS_V2_SERVICE = "kurrentdb.protocol.v2.StreamsService"

METADATA_EVENT_TYPE = "$metadata"

# Excludes system events ($-prefixed types) from $all subscriptions.
EXCLUDE_SYSTEM_EVENTS_REGEX = r"^[^\$].*"


class StreamState(str, Enum):
    """Expected stream state for optimistic concurrency."""

    ANY = "any"
    NO_STREAM = "no_stream"
    STREAM_EXISTS = "stream_exists"


ExpectedRevision = int | StreamState


def expected_revision_to_wire(expected: ExpectedRevision) -> dict[str, Any]:
    if isinstance(expected, StreamState):
        return {expected.value: {}}
    if isinstance(expected, bool) or not isinstance(expected, int):
        raise RequestBuildError(f"Invalid expected revision: {expected!r}", field="expected_revision")
    if not 0 <= expected <= UINT64_MAX:
        raise RequestBuildError(
            f"Expected revision out of range: {expected}", field="expected_revision"
        )
    return {"revision": expected}


def _expected_label(expected: ExpectedRevision) -> int | str:
    return expected.value if isinstance(expected, StreamState) else expected


def _position_or_none(data: dict[str, Any] | None) -> Position | None:
    if not data:
        return None
    try:
        return Position.from_wire(data)
    except (KeyError, TypeError, ValueError) as e:
        raise DecodeError(f"Malformed position: {e}", {"payload": repr(data)}) from e


def _check_limit(limit: int | None) -> int:
    if limit is None:
        return UINT64_MAX
    if isinstance(limit, bool) or not isinstance(limit, int) or not 0 <= limit <= UINT64_MAX:
        raise RequestBuildError(f"Invalid read limit: {limit!r}", field="limit")
    return limit


class FilterTarget(str, Enum):
    STREAM_NAME = "stream_identifier"
    EVENT_TYPE = "event_type"


@dataclass(frozen=True)
class SubscriptionFilter:
    """Server-side filter for reads and subscriptions on $all.

    Match either a regular expression or a set of prefixes, on stream names
    or on event types.
    """

    target: FilterTarget = FilterTarget.EVENT_TYPE
    regex: str | None = None
    prefixes: tuple[str, ...] = ()
    max_window: int | None = None
    checkpoint_interval_multiplier: int = 1

    @classmethod
    def on_event_type(
        cls, regex: str | None = None, prefixes: Iterable[str] = (), **kwargs: Any
    ) -> SubscriptionFilter:
        return cls(FilterTarget.EVENT_TYPE, regex, tuple(prefixes), **kwargs)

    @classmethod
    def on_stream_name(
        cls, regex: str | None = None, prefixes: Iterable[str] = (), **kwargs: Any
    ) -> SubscriptionFilter:
        return cls(FilterTarget.STREAM_NAME, regex, tuple(prefixes), **kwargs)

    @classmethod
    def exclude_system_events(cls) -> SubscriptionFilter:
        return cls.on_event_type(regex=EXCLUDE_SYSTEM_EVENTS_REGEX)

    def to_wire(self) -> dict[str, Any]:
        if (self.regex is None) == (not self.prefixes):
            raise RequestBuildError("A filter needs either a regex or prefixes", field="filter")
        expression: dict[str, Any] = {}
        if self.regex is not None:
            try:
                re.compile(self.regex)
            except re.error as e:
                raise RequestBuildError(f"Invalid filter regex: {e}", field="filter") from e
            expression["regex"] = self.regex
        else:
            expression["prefix"] = list(self.prefixes)
        window = {"max": self.max_window} if self.max_window is not None else {"count": {}}
        return {
            self.target.value: expression,
            **window,
            "checkpoint_interval_multiplier": self.checkpoint_interval_multiplier,
        }


def read_options(
    start: ReadStart,
    *,
    stream: StreamIdentifier | None = None,
    resolve_links: bool = False,
    limit: int | None = None,
    subscription: bool = False,
    filter: SubscriptionFilter | None = None,
) -> dict[str, Any]:
    """Payload of a read request; `stream=None` reads $all."""
    options: dict[str, Any] = {
        "read_direction": start.direction.value,
        "resolve_links": resolve_links,
        "uuid_option": {"string": {}},
    }
    if stream is not None:
        options["stream"] = {"stream_identifier": stream.to_wire(), **start.to_wire()}
    else:
        options["all"] = start.to_wire()
    if subscription:
        options["subscription"] = {}
    else:
        options["count"] = _check_limit(limit)
    if filter is not None:
        options["filter"] = filter.to_wire()
    else:
        options["no_filter"] = {}
    return {"options": options}


def _resolve(resolver: Any, cursor: Any, direction: Direction | None, live: bool) -> ReadStart:
    try:
        return resolver(cursor, direction, live=live)
    except TypeError as e:
        raise RequestBuildError(str(e), field="cursor") from e


# =============================================================================
# Append
# =============================================================================


class AppendTranslator(ResponseTranslator[AppendResult]):
    def __init__(self, stream_name: str, expected: ExpectedRevision):
        super().__init__(stream_name=stream_name)
        self.expected = expected

    def translate_message(self, message: RawMessage) -> AppendResult:
        data = message.data
        match message.kind:
            case MessageKind.SUCCESS.value:
                return AppendResult(
                    stream_name=self.stream_name or "",
                    next_expected_revision=data.get("current_revision"),
                    position=_position_or_none(data.get("position")),
                )
            case MessageKind.WRONG_EXPECTED_VERSION.value:
                raise WrongExpectedVersionError(
                    self.stream_name,
                    expected=_expected_label(self.expected),
                    actual=data.get("current_revision"),
                )
            case _:
                raise self.unexpected(message)


class Append(StreamUnary[AppendResult]):
    """Append events to one stream.

    Sends an options message followed by one message per event.
    """

    name = "Streams.Append"
    method = f"/{STREAMS_SERVICE}/Append"
    requires_leader = True

    def __init__(
        self,
        stream: str | StreamIdentifier,
        events: Iterable[EventData],
        expected_revision: ExpectedRevision = StreamState.ANY,
    ):
        self.stream = StreamIdentifier.of(stream)
        self.events = list(events)
        self.expected_revision = expected_revision

    def request_messages(self) -> list[Request]:
        options = Request.create(
            "append.options",
            {
                "stream_identifier": self.stream.to_wire(),
                **expected_revision_to_wire(self.expected_revision),
            },
        )
        return [options, *(Request.create("append.proposed", e.to_wire()) for e in self.events)]

    def translator(self) -> AppendTranslator:
        return AppendTranslator(self.stream.name, self.expected_revision)


@dataclass
class StreamAppend:
    """Events for one stream within a multi-stream append."""

    stream: str | StreamIdentifier
    events: Sequence[EventData] = field(default_factory=list)
    expected_revision: ExpectedRevision = StreamState.ANY


class MultiAppendTranslator(ResponseTranslator[MultiAppendResult]):
    def translate_message(self, message: RawMessage) -> MultiAppendResult:
        if message.kind != MessageKind.SUCCESS.value:
            raise self.unexpected(message)
        try:
            results = [
                AppendResult(
                    stream_name=output["stream"],
                    next_expected_revision=output.get("stream_revision"),
                    position=Position.at(int(output["position"]))
                    if output.get("position") is not None
                    else None,
                )
                for output in message.data.get("output", [])
            ]
        except (KeyError, TypeError, ValueError) as e:
            raise DecodeError(f"Malformed append session response: {e}") from e
        return MultiAppendResult(results=results, position=message.data.get("position"))


class MultiStreamAppend(StreamUnary[MultiAppendResult]):
    """Append to several streams atomically; one request per stream."""

    name = "Streams.AppendSession"
    method = f"/{STREAMS_V2_SERVICE}/AppendSession"
    requires_leader = True

    def __init__(self, requests: Iterable[StreamAppend]):
        self.requests = list(requests)

    def request_messages(self) -> list[Request]:
        messages = []
        for append in self.requests:
            stream = StreamIdentifier.of(append.stream)
            stream.encode()
            records = [
                {
                    "record_id": str(event.id),
                    "data": event.data,
                    "properties": _properties(event),
                    "schema": {
                        "name": event.event_type,
                        "format": "json" if event.content_type == "application/json" else "bytes",
                    },
                }
                for event in append.events
            ]
            payload: dict[str, Any] = {"stream": stream.name, "records": records}
            if append.expected_revision != StreamState.ANY:
                payload["expected_revision"] = expected_revision_to_wire(append.expected_revision)
            messages.append(Request.create("append.session", payload))
        return messages

    def translator(self) -> MultiAppendTranslator:
        return MultiAppendTranslator()


def _properties(event: EventData) -> dict[str, Any]:
    if not event.custom_metadata:
        return {}
    try:
        properties = json.loads(event.custom_metadata)
    except ValueError as e:
        raise RequestBuildError(
            f"Custom metadata of event {event.id} is not a JSON object", field="custom_metadata"
        ) from e
    if not isinstance(properties, dict):
        raise RequestBuildError(
            f"Custom metadata of event {event.id} is not a JSON object", field="custom_metadata"
        )
    return properties


# =============================================================================
# Read
# =============================================================================


class ReadResponse:
    """Events of a bounded read, in server order.

    Stream positions reported by the server are recorded, not yielded. The
    read stops after `limit` events even if the server sends more.
    """

    def __init__(self, bridge: StreamingBridge[ReadContent], limit: int | None = None):
        self._bridge = bridge
        self._limit = limit
        self._count = 0
        self.first_stream_revision: int | None = None
        self.last_stream_revision: int | None = None
        self.last_all_stream_position: Position | None = None
        self.last_checkpoint: Position | None = None

    @property
    def count(self) -> int:
        """Events yielded so far."""
        return self._count

    def __aiter__(self) -> ReadResponse:
        return self

    async def __anext__(self) -> EventEnvelope:
        while True:
            if self._limit is not None and self._count >= self._limit:
                self._bridge.cancel()
                raise StopAsyncIteration
            content = await self._bridge.__anext__()
            match content:
                case EventEnvelope():
                    self._count += 1
                    return content
                case FirstStreamPosition():
                    self.first_stream_revision = content.revision
                case LastStreamPosition():
                    self.last_stream_revision = content.revision
                case LastAllStreamPosition():
                    self.last_all_stream_position = content.position
                case Checkpoint():
                    self.last_checkpoint = content.position
                case CaughtUp() | FellBehind():
                    pass
                case SubscriptionConfirmation():
                    self._bridge.cancel()
                    raise DecodeError("Unexpected subscription confirmation in a read")
                case _:
                    self._bridge.cancel()
                    raise DecodeError(f"Unexpected read content: {type(content).__name__}")

    async def collect(self) -> list[EventEnvelope]:
        """Read to the end and return every event."""
        return [event async for event in self]

    def cancel(self) -> None:
        self._bridge.cancel()

    async def aclose(self) -> None:
        await self._bridge.aclose()

    async def __aenter__(self) -> ReadResponse:
        return self

    async def __aexit__(self, *args: Any) -> None:
        await self.aclose()


class Read(UnaryStream[ReadResponse]):
    """Read events from one stream."""

    name = "Streams.Read"
    method = f"/{STREAMS_SERVICE}/Read"

    def __init__(
        self,
        stream: str | StreamIdentifier,
        cursor: Cursor[RevisionPointer] | None = None,
        direction: Direction | None = None,
        limit: int | None = None,
        resolve_links: bool = False,
    ):
        self.stream = StreamIdentifier.of(stream)
        self.cursor = cursor or Cursor.start()
        self.direction = direction
        self.limit = limit
        self.resolve_links = resolve_links

    def request_message(self) -> Request:
        start = _resolve(resolve_revision_cursor, self.cursor, self.direction, False)
        return Request.create(
            "read",
            read_options(
                start, stream=self.stream, resolve_links=self.resolve_links, limit=self.limit
            ),
        )

    def translator(self) -> ReadContentTranslator:
        return ReadContentTranslator(stream_name=self.stream.name)

    async def responses(self, bridge: StreamingBridge[Any]) -> ReadResponse:
        return ReadResponse(bridge, self.limit)


class ReadAll(UnaryStream[ReadResponse]):
    """Read events from $all."""

    name = "Streams.ReadAll"
    method = f"/{STREAMS_SERVICE}/Read"

    def __init__(
        self,
        cursor: Cursor[PositionPointer] | None = None,
        direction: Direction | None = None,
        limit: int | None = None,
        resolve_links: bool = False,
        filter: SubscriptionFilter | None = None,
    ):
        self.cursor = cursor or Cursor.start()
        self.direction = direction
        self.limit = limit
        self.resolve_links = resolve_links
        self.filter = filter

    def request_message(self) -> Request:
        start = _resolve(resolve_position_cursor, self.cursor, self.direction, False)
        return Request.create(
            "read",
            read_options(
                start, resolve_links=self.resolve_links, limit=self.limit, filter=self.filter
            ),
        )

    def translator(self) -> ReadContentTranslator:
        return ReadContentTranslator(stream_name="$all")

    async def responses(self, bridge: StreamingBridge[Any]) -> ReadResponse:
        return ReadResponse(bridge, self.limit)


# =============================================================================
# Subscribe
# =============================================================================


class Subscribe(UnaryStream[Subscription]):
    """Volatile subscription to one stream. Defaults to new events only."""

    name = "Streams.Subscribe"
    method = f"/{STREAMS_SERVICE}/Read"
    bounded = False

    def __init__(
        self,
        stream: str | StreamIdentifier,
        cursor: Cursor[RevisionPointer] | None = None,
        resolve_links: bool = False,
    ):
        self.stream = StreamIdentifier.of(stream)
        self.cursor = cursor or Cursor.end()
        self.resolve_links = resolve_links

    def request_message(self) -> Request:
        start = _resolve(resolve_revision_cursor, self.cursor, None, True)
        return Request.create(
            "read",
            read_options(
                start, stream=self.stream, resolve_links=self.resolve_links, subscription=True
            ),
        )

    def translator(self) -> ReadContentTranslator:
        return ReadContentTranslator(stream_name=self.stream.name)

    async def responses(self, bridge: StreamingBridge[Any]) -> Subscription:
        return await Subscription.open(bridge)


class SubscribeAll(UnaryStream[Subscription]):
    """Volatile subscription to $all, optionally filtered."""

    name = "Streams.SubscribeAll"
    method = f"/{STREAMS_SERVICE}/Read"
    bounded = False

    def __init__(
        self,
        cursor: Cursor[PositionPointer] | None = None,
        resolve_links: bool = False,
        filter: SubscriptionFilter | None = None,
        include_checkpoints: bool = False,
    ):
        self.cursor = cursor or Cursor.end()
        self.resolve_links = resolve_links
        self.filter = filter
        self.include_checkpoints = include_checkpoints

    def request_message(self) -> Request:
        start = _resolve(resolve_position_cursor, self.cursor, None, True)
        return Request.create(
            "read",
            read_options(
                start, resolve_links=self.resolve_links, subscription=True, filter=self.filter
            ),
        )

    def translator(self) -> ReadContentTranslator:
        return ReadContentTranslator(stream_name="$all")

    async def responses(self, bridge: StreamingBridge[Any]) -> Subscription:
        return await Subscription.open(bridge, include_checkpoints=self.include_checkpoints)


# =============================================================================
# Delete / Tombstone
# =============================================================================


class DeleteTranslator(ResponseTranslator[DeleteResult]):
    def translate_message(self, message: RawMessage) -> DeleteResult:
        if message.kind not in (
            MessageKind.DELETED.value,
            MessageKind.SUCCESS.value,
            MessageKind.EMPTY.value,
        ):
            raise self.unexpected(message)
        return DeleteResult(position=_position_or_none(message.data.get("position")))


class Delete(UnaryUnary[DeleteResult]):
    """Soft-delete a stream. It can be written to again afterwards."""

    name = "Streams.Delete"
    method = f"/{STREAMS_SERVICE}/Delete"
    requires_leader = True

    def __init__(
        self,
        stream: str | StreamIdentifier,
        expected_revision: ExpectedRevision = StreamState.ANY,
    ):
        self.stream = StreamIdentifier.of(stream)
        self.expected_revision = expected_revision

    def request_message(self) -> Request:
        return Request.create(
            "delete",
            {
                "options": {
                    "stream_identifier": self.stream.to_wire(),
                    **expected_revision_to_wire(self.expected_revision),
                }
            },
        )

    def translator(self) -> DeleteTranslator:
        return DeleteTranslator(stream_name=self.stream.name)


class Tombstone(Delete):
    """Permanently delete a stream. It can never be recreated."""

    name = "Streams.Tombstone"
    method = f"/{STREAMS_SERVICE}/Tombstone"

    def request_message(self) -> Request:
        request = super().request_message()
        return Request.create("tombstone", request.payload, request_id=request.id)
