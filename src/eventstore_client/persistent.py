"""Persistent subscription operations.

Persistent subscriptions are consumer groups tracked by the server. Groups
are created, updated, inspected and deleted with unary calls; consuming a
group opens a bidirectional call on which the client acks and nacks the
events it receives.

`stream=None` targets the $all stream throughout.
"""

from __future__ import annotations

import logging
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from .cursor import (
    Cursor,
    PositionPointer,
    RevisionPointer,
    StreamIdentifier,
    resolve_position_cursor,
    resolve_revision_cursor,
)
from .errors import DecodeError, RequestBuildError
from .events import _Discarded
from .protocol.messages import MessageKind, RawMessage, Request
from .streaming import DuplexBridge
from .streams import SubscriptionFilter
from .subscription import PersistentSubscription
from .translate import DiscardedTranslator, ReadContentTranslator, ResponseTranslator
from .usecase import StreamStream, UnaryUnary

logger = logging.getLogger(__name__)

PERSISTENT_SERVICE = "event_store.client.persistent_subscriptions.PersistentSubscriptions"

ALL_STREAM = "$all"


class ConsumerStrategy(str, Enum):
    """How the server spreads events across a group's consumers."""

    DISPATCH_TO_SINGLE = "DispatchToSingle"
    ROUND_ROBIN = "RoundRobin"
    PINNED = "Pinned"
    PINNED_BY_CORRELATION = "PinnedByCorrelation"


class PersistentSubscriptionSettings(BaseModel):
    """Settings of a consumer group."""

    resolve_links: bool = False
    extra_statistics: bool = False
    max_retry_count: int = 10
    min_checkpoint_count: int = 10
    max_checkpoint_count: int = 1000
    max_subscriber_count: int = 0  # 0 means unbounded
    live_buffer_size: int = 500
    read_batch_size: int = 20
    history_buffer_size: int = 500
    checkpoint_after_ms: int = 2000
    message_timeout_ms: int = 30000
    consumer_strategy: ConsumerStrategy = ConsumerStrategy.ROUND_ROBIN

    def to_wire(self, include_strategy: bool = True) -> dict[str, Any]:
        if self.min_checkpoint_count > self.max_checkpoint_count:
            raise RequestBuildError(
                "min_checkpoint_count cannot exceed max_checkpoint_count",
                field="min_checkpoint_count",
            )
        settings = self.model_dump(mode="json")
        if not include_strategy:
            settings.pop("consumer_strategy")
        return settings


def _source(stream: str | StreamIdentifier | None) -> dict[str, Any]:
    if stream is None:
        return {"all": {}}
    return {"stream_identifier": StreamIdentifier.of(stream).to_wire()}


def _source_name(stream: str | StreamIdentifier | None) -> str:
    return ALL_STREAM if stream is None else StreamIdentifier.of(stream).name


def _start(resolver: Any, cursor: Any) -> dict[str, Any]:
    try:
        return resolver(cursor, live=True).to_wire()
    except TypeError as e:
        raise RequestBuildError(str(e), field="cursor") from e


# =============================================================================
# Group management
# =============================================================================


class _GroupCommand(UnaryUnary[_Discarded]):
    requires_leader = True

    group_name: str
    stream: str | StreamIdentifier | None

    def translator(self) -> DiscardedTranslator:
        return DiscardedTranslator(
            stream_name=_source_name(self.stream), group_name=self.group_name
        )


class CreateToStream(_GroupCommand):
    """Create a consumer group on one stream."""

    name = "PersistentSubscriptions.CreateToStream"
    method = f"/{PERSISTENT_SERVICE}/Create"
    kind = "create"

    def __init__(
        self,
        stream: str | StreamIdentifier,
        group_name: str,
        settings: PersistentSubscriptionSettings | None = None,
        cursor: Cursor[RevisionPointer] | None = None,
    ):
        self.stream = StreamIdentifier.of(stream)
        self.group_name = group_name
        self.settings = settings or PersistentSubscriptionSettings()
        self.cursor = cursor or Cursor.end()

    def request_message(self) -> Request:
        return Request.create(
            self.kind,
            {
                "options": {
                    "stream": {
                        **_source(self.stream),
                        **_start(resolve_revision_cursor, self.cursor),
                    },
                    "group_name": self.group_name,
                    "settings": self.settings.to_wire(include_strategy=self.kind == "create"),
                }
            },
        )


class UpdateToStream(CreateToStream):
    """Change the settings of a consumer group on one stream."""

    name = "PersistentSubscriptions.UpdateToStream"
    method = f"/{PERSISTENT_SERVICE}/Update"
    kind = "update"


class CreateToAll(_GroupCommand):
    """Create a consumer group on $all, optionally filtered."""

    name = "PersistentSubscriptions.CreateToAll"
    method = f"/{PERSISTENT_SERVICE}/Create"
    kind = "create"

    def __init__(
        self,
        group_name: str,
        settings: PersistentSubscriptionSettings | None = None,
        cursor: Cursor[PositionPointer] | None = None,
        filter: SubscriptionFilter | None = None,
    ):
        self.stream = None
        self.group_name = group_name
        self.settings = settings or PersistentSubscriptionSettings()
        self.cursor = cursor or Cursor.end()
        self.filter = filter

    def request_message(self) -> Request:
        source: dict[str, Any] = _start(resolve_position_cursor, self.cursor)
        if self.filter is not None:
            source["filter"] = self.filter.to_wire()
        else:
            source["no_filter"] = {}
        return Request.create(
            self.kind,
            {
                "options": {
                    "all": source,
                    "group_name": self.group_name,
                    "settings": self.settings.to_wire(include_strategy=self.kind == "create"),
                }
            },
        )


class UpdateToAll(CreateToAll):
    """Change the settings of a consumer group on $all."""

    name = "PersistentSubscriptions.UpdateToAll"
    method = f"/{PERSISTENT_SERVICE}/Update"
    kind = "update"


class DeletePersistentSubscription(_GroupCommand):
    """Delete a consumer group."""

    name = "PersistentSubscriptions.Delete"
    method = f"/{PERSISTENT_SERVICE}/Delete"

    def __init__(self, group_name: str, stream: str | StreamIdentifier | None = None):
        self.group_name = group_name
        self.stream = stream

    def request_message(self) -> Request:
        return Request.create(
            "delete",
            {"options": {**_source(self.stream), "group_name": self.group_name}},
        )


class ReplayParked(_GroupCommand):
    """Move parked events of a group back into its live queue."""

    name = "PersistentSubscriptions.ReplayParked"
    method = f"/{PERSISTENT_SERVICE}/ReplayParked"

    def __init__(
        self,
        group_name: str,
        stream: str | StreamIdentifier | None = None,
        stop_at: int | None = None,
    ):
        self.group_name = group_name
        self.stream = stream
        self.stop_at = stop_at

    def request_message(self) -> Request:
        if self.stop_at is not None and self.stop_at < 0:
            raise RequestBuildError(f"Invalid stop_at: {self.stop_at}", field="stop_at")
        limit = {"no_limit": {}} if self.stop_at is None else {"stop_at": self.stop_at}
        return Request.create(
            "replay_parked",
            {"options": {**_source(self.stream), "group_name": self.group_name, **limit}},
        )


class RestartSubsystem(UnaryUnary[_Discarded]):
    """Restart the server's persistent subscription subsystem."""

    name = "PersistentSubscriptions.RestartSubsystem"
    method = f"/{PERSISTENT_SERVICE}/RestartSubsystem"
    requires_leader = True

    def request_message(self) -> Request:
        return Request.create("empty")

    def translator(self) -> DiscardedTranslator:
        return DiscardedTranslator()


# =============================================================================
# Info and listing
# =============================================================================


class ConnectionInfo(BaseModel):
    """A consumer connected to a group."""

    model_config = ConfigDict(extra="ignore", populate_by_name=True)

    from_: str = Field("", alias="from")
    username: str = ""
    connection_name: str = ""
    average_items_per_second: float = 0.0
    total_items: int = 0
    available_slots: int = 0
    in_flight_messages: int = 0


class PersistentSubscriptionInfo(BaseModel):
    """Server-side state and statistics of a consumer group."""

    model_config = ConfigDict(extra="ignore")

    event_source: str
    group_name: str
    status: str = ""
    connections: list[ConnectionInfo] = Field(default_factory=list)
    average_per_second: float = 0.0
    total_items: int = 0
    last_checkpointed_event_position: str = ""
    last_known_event_position: str = ""
    start_from: str = ""
    resolve_link_tos: bool = False
    max_retry_count: int = 0
    live_buffer_size: int = 0
    read_batch_size: int = 0
    total_in_flight_messages: int = 0
    outstanding_messages_count: int = 0
    parked_message_count: int = 0
    named_consumer_strategy: str = ""

    @classmethod
    def from_wire(cls, data: Any) -> PersistentSubscriptionInfo:
        try:
            return cls.model_validate(data)
        except ValidationError as e:
            raise DecodeError(f"Malformed subscription info: {e}") from e


class InfoTranslator(ResponseTranslator[PersistentSubscriptionInfo]):
    def translate_message(self, message: RawMessage) -> PersistentSubscriptionInfo:
        if message.kind != MessageKind.SUBSCRIPTION_INFO.value:
            raise self.unexpected(message)
        return PersistentSubscriptionInfo.from_wire(message.data.get("subscription_info"))


class ListTranslator(ResponseTranslator[list[PersistentSubscriptionInfo]]):
    def translate_message(self, message: RawMessage) -> list[PersistentSubscriptionInfo]:
        if message.kind != MessageKind.SUBSCRIPTIONS.value:
            raise self.unexpected(message)
        return [
            PersistentSubscriptionInfo.from_wire(info)
            for info in message.data.get("subscriptions", [])
        ]


class GetInfo(UnaryUnary[PersistentSubscriptionInfo]):
    """Fetch a consumer group's info."""

    name = "PersistentSubscriptions.GetInfo"
    method = f"/{PERSISTENT_SERVICE}/GetInfo"

    def __init__(self, group_name: str, stream: str | StreamIdentifier | None = None):
        self.group_name = group_name
        self.stream = stream

    def request_message(self) -> Request:
        return Request.create(
            "get_info",
            {"options": {**_source(self.stream), "group_name": self.group_name}},
        )

    def translator(self) -> InfoTranslator:
        return InfoTranslator(stream_name=_source_name(self.stream), group_name=self.group_name)


class ListSubscriptions(UnaryUnary[list[PersistentSubscriptionInfo]]):
    """List consumer groups on a stream, on $all, or everywhere."""

    name = "PersistentSubscriptions.List"
    method = f"/{PERSISTENT_SERVICE}/List"

    def __init__(self, stream: str | StreamIdentifier | None = None, all_groups: bool = False):
        self.stream = stream
        self.all_groups = all_groups

    def request_message(self) -> Request:
        if self.all_groups:
            options: dict[str, Any] = {"list_all_subscriptions": {}}
        else:
            options = {"list_for_stream": {"stream": _source(self.stream)}}
        return Request.create("list", {"options": options})

    def translator(self) -> ListTranslator:
        if self.all_groups:
            return ListTranslator()
        return ListTranslator(stream_name=_source_name(self.stream))


# =============================================================================
# Consume
# =============================================================================


class ReadPersistent(StreamStream[PersistentSubscription]):
    """Join a consumer group and receive its events."""

    name = "PersistentSubscriptions.Read"
    method = f"/{PERSISTENT_SERVICE}/Read"
    bounded = False

    def __init__(
        self,
        group_name: str,
        stream: str | StreamIdentifier | None = None,
        buffer_size: int = 10,
    ):
        self.group_name = group_name
        self.stream = stream
        self.buffer_size = buffer_size

    def request_messages(self) -> list[Request]:
        if self.buffer_size <= 0:
            raise RequestBuildError(f"Invalid buffer size: {self.buffer_size}", field="buffer_size")
        return [
            Request.create(
                "read.options",
                {
                    "options": {
                        **_source(self.stream),
                        "group_name": self.group_name,
                        "buffer_size": self.buffer_size,
                        "uuid_option": {"string": {}},
                    }
                },
            )
        ]

    def translator(self) -> ReadContentTranslator:
        return ReadContentTranslator(
            stream_name=_source_name(self.stream), group_name=self.group_name
        )

    async def responses(self, bridge: DuplexBridge[Any]) -> PersistentSubscription:
        return await PersistentSubscription.open(bridge)
