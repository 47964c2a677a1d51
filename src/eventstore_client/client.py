"""Event store client.

Wires operations to a node selector. Operations are grouped by area:

    async with create_client(ClientSettings.from_env()) as client:
        await client.streams.append("orders-1", [EventData.of_json("placed", {...})])
        async for event in await client.streams.read("orders-1", limit=10):
            ...
        async with await client.persistent_subscriptions.subscribe("workers", "orders-1") as sub:
            async for event in sub:
                await sub.ack(event)
"""

from __future__ import annotations

import json
import logging
from collections.abc import Iterable
from dataclasses import dataclass, field
from typing import Any

from pydantic import BaseModel, ConfigDict, Field

from .cursor import Cursor, Direction, PositionPointer, RevisionPointer, StreamIdentifier
from .errors import DecodeError, NotLeaderError, StreamNotFoundError
from .events import AppendResult, DeleteResult, EventData, MultiAppendResult, _Discarded
from .features import GetSupportedMethods, ServerInfo
from .persistent import (
    CreateToAll,
    CreateToStream,
    DeletePersistentSubscription,
    GetInfo,
    ListSubscriptions,
    PersistentSubscriptionInfo,
    PersistentSubscriptionSettings,
    ReadPersistent,
    ReplayParked,
    RestartSubsystem,
    UpdateToAll,
    UpdateToStream,
)
from .projections import (
    CreateContinuous,
    CreateOneTime,
    CreateTransient,
    DeleteProjection,
    DisableProjection,
    EnableProjection,
    GetProjectionDetail,
    GetProjectionResult,
    GetProjectionState,
    ListProjections,
    ProjectionDetail,
    ProjectionMode,
    ResetProjection,
    RestartProjectionSubsystem,
    UpdateProjection,
)
from .selector import NodeSelector
from .settings import CallOptions, ClientSettings
from .streaming import CompletionCallback
from .streams import (
    METADATA_EVENT_TYPE,
    Append,
    Delete,
    ExpectedRevision,
    MultiStreamAppend,
    Read,
    ReadAll,
    ReadResponse,
    StreamAppend,
    StreamState,
    Subscribe,
    SubscribeAll,
    SubscriptionFilter,
    Tombstone,
)
from .subscription import PersistentSubscription, Subscription
from .transport.base import Transport
from .usecase import Usecase

logger = logging.getLogger(__name__)


class StreamMetadata(BaseModel):
    """Metadata of a stream and the revision of the metadata event."""

    model_config = ConfigDict(frozen=True)

    data: dict[str, Any] = Field(default_factory=dict)
    revision: int | None = None

    @property
    def max_age(self) -> int | None:
        return self.data.get("$maxAge")

    @property
    def max_count(self) -> int | None:
        return self.data.get("$maxCount")


@dataclass
class StreamsAPI:
    """Stream operations."""

    _client: EventStoreClient

    async def append(
        self,
        stream: str | StreamIdentifier,
        events: Iterable[EventData],
        expected_revision: ExpectedRevision = StreamState.ANY,
        options: CallOptions | None = None,
    ) -> AppendResult:
        """Append events to a stream.

        Raises:
            WrongExpectedVersionError: If the stream is not at expected_revision
            StreamDeletedError: If the stream was tombstoned
        """
        return await self._client.run(Append(stream, events, expected_revision), options)

    async def append_multi(
        self,
        requests: Iterable[StreamAppend],
        options: CallOptions | None = None,
    ) -> MultiAppendResult:
        """Append to several streams in one atomic call."""
        return await self._client.run(MultiStreamAppend(requests), options)

    async def read(
        self,
        stream: str | StreamIdentifier,
        cursor: Cursor[RevisionPointer] | None = None,
        direction: Direction | None = None,
        limit: int | None = None,
        resolve_links: bool = False,
        options: CallOptions | None = None,
        completion: CompletionCallback | None = None,
    ) -> ReadResponse:
        """Read a stream. Iterate the result for events."""
        usecase = Read(stream, cursor, direction, limit, resolve_links)
        return await self._client.run(usecase, options, completion)

    async def read_all(
        self,
        cursor: Cursor[PositionPointer] | None = None,
        direction: Direction | None = None,
        limit: int | None = None,
        resolve_links: bool = False,
        filter: SubscriptionFilter | None = None,
        options: CallOptions | None = None,
        completion: CompletionCallback | None = None,
    ) -> ReadResponse:
        """Read the $all stream."""
        usecase = ReadAll(cursor, direction, limit, resolve_links, filter)
        return await self._client.run(usecase, options, completion)

    async def subscribe(
        self,
        stream: str | StreamIdentifier,
        cursor: Cursor[RevisionPointer] | None = None,
        resolve_links: bool = False,
        options: CallOptions | None = None,
        completion: CompletionCallback | None = None,
    ) -> Subscription:
        """Subscribe to a stream. Defaults to events written from now on."""
        usecase = Subscribe(stream, cursor, resolve_links)
        return await self._client.run(usecase, options, completion)

    async def subscribe_all(
        self,
        cursor: Cursor[PositionPointer] | None = None,
        resolve_links: bool = False,
        filter: SubscriptionFilter | None = None,
        include_checkpoints: bool = False,
        options: CallOptions | None = None,
        completion: CompletionCallback | None = None,
    ) -> Subscription:
        """Subscribe to $all, optionally filtered."""
        usecase = SubscribeAll(cursor, resolve_links, filter, include_checkpoints)
        return await self._client.run(usecase, options, completion)

    async def delete(
        self,
        stream: str | StreamIdentifier,
        expected_revision: ExpectedRevision = StreamState.ANY,
        options: CallOptions | None = None,
    ) -> DeleteResult:
        """Soft-delete a stream."""
        return await self._client.run(Delete(stream, expected_revision), options)

    async def tombstone(
        self,
        stream: str | StreamIdentifier,
        expected_revision: ExpectedRevision = StreamState.ANY,
        options: CallOptions | None = None,
    ) -> DeleteResult:
        """Permanently delete a stream."""
        return await self._client.run(Tombstone(stream, expected_revision), options)

    async def set_metadata(
        self,
        stream: str | StreamIdentifier,
        metadata: dict[str, Any],
        expected_revision: ExpectedRevision = StreamState.ANY,
        options: CallOptions | None = None,
    ) -> AppendResult:
        """Write stream metadata as a `$metadata` event to `$$<stream>`."""
        metadata_stream = StreamIdentifier.of(stream).metadata_stream()
        event = EventData.of_json(METADATA_EVENT_TYPE, metadata)
        return await self.append(metadata_stream, [event], expected_revision, options)

    async def get_metadata(
        self,
        stream: str | StreamIdentifier,
        options: CallOptions | None = None,
    ) -> StreamMetadata | None:
        """Read the latest stream metadata, or None if none was ever written."""
        metadata_stream = StreamIdentifier.of(stream).metadata_stream()
        response = await self.read(metadata_stream, Cursor.end(), limit=1, options=options)
        try:
            events = await response.collect()
        except StreamNotFoundError:
            return None
        if not events:
            return None
        record = events[0].event
        try:
            data = json.loads(record.data) if record.data else {}
        except ValueError as e:
            raise DecodeError(f"Stream metadata of {metadata_stream} is not JSON: {e}") from e
        return StreamMetadata(data=data, revision=record.revision)


@dataclass
class PersistentSubscriptionsAPI:
    """Persistent subscription operations. `stream=None` means $all."""

    _client: EventStoreClient

    async def create_to_stream(
        self,
        stream: str | StreamIdentifier,
        group_name: str,
        settings: PersistentSubscriptionSettings | None = None,
        cursor: Cursor[RevisionPointer] | None = None,
        options: CallOptions | None = None,
    ) -> _Discarded:
        return await self._client.run(CreateToStream(stream, group_name, settings, cursor), options)

    async def create_to_all(
        self,
        group_name: str,
        settings: PersistentSubscriptionSettings | None = None,
        cursor: Cursor[PositionPointer] | None = None,
        filter: SubscriptionFilter | None = None,
        options: CallOptions | None = None,
    ) -> _Discarded:
        return await self._client.run(CreateToAll(group_name, settings, cursor, filter), options)

    async def update_to_stream(
        self,
        stream: str | StreamIdentifier,
        group_name: str,
        settings: PersistentSubscriptionSettings | None = None,
        cursor: Cursor[RevisionPointer] | None = None,
        options: CallOptions | None = None,
    ) -> _Discarded:
        return await self._client.run(UpdateToStream(stream, group_name, settings, cursor), options)

    async def update_to_all(
        self,
        group_name: str,
        settings: PersistentSubscriptionSettings | None = None,
        cursor: Cursor[PositionPointer] | None = None,
        options: CallOptions | None = None,
    ) -> _Discarded:
        return await self._client.run(UpdateToAll(group_name, settings, cursor), options)

    async def delete(
        self,
        group_name: str,
        stream: str | StreamIdentifier | None = None,
        options: CallOptions | None = None,
    ) -> _Discarded:
        return await self._client.run(DeletePersistentSubscription(group_name, stream), options)

    async def subscribe(
        self,
        group_name: str,
        stream: str | StreamIdentifier | None = None,
        buffer_size: int = 10,
        options: CallOptions | None = None,
        completion: CompletionCallback | None = None,
    ) -> PersistentSubscription:
        """Join a consumer group. Ack or nack each event received."""
        usecase = ReadPersistent(group_name, stream, buffer_size)
        return await self._client.run(usecase, options, completion)

    async def get_info(
        self,
        group_name: str,
        stream: str | StreamIdentifier | None = None,
        options: CallOptions | None = None,
    ) -> PersistentSubscriptionInfo:
        return await self._client.run(GetInfo(group_name, stream), options)

    async def list(
        self,
        stream: str | StreamIdentifier | None = None,
        options: CallOptions | None = None,
    ) -> list[PersistentSubscriptionInfo]:
        """List groups on a stream (or on $all when stream is None)."""
        return await self._client.run(ListSubscriptions(stream), options)

    async def list_all(self, options: CallOptions | None = None) -> list[PersistentSubscriptionInfo]:
        """List every group on the server."""
        return await self._client.run(ListSubscriptions(all_groups=True), options)

    async def replay_parked(
        self,
        group_name: str,
        stream: str | StreamIdentifier | None = None,
        stop_at: int | None = None,
        options: CallOptions | None = None,
    ) -> _Discarded:
        return await self._client.run(ReplayParked(group_name, stream, stop_at), options)

    async def restart_subsystem(self, options: CallOptions | None = None) -> _Discarded:
        return await self._client.run(RestartSubsystem(), options)


@dataclass
class ProjectionsAPI:
    """Projection operations. State and result decode into `type_` when given."""

    _client: EventStoreClient

    async def create_continuous(
        self,
        name: str,
        query: str,
        emit_enabled: bool = True,
        track_emitted_streams: bool = True,
        options: CallOptions | None = None,
    ) -> _Discarded:
        usecase = CreateContinuous(name, query, emit_enabled, track_emitted_streams)
        return await self._client.run(usecase, options)

    async def create_one_time(self, query: str, options: CallOptions | None = None) -> _Discarded:
        return await self._client.run(CreateOneTime(query), options)

    async def create_transient(
        self, name: str, query: str, options: CallOptions | None = None
    ) -> _Discarded:
        return await self._client.run(CreateTransient(name, query), options)

    async def update(
        self,
        name: str,
        query: str,
        emit_enabled: bool | None = None,
        options: CallOptions | None = None,
    ) -> _Discarded:
        return await self._client.run(UpdateProjection(name, query, emit_enabled), options)

    async def delete(
        self,
        name: str,
        delete_emitted_streams: bool = False,
        delete_state_stream: bool = False,
        delete_checkpoint_stream: bool = False,
        options: CallOptions | None = None,
    ) -> _Discarded:
        usecase = DeleteProjection(
            name, delete_emitted_streams, delete_state_stream, delete_checkpoint_stream
        )
        return await self._client.run(usecase, options)

    async def enable(self, name: str, options: CallOptions | None = None) -> _Discarded:
        return await self._client.run(EnableProjection(name), options)

    async def disable(self, name: str, options: CallOptions | None = None) -> _Discarded:
        return await self._client.run(DisableProjection(name, write_checkpoint=True), options)

    async def abort(self, name: str, options: CallOptions | None = None) -> _Discarded:
        """Stop a projection without writing a checkpoint."""
        return await self._client.run(DisableProjection(name, write_checkpoint=False), options)

    async def reset(
        self, name: str, write_checkpoint: bool = True, options: CallOptions | None = None
    ) -> _Discarded:
        return await self._client.run(ResetProjection(name, write_checkpoint), options)

    async def get_state(
        self,
        name: str,
        type_: Any = Any,
        partition: str = "",
        options: CallOptions | None = None,
    ) -> Any:
        return await self._client.run(GetProjectionState(name, type_, partition), options)

    async def get_result(
        self,
        name: str,
        type_: Any = Any,
        partition: str = "",
        options: CallOptions | None = None,
    ) -> Any:
        return await self._client.run(GetProjectionResult(name, type_, partition), options)

    async def get_detail(
        self, name: str, options: CallOptions | None = None
    ) -> ProjectionDetail | None:
        return await self._client.run(GetProjectionDetail(name), options)

    async def list(
        self, mode: ProjectionMode = ProjectionMode.ALL, options: CallOptions | None = None
    ) -> list[ProjectionDetail]:
        return await self._client.run(ListProjections(mode), options)

    async def restart_subsystem(self, options: CallOptions | None = None) -> _Discarded:
        return await self._client.run(RestartProjectionSubsystem(), options)


@dataclass
class EventStoreClient:
    """Client for the event store.

    Usage:
        # From the environment
        async with create_client() as client:
            await client.append_to_stream("orders-1", events)

        # Testing
        transport = create_mock_transport()
        client = create_test_client(transport)
    """

    settings: ClientSettings = field(default_factory=ClientSettings)
    _selector: NodeSelector | None = None

    def __post_init__(self) -> None:
        self.selector: NodeSelector = self._selector or NodeSelector(self.settings)

    @property
    def streams(self) -> StreamsAPI:
        """Stream operations."""
        return StreamsAPI(_client=self)

    @property
    def persistent_subscriptions(self) -> PersistentSubscriptionsAPI:
        """Persistent subscription operations."""
        return PersistentSubscriptionsAPI(_client=self)

    @property
    def projections(self) -> ProjectionsAPI:
        """Projection operations."""
        return ProjectionsAPI(_client=self)

    async def server_info(self, options: CallOptions | None = None) -> ServerInfo:
        """Ask the selected node for its version and the methods it serves."""
        return await self.run(GetSupportedMethods(), options)

    def call_options(
        self, options: CallOptions | None = None, default_deadline: bool = True
    ) -> CallOptions:
        """Fill unset call options from the client settings."""
        return (options or CallOptions()).merged(self.settings, default_deadline)

    async def run(
        self,
        usecase: Usecase[Any],
        options: CallOptions | None = None,
        completion: CompletionCallback | None = None,
    ) -> Any:
        """Perform an operation against the selected node.

        A not-leader failure updates the selector's view of the leader
        before it is raised; the call is not retried.
        """
        merged = self.call_options(options, default_deadline=usecase.bounded)
        try:
            if completion is not None:
                return await usecase.perform(self.selector, merged, completion)  # type: ignore[call-arg]
            return await usecase.perform(self.selector, merged)
        except NotLeaderError as e:
            self.selector.redirect(e)
            raise

    # Convenience shortcuts for the most common stream operations

    async def append_to_stream(
        self,
        stream: str | StreamIdentifier,
        events: Iterable[EventData],
        expected_revision: ExpectedRevision = StreamState.ANY,
        options: CallOptions | None = None,
    ) -> AppendResult:
        return await self.streams.append(stream, events, expected_revision, options)

    async def read_stream(self, stream: str | StreamIdentifier, **kwargs: Any) -> ReadResponse:
        return await self.streams.read(stream, **kwargs)

    async def read_all(self, **kwargs: Any) -> ReadResponse:
        return await self.streams.read_all(**kwargs)

    async def subscribe_to_stream(self, stream: str | StreamIdentifier, **kwargs: Any) -> Subscription:
        return await self.streams.subscribe(stream, **kwargs)

    async def subscribe_to_all(self, **kwargs: Any) -> Subscription:
        return await self.streams.subscribe_all(**kwargs)

    async def delete_stream(self, stream: str | StreamIdentifier, **kwargs: Any) -> DeleteResult:
        return await self.streams.delete(stream, **kwargs)

    async def tombstone_stream(self, stream: str | StreamIdentifier, **kwargs: Any) -> DeleteResult:
        return await self.streams.tombstone(stream, **kwargs)

    async def get_stream_metadata(self, stream: str | StreamIdentifier) -> StreamMetadata | None:
        return await self.streams.get_metadata(stream)

    async def set_stream_metadata(
        self, stream: str | StreamIdentifier, metadata: dict[str, Any], **kwargs: Any
    ) -> AppendResult:
        return await self.streams.set_metadata(stream, metadata, **kwargs)

    async def close(self) -> None:
        """Close every transport opened by the client."""
        await self.selector.close()

    async def __aenter__(self) -> EventStoreClient:
        return self

    async def __aexit__(self, *args: Any) -> None:
        await self.close()


# Factory functions


def create_client(settings: ClientSettings | None = None) -> EventStoreClient:
    """Create a client over gRPC.

    Args:
        settings: Client settings (default: read from EVENTSTORE_* variables)

    Returns:
        EventStoreClient with a selector over the configured endpoints
    """
    return EventStoreClient(settings=settings or ClientSettings.from_env())


def create_test_client(
    transport: Transport,
    settings: ClientSettings | None = None,
) -> EventStoreClient:
    """Create a client whose every call goes through `transport`.

    Args:
        transport: Usually a MockTransport
        settings: Client settings (default: plaintext, no credentials, no
            feature discovery)

    Returns:
        EventStoreClient bound to the transport
    """
    settings = settings or ClientSettings(
        endpoints=[transport.endpoint], tls=False, discover_features=False
    )
    return EventStoreClient(
        settings=settings,
        _selector=NodeSelector.for_transport(transport, settings),
    )
