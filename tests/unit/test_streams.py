"""Unit tests for stream operations against the mock transport."""

from __future__ import annotations

import pytest

from eventstore_client import EventStoreClient, create_test_client
from eventstore_client.cursor import Cursor, Direction, Position, StreamIdentifier
from eventstore_client.errors import (
    ClientConnectionError,
    DeadlineExceeded,
    DecodeError,
    RequestBuildError,
    StreamDeletedError,
    StreamNotFoundError,
    UnsupportedFeatureError,
    WrongExpectedVersionError,
)
from eventstore_client.events import EventData
from eventstore_client.protocol import MessageKind, RawMessage, RpcError, StatusCode
from eventstore_client.settings import CallOptions
from eventstore_client.streams import (
    Append,
    Delete,
    MultiStreamAppend,
    Read,
    ReadAll,
    StreamAppend,
    StreamState,
    Subscribe,
    SubscriptionFilter,
    Tombstone,
    expected_revision_to_wire,
)
from eventstore_client.subscription import SessionState
from eventstore_client.transport import MockTransport, create_mock_transport


def success(revision: int, commit: int) -> RawMessage:
    return RawMessage.create(
        MessageKind.SUCCESS,
        {
            "current_revision": revision,
            "position": {"commit_position": commit, "prepare_position": commit},
        },
    )


# =============================================================================
# Append
# =============================================================================


class TestAppend:
    """Tests for appending to a stream."""

    @pytest.mark.asyncio
    async def test_append_success(self, client: EventStoreClient, transport: MockTransport) -> None:
        transport.set_response(Append.method, success(1, 200))
        events = [EventData.of_json("placed", {"n": 1}), EventData.of_json("paid", {"n": 2})]

        result = await client.streams.append("orders-1", events, StreamState.NO_STREAM)

        assert result.stream_name == "orders-1"
        assert result.next_expected_revision == 1
        assert result.position == Position(200, 200)

        requests = transport.requests_for(Append.method)
        assert [r.kind for r in requests] == ["append.options", "append.proposed", "append.proposed"]
        assert requests[0].payload == {
            "stream_identifier": {"stream_name": b"orders-1"},
            "no_stream": {},
        }
        assert requests[1].payload["metadata"]["type"] == "placed"
        assert requests[1].payload["data"] == b'{"n": 1}'

    @pytest.mark.asyncio
    async def test_append_requires_leader(
        self, client: EventStoreClient, transport: MockTransport
    ) -> None:
        transport.set_response(Append.method, success(0, 1))

        await client.streams.append("orders-1", [EventData.of_json("placed", {})])

        _, metadata = transport.recorded_metadata[-1]
        assert ("requires-leader", "true") in metadata

    @pytest.mark.asyncio
    async def test_wrong_expected_version(
        self, client: EventStoreClient, transport: MockTransport
    ) -> None:
        transport.set_response(
            Append.method,
            RawMessage.create(MessageKind.WRONG_EXPECTED_VERSION, {"current_revision": 3}),
        )

        with pytest.raises(WrongExpectedVersionError) as exc_info:
            await client.streams.append("orders-1", [EventData.of_json("placed", {})], 1)

        assert exc_info.value.expected == 1
        assert exc_info.value.actual == 3
        assert exc_info.value.stream_name == "orders-1"

    @pytest.mark.asyncio
    async def test_malformed_success_is_decode_error(
        self, client: EventStoreClient, transport: MockTransport
    ) -> None:
        transport.set_response(
            Append.method,
            RawMessage.create(MessageKind.SUCCESS, {"current_revision": "garbage"}),
        )

        with pytest.raises(DecodeError):
            await client.streams.append("orders-1", [EventData.of_json("placed", {})])

    @pytest.mark.asyncio
    async def test_rpc_error_translated(
        self, client: EventStoreClient, transport: MockTransport
    ) -> None:
        error = RpcError(StatusCode.FAILED_PRECONDITION, "", {"exception": "stream-deleted"})
        transport.set_response(Append.method, error)

        with pytest.raises(StreamDeletedError) as exc_info:
            await client.streams.append("orders-1", [EventData.of_json("placed", {})])

        assert exc_info.value.__cause__ is error

    @pytest.mark.asyncio
    async def test_invalid_expected_revision_never_sent(
        self, client: EventStoreClient, transport: MockTransport
    ) -> None:
        """A request that cannot be built never reaches the transport."""
        with pytest.raises(RequestBuildError):
            await client.streams.append("orders-1", [EventData.of_json("placed", {})], -1)

        assert transport.recorded_requests == []
        assert transport.calls_started == 0

    @pytest.mark.asyncio
    async def test_unencodable_stream_name_never_sent(
        self, client: EventStoreClient, transport: MockTransport
    ) -> None:
        with pytest.raises(RequestBuildError):
            await client.streams.append(StreamIdentifier("café", "ascii"), [])

        assert transport.calls_started == 0

    @pytest.mark.asyncio
    async def test_deadline(self, client: EventStoreClient, transport: MockTransport) -> None:
        transport.set_response(Append.method, success(0, 1), delay=1.0)

        with pytest.raises(DeadlineExceeded):
            await client.streams.append(
                "orders-1", [EventData.of_json("placed", {})], options=CallOptions(timeout=0.01)
            )

    @pytest.mark.asyncio
    async def test_unsupported_method(self) -> None:
        transport = create_mock_transport(supported_methods=[Read.method])
        client = create_test_client(transport)

        with pytest.raises(UnsupportedFeatureError) as exc_info:
            await client.streams.append("orders-1", [EventData.of_json("placed", {})])

        assert exc_info.value.method == Append.method
        assert transport.calls_started == 0


class TestExpectedRevision:
    def test_states(self) -> None:
        assert expected_revision_to_wire(StreamState.ANY) == {"any": {}}
        assert expected_revision_to_wire(StreamState.STREAM_EXISTS) == {"stream_exists": {}}
        assert expected_revision_to_wire(4) == {"revision": 4}

    def test_rejects_bool(self) -> None:
        with pytest.raises(RequestBuildError):
            expected_revision_to_wire(True)


class TestMultiStreamAppend:
    """Tests for appending to several streams at once."""

    @pytest.mark.asyncio
    async def test_results_per_stream(
        self, client: EventStoreClient, transport: MockTransport
    ) -> None:
        transport.set_response(
            MultiStreamAppend.method,
            RawMessage.create(
                MessageKind.SUCCESS,
                {
                    "output": [
                        {"stream": "orders-1", "stream_revision": 0, "position": 10},
                        {"stream": "orders-2", "stream_revision": 4, "position": 10},
                    ],
                    "position": 10,
                },
            ),
        )

        result = await client.streams.append_multi(
            [
                StreamAppend("orders-1", [EventData.of_json("placed", {})], StreamState.NO_STREAM),
                StreamAppend("orders-2", [EventData.of_json("paid", {})]),
            ]
        )

        assert result.position == 10
        assert result.for_stream("orders-2").next_expected_revision == 4
        assert result.for_stream("unknown") is None

        requests = transport.requests_for(MultiStreamAppend.method)
        assert [r.payload["stream"] for r in requests] == ["orders-1", "orders-2"]
        assert requests[0].payload["expected_revision"] == {"no_stream": {}}
        assert "expected_revision" not in requests[1].payload

    def test_custom_metadata_must_be_object(self) -> None:
        event = EventData(event_type="placed", custom_metadata=b"[1, 2]")
        usecase = MultiStreamAppend([StreamAppend("orders-1", [event])])

        with pytest.raises(RequestBuildError):
            usecase.request_messages()


# =============================================================================
# Read
# =============================================================================


class TestRead:
    """Tests for reading streams."""

    @pytest.mark.asyncio
    async def test_limit_caps_events(
        self, client: EventStoreClient, transport: MockTransport
    ) -> None:
        """Reading orders-1 with limit 2 yields two events even if five arrive."""
        transport.set_response(Read.method, [RawMessage.event("orders-1", i) for i in range(5)])

        response = await client.streams.read("orders-1", limit=2)
        events = await response.collect()

        assert [e.revision for e in events] == [0, 1]
        assert response.count == 2

        options = transport.requests_for(Read.method)[0].payload["options"]
        assert options["count"] == 2
        assert options["read_direction"] == "forwards"
        assert options["stream"] == {
            "stream_identifier": {"stream_name": b"orders-1"},
            "start": {},
        }
        assert "subscription" not in options

    @pytest.mark.asyncio
    async def test_read_from_end_goes_backwards(
        self, client: EventStoreClient, transport: MockTransport
    ) -> None:
        transport.set_response(Read.method, [RawMessage.event("orders-1", 9)])

        response = await client.streams.read("orders-1", Cursor.end(), limit=1)

        assert [e.revision async for e in response] == [9]
        options = transport.requests_for(Read.method)[0].payload["options"]
        assert options["read_direction"] == "backwards"
        assert options["stream"]["end"] == {}

    @pytest.mark.asyncio
    async def test_read_from_revision(
        self, client: EventStoreClient, transport: MockTransport
    ) -> None:
        transport.set_response(Read.method, [])

        response = await client.streams.read(
            "orders-1", Cursor.revision(5, Direction.BACKWARDS)
        )

        assert await response.collect() == []
        options = transport.requests_for(Read.method)[0].payload["options"]
        assert options["stream"]["revision"] == 5
        assert options["read_direction"] == "backwards"

    @pytest.mark.asyncio
    async def test_stream_not_found(
        self, client: EventStoreClient, transport: MockTransport
    ) -> None:
        transport.set_response(Read.method, [RawMessage.stream_not_found("missing")])

        response = await client.streams.read("missing")

        with pytest.raises(StreamNotFoundError):
            await response.collect()

    @pytest.mark.asyncio
    async def test_malformed_event_ends_read(
        self, client: EventStoreClient, transport: MockTransport
    ) -> None:
        event = RawMessage.event("orders-1", 0)
        event.data["commit_position"] = "garbage"
        transport.set_response(Read.method, [event])

        response = await client.streams.read("orders-1")

        with pytest.raises(DecodeError):
            await response.collect()

    @pytest.mark.asyncio
    async def test_stream_positions_recorded(
        self, client: EventStoreClient, transport: MockTransport
    ) -> None:
        transport.set_response(
            Read.method,
            [
                RawMessage.create(MessageKind.FIRST_STREAM_POSITION, {"revision": 0}),
                RawMessage.event("orders-1", 0),
                RawMessage.create(MessageKind.LAST_STREAM_POSITION, {"revision": 0}),
            ],
        )

        response = await client.streams.read("orders-1")

        assert len(await response.collect()) == 1
        assert response.first_stream_revision == 0
        assert response.last_stream_revision == 0

    @pytest.mark.asyncio
    async def test_read_is_bounded_by_deadline(
        self, client: EventStoreClient, transport: MockTransport
    ) -> None:
        transport.set_response(Read.method, [])

        await (await client.streams.read("orders-1")).collect()

        assert transport.calls[0].timeout == client.settings.default_deadline

    @pytest.mark.asyncio
    async def test_cancel_closes_call(
        self, client: EventStoreClient, transport: MockTransport
    ) -> None:
        call = transport.script(Read.method)
        call.feed(RawMessage.event("orders-1", 0))

        async with await client.streams.read("orders-1") as response:
            await response.__anext__()

        assert call.cancel_count == 1

    def test_invalid_limit(self) -> None:
        with pytest.raises(RequestBuildError):
            Read("orders-1", limit=-1).request_message()

    def test_wrong_cursor_kind(self) -> None:
        cursor = Cursor.position(Position.at(1))
        with pytest.raises(RequestBuildError):
            Read("orders-1", cursor).request_message()  # type: ignore[arg-type]


class TestReadAll:
    """Tests for reading $all."""

    @pytest.mark.asyncio
    async def test_filtered_read(self, client: EventStoreClient, transport: MockTransport) -> None:
        transport.set_response(
            ReadAll.method,
            [RawMessage.event("orders-1", 0, commit_position=100)],
        )

        response = await client.streams.read_all(
            Cursor.position(Position.at(50)),
            filter=SubscriptionFilter.on_stream_name(prefixes=["orders-"]),
        )
        events = await response.collect()

        assert events[0].position == Position(100, 100)
        options = transport.requests_for(ReadAll.method)[0].payload["options"]
        assert options["all"] == {"position": {"commit_position": 50, "prepare_position": 50}}
        assert options["filter"]["stream_identifier"] == {"prefix": ["orders-"]}
        assert "stream" not in options


class TestSubscriptionFilter:
    def test_exclude_system_events(self) -> None:
        wire = SubscriptionFilter.exclude_system_events().to_wire()
        assert wire["event_type"] == {"regex": r"^[^\$].*"}
        assert wire["count"] == {}

    def test_max_window(self) -> None:
        wire = SubscriptionFilter.on_event_type(prefixes=["order"], max_window=32).to_wire()
        assert wire["max"] == 32

    def test_needs_regex_or_prefixes(self) -> None:
        with pytest.raises(RequestBuildError):
            SubscriptionFilter.on_event_type().to_wire()
        with pytest.raises(RequestBuildError):
            SubscriptionFilter.on_event_type(regex="a", prefixes=["b"]).to_wire()

    def test_invalid_regex(self) -> None:
        with pytest.raises(RequestBuildError):
            SubscriptionFilter.on_event_type(regex="(").to_wire()


# =============================================================================
# Subscribe
# =============================================================================


class TestSubscribe:
    """Tests for volatile subscriptions."""

    @pytest.mark.asyncio
    async def test_subscribe_from_end(
        self, client: EventStoreClient, transport: MockTransport
    ) -> None:
        """A confirmation then revision 42 yields exactly that event."""
        call = transport.script(Subscribe.method)
        call.feed(RawMessage.confirmation("sub-1"), RawMessage.event("orders-1", 42))

        subscription = await client.streams.subscribe("orders-1")
        event = await subscription.__anext__()

        assert subscription.subscription_id == "sub-1"
        assert event.revision == 42
        assert not subscription.has_pending

        options = call.requests[0].payload["options"]
        assert options["stream"]["end"] == {}
        assert options["subscription"] == {}
        assert options["read_direction"] == "forwards"

        await subscription.aclose()
        assert subscription.state == SessionState.TERMINATED

    @pytest.mark.asyncio
    async def test_no_default_deadline(
        self, client: EventStoreClient, transport: MockTransport
    ) -> None:
        """The client's default deadline does not bound a subscription."""
        call = transport.script(Subscribe.method)
        call.feed(RawMessage.confirmation("sub-1"))

        async with await client.streams.subscribe("orders-1"):
            assert call.timeout is None

    @pytest.mark.asyncio
    async def test_explicit_timeout_honoured(
        self, client: EventStoreClient, transport: MockTransport
    ) -> None:
        call = transport.script(Subscribe.method)
        call.feed(RawMessage.confirmation("sub-1"))

        async with await client.streams.subscribe(
            "orders-1", options=CallOptions(timeout=0.5)
        ):
            assert call.timeout == 0.5

    @pytest.mark.asyncio
    async def test_subscribe_all_with_checkpoints(
        self, client: EventStoreClient, transport: MockTransport
    ) -> None:
        call = transport.script(Subscribe.method)
        call.feed(RawMessage.confirmation("sub-2"), RawMessage.checkpoint(77))
        call.finish()

        subscription = await client.streams.subscribe_all(
            filter=SubscriptionFilter.exclude_system_events(), include_checkpoints=True
        )
        items = [item async for item in subscription]

        assert items[0].position == Position(77, 77)
        assert call.requests[0].payload["options"]["all"] == {"end": {}}

    @pytest.mark.asyncio
    async def test_completion_callback(
        self, client: EventStoreClient, transport: MockTransport
    ) -> None:
        completed = []
        call = transport.script(Subscribe.method)
        call.feed(RawMessage.confirmation("sub-3"))
        call.fail(RpcError(StatusCode.UNAVAILABLE, "gone"))

        subscription = await client.streams.subscribe("orders-1", completion=completed.append)

        with pytest.raises(ClientConnectionError):
            await subscription.__anext__()
        assert len(completed) == 1
        assert subscription.error is completed[0]


# =============================================================================
# Delete / Tombstone
# =============================================================================


class TestDelete:
    """Tests for deleting streams."""

    @pytest.mark.asyncio
    async def test_delete(self, client: EventStoreClient, transport: MockTransport) -> None:
        transport.set_response(
            Delete.method,
            RawMessage.create(
                MessageKind.DELETED, {"position": {"commit_position": 5, "prepare_position": 5}}
            ),
        )

        result = await client.streams.delete("orders-1", 3)

        assert result.position == Position(5, 5)
        request = transport.requests_for(Delete.method)[0]
        assert request.kind == "delete"
        assert request.payload["options"]["revision"] == 3

    @pytest.mark.asyncio
    async def test_tombstone(self, client: EventStoreClient, transport: MockTransport) -> None:
        result = await client.streams.tombstone("orders-1")

        assert result.position is None
        request = transport.requests_for(Tombstone.method)[0]
        assert request.kind == "tombstone"
        assert request.payload["options"]["any"] == {}

    @pytest.mark.asyncio
    async def test_delete_already_deleted(
        self, client: EventStoreClient, transport: MockTransport
    ) -> None:
        transport.set_response(
            Delete.method,
            RpcError(StatusCode.FAILED_PRECONDITION, "", {"exception": "stream-deleted"}),
        )

        with pytest.raises(StreamDeletedError):
            await client.streams.delete("orders-1")
