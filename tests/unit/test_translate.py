"""Unit tests for response translation."""

import asyncio

import pytest

from eventstore_client.cursor import Position
from eventstore_client.errors import (
    AccessDeniedError,
    AlreadyExistsError,
    ClientConnectionError,
    DeadlineExceeded,
    DecodeError,
    EventStoreError,
    MaximumAppendSizeExceededError,
    NotAuthenticatedError,
    NotLeaderError,
    PersistentSubscriptionNotFoundError,
    ServerError,
    SessionClosed,
    StreamDeletedError,
    StreamNotFoundError,
    UnsupportedFeatureError,
    WrongExpectedVersionError,
)
from eventstore_client.events import (
    DISCARDED,
    CaughtUp,
    Checkpoint,
    EventEnvelope,
    FirstStreamPosition,
    LastAllStreamPosition,
    SubscriptionConfirmation,
)
from eventstore_client.protocol import MessageKind, RawMessage, RpcError, StatusCode
from eventstore_client.streams import AppendTranslator, StreamState
from eventstore_client.translate import (
    DiscardedTranslator,
    ReadContentTranslator,
    ResponseTranslator,
    translate_error,
    translate_rpc_error,
    unwrap,
)

# =============================================================================
# Error mapping
# =============================================================================


class TestTranslateRpcError:
    """Tests for mapping RpcError to client errors."""

    def test_stream_deleted_trailer(self) -> None:
        error = RpcError(StatusCode.FAILED_PRECONDITION, "", {"exception": "stream-deleted"})
        result = translate_rpc_error(error, stream_name="orders-1")
        assert isinstance(result, StreamDeletedError)
        assert result.stream_name == "orders-1"

    def test_stream_name_trailer_wins(self) -> None:
        error = RpcError(
            StatusCode.NOT_FOUND,
            "",
            {"exception": "stream-not-found", "stream-name": "from-server"},
        )
        result = translate_rpc_error(error, stream_name="local")
        assert isinstance(result, StreamNotFoundError)
        assert result.stream_name == "from-server"

    def test_wrong_expected_version(self) -> None:
        error = RpcError(
            StatusCode.FAILED_PRECONDITION,
            "",
            {"exception": "wrong-expected-version", "expected-version": "3", "actual-version": "5"},
        )
        result = translate_rpc_error(error, stream_name="orders-1")
        assert isinstance(result, WrongExpectedVersionError)
        assert result.actual == 5

    def test_not_leader_carries_leader_endpoint(self) -> None:
        error = RpcError(
            StatusCode.NOT_FOUND,
            "",
            {
                "exception": "not-leader",
                "leader-endpoint-host": "node2",
                "leader-endpoint-port": "2113",
            },
        )
        result = translate_rpc_error(error)
        assert isinstance(result, NotLeaderError)
        assert isinstance(result, ClientConnectionError)
        assert (result.leader_host, result.leader_port) == ("node2", 2113)

    def test_persistent_subscription_missing(self) -> None:
        error = RpcError(
            StatusCode.NOT_FOUND, "", {"exception": "persistent-subscription-does-not-exist"}
        )
        result = translate_rpc_error(error, stream_name="orders", group_name="workers")
        assert isinstance(result, PersistentSubscriptionNotFoundError)
        assert result.group_name == "workers"

    def test_persistent_subscription_exists(self) -> None:
        error = RpcError(
            StatusCode.ALREADY_EXISTS, "", {"exception": "persistent-subscription-exists"}
        )
        assert isinstance(translate_rpc_error(error, group_name="g"), AlreadyExistsError)

    def test_maximum_append_size(self) -> None:
        error = RpcError(
            StatusCode.INVALID_ARGUMENT,
            "",
            {"exception": "maximum-append-size-exceeded", "max-append-size": "1024"},
        )
        result = translate_rpc_error(error)
        assert isinstance(result, MaximumAppendSizeExceededError)
        assert result.max_append_size == 1024

    @pytest.mark.parametrize(
        ("code", "expected"),
        [
            (StatusCode.DEADLINE_EXCEEDED, DeadlineExceeded),
            (StatusCode.UNAVAILABLE, ClientConnectionError),
            (StatusCode.PERMISSION_DENIED, AccessDeniedError),
            (StatusCode.UNAUTHENTICATED, NotAuthenticatedError),
            (StatusCode.UNIMPLEMENTED, UnsupportedFeatureError),
            (StatusCode.INTERNAL, ServerError),
        ],
    )
    def test_status_codes(self, code: StatusCode, expected: type) -> None:
        assert isinstance(translate_rpc_error(RpcError(code, "boom")), expected)


class TestTranslateError:
    """Tests for mapping arbitrary exceptions."""

    def test_client_errors_pass_through(self) -> None:
        error = StreamNotFoundError("x")
        assert translate_error(error) is error

    def test_timeout(self) -> None:
        assert isinstance(translate_error(asyncio.TimeoutError()), DeadlineExceeded)

    def test_invalid_state(self) -> None:
        assert isinstance(translate_error(asyncio.InvalidStateError()), SessionClosed)

    def test_os_error(self) -> None:
        assert isinstance(translate_error(ConnectionResetError("reset")), ClientConnectionError)

    def test_anything_else_is_server_error(self) -> None:
        result = translate_error(RuntimeError("odd"))
        assert isinstance(result, ServerError)
        assert result.code == "RuntimeError"


class TestUnwrap:
    def test_returns_values(self) -> None:
        assert unwrap(5) == 5

    def test_raises_errors(self) -> None:
        with pytest.raises(StreamDeletedError):
            unwrap(StreamDeletedError("x"))


# =============================================================================
# Translators
# =============================================================================


class TestReadContentTranslator:
    """Tests for the read and subscription content translator."""

    def test_event(self) -> None:
        translator = ReadContentTranslator(stream_name="orders-1")
        result = translator.translate(RawMessage.event("orders-1", 4, commit_position=40))
        assert isinstance(result, EventEnvelope)
        assert result.revision == 4
        assert result.position == Position(40, 40)
        assert result.event.stream_name == "orders-1"

    def test_confirmation(self) -> None:
        result = ReadContentTranslator().translate(RawMessage.confirmation("sub-1"))
        assert result == SubscriptionConfirmation(subscription_id="sub-1")

    def test_checkpoint(self) -> None:
        result = ReadContentTranslator().translate(RawMessage.checkpoint(12, 10))
        assert result == Checkpoint(position=Position(12, 10))

    def test_caught_up(self) -> None:
        assert ReadContentTranslator().translate(RawMessage.caught_up()) == CaughtUp()

    def test_stream_positions(self) -> None:
        translator = ReadContentTranslator()
        first = translator.translate(
            RawMessage.create(MessageKind.FIRST_STREAM_POSITION, {"revision": 0})
        )
        last_all = translator.translate(
            RawMessage.create(
                MessageKind.LAST_ALL_STREAM_POSITION,
                {"commit_position": 9, "prepare_position": 9},
            )
        )
        assert first == FirstStreamPosition(revision=0)
        assert last_all == LastAllStreamPosition(position=Position(9, 9))

    def test_stream_not_found_is_error_value(self) -> None:
        """Errors are returned, not raised."""
        result = ReadContentTranslator(stream_name="orders-1").translate(
            RawMessage.stream_not_found("orders-1")
        )
        assert isinstance(result, StreamNotFoundError)
        assert result.stream_name == "orders-1"

    def test_unknown_kind_is_decode_error(self) -> None:
        result = ReadContentTranslator().translate(RawMessage.create("mystery"))
        assert isinstance(result, DecodeError)
        assert result.details == {"kind": "mystery"}

    def test_malformed_event_is_decode_error(self) -> None:
        result = ReadContentTranslator().translate(RawMessage.create("event", {"event": {}}))
        assert isinstance(result, DecodeError)

    @pytest.mark.parametrize("field", ["commit_position", "retry_count"])
    def test_malformed_envelope_field_is_decode_error(self, field: str) -> None:
        message = RawMessage.event("orders-1", 0)
        message.data[field] = "garbage"

        result = ReadContentTranslator().translate(message)

        assert isinstance(result, DecodeError)

    def test_missing_revision_is_decode_error(self) -> None:
        result = ReadContentTranslator().translate(
            RawMessage.create(MessageKind.LAST_STREAM_POSITION)
        )
        assert isinstance(result, DecodeError)

    def test_rpc_error_outcome(self) -> None:
        translator = ReadContentTranslator(stream_name="orders-1")
        result = translator.translate(
            RpcError(StatusCode.NOT_FOUND, "", {"exception": "stream-deleted"})
        )
        assert isinstance(result, StreamDeletedError)

    def test_idempotent(self) -> None:
        """Translating the same outcome twice gives equal results."""
        translator = ReadContentTranslator(stream_name="orders-1")
        message = RawMessage.event("orders-1", 1, event_id="a8d3c5b2-0000-0000-0000-000000000001")
        assert translator.translate(message) == translator.translate(message)

        error = RpcError(StatusCode.UNAVAILABLE, "down")
        first = translator.translate(error)
        second = translator.translate(error)
        assert isinstance(first, EventStoreError)
        assert first == second


class TestDiscardedTranslator:
    def test_empty_and_success(self) -> None:
        translator = DiscardedTranslator()
        assert translator.translate(RawMessage.empty()) is DISCARDED
        assert translator.translate(RawMessage.create(MessageKind.SUCCESS)) is DISCARDED

    def test_other_kinds(self) -> None:
        assert isinstance(DiscardedTranslator().translate(RawMessage.caught_up()), DecodeError)


class TestMalformedPayloads:
    """Bad fields in a well-formed message become DecodeError values."""

    def test_invalid_append_revision(self) -> None:
        translator = AppendTranslator("orders-1", StreamState.ANY)

        result = translator.translate(
            RawMessage.create(MessageKind.SUCCESS, {"current_revision": "garbage"})
        )

        assert isinstance(result, DecodeError)
        assert result.details == {"kind": MessageKind.SUCCESS.value}

    def test_lookup_failures(self) -> None:
        class StrictTranslator(ResponseTranslator[int]):
            def translate_message(self, message: RawMessage) -> int:
                return int(message.data["count"])

        translator = StrictTranslator()

        assert isinstance(translator.translate(RawMessage.create("result")), DecodeError)
        assert isinstance(
            translator.translate(RawMessage.create("result", {"count": None})), DecodeError
        )
