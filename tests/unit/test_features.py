"""Unit tests for server feature discovery."""

from __future__ import annotations

import pytest

from eventstore_client import (
    ClientConnectionError,
    ClientSettings,
    EventData,
    EventStoreClient,
    StreamAppend,
    UnsupportedFeatureError,
    create_test_client,
)
from eventstore_client.errors import DecodeError
from eventstore_client.features import (
    GetSupportedMethods,
    ServerInfo,
    ServerInfoTranslator,
    SupportedMethod,
)
from eventstore_client.protocol import MessageKind, RawMessage, RpcError, StatusCode
from eventstore_client.streams import Append, Delete, MultiStreamAppend, Read
from eventstore_client.transport import MockTransport, TransportState, create_mock_transport

STREAMS = "event_store.client.streams.streams"


def supported_methods(*names: str, version: str = "24.10.0") -> RawMessage:
    """A reply as the server sends it: lower-case service and method names."""
    return RawMessage.create(
        MessageKind.SUPPORTED_METHODS,
        {
            "event_store_server_version": version,
            "methods": [{"service_name": STREAMS, "method_name": n} for n in names],
        },
    )


def discovering_client(transport: MockTransport) -> EventStoreClient:
    settings = ClientSettings(endpoints=[transport.endpoint], tls=False)
    return create_test_client(transport, settings)


class TestServerInfo:
    def test_method_paths(self) -> None:
        info = ServerInfo(
            server_version="24.10.0",
            supported_methods=[SupportedMethod(service_name="svc", method_name="get")],
        )
        assert info.method_paths() == frozenset({"/svc/get"})

    def test_names_compare_case_insensitively(self) -> None:
        info = ServerInfo(
            supported_methods=[SupportedMethod(service_name=STREAMS, method_name="append")]
        )

        assert info.is_supported(Append.method)
        assert not info.is_supported(MultiStreamAppend.method)


class TestServerInfoTranslator:
    def test_decodes_reply(self) -> None:
        result = ServerInfoTranslator().translate(supported_methods("read", "append"))

        assert isinstance(result, ServerInfo)
        assert result.server_version == "24.10.0"
        assert [m.method_name for m in result.supported_methods] == ["read", "append"]

    def test_feature_flags(self) -> None:
        message = RawMessage.create(
            MessageKind.SUPPORTED_METHODS,
            {
                "methods": [
                    {"service_name": STREAMS, "method_name": "read", "features": ["position"]}
                ]
            },
        )

        result = ServerInfoTranslator().translate(message)

        assert isinstance(result, ServerInfo)
        assert result.supported_methods[0].features == ["position"]
        assert result.server_version == ""

    def test_other_kind_is_decode_error(self) -> None:
        assert isinstance(ServerInfoTranslator().translate(RawMessage.empty()), DecodeError)

    def test_malformed_method_is_decode_error(self) -> None:
        message = RawMessage.create(MessageKind.SUPPORTED_METHODS, {"methods": [{"x": 1}]})
        assert isinstance(ServerInfoTranslator().translate(message), DecodeError)


# =============================================================================
# Discovery through the node selector
# =============================================================================


class TestDiscovery:
    """Tests for asking a node what it serves on first use."""

    @pytest.mark.asyncio
    async def test_unserved_method_fails_before_the_call(self) -> None:
        transport = create_mock_transport()
        transport.set_response(GetSupportedMethods.method, supported_methods("read", "append"))
        transport.set_response(
            Append.method,
            RawMessage.create(MessageKind.SUCCESS, {"current_revision": 0}),
        )
        client = discovering_client(transport)

        result = await client.streams.append("orders-1", [EventData.of_json("placed", {})])
        with pytest.raises(UnsupportedFeatureError) as exc_info:
            await client.streams.append_multi(
                [StreamAppend("orders-1", [EventData.of_json("paid", {})])]
            )

        assert result.next_expected_revision == 0
        assert exc_info.value.method == MultiStreamAppend.method
        assert transport.requests_for(MultiStreamAppend.method) == []

    @pytest.mark.asyncio
    async def test_asks_once_per_transport(self) -> None:
        transport = create_mock_transport()
        transport.set_response(GetSupportedMethods.method, supported_methods("delete"))
        client = discovering_client(transport)

        await client.streams.delete("orders-1")
        await client.streams.delete("orders-2")

        assert len(transport.requests_for(GetSupportedMethods.method)) == 1
        member = client.selector.members[0]
        assert member.server_version == "24.10.0"
        assert member.supported_methods == frozenset({f"/{STREAMS}/delete"})

    @pytest.mark.asyncio
    async def test_known_methods_skip_discovery(self) -> None:
        transport = create_mock_transport(supported_methods=[Read.method])
        client = discovering_client(transport)

        with pytest.raises(UnsupportedFeatureError):
            await client.streams.delete("orders-1")

        assert transport.requests_for(GetSupportedMethods.method) == []

    @pytest.mark.asyncio
    async def test_unanswered_discovery_restricts_nothing(self) -> None:
        transport = create_mock_transport()
        transport.set_response(
            GetSupportedMethods.method, RpcError(StatusCode.UNIMPLEMENTED, "no such service")
        )
        client = discovering_client(transport)

        await client.streams.delete("orders-1")

        assert client.selector.members[0].supported_methods is None
        assert len(transport.requests_for(Delete.method)) == 1

    @pytest.mark.asyncio
    async def test_connection_failure_propagates(self) -> None:
        transport = create_mock_transport()
        transport.set_response(
            GetSupportedMethods.method, RpcError(StatusCode.UNAVAILABLE, "connection refused")
        )
        client = discovering_client(transport)

        with pytest.raises(ClientConnectionError):
            await client.streams.delete("orders-1")

        assert transport.state == TransportState.CLOSED

    @pytest.mark.asyncio
    async def test_server_info_on_demand(self) -> None:
        transport = create_mock_transport()
        transport.set_response(GetSupportedMethods.method, supported_methods("read"))
        client = create_test_client(transport)

        info = await client.server_info()

        assert info.server_version == "24.10.0"
        assert info.is_supported(Read.method)
