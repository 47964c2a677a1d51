"""gRPC transport.

Issues calls over a grpc.aio channel using generic multicallables: requests
are serialized by the codec, responses arrive as raw bytes and are decoded
by the codec as they are pulled. AioRpcError is converted to RpcError so the
layers above never depend on grpc types.
"""

from __future__ import annotations

import logging
from collections.abc import AsyncIterator
from typing import Any

import grpc
from grpc import aio

from ..errors import ClientConnectionError
from ..protocol.codec import Codec, JsonCodec
from ..protocol.messages import RawMessage, Request, RpcError, StatusCode
from ..settings import ClientSettings, Endpoint
from .base import BaseTransport, Metadata, TransportConfig

logger = logging.getLogger(__name__)


def to_rpc_error(error: aio.AioRpcError) -> RpcError:
    """Convert a grpc error into the transport-neutral RpcError."""
    try:
        code = StatusCode(error.code().name)
    except ValueError:
        code = StatusCode.UNKNOWN
    trailers: dict[str, str] = {}
    for key, value in error.trailing_metadata() or ():
        trailers[key] = value.decode("utf-8", "replace") if isinstance(value, bytes) else value
    return RpcError(code, error.details() or "", trailers)


def _channel_options(config: TransportConfig) -> list[tuple[str, Any]]:
    options: list[tuple[str, Any]] = [
        ("grpc.max_receive_message_length", config.max_message_length),
    ]
    if config.keep_alive_interval is not None:
        options.append(("grpc.keepalive_time_ms", int(config.keep_alive_interval * 1000)))
    if config.keep_alive_timeout is not None:
        options.append(("grpc.keepalive_timeout_ms", int(config.keep_alive_timeout * 1000)))
    if config.connection_name:
        options.append(("grpc.primary_user_agent", config.connection_name))
    return options


class GrpcStreamCall:
    """Wraps a grpc.aio streaming call; decodes responses as they arrive."""

    def __init__(self, call: Any, codec: Codec):
        self._call = call
        self._codec = codec

    async def __aiter__(self) -> AsyncIterator[RawMessage]:
        try:
            async for data in self._call:
                yield self._codec.decode(data)
        except aio.AioRpcError as e:
            raise to_rpc_error(e) from e

    def cancel(self) -> bool:
        return self._call.cancel()

    def done(self) -> bool:
        return self._call.done()


class GrpcDuplexCall(GrpcStreamCall):
    """Wraps a grpc.aio stream-stream call."""

    async def write(self, request: Request) -> None:
        try:
            await self._call.write(request)
        except aio.AioRpcError as e:
            raise to_rpc_error(e) from e

    async def done_writing(self) -> None:
        await self._call.done_writing()


class GrpcTransport(BaseTransport):
    """Transport over a grpc.aio channel to one node.

    The channel is created on first use and shared by every call issued
    through this transport.
    """

    def __init__(self, config: TransportConfig, codec: Codec | None = None):
        super().__init__(config)
        self.codec: Codec = codec or JsonCodec()
        self._channel: aio.Channel | None = None

    async def _do_connect(self) -> None:
        target = self.config.endpoint.target
        options = _channel_options(self.config)
        if self.config.tls:
            credentials = grpc.ssl_channel_credentials(
                root_certificates=self.config.root_certificates,
            )
            self._channel = aio.secure_channel(target, credentials, options=options)
        else:
            self._channel = aio.insecure_channel(target, options=options)
        logger.debug(f"Opened {'secure' if self.config.tls else 'insecure'} channel to {target}")

    async def _do_close(self) -> None:
        if self._channel is not None:
            await self._channel.close()
            self._channel = None

    @property
    def channel(self) -> aio.Channel:
        if self._channel is None:
            raise ClientConnectionError(f"No channel to {self.endpoint}")
        return self._channel

    async def _do_unary_unary(
        self, method: str, request: Request, timeout: float | None, metadata: Metadata
    ) -> RawMessage:
        multicallable = self.channel.unary_unary(method, request_serializer=self.codec.encode)
        try:
            data = await multicallable(request, timeout=timeout, metadata=metadata or None)
        except aio.AioRpcError as e:
            raise to_rpc_error(e) from e
        return self.codec.decode(data)

    def _do_unary_stream(
        self, method: str, request: Request, timeout: float | None, metadata: Metadata
    ) -> GrpcStreamCall:
        multicallable = self.channel.unary_stream(method, request_serializer=self.codec.encode)
        call = multicallable(request, timeout=timeout, metadata=metadata or None)
        return GrpcStreamCall(call, self.codec)

    async def _do_stream_unary(
        self, method: str, requests: list[Request], timeout: float | None, metadata: Metadata
    ) -> RawMessage:
        multicallable = self.channel.stream_unary(method, request_serializer=self.codec.encode)
        try:
            data = await multicallable(iter(requests), timeout=timeout, metadata=metadata or None)
        except aio.AioRpcError as e:
            raise to_rpc_error(e) from e
        return self.codec.decode(data)

    def _do_stream_stream(
        self, method: str, timeout: float | None, metadata: Metadata
    ) -> GrpcDuplexCall:
        multicallable = self.channel.stream_stream(method, request_serializer=self.codec.encode)
        call = multicallable(timeout=timeout, metadata=metadata or None)
        return GrpcDuplexCall(call, self.codec)


def create_grpc_transport(
    settings: ClientSettings,
    endpoint: Endpoint | None = None,
    codec: Codec | None = None,
) -> GrpcTransport:
    """Create a gRPC transport for one node.

    Args:
        settings: Client settings supplying TLS and channel options
        endpoint: Node to connect to (default: first configured endpoint)
        codec: Wire codec (default: JsonCodec)

    Returns:
        GrpcTransport bound to the endpoint
    """
    config = TransportConfig.from_settings(settings, endpoint or settings.endpoints[0])
    return GrpcTransport(config, codec)
