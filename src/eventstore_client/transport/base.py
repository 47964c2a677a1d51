"""Transport abstraction.

A transport is bound to one cluster node and issues calls in the four RPC
shapes. It moves requests and raw messages; it does not translate them.

Architecture:
- Transport is the PROTOCOL (interface) the operations depend on
- BaseTransport holds state management and lazy connection
- Implementations (gRPC, mock) provide the _do_* hooks

Transports are shared by many concurrent operations. Each streaming call
returned by a transport belongs to exactly one consumer.
"""

from __future__ import annotations

import asyncio
import logging
from abc import ABC, abstractmethod
from collections.abc import AsyncIterator, Iterable
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Protocol, runtime_checkable

from ..errors import ClientConnectionError
from ..protocol.messages import RawMessage, Request
from ..settings import DEFAULT_MAX_MESSAGE_LENGTH, ClientSettings, Endpoint

logger = logging.getLogger(__name__)

Metadata = tuple[tuple[str, str], ...]


class TransportState(str, Enum):
    """Connection state machine."""

    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    CLOSED = "closed"


@dataclass
class TransportConfig:
    """Configuration for a transport bound to one node."""

    endpoint: Endpoint = field(default_factory=lambda: Endpoint("localhost"))
    tls: bool = True
    root_certificates: bytes | None = None

    keep_alive_interval: float | None = 10.0
    keep_alive_timeout: float | None = 10.0
    max_message_length: int = DEFAULT_MAX_MESSAGE_LENGTH
    connection_name: str | None = None

    # RPC methods the node advertises; None when unknown
    supported_methods: frozenset[str] | None = None

    @classmethod
    def from_settings(
        cls,
        settings: ClientSettings,
        endpoint: Endpoint,
        supported_methods: Iterable[str] | None = None,
    ) -> TransportConfig:
        return cls(
            endpoint=endpoint,
            tls=settings.tls,
            root_certificates=settings.root_certificates,
            keep_alive_interval=settings.keep_alive_interval,
            keep_alive_timeout=settings.keep_alive_timeout,
            max_message_length=settings.max_message_length,
            connection_name=settings.connection_name,
            supported_methods=frozenset(supported_methods) if supported_methods is not None else None,
        )


@runtime_checkable
class StreamCall(Protocol):
    """An in-flight call whose responses arrive as a stream."""

    def __aiter__(self) -> AsyncIterator[RawMessage]:
        """Yield raw messages until the server closes the call.

        Raises:
            RpcError: If the call fails
            DecodeError: If a message cannot be decoded
        """
        ...

    def cancel(self) -> bool:
        """Cancel the call. Returns False if it had already finished."""
        ...

    def done(self) -> bool:
        """Check if the call has finished."""
        ...


@runtime_checkable
class DuplexCall(StreamCall, Protocol):
    """A bidirectional call: the client keeps writing while reading."""

    async def write(self, request: Request) -> None:
        """Send one more request on the call."""
        ...

    async def done_writing(self) -> None:
        """Half-close the request side."""
        ...


@runtime_checkable
class Transport(Protocol):
    """Protocol for transports.

    All transports must implement the four call shapes plus close().
    """

    @property
    def endpoint(self) -> Endpoint:
        """Node this transport is bound to."""
        ...

    @property
    def supported_methods(self) -> frozenset[str] | None:
        """RPC methods the node advertises, None when unknown."""
        ...

    async def unary_unary(
        self,
        method: str,
        request: Request,
        *,
        timeout: float | None = None,
        metadata: Metadata = (),
    ) -> RawMessage:
        """Send one request and await one response."""
        ...

    async def unary_stream(
        self,
        method: str,
        request: Request,
        *,
        timeout: float | None = None,
        metadata: Metadata = (),
    ) -> StreamCall:
        """Send one request and return the response stream."""
        ...

    async def stream_unary(
        self,
        method: str,
        requests: Iterable[Request],
        *,
        timeout: float | None = None,
        metadata: Metadata = (),
    ) -> RawMessage:
        """Stream requests and await one response."""
        ...

    async def stream_stream(
        self,
        method: str,
        requests: Iterable[Request],
        *,
        timeout: float | None = None,
        metadata: Metadata = (),
    ) -> DuplexCall:
        """Open a bidirectional call, writing `requests` first."""
        ...

    async def close(self) -> None:
        """Release the connection."""
        ...


class BaseTransport(ABC):
    """Base class for transports with common functionality.

    Provides:
    - State management
    - Lazy connection on first call
    - Call bookkeeping for diagnostics
    """

    def __init__(self, config: TransportConfig):
        self.config = config
        self._state = TransportState.DISCONNECTED
        self._lock = asyncio.Lock()
        self._calls_started = 0

    @property
    def state(self) -> TransportState:
        """Current connection state."""
        return self._state

    @property
    def is_connected(self) -> bool:
        return self._state == TransportState.CONNECTED

    @property
    def endpoint(self) -> Endpoint:
        return self.config.endpoint

    @property
    def supported_methods(self) -> frozenset[str] | None:
        return self.config.supported_methods

    @property
    def calls_started(self) -> int:
        return self._calls_started

    async def connect(self) -> None:
        """Establish the connection. Idempotent."""
        async with self._lock:
            if self._state == TransportState.CONNECTED:
                return
            if self._state == TransportState.CLOSED:
                raise ClientConnectionError(
                    f"Transport to {self.endpoint} is closed", {"endpoint": str(self.endpoint)}
                )

            self._state = TransportState.CONNECTING
            try:
                await self._do_connect()
                self._state = TransportState.CONNECTED
                logger.info(f"{self.__class__.__name__} connected to {self.endpoint}")
            except Exception as e:
                self._state = TransportState.DISCONNECTED
                raise ClientConnectionError(
                    f"Failed to connect to {self.endpoint}: {e}",
                    {"endpoint": str(self.endpoint)},
                ) from e

    async def close(self) -> None:
        """Close the connection. In-flight calls are cancelled."""
        async with self._lock:
            if self._state == TransportState.CLOSED:
                return
            was_connected = self._state == TransportState.CONNECTED
            self._state = TransportState.CLOSED
            if was_connected:
                await self._do_close()
            logger.info(f"{self.__class__.__name__} to {self.endpoint} closed")

    async def _ensure_connected(self, method: str) -> None:
        if not self.is_connected:
            await self.connect()
        self._calls_started += 1
        logger.debug(f"{method} -> {self.endpoint}")

    async def unary_unary(
        self,
        method: str,
        request: Request,
        *,
        timeout: float | None = None,
        metadata: Metadata = (),
    ) -> RawMessage:
        await self._ensure_connected(method)
        return await self._do_unary_unary(method, request, timeout, metadata)

    async def unary_stream(
        self,
        method: str,
        request: Request,
        *,
        timeout: float | None = None,
        metadata: Metadata = (),
    ) -> StreamCall:
        await self._ensure_connected(method)
        return self._do_unary_stream(method, request, timeout, metadata)

    async def stream_unary(
        self,
        method: str,
        requests: Iterable[Request],
        *,
        timeout: float | None = None,
        metadata: Metadata = (),
    ) -> RawMessage:
        await self._ensure_connected(method)
        return await self._do_stream_unary(method, list(requests), timeout, metadata)

    async def stream_stream(
        self,
        method: str,
        requests: Iterable[Request],
        *,
        timeout: float | None = None,
        metadata: Metadata = (),
    ) -> DuplexCall:
        await self._ensure_connected(method)
        call = self._do_stream_stream(method, timeout, metadata)
        try:
            for request in requests:
                await call.write(request)
        except BaseException:
            call.cancel()
            raise
        return call

    # Abstract methods for subclasses
    @abstractmethod
    async def _do_connect(self) -> None:
        """Implementation-specific connection logic."""
        ...

    @abstractmethod
    async def _do_close(self) -> None:
        """Implementation-specific close logic."""
        ...

    @abstractmethod
    async def _do_unary_unary(
        self, method: str, request: Request, timeout: float | None, metadata: Metadata
    ) -> RawMessage: ...

    @abstractmethod
    def _do_unary_stream(
        self, method: str, request: Request, timeout: float | None, metadata: Metadata
    ) -> StreamCall: ...

    @abstractmethod
    async def _do_stream_unary(
        self, method: str, requests: list[Request], timeout: float | None, metadata: Metadata
    ) -> RawMessage: ...

    @abstractmethod
    def _do_stream_stream(
        self, method: str, timeout: float | None, metadata: Metadata
    ) -> DuplexCall: ...

    async def __aenter__(self) -> BaseTransport:
        await self.connect()
        return self

    async def __aexit__(self, *args: Any) -> None:
        await self.close()
