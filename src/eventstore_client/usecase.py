"""Operation shapes.

Every operation subclasses exactly one of the four call shapes:

- UnaryUnary: one request, one response
- StreamUnary: a stream of requests, one response
- UnaryStream: one request, a stream of responses
- StreamStream: both directions stream on one call

An operation declares its RPC method, a name for diagnostics, how to build
its request(s) and how to translate responses. Requests are built before
any I/O, so a RequestBuildError never reaches the network. The shapes
never retry.

send() runs the operation on a given transport; perform() first obtains
a transport from a node selector and checks the node serves the method.
"""

from __future__ import annotations

import asyncio
import dataclasses
import logging
from abc import ABC, abstractmethod
from collections.abc import Iterable
from typing import TYPE_CHECKING, Any, ClassVar, Generic, TypeVar

from .errors import EventStoreError, UnsupportedFeatureError
from .protocol.messages import RawMessage, Request
from .settings import CallOptions, NodePreference
from .streaming import CompletionCallback, DuplexBridge, StreamingBridge
from .translate import ResponseTranslator
from .transport.base import Metadata, Transport

if TYPE_CHECKING:
    from .selector import NodeSelector

logger = logging.getLogger(__name__)

R = TypeVar("R")


def _raise_or_return(result: Any, cause: BaseException | None = None) -> Any:
    if isinstance(result, EventStoreError):
        if result is cause:
            raise result
        raise result from cause
    return result


class Usecase(ABC, Generic[R]):
    """Base for all operations."""

    name: ClassVar[str]
    method: ClassVar[str]
    requires_leader: ClassVar[bool] = False
    # Whether the client's default deadline applies. Subscriptions run until
    # cancelled, so only a timeout the caller sets bounds them.
    bounded: ClassVar[bool] = True

    @abstractmethod
    def translator(self) -> ResponseTranslator[Any]:
        """Translator for this operation's responses."""
        ...

    def preferred_role(self, options: CallOptions) -> NodePreference | None:
        if self.requires_leader or options.requires_leader:
            return NodePreference.LEADER
        return None

    def call_metadata(self, options: CallOptions) -> Metadata:
        if self.requires_leader and not options.requires_leader:
            options = dataclasses.replace(options, requires_leader=True)
        return options.metadata()

    def call_timeout(self, options: CallOptions) -> float | None:
        return options.timeout

    async def acquire(self, selector: NodeSelector, options: CallOptions) -> Transport:
        """Get a transport for this operation and check the node serves it.

        Raises:
            ClientConnectionError: If no node is available
            UnsupportedFeatureError: If the node does not serve the method
        """
        transport = await selector.acquire_transport(self.preferred_role(options))
        if not selector.is_supported(transport.endpoint, self.method):
            raise UnsupportedFeatureError(self.method, str(transport.endpoint))
        return transport

    def __repr__(self) -> str:
        return f"<{type(self).__name__} {self.name}>"


class UnaryUnary(Usecase[R]):
    """One request, one response."""

    @abstractmethod
    def request_message(self) -> Request:
        """Build the request. Raises RequestBuildError for bad input."""
        ...

    async def send(self, transport: Transport, options: CallOptions | None = None) -> R:
        options = options or CallOptions()
        request = self.request_message()
        timeout = self.call_timeout(options)
        outcome: RawMessage | BaseException
        try:
            outcome = await asyncio.wait_for(
                transport.unary_unary(
                    self.method,
                    request,
                    timeout=timeout,
                    metadata=self.call_metadata(options),
                ),
                timeout,
            )
        except Exception as e:
            outcome = e
        result = self.translator().translate(outcome)
        return _raise_or_return(result, outcome if isinstance(outcome, BaseException) else None)

    async def perform(self, selector: NodeSelector, options: CallOptions | None = None) -> R:
        options = options or CallOptions()
        transport = await self.acquire(selector, options)
        return await self.send(transport, options)


class StreamUnary(Usecase[R]):
    """A stream of requests, one response."""

    @abstractmethod
    def request_messages(self) -> Iterable[Request]:
        """Build all requests. Raises RequestBuildError for bad input."""
        ...

    async def send(self, transport: Transport, options: CallOptions | None = None) -> R:
        options = options or CallOptions()
        # Built eagerly so build errors surface before the call opens.
        requests = list(self.request_messages())
        timeout = self.call_timeout(options)
        outcome: RawMessage | BaseException
        try:
            outcome = await asyncio.wait_for(
                transport.stream_unary(
                    self.method,
                    requests,
                    timeout=timeout,
                    metadata=self.call_metadata(options),
                ),
                timeout,
            )
        except Exception as e:
            outcome = e
        result = self.translator().translate(outcome)
        return _raise_or_return(result, outcome if isinstance(outcome, BaseException) else None)

    async def perform(self, selector: NodeSelector, options: CallOptions | None = None) -> R:
        options = options or CallOptions()
        transport = await self.acquire(selector, options)
        return await self.send(transport, options)


class UnaryStream(Usecase[R]):
    """One request, a stream of responses."""

    @abstractmethod
    def request_message(self) -> Request:
        """Build the request. Raises RequestBuildError for bad input."""
        ...

    async def responses(self, bridge: StreamingBridge[Any]) -> R:
        """Wrap the bridge in the operation's result type."""
        return bridge  # type: ignore[return-value]

    async def send(
        self,
        transport: Transport,
        options: CallOptions | None = None,
        completion: CompletionCallback | None = None,
    ) -> R:
        options = options or CallOptions()
        request = self.request_message()
        translator = self.translator()
        try:
            call = await transport.unary_stream(
                self.method,
                request,
                timeout=self.call_timeout(options),
                metadata=self.call_metadata(options),
            )
        except Exception as e:
            _raise_or_return(translator.translate(e), e)
            raise
        bridge: StreamingBridge[Any] = StreamingBridge(
            call, translator.translate, on_complete=completion, name=self.name
        )
        return await self.responses(bridge)

    async def perform(
        self,
        selector: NodeSelector,
        options: CallOptions | None = None,
        completion: CompletionCallback | None = None,
    ) -> R:
        options = options or CallOptions()
        transport = await self.acquire(selector, options)
        return await self.send(transport, options, completion)


class StreamStream(Usecase[R]):
    """Requests and responses stream on one call."""

    @abstractmethod
    def request_messages(self) -> Iterable[Request]:
        """Build the requests sent when the call opens."""
        ...

    async def responses(self, bridge: DuplexBridge[Any]) -> R:
        """Wrap the bridge in the operation's result type."""
        return bridge  # type: ignore[return-value]

    async def send(
        self,
        transport: Transport,
        options: CallOptions | None = None,
        completion: CompletionCallback | None = None,
    ) -> R:
        options = options or CallOptions()
        requests = list(self.request_messages())
        translator = self.translator()
        try:
            call = await transport.stream_stream(
                self.method,
                requests,
                timeout=self.call_timeout(options),
                metadata=self.call_metadata(options),
            )
        except Exception as e:
            _raise_or_return(translator.translate(e), e)
            raise
        bridge: DuplexBridge[Any] = DuplexBridge(
            call, translator.translate, on_complete=completion, name=self.name
        )
        return await self.responses(bridge)

    async def perform(
        self,
        selector: NodeSelector,
        options: CallOptions | None = None,
        completion: CompletionCallback | None = None,
    ) -> R:
        options = options or CallOptions()
        transport = await self.acquire(selector, options)
        return await self.send(transport, options, completion)
