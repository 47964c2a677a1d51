"""Mock transport for testing.

Allows injecting canned responses, scripting streaming calls step by step,
and recording every request sent. No actual I/O; everything is in-memory.

Usage:
    transport = MockTransport()
    transport.set_response(READ_METHOD, [
        RawMessage.event("orders-1", 0),
        RawMessage.event("orders-1", 1),
    ])

    call = transport.script(SUBSCRIBE_METHOD)
    ...
    call.feed(RawMessage.confirmation("sub-123"))
    call.finish()

    assert transport.recorded_requests[0][0] == READ_METHOD
"""

from __future__ import annotations

import asyncio
import logging
from collections import defaultdict, deque
from collections.abc import AsyncIterator, Callable, Iterable, Sequence
from typing import Union

from ..protocol.messages import RawMessage, Request
from ..settings import Endpoint
from .base import BaseTransport, Metadata, TransportConfig

logger = logging.getLogger(__name__)

Response = Union[RawMessage, BaseException]


class _Finish:
    def __repr__(self) -> str:
        return "FINISH"


_FINISH = _Finish()


class ScriptedCall:
    """A streaming call whose responses are pushed by the test.

    Behaves like a grpc.aio call: iterating a cancelled call raises
    asyncio.CancelledError, writing to a finished call raises
    asyncio.InvalidStateError.
    """

    def __init__(
        self,
        method: str,
        on_write: Callable[[str, Request], None] | None = None,
    ):
        self.method = method
        self.requests: list[Request] = []
        self.cancel_count = 0
        self.half_closed = False
        self.metadata: Metadata = ()
        self.timeout: float | None = None
        self._on_write = on_write
        self._queue: asyncio.Queue[RawMessage | BaseException | _Finish] = asyncio.Queue()
        self._done = False
        self._cancelled = False

    @property
    def cancelled(self) -> bool:
        return self._cancelled

    def feed(self, *messages: RawMessage) -> None:
        """Deliver messages to the reader."""
        for message in messages:
            self._queue.put_nowait(message)

    def fail(self, error: BaseException) -> None:
        """Terminate the call with an error after queued messages."""
        self._queue.put_nowait(error)

    def finish(self) -> None:
        """Close the call normally after queued messages."""
        self._queue.put_nowait(_FINISH)

    def extend(self, responses: Iterable[Response], finish: bool = True) -> None:
        """Queue a canned response list; a trailing exception fails the call."""
        failed = False
        for response in responses:
            if isinstance(response, BaseException):
                self.fail(response)
                failed = True
                break
            self.feed(response)
        if finish and not failed:
            self.finish()

    async def __aiter__(self) -> AsyncIterator[RawMessage]:
        while True:
            if self._cancelled:
                raise asyncio.CancelledError()
            item = await self._queue.get()
            if self._cancelled:
                raise asyncio.CancelledError()
            if isinstance(item, _Finish):
                self._done = True
                return
            if isinstance(item, BaseException):
                self._done = True
                raise item
            yield item

    def cancel(self) -> bool:
        self.cancel_count += 1
        if self._done:
            return False
        self._done = True
        self._cancelled = True
        # Wake a reader blocked on the queue
        self._queue.put_nowait(_FINISH)
        logger.debug(f"Scripted call {self.method} cancelled")
        return True

    def done(self) -> bool:
        return self._done

    async def write(self, request: Request) -> None:
        if self._done or self.half_closed:
            raise asyncio.InvalidStateError("RPC already finished.")
        self.requests.append(request)
        if self._on_write:
            self._on_write(self.method, request)

    async def done_writing(self) -> None:
        self.half_closed = True


class MockTransport(BaseTransport):
    """Mock transport for testing.

    Unary calls return the response set for their method (default: an
    empty message). Streaming calls use the next scripted call for their
    method, or a call pre-filled with the canned response list.
    """

    def __init__(
        self,
        endpoint: Endpoint | None = None,
        supported_methods: Iterable[str] | None = None,
    ):
        super().__init__(
            TransportConfig(
                endpoint=endpoint or Endpoint("localhost"),
                tls=False,
                supported_methods=(
                    frozenset(supported_methods) if supported_methods is not None else None
                ),
            )
        )
        self._responses: dict[str, Response | Sequence[Response]] = {}
        self._delays: dict[str, float] = {}
        self._scripts: dict[str, deque[ScriptedCall]] = defaultdict(deque)
        self._recorded_requests: list[tuple[str, Request]] = []
        self._recorded_metadata: list[tuple[str, Metadata]] = []
        self.calls: list[ScriptedCall] = []
        self.connect_count = 0

    @property
    def recorded_requests(self) -> list[tuple[str, Request]]:
        """All (method, request) pairs sent through this transport."""
        return self._recorded_requests.copy()

    @property
    def recorded_metadata(self) -> list[tuple[str, Metadata]]:
        """Call metadata, one entry per call opened."""
        return self._recorded_metadata.copy()

    def requests_for(self, method: str) -> list[Request]:
        return [request for m, request in self._recorded_requests if m == method]

    def set_response(
        self,
        method: str,
        response: Response | Sequence[Response],
        delay: float = 0.0,
    ) -> None:
        """Set the canned response for a method.

        Args:
            method: RPC method path
            response: A message or exception for unary calls; a list of
                messages (optionally ending with an exception) for streams
            delay: Seconds to wait before responding
        """
        self._responses[method] = response
        self._delays[method] = delay

    def script(self, method: str) -> ScriptedCall:
        """Return the call the next streaming request to `method` will use."""
        call = ScriptedCall(method, on_write=self._record)
        self._scripts[method].append(call)
        return call

    def clear(self) -> None:
        """Clear recorded requests, responses and scripts."""
        self._recorded_requests.clear()
        self._recorded_metadata.clear()
        self._responses.clear()
        self._delays.clear()
        self._scripts.clear()
        self.calls.clear()

    def _record(self, method: str, request: Request) -> None:
        self._recorded_requests.append((method, request))

    def _unary_response(self, method: str) -> RawMessage:
        response = self._responses.get(method, RawMessage.empty())
        if isinstance(response, (list, tuple)):
            response = response[0]
        if isinstance(response, BaseException):
            raise response
        if not isinstance(response, RawMessage):
            raise TypeError(f"Canned response for {method} is not a message: {response!r}")
        return response

    def _open_call(self, method: str, timeout: float | None, metadata: Metadata) -> ScriptedCall:
        self._recorded_metadata.append((method, metadata))
        scripts = self._scripts.get(method)
        if scripts:
            call = scripts.popleft()
        else:
            call = ScriptedCall(method, on_write=self._record)
            response = self._responses.get(method, [])
            if not isinstance(response, (list, tuple)):
                response = [response]
            call.extend(response)
        call.timeout = timeout
        call.metadata = metadata
        self.calls.append(call)
        return call

    async def _do_connect(self) -> None:
        """No-op for mock."""
        self.connect_count += 1

    async def _do_close(self) -> None:
        for call in self.calls:
            if not call.done():
                call.cancel()

    async def _do_unary_unary(
        self, method: str, request: Request, timeout: float | None, metadata: Metadata
    ) -> RawMessage:
        self._record(method, request)
        self._recorded_metadata.append((method, metadata))
        if self._delays.get(method):
            await asyncio.sleep(self._delays[method])
        return self._unary_response(method)

    def _do_unary_stream(
        self, method: str, request: Request, timeout: float | None, metadata: Metadata
    ) -> ScriptedCall:
        self._record(method, request)
        call = self._open_call(method, timeout, metadata)
        call.requests.append(request)
        return call

    async def _do_stream_unary(
        self, method: str, requests: list[Request], timeout: float | None, metadata: Metadata
    ) -> RawMessage:
        for request in requests:
            self._record(method, request)
        self._recorded_metadata.append((method, metadata))
        if self._delays.get(method):
            await asyncio.sleep(self._delays[method])
        return self._unary_response(method)

    def _do_stream_stream(
        self, method: str, timeout: float | None, metadata: Metadata
    ) -> ScriptedCall:
        return self._open_call(method, timeout, metadata)


def create_mock_transport(
    endpoint: Endpoint | None = None,
    supported_methods: Iterable[str] | None = None,
) -> MockTransport:
    """Create a mock transport for testing.

    Returns:
        MockTransport for testing
    """
    return MockTransport(endpoint=endpoint, supported_methods=supported_methods)
