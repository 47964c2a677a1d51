"""Streaming bridge.

Turns a push-driven streaming call into a pull-driven async iterator.

A background receive task reads the call, translates each message and
hands it to the consumer through a single slot: the task suspends until
the consumer has taken the previous item, so at most one item is ever
buffered.

The bridge records exactly one terminal transition, either finished
normally or finished with an error. The consumer sees an error as the
exception ending its iteration; after the terminal transition every pull
raises StopAsyncIteration.

Cancelling (cancel(), aclose(), leaving `async with`, cancelling the
consuming task, or dropping the last reference to the bridge) closes the
call and stops the receive task. Cancellation is not an error: the
terminal transition is "finished normally" unless an error was already
recorded.

An optional completion callback receives the terminal error (or None)
exactly once, whether or not anybody consumes the iterator.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable
from enum import Enum
from typing import Any, Generic, TypeVar

from .errors import EventStoreError, SessionClosed
from .protocol.messages import Request
from .transport.base import DuplexCall, StreamCall
from .translate import Outcome, translate_error

logger = logging.getLogger(__name__)

T = TypeVar("T")

CompletionCallback = Callable[[EventStoreError | None], None]
Translate = Callable[[Outcome], Any]

# Strong references to running receive tasks; the event loop only keeps weak ones.
_running_tasks: set[asyncio.Task[None]] = set()


class _Marker:
    def __init__(self, name: str):
        self._name = name

    def __repr__(self) -> str:
        return self._name


_EMPTY: Any = _Marker("EMPTY")
_TERMINAL: Any = _Marker("TERMINAL")


class BridgeState(str, Enum):
    """Lifecycle of a bridge."""

    IDLE = "idle"
    RUNNING = "running"
    FINISHED = "finished"


class _Handoff(Generic[T]):
    """Single-slot handoff between one producer and one consumer."""

    def __init__(self) -> None:
        self._item: T = _EMPTY
        self._ready = asyncio.Event()  # item present, or closed
        self._space = asyncio.Event()  # slot empty, or closed
        self._space.set()
        self._closed = False
        self.error: EventStoreError | None = None

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def pending(self) -> bool:
        return self._item is not _EMPTY

    async def put(self, item: T) -> bool:
        """Wait for the slot to empty, then fill it. False once closed."""
        await self._space.wait()
        if self._closed:
            return False
        self._item = item
        self._space.clear()
        self._ready.set()
        return True

    async def get(self) -> T:
        """Take the next item, or _TERMINAL once closed and drained."""
        await self._ready.wait()
        if self._item is _EMPTY:
            return _TERMINAL
        item = self._item
        self._item = _EMPTY
        if not self._closed:
            self._ready.clear()
        self._space.set()
        return item

    def close(self, error: EventStoreError | None = None, drop_pending: bool = False) -> bool:
        """Record the terminal transition. Returns False if already closed."""
        if self._closed:
            return False
        self._closed = True
        self.error = error
        if drop_pending:
            self._item = _EMPTY
        self._ready.set()
        self._space.set()
        return True


class _CallGuard:
    """Closes a call at most once."""

    def __init__(self, call: StreamCall):
        self.call = call
        self.closed = False

    def close(self) -> None:
        if self.closed:
            return
        self.closed = True
        if not self.call.done():
            self.call.cancel()


class _Completion:
    """Invokes the completion callback at most once."""

    def __init__(self, callback: CompletionCallback | None, name: str):
        self._callback = callback
        self._name = name
        self.fired = False

    def fire(self, error: EventStoreError | None) -> None:
        if self.fired:
            return
        self.fired = True
        if error is not None:
            logger.error(f"{self._name} terminated with error: {error}")
        else:
            logger.debug(f"{self._name} finished")
        if self._callback is None:
            return
        try:
            self._callback(error)
        except Exception:
            logger.exception(f"Completion callback for {self._name} raised")


async def _pump(
    call: StreamCall,
    translate: Translate,
    handoff: _Handoff[Any],
    guard: _CallGuard,
    completion: _Completion,
) -> None:
    """Receive loop. Holds no reference to the bridge so the bridge can be collected."""
    error: EventStoreError | None = None
    try:
        async for message in call:
            result = translate(message)
            if isinstance(result, EventStoreError):
                error = result
                break
            if not await handoff.put(result):
                return
    except asyncio.CancelledError:
        # Task cancelled by the bridge, or the call was cancelled underneath us.
        if handoff.close(None):
            completion.fire(None)
        guard.close()
        raise
    except Exception as e:
        result = translate(e)
        error = result if isinstance(result, EventStoreError) else translate_error(e)

    guard.close()
    if handoff.close(error):
        completion.fire(error)


class StreamingBridge(Generic[T]):
    """Pull-based, cancellable view of a streaming call.

    Usage:
        bridge = StreamingBridge(call, translator.translate)
        async with bridge:
            async for item in bridge:
                ...
    """

    def __init__(
        self,
        call: StreamCall,
        translate: Translate,
        on_complete: CompletionCallback | None = None,
        name: str = "stream",
    ):
        self.name = name
        self._call = call
        self._translate = translate
        self._handoff: _Handoff[T] = _Handoff()
        self._guard = _CallGuard(call)
        self._completion = _Completion(on_complete, name)
        self._task: asyncio.Task[None] | None = None
        self._delivered_terminal = False

    @property
    def state(self) -> BridgeState:
        if self._handoff.closed:
            return BridgeState.FINISHED
        if self._task is None:
            return BridgeState.IDLE
        return BridgeState.RUNNING

    @property
    def terminated(self) -> bool:
        """True once the terminal transition is recorded."""
        return self._handoff.closed

    @property
    def error(self) -> EventStoreError | None:
        """Terminal error, if the stream failed."""
        return self._handoff.error

    @property
    def has_pending(self) -> bool:
        """True while an item sits in the handoff slot."""
        return self._handoff.pending

    @property
    def call_closed(self) -> bool:
        return self._guard.closed

    def start(self) -> None:
        """Start the receive task. Called implicitly by the first pull."""
        if self._task is not None or self._handoff.closed:
            return
        self._task = asyncio.create_task(
            _pump(self._call, self._translate, self._handoff, self._guard, self._completion),
            name=f"eventstore-{self.name}",
        )
        _running_tasks.add(self._task)
        self._task.add_done_callback(_running_tasks.discard)

    def __aiter__(self) -> StreamingBridge[T]:
        return self

    async def __anext__(self) -> T:
        if self._delivered_terminal:
            raise StopAsyncIteration
        self.start()
        try:
            item = await self._handoff.get()
        except asyncio.CancelledError:
            self.cancel()
            raise
        if item is _TERMINAL:
            self._delivered_terminal = True
            if self._handoff.error is not None:
                raise self._handoff.error
            raise StopAsyncIteration
        return item

    def cancel(self) -> bool:
        """Cancel the stream.

        The call is closed and the receive task cancelled before the
        terminal transition is recorded. Any buffered item is dropped.

        Returns:
            False if the stream had already terminated
        """
        self._guard.close()
        if self._task is not None and not self._task.done():
            self._task.cancel()
        first = self._handoff.close(None, drop_pending=True)
        if first:
            logger.debug(f"{self.name} cancelled")
            self._completion.fire(None)
        return first

    async def aclose(self) -> None:
        """Cancel the stream and wait for the receive task to stop."""
        self.cancel()
        if self._task is not None and not self._task.done():
            await asyncio.wait({self._task})

    async def __aenter__(self) -> StreamingBridge[T]:
        return self

    async def __aexit__(self, *args: Any) -> None:
        await self.aclose()

    def __del__(self) -> None:
        if self._handoff.closed and self._guard.closed:
            return
        if self._task is not None and not self._task.done():
            self._task.cancel()
        self._guard.close()


class DuplexBridge(StreamingBridge[T]):
    """Streaming bridge over a bidirectional call.

    Requests written here share the call with the inbound stream.
    """

    def __init__(
        self,
        call: DuplexCall,
        translate: Translate,
        on_complete: CompletionCallback | None = None,
        name: str = "duplex",
    ):
        super().__init__(call, translate, on_complete, name)
        self._duplex = call

    async def write(self, request: Request) -> None:
        """Send a request on the call.

        Raises:
            SessionClosed: If the stream has terminated
        """
        if self.terminated:
            raise SessionClosed(operation=f"write {request.kind}")
        try:
            await self._duplex.write(request)
        except asyncio.InvalidStateError as e:
            raise SessionClosed(operation=f"write {request.kind}") from e
        except Exception as e:
            raise translate_error(e) from e

    async def done_writing(self) -> None:
        if not self.terminated:
            await self._duplex.done_writing()
