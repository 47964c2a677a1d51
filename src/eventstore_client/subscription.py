"""Subscription sessions.

A session moves through three states:

    AWAITING_CONFIRMATION -> STREAMING -> TERMINATED

While awaiting confirmation it pulls the first content of the call. A
confirmation supplies the server-issued subscription id. Anything else
means the server skipped the confirmation: the id stays None and the
content is delivered as the first item. An error fails open() and no
handle is produced. A call that ends before sending anything produces a
handle with no id whose iteration is already over.

While streaming, every content goes through one exhaustive match: events
are yielded in server order, checkpoints are yielded only when asked for,
catch-up notices and stream positions update the handle's state, and a
second confirmation is a protocol error.

Persistent subscriptions also send ack and nack batches on the same call.
Acks are fire-and-forget; redelivery is the server's job.
"""

from __future__ import annotations

import logging
import uuid
from collections.abc import Iterable
from enum import Enum
from typing import Any, Generic, TypeVar

from pydantic import BaseModel, ConfigDict, Field

from .cursor import Position
from .errors import DecodeError, SessionClosed
from .events import (
    CaughtUp,
    Checkpoint,
    EventEnvelope,
    FellBehind,
    FirstStreamPosition,
    LastAllStreamPosition,
    LastStreamPosition,
    ReadContent,
    SubscriptionConfirmation,
)
from .protocol.messages import Request
from .streaming import DuplexBridge, StreamingBridge

logger = logging.getLogger(__name__)

S = TypeVar("S", bound="Subscription")


class SessionState(str, Enum):
    """Subscription session state machine."""

    AWAITING_CONFIRMATION = "awaiting_confirmation"
    STREAMING = "streaming"
    TERMINATED = "terminated"


class NackAction(str, Enum):
    """What the server should do with nacked events."""

    UNKNOWN = "unknown"
    PARK = "park"
    RETRY = "retry"
    SKIP = "skip"
    STOP = "stop"


EventRef = str | uuid.UUID | EventEnvelope


def _event_id(ref: EventRef) -> str:
    if isinstance(ref, EventEnvelope):
        return ref.ack_id
    return str(ref)


class AckBatch(BaseModel):
    """Events to acknowledge. The caller decides batch boundaries."""

    model_config = ConfigDict(frozen=True)

    event_ids: list[str] = Field(default_factory=list)

    @classmethod
    def of(cls, refs: Iterable[EventRef]) -> AckBatch:
        return cls(event_ids=[_event_id(r) for r in refs])

    def to_request(self, subscription_id: str | None) -> Request:
        return Request.create("ack", {"id": subscription_id or "", "ids": list(self.event_ids)})


class NackBatch(BaseModel):
    """Events to negatively acknowledge, with the action to take."""

    model_config = ConfigDict(frozen=True)

    event_ids: list[str] = Field(default_factory=list)
    action: NackAction = NackAction.RETRY
    reason: str = ""

    @classmethod
    def of(cls, refs: Iterable[EventRef], action: NackAction, reason: str = "") -> NackBatch:
        return cls(event_ids=[_event_id(r) for r in refs], action=action, reason=reason)

    def to_request(self, subscription_id: str | None) -> Request:
        return Request.create(
            "nack",
            {
                "id": subscription_id or "",
                "ids": list(self.event_ids),
                "action": self.action.value,
                "reason": self.reason,
            },
        )


class _Unset:
    pass


_UNSET: Any = _Unset()


class Subscription:
    """A volatile subscription.

    Created by open() once the server confirmed the subscribe request (or
    skipped confirming it). Iterate it for events; cancel() or leaving
    `async with` ends it.
    """

    def __init__(
        self,
        bridge: StreamingBridge[ReadContent],
        include_checkpoints: bool = False,
    ):
        self._bridge = bridge
        self.include_checkpoints = include_checkpoints
        self.subscription_id: str | None = None
        self.is_caught_up = False
        self.last_checkpoint: Position | None = None
        self.first_stream_revision: int | None = None
        self.last_stream_revision: int | None = None
        self.last_all_stream_position: Position | None = None
        self._state = SessionState.AWAITING_CONFIRMATION
        self._pushed_back: ReadContent = _UNSET

    @classmethod
    async def open(cls: type[S], bridge: StreamingBridge[ReadContent], **kwargs: Any) -> S:
        """Wait for the first content of the call and return the handle.

        Raises:
            EventStoreError: If the call fails before confirming
        """
        session = cls(bridge, **kwargs)
        await session._await_confirmation()
        return session

    async def _await_confirmation(self) -> None:
        try:
            first = await self._bridge.__anext__()
        except StopAsyncIteration:
            logger.debug(f"{self._bridge.name} ended before confirmation")
            self._state = SessionState.TERMINATED
            return
        except BaseException:
            self._state = SessionState.TERMINATED
            await self._bridge.aclose()
            raise

        match first:
            case SubscriptionConfirmation():
                self.subscription_id = first.subscription_id
                logger.debug(f"{self._bridge.name} confirmed: {self.subscription_id}")
            case _:
                self._pushed_back = first
        self._state = SessionState.STREAMING

    @property
    def state(self) -> SessionState:
        if (
            self._state == SessionState.STREAMING
            and self._bridge.terminated
            and not self.has_pending
        ):
            return SessionState.TERMINATED
        return self._state

    @property
    def is_terminated(self) -> bool:
        return self.state == SessionState.TERMINATED

    @property
    def has_pending(self) -> bool:
        """True while a received item has not been handed to the consumer."""
        return self._pushed_back is not _UNSET or self._bridge.has_pending

    @property
    def error(self) -> Exception | None:
        return self._bridge.error

    @property
    def events(self) -> Subscription:
        return self

    def __aiter__(self) -> Subscription:
        return self

    async def __anext__(self) -> EventEnvelope | Checkpoint:
        while True:
            if self._pushed_back is not _UNSET:
                content, self._pushed_back = self._pushed_back, _UNSET
            else:
                try:
                    content = await self._bridge.__anext__()
                except BaseException:
                    self._state = SessionState.TERMINATED
                    raise
            item = self._dispatch(content)
            if item is not None:
                return item

    def _dispatch(self, content: ReadContent) -> EventEnvelope | Checkpoint | None:
        match content:
            case EventEnvelope():
                return content
            case Checkpoint():
                self.last_checkpoint = content.position
                return content if self.include_checkpoints else None
            case CaughtUp():
                self.is_caught_up = True
                return None
            case FellBehind():
                self.is_caught_up = False
                return None
            case FirstStreamPosition():
                self.first_stream_revision = content.revision
                return None
            case LastStreamPosition():
                self.last_stream_revision = content.revision
                return None
            case LastAllStreamPosition():
                self.last_all_stream_position = content.position
                return None
            case SubscriptionConfirmation():
                self.cancel()
                raise DecodeError(
                    "Received a second subscription confirmation",
                    {"subscription_id": content.subscription_id},
                )
            case _:
                self.cancel()
                raise DecodeError(f"Unexpected subscription content: {type(content).__name__}")

    def cancel(self) -> None:
        """End the subscription. Buffered items are dropped."""
        self._pushed_back = _UNSET
        self._bridge.cancel()
        self._state = SessionState.TERMINATED

    async def aclose(self) -> None:
        self._pushed_back = _UNSET
        self._state = SessionState.TERMINATED
        await self._bridge.aclose()

    async def __aenter__(self: S) -> S:
        return self

    async def __aexit__(self, *args: Any) -> None:
        await self.aclose()

    def __repr__(self) -> str:
        return (
            f"{type(self).__name__}(subscription_id={self.subscription_id!r}, "
            f"state={self.state.value})"
        )


class PersistentSubscription(Subscription):
    """A persistent subscription to a consumer group.

    Events carry a retry count. Acknowledge them with ack(), or nack()
    them with an action; both write to the same call the events arrive on.
    """

    def __init__(
        self,
        bridge: DuplexBridge[ReadContent],
        include_checkpoints: bool = False,
    ):
        super().__init__(bridge, include_checkpoints)
        self._duplex = bridge

    async def ack(self, *events: EventRef) -> None:
        """Acknowledge events by id or envelope.

        Raises:
            SessionClosed: If the session has terminated
        """
        await self.send(AckBatch.of(events))

    async def nack(
        self,
        events: Iterable[EventRef],
        action: NackAction = NackAction.RETRY,
        reason: str = "",
    ) -> None:
        """Negatively acknowledge events.

        Raises:
            SessionClosed: If the session has terminated
        """
        await self.send(NackBatch.of(events, action, reason))

    async def send(self, batch: AckBatch | NackBatch) -> None:
        """Write an ack or nack batch."""
        operation = "ack" if isinstance(batch, AckBatch) else "nack"
        if self.state == SessionState.TERMINATED:
            raise SessionClosed(self.subscription_id, operation)
        if not batch.event_ids:
            return
        await self._duplex.write(batch.to_request(self.subscription_id))
        logger.debug(f"Sent {operation} for {len(batch.event_ids)} event(s) on {self.subscription_id}")
