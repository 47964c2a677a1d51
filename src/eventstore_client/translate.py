"""Response translation.

A translator maps the outcome of a call (a raw message, or the exception
the transport raised) to either a typed value or a domain error instance.
Translation never raises for a well-formed outcome and keeps no state, so
translating the same outcome twice gives equal results.

Server-side failures arrive as RpcError. The event store names the failure
in the "exception" trailer and adds structured fields in other trailers;
those take precedence over the bare status code.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Generic, TypeVar

from pydantic import ValidationError

from .cursor import Position
from .errors import (
    AccessDeniedError,
    AlreadyExistsError,
    ClientConnectionError,
    DeadlineExceeded,
    DecodeError,
    EventStoreError,
    MaximumAppendSizeExceededError,
    NotAuthenticatedError,
    NotFoundError,
    NotLeaderError,
    PersistentSubscriptionNotFoundError,
    ServerError,
    SessionClosed,
    StreamDeletedError,
    StreamNotFoundError,
    UnsupportedFeatureError,
    UserNotFoundError,
    WrongExpectedVersionError,
)
from .events import (
    DISCARDED,
    CaughtUp,
    Checkpoint,
    EventEnvelope,
    FellBehind,
    FirstStreamPosition,
    LastAllStreamPosition,
    LastStreamPosition,
    ReadContent,
    SubscriptionConfirmation,
    _Discarded,
)
from .protocol.messages import MessageKind, RawMessage, RpcError, StatusCode

logger = logging.getLogger(__name__)

T = TypeVar("T")

Outcome = RawMessage | BaseException


def _int_or_none(value: Any) -> int | None:
    try:
        return int(value)
    except (TypeError, ValueError):
        return None


def _stream_name(data: dict[str, Any], default: str | None = None) -> str | None:
    identifier = data.get("stream_identifier") or {}
    name = identifier.get("stream_name") if isinstance(identifier, dict) else None
    if isinstance(name, bytes):
        return name.decode("utf-8", "replace")
    return name or default


def translate_rpc_error(
    error: RpcError,
    stream_name: str | None = None,
    group_name: str | None = None,
) -> EventStoreError:
    """Map a transport error to a named client error."""
    trailers = error.trailers
    stream = trailers.get("stream-name", stream_name)

    match error.exception_type:
        case "stream-deleted":
            return StreamDeletedError(stream)
        case "wrong-expected-version":
            return WrongExpectedVersionError(
                stream,
                expected=trailers.get("expected-version"),
                actual=_int_or_none(trailers.get("actual-version")),
            )
        case "stream-not-found":
            return StreamNotFoundError(stream)
        case "access-denied":
            return AccessDeniedError(error.details or "Access denied", {"stream_name": stream})
        case "not-leader":
            return NotLeaderError(
                trailers.get("leader-endpoint-host"),
                _int_or_none(trailers.get("leader-endpoint-port")),
            )
        case "persistent-subscription-does-not-exist":
            return PersistentSubscriptionNotFoundError(
                trailers.get("group-name", group_name), stream
            )
        case "persistent-subscription-exists":
            return AlreadyExistsError(
                f"Persistent subscription already exists: {group_name!r} on {stream!r}",
                {"group_name": trailers.get("group-name", group_name), "stream_name": stream},
            )
        case "maximum-append-size-exceeded":
            return MaximumAppendSizeExceededError(_int_or_none(trailers.get("max-append-size")))
        case "user-not-found":
            return UserNotFoundError(trailers.get("login-name"))

    details = {"code": error.code.value}
    match error.code:
        case StatusCode.DEADLINE_EXCEEDED:
            return DeadlineExceeded(error.details or "Deadline exceeded")
        case StatusCode.UNAVAILABLE:
            return ClientConnectionError(error.details or "Node unavailable", details)
        case StatusCode.PERMISSION_DENIED:
            return AccessDeniedError(error.details or "Access denied", details)
        case StatusCode.UNAUTHENTICATED:
            return NotAuthenticatedError(error.details or "Not authenticated", details)
        case StatusCode.NOT_FOUND:
            return NotFoundError(error.details or "Not found", details)
        case StatusCode.ALREADY_EXISTS:
            return AlreadyExistsError(error.details or "Already exists", details)
        case StatusCode.UNIMPLEMENTED:
            return UnsupportedFeatureError(error.details or "unknown")
        case _:
            return ServerError(error.details or error.code.value, code=error.code.value)


def translate_error(
    error: BaseException,
    stream_name: str | None = None,
    group_name: str | None = None,
) -> EventStoreError:
    """Map any exception raised while running a call to a client error."""
    if isinstance(error, EventStoreError):
        return error
    if isinstance(error, RpcError):
        return translate_rpc_error(error, stream_name, group_name)
    if isinstance(error, (TimeoutError, asyncio.TimeoutError)):
        return DeadlineExceeded()
    if isinstance(error, asyncio.InvalidStateError):
        return SessionClosed(operation="write to a finished call")
    if isinstance(error, OSError):
        return ClientConnectionError(str(error) or type(error).__name__)
    return ServerError(f"{type(error).__name__}: {error}", code=type(error).__name__)


def unwrap(result: T | EventStoreError) -> T:
    """Return a translated value, or raise the translated error."""
    if isinstance(result, EventStoreError):
        raise result
    return result


class ResponseTranslator(Generic[T]):
    """Translates call outcomes for one operation.

    Subclasses implement translate_message() for the message kinds their
    RPC method can return. Any other kind is a DecodeError.
    """

    def __init__(self, stream_name: str | None = None, group_name: str | None = None):
        self.stream_name = stream_name
        self.group_name = group_name

    def translate(self, outcome: Outcome) -> T | EventStoreError:
        if isinstance(outcome, BaseException):
            return translate_error(outcome, self.stream_name, self.group_name)
        try:
            return self.translate_message(outcome)
        except EventStoreError as e:
            return e
        except (ValidationError, KeyError, TypeError, ValueError) as e:
            return DecodeError(
                f"Malformed {outcome.kind!r} message for {type(self).__name__}: {e}",
                {"kind": outcome.kind},
            )

    def translate_message(self, message: RawMessage) -> T:
        raise self.unexpected(message)

    def unexpected(self, message: RawMessage) -> DecodeError:
        return DecodeError(
            f"Unexpected {message.kind!r} message for {type(self).__name__}",
            {"kind": message.kind},
        )


class DiscardedTranslator(ResponseTranslator[_Discarded]):
    """For calls whose response carries nothing the caller needs."""

    def translate_message(self, message: RawMessage) -> _Discarded:
        if message.kind in (MessageKind.EMPTY.value, MessageKind.SUCCESS.value):
            return DISCARDED
        raise self.unexpected(message)


class ReadContentTranslator(ResponseTranslator[ReadContent]):
    """Contents of read and subscribe calls."""

    def translate_message(self, message: RawMessage) -> ReadContent:
        data = message.data
        match message.kind:
            case MessageKind.EVENT.value:
                return EventEnvelope.from_wire(data)
            case MessageKind.CONFIRMATION.value:
                return SubscriptionConfirmation(subscription_id=data.get("subscription_id"))
            case MessageKind.CHECKPOINT.value:
                return Checkpoint(position=self._position(data))
            case MessageKind.CAUGHT_UP.value:
                return CaughtUp()
            case MessageKind.FELL_BEHIND.value:
                return FellBehind()
            case MessageKind.FIRST_STREAM_POSITION.value:
                return FirstStreamPosition(revision=self._revision(data))
            case MessageKind.LAST_STREAM_POSITION.value:
                return LastStreamPosition(revision=self._revision(data))
            case MessageKind.LAST_ALL_STREAM_POSITION.value:
                return LastAllStreamPosition(position=self._position(data))
            case MessageKind.STREAM_NOT_FOUND.value:
                raise StreamNotFoundError(_stream_name(data, self.stream_name))
            case _:
                raise self.unexpected(message)

    def _position(self, data: dict[str, Any]) -> Position:
        try:
            return Position.from_wire(data)
        except (KeyError, TypeError, ValueError) as e:
            raise DecodeError(f"Malformed position: {e}", {"payload": repr(data)}) from e

    def _revision(self, data: dict[str, Any]) -> int:
        revision = _int_or_none(data.get("revision"))
        if revision is None:
            raise DecodeError("Missing stream revision", {"payload": repr(data)})
        return revision
