"""Wire message definitions.

Requests are what the client sends on a call; raw messages are what the
server sends back. Both are transport-agnostic: the codec turns them into
bytes and the transport moves the bytes.

Each RPC method has its own request kinds and response kinds:

    {"id": "req_abc123", "kind": "read", "payload": {"options": {...}}}
    {"kind": "event", "data": {"event": {...}, "link": null}}

Call failures are raised by transports as RpcError, carrying a status code
and the server's trailing metadata.
"""

from __future__ import annotations

import uuid
from enum import Enum
from typing import Any

from pydantic import BaseModel, Field


class MessageKind(str, Enum):
    """Response content kinds."""

    # Read and subscription contents
    CONFIRMATION = "confirmation"
    EVENT = "event"
    CHECKPOINT = "checkpoint"
    CAUGHT_UP = "caught_up"
    FELL_BEHIND = "fell_behind"
    STREAM_NOT_FOUND = "stream_not_found"
    FIRST_STREAM_POSITION = "first_stream_position"
    LAST_STREAM_POSITION = "last_stream_position"
    LAST_ALL_STREAM_POSITION = "last_all_stream_position"

    # Write outcomes
    SUCCESS = "success"
    WRONG_EXPECTED_VERSION = "wrong_expected_version"
    DELETED = "deleted"

    # Persistent subscription info
    SUBSCRIPTION_INFO = "subscription_info"
    SUBSCRIPTIONS = "subscriptions"

    # Server features
    SUPPORTED_METHODS = "supported_methods"

    # Projections
    PROJECTION_STATE = "state"
    PROJECTION_RESULT = "result"
    PROJECTION_DETAILS = "details"

    # Responses with no payload
    EMPTY = "empty"


class Request(BaseModel):
    """A request message sent on a call.

    Unary calls send exactly one; client-streaming calls send several
    (for example an options message followed by one message per event).
    """

    id: str = Field(default_factory=lambda: f"req_{uuid.uuid4().hex[:12]}")
    kind: str
    payload: dict[str, Any] = Field(default_factory=dict)

    def get(self, key: str, default: Any = None) -> Any:
        """Get a payload field with optional default."""
        return self.payload.get(key, default)

    @classmethod
    def create(
        cls,
        kind: str,
        payload: dict[str, Any] | None = None,
        request_id: str | None = None,
    ) -> Request:
        """Factory method for creating requests."""
        return cls(
            id=request_id or f"req_{uuid.uuid4().hex[:12]}",
            kind=kind,
            payload=payload or {},
        )


class RawMessage(BaseModel):
    """A response message as decoded from the wire, before translation."""

    kind: str
    data: dict[str, Any] = Field(default_factory=dict)

    def get(self, key: str, default: Any = None) -> Any:
        return self.data.get(key, default)

    @classmethod
    def create(cls, kind: str | MessageKind, data: dict[str, Any] | None = None) -> RawMessage:
        return cls(
            kind=kind.value if isinstance(kind, MessageKind) else kind,
            data=data or {},
        )

    # Convenience factories, mostly used by tests and the mock transport

    @classmethod
    def confirmation(cls, subscription_id: str | None = None) -> RawMessage:
        return cls.create(MessageKind.CONFIRMATION, {"subscription_id": subscription_id})

    @classmethod
    def empty(cls) -> RawMessage:
        return cls.create(MessageKind.EMPTY)

    @classmethod
    def caught_up(cls) -> RawMessage:
        return cls.create(MessageKind.CAUGHT_UP)

    @classmethod
    def fell_behind(cls) -> RawMessage:
        return cls.create(MessageKind.FELL_BEHIND)

    @classmethod
    def checkpoint(cls, commit: int, prepare: int | None = None) -> RawMessage:
        return cls.create(
            MessageKind.CHECKPOINT,
            {"commit_position": commit, "prepare_position": commit if prepare is None else prepare},
        )

    @classmethod
    def stream_not_found(cls, stream_name: str) -> RawMessage:
        return cls.create(
            MessageKind.STREAM_NOT_FOUND,
            {"stream_identifier": {"stream_name": stream_name.encode("utf-8")}},
        )

    @classmethod
    def event(
        cls,
        stream_name: str,
        revision: int,
        event_type: str = "test-event",
        data: bytes = b"{}",
        event_id: str | None = None,
        commit_position: int | None = None,
        link: dict[str, Any] | None = None,
        retry_count: int | None = None,
    ) -> RawMessage:
        """Build an event content holding one recorded event."""
        position = revision if commit_position is None else commit_position
        record = {
            "id": event_id or str(uuid.uuid4()),
            "stream_identifier": {"stream_name": stream_name.encode("utf-8")},
            "stream_revision": revision,
            "commit_position": position,
            "prepare_position": position,
            "metadata": {"type": event_type, "content-type": "application/json"},
            "custom_metadata": b"",
            "data": data,
        }
        content: dict[str, Any] = {"event": record, "link": link, "commit_position": position}
        if retry_count is not None:
            content["retry_count"] = retry_count
        return cls.create(MessageKind.EVENT, content)


class StatusCode(str, Enum):
    """RPC status codes."""

    OK = "OK"
    CANCELLED = "CANCELLED"
    UNKNOWN = "UNKNOWN"
    INVALID_ARGUMENT = "INVALID_ARGUMENT"
    DEADLINE_EXCEEDED = "DEADLINE_EXCEEDED"
    NOT_FOUND = "NOT_FOUND"
    ALREADY_EXISTS = "ALREADY_EXISTS"
    PERMISSION_DENIED = "PERMISSION_DENIED"
    RESOURCE_EXHAUSTED = "RESOURCE_EXHAUSTED"
    FAILED_PRECONDITION = "FAILED_PRECONDITION"
    ABORTED = "ABORTED"
    OUT_OF_RANGE = "OUT_OF_RANGE"
    UNIMPLEMENTED = "UNIMPLEMENTED"
    INTERNAL = "INTERNAL"
    UNAVAILABLE = "UNAVAILABLE"
    DATA_LOSS = "DATA_LOSS"
    UNAUTHENTICATED = "UNAUTHENTICATED"


class RpcError(Exception):
    """A call failed at the transport level.

    `trailers` holds the trailing metadata sent by the server; the event
    store reports its structured failures there under the "exception" key.
    """

    def __init__(
        self,
        code: StatusCode,
        details: str = "",
        trailers: dict[str, str] | None = None,
    ):
        super().__init__(f"{code.value}: {details}" if details else code.value)
        self.code = code
        self.details = details
        self.trailers = trailers or {}

    @property
    def exception_type(self) -> str | None:
        return self.trailers.get("exception")

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, RpcError):
            return NotImplemented
        return (self.code, self.details, self.trailers) == (
            other.code,
            other.details,
            other.trailers,
        )

    def __hash__(self) -> int:
        return hash((self.code, self.details))

    def __repr__(self) -> str:
        return f"RpcError(code={self.code.value}, details={self.details!r})"
