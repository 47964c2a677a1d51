"""Event value types.

EventData is what callers append. RecordedEvent is what the server stored.
EventEnvelope wraps a recorded event as delivered by a read or
subscription, together with its link and delivery metadata. The remaining
models are the other contents a read or subscription call can carry.
"""

from __future__ import annotations

import json
import uuid
from datetime import UTC, datetime, timedelta
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from .cursor import Position
from .errors import DecodeError

JSON_CONTENT_TYPE = "application/json"
BINARY_CONTENT_TYPE = "application/octet-stream"

# Server timestamps are .NET ticks (100ns) since the unix epoch.
_TICKS_PER_MICROSECOND = 10


def _ticks_to_datetime(ticks: int | str | None) -> datetime | None:
    if ticks in (None, ""):
        return None
    return datetime(1970, 1, 1, tzinfo=UTC) + timedelta(
        microseconds=int(ticks) // _TICKS_PER_MICROSECOND
    )


class EventData(BaseModel):
    """A new event to append."""

    model_config = ConfigDict(frozen=True)

    id: uuid.UUID = Field(default_factory=uuid.uuid4)
    event_type: str
    data: bytes = b""
    content_type: str = JSON_CONTENT_TYPE
    custom_metadata: bytes = b""

    @classmethod
    def of_json(
        cls,
        event_type: str,
        payload: Any,
        custom_metadata: dict[str, Any] | None = None,
        id: uuid.UUID | None = None,
    ) -> EventData:
        """Create an event whose data is `payload` serialized as JSON."""
        return cls(
            id=id or uuid.uuid4(),
            event_type=event_type,
            data=json.dumps(payload).encode("utf-8"),
            content_type=JSON_CONTENT_TYPE,
            custom_metadata=json.dumps(custom_metadata).encode("utf-8") if custom_metadata else b"",
        )

    def to_wire(self) -> dict[str, Any]:
        return {
            "id": str(self.id),
            "metadata": {"type": self.event_type, "content-type": self.content_type},
            "custom_metadata": self.custom_metadata,
            "data": self.data,
        }


class RecordedEvent(BaseModel):
    """An event as stored by the server."""

    model_config = ConfigDict(frozen=True)

    id: str
    event_type: str
    stream_name: str
    revision: int
    position: Position | None = None
    content_type: str = JSON_CONTENT_TYPE
    created: datetime | None = None
    data: bytes = b""
    custom_metadata: bytes = b""
    metadata: dict[str, str] = Field(default_factory=dict)

    @property
    def is_json(self) -> bool:
        return self.content_type == JSON_CONTENT_TYPE

    def json_data(self) -> Any:
        """Decode data as JSON."""
        return json.loads(self.data)

    @classmethod
    def from_wire(cls, data: dict[str, Any]) -> RecordedEvent:
        try:
            metadata = {str(k): str(v) for k, v in (data.get("metadata") or {}).items()}
            stream = data["stream_identifier"]["stream_name"]
            if isinstance(stream, bytes):
                stream = stream.decode("utf-8")
            position = None
            if data.get("commit_position") is not None:
                position = Position(
                    commit=int(data["commit_position"]),
                    prepare=int(data.get("prepare_position", data["commit_position"])),
                )
            return cls(
                id=str(data["id"]),
                event_type=metadata.get("type", ""),
                stream_name=stream,
                revision=int(data["stream_revision"]),
                position=position,
                content_type=metadata.get("content-type", JSON_CONTENT_TYPE),
                created=_ticks_to_datetime(metadata.get("created")),
                data=data.get("data", b""),
                custom_metadata=data.get("custom_metadata", b""),
                metadata=metadata,
            )
        except (KeyError, TypeError, ValueError, UnicodeDecodeError) as e:
            raise DecodeError(f"Malformed recorded event: {e}", {"payload": repr(data)}) from e


class EventEnvelope(BaseModel):
    """One delivered event.

    `record` is the event read from the stream; when links are resolved and
    the read hit a link event, `link` is the link and `record` the event it
    points to.
    """

    model_config = ConfigDict(frozen=True)

    record: RecordedEvent
    link: RecordedEvent | None = None
    commit_position: int | None = None
    retry_count: int | None = None

    @property
    def event(self) -> RecordedEvent:
        return self.record

    @property
    def original(self) -> RecordedEvent:
        """The event that was actually in the stream being read."""
        return self.link or self.record

    @property
    def revision(self) -> int:
        return self.original.revision

    @property
    def position(self) -> Position | None:
        return self.original.position

    @property
    def ack_id(self) -> str:
        """Id to use when acking this event on a persistent subscription."""
        return self.original.id

    @classmethod
    def from_wire(cls, data: dict[str, Any]) -> EventEnvelope:
        if not isinstance(data, dict) or "event" not in data:
            raise DecodeError("Event content is missing its record", {"payload": repr(data)})
        link = data.get("link")
        record = RecordedEvent.from_wire(data["event"])
        linked = RecordedEvent.from_wire(link) if link else None
        try:
            return cls(
                record=record,
                link=linked,
                commit_position=data.get("commit_position"),
                retry_count=data.get("retry_count"),
            )
        except ValidationError as e:
            raise DecodeError(f"Malformed event content: {e}", {"payload": repr(data)}) from e


class SubscriptionConfirmation(BaseModel):
    """The server accepted a subscribe request."""

    model_config = ConfigDict(frozen=True)

    subscription_id: str | None = None


class Checkpoint(BaseModel):
    """Filtered subscriptions report progress through the log."""

    model_config = ConfigDict(frozen=True)

    position: Position


class CaughtUp(BaseModel):
    model_config = ConfigDict(frozen=True)


class FellBehind(BaseModel):
    model_config = ConfigDict(frozen=True)


class FirstStreamPosition(BaseModel):
    model_config = ConfigDict(frozen=True)

    revision: int


class LastStreamPosition(BaseModel):
    model_config = ConfigDict(frozen=True)

    revision: int


class LastAllStreamPosition(BaseModel):
    model_config = ConfigDict(frozen=True)

    position: Position


ReadContent = (
    SubscriptionConfirmation
    | EventEnvelope
    | Checkpoint
    | CaughtUp
    | FellBehind
    | FirstStreamPosition
    | LastStreamPosition
    | LastAllStreamPosition
)


class AppendResult(BaseModel):
    """Outcome of a successful append."""

    model_config = ConfigDict(frozen=True)

    stream_name: str
    next_expected_revision: int | None = None
    position: Position | None = None


class MultiAppendResult(BaseModel):
    """Outcome of a multi-stream append."""

    model_config = ConfigDict(frozen=True)

    results: list[AppendResult] = Field(default_factory=list)
    position: int | None = None

    def for_stream(self, stream_name: str) -> AppendResult | None:
        for result in self.results:
            if result.stream_name == stream_name:
                return result
        return None


class DeleteResult(BaseModel):
    """Outcome of a delete or tombstone."""

    model_config = ConfigDict(frozen=True)

    position: Position | None = None


class _Discarded:
    """Result of a call whose response carries nothing useful."""

    _instance: _Discarded | None = None

    def __new__(cls) -> _Discarded:
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __repr__(self) -> str:
        return "DISCARDED"


DISCARDED = _Discarded()
