"""Unit tests for event value types."""

import json
import uuid
from datetime import UTC, datetime

import pytest
from pydantic import ValidationError

from eventstore_client.cursor import Position
from eventstore_client.errors import DecodeError
from eventstore_client.events import (
    DISCARDED,
    AppendResult,
    EventData,
    EventEnvelope,
    MultiAppendResult,
    RecordedEvent,
    _Discarded,
)
from eventstore_client.protocol import RawMessage


class TestEventData:
    """Test EventData creation."""

    def test_of_json(self):
        """EventData.of_json() serializes the payload and generates an id."""
        event = EventData.of_json("placed", {"order": 1}, custom_metadata={"user": "a"})

        assert isinstance(event.id, uuid.UUID)
        assert json.loads(event.data) == {"order": 1}
        assert json.loads(event.custom_metadata) == {"user": "a"}
        assert event.content_type == "application/json"

    def test_ids_are_unique(self):
        assert EventData.of_json("a", {}).id != EventData.of_json("a", {}).id

    def test_explicit_id(self):
        event_id = uuid.uuid4()
        assert EventData.of_json("a", {}, id=event_id).id == event_id

    def test_to_wire(self):
        event = EventData(event_type="blob", data=b"\x00", content_type="application/octet-stream")
        wire = event.to_wire()

        assert wire["id"] == str(event.id)
        assert wire["metadata"] == {"type": "blob", "content-type": "application/octet-stream"}
        assert wire["data"] == b"\x00"

    def test_frozen(self):
        event = EventData.of_json("a", {})
        with pytest.raises(ValidationError):
            event.event_type = "b"  # type: ignore[misc]


class TestRecordedEvent:
    """Test decoding recorded events."""

    def test_from_wire(self):
        message = RawMessage.event("orders-1", 3, event_type="placed", data=b'{"a": 1}')
        record = message.data["event"]
        record["metadata"]["created"] = "16000000000000000"

        event = RecordedEvent.from_wire(record)

        assert event.stream_name == "orders-1"
        assert event.revision == 3
        assert event.event_type == "placed"
        assert event.position == Position(3, 3)
        assert event.json_data() == {"a": 1}
        assert event.created == datetime(2020, 9, 13, 12, 26, 40, tzinfo=UTC)

    def test_missing_fields(self):
        with pytest.raises(DecodeError):
            RecordedEvent.from_wire({"id": "x"})

    def test_bad_revision(self):
        record = RawMessage.event("orders-1", 0).data["event"]
        record["stream_revision"] = "not-a-number"
        with pytest.raises(DecodeError):
            RecordedEvent.from_wire(record)


class TestEventEnvelope:
    """Test delivered events and links."""

    def test_without_link(self):
        envelope = EventEnvelope.from_wire(RawMessage.event("orders-1", 2).data)

        assert envelope.original is envelope.event
        assert envelope.ack_id == envelope.event.id
        assert envelope.revision == 2

    def test_with_link(self):
        link = RawMessage.event("$et-placed", 9, event_type="$>").data["event"]
        envelope = EventEnvelope.from_wire(RawMessage.event("orders-1", 2, link=link).data)

        assert envelope.event.stream_name == "orders-1"
        assert envelope.original.stream_name == "$et-placed"
        assert envelope.revision == 9
        assert envelope.ack_id == link["id"]

    def test_missing_record(self):
        with pytest.raises(DecodeError):
            EventEnvelope.from_wire({"link": None})


class TestResults:
    def test_multi_append_lookup(self):
        result = MultiAppendResult(
            results=[AppendResult(stream_name="a", next_expected_revision=1)], position=5
        )
        assert result.for_stream("a").next_expected_revision == 1
        assert result.for_stream("b") is None

    def test_discarded_is_singleton(self):
        assert _Discarded() is DISCARDED
        assert repr(DISCARDED) == "DISCARDED"
