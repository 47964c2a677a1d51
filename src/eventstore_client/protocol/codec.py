"""Message codecs.

A codec turns requests into bytes and bytes into raw messages. The core
never looks inside the bytes; any codec implementing the Codec protocol
can be handed to a transport.

JsonCodec is the default: one JSON object per message, with bytes fields
carried as {"$bytes": "<base64>"}.
"""

from __future__ import annotations

import base64
import json
import logging
from typing import Any, Protocol, runtime_checkable

from pydantic import ValidationError

from ..errors import DecodeError
from .messages import RawMessage, Request

logger = logging.getLogger(__name__)

_BYTES_KEY = "$bytes"


@runtime_checkable
class Codec(Protocol):
    """Protocol for wire codecs."""

    def encode(self, request: Request) -> bytes:
        """Serialize a request."""
        ...

    def decode(self, data: bytes) -> RawMessage:
        """Deserialize a response.

        Raises:
            DecodeError: If the payload is malformed
        """
        ...


def _encode_default(value: Any) -> Any:
    if isinstance(value, (bytes, bytearray)):
        return {_BYTES_KEY: base64.b64encode(bytes(value)).decode("ascii")}
    if hasattr(value, "value"):  # enums
        return value.value
    raise TypeError(f"Object of type {type(value).__name__} is not JSON serializable")


def _decode_hook(obj: dict[str, Any]) -> Any:
    if len(obj) == 1 and _BYTES_KEY in obj:
        return base64.b64decode(obj[_BYTES_KEY])
    return obj


class JsonCodec:
    """JSON codec."""

    content_type = "application/json"

    def encode(self, request: Request) -> bytes:
        return json.dumps(
            request.model_dump(mode="python"),
            default=_encode_default,
            separators=(",", ":"),
        ).encode("utf-8")

    def decode(self, data: bytes) -> RawMessage:
        try:
            parsed = json.loads(data, object_hook=_decode_hook)
        except (UnicodeDecodeError, json.JSONDecodeError, ValueError) as e:
            raise DecodeError(f"Invalid message payload: {e}", {"size": len(data)}) from e

        if not isinstance(parsed, dict):
            raise DecodeError(f"Expected a JSON object, got {type(parsed).__name__}")

        try:
            return RawMessage.model_validate(parsed)
        except ValidationError as e:
            raise DecodeError(f"Invalid message shape: {e}", {"payload": parsed}) from e

    def encode_response(self, message: RawMessage) -> bytes:
        """Serialize a response; used by test servers and recorders."""
        return json.dumps(
            message.model_dump(mode="python"),
            default=_encode_default,
            separators=(",", ":"),
        ).encode("utf-8")
