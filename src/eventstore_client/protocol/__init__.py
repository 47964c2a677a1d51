"""Wire protocol layer.

Defines the messages exchanged on a call and the codec contract that turns
them into bytes. Transports move bytes; operations build requests and
translate raw messages; neither depends on the encoding.
"""

from .codec import Codec, JsonCodec
from .messages import MessageKind, RawMessage, Request, RpcError, StatusCode

__all__ = [
    "Codec",
    "JsonCodec",
    "MessageKind",
    "RawMessage",
    "Request",
    "RpcError",
    "StatusCode",
]
