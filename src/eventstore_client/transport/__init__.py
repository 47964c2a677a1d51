"""Transports: the calls layer between operations and the network."""

from .base import (
    BaseTransport,
    DuplexCall,
    Metadata,
    StreamCall,
    Transport,
    TransportConfig,
    TransportState,
)
from .grpc_transport import GrpcTransport, create_grpc_transport
from .mock import MockTransport, ScriptedCall, create_mock_transport

__all__ = [
    "BaseTransport",
    "DuplexCall",
    "GrpcTransport",
    "Metadata",
    "MockTransport",
    "ScriptedCall",
    "StreamCall",
    "Transport",
    "TransportConfig",
    "TransportState",
    "create_grpc_transport",
    "create_mock_transport",
]
