"""Event store client.

Async client for an event-sourcing database served over gRPC: append to and
read streams, subscribe to them, consume persistent subscriptions and
manage projections.
"""

from .client import (
    EventStoreClient,
    PersistentSubscriptionsAPI,
    ProjectionsAPI,
    StreamMetadata,
    StreamsAPI,
    create_client,
    create_test_client,
)
from .cursor import (
    Cursor,
    Direction,
    Position,
    PositionPointer,
    RevisionPointer,
    StreamIdentifier,
)
from .errors import (
    AccessDeniedError,
    AlreadyExistsError,
    ClientConnectionError,
    DeadlineExceeded,
    DecodeError,
    DomainError,
    EventStoreError,
    MaximumAppendSizeExceededError,
    NotAuthenticatedError,
    NotFoundError,
    NotLeaderError,
    PersistentSubscriptionNotFoundError,
    RequestBuildError,
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
    AppendResult,
    Checkpoint,
    DeleteResult,
    EventData,
    EventEnvelope,
    MultiAppendResult,
    RecordedEvent,
)
from .features import ServerInfo, SupportedMethod
from .persistent import ConsumerStrategy, PersistentSubscriptionInfo, PersistentSubscriptionSettings
from .projections import ProjectionDetail, ProjectionMode, ProjectionStatus
from .selector import ClusterMember, NodeRole, NodeSelector
from .settings import CallOptions, ClientSettings, Endpoint, NodePreference, UserCredentials
from .streams import ReadResponse, StreamAppend, StreamState, SubscriptionFilter
from .subscription import NackAction, PersistentSubscription, SessionState, Subscription

__version__ = "0.1.0"

__all__ = [
    # Client
    "EventStoreClient",
    "PersistentSubscriptionsAPI",
    "ProjectionsAPI",
    "StreamMetadata",
    "StreamsAPI",
    "create_client",
    "create_test_client",
    # Settings
    "CallOptions",
    "ClientSettings",
    "Endpoint",
    "NodePreference",
    "UserCredentials",
    # Cluster
    "ClusterMember",
    "NodeRole",
    "NodeSelector",
    "ServerInfo",
    "SupportedMethod",
    # Cursors
    "Cursor",
    "Direction",
    "Position",
    "PositionPointer",
    "RevisionPointer",
    "StreamIdentifier",
    # Events and results
    "DISCARDED",
    "AppendResult",
    "Checkpoint",
    "DeleteResult",
    "EventData",
    "EventEnvelope",
    "MultiAppendResult",
    "RecordedEvent",
    # Streams
    "ReadResponse",
    "StreamAppend",
    "StreamState",
    "SubscriptionFilter",
    # Subscriptions
    "ConsumerStrategy",
    "NackAction",
    "PersistentSubscription",
    "PersistentSubscriptionInfo",
    "PersistentSubscriptionSettings",
    "SessionState",
    "Subscription",
    # Projections
    "ProjectionDetail",
    "ProjectionMode",
    "ProjectionStatus",
    # Errors
    "AccessDeniedError",
    "AlreadyExistsError",
    "ClientConnectionError",
    "DeadlineExceeded",
    "DecodeError",
    "DomainError",
    "EventStoreError",
    "MaximumAppendSizeExceededError",
    "NotAuthenticatedError",
    "NotFoundError",
    "NotLeaderError",
    "PersistentSubscriptionNotFoundError",
    "RequestBuildError",
    "ServerError",
    "SessionClosed",
    "StreamDeletedError",
    "StreamNotFoundError",
    "UnsupportedFeatureError",
    "UserNotFoundError",
    "WrongExpectedVersionError",
]
