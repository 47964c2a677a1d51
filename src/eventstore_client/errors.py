"""
Exceptions raised by the event store client.

Every failure surfaced to callers derives from EventStoreError so callers
can catch the whole family, or branch on the specific kinds below.
"""

from __future__ import annotations

from typing import Any


class EventStoreError(Exception):
    """Base exception for all client errors."""

    def __init__(self, message: str, details: dict[str, Any] | None = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def __eq__(self, other: object) -> bool:
        if type(other) is not type(self):
            return NotImplemented
        return self.message == other.message and self.details == other.details

    def __hash__(self) -> int:
        return hash((type(self), self.message))


class RequestBuildError(EventStoreError):
    """Raised when a request cannot be built from the given fields.

    Requests that fail to build are never sent.
    """

    def __init__(self, message: str, field: str | None = None):
        details = {}
        if field:
            details["field"] = field
        super().__init__(message, details)
        self.field = field


class ClientConnectionError(EventStoreError, ConnectionError):
    """Raised when no node is reachable or the transport fails."""


class NotLeaderError(ClientConnectionError):
    """Raised when a leader-only request reached a follower."""

    def __init__(self, host: str | None = None, port: int | None = None):
        details: dict[str, Any] = {}
        if host:
            details["leader_host"] = host
            details["leader_port"] = port
        where = f" (leader is {host}:{port})" if host else ""
        super().__init__(f"Node is not the leader{where}", details)
        self.leader_host = host
        self.leader_port = port


class DecodeError(EventStoreError):
    """Raised when a server payload cannot be decoded.

    Fatal to the call that produced it, never to the connection.
    """


class DeadlineExceeded(EventStoreError, TimeoutError):
    """Raised when a call does not finish before its deadline."""

    def __init__(self, message: str = "Deadline exceeded", timeout: float | None = None):
        details: dict[str, Any] = {}
        if timeout is not None:
            details["timeout"] = timeout
        super().__init__(message, details)
        self.timeout = timeout


class SessionClosed(EventStoreError):
    """Raised when an operation targets a terminated session."""

    def __init__(self, subscription_id: str | None = None, operation: str | None = None):
        details: dict[str, Any] = {}
        if subscription_id:
            details["subscription_id"] = subscription_id
        if operation:
            details["operation"] = operation
        what = operation or "operation"
        super().__init__(f"Cannot {what}: subscription session is closed", details)
        self.subscription_id = subscription_id
        self.operation = operation


class DomainError(EventStoreError):
    """Base for business-rule violations reported by the server."""


class NotFoundError(DomainError):
    """Raised when a server resource does not exist."""


class StreamNotFoundError(NotFoundError):
    """Raised when a stream does not exist."""

    def __init__(self, stream_name: str | None = None):
        details = {"stream_name": stream_name} if stream_name else {}
        super().__init__(f"Stream not found: {stream_name!r}", details)
        self.stream_name = stream_name


class PersistentSubscriptionNotFoundError(NotFoundError):
    """Raised when a persistent subscription group does not exist."""

    def __init__(self, group_name: str | None = None, stream_name: str | None = None):
        details: dict[str, Any] = {}
        if group_name:
            details["group_name"] = group_name
        if stream_name:
            details["stream_name"] = stream_name
        super().__init__(
            f"Persistent subscription not found: {group_name!r} on {stream_name!r}", details
        )
        self.group_name = group_name
        self.stream_name = stream_name


class UserNotFoundError(NotFoundError):
    """Raised when a user does not exist."""

    def __init__(self, login_name: str | None = None):
        details = {"login_name": login_name} if login_name else {}
        super().__init__(f"User not found: {login_name!r}", details)
        self.login_name = login_name


class StreamDeletedError(DomainError):
    """Raised when a stream was deleted or tombstoned."""

    def __init__(self, stream_name: str | None = None):
        details = {"stream_name": stream_name} if stream_name else {}
        super().__init__(f"Stream is deleted: {stream_name!r}", details)
        self.stream_name = stream_name


class WrongExpectedVersionError(DomainError):
    """Raised when the stream is not at the revision the request expected.

    `actual` is None when the stream does not exist.
    """

    def __init__(
        self,
        stream_name: str | None = None,
        expected: int | str | None = None,
        actual: int | None = None,
    ):
        details: dict[str, Any] = {"expected": expected, "actual": actual}
        if stream_name:
            details["stream_name"] = stream_name
        current = "no stream" if actual is None else f"revision {actual}"
        super().__init__(
            f"Wrong expected version for {stream_name!r}: expected {expected}, stream at {current}",
            details,
        )
        self.stream_name = stream_name
        self.expected = expected
        self.actual = actual


class AccessDeniedError(DomainError):
    """Raised when the credentials lack permission for the call."""


class NotAuthenticatedError(DomainError):
    """Raised when the server rejected the credentials."""


class AlreadyExistsError(DomainError):
    """Raised when creating a resource that already exists."""


class MaximumAppendSizeExceededError(DomainError):
    """Raised when an append exceeds the server's size limit."""

    def __init__(self, max_append_size: int | None = None):
        details = {"max_append_size": max_append_size} if max_append_size else {}
        super().__init__(f"Maximum append size exceeded (limit {max_append_size})", details)
        self.max_append_size = max_append_size


class UnsupportedFeatureError(DomainError):
    """Raised when the selected node does not serve an RPC method."""

    def __init__(self, method: str, endpoint: str | None = None):
        details = {"method": method}
        if endpoint:
            details["endpoint"] = endpoint
        super().__init__(f"Method not supported by server: {method}", details)
        self.method = method
        self.endpoint = endpoint


class ServerError(DomainError):
    """Raised for server failures with no more specific kind."""

    def __init__(self, message: str, code: str | None = None):
        super().__init__(message, {"code": code} if code else {})
        self.code = code
