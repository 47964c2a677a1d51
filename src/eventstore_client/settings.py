"""Client configuration.

Settings are explicit dataclasses handed to the client at construction time.
Environment variables are read once by ClientSettings.from_env(); explicit
arguments take precedence over them.
"""

from __future__ import annotations

import base64
import logging
import os
from dataclasses import dataclass, field
from enum import Enum

logger = logging.getLogger(__name__)

DEFAULT_PORT = 2113
DEFAULT_DEADLINE = 30.0
DEFAULT_MAX_MESSAGE_LENGTH = 17 * 1024 * 1024


class NodePreference(str, Enum):
    """Which cluster member role a call prefers."""

    ANY = "any"
    LEADER = "leader"
    FOLLOWER = "follower"
    READ_ONLY_REPLICA = "read_only_replica"


@dataclass(frozen=True)
class Endpoint:
    """Address of one cluster node."""

    host: str
    port: int = DEFAULT_PORT

    @classmethod
    def parse(cls, value: str) -> Endpoint:
        """Parse "host" or "host:port"."""
        host, sep, port = value.strip().rpartition(":")
        if not sep:
            return cls(host=port)
        if not port.isdigit():
            raise ValueError(f"Invalid endpoint port: {value!r}")
        return cls(host=host, port=int(port))

    @property
    def target(self) -> str:
        return f"{self.host}:{self.port}"

    def __str__(self) -> str:
        return self.target


@dataclass(frozen=True)
class UserCredentials:
    """Username and password sent with each call."""

    username: str
    password: str = field(repr=False)

    def authorization(self) -> str:
        """Value of the HTTP basic authorization header."""
        token = base64.b64encode(f"{self.username}:{self.password}".encode()).decode("ascii")
        return f"Basic {token}"


@dataclass
class CallOptions:
    """Per-call options.

    Unset fields fall back to the client's settings.
    """

    timeout: float | None = None
    credentials: UserCredentials | None = None
    requires_leader: bool | None = None
    headers: dict[str, str] = field(default_factory=dict)

    def merged(self, settings: ClientSettings, default_deadline: bool = True) -> CallOptions:
        """Fill unset fields from client settings.

        With default_deadline=False an unset timeout stays unset; calls that
        run until cancelled use this so only an explicit timeout bounds them.
        """
        timeout = self.timeout
        if timeout is None and default_deadline:
            timeout = settings.default_deadline
        return CallOptions(
            timeout=timeout,
            credentials=self.credentials or settings.credentials,
            requires_leader=(
                self.requires_leader
                if self.requires_leader is not None
                else settings.node_preference == NodePreference.LEADER
            ),
            headers=dict(self.headers),
        )

    def metadata(self) -> tuple[tuple[str, str], ...]:
        """Call metadata sent alongside the request."""
        items: list[tuple[str, str]] = list(self.headers.items())
        if self.credentials:
            items.append(("authorization", self.credentials.authorization()))
        if self.requires_leader:
            items.append(("requires-leader", "true"))
        return tuple(items)


@dataclass
class ClientSettings:
    """Configuration for EventStoreClient."""

    endpoints: list[Endpoint] = field(default_factory=lambda: [Endpoint("localhost")])
    node_preference: NodePreference = NodePreference.LEADER
    tls: bool = True
    root_certificates: bytes | None = None
    credentials: UserCredentials | None = None
    default_deadline: float | None = DEFAULT_DEADLINE
    # Ask each node which methods it serves before its first call.
    discover_features: bool = True

    # Channel options
    keep_alive_interval: float | None = 10.0
    keep_alive_timeout: float | None = 10.0
    max_message_length: int = DEFAULT_MAX_MESSAGE_LENGTH
    connection_name: str | None = None

    def default_options(self) -> CallOptions:
        return CallOptions().merged(self)

    @classmethod
    def from_env(cls, **overrides: object) -> ClientSettings:
        """Build settings from EVENTSTORE_* environment variables.

        Keyword arguments override values found in the environment.
        """
        values: dict[str, object] = {}

        endpoints = os.environ.get("EVENTSTORE_ENDPOINTS")
        if endpoints:
            values["endpoints"] = [Endpoint.parse(e) for e in endpoints.split(",") if e.strip()]

        preference = os.environ.get("EVENTSTORE_NODE_PREFERENCE")
        if preference:
            values["node_preference"] = NodePreference(preference.lower())

        tls = os.environ.get("EVENTSTORE_TLS")
        if tls is not None:
            values["tls"] = tls.lower() in ("1", "true", "yes", "on")

        username = os.environ.get("EVENTSTORE_USERNAME")
        if username:
            values["credentials"] = UserCredentials(
                username=username,
                password=os.environ.get("EVENTSTORE_PASSWORD", ""),
            )

        deadline = os.environ.get("EVENTSTORE_DEADLINE")
        if deadline:
            values["default_deadline"] = float(deadline)

        values.update(overrides)
        logger.debug(f"Settings from environment: {sorted(values)}")
        return cls(**values)  # type: ignore[arg-type]
