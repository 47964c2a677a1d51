"""Node selection.

The selector owns the ranked list of cluster members and one transport per
member endpoint. Operations ask it for a transport for a preferred role;
it never discovers nodes itself. The member list comes from the caller
(for example a gossip client), or defaults to one member per configured
endpoint.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable, Iterable, Sequence
from dataclasses import dataclass, replace
from enum import Enum

from .errors import ClientConnectionError, DeadlineExceeded, EventStoreError, NotLeaderError
from .features import GetSupportedMethods, is_method_supported
from .settings import ClientSettings, Endpoint, NodePreference
from .transport.base import Transport, TransportConfig
from .transport.grpc_transport import GrpcTransport

logger = logging.getLogger(__name__)


class NodeRole(str, Enum):
    """Role a member plays in the cluster."""

    LEADER = "leader"
    FOLLOWER = "follower"
    READ_ONLY_REPLICA = "read_only_replica"
    UNKNOWN = "unknown"


_ROLE_FOR_PREFERENCE = {
    NodePreference.LEADER: NodeRole.LEADER,
    NodePreference.FOLLOWER: NodeRole.FOLLOWER,
    NodePreference.READ_ONLY_REPLICA: NodeRole.READ_ONLY_REPLICA,
}


@dataclass(frozen=True)
class ClusterMember:
    """One candidate node, as ranked by the caller."""

    endpoint: Endpoint
    role: NodeRole = NodeRole.UNKNOWN
    is_alive: bool = True
    # None until known; an unknown set does not restrict any method.
    supported_methods: frozenset[str] | None = None
    server_version: str | None = None


TransportFactory = Callable[[ClusterMember], Transport]


class NodeSelector:
    """Chooses a cluster member and hands out its transport.

    Transports are created on first use and cached per endpoint, so
    concurrent operations against the same node share one connection.
    When settings.discover_features is on, a new transport first asks its
    node which methods it serves and the answer is kept on the member.
    """

    def __init__(
        self,
        settings: ClientSettings,
        members: Sequence[ClusterMember] | None = None,
        transport_factory: TransportFactory | None = None,
    ):
        self.settings = settings
        self._members: list[ClusterMember] = list(
            members if members is not None else [ClusterMember(e) for e in settings.endpoints]
        )
        self._transport_factory = transport_factory or self._grpc_transport
        self._transports: dict[Endpoint, Transport] = {}
        self._lock = asyncio.Lock()

    @classmethod
    def for_transport(cls, transport: Transport, settings: ClientSettings | None = None) -> NodeSelector:
        """Selector that always hands out `transport`."""
        settings = settings or ClientSettings(endpoints=[transport.endpoint])
        member = ClusterMember(
            transport.endpoint,
            role=NodeRole.LEADER,
            supported_methods=transport.supported_methods,
        )
        return cls(settings, [member], transport_factory=lambda _: transport)

    def _grpc_transport(self, member: ClusterMember) -> Transport:
        config = TransportConfig.from_settings(
            self.settings, member.endpoint, member.supported_methods
        )
        return GrpcTransport(config)

    @property
    def members(self) -> list[ClusterMember]:
        return self._members.copy()

    def update_members(self, members: Iterable[ClusterMember]) -> None:
        """Replace the member list, e.g. after a fresh gossip read."""
        self._members = list(members)
        logger.debug(f"Cluster members: {[str(m.endpoint) for m in self._members]}")

    def select(self, preferred_role: NodePreference | None = None) -> ClusterMember:
        """Pick the highest ranked live member for the preference.

        Raises:
            ClientConnectionError: If no suitable member is alive
        """
        alive = [m for m in self._members if m.is_alive]
        if not alive:
            raise ClientConnectionError("No live cluster member available")

        preference = preferred_role or self.settings.node_preference
        wanted = _ROLE_FOR_PREFERENCE.get(preference)
        if wanted is None:
            return alive[0]

        for member in alive:
            if member.role == wanted:
                return member

        # Static endpoints carry no role; any of them may be asked.
        unknown = [m for m in alive if m.role == NodeRole.UNKNOWN]
        if unknown:
            return unknown[0]
        if wanted == NodeRole.LEADER:
            raise ClientConnectionError(
                "No leader available", {"members": [str(m.endpoint) for m in alive]}
            )
        return alive[0]

    async def acquire_transport(self, preferred_role: NodePreference | None = None) -> Transport:
        """Return a transport bound to the selected member.

        Raises:
            ClientConnectionError: If no suitable member is alive
        """
        member = self.select(preferred_role)
        async with self._lock:
            transport = self._transports.get(member.endpoint)
            if transport is None:
                transport = self._transport_factory(member)
                logger.debug(f"Created transport for {member.endpoint} ({member.role.value})")
                if member.supported_methods is None and self.settings.discover_features:
                    try:
                        await self._discover(member, transport)
                    except BaseException:
                        await transport.close()
                        raise
                self._transports[member.endpoint] = transport
        return transport

    async def _discover(self, member: ClusterMember, transport: Transport) -> None:
        """Record the methods the member's node serves.

        A node that cannot answer is treated as serving everything. Connection
        failures and timeouts propagate.
        """
        try:
            info = await GetSupportedMethods().send(transport, self.settings.default_options())
        except (ClientConnectionError, DeadlineExceeded):
            raise
        except EventStoreError as e:
            logger.warning(f"Feature discovery failed on {member.endpoint}: {e}")
            return
        logger.info(
            f"Node {member.endpoint} runs {info.server_version or 'an unknown version'} "
            f"with {len(info.supported_methods)} methods"
        )
        self._members = [
            replace(
                m,
                supported_methods=info.method_paths(),
                server_version=info.server_version or None,
            )
            if m.endpoint == member.endpoint
            else m
            for m in self._members
        ]

    def member_for(self, endpoint: Endpoint) -> ClusterMember | None:
        return next((m for m in self._members if m.endpoint == endpoint), None)

    def is_supported(self, endpoint: Endpoint, method: str) -> bool:
        """Whether the node at `endpoint` serves `method`, as far as is known."""
        member = self.member_for(endpoint)
        if member is None or member.supported_methods is None:
            return True
        return is_method_supported(method, member.supported_methods)

    async def invalidate(self, endpoint: Endpoint) -> None:
        """Drop the cached transport for an endpoint after a connection failure."""
        transport = self._transports.pop(endpoint, None)
        if transport is not None:
            logger.warning(f"Invalidated transport for {endpoint}")
            await transport.close()

    def redirect(self, error: NotLeaderError) -> None:
        """Record the leader a follower pointed us to.

        The next leader-preferring selection picks it. Nothing is retried here.
        """
        if not error.leader_host:
            return
        leader = Endpoint(error.leader_host, error.leader_port or self.settings.endpoints[0].port)
        members = [
            replace(m, role=NodeRole.FOLLOWER) if m.role == NodeRole.LEADER else m
            for m in self._members
            if m.endpoint != leader
        ]
        existing = next((m for m in self._members if m.endpoint == leader), None)
        leader_member = replace(existing, role=NodeRole.LEADER) if existing else ClusterMember(
            leader, role=NodeRole.LEADER
        )
        self._members = [leader_member, *members]
        logger.info(f"Leader is now {leader}")

    async def close(self) -> None:
        """Close every transport this selector created."""
        transports = list(self._transports.values())
        self._transports.clear()
        for transport in transports:
            await transport.close()
