"""Rendezvous service composing the registry, selector, index, and relay.

The [`Rendezvous`][nexusrelay.service.Rendezvous] is the boundary between
the core and the transport layer. It accepts request messages, invokes the
core components, and returns response messages. It never touches sockets
itself; connections are passed in as opaque
[`PeerTransport`][nexusrelay.protocols.PeerTransport] handles.
"""
from __future__ import annotations

import logging
import time
from typing import Any
from typing import Callable

from nexusrelay.bootstrap import BootstrapSelector
from nexusrelay.classify import RegionClassifier
from nexusrelay.classify import TrustClassifier
from nexusrelay.config import RendezvousServingConfig
from nexusrelay.exceptions import NotFoundError
from nexusrelay.exceptions import UnreachableError
from nexusrelay.exceptions import ValidationError
from nexusrelay.liveness import LivenessMonitor
from nexusrelay.messages import ClosestPeersResponse
from nexusrelay.messages import HeartbeatResponse
from nexusrelay.messages import NetworkStatsResponse
from nexusrelay.messages import PeerListResponse
from nexusrelay.messages import PeerLookupResponse
from nexusrelay.messages import RegistrationRequest
from nexusrelay.messages import RegistrationResponse
from nexusrelay.messages import ServerResponse
from nexusrelay.messages import SignalRequest
from nexusrelay.messages import SignalResponse
from nexusrelay.messages import UnregisterResponse
from nexusrelay.protocols import PeerTransport
from nexusrelay.proximity import closest_view
from nexusrelay.proximity import ProximityIndex
from nexusrelay.registry import PeerRecord
from nexusrelay.registry import Registry
from nexusrelay.signaling import SignalingRelay

logger = logging.getLogger(__name__)


def _require_peer_id(peer_id: Any) -> str:
    if not peer_id or not isinstance(peer_id, str):
        raise ValidationError('peer_id is required.')
    return peer_id


def _optional_int(value: Any, name: str) -> int | None:
    if value is None:
        return None
    if not isinstance(value, int) or isinstance(value, bool):
        raise ValidationError(f'{name} must be an integer. Got {value!r}.')
    return value


def _optional_peer_id(value: Any, name: str) -> str | None:
    if value is None:
        return None
    if not value or not isinstance(value, str):
        raise ValidationError(f'{name} must be a non-empty string.')
    return value


class Rendezvous:
    """Peer discovery and signaling relay service.

    Args:
        config: Server configuration. Defaults are used if `None`.
        registry: Registry to use. A new registry configured from `config`
            is created if `None`.
        clock: Callable returning the current time in seconds.
    """

    def __init__(
        self,
        config: RendezvousServingConfig | None = None,
        registry: Registry | None = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.config = RendezvousServingConfig() if config is None else config
        self.clock = clock
        self.started_at = clock()

        classifier = self.config.classifier
        self.registry = (
            Registry(
                region_classifier=RegionClassifier(
                    classifier.regions,
                    classifier.local_region,
                ),
                trust_classifier=TrustClassifier(
                    classifier.official_bundle_ids,
                    classifier.brand_token,
                ),
                clock=clock,
                strict=self.config.strict_registry,
            )
            if registry is None
            else registry
        )

        liveness = self.config.liveness
        self.selector = BootstrapSelector(
            self.registry,
            official_cap=self.config.bootstrap.official_cap,
            fallback_threshold=self.config.bootstrap.fallback_threshold,
            active_window=liveness.active_window,
            max_peers_limit=self.config.bootstrap.max_peers_limit,
            clock=clock,
        )
        self.proximity = ProximityIndex(
            self.registry,
            default_k=self.config.proximity.default_k,
        )
        self.relay = SignalingRelay(
            self.registry,
            delivery_timeout=self.config.signaling.delivery_timeout,
            enable_gossip=self.config.signaling.enable_gossip,
            clock=clock,
        )
        self.monitor = LivenessMonitor(
            self.registry,
            peer_timeout=liveness.peer_timeout,
            cleanup_interval=liveness.cleanup_interval,
            clock=clock,
        )

    def start(self) -> None:
        """Start periodic peer eviction. Requires a running event loop."""
        self.monitor.start()

    async def stop(self) -> None:
        """Stop periodic peer eviction."""
        await self.monitor.stop()

    def _next_heartbeat_deadline(self) -> float:
        return self.clock() + self.config.liveness.heartbeat_interval

    def register(
        self,
        request: RegistrationRequest,
        transport: PeerTransport | None = None,
        origin: str | None = None,
    ) -> RegistrationResponse:
        """Register a peer and select its initial bootstrap peers.

        Args:
            request: Registration request.
            transport: Connection the request arrived on.
            origin: Address the connection originates from. Used for
                region assignment and as the peer address if the request
                does not declare one.

        Raises:
            ValidationError: If the peer ID or address is missing.
        """
        record = self.registry.register(
            request.peer_id,
            request.address or origin,
            port=request.port,
            identity_key=request.identity_key,
            metadata=request.metadata,
            transport=transport,
            origin=origin,
        )
        candidates = self.selector.select_for(
            record,
            max_peers=self.config.bootstrap.max_peers,
        )
        stats = self.monitor.recompute_stats()
        return RegistrationResponse(
            success=True,
            peer_id=record.peer_id,
            region=record.region,
            classification=record.classification.to_dict(),
            peers=[c.to_dict() for c in candidates],
            network_stats=stats.to_dict(),
            next_heartbeat_deadline=self._next_heartbeat_deadline(),
        )

    def reconnect(
        self,
        peer_id: str,
        transport: PeerTransport,
    ) -> ServerResponse:
        """Attach a new connection to an existing registration.

        Raises:
            NotFoundError: If the peer is not registered.
        """
        _require_peer_id(peer_id)
        if not self.registry.attach_transport(peer_id, transport):
            raise NotFoundError(f'Peer {peer_id} is not registered.')
        return ServerResponse(success=True, message=f'Reconnected {peer_id}.')

    def heartbeat(self, peer_id: str) -> HeartbeatResponse:
        """Renew the liveness of a peer.

        Raises:
            NotFoundError: If the peer is not registered. Peers should
                register again.
        """
        _require_peer_id(peer_id)
        if not self.registry.heartbeat(peer_id):
            raise NotFoundError(
                f'Peer {peer_id} is not registered. Register again.',
            )
        return HeartbeatResponse(
            success=True,
            next_heartbeat_deadline=self._next_heartbeat_deadline(),
        )

    def unregister(self, peer_id: str) -> UnregisterResponse:
        """Remove a peer. Unregistering an unknown peer is not an error."""
        _require_peer_id(peer_id)
        return UnregisterResponse(success=self.registry.remove(peer_id))

    def disconnect(self, peer_id: str, transport: PeerTransport) -> bool:
        """Handle a closed connection.

        The peer is only removed if its registration still belongs to the
        closed connection.

        Returns:
            If the peer was removed.
        """
        return self.registry.remove(peer_id, transport=transport)

    def lookup(self, peer_id: str) -> PeerLookupResponse:
        """Look up a single peer."""
        _require_peer_id(peer_id)
        record = self.registry.get(peer_id)
        if record is None:
            return PeerLookupResponse(found=False)
        return PeerLookupResponse(found=True, peer=record.public_view())

    def closest(
        self,
        target_identity_key: str,
        k: int | None = None,
    ) -> ClosestPeersResponse:
        """Find the peers with identity keys closest to a target key.

        Raises:
            ValidationError: If the target key is missing or `k` is not a
                non-negative integer.
        """
        k = _optional_int(k, 'k')
        if k is not None:
            k = min(k, self.config.proximity.max_k)
        records = self.proximity.find_closest(target_identity_key, k)
        return ClosestPeersResponse(peers=[closest_view(r) for r in records])

    def bootstrap_peers(
        self,
        peer_id: str | None = None,
        max_peers: int | None = None,
    ) -> PeerListResponse:
        """Get a ranked list of peers to dial.

        Args:
            peer_id: Requesting peer. Excluded from the result. If
                registered, its region is used for ranking.
            max_peers: Maximum number of peers to return.
        """
        peer_id = _optional_peer_id(peer_id, 'peer_id')
        max_peers = _optional_int(max_peers, 'max_peers')
        record = None if peer_id is None else self.registry.get(peer_id)
        max_peers = (
            self.config.bootstrap.max_peers if max_peers is None else max_peers
        )
        candidates = self.selector.select(
            peer_id,
            None if record is None else record.region,
            None if record is None else record.classification,
            max_peers=max_peers,
        )
        total = sum(
            1 for r in self._active_peers() if r.peer_id != peer_id
        )
        return PeerListResponse(
            peers=[c.to_dict() for c in candidates],
            total_available=total,
        )

    async def signal(
        self,
        request: SignalRequest,
        from_peer_id: str | None = None,
    ) -> SignalResponse:
        """Relay a signaling payload.

        Args:
            request: Signaling request.
            from_peer_id: Sender as known to the transport. Takes priority
                over the sender claimed in the request.

        Returns:
            Relay result. A target that is unknown or unreachable is
            reported with `success=False` and a reason code.

        Raises:
            ValidationError: If the request is malformed.
        """
        sender = _optional_peer_id(
            from_peer_id or request.from_peer_id,
            'from_peer_id',
        )
        if sender is None:
            raise ValidationError('from_peer_id is required.')
        if request.to_peer_id is not None and not isinstance(
            request.to_peer_id,
            str,
        ):
            raise ValidationError('to_peer_id must be a string.')
        try:
            outcome = await self.relay.relay(
                request.action,
                sender,
                request.to_peer_id,
                request.payload,
            )
        except (NotFoundError, UnreachableError) as e:
            logger.debug(f'Failed to relay signal from {sender}: {e}')
            return SignalResponse(
                success=False,
                action=request.action,
                reason=e.reason,
                failed=[request.to_peer_id] if request.to_peer_id else [],
            )
        return SignalResponse(
            success=outcome.success,
            action=outcome.action.value,
            delivered=outcome.delivered,
            failed=outcome.failed,
        )

    def _active_peers(self) -> list[PeerRecord]:
        window = self.config.liveness.active_window
        if window is None:
            return list(self.registry.snapshot())
        cutoff = self.clock() - window
        return list(self.registry.snapshot(lambda r: r.last_seen >= cutoff))

    def _open_connections(self) -> int:
        # Several peers may share one connection
        reachable = self.registry.snapshot(lambda r: r.reachable)
        return len({id(r.transport) for r in reachable})

    def stats(self) -> NetworkStatsResponse:
        """Get aggregate network statistics."""
        now = self.clock()
        counters = self.monitor.recompute_stats()
        recent_cutoff = now - self.config.liveness.recent_window
        recent = sorted(
            self.registry.snapshot(lambda r: r.registered_at >= recent_cutoff),
            key=lambda r: r.registered_at,
            reverse=True,
        )
        stats = {
            'server_id': self.config.server_id,
            **counters.to_dict(),
            'active_peers': len(self._active_peers()),
            'open_connections': self._open_connections(),
            'region_distribution': self.registry.region_counts(),
            'recent_activity': [
                {**r.public_view(), 'registered_at': r.registered_at}
                for r in recent
            ],
            'uptime': now - self.started_at,
            'timestamp': now,
        }
        return NetworkStatsResponse(stats=stats)

    def health(self) -> dict[str, Any]:
        """Get a health summary of the server."""
        now = self.clock()
        return {
            'status': 'healthy',
            'server_id': self.config.server_id,
            'total_peers': len(self.registry),
            'active_peers': len(self._active_peers()),
            'uptime': now - self.started_at,
            'timestamp': now,
        }
