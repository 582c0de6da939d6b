"""Registry of peers known to the rendezvous server."""
from __future__ import annotations

import dataclasses
import logging
import threading
import time
from typing import Any
from typing import Callable
from typing import Iterator
from typing import Mapping

from nexusrelay.classify import Classification
from nexusrelay.classify import PeerMetadata
from nexusrelay.classify import RegionClassifier
from nexusrelay.classify import TrustClassifier
from nexusrelay.exceptions import RegistryIndexError
from nexusrelay.exceptions import ValidationError
from nexusrelay.protocols import PeerTransport

logger = logging.getLogger(__name__)

DEFAULT_PORT = 8080


@dataclasses.dataclass(eq=False)
class PeerRecord:
    """Registration of a single peer.

    Attributes:
        peer_id: Unique identifier of the peer.
        address: Reachable address of the peer.
        port: Port the peer accepts connections on.
        identity_key: Secondary identifier used for proximity queries.
        metadata: Application metadata declared by the peer.
        classification: Trust classification assigned at registration.
        region: Region tag assigned at registration.
        registered_at: Time the peer registered.
        last_seen: Time of the last heartbeat or inbound activity.
        heartbeat_count: Number of heartbeats received.
        transport: Connection used to deliver messages to the peer.
    """

    peer_id: str
    address: str
    port: int
    identity_key: str
    metadata: PeerMetadata
    classification: Classification
    region: str
    registered_at: float
    last_seen: float
    heartbeat_count: int = 0
    transport: PeerTransport | None = dataclasses.field(
        default=None,
        repr=False,
    )

    @property
    def reachable(self) -> bool:
        """Peer has a transport that is open for delivery."""
        return self.transport is not None and self.transport.is_open

    def public_view(self) -> dict[str, Any]:
        """Get the fields of this record safe to share with other peers."""
        return {
            'peer_id': self.peer_id,
            'address': self.address,
            'last_seen': self.last_seen,
            'classification': self.classification.to_dict(),
        }


class Registry:
    """Thread-safe store of all registered peers.

    The registry also maintains a secondary index of region tag to the set
    of peers in that region. The index is only ever modified alongside the
    primary mapping.

    Args:
        region_classifier: Callable mapping a network address to a region
            tag.
        trust_classifier: Callable mapping declared metadata to a
            classification.
        clock: Callable returning the current time in seconds.
        strict: Raise
            [`RegistryIndexError`][nexusrelay.exceptions.RegistryIndexError]
            if the region index is found to be inconsistent rather than
            logging a warning and rebuilding the index.
    """

    def __init__(
        self,
        region_classifier: Callable[[str], str] | None = None,
        trust_classifier: Callable[[PeerMetadata], Classification]
        | None = None,
        clock: Callable[[], float] = time.time,
        strict: bool = False,
    ) -> None:
        self.region_classifier = (
            RegionClassifier()
            if region_classifier is None
            else region_classifier
        )
        self.trust_classifier = (
            TrustClassifier() if trust_classifier is None else trust_classifier
        )
        self.clock = clock
        self.strict = strict

        self._lock = threading.RLock()
        self._peers: dict[str, PeerRecord] = {}
        self._regions: dict[str, set[str]] = {}
        self._total_registrations = 0

    def __len__(self) -> int:
        return len(self._peers)

    def __contains__(self, peer_id: object) -> bool:
        return peer_id in self._peers

    @property
    def total_registrations(self) -> int:
        """Number of registrations since creation. Never decremented."""
        return self._total_registrations

    def register(
        self,
        peer_id: str,
        address: str | None,
        *,
        port: int | None = None,
        identity_key: str | None = None,
        metadata: PeerMetadata | Mapping[str, Any] | None = None,
        transport: PeerTransport | None = None,
        origin: str | None = None,
    ) -> PeerRecord:
        """Register a peer.

        Any existing record with the same `peer_id` is replaced; attributes
        of the prior record are not merged into the new record.

        Args:
            peer_id: Unique identifier of the peer.
            address: Reachable address of the peer.
            port: Port the peer accepts connections on.
            identity_key: Proximity key of the peer. Defaults to `peer_id`.
            metadata: Declared application metadata.
            transport: Connection to the peer.
            origin: Address the registration originated from. Used to
                assign the region tag, falling back to `address`.

        Returns:
            The new record.

        Raises:
            ValidationError: If `peer_id` or `address` is missing or a
                field has the wrong type.
        """
        if not peer_id or not isinstance(peer_id, str):
            raise ValidationError('peer_id is required.')
        if not address or not isinstance(address, str):
            raise ValidationError('A reachable address is required.')
        if port is not None and (
            not isinstance(port, int) or isinstance(port, bool)
        ):
            raise ValidationError(f'port must be an integer. Got {port!r}.')
        if identity_key is not None and not isinstance(identity_key, str):
            raise ValidationError('identity_key must be a string.')

        if not isinstance(metadata, PeerMetadata):
            metadata = PeerMetadata.from_dict(metadata)

        now = self.clock()
        record = PeerRecord(
            peer_id=peer_id,
            address=address,
            port=DEFAULT_PORT if port is None else port,
            identity_key=identity_key or peer_id,
            metadata=metadata,
            classification=self.trust_classifier(metadata),
            region=self.region_classifier(origin or address),
            registered_at=now,
            last_seen=now,
            transport=transport,
        )

        with self._lock:
            existing = self._peers.get(peer_id)
            self._peers[peer_id] = record
            if existing is not None:
                self._unindex(existing)
            self._index(record)
            self._total_registrations += 1
            total = len(self._peers)

        action = 'Re-registered' if existing is not None else 'Registered'
        logger.info(
            f'{action} peer {peer_id} (region={record.region}, '
            f'variant={record.classification.app_variant.value}) '
            f'(total: {total})',
        )
        return record

    def heartbeat(self, peer_id: str) -> bool:
        """Renew the liveness of a peer.

        A heartbeat for an unknown peer never creates a record.

        Returns:
            If the peer is registered.
        """
        with self._lock:
            record = self._peers.get(peer_id)
            if record is None:
                return False
            record.last_seen = max(record.last_seen, self.clock())
            record.heartbeat_count += 1
            return True

    def touch(self, peer_id: str) -> bool:
        """Update the last seen time of a peer because of inbound activity.

        Returns:
            If the peer is registered.
        """
        with self._lock:
            record = self._peers.get(peer_id)
            if record is None:
                return False
            record.last_seen = max(record.last_seen, self.clock())
            return True

    def attach_transport(self, peer_id: str, transport: PeerTransport) -> bool:
        """Attach a new connection to an existing registration.

        Returns:
            If the peer is registered.
        """
        with self._lock:
            record = self._peers.get(peer_id)
            if record is None:
                return False
            record.transport = transport
            record.last_seen = max(record.last_seen, self.clock())
        logger.info(f'Attached new connection to peer {peer_id}')
        return True

    def remove(
        self,
        peer_id: str,
        transport: PeerTransport | None = None,
    ) -> bool:
        """Remove a peer.

        Removing an unknown peer is not an error.

        Args:
            peer_id: Peer to remove.
            transport: Only remove the peer if its record is still
                associated with this connection.

        Returns:
            If a record was removed.
        """
        if transport is None:
            return self.remove_if(peer_id, lambda _: True)
        return self.remove_if(peer_id, lambda r: r.transport is transport)

    def remove_if(
        self,
        peer_id: str,
        predicate: Callable[[PeerRecord], bool],
    ) -> bool:
        """Remove a peer if its current record satisfies a predicate.

        The predicate is evaluated under the same lock as the removal so
        the record cannot be replaced in between.

        Returns:
            If a record was removed.
        """
        with self._lock:
            record = self._peers.get(peer_id)
            if record is None or not predicate(record):
                return False
            del self._peers[peer_id]
            self._unindex(record)
            total = len(self._peers)

        logger.info(f'Removed peer {peer_id} (total: {total})')
        return True

    def get(self, peer_id: str) -> PeerRecord | None:
        """Get the record of a peer if registered."""
        return self._peers.get(peer_id, None)

    def snapshot(
        self,
        predicate: Callable[[PeerRecord], bool] | None = None,
    ) -> Iterator[PeerRecord]:
        """Iterate over registered peers.

        Iterates over a point-in-time copy of the registry so the registry
        may be modified while iterating. Iteration order is unspecified.

        Args:
            predicate: Optional filter on records.
        """
        with self._lock:
            records = list(self._peers.values())
        for record in records:
            if predicate is None or predicate(record):
                yield record

    def peers_in_region(self, region: str) -> list[PeerRecord]:
        """Get all peers in a region."""
        with self._lock:
            peer_ids = self._regions.get(region, set())
            return [
                self._peers[peer_id]
                for peer_id in peer_ids
                if peer_id in self._peers
            ]

    def region_counts(self) -> dict[str, int]:
        """Get the number of peers in each region."""
        with self._lock:
            return {
                region: len(peers)
                for region, peers in self._regions.items()
                if len(peers) > 0
            }

    def verify_index(self) -> bool:
        """Check the region index against the registered peers.

        Returns:
            If the index was consistent. An inconsistent index is rebuilt
            unless the registry is strict.

        Raises:
            RegistryIndexError: If the index is inconsistent and the
                registry is strict.
        """
        with self._lock:
            expected: dict[str, set[str]] = {}
            for record in self._peers.values():
                expected.setdefault(record.region, set()).add(record.peer_id)
            actual = {
                region: peers
                for region, peers in self._regions.items()
                if len(peers) > 0
            }
            if expected == actual:
                return True
            self._index_inconsistent(
                'Region index does not match registered peers.',
            )
            return False

    def reindex(self) -> None:
        """Rebuild the region index from the registered peers."""
        with self._lock:
            self._regions = {}
            for record in self._peers.values():
                self._index(record)

    def clear(self) -> None:
        """Remove all peers."""
        with self._lock:
            self._peers.clear()
            self._regions.clear()

    def _index(self, record: PeerRecord) -> None:
        self._regions.setdefault(record.region, set()).add(record.peer_id)

    def _unindex(self, record: PeerRecord) -> None:
        members = self._regions.get(record.region)
        if members is None or record.peer_id not in members:
            self._index_inconsistent(
                f'Region index is missing peer {record.peer_id} in region '
                f'{record.region}.',
            )
            return
        members.discard(record.peer_id)
        if len(members) == 0:
            del self._regions[record.region]

    def _index_inconsistent(self, message: str) -> None:
        if self.strict:
            raise RegistryIndexError(message)
        logger.warning(f'{message} Rebuilding region index.')
        self.reindex()
