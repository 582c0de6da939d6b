"""Tiered selection of bootstrap peers for newly joined peers."""
from __future__ import annotations

import dataclasses
import time
from typing import Any
from typing import Callable
from typing import Iterable

from nexusrelay.classify import AppVariant
from nexusrelay.classify import Classification
from nexusrelay.classify import TrustLevel
from nexusrelay.registry import PeerRecord
from nexusrelay.registry import Registry

DEFAULT_MAX_PEERS = 10
OFFICIAL_CAP = 4
FALLBACK_THRESHOLD = 3


@dataclasses.dataclass(frozen=True)
class BootstrapCandidate:
    """Peer a requester should attempt to connect to.

    Never exposes the transport of the candidate.
    """

    peer_id: str
    address: str
    port: int
    classification: Classification
    region: str
    last_seen: float
    capabilities: tuple[str, ...]

    @classmethod
    def from_record(cls, record: PeerRecord) -> BootstrapCandidate:
        """Create a candidate from a registry record."""
        return cls(
            peer_id=record.peer_id,
            address=record.address,
            port=record.port,
            classification=record.classification,
            region=record.region,
            last_seen=record.last_seen,
            capabilities=record.metadata.capabilities,
        )

    def to_dict(self) -> dict[str, Any]:
        """Convert to a JSON compatible dictionary."""
        return {
            'peer_id': self.peer_id,
            'address': self.address,
            'port': self.port,
            'classification': self.classification.to_dict(),
            'region': self.region,
            'last_seen': self.last_seen,
            'capabilities': list(self.capabilities),
        }


def _freshest_first(records: Iterable[PeerRecord]) -> list[PeerRecord]:
    return sorted(records, key=lambda r: (-r.last_seen, r.peer_id))


class BootstrapSelector:
    """Rank the peers a requesting peer should dial.

    Candidates are chosen in three tiers evaluated in order until
    `max_peers` candidates are selected:

    1. Official peers in the requester's region, at most `official_cap`.
    2. Peers in the requester's region that are not untrusted.
    3. Any remaining peer, only if fewer than `fallback_threshold`
       candidates were selected by the first two tiers.

    The requester is never a candidate and no peer is selected twice.
    Within a tier, the most recently seen peers come first.

    Args:
        registry: Registry to select peers from.
        official_cap: Maximum number of tier 1 candidates.
        fallback_threshold: Tier 3 is only used if fewer than this many
            candidates were selected by tiers 1 and 2.
        active_window: If set, only peers seen within this many seconds
            are eligible.
        max_peers_limit: Upper bound on the number of candidates a
            requester may ask for.
        clock: Callable returning the current time in seconds.
    """

    def __init__(
        self,
        registry: Registry,
        official_cap: int = OFFICIAL_CAP,
        fallback_threshold: int = FALLBACK_THRESHOLD,
        active_window: float | None = None,
        max_peers_limit: int | None = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.registry = registry
        self.official_cap = official_cap
        self.fallback_threshold = fallback_threshold
        self.active_window = active_window
        self.max_peers_limit = max_peers_limit
        self.clock = clock

    def _eligible(
        self,
        requester_id: str | None,
    ) -> Callable[[PeerRecord], bool]:
        cutoff = (
            None
            if self.active_window is None
            else self.clock() - self.active_window
        )

        def _predicate(record: PeerRecord) -> bool:
            if record.peer_id == requester_id:
                return False
            return cutoff is None or record.last_seen >= cutoff

        return _predicate

    def select(
        self,
        requester_id: str | None,
        region: str | None,
        classification: Classification | None = None,
        max_peers: int = DEFAULT_MAX_PEERS,
    ) -> list[BootstrapCandidate]:
        """Select bootstrap candidates for a requesting peer.

        Args:
            requester_id: Requesting peer which is excluded from the result.
            region: Region of the requester. If `None`, only the fallback
                tier can select candidates.
            classification: Classification of the requester. Currently
                unused by the tiers but accepted so selection policies can
                depend on it.
            max_peers: Maximum number of candidates to return.

        Returns:
            Ordered list of at most `max_peers` candidates.
        """
        if self.max_peers_limit is not None:
            max_peers = min(max_peers, self.max_peers_limit)
        if max_peers <= 0:
            return []

        eligible = self._eligible(requester_id)
        selected: list[PeerRecord] = []
        seen: set[str] = set()

        def _take(records: Iterable[PeerRecord], limit: int) -> None:
            for record in records:
                if len(selected) >= limit:
                    break
                if record.peer_id not in seen:
                    seen.add(record.peer_id)
                    selected.append(record)

        local: list[PeerRecord] = []
        if region is not None:
            local = _freshest_first(
                r for r in self.registry.peers_in_region(region) if eligible(r)
            )

        # Tier 1
        official = [
            r
            for r in local
            if r.classification.app_variant is AppVariant.official
        ]
        _take(official, min(self.official_cap, max_peers))

        # Tier 2
        trusted = [
            r
            for r in local
            if r.classification.trust_level is not TrustLevel.untrusted
        ]
        _take(trusted, max_peers)

        # Tier 3
        if len(selected) < self.fallback_threshold:
            _take(
                _freshest_first(self.registry.snapshot(eligible)),
                max_peers,
            )

        return [BootstrapCandidate.from_record(r) for r in selected]

    def select_for(
        self,
        record: PeerRecord,
        max_peers: int = DEFAULT_MAX_PEERS,
    ) -> list[BootstrapCandidate]:
        """Select bootstrap candidates for a registered peer."""
        return self.select(
            record.peer_id,
            record.region,
            record.classification,
            max_peers=max_peers,
        )
