"""Expiry of peers that stopped sending heartbeats."""
from __future__ import annotations

import asyncio
import dataclasses
import logging
import time
from typing import Any
from typing import Callable
from typing import Iterable

from nexusrelay.classify import AppVariant
from nexusrelay.registry import PeerRecord
from nexusrelay.registry import Registry
from nexusrelay.utils.tasks import cancel_task
from nexusrelay.utils.tasks import spawn_periodic_task

logger = logging.getLogger(__name__)

DEFAULT_PEER_TIMEOUT = 600.0
DEFAULT_CLEANUP_INTERVAL = 120.0


def is_expired(record: PeerRecord, now: float, timeout: float) -> bool:
    """Check if a peer has not been seen for longer than `timeout`."""
    return now - record.last_seen > timeout


def find_expired(
    records: Iterable[PeerRecord],
    now: float,
    timeout: float,
) -> list[str]:
    """Get the IDs of peers that should be evicted.

    A record that cannot be evaluated is logged and skipped so one bad
    record does not prevent the others from being evaluated.

    Args:
        records: Records to evaluate.
        now: Current time in seconds.
        timeout: Seconds since last seen after which a peer is expired.

    Returns:
        IDs of expired peers.
    """
    expired = []
    for record in records:
        try:
            if is_expired(record, now, timeout):
                expired.append(record.peer_id)
        except Exception:
            logger.exception(
                f'Failed to evaluate liveness of peer {record.peer_id}',
            )
    return expired


@dataclasses.dataclass
class NetworkStats:
    """Aggregate counters derived from the set of live peers.

    Attributes:
        official: Number of peers running official applications.
        forks: Number of peers running forks.
        custom: Number of peers running custom applications.
        current: Number of registered peers.
        peak_peers: Largest `current` observed.
        total_registrations: Registrations since the server started.
    """

    official: int = 0
    forks: int = 0
    custom: int = 0
    current: int = 0
    peak_peers: int = 0
    total_registrations: int = 0

    def to_dict(self) -> dict[str, Any]:
        """Convert to a JSON compatible dictionary."""
        return dataclasses.asdict(self)


class LivenessMonitor:
    """Periodically evict peers whose heartbeats stopped.

    The eviction policy
    ([`find_expired()`][nexusrelay.liveness.find_expired]) is a pure
    function of the records and the current time; this class only applies
    it to the registry on an interval.

    Args:
        registry: Registry to evict peers from.
        peer_timeout: Seconds since last seen after which a peer is evicted.
            Should be several heartbeat intervals so a few missed
            heartbeats are tolerated.
        cleanup_interval: Seconds between eviction ticks.
        clock: Callable returning the current time in seconds.
    """

    def __init__(
        self,
        registry: Registry,
        peer_timeout: float = DEFAULT_PEER_TIMEOUT,
        cleanup_interval: float = DEFAULT_CLEANUP_INTERVAL,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.registry = registry
        self.peer_timeout = peer_timeout
        self.cleanup_interval = cleanup_interval
        self.clock = clock
        self._stats = NetworkStats()
        self._task: asyncio.Task[None] | None = None

    @property
    def stats(self) -> NetworkStats:
        """Network statistics as of the last recompute."""
        return self._stats

    def recompute_stats(self) -> NetworkStats:
        """Recompute aggregate counters from the live set of peers."""
        stats = NetworkStats(
            peak_peers=self._stats.peak_peers,
            total_registrations=self.registry.total_registrations,
        )
        for record in self.registry.snapshot():
            variant = record.classification.app_variant
            if variant is AppVariant.official:
                stats.official += 1
            elif variant is AppVariant.fork:
                stats.forks += 1
            else:
                stats.custom += 1
            stats.current += 1
        stats.peak_peers = max(stats.peak_peers, stats.current)
        self._stats = stats
        return stats

    def tick(self) -> list[str]:
        """Evict expired peers and recompute statistics.

        Returns:
            IDs of peers evicted during this tick.
        """
        now = self.clock()
        evicted = []
        for peer_id in find_expired(
            self.registry.snapshot(),
            now,
            self.peer_timeout,
        ):
            try:
                # Re-check under the registry lock in case the peer sent a
                # heartbeat or re-registered since the snapshot.
                removed = self.registry.remove_if(
                    peer_id,
                    lambda r: is_expired(r, now, self.peer_timeout),
                )
            except Exception:
                logger.exception(f'Failed to evict peer {peer_id}')
            else:
                if removed:
                    evicted.append(peer_id)

        self.registry.verify_index()
        self.recompute_stats()

        if len(evicted) > 0:
            logger.info(f'Cleaned up {len(evicted)} stale peers')
        return evicted

    def start(self) -> asyncio.Task[None]:
        """Start evicting peers in a background task.

        Must be called from within a running event loop.
        """
        if self._task is None or self._task.done():
            self._task = spawn_periodic_task(
                self.tick,
                self.cleanup_interval,
                name='liveness-monitor',
            )
        return self._task

    async def stop(self) -> None:
        """Stop the background eviction task."""
        await cancel_task(self._task)
        self._task = None
