"""Closest peer queries using the Kademlia XOR metric.

Identity keys are hashed to fixed-length digests and the distance between
two keys is the bitwise XOR of their digests interpreted as an unsigned
big-endian integer:

    distance(a, b) = int(H(a)) XOR int(H(b))

Unlike Kademlia, peers are not organized into k-buckets. The index is a
flat, distance-ordered view over every registered peer which is enough for
a single rendezvous server.

Note:
    Distances are always compared as integers. Comparing hex encodings of
    the XOR digest as strings gives the wrong order as soon as encodings
    differ in length or leading zero bytes are stripped.
"""
from __future__ import annotations

import functools
import hashlib
import heapq
from typing import Any
from typing import Callable

from nexusrelay.exceptions import ValidationError
from nexusrelay.registry import PeerRecord
from nexusrelay.registry import Registry

DEFAULT_K = 20


def sha256_digest(key: str) -> bytes:
    """Get the 256-bit digest of an identity key."""
    return hashlib.sha256(key.encode()).digest()


def xor_distance(a: bytes, b: bytes) -> int:
    """Compute the XOR distance between two digests.

    Digests are interpreted as unsigned big-endian integers so leading
    zero bytes are handled correctly.

    Returns:
        Non-negative integer distance. Zero if and only if `a == b` for
        digests of equal length.
    """
    return int.from_bytes(a, 'big') ^ int.from_bytes(b, 'big')


class ProximityIndex:
    """Distance ordered lookup over the identity keys of registered peers.

    Args:
        registry: Registry to read peers from.
        digest: Hash function mapping an identity key to a digest.
        default_k: Number of peers returned by
            [`find_closest()`][nexusrelay.proximity.ProximityIndex.find_closest]
            if `k` is not specified.
        cache_size: Maximum number of key digests to cache.
    """

    def __init__(
        self,
        registry: Registry,
        digest: Callable[[str], bytes] = sha256_digest,
        default_k: int = DEFAULT_K,
        cache_size: int = 4096,
    ) -> None:
        self.registry = registry
        self.default_k = default_k
        self._digest = functools.lru_cache(maxsize=cache_size)(digest)

    def digest(self, key: str) -> bytes:
        """Get the (cached) digest of an identity key."""
        return self._digest(key)

    def distance(self, a: str, b: str) -> int:
        """Get the XOR distance between two identity keys."""
        return xor_distance(self.digest(a), self.digest(b))

    def find_closest(
        self,
        target_key: str,
        k: int | None = None,
    ) -> list[PeerRecord]:
        """Find the registered peers closest to a key.

        The query is symmetric so a peer querying its own key is included
        in the result if registered.

        Args:
            target_key: Identity key to measure distances from.
            k: Maximum number of peers to return.

        Returns:
            Up to `k` peers ordered by increasing distance, ties broken by
            peer ID.

        Raises:
            ValidationError: If `target_key` is empty or `k` is negative.
        """
        if not target_key or not isinstance(target_key, str):
            raise ValidationError('target identity key is required.')
        k = self.default_k if k is None else k
        if k < 0:
            raise ValidationError(f'k must be non-negative. Got {k}.')

        target = self.digest(target_key)

        def _key(record: PeerRecord) -> tuple[int, str]:
            distance = xor_distance(target, self.digest(record.identity_key))
            return (distance, record.peer_id)

        return heapq.nsmallest(k, self.registry.snapshot(), key=_key)


def closest_view(record: PeerRecord) -> dict[str, Any]:
    """Public view of a peer returned by closest peer queries."""
    return {
        'peer_id': record.peer_id,
        'identity_key': record.identity_key,
        'address': record.address,
    }
