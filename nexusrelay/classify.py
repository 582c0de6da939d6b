"""Region and trust classification of registering peers.

Both classifiers are heuristics: region tags are derived from a stable hash
of the peer's network origin (not a geolocation lookup) and trust tiers are
derived from the application metadata a peer declares about itself. The
contract both preserve is determinism: the same input always yields the
same tag.
"""
from __future__ import annotations

import dataclasses
import enum
import hashlib
import ipaddress
from typing import Any
from typing import Mapping
from typing import Sequence

from nexusrelay.exceptions import ValidationError

UNKNOWN = 'Unknown'
"""Value of metadata fields the peer did not declare."""

LOCAL_REGION = 'local'
"""Region tag of loopback and private-range addresses."""

DEFAULT_REGIONS = (
    'us-east',
    'us-west',
    'eu-west',
    'eu-central',
    'ap-south',
    'ap-northeast',
    'sa-east',
)
DEFAULT_CAPABILITIES = ('dht', 'webrtc')
DEFAULT_OFFICIAL_BUNDLE_IDS = (
    'com.nexus.app',
    'com.nexus.wallet',
    'com.nexus.desktop',
)
DEFAULT_BRAND_TOKEN = 'nexus'


class AppVariant(enum.Enum):
    """Kind of application a peer is running."""

    official = 'official'
    """Application built and distributed by the project."""
    fork = 'fork'
    """Third-party build carrying the project's brand."""
    custom = 'custom'
    """Anything else."""


class TrustLevel(enum.Enum):
    """Application trust tier."""

    trusted = 'trusted'
    semi_trusted = 'semi-trusted'
    untrusted = 'untrusted'


@dataclasses.dataclass(frozen=True)
class Classification:
    """Application trust classification of a peer.

    Attributes:
        app_variant: Kind of application the peer runs.
        trust_level: Trust tier derived from the variant.
    """

    app_variant: AppVariant
    trust_level: TrustLevel

    @property
    def is_official(self) -> bool:
        """Peer runs an official application build."""
        return self.app_variant is AppVariant.official

    def to_dict(self) -> dict[str, Any]:
        """Convert to a JSON compatible dictionary."""
        return {
            'app_variant': self.app_variant.value,
            'trust_level': self.trust_level.value,
            'is_official': self.is_official,
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> Classification:
        """Parse the output of `to_dict()`."""
        return cls(
            app_variant=AppVariant(data['app_variant']),
            trust_level=TrustLevel(data['trust_level']),
        )


_METADATA_ALIASES = {
    'bundle_id': ('bundle_id', 'bundleId'),
    'app_name': ('app_name', 'appName'),
    'app_version': ('app_version', 'appVersion'),
    'user_agent': ('user_agent', 'userAgent'),
}


@dataclasses.dataclass(frozen=True)
class PeerMetadata:
    """Application metadata declared by a peer at registration.

    Fields the peer does not declare are set to
    [`UNKNOWN`][nexusrelay.classify.UNKNOWN].
    """

    bundle_id: str = UNKNOWN
    app_name: str = UNKNOWN
    app_version: str = UNKNOWN
    user_agent: str = UNKNOWN
    capabilities: tuple[str, ...] = DEFAULT_CAPABILITIES

    @classmethod
    def from_dict(cls, data: Mapping[str, Any] | None) -> PeerMetadata:
        """Parse declared metadata.

        Accepts both snake case and camel case keys (e.g., `bundle_id` and
        `bundleId`). Empty or missing values fall back to the defaults.

        Raises:
            ValidationError: If `data` is not a mapping or `capabilities`
                is not a list of strings.
        """
        if data is None:
            return cls()
        if not isinstance(data, Mapping):
            raise ValidationError(
                f'metadata must be an object. Got {type(data).__name__}.',
            )

        kwargs: dict[str, Any] = {}
        for field, keys in _METADATA_ALIASES.items():
            for key in keys:
                value = data.get(key)
                if value:
                    kwargs[field] = str(value)
                    break

        capabilities = data.get('capabilities')
        if capabilities:
            if not isinstance(capabilities, (list, tuple)) or not all(
                isinstance(c, str) for c in capabilities
            ):
                raise ValidationError(
                    'metadata capabilities must be a list of strings.',
                )
            kwargs['capabilities'] = tuple(capabilities)

        return cls(**kwargs)

    def to_dict(self) -> dict[str, Any]:
        """Convert to a JSON compatible dictionary."""
        data = dataclasses.asdict(self)
        data['capabilities'] = list(self.capabilities)
        return data


class TrustClassifier:
    """Derive a [`Classification`][nexusrelay.classify.Classification].

    Rules are evaluated in order and the first match wins:

    1. `bundle_id` is an official bundle identifier: official/trusted.
    2. `app_name` contains the brand token (case-insensitive):
       fork/semi-trusted.
    3. Otherwise: custom/untrusted.

    Args:
        official_bundle_ids: Allow-list of official bundle identifiers.
        brand_token: Product brand token matched against `app_name`.
    """

    def __init__(
        self,
        official_bundle_ids: Sequence[str] = DEFAULT_OFFICIAL_BUNDLE_IDS,
        brand_token: str = DEFAULT_BRAND_TOKEN,
    ) -> None:
        self.official_bundle_ids = frozenset(official_bundle_ids)
        self.brand_token = brand_token.lower()

    def classify(self, metadata: PeerMetadata) -> Classification:
        """Classify a peer from its declared metadata."""
        if metadata.bundle_id in self.official_bundle_ids:
            return Classification(AppVariant.official, TrustLevel.trusted)
        if self.brand_token and self.brand_token in metadata.app_name.lower():
            return Classification(AppVariant.fork, TrustLevel.semi_trusted)
        return Classification(AppVariant.custom, TrustLevel.untrusted)

    __call__ = classify


def is_local_address(address: str) -> bool:
    """Check if an address is loopback or in a private range."""
    if address.lower() == 'localhost':
        return True
    try:
        ip = ipaddress.ip_address(address)
    except ValueError:
        return False
    return ip.is_loopback or ip.is_private or ip.is_link_local


class RegionClassifier:
    """Assign a coarse region tag from a peer's network origin.

    Loopback and private-range addresses map to
    [`LOCAL_REGION`][nexusrelay.classify.LOCAL_REGION]. All other addresses
    map to one of `regions` using the first four bytes of the SHA-256 digest
    of the address string. This is a placeholder for a real geolocation
    lookup; only determinism and an even spread are guaranteed.

    Args:
        regions: Region tags non-local addresses are spread over.
        local_region: Tag assigned to local addresses.
    """

    def __init__(
        self,
        regions: Sequence[str] = DEFAULT_REGIONS,
        local_region: str = LOCAL_REGION,
    ) -> None:
        if len(regions) == 0:
            raise ValueError('At least one region tag is required.')
        self.regions = tuple(regions)
        self.local_region = local_region

    def classify(self, address: str) -> str:
        """Get the region tag of an address."""
        if is_local_address(address):
            return self.local_region
        digest = hashlib.sha256(address.encode()).digest()
        index = int.from_bytes(digest[:4], 'big') % len(self.regions)
        return self.regions[index]

    __call__ = classify


def classify_region(address: str) -> str:
    """Get the region tag of an address using the default region set."""
    return RegionClassifier().classify(address)
