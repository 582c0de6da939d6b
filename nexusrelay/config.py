"""Rendezvous server configuration file parsing."""
from __future__ import annotations

import logging
import pathlib
import sys

if sys.version_info >= (3, 11):  # pragma: >=3.11 cover
    import tomllib
    from typing import Self
else:  # pragma: <3.11 cover
    import tomli as tomllib
    from typing_extensions import Self

import tomli_w
from pydantic import BaseModel
from pydantic import ConfigDict
from pydantic import Field
from pydantic import model_validator

from nexusrelay.classify import DEFAULT_BRAND_TOKEN
from nexusrelay.classify import DEFAULT_OFFICIAL_BUNDLE_IDS
from nexusrelay.classify import DEFAULT_REGIONS
from nexusrelay.classify import LOCAL_REGION


class LoggingConfig(BaseModel):
    """Logging configuration.

    Attributes:
        log_dir: Default logging directory.
        default_level: Default logging level for the root logger.
        websockets_level: Log level for the `websockets` logger. Websockets
            logs with much higher frequency so it is suggested to set this
            to `WARNING` or higher.
        current_peer_interval: Optional seconds between logging the
            number of currently registered peers.
        current_peer_limit: Max threshold for enumerating the detailed
            list of registered peers. If `None`, no detailed list will be
            logged.
    """

    model_config = ConfigDict(extra='forbid')

    log_dir: str | None = None
    default_level: int | str = logging.INFO
    websockets_level: int | str = logging.WARNING
    current_peer_interval: int | None = 60
    current_peer_limit: int | None = 32


class LivenessConfig(BaseModel):
    """Peer liveness configuration.

    Attributes:
        heartbeat_interval: Seconds between heartbeats peers are asked to
            send.
        peer_timeout: Seconds without a heartbeat after which a peer is
            evicted. Must exceed `heartbeat_interval`.
        cleanup_interval: Seconds between eviction ticks.
        active_window: Peers seen within this many seconds are considered
            active and eligible as bootstrap candidates.
        recent_window: Peers registered within this many seconds are
            listed as recent activity in the statistics.
    """

    model_config = ConfigDict(extra='forbid')

    heartbeat_interval: float = Field(60.0, gt=0)
    peer_timeout: float = Field(600.0, gt=0)
    cleanup_interval: float = Field(120.0, gt=0)
    active_window: float | None = Field(300.0, gt=0)
    recent_window: float = Field(300.0, gt=0)

    @model_validator(mode='after')
    def _check_timeout(self) -> Self:
        if self.peer_timeout <= self.heartbeat_interval:
            raise ValueError(
                f'peer_timeout ({self.peer_timeout}) must be greater than '
                f'heartbeat_interval ({self.heartbeat_interval}).',
            )
        return self


class BootstrapConfig(BaseModel):
    """Bootstrap peer selection configuration.

    Attributes:
        max_peers: Default number of bootstrap candidates returned.
        max_peers_limit: Upper bound on candidates a peer can ask for.
        official_cap: Maximum number of official same-region candidates.
        fallback_threshold: Fall back to peers in any region if fewer
            than this many candidates are found in the requester's region.
    """

    model_config = ConfigDict(extra='forbid')

    max_peers: int = Field(10, ge=0)
    max_peers_limit: int = Field(50, ge=0)
    official_cap: int = Field(4, ge=0)
    fallback_threshold: int = Field(3, ge=0)


class ClassifierConfig(BaseModel):
    """Region and trust classification configuration.

    Attributes:
        official_bundle_ids: Bundle identifiers of official applications.
        brand_token: Brand token identifying forks by application name.
        regions: Region tags public addresses are assigned to.
        local_region: Region tag of loopback and private addresses.
    """

    model_config = ConfigDict(extra='forbid')

    official_bundle_ids: list[str] = Field(
        default_factory=lambda: list(DEFAULT_OFFICIAL_BUNDLE_IDS),
    )
    brand_token: str = DEFAULT_BRAND_TOKEN
    regions: list[str] = Field(
        default_factory=lambda: list(DEFAULT_REGIONS),
        min_length=1,
    )
    local_region: str = LOCAL_REGION


class SignalingConfig(BaseModel):
    """Signaling relay configuration.

    Attributes:
        delivery_timeout: Seconds to wait when delivering a signaling
            message to a single peer.
        enable_gossip: Relay `gossip` and `gossip_to` actions.
    """

    model_config = ConfigDict(extra='forbid')

    delivery_timeout: float | None = Field(5.0, gt=0)
    enable_gossip: bool = True


class ProximityConfig(BaseModel):
    """Closest peer query configuration.

    Attributes:
        default_k: Number of peers returned when a query omits `k`.
        max_k: Upper bound on `k`.
    """

    model_config = ConfigDict(extra='forbid')

    default_k: int = Field(20, ge=0)
    max_k: int = Field(100, ge=0)


class RendezvousServingConfig(BaseModel):
    """Rendezvous server configuration.

    Attributes:
        host: Network interface the server binds to.
        port: Network port the server binds to.
        server_id: Identifier of this server reported to peers.
        certfile: Certificate file (PEM format) use to enable TLS.
        keyfile: Private key file. If not specified, the key will be
            taken from the certfile.
        max_message_bytes: Maximum size in bytes of messages received by
            the server.
        strict_registry: Raise on registry index inconsistencies rather
            than rebuilding the index. Useful for debugging.
        logging: Logging configuration.
        liveness: Peer liveness configuration.
        bootstrap: Bootstrap peer selection configuration.
        classifier: Region and trust classification configuration.
        signaling: Signaling relay configuration.
        proximity: Closest peer query configuration.
    """

    model_config = ConfigDict(extra='forbid')

    host: str | None = None
    port: int = 3000
    server_id: str = 'nexus-bootstrap-1'
    certfile: str | None = None
    keyfile: str | None = None
    max_message_bytes: int | None = None
    strict_registry: bool = False
    logging: LoggingConfig = Field(default_factory=LoggingConfig)
    liveness: LivenessConfig = Field(default_factory=LivenessConfig)
    bootstrap: BootstrapConfig = Field(default_factory=BootstrapConfig)
    classifier: ClassifierConfig = Field(default_factory=ClassifierConfig)
    signaling: SignalingConfig = Field(default_factory=SignalingConfig)
    proximity: ProximityConfig = Field(default_factory=ProximityConfig)

    @classmethod
    def from_toml(cls, filepath: str | pathlib.Path) -> Self:
        """Parse a TOML config file.

        Example:
            ```toml title="rendezvous.toml"
            host = "0.0.0.0"
            port = 3000
            server_id = "nexus-bootstrap-2"

            [logging]
            log_dir = "/path/to/log/dir"
            default_level = "INFO"

            [liveness]
            heartbeat_interval = 30
            peer_timeout = 300

            [classifier]
            official_bundle_ids = ["com.nexus.app"]
            ```

            ```python
            from nexusrelay.config import RendezvousServingConfig

            config = RendezvousServingConfig.from_toml('rendezvous.toml')
            ```

        Note:
            Omitted values will be set to their defaults.
        """
        with open(filepath, 'rb') as f:
            return cls.model_validate(tomllib.load(f), strict=True)

    def write_toml(self, filepath: str | pathlib.Path) -> None:
        """Write the configuration to a TOML file.

        Options set to `None` are omitted from the file.
        """
        with open(filepath, 'wb') as f:
            tomli_w.dump(self.model_dump(exclude_none=True), f)
