"""Message types exchanged between peers and the rendezvous server."""
from __future__ import annotations

import dataclasses
import enum
import json
import sys
from typing import Any


class MessageType(enum.Enum):
    """Types of messages supported."""

    registration_request = 'RegistrationRequest'
    """Register with the rendezvous server."""
    registration_response = 'RegistrationResponse'
    """Registration result with initial bootstrap peers."""
    reconnect_request = 'ReconnectRequest'
    """Attach a new connection to an existing registration."""
    heartbeat_request = 'HeartbeatRequest'
    """Renew liveness of a registration."""
    heartbeat_response = 'HeartbeatResponse'
    """Heartbeat result."""
    unregister_request = 'UnregisterRequest'
    """Remove a registration."""
    unregister_response = 'UnregisterResponse'
    """Unregister result."""
    peer_lookup_request = 'PeerLookupRequest'
    """Look up a single peer."""
    peer_lookup_response = 'PeerLookupResponse'
    """Peer lookup result."""
    closest_peers_request = 'ClosestPeersRequest'
    """Query peers closest to an identity key."""
    closest_peers_response = 'ClosestPeersResponse'
    """Closest peers query result."""
    bootstrap_peers_request = 'BootstrapPeersRequest'
    """Request a ranked list of peers to dial."""
    peer_list_response = 'PeerListResponse'
    """Ranked list of peers to dial."""
    signal_request = 'SignalRequest'
    """Signaling payload to relay to another peer."""
    signal_response = 'SignalResponse'
    """Signaling relay result."""
    signal_delivery = 'SignalDelivery'
    """Signaling payload forwarded to the target peer."""
    stats_request = 'StatsRequest'
    """Request network statistics."""
    network_stats_response = 'NetworkStatsResponse'
    """Network statistics."""
    server_response = 'ServerResponse'
    """Generic success or error response."""
    error_response = 'ErrorResponse'
    """Request failed."""


@dataclasses.dataclass
class Message:
    """Base message."""

    pass


@dataclasses.dataclass
class RegistrationRequest(Message):
    """Register with the rendezvous server as a peer.

    Attributes:
        peer_id: Unique identifier chosen by the peer.
        address: Reachable address of the peer. If omitted, the address
            the connection originates from is used.
        port: Port the peer accepts connections on.
        identity_key: Stable secondary identifier (e.g., wallet address)
            used for proximity queries. Defaults to `peer_id`.
        metadata: Declared application metadata (`bundle_id`, `app_name`,
            `app_version`, `user_agent`, `capabilities`).
    """

    peer_id: str
    address: str | None = None
    port: int | None = None
    identity_key: str | None = None
    metadata: dict[str, Any] = dataclasses.field(default_factory=dict)
    message_type: str = MessageType.registration_request.name


@dataclasses.dataclass
class RegistrationResponse(Message):
    """Registration result.

    Attributes:
        success: If the registration succeeded.
        peer_id: Registered peer identifier.
        region: Region tag assigned to the peer.
        classification: Trust classification assigned to the peer.
        peers: Initial bootstrap candidates.
        network_stats: Aggregate network statistics.
        next_heartbeat_deadline: Timestamp by which the peer should send
            its next heartbeat.
    """

    success: bool
    peer_id: str
    region: str
    classification: dict[str, Any]
    peers: list[dict[str, Any]]
    network_stats: dict[str, Any]
    next_heartbeat_deadline: float
    message_type: str = MessageType.registration_response.name


@dataclasses.dataclass
class ReconnectRequest(Message):
    """Attach the sending connection to an existing registration."""

    peer_id: str
    message_type: str = MessageType.reconnect_request.name


@dataclasses.dataclass
class HeartbeatRequest(Message):
    """Renew liveness of a registration."""

    peer_id: str
    message_type: str = MessageType.heartbeat_request.name


@dataclasses.dataclass
class HeartbeatResponse(Message):
    """Heartbeat result."""

    success: bool
    next_heartbeat_deadline: float | None = None
    message_type: str = MessageType.heartbeat_response.name


@dataclasses.dataclass
class UnregisterRequest(Message):
    """Remove a registration."""

    peer_id: str
    message_type: str = MessageType.unregister_request.name


@dataclasses.dataclass
class UnregisterResponse(Message):
    """Unregister result. `success` is `False` if the peer was unknown."""

    success: bool
    message_type: str = MessageType.unregister_response.name


@dataclasses.dataclass
class PeerLookupRequest(Message):
    """Look up a single peer by identifier."""

    peer_id: str
    message_type: str = MessageType.peer_lookup_request.name


@dataclasses.dataclass
class PeerLookupResponse(Message):
    """Peer lookup result.

    Attributes:
        found: If the peer is registered.
        peer: Public view of the peer (`peer_id`, `address`, `last_seen`,
            `classification`) if found.
    """

    found: bool
    peer: dict[str, Any] | None = None
    message_type: str = MessageType.peer_lookup_response.name


@dataclasses.dataclass
class ClosestPeersRequest(Message):
    """Query the peers whose identity keys are closest to a target key.

    Attributes:
        target_identity_key: Key to measure distance from.
        k: Maximum number of peers to return. Server default if omitted.
    """

    target_identity_key: str
    k: int | None = None
    message_type: str = MessageType.closest_peers_request.name


@dataclasses.dataclass
class ClosestPeersResponse(Message):
    """Peers ordered by increasing distance to the target key."""

    peers: list[dict[str, Any]]
    message_type: str = MessageType.closest_peers_response.name


@dataclasses.dataclass
class BootstrapPeersRequest(Message):
    """Request a ranked list of peers to dial.

    Attributes:
        peer_id: Requesting peer. Excluded from the result and used to
            determine region and classification if registered.
        max_peers: Maximum number of peers to return.
    """

    peer_id: str | None = None
    max_peers: int | None = None
    message_type: str = MessageType.bootstrap_peers_request.name


@dataclasses.dataclass
class PeerListResponse(Message):
    """Ranked list of bootstrap candidates."""

    peers: list[dict[str, Any]]
    total_available: int
    message_type: str = MessageType.peer_list_response.name


@dataclasses.dataclass
class SignalRequest(Message):
    """Signaling payload to relay.

    Attributes:
        action: One of `offer`, `answer`, `ice-candidate`, `gossip`, or
            `gossip_to`.
        payload: Arbitrary JSON payload (e.g., a session description).
        to_peer_id: Target peer. Ignored for `gossip` broadcasts.
        from_peer_id: Sending peer. Set by the server from the
            registration of the sending connection.
    """

    action: str
    payload: Any
    to_peer_id: str | None = None
    from_peer_id: str | None = None
    message_type: str = MessageType.signal_request.name


@dataclasses.dataclass
class SignalResponse(Message):
    """Signaling relay result.

    Attributes:
        success: If the payload was delivered to at least the target.
        action: Action of the relayed request.
        reason: Failure reason code if unsuccessful.
        delivered: Peers the payload was delivered to.
        failed: Peers delivery was attempted to but failed.
    """

    success: bool
    action: str
    reason: str | None = None
    delivered: list[str] = dataclasses.field(default_factory=list)
    failed: list[str] = dataclasses.field(default_factory=list)
    message_type: str = MessageType.signal_response.name


@dataclasses.dataclass
class SignalDelivery(Message):
    """Signaling payload forwarded to a target peer."""

    action: str
    from_peer_id: str
    payload: Any
    timestamp: float
    message_type: str = MessageType.signal_delivery.name


@dataclasses.dataclass
class StatsRequest(Message):
    """Request network statistics."""

    message_type: str = MessageType.stats_request.name


@dataclasses.dataclass
class NetworkStatsResponse(Message):
    """Network statistics."""

    stats: dict[str, Any]
    message_type: str = MessageType.network_stats_response.name


@dataclasses.dataclass
class ServerResponse(Message):
    """Message returned by the server on success or error.

    Attributes:
        success: If the request was successful.
        message: Message from server.
        error: If `message` is an error message.
    """

    success: bool = True
    message: str | None = None
    error: bool = False
    message_type: str = MessageType.server_response.name


@dataclasses.dataclass
class ErrorResponse(Message):
    """Request failed.

    Attributes:
        reason: Reason code (e.g., `NotFound`, `TargetUnreachable`).
        message: Human readable description of the error.
        request_type: Message type of the failed request.
    """

    reason: str
    message: str
    request_type: str | None = None
    message_type: str = MessageType.error_response.name


class MessageError(Exception):
    """Base exception type for messages."""

    pass


class MessageDecodeError(MessageError):
    """Exception raised when a message cannot be decoded."""

    pass


class MessageEncodeError(MessageError):
    """Exception raised when an message cannot be encoded."""

    pass


def decode_message(message: str) -> Message:
    """Decode JSON string into correct message type.

    Args:
        message: JSON string to decode.

    Returns:
        Parsed message.

    Raises:
        MessageDecodeError: If the message cannot be decoded.
    """
    try:
        data = json.loads(message)
    except json.JSONDecodeError as e:
        raise MessageDecodeError('Failed to load string as JSON.') from e

    if not isinstance(data, dict):
        raise MessageDecodeError('Message is not a JSON object.')

    try:
        message_type_name = data.pop('message_type')
    except KeyError as e:
        raise MessageDecodeError(
            'Message does not contain a message_type key.',
        ) from e

    try:
        message_type = getattr(
            sys.modules[__name__],
            MessageType[message_type_name].value,
        )
    except (AttributeError, KeyError, TypeError) as e:
        raise MessageDecodeError(
            f'The message is of an unknown message type: {message_type_name}.',
        ) from e

    try:
        return message_type(**data)
    except TypeError as e:
        raise MessageDecodeError(
            f'Failed to convert message to {message_type.__name__}: {e}',
        ) from e


def encode_message(message: Message) -> str:
    """Encode message as JSON string.

    Args:
        message: Message to JSON encode.

    Raises:
        MessageEncodeError: If the message cannot be JSON encoded.
    """
    if not isinstance(message, Message):
        raise MessageEncodeError(
            f'Message is not an instance of {Message.__name__}. '
            f'Got {type(message).__name__}.',
        )

    data = dataclasses.asdict(message)

    try:
        return json.dumps(data)
    except (TypeError, ValueError) as e:
        raise MessageEncodeError('Error encoding message.') from e
