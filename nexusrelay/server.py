"""Websocket server exposing the rendezvous service to peers.

The rendezvous server is a lightweight server accessible by all peers
(e.g., has a public IP address). Peers register over a websocket, receive
an initial set of bootstrap peers, send heartbeats to stay registered, and
exchange WebRTC session descriptions and ICE candidates with other peers
through the server until they can communicate directly.

To learn more about the WebRTC peer connection process, check out
https://webrtc.org/getting-started/peer-connections.

The server is built on websockets and designed to be served using
[`serve()`][nexusrelay.run.serve].
"""
from __future__ import annotations

import http
import json
import logging

from websockets.asyncio.server import ServerConnection
from websockets.exceptions import ConnectionClosed
from websockets.http11 import Request
from websockets.http11 import Response
from websockets.protocol import State

from nexusrelay.exceptions import ForbiddenError
from nexusrelay.exceptions import RendezvousError
from nexusrelay.exceptions import UnreachableError
from nexusrelay.exceptions import ValidationError
from nexusrelay.messages import BootstrapPeersRequest
from nexusrelay.messages import ClosestPeersRequest
from nexusrelay.messages import decode_message
from nexusrelay.messages import encode_message
from nexusrelay.messages import ErrorResponse
from nexusrelay.messages import HeartbeatRequest
from nexusrelay.messages import Message
from nexusrelay.messages import MessageDecodeError
from nexusrelay.messages import MessageEncodeError
from nexusrelay.messages import PeerLookupRequest
from nexusrelay.messages import ReconnectRequest
from nexusrelay.messages import RegistrationRequest
from nexusrelay.messages import SignalRequest
from nexusrelay.messages import StatsRequest
from nexusrelay.messages import UnregisterRequest
from nexusrelay.service import Rendezvous

logger = logging.getLogger(__name__)

# Close frame payloads are limited to 125 bytes including the code
_MAX_CLOSE_REASON = 120


class WebSocketTransport:
    """Adapt a websocket connection to the peer transport protocol."""

    def __init__(self, websocket: ServerConnection) -> None:
        self.websocket = websocket

    def __repr__(self) -> str:
        return (
            f'{self.__class__.__name__}'
            f'(address={self.websocket.remote_address})'
        )

    @property
    def is_open(self) -> bool:
        """Websocket connection is open."""
        return self.websocket.state is State.OPEN

    async def send(self, message: Message) -> None:
        """Encode and send a message on the websocket.

        Raises:
            UnreachableError: If the connection is closed.
        """
        try:
            await self.websocket.send(encode_message(message))
        except ConnectionClosed as e:
            raise UnreachableError(
                'Connection closed while attempting to send message.',
            ) from e

    async def close(self, code: int = 1000, reason: str = '') -> None:
        """Close the websocket connection."""
        await self.websocket.close(code, reason[:_MAX_CLOSE_REASON])


def _remote_host(websocket: ServerConnection) -> str | None:
    address = websocket.remote_address
    if address is None:
        return None
    return str(address[0])


class RendezvousServer:
    """Websocket front end of a rendezvous service.

    Each connection may register one or more peers. When the connection
    closes, the peers registered on it are removed unless they have since
    re-registered or reconnected on another connection.

    Args:
        rendezvous: Rendezvous service to dispatch requests to.
        max_message_bytes: Optional maximum size of peer messages in bytes.
            Peers that send oversized messages will have their connections
            closed.
    """

    def __init__(
        self,
        rendezvous: Rendezvous,
        max_message_bytes: int | None = None,
    ) -> None:
        self._rendezvous = rendezvous
        self._max_message_bytes = max_message_bytes
        self._transports: dict[ServerConnection, WebSocketTransport] = {}
        self._peers: dict[ServerConnection, set[str]] = {}

    @property
    def rendezvous(self) -> Rendezvous:
        """Rendezvous service."""
        return self._rendezvous

    def transport(self, websocket: ServerConnection) -> WebSocketTransport:
        """Get the transport wrapping a websocket connection."""
        if websocket not in self._transports:
            self._transports[websocket] = WebSocketTransport(websocket)
        return self._transports[websocket]

    def peers_on(self, websocket: ServerConnection) -> set[str]:
        """Get the peers registered on a websocket connection."""
        return self._peers.get(websocket, set())

    async def send(
        self,
        websocket: ServerConnection,
        message: Message,
    ) -> None:
        """Send message on the socket.

        Note:
            Messages are JSON string encoded using
            [`encode_message()`][nexusrelay.messages.encode_message].

        Args:
            websocket: Websocket connection to send the message on.
            message: Message to encode and send.
        """
        try:
            message_str = encode_message(message)
        except MessageEncodeError as e:
            logger.error(f'Failed to encode message: {e}')
            return

        try:
            await websocket.send(message_str)
        except ConnectionClosed:
            logger.error('Connection closed while attempting to send message')

    async def register(
        self,
        websocket: ServerConnection,
        request: RegistrationRequest,
    ) -> Message:
        """Register a peer on a websocket connection.

        If the peer was previously registered on a different connection
        that is still open, the old connection is closed.
        """
        transport = self.transport(websocket)
        existing = (
            self.rendezvous.registry.get(request.peer_id)
            if isinstance(request.peer_id, str)
            else None
        )

        response = self.rendezvous.register(
            request,
            transport=transport,
            origin=_remote_host(websocket),
        )
        self._peers.setdefault(websocket, set()).add(request.peer_id)

        if (
            existing is not None
            and isinstance(existing.transport, WebSocketTransport)
            and existing.transport is not transport
            and existing.transport.is_open
        ):
            logger.info(
                f'Previously registered peer {request.peer_id} registered '
                'on a new socket so the old socket will be closed',
            )
            await existing.transport.close(1000, 'Registered elsewhere.')

        return response

    def disconnect(self, websocket: ServerConnection) -> None:
        """Remove the peers registered on a closed connection."""
        transport = self._transports.pop(websocket, None)
        peers = self._peers.pop(websocket, set())
        if transport is None:
            return
        for peer_id in peers:
            if self.rendezvous.disconnect(peer_id, transport):
                logger.info(
                    f'Peer {peer_id} disconnected '
                    f'(code={websocket.close_code})',
                )

    def _sender(
        self,
        websocket: ServerConnection,
        request: SignalRequest,
    ) -> str:
        peers = self.peers_on(websocket)
        if len(peers) == 0:
            logger.warning(
                f'Unregistered client at {websocket.remote_address} '
                f'and claimed peer ID {request.from_peer_id} attempting '
                'to send a signal without being registered.',
            )
            raise ForbiddenError('Connection has not registered a peer.')
        if request.from_peer_id is None:
            if len(peers) == 1:
                return next(iter(peers))
            raise ValidationError(
                'from_peer_id is required because multiple peers are '
                'registered on this connection.',
            )
        if not isinstance(request.from_peer_id, str):
            raise ValidationError('from_peer_id must be a string.')
        if request.from_peer_id in peers:
            return request.from_peer_id
        raise ForbiddenError(
            f'Peer {request.from_peer_id} is not registered on this '
            'connection.',
        )

    async def _process_message(  # noqa: C901
        self,
        websocket: ServerConnection,
        message: Message,
    ) -> Message | None:
        # Dispatches the message to the correct method depending on the type
        for peer_id in self.peers_on(websocket):
            self.rendezvous.registry.touch(peer_id)

        if isinstance(message, RegistrationRequest):
            return await self.register(websocket, message)
        elif isinstance(message, ReconnectRequest):
            response = self.rendezvous.reconnect(
                message.peer_id,
                self.transport(websocket),
            )
            self._peers.setdefault(websocket, set()).add(message.peer_id)
            return response
        elif isinstance(message, HeartbeatRequest):
            return self.rendezvous.heartbeat(message.peer_id)
        elif isinstance(message, UnregisterRequest):
            response = self.rendezvous.unregister(message.peer_id)
            self.peers_on(websocket).discard(message.peer_id)
            return response
        elif isinstance(message, PeerLookupRequest):
            return self.rendezvous.lookup(message.peer_id)
        elif isinstance(message, ClosestPeersRequest):
            return self.rendezvous.closest(
                message.target_identity_key,
                message.k,
            )
        elif isinstance(message, BootstrapPeersRequest):
            return self.rendezvous.bootstrap_peers(
                message.peer_id,
                message.max_peers,
            )
        elif isinstance(message, SignalRequest):
            sender = self._sender(websocket, message)
            return await self.rendezvous.signal(message, from_peer_id=sender)
        elif isinstance(message, StatsRequest):
            return self.rendezvous.stats()
        else:
            raise ValidationError(
                f'Servers do not accept {type(message).__name__} messages.',
            )

    async def handler(self, websocket: ServerConnection) -> None:
        """Websocket server message handler.

        The handler will close the connection for the following reasons.

        - An unexpected message type is received (code 4000).
        - The client attempts to act as a peer it did not register
          (code 4002).
        - The client sends a message larger than the allowed size (code 4003).

        Other request errors are reported back to the client with an
        [`ErrorResponse`][nexusrelay.messages.ErrorResponse].

        Args:
            websocket: Websocket connection to serve.
        """
        try:
            await self._serve_connection(websocket)
        finally:
            self.disconnect(websocket)

    async def _serve_connection(self, websocket: ServerConnection) -> None:
        while True:
            try:
                message_str = await websocket.recv()
            except ConnectionClosed:
                break

            if self._max_message_bytes is not None:
                size = len(
                    message_str
                    if isinstance(message_str, bytes)
                    else message_str.encode(),
                )
                if size > self._max_message_bytes:
                    await websocket.close(
                        4003,
                        reason='Message length exceeds limit.',
                    )
                    logger.warning(
                        f'Client at {websocket.remote_address} sent message '
                        f'with size {size} bytes which exceeds the max '
                        f'configured size of {self._max_message_bytes} '
                        'bytes. Connection closed with error code 4003',
                    )
                    break

            try:
                if isinstance(message_str, bytes):
                    raise MessageDecodeError(
                        'Got message as bytes but expected str.',
                    )
                message = decode_message(message_str)
            except MessageDecodeError as e:
                logger.error(
                    'Closing websocket because deserialization error was '
                    'caught on message received from '
                    f'{websocket.remote_address}. {e}',
                )
                await websocket.close(4000, reason='Unknown message type.')
                break

            response: Message | None
            try:
                response = await self._process_message(websocket, message)
            except ForbiddenError as e:
                await websocket.close(
                    code=4002,
                    reason=f'{e.__class__.__name__}: {e}'[:_MAX_CLOSE_REASON],
                )
                break
            except RendezvousError as e:
                response = ErrorResponse(
                    reason=e.reason,
                    message=f'{e.__class__.__name__}: {e}',
                    request_type=message.message_type,
                )

            if response is not None:  # pragma: no branch
                await self.send(websocket, response)

    def process_request(
        self,
        connection: ServerConnection,
        request: Request,
    ) -> Response | None:
        """Answer plain HTTP health and statistics requests.

        `GET /health` and `GET /stats` return JSON documents; all other
        requests continue with the websocket handshake.
        """
        path = request.path.split('?', 1)[0].rstrip('/')
        if path == '/health':
            body = self.rendezvous.health()
        elif path == '/stats':
            body = self.rendezvous.stats().stats
        else:
            return None

        response = connection.respond(http.HTTPStatus.OK, json.dumps(body))
        del response.headers['Content-Type']
        response.headers['Content-Type'] = 'application/json'
        return response
