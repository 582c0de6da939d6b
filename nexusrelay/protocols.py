"""Transport protocol the core uses to deliver messages to peers."""
from __future__ import annotations

from typing import Protocol
from typing import runtime_checkable

from nexusrelay.messages import Message


@runtime_checkable
class PeerTransport(Protocol):
    """Handle to the live connection of a registered peer.

    The core never inspects the transport beyond these members; it is
    only used to check if delivery is possible and to deliver.
    """

    @property
    def is_open(self) -> bool:
        """Connection is currently open for delivery."""
        ...

    async def send(self, message: Message) -> None:
        """Send a message to the peer.

        Raises:
            UnreachableError: If the connection closed while sending.
        """
        ...
