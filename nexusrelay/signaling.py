"""Relay of WebRTC signaling payloads between registered peers.

The relay holds no state of its own. Targets are looked up in the registry
on every request and delivery is fire-and-forget: each payload is sent at
most once and never retried. Retrying is the responsibility of the sender.
"""
from __future__ import annotations

import asyncio
import dataclasses
import enum
import logging
import time
from typing import Any
from typing import Callable

from nexusrelay.exceptions import TargetNotFoundError
from nexusrelay.exceptions import TargetUnreachableError
from nexusrelay.exceptions import UnreachableError
from nexusrelay.exceptions import ValidationError
from nexusrelay.messages import SignalDelivery
from nexusrelay.registry import PeerRecord
from nexusrelay.registry import Registry

logger = logging.getLogger(__name__)


class SignalAction(enum.Enum):
    """Signaling actions supported by the relay."""

    offer = 'offer'
    """Session description offer."""
    answer = 'answer'
    """Session description answer."""
    ice_candidate = 'ice-candidate'
    """ICE candidate."""
    gossip = 'gossip'
    """Broadcast to every registered peer except the sender."""
    gossip_to = 'gossip_to'
    """Gossip message sent to a single peer."""

    @property
    def is_broadcast(self) -> bool:
        """Action is delivered to all peers rather than a single target."""
        return self is SignalAction.gossip

    @property
    def is_gossip(self) -> bool:
        """Action is one of the gossip actions."""
        return self in (SignalAction.gossip, SignalAction.gossip_to)


@dataclasses.dataclass
class RelayOutcome:
    """Result of relaying a signaling payload.

    Attributes:
        action: Action that was relayed.
        delivered: Peers the payload was delivered to.
        failed: Peers delivery was attempted to but failed. Only
            populated for broadcasts; unicast failures raise.
    """

    action: SignalAction
    delivered: list[str] = dataclasses.field(default_factory=list)
    failed: list[str] = dataclasses.field(default_factory=list)

    @property
    def success(self) -> bool:
        """Delivery to a unicast target succeeded or a broadcast ran."""
        return self.action.is_broadcast or len(self.delivered) > 0


def parse_action(action: str | SignalAction) -> SignalAction:
    """Parse a signaling action.

    Raises:
        ValidationError: If the action is not supported.
    """
    if isinstance(action, SignalAction):
        return action
    try:
        return SignalAction(action)
    except (TypeError, ValueError):
        options = ', '.join(a.value for a in SignalAction)
        raise ValidationError(
            f'Unknown signaling action {action!r}. Expected one of {options}.',
        ) from None


class SignalingRelay:
    """Route directed signaling payloads between registered peers.

    Args:
        registry: Registry to look targets up in.
        delivery_timeout: Seconds to wait for delivery to a single peer.
        enable_gossip: Support the `gossip` and `gossip_to` actions.
        clock: Callable returning the current time in seconds.
    """

    def __init__(
        self,
        registry: Registry,
        delivery_timeout: float | None = 5.0,
        enable_gossip: bool = True,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.registry = registry
        self.delivery_timeout = delivery_timeout
        self.enable_gossip = enable_gossip
        self.clock = clock

    async def _deliver(
        self,
        record: PeerRecord,
        message: SignalDelivery,
    ) -> None:
        if record.transport is None or not record.transport.is_open:
            raise TargetUnreachableError(
                f'Peer {record.peer_id} is not connected.',
            )
        try:
            await asyncio.wait_for(
                record.transport.send(message),
                timeout=self.delivery_timeout,
            )
        except asyncio.TimeoutError:
            raise TargetUnreachableError(
                f'Delivery to peer {record.peer_id} timed out after '
                f'{self.delivery_timeout} seconds.',
            ) from None
        except UnreachableError as e:
            raise TargetUnreachableError(
                f'Delivery to peer {record.peer_id} failed: {e}',
            ) from e

    async def relay(
        self,
        action: str | SignalAction,
        from_peer_id: str,
        to_peer_id: str | None,
        payload: Any,
    ) -> RelayOutcome:
        """Relay a signaling payload.

        The target receives a
        [`SignalDelivery`][nexusrelay.messages.SignalDelivery] with the
        action, sender, payload, and the time the relay forwarded it.

        Args:
            action: Signaling action.
            from_peer_id: Sending peer.
            to_peer_id: Target peer. Ignored for broadcasts.
            payload: Arbitrary JSON payload.

        Returns:
            Delivery outcome.

        Raises:
            ValidationError: If the action is unknown or disabled or a
                required peer ID is missing.
            TargetNotFoundError: If the unicast target is not registered.
            TargetUnreachableError: If the unicast target is not connected
                or delivery fails.
        """
        signal_action = parse_action(action)
        if signal_action.is_gossip and not self.enable_gossip:
            raise ValidationError('Gossip is disabled on this server.')
        if not from_peer_id:
            raise ValidationError('from_peer_id is required.')

        self.registry.touch(from_peer_id)
        message = SignalDelivery(
            action=signal_action.value,
            from_peer_id=from_peer_id,
            payload=payload,
            timestamp=self.clock(),
        )

        if signal_action.is_broadcast:
            return await self._broadcast(signal_action, message)

        if not to_peer_id:
            raise ValidationError(
                f'to_peer_id is required for {signal_action.value}.',
            )
        target = self.registry.get(to_peer_id)
        if target is None:
            logger.warning(
                f'Peer {from_peer_id} attempting to send '
                f'{signal_action.value} to unknown peer {to_peer_id}',
            )
            raise TargetNotFoundError(
                f'Cannot forward {signal_action.value} to peer {to_peer_id} '
                'because this peer is not registered with the server.',
            )

        await self._deliver(target, message)
        logger.debug(
            f'Relayed {signal_action.value} from {from_peer_id} to '
            f'{to_peer_id}',
        )
        return RelayOutcome(signal_action, delivered=[to_peer_id])

    async def _broadcast(
        self,
        action: SignalAction,
        message: SignalDelivery,
    ) -> RelayOutcome:
        outcome = RelayOutcome(action)
        targets = list(
            self.registry.snapshot(
                lambda r: r.peer_id != message.from_peer_id,
            ),
        )

        async def _attempt(record: PeerRecord) -> None:
            try:
                await self._deliver(record, message)
            except TargetUnreachableError as e:
                logger.debug(f'Skipping gossip target: {e}')
                outcome.failed.append(record.peer_id)
            except Exception as e:
                logger.warning(
                    f'Failed to deliver gossip to peer {record.peer_id}: '
                    f'{e!r}',
                )
                outcome.failed.append(record.peer_id)
            else:
                outcome.delivered.append(record.peer_id)

        await asyncio.gather(*(_attempt(record) for record in targets))

        logger.debug(
            f'Gossip from {message.from_peer_id} delivered to '
            f'{len(outcome.delivered)}/{len(targets)} peers',
        )
        return outcome
