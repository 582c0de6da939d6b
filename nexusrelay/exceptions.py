"""Exception types raised by the rendezvous core and server."""
from __future__ import annotations


class RendezvousError(Exception):
    """Base exception type for errors scoped to a single request.

    Attributes:
        reason: Short reason code reported back to the caller.
    """

    reason = 'InternalError'


class ValidationError(RendezvousError):
    """A request is missing required fields or has invalid values."""

    reason = 'InvalidRequest'


class NotFoundError(RendezvousError):
    """The requested peer is not registered."""

    reason = 'NotFound'


class TargetNotFoundError(NotFoundError):
    """The target of a signaling message is not registered."""

    reason = 'TargetNotFound'


class UnreachableError(RendezvousError):
    """The peer is registered but its connection is not open."""

    reason = 'TargetUnreachable'


class TargetUnreachableError(UnreachableError):
    """The target of a signaling message could not be delivered to."""

    pass


class ForbiddenError(RendezvousError):
    """Connection attempted an action it is not allowed to perform."""

    reason = 'Forbidden'


class RegistryIndexError(RendezvousError):
    """The region index is inconsistent with registry membership."""

    reason = 'InternalError'
