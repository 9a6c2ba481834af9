"""
Error taxonomy for the Warren host.

Delegation errors carry a short human-readable message. That message is what
ends up in an error outcome file and, ultimately, in front of the calling
agent, so it never contains a traceback or internal object reprs.
"""

from __future__ import annotations


class WarrenError(Exception):
    """Base class for all Warren errors."""


class GroupRegistryError(WarrenError):
    """Raised on invalid registry operations (bad folder, duplicate group)."""


class DelegationError(WarrenError):
    """Base class for failures that become an error DelegationOutcome."""

    kind = "delegation_error"

    def __init__(self, message: str, *, target_group: str = "") -> None:
        super().__init__(message)
        self.message = message
        self.target_group = target_group


class AuthorizationError(DelegationError):
    """The source group is not permitted to delegate to the target."""

    kind = "unauthorized"


class UnknownTargetError(DelegationError):
    """The target folder is not a registered group."""

    kind = "unknown_group"


class BusyError(DelegationError):
    """The delegation pool is saturated; the request is not queued."""

    kind = "busy"


class SpawnError(DelegationError):
    """The session process failed to start or crashed."""

    kind = "spawn_failed"


class DelegationTimeoutError(DelegationError):
    """A host-side execution ceiling or a requester poll ceiling was exceeded."""

    kind = "timeout"


class ProtocolError(DelegationError):
    """A task or result artifact is malformed or an illegal state transition."""

    kind = "protocol"
