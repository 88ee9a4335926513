"""Error taxonomy of the real-time layer.

Learn: Only producer-level mistakes travel back to the caller. Transport
and broker failures are contained where they happen: a dead consumer is
dropped from its registry, and a broker outage only delays cross-process
delivery while local delivery carries on.
"""


class RealtimeError(Exception):
    """Base class for real-time delivery errors."""


class UnauthorizedError(RealtimeError):
    """Caller may not open a stream or join a room.

    Raised before any registry mutation happens.
    """


class TransportError(RealtimeError):
    """A write to a single channel handle failed (closed, slow, broken)."""


class BrokerUnavailableError(RealtimeError):
    """The fan-out broker rejected a publish or subscribe."""
