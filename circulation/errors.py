"""Exceptions raised by the circulation core.

The API and CLI translate these into responses; nothing inside the core
catches them except where a failure is explicitly recoverable (crawl batches,
per-candidate reconciliation).
"""


class CirculationError(Exception):
    """Base exception for all circulation operations."""

    code = "error"


class NotFound(CirculationError, LookupError):
    """A referenced catalog item, ledger entry or identity does not exist."""

    code = "not_found"


class Unavailable(CirculationError):
    """No free copy of the item is left to issue."""

    code = "unavailable"


class InvalidState(CirculationError):
    """The operation is not allowed in the entity's current state."""

    code = "invalid_state"


class InvalidArgument(CirculationError, ValueError):
    """Malformed input, or a capacity change below the copies in circulation."""

    code = "invalid_argument"


class UpstreamUnavailable(CirculationError):
    """The external directory was unreachable or unusable for a whole run."""

    code = "upstream_unavailable"


class StoreBusy(CirculationError):
    """The record store stayed locked past the busy timeout."""

    code = "store_busy"


class InvariantViolation(CirculationError):
    """Stored state contradicts a ledger invariant (counter underflow, dangling reference).

    Never recovered locally: it means a consistency bug, not a user error.
    """

    code = "invariant_violation"
