"""Error taxonomy for the Compass synchronisation engine.

Fetch-level errors (authentication, transport) are fatal to a pass.
Per-entity errors (malformed record, failed write) are isolated by the
orchestrator and reported in the pass result.
"""

from __future__ import annotations


class CompassError(Exception):
    """Base class for every error raised by ``compass_sync``."""


class AuthenticationFailure(CompassError):
    """Credential/session establishment was rejected."""


class TransportFailure(CompassError):
    """A remote call did not return a usable success response."""


class MalformedResponse(CompassError):
    """A raw record is missing a required field or has the wrong shape."""


class RepositoryIOFailure(CompassError):
    """A durable read or write did not complete."""
