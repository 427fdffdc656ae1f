"""Error kinds of the check-in subsystem.

Nothing here is fatal to the host: every failure is contained to the
affected goal's session.
"""

from __future__ import annotations


class GatekeeperError(Exception):
    """Base class for all check-in errors."""


class ProviderUnavailable(GatekeeperError):
    """The language model could not be reached (network, auth, timeout)."""


class MalformedResponse(GatekeeperError):
    """The model answered, but not with JSON matching the expected schema."""


class PersistenceFailure(GatekeeperError):
    """A store read or write failed."""


class InvalidMutation(GatekeeperError):
    """A mutation references a missing task/event or carries bad fields."""


class SessionBusy(GatekeeperError):
    """A reply arrived while the session was not awaiting one."""


class ProviderTimeout(ProviderUnavailable):
    """The model did not answer within the configured interval."""
