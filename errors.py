"""
Home Bridge - Errors
Exception taxonomy shared by the pipeline, the gateways and the adapters.
"""


class BridgeError(Exception):
    """Base class for all bridge errors."""


class InvalidArgument(BridgeError, ValueError):
    """A caller passed a null, blank or malformed value."""


class RateLimited(BridgeError):
    """The language-model rate limiter denied the request."""


class BackendUnavailable(BridgeError):
    """A language-model provider or data source could not be reached."""


class GatewayFault(BridgeError):
    """The platform event stream failed or returned an unexpected answer."""


class RecursionLimitExceeded(BridgeError):
    """The model kept requesting tools past the depth ceiling."""

    def __init__(self, depth: int):
        super().__init__(f"tool recursion depth {depth} exceeded")
        self.depth = depth


class Unresolvable(BridgeError, LookupError):
    """A platform mention could not be mapped to a user."""


class AlreadyActive(BridgeError):
    """A proactive dialogue is already running."""


class NotFound(BridgeError, LookupError):
    """The requested channel or user is not known."""
