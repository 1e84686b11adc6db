"""
Exception hierarchy for the rate limiting layer.

Only programmer errors escape to callers. Store failures are raised by the
storage backends and resolved by the Limiter; they never reach a request
handler.
"""


class RateLimitError(Exception):
    """Base class for every error raised by portalguard."""


class StoreUnavailable(RateLimitError):
    """The shared store could not be reached or did not answer in time."""


class PolicyMisconfiguration(RateLimitError, ValueError):
    """A policy was built with invalid parameters or registered twice."""


class UnknownPolicyError(RateLimitError, LookupError):
    """No policy is registered under the requested name."""
