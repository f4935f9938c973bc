"""
Exception taxonomy for delivery routing.

Estimators and the optimizer do not raise these to callers; they log and
return fallback values. The route state manager and API layer raise and map
them to responses.
"""


class RoutingError(Exception):
    """Base class for delivery routing errors."""


class ValidationError(RoutingError):
    """Malformed coordinates, constraints or addresses. Never retried."""


class TransientProviderError(RoutingError):
    """Rate limit or network failure from an external provider."""

    def __init__(self, message, retry_after=None):
        super().__init__(message)
        self.retry_after = retry_after


class OptimizationTimeout(RoutingError):
    """An optimization run exceeded its time limit."""


class PersistenceUnavailable(RoutingError):
    """The durable route store is provisioned but a write failed."""


class RouteNotFound(RoutingError):
    """No route (or stop) exists for the given identifier."""


class RouteStateError(RoutingError):
    """A mutation was attempted on a route or stop in a terminal state."""
