"""
Exception types raised by the gaussfit engine.

Every engine failure derives from GaussError so a host can surface the
message text of any failure with a single except clause.
"""

from typing import Any, Optional


class GaussError(Exception):
    """Base class for all gaussfit errors."""


class CapacityExceededError(GaussError):
    """
    An output container is full.

    Attributes:
        partial: Whatever was built before the limit was reached (may be None)
    """

    def __init__(self, message: str, partial: Optional[Any] = None):
        super().__init__(message)
        self.partial = partial


class ConvergenceError(GaussError):
    """
    The optimizer could not reduce the residual.

    fit_region never raises this: a cycle that fails to converge is
    recorded on its FitRecord (cycle_exception) and ends the cycles.
    """


class SingularSystemError(GaussError):
    """A least-squares matrix could not be inverted."""


class DomainError(GaussError, ValueError):
    """An equation was evaluated outside its domain."""


class InvalidInputError(GaussError, ValueError):
    """Malformed ranges, sample arrays or parameters."""
