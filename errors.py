"""
errors.py — Exception types raised by the basis/operator/propagation layers.

Every error also derives from the builtin exception callers would expect
(ValueError / TypeError / RuntimeError), so generic handlers keep working.
"""
from __future__ import annotations


class QuantumSimError(Exception):
    """Base class for all errors raised by this package."""


class DimensionMismatch(QuantumSimError, ValueError):
    """Operator, state or basis sizes disagree."""


class IncompatibleBases(QuantumSimError, ValueError):
    """Two bases cannot be paired (different spaces, or not a coordinate/conjugate pair)."""


class UnsupportedOperation(QuantumSimError, TypeError):
    """Operation is not defined for this kind of basis or state."""


class InvalidTimeGrid(QuantumSimError, ValueError):
    """Requested output times are empty, non-finite or not strictly increasing."""


class IntegrationFailure(QuantumSimError, RuntimeError):
    """Adaptive integration could not reach the next requested output time."""

    def __init__(self, message: str, t: float | None = None) -> None:
        super().__init__(message)
        self.t = t
