"""
particle.py — Continuous-variable operators on position/momentum grids.

Operators that are diagonal in one representation are built diagonal there
and sandwiched between FFT basis transforms for the other one, e.g. the
kinetic energy on a position grid is

    T = T_{p→x} · diag(p²/2m) · T_{x→p}

evaluated right-to-left by LazyProduct without ever forming the N×N matrix.
"""
from __future__ import annotations

from typing import Callable

import numpy as np

from bases import (
    Basis,
    CompositeBasis,
    MomentumBasis,
    PositionBasis,
    conjugate_basis,
    sample_points,
)
from errors import UnsupportedOperation
from operators import DiagonalOperator, LazyProduct, Operator
from transforms import transform


def _sandwich(b: Basis, diagonal_in_conjugate: np.ndarray) -> LazyProduct:
    c = conjugate_basis(b)
    return LazyProduct((transform(c, b), DiagonalOperator(c, diagonal_in_conjugate), transform(b, c)))


def position(b: Basis) -> Operator:
    """Position operator x on a position or momentum basis."""
    if isinstance(b, PositionBasis):
        return DiagonalOperator(b, sample_points(b))
    if isinstance(b, MomentumBasis):
        return _sandwich(b, sample_points(conjugate_basis(b)))
    raise UnsupportedOperation(f"position() needs a position or momentum basis, got {type(b).__name__}")


def momentum(b: Basis) -> Operator:
    """Momentum operator p on a position or momentum basis."""
    if isinstance(b, MomentumBasis):
        return DiagonalOperator(b, sample_points(b))
    if isinstance(b, PositionBasis):
        return _sandwich(b, sample_points(conjugate_basis(b)))
    raise UnsupportedOperation(f"momentum() needs a position or momentum basis, got {type(b).__name__}")


def kinetic_energy(b: Basis, mass: float = 1.0) -> Operator:
    """p²/2m; diagonal on a momentum basis, FFT-sandwiched on a position basis."""
    if mass <= 0:
        raise ValueError(f"mass must be positive, got {mass}")
    if isinstance(b, MomentumBasis):
        return DiagonalOperator(b, sample_points(b) ** 2 / (2.0 * mass))
    if isinstance(b, PositionBasis):
        p = sample_points(conjugate_basis(b))
        return _sandwich(b, p ** 2 / (2.0 * mass))
    raise UnsupportedOperation(f"kinetic_energy() needs a position or momentum basis, got {type(b).__name__}")


def coordinate_grids(b: Basis):
    """Meshgrid of sample points for every factor, each flattened in the basis order."""
    if isinstance(b, CompositeBasis):
        axes = [sample_points(f) for f in b.bases]
        return [g.reshape(-1, order=b.order) for g in np.meshgrid(*axes, indexing="ij")]
    return [sample_points(b)]


def potential_operator(b: Basis, V: Callable[..., np.ndarray]) -> DiagonalOperator:
    """Diagonal operator V(x) (or V(x, y, …) on a composite of coordinate bases).

    V is called once with the flattened coordinate arrays and must be
    vectorised; scalar results are broadcast.
    """
    grids = coordinate_grids(b)
    values = np.asarray(V(*grids), dtype=np.complex128)
    values = np.broadcast_to(values, (b.dimension,))
    return DiagonalOperator(b, values)
