"""
bases.py — Discretized Hilbert-space bases and their tensor products.

Conventions:
- Position/momentum bases sample the half-open interval [min, max):
    x_i = xmin + i * dx,   dx = (xmax - xmin) / N,   i = 0 .. N-1
- The conjugate of a position basis with spacing dx is the momentum basis
  [-π/dx, π/dx) with spacing dp = 2π / (N dx), i.e. centred on zero (and
  vice versa). Hence conjugate(conjugate(b)) has the spacing of b but is
  centred on zero.
- CompositeBasis flattening is explicit: order="C" means the first factor
  varies slowest (j = i1*d2 + i2), order="F" means it varies fastest.
"""
from __future__ import annotations

from dataclasses import dataclass
from typing import Tuple, Union

import math
import numpy as np

from errors import UnsupportedOperation

# Relative tolerance for dx * dp * N == 2π when pairing bases
_PAIR_RTOL: float = 1e-10

_ORDERS = ("C", "F")


# -----------------------------------------------------------------------------
# Single-factor bases
# -----------------------------------------------------------------------------

@dataclass(frozen=True)
class PositionBasis:
    """Uniformly sampled coordinate on [xmin, xmax)."""
    xmin: float
    xmax: float
    npoints: int

    def __post_init__(self) -> None:
        _validate_grid(self.xmin, self.xmax, self.npoints)

    @property
    def dimension(self) -> int:
        return int(self.npoints)

    @property
    def spacing(self) -> float:
        return (self.xmax - self.xmin) / self.npoints


@dataclass(frozen=True)
class MomentumBasis:
    """Uniformly sampled conjugate coordinate on [pmin, pmax)."""
    pmin: float
    pmax: float
    npoints: int

    def __post_init__(self) -> None:
        _validate_grid(self.pmin, self.pmax, self.npoints)

    @property
    def dimension(self) -> int:
        return int(self.npoints)

    @property
    def spacing(self) -> float:
        return (self.pmax - self.pmin) / self.npoints


@dataclass(frozen=True)
class NLevelBasis:
    """Finite set of enumerated levels |1>, ..., |n>."""
    n: int

    def __post_init__(self) -> None:
        if not isinstance(self.n, (int, np.integer)) or self.n < 1:
            raise ValueError(f"NLevelBasis needs n >= 1, got {self.n!r}")

    @property
    def dimension(self) -> int:
        return int(self.n)


SingleBasis = Union[PositionBasis, MomentumBasis, NLevelBasis]


# -----------------------------------------------------------------------------
# Composite basis
# -----------------------------------------------------------------------------

@dataclass(frozen=True)
class CompositeBasis:
    """Ordered tensor product of single-factor bases.

    Parameters
    ----------
    bases : tuple
        Factor bases, in tensor order. Nested composites are flattened.
    order : {"C", "F"}
        Flattening convention. "C": first factor slowest (default).
        "F": first factor fastest.
    """
    bases: Tuple[SingleBasis, ...]
    order: str = "C"

    def __post_init__(self) -> None:
        flat: list = []
        for b in self.bases:
            if isinstance(b, CompositeBasis):
                if b.order != self.order:
                    raise ValueError("Cannot nest composite bases with different flattening orders")
                flat.extend(b.bases)
            else:
                flat.append(b)
        if not flat:
            raise ValueError("CompositeBasis requires at least one factor basis")
        if self.order not in _ORDERS:
            raise ValueError(f"order must be one of {_ORDERS}, got {self.order!r}")
        object.__setattr__(self, "bases", tuple(flat))

    @property
    def shape(self) -> Tuple[int, ...]:
        return tuple(b.dimension for b in self.bases)

    @property
    def dimension(self) -> int:
        return int(math.prod(self.shape))

    @property
    def nfactors(self) -> int:
        return len(self.bases)

    def factor(self, index: int) -> SingleBasis:
        """Return factor basis by 1-based index."""
        if not 1 <= index <= len(self.bases):
            raise IndexError(f"factor index {index} outside 1..{len(self.bases)}")
        return self.bases[index - 1]

    def replace(self, index: int, basis: SingleBasis) -> "CompositeBasis":
        """Copy with factor `index` (1-based) swapped for `basis`."""
        bases = list(self.bases)
        bases[index - 1] = basis
        return CompositeBasis(tuple(bases), order=self.order)


Basis = Union[PositionBasis, MomentumBasis, NLevelBasis, CompositeBasis]


# -----------------------------------------------------------------------------
# Helpers
# -----------------------------------------------------------------------------

def _validate_grid(lo: float, hi: float, n: int) -> None:
    if not isinstance(n, (int, np.integer)) or n < 1:
        raise ValueError(f"Number of points must be a positive integer, got {n!r}")
    if not (np.isfinite(lo) and np.isfinite(hi)) or hi <= lo:
        raise ValueError(f"Require finite min < max, got [{lo}, {hi})")


def make_discretized_basis(xmin: float, xmax: float, npoints: int) -> PositionBasis:
    """Position basis with `npoints` uniform samples on [xmin, xmax)."""
    return PositionBasis(float(xmin), float(xmax), int(npoints))


def conjugate_basis(b: Basis) -> Basis:
    """Fourier-dual basis of matching dimension, centred on zero."""
    if isinstance(b, PositionBasis):
        half = math.pi / b.spacing
        return MomentumBasis(-half, half, b.npoints)
    if isinstance(b, MomentumBasis):
        half = math.pi / b.spacing
        return PositionBasis(-half, half, b.npoints)
    if isinstance(b, CompositeBasis):
        return CompositeBasis(tuple(conjugate_basis(f) for f in b.bases), order=b.order)
    raise UnsupportedOperation(f"{type(b).__name__} has no conjugate basis")


def compose(*bases: Basis, order: str = "C") -> CompositeBasis:
    """Tensor-product basis of the given factors (at least one)."""
    if not bases:
        raise ValueError("compose() requires at least one basis")
    return CompositeBasis(tuple(bases), order=order)


def sample_points(b: Basis) -> np.ndarray:
    """Ordered coordinate values represented by a position or momentum basis."""
    if isinstance(b, PositionBasis):
        return b.xmin + b.spacing * np.arange(b.npoints, dtype=np.float64)
    if isinstance(b, MomentumBasis):
        return b.pmin + b.spacing * np.arange(b.npoints, dtype=np.float64)
    raise UnsupportedOperation(f"sample_points is undefined for {type(b).__name__}")


def dimension_of(b: Basis) -> int:
    return int(b.dimension)


def is_coordinate_pair(a: Basis, b: Basis) -> bool:
    """True if (a, b) is a position/momentum pair with dx * dp * N == 2π."""
    kinds = {type(a), type(b)}
    if kinds != {PositionBasis, MomentumBasis}:
        return False
    if a.dimension != b.dimension:
        return False
    product = a.spacing * b.spacing * a.dimension
    return math.isclose(product, 2.0 * math.pi, rel_tol=_PAIR_RTOL)
