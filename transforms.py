"""
transforms.py — FFT-backed change of representation between a coordinate
basis and its Fourier-conjugate basis.

For a position basis x_j = x0 + j dx and a momentum basis p_k = p0 + k dp
with dx * dp * N = 2π, the unitary map

    ψ_p[k] = (1/√N) Σ_j exp(-i p_k x_j) ψ_x[j]

factorises as

    ψ_p = exp(-i p x0) · FFT_ortho[ exp(-i p0 (x - x0)) ψ_x ]

so evaluation costs O(N log N) and never builds the N×N matrix. The inverse
is the conjugated sandwich around the orthonormal inverse FFT.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from typing import Optional, Tuple

import numpy as np
from scipy import fft as sp_fft

from bases import (
    Basis,
    CompositeBasis,
    MomentumBasis,
    PositionBasis,
    is_coordinate_pair,
    sample_points,
)
from errors import IncompatibleBases

# Per-factor directions
_X_TO_P = "x->p"
_P_TO_X = "p->x"


@dataclass(frozen=True, eq=False)
class _FactorPhases:
    """Phase vectors for one position/momentum factor pair."""
    pre: np.ndarray   # exp(-i p0 (x - x0)), indexed by position sample
    post: np.ndarray  # exp(-i p x0), indexed by momentum sample


@dataclass(frozen=True, eq=False)
class BasisTransform:
    """Operator mapping states from `basis_r` to `basis_l` (a coordinate/conjugate pair).

    Use `transform(from_basis, to_basis)` to construct; the constructor
    validates the pairing and precomputes the phase factors.
    """
    basis_l: Basis
    basis_r: Basis
    _directions: Tuple[Optional[str], ...] = field(init=False, repr=False)
    _phases: Tuple[Optional[_FactorPhases], ...] = field(init=False, repr=False)

    def __post_init__(self) -> None:
        directions, phases = _plan(self.basis_r, self.basis_l)
        object.__setattr__(self, "_directions", directions)
        object.__setattr__(self, "_phases", phases)

    @property
    def basis(self) -> Basis:
        if self.basis_l != self.basis_r:
            raise IncompatibleBases("BasisTransform is not a square operator")
        return self.basis_l

    @property
    def shape(self) -> Tuple[int, int]:
        return self.basis_l.dimension, self.basis_r.dimension


def transform(from_basis: Basis, to_basis: Basis) -> BasisTransform:
    """Unitary change of representation from `from_basis` to `to_basis`.

    Raises IncompatibleBases unless the bases are a position/momentum pair of
    equal dimension with dx * dp * N = 2π (factor-wise for composites, where
    identical factors are passed through unchanged).
    """
    return BasisTransform(basis_l=to_basis, basis_r=from_basis)


def _factor_phases(xb: PositionBasis, pb: MomentumBasis) -> _FactorPhases:
    x = sample_points(xb)
    p = sample_points(pb)
    pre = np.exp(-1j * pb.pmin * (x - xb.xmin))
    post = np.exp(-1j * p * xb.xmin)
    pre.flags.writeable = False
    post.flags.writeable = False
    return _FactorPhases(pre=pre, post=post)


def _pair(from_b: Basis, to_b: Basis) -> Tuple[Optional[str], Optional[_FactorPhases]]:
    if from_b == to_b:
        return None, None
    if from_b.dimension != to_b.dimension:
        raise IncompatibleBases(
            f"Cannot transform between bases of dimension {from_b.dimension} and {to_b.dimension}"
        )
    if not is_coordinate_pair(from_b, to_b):
        raise IncompatibleBases(
            f"{from_b!r} and {to_b!r} are not a coordinate/conjugate-coordinate pair"
        )
    if isinstance(from_b, PositionBasis):
        return _X_TO_P, _factor_phases(from_b, to_b)
    return _P_TO_X, _factor_phases(to_b, from_b)


def _plan(from_b: Basis, to_b: Basis):
    if isinstance(from_b, CompositeBasis) or isinstance(to_b, CompositeBasis):
        if not (isinstance(from_b, CompositeBasis) and isinstance(to_b, CompositeBasis)):
            raise IncompatibleBases("Cannot transform between a composite and a single basis")
        if from_b.order != to_b.order or from_b.nfactors != to_b.nfactors:
            raise IncompatibleBases("Composite bases differ in factor count or flattening order")
        pairs = [_pair(f, t) for f, t in zip(from_b.bases, to_b.bases)]
    else:
        pairs = [_pair(from_b, to_b)]
    if all(d is None for d, _ in pairs):
        raise IncompatibleBases("transform() requires a coordinate/conjugate pair, got identical bases")
    directions = tuple(d for d, _ in pairs)
    phases = tuple(ph for _, ph in pairs)
    return directions, phases


def _along(vec: np.ndarray, axis: int, ndim: int) -> np.ndarray:
    shape = [1] * ndim
    shape[axis] = vec.size
    return vec.reshape(shape)


def apply_transform(T: BasisTransform, x: np.ndarray) -> np.ndarray:
    """Evaluate T on x, whose first axis has length T.basis_r.dimension."""
    rest = x.shape[1:]
    if isinstance(T.basis_r, CompositeBasis):
        order = T.basis_r.order
        work = x.reshape(T.basis_r.shape + rest, order=order)
    else:
        order = "C"
        work = x
    ndim = work.ndim
    for axis, (direction, ph) in enumerate(zip(T._directions, T._phases)):
        if direction is None:
            continue
        if direction == _X_TO_P:
            work = work * _along(ph.pre, axis, ndim)
            work = sp_fft.fft(work, axis=axis, norm="ortho")
            work = work * _along(ph.post, axis, ndim)
        else:
            work = work * _along(ph.post.conj(), axis, ndim)
            work = sp_fft.ifft(work, axis=axis, norm="ortho")
            work = work * _along(ph.pre.conj(), axis, ndim)
    return np.asarray(work, dtype=np.complex128).reshape((T.basis_l.dimension,) + rest, order=order)


def inverse(T: BasisTransform) -> BasisTransform:
    """Inverse (= adjoint) transform."""
    return BasisTransform(basis_l=T.basis_r, basis_r=T.basis_l)
