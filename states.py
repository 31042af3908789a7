"""
states.py — State vectors and density operators over (composite) bases.

A Ket is normalised by the constructors that build physical states
(gaussianstate, basisstate) but normalisation is never enforced afterwards:
under a non-Hermitian Hamiltonian the norm decays and that decay is the
signal of interest. Expectation values are therefore NOT renormalised.
"""
from __future__ import annotations

from dataclasses import dataclass
from functools import reduce
from numbers import Number
from typing import Sequence, Union

import math
import numpy as np
from numba import jit
from numpy.typing import NDArray

from bases import Basis, CompositeBasis, MomentumBasis, PositionBasis, compose, sample_points
from errors import DimensionMismatch, UnsupportedOperation
from operators import DiagonalOperator, Operator, apply, is_operator

ArrayC = NDArray[np.complex128]
ArrayR = NDArray[np.float64]


# =============================================================================
# Numba-accelerated reductions
# =============================================================================

@jit(nopython=True, cache=True)
def _abs2_fast(psi: ArrayC) -> ArrayR:
    """|ψ_i|² element-wise."""
    out = np.empty(psi.shape[0], dtype=np.float64)
    for i in range(psi.shape[0]):
        re = psi[i].real
        im = psi[i].imag
        out[i] = re * re + im * im
    return out


@jit(nopython=True, cache=True)
def _diagonal_expect_fast(psi: ArrayC, diag: ArrayC) -> complex:
    """Σ_i conj(ψ_i) d_i ψ_i."""
    acc = 0j
    for i in range(psi.shape[0]):
        re = psi[i].real
        im = psi[i].imag
        acc += (re * re + im * im) * diag[i]
    return acc


# =============================================================================
# State types
# =============================================================================

@dataclass(frozen=True, eq=False)
class Ket:
    """Complex state vector over a basis."""
    basis: Basis
    data: ArrayC

    def __post_init__(self) -> None:
        data = np.array(self.data, dtype=np.complex128, copy=True).reshape(-1)
        if data.shape[0] != self.basis.dimension:
            raise DimensionMismatch(
                f"Ket data has length {data.shape[0]}, basis dimension is {self.basis.dimension}"
            )
        data.flags.writeable = False
        object.__setattr__(self, "data", data)

    @property
    def dimension(self) -> int:
        return self.basis.dimension

    def norm(self) -> float:
        return float(math.sqrt(np.sum(_abs2_fast(self.data))))

    def normalized(self) -> "Ket":
        n = self.norm()
        if n == 0.0:
            raise ValueError("Cannot normalize a zero state")
        return Ket(self.basis, self.data / n)

    def __add__(self, other: "Ket") -> "Ket":
        if not isinstance(other, Ket):
            return NotImplemented
        _check_state_bases(self.basis, other.basis)
        return Ket(self.basis, self.data + other.data)

    def __sub__(self, other: "Ket") -> "Ket":
        if not isinstance(other, Ket):
            return NotImplemented
        _check_state_bases(self.basis, other.basis)
        return Ket(self.basis, self.data - other.data)

    def __mul__(self, c) -> "Ket":
        if not isinstance(c, Number):
            return NotImplemented
        return Ket(self.basis, complex(c) * self.data)

    __rmul__ = __mul__


@dataclass(frozen=True, eq=False)
class DensityOperator:
    """Density matrix ρ over a basis."""
    basis: Basis
    data: ArrayC

    def __post_init__(self) -> None:
        data = np.array(self.data, dtype=np.complex128, copy=True)
        d = self.basis.dimension
        if data.shape != (d, d):
            raise DimensionMismatch(f"Density matrix has shape {data.shape}, basis requires ({d}, {d})")
        data.flags.writeable = False
        object.__setattr__(self, "data", data)

    @property
    def dimension(self) -> int:
        return self.basis.dimension

    def trace(self) -> complex:
        return complex(np.trace(self.data))

    def purity(self) -> float:
        return float(np.real(np.trace(self.data @ self.data)))

    def norm(self) -> float:
        """Trace of ρ (the analogue of ||ψ||²)."""
        return float(np.real(self.trace()))


State = Union[Ket, DensityOperator]


def _check_state_bases(a: Basis, b: Basis) -> None:
    if a.dimension != b.dimension:
        raise DimensionMismatch(f"State dimensions differ: {a.dimension} vs {b.dimension}")
    if a != b:
        raise UnsupportedOperation("Cannot combine states over different bases")


# =============================================================================
# Constructors
# =============================================================================

def basisstate(basis: Basis, index: int) -> Ket:
    """Basis vector |index> (1-based)."""
    d = basis.dimension
    if not 1 <= index <= d:
        raise ValueError(f"Basis index must lie in 1..{d}, got {index}")
    data = np.zeros(d, dtype=np.complex128)
    data[index - 1] = 1.0
    return Ket(basis, data)


def gaussianstate(basis: Basis, x0: float, p0: float, sigma: float) -> Ket:
    """Normalised Gaussian wavepacket centred at x0 with mean momentum p0.

    On a position basis:
        ψ(x) ∝ exp(i p0 (x - x0/2) - (x - x0)² / (2σ²))
    On a momentum basis the same packet is written in its conjugate form
        ψ(p) ∝ exp(-i x0 (p - p0/2) - (p - p0)² σ² / 2)
    """
    if sigma <= 0:
        raise ValueError(f"sigma must be positive, got {sigma}")
    if isinstance(basis, PositionBasis):
        x = sample_points(basis)
        data = np.exp(1j * p0 * (x - x0 / 2) - (x - x0) ** 2 / (2 * sigma ** 2))
    elif isinstance(basis, MomentumBasis):
        p = sample_points(basis)
        data = np.exp(-1j * x0 * (p - p0 / 2) - (p - p0) ** 2 * sigma ** 2 / 2)
    else:
        raise UnsupportedOperation(f"gaussianstate needs a position or momentum basis, got {type(basis).__name__}")
    return Ket(basis, data).normalized()


def tensor(*kets: Ket, order: str = "C") -> Ket:
    """Product state; flattened with the requested composite order."""
    if not kets:
        raise ValueError("tensor() requires at least one ket")
    vecs = [k.data for k in kets]
    data = reduce(np.kron, vecs if order == "C" else vecs[::-1])
    return Ket(compose(*[k.basis for k in kets], order=order), data)


def dm(ket: Ket) -> DensityOperator:
    """Projector |ψ><ψ|."""
    return DensityOperator(ket.basis, np.outer(ket.data, ket.data.conj()))


# =============================================================================
# Observables
# =============================================================================

def expect(op: Operator, state: State) -> complex:
    """<ψ|O|ψ> for a Ket, Tr(O ρ) for a DensityOperator (no renormalisation)."""
    if not is_operator(op):
        raise TypeError(f"expect() needs an operator, got {type(op).__name__}")
    if op.basis_l.dimension != state.dimension or op.basis_r.dimension != state.dimension:
        raise DimensionMismatch(
            f"Operator of shape {op.shape} cannot be measured on a state of dimension {state.dimension}"
        )
    if isinstance(state, Ket):
        if isinstance(op, DiagonalOperator):
            return complex(_diagonal_expect_fast(state.data, op.diagonal))
        return complex(np.vdot(state.data, apply(op, state.data)))
    if isinstance(state, DensityOperator):
        return complex(np.trace(apply(op, state.data)))
    raise TypeError(f"expect() needs a Ket or DensityOperator, got {type(state).__name__}")


def variance(op: Operator, state: State) -> complex:
    """<O²> - <O>², evaluated lazily as <O (O ψ)>."""
    if isinstance(state, Ket):
        o_psi = apply(op, state.data)
        second = np.vdot(state.data, apply(op, o_psi))
    elif isinstance(state, DensityOperator):
        second = np.trace(apply(op, apply(op, state.data)))
    else:
        raise TypeError(f"variance() needs a Ket or DensityOperator, got {type(state).__name__}")
    first = expect(op, state)
    return complex(second - first ** 2)


def probability_density(state: State) -> ArrayR:
    """Occupation probability of every basis element."""
    if isinstance(state, Ket):
        return _abs2_fast(state.data)
    return np.real(np.diag(state.data)).astype(np.float64)


def ptrace(state: State, keep: Union[int, Sequence[int]]) -> DensityOperator:
    """Reduced density operator on the kept factors (1-based indices)."""
    basis = state.basis
    if not isinstance(basis, CompositeBasis):
        raise UnsupportedOperation("ptrace() needs a state over a composite basis")
    keep = (keep,) if isinstance(keep, (int, np.integer)) else tuple(sorted(int(k) for k in keep))
    n = basis.nfactors
    if not keep or any(not 1 <= k <= n for k in keep) or len(set(keep)) != len(keep):
        raise ValueError(f"Kept factor indices must be distinct values in 1..{n}, got {keep}")
    traced = tuple(k for k in range(1, n + 1) if k not in keep)
    order = basis.order
    shape = basis.shape
    dk = int(np.prod([shape[k - 1] for k in keep]))
    dr = int(np.prod([shape[k - 1] for k in traced])) if traced else 1
    axes = [k - 1 for k in keep] + [k - 1 for k in traced]

    if isinstance(state, Ket):
        psi = np.transpose(state.data.reshape(shape, order=order), axes)
        m = psi.reshape((dk, dr), order=order)
        rho = m @ m.conj().T
    else:
        rho_full = state.data.reshape(shape + shape, order=order)
        rho_full = np.transpose(rho_full, axes + [n + a for a in axes])
        rho_full = rho_full.reshape((dk, dr, dk, dr), order=order)
        rho = np.einsum("ajbj->ab", rho_full)

    kept_bases = tuple(basis.bases[k - 1] for k in keep)
    reduced_basis = kept_bases[0] if len(kept_bases) == 1 else CompositeBasis(kept_bases, order=order)
    return DensityOperator(reduced_basis, rho)
