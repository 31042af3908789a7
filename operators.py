"""
operators.py — Linear operators as a closed set of lazy expression-tree variants.

Variants (all immutable, all carrying basis_l = output space and
basis_r = input space):

    DenseOperator     explicit (D_l, D_r) matrix                 apply O(D_l D_r)
    DiagonalOperator  diagonal vector                            apply O(D)
    LazyTensor        sub-operators on chosen factors of a       apply O(D Σ d_i) for dense factors
                      composite basis, identity elsewhere
    LazySum           weighted sum of operators on one space     apply Σ cost(term)
    LazyProduct       ordered composition A∘B∘C                  apply right-to-left
    BasisTransform    FFT change of representation (transforms)  apply O(D log D)

`apply(op, x)` dispatches over this set with isinstance checks. x is either
a vector of length D_r or an array whose first axis has length D_r, in which
case the trailing axes are treated as a batch of column vectors (this is how
density operators and dense materialisation are evaluated).

Factor indices of LazyTensor are 1-based and strictly increasing.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from functools import reduce
from numbers import Number
from typing import Sequence, Tuple, Union

import numpy as np
from numpy.typing import NDArray

from bases import Basis, CompositeBasis, NLevelBasis, compose
from errors import DimensionMismatch, IncompatibleBases, UnsupportedOperation
from transforms import BasisTransform, apply_transform, inverse

ArrayC = NDArray[np.complex128]


# =============================================================================
# Helpers
# =============================================================================

def _as_complex_array(data) -> ArrayC:
    """Copy to a read-only complex128 array; refuse to drop extended precision."""
    arr = np.asarray(data)
    if arr.dtype.kind not in "biufc":
        raise TypeError(f"Operator data must be numeric, got dtype {arr.dtype}")
    if (arr.dtype.kind == "c" and arr.dtype.itemsize > 16) or (arr.dtype.kind == "f" and arr.dtype.itemsize > 8):
        raise TypeError(f"Refusing to downcast {arr.dtype} to complex128")
    out = np.array(arr, dtype=np.complex128, copy=True)
    out.flags.writeable = False
    return out


def _check_same_space(a, b, what: str = "operators") -> None:
    """Raise unless a and b act between identical bases."""
    if a.basis_l.dimension != b.basis_l.dimension or a.basis_r.dimension != b.basis_r.dimension:
        raise DimensionMismatch(
            f"Cannot combine {what} of shapes {_shape(a)} and {_shape(b)}"
        )
    if a.basis_l != b.basis_l or a.basis_r != b.basis_r:
        raise IncompatibleBases(f"Cannot combine {what} defined over different bases")


def _check_basis_match(expected: Basis, got: Basis, where: str) -> None:
    if expected.dimension != got.dimension:
        raise DimensionMismatch(f"{where}: dimension {got.dimension} != {expected.dimension}")
    if expected != got:
        raise IncompatibleBases(f"{where}: basis {got!r} does not match {expected!r}")


def _shape(op) -> Tuple[int, int]:
    return op.basis_l.dimension, op.basis_r.dimension


def _square_basis(op) -> Basis:
    if op.basis_l != op.basis_r:
        raise IncompatibleBases(f"{type(op).__name__} maps between different bases")
    return op.basis_l


def _along_first(vec: np.ndarray, ndim: int) -> np.ndarray:
    return vec.reshape((-1,) + (1,) * (ndim - 1))


# =============================================================================
# Variants
# =============================================================================

@dataclass(frozen=True, eq=False)
class DenseOperator:
    """Explicit matrix from basis_r to basis_l."""
    basis_l: Basis
    basis_r: Basis
    data: ArrayC

    def __post_init__(self) -> None:
        data = _as_complex_array(self.data)
        expected = (self.basis_l.dimension, self.basis_r.dimension)
        if data.shape != expected:
            raise DimensionMismatch(f"Dense data has shape {data.shape}, bases require {expected}")
        object.__setattr__(self, "data", data)

    @property
    def basis(self) -> Basis:
        return _square_basis(self)

    @property
    def shape(self) -> Tuple[int, int]:
        return _shape(self)


@dataclass(frozen=True, eq=False)
class DiagonalOperator:
    """Diagonal matrix stored as its diagonal."""
    basis: Basis
    diagonal: ArrayC

    def __post_init__(self) -> None:
        diag = _as_complex_array(self.diagonal)
        if diag.shape != (self.basis.dimension,):
            raise DimensionMismatch(
                f"Diagonal has shape {diag.shape}, basis requires ({self.basis.dimension},)"
            )
        object.__setattr__(self, "diagonal", diag)

    @property
    def basis_l(self) -> Basis:
        return self.basis

    @property
    def basis_r(self) -> Basis:
        return self.basis

    @property
    def shape(self) -> Tuple[int, int]:
        return _shape(self)


@dataclass(frozen=True, eq=False)
class LazyTensor:
    """Tensor product of sub-operators on selected factors, identity on the rest.

    Sub-operator k maps factor basis_r.bases[indices[k]-1] to
    basis_l.bases[indices[k]-1]; all other factors of basis_l and basis_r
    must coincide.
    """
    basis_l: CompositeBasis
    basis_r: CompositeBasis
    indices: Tuple[int, ...]
    operators: Tuple["Operator", ...]
    factor: complex = 1.0

    def __post_init__(self) -> None:
        if not (isinstance(self.basis_l, CompositeBasis) and isinstance(self.basis_r, CompositeBasis)):
            raise IncompatibleBases("LazyTensor is defined over composite bases only")
        if self.basis_l.order != self.basis_r.order or self.basis_l.nfactors != self.basis_r.nfactors:
            raise IncompatibleBases("LazyTensor bases differ in factor count or flattening order")
        indices = tuple(int(i) for i in self.indices)
        operators = tuple(self.operators)
        if len(indices) != len(operators):
            raise ValueError("LazyTensor needs exactly one sub-operator per factor index")
        n = self.basis_r.nfactors
        if any(b <= a for a, b in zip(indices, indices[1:])):
            raise ValueError(f"Factor indices must be strictly increasing, got {indices}")
        if indices and (indices[0] < 1 or indices[-1] > n):
            raise ValueError(f"Factor indices must lie in 1..{n}, got {indices}")
        for idx, sub in zip(indices, operators):
            if not is_operator(sub):
                raise TypeError(f"LazyTensor sub-operator has type {type(sub).__name__}")
            _check_basis_match(self.basis_r.bases[idx - 1], sub.basis_r, f"factor {idx} (input)")
            _check_basis_match(self.basis_l.bases[idx - 1], sub.basis_l, f"factor {idx} (output)")
        for k in range(1, n + 1):
            if k not in indices:
                _check_basis_match(self.basis_r.bases[k - 1], self.basis_l.bases[k - 1], f"identity factor {k}")
        object.__setattr__(self, "indices", indices)
        object.__setattr__(self, "operators", operators)
        object.__setattr__(self, "factor", complex(self.factor))

    @property
    def basis(self) -> Basis:
        return _square_basis(self)

    @property
    def shape(self) -> Tuple[int, int]:
        return _shape(self)


@dataclass(frozen=True, eq=False)
class LazySum:
    """Weighted sum Σ w_k T_k of operators sharing basis_l and basis_r."""
    terms: Tuple["Operator", ...]
    weights: Tuple[complex, ...] = field(default=())

    def __post_init__(self) -> None:
        terms = tuple(self.terms)
        if not terms:
            raise ValueError("LazySum requires at least one term")
        for t in terms:
            if not is_operator(t):
                raise TypeError(f"LazySum term has type {type(t).__name__}")
        for t in terms[1:]:
            _check_same_space(terms[0], t, "LazySum terms")
        weights = tuple(complex(w) for w in self.weights) if self.weights else (1.0 + 0j,) * len(terms)
        if len(weights) != len(terms):
            raise ValueError(f"LazySum got {len(terms)} terms but {len(weights)} weights")
        object.__setattr__(self, "terms", terms)
        object.__setattr__(self, "weights", weights)

    @property
    def basis_l(self) -> Basis:
        return self.terms[0].basis_l

    @property
    def basis_r(self) -> Basis:
        return self.terms[0].basis_r

    @property
    def basis(self) -> Basis:
        return _square_basis(self)

    @property
    def shape(self) -> Tuple[int, int]:
        return _shape(self)


@dataclass(frozen=True, eq=False)
class LazyProduct:
    """Composition factor * A∘B∘…; the rightmost operator acts first."""
    operators: Tuple["Operator", ...]
    factor: complex = 1.0

    def __post_init__(self) -> None:
        operators = tuple(self.operators)
        if not operators:
            raise ValueError("LazyProduct requires at least one operator")
        for o in operators:
            if not is_operator(o):
                raise TypeError(f"LazyProduct operand has type {type(o).__name__}")
        for left, right in zip(operators, operators[1:]):
            _check_basis_match(left.basis_r, right.basis_l, "LazyProduct chain")
        object.__setattr__(self, "operators", operators)
        object.__setattr__(self, "factor", complex(self.factor))

    @property
    def basis_l(self) -> Basis:
        return self.operators[0].basis_l

    @property
    def basis_r(self) -> Basis:
        return self.operators[-1].basis_r

    @property
    def basis(self) -> Basis:
        return _square_basis(self)

    @property
    def shape(self) -> Tuple[int, int]:
        return _shape(self)


Operator = Union[DenseOperator, DiagonalOperator, LazyTensor, LazySum, LazyProduct, BasisTransform]
OPERATOR_TYPES = (DenseOperator, DiagonalOperator, LazyTensor, LazySum, LazyProduct, BasisTransform)


def is_operator(obj) -> bool:
    return isinstance(obj, OPERATOR_TYPES)


# =============================================================================
# Evaluation
# =============================================================================

def apply(op: Operator, x) -> ArrayC:
    """Apply op to a vector (or to each column of a batch along axis 0).

    Raises DimensionMismatch when the leading axis of x differs from the
    input dimension of op. The input is never modified.
    """
    if not is_operator(op):
        raise TypeError(f"Cannot apply object of type {type(op).__name__}")
    arr = np.asarray(x)
    if arr.ndim == 0 or arr.shape[0] != op.basis_r.dimension:
        got = arr.shape[0] if arr.ndim else "a scalar"
        raise DimensionMismatch(f"Operator expects length {op.basis_r.dimension}, got {got}")
    return _apply(op, arr.astype(np.complex128, copy=False))


def _apply(op: Operator, x: ArrayC) -> ArrayC:
    if isinstance(op, DiagonalOperator):
        return _along_first(op.diagonal, x.ndim) * x
    if isinstance(op, DenseOperator):
        return op.data @ x
    if isinstance(op, BasisTransform):
        return apply_transform(op, x)
    if isinstance(op, LazySum):
        acc = op.weights[0] * _apply(op.terms[0], x)
        for w, term in zip(op.weights[1:], op.terms[1:]):
            acc += w * _apply(term, x)
        return acc
    if isinstance(op, LazyProduct):
        out = x
        for o in reversed(op.operators):
            out = _apply(o, out)
        return out if op.factor == 1 else op.factor * out
    if isinstance(op, LazyTensor):
        return _apply_lazy_tensor(op, x)
    raise TypeError(f"Unknown operator variant {type(op).__name__}")


def _apply_lazy_tensor(op: LazyTensor, x: ArrayC) -> ArrayC:
    rest = x.shape[1:]
    order = op.basis_r.order
    work = x.reshape(op.basis_r.shape + rest, order=order)
    for idx, sub in zip(op.indices, op.operators):
        axis = idx - 1
        moved = np.moveaxis(work, axis, 0)
        tail = moved.shape[1:]
        out = _apply(sub, moved.reshape(moved.shape[0], -1))
        work = np.moveaxis(out.reshape((out.shape[0],) + tail), 0, axis)
    if not op.indices:
        work = work.copy()
    result = work.reshape((op.basis_l.dimension,) + rest, order=order)
    return result if op.factor == 1 else op.factor * result


# =============================================================================
# Algebra
# =============================================================================

def scale(op: Operator, c: complex) -> Operator:
    """c * op, keeping the variant where possible."""
    c = complex(c)
    if isinstance(op, DenseOperator):
        return DenseOperator(op.basis_l, op.basis_r, c * op.data)
    if isinstance(op, DiagonalOperator):
        return DiagonalOperator(op.basis, c * op.diagonal)
    if isinstance(op, LazySum):
        return LazySum(op.terms, tuple(c * w for w in op.weights))
    if isinstance(op, LazyProduct):
        return LazyProduct(op.operators, c * op.factor)
    if isinstance(op, LazyTensor):
        return LazyTensor(op.basis_l, op.basis_r, op.indices, op.operators, c * op.factor)
    if isinstance(op, BasisTransform):
        return LazyProduct((op,), c)
    raise TypeError(f"Cannot scale object of type {type(op).__name__}")


def add(a: Operator, b: Operator) -> Operator:
    """a + b for operators over identical bases."""
    _check_same_space(a, b)
    if isinstance(a, DiagonalOperator) and isinstance(b, DiagonalOperator):
        return DiagonalOperator(a.basis, a.diagonal + b.diagonal)
    if isinstance(a, DenseOperator) and isinstance(b, DenseOperator):
        return DenseOperator(a.basis_l, a.basis_r, a.data + b.data)
    if isinstance(a, DenseOperator) and isinstance(b, DiagonalOperator):
        return DenseOperator(a.basis_l, a.basis_r, a.data + np.diag(b.diagonal))
    if isinstance(a, DiagonalOperator) and isinstance(b, DenseOperator):
        return DenseOperator(b.basis_l, b.basis_r, np.diag(a.diagonal) + b.data)
    terms, weights = [], []
    for o in (a, b):
        if isinstance(o, LazySum):
            terms.extend(o.terms)
            weights.extend(o.weights)
        else:
            terms.append(o)
            weights.append(1.0)
    return LazySum(tuple(terms), tuple(weights))


def lazysum(*terms: Operator, weights: Sequence[complex] = ()) -> LazySum:
    return LazySum(tuple(terms), tuple(weights))


def product(*ops: Operator) -> LazyProduct:
    """Lazy composition ops[0] ∘ ops[1] ∘ …"""
    return LazyProduct(tuple(ops))


def embed(basis: CompositeBasis, indices, operators) -> LazyTensor:
    """Square LazyTensor acting with `operators` on factors `indices` (1-based)."""
    if isinstance(indices, (int, np.integer)):
        indices, operators = (int(indices),), (operators,)
    pairs = sorted(zip((int(i) for i in indices), operators), key=lambda p: p[0])
    basis_l = basis
    for idx, sub in pairs:
        if not 1 <= idx <= basis.nfactors:
            raise ValueError(f"Factor index {idx} outside 1..{basis.nfactors}")
        basis_l = basis_l.replace(idx, sub.basis_l)
    return LazyTensor(basis_l, basis, tuple(i for i, _ in pairs), tuple(o for _, o in pairs))


def tensor(*ops: Operator, lazy: bool = True, order: str = "C") -> Operator:
    """Tensor product of operators, as a LazyTensor or materialised DenseOperator."""
    if not ops:
        raise ValueError("tensor() requires at least one operator")
    if not lazy:
        mats = [to_dense(o).data for o in ops]
        data = reduce(np.kron, mats if order == "C" else mats[::-1])
        return DenseOperator(
            compose(*[o.basis_l for o in ops], order=order),
            compose(*[o.basis_r for o in ops], order=order),
            data,
        )
    indices, subs, factor, offset = [], [], 1.0 + 0j, 0
    for o in ops:
        if isinstance(o, LazyTensor):
            if o.basis_r.order != order:
                raise IncompatibleBases("Cannot tensor LazyTensors with different flattening orders")
            indices.extend(offset + i for i in o.indices)
            subs.extend(o.operators)
            factor *= o.factor
            offset += o.basis_r.nfactors
        elif isinstance(o.basis_r, CompositeBasis) or isinstance(o.basis_l, CompositeBasis):
            raise UnsupportedOperation("Lazy tensor of a non-LazyTensor composite operator; use lazy=False")
        else:
            indices.append(offset + 1)
            subs.append(o)
            offset += 1
    bases_l, bases_r = [], []
    for o in ops:
        bases_l.extend(o.basis_l.bases if isinstance(o.basis_l, CompositeBasis) else [o.basis_l])
        bases_r.extend(o.basis_r.bases if isinstance(o.basis_r, CompositeBasis) else [o.basis_r])
    return LazyTensor(
        compose(*bases_l, order=order), compose(*bases_r, order=order),
        tuple(indices), tuple(subs), factor,
    )


def dagger(op: Operator) -> Operator:
    """Hermitian adjoint."""
    if isinstance(op, DenseOperator):
        return DenseOperator(op.basis_r, op.basis_l, op.data.conj().T)
    if isinstance(op, DiagonalOperator):
        return DiagonalOperator(op.basis, op.diagonal.conj())
    if isinstance(op, BasisTransform):
        return inverse(op)
    if isinstance(op, LazySum):
        return LazySum(tuple(dagger(t) for t in op.terms), tuple(w.conjugate() for w in op.weights))
    if isinstance(op, LazyProduct):
        return LazyProduct(tuple(dagger(o) for o in reversed(op.operators)), op.factor.conjugate())
    if isinstance(op, LazyTensor):
        return LazyTensor(op.basis_r, op.basis_l, op.indices,
                          tuple(dagger(o) for o in op.operators), op.factor.conjugate())
    raise TypeError(f"Cannot take adjoint of {type(op).__name__}")


def to_dense(op: Operator) -> DenseOperator:
    """Materialise any operator as an explicit matrix (applies it to the identity)."""
    if isinstance(op, DenseOperator):
        return op
    if isinstance(op, DiagonalOperator):
        return DenseOperator(op.basis, op.basis, np.diag(op.diagonal))
    eye = np.eye(op.basis_r.dimension, dtype=np.complex128)
    return DenseOperator(op.basis_l, op.basis_r, _apply(op, eye))


def identityoperator(basis: Basis) -> DiagonalOperator:
    return DiagonalOperator(basis, np.ones(basis.dimension, dtype=np.complex128))


def transition(basis: NLevelBasis, i: int, j: int) -> DenseOperator:
    """|i><j| on an N-level basis (levels numbered from 1)."""
    if not isinstance(basis, NLevelBasis):
        raise UnsupportedOperation(f"transition() needs an NLevelBasis, got {type(basis).__name__}")
    n = basis.dimension
    if not (1 <= i <= n and 1 <= j <= n):
        raise ValueError(f"Levels must lie in 1..{n}, got ({i}, {j})")
    data = np.zeros((n, n), dtype=np.complex128)
    data[i - 1, j - 1] = 1.0
    return DenseOperator(basis, basis, data)


# =============================================================================
# Python operator syntax, attached to every variant
# =============================================================================

def _op_add(self, other):
    if isinstance(other, Number) and other == 0:
        return self
    if not is_operator(other):
        return NotImplemented
    return add(self, other)


def _op_radd(self, other):
    # sum([...]) starts from 0
    if isinstance(other, Number) and other == 0:
        return self
    return NotImplemented


def _op_sub(self, other):
    if not is_operator(other):
        return NotImplemented
    return add(self, scale(other, -1.0))


def _op_neg(self):
    return scale(self, -1.0)


def _op_mul(self, other):
    if isinstance(other, Number):
        return scale(self, other)
    return NotImplemented


def _op_truediv(self, other):
    if isinstance(other, Number):
        return scale(self, 1.0 / other)
    return NotImplemented


def _op_matmul(self, other):
    if is_operator(other):
        return product(self, other)
    if isinstance(other, np.ndarray):
        return apply(self, other)
    return NotImplemented


for _cls in OPERATOR_TYPES:
    setattr(_cls, "__add__", _op_add)
    setattr(_cls, "__radd__", _op_radd)
    setattr(_cls, "__sub__", _op_sub)
    setattr(_cls, "__neg__", _op_neg)
    setattr(_cls, "__mul__", _op_mul)
    setattr(_cls, "__rmul__", _op_mul)
    setattr(_cls, "__truediv__", _op_truediv)
    setattr(_cls, "__matmul__", _op_matmul)
del _cls
