import numpy as np
import pytest

from bases import NLevelBasis, PositionBasis, compose, conjugate_basis
from errors import DimensionMismatch, UnsupportedOperation
from operators import DenseOperator, DiagonalOperator, embed, identityoperator
from particle import position
from states import (
    DensityOperator,
    Ket,
    basisstate,
    dm,
    expect,
    gaussianstate,
    probability_density,
    ptrace,
    tensor,
    variance,
)


@pytest.fixture
def rng():
    return np.random.default_rng(7)


def _random_ket(rng, basis):
    d = basis.dimension
    return Ket(basis, rng.normal(size=d) + 1j * rng.normal(size=d)).normalized()


def test_ket_validates_length_and_copies():
    b = NLevelBasis(3)
    raw = np.array([1.0, 0.0, 0.0])
    k = Ket(b, raw)
    raw[0] = 5.0
    assert k.data[0] == 1.0
    with pytest.raises(DimensionMismatch):
        Ket(b, np.ones(4))


def test_ket_arithmetic_requires_same_basis():
    a = basisstate(NLevelBasis(2), 1)
    b = basisstate(NLevelBasis(2), 2)
    assert np.allclose((a + b).data, [1.0, 1.0])
    assert np.allclose((a - b).data, [1.0, -1.0])
    assert np.allclose((2j * a).data, [2j, 0.0])
    with pytest.raises(DimensionMismatch):
        a + basisstate(NLevelBasis(3), 1)
    with pytest.raises(UnsupportedOperation):
        a + Ket(PositionBasis(0.0, 1.0, 2), [1.0, 0.0])


def test_basisstate_is_one_based():
    k = basisstate(NLevelBasis(4), 2)
    assert np.array_equal(k.data, [0, 1, 0, 0])
    with pytest.raises(ValueError):
        basisstate(NLevelBasis(4), 0)
    with pytest.raises(ValueError):
        basisstate(NLevelBasis(4), 5)


def test_gaussian_is_normalised_with_expected_moments():
    b = PositionBasis(-30.0, 50.0, 400)
    psi = gaussianstate(b, -10.0, 1.5, 2.0)
    assert psi.norm() == pytest.approx(1.0)
    assert expect(position(b), psi).real == pytest.approx(-10.0, abs=1e-8)
    assert variance(position(b), psi).real == pytest.approx(2.0, rel=1e-6)


def test_gaussian_in_momentum_basis_is_normalised():
    c = conjugate_basis(PositionBasis(-30.0, 50.0, 200))
    psi = gaussianstate(c, -10.0, 1.5, 2.0)
    assert psi.norm() == pytest.approx(1.0)
    with pytest.raises(UnsupportedOperation):
        gaussianstate(NLevelBasis(3), 0.0, 0.0, 1.0)
    with pytest.raises(ValueError):
        gaussianstate(PositionBasis(0.0, 1.0, 4), 0.0, 0.0, 0.0)


@pytest.mark.parametrize("order", ["C", "F"])
def test_product_state_layout(order):
    a = Ket(NLevelBasis(2), [1.0, 2.0])
    b = Ket(NLevelBasis(3), [1.0, 10.0, 100.0])
    ab = tensor(a, b, order=order)
    assert ab.basis.order == order
    expected = np.kron(a.data, b.data) if order == "C" else np.kron(b.data, a.data)
    assert np.array_equal(ab.data, expected)


def test_diagonal_expectation_matches_dense(rng):
    b = NLevelBasis(6)
    psi = _random_ket(rng, b)
    diag = rng.normal(size=6) + 1j * rng.normal(size=6)
    fast = expect(DiagonalOperator(b, diag), psi)
    slow = np.vdot(psi.data, np.diag(diag) @ psi.data)
    assert fast == pytest.approx(slow)


def test_expectation_is_not_renormalised(rng):
    b = NLevelBasis(4)
    psi = 0.5 * _random_ket(rng, b)
    assert expect(identityoperator(b), psi).real == pytest.approx(0.25)
    assert probability_density(psi).sum() == pytest.approx(0.25)


def test_density_operator_expectation(rng):
    b = NLevelBasis(5)
    psi = _random_ket(rng, b)
    M = rng.normal(size=(5, 5)) + 1j * rng.normal(size=(5, 5))
    op = DenseOperator(b, b, M)
    rho = dm(psi)
    assert rho.trace() == pytest.approx(1.0)
    assert rho.purity() == pytest.approx(1.0)
    assert expect(op, rho) == pytest.approx(expect(op, psi))
    assert np.allclose(probability_density(rho), np.abs(psi.data) ** 2)


def test_expectation_dimension_mismatch():
    with pytest.raises(DimensionMismatch):
        expect(identityoperator(NLevelBasis(3)), basisstate(NLevelBasis(4), 1))
    with pytest.raises(DimensionMismatch):
        DensityOperator(NLevelBasis(2), np.eye(3))


@pytest.mark.parametrize("order", ["C", "F"])
def test_partial_trace_of_product_state(rng, order):
    a = _random_ket(rng, NLevelBasis(2))
    b = _random_ket(rng, NLevelBasis(3))
    c = _random_ket(rng, NLevelBasis(2))
    abc = tensor(a, b, c, order=order)
    for state in (abc, dm(abc)):
        assert np.allclose(ptrace(state, 1).data, dm(a).data)
        assert np.allclose(ptrace(state, 2).data, dm(b).data)
        assert np.allclose(ptrace(state, [1, 3]).data, dm(tensor(a, c, order=order)).data)


def test_partial_trace_of_entangled_state():
    b = compose(NLevelBasis(2), NLevelBasis(2))
    bell = Ket(b, np.array([1.0, 0.0, 0.0, 1.0]) / np.sqrt(2))
    reduced = ptrace(bell, 1)
    assert np.allclose(reduced.data, np.eye(2) / 2)
    assert reduced.purity() == pytest.approx(0.5)
    with pytest.raises(ValueError):
        ptrace(bell, 3)
    with pytest.raises(UnsupportedOperation):
        ptrace(basisstate(NLevelBasis(2), 1), 1)


def test_local_operator_on_product_state(rng):
    b1, b2 = NLevelBasis(2), NLevelBasis(3)
    a, b = _random_ket(rng, b1), _random_ket(rng, b2)
    d = DiagonalOperator(b2, [1.0, 2.0, 3.0])
    op = embed(compose(b1, b2), 2, d)
    assert expect(op, tensor(a, b)) == pytest.approx(expect(d, b))
