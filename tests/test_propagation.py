from concurrent.futures import ThreadPoolExecutor

import numpy as np
import pytest

from bases import NLevelBasis, make_discretized_basis
from errors import DimensionMismatch, IntegrationFailure, InvalidTimeGrid
from operators import DenseOperator, DiagonalOperator, add, dagger, identityoperator, scale
from particle import kinetic_energy, position
from propagation import IntegratorConfig, propagate, schroedinger, schroedinger_dynamic, validate_times
from states import Ket, basisstate, dm, expect, gaussianstate


@pytest.fixture
def free_particle():
    b = make_discretized_basis(-30.0, 50.0, 100)
    psi0 = gaussianstate(b, -10.0, 1.5, 2.0)
    return b, psi0, kinetic_energy(b)


def _decaying_level(omega=1.3, gamma=0.4):
    b = NLevelBasis(1)
    return b, DiagonalOperator(b, [omega - 0.5j * gamma])


# -----------------------------------------------------------------------------
# Physics
# -----------------------------------------------------------------------------

def test_free_gaussian_moves_and_conserves_norm(free_particle):
    b, psi0, H = free_particle
    times = np.linspace(0.0, 20.0, 201)
    tout, states = schroedinger(times, psi0, H)
    assert np.array_equal(tout, times)
    assert len(states) == 201
    x_mean = np.array([expect(position(b), s).real for s in states])
    norms = np.array([s.norm() for s in states])
    assert np.all(np.diff(x_mean) > 0)
    assert np.all(np.abs(norms ** 2 - 1.0) < 1e-6)
    assert x_mean[0] == pytest.approx(-10.0, abs=1e-8)
    assert x_mean[100] == pytest.approx(5.0, abs=1e-2)


def test_uniform_absorption_gives_exponential_decay(free_particle):
    b, psi0, T = free_particle
    H = add(T, scale(identityoperator(b), -0.1j))
    times = np.linspace(0.0, 10.0, 21)
    _, norms = schroedinger(times, psi0, H, fout=lambda t, psi: psi.norm() ** 2)
    norms = np.asarray(norms)
    assert np.allclose(norms, np.exp(-0.2 * times), rtol=1e-6)
    assert np.all(np.diff(norms) < 0)


def test_hermitian_part_conserves_norm(free_particle):
    b, psi0, T = free_particle
    H = add(T, scale(identityoperator(b), -0.1j))
    H_herm = scale(add(H, dagger(H)), 0.5)
    _, norms = schroedinger(np.linspace(0.0, 10.0, 11), psi0, H_herm, fout=lambda t, psi: psi.norm())
    assert np.allclose(norms, 1.0, atol=1e-6)


def test_decaying_level_matches_closed_form():
    b, H = _decaying_level()
    times = np.linspace(0.0, 5.0, 11)
    _, states = schroedinger(times, basisstate(b, 1), H)
    amplitudes = np.array([s.data[0] for s in states])
    assert np.allclose(amplitudes, np.exp(-1j * 1.3 * times - 0.2 * times), rtol=1e-6, atol=1e-9)


def test_nonzero_start_time():
    b, H = _decaying_level(gamma=0.0)
    times = [2.0, 2.5, 4.0]
    tout, states = schroedinger(times, basisstate(b, 1), H)
    assert list(tout) == times
    assert states[0].data[0] == 1.0
    assert states[-1].data[0] == pytest.approx(np.exp(-1j * 1.3 * 2.0), rel=1e-7)


def test_time_dependent_hamiltonian_phase():
    b = NLevelBasis(2)
    psi0 = Ket(b, [1.0, 1.0]).normalized()
    times = np.linspace(0.0, 3.0, 7)
    _, states = schroedinger_dynamic(times, psi0, lambda t: DiagonalOperator(b, [t, -t]))
    for t, s in zip(times, states):
        expected = np.array([np.exp(-0.5j * t ** 2), np.exp(0.5j * t ** 2)]) / np.sqrt(2)
        assert np.allclose(s.data, expected, rtol=1e-6, atol=1e-9)


def test_density_operator_follows_ket():
    b = NLevelBasis(3)
    rng = np.random.default_rng(3)
    M = rng.normal(size=(3, 3)) + 1j * rng.normal(size=(3, 3))
    H = DenseOperator(b, b, 0.5 * (M + M.conj().T) - 0.1j * np.diag([0.0, 1.0, 2.0]))
    psi0 = Ket(b, [1.0, 1.0j, 0.5]).normalized()
    times = np.linspace(0.0, 2.0, 5)
    _, kets = schroedinger(times, psi0, H)
    _, rhos = schroedinger(times, dm(psi0), H)
    for psi, rho in zip(kets, rhos):
        assert rho.norm() == pytest.approx(psi.norm() ** 2, rel=1e-6)
        assert np.allclose(rho.data, dm(psi).data, atol=1e-7)


def test_fout_results_are_returned_in_place_of_states():
    b, H = _decaying_level()
    calls = []

    def fout(t, psi):
        calls.append(t)
        return psi.norm() ** 2

    tout, values = schroedinger([0.0, 1.0, 2.0], basisstate(b, 1), H, fout=fout)
    assert calls == [0.0, 1.0, 2.0]
    assert np.allclose(values, np.exp(-0.4 * tout), rtol=1e-6)


# -----------------------------------------------------------------------------
# Iterator contract
# -----------------------------------------------------------------------------

def test_propagate_is_lazy_and_starts_at_initial_state():
    b, H = _decaying_level()
    psi0 = basisstate(b, 1)
    it = propagate(psi0, H, [0.0, 1.0, 2.0])
    t, state = next(it)
    assert t == 0.0
    assert np.array_equal(state.data, psi0.data)
    rest = list(it)
    assert [t for t, _ in rest] == [1.0, 2.0]


def test_single_output_time():
    b, H = _decaying_level()
    tout, states = schroedinger([1.5], basisstate(b, 1), H)
    assert list(tout) == [1.5]
    assert states[0].data[0] == 1.0


def test_initial_state_is_not_modified(free_particle):
    _, psi0, H = free_particle
    before = psi0.data.copy()
    schroedinger([0.0, 1.0], psi0, H)
    assert np.array_equal(psi0.data, before)


@pytest.mark.parametrize("times", [[], [0.0, 1.0, 1.0], [1.0, 0.5], [0.0, np.nan], [[0.0, 1.0]]])
def test_invalid_time_grids_raise_before_iteration(times):
    b, H = _decaying_level()
    with pytest.raises(InvalidTimeGrid):
        propagate(basisstate(b, 1), H, times)
    with pytest.raises(InvalidTimeGrid):
        validate_times(times)


def test_dimension_mismatch_raises_before_iteration():
    H = identityoperator(NLevelBasis(3))
    with pytest.raises(DimensionMismatch):
        propagate(basisstate(NLevelBasis(2), 1), H, [0.0, 1.0])
    with pytest.raises(DimensionMismatch):
        schroedinger_dynamic([0.0, 1.0], basisstate(NLevelBasis(2), 1), lambda t: H)


def test_step_size_floor_reports_failure():
    b = NLevelBasis(1)
    H = DiagonalOperator(b, [1e3])
    with pytest.raises(IntegrationFailure) as info:
        schroedinger([0.0, 10.0], basisstate(b, 1), H, min_step=1.0)
    assert info.value.t is not None
    assert info.value.t < 10.0


def test_schroedinger_entry_points_check_hamiltonian_kind():
    b, H = _decaying_level()
    with pytest.raises(TypeError):
        schroedinger([0.0, 1.0], basisstate(b, 1), lambda t: H)
    with pytest.raises(TypeError):
        schroedinger_dynamic([0.0, 1.0], basisstate(b, 1), H)


@pytest.mark.parametrize(
    "kwargs",
    [{"method": "Euler"}, {"rtol": 0.0}, {"atol": -1.0}, {"max_step": 0.0}, {"min_step": -1.0}],
)
def test_invalid_integrator_config(kwargs):
    with pytest.raises(ValueError):
        IntegratorConfig(**kwargs)


@pytest.mark.parametrize("method", ["RK23", "RK45", "DOP853"])
def test_all_methods_agree(method):
    b, H = _decaying_level()
    _, states = schroedinger([0.0, 2.0], basisstate(b, 1), H, method=method)
    assert states[-1].data[0] == pytest.approx(np.exp(-2.6j - 0.4), rel=1e-5)


def test_shared_hamiltonian_across_threads(free_particle):
    _, psi0, H = free_particle
    times = np.linspace(0.0, 5.0, 6)

    def run(_):
        _, norms = schroedinger(times, psi0, H, fout=lambda t, psi: psi.data.copy())
        return np.array(norms)

    with ThreadPoolExecutor(max_workers=4) as pool:
        results = list(pool.map(run, range(4)))
    for r in results[1:]:
        assert np.array_equal(r, results[0])
