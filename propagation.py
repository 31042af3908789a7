# propagation.py - Adaptive time evolution under (possibly non-Hermitian) Hamiltonians
"""
Integrates the Schrödinger equation (ħ = 1)

    d|ψ>/dt = -i H(t) |ψ>

and, for density operators, the non-Hermitian von Neumann form

    dρ/dt = -i (H ρ - ρ H†)

with an embedded Runge-Kutta pair from scipy.integrate. H is only ever
touched through operators.apply, so lazy trees (FFT-sandwiched kinetic
terms, LazyTensor embeddings, …) are never materialised.

Output contract:
- One (t, state) pair per requested time, in order, first pair at times[0].
- States at requested times come from the step that covers them: either the
  step end itself or the solver's dense-output interpolant for that step,
  so only requested times are materialised.
- The state is never renormalised (norm decay under non-Hermitian H is the
  physical signal).

DEFAULTS: DOP853 (8th order, embedded 5th/3rd order error estimate) with
rtol=1e-8, atol=1e-10.
"""
from __future__ import annotations

from dataclasses import dataclass, replace
from typing import Any, Callable, Dict, Iterator, List, Literal, Optional, Tuple, Union

import logging
import math
import numpy as np
from numpy.typing import NDArray
from scipy.integrate import DOP853, RK23, RK45

from errors import DimensionMismatch, IntegrationFailure, InvalidTimeGrid
from operators import Operator, apply, is_operator
from states import DensityOperator, Ket, State

logger = logging.getLogger(__name__)

ArrayR = NDArray[np.float64]

SOLVERS = {"RK23": RK23, "RK45": RK45, "DOP853": DOP853}

Hamiltonian = Union[Operator, Callable[[float], Operator]]


# =============================================================================
# Configuration
# =============================================================================

@dataclass
class IntegratorConfig:
    """Step-controller settings for the adaptive integrator.

    min_step is an optional floor: a (non-final) step shorter than it is
    reported as IntegrationFailure. With the default 0.0 only the solver's
    own floating-point spacing limit applies.
    """
    method: Literal["RK23", "RK45", "DOP853"] = "DOP853"
    rtol: float = 1e-8
    atol: float = 1e-10
    max_step: float = math.inf
    first_step: Optional[float] = None
    min_step: float = 0.0

    def __post_init__(self) -> None:
        if self.method not in SOLVERS:
            raise ValueError(f"Unknown integration method {self.method!r}; choose from {sorted(SOLVERS)}")
        if not self.rtol > 0 or not self.atol > 0:
            raise ValueError(f"Tolerances must be positive, got rtol={self.rtol}, atol={self.atol}")
        if not self.max_step > 0:
            raise ValueError(f"max_step must be positive, got {self.max_step}")
        if self.first_step is not None and not self.first_step > 0:
            raise ValueError(f"first_step must be positive, got {self.first_step}")
        if self.min_step < 0:
            raise ValueError(f"min_step must be non-negative, got {self.min_step}")

    def solver_options(self) -> Dict[str, Any]:
        opts: Dict[str, Any] = {"rtol": self.rtol, "atol": self.atol, "max_step": self.max_step}
        if self.first_step is not None:
            opts["first_step"] = self.first_step
        return opts


# =============================================================================
# Validation
# =============================================================================

def validate_times(times) -> ArrayR:
    """Return times as a float array; raise InvalidTimeGrid unless strictly increasing."""
    try:
        t = np.asarray(times, dtype=np.float64)
    except (TypeError, ValueError) as e:
        raise InvalidTimeGrid(f"Time grid is not a sequence of real numbers: {e}") from e
    if t.ndim != 1 or t.size == 0:
        raise InvalidTimeGrid(f"Time grid must be a non-empty 1-D sequence, got shape {t.shape}")
    if not np.all(np.isfinite(t)):
        raise InvalidTimeGrid("Time grid contains non-finite values")
    if t.size > 1 and not np.all(np.diff(t) > 0):
        raise InvalidTimeGrid("Time grid must be strictly increasing")
    return t


def _as_time_function(H: Hamiltonian) -> Callable[[float], Operator]:
    if is_operator(H):
        return lambda t: H
    if callable(H):
        return H
    raise TypeError(f"Hamiltonian must be an operator or a callable t -> operator, got {type(H).__name__}")


def _check_dimensions(op: Operator, psi0: State) -> None:
    if not is_operator(op):
        raise TypeError(f"Hamiltonian function returned {type(op).__name__}, expected an operator")
    d = psi0.dimension
    if op.basis_l.dimension != d or op.basis_r.dimension != d:
        raise DimensionMismatch(
            f"Hamiltonian of shape {op.shape} does not act on a state of dimension {d}"
        )


# =============================================================================
# Right-hand sides
# =============================================================================

def _ket_rhs(H_of_t: Callable[[float], Operator]):
    def rhs(t: float, y: np.ndarray) -> np.ndarray:
        return -1j * apply(H_of_t(t), y)
    return rhs


def _density_rhs(H_of_t: Callable[[float], Operator], d: int):
    def rhs(t: float, y: np.ndarray) -> np.ndarray:
        H = H_of_t(t)
        rho = y.reshape(d, d)
        h_rho = apply(H, rho)
        rho_hdag = apply(H, rho.conj().T).conj().T
        return (-1j * (h_rho - rho_hdag)).reshape(-1)
    return rhs


# =============================================================================
# Propagator
# =============================================================================

def propagate(
    psi0: State,
    H: Hamiltonian,
    times,
    config: Optional[IntegratorConfig] = None,
    fout: Optional[Callable[[float, State], Any]] = None,
) -> Iterator[Tuple[float, Any]]:
    """Lazily evolve psi0 and yield (t, state), or (t, fout(t, state)), per requested time.

    Arguments are validated eagerly (InvalidTimeGrid, DimensionMismatch are
    raised here, not on first iteration). The returned iterator runs the
    integration as it is consumed; re-invoke to restart.
    """
    config = config or IntegratorConfig()
    tout = validate_times(times)
    H_of_t = _as_time_function(H)
    if not isinstance(psi0, (Ket, DensityOperator)):
        raise TypeError(f"Initial state must be a Ket or DensityOperator, got {type(psi0).__name__}")
    _check_dimensions(H_of_t(float(tout[0])), psi0)
    return _iterate(psi0, H_of_t, tout, config, fout)


def _iterate(psi0, H_of_t, tout, config, fout):
    basis = psi0.basis
    d = psi0.dimension
    if isinstance(psi0, Ket):
        rhs = _ket_rhs(H_of_t)
        y0 = psi0.data.copy()
        make_state = lambda y: Ket(basis, y)
    else:
        rhs = _density_rhs(H_of_t, d)
        y0 = psi0.data.reshape(-1).copy()
        make_state = lambda y: DensityOperator(basis, y.reshape(d, d))

    def emit(t: float, y: np.ndarray):
        state = make_state(y)
        logger.debug("t=%.6g  norm=%.12g", t, state.norm())
        return (float(t), fout(float(t), state)) if fout is not None else (float(t), state)

    logger.info(
        "Propagating %s of dimension %d over %d output times in [%g, %g] with %s (rtol=%g, atol=%g)",
        type(psi0).__name__, d, tout.size, tout[0], tout[-1], config.method, config.rtol, config.atol,
    )
    yield emit(tout[0], y0)
    if tout.size == 1:
        return

    solver = SOLVERS[config.method](rhs, float(tout[0]), y0, float(tout[-1]), **config.solver_options())
    k = 1
    nsteps = 0
    while k < tout.size:
        message = solver.step()
        nsteps += 1
        if solver.status == "failed":
            raise IntegrationFailure(
                f"Integration failed at t={solver.t:.6g} before reaching t={tout[k]:.6g}: {message}",
                t=solver.t,
            )
        if not np.all(np.isfinite(solver.y)):
            raise IntegrationFailure(f"State became non-finite at t={solver.t:.6g}", t=solver.t)
        if config.min_step > 0 and solver.status == "running" and solver.step_size < config.min_step:
            raise IntegrationFailure(
                f"Step size {solver.step_size:.3e} fell below min_step={config.min_step:.3e} "
                f"at t={solver.t:.6g} before reaching t={tout[k]:.6g}",
                t=solver.t,
            )
        interpolant = None
        while k < tout.size and tout[k] <= solver.t:
            if tout[k] == solver.t:
                y = solver.y.copy()
            else:
                if interpolant is None:
                    interpolant = solver.dense_output()
                y = interpolant(tout[k])
            yield emit(tout[k], y)
            k += 1

    logger.info("Propagation finished: %d steps, %d right-hand-side evaluations", nsteps, solver.nfev)


def _merge_config(config: Optional[IntegratorConfig], options: Dict[str, Any]) -> IntegratorConfig:
    if config is None:
        return IntegratorConfig(**options)
    return replace(config, **options) if options else config


def schroedinger(
    times,
    psi0: State,
    H: Operator,
    config: Optional[IntegratorConfig] = None,
    fout: Optional[Callable[[float, State], Any]] = None,
    **options: Any,
) -> Tuple[ArrayR, List[Any]]:
    """Evolve under a time-independent H; return (times, states or fout results).

    Keyword options (method, rtol, atol, …) override fields of `config`.
    """
    if not is_operator(H):
        raise TypeError("schroedinger() needs an operator; use schroedinger_dynamic() for H(t)")
    cfg = _merge_config(config, options)
    results = list(propagate(psi0, H, times, cfg, fout))
    return np.array([t for t, _ in results]), [r for _, r in results]


def schroedinger_dynamic(
    times,
    psi0: State,
    f: Callable[[float], Operator],
    config: Optional[IntegratorConfig] = None,
    fout: Optional[Callable[[float, State], Any]] = None,
    **options: Any,
) -> Tuple[ArrayR, List[Any]]:
    """Evolve under an explicitly time-dependent Hamiltonian f(t)."""
    if is_operator(f) or not callable(f):
        raise TypeError("schroedinger_dynamic() needs a callable t -> operator")
    cfg = _merge_config(config, options)
    results = list(propagate(psi0, f, times, cfg, fout))
    return np.array([t for t, _ in results]), [r for _, r in results]
