"""
simulation.py — Wavepacket simulation adapter on 1-D / 2-D position grids.

Key rules:
- Kinetic energy is always the lazy FFT sandwich from particle.py; in 2-D each
  axis is embedded with LazyTensor, so the composite Hamiltonian is never
  materialised.
- The potential is a SymPy expression in x (and y) and optionally t. It may
  be complex (e.g. -0.5*I*exp(-(x-45)**2) as an absorbing boundary), which
  makes H non-Hermitian. If it depends on t, H becomes a pure function of t.
- Observables are extracted per output time through the propagator's
  callback path, so only scalars are kept.
"""
from __future__ import annotations

from dataclasses import asdict, dataclass
from typing import Any, Callable, Dict, List, Literal, Optional, Tuple

import argparse
import logging
import numpy as np
import sympy as sp

from bases import Basis, compose, make_discretized_basis
from errors import QuantumSimError
from operators import DiagonalOperator, LazySum, Operator, embed
from particle import coordinate_grids, kinetic_energy, potential_operator
from propagation import IntegratorConfig, propagate
from states import Ket, expect, gaussianstate, tensor

logger = logging.getLogger(__name__)

_X, _Y, _T = sp.symbols("x y t", real=True)
_SYMBOLS = {"x": _X, "y": _Y, "t": _T}


# =============================================================================
# Configuration
# =============================================================================

@dataclass
class GridConfig:
    """Position grid; 2-D when ny/y_range are given."""
    nx: int = 100
    x_range: Tuple[float, float] = (-30.0, 50.0)
    ny: Optional[int] = None
    y_range: Optional[Tuple[float, float]] = None
    order: Literal["C", "F"] = "C"

    def __post_init__(self) -> None:
        if (self.ny is None) != (self.y_range is None):
            raise ValueError("ny and y_range must be given together")
        self.x_range = tuple(float(v) for v in self.x_range)
        if self.y_range is not None:
            self.y_range = tuple(float(v) for v in self.y_range)

    @property
    def ndim(self) -> int:
        return 1 if self.ny is None else 2

    def bases(self) -> List[Basis]:
        out = [make_discretized_basis(self.x_range[0], self.x_range[1], self.nx)]
        if self.ny is not None:
            out.append(make_discretized_basis(self.y_range[0], self.y_range[1], self.ny))
        return out

    def basis(self) -> Basis:
        factors = self.bases()
        return factors[0] if len(factors) == 1 else compose(*factors, order=self.order)


@dataclass
class WavepacketConfig:
    """Initial Gaussian wavepacket (y-parameters used on 2-D grids only)."""
    x0: float = -10.0
    p0: float = 1.5
    sigma: float = 2.0
    y0: float = 0.0
    py0: float = 0.0
    sigma_y: Optional[float] = None


@dataclass
class HamiltonianConfig:
    """H = p²/2m (+ p_y²/2m) + V(x[, y], t)."""
    mass: float = 1.0
    potential: str = "0"


@dataclass(frozen=True)
class PotentialExpression:
    """Parsed potential: symbolic form plus a vectorised callable (x[, y], t)."""
    expr: Any
    func: Callable[..., Any]
    time_dependent: bool


def parse_potential(text: str, ndim: int = 1) -> PotentialExpression:
    """Parse a potential expression string with SymPy.

    Allowed symbols: x, t (and y when ndim == 2); I is the imaginary unit.
    Raises ValueError on syntax errors or unknown symbols.
    """
    try:
        expr = sp.sympify(text, locals=_SYMBOLS)
    except (sp.SympifyError, SyntaxError, TypeError) as e:
        raise ValueError(f"Cannot parse potential {text!r}: {e}") from e
    if not isinstance(expr, sp.Expr):
        raise ValueError(f"Potential {text!r} is not an algebraic expression")
    allowed = {"x", "t"} | ({"y"} if ndim == 2 else set())
    unknown = {s.name for s in expr.free_symbols} - allowed
    if unknown:
        raise ValueError(f"Potential {text!r} uses unknown symbols {sorted(unknown)}; allowed: {sorted(allowed)}")
    args = [_X, _Y, _T] if ndim == 2 else [_X, _T]
    func = sp.lambdify(args, expr, modules="numpy")
    return PotentialExpression(expr=expr, func=func, time_dependent=_T in expr.free_symbols)


# =============================================================================
# Simulation adapter
# =============================================================================

class WavepacketSimulation:
    """Builds basis, Hamiltonian and initial state from configs and runs propagations."""

    def __init__(
        self,
        grid: Optional[GridConfig] = None,
        packet: Optional[WavepacketConfig] = None,
        hamiltonian: Optional[HamiltonianConfig] = None,
        integrator: Optional[IntegratorConfig] = None,
    ) -> None:
        self.grid = grid or GridConfig()
        self.packet = packet or WavepacketConfig()
        self.hamiltonian_config = hamiltonian or HamiltonianConfig()
        self.integrator = integrator or IntegratorConfig()

        self.factor_bases = self.grid.bases()
        self.basis = self.grid.basis()
        self.potential = parse_potential(self.hamiltonian_config.potential, self.grid.ndim)

        self._grids = coordinate_grids(self.basis)
        self._kinetic_terms = self._build_kinetic_terms()
        self._static_potential = None if self.potential.time_dependent else self.potential_at(0.0)
        self._position_ops = [DiagonalOperator(self.basis, g) for g in self._grids]
        self._position_sq_ops = [DiagonalOperator(self.basis, g ** 2) for g in self._grids]

    def _build_kinetic_terms(self) -> List[Operator]:
        mass = self.hamiltonian_config.mass
        if self.grid.ndim == 1:
            return [kinetic_energy(self.basis, mass)]
        return [embed(self.basis, i + 1, kinetic_energy(b, mass)) for i, b in enumerate(self.factor_bases)]

    # -------------------------------------------------------------------------
    # Operators and states
    # -------------------------------------------------------------------------

    @property
    def time_dependent(self) -> bool:
        return self.potential.time_dependent

    def potential_at(self, t: float) -> DiagonalOperator:
        f = self.potential.func
        return potential_operator(self.basis, lambda *coords: f(*coords, t))

    def hamiltonian(self, t: float = 0.0) -> Operator:
        """H(t) as a LazySum of kinetic terms and the diagonal potential."""
        V = self._static_potential if self._static_potential is not None else self.potential_at(t)
        return LazySum(tuple(self._kinetic_terms) + (V,))

    def hamiltonian_function(self):
        """Operator for static H, or a pure function t -> H(t)."""
        if self.time_dependent:
            return self.hamiltonian
        return self.hamiltonian(0.0)

    def initial_state(self) -> Ket:
        p = self.packet
        gx = gaussianstate(self.factor_bases[0], p.x0, p.p0, p.sigma)
        if self.grid.ndim == 1:
            return gx
        gy = gaussianstate(self.factor_bases[1], p.y0, p.py0, p.sigma_y or p.sigma)
        return tensor(gx, gy, order=self.grid.order)

    # -------------------------------------------------------------------------
    # Observables
    # -------------------------------------------------------------------------

    def expectation_values(self, psi: Ket, t: Optional[float] = None) -> Dict[str, float]:
        """Norm and (norm-weighted) position moments of psi."""
        prob = float(psi.norm() ** 2)
        out: Dict[str, float] = {"t": float(t) if t is not None else float("nan"), "probability": prob}
        for name, op, op_sq in zip(("x", "y"), self._position_ops, self._position_sq_ops):
            if prob > 0:
                m1 = float(np.real(expect(op, psi))) / prob
                m2 = float(np.real(expect(op_sq, psi))) / prob
            else:
                m1 = m2 = 0.0
            out[f"{name}_mean"] = m1
            out[f"{name}_var"] = m2 - m1 * m1
        return out

    # -------------------------------------------------------------------------
    # Time evolution
    # -------------------------------------------------------------------------

    def evolve(self, times, psi0: Optional[Ket] = None) -> List[Tuple[float, Ket]]:
        """Full states at every requested time."""
        psi0 = psi0 if psi0 is not None else self.initial_state()
        return list(propagate(psi0, self.hamiltonian_function(), times, self.integrator))

    def run(self, times, psi0: Optional[Ket] = None) -> List[Dict[str, float]]:
        """Observables at every requested time (states are not retained)."""
        psi0 = psi0 if psi0 is not None else self.initial_state()
        it = propagate(
            psi0, self.hamiltonian_function(), times, self.integrator,
            fout=lambda t, psi: self.expectation_values(psi, t),
        )
        return [rec for _, rec in it]

    # -------------------------------------------------------------------------
    # Save/Load
    # -------------------------------------------------------------------------

    def metadata(self) -> Dict[str, Any]:
        return {
            "grid": asdict(self.grid),
            "packet": asdict(self.packet),
            "hamiltonian": asdict(self.hamiltonian_config),
            "integrator": asdict(self.integrator),
        }

    @classmethod
    def from_metadata(cls, metadata: Dict[str, Any]) -> "WavepacketSimulation":
        g = dict(metadata.get("grid", {}))
        if g.get("x_range") is not None:
            g["x_range"] = tuple(g["x_range"])
        if g.get("y_range") is not None:
            g["y_range"] = tuple(g["y_range"])
        return cls(
            grid=GridConfig(**g),
            packet=WavepacketConfig(**metadata.get("packet", {})),
            hamiltonian=HamiltonianConfig(**metadata.get("hamiltonian", {})),
            integrator=IntegratorConfig(**metadata.get("integrator", {})),
        )

    def save_results(self, filename: str, records: List[Dict[str, float]]) -> None:
        """Write observables (one array per column) and configuration metadata."""
        columns = list(records[0].keys()) if records else []
        arrays = {name: np.array([r[name] for r in records], dtype=np.float64) for name in columns}
        np.savez_compressed(
            filename,
            columns=np.array(columns, dtype=object),
            metadata=np.array([self.metadata()], dtype=object),
            **arrays,
        )
        logger.info("Saved %d records to %s", len(records), filename)


def load_results(filename: str) -> Tuple[List[Dict[str, float]], Dict[str, Any]]:
    """Read records and metadata written by WavepacketSimulation.save_results."""
    data = np.load(filename, allow_pickle=True)
    metadata_raw = data["metadata"]
    if metadata_raw.ndim == 0:
        metadata = metadata_raw.item()
    elif metadata_raw.ndim == 1 and len(metadata_raw) > 0:
        metadata = metadata_raw[0]
        if isinstance(metadata, np.ndarray):
            metadata = metadata.item()
    else:
        metadata = {}
    columns = [str(c) for c in data["columns"]]
    n = len(data[columns[0]]) if columns else 0
    records = [{c: float(data[c][i]) for c in columns} for i in range(n)]
    return records, metadata


# =============================================================================
# CLI
# =============================================================================

def _parse_range(s: str) -> Tuple[float, float]:
    parts = [p.strip() for p in s.split(",")]
    if len(parts) != 2:
        raise argparse.ArgumentTypeError("range must be 'min,max'")
    return float(parts[0]), float(parts[1])


def build_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(description="Propagate a Gaussian wavepacket with a lazy FFT Hamiltonian.")
    p.add_argument("--nx", type=int, default=100)
    p.add_argument("--x-range", type=_parse_range, default=(-30.0, 50.0), help="'xmin,xmax'")
    p.add_argument("--ny", type=int, default=None, help="enable a 2-D grid with this many y points")
    p.add_argument("--y-range", type=_parse_range, default=None, help="'ymin,ymax' (with --ny)")
    p.add_argument("--x0", type=float, default=-10.0)
    p.add_argument("--p0", type=float, default=1.5)
    p.add_argument("--sigma", type=float, default=2.0)
    p.add_argument("--y0", type=float, default=0.0)
    p.add_argument("--py0", type=float, default=0.0)
    p.add_argument("--mass", type=float, default=1.0)
    p.add_argument("--potential", type=str, default="0", help="SymPy expression in x[, y], t; I = sqrt(-1)")
    p.add_argument("--t0", type=float, default=0.0)
    p.add_argument("--tmax", type=float, default=20.0)
    p.add_argument("--nt", type=int, default=201, help="number of output times")
    p.add_argument("--method", choices=["RK23", "RK45", "DOP853"], default="DOP853")
    p.add_argument("--rtol", type=float, default=1e-8)
    p.add_argument("--atol", type=float, default=1e-10)
    p.add_argument("--save", type=str, default=None, help="write observables to this .npz file")
    p.add_argument("--log-level", default="INFO", choices=["DEBUG", "INFO", "WARNING", "ERROR"])
    return p


def main(argv: Optional[List[str]] = None) -> int:
    args = build_parser().parse_args(argv)
    logging.basicConfig(level=getattr(logging, args.log_level))

    try:
        sim = WavepacketSimulation(
            grid=GridConfig(
                nx=args.nx, x_range=args.x_range, ny=args.ny,
                y_range=args.y_range if args.ny is not None else None,
            ),
            packet=WavepacketConfig(x0=args.x0, p0=args.p0, sigma=args.sigma, y0=args.y0, py0=args.py0),
            hamiltonian=HamiltonianConfig(mass=args.mass, potential=args.potential),
            integrator=IntegratorConfig(method=args.method, rtol=args.rtol, atol=args.atol),
        )
        times = np.linspace(args.t0, args.tmax, args.nt)
        records = sim.run(times)
    except (QuantumSimError, ValueError) as e:
        logger.error("%s: %s", type(e).__name__, e)
        return 2

    cols = [c for c in records[0] if c != "t"]
    print("t".rjust(10) + "".join(c.rjust(14) for c in cols))
    print("-" * (10 + 14 * len(cols)))
    for rec in records:
        print(f"{rec['t']:10.4f}" + "".join(f"{rec[c]:14.6e}" for c in cols))

    if args.save:
        sim.save_results(args.save, records)
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
