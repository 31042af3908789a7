import math

import numpy as np
import pytest

from bases import (
    CompositeBasis,
    MomentumBasis,
    NLevelBasis,
    PositionBasis,
    compose,
    conjugate_basis,
    is_coordinate_pair,
    make_discretized_basis,
    sample_points,
)
from errors import UnsupportedOperation


def test_discretized_basis_is_half_open():
    b = make_discretized_basis(-30, 50, 100)
    x = sample_points(b)
    assert b.dimension == 100
    assert b.spacing == pytest.approx(0.8)
    assert x[0] == pytest.approx(-30.0)
    assert x[-1] == pytest.approx(50.0 - 0.8)
    assert np.allclose(np.diff(x), 0.8)


@pytest.mark.parametrize("n", [1, 7, 64, 100])
def test_conjugate_round_trip_keeps_dimension_and_spacing(n):
    b = PositionBasis(-3.0, 11.0, n)
    c = conjugate_basis(b)
    cc = conjugate_basis(c)
    assert isinstance(c, MomentumBasis)
    assert isinstance(cc, PositionBasis)
    assert c.dimension == cc.dimension == n
    assert c.spacing == pytest.approx(2 * math.pi / (n * b.spacing))
    assert cc.spacing == pytest.approx(b.spacing)
    # centred on zero
    assert c.pmin == pytest.approx(-c.pmax)
    assert cc.xmin == pytest.approx(-cc.xmax)


def test_conjugate_pair_detection():
    b = PositionBasis(-5.0, 5.0, 32)
    assert is_coordinate_pair(b, conjugate_basis(b))
    assert is_coordinate_pair(conjugate_basis(b), b)
    assert not is_coordinate_pair(b, MomentumBasis(-1.0, 1.0, 32))
    assert not is_coordinate_pair(b, PositionBasis(-5.0, 5.0, 32))


def test_compose_requires_a_basis():
    with pytest.raises(ValueError):
        compose()


def test_composite_dimension_and_order():
    bx = PositionBasis(0.0, 1.0, 4)
    bn = NLevelBasis(3)
    b = compose(bx, bn)
    assert b.dimension == 12
    assert b.shape == (4, 3)
    assert b.order == "C"
    assert compose(bx, bn, order="F").order == "F"
    assert b.factor(2) == bn
    with pytest.raises(ValueError):
        compose(bx, order="X")


def test_nested_composites_are_flattened():
    a, b, c = NLevelBasis(2), NLevelBasis(3), NLevelBasis(4)
    nested = compose(compose(a, b), c)
    assert nested.bases == (a, b, c)
    assert nested == CompositeBasis((a, b, c))


def test_sample_points_unsupported_for_levels_and_composites():
    with pytest.raises(UnsupportedOperation):
        sample_points(NLevelBasis(3))
    with pytest.raises(UnsupportedOperation):
        sample_points(compose(PositionBasis(0, 1, 2), PositionBasis(0, 1, 2)))
    with pytest.raises(UnsupportedOperation):
        conjugate_basis(NLevelBasis(2))


@pytest.mark.parametrize("args", [(0.0, 1.0, 0), (1.0, 1.0, 5), (2.0, 1.0, 5), (0.0, float("inf"), 5)])
def test_invalid_grid_parameters(args):
    with pytest.raises(ValueError):
        PositionBasis(*args)


def test_nlevel_requires_positive_size():
    with pytest.raises(ValueError):
        NLevelBasis(0)
