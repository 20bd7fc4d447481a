# tests/test_raster.py
import numpy as np
import pytest

from StationKrigPy.grid import AggregationPlan, PredictionLattice
from StationKrigPy.raster import aggregate_to_cells, rasterize


@pytest.fixture
def lattice():
    return PredictionLattice(xs=np.array([0.5, 1.5, 2.5]), ys=np.array([0.5, 1.5]), cell_size=1.0)


@pytest.fixture
def plan():
    # row-major membership over a 2x3 raster; cell 30 receives no sample
    return AggregationPlan(
        cell_ids=np.array([10, 20, 30]),
        membership=np.array([0, 0, 1, 0, -1, 1]),
    )


def test_rasterize_masks_outside_points(lattice, plan):
    values = np.arange(6, dtype=float)
    raster = rasterize(values, lattice, plan)
    assert raster.shape == (2, 3)
    assert np.isnan(raster[1, 1])
    assert raster[0, 2] == 2.0
    # input untouched
    assert np.isfinite(values).all()


def test_rasterize_size_mismatch(lattice, plan):
    with pytest.raises(ValueError):
        rasterize(np.zeros(5), lattice, plan)


def test_aggregate_means(lattice, plan):
    raster = rasterize(np.array([1.0, 2.0, 10.0, 3.0, 1e9, 20.0]), lattice, plan)
    out = aggregate_to_cells(raster, plan)
    assert list(out.index) == [10, 20, 30]
    assert out.loc[10] == np.mean([1.0, 2.0, 3.0])
    assert out.loc[20] == np.mean([10.0, 20.0])
    assert np.isnan(out.loc[30])


def test_aggregate_ignores_nan_samples(plan):
    raster = np.array([[np.nan, 4.0, np.nan], [6.0, 0.0, np.nan]])
    out = aggregate_to_cells(raster, plan)
    assert out.loc[10] == pytest.approx(5.0)
    # every sample of cell 20 is NaN
    assert np.isnan(out.loc[20])


def test_aggregate_size_mismatch(plan):
    with pytest.raises(ValueError):
        aggregate_to_cells(np.zeros((2, 2)), plan)


def test_aggregate_matches_arithmetic_mean():
    # one polygon fully covered by N samples with known values
    rng = np.random.default_rng(3)
    values = rng.normal(20.0, 5.0, 1000)
    plan = AggregationPlan(cell_ids=np.array([7]), membership=np.zeros(1000, dtype=np.int64))
    out = aggregate_to_cells(values.reshape(20, 50), plan)
    assert out.loc[7] == pytest.approx(np.mean(values), rel=1e-12, abs=0.0)

    few = np.array([0.1, 0.2, 0.7])
    small = AggregationPlan(cell_ids=np.array([7]), membership=np.zeros(3, dtype=np.int64))
    assert aggregate_to_cells(few, small).loc[7] == np.mean(few)
