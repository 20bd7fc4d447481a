# tests/test_kriging.py
import numpy as np
import pytest

from StationKrigPy.exceptions import InsufficientDataError
from StationKrigPy.grid import PredictionLattice
from StationKrigPy.kriging import krige_lattice, krige_points
from StationKrigPy.variogram import VariogramModel


@pytest.fixture
def stations():
    x = np.array([0.0, 10.0, 0.0, 10.0, 5.0, 2.0])
    y = np.array([0.0, 0.0, 10.0, 10.0, 5.0, 7.0])
    z = np.array([1.0, 2.0, 3.0, 4.0, 2.5, 2.8])
    return x, y, z


@pytest.fixture
def lattice():
    centers = np.arange(0.5, 10.0, 1.0)
    return PredictionLattice(xs=centers, ys=centers.copy(), cell_size=1.0)


@pytest.fixture
def model():
    return VariogramModel(nugget=0.0, psill=1.5, range=8.0)


def test_lattice_prediction_shape_and_finiteness(stations, lattice, model):
    values, variance = krige_lattice(*stations, model, lattice)
    assert values.shape == lattice.shape == variance.shape
    assert np.isfinite(values).all()
    assert (variance > -1e-9).all()
    # ordinary kriging weights sum to one: no wild extrapolation inside the hull
    assert values.min() > 0.0
    assert values.max() < 5.0


def test_masked_points_are_nan(stations, lattice, model):
    mask = np.zeros(lattice.shape, dtype=bool)
    mask[:, :3] = True
    values, variance = krige_lattice(*stations, model, lattice, mask=mask)
    assert np.isnan(values[mask]).all()
    assert np.isnan(variance[mask]).all()
    assert np.isfinite(values[~mask]).all()


def test_fully_masked_lattice(stations, lattice, model):
    mask = np.ones(lattice.shape, dtype=bool)
    values, variance = krige_lattice(*stations, model, lattice, mask=mask)
    assert np.isnan(values).all()
    assert np.isnan(variance).all()


def test_mask_shape_mismatch(stations, lattice, model):
    with pytest.raises(ValueError):
        krige_lattice(*stations, model, lattice, mask=np.zeros((2, 2), dtype=bool))


def test_flat_model_predicts_mean(lattice):
    x = np.array([0.0, 5.0, 9.0])
    y = np.array([1.0, 4.0, 8.0])
    z = np.array([7.0, 7.0, 7.0])
    flat = VariogramModel.flat(z)
    values, variance = krige_lattice(x, y, z, flat, lattice)
    assert np.allclose(values, 7.0)
    assert np.allclose(variance, 0.0)


def test_flat_model_variance(lattice):
    z = np.array([1.0, 2.0, 3.0])
    flat = VariogramModel.flat(z)
    _, variance = krige_lattice(np.zeros(3), np.arange(3.0), z, flat, lattice)
    assert np.allclose(variance, 1.0 * (1 + 1 / 3))


def test_exact_at_stations(stations, model):
    x, y, z = stations
    values, variance = krige_points(x, y, z, model, x, y)
    assert values == pytest.approx(z, abs=1e-6)
    assert np.allclose(variance, 0.0, atol=1e-6)


def test_too_few_observations(lattice, model):
    with pytest.raises(InsufficientDataError):
        krige_lattice([1.0], [1.0], [3.0], model, lattice)
    with pytest.raises(InsufficientDataError):
        krige_points([1.0], [1.0], [3.0], model, [0.0], [0.0])
