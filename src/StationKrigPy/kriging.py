# src/StationKrigPy/kriging.py
# SPDX-License-Identifier: MIT
"""
Ordinary kriging of one day's observations onto the prediction lattice.

The linear algebra is delegated to :class:`pykrige.ok.OrdinaryKriging`; the
variogram is never re-estimated by PyKrige, the parameters come from
:mod:`StationKrigPy.variogram`. Points flagged in ``mask`` (outside the study
area) are not evaluated at all.

A flat :class:`~StationKrigPy.variogram.VariogramModel` (no spatial
structure) short-circuits PyKrige: ordinary kriging with a pure-nugget model
predicts the mean of the observations everywhere, with variance
``nugget * (1 + 1/n)``.
"""

from __future__ import annotations

from typing import Optional, Tuple

import numpy as np
from pykrige.ok import OrdinaryKriging

from .exceptions import InsufficientDataError, PredictionFailureError
from .grid import PredictionLattice
from .variogram import MIN_OBSERVATIONS, VariogramModel

__all__ = ["krige_lattice", "krige_points"]


def _ordinary_kriging(x, y, z, model: VariogramModel) -> OrdinaryKriging:
    # parameters are fixed upstream; PyKrige must not re-estimate them
    return OrdinaryKriging(
        x,
        y,
        z,
        variogram_model="spherical",
        variogram_parameters=model.to_pykrige(),
        exact_values=True,
        enable_plotting=False,
        verbose=False,
    )


def krige_lattice(
    x: np.ndarray,
    y: np.ndarray,
    z: np.ndarray,
    model: VariogramModel,
    lattice: PredictionLattice,
    *,
    mask: Optional[np.ndarray] = None,
) -> Tuple[np.ndarray, np.ndarray]:
    """
    Predict ``z`` and its kriging variance at every lattice point.

    Parameters
    ----------
    x, y, z : array-like
        Projected coordinates and values of the non-missing observations.
    model : VariogramModel
        Fitted (or flat) spherical model.
    lattice : PredictionLattice
        Shared prediction lattice.
    mask : ndarray of bool, optional
        Raster-shaped; ``True`` points are skipped and returned as ``NaN``.

    Returns
    -------
    values, variance : ndarray
        Float arrays of shape ``lattice.shape``.

    Raises
    ------
    InsufficientDataError
        Fewer than two observations.
    PredictionFailureError
        Singular kriging system or any backend failure, or non-finite output
        inside the study area.
    """
    x = np.asarray(x, dtype=float)
    y = np.asarray(y, dtype=float)
    z = np.asarray(z, dtype=float)
    if z.size < MIN_OBSERVATIONS:
        raise InsufficientDataError(
            f"{z.size} non-missing observation(s); at least {MIN_OBSERVATIONS} are required"
        )

    shape = lattice.shape
    if mask is None:
        mask = np.zeros(shape, dtype=bool)
    elif mask.shape != shape:
        raise ValueError(f"mask shape {mask.shape} does not match lattice {shape}")

    if mask.all():
        nan = np.full(shape, np.nan)
        return nan, nan.copy()

    if model.is_flat:
        values = np.full(shape, float(np.mean(z)))
        variance = np.full(shape, float(model.nugget) * (1.0 + 1.0 / z.size))
    else:
        try:
            ok = _ordinary_kriging(x, y, z, model)
            zhat, ss = ok.execute("masked", lattice.xs, lattice.ys, mask=mask)
        except (np.linalg.LinAlgError, ValueError, ZeroDivisionError) as e:
            raise PredictionFailureError(f"kriging failed: {e}") from e
        values = np.ma.filled(np.ma.asarray(zhat, dtype=float), np.nan)
        variance = np.ma.filled(np.ma.asarray(ss, dtype=float), np.nan)

    values = np.asarray(values, dtype=float).reshape(shape)
    variance = np.asarray(variance, dtype=float).reshape(shape)
    values[mask] = np.nan
    variance[mask] = np.nan

    inside = ~mask
    if inside.any() and not np.isfinite(values[inside]).all():
        raise PredictionFailureError("kriging produced non-finite predictions")
    return values, variance


def krige_points(
    x: np.ndarray,
    y: np.ndarray,
    z: np.ndarray,
    model: VariogramModel,
    px: np.ndarray,
    py: np.ndarray,
) -> Tuple[np.ndarray, np.ndarray]:
    """Ordinary-kriging prediction and variance at arbitrary planar points."""
    x = np.asarray(x, dtype=float)
    y = np.asarray(y, dtype=float)
    z = np.asarray(z, dtype=float)
    px = np.atleast_1d(np.asarray(px, dtype=float))
    py = np.atleast_1d(np.asarray(py, dtype=float))
    if z.size < MIN_OBSERVATIONS:
        raise InsufficientDataError(
            f"{z.size} non-missing observation(s); at least {MIN_OBSERVATIONS} are required"
        )
    if model.is_flat:
        return (
            np.full(px.shape, float(np.mean(z))),
            np.full(px.shape, float(model.nugget) * (1.0 + 1.0 / z.size)),
        )
    try:
        ok = _ordinary_kriging(x, y, z, model)
        zhat, ss = ok.execute("points", px, py)
    except (np.linalg.LinAlgError, ValueError, ZeroDivisionError) as e:
        raise PredictionFailureError(f"kriging failed: {e}") from e
    values = np.asarray(np.ma.filled(np.ma.asarray(zhat, dtype=float), np.nan), dtype=float)
    if not np.isfinite(values).all():
        raise PredictionFailureError("kriging produced non-finite predictions")
    return values, np.asarray(np.ma.filled(np.ma.asarray(ss, dtype=float), np.nan), dtype=float)
