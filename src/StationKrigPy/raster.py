# src/StationKrigPy/raster.py
# SPDX-License-Identifier: MIT
"""
Raster masking and areal aggregation.

:func:`rasterize` reshapes lattice predictions to the lattice raster and
masks every cell whose center is outside the grid-polygon union.
:func:`aggregate_to_cells` averages the remaining raster cells per polygon
using the precomputed :class:`~StationKrigPy.grid.AggregationPlan`.

A polygon that receives no raster sample (smaller than the lattice spacing)
gets ``NaN``. That is an expected outcome at coarse resolutions, not an
error.
"""

from __future__ import annotations

import numpy as np
import pandas as pd

from .grid import AggregationPlan, PredictionLattice

__all__ = ["rasterize", "aggregate_to_cells"]


def rasterize(
    values: np.ndarray,
    lattice: PredictionLattice,
    plan: AggregationPlan,
) -> np.ndarray:
    """
    Reshape ``values`` to ``lattice.shape`` and set points outside every grid
    polygon to ``NaN``.

    ``values`` may be flat (row-major lattice order) or already 2-D.
    A new array is always returned.
    """
    arr = np.array(values, dtype=float, copy=True)
    if arr.size != lattice.size:
        raise ValueError(
            f"Got {arr.size} values for a lattice of {lattice.size} points."
        )
    arr = arr.reshape(lattice.shape)
    arr[plan.mask(lattice.shape)] = np.nan
    return arr


def aggregate_to_cells(raster: np.ndarray, plan: AggregationPlan) -> pd.Series:
    """
    Mean raster value per grid polygon.

    Raster cells are matched to polygons through ``plan.membership``;
    ``NaN`` cells (masked or failed) are ignored. Polygons with no finite
    sample are ``NaN``.

    Each mean is a sequential sum divided by the sample count, so it matches
    ``numpy.mean`` of the same values up to floating-point summation order
    (identical for small samples, within a few ulps for large ones).

    Returns
    -------
    Series
        Indexed by cell id in grid order, one entry per polygon.
    """
    flat = np.asarray(raster, dtype=float).ravel()
    if flat.size != plan.membership.size:
        raise ValueError(
            f"Raster has {flat.size} cells but the plan covers {plan.membership.size} points."
        )
    use = (plan.membership >= 0) & np.isfinite(flat)
    pos = plan.membership[use]
    sums = np.bincount(pos, weights=flat[use], minlength=plan.n_cells)
    counts = np.bincount(pos, minlength=plan.n_cells)
    with np.errstate(invalid="ignore", divide="ignore"):
        means = np.where(counts > 0, sums / np.maximum(counts, 1), np.nan)
    return pd.Series(means, index=pd.Index(plan.cell_ids), dtype=float)
