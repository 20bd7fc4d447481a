# src/StationKrigPy/grid.py
# SPDX-License-Identifier: MIT
"""
Grid definition and prediction lattice.

This module turns the study-area polygon mesh into the three read-only
objects every day task shares:

1) the validated, projected polygon mesh (:class:`GridDefinition.cells`),
2) a regular :class:`PredictionLattice` of sample points covering the mesh
   bounding box, and
3) an :class:`AggregationPlan` mapping each lattice point to the polygon that
   contains it (or to none, which masks the point).

The lattice and the plan are plain NumPy containers, cheap to pickle and
safe to share between worker processes. They are built once per run.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Tuple

import geopandas as gpd
import numpy as np
import pandas as pd
from pyproj.exceptions import CRSError

from .config import PipelineConfig
from .exceptions import SetupError
from .logs import get_logger

__all__ = [
    "PredictionLattice",
    "AggregationPlan",
    "GridDefinition",
    "prepare_grid",
    "load_grid",
    "build_lattice",
    "build_aggregation_plan",
    "build_grid_definition",
    "lattice_coverage_report",
]

log = get_logger(__name__)


# ---------------------------------------------------------------------
# Public containers
# ---------------------------------------------------------------------


@dataclass(frozen=True)
class PredictionLattice:
    """Regular lattice of sample points (cell centers).

    Attributes
    ----------
    xs, ys :
        Ascending 1-D center coordinates along x (columns) and y (rows).
    cell_size :
        Spacing between neighbouring centers, identical along both axes.
    """

    xs: np.ndarray
    ys: np.ndarray
    cell_size: float

    @property
    def shape(self) -> Tuple[int, int]:
        """Raster shape ``(n_rows, n_cols)`` = ``(len(ys), len(xs))``."""
        return (len(self.ys), len(self.xs))

    @property
    def size(self) -> int:
        return len(self.ys) * len(self.xs)

    def points(self) -> Tuple[np.ndarray, np.ndarray]:
        """Flattened center coordinates in row-major raster order."""
        gx, gy = np.meshgrid(self.xs, self.ys)
        return gx.ravel(), gy.ravel()


@dataclass(frozen=True)
class AggregationPlan:
    """Lattice-point to polygon membership.

    ``membership[k]`` is the position (in ``cell_ids``) of the polygon
    containing lattice point ``k`` in row-major order, or ``-1`` when the
    point lies outside every polygon.
    """

    cell_ids: np.ndarray
    membership: np.ndarray

    @property
    def n_cells(self) -> int:
        return len(self.cell_ids)

    def mask(self, shape: Tuple[int, int]) -> np.ndarray:
        """Boolean raster, ``True`` where the point lies outside the study area."""
        return (self.membership < 0).reshape(shape)

    def counts(self) -> np.ndarray:
        """Number of lattice points falling in each polygon."""
        inside = self.membership[self.membership >= 0]
        return np.bincount(inside, minlength=self.n_cells)


@dataclass(frozen=True)
class GridDefinition:
    """Projected polygon mesh plus the shared lattice and aggregation plan."""

    cells: gpd.GeoDataFrame
    lattice: PredictionLattice
    plan: AggregationPlan
    cell_id_col: str = "cell_id"

    @property
    def cell_ids(self) -> np.ndarray:
        return self.plan.cell_ids


# ---------------------------------------------------------------------
# Mesh loading and validation
# ---------------------------------------------------------------------


def prepare_grid(cells: gpd.GeoDataFrame, config: PipelineConfig) -> gpd.GeoDataFrame:
    """
    Validate the polygon mesh and reproject it to ``config.target_crs``.

    Raises
    ------
    SetupError
        Empty mesh, missing/duplicated/NaN cell ids, missing CRS, cells
        with a null or empty geometry, or non-polygonal geometries.
    """
    id_col = config.cell_id_col
    if cells is None or len(cells) == 0:
        raise SetupError("Grid is empty.")
    if id_col not in cells.columns:
        raise SetupError(f"Grid is missing the cell id column {id_col!r}.")
    if cells[id_col].isna().any():
        raise SetupError("Grid contains cells without an identifier.")
    if cells[id_col].duplicated().any():
        dups = cells.loc[cells[id_col].duplicated(), id_col].head(5).tolist()
        raise SetupError(f"Grid contains duplicated cell identifiers, e.g. {dups}")
    if cells.crs is None:
        raise SetupError("Grid has no coordinate reference system.")

    g = cells[[id_col, cells.geometry.name]].copy()
    blank = g.geometry.isna() | g.geometry.is_empty
    if blank.any():
        ids = g.loc[blank, id_col].head(5).tolist()
        raise SetupError(
            f"Grid has {int(blank.sum())} cell(s) without geometry, e.g. {ids}"
        )
    kinds = set(g.geom_type.unique())
    if not kinds <= {"Polygon", "MultiPolygon"}:
        raise SetupError(f"Grid geometries must be polygons, found {sorted(kinds)}.")

    try:
        g = g.to_crs(config.target_crs)
    except CRSError as e:
        raise SetupError(f"Cannot reproject grid to {config.target_crs}: {e}") from e
    return g.reset_index(drop=True)


def load_grid(path: str, config: PipelineConfig) -> gpd.GeoDataFrame:
    """Read a polygon mesh file (any format GeoPandas reads) and validate it."""
    try:
        cells = gpd.read_file(path)
    except Exception as e:  # fiona/pyogrio raise a zoo of driver errors
        raise SetupError(f"Cannot read grid {path!r}: {e}") from e
    return prepare_grid(cells, config)


# ---------------------------------------------------------------------
# Lattice and aggregation plan
# ---------------------------------------------------------------------


def build_lattice(bounds: Tuple[float, float, float, float], n_points: int) -> PredictionLattice:
    """
    Regular lattice of roughly ``n_points`` centers over ``bounds``.

    The spacing is ``sqrt(area / n_points)`` so that the realised count is
    close to the target for any aspect ratio; the first center sits half a
    cell inside the lower-left corner.

    Parameters
    ----------
    bounds : (minx, miny, maxx, maxy)
        Extent in planar units.
    n_points : int
        Target number of lattice points.
    """
    minx, miny, maxx, maxy = (float(b) for b in bounds)
    width, height = maxx - minx, maxy - miny
    if not (np.isfinite([width, height]).all() and width > 0 and height > 0):
        raise SetupError(f"Grid extent is degenerate: {bounds}")

    cell = float(np.sqrt(width * height / max(int(n_points), 1)))
    nx = max(1, int(round(width / cell)))
    ny = max(1, int(round(height / cell)))
    xs = minx + cell * (np.arange(nx) + 0.5)
    ys = miny + cell * (np.arange(ny) + 0.5)
    return PredictionLattice(xs=xs, ys=ys, cell_size=cell)


def build_aggregation_plan(
    cells: gpd.GeoDataFrame,
    lattice: PredictionLattice,
    cell_id_col: str = "cell_id",
) -> AggregationPlan:
    """
    Assign every lattice point to at most one polygon.

    Points on a shared edge intersect both neighbours; they are given to the
    polygon that comes first in mesh order, so every point contributes to a
    single cell mean at most.
    """
    px, py = lattice.points()
    pts = gpd.GeoDataFrame(
        {"_pt": np.arange(len(px))},
        geometry=gpd.points_from_xy(px, py),
        crs=cells.crs,
    )
    polys = gpd.GeoDataFrame(
        {"_cell": np.arange(len(cells))},
        geometry=cells.geometry.values,
        crs=cells.crs,
    )
    joined = gpd.sjoin(pts, polys, how="inner", predicate="intersects")
    first = joined.groupby("_pt")["_cell"].min()

    membership = np.full(len(px), -1, dtype=np.int64)
    membership[first.index.to_numpy()] = first.to_numpy(dtype=np.int64)
    return AggregationPlan(
        cell_ids=cells[cell_id_col].to_numpy(),
        membership=membership,
    )


def build_grid_definition(cells: gpd.GeoDataFrame, config: PipelineConfig) -> GridDefinition:
    """Lattice + plan for an already-validated, projected mesh."""
    lattice = build_lattice(tuple(cells.total_bounds), config.n_points)
    plan = build_aggregation_plan(cells, lattice, config.cell_id_col)
    if not (plan.membership >= 0).any():
        raise SetupError("No lattice point falls inside the grid; check the grid geometry.")

    n_gap = int((plan.counts() == 0).sum())
    log.info(
        "Lattice %d x %d (cell %.1f), %d/%d points inside %d grid cells; %d cells without samples",
        lattice.shape[0],
        lattice.shape[1],
        lattice.cell_size,
        int((plan.membership >= 0).sum()),
        lattice.size,
        plan.n_cells,
        n_gap,
    )
    return GridDefinition(cells=cells, lattice=lattice, plan=plan, cell_id_col=config.cell_id_col)


def lattice_coverage_report(grid: GridDefinition) -> pd.DataFrame:
    """
    Per-cell lattice sample counts.

    Cells with ``n_samples == 0`` will always aggregate to ``NaN``; raise
    ``n_points`` if there are too many of them.
    """
    counts = grid.plan.counts()
    return pd.DataFrame(
        {
            grid.cell_id_col: grid.plan.cell_ids,
            "n_samples": counts.astype(int),
            "gap": counts == 0,
        }
    )
