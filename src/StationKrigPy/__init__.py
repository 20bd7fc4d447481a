"""
StationKrigPy
=============

Daily kriging of weather-station observations onto polygon grid cells.

For every selected day and every requested variable (e.g. maximum
temperature, precipitation) the package:

1. estimates an empirical variogram from that day's stations,
2. fits a spherical variogram model (fixed data-derived parameters by
   default, optional least-squares fit),
3. predicts the variable by ordinary kriging on a regular lattice covering
   the study grid,
4. masks lattice points outside the grid polygons, and
5. averages the remaining points per grid polygon.

Days are independent and run in parallel worker processes. The result is a
long-format table with one row per (day, grid cell) and one column per
variable; whatever could not be computed is ``NaN`` and listed in a separate
issue table.

Main entry points
-----------------
- :class:`PipelineConfig`
- :func:`run_pipeline`
- :func:`interpolate_days`
- :func:`prepare_stations`, :func:`prepare_grid`, :func:`build_grid_definition`
- :func:`empirical_variogram`, :func:`fit_variogram`, :func:`krige_lattice`
- :func:`rasterize`, :func:`aggregate_to_cells`
- :func:`loso_cross_validate`, :func:`cross_validate_days`

Example
-------
    >>> import geopandas as gpd
    >>> import pandas as pd
    >>> from StationKrigPy import PipelineConfig, run_pipeline
    >>> cfg = PipelineConfig(
    ...     variables=("tmax", "prcp"),
    ...     start="2019-07-01",
    ...     end="2019-07-31",
    ...     n_points=5000,
    ...     n_jobs=-1,
    ...     out_path="out/daily_cells.parquet",
    ...     failures_path="out/issues.csv",
    ... )
    >>> run = run_pipeline("stations.csv", "grid.shp", cfg)
    >>> run.table.head()
"""

from __future__ import annotations

# Public version (update in sync with pyproject.toml)
__version__ = "0.1.0"

from .config import PipelineConfig
from .exceptions import (
    DayTimeoutError,
    FitNonconvergenceError,
    InsufficientDataError,
    Issue,
    PredictionFailureError,
    SetupError,
    StationKrigError,
)
from .stations import load_stations, prepare_stations, select_days
from .grid import (
    AggregationPlan,
    GridDefinition,
    PredictionLattice,
    build_aggregation_plan,
    build_grid_definition,
    build_lattice,
    lattice_coverage_report,
    load_grid,
    prepare_grid,
)
from .variogram import (
    EmpiricalVariogram,
    VariogramModel,
    empirical_variogram,
    fit_variogram,
    plot_variogram,
)
from .kriging import krige_lattice, krige_points
from .raster import aggregate_to_cells, rasterize
from .pipeline import (
    DayResult,
    RunResult,
    interpolate_days,
    merge_day_results,
    run_day,
    run_pipeline,
)
from .crossval import cross_validate_days, loso_cross_validate
from .logs import set_warning_policy, setup_logger

__all__ = [
    "__version__",
    # configuration and errors
    "PipelineConfig",
    "StationKrigError",
    "SetupError",
    "InsufficientDataError",
    "FitNonconvergenceError",
    "PredictionFailureError",
    "DayTimeoutError",
    "Issue",
    # inputs
    "load_stations",
    "prepare_stations",
    "select_days",
    "load_grid",
    "prepare_grid",
    "build_lattice",
    "build_aggregation_plan",
    "build_grid_definition",
    "lattice_coverage_report",
    "PredictionLattice",
    "AggregationPlan",
    "GridDefinition",
    # model
    "EmpiricalVariogram",
    "VariogramModel",
    "empirical_variogram",
    "fit_variogram",
    "plot_variogram",
    "krige_lattice",
    "krige_points",
    "rasterize",
    "aggregate_to_cells",
    # driver
    "DayResult",
    "RunResult",
    "run_day",
    "interpolate_days",
    "merge_day_results",
    "run_pipeline",
    # validation
    "loso_cross_validate",
    "cross_validate_days",
    # logging
    "setup_logger",
    "set_warning_policy",
]
