# src/StationKrigPy/config.py
# SPDX-License-Identifier: MIT
"""
Run configuration for the day-parallel interpolation pipeline.

A :class:`PipelineConfig` is immutable once built and is shipped as-is to
worker processes. It is persisted as JSON next to the outputs so a run can
be reproduced exactly.
"""

from __future__ import annotations

import json
from dataclasses import asdict, dataclass, fields, replace
from typing import Optional, Tuple

import pandas as pd
from joblib import cpu_count

from .exceptions import SetupError
from .io_utils import save_json

FIT_POLICIES = ("fixed", "fit")
FIT_FAILURE_ACTIONS = ("flat", "skip")


@dataclass(frozen=True)
class PipelineConfig:
    """Configuration surface of the interpolation run.

    Attributes
    ----------
    variables :
        Station-table columns to interpolate (e.g. ``("tmax", "prcp")``).
    start, end :
        Inclusive processing window (``YYYY-MM-DD``). Days outside it are
        never processed.
    days :
        Explicit list of days to process. Takes precedence over the
        days-present-in-the-table rule but is still clipped to
        ``[start, end]`` when those are given.
    n_points :
        Target number of prediction-lattice points over the grid extent.
    n_jobs :
        Worker processes (``-1`` = all processing units, ``1`` = in-process).
    max_workers :
        Upper bound on the pool size; each worker holds its own kriging system
        and raster in memory.
    day_timeout :
        Seconds after which a dispatched day is marked failed. ``None``
        disables the timeout.
    fit_policy :
        ``"fixed"`` keeps the data-derived initial sill/range untouched;
        ``"fit"`` runs a weighted least-squares fit of nugget, partial sill
        and range.
    on_fit_failure :
        ``"flat"`` replaces a degenerate variogram with a no-structure model,
        ``"skip"`` marks the variable missing for that day.
    n_lags, max_lag_fraction :
        Empirical variogram binning: ``n_lags`` equal-width bins up to
        ``max_lag_fraction`` of the station bounding-box diagonal.
    source_crs, target_crs :
        CRS of the station coordinates and the planar equal-area CRS used for
        all distance computations.
    include_variance :
        Add ``<variable>_var`` columns with the cell-mean kriging variance.
    """

    variables: Tuple[str, ...] = ("tmax", "prcp")
    start: Optional[str] = None
    end: Optional[str] = None
    days: Optional[Tuple[str, ...]] = None
    # lattice / model
    n_points: int = 5000
    n_lags: int = 15
    max_lag_fraction: float = 1.0 / 3.0
    fit_policy: str = "fixed"
    on_fit_failure: str = "flat"
    include_variance: bool = False
    # execution
    n_jobs: int = -1
    max_workers: int = 8
    day_timeout: Optional[float] = None
    # coordinates
    source_crs: str = "EPSG:4326"
    target_crs: str = "EPSG:5070"
    # column names
    id_col: str = "station"
    date_col: str = "date"
    lon_col: str = "longitude"
    lat_col: str = "latitude"
    cell_id_col: str = "cell_id"
    # sinks
    out_path: Optional[str] = None
    failures_path: Optional[str] = None
    summary_path: Optional[str] = None
    log_file: Optional[str] = None
    parquet_compression: str = "snappy"

    def __post_init__(self) -> None:
        # normalize list-like inputs coming from JSON / CLI
        if isinstance(self.variables, str):
            object.__setattr__(self, "variables", (self.variables,))
        else:
            object.__setattr__(self, "variables", tuple(self.variables))
        try:
            if self.days is not None:
                object.__setattr__(
                    self,
                    "days",
                    tuple(str(pd.Timestamp(d).date()) for d in self.days),
                )
            for d in (self.start, self.end):
                if d is not None:
                    pd.Timestamp(d)
        except ValueError as e:
            raise SetupError(f"Invalid date in configuration: {e}") from e

        if not self.variables:
            raise SetupError("At least one variable must be requested.")
        if len(set(self.variables)) != len(self.variables):
            raise SetupError(f"Duplicated variables requested: {list(self.variables)}")
        if int(self.n_points) < 1:
            raise SetupError(f"n_points must be >= 1, got {self.n_points}.")
        if int(self.n_lags) < 1:
            raise SetupError(f"n_lags must be >= 1, got {self.n_lags}.")
        if not (0.0 < float(self.max_lag_fraction) <= 1.0):
            raise SetupError(
                f"max_lag_fraction must be in (0, 1], got {self.max_lag_fraction}."
            )
        if self.fit_policy not in FIT_POLICIES:
            raise SetupError(
                f"fit_policy must be one of {FIT_POLICIES}, got {self.fit_policy!r}."
            )
        if self.on_fit_failure not in FIT_FAILURE_ACTIONS:
            raise SetupError(
                "on_fit_failure must be one of "
                f"{FIT_FAILURE_ACTIONS}, got {self.on_fit_failure!r}."
            )
        if int(self.max_workers) < 1:
            raise SetupError(f"max_workers must be >= 1, got {self.max_workers}.")
        if int(self.n_jobs) == 0 or int(self.n_jobs) < -1:
            raise SetupError(f"n_jobs must be -1 or a positive integer, got {self.n_jobs}.")
        if self.day_timeout is not None and float(self.day_timeout) <= 0:
            raise SetupError(f"day_timeout must be positive, got {self.day_timeout}.")
        if self.start is not None and self.end is not None:
            if pd.Timestamp(self.start) > pd.Timestamp(self.end):
                raise SetupError(f"start {self.start} is after end {self.end}.")

    # -----------------------------------------------------------------

    def effective_workers(self) -> int:
        """Pool size: ``n_jobs`` (``-1`` = all CPUs) capped by ``max_workers``."""
        n = cpu_count() if int(self.n_jobs) == -1 else int(self.n_jobs)
        return max(1, min(int(n), int(self.max_workers)))

    def with_overrides(self, **kwargs) -> "PipelineConfig":
        """Return a copy with the non-``None`` keyword arguments applied."""
        known = {f.name for f in fields(self)}
        unknown = set(kwargs) - known
        if unknown:
            raise SetupError(f"Unknown configuration keys: {sorted(unknown)}")
        return replace(self, **{k: v for k, v in kwargs.items() if v is not None})

    def to_dict(self) -> dict:
        d = asdict(self)
        d["variables"] = list(self.variables)
        if self.days is not None:
            d["days"] = list(self.days)
        return d

    @staticmethod
    def load(path: str) -> "PipelineConfig":
        """Load a configuration from a JSON file."""
        try:
            with open(path, "r", encoding="utf-8") as f:
                d = json.load(f)
        except (OSError, json.JSONDecodeError) as e:
            raise SetupError(f"Cannot read configuration {path!r}: {e}") from e
        known = {f.name for f in fields(PipelineConfig)}
        unknown = set(d) - known
        if unknown:
            raise SetupError(f"Unknown configuration keys in {path!r}: {sorted(unknown)}")
        return PipelineConfig(**d)

    def save(self, path: str) -> None:
        """Save the configuration to a JSON file."""
        save_json(self.to_dict(), path)
