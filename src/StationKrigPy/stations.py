# src/StationKrigPy/stations.py
# SPDX-License-Identifier: MIT
"""
Station dataset: loading, validation, projection and day selection.

The station table is long-format, one row per (station, day)::

    station | date | longitude | latitude | <var_1> | <var_2> | ...

Missing variable values are expected and kept as ``NaN``. Coordinates are
projected once to the planar CRS of the run and stored in two extra columns,
``x`` and ``y``; the table is never mutated afterwards.
"""

from __future__ import annotations

import os
from typing import List, Tuple

import geopandas as gpd
import numpy as np
import pandas as pd
from pandas.api.types import DatetimeTZDtype
from pyproj.exceptions import CRSError

from .config import PipelineConfig
from .exceptions import SetupError
from .logs import get_logger

__all__ = [
    "ensure_datetime",
    "read_table",
    "load_stations",
    "prepare_stations",
    "select_days",
    "day_observations",
]

log = get_logger(__name__)

X_COL = "x"
Y_COL = "y"


def ensure_datetime(df: pd.DataFrame, date_col: str = "date") -> pd.DataFrame:
    """
    Return a copy where ``date_col`` is a timezone-naive, day-normalized
    datetime64 column. Rows with invalid dates are dropped.
    """
    out = df.copy()
    out[date_col] = pd.to_datetime(out[date_col], errors="coerce")
    if isinstance(out[date_col].dtype, DatetimeTZDtype):
        out[date_col] = out[date_col].dt.tz_localize(None)
    out[date_col] = out[date_col].dt.normalize()
    return out.dropna(subset=[date_col])


def read_table(path: str) -> pd.DataFrame:
    """Read a ``.csv``, ``.parquet`` or ``.feather`` table."""
    ext = os.path.splitext(path)[1].lower()
    try:
        if ext == ".csv":
            return pd.read_csv(path)
        if ext == ".parquet":
            return pd.read_parquet(path)
        if ext == ".feather":
            return pd.read_feather(path)
    except (OSError, ValueError) as e:
        raise SetupError(f"Cannot read table {path!r}: {e}") from e
    raise SetupError(f"Unsupported extension: {ext}")


def load_stations(path: str, config: PipelineConfig) -> pd.DataFrame:
    """Read a station file and run :func:`prepare_stations` on it."""
    return prepare_stations(read_table(path), config)


def prepare_stations(data: pd.DataFrame, config: PipelineConfig) -> pd.DataFrame:
    """
    Validate the station table and add projected coordinates.

    Checks performed (all raise :class:`SetupError`):

    - required columns (id, date, lon, lat and every requested variable);
    - at least one row with a valid date and finite coordinates;
    - no duplicated (station, day) rows;
    - one fixed location per station.

    Parameters
    ----------
    data : DataFrame
        Raw station table.
    config : PipelineConfig
        Supplies the column names, the requested variables and both CRSs.

    Returns
    -------
    DataFrame
        Copy of the input restricted to the needed columns, with a normalized
        date column, numeric variables and projected ``x``/``y`` columns,
        sorted by (date, station).
    """
    id_col, date_col = config.id_col, config.date_col
    lon_col, lat_col = config.lon_col, config.lat_col
    variables = list(config.variables)

    required = [id_col, date_col, lon_col, lat_col] + variables
    missing = [c for c in required if c not in data.columns]
    if missing:
        raise SetupError(f"Station table is missing required columns: {missing}")

    df = ensure_datetime(data[required], date_col)
    for c in [lon_col, lat_col] + variables:
        df[c] = pd.to_numeric(df[c], errors="coerce")
    df = df.dropna(subset=[id_col, lon_col, lat_col])
    if df.empty:
        raise SetupError("Station table has no rows with valid dates and coordinates.")

    dup = df.duplicated(subset=[id_col, date_col], keep=False)
    if dup.any():
        sample = df.loc[dup, [id_col, date_col]].head(5).to_dict("records")
        raise SetupError(
            f"Duplicated (station, day) rows in station table ({int(dup.sum())} rows), "
            f"e.g. {sample}"
        )

    n_locs = df.groupby(id_col)[[lon_col, lat_col]].nunique().max(axis=1)
    moving = n_locs[n_locs > 1]
    if not moving.empty:
        raise SetupError(
            "Stations must have fixed coordinates; these do not: "
            f"{moving.index.tolist()[:10]}"
        )

    df = _project(df, config)
    df = df.sort_values([date_col, id_col]).reset_index(drop=True)
    log.info(
        "Loaded %d station-days from %d stations (%s .. %s)",
        len(df),
        df[id_col].nunique(),
        df[date_col].min().date(),
        df[date_col].max().date(),
    )
    return df


def _project(df: pd.DataFrame, config: PipelineConfig) -> pd.DataFrame:
    """Add planar ``x``/``y`` columns in ``config.target_crs``."""
    try:
        pts = gpd.GeoSeries(
            gpd.points_from_xy(df[config.lon_col], df[config.lat_col]),
            crs=config.source_crs,
            index=df.index,
        ).to_crs(config.target_crs)
    except CRSError as e:
        raise SetupError(f"Cannot project station coordinates: {e}") from e
    out = df.copy()
    out[X_COL] = pts.x.to_numpy(dtype=float)
    out[Y_COL] = pts.y.to_numpy(dtype=float)
    if not (np.isfinite(out[X_COL]).all() and np.isfinite(out[Y_COL]).all()):
        raise SetupError(
            f"Station coordinates are not valid in {config.source_crs} "
            f"(projection to {config.target_crs} produced non-finite values)."
        )
    return out


def select_days(
    stations: pd.DataFrame,
    config: PipelineConfig,
) -> List[pd.Timestamp]:
    """
    Days to process, ascending.

    Explicit ``config.days`` are used when given (a listed day without any
    station row still yields a fully-missing row set). Otherwise the days
    present in the station table are used. Either way, days outside
    ``[config.start, config.end]`` are excluded.
    """
    if config.days is not None:
        days = pd.DatetimeIndex(pd.to_datetime(list(config.days))).normalize()
    else:
        days = pd.DatetimeIndex(stations[config.date_col].unique())

    if config.start is not None:
        days = days[days >= pd.Timestamp(config.start)]
    if config.end is not None:
        days = days[days <= pd.Timestamp(config.end)]
    return sorted(pd.Timestamp(d) for d in days.unique())


def day_observations(
    day_table: pd.DataFrame,
    variable: str,
) -> Tuple[np.ndarray, np.ndarray, np.ndarray]:
    """Projected coordinates and values of the non-missing observations of
    ``variable`` in a single day's table."""
    vals = day_table[variable].to_numpy(dtype=float)
    ok = np.isfinite(vals)
    return (
        day_table[X_COL].to_numpy(dtype=float)[ok],
        day_table[Y_COL].to_numpy(dtype=float)[ok],
        vals[ok],
    )
