# src/StationKrigPy/crossval.py
# SPDX-License-Identifier: MIT
"""
Leave-one-station-out (LOSO) cross-validation of the daily kriging.

For one (day, variable), each station is held out in turn; the variogram is
re-estimated and re-fitted on the remaining stations with the same policy as
the production run, and the held-out value is predicted by ordinary kriging.
The resulting errors tell how much to trust a day's surface before it is
aggregated to grid cells.
"""

from __future__ import annotations

import time
from typing import Dict, Iterable, List, Optional, Tuple

import numpy as np
import pandas as pd
from tqdm.auto import tqdm

from .config import PipelineConfig
from .exceptions import (
    FitNonconvergenceError,
    InsufficientDataError,
    PredictionFailureError,
)
from .kriging import krige_points
from .metrics import regression_metrics
from .stations import X_COL, Y_COL, select_days
from .variogram import VariogramModel, empirical_variogram, fit_variogram

__all__ = ["loso_cross_validate", "cross_validate_days"]


def _fit_or_flat(x, y, z, config: PipelineConfig) -> Tuple[VariogramModel, bool]:
    try:
        emp = empirical_variogram(
            x, y, z, n_lags=config.n_lags, max_lag_fraction=config.max_lag_fraction
        )
        return fit_variogram(emp, policy=config.fit_policy), False
    except FitNonconvergenceError:
        if config.on_fit_failure == "skip":
            raise
        return VariogramModel.flat(z), True


def loso_cross_validate(
    day_table: pd.DataFrame,
    variable: str,
    config: PipelineConfig,
) -> Tuple[pd.DataFrame, Dict[str, float]]:
    """
    Hold out each station of one day and predict it from the others.

    Parameters
    ----------
    day_table : DataFrame
        One day's rows of a prepared station table (with ``x``/``y``).
    variable : str
        Column to cross-validate.
    config : PipelineConfig
        Supplies the variogram settings and column names.

    Returns
    -------
    table : DataFrame
        One row per station with non-missing ``variable``:
        ``[station, y_true, y_pred, variance, flat_model, status]``.
        ``status`` is ``"ok"`` or the error kind that prevented a prediction.
    metrics : dict
        :func:`~StationKrigPy.metrics.regression_metrics` over the ``ok`` rows.

    Raises
    ------
    InsufficientDataError
        Fewer than three stations (holding one out must leave two).
    """
    sub = day_table[np.isfinite(day_table[variable].to_numpy(dtype=float))]
    n = len(sub)
    if n < 3:
        raise InsufficientDataError(
            f"{n} non-missing observation(s); leave-one-out needs at least 3"
        )

    ids = sub[config.id_col].to_numpy()
    x = sub[X_COL].to_numpy(dtype=float)
    y = sub[Y_COL].to_numpy(dtype=float)
    z = sub[variable].to_numpy(dtype=float)

    rows: List[Dict] = []
    for i in range(n):
        keep = np.arange(n) != i
        row = {
            config.id_col: ids[i],
            "y_true": z[i],
            "y_pred": np.nan,
            "variance": np.nan,
            "flat_model": False,
            "status": "ok",
        }
        try:
            model, flat = _fit_or_flat(x[keep], y[keep], z[keep], config)
            pred, var = krige_points(x[keep], y[keep], z[keep], model, x[i], y[i])
            row.update(y_pred=float(pred[0]), variance=float(var[0]), flat_model=flat)
        except (InsufficientDataError, FitNonconvergenceError, PredictionFailureError) as e:
            row["status"] = e.kind
        rows.append(row)

    table = pd.DataFrame(rows)
    ok = table["status"] == "ok"
    metrics = regression_metrics(table.loc[ok, "y_true"], table.loc[ok, "y_pred"])
    return table, metrics


def cross_validate_days(
    stations: pd.DataFrame,
    config: PipelineConfig,
    *,
    days: Optional[Iterable] = None,
    show_progress: bool = True,
) -> pd.DataFrame:
    """
    LOSO scores for every (day, variable) of a prepared station table.

    ``days`` defaults to the run's selected days. Pairs that cannot be
    cross-validated are reported with ``n == 0`` and ``NaN`` scores.
    """
    if days is None:
        day_list = select_days(stations, config)
    else:
        day_list = sorted(pd.Timestamp(d).normalize() for d in days)
    groups = {pd.Timestamp(d): g for d, g in stations.groupby(config.date_col)}

    out: List[Dict] = []
    iterator = tqdm(day_list, desc="LOSO days", unit="day", disable=not show_progress)
    for day in iterator:
        table = groups.get(pd.Timestamp(day), stations.iloc[0:0])
        for variable in config.variables:
            t0 = time.time()
            try:
                _, m = loso_cross_validate(table, variable, config)
            except InsufficientDataError:
                m = regression_metrics([], [])
            out.append(
                {
                    config.date_col: pd.Timestamp(day),
                    "variable": variable,
                    **m,
                    "seconds": time.time() - t0,
                }
            )
    return pd.DataFrame(out)
