# src/StationKrigPy/metrics.py
# SPDX-License-Identifier: MIT
"""
Scores for held-out station predictions.

Used by :mod:`StationKrigPy.crossval` to summarise leave-one-station-out
kriging errors for a day:

- :func:`kge`: Kling–Gupta efficiency (Gupta et al., 2009).
- :func:`nse`: Nash–Sutcliffe efficiency.
- :func:`regression_metrics`: MAE, RMSE, bias, R², KGE, NSE in one dict.

Inputs are any iterable of floats; pairs with a non-finite member are
dropped first. Undefined scores (too few pairs, zero observed variance) are
``numpy.nan``. R² is the squared Pearson correlation, not
``sklearn.metrics.r2_score``, so that it does not duplicate NSE.
"""

from __future__ import annotations

from typing import Dict, Iterable, Tuple

import numpy as np
from sklearn.metrics import mean_absolute_error, mean_squared_error

__all__ = ["kge", "nse", "regression_metrics"]


def _paired(
    y_true: Iterable[float],
    y_pred: Iterable[float],
) -> Tuple[np.ndarray, np.ndarray]:
    """Float arrays of equal shape, restricted to pairs where both are finite."""
    yt = np.asarray(y_true, dtype=float).ravel()
    yp = np.asarray(y_pred, dtype=float).ravel()
    if yt.shape != yp.shape:
        raise ValueError(
            f"Shapes of y_true {yt.shape} and y_pred {yp.shape} do not match."
        )
    ok = np.isfinite(yt) & np.isfinite(yp)
    return yt[ok], yp[ok]


def kge(y_true: Iterable[float], y_pred: Iterable[float]) -> float:
    """
    Kling–Gupta efficiency.

    .. math::

        \\mathrm{KGE} = 1 - \\sqrt{(r - 1)^2 + (\\alpha - 1)^2 + (\\beta - 1)^2}

    with ``r`` the Pearson correlation, ``alpha`` the ratio of standard
    deviations and ``beta`` the ratio of means (predicted over observed).
    ``nan`` when fewer than two pairs, a zero observed mean or a zero
    standard deviation on either side.
    """
    yt, yp = _paired(y_true, y_pred)
    if yt.size < 2:
        return np.nan

    mu_t, mu_p = float(np.mean(yt)), float(np.mean(yp))
    sd_t, sd_p = float(np.std(yt, ddof=1)), float(np.std(yp, ddof=1))
    if sd_t == 0.0 or sd_p == 0.0 or mu_t == 0.0:
        return np.nan

    r = float(np.corrcoef(yt, yp)[0, 1])
    if not np.isfinite(r):
        return np.nan
    return float(1.0 - np.sqrt((r - 1.0) ** 2 + (sd_p / sd_t - 1.0) ** 2 + (mu_p / mu_t - 1.0) ** 2))


def nse(y_true: Iterable[float], y_pred: Iterable[float]) -> float:
    """Nash–Sutcliffe efficiency; ``nan`` for < 2 pairs or constant observations."""
    yt, yp = _paired(y_true, y_pred)
    if yt.size < 2:
        return np.nan
    denom = float(np.sum((yt - yt.mean()) ** 2))
    if denom == 0.0:
        return np.nan
    return float(1.0 - float(np.sum((yt - yp) ** 2)) / denom)


def regression_metrics(y_true: Iterable[float], y_pred: Iterable[float]) -> Dict[str, float]:
    """
    MAE, RMSE, mean bias (pred - obs), R², KGE and NSE.

    Every value is ``nan`` when no finite pair remains. With a single pair
    only MAE, RMSE and bias are defined.
    """
    yt, yp = _paired(y_true, y_pred)
    out = {k: np.nan for k in ("n", "MAE", "RMSE", "bias", "R2", "KGE", "NSE")}
    out["n"] = int(yt.size)
    if yt.size == 0:
        return out

    out["MAE"] = float(mean_absolute_error(yt, yp))
    out["RMSE"] = float(np.sqrt(mean_squared_error(yt, yp)))
    out["bias"] = float(np.mean(yp - yt))
    if yt.size < 2:
        return out

    if float(np.std(yt)) > 0.0 and float(np.std(yp)) > 0.0:
        r = float(np.corrcoef(yt, yp)[0, 1])
        out["R2"] = r**2 if np.isfinite(r) else np.nan
    out["KGE"] = kge(yt, yp)
    out["NSE"] = nse(yt, yp)
    return out
