# src/StationKrigPy/variogram.py
# SPDX-License-Identifier: MIT
"""
Empirical variogram estimation and spherical-model fitting.

Two steps run for every (day, variable):

1) :func:`empirical_variogram` bins the half squared differences of all
   station pairs by separation distance (classical Matheron estimator).
2) :func:`fit_variogram` turns the binned curve into a spherical
   :class:`VariogramModel`.

Fit policy
----------
``"fixed"`` (default) derives the parameters directly from the empirical
curve and does not optimise them: nugget ``0``, partial sill equal to the
mean semivariance of the last five bins, range one third of the largest
lag. On sparse daily networks this avoids wild sills and ranges driven by a
handful of pairs.

``"fit"`` starts from the same values and runs a weighted least-squares fit
of nugget, partial sill and range, with weights ``N_j / h_j**2`` (pair count
over squared lag), as is customary for variogram fitting.

Degenerate curves (identical values at all stations, all stations at the
same location) raise :class:`FitNonconvergenceError`; the caller decides
between a flat model and skipping the variable.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Optional

import numpy as np
from scipy.optimize import curve_fit
from scipy.spatial.distance import pdist

from .exceptions import FitNonconvergenceError, InsufficientDataError

__all__ = [
    "EmpiricalVariogram",
    "VariogramModel",
    "spherical",
    "empirical_variogram",
    "fit_variogram",
    "plot_variogram",
]

MIN_OBSERVATIONS = 2


# ---------------------------------------------------------------------
# Containers
# ---------------------------------------------------------------------


@dataclass(frozen=True)
class EmpiricalVariogram:
    """Binned semivariance.

    Only non-empty bins are kept, so ``lags``, ``gamma`` and ``counts`` have
    the same length and ``counts > 0`` everywhere.

    Attributes
    ----------
    lags :
        Mean pair distance within each bin.
    gamma :
        Mean half squared difference within each bin.
    counts :
        Number of pairs per bin.
    max_lag :
        Upper edge of the last bin.
    n_obs :
        Number of observations the curve was built from.
    """

    lags: np.ndarray
    gamma: np.ndarray
    counts: np.ndarray
    max_lag: float
    n_obs: int

    @property
    def n_bins(self) -> int:
        return len(self.lags)


@dataclass(frozen=True)
class VariogramModel:
    """Spherical variogram ``nugget + psill * sph(h / range)``.

    A model with ``psill == 0`` has no spatial structure (flat): kriging with
    it reduces to the mean of the observations.
    """

    nugget: float
    psill: float
    range: float
    family: str = "spherical"
    fitted: bool = False

    @property
    def sill(self) -> float:
        return self.nugget + self.psill

    @property
    def is_flat(self) -> bool:
        return not self.psill > 0.0

    def __call__(self, h) -> np.ndarray:
        return spherical(np.asarray(h, dtype=float), self.nugget, self.psill, self.range)

    def to_pykrige(self) -> dict:
        """Parameters in the dict form PyKrige accepts for ``"spherical"``."""
        return {"psill": float(self.psill), "range": float(self.range), "nugget": float(self.nugget)}

    @classmethod
    def flat(cls, values: np.ndarray) -> "VariogramModel":
        """No-structure model: all variance in the nugget."""
        v = np.asarray(values, dtype=float)
        var = float(np.var(v, ddof=1)) if v.size > 1 else 0.0
        return cls(nugget=var, psill=0.0, range=0.0, family="flat")


def spherical(h: np.ndarray, nugget: float, psill: float, rng: float) -> np.ndarray:
    """Spherical model evaluated at distances ``h``."""
    h = np.asarray(h, dtype=float)
    if rng <= 0:
        return np.where(h > 0, nugget + psill, 0.0)
    r = np.clip(h / rng, 0.0, 1.0)
    g = nugget + psill * (1.5 * r - 0.5 * r**3)
    return np.where(h > 0, g, 0.0)


# ---------------------------------------------------------------------
# 4.1 Empirical variogram
# ---------------------------------------------------------------------


def empirical_variogram(
    x: np.ndarray,
    y: np.ndarray,
    z: np.ndarray,
    *,
    n_lags: int = 15,
    max_lag: Optional[float] = None,
    max_lag_fraction: float = 1.0 / 3.0,
) -> EmpiricalVariogram:
    """
    Binned empirical semivariance of ``z`` observed at planar ``(x, y)``.

    Parameters
    ----------
    x, y, z : array-like
        Projected coordinates and values; non-finite values are dropped.
    n_lags : int
        Number of equal-width distance bins.
    max_lag : float, optional
        Cutoff distance. Defaults to ``max_lag_fraction`` times the diagonal
        of the observations' bounding box. If no pair falls below the cutoff
        (very small networks), the largest pair distance is used instead.
    max_lag_fraction : float
        See ``max_lag``.

    Raises
    ------
    InsufficientDataError
        Fewer than two finite observations.
    FitNonconvergenceError
        All observations share a single location.
    """
    x = np.asarray(x, dtype=float)
    y = np.asarray(y, dtype=float)
    z = np.asarray(z, dtype=float)
    ok = np.isfinite(x) & np.isfinite(y) & np.isfinite(z)
    x, y, z = x[ok], y[ok], z[ok]
    n = int(z.size)
    if n < MIN_OBSERVATIONS:
        raise InsufficientDataError(
            f"{n} non-missing observation(s); at least {MIN_OBSERVATIONS} are required"
        )

    coords = np.column_stack([x, y])
    d = pdist(coords)
    sq = 0.5 * pdist(z[:, None], metric="sqeuclidean")
    d_max = float(d.max())
    if d_max <= 0.0:
        raise FitNonconvergenceError("all observations share one location")

    if max_lag is None:
        diag = float(np.hypot(np.ptp(x), np.ptp(y)))
        max_lag = max_lag_fraction * diag
    max_lag = float(max_lag)
    if not (d <= max_lag).any() or max_lag <= 0.0:
        max_lag = d_max

    edges = np.linspace(0.0, max_lag, int(n_lags) + 1)
    keep = d <= max_lag
    d, sq = d[keep], sq[keep]
    idx = np.clip(np.digitize(d, edges) - 1, 0, int(n_lags) - 1)

    counts = np.bincount(idx, minlength=int(n_lags))
    sum_d = np.bincount(idx, weights=d, minlength=int(n_lags))
    sum_g = np.bincount(idx, weights=sq, minlength=int(n_lags))
    nz = counts > 0
    return EmpiricalVariogram(
        lags=sum_d[nz] / counts[nz],
        gamma=sum_g[nz] / counts[nz],
        counts=counts[nz].astype(int),
        max_lag=max_lag,
        n_obs=n,
    )


# ---------------------------------------------------------------------
# 4.2 Model fitting
# ---------------------------------------------------------------------


def _initial_parameters(emp: EmpiricalVariogram) -> VariogramModel:
    psill = float(np.mean(emp.gamma[-5:]))
    rng = float(emp.lags.max()) / 3.0
    return VariogramModel(nugget=0.0, psill=psill, range=rng)


def _check(model: VariogramModel) -> VariogramModel:
    vals = np.array([model.nugget, model.psill, model.range], dtype=float)
    if not np.isfinite(vals).all():
        raise FitNonconvergenceError(f"non-finite variogram parameters {vals.tolist()}")
    if model.psill <= 0.0:
        raise FitNonconvergenceError("no spatial structure (partial sill is zero)")
    if model.range <= 0.0:
        raise FitNonconvergenceError("degenerate variogram range")
    return model


def fit_variogram(emp: EmpiricalVariogram, policy: str = "fixed") -> VariogramModel:
    """
    Spherical model for an empirical variogram.

    Parameters
    ----------
    emp : EmpiricalVariogram
        Output of :func:`empirical_variogram`.
    policy : {"fixed", "fit"}
        See the module docstring.

    Raises
    ------
    FitNonconvergenceError
        Optimiser failure, or a degenerate (flat/zero-range) result.
    """
    if emp.n_bins == 0:
        raise FitNonconvergenceError("empty empirical variogram")
    init = _check(_initial_parameters(emp))
    if policy == "fixed":
        return init
    if policy != "fit":
        raise ValueError(f"Unknown fit policy: {policy!r}")

    if emp.n_bins < 3:
        # three free parameters
        raise FitNonconvergenceError(f"only {emp.n_bins} variogram bin(s) to fit")

    sigma = emp.lags / np.sqrt(emp.counts)
    floor = float(sigma[sigma > 0].min()) if (sigma > 0).any() else 1.0
    sigma = np.where(sigma > 0, sigma, floor)
    upper = [np.inf, np.inf, 2.0 * float(emp.max_lag)]
    p0 = [max(float(emp.gamma[0]) * 0.1, 0.0), init.psill, init.range]
    try:
        popt, _ = curve_fit(
            spherical,
            emp.lags,
            emp.gamma,
            p0=p0,
            sigma=sigma,
            bounds=([0.0, 0.0, 0.0], upper),
            maxfev=5000,
        )
    except (RuntimeError, ValueError) as e:
        raise FitNonconvergenceError(f"variogram fit did not converge: {e}") from e

    nugget, psill, rng = (float(p) for p in popt)
    return _check(VariogramModel(nugget=nugget, psill=psill, range=rng, fitted=True))


# ---------------------------------------------------------------------
# Diagnostics
# ---------------------------------------------------------------------


def plot_variogram(
    emp: EmpiricalVariogram,
    model: Optional[VariogramModel] = None,
    *,
    ax=None,
    title: Optional[str] = None,
):
    """
    Scatter the empirical semivariance and overlay the model curve.

    Returns the matplotlib Figure.
    """
    import matplotlib.pyplot as plt

    if ax is None:
        fig, ax = plt.subplots(figsize=(6, 4))
    else:
        fig = ax.figure

    ax.scatter(emp.lags, emp.gamma, s=12 + 3 * np.sqrt(emp.counts), label="empirical")
    if model is not None:
        h = np.linspace(0.0, emp.max_lag, 200)
        ax.plot(h, model(h), color="tab:red", label=f"{model.family} model")
    ax.set_xlabel("Separation distance")
    ax.set_ylabel("Semivariance")
    ax.set_xlim(left=0.0)
    ax.set_ylim(bottom=0.0)
    if title:
        ax.set_title(title)
    ax.legend(loc="lower right")
    return fig
