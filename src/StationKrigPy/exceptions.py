# src/StationKrigPy/exceptions.py
# SPDX-License-Identifier: MIT
"""
Error taxonomy for the interpolation pipeline.

Per-(day, variable) errors are *contained*: the driver catches them, records
an :class:`Issue` and carries on with the sibling work. Only
:class:`SetupError` is fatal, and it is raised before any day is dispatched.
"""

from __future__ import annotations

from dataclasses import asdict, dataclass
from typing import Dict


class StationKrigError(Exception):
    """Base class for all package errors."""

    kind = "error"


class InsufficientDataError(StationKrigError):
    """Fewer than two usable observations for a (day, variable)."""

    kind = "insufficient_data"


class FitNonconvergenceError(StationKrigError):
    """Variogram fit failed or produced a degenerate model."""

    kind = "fit_nonconvergence"


class PredictionFailureError(StationKrigError):
    """Kriging system is singular or the kriging backend raised."""

    kind = "prediction_failure"


class DayTimeoutError(StationKrigError):
    """A whole day exceeded the configured per-day timeout."""

    kind = "timeout"


class SetupError(StationKrigError, ValueError):
    """Bad inputs detected before dispatch (files, CRS, empty grid, config)."""

    kind = "setup"


@dataclass(frozen=True)
class Issue:
    """One contained failure or fallback.

    ``action`` is ``"skipped"`` when the variable's cells were set to missing
    and ``"fallback"`` when a flat model replaced a failed variogram fit.
    """

    date: str
    variable: str
    kind: str
    message: str
    action: str = "skipped"

    @classmethod
    def from_error(
        cls, date: str, variable: str, err: Exception, action: str = "skipped"
    ) -> "Issue":
        kind = getattr(err, "kind", type(err).__name__)
        return cls(date=date, variable=variable, kind=kind, message=str(err), action=action)

    def to_dict(self) -> Dict[str, str]:
        return asdict(self)
