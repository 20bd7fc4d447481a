# src/StationKrigPy/pipeline.py
# SPDX-License-Identifier: MIT
"""
Day-parallel interpolation driver
=================================

For every selected day, and every requested variable of that day, the
pipeline runs

    empirical variogram -> spherical fit -> ordinary kriging
    -> masked raster -> per-cell mean

and returns one row per grid cell. Days are independent and are dispatched
to a pool of worker processes (joblib's ``loky`` executor); the grid lattice
and aggregation plan are read-only and shipped to every worker.

Failure containment
-------------------
- A (day, variable) failure (insufficient data, degenerate variogram,
  kriging failure) only blanks that variable's column for that day.
- A day that crashes or exceeds ``day_timeout`` yields an all-missing row
  set for that day.
- Setup problems (bad files, CRS, empty grid, no days) raise
  :class:`~StationKrigPy.exceptions.SetupError` before anything is
  dispatched.

The merged table therefore always holds ``n_days * n_cells`` rows, keyed by
(date, cell id), plus a separate issue table listing what was skipped and
why.

Runtime dependencies
--------------------
- numpy, pandas
- geopandas / shapely / pyproj (setup only)
- pykrige, scipy
- joblib (process pool), tqdm (progress)

Optional
--------
- pyarrow (only when persisting to Parquet/Feather)
"""

from __future__ import annotations

import os
import time
from collections import Counter
from concurrent.futures import FIRST_COMPLETED, wait
from dataclasses import dataclass, field
from typing import Callable, Dict, Iterable, List, Optional, Sequence, Tuple, Union

import geopandas as gpd
import numpy as np
import pandas as pd
from joblib.externals.loky import get_reusable_executor
from tqdm.auto import tqdm

from .config import PipelineConfig
from .exceptions import (
    DayTimeoutError,
    FitNonconvergenceError,
    InsufficientDataError,
    Issue,
    PredictionFailureError,
    SetupError,
)
from .grid import (
    AggregationPlan,
    GridDefinition,
    PredictionLattice,
    build_grid_definition,
    load_grid,
    prepare_grid,
)
from .io_utils import save_df, save_json
from .kriging import krige_lattice
from .logs import get_logger
from .raster import aggregate_to_cells, rasterize
from .stations import (
    day_observations,
    load_stations,
    prepare_stations,
    select_days,
)
from .variogram import (
    MIN_OBSERVATIONS,
    VariogramModel,
    empirical_variogram,
    fit_variogram,
)

__all__ = [
    "PENDING",
    "RUNNING",
    "DONE",
    "FAILED",
    "VariableOutcome",
    "DayResult",
    "RunResult",
    "interpolate_variable",
    "run_day",
    "interpolate_days",
    "merge_day_results",
    "issues_frame",
    "write_outputs",
    "run_pipeline",
]

log = get_logger(__name__)

# day states
PENDING = "pending"
RUNNING = "running"
DONE = "done"
FAILED = "failed"

_POLL_SECONDS = 0.5
_ISSUE_COLUMNS = ["date", "variable", "kind", "message", "action"]


def _day_str(day: pd.Timestamp) -> str:
    return str(pd.Timestamp(day).date())


# ---------------------------------------------------------------------
# Result containers
# ---------------------------------------------------------------------


@dataclass(frozen=True)
class VariableOutcome:
    """Cell means for one (day, variable), or the reason there are none."""

    variable: str
    means: Optional[pd.Series]
    variance: Optional[pd.Series] = None
    model: Optional[VariogramModel] = None
    n_obs: int = 0
    issues: Tuple[Issue, ...] = ()

    @property
    def ok(self) -> bool:
        return self.means is not None


@dataclass(frozen=True)
class DayResult:
    """Final state of one day: its rows (all cells) plus contained issues."""

    date: pd.Timestamp
    status: str
    rows: pd.DataFrame
    issues: Tuple[Issue, ...] = ()
    seconds: float = 0.0
    value_columns: Tuple[str, ...] = ()

    @property
    def produced_output(self) -> bool:
        """True if at least one cell of one variable got a value."""
        if not self.value_columns:
            return False
        values = self.rows[list(self.value_columns)].to_numpy(dtype=float)
        return bool(np.isfinite(values).any())


@dataclass
class RunResult:
    """Merged output of a run."""

    table: pd.DataFrame
    days: Tuple[DayResult, ...]
    issues: pd.DataFrame
    seconds: float = 0.0
    outputs: Dict[str, str] = field(default_factory=dict)

    @property
    def n_days(self) -> int:
        return len(self.days)

    @property
    def failed_days(self) -> List[str]:
        return [_day_str(d.date) for d in self.days if d.status == FAILED]

    @property
    def produced_output(self) -> bool:
        return any(d.produced_output for d in self.days)

    @property
    def exit_code(self) -> int:
        """``0`` if at least one day produced a value, ``1`` otherwise."""
        return 0 if self.produced_output else 1

    def summary(self) -> dict:
        kinds = (
            self.issues.groupby("kind").size().astype(int).to_dict()
            if not self.issues.empty
            else {}
        )
        return {
            "n_days": self.n_days,
            "n_rows": int(len(self.table)),
            "n_failed_days": len(self.failed_days),
            "failed_days": self.failed_days,
            "issues_by_kind": kinds,
            "seconds": round(float(self.seconds), 3),
            "exit_code": self.exit_code,
            "outputs": dict(self.outputs),
        }


# ---------------------------------------------------------------------
# One (day, variable)
# ---------------------------------------------------------------------


def interpolate_variable(
    day_table: pd.DataFrame,
    variable: str,
    lattice: PredictionLattice,
    plan: AggregationPlan,
    config: PipelineConfig,
    *,
    date: str = "",
) -> VariableOutcome:
    """
    Variogram, kriging and areal aggregation for one variable of one day.

    Non-fatal errors are turned into :class:`Issue` records; the returned
    outcome has ``means=None`` when the variable was skipped.
    """
    x, y, z = day_observations(day_table, variable)
    n = int(z.size)
    issues: List[Issue] = []
    try:
        if n < MIN_OBSERVATIONS:
            raise InsufficientDataError(
                f"{n} non-missing observation(s); at least {MIN_OBSERVATIONS} are required"
            )
        try:
            emp = empirical_variogram(
                x,
                y,
                z,
                n_lags=config.n_lags,
                max_lag_fraction=config.max_lag_fraction,
            )
            model = fit_variogram(emp, policy=config.fit_policy)
        except FitNonconvergenceError as e:
            if config.on_fit_failure == "skip":
                raise
            model = VariogramModel.flat(z)
            issues.append(Issue.from_error(date, variable, e, action="fallback"))

        values, variance = krige_lattice(
            x, y, z, model, lattice, mask=plan.mask(lattice.shape)
        )
    except (InsufficientDataError, FitNonconvergenceError, PredictionFailureError) as e:
        issues.append(Issue.from_error(date, variable, e, action="skipped"))
        return VariableOutcome(variable=variable, means=None, n_obs=n, issues=tuple(issues))

    means = aggregate_to_cells(rasterize(values, lattice, plan), plan)
    var_means = (
        aggregate_to_cells(rasterize(variance, lattice, plan), plan)
        if config.include_variance
        else None
    )
    return VariableOutcome(
        variable=variable,
        means=means,
        variance=var_means,
        model=model,
        n_obs=n,
        issues=tuple(issues),
    )


# ---------------------------------------------------------------------
# One day (the unit of parallelism)
# ---------------------------------------------------------------------


def _output_columns(config: PipelineConfig) -> List[str]:
    cols = list(config.variables)
    if config.include_variance:
        cols += [f"{v}_var" for v in config.variables]
    return cols


def _empty_rows(day: pd.Timestamp, plan: AggregationPlan, config: PipelineConfig) -> pd.DataFrame:
    rows = pd.DataFrame(
        {
            config.date_col: pd.Timestamp(day),
            config.cell_id_col: plan.cell_ids,
        }
    )
    for c in _output_columns(config):
        rows[c] = np.nan
    return rows


def run_day(
    day: pd.Timestamp,
    day_table: pd.DataFrame,
    lattice: PredictionLattice,
    plan: AggregationPlan,
    config: PipelineConfig,
) -> DayResult:
    """
    Interpolate every requested variable of one day.

    Returns a :class:`DayResult` whose ``rows`` cover every grid cell. The
    day is ``FAILED`` when at least one variable was skipped, ``DONE``
    otherwise (flat-model fallbacks do not fail a day).
    """
    t0 = time.time()
    date = _day_str(day)
    rows = _empty_rows(day, plan, config)
    issues: List[Issue] = []

    for variable in config.variables:
        out = interpolate_variable(day_table, variable, lattice, plan, config, date=date)
        issues.extend(out.issues)
        if not out.ok:
            continue
        # explicit key join on cell id
        rows[variable] = out.means.reindex(plan.cell_ids).to_numpy(dtype=float)
        if out.variance is not None:
            rows[f"{variable}_var"] = out.variance.reindex(plan.cell_ids).to_numpy(dtype=float)

    skipped = any(i.action == "skipped" for i in issues)
    return DayResult(
        date=pd.Timestamp(day),
        status=FAILED if skipped else DONE,
        rows=rows,
        issues=tuple(issues),
        seconds=time.time() - t0,
        value_columns=tuple(_output_columns(config)),
    )


def _failed_day(
    day: pd.Timestamp,
    plan: AggregationPlan,
    config: PipelineConfig,
    err: BaseException,
    seconds: float = 0.0,
) -> DayResult:
    date = _day_str(day)
    issues = tuple(Issue.from_error(date, v, err, action="skipped") for v in config.variables)
    return DayResult(
        date=pd.Timestamp(day),
        status=FAILED,
        rows=_empty_rows(day, plan, config),
        issues=issues,
        seconds=seconds,
        value_columns=tuple(_output_columns(config)),
    )


# ---------------------------------------------------------------------
# Merge
# ---------------------------------------------------------------------


def merge_day_results(
    results: Iterable[DayResult],
    plan: AggregationPlan,
    config: PipelineConfig,
) -> pd.DataFrame:
    """
    Concatenate per-day row sets into one long table.

    Rules: one batch per day (a duplicated day raises ``ValueError``), days
    ascending, cells in grid order within a day, and every batch must cover
    exactly the grid's cell ids.
    """
    results = sorted(results, key=lambda r: r.date)
    seen = [r.date for r in results]
    if len(set(seen)) != len(seen):
        dups = sorted({_day_str(d) for d in seen if seen.count(d) > 1})
        raise ValueError(f"Duplicated day batches: {dups}")

    cols = [config.date_col, config.cell_id_col] + _output_columns(config)
    if not results:
        return pd.DataFrame(columns=cols)

    expected = pd.Index(plan.cell_ids)
    parts = []
    for r in results:
        ids = pd.Index(r.rows[config.cell_id_col])
        if len(ids) != len(expected) or not ids.equals(expected):
            raise ValueError(f"Row set for {_day_str(r.date)} does not cover the grid cells.")
        parts.append(r.rows[cols])

    table = pd.concat(parts, ignore_index=True)
    table[config.date_col] = pd.to_datetime(table[config.date_col])
    return table


def issues_frame(results: Iterable[DayResult]) -> pd.DataFrame:
    """All contained issues as a table, ordered by date then variable."""
    recs = [i.to_dict() for r in results for i in r.issues]
    if not recs:
        return pd.DataFrame(columns=_ISSUE_COLUMNS)
    return (
        pd.DataFrame(recs, columns=_ISSUE_COLUMNS)
        .sort_values(["date", "variable"], kind="stable")
        .reset_index(drop=True)
    )


# ---------------------------------------------------------------------
# Driver
# ---------------------------------------------------------------------


def _split_by_day(
    stations: pd.DataFrame,
    days: Sequence[pd.Timestamp],
    config: PipelineConfig,
) -> Dict[pd.Timestamp, pd.DataFrame]:
    groups = {pd.Timestamp(d): g for d, g in stations.groupby(config.date_col, sort=False)}
    empty = stations.iloc[0:0]
    return {pd.Timestamp(d): groups.get(pd.Timestamp(d), empty) for d in days}


def _log_day(result: DayResult, pbar) -> None:
    n_skip = sum(1 for i in result.issues if i.action == "skipped")
    log.info(
        "%s %s in %.2fs (%d variable(s) skipped, %d fallback(s))",
        _day_str(result.date),
        result.status,
        result.seconds,
        n_skip,
        len(result.issues) - n_skip,
    )
    pbar.update(1)


DayTask = Callable[
    [pd.Timestamp, pd.DataFrame, PredictionLattice, AggregationPlan, PipelineConfig],
    DayResult,
]


def _run_in_process(
    per_day: Dict[pd.Timestamp, pd.DataFrame],
    grid: GridDefinition,
    config: PipelineConfig,
    pbar,
    day_task: DayTask = run_day,
) -> List[DayResult]:
    results = []
    for day, table in per_day.items():
        t0 = time.time()
        try:
            res = day_task(day, table, grid.lattice, grid.plan, config)
        except Exception as e:  # contained per day, siblings keep running
            log.exception("Day %s crashed", _day_str(day))
            res = _failed_day(day, grid.plan, config, e, time.time() - t0)
        results.append(res)
        _log_day(res, pbar)
    return results


def _worker_ready() -> int:
    return os.getpid()


def _start_workers(executor, n_workers: int) -> None:
    """Block until the pool has spawned its workers and they imported the
    package, so start-up never counts against a day's timeout."""
    wait([executor.submit(_worker_ready) for _ in range(n_workers)])


def _run_in_pool(
    per_day: Dict[pd.Timestamp, pd.DataFrame],
    grid: GridDefinition,
    config: PipelineConfig,
    n_workers: int,
    pbar,
    day_task: DayTask = run_day,
) -> List[DayResult]:
    """
    Run the days on a loky process pool.

    At most one day per idle worker is in flight: a day is submitted only
    when a worker is free to start it at once, and its timeout clock starts
    at that submission. Days still waiting in this process stay ``PENDING``
    and are never timed.

    A timed-out day keeps its worker busy; that worker is written off until
    the pool is torn down. When every worker is written off, the pool is
    killed and a fresh one started for the remaining days.
    """
    timeout = config.day_timeout
    queue = list(per_day.items())
    state = {day: PENDING for day in per_day}
    started: Dict[pd.Timestamp, float] = {}
    in_flight: Dict = {}
    results: List[DayResult] = []
    executor = None
    hung = 0

    while queue or in_flight:
        if queue and hung >= n_workers:
            # every worker is stuck on a timed-out day
            executor.shutdown(wait=False, kill_workers=True)
            executor, hung = None, 0

        while queue and len(in_flight) < n_workers - hung:
            fresh = get_reusable_executor(max_workers=n_workers)
            if fresh is not executor:
                # new or replaced pool: no written-off workers
                executor, hung = fresh, 0
                if timeout is not None:
                    _start_workers(executor, n_workers)
            day, table = queue.pop(0)
            fut = executor.submit(day_task, day, table, grid.lattice, grid.plan, config)
            in_flight[fut] = day
            state[day] = RUNNING
            started[day] = time.time()

        done, _ = wait(
            list(in_flight),
            timeout=_POLL_SECONDS if timeout is not None else None,
            return_when=FIRST_COMPLETED,
        )
        now = time.time()
        for fut in done:
            day = in_flight.pop(fut)
            try:
                res = fut.result()
            except Exception as e:  # worker crash or unpicklable result
                log.error("Day %s crashed: %s", _day_str(day), e)
                res = _failed_day(day, grid.plan, config, e, now - started[day])
            state[day] = res.status
            results.append(res)
            _log_day(res, pbar)

        if timeout is None:
            continue
        for fut, day in list(in_flight.items()):
            if now - started[day] <= timeout:
                continue
            fut.cancel()
            del in_flight[fut]
            hung += 1
            err = DayTimeoutError(f"day exceeded {timeout:g}s")
            res = _failed_day(day, grid.plan, config, err, now - started[day])
            state[day] = FAILED
            results.append(res)
            _log_day(res, pbar)

    if hung and executor is not None:
        # hung workers would otherwise stay busy in the reusable pool
        executor.shutdown(wait=False, kill_workers=True)
    log.debug("Day states: %s", dict(Counter(state.values())))
    return results


def interpolate_days(
    stations: pd.DataFrame,
    grid: GridDefinition,
    config: PipelineConfig,
    *,
    show_progress: bool = True,
    day_task: DayTask = run_day,
) -> RunResult:
    """
    Run the per-day pipeline for every selected day and merge the results.

    Parameters
    ----------
    stations : DataFrame
        Output of :func:`~StationKrigPy.stations.prepare_stations`.
    grid : GridDefinition
        Output of :func:`~StationKrigPy.grid.build_grid_definition`.
    config : PipelineConfig
        Run configuration (days, variables, pool size, fit policy, ...).
    show_progress : bool
        Display a tqdm progress bar over days.
    day_task : callable
        Per-day unit of work with the signature of :func:`run_day`. Must be
        a picklable module-level function when days run in worker processes.

    Returns
    -------
    RunResult
        Merged table (``n_days * n_cells`` rows), per-day results and the
        issue table.

    Raises
    ------
    SetupError
        If no day falls in the processing window.
    """
    t_all0 = time.time()
    days = select_days(stations, config)
    if not days:
        raise SetupError(
            f"No days to process in window [{config.start or '-inf'}, {config.end or '+inf'}]."
        )
    per_day = _split_by_day(stations, days, config)

    n_workers = min(config.effective_workers(), len(days))
    in_process = n_workers == 1 and config.day_timeout is None
    log.info(
        "Interpolating %d day(s) x %d variable(s) on %d cells with %s",
        len(days),
        len(config.variables),
        grid.plan.n_cells,
        "1 process" if in_process else f"{n_workers} worker(s)",
    )

    with tqdm(total=len(days), desc="Days", unit="day", disable=not show_progress) as pbar:
        if in_process:
            results = _run_in_process(per_day, grid, config, pbar, day_task)
        else:
            results = _run_in_pool(per_day, grid, config, n_workers, pbar, day_task)

    results = sorted(results, key=lambda r: r.date)
    table = merge_day_results(results, grid.plan, config)
    run = RunResult(
        table=table,
        days=tuple(results),
        issues=issues_frame(results),
        seconds=time.time() - t_all0,
    )
    n_failed = len(run.failed_days)
    log.info(
        "Done. %d day(s) in %.1fs, %d failed, %d issue(s)",
        run.n_days,
        run.seconds,
        n_failed,
        len(run.issues),
    )
    return run


def write_outputs(run: RunResult, config: PipelineConfig) -> RunResult:
    """Persist the table, the issue table and the run summary where configured."""
    written = {}
    p = save_df(run.table, config.out_path, parquet_compression=config.parquet_compression)
    if p:
        written["table"] = p
    p = save_df(run.issues, config.failures_path, parquet_compression=config.parquet_compression)
    if p:
        written["issues"] = p
    run.outputs.update(written)
    if config.summary_path:
        run.outputs["summary"] = config.summary_path
        save_json({"config": config.to_dict(), **run.summary()}, config.summary_path)
    return run


def run_pipeline(
    stations: Union[str, pd.DataFrame],
    grid: Union[str, gpd.GeoDataFrame],
    config: PipelineConfig,
    *,
    show_progress: bool = True,
) -> RunResult:
    """
    Full run: setup, day-parallel interpolation, persistence.

    ``stations`` and ``grid`` may be file paths or in-memory tables. Any
    :class:`SetupError` is raised before the first day is dispatched.
    """
    if isinstance(stations, str):
        st = load_stations(stations, config)
    else:
        st = prepare_stations(stations, config)
    if isinstance(grid, str):
        cells = load_grid(grid, config)
    else:
        cells = prepare_grid(grid, config)
    grid_def = build_grid_definition(cells, config)

    run = interpolate_days(st, grid_def, config, show_progress=show_progress)
    return write_outputs(run, config)
