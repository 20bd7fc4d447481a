# src/StationKrigPy/cli.py
# SPDX-License-Identifier: MIT
"""
Command-line entry point: ``stationkrig``.

Exit status: ``0`` when at least one day produced a value, ``1`` when no day
did, ``2`` on a setup failure (nothing was dispatched).
"""

from __future__ import annotations

import argparse
import sys
from typing import List, Optional

from .config import FIT_FAILURE_ACTIONS, FIT_POLICIES, PipelineConfig
from .exceptions import SetupError
from .logs import set_warning_policy, setup_logger
from .pipeline import run_pipeline


def build_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(
        prog="stationkrig",
        description=(
            "Krige daily station observations onto a regular lattice and "
            "average them over grid polygons, one day per worker."
        ),
    )
    p.add_argument("--stations", required=True, help="Station table (.csv, .parquet, .feather)")
    p.add_argument("--grid", required=True, help="Polygon mesh (any format GeoPandas reads)")
    p.add_argument("--config", default=None, help="JSON configuration; flags below override it")

    sel = p.add_argument_group("selection")
    sel.add_argument("--variables", nargs="+", default=None)
    sel.add_argument("--start", default=None, help="First day (YYYY-MM-DD, inclusive)")
    sel.add_argument("--end", default=None, help="Last day (YYYY-MM-DD, inclusive)")
    sel.add_argument("--days", nargs="+", default=None, help="Explicit days to process")

    mod = p.add_argument_group("model")
    mod.add_argument("--n-points", type=int, default=None, help="Prediction lattice size")
    mod.add_argument("--fit-policy", choices=FIT_POLICIES, default=None)
    mod.add_argument("--on-fit-failure", choices=FIT_FAILURE_ACTIONS, default=None)
    mod.add_argument("--include-variance", action="store_true", default=None)
    mod.add_argument("--target-crs", default=None)
    mod.add_argument("--cell-id-col", default=None)

    run = p.add_argument_group("execution")
    run.add_argument("--n-jobs", type=int, default=None, help="-1 = all CPUs")
    run.add_argument("--max-workers", type=int, default=None)
    run.add_argument("--day-timeout", type=float, default=None, help="Seconds per day")
    run.add_argument("--no-progress", action="store_true")

    out = p.add_argument_group("output")
    out.add_argument("--out", dest="out_path", default=None)
    out.add_argument("--failures", dest="failures_path", default=None)
    out.add_argument("--summary", dest="summary_path", default=None)
    out.add_argument("--log-file", default=None)
    out.add_argument("--log-level", default="INFO")
    return p


def main(argv: Optional[List[str]] = None) -> int:
    args = build_parser().parse_args(argv)
    log = setup_logger(log_file=args.log_file, log_level=args.log_level)
    set_warning_policy(True)

    try:
        base = PipelineConfig.load(args.config) if args.config else PipelineConfig()
        config = base.with_overrides(
            variables=args.variables,
            start=args.start,
            end=args.end,
            days=args.days,
            n_points=args.n_points,
            fit_policy=args.fit_policy,
            on_fit_failure=args.on_fit_failure,
            include_variance=args.include_variance,
            target_crs=args.target_crs,
            cell_id_col=args.cell_id_col,
            n_jobs=args.n_jobs,
            max_workers=args.max_workers,
            day_timeout=args.day_timeout,
            out_path=args.out_path,
            failures_path=args.failures_path,
            summary_path=args.summary_path,
            log_file=args.log_file,
        )
        run = run_pipeline(
            args.stations, args.grid, config, show_progress=not args.no_progress
        )
    except SetupError as e:
        log.error("Setup failed: %s", e)
        return 2

    summary = run.summary()
    if summary["n_failed_days"]:
        log.warning(
            "%d of %d day(s) failed: %s",
            summary["n_failed_days"],
            summary["n_days"],
            ", ".join(summary["failed_days"][:20]),
        )
    if run.exit_code:
        log.error("No day produced output.")
    return run.exit_code


if __name__ == "__main__":  # pragma: no cover
    sys.exit(main())
