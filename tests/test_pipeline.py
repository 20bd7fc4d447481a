# tests/test_pipeline.py
import json
import time

import numpy as np
import pandas as pd
import pytest

from StationKrigPy.config import PipelineConfig
from StationKrigPy.exceptions import DayTimeoutError, SetupError
from StationKrigPy.grid import build_grid_definition, prepare_grid
from StationKrigPy.pipeline import (
    DONE,
    FAILED,
    _failed_day,
    interpolate_days,
    interpolate_variable,
    merge_day_results,
    run_day,
    run_pipeline,
)
from StationKrigPy.stations import prepare_stations


# ---------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------


def _setup(raw_stations, cells, config):
    st = prepare_stations(raw_stations, config)
    grid = build_grid_definition(prepare_grid(cells, config), config)
    return st, grid


def _day(st, day):
    return st[st["date"] == pd.Timestamp(day)]


# ---------------------------------------------------------------------
# One (day, variable) and one day
# ---------------------------------------------------------------------


def test_variable_with_structure_is_interpolated(raw_stations, cells, run_config):
    st, grid = _setup(raw_stations, cells, run_config)
    out = interpolate_variable(
        _day(st, "2020-01-01"), "tmax", grid.lattice, grid.plan, run_config, date="2020-01-01"
    )
    assert out.ok
    assert out.n_obs == 6
    assert out.model is not None and not out.model.is_flat
    assert list(out.means.index) == [1, 2, 3, 4]
    assert np.isfinite(out.means.to_numpy()).all()
    assert out.means.between(0.0, 5.0).all()
    assert out.issues == ()


def test_constant_field_falls_back_to_flat_model(raw_stations, cells, run_config):
    st, grid = _setup(raw_stations, cells, run_config)
    out = interpolate_variable(
        _day(st, "2020-01-01"), "prcp", grid.lattice, grid.plan, run_config, date="2020-01-01"
    )
    assert out.ok
    assert out.model.is_flat
    assert out.means.to_numpy() == pytest.approx([5.0] * 4)
    assert [(i.kind, i.action) for i in out.issues] == [("fit_nonconvergence", "fallback")]


def test_constant_field_skipped_on_request(raw_stations, cells, run_config):
    config = run_config.with_overrides(on_fit_failure="skip")
    st, grid = _setup(raw_stations, cells, config)
    out = interpolate_variable(_day(st, "2020-01-01"), "prcp", grid.lattice, grid.plan, config)
    assert not out.ok
    assert [(i.kind, i.action) for i in out.issues] == [("fit_nonconvergence", "skipped")]


def test_day_with_one_insufficient_variable(raw_stations, cells, run_config):
    st, grid = _setup(raw_stations, cells, run_config)
    res = run_day(
        pd.Timestamp("2020-01-02"), _day(st, "2020-01-02"), grid.lattice, grid.plan, run_config
    )
    assert res.status == FAILED
    assert len(res.rows) == 4
    assert np.isfinite(res.rows["tmax"]).all()
    assert res.rows["prcp"].isna().all()
    assert [(i.variable, i.kind) for i in res.issues] == [("prcp", "insufficient_data")]
    assert res.produced_output


def test_day_without_observations(raw_stations, cells, run_config):
    st, grid = _setup(raw_stations, cells, run_config)
    res = run_day(
        pd.Timestamp("2020-01-03"), _day(st, "2020-01-03"), grid.lattice, grid.plan, run_config
    )
    assert res.status == FAILED
    assert res.rows[["tmax", "prcp"]].isna().all().all()
    assert {i.kind for i in res.issues} == {"insufficient_data"}
    assert not res.produced_output


def test_failed_day_from_timeout(raw_stations, cells, run_config):
    _, grid = _setup(raw_stations, cells, run_config)
    res = _failed_day(pd.Timestamp("2020-01-01"), grid.plan, run_config, DayTimeoutError("too slow"))
    assert res.status == FAILED
    assert list(res.rows["cell_id"]) == [1, 2, 3, 4]
    assert [i.kind for i in res.issues] == ["timeout", "timeout"]
    assert not res.produced_output


def test_merge_rejects_duplicated_days(raw_stations, cells, run_config):
    st, grid = _setup(raw_stations, cells, run_config)
    day = pd.Timestamp("2020-01-01")
    res = run_day(day, _day(st, "2020-01-01"), grid.lattice, grid.plan, run_config)
    with pytest.raises(ValueError):
        merge_day_results([res, res], grid.plan, run_config)


# ---------------------------------------------------------------------
# Whole runs
# ---------------------------------------------------------------------


def test_run_covers_every_day_and_cell(raw_stations, cells, run_config):
    st, grid = _setup(raw_stations, cells, run_config)
    run = interpolate_days(st, grid, run_config, show_progress=False)

    table = run.table
    assert list(table.columns) == ["date", "cell_id", "tmax", "prcp"]
    assert len(table) == 3 * 4
    assert not table.duplicated(["date", "cell_id"]).any()
    assert table["date"].is_monotonic_increasing
    assert list(table["cell_id"][:4]) == [1, 2, 3, 4]

    assert [d.status for d in run.days] == [DONE, FAILED, FAILED]
    assert run.failed_days == ["2020-01-02", "2020-01-03"]
    assert run.exit_code == 0

    day1 = table[table["date"] == pd.Timestamp("2020-01-01")]
    assert day1["prcp"].to_numpy() == pytest.approx([5.0] * 4)
    day3 = table[table["date"] == pd.Timestamp("2020-01-03")]
    assert day3[["tmax", "prcp"]].isna().all().all()

    summary = run.summary()
    assert summary["n_rows"] == 12
    assert summary["issues_by_kind"] == {"fit_nonconvergence": 1, "insufficient_data": 3}


def test_run_is_repeatable(raw_stations, cells, run_config):
    st, grid = _setup(raw_stations, cells, run_config)
    a = interpolate_days(st, grid, run_config, show_progress=False)
    b = interpolate_days(st, grid, run_config, show_progress=False)
    pd.testing.assert_frame_equal(a.table, b.table)


def test_window_excludes_days(raw_stations, cells, run_config):
    config = run_config.with_overrides(end="2020-01-02")
    st, grid = _setup(raw_stations, cells, config)
    run = interpolate_days(st, grid, config, show_progress=False)
    days = run.table["date"].dt.strftime("%Y-%m-%d").unique().tolist()
    assert days == ["2020-01-01", "2020-01-02"]


def test_explicit_day_without_rows(raw_stations, cells, run_config):
    config = run_config.with_overrides(days=("2020-01-01", "2020-01-05"))
    st, grid = _setup(raw_stations, cells, config)
    run = interpolate_days(st, grid, config, show_progress=False)
    assert len(run.table) == 8
    late = run.table[run.table["date"] == pd.Timestamp("2020-01-05")]
    assert late[["tmax", "prcp"]].isna().all().all()


def test_no_output_exit_code(raw_stations, cells, run_config):
    config = run_config.with_overrides(days=("2020-01-03",))
    st, grid = _setup(raw_stations, cells, config)
    run = interpolate_days(st, grid, config, show_progress=False)
    assert run.exit_code == 1


def test_no_days_in_window(raw_stations, cells, run_config):
    config = run_config.with_overrides(start="2021-01-01")
    st, grid = _setup(raw_stations, cells, config)
    with pytest.raises(SetupError):
        interpolate_days(st, grid, config, show_progress=False)


def test_variance_columns(raw_stations, cells, run_config):
    config = run_config.with_overrides(include_variance=True, days=("2020-01-01",))
    st, grid = _setup(raw_stations, cells, config)
    run = interpolate_days(st, grid, config, show_progress=False)
    assert list(run.table.columns) == ["date", "cell_id", "tmax", "prcp", "tmax_var", "prcp_var"]
    assert (run.table["tmax_var"] >= -1e-9).all()
    assert run.table["prcp_var"].to_numpy() == pytest.approx([0.0] * 4)


def test_process_pool_matches_in_process(raw_stations, cells, run_config):
    st, grid = _setup(raw_stations, cells, run_config)
    serial = interpolate_days(st, grid, run_config, show_progress=False)
    pooled_config = run_config.with_overrides(n_jobs=2, day_timeout=120.0)
    pooled = interpolate_days(st, grid, pooled_config, show_progress=False)
    pd.testing.assert_frame_equal(serial.table, pooled.table)
    assert [d.status for d in pooled.days] == [d.status for d in serial.days]


# ---------------------------------------------------------------------
# Files in, files out
# ---------------------------------------------------------------------


def test_run_pipeline_from_files(tmp_path, raw_stations, cells, run_config):
    stations_path = tmp_path / "stations.csv"
    grid_path = tmp_path / "grid.geojson"
    raw_stations.to_csv(stations_path, index=False)
    cells.to_file(grid_path, driver="GeoJSON")

    config = run_config.with_overrides(
        out_path=str(tmp_path / "out" / "cells.csv"),
        failures_path=str(tmp_path / "out" / "issues.csv"),
        summary_path=str(tmp_path / "out" / "summary.json"),
    )
    run = run_pipeline(str(stations_path), str(grid_path), config, show_progress=False)

    table = pd.read_csv(config.out_path)
    assert len(table) == 12
    assert set(table["cell_id"]) == {1, 2, 3, 4}

    issues = pd.read_csv(config.failures_path)
    assert list(issues.columns) == ["date", "variable", "kind", "message", "action"]
    assert len(issues) == len(run.issues) == 4

    with open(config.summary_path, encoding="utf-8") as f:
        summary = json.load(f)
    assert summary["exit_code"] == 0
    assert summary["config"]["variables"] == ["tmax", "prcp"]
    assert set(summary["outputs"]) == {"table", "issues", "summary"}


def test_run_pipeline_bad_grid_path(tmp_path, raw_stations, run_config):
    with pytest.raises(SetupError):
        run_pipeline(raw_stations, str(tmp_path / "missing.gpkg"), run_config, show_progress=False)


def test_three_station_constant_field(cells):
    config = PipelineConfig(variables=("tmax",), n_points=400, n_jobs=1)
    raw = pd.DataFrame(
        {
            "station": ["A", "B", "C"],
            "date": ["2020-06-01"] * 3,
            "longitude": [-104.8, -104.2, -104.5],
            "latitude": [39.2, 39.3, 39.8],
            "tmax": [12.5, 12.5, 12.5],
        }
    )
    st, grid = _setup(raw, cells, config)
    run = interpolate_days(st, grid, config, show_progress=False)
    assert len(run.table) == 4
    assert run.table["tmax"].to_numpy() == pytest.approx([12.5] * 4)
    assert run.exit_code == 0


def test_grid_cell_without_geometry_is_fatal(raw_stations, cells, run_config):
    cells.loc[3, "geometry"] = None
    with pytest.raises(SetupError):
        run_pipeline(raw_stations, cells, run_config, show_progress=False)


# ---------------------------------------------------------------------
# Per-day timeout
# ---------------------------------------------------------------------


def _stalling_day(day, day_table, lattice, plan, config):
    # module-level so that worker processes can unpickle it
    if pd.Timestamp(day) == pd.Timestamp("2020-01-02"):
        time.sleep(120)
    return run_day(day, day_table, lattice, plan, config)


def _slow_day(day, day_table, lattice, plan, config):
    time.sleep(1.5)
    return run_day(day, day_table, lattice, plan, config)


def test_only_the_stalled_day_times_out(raw_stations, cells, run_config):
    config = run_config.with_overrides(n_jobs=2, day_timeout=5.0)
    st, grid = _setup(raw_stations, cells, config)
    t0 = time.time()
    run = interpolate_days(st, grid, config, show_progress=False, day_task=_stalling_day)
    assert time.time() - t0 < 60

    assert len(run.table) == 3 * 4
    status = {str(d.date.date()): d.status for d in run.days}
    assert status == {"2020-01-01": DONE, "2020-01-02": FAILED, "2020-01-03": FAILED}

    kinds = run.issues.groupby("date")["kind"].apply(set).to_dict()
    assert kinds["2020-01-02"] == {"timeout"}
    assert kinds["2020-01-03"] == {"insufficient_data"}
    assert kinds["2020-01-01"] == {"fit_nonconvergence"}

    stalled = run.table[run.table["date"] == pd.Timestamp("2020-01-02")]
    assert stalled[["tmax", "prcp"]].isna().all().all()
    day1 = run.table[run.table["date"] == pd.Timestamp("2020-01-01")]
    assert np.isfinite(day1["tmax"]).all()


def test_days_waiting_for_a_worker_are_not_timed(raw_stations, cells, run_config):
    # three 1.5 s days on one worker: the last one waits 3 s before it starts
    config = run_config.with_overrides(n_jobs=1, day_timeout=2.5)
    st, grid = _setup(raw_stations, cells, config)
    run = interpolate_days(st, grid, config, show_progress=False, day_task=_slow_day)
    assert "timeout" not in set(run.issues["kind"])
    assert len(run.table) == 3 * 4
