# tests/test_crossval.py
import numpy as np
import pandas as pd
import pytest

from StationKrigPy.crossval import cross_validate_days, loso_cross_validate
from StationKrigPy.exceptions import InsufficientDataError
from StationKrigPy.stations import prepare_stations


@pytest.fixture
def stations(raw_stations, run_config):
    return prepare_stations(raw_stations, run_config)


def _day(st, day):
    return st[st["date"] == pd.Timestamp(day)]


def test_loso_predicts_every_station(stations, run_config):
    table, metrics = loso_cross_validate(_day(stations, "2020-01-01"), "tmax", run_config)
    assert list(table.columns) == ["station", "y_true", "y_pred", "variance", "flat_model", "status"]
    assert len(table) == 6
    assert (table["status"] == "ok").all()
    assert np.isfinite(table["y_pred"]).all()
    assert metrics["n"] == 6
    assert metrics["RMSE"] >= metrics["MAE"] >= 0.0


def test_loso_constant_field(stations, run_config):
    table, metrics = loso_cross_validate(_day(stations, "2020-01-01"), "prcp", run_config)
    assert table["flat_model"].all()
    assert table["y_pred"].to_numpy() == pytest.approx([5.0] * 6)
    assert metrics["MAE"] == pytest.approx(0.0)


def test_loso_needs_three_stations(stations, run_config):
    with pytest.raises(InsufficientDataError):
        loso_cross_validate(_day(stations, "2020-01-02"), "prcp", run_config)


def test_cross_validate_days(stations, run_config):
    scores = cross_validate_days(stations, run_config, show_progress=False)
    assert len(scores) == 3 * 2
    assert list(scores["variable"][:2]) == ["tmax", "prcp"]
    empty = scores[scores["date"] == pd.Timestamp("2020-01-03")]
    assert (empty["n"] == 0).all()
    assert empty["RMSE"].isna().all()


def test_cross_validate_selected_days(stations, run_config):
    scores = cross_validate_days(stations, run_config, days=["2020-01-02"], show_progress=False)
    assert len(scores) == 2
    assert scores.loc[scores["variable"] == "tmax", "n"].item() == 6
    assert scores.loc[scores["variable"] == "prcp", "n"].item() == 0
