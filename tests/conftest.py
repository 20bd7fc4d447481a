# tests/conftest.py
import geopandas as gpd
import numpy as np
import pandas as pd
import pytest
from shapely.geometry import box

from StationKrigPy.config import PipelineConfig

STATIONS = {
    "S1": (-104.9, 39.1),
    "S2": (-104.1, 39.1),
    "S3": (-104.9, 39.9),
    "S4": (-104.1, 39.9),
    "S5": (-104.5, 39.5),
    "S6": (-104.3, 39.7),
}


@pytest.fixture
def cells() -> gpd.GeoDataFrame:
    """2 x 2 mesh of half-degree boxes in geographic coordinates."""
    geoms, ids = [], []
    for j, lat in enumerate([39.0, 39.5]):
        for i, lon in enumerate([-105.0, -104.5]):
            ids.append(1 + 2 * j + i)
            geoms.append(box(lon, lat, lon + 0.5, lat + 0.5))
    return gpd.GeoDataFrame({"cell_id": ids}, geometry=geoms, crs="EPSG:4326")


@pytest.fixture
def raw_stations() -> pd.DataFrame:
    """
    Six stations over three days.

    - 2020-01-01: tmax varies, prcp constant (degenerate variogram)
    - 2020-01-02: tmax varies, prcp reported by a single station
    - 2020-01-03: nothing reported
    """
    tmax = {
        "2020-01-01": [1.0, 2.0, 3.0, 4.0, 2.5, 3.2],
        "2020-01-02": [0.5, 1.8, 2.9, 4.4, 2.0, 3.5],
        "2020-01-03": [np.nan] * 6,
    }
    prcp = {
        "2020-01-01": [5.0] * 6,
        "2020-01-02": [np.nan, 1.2, np.nan, np.nan, np.nan, np.nan],
        "2020-01-03": [np.nan] * 6,
    }
    rows = []
    for day in tmax:
        for k, (sid, (lon, lat)) in enumerate(STATIONS.items()):
            rows.append(
                {
                    "station": sid,
                    "date": day,
                    "longitude": lon,
                    "latitude": lat,
                    "tmax": tmax[day][k],
                    "prcp": prcp[day][k],
                }
            )
    return pd.DataFrame(rows)


@pytest.fixture
def run_config() -> PipelineConfig:
    return PipelineConfig(variables=("tmax", "prcp"), n_points=400, n_jobs=1)
