"""
Shared fixtures: a small synthetic Sentinel-2 datacube with known NDRE1 change.

Grid: 20 x 20 pixels of 10 m in EPSG:32737.

Before (2019) every valid pixel has b08=0.3, b05=0.1 -> NDRE1 = 0.5.
After (2024):
    rows 0-9,  cols 0-9   b08=0.2,  b05=0.2  -> NDRE1 0.0 (change -0.5, decrease)
    rows 0-9,  cols 10-19 b08=0.36, b05=0.04 -> NDRE1 0.8 (change +0.3, increase)
    rows 10-19            unchanged          -> change 0.0 (no change)
Pixel (0, 0) is cloud shadow in every 2024 scene, so it is masked.

The Sentinel-1 cube on the same grid has VV = -12 dB in the matching 2019
scenes and, in 2024, -15 dB on rows 0-9, cols 0-9 (change -3) and -12 dB
elsewhere. Ascending, EW-mode, HH-only and out-of-window scenes hold 0 dB.
"""

import numpy as np
import pandas as pd
import pytest
import rioxarray  # noqa: F401
import xarray as xr
from shapely.geometry import box

from landcover_change.areas import DateWindow, StudyArea
from landcover_change.config import RunConfig, SamplingConfig
from landcover_change.provider import InMemoryProvider


CRS = "EPSG:32737"
SIZE = 20
RES = 10.0
X0, Y0 = 300000.0, 9700200.0
X = X0 + RES / 2 + RES * np.arange(SIZE)
Y = Y0 - RES / 2 - RES * np.arange(SIZE)

SCL_VEGETATION = 4
SCL_SHADOW = 3
SCL_CLOUD_HIGH = 9


def _scene(b08, b05, scl, b04=0.05):
    shape = (SIZE, SIZE)
    return {
        'b04': np.broadcast_to(np.float32(b04), shape).astype(np.float32),
        'b05': np.broadcast_to(b05, shape).astype(np.float32),
        'b08': np.broadcast_to(b08, shape).astype(np.float32),
        'scl': np.broadcast_to(scl, shape).astype(np.float32),
    }


def before_scene(cloud_block=False, value=0.3):
    b08 = np.full((SIZE, SIZE), value, dtype=np.float32)
    scl = np.full((SIZE, SIZE), SCL_VEGETATION, dtype=np.float32)
    if cloud_block:
        b08[15:, :5] = 5.0
        scl[15:, :5] = SCL_CLOUD_HIGH
    return _scene(b08, 0.1, scl)


def after_scene():
    b08 = np.full((SIZE, SIZE), 0.3, dtype=np.float32)
    b05 = np.full((SIZE, SIZE), 0.1, dtype=np.float32)
    b08[:10, :10], b05[:10, :10] = 0.2, 0.2
    b08[:10, 10:], b05[:10, 10:] = 0.36, 0.04
    scl = np.full((SIZE, SIZE), SCL_VEGETATION, dtype=np.float32)
    scl[0, 0] = SCL_SHADOW
    return _scene(b08, b05, scl)


def make_cube() -> xr.Dataset:
    scenes = [
        ("2019-04-20T08:00", 5.0, before_scene()),
        ("2019-05-10T08:00", 10.0, before_scene(cloud_block=True)),
        ("2019-05-20T08:00", 35.0, before_scene(value=9.0)),   # too cloudy
        ("2019-05-30T08:00", 2.0, before_scene()),
        ("2019-07-01T08:00", 1.0, before_scene(value=9.0)),    # outside window
        ("2024-04-25T08:00", 3.0, after_scene()),
        ("2024-05-15T08:00", 12.0, after_scene()),
        ("2024-06-15T10:00", 8.0, after_scene()),              # last window day
    ]
    times = pd.to_datetime([t for t, _, _ in scenes])
    cloud = [c for _, c, _ in scenes]
    data_vars = {
        band: (('time', 'y', 'x'), np.stack([s[band] for _, _, s in scenes]))
        for band in ('b04', 'b05', 'b08', 'scl')
    }
    cube = xr.Dataset(
        data_vars,
        coords={'time': times, 'y': Y, 'x': X, 'cloud_cover': ('time', cloud)},
    )
    return cube.rio.write_crs(CRS)


def _vv(value, top_left=None):
    vv = np.full((SIZE, SIZE), value, dtype=np.float32)
    if top_left is not None:
        vv[:10, :10] = top_left
    return vv


def make_sar_cube() -> xr.Dataset:
    scenes = [
        ("2019-04-22T03:00", "IW", "DESCENDING", "VV+VH", _vv(-12.0)),
        ("2019-05-04T15:00", "IW", "ASCENDING", "VV+VH", _vv(0.0)),
        ("2019-05-16T03:00", "EW", "DESCENDING", "VV+VH", _vv(0.0)),
        ("2019-05-28T03:00", "IW", "DESCENDING", "VV+VH", _vv(-12.0)),
        ("2024-04-24T03:00", "IW", "DESCENDING", "VV+VH", _vv(-12.0, top_left=-15.0)),
        ("2024-05-06T03:00", "IW", "DESCENDING", "HH+HV", _vv(0.0)),
        ("2024-05-18T03:00", "IW", "DESCENDING", "VV+VH", _vv(-12.0, top_left=-15.0)),
        ("2024-07-01T03:00", "IW", "DESCENDING", "VV+VH", _vv(0.0)),
    ]
    cube = xr.Dataset(
        {'VV': (('time', 'y', 'x'), np.stack([s[4] for s in scenes]))},
        coords={
            'time': pd.to_datetime([s[0] for s in scenes]),
            'y': Y,
            'x': X,
            'instrument_mode': ('time', [s[1] for s in scenes]),
            'orbit_pass': ('time', [s[2] for s in scenes]),
            'polarisations': ('time', [s[3] for s in scenes]),
        },
    )
    return cube.rio.write_crs(CRS)


@pytest.fixture
def cube():
    return make_cube()


@pytest.fixture
def provider(cube):
    return InMemoryProvider(cube)


@pytest.fixture
def sar_provider(cube):
    return InMemoryProvider(cube, sar_datacube=make_sar_cube())


@pytest.fixture
def study_area():
    return StudyArea("test-area", box(X0, Y0 - SIZE * RES, X0 + SIZE * RES, Y0), crs=CRS)


@pytest.fixture
def before_window():
    return DateWindow(2019, "04-15", "06-15")


@pytest.fixture
def after_window():
    return DateWindow(2024, "04-15", "06-15")


@pytest.fixture
def config(before_window, after_window):
    return RunConfig(
        before=before_window,
        after=after_window,
        sampling=SamplingConfig(points_per_class=10, scale=10.0, seed=7),
    )


def make_classified(values) -> xr.DataArray:
    """uint8 class raster on the first rows/cols of the test grid."""
    from landcover_change.change import CLASS_NODATA

    arr = np.asarray(values, dtype=np.uint8)
    ny, nx = arr.shape
    da = xr.DataArray(arr, dims=('y', 'x'), coords={'y': Y[:ny], 'x': X[:nx]},
                      name='change_class')
    return da.rio.write_crs(CRS).rio.write_nodata(CLASS_NODATA)
