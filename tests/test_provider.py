import time

import dask
import dask.array as da
import geopandas as gpd
import numpy as np
import pytest
import xarray as xr
from rasterio.transform import Affine
from shapely.geometry import Point, box

from landcover_change.areas import StudyArea
from landcover_change.exceptions import ProviderError
from landcover_change.provider import (
    pixel_size,
    pixel_size_metres,
    resample_to_scale,
    study_area_mask,
)

from conftest import CRS, RES, SIZE, X, X0, Y, Y0, make_classified


def _lazy(fn, shape=(2, 2)):
    return xr.DataArray(
        da.from_delayed(dask.delayed(fn)(), shape=shape, dtype=float),
        dims=('y', 'x'),
    )


class TestMaterialize:
    def test_computes_lazy_objects(self, provider):
        arr = _lazy(lambda: np.ones((2, 2)))
        assert provider.materialize(arr).values.tolist() == [[1.0, 1.0], [1.0, 1.0]]

    def test_timeout(self, provider):
        def slow():
            time.sleep(2)
            return np.zeros((2, 2))

        with pytest.raises(ProviderError, match="timed out"):
            provider.materialize(_lazy(slow), timeout=0.1)

    def test_failure_is_wrapped(self, provider):
        def boom():
            raise RuntimeError("backend down")

        with pytest.raises(ProviderError, match="backend down"):
            provider.materialize(_lazy(boom))


class TestGridHelpers:
    def test_pixel_size(self, cube):
        assert pixel_size(cube) == RES
        assert pixel_size(cube.isel(x=[0])) == RES
        assert pixel_size(cube.isel(x=[0], y=[0])) is None

    def test_pixel_size_metres_geographic(self):
        raster = xr.DataArray(
            np.zeros((3, 3)), dims=('y', 'x'),
            coords={'y': [-2.0, -2.0001, -2.0002], 'x': [36.5, 36.5001, 36.5002]},
        ).rio.write_crs("EPSG:4326")
        assert pixel_size_metres(raster) == pytest.approx(11.13, abs=0.05)
        assert pixel_size_metres(make_classified([[0, 1]])) == RES

    def test_resample_geographic_scale_in_metres(self):
        raster = xr.DataArray(
            np.zeros((9, 9)), dims=('y', 'x'),
            coords={'y': -2.0 - 0.0001 * np.arange(9), 'x': 36.5 + 0.0001 * np.arange(9)},
        ).rio.write_crs("EPSG:4326")
        assert resample_to_scale(raster, 30.0).shape == (3, 3)

    def test_resample_to_scale(self, cube):
        assert resample_to_scale(cube, 10.0) is cube
        assert resample_to_scale(cube, None) is cube
        coarse = resample_to_scale(cube, 30.0)
        assert coarse['x'].values.tolist() == X[1::3].tolist()
        assert coarse['y'].values.tolist() == Y[1::3].tolist()

    def test_study_area_mask_reprojects(self, cube, study_area):
        lonlat = StudyArea("ll", study_area.geometry_in("EPSG:4326"), crs="EPSG:4326")
        mask = study_area_mask(cube, lonlat)
        assert mask.shape == (SIZE, SIZE)
        assert bool(mask.values[SIZE // 2, SIZE // 2])


class TestInMemoryQuery:
    def test_spatial_subset(self, provider, before_window):
        quarter = StudyArea("q", box(X0, Y0 - 100, X0 + 100, Y0), crs=CRS)
        subset = provider.query_images(quarter, before_window, ['b08'], 20.0)
        assert subset.sizes['x'] == 10
        assert subset.sizes['y'] == 10

    def test_empty_median_keeps_grid_and_crs(self, provider, study_area, cube):
        empty = cube.isel(time=[])
        median = provider.reduce_median(empty[['b08']])
        assert median['b08'].shape == (SIZE, SIZE)
        assert median['b08'].isnull().all()
        assert median.rio.crs.to_epsg() == 32737

    def test_sar_filters(self, sar_provider, study_area, before_window, after_window):
        before = sar_provider.query_sar(study_area, before_window)
        after = sar_provider.query_sar(study_area, after_window)
        assert before.sizes['time'] == 2
        assert after.sizes['time'] == 2
        assert set(before['orbit_pass'].values) == {"DESCENDING"}
        assert float(after['VV'].max()) < 0

    def test_sar_ascending(self, sar_provider, study_area, before_window):
        ascending = sar_provider.query_sar(study_area, before_window, orbit_pass="ascending")
        assert ascending.sizes['time'] == 1

    def test_sar_without_cube(self, provider, study_area, before_window):
        with pytest.raises(ProviderError, match="Sentinel-1"):
            provider.query_sar(study_area, before_window)


class TestExtractAtPoints:
    def test_values_nodata_and_outside(self, provider):
        raster = make_classified([[0, 1], [2, 255]])
        points = gpd.GeoDataFrame(
            geometry=[Point(X[0], Y[0]), Point(X[0], Y[1]), Point(X[1], Y[1]), Point(X[5], Y[0])],
            crs=CRS,
            index=[10, 11, 12, 13],
        )
        values = provider.extract_at_points(raster, points)
        assert values.index.tolist() == [10, 11, 12, 13]
        assert values.iloc[0] == 0.0
        assert values.iloc[1] == 2.0
        assert np.isnan(values.iloc[2])
        assert np.isnan(values.iloc[3])

    def test_empty_points(self, provider):
        raster = make_classified([[0, 1], [2, 1]])
        points = gpd.GeoDataFrame(geometry=[], crs=CRS)
        assert len(provider.extract_at_points(raster, points)) == 0

    def test_one_column_grid(self, provider):
        raster = make_classified([[2], [1]])
        points = gpd.GeoDataFrame(
            geometry=[Point(X[0], Y[0]), Point(X[0], Y[1]), Point(X[0] + 20, Y[0])],
            crs=CRS,
        )
        values = provider.extract_at_points(raster, points)
        assert values.iloc[0] == 2.0
        assert values.iloc[1] == 1.0
        assert np.isnan(values.iloc[2])

    def test_one_row_grid(self, provider):
        raster = make_classified([[0, 2, 1]])
        points = gpd.GeoDataFrame(
            geometry=[Point(X[1], Y[0]), Point(X[2], Y[0] - 3), Point(X[1], Y[1])],
            crs=CRS,
        )
        values = provider.extract_at_points(raster, points)
        assert values.iloc[0] == 2.0
        assert values.iloc[1] == 1.0
        assert np.isnan(values.iloc[2])

    def test_single_pixel_uses_stored_transform(self, provider):
        raster = make_classified([[2]]).rio.write_transform(Affine(RES, 0.0, X0, 0.0, -RES, Y0))
        points = gpd.GeoDataFrame(
            geometry=[Point(X[0] + 3, Y[0] - 3), Point(X[1], Y[0]), Point(X[0], Y[1])],
            crs=CRS,
        )
        values = provider.extract_at_points(raster, points)
        assert values.iloc[0] == 2.0
        assert values.isna().iloc[1:].all()

    def test_single_pixel_without_transform_is_nan(self, provider):
        points = gpd.GeoDataFrame(geometry=[Point(X[0], Y[0])], crs=CRS)
        values = provider.extract_at_points(make_classified([[2]]), points)
        assert values.isna().all()
