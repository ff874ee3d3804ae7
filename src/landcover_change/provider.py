"""
Raster/vector provider used by the change detection pipeline.

The provider is the only place where lazy (dask-backed) xarray objects are
turned into concrete values. Everything else in the package builds xarray
expressions and hands them to ``RasterProvider.materialize`` when pixel
values are needed (sampling, point extraction, export).

Providers:
- InMemoryProvider: serves a prebuilt (time, y, x) datacube
- StacProvider: searches a STAC API and loads EOPF Sentinel-2 Zarr scenes

Sentinel-1 backscatter is queried separately through ``query_sar``.
"""

import concurrent.futures
import logging
from abc import ABC, abstractmethod
from typing import Optional, Sequence, Tuple

import geopandas as gpd
import numpy as np
import pandas as pd
import rioxarray  # noqa: F401  registers the .rio accessor
import shapely
import xarray as xr
from pyproj import Geod
from rasterio.transform import Affine
from rioxarray.exceptions import RioXarrayError

from .areas import DateWindow, StudyArea
from .data_loader import (
    build_datacube,
    connect_stac_catalog,
    empty_datacube,
    get_temporal_info,
    search_sentinel1,
    search_sentinel2,
)
from .exceptions import ChangeDetectionError, ProviderError

logger = logging.getLogger(__name__)

_GEOD = Geod(ellps="WGS84")


# ---------------------------------------------------------------------------
# Grid helpers
# ---------------------------------------------------------------------------

def raster_crs(obj):
    """CRS of an xarray object, or None if none is attached."""
    try:
        return obj.rio.crs
    except RioXarrayError:
        return None


def pixel_size(obj) -> Optional[float]:
    """
    Pixel size in CRS units, taken along x (or y for one-column grids).

    None when neither axis has 2 pixels.
    """
    for dim in ('x', 'y'):
        coords = np.asarray(obj[dim].values)
        if coords.size >= 2:
            return float(abs(coords[1] - coords[0]))
    return None


def pixel_size_metres(obj) -> Optional[float]:
    """
    Pixel size in metres.

    Geographic grids are measured on the WGS84 ellipsoid at the grid centre.
    """
    size = pixel_size(obj)
    crs = raster_crs(obj)
    if size is None or crs is None or not crs.is_geographic:
        return size

    lon = float(np.mean(obj['x'].values))
    lat = float(np.mean(obj['y'].values))
    if np.asarray(obj['x'].values).size >= 2:
        _, _, dist = _GEOD.inv(lon, lat, lon + size, lat)
    else:
        _, _, dist = _GEOD.inv(lon, lat, lon, lat + size)
    return float(dist)


def _scale_factor(raster, scale: Optional[float]) -> int:
    size = pixel_size_metres(raster)
    if scale is None or not size:
        return 1
    return max(int(round(scale / size)), 1)


def resample_to_scale(raster, scale: Optional[float]):
    """
    Nearest-neighbour subsample of ``raster`` onto a grid of roughly ``scale`` metres.

    Scales at or below the native pixel size return the raster unchanged.
    """
    factor = _scale_factor(raster, scale)
    if factor == 1:
        return raster
    offset = factor // 2
    return raster.isel(x=slice(offset, None, factor), y=slice(offset, None, factor))


def _axis_steps(raster) -> Optional[Tuple[float, float]]:
    """
    Signed (x, y) pixel steps in CRS units.

    One-pixel axes take the step from the stored transform, or assume
    square pixels from the other axis. None for a 1 x 1 grid without a
    transform.
    """
    steps = {}
    for dim in ('x', 'y'):
        coords = np.asarray(raster[dim].values)
        if coords.size >= 2:
            steps[dim] = float(coords[1] - coords[0])

    if len(steps) < 2:
        try:
            transform = raster.rio.transform()
        except RioXarrayError:
            transform = None
        if transform is not None and transform != Affine.identity():
            steps.setdefault('x', transform.a)
            steps.setdefault('y', transform.e)

    if 'x' in steps and 'y' not in steps:
        steps['y'] = -abs(steps['x'])
    elif 'y' in steps and 'x' not in steps:
        steps['x'] = abs(steps['y'])
    elif not steps:
        return None
    return steps['x'], steps['y']


def study_area_mask(obj, study_area: StudyArea) -> xr.DataArray:
    """
    Boolean (y, x) mask, True where the pixel centre lies in the study area.
    """
    crs = raster_crs(obj) or study_area.crs
    geom = study_area.geometry_in(crs)
    xx, yy = np.meshgrid(obj['x'].values, obj['y'].values)
    inside = shapely.intersects_xy(geom, xx, yy)
    return xr.DataArray(inside, dims=('y', 'x'), coords={'y': obj['y'], 'x': obj['x']})


def _nearest_index(coords: np.ndarray, values: np.ndarray, step: float):
    """Index of the pixel containing each value on a regular axis, and a validity flag."""
    if coords.size == 0:
        return np.zeros(values.shape, dtype=int), np.zeros(values.shape, dtype=bool)
    idx = np.rint((values - coords[0]) / step).astype(int)
    valid = (idx >= 0) & (idx < coords.size)
    return np.clip(idx, 0, coords.size - 1), valid


# ---------------------------------------------------------------------------
# Providers
# ---------------------------------------------------------------------------

class RasterProvider(ABC):
    """
    Collaborator boundary for scene queries and raster evaluation.

    Subclasses implement ``query_images``; reduction, sampling and point
    extraction are evaluated locally with xarray/numpy.
    """

    def __init__(self, timeout: Optional[float] = None):
        """
        Parameters
        ----------
        timeout : float, optional
            Default timeout in seconds for each materialization call.
            None waits indefinitely.
        """
        self.timeout = timeout

    @abstractmethod
    def query_images(
        self,
        study_area: StudyArea,
        window: DateWindow,
        bands: Sequence[str],
        max_cloud_cover: float,
    ) -> xr.Dataset:
        """
        Scenes over the study area's bounds inside ``window``.

        Returns
        -------
        xr.Dataset
            (time, y, x) cube holding at least ``bands`` and ``scl``; the
            time dimension may be empty.
        """

    def query_sar(
        self,
        study_area: StudyArea,
        window: DateWindow,
        polarisation: str = "VV",
        instrument_mode: str = "IW",
        orbit_pass: str = "DESCENDING",
    ) -> xr.Dataset:
        """
        Sentinel-1 backscatter scenes over the study area inside ``window``.

        Returns
        -------
        xr.Dataset
            (time, y, x) cube holding a ``polarisation`` variable; no SCL
        """
        raise ProviderError(f"{type(self).__name__} does not serve Sentinel-1 scenes")

    def reduce_median(self, datacube: xr.Dataset) -> xr.Dataset:
        """Per-pixel median over time, ignoring masked (NaN) observations."""
        if datacube.sizes.get('time', 0) == 0:
            empty = xr.Dataset(
                {
                    name: (('y', 'x'), np.full((datacube.sizes['y'], datacube.sizes['x']),
                                               np.nan, dtype=np.float32))
                    for name in datacube.data_vars
                },
                coords={'y': datacube['y'], 'x': datacube['x']},
            )
            crs = raster_crs(datacube)
            return empty.rio.write_crs(crs) if crs is not None else empty
        return datacube.median(dim='time', skipna=True, keep_attrs=True)

    def materialize(self, obj, timeout: Optional[float] = None):
        """
        Evaluate a (possibly lazy) xarray object.

        Parameters
        ----------
        obj : xr.DataArray or xr.Dataset
            Object to compute
        timeout : float, optional
            Seconds to wait; defaults to the provider timeout

        Returns
        -------
        Same type as ``obj``, backed by numpy arrays

        Raises
        ------
        ProviderError
            If evaluation fails or exceeds the timeout
        """
        if timeout is None:
            timeout = self.timeout

        executor = concurrent.futures.ThreadPoolExecutor(max_workers=1)
        future = executor.submit(obj.compute)
        try:
            return future.result(timeout=timeout)
        except concurrent.futures.TimeoutError as e:
            future.cancel()
            raise ProviderError(f"Evaluation timed out after {timeout}s") from e
        except ChangeDetectionError:
            raise
        except Exception as e:
            raise ProviderError(f"Evaluation failed: {e}") from e
        finally:
            executor.shutdown(wait=False)

    def sample_stratified(
        self,
        raster: xr.DataArray,
        region: StudyArea,
        points_per_class: int,
        scale: Optional[float],
        seed: int,
        class_values: Sequence[int] = (0, 1, 2),
    ) -> gpd.GeoDataFrame:
        """
        Draw up to ``points_per_class`` pixel centres for each class value.

        Pixels are drawn uniformly without replacement from the pixels of
        each class inside ``region``, on ``raster`` subsampled to ``scale``.
        Within a class, points keep the row-major order of the grid.

        Returns
        -------
        GeoDataFrame
            Columns ``change_class`` and point geometry, in the raster CRS
        """
        grid = resample_to_scale(raster, scale)
        values = np.asarray(self.materialize(grid).values)
        inside = study_area_mask(grid, region).values
        xs = grid['x'].values
        ys = grid['y'].values

        rng = np.random.default_rng(seed)
        classes, px, py = [], [], []
        for value in class_values:
            rows, cols = np.nonzero((values == value) & inside)
            n = min(points_per_class, rows.size)
            if n < points_per_class:
                logger.info(
                    f"Class {value}: only {rows.size} candidate pixels "
                    f"for {points_per_class} requested points"
                )
            if n == 0:
                continue
            pick = np.sort(rng.choice(rows.size, size=n, replace=False))
            classes.append(np.full(n, value, dtype=np.uint8))
            px.append(xs[cols[pick]])
            py.append(ys[rows[pick]])

        if classes:
            classes = np.concatenate(classes)
            px = np.concatenate(px)
            py = np.concatenate(py)
        else:
            classes = np.array([], dtype=np.uint8)
            px = py = np.array([], dtype=float)

        crs = raster_crs(raster) or region.crs
        return gpd.GeoDataFrame(
            {'change_class': classes},
            geometry=gpd.points_from_xy(px, py),
            crs=crs,
        )

    def extract_at_points(
        self,
        raster: xr.DataArray,
        points: gpd.GeoDataFrame,
        scale: Optional[float] = None,
        nodata=None,
    ) -> pd.Series:
        """
        Raster value at each point (nearest pixel).

        Points outside the grid, or on NaN / nodata pixels, get NaN.

        Returns
        -------
        pd.Series
            Float values aligned with ``points.index``
        """
        if nodata is None:
            try:
                nodata = raster.rio.nodata
            except RioXarrayError:
                nodata = None

        factor = _scale_factor(raster, scale)
        grid = resample_to_scale(raster, scale)
        crs = raster_crs(grid)
        if crs is not None and points.crs is not None and points.crs != crs:
            points = points.to_crs(crs)

        if len(points) == 0:
            return pd.Series([], index=points.index, dtype=float, name=raster.name)

        steps = _axis_steps(raster)
        if steps is None:
            logger.warning("Single-pixel raster without a transform; no point can be located")
            return pd.Series(np.nan, index=points.index, name=raster.name)
        step_x, step_y = steps[0] * factor, steps[1] * factor

        ix, x_ok = _nearest_index(grid['x'].values, points.geometry.x.values, step_x)
        iy, y_ok = _nearest_index(grid['y'].values, points.geometry.y.values, step_y)

        values = np.asarray(self.materialize(grid).values)
        if values.size == 0:
            extracted = np.full(len(points), np.nan)
        else:
            extracted = values[iy, ix].astype(float)
        extracted[~(x_ok & y_ok)] = np.nan
        if nodata is not None and not np.isnan(nodata):
            extracted[extracted == nodata] = np.nan

        return pd.Series(extracted, index=points.index, name=raster.name)


class InMemoryProvider(RasterProvider):
    """
    Provider over an already loaded (time, y, x) datacube.

    The cube carries a ``cloud_cover`` coordinate along ``time`` (percent);
    scenes without one are treated as cloud free.

    An optional ``sar_datacube`` holds geocoded Sentinel-1 backscatter, one
    variable per polarisation, with ``instrument_mode``, ``orbit_pass`` and
    ``polarisations`` (e.g. "VV+VH") coordinates along ``time``. Scenes
    without one of these coordinates match any value.
    """

    def __init__(
        self,
        datacube: xr.Dataset,
        chunks=None,
        timeout: Optional[float] = None,
        sar_datacube: Optional[xr.Dataset] = None,
    ):
        super().__init__(timeout=timeout)
        self.datacube = datacube
        self.chunks = chunks
        self.sar_datacube = sar_datacube

    def _subset(self, cube: xr.Dataset, study_area: StudyArea, window: DateWindow, keep) -> xr.Dataset:
        """Scenes flagged by ``keep`` inside ``window``, cropped to the study area bounds."""
        start, end = window.start_date, window.end_date + pd.Timedelta(days=1)
        times = pd.DatetimeIndex(cube['time'].values)
        keep = keep & (times >= start) & (times < end)
        subset = cube.isel(time=np.flatnonzero(keep))

        crs = raster_crs(cube) or study_area.crs
        xmin, ymin, xmax, ymax = study_area.geometry_in(crs).bounds
        ys = cube['y'].values
        y_slice = slice(ymax, ymin) if ys.size > 1 and ys[0] > ys[-1] else slice(ymin, ymax)
        subset = subset.sel(x=slice(xmin, xmax), y=y_slice)

        if self.chunks is not None:
            subset = subset.chunk(self.chunks)
        return subset

    def query_images(self, study_area, window, bands, max_cloud_cover):
        cube = self.datacube
        keep = np.ones(cube.sizes['time'], dtype=bool)
        if 'cloud_cover' in cube.coords:
            keep &= np.asarray(cube['cloud_cover'].values < max_cloud_cover)

        subset = self._subset(cube, study_area, window, keep)
        logger.info(
            f"{study_area.name} {window}: {subset.sizes['time']}/{cube.sizes['time']} scenes "
            f"pass date and cloud filters"
        )
        return subset

    def query_sar(self, study_area, window, polarisation="VV", instrument_mode="IW",
                  orbit_pass="DESCENDING"):
        cube = self.sar_datacube
        if cube is None:
            raise ProviderError("No Sentinel-1 datacube configured")

        keep = np.ones(cube.sizes['time'], dtype=bool)
        for coord, wanted in (('instrument_mode', instrument_mode), ('orbit_pass', orbit_pass)):
            if coord in cube.coords:
                values = np.char.upper(np.asarray(cube[coord].values, dtype=str))
                keep &= values == wanted.upper()
        if 'polarisations' in cube.coords:
            keep &= np.array([
                polarisation.upper() in str(p).upper().split('+')
                for p in cube['polarisations'].values
            ], dtype=bool)

        subset = self._subset(cube, study_area, window, keep)
        logger.info(
            f"{study_area.name} {window}: {subset.sizes['time']}/{cube.sizes['time']} "
            f"Sentinel-1 scenes match {instrument_mode} {polarisation} {orbit_pass}"
        )
        return subset


class StacProvider(RasterProvider):
    """Provider backed by a STAC API serving EOPF Sentinel-2 Zarr products."""

    def __init__(
        self,
        catalog_url: str = "https://stac.core.eopf.eodc.eu",
        collection: str = "sentinel-2-l2a",
        resolution: float = 10.0,
        parallel: bool = True,
        timeout: Optional[float] = None,
        sar_collection: str = "sentinel-1-l1-grd",
    ):
        super().__init__(timeout=timeout)
        self.catalog_url = catalog_url
        self.collection = collection
        self.sar_collection = sar_collection
        self.resolution = resolution
        self.parallel = parallel
        self._catalog = None

    @classmethod
    def from_config(cls, config) -> "StacProvider":
        """Provider for a RunConfig's catalog, collection, resolution and timeout."""
        composite = config.composite
        return cls(
            catalog_url=composite.catalog_url,
            collection=composite.collection,
            resolution=composite.resolution,
            timeout=config.timeout_seconds,
            sar_collection=config.sar.collection,
        )

    @property
    def catalog(self):
        if self._catalog is None:
            self._catalog = connect_stac_catalog(self.catalog_url)
        return self._catalog

    def query_images(self, study_area, window, bands, max_cloud_cover):
        bbox = study_area.bounds_ll
        start, end = window.as_interval()

        items = search_sentinel2(
            self.catalog, bbox, start, end,
            collection=self.collection,
            max_cloud_cover=max_cloud_cover,
        )

        if not items:
            logger.warning(f"{study_area.name} {window}: no scenes found")
            utm = gpd.GeoSeries([study_area.geometry], crs=study_area.crs).estimate_utm_crs()
            return empty_datacube(bbox, bands, utm.to_string(), self.resolution)

        logger.info(f"{study_area.name} {window}: loading {len(items)} scenes")
        datacube = build_datacube(items, bbox, bands, include_scl=True, parallel=self.parallel)

        info = get_temporal_info(datacube)
        logger.info(
            f"{study_area.name} {window}: {info['n_scenes']} scenes "
            f"{info['first_date']:%Y-%m-%d} to {info['last_date']:%Y-%m-%d}"
        )
        return datacube

    def query_sar(self, study_area, window, polarisation="VV", instrument_mode="IW",
                  orbit_pass="DESCENDING"):
        """
        Search Sentinel-1 GRD scenes matching mode, polarisation and orbit.

        GRD products are in radar geometry; only an empty search result is
        turned into a cube here. Geocoded backscatter is served through
        ``InMemoryProvider(sar_datacube=...)``.
        """
        bbox = study_area.bounds_ll
        start, end = window.as_interval()

        items = search_sentinel1(
            self.catalog, bbox, start, end,
            collection=self.sar_collection,
            polarisation=polarisation,
            instrument_mode=instrument_mode,
            orbit_pass=orbit_pass,
        )

        if not items:
            logger.warning(f"{study_area.name} {window}: no Sentinel-1 scenes found")
            utm = gpd.GeoSeries([study_area.geometry], crs=study_area.crs).estimate_utm_crs()
            return empty_datacube(bbox, [polarisation], utm.to_string(), self.resolution,
                                  include_scl=False)

        raise ProviderError(
            f"{study_area.name} {window}: {len(items)} Sentinel-1 GRD scenes found, "
            f"but GRD products need terrain correction before compositing"
        )
