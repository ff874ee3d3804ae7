"""
Export sink for rasters, point sets and tables.

Exports are submitted to a small thread pool and return immediately.
Failures are logged and never propagate to the caller; use ``wait()``
when a script needs the files on disk before exiting.
"""

import concurrent.futures
import logging
import os
from typing import List, Optional

import geopandas as gpd
import pandas as pd
import rioxarray  # noqa: F401  registers the .rio accessor
import xarray as xr

from .areas import StudyArea
from .exceptions import InputError
from .provider import resample_to_scale, study_area_mask

logger = logging.getLogger(__name__)


POINT_FORMATS = {
    'CSV': '.csv',
    'GEOJSON': '.geojson',
}


class ExportSink:
    """Writes pipeline outputs under ``output_dir`` in background threads."""

    def __init__(self, output_dir: str = "outputs", max_workers: int = 2):
        self.output_dir = output_dir
        self._executor = concurrent.futures.ThreadPoolExecutor(max_workers=max_workers)
        self._futures: List[concurrent.futures.Future] = []

    @classmethod
    def from_config(cls, config) -> "ExportSink":
        """Sink writing under a RunConfig's output_directory with its max_workers."""
        return cls(output_dir=config.output_directory, max_workers=config.max_workers)

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc, tb):
        self.close(wait=True)

    def _path(self, destination: str, extension: str) -> str:
        if not os.path.splitext(destination)[1]:
            destination += extension
        return os.path.join(self.output_dir, destination)

    def _submit(self, fn, destination: str, *args):
        future = self._executor.submit(fn, *args)

        def _done(f):
            if f.cancelled():
                return
            error = f.exception()
            if error is not None:
                logger.error(f"Export to {destination} failed: {error}")
            else:
                logger.info(f"Exported {f.result()}")

        future.add_done_callback(_done)
        self._futures.append(future)

    # -- rasters ------------------------------------------------------------

    def export_raster(
        self,
        raster: xr.DataArray,
        region: StudyArea,
        scale: Optional[float],
        destination: str,
    ) -> None:
        """Clip ``raster`` to ``region``, resample to ``scale`` and write a GeoTIFF."""
        path = self._path(destination, '.tif')
        self._submit(_write_raster, path, raster, region, scale, path)

    # -- points -------------------------------------------------------------

    def export_points(
        self,
        points: gpd.GeoDataFrame,
        destination: str,
        file_format: str = "CSV",
    ) -> None:
        """
        Write a point set as CSV (with x/y and lon/lat columns) or GeoJSON.
        """
        fmt = file_format.upper()
        if fmt not in POINT_FORMATS:
            raise InputError(f"Unsupported point format {file_format!r}; use one of {list(POINT_FORMATS)}")
        path = self._path(destination, POINT_FORMATS[fmt])
        self._submit(_write_points, path, points.copy(), fmt, path)

    # -- tables -------------------------------------------------------------

    def export_table(self, table: pd.DataFrame, destination: str, index: bool = False) -> None:
        path = self._path(destination, '.csv')
        self._submit(_write_table, path, table.copy(), path, index)

    # -- lifecycle ----------------------------------------------------------

    def wait(self, timeout: Optional[float] = None) -> List[str]:
        """Block until submitted exports finish; return the paths written."""
        done, _ = concurrent.futures.wait(self._futures, timeout=timeout)
        return [f.result() for f in done if not f.cancelled() and f.exception() is None]

    def close(self, wait: bool = True):
        self._executor.shutdown(wait=wait)


def _write_raster(raster: xr.DataArray, region: StudyArea, scale: Optional[float], path: str) -> str:
    os.makedirs(os.path.dirname(path) or '.', exist_ok=True)

    inside = study_area_mask(raster, region)
    nodata = raster.rio.nodata
    if nodata is not None:
        clipped = raster.where(inside, nodata).astype(raster.dtype)
        clipped = clipped.rio.write_nodata(nodata)
    else:
        clipped = raster.where(inside)

    clipped = resample_to_scale(clipped, scale)
    clipped.rio.to_raster(path)
    return path


def _write_points(points: gpd.GeoDataFrame, fmt: str, path: str) -> str:
    os.makedirs(os.path.dirname(path) or '.', exist_ok=True)

    if fmt == 'GEOJSON':
        points.to_file(path, driver='GeoJSON')
        return path

    table = pd.DataFrame(points.drop(columns=points.geometry.name))
    table['x'] = points.geometry.x.values
    table['y'] = points.geometry.y.values
    if points.crs is not None and len(points):
        lonlat = points.geometry.to_crs("EPSG:4326")
        table['lon'] = lonlat.x.values
        table['lat'] = lonlat.y.values
    table.to_csv(path, index=False)
    return path


def _write_table(table: pd.DataFrame, path: str, index: bool) -> str:
    os.makedirs(os.path.dirname(path) or '.', exist_ok=True)
    table.to_csv(path, index=index)
    return path
