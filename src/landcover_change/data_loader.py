"""
Data loading utilities for EOPF Sentinel-2 Zarr data.

This module handles:
- STAC catalog connection
- Scene search with cloud-cover filtering (Sentinel-2) and mode,
  polarisation and orbit filtering (Sentinel-1)
- Bounding box reprojection
- Single scene loading with band selection (10 m and 20 m bands)
- Multi-temporal datacube formation
"""

import logging

import numpy as np
import pandas as pd
import xarray as xr
import dask
import rioxarray  # noqa: F401  registers the .rio accessor
from pyproj import Transformer
from typing import List, Dict, Optional, Sequence
import pystac_client

from .exceptions import ChangeDetectionError, InputError, ProviderError

logger = logging.getLogger(__name__)


# EOPF reflectance groups holding each band
BAND_RESOLUTION = {
    'b02': 'r10m', 'b03': 'r10m', 'b04': 'r10m', 'b08': 'r10m',
    'b05': 'r20m', 'b06': 'r20m', 'b07': 'r20m', 'b8a': 'r20m',
    'b11': 'r20m', 'b12': 'r20m',
}


def connect_stac_catalog(catalog_url: str = "https://stac.core.eopf.eodc.eu"):
    """
    Connect to EOPF STAC catalog.

    Parameters
    ----------
    catalog_url : str
        STAC catalog endpoint URL

    Returns
    -------
    pystac_client.Client
        Connected STAC client
    """
    try:
        return pystac_client.Client.open(catalog_url)
    except Exception as e:
        raise ProviderError(f"Could not open STAC catalog {catalog_url}: {e}") from e


def search_sentinel2(
    catalog,
    bbox: List[float],
    start_date: str,
    end_date: str,
    collection: str = "sentinel-2-l2a",
    max_cloud_cover: Optional[float] = None,
) -> List[Dict]:
    """
    Search for Sentinel-2 scenes in the catalog.

    Parameters
    ----------
    catalog : pystac_client.Client
        Connected STAC client
    bbox : list
        Bounding box [west, south, east, north] in EPSG:4326
    start_date : str
        Start date in ISO format
    end_date : str
        End date in ISO format
    collection : str
        STAC collection name
    max_cloud_cover : float, optional
        Keep scenes with ``eo:cloud_cover`` strictly below this percentage

    Returns
    -------
    list
        List of STAC item dictionaries, sorted by acquisition time
    """
    search = catalog.search(
        collections=[collection],
        bbox=bbox,
        datetime=[start_date, end_date],
    )
    try:
        items = list(search.items_as_dicts())
    except Exception as e:
        raise ProviderError(f"STAC search failed for {collection}: {e}") from e

    if max_cloud_cover is not None:
        items = filter_by_cloud_cover(items, max_cloud_cover)

    return sorted(items, key=lambda item: item['properties']['datetime'])


def filter_by_cloud_cover(items: List[Dict], max_cloud_cover: float) -> List[Dict]:
    """Drop items whose cloud cover is missing or not below ``max_cloud_cover``."""
    kept = []
    for item in items:
        cloud = item.get('properties', {}).get('eo:cloud_cover')
        if cloud is not None and cloud < max_cloud_cover:
            kept.append(item)
    dropped = len(items) - len(kept)
    if dropped:
        logger.info(f"Dropped {dropped}/{len(items)} scenes at >= {max_cloud_cover}% cloud cover")
    return kept


def search_sentinel1(
    catalog,
    bbox: List[float],
    start_date: str,
    end_date: str,
    collection: str = "sentinel-1-l1-grd",
    polarisation: str = "VV",
    instrument_mode: str = "IW",
    orbit_pass: str = "DESCENDING",
) -> List[Dict]:
    """
    Search for Sentinel-1 scenes with a given mode, polarisation and orbit.

    Parameters
    ----------
    catalog : pystac_client.Client
        Connected STAC client
    bbox : list
        Bounding box [west, south, east, north] in EPSG:4326
    start_date, end_date : str
        Date range in ISO format
    collection : str
        STAC collection name
    polarisation : str
        Polarisation the scene must carry (``sar:polarizations``)
    instrument_mode : str
        Acquisition mode (``sar:instrument_mode``)
    orbit_pass : str
        ASCENDING or DESCENDING (``sat:orbit_state``)

    Returns
    -------
    list
        Matching STAC item dictionaries, sorted by acquisition time
    """
    search = catalog.search(
        collections=[collection],
        bbox=bbox,
        datetime=[start_date, end_date],
    )
    try:
        items = list(search.items_as_dicts())
    except Exception as e:
        raise ProviderError(f"STAC search failed for {collection}: {e}") from e

    items = filter_sentinel1(items, polarisation, instrument_mode, orbit_pass)
    return sorted(items, key=lambda item: item['properties']['datetime'])


def filter_sentinel1(
    items: List[Dict],
    polarisation: str,
    instrument_mode: str,
    orbit_pass: str,
) -> List[Dict]:
    """Keep items matching the SAR polarisation, instrument mode and orbit direction."""
    kept = []
    for item in items:
        props = item.get('properties', {})
        pols = [str(p).upper() for p in props.get('sar:polarizations', [])]
        if polarisation.upper() not in pols:
            continue
        if str(props.get('sar:instrument_mode', '')).upper() != instrument_mode.upper():
            continue
        if str(props.get('sat:orbit_state', '')).upper() != orbit_pass.upper():
            continue
        kept.append(item)
    dropped = len(items) - len(kept)
    if dropped:
        logger.info(
            f"Dropped {dropped}/{len(items)} scenes not matching "
            f"{instrument_mode} {polarisation} {orbit_pass}"
        )
    return kept


def reproject_bbox(
    bbox: List[float],
    src_crs: str = "EPSG:4326",
    dst_crs: str = "EPSG:32632"
) -> List[float]:
    """
    Transform bounding box between coordinate reference systems.

    Parameters
    ----------
    bbox : list
        Bounding box [xmin, ymin, xmax, ymax]
    src_crs : str
        Source CRS
    dst_crs : str
        Destination CRS

    Returns
    -------
    list
        Transformed bounding box [xmin, ymin, xmax, ymax]
    """
    transformer = Transformer.from_crs(src_crs, dst_crs, always_xy=True)
    xmin, ymin, xmax, ymax = transformer.transform_bounds(*bbox)
    return [xmin, ymin, xmax, ymax]


def _scene_time(item_dict: Dict) -> np.datetime64:
    stamp = pd.Timestamp(item_dict['properties']['datetime'])
    if stamp.tzinfo is not None:
        stamp = stamp.tz_convert(None)
    return stamp.to_datetime64()


def load_single_scene(
    item_dict: Dict,
    bbox_ll: List[float],
    bands: Sequence[str] = ('b04', 'b05', 'b08'),
    include_scl: bool = True
) -> xr.Dataset:
    """
    Load and crop a single Sentinel-2 scene from Zarr.

    20 m bands and the SCL layer are resampled (nearest) onto the 10 m grid
    when any 10 m band is requested.

    Parameters
    ----------
    item_dict : dict
        STAC item dictionary
    bbox_ll : list
        Bounding box in EPSG:4326 [west, south, east, north]
    bands : sequence
        Band names to load (see BAND_RESOLUTION)
    include_scl : bool
        Whether to include Scene Classification Layer

    Returns
    -------
    xr.Dataset
        Cropped dataset with selected bands, a length-1 time dimension and
        a ``cloud_cover`` coordinate
    """
    unknown = [b for b in bands if b not in BAND_RESOLUTION]
    if unknown:
        raise InputError(f"Unsupported bands: {unknown}; known: {sorted(BAND_RESOLUTION)}")

    # Extract base path from asset href
    href = item_dict['assets']['SR_10m']['href']
    base_path = href.split('/measurements')[0]

    ds = xr.open_datatree(base_path, engine="zarr", chunks={}, mask_and_scale=True)

    dst_crs = item_dict['properties'].get("proj:code", "EPSG:32632")
    utm_bbox = reproject_bbox(bbox_ll, dst_crs=dst_crs)
    x_slice = slice(utm_bbox[0], utm_bbox[2])
    y_slice = slice(utm_bbox[3], utm_bbox[1])

    groups: Dict[str, List[str]] = {}
    for band in bands:
        groups.setdefault(BAND_RESOLUTION[band], []).append(band)

    # Reference grid: finest requested resolution
    ref_group = 'r10m' if 'r10m' in groups else 'r20m'
    reflectance = ds["measurements"]["reflectance"]
    ds_ref = reflectance[ref_group].to_dataset()[groups[ref_group]].sel(x=x_slice, y=y_slice)

    datasets_to_merge = [ds_ref]

    for group, group_bands in groups.items():
        if group == ref_group:
            continue
        ds_other = reflectance[group].to_dataset()[group_bands].sel(x=x_slice, y=y_slice)
        datasets_to_merge.append(ds_other.interp(x=ds_ref.x, y=ds_ref.y, method="nearest"))

    if include_scl:
        # SCL mask is 20m resolution
        ds_scl = (
            ds["conditions"]["mask"]["l2a_classification"]["r20m"]
            .to_dataset()
            .sel(x=x_slice, y=y_slice)
        )
        datasets_to_merge.append(ds_scl.interp(x=ds_ref.x, y=ds_ref.y, method="nearest"))

    merged = xr.merge(datasets_to_merge)
    merged = merged.expand_dims(time=[_scene_time(item_dict)])
    merged = merged.assign_coords(
        cloud_cover=('time', [float(item_dict['properties'].get('eo:cloud_cover', np.nan))])
    )

    return merged


def build_datacube(
    items: List[Dict],
    bbox: List[float],
    bands: Sequence[str] = ('b04', 'b05', 'b08'),
    include_scl: bool = True,
    parallel: bool = True
) -> xr.Dataset:
    """
    Build multi-temporal datacube from STAC items.

    Parameters
    ----------
    items : list
        List of STAC item dictionaries
    bbox : list
        Bounding box in EPSG:4326
    bands : sequence
        Band names to load
    include_scl : bool
        Whether to include Scene Classification Layer
    parallel : bool
        Whether to use Dask parallelism for opening scenes

    Returns
    -------
    xr.Dataset
        Multi-temporal, dask-backed datacube with time dimension
    """
    try:
        if parallel:
            delayed_results = [
                dask.delayed(load_single_scene)(item, bbox, bands, include_scl)
                for item in items
            ]
            results = dask.compute(*delayed_results)
        else:
            results = [
                load_single_scene(item, bbox, bands, include_scl)
                for item in items
            ]
    except ChangeDetectionError:
        raise
    except Exception as e:
        raise ProviderError(f"Scene loading failed: {e}") from e

    results = [r for r in results if r is not None]

    if len(results) == 0:
        raise ProviderError("No scenes loaded successfully")

    crs = items[0]['properties'].get("proj:code", "EPSG:32632")

    datacube = xr.concat(results, dim="time").sortby("time")
    datacube = datacube.rio.write_crs(crs)

    return datacube


def empty_datacube(
    bbox_ll: List[float],
    bands: Sequence[str],
    crs: str,
    resolution: float = 10.0,
    include_scl: bool = True,
) -> xr.Dataset:
    """
    Build a zero-length datacube on the grid covering ``bbox_ll``.

    Used when no scene survives the search filters, so that downstream
    steps see a fully masked raster instead of a missing one.
    """
    xmin, ymin, xmax, ymax = reproject_bbox(bbox_ll, dst_crs=crs)
    x = np.arange(xmin + resolution / 2, xmax, resolution)
    y = np.arange(ymax - resolution / 2, ymin, -resolution)

    names = list(bands) + (['scl'] if include_scl else [])
    data_vars = {
        name: (('time', 'y', 'x'), np.empty((0, len(y), len(x)), dtype=np.float32))
        for name in names
    }
    cube = xr.Dataset(
        data_vars,
        coords={
            'time': np.array([], dtype='datetime64[ns]'),
            'y': y,
            'x': x,
            'cloud_cover': ('time', np.array([], dtype=float)),
        },
    )
    return cube.rio.write_crs(crs)


def get_temporal_info(datacube: xr.Dataset) -> Dict:
    """
    Extract temporal information from datacube.

    Returns
    -------
    dict
        Temporal statistics and coverage info
    """
    times = pd.DatetimeIndex(datacube.time.values)

    if len(times) == 0:
        return {'n_scenes': 0, 'first_date': None, 'last_date': None,
                'years': [], 'scenes_per_year': {}, 'scenes_per_month': {}}

    return {
        'n_scenes': len(times),
        'first_date': times.min(),
        'last_date': times.max(),
        'years': sorted(times.year.unique().tolist()),
        'scenes_per_year': times.year.value_counts().to_dict(),
        'scenes_per_month': times.month.value_counts().to_dict(),
    }
