"""
Change detection utilities.

This module handles:
- Signed index difference between two composites
- Three-way classification of the difference (decrease / no change / increase)
- Change histogram and per-class statistics
"""

import numpy as np
import pandas as pd
import xarray as xr
import rioxarray  # noqa: F401  registers the .rio accessor
from typing import Dict

from .exceptions import InputError
from .provider import raster_crs


DECREASE = 0
NO_CHANGE = 1
INCREASE = 2

CLASS_NAMES = {
    DECREASE: "decrease",
    NO_CHANGE: "no change",
    INCREASE: "increase",
}

# Fill value for masked pixels in a classified raster
CLASS_NODATA = 255


def compute_change(
    before: xr.Dataset,
    after: xr.Dataset,
    index_name: str,
) -> xr.DataArray:
    """
    Per-pixel difference of an index between two composites.

    change = after[index] - before[index]

    Positive values mean the index increased. A pixel is defined only where
    both composites are valid; NaN propagates otherwise.

    Parameters
    ----------
    before, after : xr.Dataset
        Composites on the same grid, both holding ``index_name``
    index_name : str
        Name of the index variable

    Returns
    -------
    xr.DataArray
        Change raster named ``<index_name>_change``
    """
    for label, composite in (('before', before), ('after', after)):
        if index_name not in composite:
            raise InputError(f"Index {index_name!r} missing from '{label}' composite")

    change = after[index_name] - before[index_name]
    change = change.rename(f"{index_name}_change")
    change.attrs = {
        'index': index_name,
        'before': before.attrs.get('window', ''),
        'after': after.attrs.get('window', ''),
    }
    return change


def classify_change(
    change: xr.DataArray,
    decrease_threshold: float = -0.1,
    increase_threshold: float = 0.1,
) -> xr.DataArray:
    """
    Classify a change raster into decrease / no change / increase.

    value <  decrease_threshold -> 0 (decrease)
    value >  increase_threshold -> 2 (increase)
    otherwise                   -> 1 (no change)

    Values equal to a threshold fall in the no-change class.

    Parameters
    ----------
    change : xr.DataArray
        Output of compute_change()
    decrease_threshold, increase_threshold : float
        Class boundaries; need not be symmetric

    Returns
    -------
    xr.DataArray
        uint8 raster named ``change_class``; masked pixels hold CLASS_NODATA
    """
    if decrease_threshold > increase_threshold:
        raise InputError(
            f"decrease_threshold ({decrease_threshold}) must not exceed "
            f"increase_threshold ({increase_threshold})"
        )

    classes = xr.where(
        change < decrease_threshold,
        DECREASE,
        xr.where(change > increase_threshold, INCREASE, NO_CHANGE),
    )
    classes = classes.where(change.notnull(), CLASS_NODATA).astype(np.uint8)
    classes = classes.rename('change_class')
    classes.attrs = {
        'decrease_threshold': decrease_threshold,
        'increase_threshold': increase_threshold,
    }

    crs = raster_crs(change)
    if crs is not None:
        classes = classes.rio.write_crs(crs)
    return classes.rio.write_nodata(CLASS_NODATA)


def compute_change_histogram(
    change: xr.DataArray,
    bin_width: float = 0.01,
    max_buckets: int = 100,
) -> pd.DataFrame:
    """
    Histogram of valid change values.

    The bucket width starts at ``bin_width`` and doubles until the value
    range fits in ``max_buckets`` buckets.

    Returns
    -------
    pd.DataFrame
        Columns bucket_min, bucket_max, count. Empty when no pixel is valid.
    """
    if not bin_width > 0:
        raise InputError(f"bin_width must be positive, got {bin_width}")
    if max_buckets < 1:
        raise InputError(f"max_buckets must be at least 1, got {max_buckets}")

    values = np.asarray(change.values, dtype=float).ravel()
    values = values[~np.isnan(values)]

    if values.size == 0:
        return pd.DataFrame({'bucket_min': [], 'bucket_max': [], 'count': []})

    lo = np.floor(values.min() / bin_width) * bin_width
    hi = values.max()
    width = bin_width
    while (hi - lo) / width >= max_buckets:
        width *= 2

    n_buckets = int(np.floor((hi - lo) / width)) + 1
    edges = lo + width * np.arange(n_buckets + 1)
    counts, _ = np.histogram(values, bins=edges)

    return pd.DataFrame({
        'bucket_min': edges[:-1],
        'bucket_max': edges[1:],
        'count': counts.astype(int),
    })


def compute_class_statistics(classified: xr.DataArray) -> Dict:
    """
    Summarize a classified raster as pixel counts and percentages.

    Percentages are relative to valid (non-nodata) pixels and are NaN when
    the raster has no valid pixel.
    """
    values = np.asarray(classified.values).ravel()
    valid = values != CLASS_NODATA
    n_valid = int(valid.sum())

    stats = {
        'total_pixels': int(values.size),
        'valid_pixels': n_valid,
    }
    for value, name in CLASS_NAMES.items():
        key = name.replace(' ', '_')
        count = int((values == value).sum())
        stats[f'{key}_pixels'] = count
        stats[f'{key}_pct'] = 100 * count / n_valid if n_valid else np.nan

    # Net change
    stats['net_change_pixels'] = stats['increase_pixels'] - stats['decrease_pixels']
    stats['net_change_pct'] = stats['increase_pct'] - stats['decrease_pct']

    return stats
