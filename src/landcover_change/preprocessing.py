"""
Preprocessing utilities for Sentinel-2 data.

This module handles:
- Cloud masking using Scene Classification Layer
- Median composites per study area and date window (Sentinel-2 and
  Sentinel-1 backscatter)
- Normalized difference indices (NDRE1, NDVI, ...)
"""

import logging
from functools import reduce
from typing import Iterable, Optional, Sequence

import numpy as np
import xarray as xr

from .areas import DateWindow, StudyArea
from .config import DEFAULT_SCL_INVALID
from .exceptions import InputError
from .provider import RasterProvider, study_area_mask

logger = logging.getLogger(__name__)


# SCL classification codes for invalid pixels
SCL_INVALID = list(DEFAULT_SCL_INVALID)


def apply_cloud_mask(
    datacube: xr.Dataset,
    scl_var: str = 'scl',
    invalid_codes: Iterable[int] = None
) -> xr.Dataset:
    """
    Mask invalid pixels using Scene Classification Layer.

    Parameters
    ----------
    datacube : xr.Dataset
        Input datacube with SCL variable
    scl_var : str
        Name of SCL variable in dataset
    invalid_codes : iterable of int
        SCL codes to mask. Default uses cloud shadow, medium/high
        probability cloud and thin cirrus.

    Returns
    -------
    xr.Dataset
        Cloud-masked datacube (invalid pixels = NaN), SCL variable dropped
    """
    if invalid_codes is None:
        invalid_codes = SCL_INVALID

    if scl_var not in datacube:
        logger.warning(f"{scl_var} not found in datacube. Returning unmasked data.")
        return datacube

    valid_mask = ~datacube[scl_var].isin(list(invalid_codes))
    masked = datacube.drop_vars(scl_var).where(valid_mask)

    return masked


def clip_to_study_area(data, study_area: StudyArea):
    """Set pixels whose centre falls outside the study area to NaN."""
    return data.where(study_area_mask(data, study_area))


def _joint_valid_mask(composite: xr.Dataset, bands: Sequence[str]) -> xr.DataArray:
    return reduce(lambda a, b: a & b, [composite[band].notnull() for band in bands])


def build_composite(
    study_area: StudyArea,
    window: DateWindow,
    bands: Sequence[str],
    provider: RasterProvider,
    max_cloud_cover: float = 20.0,
    invalid_codes: Optional[Iterable[int]] = None,
    scl_var: str = 'scl',
) -> xr.Dataset:
    """
    Create a cloud-masked median composite for one study area and window.

    Parameters
    ----------
    study_area : StudyArea
        Area to composite; validated eagerly
    window : DateWindow
        Acquisition window
    bands : sequence of str
        Bands to keep in the composite
    provider : RasterProvider
        Scene source
    max_cloud_cover : float
        Scenes with cloud cover at or above this percentage are skipped
    invalid_codes : iterable of int, optional
        SCL codes to mask
    scl_var : str
        Name of the SCL variable in the provider's datacube

    Returns
    -------
    xr.Dataset
        (y, x) composite with one variable per band. Masked pixels are NaN
        in every band. A window without scenes yields an all-NaN composite.

    Raises
    ------
    InputError
        For an invalid study area or window, or a band the source lacks
    """
    study_area.validate()
    window.validate()
    bands = list(bands)
    if not bands:
        raise InputError("At least one band is required")

    datacube = provider.query_images(study_area, window, bands, max_cloud_cover)

    missing = [b for b in bands if b not in datacube.data_vars]
    if missing:
        raise InputError(
            f"Unknown bands {missing}; available: {sorted(map(str, datacube.data_vars))}"
        )

    n_obs = int(datacube.sizes.get('time', 0))
    if n_obs == 0:
        logger.warning(f"{study_area.name} {window}: no scenes, composite is empty")

    masked = apply_cloud_mask(datacube, scl_var=scl_var, invalid_codes=invalid_codes)
    composite = provider.reduce_median(masked[bands])

    composite = composite.where(_joint_valid_mask(composite, bands))
    composite = clip_to_study_area(composite, study_area)

    composite.attrs['study_area'] = study_area.name
    composite.attrs['window'] = str(window)
    composite.attrs['n_observations'] = n_obs

    return composite


def build_sar_composite(
    study_area: StudyArea,
    window: DateWindow,
    provider: RasterProvider,
    polarisation: str = "VV",
    instrument_mode: str = "IW",
    orbit_pass: str = "DESCENDING",
) -> xr.Dataset:
    """
    Median Sentinel-1 backscatter composite for one study area and window.

    Scenes are filtered by instrument mode, polarisation and orbit
    direction. There is no cloud mask; pixels without any observation
    are NaN.

    Returns
    -------
    xr.Dataset
        (y, x) composite with a single ``polarisation`` variable
    """
    study_area.validate()
    window.validate()

    datacube = provider.query_sar(
        study_area, window,
        polarisation=polarisation,
        instrument_mode=instrument_mode,
        orbit_pass=orbit_pass,
    )
    if polarisation not in datacube.data_vars:
        raise InputError(
            f"Polarisation {polarisation!r} not in Sentinel-1 cube; "
            f"available: {sorted(map(str, datacube.data_vars))}"
        )

    n_obs = int(datacube.sizes.get('time', 0))
    if n_obs == 0:
        logger.warning(f"{study_area.name} {window}: no Sentinel-1 scenes, composite is empty")

    composite = provider.reduce_median(datacube[[polarisation]])
    composite = clip_to_study_area(composite, study_area)

    composite.attrs['study_area'] = study_area.name
    composite.attrs['window'] = str(window)
    composite.attrs['n_observations'] = n_obs

    return composite


def add_index(
    composite: xr.Dataset,
    band_a: str,
    band_b: str,
    name: str,
) -> xr.Dataset:
    """
    Add a normalized difference band to a composite.

    index = (A - B) / (A + B)

    Pixels where A + B == 0 or either band is masked are NaN.

    Parameters
    ----------
    composite : xr.Dataset
        Composite holding ``band_a`` and ``band_b``
    band_a, band_b : str
        Band names
    name : str
        Name of the new variable

    Returns
    -------
    xr.Dataset
        A new dataset with the index variable added; the input is unchanged
    """
    for band in (band_a, band_b):
        if band not in composite:
            raise InputError(
                f"Band {band!r} not in composite; available: {sorted(map(str, composite.data_vars))}"
            )

    a = composite[band_a].astype(np.float64)
    b = composite[band_b].astype(np.float64)
    total = a + b
    index = (a - b) / total.where(total != 0)
    index.attrs = {'long_name': f"({band_a} - {band_b}) / ({band_a} + {band_b})"}

    return composite.assign({name: index})


def compute_ndvi(
    composite: xr.Dataset,
    red: str = 'b04',
    nir: str = 'b08'
) -> xr.DataArray:
    """
    Compute Normalized Difference Vegetation Index.

    NDVI = (NIR - Red) / (NIR + Red)
    """
    return add_index(composite, nir, red, 'NDVI')['NDVI']
