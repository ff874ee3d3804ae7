"""
Stratified reference sampling of a classified change raster.

Points are drawn per change class by the provider, then shuffled into a
seeded export order and numbered 0..N-1 so they can be handed out for
manual labelling.
"""

import logging
from typing import Optional

import geopandas as gpd
import numpy as np
import pandas as pd
import xarray as xr

from .areas import StudyArea
from .change import CLASS_NAMES
from .exceptions import InputError
from .provider import RasterProvider

logger = logging.getLogger(__name__)


# Second entropy word for the export-order stream; the draw uses the bare seed
_ORDER_STREAM = 1


def _order_key(n: int, seed: int) -> np.ndarray:
    rng = np.random.default_rng([seed, _ORDER_STREAM])
    return rng.random(n)


def sample_reference_points(
    classified: xr.DataArray,
    study_area: StudyArea,
    points_per_class: int,
    scale: Optional[float],
    seed: int,
    provider: RasterProvider,
) -> gpd.GeoDataFrame:
    """
    Draw a class-balanced set of reference points from a classified raster.

    Parameters
    ----------
    classified : xr.DataArray
        Output of classify_change()
    study_area : StudyArea
        Points are restricted to this area
    points_per_class : int
        Upper bound on points per class; classes with fewer pixels yield fewer
    scale : float, optional
        Sampling grid size in metres (None = native resolution)
    seed : int
        Random seed for both the draw and the export order
    provider : RasterProvider
        Evaluates the raster

    Returns
    -------
    GeoDataFrame
        Columns point_id (0..N-1), change_class, class_name, label (empty,
        to be filled by an interpreter), source ("sample"), geometry.
        Identical inputs and seed give an identical frame.

    Notes
    -----
    Determinism holds for the local providers in this package. A remote
    evaluator with its own iteration order or floating point behaviour
    may return different draws for the same seed.
    """
    study_area.validate()
    if points_per_class < 0:
        raise InputError("points_per_class must be non-negative")

    points = provider.sample_stratified(
        classified, study_area, points_per_class, scale, seed,
        class_values=tuple(CLASS_NAMES),
    )

    # Decouple export order from the spatial draw order
    key = _order_key(len(points), seed)
    order = np.argsort(key, kind='stable')
    points = points.iloc[order].reset_index(drop=True)

    points.insert(0, 'point_id', np.arange(len(points), dtype=int))
    points['class_name'] = points['change_class'].map(CLASS_NAMES)
    points['label'] = pd.Series([None] * len(points), dtype=object)
    points['source'] = 'sample'

    counts = points['change_class'].value_counts().to_dict()
    logger.info(
        f"{study_area.name}: sampled {len(points)} points "
        + ", ".join(f"{CLASS_NAMES[c]}={counts.get(c, 0)}" for c in CLASS_NAMES)
    )

    return points
