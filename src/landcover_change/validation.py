"""
Validation utilities for comparing change classes against labelled reference points.

Provides reference point loading, label-to-class mapping, a confusion
matrix with overall accuracy, kappa and per-class producer's/user's
accuracy, and the point-based validation run tying them together.
"""

import logging
from collections import Counter
from dataclasses import dataclass
from typing import Dict, Iterable, List, Optional, Sequence

import geopandas as gpd
import numpy as np
import pandas as pd
import xarray as xr

from .change import CLASS_NAMES
from .exceptions import InputError, LabelMappingError
from .provider import RasterProvider

logger = logging.getLogger(__name__)


LABEL_TO_CLASS = {name: value for value, name in CLASS_NAMES.items()}


# ---------------------------------------------------------------------------
# Reference points
# ---------------------------------------------------------------------------

def _check_reference_frame(gdf: gpd.GeoDataFrame, label_column: str) -> gpd.GeoDataFrame:
    if label_column not in gdf.columns:
        raise InputError(
            f"Label column {label_column!r} not found; columns: {list(gdf.columns)}"
        )
    geom_types = set(gdf.geometry.geom_type.dropna())
    if geom_types - {'Point'}:
        raise InputError(f"Reference geometries must be points, got {sorted(geom_types)}")
    out = gdf.copy()
    out['source'] = 'reference'
    return out


def load_reference_points(
    path: str,
    label_column: str = 'change',
) -> gpd.GeoDataFrame:
    """
    Load labelled reference points from a vector file.

    Parameters
    ----------
    path : str
        Any format geopandas can read (GeoJSON, GeoPackage, Shapefile).
    label_column : str
        Column holding the change label ("decrease", "no change", "increase").

    Returns
    -------
    GeoDataFrame
        Reference points with ``source = "reference"``.
    """
    gdf = gpd.read_file(path)
    logger.info(f"Loaded {len(gdf)} reference points from {path}")
    return _check_reference_frame(gdf, label_column)


def reference_points_from_features(
    features: Iterable[Dict],
    label_column: str = 'change',
    crs: str = "EPSG:4326",
) -> gpd.GeoDataFrame:
    """Build reference points from GeoJSON-like feature mappings."""
    gdf = gpd.GeoDataFrame.from_features(list(features), crs=crs)
    return _check_reference_frame(gdf, label_column)


def label_to_class(label, strict: bool = True) -> Optional[int]:
    """
    Map a change label to its class code.

    Matching ignores case and surrounding/repeated whitespace.

    Parameters
    ----------
    label : str
        One of "decrease", "no change", "increase".
    strict : bool
        Raise LabelMappingError for unknown labels instead of returning None.
    """
    key = " ".join(label.strip().lower().split()) if isinstance(label, str) else None
    if key in LABEL_TO_CLASS:
        return LABEL_TO_CLASS[key]
    if strict:
        raise LabelMappingError(label)
    return None


# ---------------------------------------------------------------------------
# Confusion matrix
# ---------------------------------------------------------------------------

class ConfusionMatrix:
    """
    Reference (rows) vs predicted (columns) count matrix.

    ``matrix[r][p]`` counts points with reference class r predicted as p.
    Metrics that divide by an empty row, column or total are NaN.
    """

    def __init__(self, matrix, class_names: Optional[Sequence[str]] = None):
        m = np.asarray(matrix, dtype=np.int64)
        if m.ndim != 2 or m.shape[0] != m.shape[1]:
            raise InputError(f"Confusion matrix must be square, got shape {m.shape}")
        if (m < 0).any():
            raise InputError("Confusion matrix counts must be non-negative")

        n = m.shape[0]
        if class_names is None:
            class_names = [CLASS_NAMES.get(i, str(i)) for i in range(n)]
        if len(class_names) != n:
            raise InputError(f"Expected {n} class names, got {len(class_names)}")

        self.matrix = m
        self.class_names = list(class_names)

    @classmethod
    def from_pairs(
        cls,
        reference: Sequence[int],
        predicted: Sequence[int],
        n_classes: int = len(CLASS_NAMES),
        class_names: Optional[Sequence[str]] = None,
    ) -> "ConfusionMatrix":
        """Count (reference, predicted) class pairs."""
        ref = np.asarray(reference, dtype=int).ravel()
        pred = np.asarray(predicted, dtype=int).ravel()
        if ref.shape != pred.shape:
            raise InputError(
                f"reference and predicted differ in length ({ref.size} vs {pred.size})"
            )
        for name, arr in (('reference', ref), ('predicted', pred)):
            if arr.size and (arr.min() < 0 or arr.max() >= n_classes):
                raise InputError(f"{name} classes outside 0..{n_classes - 1}")

        m = np.zeros((n_classes, n_classes), dtype=np.int64)
        np.add.at(m, (ref, pred), 1)
        return cls(m, class_names)

    @property
    def n_classes(self) -> int:
        return self.matrix.shape[0]

    @property
    def total(self) -> int:
        return int(self.matrix.sum())

    def accuracy(self) -> float:
        """Overall accuracy: trace / total."""
        total = self.total
        if total == 0:
            return np.nan
        return float(np.trace(self.matrix) / total)

    def producers_accuracy(self) -> np.ndarray:
        """Per-class diagonal / row sum (reference totals)."""
        return _safe_ratio(np.diag(self.matrix), self.matrix.sum(axis=1))

    def consumers_accuracy(self) -> np.ndarray:
        """Per-class diagonal / column sum (predicted totals); a.k.a. user's accuracy."""
        return _safe_ratio(np.diag(self.matrix), self.matrix.sum(axis=0))

    def kappa(self) -> float:
        """
        Cohen's kappa.

        kappa = (P_o - P_e) / (1 - P_e), with P_e the chance agreement
        sum(row_c * col_c) / total^2. NaN for an empty matrix or when
        P_e == 1.
        """
        total = self.total
        if total == 0:
            return np.nan

        p_obs = np.trace(self.matrix) / total
        rows = self.matrix.sum(axis=1).astype(float)
        cols = self.matrix.sum(axis=0).astype(float)
        p_exp = float((rows * cols).sum() / float(total) ** 2)

        if np.isclose(p_exp, 1.0):
            return np.nan
        return float((p_obs - p_exp) / (1 - p_exp))

    def to_dataframe(self) -> pd.DataFrame:
        """Matrix with labelled rows (reference) and columns (predicted)."""
        return pd.DataFrame(
            self.matrix,
            index=pd.Index(self.class_names, name='reference'),
            columns=pd.Index(self.class_names, name='predicted'),
        )

    def per_class_table(self) -> pd.DataFrame:
        return pd.DataFrame({
            'class': self.class_names,
            'reference_count': self.matrix.sum(axis=1),
            'predicted_count': self.matrix.sum(axis=0),
            'producers_accuracy': self.producers_accuracy(),
            'users_accuracy': self.consumers_accuracy(),
        })

    def summary(self) -> Dict:
        summary = {
            'n_points': self.total,
            'accuracy': self.accuracy(),
            'kappa': self.kappa(),
        }
        for name, pa, ua in zip(self.class_names, self.producers_accuracy(),
                                self.consumers_accuracy()):
            key = name.replace(' ', '_')
            summary[f'producers_accuracy_{key}'] = float(pa)
            summary[f'users_accuracy_{key}'] = float(ua)
        return summary

    def __repr__(self) -> str:
        return f"ConfusionMatrix({self.matrix.tolist()})"


def _safe_ratio(num: np.ndarray, den: np.ndarray) -> np.ndarray:
    num = num.astype(float)
    den = den.astype(float)
    out = np.full(num.shape, np.nan)
    np.divide(num, den, out=out, where=den > 0)
    return out


# ---------------------------------------------------------------------------
# Validation run
# ---------------------------------------------------------------------------

@dataclass
class ValidationResult:
    """Outcome of validating a classified raster against reference points."""
    matrix: ConfusionMatrix
    n_input: int
    n_used: int
    n_unmapped_labels: int
    n_outside_mask: int
    points: pd.DataFrame

    def summary(self) -> Dict:
        summary = {
            'n_input': self.n_input,
            'n_used': self.n_used,
            'n_unmapped_labels': self.n_unmapped_labels,
            'n_outside_mask': self.n_outside_mask,
        }
        summary.update(self.matrix.summary())
        return summary


def map_labels(labels: Iterable, strict: bool = False) -> List[float]:
    """
    Map labels to class codes, NaN for unknown labels.

    Unknown labels are logged once per distinct value. With ``strict`` the
    first unknown label raises LabelMappingError instead.
    """
    codes = []
    unknown = Counter()
    for label in labels:
        try:
            codes.append(float(label_to_class(label)))
        except LabelMappingError:
            if strict:
                raise
            unknown[repr(label)] += 1
            codes.append(np.nan)

    for label, count in unknown.items():
        logger.warning(f"Dropping {count} reference point(s) with unknown label {label}")

    return codes


def validate_classification(
    classified: xr.DataArray,
    reference_points: gpd.GeoDataFrame,
    provider: RasterProvider,
    label_column: str = 'change',
    scale: Optional[float] = None,
    strict_labels: bool = False,
) -> ValidationResult:
    """
    Build a confusion matrix of reference labels against classified values.

    Parameters
    ----------
    classified : xr.DataArray
        Output of classify_change()
    reference_points : GeoDataFrame
        Labelled points; not modified
    provider : RasterProvider
        Extracts the raster value at each point
    label_column : str
        Column holding the change label
    scale : float, optional
        Extraction grid size in metres; None uses the raster's native resolution
    strict_labels : bool
        Raise on unknown labels instead of dropping the point

    Returns
    -------
    ValidationResult
        Confusion matrix plus the counts of input, used, unmapped and
        out-of-mask points and a per-point table (label, ref_num, pred_num)
    """
    if label_column not in reference_points.columns:
        raise InputError(f"Label column {label_column!r} not found in reference points")

    predicted = provider.extract_at_points(classified, reference_points, scale=scale)
    ref_num = map_labels(reference_points[label_column], strict=strict_labels)

    table = pd.DataFrame({
        'label': reference_points[label_column].values,
        'ref_num': np.asarray(ref_num, dtype=float),
        'pred_num': predicted.values.astype(float),
    }, index=reference_points.index)

    n_unmapped = int(table['ref_num'].isna().sum())
    n_outside = int(table['pred_num'].isna().sum())
    used = table.dropna(subset=['ref_num', 'pred_num'])

    logger.info(
        f"Validation: {len(used)}/{len(table)} points used "
        f"({n_unmapped} unmapped labels, {n_outside} outside classified mask)"
    )
    if used.empty:
        logger.warning("No reference points survived filtering; metrics are undefined")

    matrix = ConfusionMatrix.from_pairs(
        used['ref_num'].astype(int).values,
        used['pred_num'].astype(int).values,
    )

    return ValidationResult(
        matrix=matrix,
        n_input=len(table),
        n_used=len(used),
        n_unmapped_labels=n_unmapped,
        n_outside_mask=n_outside,
        points=table,
    )
