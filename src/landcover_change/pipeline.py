"""
Change detection pipeline for one or many study areas.

Per area: composites for the "before" and "after" windows -> index ->
change raster -> classified raster -> {stratified samples, validation
against reference points}. With ``config.sar.enabled`` the Sentinel-1
backscatter change is computed too. Areas are independent and run in a
thread pool; a failing area is reported on its result and does not stop
the others.
"""

import concurrent.futures
import logging
import re
import time
from dataclasses import dataclass, field
from typing import Dict, Mapping, Optional, Sequence, Union

import geopandas as gpd
import numpy as np
import pandas as pd
import xarray as xr

from .areas import StudyArea, validate_window_order
from .change import classify_change, compute_change, compute_change_histogram, compute_class_statistics
from .config import RunConfig
from .exceptions import InputError
from .export import ExportSink
from .preprocessing import add_index, build_composite, build_sar_composite
from .provider import RasterProvider
from .sampling import sample_reference_points
from .validation import ValidationResult, validate_classification

logger = logging.getLogger(__name__)


ReferenceInput = Union[gpd.GeoDataFrame, Mapping[str, gpd.GeoDataFrame], None]


@dataclass
class AreaResult:
    """Outputs of one study area's run."""
    name: str
    composites: Dict[str, xr.Dataset] = field(default_factory=dict)
    change: Optional[xr.DataArray] = None
    sar_change: Optional[xr.DataArray] = None
    classified: Optional[xr.DataArray] = None
    class_stats: Optional[Dict] = None
    histogram: Optional[pd.DataFrame] = None
    samples: Optional[gpd.GeoDataFrame] = None
    validation: Optional[ValidationResult] = None
    error: Optional[str] = None
    processing_time: float = 0.0

    @property
    def ok(self) -> bool:
        return self.error is None

    @property
    def has_data(self) -> bool:
        return bool(self.class_stats) and self.class_stats['valid_pixels'] > 0


def _slug(name: str) -> str:
    return re.sub(r'[^A-Za-z0-9_-]+', '_', name).strip('_') or 'area'


def build_index_composites(
    study_area: StudyArea,
    config: RunConfig,
    provider: RasterProvider,
) -> Dict[str, xr.Dataset]:
    """
    Composites with the configured index band for both windows.

    Returns
    -------
    dict
        {"before": composite, "after": composite}; both lazy where the
        provider is, so they are evaluated together downstream.
    """
    validate_window_order(config.before, config.after)

    composites = {}
    for key, window in (('before', config.before), ('after', config.after)):
        composite = build_composite(
            study_area,
            window,
            config.composite.bands,
            provider,
            max_cloud_cover=config.composite.max_cloud_cover,
            invalid_codes=config.composite.scl_invalid_codes,
        )
        composites[key] = add_index(
            composite, config.index.band_a, config.index.band_b, config.index.name
        )
    return composites


def build_sar_change(
    study_area: StudyArea,
    config: RunConfig,
    provider: RasterProvider,
) -> xr.DataArray:
    """Backscatter change (after - before) of the configured polarisation, evaluated."""
    sar = config.sar
    composites = {
        key: build_sar_composite(
            study_area, window, provider,
            polarisation=sar.polarisation,
            instrument_mode=sar.instrument_mode,
            orbit_pass=sar.orbit_pass,
        )
        for key, window in (('before', config.before), ('after', config.after))
    }
    change = compute_change(composites['before'], composites['after'], sar.polarisation)
    return provider.materialize(change)


def run_area(
    study_area: StudyArea,
    config: RunConfig,
    provider: RasterProvider,
    reference_points: Optional[gpd.GeoDataFrame] = None,
    sample: bool = True,
    sink: Optional[ExportSink] = None,
) -> AreaResult:
    """
    Run the full pipeline for one study area.

    Parameters
    ----------
    study_area : StudyArea
        Area to process
    config : RunConfig
        Run parameters
    provider : RasterProvider
        Scene source and evaluator
    reference_points : GeoDataFrame, optional
        Labelled points to validate against
    sample : bool
        Draw a stratified sample for later labelling
    sink : ExportSink, optional
        Receives the classified raster, samples and validation tables
        according to the config's export flags

    Returns
    -------
    AreaResult
        Errors propagate; use run_batch() for per-area isolation.
    """
    start = time.time()
    study_area.validate()
    name = study_area.name
    result = AreaResult(name=name)

    logger.info(f"{name}: building composites for {config.before} and {config.after}")
    result.composites = build_index_composites(study_area, config, provider)

    change = compute_change(result.composites['before'], result.composites['after'], config.index.name)
    result.change = provider.materialize(change)

    cls_cfg = config.classification
    result.classified = classify_change(
        result.change, cls_cfg.decrease_threshold, cls_cfg.increase_threshold
    )
    result.class_stats = compute_class_statistics(result.classified)
    result.histogram = compute_change_histogram(result.change)

    if config.sar.enabled:
        result.sar_change = build_sar_change(study_area, config, provider)

    if not result.has_data:
        logger.warning(f"{name}: no valid pixels in both windows; outputs are empty")
    else:
        stats = result.class_stats
        logger.info(
            f"{name}: decrease {stats['decrease_pct']:.1f}% | "
            f"no change {stats['no_change_pct']:.1f}% | "
            f"increase {stats['increase_pct']:.1f}%"
        )

    if sample:
        smp = config.sampling
        result.samples = sample_reference_points(
            result.classified, study_area, smp.points_per_class, smp.scale, smp.seed, provider
        )

    if reference_points is not None:
        val = config.validation
        result.validation = validate_classification(
            result.classified,
            reference_points,
            provider,
            label_column=val.label_column,
            scale=val.scale,
            strict_labels=val.strict_labels,
        )
        summary = result.validation.summary()
        logger.info(
            f"{name}: accuracy {summary['accuracy']:.3f}, kappa {summary['kappa']:.3f} "
            f"on {summary['n_used']} points"
        )

    if sink is not None:
        _export_area(result, study_area, config, sink)

    result.processing_time = time.time() - start
    return result


def _export_area(result: AreaResult, study_area: StudyArea, config: RunConfig, sink: ExportSink):
    slug = _slug(result.name)
    if config.export_classified and result.classified is not None:
        sink.export_raster(result.classified, study_area, config.composite.resolution,
                           f"{slug}_{config.index.name}_change_class")
    if config.export_samples and result.samples is not None:
        sink.export_points(result.samples, f"{slug}_samples", file_format="CSV")
    if result.validation is not None:
        matrix = result.validation.matrix
        sink.export_table(matrix.to_dataframe(), f"{slug}_confusion_matrix", index=True)
        sink.export_table(matrix.per_class_table(), f"{slug}_class_accuracy")


def _references_for(reference_points: ReferenceInput, name: str) -> Optional[gpd.GeoDataFrame]:
    if reference_points is None:
        return None
    if isinstance(reference_points, gpd.GeoDataFrame):
        return reference_points
    return reference_points.get(name)


def run_batch(
    study_areas: Sequence[StudyArea],
    config: RunConfig,
    provider: RasterProvider,
    reference_points: ReferenceInput = None,
    sample: bool = True,
    sink: Optional[ExportSink] = None,
) -> Dict[str, AreaResult]:
    """
    Run the pipeline for several study areas in parallel.

    Parameters
    ----------
    study_areas : sequence of StudyArea
        Areas with unique names
    config : RunConfig
        Shared run parameters (``max_workers`` sets the pool size)
    provider : RasterProvider
        Scene source and evaluator
    reference_points : GeoDataFrame or mapping, optional
        One frame for all areas, or {area name: frame}
    sample : bool
        Draw stratified samples per area
    sink : ExportSink, optional
        Export target

    Returns
    -------
    dict
        {area name: AreaResult}, in input order. Failed areas carry
        ``error`` and no outputs.
    """
    names = [area.name for area in study_areas]
    if len(set(names)) != len(names):
        raise InputError(f"Study area names must be unique: {names}")
    config.validate()

    results: Dict[str, AreaResult] = {}

    with concurrent.futures.ThreadPoolExecutor(max_workers=config.max_workers) as executor:
        future_to_name = {
            executor.submit(
                run_area, area, config, provider,
                _references_for(reference_points, area.name), sample, sink,
            ): area.name
            for area in study_areas
        }

        for future in concurrent.futures.as_completed(future_to_name):
            name = future_to_name[future]
            try:
                results[name] = future.result()
            except Exception as e:
                logger.error(f"{name}: run failed: {e}")
                results[name] = AreaResult(name=name, error=f"{type(e).__name__}: {e}")

    successful = sum(1 for r in results.values() if r.ok)
    logger.info(f"Batch complete: {successful}/{len(names)} areas processed")

    return {name: results[name] for name in names}


def summarize_batch(results: Mapping[str, AreaResult]) -> pd.DataFrame:
    """One row per area with class shares and validation metrics."""
    rows = []
    for name, result in results.items():
        row = {'study_area': name, 'ok': result.ok, 'error': result.error,
               'processing_time': result.processing_time}
        if result.class_stats:
            for key in ('valid_pixels', 'decrease_pct', 'no_change_pct', 'increase_pct'):
                row[key] = result.class_stats[key]
        row['n_samples'] = len(result.samples) if result.samples is not None else np.nan
        if result.validation is not None:
            summary = result.validation.summary()
            row.update({k: summary[k] for k in ('n_used', 'accuracy', 'kappa')})
        if result.sar_change is not None:
            row['sar_mean_change'] = float(result.sar_change.mean(skipna=True))
        rows.append(row)
    return pd.DataFrame(rows)
