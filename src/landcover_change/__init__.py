"""
Landcover-Change: Two-Date Spectral Index Change Detection and Validation
========================================================================

Modules:
    areas: Study areas and seasonal date windows
    data_loader: EOPF STAC search (Sentinel-2, Sentinel-1) and datacube formation
    provider: Scene query, evaluation, stratified sampling, point extraction
    preprocessing: Cloud masking, optical and SAR median composites, indices
    change: Change rasters, three-way classification, change statistics
    sampling: Stratified reference point sampling
    validation: Reference points, confusion matrix, accuracy and kappa
    export: GeoTIFF / CSV export sink
    pipeline: Per-area and batch runs
    visualization: Plotting utilities
"""

from .areas import StudyArea, DateWindow, validate_window_order

from .config import (
    RunConfig,
    CompositeConfig,
    IndexConfig,
    ClassificationConfig,
    SamplingConfig,
    ValidationConfig,
    SarConfig,
    LoggingConfig,
    load_config,
    save_config,
    setup_logging,
)

from .exceptions import (
    ChangeDetectionError,
    InputError,
    ProviderError,
    LabelMappingError,
)

from .provider import RasterProvider, InMemoryProvider, StacProvider

from .preprocessing import (
    apply_cloud_mask,
    build_composite,
    build_sar_composite,
    add_index,
    compute_ndvi,
)

from .change import (
    compute_change,
    classify_change,
    compute_change_histogram,
    compute_class_statistics,
    CLASS_NAMES,
    CLASS_NODATA,
)

from .sampling import sample_reference_points

from .validation import (
    ConfusionMatrix,
    ValidationResult,
    label_to_class,
    load_reference_points,
    reference_points_from_features,
    validate_classification,
)

from .export import ExportSink

from .pipeline import AreaResult, build_sar_change, run_area, run_batch, summarize_batch

from .visualization import (
    plot_change_map,
    plot_class_map,
    plot_change_histogram,
    plot_confusion_matrix,
)

__version__ = "0.1.0"
