"""
Configuration management for change detection runs.
"""

import os
import json
import logging
from dataclasses import dataclass, asdict, field
from typing import Dict, Any, Optional, Tuple

from dotenv import load_dotenv

from .areas import DateWindow, validate_window_order
from .exceptions import InputError

logger = logging.getLogger(__name__)


# Sentinel-2 SCL classes excluded from composites
# 3: CLOUD_SHADOW
# 8: CLOUD_MEDIUM_PROBABILITY
# 9: CLOUD_HIGH_PROBABILITY
# 10: THIN_CIRRUS
DEFAULT_SCL_INVALID = (3, 8, 9, 10)

# Normalized difference presets: name -> (band_a, band_b), value = (a - b) / (a + b)
INDEX_PRESETS = {
    "NDRE1": ("b08", "b05"),
    "NDVI": ("b08", "b04"),
}


@dataclass
class CompositeConfig:
    """Scene search and compositing settings."""
    catalog_url: str = "https://stac.core.eopf.eodc.eu"
    collection: str = "sentinel-2-l2a"
    bands: Tuple[str, ...] = ("b04", "b05", "b08")
    max_cloud_cover: float = 20.0
    scl_invalid_codes: Tuple[int, ...] = DEFAULT_SCL_INVALID
    resolution: float = 10.0  # metres


@dataclass
class IndexConfig:
    """Spectral index used for change detection."""
    name: str = "NDRE1"
    band_a: str = "b08"
    band_b: str = "b05"

    @classmethod
    def preset(cls, name: str) -> "IndexConfig":
        if name not in INDEX_PRESETS:
            raise InputError(f"Unknown index preset {name!r}; known: {sorted(INDEX_PRESETS)}")
        band_a, band_b = INDEX_PRESETS[name]
        return cls(name=name, band_a=band_a, band_b=band_b)


@dataclass
class ClassificationConfig:
    decrease_threshold: float = -0.1
    increase_threshold: float = 0.1


@dataclass
class SamplingConfig:
    """Stratified reference sample settings."""
    points_per_class: int = 50
    scale: float = 30.0  # metres
    seed: int = 42


@dataclass
class ValidationConfig:
    label_column: str = "change"
    scale: Optional[float] = None  # None = native raster resolution
    strict_labels: bool = False


@dataclass
class SarConfig:
    """Sentinel-1 backscatter change, computed alongside the optical index when enabled."""
    enabled: bool = False
    collection: str = "sentinel-1-l1-grd"
    polarisation: str = "VV"
    instrument_mode: str = "IW"
    orbit_pass: str = "DESCENDING"


@dataclass
class LoggingConfig:
    """Logging configuration."""
    level: str = "INFO"
    format: str = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"


@dataclass
class RunConfig:
    """Complete parameter set for one change detection run over any number of areas."""
    before: DateWindow = field(default_factory=lambda: DateWindow(2019, "04-15", "06-15"))
    after: DateWindow = field(default_factory=lambda: DateWindow(2024, "04-15", "06-15"))
    composite: CompositeConfig = field(default_factory=CompositeConfig)
    index: IndexConfig = field(default_factory=IndexConfig)
    classification: ClassificationConfig = field(default_factory=ClassificationConfig)
    sampling: SamplingConfig = field(default_factory=SamplingConfig)
    validation: ValidationConfig = field(default_factory=ValidationConfig)
    sar: SarConfig = field(default_factory=SarConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)

    output_directory: str = "outputs"
    timeout_seconds: Optional[float] = None
    max_workers: int = 2
    export_classified: bool = False
    export_samples: bool = False

    @classmethod
    def from_dict(cls, config_dict: Dict[str, Any]) -> "RunConfig":
        """Build a RunConfig from a (possibly partial) nested dictionary."""
        defaults = asdict(cls())
        merged = _merge_configs(defaults, config_dict)

        composite = dict(merged['composite'])
        composite['bands'] = tuple(composite['bands'])
        composite['scl_invalid_codes'] = tuple(int(c) for c in composite['scl_invalid_codes'])

        return cls(
            before=DateWindow(**merged['before']),
            after=DateWindow(**merged['after']),
            composite=CompositeConfig(**composite),
            index=IndexConfig(**merged['index']),
            classification=ClassificationConfig(**merged['classification']),
            sampling=SamplingConfig(**merged['sampling']),
            validation=ValidationConfig(**merged['validation']),
            sar=SarConfig(**merged['sar']),
            logging=LoggingConfig(**merged['logging']),
            output_directory=merged['output_directory'],
            timeout_seconds=merged['timeout_seconds'],
            max_workers=int(merged['max_workers']),
            export_classified=bool(merged['export_classified']),
            export_samples=bool(merged['export_samples']),
        )

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    def validate(self) -> "RunConfig":
        """
        Check parameter consistency.

        Raises
        ------
        InputError
            On reversed windows, inverted thresholds or out-of-range values
        """
        validate_window_order(self.before, self.after)

        cls_cfg = self.classification
        if cls_cfg.decrease_threshold > cls_cfg.increase_threshold:
            raise InputError(
                f"decrease_threshold ({cls_cfg.decrease_threshold}) must not exceed "
                f"increase_threshold ({cls_cfg.increase_threshold})"
            )
        if not 0 <= self.composite.max_cloud_cover <= 100:
            raise InputError("max_cloud_cover must be between 0 and 100")
        if self.sampling.points_per_class < 0:
            raise InputError("points_per_class must be non-negative")
        if self.sampling.scale <= 0:
            raise InputError("sample scale must be positive")
        if self.max_workers < 1:
            raise InputError("max_workers must be at least 1")
        if self.timeout_seconds is not None and self.timeout_seconds <= 0:
            raise InputError("timeout_seconds must be positive when set")
        for band in (self.index.band_a, self.index.band_b):
            if band not in self.composite.bands:
                raise InputError(
                    f"Index band {band!r} is not among composite bands {self.composite.bands}"
                )
        if self.sar.orbit_pass.upper() not in ("ASCENDING", "DESCENDING"):
            raise InputError(f"orbit_pass must be ASCENDING or DESCENDING, got {self.sar.orbit_pass!r}")
        return self


def _merge_configs(base: Dict[str, Any], override: Dict[str, Any]) -> Dict[str, Any]:
    """Merge two configuration dictionaries."""
    result = base.copy()

    for key, value in override.items():
        if key in result and isinstance(result[key], dict) and isinstance(value, dict):
            result[key] = _merge_configs(result[key], value)
        else:
            result[key] = value

    return result


def _parse_bool(value: str) -> bool:
    return value.lower() == 'true'


# Environment variable -> (section, key, type); section None = top level
_ENV_OVERRIDES = {
    'CHANGE_DECREASE_THRESHOLD': ('classification', 'decrease_threshold', float),
    'CHANGE_INCREASE_THRESHOLD': ('classification', 'increase_threshold', float),
    'CHANGE_POINTS_PER_CLASS': ('sampling', 'points_per_class', int),
    'CHANGE_SAMPLE_SCALE': ('sampling', 'scale', float),
    'CHANGE_RANDOM_SEED': ('sampling', 'seed', int),
    'CHANGE_MAX_CLOUD_COVER': ('composite', 'max_cloud_cover', float),
    'CHANGE_TIMEOUT_SECONDS': (None, 'timeout_seconds', float),
    'CHANGE_MAX_WORKERS': (None, 'max_workers', int),
    'CHANGE_OUTPUT_DIRECTORY': (None, 'output_directory', str),
    'CHANGE_SAR_ENABLED': ('sar', 'enabled', _parse_bool),
    'LOG_LEVEL': ('logging', 'level', str.upper),
}


def _load_from_environment() -> Dict[str, Any]:
    """Load configuration overrides from environment variables."""
    env_config: Dict[str, Any] = {}

    for var, (section, key, cast) in _ENV_OVERRIDES.items():
        if var not in os.environ:
            continue
        try:
            value = cast(os.environ[var])
        except ValueError as e:
            raise InputError(f"Invalid value for {var}: {os.environ[var]!r}") from e
        if section is None:
            env_config[key] = value
        else:
            env_config.setdefault(section, {})[key] = value

    return env_config


def _load_from_file(file_path: str) -> Dict[str, Any]:
    """Load configuration from JSON file."""
    try:
        with open(file_path, 'r') as f:
            return json.load(f)
    except (OSError, json.JSONDecodeError) as e:
        raise InputError(f"Failed to load config file {file_path}: {e}") from e


def load_config(config_file: str = None, env_file: str = ".env") -> RunConfig:
    """
    Load run configuration from defaults, a JSON file and the environment.

    Later sources override earlier ones: defaults <- JSON file <- environment.

    Parameters
    ----------
    config_file : str, optional
        Path to a JSON file with any subset of the RunConfig fields
    env_file : str
        Path to a dotenv file loaded before reading the environment

    Returns
    -------
    RunConfig
        Validated configuration
    """
    if env_file and os.path.exists(env_file):
        load_dotenv(env_file)
        logger.info(f"Loaded environment variables from {env_file}")

    config_dict: Dict[str, Any] = {}
    if config_file:
        config_dict = _merge_configs(config_dict, _load_from_file(config_file))
        logger.info(f"Loaded configuration from {config_file}")

    config_dict = _merge_configs(config_dict, _load_from_environment())

    try:
        config = RunConfig.from_dict(config_dict)
    except TypeError as e:
        # unknown keys in a section
        raise InputError(f"Invalid configuration: {e}") from e

    return config.validate()


def save_config(config: RunConfig, file_path: str):
    """Save a configuration to a JSON file."""
    with open(file_path, 'w') as f:
        json.dump(config.to_dict(), f, indent=2)

    logger.info(f"Configuration saved to {file_path}")


def setup_logging(config: LoggingConfig = None):
    """Configure the root logger from a LoggingConfig."""
    if config is None:
        config = LoggingConfig()
    logging.basicConfig(level=getattr(logging, config.level.upper(), logging.INFO),
                        format=config.format)
