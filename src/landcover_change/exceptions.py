"""
Error types raised by the change detection pipeline.

Empty results (no scenes, no valid pixels, no surviving validation
points) are not errors; they flow through as NaN / empty outputs.
"""


class ChangeDetectionError(Exception):
    """Base class for all pipeline errors."""


class InputError(ChangeDetectionError):
    """Malformed input: geometry, date window, band name, thresholds."""


class ProviderError(ChangeDetectionError):
    """The raster/vector provider failed or timed out."""


class LabelMappingError(ChangeDetectionError):
    """A ground-truth label is outside the known change vocabulary."""

    def __init__(self, label):
        self.label = label
        super().__init__(f"Unknown change label: {label!r}")
