"""Exception hierarchy for the visualizer pipeline.

Fatal errors (missing parameter, metadata fetch/parse) abort initialization.
Label map and test-image fetch errors are caught by the orchestrator and
degrade the affected resource to its empty default.
"""

from __future__ import annotations


class VisualizerError(Exception):
    """Base class for all visualizer errors."""


class MissingParameterError(VisualizerError):
    """No model metadata URL was supplied."""


class MetadataFetchError(VisualizerError):
    """The metadata document could not be retrieved."""


class MetadataParseError(VisualizerError):
    """The metadata document has no recognized model type or is malformed."""


class LabelMapFetchError(VisualizerError):
    """The label map document could not be retrieved."""


class InvalidLabelMapError(VisualizerError):
    """A label map entry has a negative or non-integer id, or the document is malformed."""


class TestImageFetchError(VisualizerError):
    """The test-image index (or a test image) could not be retrieved."""


class ModelLoadError(VisualizerError):
    """The model file could not be downloaded or turned into a session."""


class ModelNotReadyError(VisualizerError):
    """Classification was requested before the model reached the ready state."""


class UnsupportedModelTypeError(VisualizerError):
    """The loaded model type has no result builder."""


class ImageDecodeError(VisualizerError):
    """Image bytes could not be decoded or exceed the configured limits."""
