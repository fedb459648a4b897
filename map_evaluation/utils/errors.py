"""
Error types raised by loaders, writers and request validation.

Per-sample anomalies (unknown space, queries without neighbors) are counted by
the evaluators and never raised.
"""


class MapEvaluationError(Exception):
    """Base class for all evaluation errors."""


class InvalidConfigError(MapEvaluationError, ValueError):
    """Raised when an evaluation request has invalid parameters."""


class LoadFailure(MapEvaluationError):
    """Raised when a ground truth cloud or map cannot be loaded."""


class UnsupportedFormatError(LoadFailure):
    """Raised when a map file has an unrecognized extension."""


class OutputWriteFailure(MapEvaluationError):
    """Raised when a result file cannot be created or written."""
