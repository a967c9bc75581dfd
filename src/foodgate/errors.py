"""Exception hierarchy for the food classification pipeline.

Everything the classifier can raise derives from ``ClassificationError`` so a
caller can handle the whole pipeline with a single ``except`` clause. Only the
gate converts these into fail-open results.
"""

from __future__ import annotations


class ClassificationError(Exception):
    """A failure anywhere in the decode -> inference -> reduction pipeline."""


class InvalidInputError(ClassificationError, ValueError):
    """The image payload is empty, oversized, or of an unsupported type."""


class DecodeError(ClassificationError, ValueError):
    """The image payload could not be decoded."""


class ModelLoadError(ClassificationError, RuntimeError):
    """The model weights are missing, unreadable, or rejected by the runtime."""


class NotLoadedError(ClassificationError, RuntimeError):
    """Inference was requested before the model finished loading."""


class InferenceBusyError(ClassificationError, TimeoutError):
    """No inference slot became free within the queue timeout."""
