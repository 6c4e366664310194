class GrabCutError(Exception):
    """Base class for segmentation errors."""


class InvalidInputError(GrabCutError, ValueError):
    """Raised when an image, mask, rectangle or model vector is unusable."""


class ModelNotReadyError(GrabCutError, RuntimeError):
    """
    Raised when a mixture model is evaluated before it has been fitted.

    This is a contract violation on the caller's side (a component
    indexing bug), not a recoverable condition.
    """
