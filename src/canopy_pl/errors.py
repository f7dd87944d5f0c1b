class CompositingError(RuntimeError):
    """Base class for pipeline failures."""


class GeometryGapError(CompositingError):
    """Tiles do not cover the AOI, or a coarse cell has no fine cells under it."""


class InsufficientSampleError(CompositingError):
    """Fewer qualifying tiles than requested."""


class MissingCoverageError(CompositingError):
    """A composite pixel has no contributing tile."""


class TransientFitError(CompositingError):
    """A per-tile model fit failed in a way worth retrying."""


class DegenerateWeightWarning(UserWarning):
    """Zero RMSE or a flat partition; a default weight was substituted."""
