"""
Exception taxonomy for the abundance/corridor pipeline.

Fatal conditions (bad input data, empty hotspot selection, invalid cost
surfaces) are raised; per-sample routing failures are raised by the engine and
skipped by the ensemble runner.
"""


class CorridorError(Exception):
    """Base class for all pipeline errors."""


class DataValidationError(CorridorError, ValueError):
    """Survey or grid table failed validation (schema, missing values, counts)."""


class ConvergenceError(CorridorError, RuntimeError):
    """Too many monitored parameters exceed the R-hat threshold (strict mode)."""

    def __init__(self, message, rhat=None):
        super().__init__(message)
        self.rhat = rhat


class ConvergenceWarning(UserWarning):
    """Non-fatal R-hat exceedance."""


class EmptyHotspotSet(CorridorError, ValueError):
    """The abundance threshold selected no grid cells."""

    def __init__(self, threshold, max_value=None):
        message = f"No grid cell exceeds the abundance threshold {threshold!r}"
        if max_value is not None:
            message += f" (surface maximum is {max_value:.4g})"
        super().__init__(message)
        self.threshold = threshold
        self.max_value = max_value


class UnreachableHub(CorridorError, RuntimeError):
    """No path exists between two hubs on a given cost surface."""

    def __init__(self, hub_a, hub_b, sample_index=None, reason="no path"):
        where = "" if sample_index is None else f" (sample {sample_index})"
        super().__init__(f"Hub {hub_a} cannot reach hub {hub_b}{where}: {reason}")
        self.hub_a = hub_a
        self.hub_b = hub_b
        self.sample_index = sample_index


class CostSurfaceError(CorridorError, ValueError):
    """Edge weights are NaN, infinite or negative."""
