"""
Exception types raised inside the outage polygon engine.

Only a failure of the caller-supplied device source is allowed to escape
``generate_outage_polygons``; every other error is handled by falling back to
a cheaper algorithm and recording the degradation in the run metrics.
"""


class OutageGenError(Exception):
    """Base class for engine errors."""


class InputError(OutageGenError):
    """A device or cluster cannot be used (bad coordinates, empty input)."""


class GeometricDegeneracy(OutageGenError):
    """Hull construction produced fewer than 3 usable vertices."""


class BudgetExceeded(OutageGenError):
    """A pipeline stage ran longer than its configured budget."""

    def __init__(self, stage, elapsed, budget):
        super().__init__(f"{stage} took {elapsed * 1000:.0f}ms (budget {budget * 1000:.0f}ms)")
        self.stage = stage
        self.elapsed = elapsed
        self.budget = budget


class MergeFailure(OutageGenError):
    """The union of overlapping polygons collapsed."""


class DeviceSourceError(OutageGenError):
    """The caller's device source could not be read."""


class PipelineCancelled(OutageGenError):
    """Raised at a suspension point once cancellation has been requested."""
