"""Error taxonomy for the landscape evolution engine."""

from typing import Optional


class LemError(Exception):
    """Base class for all engine errors."""


class InvalidMeshError(LemError, ValueError):
    """Malformed mesh topology. Raised before any state is stored."""


class NoOutletReachableError(InvalidMeshError):
    """The mesh has no outlet site, so no flow path can terminate."""


class CyclicDrainageError(LemError, RuntimeError):
    """The receiver graph is not a forest rooted at the outlets."""

    def __init__(self, unreached: int, message: Optional[str] = None):
        super().__init__(
            message or f"{unreached} site(s) not reachable from any outlet; receiver graph has a cycle"
        )
        self.unreached = unreached


class ErosionConvergenceError(LemError):
    """
    Newton solve for a single site exceeded its iteration cap.

    Never raised out of a run: the solver records it as a diagnostic and
    falls back to the linear closed form for that site.
    """

    def __init__(self, site: int, iterations: int, residual: Optional[float] = None):
        super().__init__(
            f"Erosion solve did not converge at site {site} after {iterations} iterations"
        )
        self.site = site
        self.iterations = iterations
        self.residual = residual
