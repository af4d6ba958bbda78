"""
Implicit stream-power erosion.

Every interior site is updated by solving

    z_new = z_old + U*dt - K*dt*A^m * ((z_new - z_rcv) / d)^n

for ``z_new``, with ``z_rcv`` the receiver's already-updated elevation. Sites
are therefore processed outlets first. The scheme is unconditionally stable:
no time step can push a site below its receiver.

The per-site loops are compiled with numba and release the GIL, so basins
handed to a thread pool are solved in parallel.
"""

from concurrent.futures import Executor
from dataclasses import dataclass, field
from typing import List, NamedTuple, Optional, Tuple, Union

import numpy as np
import structlog
from numba import njit

from .drainage_order import DrainageOrder
from .errors import ErosionConvergenceError, InvalidMeshError
from .flow_router import NO_RECEIVER, FlowRouting
from .parameters import SimulationParameters

logger = structlog.get_logger()

BaselevelChange = Union[float, np.ndarray]


class SiteSolution(NamedTuple):
    """Result of a single-site implicit solve."""
    elevation: float
    converged: bool
    iterations: int
    residual: float


@dataclass
class ErosionReport:
    """Outcome of one erosion pass."""
    max_change: float = 0.0
    failures: List[ErosionConvergenceError] = field(default_factory=list)

    @property
    def non_converged(self) -> int:
        return len(self.failures)


def as_site_change(value, n_sites: int, name: str) -> Optional[np.ndarray]:
    """
    Validate a scalar or per-site elevation change.

    Returns:
        A 0-d or ``(n_sites,)`` float array, or None when ``value`` is None

    Raises:
        InvalidMeshError: on any other shape or a non-finite entry
    """
    if value is None:
        return None
    change = np.asarray(value, dtype=np.float64)
    if change.ndim != 0 and change.shape != (n_sites,):
        raise InvalidMeshError(
            f"{name} has shape {change.shape}; expected a scalar or {n_sites} entries"
        )
    if not np.all(np.isfinite(change)):
        raise InvalidMeshError(f"{name} must be finite")
    return change


@njit(cache=True, nogil=True)
def solve_linear(z_old, z_receiver, uplift_dt, factor):
    """Closed-form update for ``n = 1``; ``factor`` is ``K*dt*A^m/d``."""
    return (z_old + uplift_dt + factor * z_receiver) / (1.0 + factor)


@njit(cache=True, nogil=True)
def _solve_site(z_old, z_receiver, uplift_dt, factor, slope_exponent,
                max_iterations, tolerance):
    uplifted = z_old + uplift_dt
    if factor == 0.0:
        return uplifted, True, 0, 0.0

    h0 = uplifted - z_receiver
    if h0 <= 0.0:
        # site sits in a depression: deposit up to the receiver
        return z_receiver, True, 0, 0.0

    if slope_exponent == 1.0:
        z_new = solve_linear(z_old, z_receiver, uplift_dt, factor)
        return max(z_new, z_receiver), True, 0, 0.0

    n = slope_exponent
    h = h0
    scale = max(h0, 1e-300)
    for iteration in range(1, max_iterations + 1):
        g = h + factor * h ** n - h0
        dg = 1.0 + n * factor * h ** (n - 1.0)
        h_next = h - g / dg
        if h_next <= 0.0:
            h_next = 0.5 * h
        converged = abs(h_next - h) <= tolerance * scale
        h = h_next
        if converged:
            return z_receiver + h, True, iteration, 0.0

    residual = abs(h + factor * h ** n - h0)
    return z_receiver + h, False, max_iterations, residual


def solve_site(z_old: float, z_receiver: float, uplift_dt: float, factor: float,
               slope_exponent: float, max_iterations: int = 20,
               tolerance: float = 1e-10) -> SiteSolution:
    """
    Solve one site's implicit update.

    Newton iteration runs on the height above the receiver,
    ``h + factor * h**n = h0`` with ``h0 = z_old + uplift_dt - z_receiver``,
    starting from ``h0``. The iteration is capped at ``max_iterations``.

    Args:
        z_old: Elevation before the step
        z_receiver: Receiver elevation after the step
        uplift_dt: Uplift applied over the step
        factor: ``K*dt*A^m / d**n``
        slope_exponent: Exponent ``n``
        max_iterations: Newton iteration cap
        tolerance: Relative step size accepted as converged

    Returns:
        SiteSolution; ``converged`` is False only when the cap was reached
    """
    elevation, converged, iterations, residual = _solve_site(
        float(z_old), float(z_receiver), float(uplift_dt), float(factor),
        float(slope_exponent), int(max_iterations), float(tolerance),
    )
    return SiteSolution(float(elevation), bool(converged), int(iterations), float(residual))


@njit(cache=True, nogil=True)
def _erode_sites(sites, elevations, receivers, distances, uplift_dt, factor, linear,
                 max_gradient, slope_exponent, max_iterations, tolerance,
                 failed, iterations, residuals):
    """Solve ``sites`` in the given order; records Newton failures per site."""
    for k in range(len(sites)):
        i = sites[k]
        r = receivers[i]
        if r == NO_RECEIVER:
            continue

        z_receiver = elevations[r]
        z_new, converged, used, residual = _solve_site(
            elevations[i], z_receiver, uplift_dt[i], factor[i], slope_exponent,
            max_iterations, tolerance,
        )

        if not converged:
            failed[i] = True
            iterations[i] = used
            residuals[i] = residual
            z_new = max(solve_linear(elevations[i], z_receiver, uplift_dt[i], linear[i]),
                        z_receiver)

        z_new = min(z_new, z_receiver + max_gradient[i] * distances[i])
        elevations[i] = z_new


class ErosionSolver:
    """Applies the implicit stream-power law over a drainage order."""

    def __init__(self, parameters: SimulationParameters, n_sites: int):
        """
        Initialize the solver.

        Args:
            parameters: Run parameters
            n_sites: Mesh size, used to expand per-site overrides
        """
        parameters.check_mesh_size(n_sites)
        self.parameters = parameters
        self.n_sites = n_sites
        self.uplift = parameters.site_uplift(n_sites)
        self.erodibility = parameters.site_erodibility(n_sites)

        max_slope = parameters.site_max_slope(n_sites)
        if max_slope is None:
            self.max_gradient = np.full(n_sites, np.inf)
        else:
            self.max_gradient = np.tan(max_slope)

    def _factors(self, routing: FlowRouting, area: np.ndarray) -> Tuple[np.ndarray, np.ndarray]:
        """Per-site ``K*dt*A^m / d**n`` and its ``n = 1`` counterpart."""
        p = self.parameters
        common = self.erodibility * p.time_step * np.power(area, p.area_exponent)
        distance = routing.receiver_distances
        has_receiver = routing.receivers != NO_RECEIVER

        factor = np.zeros(self.n_sites, dtype=np.float64)
        linear = np.zeros(self.n_sites, dtype=np.float64)
        np.divide(common, np.power(distance, p.slope_exponent), out=factor, where=has_receiver)
        np.divide(common, distance, out=linear, where=has_receiver)
        return factor, linear

    def solve(self, elevations: np.ndarray, routing: FlowRouting, order: DrainageOrder,
              area: np.ndarray, baselevel_change: Optional[BaselevelChange] = None,
              executor: Optional[Executor] = None) -> ErosionReport:
        """
        Update ``elevations`` in place for one time step.

        Outlets stay fixed unless ``baselevel_change`` is given, in which case
        it is added to them (scalar, or a per-site array read at the outlets)
        before any interior site is solved.

        Args:
            elevations: Elevation array to update
            routing: Receiver graph for this step
            order: Drainage order built from ``routing``
            area: Accumulated drainage area
            baselevel_change: Optional outlet elevation change
            executor: If given, basins are solved as independent tasks

        Returns:
            ErosionReport with non-converged sites and the largest change

        Raises:
            InvalidMeshError: if ``baselevel_change`` is neither a scalar nor
                one value per site; ``elevations`` is left untouched
        """
        change = as_site_change(baselevel_change, self.n_sites, "baselevel change")
        p = self.parameters
        previous = elevations.copy()
        outlets = np.flatnonzero(routing.receivers == NO_RECEIVER)

        if change is not None:
            elevations[outlets] += change if change.ndim == 0 else change[outlets]

        factor, linear = self._factors(routing, area)
        uplift_dt = self.uplift * p.time_step

        failed = np.zeros(self.n_sites, dtype=np.bool_)
        iterations = np.zeros(self.n_sites, dtype=np.int64)
        residuals = np.zeros(self.n_sites, dtype=np.float64)

        def erode(sites):
            _erode_sites(np.ascontiguousarray(sites), elevations, routing.receivers,
                         routing.receiver_distances, uplift_dt, factor, linear,
                         self.max_gradient, float(p.slope_exponent),
                         int(p.newton_max_iterations), float(p.newton_tolerance),
                         failed, iterations, residuals)

        if executor is None or len(order.basins) < 2:
            erode(order.downstream_first())
        else:
            futures = [executor.submit(erode, order.basin_sites(basin)[::-1])
                       for basin in order.basins]
            for future in futures:
                future.result()

        failures = [
            ErosionConvergenceError(int(i), int(iterations[i]), float(residuals[i]))
            for i in np.flatnonzero(failed)
        ]

        report = ErosionReport(
            max_change=float(np.max(np.abs(elevations - previous))),
            failures=failures,
        )

        if report.non_converged:
            logger.warning("Erosion solve fell back to linear update",
                           sites=report.non_converged)

        return report
