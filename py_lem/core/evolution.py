"""
Landscape evolution loop.

Drives Routing -> Ordering -> Accumulating -> Eroding passes over discrete
time steps until the iteration budget is spent, the relief stops changing,
or the caller cancels between steps.
"""

from concurrent.futures import Executor, ThreadPoolExecutor
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Dict, List, Optional

import numpy as np
import structlog

from ..config import Settings, settings as default_settings
from .diagnostics import StepDiagnostics, summarize
from .drainage_order import DrainageOrder, build_drainage_order
from .erosion_solver import BaselevelChange, ErosionSolver, as_site_change
from .flow_accumulation import accumulate_flow
from .flow_router import FlowRouting, route_flow
from .parameters import SimulationParameters
from .terrain_mesh import TerrainMesh

logger = structlog.get_logger()

Schedule = Callable[[int], Optional[BaselevelChange]]


class EvolutionState(Enum):
    IDLE = "idle"
    ROUTING = "routing"
    ORDERING = "ordering"
    ACCUMULATING = "accumulating"
    ERODING = "eroding"
    STEP_COMPLETE = "step_complete"


@dataclass
class EvolutionResult:
    """Final state of a run."""
    elevations: np.ndarray
    drainage_area: Optional[np.ndarray]
    receivers: Optional[np.ndarray]
    steps: int
    converged: bool = False
    cancelled: bool = False
    diagnostics: List[StepDiagnostics] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        """Plain-data view for external renderers and exporters."""
        return {
            "elevations": self.elevations.tolist(),
            "drainage_area": None if self.drainage_area is None else self.drainage_area.tolist(),
            "receivers": None if self.receivers is None else self.receivers.tolist(),
            "steps": self.steps,
            "converged": self.converged,
            "cancelled": self.cancelled,
            "summary": summarize(self.diagnostics),
        }


class LandscapeEvolution:
    """Evolves the elevations of a terrain mesh in place."""

    def __init__(self, mesh: TerrainMesh, parameters: SimulationParameters,
                 settings: Optional[Settings] = None):
        """
        Initialize the evolution loop.

        Args:
            mesh: Terrain mesh whose elevations will be mutated
            parameters: Run parameters
            settings: Engine settings; supplies the worker count when the
                parameters leave it unset

        Raises:
            InvalidMeshError: if a per-site override does not match the mesh
        """
        self.mesh = mesh
        self.parameters = parameters
        self.solver = ErosionSolver(parameters, mesh.num_sites)

        settings = settings or default_settings
        self.workers = parameters.workers or settings.workers

        self.state = EvolutionState.IDLE
        self.step_count = 0
        self.routing: Optional[FlowRouting] = None
        self.order: Optional[DrainageOrder] = None
        self.drainage_area: Optional[np.ndarray] = None

    def step(self, baselevel_change: Optional[BaselevelChange] = None,
             executor: Optional[Executor] = None) -> StepDiagnostics:
        """
        Run one full time step.

        Args:
            baselevel_change: Optional outlet elevation change for this step
            executor: Optional pool for basin-level fan-out

        Returns:
            StepDiagnostics for the step

        Raises:
            InvalidMeshError: if ``baselevel_change`` is neither a scalar nor
                one value per site; nothing is modified
        """
        baselevel_change = as_site_change(baselevel_change, self.mesh.num_sites,
                                          "baselevel change")
        elevations = self.mesh.elevations

        self.state = EvolutionState.ROUTING
        self.routing = route_flow(self.mesh, elevations)

        self.state = EvolutionState.ORDERING
        self.order = build_drainage_order(self.routing.receivers, self.mesh.outlets)

        self.state = EvolutionState.ACCUMULATING
        self.drainage_area = accumulate_flow(
            self.order, self.routing.receivers, self.mesh.cell_areas, executor=executor
        )

        self.state = EvolutionState.ERODING
        report = self.solver.solve(
            elevations, self.routing, self.order, self.drainage_area,
            baselevel_change=baselevel_change, executor=executor,
        )

        self.step_count += 1
        self.state = EvolutionState.STEP_COMPLETE

        diagnostics = StepDiagnostics(
            step=self.step_count,
            pit_count=self.routing.pit_count,
            redirected_count=self.routing.redirected_count,
            max_elevation_change=report.max_change,
            failures=report.failures,
        )
        logger.debug("Time step complete", **diagnostics.as_dict())
        return diagnostics

    def _apply_uplift(self, extra: Optional[np.ndarray]) -> None:
        if extra is None:
            return
        interior = self.mesh.interior
        self.mesh.elevations[interior] += extra if extra.ndim == 0 else extra[interior]

    def run(self, uplift_schedule: Optional[Schedule] = None,
            baselevel_schedule: Optional[Schedule] = None,
            cancel: Optional[Any] = None) -> EvolutionResult:
        """
        Evolve the mesh until a halting condition is met.

        Args:
            uplift_schedule: Called with the step index before routing;
                returns extra elevation for interior sites or None
            baselevel_schedule: Called with the step index; returns the
                outlet change handed to the solver or None
            cancel: Object with ``is_set()`` (e.g. ``threading.Event``),
                checked between steps only

        Returns:
            EvolutionResult with final elevations and per-step diagnostics

        Raises:
            InvalidMeshError: if a per-site override or a schedule value does
                not match the mesh; the step it belongs to is not applied
        """
        p = self.parameters
        logger.info("Starting landscape evolution",
                    sites=self.mesh.num_sites, max_iterations=p.max_iterations,
                    workers=self.workers)

        diagnostics = []
        converged = False
        cancelled = False

        executor = ThreadPoolExecutor(max_workers=self.workers) if self.workers > 1 else None
        try:
            for step in range(p.max_iterations):
                if cancel is not None and cancel.is_set():
                    cancelled = True
                    logger.info("Evolution cancelled", steps=len(diagnostics))
                    break

                # both schedule values are checked before any elevation changes
                n_sites = self.mesh.num_sites
                uplift = as_site_change(
                    uplift_schedule(step) if uplift_schedule else None, n_sites, "scheduled uplift"
                )
                baselevel = as_site_change(
                    baselevel_schedule(step) if baselevel_schedule else None, n_sites,
                    "scheduled baselevel change",
                )
                self._apply_uplift(uplift)

                step_diagnostics = self.step(baselevel_change=baselevel, executor=executor)
                diagnostics.append(step_diagnostics)

                if (p.convergence_threshold > 0
                        and step_diagnostics.max_elevation_change < p.convergence_threshold):
                    converged = True
                    break
        finally:
            if executor is not None:
                executor.shutdown(wait=True)

        result = EvolutionResult(
            elevations=self.mesh.elevations.copy(),
            drainage_area=None if self.drainage_area is None else self.drainage_area.copy(),
            receivers=None if self.routing is None else self.routing.receivers.copy(),
            steps=len(diagnostics),
            converged=converged,
            cancelled=cancelled,
            diagnostics=diagnostics,
        )

        logger.info("Landscape evolution finished",
                    converged=converged, cancelled=cancelled,
                    **summarize(diagnostics), **self.mesh.summary())
        return result


def evolve(mesh: TerrainMesh, parameters: SimulationParameters, **kwargs) -> EvolutionResult:
    """Convenience wrapper: build a LandscapeEvolution and run it."""
    return LandscapeEvolution(mesh, parameters).run(**kwargs)
