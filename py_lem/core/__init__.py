"""
Core landscape evolution functionality.
"""

from .errors import (LemError, InvalidMeshError, NoOutletReachableError,
                     ErosionConvergenceError, CyclicDrainageError)
from .terrain_mesh import TerrainMesh, SiteRecord
from .mesh_builder import GridConfig, build_grid_mesh, build_voronoi_mesh, perturb_elevations
from .parameters import SimulationParameters
from .flow_router import NO_RECEIVER, FlowRouting, route_flow
from .drainage_order import DrainageBasin, DrainageOrder, build_drainage_order, is_topological
from .flow_accumulation import accumulate_flow
from .erosion_solver import ErosionSolver, ErosionReport, SiteSolution, solve_site, solve_linear
from .diagnostics import StepDiagnostics
from .evolution import EvolutionState, EvolutionResult, LandscapeEvolution, evolve

__all__ = ['LemError', 'InvalidMeshError', 'NoOutletReachableError',
           'ErosionConvergenceError', 'CyclicDrainageError',
           'TerrainMesh', 'SiteRecord',
           'GridConfig', 'build_grid_mesh', 'build_voronoi_mesh', 'perturb_elevations',
           'SimulationParameters',
           'NO_RECEIVER', 'FlowRouting', 'route_flow',
           'DrainageBasin', 'DrainageOrder', 'build_drainage_order', 'is_topological',
           'accumulate_flow',
           'ErosionSolver', 'ErosionReport', 'SiteSolution', 'solve_site', 'solve_linear',
           'StepDiagnostics',
           'EvolutionState', 'EvolutionResult', 'LandscapeEvolution', 'evolve']
