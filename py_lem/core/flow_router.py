"""
Single-flow-direction routing.

This module implements:
- Steepest-descent receiver selection with lowest-index tie-break
- Pit detection
- Priority-flood resolution of depressions so every site drains to an outlet
"""

import heapq
from dataclasses import dataclass
from typing import Optional

import numpy as np
import structlog

from .errors import NoOutletReachableError
from .terrain_mesh import TerrainMesh

logger = structlog.get_logger()

NO_RECEIVER = -1


@dataclass
class FlowRouting:
    """Receiver graph derived from one elevation field."""
    receivers: np.ndarray            # receiver per site, NO_RECEIVER for outlets
    receiver_distances: np.ndarray   # distance to receiver, 0 for outlets
    drainage_elevations: np.ndarray  # filled surface; strictly decreasing along receivers
    pit_count: int                   # pits resolved by the flood
    redirected_count: int            # depression sites rerouted by the flood

    @property
    def num_sites(self) -> int:
        return len(self.receivers)


def steepest_descent(mesh: TerrainMesh, elevations: np.ndarray) -> np.ndarray:
    """
    Pick the steepest strictly-descending neighbor for every interior site.

    Neighbors are scanned in ascending index order and only a strictly
    steeper slope replaces the current choice, so the lowest index wins ties.
    Interior sites without a lower neighbor are left pointing at themselves.

    Returns:
        Receiver array (self-index for pits, NO_RECEIVER for outlets)
    """
    n_sites = mesh.num_sites
    receivers = np.arange(n_sites, dtype=np.int64)

    for i in range(n_sites):
        if mesh.boundary_flags[i]:
            receivers[i] = NO_RECEIVER
            continue

        z = elevations[i]
        steepest = 0.0
        for j, d in zip(mesh.site_neighbors[i], mesh.neighbor_distances[i]):
            if elevations[j] < z:
                slope = (z - elevations[j]) / d
                if slope > steepest:
                    steepest = slope
                    receivers[i] = j

    return receivers


def find_sinks(receivers: np.ndarray) -> np.ndarray:
    """
    Resolve the terminal site of every descent chain.

    Returns:
        Array giving, per site, the outlet or pit its chain ends in
    """
    n_sites = len(receivers)
    sink = np.full(n_sites, -1, dtype=np.int64)

    for start in range(n_sites):
        if sink[start] != -1:
            continue
        path = []
        i = start
        while sink[i] == -1:
            r = receivers[i]
            if r == NO_RECEIVER or r == i:
                sink[i] = i
                break
            path.append(i)
            i = r
        terminal = sink[i]
        for k in path:
            sink[k] = terminal

    return sink


def resolve_depressions(mesh: TerrainMesh, elevations: np.ndarray,
                        receivers: np.ndarray, in_depression: np.ndarray) -> np.ndarray:
    """
    Priority flood from every outlet.

    Sites are processed in ascending ``(drainage elevation, index)`` order.
    A site first reached from ``p`` gets drainage elevation
    ``max(z, nextafter(e_p))``; depression sites take ``p`` as receiver.

    Args:
        mesh: Terrain mesh
        elevations: Elevation field being routed
        receivers: Steepest-descent receivers, updated in place
        in_depression: Mask of sites whose descent chain ends in a pit

    Returns:
        Drainage elevation per site
    """
    n_sites = mesh.num_sites
    drainage = elevations.astype(np.float64).copy()
    visited = np.zeros(n_sites, dtype=bool)

    pq = []
    for outlet in mesh.outlets:
        heapq.heappush(pq, (drainage[outlet], int(outlet)))
        visited[outlet] = True

    while pq:
        level, i = heapq.heappop(pq)
        for j in mesh.site_neighbors[i]:
            if visited[j]:
                continue
            visited[j] = True
            drainage[j] = max(elevations[j], np.nextafter(level, np.inf))
            if in_depression[j]:
                receivers[j] = i
            heapq.heappush(pq, (drainage[j], j))

    return drainage


def route_flow(mesh: TerrainMesh, elevations: Optional[np.ndarray] = None) -> FlowRouting:
    """
    Derive one receiver per interior site.

    Args:
        mesh: Terrain mesh
        elevations: Elevation field to route over; defaults to the mesh's own

    Returns:
        FlowRouting with an acyclic receiver forest rooted at the outlets
    """
    if not np.any(mesh.boundary_flags):
        raise NoOutletReachableError("cannot route flow on a mesh without outlets")

    if elevations is None:
        elevations = mesh.elevations

    receivers = steepest_descent(mesh, elevations)
    sink = find_sinks(receivers)

    is_pit = (receivers == np.arange(len(receivers)))
    pit_count = int(np.sum(is_pit))

    if pit_count:
        in_depression = is_pit[sink]
        drainage = resolve_depressions(mesh, elevations, receivers, in_depression)
        redirected = int(np.sum(in_depression))
    else:
        drainage = elevations.astype(np.float64).copy()
        redirected = 0

    distances = np.zeros(mesh.num_sites, dtype=np.float64)
    for i in mesh.interior:
        distances[i] = mesh.distance(i, int(receivers[i]))

    logger.debug("Flow routed", pits=pit_count, redirected=redirected)

    return FlowRouting(
        receivers=receivers,
        receiver_distances=distances,
        drainage_elevations=drainage,
        pit_count=pit_count,
        redirected_count=redirected,
    )
