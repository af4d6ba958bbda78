"""Terrain mesh: fixed site topology with a mutable elevation field."""

import numpy as np
from collections import deque
from typing import Dict, List, Mapping, NamedTuple, Optional, Sequence, Tuple, Union
from dataclasses import dataclass, field
import structlog

from .errors import InvalidMeshError, NoOutletReachableError

logger = structlog.get_logger()


class SiteRecord(NamedTuple):
    """One site as supplied by an external mesh provider."""
    position: Tuple[float, float]
    neighbors: Sequence[int]
    is_boundary: bool
    elevation: float
    cell_area: float = 1.0


@dataclass
class TerrainMesh:
    """Irregular terrain mesh.

    Topology (positions, neighbors, boundary flags, cell areas) is fixed for
    the lifetime of the mesh; only ``elevations`` is mutated, and only by the
    erosion solver or explicit uplift/baselevel schedules.
    """
    positions: np.ndarray            # (n, 2) site coordinates
    site_neighbors: List[List[int]]  # ascending neighbor indices per site
    boundary_flags: np.ndarray       # 1 for fixed outlets, 0 for interior
    elevations: np.ndarray           # mutable elevation per site
    cell_areas: Optional[np.ndarray] = None  # local drainage contribution

    neighbor_distances: List[np.ndarray] = field(init=False, repr=False)

    def __post_init__(self):
        positions = np.array(self.positions, dtype=np.float64)
        if positions.ndim != 2 or positions.shape[1] != 2:
            raise InvalidMeshError(f"positions must have shape (n, 2), got {positions.shape}")
        n_sites = len(positions)
        if n_sites == 0:
            raise InvalidMeshError("mesh has no sites")

        if len(self.site_neighbors) != n_sites:
            raise InvalidMeshError(
                f"expected neighbor lists for {n_sites} sites, got {len(self.site_neighbors)}"
            )

        elevations = np.array(self.elevations, dtype=np.float64)
        boundary_flags = np.array(self.boundary_flags, dtype=np.uint8)
        if elevations.shape != (n_sites,) or boundary_flags.shape != (n_sites,):
            raise InvalidMeshError("elevations and boundary flags must have one entry per site")
        if not np.all(np.isfinite(elevations)):
            raise InvalidMeshError("elevations must be finite")

        if self.cell_areas is None:
            cell_areas = np.ones(n_sites, dtype=np.float64)
        else:
            cell_areas = np.array(self.cell_areas, dtype=np.float64)
            if cell_areas.shape != (n_sites,):
                raise InvalidMeshError("cell areas must have one entry per site")
            if not np.all(np.isfinite(cell_areas)) or np.any(cell_areas <= 0):
                raise InvalidMeshError("cell areas must be finite and positive")

        neighbors = self._normalize_neighbors(self.site_neighbors, n_sites)
        distances = self._compute_distances(positions, neighbors)

        if not np.any(boundary_flags):
            raise NoOutletReachableError("mesh has no boundary sites to act as outlets")
        self._check_outlets_reachable(neighbors, boundary_flags)

        self.positions = positions
        self.site_neighbors = neighbors
        self.boundary_flags = boundary_flags
        self.elevations = elevations
        self.cell_areas = cell_areas
        self.neighbor_distances = distances

        logger.debug("Terrain mesh validated",
                     sites=n_sites, outlets=int(np.sum(boundary_flags)))

    @staticmethod
    def _normalize_neighbors(site_neighbors, n_sites: int) -> List[List[int]]:
        neighbor_sets = []
        for i, raw in enumerate(site_neighbors):
            entries = [int(j) for j in raw]
            if not entries:
                raise InvalidMeshError(f"site {i} has no neighbors")
            for j in entries:
                if j < 0 or j >= n_sites:
                    raise InvalidMeshError(f"site {i} references unknown neighbor {j}")
                if j == i:
                    raise InvalidMeshError(f"site {i} lists itself as a neighbor")
            neighbor_sets.append(set(entries))

        for i, entries in enumerate(neighbor_sets):
            for j in entries:
                if i not in neighbor_sets[j]:
                    raise InvalidMeshError(
                        f"asymmetric adjacency: {i} -> {j} has no reverse edge"
                    )

        return [sorted(entries) for entries in neighbor_sets]

    @staticmethod
    def _compute_distances(positions: np.ndarray, neighbors: List[List[int]]) -> List[np.ndarray]:
        distances = []
        for i, entries in enumerate(neighbors):
            delta = positions[entries] - positions[i]
            d = np.hypot(delta[:, 0], delta[:, 1])
            if np.any(d <= 0):
                raise InvalidMeshError(f"site {i} shares its position with a neighbor")
            distances.append(d)
        return distances

    @staticmethod
    def _check_outlets_reachable(neighbors: List[List[int]], boundary_flags: np.ndarray) -> None:
        visited = boundary_flags.astype(bool)
        queue = deque(np.flatnonzero(visited).tolist())
        while queue:
            i = queue.popleft()
            for j in neighbors[i]:
                if not visited[j]:
                    visited[j] = True
                    queue.append(j)

        stranded = int(np.sum(~visited))
        if stranded:
            raise NoOutletReachableError(
                f"{stranded} site(s) belong to components without an outlet"
            )

    @classmethod
    def from_sites(cls, sites: Mapping[int, Union[SiteRecord, tuple]]) -> "TerrainMesh":
        """
        Build a mesh from an index -> site mapping.

        Args:
            sites: Mapping of site index to ``SiteRecord`` or a plain
                ``(position, neighbors, is_boundary, elevation[, cell_area])``
                tuple. Indices must be exactly ``0..n-1``.

        Returns:
            Validated TerrainMesh
        """
        n_sites = len(sites)
        if sorted(sites.keys()) != list(range(n_sites)):
            raise InvalidMeshError("site indices must be contiguous from 0")

        records = [SiteRecord(*sites[i]) for i in range(n_sites)]
        return cls(
            positions=np.array([r.position for r in records], dtype=np.float64),
            site_neighbors=[list(r.neighbors) for r in records],
            boundary_flags=np.array([1 if r.is_boundary else 0 for r in records], dtype=np.uint8),
            elevations=np.array([r.elevation for r in records], dtype=np.float64),
            cell_areas=np.array([r.cell_area for r in records], dtype=np.float64),
        )

    @property
    def num_sites(self) -> int:
        return len(self.positions)

    @property
    def outlets(self) -> np.ndarray:
        """Indices of outlet sites, ascending."""
        return np.flatnonzero(self.boundary_flags)

    @property
    def interior(self) -> np.ndarray:
        """Indices of interior sites, ascending."""
        return np.flatnonzero(self.boundary_flags == 0)

    def is_outlet(self, site: int) -> bool:
        return bool(self.boundary_flags[site])

    def neighbors(self, site: int) -> List[int]:
        return self.site_neighbors[site]

    def distances(self, site: int) -> np.ndarray:
        return self.neighbor_distances[site]

    def distance(self, i: int, j: int) -> float:
        """Horizontal distance between two adjacent sites."""
        k = self.site_neighbors[i].index(j)
        return float(self.neighbor_distances[i][k])

    def copy(self) -> "TerrainMesh":
        """Independent mesh sharing no mutable state with this one."""
        return TerrainMesh(
            positions=self.positions.copy(),
            site_neighbors=[list(n) for n in self.site_neighbors],
            boundary_flags=self.boundary_flags.copy(),
            elevations=self.elevations.copy(),
            cell_areas=self.cell_areas.copy(),
        )

    def summary(self) -> Dict[str, float]:
        """Elevation statistics for logging."""
        return {
            "sites": self.num_sites,
            "outlets": int(np.sum(self.boundary_flags)),
            "min_elevation": float(np.min(self.elevations)),
            "max_elevation": float(np.max(self.elevations)),
            "mean_elevation": float(np.mean(self.elevations)),
        }
