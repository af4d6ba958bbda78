"""
Mesh construction helpers.

Point generation and triangulation are normally supplied by an external
mesh provider; these adapters build ``TerrainMesh`` instances from a regular
grid or from a jittered, relaxed Voronoi diagram so the engine can be driven
end to end.
"""

import numpy as np
from scipy.spatial import Voronoi
from typing import Iterable, List, NamedTuple, Optional, Tuple
import structlog

from .terrain_mesh import TerrainMesh

logger = structlog.get_logger()


class GridConfig(NamedTuple):
    """Configuration for Voronoi mesh generation."""
    width: float
    height: float
    cells_desired: int


def build_grid_mesh(rows: int, cols: int, spacing: float = 1.0,
                    outlets: Optional[Iterable[int]] = None,
                    elevations: Optional[np.ndarray] = None,
                    diagonal: bool = True) -> TerrainMesh:
    """
    Build a regular grid mesh.

    Site ``r * cols + c`` sits at ``(c * spacing, r * spacing)``.

    Args:
        rows: Number of grid rows
        cols: Number of grid columns
        spacing: Distance between orthogonal neighbors
        outlets: Outlet site indices. Defaults to every edge site.
        elevations: Initial elevations, zeros if omitted
        diagonal: Connect diagonal neighbors (8-connectivity)

    Returns:
        TerrainMesh over the grid
    """
    n_sites = rows * cols
    ys, xs = np.divmod(np.arange(n_sites), cols)
    positions = np.column_stack([xs * spacing, ys * spacing]).astype(np.float64)

    offsets = [(-1, 0), (1, 0), (0, -1), (0, 1)]
    if diagonal:
        offsets += [(-1, -1), (-1, 1), (1, -1), (1, 1)]

    site_neighbors = []
    for r in range(rows):
        for c in range(cols):
            entries = []
            for dr, dc in offsets:
                rr, cc = r + dr, c + dc
                if 0 <= rr < rows and 0 <= cc < cols:
                    entries.append(rr * cols + cc)
            site_neighbors.append(sorted(entries))

    boundary_flags = np.zeros(n_sites, dtype=np.uint8)
    if outlets is None:
        on_edge = (ys == 0) | (ys == rows - 1) | (xs == 0) | (xs == cols - 1)
        boundary_flags[on_edge] = 1
    else:
        boundary_flags[list(outlets)] = 1

    if elevations is None:
        elevations = np.zeros(n_sites, dtype=np.float64)

    return TerrainMesh(
        positions=positions,
        site_neighbors=site_neighbors,
        boundary_flags=boundary_flags,
        elevations=elevations,
        cell_areas=np.full(n_sites, spacing * spacing),
    )


def get_jittered_grid(width: float, height: float, spacing: float,
                      rng: np.random.Generator) -> np.ndarray:
    """
    Generate jittered square grid points.

    Each point of a regular grid is displaced by up to 90% of half the
    spacing to avoid artificial alignment.
    """
    radius = spacing / 2
    jittering = radius * 0.9

    xs = np.arange(radius, width, spacing)
    ys = np.arange(radius, height, spacing)
    grid_x, grid_y = np.meshgrid(xs, ys)
    points = np.column_stack([grid_x.ravel(), grid_y.ravel()])

    points += rng.uniform(-jittering, jittering, size=points.shape)
    points[:, 0] = np.clip(points[:, 0], 0, width)
    points[:, 1] = np.clip(points[:, 1], 0, height)
    return points


def get_boundary_points(width: float, height: float, spacing: float) -> np.ndarray:
    """
    Generate a ring of points outside the map area.

    They close the outer Voronoi cells so that every mesh site has a finite
    polygon; sites adjacent to the ring become outlets.
    """
    offset = -spacing
    b_spacing = spacing * 2
    w = width - offset * 2
    h = height - offset * 2

    number_x = max(int(np.ceil(w / b_spacing) - 1), 1)
    number_y = max(int(np.ceil(h / b_spacing) - 1), 1)

    points = []
    for i in range(number_x):
        x = w * (i + 0.5) / number_x + offset
        points.append([x, offset])
        points.append([x, h + offset])

    for i in range(number_y):
        y = h * (i + 0.5) / number_y + offset
        points.append([offset, y])
        points.append([w + offset, y])

    return np.array(points)


def polygon_area(vertices: np.ndarray) -> float:
    """Area of a simple polygon using the shoelace formula."""
    if len(vertices) < 3:
        return 0.0
    x = vertices[:, 0]
    y = vertices[:, 1]
    return 0.5 * abs(np.dot(x, np.roll(y, -1)) - np.dot(y, np.roll(x, -1)))


def polygon_centroid(vertices: np.ndarray) -> np.ndarray:
    """Centroid of a polygon, falling back to the vertex mean when degenerate."""
    if len(vertices) < 3:
        return np.mean(vertices, axis=0)

    x = vertices[:, 0]
    y = vertices[:, 1]
    x_next = np.roll(x, -1)
    y_next = np.roll(y, -1)
    cross = x * y_next - x_next * y
    area = cross.sum() * 0.5

    if abs(area) < 1e-10:
        return np.mean(vertices, axis=0)

    cx = np.sum((x + x_next) * cross) / (6.0 * area)
    cy = np.sum((y + y_next) * cross) / (6.0 * area)
    return np.array([cx, cy])


def _ordered_region(vor: Voronoi, point_idx: int) -> Optional[np.ndarray]:
    region_idx = vor.point_region[point_idx]
    if region_idx == -1:
        return None
    region = vor.regions[region_idx]
    if -1 in region or len(region) < 3:
        return None
    vertices = vor.vertices[region]
    # scipy does not guarantee a winding order for regions
    center = vertices.mean(axis=0)
    angles = np.arctan2(vertices[:, 1] - center[1], vertices[:, 0] - center[0])
    return vertices[np.argsort(angles)]


def relax_points(points: np.ndarray, boundary_points: np.ndarray,
                 width: float, height: float, n_iterations: int = 1) -> np.ndarray:
    """
    Apply Lloyd's relaxation: move each point to its Voronoi cell centroid.

    Args:
        points: Mesh points to relax
        boundary_points: Fixed closing ring
        width: Map width
        height: Map height
        n_iterations: Number of relaxation passes

    Returns:
        Relaxed point coordinates
    """
    points = points.copy()
    for iteration in range(n_iterations):
        vor = Voronoi(np.vstack([points, boundary_points]))
        for i in range(len(points)):
            vertices = _ordered_region(vor, i)
            if vertices is None:
                continue
            centroid = polygon_centroid(vertices)
            points[i, 0] = np.clip(centroid[0], 0, width)
            points[i, 1] = np.clip(centroid[1], 0, height)
        logger.debug("Relaxation pass complete", iteration=iteration + 1)
    return points


def build_cell_connectivity(vor: Voronoi, n_sites: int) -> Tuple[List[List[int]], np.ndarray]:
    """
    Derive site adjacency and outlet flags from a Voronoi diagram.

    Two mesh sites are neighbors when their cells share a ridge. A site whose
    cell shares a ridge with the closing ring is an outlet.

    Returns:
        Tuple of (site_neighbors, boundary_flags)
    """
    neighbor_sets = [set() for _ in range(n_sites)]
    boundary_flags = np.zeros(n_sites, dtype=np.uint8)

    for p1, p2 in vor.ridge_points:
        if p1 < n_sites and p2 < n_sites:
            neighbor_sets[p1].add(int(p2))
            neighbor_sets[p2].add(int(p1))
        elif p1 < n_sites:
            boundary_flags[p1] = 1
        elif p2 < n_sites:
            boundary_flags[p2] = 1

    return [sorted(s) for s in neighbor_sets], boundary_flags


def build_cell_areas(vor: Voronoi, n_sites: int, spacing: float) -> np.ndarray:
    """Voronoi cell area per site; open cells get the nominal ``spacing**2``."""
    areas = np.full(n_sites, spacing * spacing, dtype=np.float64)
    for i in range(n_sites):
        vertices = _ordered_region(vor, i)
        if vertices is None:
            continue
        area = polygon_area(vertices)
        if area > 0:
            areas[i] = area
    return areas


def build_voronoi_mesh(config: GridConfig, seed: Optional[int] = None,
                       apply_relaxation: bool = True) -> TerrainMesh:
    """
    Generate an irregular mesh from a jittered, relaxed Voronoi diagram.

    Args:
        config: Mesh extent and desired site count
        seed: Seed for point jittering
        apply_relaxation: Whether to apply one Lloyd relaxation pass

    Returns:
        TerrainMesh with zero elevations, border sites as outlets and cell
        areas as local drainage contributions
    """
    logger.info("Generating Voronoi mesh",
                width=config.width, height=config.height,
                cells_desired=config.cells_desired, seed=seed)

    spacing = np.sqrt((config.width * config.height) / config.cells_desired)
    rng = np.random.default_rng(seed)

    points = get_jittered_grid(config.width, config.height, spacing, rng)
    boundary_points = get_boundary_points(config.width, config.height, spacing)

    if apply_relaxation:
        points = relax_points(points, boundary_points, config.width, config.height)

    vor = Voronoi(np.vstack([points, boundary_points]))
    site_neighbors, boundary_flags = build_cell_connectivity(vor, len(points))
    cell_areas = build_cell_areas(vor, len(points), spacing)

    logger.info("Voronoi mesh built",
                sites=len(points), outlets=int(boundary_flags.sum()),
                spacing=round(float(spacing), 3))

    return TerrainMesh(
        positions=points,
        site_neighbors=site_neighbors,
        boundary_flags=boundary_flags,
        elevations=np.zeros(len(points), dtype=np.float64),
        cell_areas=cell_areas,
    )


def perturb_elevations(elevations: np.ndarray, amplitude: float = 1e-6,
                       seed: Optional[int] = None) -> np.ndarray:
    """
    Return ``elevations`` plus uniform noise in ``[0, amplitude)``.

    Breaks exact ties in otherwise flat initial fields.
    """
    rng = np.random.default_rng(seed)
    return np.asarray(elevations, dtype=np.float64) + rng.random(len(elevations)) * amplitude
