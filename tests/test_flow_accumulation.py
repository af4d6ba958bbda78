"""Tests for flow accumulation."""

from concurrent.futures import ThreadPoolExecutor

import pytest
import numpy as np
from py_lem.core.drainage_order import build_drainage_order
from py_lem.core.flow_accumulation import _accumulate_sites, accumulate_flow
from py_lem.core.flow_router import NO_RECEIVER, route_flow
from py_lem.core.mesh_builder import GridConfig, build_voronoi_mesh


class TestAccumulation:
    """Test accumulation on hand-built forests."""

    def test_chain(self):
        """Test a single chain accumulates unit areas."""
        receivers = np.array([NO_RECEIVER, 0, 1, 2, 3])
        order = build_drainage_order(receivers)

        area = accumulate_flow(order, receivers)
        np.testing.assert_array_equal(area, [5, 4, 3, 2, 1])

    def test_branching_tree(self):
        """Test a confluence sums both branches."""
        receivers = np.array([NO_RECEIVER, 0, 0, 1, 1])
        order = build_drainage_order(receivers)

        area = accumulate_flow(order, receivers)
        np.testing.assert_array_equal(area, [5, 3, 1, 1, 1])

    def test_local_contributions(self):
        """Test externally supplied local areas."""
        receivers = np.array([NO_RECEIVER, 0, 0, NO_RECEIVER, 3])
        order = build_drainage_order(receivers)
        local = np.array([1.0, 2.0, 3.0, 0.5, 0.25])

        area = accumulate_flow(order, receivers, local)
        np.testing.assert_allclose(area, [6.0, 2.0, 3.0, 0.75, 0.25])
        # caller's array untouched
        assert local[0] == 1.0


class TestAccumulationProperties:
    """Property checks on irregular terrain."""

    @pytest.fixture
    def routed(self):
        mesh = build_voronoi_mesh(GridConfig(100, 100, 300), seed=21)
        rng = np.random.default_rng(21)
        mesh.elevations[:] = np.hypot(*(mesh.positions - 50).T) * -0.1 + rng.random(mesh.num_sites)
        routing = route_flow(mesh)
        order = build_drainage_order(routing.receivers, mesh.outlets)
        return mesh, routing, order

    def test_mass_conservation(self, routed):
        """Test outlets hold the total contributing area of the mesh."""
        mesh, routing, order = routed
        area = accumulate_flow(order, routing.receivers, mesh.cell_areas)

        assert np.sum(area[mesh.outlets]) == pytest.approx(np.sum(mesh.cell_areas))
        for basin in order.basins:
            sites = order.basin_sites(basin)
            assert area[basin.outlet] == pytest.approx(np.sum(mesh.cell_areas[sites]))

    def test_monotone(self, routed):
        """Test every site holds at least the sum of its donors."""
        mesh, routing, order = routed
        area = accumulate_flow(order, routing.receivers, mesh.cell_areas)

        for i in range(mesh.num_sites):
            donors = order.donors_of(i)
            assert area[i] >= np.sum(area[donors])
            assert area[i] == pytest.approx(mesh.cell_areas[i] + np.sum(area[donors]))

        interior = mesh.interior
        assert np.all(area[routing.receivers[interior]] > area[interior])

    def test_parallel_matches_sequential(self, routed):
        """Test basin fan-out gives identical results."""
        mesh, routing, order = routed
        sequential = accumulate_flow(order, routing.receivers, mesh.cell_areas)
        with ThreadPoolExecutor(max_workers=4) as executor:
            parallel = accumulate_flow(order, routing.receivers, mesh.cell_areas, executor=executor)

        np.testing.assert_array_equal(sequential, parallel)

    def test_basin_kernel_releases_gil(self, routed):
        """Test the per-basin kernel is compiled without the GIL and sums in place."""
        _, routing, order = routed
        assert _accumulate_sites.targetoptions.get("nogil")

        basin = max(order.basins, key=lambda b: b.size)
        area = np.ones(len(routing.receivers))
        _accumulate_sites(order.basin_sites(basin), routing.receivers, area)

        assert area[basin.outlet] == basin.size
