"""Tests for flow routing and pit resolution."""

import pytest
import numpy as np
from py_lem.core.mesh_builder import GridConfig, build_grid_mesh, build_voronoi_mesh
from py_lem.core.flow_router import NO_RECEIVER, route_flow, steepest_descent, find_sinks
from py_lem.core.drainage_order import build_drainage_order
from py_lem.core.errors import NoOutletReachableError


def trace_to_outlet(receivers, start, limit):
    """Follow receivers from ``start`` and return the visited path."""
    path = [start]
    while receivers[path[-1]] != NO_RECEIVER:
        path.append(int(receivers[path[-1]]))
        assert len(path) <= limit, "receiver chain does not terminate"
    return path


class TestSteepestDescent:
    """Test receiver selection without pits."""

    def test_chain_slope(self):
        """Test a monotone ramp drains toward the single outlet."""
        mesh = build_grid_mesh(1, 5, outlets=[0], elevations=np.arange(5.0))
        routing = route_flow(mesh)

        np.testing.assert_array_equal(routing.receivers, [NO_RECEIVER, 0, 1, 2, 3])
        np.testing.assert_allclose(routing.receiver_distances, [0, 1, 1, 1, 1])
        assert routing.pit_count == 0
        assert routing.redirected_count == 0

    def test_steepest_neighbor_preferred(self):
        """Test that the orthogonal drop beats a farther diagonal drop."""
        elevations = np.zeros(9)
        elevations[4] = 1.0
        elevations[1] = 0.5
        mesh = build_grid_mesh(3, 3, elevations=elevations)

        # slope to site 3 is 1.0, to site 0 is 1/sqrt(2), to site 1 is 0.5
        receivers = steepest_descent(mesh, mesh.elevations)
        assert receivers[4] == 3

    def test_tie_break_lowest_index(self):
        """Test that equal slopes resolve to the lowest neighbor index."""
        elevations = np.zeros(9)
        elevations[4] = 1.0
        mesh = build_grid_mesh(3, 3, elevations=elevations)

        routing = route_flow(mesh)
        assert routing.receivers[4] == 1

    def test_outlets_have_no_receiver(self):
        """Test that boundary sites never receive a receiver."""
        mesh = build_grid_mesh(4, 4, elevations=np.arange(16.0)[::-1].copy())
        routing = route_flow(mesh)

        assert np.all(routing.receivers[mesh.outlets] == NO_RECEIVER)
        assert np.all(routing.receivers[mesh.interior] >= 0)

    def test_find_sinks(self):
        """Test that every chain is resolved to its terminal site."""
        receivers = np.array([NO_RECEIVER, 0, 1, 3, 3, 4])
        np.testing.assert_array_equal(find_sinks(receivers), [0, 0, 0, 3, 3, 3])


class TestPitResolution:
    """Test priority-flood redirection of depressions."""

    @pytest.fixture
    def single_pit_mesh(self):
        """5x5 grid: outlets at 0, a ring of 5s with one 3, a pit of 1 in the middle."""
        elevations = np.zeros(25)
        ring = [6, 7, 8, 11, 13, 16, 17, 18]
        elevations[ring] = 5.0
        elevations[8] = 3.0
        elevations[12] = 1.0
        return build_grid_mesh(5, 5, elevations=elevations)

    def test_single_pit_drains_through_lowest_neighbor(self, single_pit_mesh):
        """Test the pit is redirected to its lowest neighbor and reaches an outlet."""
        routing = route_flow(single_pit_mesh)

        assert routing.pit_count == 1
        assert routing.redirected_count == 1
        assert routing.receivers[12] == 8

        path = trace_to_outlet(routing.receivers, 12, 25)
        assert single_pit_mesh.is_outlet(path[-1])

    def test_pit_drainage_elevation_raised(self, single_pit_mesh):
        """Test the pit's drainage elevation sits just above its spill point."""
        routing = route_flow(single_pit_mesh)

        assert routing.drainage_elevations[12] == np.nextafter(3.0, np.inf)
        assert routing.drainage_elevations[8] == 3.0
        # outside the depression the drainage surface is the terrain itself
        np.testing.assert_array_equal(
            np.delete(routing.drainage_elevations, 12),
            np.delete(single_pit_mesh.elevations, 12)
        )

    def test_flat_terrain_fully_routed(self):
        """Test that a perfectly flat field still drains everywhere."""
        mesh = build_grid_mesh(6, 6)
        routing = route_flow(mesh)

        assert routing.pit_count == len(mesh.interior)
        for i in mesh.interior:
            assert mesh.is_outlet(trace_to_outlet(routing.receivers, i, 36)[-1])

    def test_flat_terrain_deterministic(self):
        """Test identical routing on repeated flat input."""
        a = route_flow(build_grid_mesh(7, 7))
        b = route_flow(build_grid_mesh(7, 7))

        np.testing.assert_array_equal(a.receivers, b.receivers)
        np.testing.assert_array_equal(a.drainage_elevations, b.drainage_elevations)

    def test_no_outlets(self):
        """Test that routing refuses a mesh whose outlets were removed."""
        mesh = build_grid_mesh(3, 3)
        mesh.boundary_flags[:] = 0

        with pytest.raises(NoOutletReachableError):
            route_flow(mesh)


class TestRoutingProperties:
    """Property checks on random irregular terrain."""

    @pytest.fixture(params=[11, 12, 13])
    def rough_mesh(self, request):
        mesh = build_voronoi_mesh(GridConfig(100, 100, 250), seed=request.param)
        rng = np.random.default_rng(request.param)
        mesh.elevations[:] = rng.random(mesh.num_sites) * 10
        return mesh

    def test_receivers_strictly_lower(self, rough_mesh):
        """Test that no interior site drains uphill on the drainage surface."""
        routing = route_flow(rough_mesh)
        interior = rough_mesh.interior
        e = routing.drainage_elevations

        assert np.all(routing.receivers[interior] >= 0)
        assert np.all(e[routing.receivers[interior]] < e[interior])
        assert np.all(e >= rough_mesh.elevations)

    def test_receivers_are_neighbors(self, rough_mesh):
        """Test that every receiver is an adjacent site."""
        routing = route_flow(rough_mesh)
        for i in rough_mesh.interior:
            assert routing.receivers[i] in rough_mesh.neighbors(i)

    def test_receiver_graph_acyclic(self, rough_mesh):
        """Test every chain terminates at an outlet and the order can be built."""
        routing = route_flow(rough_mesh)
        for i in rough_mesh.interior:
            path = trace_to_outlet(routing.receivers, i, rough_mesh.num_sites)
            assert rough_mesh.is_outlet(path[-1])

        order = build_drainage_order(routing.receivers, rough_mesh.outlets)
        assert len(order) == rough_mesh.num_sites

    def test_pits_detected(self, rough_mesh):
        """Test that random noise produces pits that get resolved."""
        routing = route_flow(rough_mesh)
        assert routing.pit_count > 0
        assert routing.redirected_count >= routing.pit_count
