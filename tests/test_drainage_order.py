"""Tests for drainage ordering."""

import pytest
import numpy as np
from py_lem.core.drainage_order import build_drainage_order, build_donors, is_topological
from py_lem.core.errors import CyclicDrainageError
from py_lem.core.flow_router import NO_RECEIVER, route_flow
from py_lem.core.mesh_builder import GridConfig, build_voronoi_mesh, perturb_elevations


class TestDrainageOrder:
    """Test order construction on hand-built forests."""

    @pytest.fixture
    def forest(self):
        # two trees: 0 <- 1 <- {2, 3} and 4 <- 5
        return np.array([NO_RECEIVER, 0, 1, 1, NO_RECEIVER, 4])

    def test_order_is_topological(self, forest):
        """Test every site precedes its receiver."""
        order = build_drainage_order(forest)

        assert sorted(order.order.tolist()) == list(range(6))
        assert is_topological(order.order, forest)

    def test_directions(self, forest):
        """Test upstream-first ends at outlets and downstream-first starts at one."""
        order = build_drainage_order(forest)
        downstream = order.downstream_first()

        assert order.upstream_first()[-1] in (0, 4)
        assert downstream[0] in (0, 4)
        np.testing.assert_array_equal(downstream, order.order[::-1])

    def test_basins(self, forest):
        """Test one contiguous basin per outlet, each ending with its outlet."""
        order = build_drainage_order(forest)

        assert [b.outlet for b in order.basins] == [0, 4]
        assert [b.size for b in order.basins] == [4, 2]
        for basin in order.basins:
            assert order.basin_sites(basin)[-1] == basin.outlet

    def test_donors(self, forest):
        """Test CSR donor lists."""
        order = build_drainage_order(forest)

        np.testing.assert_array_equal(order.donors_of(1), [2, 3])
        np.testing.assert_array_equal(order.donors_of(0), [1])
        assert len(order.donors_of(2)) == 0

        offsets, donors = build_donors(forest)
        assert offsets[-1] == len(donors) == 4

    def test_cycle_detected(self):
        """Test that a cycle detached from the outlets is reported."""
        receivers = np.array([NO_RECEIVER, 2, 1, 0])

        with pytest.raises(CyclicDrainageError) as exc_info:
            build_drainage_order(receivers)
        assert exc_info.value.unreached == 2

    def test_self_loop_detected(self):
        """Test that an unresolved pit is reported."""
        with pytest.raises(CyclicDrainageError):
            build_drainage_order(np.array([NO_RECEIVER, 1]))

    def test_outlet_with_receiver_rejected(self):
        """Test that a non-root outlet cannot walk into a cycle."""
        receivers = np.array([NO_RECEIVER, 2, 1])

        with pytest.raises(CyclicDrainageError, match="without a receiver"):
            build_drainage_order(receivers, outlets=[1])

    def test_duplicate_outlets_rejected(self):
        """Test that listing an outlet twice is reported."""
        with pytest.raises(CyclicDrainageError):
            build_drainage_order(np.array([NO_RECEIVER, 0]), outlets=[0, 0])

    def test_long_chain_no_recursion(self):
        """Test a single chain far deeper than the recursion limit."""
        n_sites = 50000
        receivers = np.arange(-1, n_sites - 1)
        order = build_drainage_order(receivers)

        np.testing.assert_array_equal(order.order, np.arange(n_sites)[::-1])


class TestTopologicalCheck:
    """Test the direct order property check."""

    def test_rejects_bad_order(self):
        """Test that a receiver before its donor fails the check."""
        receivers = np.array([NO_RECEIVER, 0, 1])

        assert is_topological([2, 1, 0], receivers)
        assert not is_topological([0, 1, 2], receivers)

    def test_rejects_incomplete_order(self):
        """Test that duplicates and omissions fail the check."""
        receivers = np.array([NO_RECEIVER, 0, 1])

        assert not is_topological([2, 0], receivers)
        assert not is_topological([2, 2, 0], receivers)

    def test_irregular_mesh(self):
        """Test the property on routed irregular terrain."""
        mesh = build_voronoi_mesh(GridConfig(120, 80, 300), seed=5)
        mesh.elevations[:] = perturb_elevations(mesh.positions[:, 0] * 0.1, amplitude=2.0, seed=5)
        routing = route_flow(mesh)
        order = build_drainage_order(routing.receivers, mesh.outlets)

        assert is_topological(order.upstream_first(), routing.receivers)
        assert len(order.basins) == len(mesh.outlets)
        assert sum(b.size for b in order.basins) == mesh.num_sites
