import numpy as np
import pytest

from conftest import SyntheticStack
from stacksolve.core.block import Block, Correspondence, TileSpec
from stacksolve.core.errors import DegenerateBlockError
from stacksolve.core.graph_builder import CorrespondenceGraphBuilder
from stacksolve.core.inclusion import InclusionPolicy
from stacksolve.core.models import AffineModel
from stacksolve.core.solver import AnnealedSolver, ErrorStatistic, compute_error
from stacksolve.core.tile_graph import TileGraph
from stacksolve.external.render_source import InMemoryRenderSource
from stacksolve.utils.config import Stage

STAGES = [Stage(1.0, 300, 50), Stage(0.0, 300, 50)]


def built_block(stack, min_z=None, max_z=None):
    z = [s.z for s in stack.specs]
    min_z = int(min(z)) if min_z is None else min_z
    max_z = int(max(z)) if max_z is None else max_z
    block = Block(min_z, max_z)
    CorrespondenceGraphBuilder(stack.source(), InclusionPolicy(min_z, max_z)).build(block)
    return block


def residual_rms(block):
    graph = block.graph
    squared = []
    for edge in graph.edges:
        a = block.new_models[graph.nodes[edge.a].tile_id].apply(edge.p_points)
        b = block.new_models[graph.nodes[edge.b].tile_id].apply(edge.q_points)
        squared.extend(np.sum((a - b) ** 2, axis=1))
    return float(np.sqrt(np.mean(squared)))


class TestErrorStatistic:
    def test_flat_series_is_plateau(self):
        stats = ErrorStatistic(8)
        for _ in range(9):
            stats.add(2.0)
        assert stats.is_plateau()

    def test_needs_full_window(self):
        stats = ErrorStatistic(8)
        for _ in range(8):
            stats.add(2.0)
        assert not stats.is_plateau()

    def test_decreasing_series_is_not_plateau(self):
        stats = ErrorStatistic(4)
        for value in [10.0, 9.0, 8.0, 7.0, 6.0, 5.0]:
            stats.add(value)
        assert stats.wide_slope(4) == pytest.approx(-1.0)
        assert not stats.is_plateau()

    def test_recent_change_breaks_plateau(self):
        stats = ErrorStatistic(4)
        for value in [1.0, 1.0, 1.0, 1.0, 0.5]:
            stats.add(value)
        assert not stats.is_plateau()

    def test_running_statistics(self):
        stats = ErrorStatistic(2)
        for value in [3.0, 1.0, 2.0]:
            stats.add(value)
        assert stats.min == 1.0
        assert stats.max == 3.0
        assert stats.mean == pytest.approx(2.0)
        assert stats.last == 2.0


class TestAnnealedSolver:
    def test_three_tiles_align_to_ground_truth(self):
        stack = SyntheticStack(n_layers=1, tiles_per_layer=3, perturb=3.0, seed=1)
        block = built_block(stack)
        assert compute_error(block.graph) > 1.0

        report = AnnealedSolver(STAGES, num_threads=2).solve(block)

        assert report.final_error < 0.5
        assert residual_rms(block) < 0.5

        # all tiles agree on one common gauge transform
        corners = np.array([[0.0, 0.0], [300.0, 0.0], [300.0, 100.0], [0.0, 100.0]])
        gauges = [stack.truth[t].inverse().then(block.new_models[t]) for t in block.tile_ids]
        for gauge in gauges[1:]:
            np.testing.assert_allclose(gauge.apply(corners), gauges[0].apply(corners), atol=0.5)

    def test_three_layer_chain_recovers_ground_truth(self):
        def rigid(angle, tx, ty):
            c, s = np.cos(angle), np.sin(angle)
            return AffineModel(np.array([[c, -s, tx], [s, c, ty]]))

        truth = {"A": rigid(0.0, 0.0, 0.0), "B": rigid(0.01, 3.0, -2.0), "C": rigid(-0.005, -2.0, 4.0)}
        specs = [TileSpec(tile_id, z, 100, 100) for z, tile_id in enumerate("ABC")]
        local = np.array([[10.0, 10.0], [90.0, 15.0], [85.0, 90.0], [15.0, 80.0]])

        def pair(p_id, q_id, p_z, q_z):
            q_points = truth[q_id].inverse().apply(truth[p_id].apply(local))
            return Correspondence(f"{p_z:.1f}", p_id, f"{q_z:.1f}", q_id, local, q_points)

        # no A-C edge: C is tied to A only through B
        source = InMemoryRenderSource(specs, [pair("A", "B", 0, 1), pair("B", "C", 1, 2)])
        block = Block(0, 2)
        CorrespondenceGraphBuilder(source, InclusionPolicy(0, 2)).build(block)
        assert len(block.graph.edges) == 2
        assert block.graph.edge_between("A", "C") is None

        AnnealedSolver([Stage(1.0, 300, 50), Stage(0.0, 300, 50)]).solve(block)

        assert residual_rms(block) < 0.5
        corners = np.array([[0.0, 0.0], [100.0, 0.0], [100.0, 100.0], [0.0, 100.0]])
        gauges = [truth[t].inverse().then(block.new_models[t]) for t in "ABC"]
        for gauge in gauges[1:]:
            gap = gauge.apply(corners) - gauges[0].apply(corners)
            assert np.sqrt(np.mean(np.sum(gap ** 2, axis=1))) < 0.5

    def test_stack_solve_reduces_error(self, perturbed_stack):
        block = built_block(perturbed_stack)
        before = compute_error(block.graph)
        report = AnnealedSolver(STAGES, num_threads=1).solve(block)

        assert report.final_error < before
        assert residual_rms(block) < 0.5
        assert set(block.new_models) == set(block.tile_ids)

    def test_result_independent_of_thread_count(self, perturbed_stack):
        single = built_block(perturbed_stack)
        multi = built_block(perturbed_stack)

        AnnealedSolver(STAGES, num_threads=1).solve(single)
        AnnealedSolver(STAGES, num_threads=4).solve(multi)

        for tile_id in single.tile_ids:
            np.testing.assert_allclose(single.new_models[tile_id].m, multi.new_models[tile_id].m, atol=1e-6)

    def test_iteration_cap(self, perturbed_stack):
        block = built_block(perturbed_stack)
        report = AnnealedSolver([Stage(1.0, 5, 50)]).solve(block)
        assert report.stages[0].iterations == 5
        assert report.stages[0].stop_reason == 'max_iterations'

    def test_max_allowed_error_stops_early(self, perturbed_stack):
        block = built_block(perturbed_stack)
        report = AnnealedSolver([Stage(1.0, 100, 50), Stage(0.5, 100, 50)], max_allowed_error=1e6).solve(block)
        assert [s.iterations for s in report.stages] == [1, 1]
        assert all(s.stop_reason == 'max_error' for s in report.stages)

    def test_converged_stage_stops_before_cap(self, small_stack):
        block = built_block(small_stack)
        report = AnnealedSolver([Stage(1.0, 1000, 10)]).solve(block)
        assert report.stages[0].stop_reason in ('plateau', 'max_error')
        assert report.stages[0].iterations < 1000

    def test_last_lambda_is_active_after_solve(self, perturbed_stack):
        block = built_block(perturbed_stack)
        AnnealedSolver([Stage(1.0, 3, 50), Stage(0.1, 3, 50)]).solve(block)
        assert all(node.model.lambda_ == 0.1 for node in block.graph.nodes)

    def test_report_to_dict(self, perturbed_stack):
        block = built_block(perturbed_stack)
        report = AnnealedSolver([Stage(1.0, 3, 50)]).solve(block)
        data = report.to_dict()
        assert data['block_id'] == block.block_id
        assert data['stages'][0]['iterations'] == 3
        assert data['tiles'] == 12


class TestDegenerateBlocks:
    def test_block_without_edges(self):
        block = Block(0, 0)
        block.graph = TileGraph()
        with pytest.raises(DegenerateBlockError) as info:
            AnnealedSolver(STAGES).solve(block)
        assert info.value.block_id == block.block_id

    def test_block_without_graph(self):
        with pytest.raises(DegenerateBlockError):
            AnnealedSolver(STAGES).solve(Block(0, 0))

    def test_underconstrained_tile(self):
        specs = [TileSpec("a", 0, 100, 100), TileSpec("b", 0, 100, 100)]
        pts = np.array([[10.0, 10.0], [20.0, 50.0]])
        source = InMemoryRenderSource(specs, [Correspondence("0.0", "a", "0.0", "b", pts, pts)])
        block = Block(0, 0)
        CorrespondenceGraphBuilder(source, InclusionPolicy(0, 0)).build(block)

        with pytest.raises(DegenerateBlockError) as info:
            AnnealedSolver(STAGES).solve(block)
        assert info.value.tile_id in ("a", "b")
