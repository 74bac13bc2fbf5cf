import numpy as np

from conftest import SyntheticStack
from stacksolve.core.block import Block, Correspondence
from stacksolve.core.graph_builder import CorrespondenceGraphBuilder, subsample_matches
from stacksolve.core.inclusion import InclusionPolicy, LinkRule
from stacksolve.external.render_source import InMemoryRenderSource


def build(source, min_z, max_z, **policy_args):
    block = Block(min_z, max_z)
    builder = CorrespondenceGraphBuilder(source, InclusionPolicy(min_z, max_z, **policy_args))
    stats = builder.build(block)
    return block, stats


def test_one_node_per_tile(small_stack):
    block, stats = build(small_stack.source(), 0, 5)

    ids = [node.tile_id for node in block.graph.nodes]
    assert len(ids) == len(set(ids)) == 12
    assert block.tile_ids == sorted(ids)
    assert stats['connected'] == len(small_stack.correspondences)
    assert stats['edges'] == len(small_stack.correspondences)


def test_every_layer_indexed(small_stack):
    block, _ = build(small_stack.source(), 0, 5)
    assert block.layers() == [0, 1, 2, 3, 4, 5]
    assert block.z_to_tile_ids[3] == {"0003.0", "0003.1"}


def test_previous_models_snapshot_tile_specs(perturbed_stack):
    block, _ = build(perturbed_stack.source(), 0, 3)
    for spec in perturbed_stack.specs:
        assert block.previous_models[spec.tile_id] == spec.transform
        assert block.previous_models[spec.tile_id] is not spec.transform


def test_graph_independent_of_ingestion_order(small_stack):
    forward = InMemoryRenderSource(small_stack.specs, small_stack.correspondences)
    backward = InMemoryRenderSource(list(reversed(small_stack.specs)),
                                    list(reversed(small_stack.correspondences)))

    block_a, _ = build(forward, 0, 5)
    block_b, _ = build(backward, 0, 5)

    graph_a, graph_b = block_a.graph, block_b.graph
    assert graph_a.tile_ids() == graph_b.tile_ids()
    for tile_id in graph_a.tile_ids():
        assert graph_a.neighbors(tile_id) == graph_b.neighbors(tile_id)
        for other in graph_a.neighbors(tile_id):
            edge_a = graph_a.edge_between(tile_id, other)
            edge_b = graph_b.edge_between(tile_id, other)
            assert graph_a.nodes[edge_a.a].tile_id == graph_b.nodes[edge_b.a].tile_id
            np.testing.assert_array_equal(edge_a.p_points, edge_b.p_points)
            np.testing.assert_array_equal(edge_a.q_points, edge_b.q_points)


def test_repeated_pairs_accumulate_on_one_edge(small_stack):
    match = small_stack.correspondences[0]
    swapped = Correspondence(match.q_group_id, match.q_id, match.p_group_id, match.p_id,
                             match.q_points, match.p_points)
    source = InMemoryRenderSource(small_stack.specs, small_stack.correspondences + [swapped])

    block, _ = build(source, 0, 5)
    edge = block.graph.edge_between(match.p_id, match.q_id)
    assert len(edge) == 2 * len(match)
    assert len(block.graph.edges) == len(small_stack.correspondences)


def test_missing_spec_is_skipped(small_stack):
    ghost = Correspondence("0.0", "0000.0", "0.0", "ghost", np.zeros((3, 2)), np.zeros((3, 2)))
    source = InMemoryRenderSource(small_stack.specs, small_stack.correspondences + [ghost])

    block, stats = build(source, 0, 5)
    assert stats['missing_spec'] == 1
    assert "ghost" not in block.graph


def test_policy_rejections_create_no_nodes(small_stack):
    rule = LinkRule("2", scope='cross_layer', effect='ignore')
    block, stats = build(small_stack.source(), 0, 5, link_rules=[rule])

    assert stats['rejected'] == {'rule:ignore:2': 4}
    assert block.graph.edge_between("0001.0", "0002.0") is None
    assert block.graph.edge_between("0002.0", "0002.1") is not None


def test_range_excludes_tiles_outside_block(small_stack):
    block, stats = build(small_stack.source(), 0, 2)
    assert block.layers() == [0, 1, 2]
    assert stats['rejected'] == {'out_of_range': 2}


def test_empty_range_yields_empty_block(small_stack):
    block, stats = build(small_stack.source(), 100, 200)
    assert stats['considered'] == 0
    assert len(block) == 0
    assert len(block.graph) == 0


def test_max_num_matches():
    match = Correspondence("0.0", "a", "0.0", "b", np.arange(20.0).reshape(10, 2), np.arange(20.0).reshape(10, 2))
    p, q, w = subsample_matches(match, 4)
    assert len(p) == len(q) == len(w) == 4
    np.testing.assert_array_equal(p[0], match.p_points[0])
    np.testing.assert_array_equal(p[-1], match.p_points[-1])

    p, _, _ = subsample_matches(match, 0)
    assert len(p) == 10


def test_builder_applies_match_cap():
    stack = SyntheticStack(n_layers=2, tiles_per_layer=2)
    block = Block(0, 1)
    builder = CorrespondenceGraphBuilder(stack.source(), InclusionPolicy(0, 1), max_num_matches=5)
    builder.build(block)
    assert all(len(edge) == 5 for edge in block.graph.edges)
