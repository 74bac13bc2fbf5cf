"""
Correspondence graph builder

Turns the point matches of a block's layer range into a tile graph:
one node per tile id, one edge per connected tile pair, and the per-layer
tile index of the block.
"""

import numpy as np
from typing import Dict, Optional
import logging

from stacksolve.core.block import Block, Correspondence, TileSpec
from stacksolve.core.inclusion import InclusionPolicy
from stacksolve.core.models import make_regularized_model
from stacksolve.core.tile_graph import TileGraph

logger = logging.getLogger(__name__)


def subsample_matches(correspondence: Correspondence, max_num_matches: int):
    """
    Evenly spaced subsample of a correspondence's point pairs.

    Returns:
        (p_points, q_points, weights), unchanged when max_num_matches is 0
        or not smaller than the number of pairs
    """
    n = len(correspondence)
    if max_num_matches <= 0 or n <= max_num_matches:
        return correspondence.p_points, correspondence.q_points, correspondence.weights

    idx = np.unique(np.linspace(0, n - 1, max_num_matches).round().astype(np.int64))
    return correspondence.p_points[idx], correspondence.q_points[idx], correspondence.weights[idx]


class CorrespondenceGraphBuilder:
    """
    Assemble the tile graph of one block.

    Correspondences are fetched per p-group (one group per layer). Both tile
    specs are resolved; pairs with a missing spec are skipped. Surviving
    pairs go through the inclusion policy before any node or edge is
    created.
    """

    def __init__(
        self,
        source,
        policy: InclusionPolicy,
        regularizer: str = 'rigid',
        initial_lambda: float = 1.0,
        lambda_translation: Optional[float] = None,
        max_num_matches: int = 0
    ):
        """
        Args:
            source: RenderSource providing tile specs and matches
            policy: Inclusion policy deciding which pairs are connected
            regularizer: Regularizer of the per-tile models ('rigid' or 'translation')
            initial_lambda: Lambda the per-tile models start with
            lambda_translation: Translation weight inside the rigid regularizer
            max_num_matches: Cap on point pairs per correspondence (0 = all)
        """
        self.source = source
        self.policy = policy
        self.regularizer = regularizer
        self.initial_lambda = initial_lambda
        self.lambda_translation = lambda_translation
        self.max_num_matches = max_num_matches

    def _create_model(self, tile_spec: TileSpec):
        return make_regularized_model(
            tile_spec.transform,
            tile_spec.width,
            tile_spec.height,
            regularizer=self.regularizer,
            lambda_=self.initial_lambda,
            lambda_translation=self.lambda_translation,
        )

    def build(self, block: Block) -> Dict:
        """
        Build the graph of `block` in place.

        Sets `block.graph` and fills the block's specs, previous models and
        per-layer index.

        Returns:
            Statistics dict with 'considered', 'missing_spec', 'connected',
            'nodes', 'edges' and 'rejected' (reason -> count)
        """
        graph = TileGraph()
        block.graph = graph

        stats = {'considered': 0, 'missing_spec': 0, 'connected': 0}
        spec_cache: Dict[str, Optional[TileSpec]] = {}

        def resolve(group_id: str, tile_id: str) -> Optional[TileSpec]:
            if tile_id not in spec_cache:
                spec_cache[tile_id] = self.source.get_tile_spec(group_id, tile_id)
            return spec_cache[tile_id]

        z_values = self.source.get_z_values(block.min_z, block.max_z)
        logger.info(f"Block {block.block_id}: assembling matches for {len(z_values)} layers "
                    f"(z {block.min_z}-{block.max_z})")

        for z in z_values:
            group_id = self.source.group_id_for_z(z)
            matches = self.source.get_matches_with_p_group(group_id)
            logger.debug(f"Group {group_id}: {len(matches)} correspondences")

            for match in matches:
                stats['considered'] += 1

                p_spec = resolve(match.p_group_id, match.p_id)
                q_spec = resolve(match.q_group_id, match.q_id)
                if p_spec is None or q_spec is None:
                    stats['missing_spec'] += 1
                    missing = match.p_id if p_spec is None else match.q_id
                    logger.warning(f"Tile spec {missing} not found, skipping pair {match.p_id} <> {match.q_id}")
                    continue

                if match.p_id == match.q_id:
                    logger.warning(f"Ignoring self-correspondence of tile {match.p_id}")
                    continue

                accepted, reason = self.policy.evaluate(p_spec, q_spec)
                if not accepted:
                    logger.debug(f"Pair {match.p_id} <> {match.q_id} rejected: {reason}")
                    continue

                for spec in (p_spec, q_spec):
                    node, created = graph.get_or_create_node(spec, self._create_model)
                    if created:
                        block.add_tile(spec, node.previous_model)

                p_points, q_points, weights = subsample_matches(match, self.max_num_matches)
                graph.connect(match.p_id, match.q_id, p_points, q_points, weights)
                stats['connected'] += 1

        stats['nodes'] = len(graph.nodes)
        stats['edges'] = len(graph.edges)
        stats['rejected'] = dict(self.policy.rejected)

        if stats['considered'] == 0:
            logger.warning(f"Block {block.block_id}: no correspondences in z {block.min_z}-{block.max_z}")

        logger.info(f"Block {block.block_id}: {stats['nodes']} tiles, {stats['edges']} edges "
                    f"({self.policy.summary()}, {stats['missing_spec']} missing specs)")
        return stats
