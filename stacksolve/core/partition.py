"""
Split a block into its connected components
"""

import numpy as np
from scipy.sparse import coo_matrix
from scipy.sparse.csgraph import connected_components
from typing import List
import logging

from stacksolve.core.block import Block
from stacksolve.core.errors import LayerIntegrityError

logger = logging.getLogger(__name__)


def find_components(graph) -> List[List[str]]:
    """
    Connected components of a tile graph.

    Returns:
        Lists of tile ids (each sorted), ordered by their smallest tile id
    """
    n = len(graph.nodes)
    if n == 0:
        return []

    pairs = graph.edge_pairs()
    adjacency = coo_matrix(
        (np.ones(len(pairs), dtype=np.int8), (pairs[:, 0], pairs[:, 1])),
        shape=(n, n),
    )
    n_components, labels = connected_components(adjacency, directed=False)

    components = [[] for _ in range(n_components)]
    for node in graph.nodes:
        components[labels[node.index]].append(node.tile_id)

    components = [sorted(c) for c in components]
    components.sort(key=lambda c: c[0])
    return components


def partition_block(block: Block) -> List[Block]:
    """
    Split a block into connected components, each its own block.

    A block that is already connected is returned unchanged (same object).
    Otherwise every component gets a new block with its own z-range, its
    own graph arena, copies of its tiles' specs and models, and a layer
    index restricted to the parent's range. The parent's graph is consumed.

    Raises:
        LayerIntegrityError: a layer of the component's range has tiles in
            the parent but none in the component
    """
    if block.graph is None:
        raise ValueError(f"Block {block.block_id} has no graph to partition")

    components = find_components(block.graph)
    if len(components) <= 1:
        logger.debug(f"Block {block.block_id} is connected ({len(block)} tiles)")
        return [block]

    logger.info(f"Block {block.block_id} (z {block.min_z}-{block.max_z}) splits into "
                f"{len(components)} connected components")

    parent_layers = {z for z, ids in block.z_to_tile_ids.items() if ids}
    result = []
    for tile_ids in components:
        layers = [block.tile_specs[tile_id].layer for tile_id in tile_ids]
        sub = Block(max(min(layers), block.min_z), min(max(layers), block.max_z))
        sub.graph = block.graph.subgraph(tile_ids)

        for tile_id in tile_ids:
            spec = block.tile_specs[tile_id]
            if not block.contains_z(spec.layer):
                continue
            sub.add_tile(spec, block.previous_models[tile_id])
            if tile_id in block.new_models:
                sub.new_models[tile_id] = block.new_models[tile_id].copy()

        for layer in range(sub.min_z, sub.max_z + 1):
            if layer in parent_layers and not sub.z_to_tile_ids.get(layer):
                raise LayerIntegrityError(
                    f"Component of {len(tile_ids)} tiles starting at {tile_ids[0]} "
                    f"has no tiles in a layer of its range",
                    block_id=sub.block_id,
                    z_range=sub.z_range,
                    layer=layer,
                )

        logger.info(f"  component block {sub.block_id}: z {sub.min_z}-{sub.max_z}, "
                    f"{len(sub)} tiles, {len(sub.graph.edges)} edges")
        result.append(sub)

    return result
