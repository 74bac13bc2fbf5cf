"""
Tile graph stored as an arena

Nodes and edges live in flat lists and refer to each other by integer
index; a side table maps tile id <-> node index. Nodes never hold references
to other nodes.
"""

import numpy as np
from typing import Callable, Dict, Iterable, List, Optional, Tuple
import logging

from stacksolve.core.block import TileSpec
from stacksolve.core.models import AffineModel, TransformModel

logger = logging.getLogger(__name__)


class TileNode:
    """One vertex per tile: the mutable solve model plus the pre-solve snapshot"""

    def __init__(
        self,
        index: int,
        tile_spec: TileSpec,
        model: TransformModel,
        previous_model: AffineModel
    ):
        self.index = index
        self.tile_spec = tile_spec
        self.model = model
        self.previous_model = previous_model
        self.edges: List[int] = []
        self.fixed = False

    @property
    def tile_id(self) -> str:
        return self.tile_spec.tile_id

    def __repr__(self):
        return f"TileNode({self.index}, {self.tile_id!r}, edges={len(self.edges)})"


class Edge:
    """
    Undirected connection between nodes `a` and `b`.

    `p_points` are local to node a, `q_points` local to node b. Side a is
    always the node with the smaller tile id.
    """

    def __init__(self, index: int, a: int, b: int):
        self.index = index
        self.a = a
        self.b = b
        self._p: List[np.ndarray] = []
        self._q: List[np.ndarray] = []
        self._w: List[np.ndarray] = []
        self._cache: Optional[Tuple[np.ndarray, np.ndarray, np.ndarray]] = None

    def add_matches(self, p_points: np.ndarray, q_points: np.ndarray, weights: np.ndarray):
        self._p.append(np.asarray(p_points, dtype=np.float64).reshape(-1, 2))
        self._q.append(np.asarray(q_points, dtype=np.float64).reshape(-1, 2))
        self._w.append(np.asarray(weights, dtype=np.float64).reshape(-1))
        self._cache = None

    def _arrays(self):
        if self._cache is None:
            self._cache = (np.vstack(self._p), np.vstack(self._q), np.concatenate(self._w))
        return self._cache

    @property
    def p_points(self) -> np.ndarray:
        return self._arrays()[0]

    @property
    def q_points(self) -> np.ndarray:
        return self._arrays()[1]

    @property
    def weights(self) -> np.ndarray:
        return self._arrays()[2]

    @property
    def total_weight(self) -> float:
        return float(self.weights.sum())

    def __len__(self):
        return sum(len(p) for p in self._p)

    def other(self, node_index: int) -> int:
        return self.b if node_index == self.a else self.a

    def __repr__(self):
        return f"Edge({self.a} <> {self.b}, {len(self)} matches)"


class TileGraph:
    """Arena of tile nodes connected by match edges"""

    def __init__(self):
        self.nodes: List[TileNode] = []
        self.edges: List[Edge] = []
        self._index_by_id: Dict[str, int] = {}
        self._edge_by_pair: Dict[Tuple[str, str], int] = {}

    def __len__(self):
        return len(self.nodes)

    def __contains__(self, tile_id: str) -> bool:
        return tile_id in self._index_by_id

    def node(self, tile_id: str) -> TileNode:
        return self.nodes[self._index_by_id[tile_id]]

    def index_of(self, tile_id: str) -> int:
        return self._index_by_id[tile_id]

    def tile_ids(self) -> List[str]:
        return sorted(self._index_by_id)

    def get_or_create_node(
        self,
        tile_spec: TileSpec,
        model_factory: Callable[[TileSpec], TransformModel]
    ) -> Tuple[TileNode, bool]:
        """
        Look up the node for a tile id, creating it on first reference.

        The previous model is snapshotted from the tile spec at creation time.

        Returns:
            (node, created)
        """
        index = self._index_by_id.get(tile_spec.tile_id)
        if index is not None:
            return self.nodes[index], False

        index = len(self.nodes)
        node = TileNode(index, tile_spec, model_factory(tile_spec), tile_spec.transform.copy())
        self.nodes.append(node)
        self._index_by_id[tile_spec.tile_id] = index
        return node, True

    def connect(
        self,
        p_id: str,
        q_id: str,
        p_points: np.ndarray,
        q_points: np.ndarray,
        weights: Optional[np.ndarray] = None
    ) -> Edge:
        """Add point matches between two existing nodes, accumulating on one edge per pair"""
        if p_id == q_id:
            raise ValueError(f"Cannot connect tile {p_id} to itself")

        if weights is None:
            weights = np.ones(len(p_points))

        if q_id < p_id:
            p_id, q_id = q_id, p_id
            p_points, q_points = q_points, p_points

        key = (p_id, q_id)
        edge_index = self._edge_by_pair.get(key)
        if edge_index is None:
            edge_index = len(self.edges)
            edge = Edge(edge_index, self._index_by_id[p_id], self._index_by_id[q_id])
            self.edges.append(edge)
            self._edge_by_pair[key] = edge_index
            self.nodes[edge.a].edges.append(edge_index)
            self.nodes[edge.b].edges.append(edge_index)

        edge = self.edges[edge_index]
        edge.add_matches(p_points, q_points, weights)
        return edge

    def edge_between(self, tile_id_1: str, tile_id_2: str) -> Optional[Edge]:
        key = (min(tile_id_1, tile_id_2), max(tile_id_1, tile_id_2))
        index = self._edge_by_pair.get(key)
        return self.edges[index] if index is not None else None

    def neighbors(self, tile_id: str) -> List[str]:
        node = self.node(tile_id)
        return sorted(self.nodes[self.edges[e].other(node.index)].tile_id for e in node.edges)

    def edge_pairs(self) -> np.ndarray:
        """Ex2 array of (a, b) node indices"""
        if not self.edges:
            return np.zeros((0, 2), dtype=np.int64)
        return np.array([(e.a, e.b) for e in self.edges], dtype=np.int64)

    def subgraph(self, tile_ids: Iterable[str]) -> 'TileGraph':
        """
        New arena containing only the given tiles and the edges among them.

        Node models move to the new graph (they are not copied); the parent
        graph must not be solved afterwards.
        """
        keep = sorted(set(tile_ids))
        sub = TileGraph()
        for tile_id in keep:
            old = self.node(tile_id)
            node = TileNode(len(sub.nodes), old.tile_spec, old.model, old.previous_model)
            node.fixed = old.fixed
            sub.nodes.append(node)
            sub._index_by_id[tile_id] = node.index

        keep_set = set(keep)
        for (p_id, q_id), edge_index in sorted(self._edge_by_pair.items()):
            if p_id not in keep_set or q_id not in keep_set:
                continue
            old_edge = self.edges[edge_index]
            sub.connect(p_id, q_id, old_edge.p_points, old_edge.q_points, old_edge.weights)

        return sub
