"""
Data model for block solving: tile specs, correspondences, blocks and solve sets
"""

import itertools
import threading
import numpy as np
from typing import Dict, List, Optional, Set, Tuple
import logging

from stacksolve.core.models import AffineModel

logger = logging.getLogger(__name__)

_block_ids = itertools.count(1)
_block_id_lock = threading.Lock()


def next_block_id() -> int:
    """Generate a process-unique block id"""
    with _block_id_lock:
        return next(_block_ids)


def reserve_block_ids(minimum: int):
    """Make sure future block ids are larger than `minimum` (after loading checkpoints)"""
    global _block_ids
    with _block_id_lock:
        current = next(_block_ids)
        _block_ids = itertools.count(max(current, minimum + 1))


def layer_of(z: float) -> int:
    """Integer layer index of a z value"""
    return int(round(z))


class TileSpec:
    """Tile identity, layer position, size and current (pre-solve) transform"""

    def __init__(
        self,
        tile_id: str,
        z: float,
        width: float,
        height: float,
        transform: Optional[AffineModel] = None,
        group_id: Optional[str] = None
    ):
        self.tile_id = tile_id
        self.z = float(z)
        self.width = float(width)
        self.height = float(height)
        self.transform = transform.copy() if transform is not None else AffineModel()
        self.group_id = group_id if group_id is not None else f"{self.z:.1f}"

    @property
    def layer(self) -> int:
        return layer_of(self.z)

    def to_dict(self) -> Dict:
        return {
            'tile_id': self.tile_id,
            'z': self.z,
            'width': self.width,
            'height': self.height,
            'transform': self.transform.to_array(),
            'group_id': self.group_id,
        }

    @classmethod
    def from_dict(cls, data: Dict) -> 'TileSpec':
        transform = data.get('transform')
        return cls(
            tile_id=data['tile_id'],
            z=data['z'],
            width=data['width'],
            height=data['height'],
            transform=AffineModel.from_array(transform) if transform is not None else None,
            group_id=data.get('group_id'),
        )

    def __repr__(self):
        return f"TileSpec({self.tile_id!r}, z={self.z}, {self.width:.0f}x{self.height:.0f})"


class Correspondence:
    """Point matches between tile p and tile q, each point in its tile's local pixels"""

    def __init__(
        self,
        p_group_id: str,
        p_id: str,
        q_group_id: str,
        q_id: str,
        p_points,
        q_points,
        weights=None
    ):
        self.p_group_id = p_group_id
        self.p_id = p_id
        self.q_group_id = q_group_id
        self.q_id = q_id
        self.p_points = np.asarray(p_points, dtype=np.float64).reshape(-1, 2)
        self.q_points = np.asarray(q_points, dtype=np.float64).reshape(-1, 2)
        if len(self.p_points) != len(self.q_points):
            raise ValueError(
                f"Correspondence {p_id} <> {q_id}: {len(self.p_points)} p points "
                f"but {len(self.q_points)} q points"
            )
        if weights is None:
            self.weights = np.ones(len(self.p_points), dtype=np.float64)
        else:
            self.weights = np.asarray(weights, dtype=np.float64).reshape(-1)

    def __len__(self):
        return len(self.p_points)

    def __repr__(self):
        return f"Correspondence({self.p_id!r} <> {self.q_id!r}, {len(self)} matches)"


class Block:
    """
    One independently solvable unit (a "solve item").

    Holds the layer range, the per-layer tile index and, per tile id, the
    tile spec, the previous (pre-solve) model and the solved ("new") model.
    `graph` is the tile graph the solver mutates; it is None for blocks
    reconstructed from a checkpoint.
    """

    def __init__(self, min_z: int, max_z: int, block_id: Optional[int] = None):
        self.block_id = block_id if block_id is not None else next_block_id()
        self.min_z = int(min_z)
        self.max_z = int(max_z)
        self.z_to_tile_ids: Dict[int, Set[str]] = {}
        self.tile_specs: Dict[str, TileSpec] = {}
        self.previous_models: Dict[str, AffineModel] = {}
        self.new_models: Dict[str, AffineModel] = {}
        self.diagnostics: Dict[str, Dict] = {}
        self.graph = None

    @property
    def z_range(self) -> Tuple[int, int]:
        return self.min_z, self.max_z

    @property
    def tile_ids(self) -> List[str]:
        return sorted(self.tile_specs)

    def __len__(self):
        return len(self.tile_specs)

    def contains_z(self, z: float) -> bool:
        return self.min_z <= z <= self.max_z

    def add_tile(self, tile_spec: TileSpec, previous_model: AffineModel):
        self.tile_specs[tile_spec.tile_id] = tile_spec
        self.previous_models[tile_spec.tile_id] = previous_model
        self.z_to_tile_ids.setdefault(tile_spec.layer, set()).add(tile_spec.tile_id)

    def layers(self) -> List[int]:
        return sorted(self.z_to_tile_ids)

    def __repr__(self):
        return f"Block(id={self.block_id}, z={self.min_z}-{self.max_z}, tiles={len(self)})"


class SolveSet:
    """
    Ordered collection of blocks covering one contiguous working range.

    Blocks are ordered by (min_z, block_id). Two blocks are adjacent when
    they share at least one tile id; the reconciler stitches exactly those
    boundaries.
    """

    def __init__(self, blocks: List[Block]):
        self.blocks = sorted(blocks, key=lambda b: (b.min_z, b.block_id))

    def __len__(self):
        return len(self.blocks)

    def __iter__(self):
        return iter(self.blocks)

    @property
    def min_z(self) -> int:
        return min(b.min_z for b in self.blocks)

    @property
    def max_z(self) -> int:
        return max(b.max_z for b in self.blocks)

    def adjacent_pairs(self) -> List[Tuple[int, int, List[str]]]:
        """
        Pairs of adjacent blocks.

        Returns:
            List of (index_i, index_j, shared tile ids) with i < j
        """
        pairs = []
        for i, j in itertools.combinations(range(len(self.blocks)), 2):
            a, b = self.blocks[i], self.blocks[j]
            if a.max_z < b.min_z or b.max_z < a.min_z:
                continue
            shared = sorted(set(a.tile_specs) & set(b.tile_specs))
            if shared:
                pairs.append((i, j, shared))
        return pairs

    def blocks_for_tile(self, tile_id: str) -> List[int]:
        return [i for i, b in enumerate(self.blocks) if tile_id in b.tile_specs]

    def all_tile_ids(self) -> List[str]:
        ids = set()
        for block in self.blocks:
            ids.update(block.tile_specs)
        return sorted(ids)

    def __repr__(self):
        return f"SolveSet({len(self.blocks)} blocks, z={self.min_z}-{self.max_z})"
