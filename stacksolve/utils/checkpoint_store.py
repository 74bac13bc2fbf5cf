"""
Checkpoint store for solved blocks

One JSON document per block, written to a temp file and renamed into place
so readers never see a partial entry. A separate merge process reloads the
blocks (without their graphs) and reconciles them.
"""

import json
import logging
from pathlib import Path
from typing import Dict, List, Optional, Union

from stacksolve.core.block import Block, TileSpec, next_block_id, reserve_block_ids
from stacksolve.core.errors import CheckpointError
from stacksolve.core.models import AffineModel

logger = logging.getLogger(__name__)


class CheckpointStore:
    """Directory of serialized solved blocks"""

    FORMAT_VERSION = 1
    PATTERN = "block_*.json"

    def __init__(self, root: Union[str, Path], min_entries: int = 3):
        """
        Args:
            root: Directory holding the block documents (created if missing)
            min_entries: Minimum number of blocks load_all() accepts
        """
        self.root = Path(root)
        self.min_entries = min_entries
        self.root.mkdir(parents=True, exist_ok=True)

    @staticmethod
    def entry_name(block: Block) -> str:
        return f"block_{block.min_z:06d}_{block.max_z:06d}_{block.block_id:06d}.json"

    @staticmethod
    def block_to_dict(block: Block) -> Dict:
        return {
            'format_version': CheckpointStore.FORMAT_VERSION,
            'block_id': block.block_id,
            'min_z': block.min_z,
            'max_z': block.max_z,
            'tile_ids': block.tile_ids,
            'tile_specs': [block.tile_specs[t].to_dict() for t in block.tile_ids],
            'previous_models': {t: block.previous_models[t].to_array() for t in block.tile_ids},
            'new_models': {t: m.to_array() for t, m in sorted(block.new_models.items())},
            'z_to_tile_ids': {str(z): sorted(ids) for z, ids in sorted(block.z_to_tile_ids.items())},
            'diagnostics': block.diagnostics,
        }

    @staticmethod
    def block_from_dict(data: Dict) -> Block:
        version = data.get('format_version')
        if version != CheckpointStore.FORMAT_VERSION:
            raise CheckpointError(f"Unsupported checkpoint format version {version}")

        try:
            block = Block(data['min_z'], data['max_z'], block_id=data['block_id'])
            specs = {s['tile_id']: TileSpec.from_dict(s) for s in data['tile_specs']}
            for tile_id in data['tile_ids']:
                block.add_tile(specs[tile_id], AffineModel.from_array(data['previous_models'][tile_id]))
            for tile_id, values in data['new_models'].items():
                block.new_models[tile_id] = AffineModel.from_array(values)
        except (KeyError, TypeError, ValueError) as e:
            raise CheckpointError(f"Malformed checkpoint entry: {e}")

        stored_layers = {int(z): set(ids) for z, ids in data.get('z_to_tile_ids', {}).items()}
        if stored_layers and stored_layers != block.z_to_tile_ids:
            raise CheckpointError(f"Layer index of block {block.block_id} does not match its tiles")

        block.diagnostics = data.get('diagnostics') or {}
        return block

    def save(self, block: Block) -> Path:
        """Write one block atomically, return the entry path"""
        final = self.root / self.entry_name(block)
        tmp = final.with_suffix('.json.tmp')
        try:
            tmp.write_text(json.dumps(self.block_to_dict(block), indent=1), encoding='utf-8')
            tmp.replace(final)
        except (OSError, TypeError) as e:
            raise CheckpointError(f"Could not write checkpoint {final}: {e}")
        logger.info(f"Checkpointed block {block.block_id} (z {block.min_z}-{block.max_z}, "
                    f"{len(block)} tiles) to {final.name}")
        return final

    def entries(self) -> List[Path]:
        return sorted(self.root.glob(self.PATTERN))

    def load(self, path: Union[str, Path]) -> Block:
        path = Path(path)
        try:
            data = json.loads(path.read_text(encoding='utf-8'))
        except (OSError, json.JSONDecodeError) as e:
            raise CheckpointError(f"Could not read checkpoint {path}: {e}")
        return self.block_from_dict(data)

    def load_all(self, min_entries: Optional[int] = None) -> List[Block]:
        """
        Load every stored block in entry-name order.

        Raises:
            CheckpointError: fewer than `min_entries` entries, or an unreadable entry
        """
        required = self.min_entries if min_entries is None else min_entries
        paths = self.entries()
        if len(paths) < required:
            raise CheckpointError(
                f"Found {len(paths)} checkpoints in {self.root}, at least {required} required"
            )

        blocks = [self.load(p) for p in paths]
        if blocks:
            reserve_block_ids(max(b.block_id for b in blocks))

        # entries written by separate processes may reuse ids
        seen = set()
        for path, block in zip(paths, blocks):
            if block.block_id in seen:
                old = block.block_id
                block.block_id = next_block_id()
                logger.warning(f"Block id {old} of {path.name} is already taken, using {block.block_id}")
            seen.add(block.block_id)

        logger.info(f"Loaded {len(blocks)} checkpointed blocks from {self.root}")
        return blocks
