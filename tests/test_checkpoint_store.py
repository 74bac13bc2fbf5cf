import json

import numpy as np
import pytest

from stacksolve.core.block import Block, TileSpec, next_block_id
from stacksolve.core.errors import CheckpointError
from stacksolve.core.models import AffineModel
from stacksolve.utils.checkpoint_store import CheckpointStore


def solved_block(min_z, max_z):
    block = Block(min_z, max_z)
    for z in range(min_z, max_z + 1):
        previous = AffineModel(np.array([[1.0, 0.0, 0.1 * z], [0.0, 1.0, np.pi * z]]))
        spec = TileSpec(f"tile.{z}", z, 2048, 1536, transform=previous, group_id=f"s{z}")
        block.add_tile(spec, previous.copy())
        block.new_models[spec.tile_id] = AffineModel(
            np.array([[1.0 + 1e-7 * z, 1e-9, 1.0 / 3.0], [-1e-9, 0.999999, 2.0 / 7.0 * z]])
        )
        block.diagnostics[spec.tile_id] = {'avg_error': 0.25, 'max_error': 1.5, 'lambda': 0.01}
    return block


def test_round_trip_is_exact(tmp_path):
    store = CheckpointStore(tmp_path, min_entries=1)
    block = solved_block(10, 14)
    store.save(block)

    [loaded] = store.load_all()
    assert loaded.block_id == block.block_id
    assert loaded.z_range == (10, 14)
    assert loaded.tile_ids == block.tile_ids
    assert loaded.z_to_tile_ids == block.z_to_tile_ids
    assert loaded.diagnostics == block.diagnostics
    assert loaded.graph is None
    for tile_id in block.tile_ids:
        assert loaded.new_models[tile_id] == block.new_models[tile_id]
        assert loaded.previous_models[tile_id] == block.previous_models[tile_id]
        assert loaded.tile_specs[tile_id].group_id == block.tile_specs[tile_id].group_id
        assert loaded.tile_specs[tile_id].transform == block.tile_specs[tile_id].transform


def test_minimum_entries_guard(tmp_path):
    store = CheckpointStore(tmp_path)
    store.save(solved_block(0, 1))
    store.save(solved_block(2, 3))

    with pytest.raises(CheckpointError):
        store.load_all()

    store.save(solved_block(4, 5))
    assert [b.min_z for b in store.load_all()] == [0, 2, 4]


def test_entries_sorted_and_no_temp_files_left(tmp_path):
    store = CheckpointStore(tmp_path, min_entries=1)
    store.save(solved_block(20, 21))
    store.save(solved_block(5, 6))

    assert [p.name.split('_')[1] for p in store.entries()] == ["000005", "000020"]
    assert not list(tmp_path.glob("*.tmp"))


def test_loading_reserves_block_ids(tmp_path):
    store = CheckpointStore(tmp_path, min_entries=1)
    block = solved_block(0, 1)
    block.block_id = next_block_id() + 1000
    store.save(block)

    store.load_all()
    assert next_block_id() > block.block_id


def test_corrupt_entry(tmp_path):
    store = CheckpointStore(tmp_path, min_entries=1)
    (tmp_path / "block_000000_000001_000001.json").write_text("{not json")
    with pytest.raises(CheckpointError):
        store.load_all()


def test_unsupported_version(tmp_path):
    store = CheckpointStore(tmp_path, min_entries=1)
    path = store.save(solved_block(0, 1))
    data = json.loads(path.read_text())
    data['format_version'] = 99
    path.write_text(json.dumps(data))
    with pytest.raises(CheckpointError):
        store.load_all()


def test_reused_block_ids_are_renumbered(tmp_path):
    store = CheckpointStore(tmp_path, min_entries=2)
    first, second = solved_block(0, 3), solved_block(3, 6)
    first.block_id = second.block_id = 1
    store.save(first)
    store.save(second)

    loaded = store.load_all()
    assert [b.z_range for b in loaded] == [(0, 3), (3, 6)]
    assert loaded[0].block_id == 1
    assert loaded[1].block_id > 1
