"""
Shared fixtures: synthetic tile stacks with known ground truth
"""

import numpy as np
import pytest

from stacksolve.core.block import Correspondence, TileSpec
from stacksolve.core.models import AffineModel
from stacksolve.external.render_source import InMemoryRenderSource, InMemoryResultSink

TILE = 100.0
OVERLAP = 20.0


def translation(tx, ty):
    return AffineModel(np.array([[1.0, 0.0, tx], [0.0, 1.0, ty]]))


def grid_points(x0, x1, y0, y1, nx=3, ny=4):
    gx, gy = np.meshgrid(np.linspace(x0, x1, nx), np.linspace(y0, y1, ny))
    return np.column_stack([gx.ravel(), gy.ravel()])


def match_between(p_spec, q_spec, p_truth, q_truth, inset=4.0):
    """Correspondence of the world-space overlap of two tiles under their true models"""
    p_origin = p_truth.m[:, 2]
    q_origin = q_truth.m[:, 2]
    x0 = max(p_origin[0], q_origin[0]) + inset
    x1 = min(p_origin[0] + p_spec.width, q_origin[0] + q_spec.width) - inset
    y0 = max(p_origin[1], q_origin[1]) + inset
    y1 = min(p_origin[1] + p_spec.height, q_origin[1] + q_spec.height) - inset
    world = grid_points(x0, x1, y0, y1)
    return Correspondence(
        p_spec.group_id, p_spec.tile_id, q_spec.group_id, q_spec.tile_id,
        p_truth.inverse().apply(world), q_truth.inverse().apply(world),
    )


class SyntheticStack:
    """
    `n_layers` layers of `tiles_per_layer` tiles in a row.

    Neighbors in a row overlap by OVERLAP pixels; tile k of layer z is matched
    to tile k of layer z+1. Previous (pre-solve) models are the true ones
    plus a deterministic pseudo-random shift of up to `perturb` pixels.
    """

    def __init__(self, n_layers=6, tiles_per_layer=2, perturb=0.0, seed=0, first_z=0):
        rng = np.random.RandomState(seed)
        self.truth = {}
        self.specs = []
        self.correspondences = []

        for z in range(first_z, first_z + n_layers):
            for k in range(tiles_per_layer):
                tile_id = self.tile_id(z, k)
                truth = translation(k * (TILE - OVERLAP) + 0.5 * z, 0.3 * z)
                shift = rng.uniform(-perturb, perturb, size=2) if perturb else np.zeros(2)
                previous = translation(*(truth.m[:, 2] + shift))
                self.truth[tile_id] = truth
                self.specs.append(TileSpec(tile_id, z, TILE, TILE, transform=previous))

        by_id = {s.tile_id: s for s in self.specs}
        for z in range(first_z, first_z + n_layers):
            for k in range(tiles_per_layer):
                here = self.tile_id(z, k)
                if k + 1 < tiles_per_layer:
                    right = self.tile_id(z, k + 1)
                    self.correspondences.append(
                        match_between(by_id[here], by_id[right], self.truth[here], self.truth[right])
                    )
                if z + 1 < first_z + n_layers:
                    below = self.tile_id(z + 1, k)
                    self.correspondences.append(
                        match_between(by_id[here], by_id[below], self.truth[here], self.truth[below])
                    )

    @staticmethod
    def tile_id(z, k):
        return f"{z:04d}.{k}"

    def source(self):
        return InMemoryRenderSource(self.specs, self.correspondences)


@pytest.fixture
def small_stack():
    return SyntheticStack(n_layers=6, tiles_per_layer=2)


@pytest.fixture
def perturbed_stack():
    return SyntheticStack(n_layers=4, tiles_per_layer=3, perturb=3.0, seed=7)


@pytest.fixture
def sink():
    return InMemoryResultSink()
