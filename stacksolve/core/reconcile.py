"""
Block reconciliation

Independently solved blocks live in slightly different coordinate frames,
and the whole working range has drifted from the untouched layers above and
below it. Reconciliation solves a small rigid system with one node per
block plus a fixed "top" node (the untouched region above) and a "bottom"
node (the untouched region below). Its matches are synthetic: grid points
of each tile mapped by the models being compared.

Final models are the block corrections applied to the new models, blended
linearly back to the previous models inside the top and bottom overlap
bands so the working range joins its neighbors without a seam.
"""

import numpy as np
from typing import Dict, List, Optional
import logging

from stacksolve.core.block import Block, SolveSet, TileSpec
from stacksolve.core.errors import ReconciliationError, SolveError
from stacksolve.core.models import AffineModel, RigidModel
from stacksolve.core.solver import relax
from stacksolve.core.tile_graph import TileGraph
from stacksolve.utils.config import SolveParameters, Stage

logger = logging.getLogger(__name__)

TOP_ID = 'top'
BOTTOM_ID = 'bottom'


def blend_lambda_top(z: float, min_z: float, overlap_top: int) -> float:
    """Weight of the previous model in the top band: 1.0 at min_z, 0.0 at the top border"""
    top_border = min_z + overlap_top - 1
    return float(np.clip((top_border - z) / (overlap_top - 1), 0.0, 1.0))


def blend_lambda_bottom(z: float, max_z: float, overlap_bottom: int) -> float:
    """Weight of the previous model in the bottom band: 1.0 at max_z, 0.0 at the bottom border"""
    bottom_border = max_z - overlap_bottom + 1
    return float(np.clip((z - bottom_border) / (overlap_bottom - 1), 0.0, 1.0))


def sample_grid(width: float, height: float, samples_per_dimension: int) -> np.ndarray:
    """n x n grid of points spanning a tile's local pixel space"""
    xs = np.linspace(0.0, max(width - 1.0, 0.0), samples_per_dimension)
    ys = np.linspace(0.0, max(height - 1.0, 0.0), samples_per_dimension)
    gx, gy = np.meshgrid(xs, ys)
    return np.column_stack([gx.ravel(), gy.ravel()])


def _block_node_id(index: int, block: Block) -> str:
    return f"block_{index:04d}_{block.block_id}"


class Reconciliation:
    """
    Result of reconciling a SolveSet.

    `block_corrections[i]` is the rigid correction of the SolveSet's i-th
    block; block ids are not unique across separately solved checkpoints.
    """

    def __init__(
        self,
        models: Dict[str, AffineModel],
        lambdas: Dict[str, float],
        tile_z: Dict[str, float],
        top_correction: AffineModel,
        bottom_correction: AffineModel,
        block_corrections: List[AffineModel],
        stage_reports: Optional[List] = None
    ):
        self.models = models
        self.lambdas = lambdas
        self.tile_z = tile_z
        self.top_correction = top_correction
        self.bottom_correction = bottom_correction
        self.block_corrections = block_corrections
        self.stage_reports = stage_reports or []

    def models_by_layer(self) -> Dict[float, Dict[str, AffineModel]]:
        """z -> {tile id: model}, z ascending"""
        layers: Dict[float, Dict[str, AffineModel]] = {}
        for tile_id in sorted(self.models):
            layers.setdefault(self.tile_z[tile_id], {})[tile_id] = self.models[tile_id]
        return dict(sorted(layers.items()))

    def correct_below(self, model: AffineModel) -> AffineModel:
        """Carry an untouched model from below the working range into the solved frame"""
        return model.then(self.bottom_correction)


class BlockReconciler:
    """Merge the blocks of a SolveSet into one consistent set of models"""

    def __init__(
        self,
        overlap_top: int = 25,
        overlap_bottom: int = 25,
        samples_per_dimension: int = 5,
        iterations: int = 1000,
        plateau_width: int = 100,
        num_threads: int = 1,
        damp: float = 0.5
    ):
        if overlap_top < 2 or overlap_bottom < 2:
            raise ReconciliationError(
                f"Overlap depths must be >= 2 layers (top={overlap_top}, bottom={overlap_bottom})"
            )
        self.overlap_top = overlap_top
        self.overlap_bottom = overlap_bottom
        self.samples_per_dimension = samples_per_dimension
        self.iterations = iterations
        self.plateau_width = plateau_width
        self.num_threads = num_threads
        self.damp = damp

    @classmethod
    def from_parameters(cls, params: SolveParameters) -> 'BlockReconciler':
        return cls(
            overlap_top=params.overlap_top,
            overlap_bottom=params.overlap_bottom,
            samples_per_dimension=params.samples_per_dimension,
            iterations=params.reconcile_iterations,
            plateau_width=params.reconcile_plateau_width,
            num_threads=params.num_threads,
            damp=params.damp,
        )

    def _grid(self, spec: TileSpec) -> np.ndarray:
        return sample_grid(spec.width, spec.height, self.samples_per_dimension)

    def reconcile(self, solve_set: SolveSet) -> Reconciliation:
        """
        Solve the block-level system and compute the final model of every tile.

        Raises:
            ReconciliationError: empty set, unsolved tiles, an empty top or
                bottom band, or a singular block-level fit
        """
        if not len(solve_set):
            raise ReconciliationError("Nothing to reconcile: solve set is empty")

        blocks = solve_set.blocks
        for block in blocks:
            missing = [t for t in block.tile_specs if t not in block.new_models]
            if missing:
                raise ReconciliationError(
                    f"Block {block.block_id} has {len(missing)} unsolved tiles (e.g. {missing[0]})"
                )

        min_z, max_z = solve_set.min_z, solve_set.max_z
        top_border = min_z + self.overlap_top - 1
        bottom_border = max_z - self.overlap_bottom + 1
        logger.info(f"Reconciling {len(blocks)} blocks over z {min_z}-{max_z} "
                    f"(top band to {top_border}, bottom band from {bottom_border})")

        graph = TileGraph()
        node_ids = [_block_node_id(i, b) for i, b in enumerate(blocks)]
        for node_id in [TOP_ID, BOTTOM_ID] + node_ids:
            z = min_z if node_id == TOP_ID else max_z
            graph.get_or_create_node(TileSpec(node_id, z, 1, 1), lambda spec: RigidModel())
        graph.node(TOP_ID).fixed = True

        top_links = bottom_links = 0
        for i, block in enumerate(blocks):
            for tile_id in block.tile_ids:
                spec = block.tile_specs[tile_id]
                grid = self._grid(spec)
                new_world = block.new_models[tile_id].apply(grid)
                previous_world = block.previous_models[tile_id].apply(grid)

                if spec.layer <= top_border:
                    graph.connect(TOP_ID, node_ids[i], previous_world, new_world)
                    top_links += 1
                if spec.layer >= bottom_border:
                    graph.connect(node_ids[i], BOTTOM_ID, new_world, previous_world)
                    bottom_links += 1

        if top_links == 0:
            raise ReconciliationError(f"Top band z {min_z}-{top_border} contains no tiles")
        if bottom_links == 0:
            raise ReconciliationError(f"Bottom band z {bottom_border}-{max_z} contains no tiles")

        for i, j, shared in solve_set.adjacent_pairs():
            for tile_id in shared:
                grid = self._grid(blocks[i].tile_specs[tile_id])
                graph.connect(
                    node_ids[i], node_ids[j],
                    blocks[i].new_models[tile_id].apply(grid),
                    blocks[j].new_models[tile_id].apply(grid),
                )
            logger.debug(f"Blocks {blocks[i].block_id} and {blocks[j].block_id} share {len(shared)} tiles")

        for node_id in node_ids:
            if not graph.node(node_id).edges:
                logger.warning(f"{node_id} is not linked to any band or neighbor block, left uncorrected")

        try:
            reports = relax(
                graph,
                [Stage(1.0, self.iterations, self.plateau_width)],
                num_threads=self.num_threads,
                damp=self.damp,
                z_range=(min_z, max_z),
            )
        except SolveError as e:
            raise ReconciliationError(f"Block-level solve failed: {e}")

        top_correction = graph.node(TOP_ID).model.create_affine()
        bottom_correction = graph.node(BOTTOM_ID).model.create_affine()
        block_corrections = [graph.node(node_id).model.create_affine() for node_id in node_ids]

        models, lambdas, tile_z = self._final_models(
            solve_set, top_correction, bottom_correction, block_corrections, top_border, bottom_border
        )

        logger.info(f"Reconciled {len(models)} tiles; block-level error "
                    f"{reports[-1].error:.4f} px")
        return Reconciliation(models, lambdas, tile_z, top_correction, bottom_correction,
                              block_corrections, reports)

    def _final_models(self, solve_set, top_correction, bottom_correction, block_corrections,
                      top_border, bottom_border):
        min_z, max_z = solve_set.min_z, solve_set.max_z
        models, lambdas, tile_z = {}, {}, {}

        for tile_id in solve_set.all_tile_ids():
            owners = solve_set.blocks_for_tile(tile_id)
            first = solve_set.blocks[owners[0]]
            spec = first.tile_specs[tile_id]
            previous = first.previous_models[tile_id]
            z = spec.layer

            # blocks sharing a tile are weighted by distance to their range edge
            weights = np.array([min(z - solve_set.blocks[k].min_z, solve_set.blocks[k].max_z - z) + 1.0
                                for k in owners])
            weights /= weights.sum()
            matrix = np.zeros((3, 3))
            for w, k in zip(weights, owners):
                new = solve_set.blocks[k].new_models[tile_id]
                matrix += w * new.then(block_corrections[k]).to_matrix()
            corrected = AffineModel(matrix)

            if z <= top_border:
                lam = blend_lambda_top(z, min_z, self.overlap_top)
                final = AffineModel.interpolate(corrected, previous.then(top_correction), lam)
            elif z >= bottom_border:
                lam = blend_lambda_bottom(z, max_z, self.overlap_bottom)
                final = AffineModel.interpolate(corrected, previous.then(bottom_correction), lam)
            else:
                lam = 0.0
                final = corrected

            models[tile_id] = final
            lambdas[tile_id] = lam
            tile_z[tile_id] = spec.z

        return models, lambdas, tile_z
