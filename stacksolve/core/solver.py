"""
Annealed relaxation solver

Iteratively fits every tile's regularized model to its point matches while
the regularizer weight (lambda) is annealed from rigid-like towards fully
affine. Each iteration works on one snapshot of all models (Jacobi update):
every free node is fitted against the snapshot, all fits are joined, then
all new models are applied together. The result does not depend on the
number of worker threads or on the order nodes are visited.
"""

import numpy as np
from collections import deque
from concurrent.futures import ThreadPoolExecutor
from typing import Dict, List, Optional
import logging

from stacksolve.core.block import Block
from stacksolve.core.errors import (
    DegenerateBlockError,
    IllDefinedDataPointsError,
    NotEnoughDataPointsError,
)
from stacksolve.utils.config import SolveParameters, Stage

logger = logging.getLogger(__name__)

# Slope below which the error is considered flat
PLATEAU_SLOPE = 1e-4


class ErrorStatistic:
    """
    Rolling window of the last `plateau_width + 1` aggregate errors plus
    running min/max/mean over the whole stage.
    """

    def __init__(self, plateau_width: int):
        self.plateau_width = max(1, int(plateau_width))
        self.values = deque(maxlen=self.plateau_width + 1)
        self.count = 0
        self.min = float('inf')
        self.max = float('-inf')
        self.mean = 0.0

    def add(self, value: float):
        self.values.append(float(value))
        self.count += 1
        self.min = min(self.min, value)
        self.max = max(self.max, value)
        self.mean += (value - self.mean) / self.count

    @property
    def last(self) -> float:
        return self.values[-1]

    def wide_slope(self, distance: int) -> float:
        """Average change per iteration over the last `distance` iterations"""
        distance = min(distance, len(self.values) - 1)
        if distance < 1:
            return float('inf')
        return (self.values[-1] - self.values[-1 - distance]) / distance

    def is_plateau(self) -> bool:
        """
        True when no slope over the window halvings (w, w/2, ..., 1) exceeds
        PLATEAU_SLOPE. Needs a full window.
        """
        if len(self.values) < self.plateau_width + 1:
            return False
        d = self.plateau_width
        while d >= 1:
            if abs(self.wide_slope(d)) > PLATEAU_SLOPE:
                return False
            d //= 2
        return True


class StageReport:
    """Outcome of one annealing stage"""

    def __init__(self, lambda_: float, iterations: int, error: float, stop_reason: str):
        self.lambda_ = lambda_
        self.iterations = iterations
        self.error = error
        self.stop_reason = stop_reason

    def to_dict(self) -> Dict:
        return {
            'lambda': self.lambda_,
            'iterations': self.iterations,
            'error': self.error,
            'stop_reason': self.stop_reason,
        }

    def __repr__(self):
        return (f"StageReport(lambda={self.lambda_}, iterations={self.iterations}, "
                f"error={self.error:.4f}, stop={self.stop_reason})")


class SolveReport:
    """Per-stage outcome of a block solve"""

    def __init__(self, block_id: int, stages: List[StageReport], tiles: int, edges: int):
        self.block_id = block_id
        self.stages = stages
        self.tiles = tiles
        self.edges = edges

    @property
    def final_error(self) -> float:
        return self.stages[-1].error if self.stages else float('nan')

    @property
    def total_iterations(self) -> int:
        return sum(s.iterations for s in self.stages)

    def to_dict(self) -> Dict:
        return {
            'block_id': self.block_id,
            'tiles': self.tiles,
            'edges': self.edges,
            'stages': [s.to_dict() for s in self.stages],
        }


def _apply(matrix: np.ndarray, points: np.ndarray) -> np.ndarray:
    return points @ matrix[:2, :2].T + matrix[:2, 2]


class _NodeTerms:
    """Point matches of one node, regrouped from its incident edges"""

    def __init__(self, graph, node):
        local, weights, segments = [], [], []
        start = 0
        for edge_index in node.edges:
            edge = graph.edges[edge_index]
            if edge.a == node.index:
                own, other, partner = edge.p_points, edge.q_points, edge.b
            else:
                own, other, partner = edge.q_points, edge.p_points, edge.a
            local.append(own)
            weights.append(edge.weights)
            segments.append((partner, other, start, start + len(own)))
            start += len(own)

        self.local = np.vstack(local) if local else np.zeros((0, 2))
        self.weights = np.concatenate(weights) if weights else np.zeros(0)
        self.segments = segments

    def partner_world(self, matrices: List[np.ndarray]) -> np.ndarray:
        out = np.empty_like(self.local)
        for partner, other, start, stop in self.segments:
            out[start:stop] = _apply(matrices[partner], other)
        return out


def compute_error(graph, matrices: Optional[List[np.ndarray]] = None) -> float:
    """
    Aggregate error: mean over connected nodes of each node's weighted mean
    world distance to its matched points.
    """
    if matrices is None:
        matrices = [node.model.to_matrix() for node in graph.nodes]

    weighted = np.zeros(len(graph.nodes))
    totals = np.zeros(len(graph.nodes))
    for edge in graph.edges:
        d = np.linalg.norm(
            _apply(matrices[edge.a], edge.p_points) - _apply(matrices[edge.b], edge.q_points),
            axis=1,
        )
        wd = float(np.sum(edge.weights * d))
        w = float(np.sum(edge.weights))
        for index in (edge.a, edge.b):
            weighted[index] += wd
            totals[index] += w

    connected = totals > 0
    if not np.any(connected):
        return 0.0
    return float(np.mean(weighted[connected] / totals[connected]))


def relax(
    graph,
    stages: List[Stage],
    num_threads: int = 1,
    damp: float = 0.5,
    max_allowed_error: float = 0.0,
    block_id: Optional[int] = None,
    z_range=None
) -> List[StageReport]:
    """
    Run the staged relaxation on a tile graph in place.

    Args:
        graph: TileGraph whose node models are fitted (fixed nodes are kept)
        stages: Stage schedule, applied in the given order
        num_threads: Worker threads for the per-iteration node fits
        damp: Fraction of the way each point moves toward its match per iteration
        max_allowed_error: A stage stops once the error drops to this value
        block_id, z_range: Context for error messages

    Returns:
        One StageReport per stage

    Raises:
        DegenerateBlockError: a node's fit is singular or ill-defined
    """
    terms = [_NodeTerms(graph, node) for node in graph.nodes]
    free = [node.index for node in graph.nodes if not node.fixed and len(terms[node.index].local)]

    def fit_node(index: int, matrices: List[np.ndarray]):
        node = graph.nodes[index]
        t = terms[index]
        own = _apply(matrices[index], t.local)
        target = own + damp * (t.partner_world(matrices) - own)
        model = node.model.copy()
        try:
            model.fit(t.local, target, t.weights)
        except (NotEnoughDataPointsError, IllDefinedDataPointsError) as e:
            raise DegenerateBlockError(
                f"Cannot fit model: {e}",
                block_id=block_id, z_range=z_range, tile_id=node.tile_id,
            )
        return model

    executor = ThreadPoolExecutor(max_workers=num_threads) if num_threads > 1 else None
    reports = []
    try:
        for stage in stages:
            for index in free:
                model = graph.nodes[index].model
                if hasattr(model, 'set_lambda'):
                    model.set_lambda(stage.lambda_, stage.lambda_translation)

            stats = ErrorStatistic(stage.max_plateau_width)
            stats.add(compute_error(graph))
            stop_reason = 'max_iterations'
            iteration = 0

            while iteration < stage.max_iterations:
                iteration += 1
                matrices = [node.model.to_matrix() for node in graph.nodes]

                if executor is not None:
                    fitted = list(executor.map(lambda i: fit_node(i, matrices), free))
                else:
                    fitted = [fit_node(i, matrices) for i in free]

                # all fits joined, apply together
                for index, model in zip(free, fitted):
                    graph.nodes[index].model = model

                stats.add(compute_error(graph))

                if stats.last <= max_allowed_error:
                    stop_reason = 'max_error'
                    break
                if iteration >= stage.max_plateau_width and stats.is_plateau():
                    stop_reason = 'plateau'
                    break

            report = StageReport(stage.lambda_, iteration, stats.last, stop_reason)
            logger.info(f"  lambda {stage.lambda_:.3f}: {iteration} iterations, "
                        f"error {stats.last:.4f} px ({stop_reason})")
            reports.append(report)
    finally:
        if executor is not None:
            executor.shutdown(wait=True)

    return reports


class AnnealedSolver:
    """Solves one connected block and records its new models"""

    def __init__(
        self,
        stages: List[Stage],
        num_threads: int = 1,
        damp: float = 0.5,
        max_allowed_error: float = 0.0
    ):
        """
        Args:
            stages: Annealing schedule, most constrained stage first
            num_threads: Worker threads for the per-iteration node fits
            damp: Fraction of the way each point moves toward its match per iteration
            max_allowed_error: Error at which a stage stops early
        """
        self.stages = list(stages)
        self.num_threads = num_threads
        self.damp = damp
        self.max_allowed_error = max_allowed_error

    @classmethod
    def from_parameters(cls, params: SolveParameters) -> 'AnnealedSolver':
        return cls(params.stages(), params.num_threads, params.damp, params.max_allowed_error)

    def solve(self, block: Block) -> SolveReport:
        """
        Relax the block's graph and bake every tile's model into
        `block.new_models`.

        Raises:
            DegenerateBlockError: no graph, no edges, or a singular fit
        """
        graph = block.graph
        if graph is None or not graph.edges:
            raise DegenerateBlockError("Block has no edges to solve", block_id=block.block_id,
                                       z_range=block.z_range)

        logger.info(f"Solving block {block.block_id} (z {block.min_z}-{block.max_z}): "
                    f"{len(graph.nodes)} tiles, {len(graph.edges)} edges, {len(self.stages)} stages")

        reports = relax(
            graph,
            self.stages,
            num_threads=self.num_threads,
            damp=self.damp,
            max_allowed_error=self.max_allowed_error,
            block_id=block.block_id,
            z_range=block.z_range,
        )

        for tile_id in graph.tile_ids():
            affine = graph.node(tile_id).model.create_affine()
            if not np.all(np.isfinite(affine.m)):
                raise DegenerateBlockError("Solved model is not finite", block_id=block.block_id,
                                           z_range=block.z_range, tile_id=tile_id)
            block.new_models[tile_id] = affine
            logger.debug(f"Block {block.block_id}: {tile_id} -> {affine.to_array()}")

        report = SolveReport(block.block_id, reports, len(graph.nodes), len(graph.edges))
        logger.info(f"Block {block.block_id} solved: error {report.final_error:.4f} px "
                    f"after {report.total_iterations} iterations")
        return report
