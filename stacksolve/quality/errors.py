"""
Per-tile alignment error diagnostics
"""

import json
import numpy as np
from enum import Enum
from pathlib import Path
from typing import Dict, List, Optional, Union
import logging

from stacksolve.core.models import AffineModel

logger = logging.getLogger(__name__)


class ErrorFilter(Enum):
    """Which edges count towards a tile's error"""
    ALL = 'all'
    CROSS_LAYER_ONLY = 'cross_layer_only'
    SAME_LAYER_ONLY = 'same_layer_only'


class TileError:
    """Match distance statistics of one tile (pixels)"""

    def __init__(self):
        self.count = 0
        self.total = 0.0
        self.weight = 0.0
        self.min = float('inf')
        self.max = 0.0

    def add(self, distances: np.ndarray, weights: np.ndarray):
        if len(distances) == 0:
            return
        self.count += len(distances)
        self.total += float(np.sum(weights * distances))
        self.weight += float(np.sum(weights))
        self.min = min(self.min, float(distances.min()))
        self.max = max(self.max, float(distances.max()))

    @property
    def avg(self) -> float:
        return self.total / self.weight if self.weight > 0 else 0.0

    def to_dict(self) -> Dict:
        return {'avg': self.avg, 'min': self.min if self.count else 0.0, 'max': self.max, 'count': self.count}

    def __repr__(self):
        return f"TileError(avg={self.avg:.3f}, max={self.max:.3f}, n={self.count})"


def _edge_selected(graph, edge, error_filter: ErrorFilter) -> bool:
    if error_filter is ErrorFilter.ALL:
        return True
    same = graph.nodes[edge.a].tile_spec.layer == graph.nodes[edge.b].tile_spec.layer
    return same if error_filter is ErrorFilter.SAME_LAYER_ONLY else not same


def compute_tile_errors(
    graph,
    error_filter: ErrorFilter = ErrorFilter.ALL,
    models: Optional[Dict[str, AffineModel]] = None
) -> Dict[str, TileError]:
    """
    World-space distance of every match, accumulated per tile.

    Args:
        graph: TileGraph with point matches
        error_filter: Restrict to cross-layer or same-layer edges
        models: tile id -> model to evaluate (default: the graph's current models)

    Returns:
        tile id -> TileError (tiles without selected edges are omitted)
    """
    def model_of(node):
        if models is not None and node.tile_id in models:
            return models[node.tile_id]
        return node.model

    errors: Dict[str, TileError] = {}
    for edge in graph.edges:
        if not _edge_selected(graph, edge, error_filter):
            continue
        a, b = graph.nodes[edge.a], graph.nodes[edge.b]
        d = np.linalg.norm(model_of(a).apply(edge.p_points) - model_of(b).apply(edge.q_points), axis=1)
        for node in (a, b):
            errors.setdefault(node.tile_id, TileError()).add(d, edge.weights)

    return dict(sorted(errors.items()))


def summarize(errors: Dict[str, TileError]) -> Dict:
    """Aggregate statistics over all tiles"""
    if not errors:
        return {'tiles': 0, 'mean': 0.0, 'median': 0.0, 'max': 0.0, 'worst_tile': None}

    avgs = np.array([e.avg for e in errors.values()])
    worst = max(errors, key=lambda t: errors[t].avg)
    return {
        'tiles': len(errors),
        'mean': float(avgs.mean()),
        'median': float(np.median(avgs)),
        'max': float(max(e.max for e in errors.values())),
        'worst_tile': worst,
    }


def find_problem_tiles(errors: Dict[str, TileError], factor: float = 3.0) -> List[str]:
    """Tiles whose average error exceeds `factor` times the median, worst first"""
    if not errors:
        return []
    median = float(np.median([e.avg for e in errors.values()]))
    problems = [t for t, e in errors.items() if e.avg > factor * median and e.avg > 0]
    problems.sort(key=lambda t: -errors[t].avg)
    if problems:
        logger.warning(f"{len(problems)} tiles exceed {factor}x the median error ({median:.3f} px): "
                       f"{', '.join(problems[:5])}{'...' if len(problems) > 5 else ''}")
    return problems


def build_diagnostics(
    errors: Dict[str, TileError],
    lambdas: Optional[Dict[str, float]] = None
) -> Dict[str, Dict]:
    """tile id -> {avg_error, max_error, lambda} for external tooling"""
    lambdas = lambdas or {}
    tile_ids = sorted(set(errors) | set(lambdas))
    diagnostics = {}
    for tile_id in tile_ids:
        error = errors.get(tile_id)
        diagnostics[tile_id] = {
            'avg_error': error.avg if error else 0.0,
            'max_error': error.max if error else 0.0,
            'lambda': lambdas.get(tile_id),
        }
    return diagnostics


def write_diagnostics(path: Union[str, Path], diagnostics: Dict[str, Dict]) -> Path:
    """Write diagnostics as JSON (temp file + rename)"""
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    tmp = path.with_name(path.name + '.tmp')
    tmp.write_text(json.dumps(diagnostics, indent=2, sort_keys=True), encoding='utf-8')
    tmp.replace(path)
    logger.info(f"Wrote diagnostics for {len(diagnostics)} tiles to {path}")
    return path
