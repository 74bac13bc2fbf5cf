"""
Solve parameters

Loaded from a YAML file or a dict; every option has a default except the
data to solve. Stage lists (lambdas, iterations, plateau widths, translation
lambdas) accept lists or comma separated strings ("1.0,0.5,0.1,0.01").
"""

import psutil
import yaml
from pathlib import Path
from typing import Dict, List, Optional, Union
import logging

from stacksolve.core.errors import ConfigurationError
from stacksolve.core.inclusion import LinkRule
from stacksolve.core.models import REGULARIZERS

logger = logging.getLogger(__name__)

DEFAULT_LAMBDAS = (1.0, 0.5, 0.1, 0.01)
DEFAULT_ITERATIONS = (2000, 1000, 400, 200)


class Stage:
    """One annealing stage of the relaxation"""

    def __init__(
        self,
        lambda_: float,
        max_iterations: int,
        max_plateau_width: int,
        lambda_translation: Optional[float] = None
    ):
        self.lambda_ = float(lambda_)
        self.max_iterations = int(max_iterations)
        self.max_plateau_width = int(max_plateau_width)
        self.lambda_translation = None if lambda_translation is None else float(lambda_translation)

    def __repr__(self):
        extra = f", lambda_t={self.lambda_translation}" if self.lambda_translation is not None else ""
        return (f"Stage(lambda={self.lambda_}, iterations={self.max_iterations}, "
                f"plateau={self.max_plateau_width}{extra})")


def _parse_list(value, cast) -> Optional[List]:
    if value is None:
        return None
    if isinstance(value, str):
        items = [v.strip() for v in value.split(',') if v.strip()]
    elif isinstance(value, (list, tuple)):
        items = list(value)
    else:
        items = [value]
    try:
        return [cast(v) for v in items]
    except (TypeError, ValueError) as e:
        raise ConfigurationError(f"Cannot parse list '{value}': {e}")


def _default_threads() -> int:
    try:
        return psutil.cpu_count(logical=True) or 1
    except Exception as e:
        logger.warning(f"Could not determine CPU count: {e}")
        return 1


class SolveParameters:
    """All options of a block solve"""

    FIELDS = (
        'stack', 'min_z', 'max_z', 'num_threads', 'block_threads',
        'lambdas', 'lambdas_translation', 'iterations', 'max_plateau_width',
        'max_allowed_error', 'damp', 'regularizer',
        'overlap_top', 'overlap_bottom', 'samples_per_dimension',
        'reconcile_iterations', 'reconcile_plateau_width',
        'exclude_tile_ids', 'z_distance_limits', 'link_rules', 'max_num_matches',
        'block_size', 'block_overlap', 'checkpoint_dir', 'min_checkpoints',
    )

    def __init__(
        self,
        stack: Optional[str] = None,
        min_z: Optional[float] = None,
        max_z: Optional[float] = None,
        num_threads: Optional[int] = None,
        block_threads: int = 1,
        lambdas=DEFAULT_LAMBDAS,
        lambdas_translation=None,
        iterations=DEFAULT_ITERATIONS,
        max_plateau_width: Union[int, List[int], str] = 200,
        max_allowed_error: float = 0.0,
        damp: float = 0.5,
        regularizer: str = 'rigid',
        overlap_top: int = 25,
        overlap_bottom: int = 25,
        samples_per_dimension: int = 5,
        reconcile_iterations: int = 1000,
        reconcile_plateau_width: int = 100,
        exclude_tile_ids: Optional[List[str]] = None,
        z_distance_limits: Optional[Dict[int, float]] = None,
        link_rules: Optional[List] = None,
        max_num_matches: int = 0,
        block_size: Optional[int] = None,
        block_overlap: int = 0,
        checkpoint_dir: Optional[str] = None,
        min_checkpoints: int = 3
    ):
        """
        Args:
            stack: Stack name (used in log messages and checkpoint metadata)
            min_z, max_z: Working range (None = whole stack)
            num_threads: Worker threads per block relaxation (default: CPU count)
            block_threads: Blocks solved concurrently
            lambdas: Regularizer weight per stage, annealed from 1.0 (rigid) towards 0.0 (affine)
            lambdas_translation: Optional per-stage translation weight inside the rigid regularizer
            iterations: Maximum iterations per stage (int or per-stage list)
            max_plateau_width: Plateau window per stage (int or per-stage list)
            max_allowed_error: Stage ends once the mean error drops to this value
            damp: Fraction of the way each point moves toward its match per iteration
            regularizer: 'rigid' or 'translation'
            overlap_top, overlap_bottom: Layers blended with the untouched region above/below
            samples_per_dimension: Grid samples per tile axis for synthetic reconciliation matches
            reconcile_iterations: Iteration budget of the block-level reconciliation solve
            reconcile_plateau_width: Plateau window of the reconciliation solve
            exclude_tile_ids: Tile id fragments whose pairs are never connected
            z_distance_limits: layer -> maximum |dz| of pairs touching that layer
            link_rules: Ordered link rule table (dicts or LinkRule)
            max_num_matches: Cap on point pairs used per correspondence (0 = no limit)
            block_size: Layers per block (None = one block for the whole range)
            block_overlap: Layers shared by consecutive blocks
            checkpoint_dir: Where solved blocks are stored (None = no checkpoints)
            min_checkpoints: Minimum stored blocks required before merging
        """
        self.stack = stack
        self.min_z = min_z
        self.max_z = max_z
        self.num_threads = int(num_threads) if num_threads is not None else _default_threads()
        self.block_threads = int(block_threads)
        self.lambdas = _parse_list(lambdas, float)
        self.lambdas_translation = _parse_list(lambdas_translation, float)
        self.iterations = _parse_list(iterations, int)
        self.max_plateau_width = _parse_list(max_plateau_width, int)
        self.max_allowed_error = float(max_allowed_error)
        self.damp = float(damp)
        self.regularizer = regularizer
        self.overlap_top = int(overlap_top)
        self.overlap_bottom = int(overlap_bottom)
        self.samples_per_dimension = int(samples_per_dimension)
        self.reconcile_iterations = int(reconcile_iterations)
        self.reconcile_plateau_width = int(reconcile_plateau_width)
        self.exclude_tile_ids = list(exclude_tile_ids or [])
        self.z_distance_limits = {int(k): float(v) for k, v in (z_distance_limits or {}).items()}
        self.link_rules = [r if isinstance(r, LinkRule) else LinkRule.from_dict(r) for r in (link_rules or [])]
        self.max_num_matches = int(max_num_matches)
        self.block_size = int(block_size) if block_size is not None else None
        self.block_overlap = int(block_overlap)
        self.checkpoint_dir = checkpoint_dir
        self.min_checkpoints = int(min_checkpoints)

        self.validate()

    def validate(self):
        """Raise ConfigurationError for inconsistent options"""
        if not self.lambdas:
            raise ConfigurationError("At least one lambda stage is required")
        for lam in self.lambdas + (self.lambdas_translation or []):
            if not 0.0 <= lam <= 1.0:
                raise ConfigurationError(f"Lambda {lam} outside [0, 1]")

        n = len(self.lambdas)
        for name in ('iterations', 'max_plateau_width'):
            values = getattr(self, name)
            if len(values) not in (1, n):
                raise ConfigurationError(f"'{name}' has {len(values)} entries, expected 1 or {n}")
        if self.lambdas_translation is not None and len(self.lambdas_translation) != n:
            raise ConfigurationError(
                f"'lambdas_translation' has {len(self.lambdas_translation)} entries, expected {n}"
            )
        if any(i < 1 for i in self.iterations):
            raise ConfigurationError("Stage iterations must be >= 1")
        if any(w < 1 for w in self.max_plateau_width):
            raise ConfigurationError("Plateau width must be >= 1")

        if self.lambdas_translation is not None and self.regularizer != 'rigid':
            raise ConfigurationError("lambdas_translation requires the 'rigid' regularizer")
        if self.regularizer not in REGULARIZERS:
            raise ConfigurationError(f"Unknown regularizer '{self.regularizer}'")
        if not 0.0 < self.damp <= 1.0:
            raise ConfigurationError(f"damp must be in (0, 1], got {self.damp}")
        if self.max_allowed_error < 0:
            raise ConfigurationError("max_allowed_error must be >= 0")

        if self.min_z is not None and self.max_z is not None and self.min_z > self.max_z:
            raise ConfigurationError(f"min_z {self.min_z} > max_z {self.max_z}")

        if self.overlap_top < 2 or self.overlap_bottom < 2:
            raise ConfigurationError("Overlap depths must be >= 2 layers")
        if self.samples_per_dimension < 2:
            raise ConfigurationError("samples_per_dimension must be >= 2")
        if self.reconcile_iterations < 1 or self.reconcile_plateau_width < 1:
            raise ConfigurationError("Reconciliation iterations and plateau width must be >= 1")

        if self.num_threads < 1 or self.block_threads < 1:
            raise ConfigurationError("Thread counts must be >= 1")
        if self.max_num_matches < 0:
            raise ConfigurationError("max_num_matches must be >= 0")
        if self.block_size is not None:
            if self.block_size < 1:
                raise ConfigurationError("block_size must be >= 1")
            if not 0 <= self.block_overlap < self.block_size:
                raise ConfigurationError("block_overlap must be in [0, block_size)")
        elif self.block_overlap:
            raise ConfigurationError("block_overlap requires block_size")
        if self.min_checkpoints < 1:
            raise ConfigurationError("min_checkpoints must be >= 1")

    def _per_stage(self, values: List, index: int):
        return values[index] if len(values) > 1 else values[0]

    def stages(self) -> List[Stage]:
        """Stages sorted from most constrained (largest lambda) to least constrained"""
        stages = []
        for i, lam in enumerate(self.lambdas):
            stages.append(Stage(
                lam,
                self._per_stage(self.iterations, i),
                self._per_stage(self.max_plateau_width, i),
                self.lambdas_translation[i] if self.lambdas_translation is not None else None,
            ))
        # stable: equal lambdas keep their configured order
        return sorted(stages, key=lambda s: -s.lambda_)

    def to_dict(self) -> Dict:
        data = {name: getattr(self, name) for name in self.FIELDS}
        data['link_rules'] = [rule.to_dict() for rule in self.link_rules]
        return data

    @classmethod
    def from_dict(cls, data: Dict) -> 'SolveParameters':
        unknown = set(data) - set(cls.FIELDS)
        if unknown:
            raise ConfigurationError(f"Unknown solve parameters: {sorted(unknown)}")
        return cls(**data)

    @classmethod
    def from_yaml(cls, path: Union[str, Path]) -> 'SolveParameters':
        path = Path(path)
        try:
            with open(path, 'r', encoding='utf-8') as f:
                data = yaml.safe_load(f) or {}
        except (OSError, yaml.YAMLError) as e:
            raise ConfigurationError(f"Could not read parameters from {path}: {e}")

        if not isinstance(data, dict):
            raise ConfigurationError(f"{path} must contain a mapping of parameters")

        logger.info(f"Loaded solve parameters from {path}")
        return cls.from_dict(data)

    def __repr__(self):
        return (f"SolveParameters(stack={self.stack!r}, z={self.min_z}-{self.max_z}, "
                f"stages={self.stages()}, threads={self.num_threads})")
