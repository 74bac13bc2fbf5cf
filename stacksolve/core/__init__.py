"""
Block solving: transform models, tile graphs, partitioning, relaxation and reconciliation
"""

from .block import Block, Correspondence, SolveSet, TileSpec
from .errors import (
    CheckpointError,
    ConfigurationError,
    DegenerateBlockError,
    LayerIntegrityError,
    ReconciliationError,
    SolveError,
    StackSolveError,
)
from .models import AffineModel, InterpolatedModel, RigidModel, TranslationModel

__all__ = [
    'AffineModel',
    'Block',
    'CheckpointError',
    'ConfigurationError',
    'Correspondence',
    'DegenerateBlockError',
    'InterpolatedModel',
    'LayerIntegrityError',
    'ReconciliationError',
    'RigidModel',
    'SolveError',
    'SolveSet',
    'StackSolveError',
    'TileSpec',
    'TranslationModel',
]
