"""
Exception hierarchy for the block solver.

Recoverable conditions (missing tile specs, pairs rejected by the inclusion
policy, stages that stop without converging) are logged and counted instead
of raised. Everything here aborts at least one block.
"""

from typing import Optional, Tuple


class StackSolveError(Exception):
    """Base class for all solver errors"""


class ConfigurationError(StackSolveError, ValueError):
    """Invalid or inconsistent solve parameters"""


class NotEnoughDataPointsError(StackSolveError):
    """Fewer point matches than the model needs"""


class IllDefinedDataPointsError(StackSolveError):
    """Point matches do not constrain the model (e.g. collinear points)"""


class NoninvertibleModelError(StackSolveError):
    """Transform has a singular linear part"""


class SolveError(StackSolveError):
    """
    A block could not be solved.

    Carries enough context (block id, z-range, tile or layer) to reproduce.
    """

    def __init__(
        self,
        message: str,
        block_id: Optional[int] = None,
        z_range: Optional[Tuple[int, int]] = None,
        tile_id: Optional[str] = None,
        layer: Optional[int] = None
    ):
        self.block_id = block_id
        self.z_range = z_range
        self.tile_id = tile_id
        self.layer = layer

        context = []
        if block_id is not None:
            context.append(f"block={block_id}")
        if z_range is not None:
            context.append(f"z={z_range[0]}-{z_range[1]}")
        if layer is not None:
            context.append(f"layer={layer}")
        if tile_id is not None:
            context.append(f"tile={tile_id}")

        full = f"{message} ({', '.join(context)})" if context else message
        super().__init__(full)


class DegenerateBlockError(SolveError):
    """Block has no edges or its constraint system is singular"""


class LayerIntegrityError(SolveError):
    """A partitioned block ended up with a layer that owns zero tiles"""


class ReconciliationError(StackSolveError):
    """Blocks cannot be merged (e.g. an empty boundary band)"""


class CheckpointError(StackSolveError):
    """Checkpoint store is missing, incomplete or unreadable"""
