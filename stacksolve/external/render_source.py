"""
Capabilities the solver needs from the tile/match metadata service

The service itself (REST endpoints, database, HTTP client) lives outside
this package. A solve pass only needs to:
- fetch the correspondences whose first tile belongs to a group (layer)
- fetch a tile spec by (group, tile id)
- list the known z values of a range
and to hand back resolved models layer by layer.

The in-memory implementations are used for local runs and tests.
"""

import threading
from collections import defaultdict
from typing import Dict, Iterable, List, Optional
import logging

from stacksolve.core.block import Correspondence, TileSpec
from stacksolve.core.models import AffineModel

logger = logging.getLogger(__name__)


class RenderSource:
    """Read-only access to tile specs and point matches"""

    def get_matches_with_p_group(self, group_id: str) -> List[Correspondence]:
        raise NotImplementedError

    def get_tile_spec(self, group_id: str, tile_id: str) -> Optional[TileSpec]:
        """Tile spec, or None when the tile is missing from the stack"""
        raise NotImplementedError

    def get_z_values(self, min_z: Optional[float] = None, max_z: Optional[float] = None) -> List[float]:
        """Sorted z values of the stack within [min_z, max_z] (None = unbounded)"""
        raise NotImplementedError

    def group_id_for_z(self, z: float) -> str:
        """Match group (section) id of a layer"""
        return f"{z:.1f}"


class ResultSink:
    """Receives the final models of one layer at a time"""

    def save_resolved_tiles(self, z: float, models: Dict[str, AffineModel]) -> None:
        raise NotImplementedError


class InMemoryRenderSource(RenderSource):
    """RenderSource backed by lists of tile specs and correspondences"""

    def __init__(self, tile_specs: Iterable[TileSpec], correspondences: Iterable[Correspondence]):
        self._specs: Dict[str, TileSpec] = {}
        self._group_by_z: Dict[float, str] = {}
        for spec in tile_specs:
            self._specs[spec.tile_id] = spec
            self._group_by_z.setdefault(spec.z, spec.group_id)

        self._matches: Dict[str, List[Correspondence]] = defaultdict(list)
        for match in correspondences:
            self._matches[match.p_group_id].append(match)

        logger.info(f"In-memory source: {len(self._specs)} tiles, "
                    f"{sum(len(m) for m in self._matches.values())} correspondences")

    def get_matches_with_p_group(self, group_id):
        return list(self._matches.get(group_id, []))

    def get_tile_spec(self, group_id, tile_id):
        return self._specs.get(tile_id)

    def get_z_values(self, min_z=None, max_z=None):
        values = sorted(self._group_by_z)
        if min_z is not None:
            values = [z for z in values if z >= min_z]
        if max_z is not None:
            values = [z for z in values if z <= max_z]
        return values

    def group_id_for_z(self, z):
        return self._group_by_z.get(z, super().group_id_for_z(z))


class InMemoryResultSink(ResultSink):
    """Collects saved layers in a dict z -> {tile id: model}"""

    def __init__(self):
        self.layers: Dict[float, Dict[str, AffineModel]] = {}
        self.save_order: List[float] = []
        self._lock = threading.Lock()

    def save_resolved_tiles(self, z, models):
        with self._lock:
            self.layers[z] = {tile_id: model.copy() for tile_id, model in models.items()}
            self.save_order.append(z)
        logger.debug(f"Saved {len(models)} resolved tiles for z={z}")

    def all_models(self) -> Dict[str, AffineModel]:
        merged = {}
        for z in sorted(self.layers):
            merged.update(self.layers[z])
        return merged
