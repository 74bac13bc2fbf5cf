"""
Inclusion policy for tile pairs

Decides, before an edge is created, whether a correspondence between two
tiles enters the graph. Rules are plain data (loaded from configuration)
and evaluated in order:

1. range: both tiles must lie in [min_z, max_z]
2. exclusion list: neither tile id may contain an excluded id fragment
3. z-distance limits: pairs touching a limited layer may not span more
   than the limit
4. link rules: ordered table of keep/ignore rules used to deliberately
   sever or restrict cross-layer links (e.g. around a corrupted layer)
"""

from collections import Counter
from typing import Dict, Iterable, List, Optional, Sequence, Tuple
import logging

from stacksolve.core.block import TileSpec
from stacksolve.core.errors import ConfigurationError

logger = logging.getLogger(__name__)

SCOPES = ('cross_layer', 'same_layer', 'any')
EFFECTS = ('keep', 'ignore')


class LayerRanges:
    """Set of integer layers given as inclusive ranges, e.g. "1-5,35-534,900" """

    def __init__(self, ranges: Iterable[Tuple[int, int]] = ()):
        self.ranges = sorted((int(lo), int(hi)) for lo, hi in ranges)
        for lo, hi in self.ranges:
            if lo > hi:
                raise ConfigurationError(f"Invalid layer range {lo}-{hi}")

    @classmethod
    def parse(cls, value) -> 'LayerRanges':
        """
        Parse layers from a string ("1-5,35-534"), an int, or a list of
        ints / range strings.
        """
        if value is None:
            return cls()
        if isinstance(value, LayerRanges):
            return value
        if isinstance(value, int):
            return cls([(value, value)])

        items = value.split(',') if isinstance(value, str) else list(value)
        ranges = []
        for item in items:
            if isinstance(item, int):
                ranges.append((item, item))
                continue
            text = str(item).strip()
            if not text:
                continue
            # allow negative numbers: split on the dash that follows a digit
            sep = text.find('-', 1)
            try:
                if sep > 0:
                    ranges.append((int(text[:sep]), int(text[sep + 1:])))
                else:
                    ranges.append((int(text), int(text)))
            except ValueError:
                raise ConfigurationError(f"Cannot parse layer range '{text}'")
        return cls(ranges)

    def __contains__(self, layer: int) -> bool:
        return any(lo <= layer <= hi for lo, hi in self.ranges)

    def __bool__(self):
        return bool(self.ranges)

    def __str__(self):
        return ','.join(str(lo) if lo == hi else f"{lo}-{hi}" for lo, hi in self.ranges)

    def __repr__(self):
        return f"LayerRanges('{self}')"


class LinkRule:
    """
    One row of the link rule table.

    A rule applies to a pair when the pair matches its scope and at least one
    tile lies in `layers`. Its conditions are:
    - allowed_partners: the layer on the other side of the pair is listed
    - tile_patterns: one pattern must occur in either tile id; two patterns
      must occur one in each tile id (in either order)

    effect 'ignore' rejects applicable pairs meeting the conditions.
    effect 'keep' rejects applicable pairs NOT meeting the conditions and
    accepts at most `max_links` of those that do.
    """

    def __init__(
        self,
        layers,
        scope: str = 'cross_layer',
        allowed_partners=None,
        tile_patterns: Sequence[str] = (),
        max_links: Optional[int] = None,
        effect: str = 'keep',
        name: Optional[str] = None
    ):
        if scope not in SCOPES:
            raise ConfigurationError(f"Link rule scope must be one of {SCOPES}, got '{scope}'")
        if effect not in EFFECTS:
            raise ConfigurationError(f"Link rule effect must be one of {EFFECTS}, got '{effect}'")
        if len(tile_patterns) > 2:
            raise ConfigurationError("Link rule takes at most two tile patterns")
        if max_links is not None and max_links < 0:
            raise ConfigurationError("max_links must be >= 0")

        self.layers = LayerRanges.parse(layers)
        if not self.layers:
            raise ConfigurationError("Link rule needs at least one layer")
        self.scope = scope
        self.allowed_partners = LayerRanges.parse(allowed_partners) if allowed_partners is not None else None
        self.tile_patterns = tuple(tile_patterns)
        self.max_links = max_links
        self.effect = effect
        self.name = name or f"{effect}:{self.layers}"

    def applies(self, pz: int, qz: int) -> bool:
        if self.scope == 'cross_layer' and pz == qz:
            return False
        if self.scope == 'same_layer' and pz != qz:
            return False
        return pz in self.layers or qz in self.layers

    def conditions_met(self, pz: int, qz: int, p_id: str, q_id: str) -> bool:
        if self.allowed_partners is not None:
            partners = []
            if pz in self.layers:
                partners.append(qz)
            if qz in self.layers:
                partners.append(pz)
            if not any(z in self.allowed_partners for z in partners):
                return False

        if len(self.tile_patterns) == 1:
            pattern = self.tile_patterns[0]
            if pattern not in p_id and pattern not in q_id:
                return False
        elif len(self.tile_patterns) == 2:
            first, second = self.tile_patterns
            if not ((first in p_id and second in q_id) or (second in p_id and first in q_id)):
                return False

        return True

    def to_dict(self) -> Dict:
        data = {
            'name': self.name,
            'layers': str(self.layers),
            'scope': self.scope,
            'effect': self.effect,
        }
        if self.allowed_partners is not None:
            data['allowed_partners'] = str(self.allowed_partners)
        if self.tile_patterns:
            data['tile_patterns'] = list(self.tile_patterns)
        if self.max_links is not None:
            data['max_links'] = self.max_links
        return data

    @classmethod
    def from_dict(cls, data: Dict) -> 'LinkRule':
        unknown = set(data) - {'name', 'layers', 'scope', 'allowed_partners',
                               'tile_patterns', 'max_links', 'effect'}
        if unknown:
            raise ConfigurationError(f"Unknown link rule keys: {sorted(unknown)}")
        if 'layers' not in data:
            raise ConfigurationError("Link rule needs 'layers'")
        return cls(
            layers=data['layers'],
            scope=data.get('scope', 'cross_layer'),
            allowed_partners=data.get('allowed_partners'),
            tile_patterns=data.get('tile_patterns', ()),
            max_links=data.get('max_links'),
            effect=data.get('effect', 'keep'),
            name=data.get('name'),
        )

    def __repr__(self):
        return f"LinkRule({self.name!r})"


class InclusionPolicy:
    """
    Evaluates tile pairs against the range, exclusion list, z-distance limits
    and link rules.

    One instance belongs to one solve pass: it counts rejections per reason
    and the links accepted by capped keep-rules.
    """

    def __init__(
        self,
        min_z: float,
        max_z: float,
        exclude_tile_ids: Iterable[str] = (),
        z_distance_limits: Optional[Dict[int, float]] = None,
        link_rules: Iterable[LinkRule] = ()
    ):
        self.min_z = min_z
        self.max_z = max_z
        self.exclude_tile_ids = list(exclude_tile_ids)
        self.z_distance_limits = {int(k): float(v) for k, v in (z_distance_limits or {}).items()}
        self.link_rules: List[LinkRule] = list(link_rules)
        self.rejected = Counter()
        self.accepted = 0
        self._link_counts = Counter()

    def evaluate(self, p_spec: TileSpec, q_spec: TileSpec) -> Tuple[bool, str]:
        """
        Decide whether the pair may be connected.

        Returns:
            (accepted, reason) where reason names the rule that rejected it
        """
        accepted, reason, counted_rules = self._decide(p_spec, q_spec)
        if accepted:
            self.accepted += 1
            for index in counted_rules:
                self._link_counts[index] += 1
        else:
            self.rejected[reason] += 1
        return accepted, reason

    def _decide(self, p_spec: TileSpec, q_spec: TileSpec) -> Tuple[bool, str, List[int]]:
        p_id, q_id = p_spec.tile_id, q_spec.tile_id

        for spec in (p_spec, q_spec):
            if spec.z < self.min_z or spec.z > self.max_z:
                return False, 'out_of_range', []

        for fragment in self.exclude_tile_ids:
            if fragment in p_id or fragment in q_id:
                return False, 'excluded_tile', []

        pz, qz = p_spec.layer, q_spec.layer
        dz = abs(q_spec.z - p_spec.z)
        for layer in (pz, qz):
            limit = self.z_distance_limits.get(layer)
            if limit is not None and dz > limit:
                return False, 'z_distance_limit', []

        counted_rules = []
        for index, rule in enumerate(self.link_rules):
            if not rule.applies(pz, qz):
                continue
            met = rule.conditions_met(pz, qz, p_id, q_id)
            if rule.effect == 'ignore':
                if met:
                    return False, f"rule:{rule.name}", []
            else:
                if not met:
                    return False, f"rule:{rule.name}", []
                if rule.max_links is not None:
                    if self._link_counts[index] >= rule.max_links:
                        return False, f"rule:{rule.name}:max_links", []
                    counted_rules.append(index)

        return True, 'accepted', counted_rules

    def summary(self) -> str:
        parts = [f"{self.accepted} accepted"]
        parts.extend(f"{count} {reason}" for reason, count in sorted(self.rejected.items()))
        return ', '.join(parts)
