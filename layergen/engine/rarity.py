"""Rarity weights for layer variants."""

import logging
import re
from dataclasses import replace
from enum import Enum
from typing import Dict, List, Optional, Tuple

logger = logging.getLogger(__name__)


class RarityMode(str, Enum):
    UNIFORM = "uniform"
    WEIGHTED = "weighted"
    RANKED = "ranked"


# Fixed weight per tier for ranked mode
TIER_WEIGHTS = {
    "common": 100,
    "uncommon": 60,
    "rare": 25,
    "epic": 10,
    "legendary": 3,
}

_TAG_RE = re.compile(r"^(.*?)#([^#]+)$")


def parse_rarity_tag(stem: str) -> Tuple[str, Optional[str]]:
    """Split a trailing ``#tag`` off a file stem.

    >>> parse_rarity_tag("Red_Eyes#5")
    ('Red_Eyes', '5')
    """
    match = _TAG_RE.match(stem)
    if not match or not match.group(1):
        return stem, None
    return match.group(1), match.group(2).strip()


def variant_weight(
    tag: Optional[str],
    mode: RarityMode,
    allowed_tiers: Optional[List[str]] = None,
) -> float:
    """Weight for one variant given its tag and the rarity mode."""
    if mode == RarityMode.UNIFORM or tag is None:
        return 1.0

    if mode == RarityMode.WEIGHTED:
        if tag.isdigit() and int(tag) > 0:
            return float(int(tag))
        logger.warning(f"Ignoring non-numeric rarity tag '#{tag}' in weighted mode")
        return 1.0

    tier = tag.lower()
    if allowed_tiers is not None and tier not in allowed_tiers:
        return 1.0
    return float(TIER_WEIGHTS.get(tier, 1))


def assign_weights(
    catalog,
    mode: RarityMode,
    ranked_tiers: Optional[Dict[str, List[str]]] = None,
):
    """Return a copy of ``catalog`` with every variant weighted for ``mode``.

    In ranked mode a layer listed in ``ranked_tiers`` only honours the tiers
    named for it; a layer that is not listed honours every known tier.
    """
    mode = RarityMode(mode)
    ranked_tiers = ranked_tiers or {}
    layers = []
    for layer in catalog.layers:
        allowed = None
        if mode == RarityMode.RANKED and layer.name in ranked_tiers:
            allowed = [t.lower() for t in ranked_tiers[layer.name]]
        variants = tuple(
            replace(v, weight=variant_weight(v.tag, mode, allowed))
            for v in layer.variants
        )
        layers.append(replace(layer, variants=variants))
    return replace(catalog, layers=tuple(layers))
