"""DNA selection with per-layer inclusion odds and uniqueness.

The selector is shared by every render worker. Drawing, the uniqueness check
and index assignment all happen under one lock, so the sequence of accepted
DNAs only depends on the seed, not on which worker asked first.
"""

import itertools
import logging
import threading
import time
from typing import Callable, Dict, Iterator, List, Optional, Set, Tuple

import numpy as np

from layergen.engine.catalog import Catalog, Layer
from layergen.engine.dna import Dna
from layergen.errors import InsufficientDiversityError

logger = logging.getLogger(__name__)

MAX_RETRIES = 200
# Draws after which the retry loop starts checking for cancellation
YIELD_AFTER = 64
YIELD_EVERY = 32
ENUM_CHECK_EVERY = 1024


def layer_states(layer: Layer) -> List[Optional[str]]:
    """Every value this layer can take in a DNA, absent (None) last."""
    if layer.selection_probability <= 0:
        return [None]
    names: List[Optional[str]] = [v.display_name for v in layer.variants]
    if layer.selection_probability < 100:
        names.append(None)
    return names


def max_combinations(layers: List[Layer]) -> int:
    """Number of distinct DNAs the active layers can produce.

    A layer contributes its variant count, plus one for the absent state
    when it is optional. A layer that is never included contributes one.
    """
    total = 1
    for layer in layers:
        total *= len(layer_states(layer))
    return total


class Selector:
    """Draws DNAs for a collection of ``collection_size`` items."""

    def __init__(
        self,
        catalog: Catalog,
        collection_size: int,
        allow_duplicates: bool = False,
        seed: Optional[int] = None,
    ):
        self.layers = catalog.active_layers()
        self.collection_size = collection_size
        self.allow_duplicates = allow_duplicates
        self.capacity = max_combinations(self.layers)
        self._rng = np.random.default_rng(seed)
        self._probs = [self._normalized(layer) for layer in self.layers]
        self._seen: Set[str] = set()
        self._accepted = 0
        self._lock = threading.Lock()
        self._enumeration: Optional[Iterator[Tuple[Optional[str], ...]]] = None
        self.fallbacks = 0
        self.usage_counts: Dict[str, Dict[str, int]] = {
            layer.name: {} for layer in self.layers
        }

    @staticmethod
    def _normalized(layer: Layer) -> np.ndarray:
        weights = np.array([v.weight for v in layer.variants], dtype=np.float64)
        return weights / weights.sum()

    def check_capacity(self) -> None:
        """Fail fast when the layers cannot supply enough unique DNAs."""
        if not self.allow_duplicates and self.collection_size > self.capacity:
            raise InsufficientDiversityError(self.collection_size, self.capacity)

    @property
    def remaining(self) -> int:
        return self.collection_size - self._accepted

    def draw(self) -> Dna:
        """One random DNA; no uniqueness check."""
        entries = []
        for layer, probs in zip(self.layers, self._probs):
            p = layer.selection_probability
            if p <= 0:
                entries.append((layer.name, None))
                continue
            if p < 100 and self._rng.random() >= p / 100.0:
                entries.append((layer.name, None))
                continue
            if len(layer.variants) == 1:
                idx = 0
            else:
                idx = int(self._rng.choice(len(layer.variants), p=probs))
            entries.append((layer.name, layer.variants[idx].display_name))
        return Dna(entries)

    def accept_next(
        self,
        checkpoint: Optional[Callable[[], None]] = None,
    ) -> Optional[Tuple[int, Dna]]:
        """Accept the next DNA and return ``(index, dna)``.

        Returns None once ``collection_size`` DNAs have been accepted.
        ``checkpoint`` is called periodically during long retry runs and
        may raise to abort.
        """
        with self._lock:
            if self._accepted >= self.collection_size:
                return None

            if self.allow_duplicates:
                return self._accept(self.draw())

            retries = min(MAX_RETRIES, 2 * self.remaining)
            for attempt in range(max(1, retries)):
                if checkpoint and attempt >= YIELD_AFTER and attempt % YIELD_EVERY == 0:
                    checkpoint()
                    time.sleep(0)
                dna = self.draw()
                if dna.hash() not in self._seen:
                    return self._accept(dna)

            return self._accept(self._enumerate_unseen(checkpoint))

    def _accept(self, dna: Dna) -> Tuple[int, Dna]:
        self._seen.add(dna.hash())
        self._accepted += 1
        for entry in dna.present():
            counts = self.usage_counts[entry.layer]
            counts[entry.variant] = counts.get(entry.variant, 0) + 1
        return self._accepted, dna

    def _enumerate_unseen(self, checkpoint: Optional[Callable[[], None]]) -> Dna:
        """Walk all combinations in catalog-major order for an unused one."""
        self.fallbacks += 1
        logger.warning(
            f"Random draws exhausted for item {self._accepted + 1}; "
            f"falling back to systematic enumeration"
        )
        if self._enumeration is None:
            self._enumeration = itertools.product(
                *[layer_states(layer) for layer in self.layers]
            )
        names = [layer.name for layer in self.layers]
        for step, combo in enumerate(self._enumeration):
            if checkpoint and step and step % ENUM_CHECK_EVERY == 0:
                checkpoint()
            dna = Dna(zip(names, combo))
            if dna.hash() not in self._seen:
                return dna
        raise InsufficientDiversityError(self.collection_size, self.capacity)
