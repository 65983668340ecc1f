"""Per-item trait choices and their canonical hash."""

import hashlib
from typing import Iterable, List, NamedTuple, Optional, Tuple


class DnaEntry(NamedTuple):
    layer: str
    variant: Optional[str]


class Dna(tuple):
    """Ordered ``(layer, variant | None)`` entries, one per active layer.

    ``None`` marks a layer that was left out of this item.
    """

    def __new__(cls, entries: Iterable[Tuple[str, Optional[str]]]):
        return super().__new__(cls, (DnaEntry(layer, variant) for layer, variant in entries))

    def canonical(self) -> str:
        """``"Background=blue|Body=|..."`` in catalog order."""
        return "|".join(f"{e.layer}={e.variant or ''}" for e in self)

    def hash(self) -> str:
        return hashlib.sha256(self.canonical().encode("utf-8")).hexdigest()

    def present(self) -> List[DnaEntry]:
        return [e for e in self if e.variant is not None]

    def as_dict(self) -> dict:
        return {e.layer: e.variant for e in self}
