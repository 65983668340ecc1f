"""Trait catalog loading.

Turns a directory of layer folders (``01_Background/blue.png``, ...) into an
ordered, validated ``Catalog``. Folder names may carry a numeric prefix that
fixes paint order; folders without one are placed after the numbered ones.
"""

import logging
import os
import re
import shutil
from dataclasses import dataclass, field, replace
from typing import Dict, Iterable, List, Mapping, Optional, Set, Tuple

from layergen.engine.rarity import parse_rarity_tag
from layergen.errors import EmptyLayerError, NoLayersError

logger = logging.getLogger(__name__)

UNORDERED = 999
UNKNOWN_LAYER = "Unknown"
PNG_SIGNATURE = b"\x89PNG\r\n\x1a\n"

_PREFIX_RE = re.compile(r"^(\d+)_(.+)$")
_NON_ALNUM_RE = re.compile(r"[^A-Za-z0-9]+")


@dataclass(frozen=True)
class Variant:
    """One trait image inside a layer."""
    display_name: str
    source_path: str
    filename: str
    tag: Optional[str] = None
    weight: float = 1.0
    # user file a working copy was made from
    origin_path: Optional[str] = None


@dataclass(frozen=True)
class Layer:
    name: str
    order: int
    variants: Tuple[Variant, ...]
    active: bool = True
    selection_probability: int = 100


@dataclass(frozen=True)
class Catalog:
    root: str
    layers: Tuple[Layer, ...] = field(default_factory=tuple)

    @property
    def names(self) -> List[str]:
        return [layer.name for layer in self.layers]

    def layer(self, name: str) -> Layer:
        for layer in self.layers:
            if layer.name == name:
                return layer
        raise KeyError(f"No layer named '{name}'")

    def active_layers(self) -> List[Layer]:
        return [layer for layer in self.layers if layer.active]

    def variant_count(self) -> int:
        return sum(len(layer.variants) for layer in self.layers)

    def configure(self, layer_settings: Mapping[str, object]) -> "Catalog":
        """Apply per-layer ``active``/``selection_probability`` settings.

        ``layer_settings`` maps layer names to objects with ``active`` and
        ``selection_probability`` attributes. Layers without an entry stay
        active at 100%.
        """
        unknown = set(layer_settings) - set(self.names)
        if unknown:
            logger.warning(f"Ignoring settings for unknown layers: {sorted(unknown)}")
        layers = []
        for layer in self.layers:
            cfg = layer_settings.get(layer.name)
            if cfg is None:
                layers.append(layer)
                continue
            layers.append(replace(
                layer,
                active=bool(cfg.active),
                selection_probability=int(cfg.selection_probability),
            ))
        return replace(self, layers=tuple(layers))


# ---------------------------------------------------------------------------
# Path parsing
# ---------------------------------------------------------------------------

def parse_layer_dir(dirname: str) -> Tuple[str, int]:
    """``"02_Head"`` -> ``("Head", 2)``; unprefixed names get order 999."""
    match = _PREFIX_RE.match(dirname)
    if match:
        return match.group(2), int(match.group(1))
    return dirname, UNORDERED


def parse_layer_path(relative_path: str) -> Tuple[str, int]:
    """Layer name and order for an uploaded file's relative path.

    The file's parent folder is the layer folder, so a leading folder
    picked in the browser (``layers/02_Head/x.png``) is ignored. A bare
    filename has no folder and lands in the ``Unknown`` layer.
    """
    parts = [p for p in relative_path.replace("\\", "/").split("/") if p]
    if len(parts) > 1:
        return parse_layer_dir(parts[-2])
    return UNKNOWN_LAYER, UNORDERED


def display_name_for(filename: str) -> Tuple[str, Optional[str]]:
    """Display name and rarity tag for a variant file name."""
    stem = os.path.splitext(os.path.basename(filename))[0]
    base, tag = parse_rarity_tag(stem)
    name = _NON_ALNUM_RE.sub("_", base)
    return name, tag


def is_png(path: str) -> bool:
    if path.lower().endswith(".png"):
        return True
    try:
        with open(path, "rb") as fh:
            return fh.read(len(PNG_SIGNATURE)) == PNG_SIGNATURE
    except OSError:
        return False


# ---------------------------------------------------------------------------
# Upload staging
# ---------------------------------------------------------------------------

def stage_uploads(entries: Iterable[Tuple[str, str]], layers_dir: str) -> List[str]:
    """Lay uploaded files out as ``NN_Layer/filename`` under ``layers_dir``.

    ``entries`` are ``(relative_path, stored_file)`` pairs. Files sharing a
    layer name are grouped; the first order seen for a layer wins.
    Returns the created folder names.
    """
    groups: Dict[str, Tuple[int, List[Tuple[str, str]]]] = {}
    for relative_path, stored in entries:
        name, order = parse_layer_path(relative_path)
        if name not in groups:
            groups[name] = (order, [])
        filename = os.path.basename(relative_path.replace("\\", "/"))
        groups[name][1].append((filename, stored))

    os.makedirs(layers_dir, exist_ok=True)
    folders = []
    for name, (order, files) in groups.items():
        folder = name if order == UNORDERED else f"{order:02d}_{name}"
        layer_dir = os.path.join(layers_dir, folder)
        os.makedirs(layer_dir, exist_ok=True)
        for filename, stored in files:
            shutil.copyfile(stored, os.path.join(layer_dir, filename))
        folders.append(folder)
        logger.debug(f"Staged layer {folder}: {len(files)} files")
    return folders


# ---------------------------------------------------------------------------
# Loading
# ---------------------------------------------------------------------------

def _load_variants(layer_name: str, paths: List[str]) -> Tuple[Variant, ...]:
    variants = []
    used: Set[str] = set()
    for path in sorted(paths, key=os.path.basename):
        filename = os.path.basename(path)
        if not is_png(path):
            logger.info(f"Skipping non-PNG file in layer {layer_name}: {filename}")
            continue
        name, tag = display_name_for(filename)
        if name in used:
            suffix = 2
            while f"{name}_{suffix}" in used:
                suffix += 1
            unique = f"{name}_{suffix}"
            logger.warning(
                f"Duplicate trait name '{name}' in layer {layer_name}; "
                f"using '{unique}' for {filename}"
            )
            name = unique
        used.add(name)
        variants.append(Variant(display_name=name, source_path=path, filename=filename, tag=tag))
    return tuple(variants)


def load_catalog(root: str) -> Catalog:
    """Scan ``root`` and build the ordered catalog.

    Raises NoLayersError when nothing usable is found and EmptyLayerError
    when a layer folder holds no PNG files.
    """
    if not os.path.isdir(root):
        raise NoLayersError(root)

    groups: Dict[str, Tuple[int, List[str]]] = {}
    loose: List[str] = []
    for entry in sorted(os.listdir(root)):
        full = os.path.join(root, entry)
        if os.path.isdir(full):
            name, order = parse_layer_dir(entry)
            files = [
                os.path.join(full, f) for f in os.listdir(full)
                if os.path.isfile(os.path.join(full, f)) and not f.startswith(".")
            ]
            if name in groups:
                logger.warning(f"Merging folder {entry} into existing layer '{name}'")
                prev_order, prev_files = groups[name]
                groups[name] = (min(prev_order, order), prev_files + files)
            else:
                groups[name] = (order, files)
        elif os.path.isfile(full) and not entry.startswith("."):
            loose.append(full)

    if loose:
        order, files = groups.get(UNKNOWN_LAYER, (UNORDERED, []))
        groups[UNKNOWN_LAYER] = (order, files + loose)

    if not groups:
        raise NoLayersError(root)

    layers = []
    for name, (order, files) in groups.items():
        variants = _load_variants(name, files)
        if not variants:
            raise EmptyLayerError(name)
        layers.append(Layer(name=name, order=order, variants=variants))

    layers.sort(key=lambda layer: (layer.order, layer.name))
    ordered = []
    last = -1
    for position, layer in enumerate(layers):
        if layer.order == UNORDERED:
            layer = replace(layer, order=max(position, last + 1))
        last = layer.order
        ordered.append(layer)
    layers = ordered

    logger.info(
        f"Loaded {len(layers)} layers from {root}: "
        + ", ".join(f"{l.name}({len(l.variants)})" for l in layers)
    )
    return Catalog(root=root, layers=tuple(layers))
