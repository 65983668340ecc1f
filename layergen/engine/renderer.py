"""Compositing of chosen variants into one PNG per item."""

import io
import logging
import os
import shutil
import threading
from collections import OrderedDict
from dataclasses import dataclass, replace
from typing import Callable, Optional, Tuple

from PIL import Image

from layergen.engine.catalog import Catalog
from layergen.engine.dna import Dna
from layergen.errors import BadTraitImageError

logger = logging.getLogger(__name__)

# Trait art is trusted; large layers are normal
Image.MAX_IMAGE_PIXELS = None


@dataclass(frozen=True)
class PngSettings:
    compress_level: int = 6
    compress_type: int = -1


def fit_size(size: Tuple[int, int], canvas: Tuple[int, int]) -> Optional[Tuple[int, int]]:
    """Target size to fit ``size`` inside ``canvas``, or None if it already fits.

    Scaling is uniform and never enlarges.
    """
    w, h = size
    cw, ch = canvas
    if w <= cw and h <= ch:
        return None
    scale = min(cw / w, ch / h)
    return max(1, round(w * scale)), max(1, round(h * scale))


def pre_resize_catalog(
    catalog: Catalog,
    work_dir: str,
    canvas: Tuple[int, int],
    resample: int = Image.Resampling.LANCZOS,
    reducing_gap: Optional[float] = None,
    checkpoint: Optional[Callable[[], None]] = None,
) -> Catalog:
    """Copy every variant into ``work_dir``, downscaling oversized ones.

    Variants that already fit are copied byte for byte. Unreadable files are
    copied as-is; the error surfaces when a render first needs them.
    Returns a catalog pointing at the working copies.
    """
    layers = []
    resized = 0
    for layer in catalog.layers:
        layer_dir = os.path.join(work_dir, f"{layer.order:03d}_{layer.name}")
        os.makedirs(layer_dir, exist_ok=True)
        variants = []
        for position, variant in enumerate(layer.variants):
            if checkpoint:
                checkpoint()
            # merged folders may hold files with the same basename
            dest = os.path.join(layer_dir, f"{position:04d}_{variant.filename}")
            try:
                with Image.open(variant.source_path) as im:
                    target = fit_size(im.size, canvas)
                    if target is not None:
                        im.load()
                        small = im.resize(target, resample=resample, reducing_gap=reducing_gap)
                        small.save(dest, format="PNG")
                        resized += 1
                        logger.debug(f"Resized {variant.filename} {im.size} -> {target}")
            except (OSError, SyntaxError, ValueError) as exc:
                logger.warning(f"Cannot inspect {variant.source_path}: {exc}")
                target = None
            if target is None:
                shutil.copyfile(variant.source_path, dest)
            variants.append(replace(
                variant,
                source_path=dest,
                origin_path=variant.origin_path or variant.source_path,
            ))
        layers.append(replace(layer, variants=tuple(variants)))

    logger.info(f"Pre-resize: {resized} of {catalog.variant_count()} variants downscaled")
    return replace(catalog, root=work_dir, layers=tuple(layers))


def decode_variant(path: str) -> Image.Image:
    """Fully decode a variant as RGBA or raise BadTraitImageError."""
    try:
        with Image.open(path) as im:
            im.load()
            return im.convert("RGBA")
    except (OSError, SyntaxError, ValueError) as exc:
        raise BadTraitImageError(path, str(exc)) from exc


class VariantCache:
    """Thread-safe LRU of decoded variants bounded by pixel bytes.

    ``max_bytes=0`` disables caching entirely.
    """

    def __init__(self, max_bytes: int):
        self._max_bytes = max_bytes
        self._items: "OrderedDict[str, Image.Image]" = OrderedDict()
        self._bytes = 0
        self._lock = threading.Lock()
        self.hits = 0
        self.misses = 0

    @staticmethod
    def _cost(image: Image.Image) -> int:
        return image.width * image.height * 4

    def get(self, path: str) -> Image.Image:
        if self._max_bytes <= 0:
            self.misses += 1
            return decode_variant(path)

        with self._lock:
            image = self._items.get(path)
            if image is not None:
                self._items.move_to_end(path)
                self.hits += 1
                return image

        image = decode_variant(path)
        cost = self._cost(image)
        with self._lock:
            self.misses += 1
            if cost > self._max_bytes or path in self._items:
                return image
            while self._bytes + cost > self._max_bytes and self._items:
                _, evicted = self._items.popitem(last=False)
                self._bytes -= self._cost(evicted)
            self._items[path] = image
            self._bytes += cost
        return image

    @property
    def size_bytes(self) -> int:
        return self._bytes


class Renderer:
    """Paints a DNA's variants back to front onto a transparent canvas."""

    def __init__(
        self,
        catalog: Catalog,
        canvas: Tuple[int, int] = (1024, 1024),
        png: PngSettings = PngSettings(),
        cache: Optional[VariantCache] = None,
    ):
        self.canvas = canvas
        self.png = png
        self.cache = cache or VariantCache(0)
        self._paths = {
            (layer.name, v.display_name): (v.source_path, v.origin_path or v.source_path)
            for layer in catalog.layers
            for v in layer.variants
        }

    def compose(self, dna: Dna, checkpoint: Optional[Callable[[], None]] = None) -> Image.Image:
        image = Image.new("RGBA", self.canvas, (0, 0, 0, 0))
        for entry in dna.present():
            path, origin = self._paths[(entry.layer, entry.variant)]
            if not os.path.exists(path):
                raise BadTraitImageError(origin, "file missing")
            if checkpoint:
                checkpoint()
            try:
                layer_img = self.cache.get(path)
            except BadTraitImageError as exc:
                # report the user's file, not the per-job working copy
                raise BadTraitImageError(origin, exc.reason) from exc
            if layer_img.size != self.canvas:
                w = min(layer_img.width, self.canvas[0])
                h = min(layer_img.height, self.canvas[1])
                layer_img = layer_img.crop((0, 0, w, h))
            image.alpha_composite(layer_img, dest=(0, 0))
        return image

    def encode(self, image: Image.Image) -> bytes:
        return encode_png(image, self.png)

    def render(self, dna: Dna, checkpoint: Optional[Callable[[], None]] = None) -> bytes:
        return self.encode(self.compose(dna, checkpoint))


def encode_png(image: Image.Image, png: PngSettings) -> bytes:
    buf = io.BytesIO()
    image.save(
        buf,
        format="PNG",
        compress_level=png.compress_level,
        compress_type=png.compress_type,
    )
    return buf.getvalue()
