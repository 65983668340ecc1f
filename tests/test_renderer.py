"""
Renderer tests: pre-resize, compositing order, PNG encoding and the variant cache.

Run with:
    pytest tests/test_renderer.py -v
"""

import io
import os

import pytest
from PIL import Image

from conftest import COLORS, write_png
from layergen.engine.catalog import load_catalog
from layergen.engine.dna import Dna
from layergen.engine.renderer import (
    PngSettings,
    Renderer,
    VariantCache,
    decode_variant,
    fit_size,
    pre_resize_catalog,
)
from layergen.errors import BadTraitImageError, GenerationCancelledError


def _open(data: bytes) -> Image.Image:
    return Image.open(io.BytesIO(data))


# ============================================================================
# PRE-RESIZE
# ============================================================================

class TestFitSize:

    def test_fits_already(self):
        assert fit_size((64, 64), (64, 64)) is None
        assert fit_size((10, 20), (64, 64)) is None

    def test_uniform_downscale(self):
        assert fit_size((200, 100), (100, 100)) == (100, 50)
        assert fit_size((100, 400), (100, 100)) == (25, 100)


class TestPreResize:

    def test_oversized_variant_is_downscaled(self, tmp_path):
        root = str(tmp_path / "l")
        write_png(os.path.join(root, "01_Bg", "big.png"), size=(256, 128))
        catalog = load_catalog(root)

        working = pre_resize_catalog(catalog, str(tmp_path / "w"), (64, 64))

        copy = working.layer("Bg").variants[0].source_path
        assert copy.startswith(str(tmp_path / "w"))
        with Image.open(copy) as im:
            assert im.size == (64, 32)

    def test_fitting_variant_copied_byte_for_byte(self, tmp_path, two_layer_tree):
        catalog = load_catalog(two_layer_tree)
        working = pre_resize_catalog(catalog, str(tmp_path / "w"), (1024, 1024))
        for original, copied in zip(catalog.layers, working.layers):
            for a, b in zip(original.variants, copied.variants):
                with open(a.source_path, "rb") as fa, open(b.source_path, "rb") as fb:
                    assert fa.read() == fb.read()
        # Sources are untouched
        with Image.open(catalog.layer("Body").variants[0].source_path) as im:
            assert im.size == (64, 64)

    def test_never_enlarges(self, tmp_path):
        root = str(tmp_path / "l")
        write_png(os.path.join(root, "01_Bg", "small.png"), size=(8, 8))
        working = pre_resize_catalog(load_catalog(root), str(tmp_path / "w"), (64, 64))
        with Image.open(working.layer("Bg").variants[0].source_path) as im:
            assert im.size == (8, 8)

    def test_unreadable_variant_copied_for_later(self, tmp_path):
        root = str(tmp_path / "l")
        os.makedirs(os.path.join(root, "01_Bg"))
        with open(os.path.join(root, "01_Bg", "broken.png"), "wb") as fh:
            fh.write(b"\x89PNG\r\n\x1a\nnot really")
        working = pre_resize_catalog(load_catalog(root), str(tmp_path / "w"), (64, 64))
        assert os.path.exists(working.layer("Bg").variants[0].source_path)

    def test_merged_folders_get_distinct_working_copies(self, tmp_path):
        root = str(tmp_path / "l")
        write_png(os.path.join(root, "01_Bg", "x.png"), color=COLORS["red"])
        write_png(os.path.join(root, "Bg", "x.png"), color=COLORS["blue"])
        catalog = load_catalog(root)

        working = pre_resize_catalog(catalog, str(tmp_path / "w"), (64, 64))

        copies = working.layer("Bg").variants
        assert len({v.source_path for v in copies}) == 2
        assert [v.origin_path for v in copies] == [v.source_path for v in catalog.layer("Bg").variants]
        colors = []
        for v in copies:
            with Image.open(v.source_path) as im:
                colors.append(im.convert("RGBA").getpixel((0, 0)))
        assert colors == [COLORS["red"], COLORS["blue"]]

    def test_checkpoint_aborts(self, tmp_path, two_layer_tree):
        def cancelled():
            raise GenerationCancelledError()

        with pytest.raises(GenerationCancelledError):
            pre_resize_catalog(load_catalog(two_layer_tree), str(tmp_path / "w"), (64, 64),
                               checkpoint=cancelled)


# ============================================================================
# COMPOSITING
# ============================================================================

class TestRenderer:

    def test_layers_painted_back_to_front(self, two_layer_tree):
        renderer = Renderer(load_catalog(two_layer_tree), canvas=(64, 64))
        image = renderer.compose(Dna([("Background", "blue"), ("Body", "square")]))
        assert image.mode == "RGBA"
        assert image.size == (64, 64)
        assert image.getpixel((0, 0)) == COLORS["blue"]
        assert image.getpixel((32, 32)) == COLORS["white"]

    def test_absent_layer_leaves_transparency(self, two_layer_tree):
        renderer = Renderer(load_catalog(two_layer_tree), canvas=(64, 64))
        image = renderer.compose(Dna([("Background", None), ("Body", "square")]))
        assert image.getpixel((0, 0))[3] == 0
        assert image.getpixel((32, 32)) == COLORS["white"]

    def test_smaller_variant_anchored_top_left(self, tmp_path):
        root = str(tmp_path / "l")
        write_png(os.path.join(root, "01_Dot", "dot.png"), size=(8, 8), color=COLORS["red"])
        renderer = Renderer(load_catalog(root), canvas=(64, 64))
        image = renderer.compose(Dna([("Dot", "dot")]))
        assert image.getpixel((0, 0)) == COLORS["red"]
        assert image.getpixel((7, 7)) == COLORS["red"]
        assert image.getpixel((8, 8))[3] == 0

    def test_oversized_variant_is_cropped(self, tmp_path):
        root = str(tmp_path / "l")
        write_png(os.path.join(root, "01_Bg", "huge.png"), size=(100, 80), color=COLORS["green"])
        renderer = Renderer(load_catalog(root), canvas=(64, 64))
        image = renderer.compose(Dna([("Bg", "huge")]))
        assert image.size == (64, 64)
        assert image.getpixel((63, 63)) == COLORS["green"]

    def test_render_is_deterministic(self, two_layer_tree):
        renderer = Renderer(load_catalog(two_layer_tree), canvas=(64, 64),
                            png=PngSettings(compress_level=9))
        dna = Dna([("Background", "red"), ("Body", "square")])
        first = renderer.render(dna)
        assert first == renderer.render(dna)
        with _open(first) as im:
            assert im.format == "PNG"
            assert im.size == (64, 64)

    def test_missing_file_is_bad_trait_image(self, two_layer_tree):
        catalog = load_catalog(two_layer_tree)
        renderer = Renderer(catalog, canvas=(64, 64))
        os.remove(catalog.layer("Body").variants[0].source_path)
        with pytest.raises(BadTraitImageError):
            renderer.compose(Dna([("Background", "red"), ("Body", "square")]))

    def test_corrupt_working_copy_reports_user_file(self, tmp_path):
        root = str(tmp_path / "l")
        os.makedirs(os.path.join(root, "01_Bg"))
        original = os.path.join(root, "01_Bg", "broken.png")
        with open(original, "wb") as fh:
            fh.write(b"\x89PNG\r\n\x1a\nnot really")
        working = pre_resize_catalog(load_catalog(root), str(tmp_path / "w"), (64, 64))
        renderer = Renderer(working, canvas=(64, 64))

        with pytest.raises(BadTraitImageError) as exc_info:
            renderer.compose(Dna([("Bg", "broken")]))
        assert exc_info.value.path == original

    def test_corrupt_file_is_bad_trait_image(self, tmp_path):
        path = str(tmp_path / "broken.png")
        with open(path, "wb") as fh:
            fh.write(b"garbage")
        with pytest.raises(BadTraitImageError) as exc_info:
            decode_variant(path)
        assert exc_info.value.path == path


# ============================================================================
# CACHE
# ============================================================================

class TestVariantCache:

    def test_hits_after_first_decode(self, tmp_path):
        path = write_png(str(tmp_path / "a.png"), size=(4, 4))
        cache = VariantCache(1024)
        cache.get(path)
        cache.get(path)
        assert cache.misses == 1
        assert cache.hits == 1
        assert cache.size_bytes == 4 * 4 * 4

    def test_evicts_least_recently_used(self, tmp_path):
        a = write_png(str(tmp_path / "a.png"), size=(4, 4))
        b = write_png(str(tmp_path / "b.png"), size=(4, 4))
        c = write_png(str(tmp_path / "c.png"), size=(4, 4))
        cache = VariantCache(2 * 64)
        cache.get(a)
        cache.get(b)
        cache.get(a)
        cache.get(c)
        assert cache.size_bytes == 2 * 64
        cache.get(a)
        assert cache.hits == 2
        cache.get(b)
        assert cache.misses == 4

    def test_zero_budget_disables_cache(self, tmp_path):
        path = write_png(str(tmp_path / "a.png"), size=(4, 4))
        cache = VariantCache(0)
        cache.get(path)
        cache.get(path)
        assert cache.hits == 0
        assert cache.misses == 2
        assert cache.size_bytes == 0
