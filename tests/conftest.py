"""Shared fixtures: synthetic layer trees and a controller wired to tmp dirs."""

import os
from typing import Dict, Tuple

import pytest
from PIL import Image

from layergen.config import Settings
from layergen.jobs.controller import JobController
from layergen.jobs.models import GenerationRequest, JobRecord
from layergen.jobs.registry import InMemoryJobRegistry
from layergen.storage.temp_results import TempResultStore

COLORS = {
    "blue": (0, 0, 255, 255),
    "red": (255, 0, 0, 255),
    "green": (0, 255, 0, 255),
    "yellow": (255, 255, 0, 255),
    "white": (255, 255, 255, 255),
}


def write_png(path: str, size: Tuple[int, int] = (64, 64), color=(0, 0, 255, 255), box=None) -> str:
    """Solid PNG, or a transparent one with ``color`` filling ``box``."""
    os.makedirs(os.path.dirname(path), exist_ok=True)
    if box is None:
        img = Image.new("RGBA", size, color)
    else:
        img = Image.new("RGBA", size, (0, 0, 0, 0))
        img.paste(Image.new("RGBA", (box[2] - box[0], box[3] - box[1]), color), box[:2])
    img.save(path, format="PNG")
    return path


def make_layers(root: str, tree: Dict[str, Dict[str, tuple]], size=(64, 64)) -> str:
    """Build ``root/<folder>/<file>.png`` from ``{folder: {stem: color}}``."""
    for folder, variants in tree.items():
        for stem, color in variants.items():
            write_png(os.path.join(root, folder, f"{stem}.png"), size=size, color=color)
    return root


@pytest.fixture
def test_settings(tmp_path):
    return Settings(
        _env_file=None,
        work_dir=str(tmp_path / "work"),
        canvas_width=64,
        canvas_height=64,
        io_retry_base_delay=0.0,
        cpu_count=2,
    )


@pytest.fixture
def registry():
    return InMemoryJobRegistry()


@pytest.fixture
def store(test_settings):
    return TempResultStore(test_settings.work_dir)


@pytest.fixture
def controller(registry, store, test_settings):
    return JobController(registry, store, test_settings)


@pytest.fixture
def two_layer_tree(tmp_path):
    """01_Background = {blue, red}, 02_Body = {square}."""
    root = str(tmp_path / "layers")
    make_layers(root, {
        "01_Background": {"blue": COLORS["blue"], "red": COLORS["red"]},
    })
    write_png(
        os.path.join(root, "02_Body", "square.png"),
        color=COLORS["white"],
        box=(16, 16, 48, 48),
    )
    return root


@pytest.fixture
def grid_tree(tmp_path):
    """Three layers of three colours each: 27 combinations."""
    root = str(tmp_path / "grid")
    palette = ["blue", "red", "green"]
    make_layers(root, {
        f"{i:02d}_L{i}": {c: COLORS[c][:3] + (100 + 50 * i,) for c in palette}
        for i in range(1, 4)
    })
    return root


def make_job(layers_dir: str, **request_fields) -> JobRecord:
    fields = {"collection_name": "Test", "collection_size": 2}
    fields.update(request_fields)
    return JobRecord(request=GenerationRequest(**fields), layers_dir=layers_dir)
