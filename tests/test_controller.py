"""
Job controller tests: end-to-end generation runs against synthetic layer trees.

Run with:
    pytest tests/test_controller.py -v
"""

import json
import os
import zipfile

from PIL import Image

from conftest import COLORS, make_job, make_layers, write_png
from layergen.config import Settings
from layergen.jobs.controller import JobController, USER_MESSAGES
from layergen.jobs.models import JobStatus, LayerSettings
from layergen.jobs.registry import InMemoryJobRegistry
from layergen.errors import ErrorKind
from layergen.storage.temp_results import TempResultStore


def _read_metadata(output_dir, index):
    with open(os.path.join(output_dir, "metadata", f"{index}.json")) as fh:
        return json.load(fh)


# ============================================================================
# SUCCESSFUL RUNS
# ============================================================================

class TestCompletedJobs:

    def test_two_item_collection(self, controller, store, two_layer_tree):
        job = make_job(
            two_layer_tree,
            collection_size=2,
            seed=1,
            canvas_width=1024,
            canvas_height=1024,
        )
        job.package = False

        done = controller.run(job)

        assert done.status == JobStatus.COMPLETED
        assert done.produced_count == 2
        assert done.progress_percent == 100.0
        output = done.output_location
        assert sorted(os.listdir(os.path.join(output, "images"))) == ["1.png", "2.png"]
        assert sorted(os.listdir(os.path.join(output, "metadata"))) == ["1.json", "2.json"]

        backgrounds = set()
        for index in (1, 2):
            doc = _read_metadata(output, index)
            assert doc["name"] == f"Test #{index}"
            assert doc["edition"] == index
            assert [a["trait_type"] for a in doc["attributes"]] == ["Background", "Body"]
            backgrounds.add(doc["attributes"][0]["value"])
            with Image.open(os.path.join(output, "images", f"{index}.png")) as im:
                assert im.size == (1024, 1024)
                assert im.mode == "RGBA"
        assert backgrounds == {"blue", "red"}
        assert done.result["usage_counts"]["Background"] == {"blue": 1, "red": 1}

    def test_zip_package_is_produced(self, controller, two_layer_tree):
        done = controller.run(make_job(two_layer_tree, collection_name="My Set", seed=3))

        assert done.status == JobStatus.COMPLETED
        assert done.output_location.endswith("My_Set_collection.zip")
        with zipfile.ZipFile(done.output_location) as zf:
            assert sorted(zf.namelist()) == [
                "images/1.png", "images/2.png", "metadata/1.json", "metadata/2.json",
            ]
        assert done.cleanup_after is not None

    def test_never_included_layer_is_absent(self, controller, two_layer_tree):
        job = make_job(
            two_layer_tree,
            collection_size=1,
            layers={"Background": LayerSettings(selection_probability=0)},
        )
        job.package = False

        done = controller.run(job)

        assert done.status == JobStatus.COMPLETED
        doc = _read_metadata(done.output_location, 1)
        assert doc["attributes"] == [{"trait_type": "Body", "value": "square"}]
        with Image.open(os.path.join(done.output_location, "images", "1.png")) as im:
            assert im.getpixel((0, 0))[3] == 0
            assert im.getpixel((32, 32)) == COLORS["white"]

    def test_progress_is_monotone_and_complete(self, registry, store, test_settings, grid_tree):
        samples = []
        controller = JobController(
            registry, store, test_settings,
            on_progress=lambda job_id, sample: samples.append(sample),
        )
        done = controller.run(make_job(grid_tree, collection_size=10, seed=5))

        assert done.status == JobStatus.COMPLETED
        percents = [s.progress_percent for s in samples]
        produced = [s.produced_count for s in samples]
        assert percents == sorted(percents)
        assert produced == sorted(produced)
        assert percents[-1] == 100.0
        assert produced[-1] == 10

    def test_same_seed_gives_identical_output(self, tmp_path, test_settings, grid_tree):
        outputs = []
        for run in ("a", "b"):
            controller = JobController(
                InMemoryJobRegistry(), TempResultStore(str(tmp_path / run)), test_settings,
            )
            job = make_job(grid_tree, collection_size=12, seed=2024)
            job.package = False
            job.output_dir = str(tmp_path / f"out_{run}")
            assert controller.run(job).status == JobStatus.COMPLETED
            outputs.append(job.output_dir)

        for index in range(1, 13):
            for sub, ext in (("images", "png"), ("metadata", "json")):
                paths = [os.path.join(out, sub, f"{index}.{ext}") for out in outputs]
                with open(paths[0], "rb") as a, open(paths[1], "rb") as b:
                    assert a.read() == b.read()

    def test_every_item_unique(self, controller, grid_tree):
        job = make_job(grid_tree, collection_size=27, seed=11)
        job.package = False
        done = controller.run(job)

        assert done.status == JobStatus.COMPLETED
        dnas = {_read_metadata(done.output_location, i)["dna"] for i in range(1, 28)}
        assert len(dnas) == 27

    def test_explicit_output_dir(self, controller, two_layer_tree, tmp_path):
        job = make_job(two_layer_tree, seed=1)
        job.package = False
        job.output_dir = str(tmp_path / "collection")

        done = controller.run(job)

        assert done.output_location == str(tmp_path / "collection")
        assert os.path.exists(tmp_path / "collection" / "images" / "2.png")

    def test_merged_folders_render_their_own_art(self, controller, tmp_path):
        root = str(tmp_path / "merged")
        write_png(os.path.join(root, "01_Bg", "x.png"), color=COLORS["red"])
        write_png(os.path.join(root, "Bg", "x.png"), color=COLORS["blue"])
        job = make_job(root, collection_size=2, seed=1, low_memory=False)
        job.package = False

        done = controller.run(job)

        assert done.status == JobStatus.COMPLETED
        painted = {}
        for index in (1, 2):
            trait = _read_metadata(done.output_location, index)["attributes"][0]["value"]
            with Image.open(os.path.join(done.output_location, "images", f"{index}.png")) as im:
                painted[trait] = im.getpixel((0, 0))
        assert painted == {"x": COLORS["red"], "x_2": COLORS["blue"]}

    def test_large_source_art_is_resized_not_enlarged(self, controller, tmp_path):
        root = str(tmp_path / "big")
        write_png(os.path.join(root, "01_Bg", "wide.png"), size=(256, 128), color=COLORS["green"])
        job = make_job(root, collection_size=1)
        job.package = False

        done = controller.run(job)

        with Image.open(os.path.join(done.output_location, "images", "1.png")) as im:
            assert im.size == (64, 64)
            assert im.getpixel((0, 0)) == COLORS["green"]
            assert im.getpixel((0, 40))[3] == 0
        with Image.open(os.path.join(root, "01_Bg", "wide.png")) as im:
            assert im.size == (256, 128)


# ============================================================================
# FAILURES
# ============================================================================

class TestFailedJobs:

    def test_insufficient_diversity(self, controller, store, two_layer_tree):
        done = controller.run(make_job(two_layer_tree, collection_size=3))

        assert done.status == JobStatus.FAILED
        assert done.error.kind == ErrorKind.INSUFFICIENT_DIVERSITY
        assert done.message == USER_MESSAGES[ErrorKind.INSUFFICIENT_DIVERSITY]
        assert "3" in done.detail and "2" in done.detail
        assert done.produced_count == 0
        assert done.output_location is None
        assert not store.job_dir_exists(done.id)

    def test_no_layers(self, controller, tmp_path):
        os.makedirs(tmp_path / "empty")
        done = controller.run(make_job(str(tmp_path / "empty")))
        assert done.status == JobStatus.FAILED
        assert done.error.kind == ErrorKind.NO_LAYERS

    def test_all_layers_disabled_is_no_layers(self, controller, two_layer_tree):
        done = controller.run(make_job(two_layer_tree, layers={
            "Background": LayerSettings(active=False),
            "Body": LayerSettings(active=False),
        }))
        assert done.error.kind == ErrorKind.NO_LAYERS

    def test_corrupt_trait_image(self, controller, store, tmp_path):
        root = make_layers(str(tmp_path / "l"), {"01_Background": {"blue": COLORS["blue"]}})
        os.makedirs(os.path.join(root, "02_Body"))
        with open(os.path.join(root, "02_Body", "broken.png"), "wb") as fh:
            fh.write(b"\x89PNG\r\n\x1a\n" + b"\x00" * 32)

        done = controller.run(make_job(root, collection_size=1))

        assert done.status == JobStatus.FAILED
        assert done.error.kind == ErrorKind.BAD_TRAIT_IMAGE
        assert os.path.join(root, "02_Body", "broken.png") in done.detail
        assert done.error.message == done.detail
        assert not store.job_dir_exists(done.id)

    def test_timeout(self, tmp_path, two_layer_tree):
        settings = Settings(
            _env_file=None,
            work_dir=str(tmp_path / "work"),
            canvas_width=64,
            canvas_height=64,
            base_timeout_seconds=0,
            per_item_timeout_seconds=0,
            timeout_slack_seconds=0,
        )
        store = TempResultStore(settings.work_dir)
        controller = JobController(InMemoryJobRegistry(), store, settings)

        done = controller.run(make_job(two_layer_tree))

        assert done.status == JobStatus.FAILED
        assert done.error.kind == ErrorKind.TIMEOUT
        assert not store.job_dir_exists(done.id)

    def test_cancel_mid_run(self, registry, store, test_settings, tmp_path):
        palette = ["blue", "red", "green", "yellow", "white"]
        root = make_layers(str(tmp_path / "l"), {
            "01_A": {c: COLORS[c] for c in palette},
            "02_B": {c: COLORS[c][:3] + (128,) for c in palette},
        })
        controller = None

        def on_progress(job_id, sample):
            if sample.produced_count >= 2:
                controller.cancel(job_id)

        controller = JobController(registry, store, test_settings, on_progress=on_progress)
        job = make_job(root, collection_size=20, seed=9)

        done = controller.run(job)

        assert done.status == JobStatus.CANCELLED
        assert done.error.kind == ErrorKind.CANCELLED
        assert done.message == USER_MESSAGES[ErrorKind.CANCELLED]
        assert done.produced_count < 20
        assert done.output_location is None
        assert not store.job_dir_exists(done.id)

    def test_cancel_after_completion_is_refused(self, controller, two_layer_tree):
        done = controller.run(make_job(two_layer_tree, seed=1))
        assert done.status == JobStatus.COMPLETED
        assert controller.cancel(done.id) is False

    def test_cancel_unknown_job_is_refused(self, controller):
        assert controller.cancel("never-submitted") is False
        assert controller._events == {}

