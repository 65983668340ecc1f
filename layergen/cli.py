#!/usr/bin/env python3
"""Command line entry point.

    layergen generate LAYERS_DIR OUTPUT_DIR --name "My Collection" --size 100
    layergen search-traits OUTPUT_DIR/metadata Head RoyalGold
    layergen set-cid OUTPUT_DIR/metadata bafy...
"""

import argparse
import logging
import sys
import tempfile

from layergen.config import settings
from layergen.engine.metadata import rewrite_image_cid, search_traits
from layergen.engine.rarity import RarityMode
from layergen.jobs.controller import JobController
from layergen.jobs.models import GenerationRequest, JobRecord, JobStatus, LayerSettings
from layergen.jobs.registry import InMemoryJobRegistry
from layergen.storage.packager import create_archive
from layergen.storage.temp_results import TempResultStore


def _parse_layer_options(args) -> dict:
    layers = {}
    for item in args.layer or []:
        name, _, prob = item.partition("=")
        if not name or not prob.isdigit():
            raise SystemExit(f"--layer expects NAME=PROBABILITY, got '{item}'")
        layers[name] = LayerSettings(selection_probability=int(prob))
    for name in args.disable or []:
        layers[name] = LayerSettings(active=False)
    return layers


def cmd_generate(args) -> int:
    request = GenerationRequest(
        collection_name=args.name,
        collection_size=args.size,
        collection_description=args.description,
        cid=args.cid,
        rarity_mode=args.rarity_mode,
        layers=_parse_layer_options(args),
        allow_duplicates=args.allow_duplicates,
        low_memory=not args.no_low_memory,
        seed=args.seed,
    )

    def on_progress(job_id, sample):
        print(f"[{sample.progress_percent:5.1f}%] {sample.message}", flush=True)

    with tempfile.TemporaryDirectory(prefix="layergen-") as work_dir:
        controller = JobController(
            InMemoryJobRegistry(), TempResultStore(work_dir), settings, on_progress=on_progress
        )
        job = controller.run(JobRecord(
            request=request,
            layers_dir=args.layers_dir,
            output_dir=args.output_dir,
            package=False,
        ))

    if job.status != JobStatus.COMPLETED:
        print(f"{job.message}: {job.detail}", file=sys.stderr)
        return 1

    if args.zip:
        create_archive(args.output_dir, args.zip)
        print(f"Wrote {args.zip}")

    print(f"Generated {job.produced_count} items in {args.output_dir}")
    for layer, counts in (job.result or {}).get("usage_counts", {}).items():
        print(f"  {layer}: " + ", ".join(f"{k}={v}" for k, v in sorted(counts.items())))
    return 0


def cmd_search_traits(args) -> int:
    matches = search_traits(args.metadata_dir, args.trait_type, args.value)
    if not matches:
        print(f"No items found with trait_type='{args.trait_type}' and value='{args.value}'.")
        return 1
    print(f"Found {len(matches)} item(s) with {args.trait_type}='{args.value}':\n")
    for name, filename in matches:
        print(f"- {name} (metadata file: {filename})")
    return 0


def cmd_set_cid(args) -> int:
    count = rewrite_image_cid(args.metadata_dir, args.cid)
    print(f"Updated {count} metadata files")
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="layergen", description=__doc__.splitlines()[0])
    parser.add_argument("-v", "--verbose", action="store_true")
    sub = parser.add_subparsers(dest="command", required=True)

    gen = sub.add_parser("generate", help="Generate a collection")
    gen.add_argument("layers_dir")
    gen.add_argument("output_dir")
    gen.add_argument("--name", required=True)
    gen.add_argument("--size", type=int, required=True)
    gen.add_argument("--description", default="")
    gen.add_argument("--cid", default=None)
    gen.add_argument("--rarity-mode", choices=[m.value for m in RarityMode], default="uniform")
    gen.add_argument("--seed", type=int, default=None)
    gen.add_argument("--allow-duplicates", action="store_true")
    gen.add_argument("--no-low-memory", action="store_true")
    gen.add_argument("--layer", action="append", metavar="NAME=PROB",
                     help="Selection probability (0-100) for a layer")
    gen.add_argument("--disable", action="append", metavar="NAME",
                     help="Leave a layer out of every item")
    gen.add_argument("--zip", metavar="PATH", help="Also write a zip archive")
    gen.set_defaults(func=cmd_generate)

    search = sub.add_parser("search-traits", help="Find items with a trait value")
    search.add_argument("metadata_dir")
    search.add_argument("trait_type")
    search.add_argument("value")
    search.set_defaults(func=cmd_search_traits)

    cid = sub.add_parser("set-cid", help="Point metadata image URIs at a CID")
    cid.add_argument("metadata_dir")
    cid.add_argument("cid")
    cid.set_defaults(func=cmd_set_cid)
    return parser


def main(argv=None) -> int:
    args = build_parser().parse_args(argv)
    logging.basicConfig(
        level=logging.DEBUG if args.verbose else settings.log_level,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )
    return args.func(args)


if __name__ == "__main__":
    sys.exit(main())
