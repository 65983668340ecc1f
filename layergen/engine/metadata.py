"""Per-item JSON metadata, plus the post-generation trait search and CID tools."""

import json
import logging
import os
import re
from typing import Any, Callable, Dict, List, Optional, Tuple

from layergen.engine.dna import Dna
from layergen.storage.files import write_atomic

logger = logging.getLogger(__name__)

CID_PLACEHOLDER = "REPLACE_WITH_CID"
IMAGES_DIR = "images"
METADATA_DIR = "metadata"


def image_uri(index: int, cid: Optional[str] = None) -> str:
    return f"ipfs://{cid or CID_PLACEHOLDER}/{index}.png"


def build_metadata(
    index: int,
    dna: Dna,
    collection_name: str,
    description: str = "",
    cid: Optional[str] = None,
) -> Dict[str, Any]:
    """Metadata document for one item.

    Attributes list only the layers present in the DNA, in catalog order.
    """
    return {
        "name": f"{collection_name} #{index}",
        "description": description,
        "image": image_uri(index, cid),
        "dna": dna.hash(),
        "attributes": [
            {"trait_type": entry.layer, "value": entry.variant}
            for entry in dna.present()
        ],
        "edition": index,
    }


def dump_metadata(metadata: Dict[str, Any]) -> bytes:
    return json.dumps(metadata, indent=2, ensure_ascii=False).encode("utf-8")


def ensure_output_dirs(output_dir: str) -> Tuple[str, str]:
    images = os.path.join(output_dir, IMAGES_DIR)
    metadata = os.path.join(output_dir, METADATA_DIR)
    os.makedirs(images, exist_ok=True)
    os.makedirs(metadata, exist_ok=True)
    return images, metadata


def write_item(
    output_dir: str,
    index: int,
    image_bytes: bytes,
    metadata: Dict[str, Any],
    attempts: int = 3,
    base_delay: float = 0.05,
    checkpoint: Optional[Callable[[], None]] = None,
) -> None:
    """Write ``images/{index}.png`` and ``metadata/{index}.json``."""
    write_atomic(
        os.path.join(output_dir, IMAGES_DIR, f"{index}.png"),
        image_bytes,
        attempts=attempts,
        base_delay=base_delay,
        checkpoint=checkpoint,
    )
    write_atomic(
        os.path.join(output_dir, METADATA_DIR, f"{index}.json"),
        dump_metadata(metadata),
        attempts=attempts,
        base_delay=base_delay,
        checkpoint=checkpoint,
    )


# ---------------------------------------------------------------------------
# Post-generation tools
# ---------------------------------------------------------------------------

def _metadata_files(metadata_dir: str) -> List[str]:
    def sort_key(name: str):
        stem = os.path.splitext(name)[0]
        return (0, int(stem), name) if stem.isdigit() else (1, 0, name)

    return sorted(
        (f for f in os.listdir(metadata_dir) if f.endswith(".json")),
        key=sort_key,
    )


def search_traits(metadata_dir: str, trait_type: str, value: str) -> List[Tuple[str, str]]:
    """``(name, filename)`` of every item carrying ``trait_type=value``."""
    matches = []
    for filename in _metadata_files(metadata_dir):
        with open(os.path.join(metadata_dir, filename), encoding="utf-8") as fh:
            doc = json.load(fh)
        if any(
            attr.get("trait_type") == trait_type and attr.get("value") == value
            for attr in doc.get("attributes", [])
        ):
            matches.append((doc.get("name", ""), filename))
    return matches


_IMAGE_INDEX_RE = re.compile(r"/(\d+)\.png$")


def rewrite_image_cid(metadata_dir: str, cid: str) -> int:
    """Point every item's ``image`` at ``ipfs://{cid}/...`` once images are pinned.

    Returns the number of files rewritten.
    """
    count = 0
    for filename in _metadata_files(metadata_dir):
        path = os.path.join(metadata_dir, filename)
        with open(path, encoding="utf-8") as fh:
            doc = json.load(fh)
        index = doc.get("edition")
        if index is None:
            match = _IMAGE_INDEX_RE.search(doc.get("image", ""))
            index = match.group(1) if match else os.path.splitext(filename)[0]
        doc["image"] = image_uri(int(index), cid)
        write_atomic(path, dump_metadata(doc))
        count += 1
    logger.info(f"Rewrote image CID in {count} metadata files")
    return count
