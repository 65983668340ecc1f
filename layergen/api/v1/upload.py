"""Browser-facing upload API.

    POST /generate   receive a folder of layer PNGs plus options, start a job

Uploaded files are saved under the job's ``uploads/`` directory and staged
into a ``NN_Layer/file.png`` tree before the job is queued.
"""

import json
import logging
import os
from typing import List, Optional

from fastapi import APIRouter, File, Form, HTTPException, UploadFile
from pydantic import ValidationError

from layergen.config import settings
from layergen.engine.catalog import stage_uploads
from layergen.jobs.models import GenerationRequest, JobRecord

logger = logging.getLogger(__name__)

router = APIRouter()

# Wired in during lifespan (same pattern as jobs.py)
_dispatcher = None
_temp_store = None


def set_dispatcher(dispatcher):
    global _dispatcher
    _dispatcher = dispatcher


def set_temp_store(store):
    global _temp_store
    _temp_store = store


def _is_png_upload(file: UploadFile) -> bool:
    if file.content_type == "image/png":
        return True
    return (file.filename or "").lower().endswith(".png")


def _form_bool(value: Optional[str], default: bool) -> bool:
    if value is None or value == "":
        return default
    return value.strip().lower() in ("1", "true", "yes", "on")


@router.post("/generate")
async def upload_and_generate(
    files: List[UploadFile] = File(...),
    file_paths: Optional[List[str]] = Form(None),
    collection_name: str = Form(...),
    collection_size: int = Form(...),
    collection_description: str = Form(""),
    cid: Optional[str] = Form(None),
    rarity_mode: str = Form("uniform"),
    ranked_tiers: str = Form("{}"),
    layers: str = Form("{}"),
    allow_duplicates: Optional[str] = Form(None),
    low_memory: Optional[str] = Form(None),
    seed: Optional[int] = Form(None),
):
    """Accept a layer folder upload, stage it, and start a generation job.

    ``file_paths`` carries each file's path relative to the chosen folder
    (``02_Head/green.png``), in the same order as ``files``.

    Returns:
        {job_id, status, message}
    """
    if _dispatcher is None or _temp_store is None:
        raise HTTPException(status_code=503, detail="Dispatcher not ready")
    if len(files) > settings.max_upload_files:
        raise HTTPException(status_code=413, detail="Too many files")

    try:
        request = GenerationRequest(
            collection_name=collection_name,
            collection_size=collection_size,
            collection_description=collection_description,
            cid=cid,
            rarity_mode=rarity_mode,
            ranked_tiers=json.loads(ranked_tiers or "{}"),
            layers=json.loads(layers or "{}"),
            allow_duplicates=_form_bool(allow_duplicates, False),
            low_memory=_form_bool(low_memory, True),
            seed=seed,
        )
    except json.JSONDecodeError as exc:
        raise HTTPException(status_code=400, detail=f"Invalid JSON field: {exc}")
    except ValidationError as exc:
        raise HTTPException(status_code=422, detail=exc.errors(include_url=False, include_context=False, include_input=False))

    if request.collection_size > settings.max_collection_size:
        raise HTTPException(
            status_code=400,
            detail=f"collection_size is limited to {settings.max_collection_size}",
        )

    job = JobRecord(request=request, layers_dir="")
    uploads_dir = _temp_store.uploads_dir(job.id)
    os.makedirs(uploads_dir, exist_ok=True)

    entries = []
    for i, file in enumerate(files):
        if not _is_png_upload(file):
            logger.info(f"Skipping non-PNG file: {file.filename} ({file.content_type})")
            continue
        relative = file_paths[i] if file_paths and i < len(file_paths) else (file.filename or f"{i}.png")
        stored = os.path.join(uploads_dir, f"{i:05d}.png")
        total = 0
        with open(stored, "wb") as dst:
            while True:
                chunk = await file.read(1024 * 1024)
                if not chunk:
                    break
                total += len(chunk)
                if total > settings.max_upload_file_bytes:
                    _temp_store.remove_job_dir(job.id)
                    raise HTTPException(status_code=413, detail=f"File too large: {relative}")
                dst.write(chunk)
        entries.append((relative, stored))

    if not entries:
        _temp_store.remove_job_dir(job.id)
        raise HTTPException(status_code=400, detail="No valid PNG files uploaded")

    job.layers_dir = _temp_store.layers_dir(job.id)
    stage_uploads(entries, job.layers_dir)

    await _dispatcher.submit(job)
    return {
        "job_id": job.id,
        "status": job.status.value,
        "message": "Generation started successfully",
    }
