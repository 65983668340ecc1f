"""Job management API: submit jobs, poll status, cancel, download archives."""

import os
from datetime import datetime, timedelta
from typing import Optional

from fastapi import APIRouter, HTTPException
from fastapi.responses import FileResponse
from pydantic import BaseModel

from layergen.config import settings
from layergen.engine.policy import retention_seconds
from layergen.jobs.models import GenerationRequest, JobRecord, JobStatus

router = APIRouter()

# These will be set by main.py during lifespan
_dispatcher = None
_registry = None


def set_dispatcher(dispatcher):
    global _dispatcher
    _dispatcher = dispatcher


def set_registry(registry):
    global _registry
    _registry = registry


class JobSubmitRequest(GenerationRequest):
    layers_dir: str


class JobSubmitResponse(BaseModel):
    job_id: str
    status: str
    message: str


def job_status_payload(job: JobRecord) -> dict:
    response = {
        "job_id": job.id,
        "status": job.status.value,
        "progress": job.sample().model_dump(),
        "collection_size": job.request.collection_size,
        "download_count": job.download_count,
        "created_at": job.created_at.isoformat(),
        "started_at": job.started_at.isoformat() if job.started_at else None,
        "completed_at": job.completed_at.isoformat() if job.completed_at else None,
    }
    if job.status == JobStatus.COMPLETED and job.result:
        response["result"] = job.result
    if job.error is not None:
        response["error"] = job.error.model_dump(mode="json")
    elif job.status == JobStatus.FAILED:
        response["error"] = {"kind": None, "message": job.detail or job.message, "retryable": False}
    return response


async def _get_job(job_id: str) -> JobRecord:
    if _dispatcher is None:
        raise HTTPException(status_code=503, detail="Job dispatcher not initialized")
    job = await _dispatcher.get_status(job_id)
    if job is None:
        raise HTTPException(status_code=404, detail="Generation job not found")
    return job


@router.post("/jobs", response_model=JobSubmitResponse)
async def submit_job(request: JobSubmitRequest):
    """Submit a generation job for a layer tree already on the server."""
    if _dispatcher is None:
        raise HTTPException(status_code=503, detail="Job dispatcher not initialized")
    if not os.path.isdir(request.layers_dir):
        raise HTTPException(status_code=400, detail=f"Layers directory not found: {request.layers_dir}")
    if request.collection_size > settings.max_collection_size:
        raise HTTPException(
            status_code=400,
            detail=f"collection_size is limited to {settings.max_collection_size}",
        )

    job = JobRecord(
        request=GenerationRequest(**request.model_dump(exclude={"layers_dir"})),
        layers_dir=request.layers_dir,
    )
    job_id = await _dispatcher.submit(job)
    return JobSubmitResponse(
        job_id=job_id,
        status="pending",
        message="Job submitted successfully. Poll GET /api/v1/jobs/{id} for status.",
    )


@router.get("/jobs/{job_id}")
async def get_job_status(job_id: str):
    """Get the current status, progress and result of a job."""
    job = await _get_job(job_id)
    return job_status_payload(job)


@router.post("/jobs/{job_id}/cancel")
async def cancel_job(job_id: str):
    """Request cancellation of a pending or running job."""
    job = await _get_job(job_id)
    if job.status.is_terminal:
        raise HTTPException(status_code=409, detail=f"Job already {job.status.value}")
    accepted = await _dispatcher.cancel(job_id)
    return {
        "success": accepted,
        "message": "Generation cancellation requested" if accepted else "Job already finished",
    }


@router.get("/jobs/{job_id}/download")
async def download_job(job_id: str):
    """Stream the finished collection archive."""
    job = await _get_job(job_id)
    if job.status != JobStatus.COMPLETED:
        raise HTTPException(status_code=400, detail="Generation not completed")

    path: Optional[str] = job.output_location
    if not path or not os.path.isfile(path):
        raise HTTPException(status_code=404, detail="Generated files not found")
    if os.path.getsize(path) == 0:
        raise HTTPException(status_code=500, detail="Generated zip file is corrupted (empty)")

    if _registry is not None:
        _registry.update(
            job_id,
            download_count=job.download_count + 1,
            cleanup_after=datetime.utcnow() + timedelta(
                seconds=retention_seconds(job.request.collection_size, settings)
            ),
        )

    return FileResponse(
        path,
        media_type="application/zip",
        filename=os.path.basename(path),
    )
