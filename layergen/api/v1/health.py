"""Health check endpoint."""

import platform
import sys

import PIL
from fastapi import APIRouter

from layergen.config import settings

router = APIRouter()


@router.get("/health")
async def health_check():
    """Service health and system info."""
    return {
        "status": "healthy",
        "work_dir": settings.work_dir,
        "cpu_count": settings.effective_cpu_count(),
        "pillow_version": PIL.__version__,
        "python_version": sys.version,
        "platform": platform.platform(),
    }
