"""Layer generator service - FastAPI application."""

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from layergen.config import settings
from layergen.api.v1.router import v1_router
from layergen.api.v1.health import router as health_root_router
from layergen.api.v1 import jobs as jobs_api
from layergen.api.v1 import upload as upload_api
from layergen.jobs.controller import JobController
from layergen.jobs.in_process_queue import InProcessQueue
from layergen.jobs.registry import InMemoryJobRegistry
from layergen.jobs.sweeper import JobSweeper
from layergen.storage.temp_results import TempResultStore

logging.basicConfig(
    level=settings.log_level,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger(__name__)

# Global dispatcher reference
_dispatcher = None


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Startup and shutdown logic."""
    global _dispatcher

    logger.info("Starting layer generator service")
    logger.info(f"Work dir: {settings.work_dir}")

    registry = InMemoryJobRegistry()
    temp_store = TempResultStore(settings.work_dir, ttl_seconds=settings.orphan_max_age_seconds)
    controller = JobController(registry, temp_store, settings)

    # Start job dispatcher and sweeper
    _dispatcher = InProcessQueue(controller, registry)
    await _dispatcher.start()
    sweeper = JobSweeper(registry, temp_store, controller, settings)
    await sweeper.start()
    logger.info("Job dispatcher started")

    # Wire dispatcher, registry and temp store into API endpoints
    jobs_api.set_dispatcher(_dispatcher)
    jobs_api.set_registry(registry)
    upload_api.set_dispatcher(_dispatcher)
    upload_api.set_temp_store(temp_store)

    yield

    # Shutdown
    logger.info("Shutting down layer generator service")
    await sweeper.stop()
    await _dispatcher.stop()
    temp_store.cleanup_expired()


app = FastAPI(
    title="Layer Generator Service",
    description="Generates unique composite image collections from layered trait PNGs",
    version="0.1.0",
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["http://localhost:5173", "http://localhost:3000", "*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Mount routers
app.include_router(health_root_router, tags=["health"])  # GET /health at root
app.include_router(v1_router)  # All /api/v1/* endpoints
