"""Sports Posture Analysis Backend - FastAPI application."""

from contextlib import asynccontextmanager

import httpx
from fastapi import FastAPI, HTTPException
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware

from app.config import Settings, settings
from app.api.v1.router import v1_router
from app.api.v1.health import router as health_root_router
from app.api.v1 import analysis as analysis_api
from app.api.v1 import health as health_api
from app.api.v1 import jobs as jobs_api
from app.api.v1 import upload as upload_api
from app.db.job_repository import InMemoryJobRepository, JobRepository, SupabaseJobRepository
from app.db.supabase_client import get_supabase
from app.engine.gemini import build_engine
from app.exceptions import (
    AnalyzerBaseException,
    analyzer_exception_handler,
    generic_exception_handler,
    http_exception_handler,
    request_validation_exception_handler,
)
from app.jobs.in_process_queue import InProcessQueue
from app.jobs.orchestrator import JobOrchestrator
from app.jobs.retry import RetryController
from app.logger import logger
from app.storage.media_store import MediaStore
from app.storage.temp_media import TempMediaStore


def build_repository(config: Settings) -> JobRepository:
    """Job store selected by JOB_STORE_BACKEND."""
    if config.job_store_backend == "memory":
        logger.warning("Using in-memory job store; job records are lost on restart")
        return InMemoryJobRepository()
    return SupabaseJobRepository(get_supabase(), table=config.supabase_jobs_table)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Startup and shutdown logic."""
    logger.info(
        "Starting Sports Posture Analysis Backend",
        extra={
            "port": settings.api_port,
            "job_store_backend": settings.job_store_backend,
            "max_concurrent_jobs": settings.max_concurrent_jobs,
        },
    )

    repository = build_repository(settings)
    engine = build_engine(settings)
    media_store = MediaStore(settings)
    temp_store = TempMediaStore(settings.temp_media_dir, ttl_hours=settings.temp_media_ttl_hours)
    removed = temp_store.cleanup_expired()
    if removed:
        logger.info(f"Removed {removed} stale temporary media director(ies)")

    http_client = httpx.AsyncClient()
    orchestrator = JobOrchestrator(
        repository=repository,
        engine=engine,
        media_store=media_store,
        temp_store=temp_store,
        http_client=http_client,
        settings=settings,
    )

    # Start job dispatcher
    queue = InProcessQueue(
        worker_fn=orchestrator.run_attempt,
        max_workers=settings.max_concurrent_jobs,
        on_abandon=orchestrator.abandon_attempt,
    )
    orchestrator.bind_dispatcher(queue)
    await queue.start()
    logger.info("Job dispatcher started", extra={"workers": settings.max_concurrent_jobs})

    # Wire services into API endpoints
    upload_api.set_media_store(media_store)
    analysis_api.set_orchestrator(orchestrator)
    jobs_api.set_repository(repository)
    jobs_api.set_retry_controller(RetryController(repository, orchestrator))
    health_api.set_components(queue=queue, engine=engine, media_store=media_store)

    yield

    # Shutdown
    logger.info("Shutting down Sports Posture Analysis Backend")
    await queue.stop()
    await http_client.aclose()
    temp_store.cleanup_expired()


app = FastAPI(
    title="Sports Posture Analysis Service",
    description="Asynchronous AI posture analysis for uploaded sports videos and images",
    version="0.1.0",
    lifespan=lifespan,
)

app.add_exception_handler(AnalyzerBaseException, analyzer_exception_handler)
app.add_exception_handler(RequestValidationError, request_validation_exception_handler)
app.add_exception_handler(HTTPException, http_exception_handler)
app.add_exception_handler(Exception, generic_exception_handler)

# CORS - allow frontend dev servers and any configured origins
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Mount routers
app.include_router(health_root_router, tags=["health"])  # GET /health at root
app.include_router(v1_router)  # All /api/v1/* endpoints
