"""SEO Resolution Job Service - FastAPI application."""

from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
import structlog

from app.config import settings
from app.api.v1.router import v1_router
from app.api.v1.health import router as health_root_router
from app.api.v1 import jobs as jobs_api
from app.errors import register_exception_handlers
from app.jobs.in_process_queue import InProcessQueue
from app.jobs.processors import registry as processor_registry
from app.jobs.supabase_store import build_store
from app.logging_config import configure_logging

logger = structlog.get_logger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Startup and shutdown logic."""
    logger.info(
        "service_starting",
        port=settings.compute_port,
        job_store_backend=settings.job_store_backend,
        max_concurrent_jobs=settings.max_concurrent_jobs,
        issue_types=processor_registry.issue_types(),
    )

    # Start job dispatcher
    dispatcher = InProcessQueue(store=build_store(), processors=processor_registry)
    await dispatcher.start()
    app.state.dispatcher = dispatcher
    jobs_api.set_dispatcher(dispatcher)
    logger.info("job_dispatcher_started")

    yield

    logger.info("service_stopping")
    await dispatcher.stop()
    jobs_api.set_dispatcher(None)


def create_app() -> FastAPI:
    configure_logging(settings.log_level, json_output=settings.json_logs)

    app = FastAPI(
        title="SEO Resolution Job Service",
        description="Background bulk SEO remediation jobs with progress polling",
        version="0.1.0",
        lifespan=lifespan,
    )

    # CORS: dashboard dev servers and any configured origins
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["http://localhost:5173", "http://localhost:3000", "*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    register_exception_handlers(app)

    # Mount routers
    app.include_router(health_root_router, tags=["health"])  # GET /health at root
    app.include_router(v1_router)  # All /api/v1/* endpoints
    return app


app = create_app()
