import asyncio
import logging
import uuid
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from starlette.middleware.base import BaseHTTPMiddleware

from . import __version__
from .config import settings
from .database import create_tables
from .utils.logging_config import request_id_var, setup_logging

from .routers import health, ingestion, metrics

logger = logging.getLogger("booking_ingest")
worker_logger = logging.getLogger("ingest_worker")


async def ingest_worker(stop: asyncio.Event, poll_interval: float) -> None:
    """Run an ingest cycle every poll_interval seconds until stop is set."""
    from .services.ingestion_service import run_ingest_cycle

    worker_logger.info(f"Ingest worker started (interval: {poll_interval}s)")
    while not stop.is_set():
        try:
            # the pipeline is synchronous (SQLAlchemy, Gmail client); keep it off the loop
            statuses = await asyncio.to_thread(run_ingest_cycle)
            if statuses:
                worker_logger.info(f"Ingest cycle: {statuses}")
        except Exception as e:
            worker_logger.error(f"Ingest cycle crashed: {e}", exc_info=True)
        try:
            await asyncio.wait_for(stop.wait(), timeout=poll_interval)
        except asyncio.TimeoutError:
            pass
    worker_logger.info("Ingest worker stopped")


@asynccontextmanager
async def lifespan(app: FastAPI):
    setup_logging(settings.log_level, json_format=settings.log_json)
    logger.info(f"Starting booking-ingest {__version__} ({settings.environment})")
    create_tables()

    stop = asyncio.Event()
    worker_task = None
    if settings.ingest_worker_enabled:
        worker_task = asyncio.create_task(ingest_worker(stop, settings.worker_poll_interval))
    else:
        logger.info("Ingest worker disabled; use worker.py or the /api/ingestion endpoints")

    yield

    logger.info("Shutting down booking-ingest...")
    stop.set()
    if worker_task:
        # the stop flag is checked between cycles, so a running cycle (page plus retry sweep) completes first
        await worker_task


app = FastAPI(
    title="Booking Ingest API",
    description="Booking confirmation email ingestion and reconciliation",
    version=__version__,
    lifespan=lifespan,
)


class RequestIdMiddleware(BaseHTTPMiddleware):
    """Echo X-Request-ID (or mint a short one) and stamp it on log lines."""

    async def dispatch(self, request: Request, call_next):
        request_id = request.headers.get("X-Request-ID") or uuid.uuid4().hex[:8]
        request.state.request_id = request_id
        token = request_id_var.set(request_id)
        try:
            response = await call_next(request)
        finally:
            request_id_var.reset(token)
        response.headers["X-Request-ID"] = request_id
        return response


app.add_middleware(RequestIdMiddleware)

app.include_router(health.router)
app.include_router(ingestion.router)
app.include_router(metrics.router)


@app.get("/")
async def root():
    return {"name": "booking-ingest", "version": __version__, "docs": "/docs"}
