from __future__ import annotations

import logging
import time
from contextlib import asynccontextmanager
from functools import partial
from typing import Optional

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from fastapi.staticfiles import StaticFiles

from app.api.routes import api_router, jobs_router
from app.core.config import OUTPUT_URL_PREFIX, Settings, configure_logging, get_settings
from app.services.client_pool import ClientPool
from app.services.events import EventBroadcaster
from app.services.job_store import JobStore
from app.services.rate_limit import SlidingWindowRateLimiter
from app.services.worker import GenerationWorker
from bulkgen.backoff import BackoffController
from bulkgen.client import ContextReaper
from bulkgen.factory import build_client

logger = logging.getLogger(__name__)

SECURITY_HEADERS = {
    "X-Content-Type-Options": "nosniff",
    "X-Frame-Options": "DENY",
    "X-XSS-Protection": "1; mode=block",
    "Referrer-Policy": "strict-origin-when-cross-origin",
}


@asynccontextmanager
async def lifespan(app: FastAPI):
    settings: Settings = app.state.settings
    store: JobStore = app.state.job_store
    worker: GenerationWorker = app.state.worker

    await store.start()
    if settings.worker_enabled:
        await worker.start()
    logger.info("%s started (storage: %s)", settings.app_name, settings.storage_root)
    try:
        yield
    finally:
        await worker.stop()
        await store.stop()
        logger.info("%s stopped", settings.app_name)


def create_app(settings: Optional[Settings] = None) -> FastAPI:
    settings = settings or get_settings()
    configure_logging(settings.log_level)
    settings.ensure_directories()

    app = FastAPI(title=settings.app_name, version="1.0.0", lifespan=lifespan)

    store = JobStore(
        settings.jobs_file,
        max_concurrent_jobs=settings.max_concurrent_jobs,
        save_debounce=settings.save_debounce,
        safety_flush_interval=settings.safety_flush_interval,
        retention_days=settings.retention_days,
    )
    reaper = ContextReaper()
    pool = ClientPool(
        partial(build_client, client_path=settings.generation_client, mock_delay=settings.mock_delay),
        max_size=settings.max_pool_size,
        refresh_every=settings.context_refresh_every,
        reaper=reaper,
    )
    broadcaster = EventBroadcaster()
    worker = GenerationWorker(
        store,
        pool,
        broadcaster,
        settings.output_dir,
        backoff=BackoffController(settings.base_delay, settings.max_delay, settings.failure_threshold),
        poll_interval=settings.poll_interval,
        gc_every=settings.gc_every,
        cleanup_probability=settings.cleanup_probability,
        output_url_prefix=OUTPUT_URL_PREFIX,
    )

    app.state.settings = settings
    app.state.job_store = store
    app.state.broadcaster = broadcaster
    app.state.worker = worker
    app.state.reaper = reaper
    app.state.rate_limiter = SlidingWindowRateLimiter(settings.rate_limit_requests, settings.rate_limit_window)
    app.state.started = time.monotonic()

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_allow_origins,
        allow_methods=settings.cors_allow_methods,
        allow_headers=settings.cors_allow_headers,
        allow_credentials=settings.cors_allow_credentials,
    )

    @app.middleware("http")
    async def security_headers(request: Request, call_next):
        response = await call_next(request)
        for name, value in SECURITY_HEADERS.items():
            response.headers.setdefault(name, value)
        return response

    @app.exception_handler(RequestValidationError)
    async def invalid_request(request: Request, exc: RequestValidationError) -> JSONResponse:
        errors = exc.errors()
        error = errors[0] if errors else {}
        location = ".".join(str(part) for part in error.get("loc", ()) if part != "body")
        message = error.get("msg", "Invalid request")
        if location:
            message = f"{location}: {message}"
        logger.info("Rejected malformed request to %s: %s", request.url.path, message)
        return JSONResponse(status_code=400, content={"success": False, "error": message})

    @app.exception_handler(Exception)
    async def unhandled_exception(request: Request, exc: Exception) -> JSONResponse:
        logger.exception("Unhandled error on %s %s", request.method, request.url.path)
        return JSONResponse(status_code=500, content={"success": False, "error": "Internal server error"})

    app.include_router(api_router)
    app.include_router(jobs_router)
    app.mount(OUTPUT_URL_PREFIX, StaticFiles(directory=settings.output_dir), name="output")
    return app


app = create_app()
