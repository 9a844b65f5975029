from __future__ import annotations

from fastapi import Request

from app.core.config import Settings
from app.services.events import EventBroadcaster
from app.services.job_store import JobStore
from app.services.rate_limit import SlidingWindowRateLimiter
from app.services.worker import GenerationWorker
from bulkgen.client import ContextReaper


def get_settings(request: Request) -> Settings:
    return request.app.state.settings


def get_job_store(request: Request) -> JobStore:
    return request.app.state.job_store


def get_worker(request: Request) -> GenerationWorker:
    return request.app.state.worker


def get_broadcaster(request: Request) -> EventBroadcaster:
    return request.app.state.broadcaster


def get_rate_limiter(request: Request) -> SlidingWindowRateLimiter:
    return request.app.state.rate_limiter


def get_reaper(request: Request) -> ContextReaper:
    return request.app.state.reaper


def client_identity(request: Request) -> str:
    forwarded = request.headers.get("x-forwarded-for")
    if forwarded:
        return forwarded.split(",")[0].strip()
    return request.client.host if request.client else "unknown"
