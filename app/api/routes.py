from __future__ import annotations

import asyncio
import logging
import time
from typing import List, Optional, Sequence

from fastapi import APIRouter, Depends, File, HTTPException, Request, UploadFile, status
from fastapi.responses import FileResponse, JSONResponse, StreamingResponse
from starlette.background import BackgroundTask

from app.core.config import OUTPUT_URL_PREFIX, Settings
from app.dependencies import (
    client_identity,
    get_broadcaster,
    get_job_store,
    get_rate_limiter,
    get_reaper,
    get_settings,
    get_worker,
)
from app.models import JobRecord
from app.schemas import (
    AnimateRequest,
    AnimateResponse,
    CreateJobRequest,
    GenerateRequest,
    GenerateResponse,
    HealthResponse,
    JobListResponse,
    JobStatusResponse,
    ReferencePayload,
    StatsResponse,
    UploadPromptsResponse,
    ValidateCookieRequest,
    ValidateCookieResponse,
)
from app.services.events import EventBroadcaster
from app.services.job_store import JobStore
from app.services.rate_limit import SlidingWindowRateLimiter
from app.services.utils import create_job_archive
from app.services.worker import GenerationWorker
from bulkgen.client import ContextReaper, generate_in_context
from bulkgen.exceptions import (
    CredentialError,
    GenerationError,
    GenerationUnavailableError,
    PromptFileError,
    ReferenceLimitError,
    is_auth_failure,
)
from bulkgen.factory import build_client, client_available
from bulkgen.models import AspectRatio, MediaResult, ReferenceImage, VideoModel, validate_references
from bulkgen.prompt_files import parse_prompt_file
from bulkgen.utils import parse_cookie, preview_text, secure_filename, strip_data_uri, to_data_uri

logger = logging.getLogger(__name__)

api_router = APIRouter(prefix="/api", tags=["generation"])
jobs_router = APIRouter(prefix="/api/jobs", tags=["jobs"])


def _failure(status_code: int, body: dict) -> JSONResponse:
    return JSONResponse(status_code=status_code, content=body)


def _failure_status(exc: Exception, message: str) -> int:
    if isinstance(exc, CredentialError) or is_auth_failure(message):
        return status.HTTP_401_UNAUTHORIZED
    return status.HTTP_500_INTERNAL_SERVER_ERROR


def _references(payloads: Sequence[ReferencePayload]) -> List[ReferenceImage]:
    return validate_references(
        ReferenceImage(category=item.category, image=item.image, caption=(item.caption or "").strip() or None)
        for item in payloads
    )


def _job_response(job: JobRecord) -> JobStatusResponse:
    return JobStatusResponse.model_validate(job.to_public_dict())


# ----------------------------------------------------------------------
# Stateless proxy endpoints
# ----------------------------------------------------------------------


@api_router.post("/validate-cookie", response_model=ValidateCookieResponse, response_model_exclude_none=True)
async def validate_cookie(payload: ValidateCookieRequest, settings: Settings = Depends(get_settings)):
    cookie = parse_cookie(payload.cookie).cookie_string
    if not cookie:
        return _failure(status.HTTP_400_BAD_REQUEST, {"valid": False, "message": "Cookie is required"})
    try:
        client = build_client(cookie, settings.generation_client, mock_delay=settings.mock_delay)
        info = await client.validate_credential()
    except GenerationUnavailableError as exc:
        return _failure(status.HTTP_500_INTERNAL_SERVER_ERROR, {"valid": False, "message": str(exc)})
    except Exception as exc:
        logger.warning("Cookie validation failed: %s", exc)
        return ValidateCookieResponse(valid=False, message=str(exc) or "Validation failed")
    return ValidateCookieResponse(valid=info.valid, message=info.message, email=info.email)


@api_router.post("/generate", response_model=GenerateResponse, response_model_exclude_none=True)
async def generate_image(
    payload: GenerateRequest,
    request: Request,
    settings: Settings = Depends(get_settings),
    limiter: SlidingWindowRateLimiter = Depends(get_rate_limiter),
    reaper: ContextReaper = Depends(get_reaper),
):
    if not limiter.allow(client_identity(request)):
        return _failure(
            status.HTTP_429_TOO_MANY_REQUESTS,
            {"success": False, "error": "Too many requests, please slow down"},
        )

    cookie = parse_cookie(payload.cookie).cookie_string
    prompt = (payload.prompt or "").strip()
    if not cookie or not prompt:
        return _failure(status.HTTP_400_BAD_REQUEST, {"success": False, "error": "Cookie and prompt are required"})
    try:
        references = _references(payload.references)
    except ReferenceLimitError as exc:
        return _failure(status.HTTP_400_BAD_REQUEST, {"success": False, "error": str(exc)})

    aspect_ratio = AspectRatio.parse(payload.aspect_ratio)
    logger.info("Generating %r (%s, %d references)", preview_text(prompt), aspect_ratio.value, len(references))
    try:
        client = build_client(cookie, settings.generation_client, mock_delay=settings.mock_delay)
        context = await client.create_context(f"Bulk {int(time.time())}", references)
        try:
            result = await asyncio.wait_for(
                generate_in_context(client, context, prompt, aspect_ratio),
                timeout=settings.generate_timeout,
            )
        finally:
            reaper.discard(client, context)
    except asyncio.TimeoutError:
        return _failure(
            status.HTTP_504_GATEWAY_TIMEOUT,
            {"success": False, "error": f"Request timed out ({int(settings.generate_timeout)}s)"},
        )
    except Exception as exc:
        message = str(exc) or type(exc).__name__
        code = _failure_status(exc, message)
        logger.warning("Generation failed (%d): %s", code, message)
        return _failure(code, {"success": False, "error": message})

    return GenerateResponse(
        success=True,
        image=to_data_uri(result.encoded_media),
        prompt=result.prompt,
        seed=result.seed,
        media_id=result.media_id,
    )


@api_router.post("/animate", response_model=AnimateResponse, response_model_exclude_none=True)
async def animate_image(payload: AnimateRequest, settings: Settings = Depends(get_settings)):
    cookie = parse_cookie(payload.cookie).cookie_string
    script = (payload.video_script or "").strip()
    if not cookie or not payload.image_base64 or not script:
        return _failure(
            status.HTTP_400_BAD_REQUEST,
            {"success": False, "error": "Cookie, image and video script are required"},
        )

    media = MediaResult(
        encoded_media=strip_data_uri(payload.image_base64),
        prompt=payload.image_prompt or "",
        seed=0,
        media_id="",
        aspect_ratio=AspectRatio.landscape,
    )
    try:
        client = build_client(cookie, settings.generation_client, mock_delay=settings.mock_delay)
        result = await asyncio.wait_for(
            client.animate(media, script, VideoModel.parse(payload.model)),
            timeout=settings.animate_timeout,
        )
    except asyncio.TimeoutError:
        return _failure(
            status.HTTP_504_GATEWAY_TIMEOUT,
            {"success": False, "error": f"Video generation timed out ({int(settings.animate_timeout)}s)"},
        )
    except Exception as exc:
        message = str(exc) or type(exc).__name__
        code = _failure_status(exc, message)
        logger.warning("Animation failed (%d): %s", code, message)
        return _failure(code, {"success": False, "error": message})

    return AnimateResponse(
        success=True,
        video=to_data_uri(result.encoded_media, "video/mp4"),
        prompt=result.prompt,
        media_id=result.media_id,
    )


@api_router.post("/upload-prompts", response_model=UploadPromptsResponse, response_model_exclude_none=True)
async def upload_prompts(
    file: Optional[UploadFile] = File(None),
    settings: Settings = Depends(get_settings),
):
    if file is None:
        return _failure(status.HTTP_400_BAD_REQUEST, {"success": False, "error": "No file uploaded"})
    content = await file.read(settings.uploads_max_bytes + 1)
    if len(content) > settings.uploads_max_bytes:
        return _failure(status.HTTP_400_BAD_REQUEST, {"success": False, "error": "File too large"})
    filename = secure_filename(file.filename or "prompts.txt")
    try:
        prompts = parse_prompt_file(filename, content)
    except PromptFileError as exc:
        return _failure(status.HTTP_400_BAD_REQUEST, {"success": False, "error": str(exc)})
    logger.info("Parsed %d prompts from %s", len(prompts), filename)
    return UploadPromptsResponse(success=True, prompts=prompts, count=len(prompts))


# ----------------------------------------------------------------------
# Server-resident queue
# ----------------------------------------------------------------------


@api_router.get("/stats", response_model=StatsResponse)
async def get_stats(
    store: JobStore = Depends(get_job_store),
    worker: GenerationWorker = Depends(get_worker),
) -> StatsResponse:
    stats = await store.stats()
    return StatsResponse(**stats, failureStreak=worker.backoff.streak, workerPaused=worker.paused)


@api_router.post("/worker/resume", response_model=StatsResponse)
async def resume_worker(
    store: JobStore = Depends(get_job_store),
    worker: GenerationWorker = Depends(get_worker),
) -> StatsResponse:
    worker.reset_backoff()
    return await get_stats(store, worker)


@api_router.get("/events")
async def stream_events(broadcaster: EventBroadcaster = Depends(get_broadcaster)) -> StreamingResponse:
    async def event_stream():
        yield ": connected\n\n"
        async for event in broadcaster.subscribe():
            yield event.to_sse()

    return StreamingResponse(
        event_stream(),
        media_type="text/event-stream",
        headers={"Cache-Control": "no-cache", "Connection": "keep-alive", "X-Accel-Buffering": "no"},
    )


@api_router.get("/health", response_model=HealthResponse)
async def health(
    request: Request,
    settings: Settings = Depends(get_settings),
    worker: GenerationWorker = Depends(get_worker),
) -> HealthResponse:
    return HealthResponse(
        status="ok",
        apiAvailable=client_available(settings.generation_client),
        workerRunning=worker.running,
        uptime=round(time.monotonic() - request.app.state.started, 3),
    )


@jobs_router.post("", status_code=status.HTTP_201_CREATED, response_model=JobStatusResponse)
async def create_job(
    payload: CreateJobRequest,
    store: JobStore = Depends(get_job_store),
    worker: GenerationWorker = Depends(get_worker),
) -> JobStatusResponse:
    cookie = parse_cookie(payload.cookie).cookie_string
    try:
        references = _references(payload.references)
        job = await store.create_job(cookie, payload.prompts, payload.aspect_ratio, references)
    except (ValueError, GenerationError) as exc:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc))
    worker.reset_backoff()
    return _job_response(job)


@jobs_router.get("", response_model=JobListResponse)
async def list_jobs(store: JobStore = Depends(get_job_store)) -> JobListResponse:
    jobs = await store.list_jobs()
    return JobListResponse(jobs=[_job_response(job) for job in jobs])


@jobs_router.get("/{job_id}", response_model=JobStatusResponse)
async def get_job(job_id: str, store: JobStore = Depends(get_job_store)) -> JobStatusResponse:
    job = await store.get_job(job_id)
    if job is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Job not found")
    return _job_response(job)


@jobs_router.post("/{job_id}/cancel", response_model=JobStatusResponse)
async def cancel_job(job_id: str, store: JobStore = Depends(get_job_store)) -> JobStatusResponse:
    job = await store.cancel_job(job_id)
    if job is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Job not found")
    return _job_response(job)


@jobs_router.post("/{job_id}/retry", response_model=JobStatusResponse)
async def retry_job(
    job_id: str,
    store: JobStore = Depends(get_job_store),
    worker: GenerationWorker = Depends(get_worker),
) -> JobStatusResponse:
    job = await store.retry_failed_prompts(job_id)
    if job is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Job not found")
    worker.reset_backoff()
    return _job_response(job)


@jobs_router.get("/{job_id}/download", response_class=FileResponse)
async def download_job_archive(
    job_id: str,
    store: JobStore = Depends(get_job_store),
    settings: Settings = Depends(get_settings),
) -> FileResponse:
    job = await store.get_job(job_id)
    if job is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Job not found")
    try:
        archive_path = await create_job_archive(job, settings.output_dir, OUTPUT_URL_PREFIX)
    except PermissionError:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Invalid image path")
    except ValueError as exc:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(exc))

    return FileResponse(
        archive_path,
        media_type="application/zip",
        filename=f"{job.job_id}.zip",
        background=BackgroundTask(archive_path.unlink, missing_ok=True),
    )
