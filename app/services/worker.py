"""Server-resident generation worker.

A polling loop picks the next pending job and drains its prompts one at a
time through the per-credential client pool. Only one pass runs at a time:
a tick that fires while a pass is still running is skipped, not queued.
"""

from __future__ import annotations

import asyncio
import gc
import logging
import random
from contextlib import suppress
from datetime import datetime, timezone
from pathlib import Path
from typing import Awaitable, Callable, Optional

from app.models import JobRecord, JobStatus, PromptRecord
from app.services import events
from app.services.client_pool import ClientPool
from app.services.events import EventBroadcaster
from app.services.job_store import JobStore
from bulkgen.backoff import BackoffController
from bulkgen.client import generate_in_context
from bulkgen.exceptions import ContextError, is_stale_context_failure
from bulkgen.utils import decode_media, ensure_png, preview_text

logger = logging.getLogger(__name__)

SleepFunc = Callable[[float], Awaitable[None]]


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class GenerationWorker:
    def __init__(
        self,
        store: JobStore,
        pool: ClientPool,
        broadcaster: EventBroadcaster,
        output_dir: Path,
        *,
        backoff: Optional[BackoffController] = None,
        poll_interval: float = 3.0,
        gc_every: int = 5,
        cleanup_probability: float = 1 / 1200,
        output_url_prefix: str = "/output",
        sleep: SleepFunc = asyncio.sleep,
        rng: Callable[[], float] = random.random,
    ) -> None:
        self.store = store
        self.pool = pool
        self.events = broadcaster
        self.output_dir = Path(output_dir)
        self.backoff = backoff or BackoffController(4.0, 60.0, 5)
        self.poll_interval = poll_interval
        self.gc_every = gc_every
        self.cleanup_probability = cleanup_probability
        self.output_url_prefix = output_url_prefix.rstrip("/")
        self._sleep = sleep
        self._rng = rng
        self._is_processing = False
        self._items_since_gc = 0
        self._loop_task: Optional[asyncio.Task[None]] = None
        self._pass_task: Optional[asyncio.Task[bool]] = None
        self.started_at: Optional[datetime] = None

    @property
    def running(self) -> bool:
        return self._loop_task is not None and not self._loop_task.done()

    @property
    def paused(self) -> bool:
        return self.backoff.exhausted

    async def start(self) -> None:
        if self.running:
            return
        recovered = await self.store.recover_interrupted()
        if recovered:
            logger.warning("Worker startup reset %d interrupted items to pending", recovered)
        self.output_dir.mkdir(parents=True, exist_ok=True)
        self.started_at = _utcnow()
        self._loop_task = asyncio.create_task(self._run())
        logger.info("Generation worker started (poll every %.1fs)", self.poll_interval)

    async def stop(self) -> None:
        for task in (self._loop_task, self._pass_task):
            if task is not None and not task.done():
                task.cancel()
                with suppress(asyncio.CancelledError):
                    await task
        self._loop_task = None
        self._pass_task = None
        self.pool.clear()
        logger.info("Generation worker stopped")

    def reset_backoff(self) -> None:
        """Clear the failure streak after an operator action (retry, resume, new job)."""

        self.backoff.reset()

    async def _run(self) -> None:
        while True:
            if self._pass_task is not None and not self._pass_task.done():
                logger.debug("Previous pass still running; skipping tick")
            else:
                self._pass_task = asyncio.create_task(self.tick())
            await asyncio.sleep(self.poll_interval)

    async def tick(self) -> bool:
        if self._is_processing:
            return False
        self._is_processing = True
        try:
            if self._rng() < self.cleanup_probability:
                await self.store.cleanup_old_jobs()
            return await self.process_next() is not None
        except Exception:
            logger.exception("Worker pass failed")
            return False
        finally:
            self._is_processing = False

    async def process_next(self) -> Optional[JobRecord]:
        if self.backoff.exhausted:
            logger.debug("Failure streak at %d; waiting for retry or resume", self.backoff.streak)
            return None
        if not await self.store.can_admit_new_job():
            return None
        job = await self.store.next_pending_job()
        if job is None:
            return None
        if await self.store.next_pending_prompt(job.job_id) is None:
            # Interrupted after its last prompt finished.
            return await self._finish(job.job_id)
        return await self.drain_job(job.job_id)

    async def drain_job(self, job_id: str) -> Optional[JobRecord]:
        job = await self.store.get_job(job_id)
        if job is None or await self.store.next_pending_prompt(job_id) is None:
            return job

        if job.status is JobStatus.pending:
            job = await self.store.update_job(job_id, status=JobStatus.processing, started_at=_utcnow())
            self.events.publish(events.JOB_STARTED, jobId=job_id, totalCount=job.total_count)
            logger.info("Job %s started (%d prompts)", job_id, job.total_count)

        while True:
            live = await self.store.get_job(job_id)
            if live is None or live.status is JobStatus.cancelled:
                logger.info("Job %s cancelled; stopping drain", job_id)
                return live

            prompt = await self.store.next_pending_prompt(job_id)
            if prompt is None:
                break

            if self.backoff.exhausted:
                return await self._abort(job_id)

            await self._process_prompt(live, prompt)
            self._items_since_gc += 1
            if self.gc_every and self._items_since_gc >= self.gc_every:
                self._items_since_gc = 0
                gc.collect()

            if await self.store.next_pending_prompt(job_id) is not None:
                await self._sleep(self.backoff.delay)

        return await self._finish(job_id)

    async def _process_prompt(self, job: JobRecord, prompt: PromptRecord) -> None:
        await self.store.update_prompt(job.job_id, prompt.prompt_id, status="processing")
        self.events.publish(
            events.PROMPT_PROCESSING,
            jobId=job.job_id,
            promptId=prompt.prompt_id,
            text=preview_text(prompt.text),
        )
        try:
            image_url = await self._generate(job, prompt)
        except Exception as exc:
            message = str(exc) or type(exc).__name__
            streak = self.backoff.record_failure()
            updated = await self.store.update_prompt(job.job_id, prompt.prompt_id, status="error", error=message)
            self.events.publish(
                events.PROMPT_ERROR,
                jobId=job.job_id,
                promptId=prompt.prompt_id,
                error=message,
                progress=updated.progress if updated else None,
            )
            logger.warning(
                "Job %s prompt %s failed (streak %d, next delay %.0fs): %s",
                job.job_id,
                prompt.prompt_id,
                streak,
                self.backoff.delay,
                message,
            )
            if isinstance(exc, ContextError) or is_stale_context_failure(message):
                self.pool.invalidate(job.credential)
            return

        self.backoff.record_success()
        updated = await self.store.update_prompt(
            job.job_id, prompt.prompt_id, status="completed", image_url=image_url, error=None
        )
        self.events.publish(
            events.PROMPT_COMPLETED,
            jobId=job.job_id,
            promptId=prompt.prompt_id,
            imageUrl=image_url,
            progress=updated.progress if updated else None,
        )

    async def _generate(self, job: JobRecord, prompt: PromptRecord) -> str:
        client, context = await self.pool.acquire(job.credential, f"Bulk {job.job_id}", job.references)
        result = await generate_in_context(client, context, prompt.text, job.aspect_ratio)
        data = ensure_png(decode_media(result.encoded_media))
        filename = f"{job.job_id}_{prompt.prompt_id}.png"
        self.output_dir.mkdir(parents=True, exist_ok=True)
        await asyncio.to_thread((self.output_dir / filename).write_bytes, data)
        return f"{self.output_url_prefix}/{filename}"

    async def _abort(self, job_id: str) -> Optional[JobRecord]:
        message = f"Stopped after {self.backoff.streak} consecutive failures"
        job = await self.store.update_job(job_id, status=JobStatus.failed, completed_at=_utcnow(), error=message)
        logger.error("Job %s aborted: %s", job_id, message)
        self._publish_terminal(job, error=message)
        return job

    async def _finish(self, job_id: str) -> Optional[JobRecord]:
        job = await self.store.update_job(job_id, status=JobStatus.completed, completed_at=_utcnow())
        if job is not None:
            logger.info(
                "Job %s completed: %d/%d succeeded, %d failed",
                job_id,
                job.completed_count,
                job.total_count,
                job.failed_count,
            )
            self._publish_terminal(job)
        return job

    def _publish_terminal(self, job: Optional[JobRecord], error: Optional[str] = None) -> None:
        if job is None:
            return
        self.events.publish(
            events.JOB_COMPLETED,
            jobId=job.job_id,
            status=job.status.value,
            completedCount=job.completed_count,
            failedCount=job.failed_count,
            totalCount=job.total_count,
            error=error,
        )
