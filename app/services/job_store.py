from __future__ import annotations

import asyncio
import json
import logging
from dataclasses import fields
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional, Sequence
from uuid import uuid4

from app.models import JobRecord, JobStatus, PromptRecord
from bulkgen.models import AspectRatio, PromptStatus, ReferenceImage
from bulkgen.utils import credential_hash
from bulkgen.write_back import WriteBack, read_json_snapshot, write_json_snapshot

logger = logging.getLogger(__name__)

_JOB_FIELDS = {f.name for f in fields(JobRecord)} - {"job_id", "prompts"}
_PROMPT_FIELDS = {f.name for f in fields(PromptRecord)} - {"prompt_id"}


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class JobStore:
    """Authoritative job state: an in-memory cache in front of a JSON snapshot.

    Job creation and status transitions are flushed immediately. Prompt
    updates only mark the cache dirty and are coalesced by the write-back
    debounce, with a periodic safety-net flush while the store is started.
    """

    def __init__(
        self,
        path: Path,
        *,
        max_concurrent_jobs: int = 5,
        save_debounce: float = 2.0,
        safety_flush_interval: Optional[float] = 30.0,
        retention_days: int = 7,
    ) -> None:
        self.path = Path(path)
        self.max_concurrent_jobs = max_concurrent_jobs
        self.retention = timedelta(days=retention_days)
        self._jobs: Dict[str, JobRecord] = {}
        self._lock = asyncio.Lock()
        self._loaded = False
        self.write_back = WriteBack(self._write_snapshot, delay=save_debounce, safety_interval=safety_flush_interval)

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def load(self) -> int:
        raw = read_json_snapshot(self.path, [])
        jobs: Dict[str, JobRecord] = {}
        if not isinstance(raw, list):
            logger.error("Snapshot %s does not hold a job list; starting empty", self.path)
            raw = []
        for entry in raw:
            try:
                job = JobRecord.from_dict(entry)
            except (KeyError, TypeError, ValueError) as exc:
                logger.warning("Skipping unreadable job entry: %s", exc)
                continue
            jobs[job.job_id] = job
        self._jobs = jobs
        self._loaded = True
        logger.info("Loaded %d jobs from %s", len(jobs), self.path)
        return len(jobs)

    async def start(self) -> None:
        if not self._loaded:
            await asyncio.to_thread(self.load)
        self.write_back.start()

    async def stop(self) -> None:
        await self.write_back.stop()

    async def flush(self) -> bool:
        return await self.write_back.flush_now()

    async def _write_snapshot(self) -> None:
        payload = json.dumps([job.to_dict() for job in self._jobs.values()], indent=2)
        await asyncio.to_thread(write_json_snapshot, self.path, payload)

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    @staticmethod
    def _snapshot(job: JobRecord) -> JobRecord:
        return JobRecord.from_dict(job.to_dict())

    async def get_job(self, job_id: str) -> Optional[JobRecord]:
        async with self._lock:
            job = self._jobs.get(job_id)
            return self._snapshot(job) if job else None

    async def list_jobs(self) -> List[JobRecord]:
        async with self._lock:
            return [self._snapshot(job) for job in self._jobs.values()]

    async def next_pending_job(self) -> Optional[JobRecord]:
        async with self._lock:
            job = next((item for item in self._jobs.values() if item.status is JobStatus.pending), None)
            return self._snapshot(job) if job else None

    async def next_pending_prompt(self, job_id: str) -> Optional[PromptRecord]:
        async with self._lock:
            job = self._jobs.get(job_id)
            if job is None:
                return None
            prompt = next((item for item in job.prompts if item.status is PromptStatus.pending), None)
            return PromptRecord.from_dict(prompt.to_dict()) if prompt else None

    async def active_job_count(self) -> int:
        async with self._lock:
            return sum(1 for job in self._jobs.values() if job.status is JobStatus.processing)

    async def can_admit_new_job(self) -> bool:
        return await self.active_job_count() < self.max_concurrent_jobs

    async def stats(self) -> Dict[str, int]:
        async with self._lock:
            statuses = [job.status for job in self._jobs.values()]
        return {
            "active": statuses.count(JobStatus.processing),
            "pending": statuses.count(JobStatus.pending),
            "completed": statuses.count(JobStatus.completed),
            "failed": statuses.count(JobStatus.failed),
            "cancelled": statuses.count(JobStatus.cancelled),
            "maxConcurrent": self.max_concurrent_jobs,
        }

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    async def create_job(
        self,
        credential: str,
        prompt_texts: Sequence[str],
        aspect_ratio: AspectRatio | str | None = None,
        references: Iterable[ReferenceImage] = (),
    ) -> JobRecord:
        texts = [text.strip() for text in prompt_texts if text and text.strip()]
        if not credential:
            raise ValueError("Cookie is required")
        if not texts:
            raise ValueError("At least one prompt is required")

        job_id = f"job_{uuid4().hex[:16]}"
        job = JobRecord(
            job_id=job_id,
            credential=credential,
            credential_hash=credential_hash(credential),
            created_at=_utcnow(),
            aspect_ratio=AspectRatio.parse(aspect_ratio),
            prompts=[PromptRecord(prompt_id=f"p_{uuid4().hex[:12]}", text=text) for text in texts],
            references=list(references),
            total_count=len(texts),
        )
        async with self._lock:
            self._jobs[job_id] = job
            snapshot = self._snapshot(job)
        await self.write_back.flush_now()
        logger.info("Created job %s with %d prompts", job_id, job.total_count)
        return snapshot

    async def update_job(self, job_id: str, **changes: Any) -> Optional[JobRecord]:
        unknown = set(changes) - _JOB_FIELDS
        if unknown:
            raise ValueError(f"Unknown job fields: {', '.join(sorted(unknown))}")
        async with self._lock:
            job = self._jobs.get(job_id)
            if job is None:
                return None
            if "status" in changes:
                changes["status"] = JobStatus(changes["status"])
            for name, value in changes.items():
                setattr(job, name, value)
            snapshot = self._snapshot(job)

        if "status" in changes:
            await self.write_back.flush_now()
        else:
            self.write_back.mark_dirty()
        return snapshot

    async def update_prompt(self, job_id: str, prompt_id: str, **changes: Any) -> Optional[JobRecord]:
        unknown = set(changes) - _PROMPT_FIELDS
        if unknown:
            raise ValueError(f"Unknown prompt fields: {', '.join(sorted(unknown))}")
        async with self._lock:
            job = self._jobs.get(job_id)
            prompt = job.find_prompt(prompt_id) if job else None
            if job is None or prompt is None:
                return None
            if "status" in changes:
                changes["status"] = PromptStatus(changes["status"])
            for name, value in changes.items():
                setattr(prompt, name, value)
            job.recompute_counters()
            snapshot = self._snapshot(job)

        self.write_back.mark_dirty()
        return snapshot

    async def cancel_job(self, job_id: str) -> Optional[JobRecord]:
        job = await self.get_job(job_id)
        if job is None or job.status.terminal:
            return job
        return await self.update_job(job_id, status=JobStatus.cancelled, completed_at=_utcnow())

    async def retry_failed_prompts(self, job_id: str) -> Optional[JobRecord]:
        """Reset errored prompts to pending and reopen the job for the worker."""

        async with self._lock:
            job = self._jobs.get(job_id)
            if job is None:
                return None
            reset = 0
            for prompt in job.prompts:
                if prompt.status is PromptStatus.error:
                    prompt.status = PromptStatus.pending
                    prompt.error = None
                    reset += 1
            job.recompute_counters()
            if reset and job.status is not JobStatus.processing:
                job.status = JobStatus.pending
                job.completed_at = None
                job.error = None
            snapshot = self._snapshot(job)

        if reset:
            await self.write_back.flush_now()
            logger.info("Job %s: %d failed prompts reset to pending", job_id, reset)
        return snapshot

    async def recover_interrupted(self) -> int:
        """Return work left in ``processing`` by a previous process to ``pending``."""

        recovered = 0
        async with self._lock:
            for job in self._jobs.values():
                if job.status is JobStatus.processing:
                    job.status = JobStatus.pending
                    job.started_at = None
                    recovered += 1
                for prompt in job.prompts:
                    if prompt.status is PromptStatus.processing:
                        prompt.status = PromptStatus.pending
                        recovered += 1
        if recovered:
            await self.write_back.flush_now()
            logger.info("Recovered %d interrupted items", recovered)
        return recovered

    async def cleanup_old_jobs(self, now: Optional[datetime] = None) -> int:
        cutoff = (now or _utcnow()) - self.retention
        async with self._lock:
            before = len(self._jobs)
            self._jobs = {
                job_id: job
                for job_id, job in self._jobs.items()
                if job.status not in (JobStatus.completed, JobStatus.failed)
                or (job.completed_at or job.created_at) > cutoff
            }
            removed = before - len(self._jobs)

        if removed:
            await self.write_back.flush_now()
            logger.info("Cleaned up %d old jobs", removed)
        return removed
