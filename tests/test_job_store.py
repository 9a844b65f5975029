from __future__ import annotations

import asyncio
import json
from datetime import datetime, timedelta, timezone
from pathlib import Path

import pytest

from app.models import JobStatus
from app.services.job_store import JobStore
from bulkgen.models import AspectRatio, PromptStatus
from bulkgen.utils import credential_hash
from bulkgen.write_back import backup_path


@pytest.mark.asyncio
async def test_create_job_persists_immediately(store: JobStore) -> None:
    job = await store.create_job("cookie-a", ["cat", " ", "dog"], "16:9")

    assert job.status is JobStatus.pending
    assert job.total_count == 2
    assert job.aspect_ratio is AspectRatio.landscape
    assert job.credential_hash == credential_hash("cookie-a")
    assert [prompt.status for prompt in job.prompts] == [PromptStatus.pending, PromptStatus.pending]
    assert store.write_back.flush_count == 1

    saved = json.loads(store.path.read_text(encoding="utf-8"))
    assert saved[0]["id"] == job.job_id
    assert [prompt["text"] for prompt in saved[0]["prompts"]] == ["cat", "dog"]


@pytest.mark.asyncio
async def test_create_job_requires_cookie_and_prompts(store: JobStore) -> None:
    with pytest.raises(ValueError):
        await store.create_job("", ["cat"])
    with pytest.raises(ValueError):
        await store.create_job("cookie", ["", "  "])


@pytest.mark.asyncio
async def test_returned_jobs_are_snapshots(store: JobStore) -> None:
    job = await store.create_job("cookie", ["cat"])
    job.prompts[0].status = PromptStatus.completed

    fresh = await store.get_job(job.job_id)
    assert fresh.prompts[0].status is PromptStatus.pending


@pytest.mark.asyncio
async def test_update_prompt_recomputes_counters(store: JobStore) -> None:
    job = await store.create_job("cookie", ["a", "b", "c", "d"])
    first, second = job.prompts[0], job.prompts[1]

    await store.update_prompt(job.job_id, first.prompt_id, status="completed", image_url="/output/a.png")
    updated = await store.update_prompt(job.job_id, second.prompt_id, status="error", error="boom")

    assert updated.completed_count == 1
    assert updated.failed_count == 1
    assert updated.progress == 50
    assert updated.completed_count + updated.failed_count <= updated.total_count
    assert updated.total_count == 4


@pytest.mark.asyncio
async def test_prompt_updates_are_debounced_but_status_changes_flush(store: JobStore) -> None:
    job = await store.create_job("cookie", [f"prompt {i}" for i in range(10)])
    assert store.write_back.flush_count == 1

    for prompt in job.prompts:
        await store.update_prompt(job.job_id, prompt.prompt_id, status="processing")
    assert store.write_back.flush_count == 1
    assert store.write_back.dirty

    await asyncio.sleep(0.2)
    assert store.write_back.flush_count == 2
    assert not store.write_back.dirty

    await store.update_job(job.job_id, status=JobStatus.processing)
    assert store.write_back.flush_count == 3


@pytest.mark.asyncio
async def test_non_status_job_update_is_debounced(store: JobStore) -> None:
    job = await store.create_job("cookie", ["cat"])

    await store.update_job(job.job_id, error="note")

    assert store.write_back.flush_count == 1
    assert store.write_back.dirty


@pytest.mark.asyncio
async def test_unknown_fields_rejected(store: JobStore) -> None:
    job = await store.create_job("cookie", ["cat"])
    with pytest.raises(ValueError):
        await store.update_job(job.job_id, colour="red")
    with pytest.raises(ValueError):
        await store.update_prompt(job.job_id, job.prompts[0].prompt_id, seed=3)


@pytest.mark.asyncio
async def test_missing_records_return_none(store: JobStore) -> None:
    job = await store.create_job("cookie", ["cat"])

    assert await store.get_job("job_missing") is None
    assert await store.update_job("job_missing", status="failed") is None
    assert await store.update_prompt(job.job_id, "p_missing", status="error") is None
    assert await store.next_pending_prompt("job_missing") is None


@pytest.mark.asyncio
async def test_pending_selection_follows_insertion_order(store: JobStore) -> None:
    first = await store.create_job("cookie", ["a", "b"])
    second = await store.create_job("cookie", ["c"])

    assert (await store.next_pending_job()).job_id == first.job_id
    await store.update_prompt(first.job_id, first.prompts[0].prompt_id, status="completed")
    assert (await store.next_pending_prompt(first.job_id)).text == "b"

    await store.update_job(first.job_id, status="processing")
    assert (await store.next_pending_job()).job_id == second.job_id


@pytest.mark.asyncio
async def test_admission_ceiling(tmp_path: Path) -> None:
    store = JobStore(tmp_path / "jobs.json", max_concurrent_jobs=1, safety_flush_interval=None)
    job = await store.create_job("cookie", ["cat"])
    assert await store.can_admit_new_job()

    await store.update_job(job.job_id, status="processing")

    assert await store.active_job_count() == 1
    assert not await store.can_admit_new_job()
    stats = await store.stats()
    assert stats["active"] == 1
    assert stats["maxConcurrent"] == 1


@pytest.mark.asyncio
async def test_cancel_job(store: JobStore) -> None:
    job = await store.create_job("cookie", ["cat"])

    cancelled = await store.cancel_job(job.job_id)

    assert cancelled.status is JobStatus.cancelled
    assert cancelled.completed_at is not None
    assert (await store.cancel_job(job.job_id)).status is JobStatus.cancelled


@pytest.mark.asyncio
async def test_retry_failed_prompts_reopens_job(store: JobStore) -> None:
    job = await store.create_job("cookie", ["a", "b", "c", "d"])
    statuses = ["completed", "error", "error", "completed"]
    for prompt, status in zip(job.prompts, statuses):
        await store.update_prompt(job.job_id, prompt.prompt_id, status=status, error="bad" if status == "error" else None)
    await store.update_job(job.job_id, status="failed", error="Stopped after 5 consecutive failures")

    retried = await store.retry_failed_prompts(job.job_id)

    assert [prompt.status for prompt in retried.prompts] == [
        PromptStatus.completed,
        PromptStatus.pending,
        PromptStatus.pending,
        PromptStatus.completed,
    ]
    assert retried.prompts[1].error is None
    assert retried.completed_count == 2
    assert retried.failed_count == 0
    assert retried.status is JobStatus.pending
    assert retried.error is None


@pytest.mark.asyncio
async def test_cleanup_removes_only_expired_terminal_jobs(store: JobStore) -> None:
    now = datetime.now(timezone.utc)
    old = await store.create_job("cookie", ["old"])
    recent = await store.create_job("cookie", ["recent"])
    stale_pending = await store.create_job("cookie", ["waiting"])
    await store.update_job(old.job_id, status="completed", completed_at=now - timedelta(days=8))
    await store.update_job(recent.job_id, status="completed", completed_at=now - timedelta(hours=1))
    await store.update_job(stale_pending.job_id, created_at=now - timedelta(days=30))
    flushes = store.write_back.flush_count

    removed = await store.cleanup_old_jobs(now=now)

    assert removed == 1
    assert await store.get_job(old.job_id) is None
    assert await store.get_job(recent.job_id) is not None
    assert await store.get_job(stale_pending.job_id) is not None
    assert store.write_back.flush_count == flushes + 1


@pytest.mark.asyncio
async def test_recovery_resets_only_interrupted_items(store: JobStore) -> None:
    job = await store.create_job("cookie", ["done", "busy", "waiting"])
    done, busy, _ = job.prompts
    await store.update_job(job.job_id, status="processing", started_at=datetime.now(timezone.utc))
    await store.update_prompt(job.job_id, done.prompt_id, status="completed", image_url="/output/done.png")
    await store.update_prompt(job.job_id, busy.prompt_id, status="processing")
    await store.flush()
    before = await store.get_job(job.job_id)

    restarted = JobStore(store.path, safety_flush_interval=None)
    restarted.load()
    recovered = await restarted.recover_interrupted()

    after = await restarted.get_job(job.job_id)
    assert recovered == 2
    assert after.status is JobStatus.pending
    assert after.started_at is None
    assert after.prompts[1].status is PromptStatus.pending
    assert after.prompts[0].to_dict() == before.prompts[0].to_dict()
    assert after.prompts[2].to_dict() == before.prompts[2].to_dict()
    assert {**after.prompts[1].to_dict(), "status": "processing"} == before.prompts[1].to_dict()

    on_disk = json.loads(restarted.path.read_text(encoding="utf-8"))
    assert on_disk[0]["prompts"][1]["status"] == "pending"


@pytest.mark.asyncio
async def test_corrupt_snapshot_falls_back_to_backup(store: JobStore) -> None:
    first = await store.create_job("cookie", ["a"])
    await store.create_job("cookie", ["b"])
    assert backup_path(store.path).exists()

    store.path.write_text("{not json", encoding="utf-8")
    reloaded = JobStore(store.path, safety_flush_interval=None)

    assert reloaded.load() == 1
    assert (await reloaded.get_job(first.job_id)) is not None


def test_missing_snapshot_starts_empty(tmp_path: Path) -> None:
    store = JobStore(tmp_path / "absent" / "jobs.json", safety_flush_interval=None)

    assert store.load() == 0


@pytest.mark.asyncio
async def test_stop_flushes_pending_changes(tmp_path: Path) -> None:
    store = JobStore(tmp_path / "jobs.json", save_debounce=60, safety_flush_interval=None)
    await store.start()
    job = await store.create_job("cookie", ["cat"])
    await store.update_prompt(job.job_id, job.prompts[0].prompt_id, status="completed")

    await store.stop()

    saved = json.loads(store.path.read_text(encoding="utf-8"))
    assert saved[0]["prompts"][0]["status"] == "completed"
    assert saved[0]["completedCount"] == 1
