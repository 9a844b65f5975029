from __future__ import annotations

import asyncio
import os
import tempfile
from pathlib import Path
from typing import Optional

from app.models import JobRecord
from bulkgen.models import PromptStatus
from bulkgen.queue_store import write_zip_archive


def resolve_output_path(output_dir: Path, image_url: Optional[str], url_prefix: str = "/output") -> Optional[Path]:
    """Map a public ``/output/...`` URL back onto the output directory."""

    if not image_url:
        return None
    prefix = url_prefix.rstrip("/") + "/"
    if not image_url.startswith(prefix):
        return None
    root = output_dir.resolve()
    candidate = (root / image_url[len(prefix):]).resolve()
    if root not in candidate.parents:
        raise PermissionError(f"Refusing to read outside {root}")
    return candidate


async def create_job_archive(job: JobRecord, output_dir: Path, url_prefix: str = "/output") -> Path:
    """ZIP every completed image of ``job`` into a temporary file the caller must delete."""

    files = []
    for index, prompt in enumerate(job.prompts, start=1):
        if prompt.status is not PromptStatus.completed:
            continue
        path = resolve_output_path(output_dir, prompt.image_url, url_prefix)
        if path and path.exists():
            files.append((path, f"{index}.png"))
    if not files:
        raise ValueError("No completed images available for download")

    archive_fd, archive_path_str = tempfile.mkstemp(prefix=f"{job.job_id}_", suffix=".zip")
    os.close(archive_fd)
    archive_path = Path(archive_path_str)
    await asyncio.to_thread(write_zip_archive, archive_path, files)
    return archive_path
