"""Local persistence for the client queue: queue metadata and generated media."""

from __future__ import annotations

import asyncio
import json
import logging
import shutil
import zipfile
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional, Sequence

from .write_back import WriteBack, backup_path, read_json_snapshot, write_json_snapshot

logger = logging.getLogger(__name__)

STATE_FILE_NAME = "queue.json"


def write_zip_archive(archive_path: Path, files: Iterable[tuple[Path, str]]) -> None:
    archive_path.parent.mkdir(parents=True, exist_ok=True)
    with zipfile.ZipFile(archive_path, "w", zipfile.ZIP_DEFLATED) as archive:
        for path, name in files:
            archive.write(path, arcname=name)


class MediaStore:
    """Binary results kept on disk, one file per queue item id."""

    def __init__(self, root: Path) -> None:
        self.root = Path(root)
        self.root.mkdir(parents=True, exist_ok=True)

    def path_for(self, item_id: str, suffix: str = ".png") -> Path:
        if not item_id or any(ch in item_id for ch in ("/", "\\", "..")):
            raise ValueError("invalid item id")
        return self.root / f"{item_id}{suffix}"

    def find(self, item_id: str) -> Optional[Path]:
        path = self.path_for(item_id)
        return path if path.exists() else None

    async def save(self, item_id: str, data: bytes, suffix: str = ".png") -> Path:
        path = self.path_for(item_id, suffix)
        await asyncio.to_thread(path.write_bytes, data)
        return path

    def load(self, item_id: str) -> Optional[bytes]:
        path = self.find(item_id)
        return path.read_bytes() if path else None

    def delete(self, item_id: str) -> None:
        for suffix in (".png", ".mp4"):
            self.path_for(item_id, suffix).unlink(missing_ok=True)

    def clear(self) -> None:
        shutil.rmtree(self.root, ignore_errors=True)
        self.root.mkdir(parents=True, exist_ok=True)

    def export_zip(self, item_ids: Sequence[str], archive_path: Path) -> int:
        """Write the stored images for ``item_ids`` into a ZIP as 1.png, 2.png..."""

        files = [path for path in (self.find(item_id) for item_id in item_ids) if path]
        if not files:
            raise ValueError("No completed images available for download")
        write_zip_archive(archive_path, ((path, f"{index}.png") for index, path in enumerate(files, start=1)))
        return len(files)


class QueueStateStore:
    """Debounced JSON snapshot of queue metadata (never binary results)."""

    def __init__(self, path: Path, *, delay: float = 0.5) -> None:
        self.path = Path(path)
        self._payload: Dict[str, Any] = {}
        self.write_back = WriteBack(self._write, delay=delay)

    def save(self, payload: Dict[str, Any]) -> None:
        self._payload = payload
        self.write_back.mark_dirty()

    async def save_now(self, payload: Dict[str, Any]) -> None:
        self._payload = payload
        await self.write_back.flush_now()

    async def close(self) -> None:
        await self.write_back.stop()

    def load(self) -> Optional[Dict[str, Any]]:
        data = read_json_snapshot(self.path, None)
        return data if isinstance(data, dict) else None

    def clear(self) -> None:
        self._payload = {}
        self.write_back.discard()
        self.path.unlink(missing_ok=True)
        backup_path(self.path).unlink(missing_ok=True)

    async def _write(self) -> None:
        payload = json.dumps(self._payload, indent=2)
        await asyncio.to_thread(write_json_snapshot, self.path, payload)


def item_metadata(items: Iterable[Any]) -> List[Dict[str, Any]]:
    return [{"id": item.id, "prompt": item.prompt, "status": item.status.value, "error": item.error} for item in items]
