"""Coalescing write-back persistence shared by the job store and the client queue."""

from __future__ import annotations

import asyncio
import json
import logging
import os
import shutil
from contextlib import suppress
from pathlib import Path
from typing import Any, Awaitable, Callable, Optional

logger = logging.getLogger(__name__)

WriteFunc = Callable[[], Awaitable[None]]


class WriteBack:
    """Dirty flag plus a debounce timer in front of an async write function.

    ``mark_dirty`` restarts the debounce timer so bursts of changes collapse
    into one write. ``flush_now`` writes immediately. When started, a
    safety-net loop flushes any pending change every ``safety_interval``
    seconds, and ``stop`` performs a final flush.
    """

    def __init__(self, write: WriteFunc, *, delay: float, safety_interval: Optional[float] = None) -> None:
        self._write = write
        self.delay = delay
        self.safety_interval = safety_interval
        self.flush_count = 0
        self._dirty = False
        self._timer: Optional[asyncio.Task[None]] = None
        self._safety_task: Optional[asyncio.Task[None]] = None
        self._lock = asyncio.Lock()

    @property
    def dirty(self) -> bool:
        return self._dirty

    def start(self) -> None:
        if self.safety_interval and self._safety_task is None:
            self._safety_task = asyncio.create_task(self._safety_loop())

    async def stop(self) -> None:
        self._cancel_timer()
        if self._safety_task:
            self._safety_task.cancel()
            with suppress(asyncio.CancelledError):
                await self._safety_task
            self._safety_task = None
        await self.flush()

    def mark_dirty(self) -> None:
        self._dirty = True
        self._cancel_timer()
        try:
            asyncio.get_running_loop()
        except RuntimeError:
            # No loop: the next explicit flush picks the change up.
            return
        self._timer = asyncio.create_task(self._debounced())

    def discard(self) -> None:
        self._dirty = False
        self._cancel_timer()

    async def flush_now(self) -> bool:
        self._dirty = True
        self._cancel_timer()
        return await self.flush()

    async def flush(self) -> bool:
        async with self._lock:
            if not self._dirty:
                return False
            self._dirty = False
            try:
                await self._write()
            except Exception:
                self._dirty = True
                logger.exception("Write-back flush failed; keeping changes in memory")
                return False
            self.flush_count += 1
            return True

    def _cancel_timer(self) -> None:
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None

    async def _debounced(self) -> None:
        await asyncio.sleep(self.delay)
        self._timer = None
        await self.flush()

    async def _safety_loop(self) -> None:
        try:
            while True:
                await asyncio.sleep(self.safety_interval)
                if self._dirty:
                    await self.flush()
        except asyncio.CancelledError:
            return


def backup_path(path: Path) -> Path:
    return path.with_name(path.name + ".bak")


def write_json_snapshot(path: Path, payload: str) -> None:
    """Copy the current snapshot to ``.bak`` then replace the primary file."""

    path.parent.mkdir(parents=True, exist_ok=True)
    if path.exists():
        try:
            shutil.copyfile(path, backup_path(path))
        except OSError as exc:
            logger.warning("Could not refresh backup for %s: %s", path, exc)
    tmp = path.with_name(path.name + ".tmp")
    tmp.write_text(payload, encoding="utf-8")
    os.replace(tmp, path)


def read_json_snapshot(path: Path, default: Any) -> Any:
    """Load the primary snapshot, falling back to the backup, then to ``default``."""

    for candidate in (path, backup_path(path)):
        if not candidate.exists():
            continue
        try:
            return json.loads(candidate.read_text(encoding="utf-8"))
        except (OSError, ValueError) as exc:
            logger.error("Failed to read snapshot %s: %s", candidate, exc)
            continue
    return default
