"""Client-side queue engine for the stateless proxy deployment.

The server holds no job state in this mode: the client expands prompts into
a flat list of items and drains them one at a time against
``POST /api/generate``, applying the same backoff and abort rules as the
server worker. Item metadata is persisted (debounced) to a JSON file and
generated images to a per-item media store, so an interrupted queue can be
restored and resumed.
"""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Awaitable, Callable, Dict, Iterable, List, Optional, Sequence
from uuid import uuid4

from .backoff import BackoffController
from .exceptions import GenerationError
from .models import (
    AspectRatio,
    CredentialInfo,
    PromptStatus,
    ReferenceCategory,
    ReferenceImage,
    validate_references,
)
from .queue_store import MediaStore, QueueStateStore, item_metadata
from .transport import ProxyTransport
from .utils import decode_media, encode_media, preview_text

logger = logging.getLogger(__name__)

BASE_DELAY = 5.0
MAX_DELAY = 32.0
FAILURE_THRESHOLD = 5

EventCallback = Callable[[str, Dict[str, Any]], None]
SleepFunc = Callable[[float], Awaitable[Any]]


def generate_item_id() -> str:
    return f"img_{int(time.time() * 1000)}_{uuid4().hex[:8]}"


@dataclass
class QueueItem:
    id: str
    prompt: str
    status: PromptStatus = PromptStatus.pending
    error: Optional[str] = None
    result: Optional[Path] = None


def build_queue_items(prompts: Iterable[str], count: int = 1, style_prefix: str = "") -> List[QueueItem]:
    """Expand prompt lines x repeat count x style prefix into a flat ordered list."""

    prefix = (style_prefix or "").strip()
    repeat = max(int(count or 1), 1)
    items: List[QueueItem] = []
    for text in prompts:
        text = text.strip()
        if not text:
            continue
        full_prompt = f"{prefix} {text}" if prefix else text
        items.extend(QueueItem(id=generate_item_id(), prompt=full_prompt) for _ in range(repeat))
    return items


class ClientQueue:
    def __init__(
        self,
        transport: ProxyTransport,
        *,
        cookie: str,
        state_store: QueueStateStore,
        media_store: MediaStore,
        aspect_ratio: AspectRatio = AspectRatio.landscape,
        references: Sequence[ReferenceImage] = (),
        backoff: Optional[BackoffController] = None,
        sleep: SleepFunc = asyncio.sleep,
        on_event: Optional[EventCallback] = None,
    ) -> None:
        self.transport = transport
        self.cookie = cookie
        self.state_store = state_store
        self.media_store = media_store
        self.aspect_ratio = aspect_ratio
        self.references: List[ReferenceImage] = validate_references(references)
        self.backoff = backoff or BackoffController(BASE_DELAY, MAX_DELAY, FAILURE_THRESHOLD)
        self.items: List[QueueItem] = []
        self.running = False
        self.paused = False
        self.credential_expired = False
        self._sleep = sleep
        self._on_event = on_event
        self._task: Optional[asyncio.Task[None]] = None

    # ------------------------------------------------------------------
    # Counters
    # ------------------------------------------------------------------

    @property
    def total_count(self) -> int:
        return len(self.items)

    @property
    def completed_count(self) -> int:
        return sum(1 for item in self.items if item.status is PromptStatus.completed)

    @property
    def failed_count(self) -> int:
        return sum(1 for item in self.items if item.status is PromptStatus.error)

    @property
    def progress(self) -> int:
        if not self.items:
            return 0
        return round((self.completed_count + self.failed_count) / self.total_count * 100)

    def get(self, item_id: str) -> Optional[QueueItem]:
        return next((item for item in self.items if item.id == item_id), None)

    # ------------------------------------------------------------------
    # References and credential
    # ------------------------------------------------------------------

    def add_reference(self, reference: ReferenceImage) -> None:
        self.references = validate_references([*self.references, reference])

    def remove_reference(self, category: ReferenceCategory, index: int) -> None:
        matching = [ref for ref in self.references if ref.category is category]
        if 0 <= index < len(matching):
            self.references.remove(matching[index])

    async def validate_cookie(self) -> CredentialInfo:
        info = await self.transport.validate_cookie(self.cookie)
        self.credential_expired = not info.valid
        return info

    # ------------------------------------------------------------------
    # Run control
    # ------------------------------------------------------------------

    async def start(self, prompts: Iterable[str], count: int = 1, style_prefix: str = "") -> asyncio.Task[None]:
        items = build_queue_items(prompts, count, style_prefix)
        if not items:
            raise ValueError("Add prompts first")
        await self._drop_media(self.items)
        self.items = items
        self.backoff.reset()
        self.running = True
        self.paused = False
        self._emit("queue-started", total=self.total_count)
        self._save()
        return self._spawn()

    def pause(self) -> None:
        """Stop after the in-flight item finishes; state is left untouched."""

        if not self.running or self.paused:
            return
        self.paused = True
        self._emit("queue-paused", reason="user")
        self._save()

    def resume(self) -> Optional[asyncio.Task[None]]:
        if not self.running or not self.paused:
            return None
        self.paused = False
        self.backoff.reset()
        self._emit("queue-resumed")
        self._save()
        return self._spawn()

    def cancel(self) -> None:
        """Halt the loop and return unfinished items to pending so a later run resumes them."""

        self.running = False
        self.paused = False
        for item in self.items:
            if item.status in (PromptStatus.pending, PromptStatus.processing):
                item.status = PromptStatus.pending
        self._emit("queue-cancelled")
        self._save()

    def retry_errors(self) -> int:
        count = 0
        for item in self.items:
            if item.status is PromptStatus.error:
                item.status = PromptStatus.pending
                item.error = None
                count += 1
        if count == 0:
            return 0

        self.backoff.reset()
        self._save()
        self._emit("queue-retry", count=count)
        if not self.running or self.paused:
            self.running = True
            self.paused = False
            self._spawn()
        return count

    async def join(self) -> None:
        while self._task is not None:
            task = self._task
            await task
            if self._task is task:
                break

    async def close(self) -> None:
        await self.state_store.close()

    def _spawn(self) -> asyncio.Task[None]:
        if self._task is None or self._task.done():
            self._task = asyncio.create_task(self._drain())
        return self._task

    async def _drain(self) -> None:
        while self.running and not self.paused:
            item = next((entry for entry in self.items if entry.status is PromptStatus.pending), None)
            if item is None:
                self.running = False
                self._emit(
                    "queue-finished",
                    completed=self.completed_count,
                    failed=self.failed_count,
                    total=self.total_count,
                )
                self._save()
                return

            if self.backoff.exhausted:
                self.paused = True
                logger.warning("Pausing queue after %d consecutive errors", self.backoff.streak)
                self._emit("queue-paused", reason="too-many-errors", streak=self.backoff.streak)
                self._save()
                return

            await self._process(item)

            if not self.running or self.paused:
                return

            delay = self.backoff.delay
            if delay > self.backoff.base:
                logger.info("Backoff: %.1fs (%d errors)", delay, self.backoff.streak)
            await self._sleep(delay)

    async def _process(self, item: QueueItem, *, track_streak: bool = True) -> None:
        item.status = PromptStatus.processing
        item.error = None
        self._emit("item-processing", id=item.id, prompt=item.prompt)
        self._save()

        error: Optional[str] = None
        try:
            result = await self.transport.generate(self.cookie, item.prompt, self.aspect_ratio, self.references)
            if not self._holds(item):
                logger.info("Dropping result for removed item %s", item.id)
                return
            if result.success:
                data = decode_media(result.media or "")
                item.result = await self.media_store.save(item.id, data)
                if not self._holds(item):
                    await asyncio.to_thread(self.media_store.delete, item.id)
                    return
                item.status = PromptStatus.completed
            else:
                error = result.error or "Unknown error"
                if result.credential_rejected:
                    self.paused = True
                    self.credential_expired = True
                    self._emit("credential-expired", id=item.id)
        except (GenerationError, ValueError, OSError) as exc:
            if not self._holds(item):
                logger.info("Dropping failure for removed item %s: %s", item.id, exc)
                return
            error = str(exc) or type(exc).__name__

        if error is None:
            if track_streak:
                self.backoff.record_success()
            self._emit("item-completed", id=item.id, path=str(item.result), progress=self.progress)
        else:
            item.status = PromptStatus.error
            item.error = error
            if track_streak:
                self.backoff.record_failure()
            logger.warning("Item %s failed: %s", preview_text(item.prompt), error)
            self._emit("item-error", id=item.id, error=error, progress=self.progress)
        self._save()

    def _holds(self, item: QueueItem) -> bool:
        return any(entry is item for entry in self.items)

    # ------------------------------------------------------------------
    # Item level operations
    # ------------------------------------------------------------------

    async def delete_item(self, item_id: str) -> bool:
        item = self.get(item_id)
        if item is None:
            return False
        await asyncio.to_thread(self.media_store.delete, item_id)
        self.items.remove(item)
        self._emit("item-deleted", id=item_id)
        self._save()
        return True

    async def edit_item(self, item_id: str, prompt: str, regenerate: bool = False) -> QueueItem:
        """Rewrite an item's prompt text, optionally running it again right away."""

        item = self.get(item_id)
        if item is None:
            raise KeyError(item_id)
        text = (prompt or "").strip()
        if not text:
            raise ValueError("Prompt cannot be empty")
        item.prompt = text
        self._emit("item-edited", id=item_id, prompt=text)
        self._save()
        if regenerate:
            return await self.regenerate(item_id)
        return item

    async def regenerate(self, item_id: str) -> QueueItem:
        """Run one item again immediately, outside the drain order."""

        item = self.get(item_id)
        if item is None:
            raise KeyError(item_id)
        await self._process(item, track_streak=False)
        return item

    async def animate_item(self, item_id: str, script: str, model: str = "VEO_FAST_3_1") -> Path:
        item = self.get(item_id)
        if item is None:
            raise KeyError(item_id)
        if not script.strip():
            raise ValueError("Video script is required")
        if self.aspect_ratio is not AspectRatio.landscape:
            raise ValueError("Only landscape images can be animated")
        data = self.media_store.load(item_id) if item.status is PromptStatus.completed else None
        if data is None:
            raise ValueError("Item has no generated image")

        result = await self.transport.animate(self.cookie, encode_media(data), item.prompt, script, model)
        if not result.success:
            raise GenerationError(result.error or "Animation failed")
        path = await self.media_store.save(item_id, decode_media(result.media or ""), suffix=".mp4")
        self._emit("item-animated", id=item_id, path=str(path))
        return path

    async def export_zip(self, archive_path: Path) -> int:
        completed = [item.id for item in self.items if item.status is PromptStatus.completed]
        if not completed:
            raise ValueError("No completed images to download")
        return await asyncio.to_thread(self.media_store.export_zip, completed, archive_path)

    async def clear(self) -> None:
        self.running = False
        self.paused = False
        self.items = []
        self.backoff.reset()
        await asyncio.to_thread(self.media_store.clear)
        self.state_store.clear()
        self._emit("queue-cleared")

    # ------------------------------------------------------------------
    # Persistence
    # ------------------------------------------------------------------

    def snapshot(self) -> Dict[str, Any]:
        return {
            "items": item_metadata(self.items),
            "isRunning": self.running,
            "isPaused": self.paused,
            "aspectRatio": self.aspect_ratio.value,
            "completedCount": self.completed_count,
            "failedCount": self.failed_count,
            "totalCount": self.total_count,
        }

    def _save(self) -> None:
        self.state_store.save(self.snapshot())

    async def save_now(self) -> None:
        await self.state_store.save_now(self.snapshot())

    async def restore(self) -> bool:
        """Reload a previous queue; in-flight items go back to pending."""

        data = self.state_store.load()
        if not data or not data.get("items"):
            return False

        items: List[QueueItem] = []
        for entry in data["items"]:
            try:
                status = PromptStatus(entry.get("status", "pending"))
            except ValueError:
                status = PromptStatus.pending
            if status is PromptStatus.processing:
                status = PromptStatus.pending
            item = QueueItem(id=entry["id"], prompt=entry["prompt"], status=status, error=entry.get("error"))
            if status is PromptStatus.completed:
                item.result = self.media_store.find(item.id)
            items.append(item)

        self.items = items
        self.aspect_ratio = AspectRatio.parse(data.get("aspectRatio"))
        self.running = False
        self.paused = False
        self._emit("queue-restored", total=self.total_count, completed=self.completed_count)
        return True

    def resume_restored(self) -> Optional[asyncio.Task[None]]:
        """Continue draining a restored queue from its first pending item."""

        if not any(item.status is PromptStatus.pending for item in self.items):
            return None
        self.running = True
        self.paused = False
        self.backoff.reset()
        self._save()
        return self._spawn()

    async def _drop_media(self, items: Iterable[QueueItem]) -> None:
        for item in items:
            await asyncio.to_thread(self.media_store.delete, item.id)

    def _emit(self, event: str, **payload: Any) -> None:
        if self._on_event is None:
            return
        try:
            self._on_event(event, payload)
        except Exception:
            logger.exception("Queue event handler failed for %s", event)
