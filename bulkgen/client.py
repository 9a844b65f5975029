from __future__ import annotations

import asyncio
import logging
from typing import Protocol, Sequence

from .models import (
    AspectRatio,
    CredentialInfo,
    GenerationContext,
    MediaResult,
    ReferenceImage,
    VideoModel,
)

logger = logging.getLogger(__name__)


class GenerationClient(Protocol):
    """Capability boundary around the remote creative service.

    One instance is bound to one credential. Failures surface as
    ``GenerationError`` subclasses or as exceptions whose message may embed
    an HTTP status.
    """

    credential: str

    async def validate_credential(self) -> CredentialInfo: ...

    async def create_context(
        self, label: str, references: Sequence[ReferenceImage] = ()
    ) -> GenerationContext: ...

    async def generate(
        self, context: GenerationContext, prompt: str, aspect_ratio: AspectRatio
    ) -> MediaResult: ...

    async def generate_with_references(
        self, context: GenerationContext, prompt: str, aspect_ratio: AspectRatio
    ) -> MediaResult: ...

    async def destroy_context(self, context: GenerationContext) -> None: ...

    async def animate(self, media: MediaResult, script: str, video_model: VideoModel) -> MediaResult: ...


async def generate_in_context(
    client: GenerationClient,
    context: GenerationContext,
    prompt: str,
    aspect_ratio: AspectRatio,
) -> MediaResult:
    """Dispatch to the reference-aware call when the context carries references."""

    if context.has_references:
        return await client.generate_with_references(context, prompt, aspect_ratio)
    return await client.generate(context, prompt, aspect_ratio)


async def _destroy_quietly(client: GenerationClient, context: GenerationContext) -> None:
    try:
        await client.destroy_context(context)
    except Exception as exc:
        logger.debug("Ignoring failure while deleting context %s: %s", context.context_id, exc)


class ContextReaper:
    """Deletes discarded generation contexts in the background.

    Pending deletion tasks are held until they finish.
    """

    def __init__(self) -> None:
        self._tasks: set[asyncio.Task[None]] = set()

    def __len__(self) -> int:
        return len(self._tasks)

    def discard(self, client: GenerationClient, context: GenerationContext) -> asyncio.Task[None]:
        """Schedule best-effort deletion of a context without awaiting it."""

        task = asyncio.create_task(_destroy_quietly(client, context))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    async def wait(self) -> None:
        if self._tasks:
            await asyncio.gather(*list(self._tasks))
