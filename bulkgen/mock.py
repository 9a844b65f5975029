from __future__ import annotations

import asyncio
import hashlib
import io
from itertools import count
from typing import Sequence

from PIL import Image

from .models import (
    AspectRatio,
    CredentialInfo,
    GenerationContext,
    MediaResult,
    ReferenceImage,
    VideoModel,
)
from .utils import encode_media

MOCK_CREDENTIAL = "MOCK"
MOCK_EMAIL = "mock@example.com"

_SIZES = {
    AspectRatio.square: (8, 8),
    AspectRatio.portrait: (9, 16),
    AspectRatio.landscape: (16, 9),
}
_ids = count(1)


def render_mock_png(prompt: str, aspect_ratio: AspectRatio = AspectRatio.square) -> tuple[bytes, int]:
    """Render a tiny solid PNG whose colour and seed are derived from the prompt."""

    digest = hashlib.sha256(prompt.encode("utf-8")).digest()
    seed = int.from_bytes(digest[:4], "big") % 1_000_000
    image = Image.new("RGBA", _SIZES[aspect_ratio], (digest[0], digest[1], digest[2], 255))
    buffer = io.BytesIO()
    image.save(buffer, format="PNG")
    return buffer.getvalue(), seed


class MockGenerationClient:
    """
    Offline stand-in used when the literal ``MOCK`` cookie is supplied.

    Every call succeeds after ``delay`` seconds with deterministic output, so
    the whole pipeline can be exercised without the real service.
    """

    def __init__(self, credential: str = MOCK_CREDENTIAL, delay: float = 0.8) -> None:
        self.credential = credential
        self.delay = delay

    async def validate_credential(self) -> CredentialInfo:
        return CredentialInfo(valid=True, email=MOCK_EMAIL, message="Mock Mode Active")

    async def create_context(
        self, label: str, references: Sequence[ReferenceImage] = ()
    ) -> GenerationContext:
        return GenerationContext(context_id=f"mock_project_{next(_ids)}", label=label, references=list(references))

    async def generate(
        self, context: GenerationContext, prompt: str, aspect_ratio: AspectRatio
    ) -> MediaResult:
        if self.delay:
            await asyncio.sleep(self.delay)
        data, seed = render_mock_png(prompt, aspect_ratio)
        return MediaResult(
            encoded_media=encode_media(data),
            prompt=prompt,
            seed=seed,
            media_id=f"mock_{next(_ids)}",
            aspect_ratio=aspect_ratio,
        )

    async def generate_with_references(
        self, context: GenerationContext, prompt: str, aspect_ratio: AspectRatio
    ) -> MediaResult:
        return await self.generate(context, prompt, aspect_ratio)

    async def destroy_context(self, context: GenerationContext) -> None:
        return None

    async def animate(self, media: MediaResult, script: str, video_model: VideoModel) -> MediaResult:
        if self.delay:
            await asyncio.sleep(self.delay)
        payload = f"MOCK-VIDEO:{video_model.value}:{script}".encode("utf-8")
        return MediaResult(
            encoded_media=encode_media(payload),
            prompt=script,
            seed=media.seed,
            media_id=f"mock_video_{next(_ids)}",
            aspect_ratio=media.aspect_ratio,
            media_type="VIDEO",
        )
