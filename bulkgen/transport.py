"""HTTP client for the stateless generation proxy endpoints."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence

import httpx

from .exceptions import GenerationError, GenerationTimeoutError, PromptFileError
from .models import AspectRatio, CredentialInfo, ReferenceImage

logger = logging.getLogger(__name__)

STILL_TIMEOUT = 60.0
VIDEO_TIMEOUT = 150.0


@dataclass(slots=True)
class ProxyResult:
    """Outcome of a proxy call. ``media`` is base64, possibly a data URI."""

    success: bool
    status_code: int
    media: Optional[str] = None
    prompt: Optional[str] = None
    seed: Optional[int] = None
    media_id: Optional[str] = None
    error: Optional[str] = None

    @property
    def credential_rejected(self) -> bool:
        return self.status_code == 401 or "401" in (self.error or "")


class ProxyTransport:
    def __init__(
        self,
        base_url: str,
        *,
        generate_timeout: float = STILL_TIMEOUT,
        animate_timeout: float = VIDEO_TIMEOUT,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self.generate_timeout = generate_timeout
        self.animate_timeout = animate_timeout
        self._client = httpx.AsyncClient(base_url=base_url.rstrip("/"), transport=transport, timeout=generate_timeout)

    async def aclose(self) -> None:
        await self._client.aclose()

    async def __aenter__(self) -> "ProxyTransport":
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.aclose()

    async def validate_cookie(self, cookie: str) -> CredentialInfo:
        data, _ = await self._post("/api/validate-cookie", {"cookie": cookie}, self.generate_timeout)
        return CredentialInfo(valid=bool(data.get("valid")), email=data.get("email"), message=data.get("message"))

    async def generate(
        self,
        cookie: str,
        prompt: str,
        aspect_ratio: AspectRatio,
        references: Sequence[ReferenceImage] = (),
    ) -> ProxyResult:
        payload = {
            "cookie": cookie,
            "prompt": prompt,
            "aspectRatio": aspect_ratio.value,
            "references": [ref.to_dict() for ref in references],
        }
        data, status_code = await self._post("/api/generate", payload, self.generate_timeout)
        return ProxyResult(
            success=bool(data.get("success")) and bool(data.get("image")),
            status_code=status_code,
            media=data.get("image"),
            prompt=data.get("prompt"),
            seed=data.get("seed"),
            media_id=data.get("mediaId"),
            error=data.get("error") or (None if data.get("success") else "Unknown error"),
        )

    async def animate(
        self,
        cookie: str,
        image_base64: str,
        image_prompt: str,
        script: str,
        model: str,
    ) -> ProxyResult:
        payload = {
            "cookie": cookie,
            "imageBase64": image_base64,
            "imagePrompt": image_prompt,
            "videoScript": script,
            "model": model,
        }
        data, status_code = await self._post("/api/animate", payload, self.animate_timeout)
        return ProxyResult(
            success=bool(data.get("success")) and bool(data.get("video")),
            status_code=status_code,
            media=data.get("video"),
            prompt=data.get("prompt"),
            media_id=data.get("mediaId"),
            error=data.get("error") or (None if data.get("success") else "Unknown error"),
        )

    async def upload_prompts(self, path: Path) -> List[str]:
        try:
            response = await self._client.post(
                "/api/upload-prompts",
                files={"file": (path.name, path.read_bytes(), "text/plain")},
            )
        except httpx.HTTPError as exc:
            raise GenerationError(f"Prompt upload failed: {exc}") from exc
        data = self._json(response)
        if response.status_code != 200 or not data.get("success"):
            raise PromptFileError(data.get("error") or f"Prompt upload failed ({response.status_code})")
        return list(data.get("prompts") or [])

    async def _post(self, url: str, payload: Dict[str, Any], timeout: float) -> tuple[Dict[str, Any], int]:
        try:
            response = await self._client.post(url, json=payload, timeout=timeout)
        except httpx.TimeoutException as exc:
            raise GenerationTimeoutError(f"Request timed out ({int(timeout)}s)") from exc
        except httpx.HTTPError as exc:
            raise GenerationError(str(exc) or type(exc).__name__) from exc
        return self._json(response), response.status_code

    @staticmethod
    def _json(response: httpx.Response) -> Dict[str, Any]:
        try:
            data = response.json()
        except ValueError:
            return {"success": False, "error": f"HTTP {response.status_code}: {response.text[:200]}"}
        return data if isinstance(data, dict) else {"success": False, "error": "Unexpected response shape"}
