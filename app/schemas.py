from __future__ import annotations

from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field

from bulkgen.models import ReferenceCategory


class CamelModel(BaseModel):
    model_config = ConfigDict(populate_by_name=True)


class ReferencePayload(CamelModel):
    category: ReferenceCategory
    image: str
    caption: Optional[str] = None


class ValidateCookieRequest(CamelModel):
    cookie: Optional[str] = None


class ValidateCookieResponse(CamelModel):
    valid: bool
    message: Optional[str] = None
    email: Optional[str] = None


class GenerateRequest(CamelModel):
    cookie: Optional[str] = None
    prompt: Optional[str] = None
    aspect_ratio: Optional[str] = Field(default=None, alias="aspectRatio")
    references: List[ReferencePayload] = Field(default_factory=list)


class GenerateResponse(CamelModel):
    success: bool
    image: Optional[str] = None
    prompt: Optional[str] = None
    seed: Optional[int] = None
    media_id: Optional[str] = Field(default=None, alias="mediaId")
    error: Optional[str] = None


class AnimateRequest(CamelModel):
    cookie: Optional[str] = None
    image_base64: Optional[str] = Field(default=None, alias="imageBase64")
    image_prompt: Optional[str] = Field(default=None, alias="imagePrompt")
    video_script: Optional[str] = Field(default=None, alias="videoScript")
    model: Optional[str] = None


class AnimateResponse(CamelModel):
    success: bool
    video: Optional[str] = None
    prompt: Optional[str] = None
    media_id: Optional[str] = Field(default=None, alias="mediaId")
    error: Optional[str] = None


class UploadPromptsResponse(CamelModel):
    success: bool
    prompts: List[str] = Field(default_factory=list)
    count: int = 0
    error: Optional[str] = None


class CreateJobRequest(CamelModel):
    cookie: str = ""
    prompts: List[str] = Field(default_factory=list)
    aspect_ratio: Optional[str] = Field(default=None, alias="aspectRatio")
    references: List[ReferencePayload] = Field(default_factory=list)


class PromptStatusResponse(CamelModel):
    id: str
    text: str
    status: str
    image_url: Optional[str] = Field(default=None, alias="imageUrl")
    error: Optional[str] = None


class JobStatusResponse(CamelModel):
    id: str
    status: str
    cookie_hash: str = Field(alias="cookieHash")
    aspect_ratio: str = Field(alias="aspectRatio")
    created_at: str = Field(alias="createdAt")
    started_at: Optional[str] = Field(default=None, alias="startedAt")
    completed_at: Optional[str] = Field(default=None, alias="completedAt")
    progress: int
    completed_count: int = Field(alias="completedCount")
    failed_count: int = Field(alias="failedCount")
    total_count: int = Field(alias="totalCount")
    reference_count: int = Field(default=0, alias="referenceCount")
    error: Optional[str] = None
    prompts: List[PromptStatusResponse] = Field(default_factory=list)


class JobListResponse(CamelModel):
    jobs: List[JobStatusResponse]


class StatsResponse(CamelModel):
    active: int
    pending: int
    completed: int
    failed: int
    cancelled: int
    max_concurrent: int = Field(alias="maxConcurrent")
    failure_streak: int = Field(default=0, alias="failureStreak")
    worker_paused: bool = Field(default=False, alias="workerPaused")


class HealthResponse(CamelModel):
    status: str
    api_available: bool = Field(alias="apiAvailable")
    worker_running: bool = Field(alias="workerRunning")
    uptime: float
