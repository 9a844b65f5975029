from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional

from bulkgen.models import AspectRatio, PromptStatus, ReferenceImage


class JobStatus(str, Enum):
    pending = "pending"
    processing = "processing"
    completed = "completed"
    failed = "failed"
    cancelled = "cancelled"

    @property
    def terminal(self) -> bool:
        return self in (JobStatus.completed, JobStatus.failed, JobStatus.cancelled)


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


def _parse(value: Optional[str]) -> Optional[datetime]:
    return datetime.fromisoformat(value) if value else None


@dataclass
class PromptRecord:
    prompt_id: str
    text: str
    status: PromptStatus = PromptStatus.pending
    image_url: Optional[str] = None
    error: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.prompt_id,
            "text": self.text,
            "status": self.status.value,
            "imageUrl": self.image_url,
            "error": self.error,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "PromptRecord":
        return cls(
            prompt_id=data["id"],
            text=data.get("text", ""),
            status=PromptStatus(data.get("status", "pending")),
            image_url=data.get("imageUrl"),
            error=data.get("error"),
        )


@dataclass
class JobRecord:
    job_id: str
    credential: str
    credential_hash: str
    created_at: datetime
    aspect_ratio: AspectRatio = AspectRatio.square
    status: JobStatus = JobStatus.pending
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    prompts: List[PromptRecord] = field(default_factory=list)
    references: List[ReferenceImage] = field(default_factory=list)
    completed_count: int = 0
    failed_count: int = 0
    total_count: int = 0
    progress: int = 0
    error: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.job_id,
            "cookie": self.credential,
            "cookieHash": self.credential_hash,
            "aspectRatio": self.aspect_ratio.value,
            "status": self.status.value,
            "createdAt": _iso(self.created_at),
            "startedAt": _iso(self.started_at),
            "completedAt": _iso(self.completed_at),
            "prompts": [prompt.to_dict() for prompt in self.prompts],
            "references": [reference.to_dict() for reference in self.references],
            "progress": self.progress,
            "completedCount": self.completed_count,
            "failedCount": self.failed_count,
            "totalCount": self.total_count,
            "error": self.error,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "JobRecord":
        prompts = [PromptRecord.from_dict(item) for item in data.get("prompts", [])]
        return cls(
            job_id=data["id"],
            credential=data.get("cookie", ""),
            credential_hash=data.get("cookieHash", ""),
            created_at=datetime.fromisoformat(data["createdAt"]),
            aspect_ratio=AspectRatio.parse(data.get("aspectRatio")),
            status=JobStatus(data.get("status", "pending")),
            started_at=_parse(data.get("startedAt")),
            completed_at=_parse(data.get("completedAt")),
            prompts=prompts,
            references=[ReferenceImage.from_dict(item) for item in data.get("references", [])],
            completed_count=data.get("completedCount", 0),
            failed_count=data.get("failedCount", 0),
            total_count=data.get("totalCount", len(prompts)),
            progress=data.get("progress", 0),
            error=data.get("error"),
        )

    def to_public_dict(self) -> Dict[str, Any]:
        data = self.to_dict()
        data.pop("cookie")
        data["referenceCount"] = len(data.pop("references"))
        return data

    def recompute_counters(self) -> None:
        self.completed_count = sum(1 for prompt in self.prompts if prompt.status is PromptStatus.completed)
        self.failed_count = sum(1 for prompt in self.prompts if prompt.status is PromptStatus.error)
        if self.total_count:
            self.progress = round((self.completed_count + self.failed_count) / self.total_count * 100)
        else:
            self.progress = 0

    @property
    def pending_count(self) -> int:
        return sum(1 for prompt in self.prompts if prompt.status in {PromptStatus.pending, PromptStatus.processing})

    def find_prompt(self, prompt_id: str) -> Optional[PromptRecord]:
        return next((prompt for prompt in self.prompts if prompt.prompt_id == prompt_id), None)
