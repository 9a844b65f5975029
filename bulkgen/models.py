"""Value types shared by the server worker and the client queue engine."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Iterable, List, Optional

from .exceptions import ReferenceLimitError

MAX_REFERENCES_PER_CATEGORY = 3


class PromptStatus(str, Enum):
    pending = "pending"
    processing = "processing"
    completed = "completed"
    error = "error"


class AspectRatio(str, Enum):
    square = "SQUARE"
    portrait = "PORTRAIT"
    landscape = "LANDSCAPE"

    @classmethod
    def parse(cls, value: Optional[str]) -> "AspectRatio":
        """Map user supplied ratios (``16:9``, ``PORTRAIT``...) onto a member.

        Unknown or empty values fall back to square.
        """

        if isinstance(value, AspectRatio):
            return value
        key = (value or "").strip().upper()
        return _RATIO_ALIASES.get(key, cls.square)

    @property
    def remote_value(self) -> str:
        return f"IMAGE_ASPECT_RATIO_{self.value}"


_RATIO_ALIASES = {
    "1:1": AspectRatio.square,
    "16:9": AspectRatio.landscape,
    "9:16": AspectRatio.portrait,
    "SQUARE": AspectRatio.square,
    "LANDSCAPE": AspectRatio.landscape,
    "PORTRAIT": AspectRatio.portrait,
}


class ReferenceCategory(str, Enum):
    subject = "SUBJECT"
    style = "STYLE"
    scene = "SCENE"

    @property
    def remote_value(self) -> str:
        return f"MEDIA_CATEGORY_{self.value}"


class VideoModel(str, Enum):
    veo_3_1 = "VEO_3_1_I2V_12STEP"
    veo_fast_3_1 = "veo_3_1_i2v_s_fast"

    @classmethod
    def parse(cls, value: Optional[str]) -> "VideoModel":
        if value == "VEO_3_1":
            return cls.veo_3_1
        return cls.veo_fast_3_1


@dataclass(slots=True)
class ReferenceImage:
    """Conditioning image attached to every generation call of a batch."""

    category: ReferenceCategory
    image: str
    caption: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "category": self.category.value,
            "image": self.image,
            "caption": self.caption,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ReferenceImage":
        caption = (data.get("caption") or "").strip() or None
        return cls(
            category=ReferenceCategory(str(data["category"]).upper()),
            image=data["image"],
            caption=caption,
        )


def validate_references(references: Iterable[ReferenceImage]) -> List[ReferenceImage]:
    """Return the references as a list, enforcing the per-category limit."""

    items = list(references)
    for category in ReferenceCategory:
        count = sum(1 for ref in items if ref.category is category)
        if count > MAX_REFERENCES_PER_CATEGORY:
            raise ReferenceLimitError(
                f"At most {MAX_REFERENCES_PER_CATEGORY} {category.value.lower()} references are allowed, got {count}"
            )
    return items


@dataclass(slots=True)
class CredentialInfo:
    valid: bool
    email: Optional[str] = None
    message: Optional[str] = None


@dataclass(slots=True)
class GenerationContext:
    """Remote project scope that generation calls are issued against."""

    context_id: str
    label: str
    references: List[ReferenceImage] = field(default_factory=list)

    @property
    def has_references(self) -> bool:
        return bool(self.references)


@dataclass(slots=True)
class MediaResult:
    """Media returned by the remote service.

    ``encoded_media`` holds base64 without a data URI prefix.
    """

    encoded_media: str
    prompt: str
    seed: int
    media_id: str
    aspect_ratio: AspectRatio = AspectRatio.square
    media_type: str = "IMAGE"
