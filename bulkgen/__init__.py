"""Public API for the bulk generation package."""

from .backoff import BackoffController
from .client import ContextReaper, GenerationClient, generate_in_context
from .client_queue import ClientQueue, QueueItem, build_queue_items
from .exceptions import (
    ContextError,
    CredentialError,
    GenerationError,
    GenerationTimeoutError,
    GenerationUnavailableError,
    PromptFileError,
    ReferenceLimitError,
)
from .factory import build_client
from .mock import MOCK_CREDENTIAL, MockGenerationClient
from .models import (
    AspectRatio,
    CredentialInfo,
    GenerationContext,
    MediaResult,
    PromptStatus,
    ReferenceCategory,
    ReferenceImage,
    VideoModel,
)
from .write_back import WriteBack
from . import utils

__all__ = [
    "AspectRatio",
    "BackoffController",
    "ClientQueue",
    "ContextError",
    "ContextReaper",
    "CredentialError",
    "CredentialInfo",
    "GenerationClient",
    "GenerationContext",
    "GenerationError",
    "GenerationTimeoutError",
    "GenerationUnavailableError",
    "MOCK_CREDENTIAL",
    "MediaResult",
    "MockGenerationClient",
    "PromptFileError",
    "PromptStatus",
    "QueueItem",
    "ReferenceCategory",
    "ReferenceImage",
    "ReferenceLimitError",
    "VideoModel",
    "WriteBack",
    "build_client",
    "build_queue_items",
    "generate_in_context",
    "utils",
]
