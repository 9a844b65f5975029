from __future__ import annotations

import importlib
from functools import lru_cache
from typing import Callable, Optional

from .client import GenerationClient
from .exceptions import GenerationUnavailableError
from .mock import MOCK_CREDENTIAL, MockGenerationClient

ClientFactory = Callable[[str], GenerationClient]


@lru_cache
def load_client_class(path: str) -> ClientFactory:
    """Import ``package.module:ClassName`` and return the class."""

    module_name, _, attribute = path.partition(":")
    if not module_name or not attribute:
        raise GenerationUnavailableError(f"Invalid generation client path: {path!r}")
    try:
        module = importlib.import_module(module_name)
        return getattr(module, attribute)
    except (ImportError, AttributeError) as exc:
        raise GenerationUnavailableError(f"Generation API not available: {exc}") from exc


def build_client(
    credential: str,
    client_path: Optional[str] = None,
    *,
    mock_delay: float = 0.8,
) -> GenerationClient:
    if credential == MOCK_CREDENTIAL:
        return MockGenerationClient(credential, delay=mock_delay)
    if not client_path:
        raise GenerationUnavailableError("Generation API not available")
    return load_client_class(client_path)(credential)


def client_available(client_path: Optional[str]) -> bool:
    if not client_path:
        return False
    try:
        load_client_class(client_path)
    except GenerationUnavailableError:
        return False
    return True
