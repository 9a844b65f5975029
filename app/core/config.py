from __future__ import annotations

import logging
from functools import lru_cache
from pathlib import Path
from typing import List, Optional

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

APP_DIR = Path(__file__).resolve().parent.parent
PROJECT_ROOT = APP_DIR.parent
STORAGE_ROOT = PROJECT_ROOT / "data"
JOBS_FILE_NAME = "jobs.json"
OUTPUT_URL_PREFIX = "/output"


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_prefix="BULKGEN_", env_file=".env", extra="ignore")

    app_name: str = "Bulk Image Generation Service"
    log_level: str = "INFO"

    storage_root: Path = STORAGE_ROOT
    jobs_file_name: str = JOBS_FILE_NAME
    output_dir_name: str = "output"
    uploads_max_bytes: int = 5 * 1024 * 1024

    # Dotted "module:Class" path of the real generation client. Empty means
    # only the MOCK cookie can generate.
    generation_client: Optional[str] = None
    mock_delay: float = 0.8
    generate_timeout: float = 60.0
    animate_timeout: float = 150.0

    # Job store persistence (seconds).
    save_debounce: float = 2.0
    safety_flush_interval: float = 30.0
    retention_days: int = 7
    max_concurrent_jobs: int = 5

    # Worker scheduling and backoff (seconds).
    poll_interval: float = 3.0
    base_delay: float = 4.0
    max_delay: float = 60.0
    failure_threshold: int = 5
    gc_every: int = 5
    cleanup_probability: float = 1 / 1200
    context_refresh_every: int = 10
    max_pool_size: int = 5
    worker_enabled: bool = True

    rate_limit_requests: int = 20
    rate_limit_window: float = 60.0

    cors_allow_origins: List[str] = Field(default_factory=lambda: ["*"])
    cors_allow_methods: List[str] = Field(default_factory=lambda: ["*"])
    cors_allow_headers: List[str] = Field(default_factory=lambda: ["*"])
    cors_allow_credentials: bool = False

    @property
    def jobs_file(self) -> Path:
        return self.storage_root / self.jobs_file_name

    @property
    def output_dir(self) -> Path:
        return self.storage_root / self.output_dir_name

    def ensure_directories(self) -> None:
        for directory in {self.storage_root, self.output_dir}:
            directory.mkdir(parents=True, exist_ok=True)


@lru_cache
def get_settings() -> Settings:
    return Settings()


def configure_logging(level: str = "INFO") -> None:
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
    )
