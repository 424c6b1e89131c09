"""
Configuration for the ledger service.

Settings are read from environment variables once and cached; tests call
get_settings.cache_clear() after changing the environment.
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass
from functools import lru_cache

from store import DocumentStore, GitHubBackend, InMemoryBackend, RetryPolicy

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Settings:
    github_token: str
    github_owner: str
    github_repo: str
    github_branch: str
    github_api_url: str
    http_timeout_seconds: float
    write_max_retries: int
    write_backoff_seconds: float
    log_level: str

    @property
    def github_configured(self) -> bool:
        return bool(self.github_token and self.github_owner and self.github_repo)

    @property
    def retry_policy(self) -> RetryPolicy:
        return RetryPolicy(
            max_retries=self.write_max_retries,
            backoff_seconds=self.write_backoff_seconds,
        )


@lru_cache
def get_settings() -> Settings:
    def _int(value: str | None, default: int) -> int:
        try:
            return int(value)
        except (TypeError, ValueError):
            return default

    def _float(value: str | None, default: float) -> float:
        try:
            return float(value)
        except (TypeError, ValueError):
            return default

    return Settings(
        github_token=os.getenv("GITHUB_TOKEN", ""),
        github_owner=os.getenv("GITHUB_OWNER", ""),
        github_repo=os.getenv("GITHUB_REPO", ""),
        github_branch=os.getenv("GITHUB_BRANCH", "main"),
        github_api_url=os.getenv("GITHUB_API_URL", "https://api.github.com").rstrip("/"),
        http_timeout_seconds=_float(os.getenv("HTTP_TIMEOUT_SECONDS"), 15.0),
        write_max_retries=max(0, _int(os.getenv("STORE_WRITE_RETRIES"), 1)),
        write_backoff_seconds=max(0.0, _float(os.getenv("STORE_WRITE_BACKOFF_SECONDS"), 0.0)),
        log_level=(os.getenv("LOG_LEVEL") or "INFO").upper(),
    )


def configure_logging(settings: Settings | None = None) -> None:
    settings = settings or get_settings()
    logging.basicConfig(
        level=getattr(logging, settings.log_level, logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


def build_store(settings: Settings | None = None) -> DocumentStore:
    settings = settings or get_settings()
    if settings.github_configured:
        backend = GitHubBackend.from_settings(settings)
    else:
        logger.warning(
            "GITHUB_TOKEN, GITHUB_OWNER and GITHUB_REPO are not all set; using in-memory backend"
        )
        backend = InMemoryBackend()
    return DocumentStore(backend, retry_policy=settings.retry_policy)
