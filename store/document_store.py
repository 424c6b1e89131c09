"""
Document Store

Whole-document JSON read/replace over a RemoteBackend with optimistic
concurrency control:
- read returns the decoded content together with its version token
- write is a compare-and-swap against a version, retried on conflict
  according to a RetryPolicy (one retry by default)
- modify re-applies a transform to fresh content on every attempt
"""

from __future__ import annotations

import asyncio
import copy
import json
import logging
from dataclasses import dataclass
from typing import Any, Callable, Optional

from .backend import RemoteBackend
from .exceptions import ConflictError, CorruptDocumentError, DocumentNotFoundError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Document:
    path: str
    content: Any
    version: str


@dataclass(frozen=True)
class RetryPolicy:
    max_retries: int = 1
    backoff_seconds: float = 0.0
    backoff_multiplier: float = 2.0

    def delay(self, attempt: int) -> float:
        if self.backoff_seconds <= 0:
            return 0.0
        return self.backoff_seconds * self.backoff_multiplier ** (attempt - 1)


def encode(content: Any) -> bytes:
    return json.dumps(content, indent=2, ensure_ascii=False).encode("utf-8")


def decode(path: str, raw: bytes) -> Any:
    try:
        return json.loads(raw.decode("utf-8"))
    except (UnicodeDecodeError, json.JSONDecodeError) as e:
        raise CorruptDocumentError(path, str(e)) from e


class DocumentStore:
    def __init__(self, backend: RemoteBackend, retry_policy: Optional[RetryPolicy] = None):
        self.backend = backend
        self.retry_policy = retry_policy or RetryPolicy()

    async def read(self, path: str) -> Document:
        remote = await self.backend.get(path)
        if remote is None or not remote.content.strip():
            raise DocumentNotFoundError(path)
        logger.debug("read %s at %s", path, remote.version)
        return Document(path=path, content=decode(path, remote.content), version=remote.version)

    async def read_document(self, path: str, default: Callable[[], Any] = list) -> Any:
        """Content at `path`, or `default()` when the document does not exist."""
        try:
            return (await self.read(path)).content
        except DocumentNotFoundError:
            return default()

    async def write(
        self,
        path: str,
        content: Any,
        expected_version: Optional[str] = None,
        message: Optional[str] = None,
    ) -> str:
        """
        Replace the document at `path` and return its new version.

        Without `expected_version` the version current at call time is used.
        A conflicting submit is retried with a freshly read version up to
        `retry_policy.max_retries` times, then ConflictError is raised.
        """
        payload = encode(content)
        message = message or f"Update {path}"
        version = expected_version
        if version is None:
            version = await self._current_version(path)

        attempt = 0
        while True:
            try:
                new_version = await self.backend.put(path, payload, message, version)
                logger.debug("wrote %s: %s -> %s", path, version, new_version)
                return new_version
            except ConflictError:
                attempt = await self._before_retry(path, attempt)
                version = await self._current_version(path)

    async def modify(
        self,
        path: str,
        transform: Callable[[Any], Any],
        default: Callable[[], Any] = list,
        message: Optional[str] = None,
    ) -> Document:
        """
        Read-transform-write. On conflict the document is re-read and
        `transform` runs again on the new content. No write is made when
        the transform leaves the content unchanged.
        """
        message = message or f"Update {path}"
        attempt = 0
        while True:
            try:
                current = await self.read(path)
                content, version = current.content, current.version
            except DocumentNotFoundError:
                # An existing but empty file still has a version to write against.
                content, version = default(), await self._current_version(path)

            updated = transform(copy.deepcopy(content))
            if updated == content:
                return Document(path=path, content=content, version=version)

            try:
                new_version = await self.backend.put(path, encode(updated), message, version)
                logger.debug("modified %s: %s -> %s", path, version, new_version)
                return Document(path=path, content=updated, version=new_version)
            except ConflictError:
                attempt = await self._before_retry(path, attempt)

    async def create(self, path: str, content: Any, message: Optional[str] = None) -> str:
        """Write a new document. ConflictError if anything already exists at `path`."""
        new_version = await self.backend.put(path, encode(content), message or f"Create {path}")
        logger.debug("created %s at %s", path, new_version)
        return new_version

    async def list_documents(self, directory: str) -> list[str]:
        return await self.backend.list(directory)

    async def _current_version(self, path: str) -> Optional[str]:
        remote = await self.backend.get(path)
        return remote.version if remote is not None else None

    async def _before_retry(self, path: str, attempt: int) -> int:
        if attempt >= self.retry_policy.max_retries:
            logger.warning("giving up on %s after %d attempt(s)", path, attempt + 1)
            raise ConflictError(path)
        attempt += 1
        logger.warning("version conflict on %s, retry %d/%d", path, attempt, self.retry_policy.max_retries)
        delay = self.retry_policy.delay(attempt)
        if delay:
            await asyncio.sleep(delay)
        return attempt
