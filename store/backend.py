"""
Remote File Backend adapters.

A backend stores one blob per path together with an opaque version token
(the git blob hash of the content). Writers must present the version they
last observed; a stale token is rejected with ConflictError.
"""

from __future__ import annotations

import base64
import hashlib
import logging
from dataclasses import dataclass
from typing import Optional, Protocol, runtime_checkable

import httpx

from .exceptions import ConflictError, TransientError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RemoteFile:
    path: str
    content: bytes
    version: str


@runtime_checkable
class RemoteBackend(Protocol):
    """Versioned file host reachable by path."""

    async def get(self, path: str) -> Optional[RemoteFile]: ...

    async def put(
        self, path: str, content: bytes, message: str, version: Optional[str] = None
    ) -> str: ...

    async def list(self, directory: str) -> list[str]: ...


def blob_version(content: bytes) -> str:
    header = f"blob {len(content)}\0".encode("utf-8")
    return hashlib.sha1(header + content).hexdigest()


class InMemoryBackend:
    """Process-local backend with the same version semantics as GitHub."""

    def __init__(self, files: Optional[dict[str, bytes]] = None):
        self.files: dict[str, RemoteFile] = {}
        self.commits: list[str] = []
        for path, content in (files or {}).items():
            self.files[path] = RemoteFile(path, content, blob_version(content))

    async def get(self, path: str) -> Optional[RemoteFile]:
        return self.files.get(path)

    async def put(
        self, path: str, content: bytes, message: str, version: Optional[str] = None
    ) -> str:
        current = self.files.get(path)
        if current is None and version is not None:
            raise ConflictError(path, f"{path} does not exist at version {version}")
        if current is not None and version != current.version:
            raise ConflictError(path)

        new_version = blob_version(content)
        self.files[path] = RemoteFile(path, content, new_version)
        self.commits.append(message)
        return new_version

    async def list(self, directory: str) -> list[str]:
        prefix = directory.rstrip("/") + "/"
        return sorted(
            path for path in self.files
            if path.startswith(prefix) and "/" not in path[len(prefix):]
        )


class GitHubBackend:
    """Backend over the GitHub repository contents REST API."""

    def __init__(
        self,
        owner: str,
        repo: str,
        token: str,
        branch: str = "main",
        api_url: str = "https://api.github.com",
        timeout: float = 15.0,
        client: Optional[httpx.AsyncClient] = None,
    ):
        self.owner = owner
        self.repo = repo
        self.branch = branch
        self.client = client or httpx.AsyncClient(base_url=api_url, timeout=timeout)
        self.headers = {
            "Authorization": f"token {token}",
            "Accept": "application/vnd.github.v3+json",
        }

    @classmethod
    def from_settings(cls, settings) -> "GitHubBackend":
        return cls(
            owner=settings.github_owner,
            repo=settings.github_repo,
            token=settings.github_token,
            branch=settings.github_branch,
            api_url=settings.github_api_url,
            timeout=settings.http_timeout_seconds,
        )

    def _contents_url(self, path: str) -> str:
        return f"/repos/{self.owner}/{self.repo}/contents/{path.lstrip('/')}"

    async def _request(self, method: str, url: str, **kwargs) -> httpx.Response:
        try:
            return await self.client.request(method, url, headers=self.headers, **kwargs)
        except httpx.HTTPError as e:
            raise TransientError(f"GitHub request failed: {e}") from e

    @staticmethod
    def _error(response: httpx.Response) -> TransientError:
        try:
            detail = response.json().get("message") or response.reason_phrase
        except ValueError:
            detail = response.reason_phrase
        return TransientError(
            f"GitHub API error: {response.status_code} - {detail}",
            status_code=response.status_code,
        )

    @staticmethod
    def _is_version_conflict(response: httpx.Response) -> bool:
        if response.status_code == 409:
            return True
        if response.status_code != 422:
            return False
        # 422 also covers malformed requests; only a sha complaint is a conflict.
        try:
            message = response.json().get("message") or ""
        except ValueError:
            return False
        return "sha" in message.lower()

    async def get(self, path: str) -> Optional[RemoteFile]:
        response = await self._request("GET", self._contents_url(path), params={"ref": self.branch})
        logger.debug("GET %s -> %s", path, response.status_code)
        if response.status_code == 404:
            return None
        if response.status_code != 200:
            raise self._error(response)

        payload = response.json()
        if payload.get("encoding") == "none":
            # Contents API leaves large files empty; the blob endpoint serves them.
            content = await self._get_blob(payload["sha"])
        else:
            content = base64.b64decode(payload.get("content") or "")
        return RemoteFile(path=path, content=content, version=payload["sha"])

    async def _get_blob(self, sha: str) -> bytes:
        url = f"/repos/{self.owner}/{self.repo}/git/blobs/{sha}"
        response = await self._request("GET", url)
        if response.status_code != 200:
            raise self._error(response)
        return base64.b64decode(response.json()["content"])

    async def put(
        self, path: str, content: bytes, message: str, version: Optional[str] = None
    ) -> str:
        body = {
            "message": message,
            "content": base64.b64encode(content).decode("ascii"),
            "branch": self.branch,
        }
        if version:
            body["sha"] = version

        response = await self._request("PUT", self._contents_url(path), json=body)
        logger.debug("PUT %s (sha=%s) -> %s", path, version, response.status_code)
        if self._is_version_conflict(response):
            raise ConflictError(path, f"GitHub rejected version {version} for {path}")
        if response.status_code not in (200, 201):
            raise self._error(response)
        return response.json()["content"]["sha"]

    async def list(self, directory: str) -> list[str]:
        response = await self._request(
            "GET", self._contents_url(directory), params={"ref": self.branch}
        )
        if response.status_code == 404:
            return []
        if response.status_code != 200:
            raise self._error(response)
        return [item["path"] for item in response.json() if item.get("type", "file") == "file"]

    async def aclose(self) -> None:
        await self.client.aclose()
