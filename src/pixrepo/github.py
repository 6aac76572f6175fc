import base64
from dataclasses import dataclass
from typing import Any, Callable, Optional, Protocol, runtime_checkable
from urllib.parse import quote

import aiohttp
from loguru import logger

from pixrepo.errors import RemoteConflict, RemoteNotFound, RemoteStoreError


@dataclass
class RemoteFile:
    path: str
    sha: str
    size: int = 0
    is_dir: bool = False


@runtime_checkable
class BackingStoreClient(Protocol):
    owner: str
    repo: str

    async def get(self, path: str) -> RemoteFile: ...

    async def put(
        self, path: str, content: bytes, message: str, sha: Optional[str] = None
    ) -> str: ...

    async def delete(self, path: str, sha: str, message: str) -> None: ...

    async def exists(self) -> bool: ...

    async def create(self, description: str, private: bool = True) -> None: ...


StoreClientFactory = Callable[[str, str, Optional[str]], BackingStoreClient]


class GitHubClient:
    """Backing-store client for one GitHub repository (contents + repos API)."""

    def __init__(
        self,
        owner: str,
        repo: str,
        token: Optional[str],
        api_url: str = "https://api.github.com",
        branch: str = "main",
        timeout: float = 30.0,
    ):
        self.owner = owner
        self.repo = repo
        self.token = token
        self.api_url = api_url.rstrip("/")
        self.branch = branch
        self.timeout = timeout

    @property
    def full_name(self) -> str:
        return f"{self.owner}/{self.repo}"

    def _headers(self) -> dict:
        headers = {
            "Accept": "application/vnd.github+json",
            "X-GitHub-Api-Version": "2022-11-28",
            "User-Agent": "pixrepo",
        }
        if self.token:
            headers["Authorization"] = f"Bearer {self.token}"
        return headers

    def _contents_url(self, path: str) -> str:
        return f"{self.api_url}/repos/{self.owner}/{self.repo}/contents/{quote(path)}"

    async def _request(
        self,
        method: str,
        url: str,
        path: Optional[str] = None,
        **kwargs,
    ) -> tuple[int, Any]:
        async with aiohttp.ClientSession(
            headers=self._headers(),
            timeout=aiohttp.ClientTimeout(total=self.timeout),
        ) as session:
            try:
                async with session.request(method, url, **kwargs) as response:
                    if response.content_type == "application/json":
                        body = await response.json()
                    else:
                        body = await response.text()
                    return response.status, body
            except aiohttp.ClientError as e:
                raise RemoteStoreError(
                    f"{method} {self.full_name}:{path or url} failed: {e}",
                    store=self.full_name,
                    path=path,
                )

    def _raise_for_status(self, status: int, body: Any, action: str, path: Optional[str]):
        message = body.get("message") if isinstance(body, dict) else body
        text = f"{action} {self.full_name}:{path or ''} returned {status}: {message}"
        if status == 404:
            raise RemoteNotFound(text, store=self.full_name, path=path, status=status)
        if status in (409, 422):
            raise RemoteConflict(text, store=self.full_name, path=path, status=status)
        raise RemoteStoreError(text, store=self.full_name, path=path, status=status)

    async def get(self, path: str) -> RemoteFile:
        status, body = await self._request(
            "GET", self._contents_url(path), path, params={"ref": self.branch}
        )
        if status != 200:
            self._raise_for_status(status, body, "get", path)
        if isinstance(body, list):
            return RemoteFile(path=path, sha="", is_dir=True)
        return RemoteFile(path=path, sha=body["sha"], size=body.get("size", 0))

    async def put(
        self, path: str, content: bytes, message: str, sha: Optional[str] = None
    ) -> str:
        payload = {
            "message": message,
            "content": base64.b64encode(content).decode("ascii"),
            "branch": self.branch,
        }
        if sha:
            payload["sha"] = sha

        status, body = await self._request("PUT", self._contents_url(path), path, json=payload)
        if status not in (200, 201):
            self._raise_for_status(status, body, "put", path)

        new_sha = body["content"]["sha"]
        logger.debug(f"Wrote {len(content)} bytes to {self.full_name}:{path} ({new_sha[:7]})")
        return new_sha

    async def delete(self, path: str, sha: str, message: str) -> None:
        payload = {"message": message, "sha": sha, "branch": self.branch}
        status, body = await self._request("DELETE", self._contents_url(path), path, json=payload)
        if status != 200:
            self._raise_for_status(status, body, "delete", path)
        logger.debug(f"Deleted {self.full_name}:{path}")

    async def exists(self) -> bool:
        status, body = await self._request("GET", f"{self.api_url}/repos/{self.owner}/{self.repo}")
        if status == 200:
            return True
        if status == 404:
            return False
        self._raise_for_status(status, body, "get repository", None)

    async def create(self, description: str, private: bool = True) -> None:
        payload = {
            "name": self.repo,
            "description": description,
            "private": private,
            "auto_init": True,
        }

        status, body = await self._request("POST", f"{self.api_url}/orgs/{self.owner}/repos", json=payload)
        if status == 201:
            logger.info(f"Created organization repository {self.full_name}")
            return

        logger.info(
            f"Organization create for {self.full_name} returned {status}, falling back to user repository"
        )
        status, body = await self._request("POST", f"{self.api_url}/user/repos", json=payload)
        if status != 201:
            self._raise_for_status(status, body, "create repository", None)
        logger.info(f"Created user repository {self.full_name}")


def github_client_factory(
    token: Optional[str], api_url: str, branch: str
) -> StoreClientFactory:
    def factory(owner: str, repo: str, store_token: Optional[str]) -> GitHubClient:
        return GitHubClient(
            owner=owner,
            repo=repo,
            token=store_token or token,
            api_url=api_url,
            branch=branch,
        )

    return factory
