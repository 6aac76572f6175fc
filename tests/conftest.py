import asyncio
import hashlib
import tempfile
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional

import pytest

from pixrepo.allocator import CapacityAllocator
from pixrepo.config import Settings
from pixrepo.deploy import DeployTriggerAggregator
from pixrepo.errors import RemoteConflict, RemoteNotFound, RemoteStoreError
from pixrepo.folders import FolderResolver
from pixrepo.gateway import Gateway
from pixrepo.github import RemoteFile
from pixrepo.metadata import MetadataStore
from pixrepo.models import BackingStore, StoreStatus
from pixrepo.reconciler import Reconciler
from pixrepo.uploads import MemorySessionStore, UploadSessionManager


class FakeRemote:
    """In-memory stand-in for every GitHub repository the tests touch."""

    def __init__(self):
        self.repos: set[tuple[str, str]] = set()
        self.files: dict[tuple[str, str], dict[str, tuple[bytes, str]]] = {}
        self.created: list[str] = []
        self.puts: list[tuple[str, str]] = []
        self.fail_create = False
        self.fail_put_paths: set[str] = set()
        self.put_delay = 0.0

    def add_repo(self, owner: str, repo: str):
        self.repos.add((owner, repo))
        self.files.setdefault((owner, repo), {})

    def client(self, owner: str, repo: str, token: Optional[str] = None) -> "FakeStoreClient":
        return FakeStoreClient(self, owner, repo)

    def content(self, repo: str, path: str, owner: str = "acme") -> Optional[bytes]:
        entry = self.files.get((owner, repo), {}).get(path)
        return entry[0] if entry else None


class FakeStoreClient:
    def __init__(self, remote: FakeRemote, owner: str, repo: str):
        self.remote = remote
        self.owner = owner
        self.repo = repo

    @property
    def _files(self) -> dict:
        return self.remote.files.setdefault((self.owner, self.repo), {})

    async def get(self, path: str) -> RemoteFile:
        entry = self._files.get(path)
        if entry is not None:
            return RemoteFile(path=path, sha=entry[1], size=len(entry[0]))
        if any(p.startswith(f"{path}/") for p in self._files):
            return RemoteFile(path=path, sha="", is_dir=True)
        raise RemoteNotFound(f"{path} not found", store=self.repo, path=path, status=404)

    async def put(self, path: str, content: bytes, message: str, sha: Optional[str] = None) -> str:
        if self.remote.put_delay:
            await asyncio.sleep(self.remote.put_delay)
        if path in self.remote.fail_put_paths:
            raise RemoteStoreError(f"put {path} failed", store=self.repo, path=path, status=500)
        if path in self._files and sha is None:
            raise RemoteConflict(f"{path} exists", store=self.repo, path=path, status=422)
        new_sha = hashlib.sha1(path.encode() + content).hexdigest()
        self._files[path] = (content, new_sha)
        self.remote.puts.append((self.repo, path))
        return new_sha

    async def delete(self, path: str, sha: str, message: str) -> None:
        entry = self._files.get(path)
        if entry is None:
            raise RemoteNotFound(f"{path} not found", store=self.repo, path=path, status=404)
        if entry[1] != sha:
            raise RemoteConflict(f"{path} sha mismatch", store=self.repo, path=path, status=409)
        del self._files[path]

    async def exists(self) -> bool:
        return (self.owner, self.repo) in self.remote.repos

    async def create(self, description: str, private: bool = True) -> None:
        if self.remote.fail_create:
            raise RemoteStoreError(f"create {self.repo} failed", store=self.repo, status=403)
        self.remote.add_repo(self.owner, self.repo)
        self.remote.created.append(self.repo)


@pytest.fixture
def remote():
    return FakeRemote()


@pytest.fixture
def metadata():
    store = MetadataStore.from_url("sqlite://")
    store.create_all()
    return store


@pytest.fixture
def settings():
    return Settings(
        _env_file=None,
        GITHUB_TOKEN="ghp_test",
        GITHUB_OWNER="acme",
        GITHUB_REPO="images-repo",
        REPO_INIT_WAIT_SECONDS=0,
        DEPLOY_HOOK=None,
        SITE_URL="https://img.example.com",
    )


@pytest.fixture
def add_store(metadata):
    def _add(
        name: str,
        size_estimate: int = 0,
        status: StoreStatus = StoreStatus.ACTIVE,
        deploy_hook: Optional[str] = None,
        priority: int = 0,
    ) -> BackingStore:
        return metadata.insert_store(
            BackingStore(
                name=name,
                owner="acme",
                token="ghp_test",
                status=status,
                size_estimate=size_estimate,
                deploy_hook=deploy_hook,
                priority=priority,
            )
        )

    return _add


class FakeClock:
    def __init__(self, start: float = 1_700_000_000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float):
        self.now += seconds


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def temp_sessions_dir():
    with tempfile.TemporaryDirectory() as tmpdir:
        yield Path(tmpdir)


@pytest.fixture
def fixed_now():
    # 17:30 UTC is already the next day at UTC+8
    return datetime(2024, 5, 31, 17, 30, tzinfo=timezone.utc)


@pytest.fixture
def gateway(metadata, remote, settings, clock, fixed_now):
    return Gateway(
        metadata=metadata,
        allocator=CapacityAllocator(metadata, remote.client, settings),
        folders=FolderResolver(metadata, remote.client, create_timeout=1.0),
        sessions=UploadSessionManager(MemorySessionStore(), ttl_seconds=600, clock=clock),
        reconciler=Reconciler(metadata),
        deployer=DeployTriggerAggregator(metadata),
        client_factory=remote.client,
        site_url=settings.SITE_URL,
        utc_offset_hours=8,
        now=lambda: fixed_now,
    )
