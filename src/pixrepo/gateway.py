"""
Write and delete orchestration.

A write picks a store through the allocator, resolves the destination
folder (or a date-partitioned path), refuses to overwrite an existing file,
puts the blob, records its metadata, updates the store's running totals and
finally fans out deploy hooks. Metadata is only touched once the remote
write succeeded; a failure between the two leaves at most an orphaned blob,
which listing never shows.
"""

from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Callable, Optional

from loguru import logger

from pixrepo.allocator import CapacityAllocator
from pixrepo.config import Settings
from pixrepo.deploy import DeployResult, DeployTriggerAggregator
from pixrepo.discovery import PagesDiscovery
from pixrepo.errors import (
    ConflictError,
    FileNotFound,
    RemoteConflict,
    RemoteNotFound,
    ValidationError,
)
from pixrepo.folders import FolderResolver
from pixrepo.github import StoreClientFactory, github_client_factory
from pixrepo.links import build_links, public_url
from pixrepo.metadata import MetadataStore
from pixrepo.models import BackingStore, FileRecord
from pixrepo.reconciler import Reconciler
from pixrepo.uploads import UploadSessionManager, create_session_store
from pixrepo.validation import check_image_type, normalize_file_name, optional_folder_name

DATE_ROOT = "public/images"


@dataclass
class UploadResult:
    record: FileRecord
    store: BackingStore
    links: dict
    created_new_store: bool
    deploy: Optional[DeployResult] = None

    def to_dict(self) -> dict:
        return {
            "success": True,
            "data": self.links,
            "file": {
                "id": self.record.id,
                "filename": self.record.filename,
                "size": self.record.size,
                "path": self.record.remote_path,
                "store": self.store.name,
            },
            "created_new_store": self.created_new_store,
            "deploy": self.deploy.to_dict() if self.deploy is not None else None,
        }


class Gateway:
    def __init__(
        self,
        metadata: MetadataStore,
        allocator: CapacityAllocator,
        folders: FolderResolver,
        sessions: UploadSessionManager,
        reconciler: Reconciler,
        deployer: DeployTriggerAggregator,
        client_factory: StoreClientFactory,
        site_url: str,
        utc_offset_hours: int = 8,
        now: Optional[Callable[[], datetime]] = None,
    ):
        self.metadata = metadata
        self.allocator = allocator
        self.folders = folders
        self.sessions = sessions
        self.reconciler = reconciler
        self.deployer = deployer
        self.client_factory = client_factory
        self.site_url = site_url
        self.tz = timezone(timedelta(hours=utc_offset_hours))
        self.now = now or (lambda: datetime.now(timezone.utc))

    def date_path(self) -> str:
        local = self.now().astimezone(self.tz)
        return f"{local.year:04d}/{local.month:02d}/{local.day:02d}"

    async def upload_direct(
        self,
        data: bytes,
        file_name: Optional[str],
        mime_type: Optional[str],
        folder_name: Optional[str] = None,
        skip_deploy: bool = False,
    ) -> UploadResult:
        mime_type = check_image_type(mime_type)
        name = normalize_file_name(file_name, mime_type)
        folder_name = optional_folder_name(folder_name)
        if not data:
            raise ValidationError("Uploaded file is empty", field="file")
        return await self._write(data, name, mime_type, folder_name, skip_deploy)

    async def complete_chunked(
        self,
        session_id: Optional[str],
        folder_name: Optional[str] = None,
        skip_deploy: bool = False,
    ) -> UploadResult:
        folder_name = optional_folder_name(folder_name)
        session = await self.sessions.get_session(session_id)
        mime_type = check_image_type(session.mime_type)
        name = normalize_file_name(session.file_name, mime_type)

        # the session is single-use from here on, whatever happens downstream
        assembled = await self.sessions.complete(session_id)
        return await self._write(assembled.data, name, mime_type, folder_name, skip_deploy)

    async def _write(
        self,
        data: bytes,
        name: str,
        mime_type: str,
        folder_name: Optional[str],
        skip_deploy: bool,
    ) -> UploadResult:
        allocation = await self.allocator.allocate(len(data))
        store = allocation.store

        folder_id = None
        if folder_name is not None:
            folder = await self.folders.resolve(store, folder_name)
            folder_id = folder.id
            remote_path = f"{folder.path}/{name}"
        else:
            remote_path = f"{DATE_ROOT}/{self.date_path()}/{name}"

        existing = self.metadata.find_file(store.id, name, folder_id)
        if existing is not None:
            raise ConflictError(name, existing.remote_path)

        client = self.client_factory(store.owner, store.name, store.token)
        try:
            await client.get(remote_path)
        except RemoteNotFound:
            pass
        else:
            raise ConflictError(name, remote_path)

        try:
            sha = await client.put(remote_path, data, f"Upload {name}")
        except RemoteConflict:
            raise ConflictError(name, remote_path)
        logger.info(f"Uploaded {name} ({len(data)} bytes) to {store.full_name}:{remote_path}")

        try:
            record = self.metadata.insert_file(
                FileRecord(
                    repository_id=store.id,
                    folder_id=folder_id,
                    filename=name,
                    size=len(data),
                    mime_type=mime_type,
                    remote_path=remote_path,
                    sha=sha,
                )
            )
        except ConflictError:
            logger.warning(
                f"{store.full_name}:{remote_path} was written but its metadata row lost a race, "
                "the blob is orphaned"
            )
            raise

        self.reconciler.record_write(store.id, len(data))

        deploy = None
        if skip_deploy:
            logger.debug(f"Skipping deploy after {name}")
        else:
            deploy = await self.deployer.trigger_all()

        links = build_links(public_url(self.site_url, remote_path), name)
        return UploadResult(
            record=record,
            store=store,
            links=links,
            created_new_store=allocation.created_new,
            deploy=deploy,
        )

    async def delete_file(self, file_id: int) -> dict:
        record = self.metadata.get_file(file_id)
        if record is None:
            raise FileNotFound(file_id)
        store = self.metadata.get_store(record.repository_id)
        if store is None:
            raise FileNotFound(file_id)

        client = self.client_factory(store.owner, store.name, store.token)
        try:
            sha = record.sha or (await client.get(record.remote_path)).sha
            await client.delete(record.remote_path, sha, f"Delete {record.filename}")
        except RemoteNotFound:
            logger.warning(
                f"{store.full_name}:{record.remote_path} was already gone, removing metadata only"
            )

        self.metadata.delete_file(record.id)
        self.reconciler.record_delete(store.id, record.size)
        logger.info(f"Deleted {record.filename} from {store.full_name}")
        return {"success": True, "id": record.id, "path": record.remote_path}


def build_gateway(settings: Settings, metadata: MetadataStore) -> Gateway:
    client_factory = github_client_factory(
        settings.GITHUB_TOKEN, settings.GITHUB_API_URL, settings.GITHUB_BRANCH
    )

    discovery = None
    if settings.discovery_enabled:
        discovery = PagesDiscovery(
            api_token=settings.CF_API_TOKEN,
            account_id=settings.CF_ACCOUNT_ID,
            project_name=settings.CF_PROJECT_NAME,
            api_url=settings.CF_API_URL,
            current_repos=settings.REPOS,
        )

    return Gateway(
        metadata=metadata,
        allocator=CapacityAllocator(metadata, client_factory, settings, discovery),
        folders=FolderResolver(
            metadata, client_factory, settings.FOLDER_CREATE_TIMEOUT_SECONDS
        ),
        sessions=UploadSessionManager(
            create_session_store(settings),
            ttl_seconds=settings.SESSION_TTL_SECONDS,
            max_total_chunks=settings.MAX_TOTAL_CHUNKS,
        ),
        reconciler=Reconciler(metadata),
        deployer=DeployTriggerAggregator(metadata, settings.DEPLOY_HOOK),
        client_factory=client_factory,
        site_url=settings.SITE_URL,
        utc_offset_hours=settings.PATH_UTC_OFFSET_HOURS,
    )
