import asyncio

from loguru import logger

from pixrepo.errors import FolderResolutionError, PixrepoError, RemoteConflict, ValidationError
from pixrepo.github import StoreClientFactory
from pixrepo.metadata import MetadataStore
from pixrepo.models import BackingStore, Folder

FOLDER_ROOT = "public"
FOLDER_MARKER = ".gitkeep"


def folder_path(folder_name: str) -> str:
    return f"{FOLDER_ROOT}/{folder_name}"


def clean_folder_name(folder_name: str | None) -> str:
    name = (folder_name or "").strip().strip("/")
    if not name:
        raise ValidationError("Folder name must not be empty", field="folderName")
    if any(part in ("", ".", "..") for part in name.split("/")):
        raise ValidationError(f"Invalid folder name: {folder_name}", field="folderName")
    return name


class FolderResolver:
    """Looks up or creates a folder exactly once per store.

    Concurrent callers may each write the remote marker; only one metadata
    row survives because the insert is conditioned on the unique
    ``(path, repository_id)`` constraint.
    """

    def __init__(
        self,
        metadata: MetadataStore,
        client_factory: StoreClientFactory,
        create_timeout: float = 10.0,
    ):
        self.metadata = metadata
        self.client_factory = client_factory
        self.create_timeout = create_timeout

    async def resolve(self, store: BackingStore, folder_name: str) -> Folder:
        name = clean_folder_name(folder_name)
        path = folder_path(name)

        folder = self.metadata.get_folder(path, store.id)
        if folder is not None:
            return folder

        await self._create_marker(store, name, path)

        if self.metadata.get_folder(path, store.id) is None:
            if self.metadata.insert_folder_if_absent(name, path, store.id):
                logger.info(f"Created folder {path} in {store.full_name}")

        folder = self.metadata.get_folder(path, store.id)
        if folder is None:
            raise FolderResolutionError(
                f"Folder {path} is still missing in {store.full_name} after creation",
                details={"store": store.full_name, "path": path},
            )
        return folder

    async def _create_marker(self, store: BackingStore, name: str, path: str) -> None:
        client = self.client_factory(store.owner, store.name, store.token)
        marker = f"{path}/{FOLDER_MARKER}"
        try:
            await asyncio.wait_for(
                client.put(marker, b"", f"Create folder: {name}"),
                timeout=self.create_timeout,
            )
        except RemoteConflict:
            logger.debug(f"Marker {marker} already exists in {store.full_name}")
        except asyncio.TimeoutError:
            raise FolderResolutionError(
                f"Creating folder {path} in {store.full_name} timed out after {self.create_timeout}s",
                details={"store": store.full_name, "path": path},
            )
        except PixrepoError as e:
            logger.error(f"Creating folder {path} in {store.full_name} failed: {e.message}")
            raise
