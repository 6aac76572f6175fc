import asyncio
import re
from dataclasses import dataclass
from typing import Optional

from loguru import logger

from pixrepo.config import (
    DEFAULT_BASE_NAME,
    INITIAL_NAME_KEY,
    INITIAL_OWNER_KEY,
    Settings,
    StoreSettings,
)
from pixrepo.discovery import PagesDiscovery
from pixrepo.errors import CapacityError, PixrepoError, RemoteConflict
from pixrepo.github import StoreClientFactory
from pixrepo.metadata import MetadataStore
from pixrepo.models import BackingStore, StoreStatus

_SUFFIX_RE = re.compile(r"-(\d+)$")

BASELINE_MARKERS = ("public/.gitkeep", "public/images/.gitkeep")
BOOTSTRAP_ATTEMPTS = 3


@dataclass
class Allocation:
    store: BackingStore
    created_new: bool


def strip_suffix(name: str) -> str:
    return _SUFFIX_RE.sub("", name)


def next_store_name(base_name: str, existing_names: list[str]) -> str:
    pattern = re.compile(rf"^{re.escape(base_name)}-(\d+)$")
    max_number = 0
    for name in existing_names:
        match = pattern.match(name)
        if match:
            max_number = max(max_number, int(match.group(1)))
    return f"{base_name}-{max_number + 1:03d}"


class CapacityAllocator:
    """Chooses the store a new write lands in, rotating when it nears capacity."""

    def __init__(
        self,
        metadata: MetadataStore,
        client_factory: StoreClientFactory,
        settings: Settings,
        discovery: Optional[PagesDiscovery] = None,
    ):
        self.metadata = metadata
        self.client_factory = client_factory
        self.settings = settings
        self.discovery = discovery

    async def allocate(self, upload_size: int) -> Allocation:
        store_settings = self.metadata.load_store_settings()
        threshold = store_settings.repository_size_threshold

        active = self.metadata.get_active_store()
        if active is None:
            return await self._allocate_without_active(store_settings)

        projected = active.size_estimate + upload_size
        if projected > threshold:
            logger.info(
                f"Store {active.name} would exceed threshold "
                f"(current={active.size_estimate}, upload={upload_size}, threshold={threshold}), rotating"
            )
            store = await self.create_store(store_settings, current_name=active.name)
            return Allocation(store=store, created_new=True)

        logger.debug(
            f"Using store {active.name} (current={active.size_estimate}, "
            f"upload={upload_size}, threshold={threshold})"
        )
        return Allocation(store=active, created_new=False)

    async def _allocate_without_active(self, store_settings: StoreSettings) -> Allocation:
        stores = self.metadata.list_stores()
        if not stores and self.settings.has_default_store:
            store = self._materialize_default()
            return Allocation(store=store, created_new=False)

        logger.warning("No active store available, creating one")
        if stores:
            base = max(stores, key=lambda s: s.id).name
        else:
            base = self.settings.GITHUB_REPO
        try:
            store = await self.create_store(store_settings, current_name=base)
        except PixrepoError as e:
            raise CapacityError(
                f"No store available and automatic creation failed: {e.message}",
                details={"cause": e.to_dict()},
            )
        return Allocation(store=store, created_new=True)

    def _materialize_default(self) -> BackingStore:
        name = self.settings.GITHUB_REPO
        owner = self.settings.GITHUB_OWNER
        logger.info(f"No stores recorded, materializing default store {owner}/{name}")

        store, created = self.metadata.insert_store_if_absent(
            BackingStore(
                name=name,
                owner=owner,
                token=self.settings.GITHUB_TOKEN,
                deploy_hook=self.settings.DEPLOY_HOOK,
                status=StoreStatus.ACTIVE,
                is_default=True,
                priority=0,
            )
        )
        if not created:
            return store
        self.metadata.set_setting(INITIAL_NAME_KEY, name)
        self.metadata.set_setting(INITIAL_OWNER_KEY, owner)
        return store

    def _base_name(self, store_settings: StoreSettings, current_name: Optional[str]) -> str:
        if store_settings.repository_name_template:
            return store_settings.repository_name_template
        if current_name:
            return strip_suffix(current_name)
        return DEFAULT_BASE_NAME

    async def create_store(
        self, store_settings: StoreSettings, current_name: Optional[str] = None
    ) -> BackingStore:
        owner = self.settings.GITHUB_OWNER
        if not self.settings.GITHUB_TOKEN or not owner:
            raise CapacityError("GITHUB_TOKEN and GITHUB_OWNER are required to create a store")

        base = self._base_name(store_settings, current_name)
        name = next_store_name(base, self.metadata.store_names_like(base))
        number = int(_SUFFIX_RE.search(name).group(1))
        client = self.client_factory(owner, name, self.settings.GITHUB_TOKEN)

        if await client.exists():
            logger.info(f"Repository {owner}/{name} already exists, adopting it")
        else:
            await client.create(description=f"Image storage repository #{number}")
            if self.settings.REPO_INIT_WAIT_SECONDS > 0:
                await asyncio.sleep(self.settings.REPO_INIT_WAIT_SECONDS)

        await self._bootstrap_layout(client, name)

        deploy_hook = self.settings.DEPLOY_HOOK or self.metadata.first_deploy_hook()
        store, created = self.metadata.insert_store_if_absent(
            BackingStore(
                name=name,
                owner=owner,
                token=self.settings.GITHUB_TOKEN,
                deploy_hook=deploy_hook,
                status=StoreStatus.ACTIVE,
                size_estimate=0,
                priority=0,
            )
        )
        if not created:
            # a concurrent rotation picked the same name and already activated it
            return store

        self.metadata.activate_only(store.id)
        logger.info(f"Store {owner}/{name} is now the active store")

        if self.discovery is not None:
            await self.discovery.add_store(name)
        else:
            logger.debug("Service discovery not configured, skipping REPOS propagation")

        return store

    async def _bootstrap_layout(self, client, name: str) -> None:
        for marker in BASELINE_MARKERS:
            for attempt in range(1, BOOTSTRAP_ATTEMPTS + 1):
                try:
                    await client.put(marker, b"", f"Create {marker.rsplit('/', 1)[0]} directory")
                    logger.debug(f"Created {marker} in {name}")
                    break
                except RemoteConflict:
                    logger.debug(f"{marker} already exists in {name}")
                    break
                except PixrepoError as e:
                    logger.warning(
                        f"Bootstrap of {marker} in {name} failed (attempt {attempt}/{BOOTSTRAP_ATTEMPTS}): {e.message}"
                    )
                    if attempt < BOOTSTRAP_ATTEMPTS and self.settings.REPO_INIT_WAIT_SECONDS > 0:
                        await asyncio.sleep(self.settings.REPO_INIT_WAIT_SECONDS)
