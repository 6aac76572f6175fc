import asyncio
from unittest.mock import AsyncMock

import pytest

from pixrepo.allocator import CapacityAllocator, next_store_name, strip_suffix
from pixrepo.config import INITIAL_NAME_KEY, INITIAL_OWNER_KEY, SIZE_THRESHOLD_KEY, NAME_TEMPLATE_KEY
from pixrepo.errors import CapacityError, RemoteStoreError
from pixrepo.models import StoreStatus
from pixrepo.reconciler import Reconciler


@pytest.fixture
def allocator(metadata, remote, settings):
    return CapacityAllocator(metadata, remote.client, settings)


class TestNaming:
    def test_strip_suffix(self):
        assert strip_suffix("images-repo-007") == "images-repo"
        assert strip_suffix("images-repo") == "images-repo"
        assert strip_suffix("v2-images") == "v2-images"

    def test_next_name_is_max_plus_one(self):
        existing = ["img-001", "img-004", "img-002", "img-extra", "other-009"]
        assert next_store_name("img", existing) == "img-005"

    def test_first_name(self):
        assert next_store_name("img", []) == "img-001"

    def test_padding_grows_past_three_digits(self):
        assert next_store_name("img", ["img-999"]) == "img-1000"


class TestAllocate:
    @pytest.mark.asyncio
    async def test_returns_active_store_when_room(self, allocator, metadata, add_store):
        metadata.set_setting(SIZE_THRESHOLD_KEY, "1000")
        store = add_store("base-001", size_estimate=900)

        allocation = await allocator.allocate(50)

        assert allocation.store.id == store.id
        assert allocation.created_new is False

    @pytest.mark.asyncio
    async def test_end_to_end_rotation(self, allocator, metadata, add_store, remote):
        metadata.set_setting(SIZE_THRESHOLD_KEY, "1000")
        add_store("base-001", size_estimate=900)
        reconciler = Reconciler(metadata)

        first = await allocator.allocate(50)
        reconciler.record_write(first.store.id, 50)
        assert first.store.name == "base-001"
        assert metadata.get_store(first.store.id).size_estimate == 950

        second = await allocator.allocate(200)
        assert second.created_new is True
        assert second.store.name == "base-002"
        assert remote.created == ["base-002"]
        reconciler.record_write(second.store.id, 200)

        third = await allocator.allocate(50)
        assert third.store.name == "base-002"
        assert third.created_new is False

        statuses = {s.name: s.status for s in metadata.list_stores()}
        assert statuses == {"base-001": StoreStatus.INACTIVE, "base-002": StoreStatus.ACTIVE}

    @pytest.mark.asyncio
    async def test_concurrent_rotations_share_one_new_store(self, allocator, metadata, add_store, remote):
        metadata.set_setting(SIZE_THRESHOLD_KEY, "1000")
        add_store("base-001", size_estimate=900)
        remote.put_delay = 0.01

        first, second = await asyncio.gather(allocator.allocate(200), allocator.allocate(200))

        assert first.store.name == "base-002"
        assert second.store.name == "base-002"
        assert first.store.id == second.store.id
        assert remote.created == ["base-002"]
        assert len(metadata.list_stores()) == 2
        assert metadata.get_active_store().name == "base-002"

    @pytest.mark.asyncio
    async def test_threshold_invariant_over_many_allocations(self, allocator, metadata, add_store):
        metadata.set_setting(SIZE_THRESHOLD_KEY, "1000")
        add_store("base-001")
        reconciler = Reconciler(metadata)

        for size in [300, 400, 250, 100, 600, 999, 1, 1, 500, 500]:
            allocation = await allocator.allocate(size)
            before = allocation.store.size_estimate
            store = reconciler.record_write(allocation.store.id, size)
            assert allocation.created_new or before + size <= 1000
            assert store.size_estimate <= 1000

    @pytest.mark.asyncio
    async def test_selects_lowest_priority_then_id(self, allocator, add_store):
        add_store("b-001", priority=1)
        preferred = add_store("b-002", priority=0)
        add_store("b-003", priority=0)

        allocation = await allocator.allocate(1)

        assert allocation.store.id == preferred.id

    @pytest.mark.asyncio
    async def test_default_store_materialized_when_empty(self, allocator, metadata, remote):
        allocation = await allocator.allocate(10)

        assert allocation.created_new is False
        assert allocation.store.name == "images-repo"
        assert allocation.store.is_default is True
        assert remote.created == []
        rows = metadata.get_setting_rows()
        assert rows[INITIAL_NAME_KEY] == "images-repo"
        assert rows[INITIAL_OWNER_KEY] == "acme"

    @pytest.mark.asyncio
    async def test_no_default_and_no_credentials_is_capacity_error(self, metadata, remote, settings):
        settings.GITHUB_REPO = None
        settings.GITHUB_TOKEN = None
        allocator = CapacityAllocator(metadata, remote.client, settings)

        with pytest.raises(CapacityError):
            await allocator.allocate(10)

    @pytest.mark.asyncio
    async def test_remote_create_failure_is_fatal(self, allocator, metadata, add_store, remote):
        metadata.set_setting(SIZE_THRESHOLD_KEY, "1000")
        add_store("base-001", size_estimate=990)
        remote.fail_create = True

        with pytest.raises(RemoteStoreError):
            await allocator.allocate(50)

        assert [s.name for s in metadata.list_stores()] == ["base-001"]

    @pytest.mark.asyncio
    async def test_creates_store_when_none_active(self, allocator, metadata, add_store, remote):
        add_store("base-003", status=StoreStatus.FULL)

        allocation = await allocator.allocate(10)

        assert allocation.created_new is True
        assert allocation.store.name == "base-004"


class TestCreateStore:
    @pytest.mark.asyncio
    async def test_adopts_existing_remote(self, allocator, metadata, add_store, remote):
        metadata.set_setting(SIZE_THRESHOLD_KEY, "1000")
        add_store("base-001", size_estimate=1000)
        remote.add_repo("acme", "base-002")

        allocation = await allocator.allocate(1)

        assert allocation.store.name == "base-002"
        assert remote.created == []

    @pytest.mark.asyncio
    async def test_bootstraps_layout(self, allocator, metadata, add_store, remote):
        metadata.set_setting(SIZE_THRESHOLD_KEY, "1000")
        add_store("base-001", size_estimate=1000)

        await allocator.allocate(1)

        assert remote.content("base-002", "public/.gitkeep") == b""
        assert remote.content("base-002", "public/images/.gitkeep") == b""

    @pytest.mark.asyncio
    async def test_existing_markers_are_tolerated(self, allocator, metadata, add_store, remote):
        metadata.set_setting(SIZE_THRESHOLD_KEY, "1000")
        add_store("base-001", size_estimate=1000)
        remote.add_repo("acme", "base-002")
        client = remote.client("acme", "base-002")
        await client.put("public/.gitkeep", b"", "seed")

        allocation = await allocator.allocate(1)

        assert allocation.store.name == "base-002"
        assert remote.content("base-002", "public/images/.gitkeep") == b""

    @pytest.mark.asyncio
    async def test_bootstrap_failure_is_not_fatal(self, allocator, metadata, add_store, remote):
        metadata.set_setting(SIZE_THRESHOLD_KEY, "1000")
        add_store("base-001", size_estimate=1000)
        remote.fail_put_paths = {"public/.gitkeep", "public/images/.gitkeep"}

        allocation = await allocator.allocate(1)

        assert allocation.store.name == "base-002"
        assert allocation.store.status == StoreStatus.ACTIVE

    @pytest.mark.asyncio
    async def test_name_template_wins(self, allocator, metadata, add_store):
        metadata.set_setting(SIZE_THRESHOLD_KEY, "1000")
        metadata.set_setting(NAME_TEMPLATE_KEY, "pics")
        add_store("base-001", size_estimate=1000)
        add_store("pics-002", status=StoreStatus.INACTIVE)

        allocation = await allocator.allocate(1)

        assert allocation.store.name == "pics-003"

    @pytest.mark.asyncio
    async def test_inherits_first_deploy_hook(self, allocator, metadata, add_store):
        metadata.set_setting(SIZE_THRESHOLD_KEY, "1000")
        add_store("base-001", size_estimate=1000, deploy_hook="https://hooks.example/1")

        allocation = await allocator.allocate(1)

        assert allocation.store.deploy_hook == "https://hooks.example/1"

    @pytest.mark.asyncio
    async def test_global_hook_preferred(self, metadata, remote, settings, add_store):
        settings.DEPLOY_HOOK = "https://hooks.example/global"
        allocator = CapacityAllocator(metadata, remote.client, settings)
        metadata.set_setting(SIZE_THRESHOLD_KEY, "1000")
        add_store("base-001", size_estimate=1000, deploy_hook="https://hooks.example/1")

        allocation = await allocator.allocate(1)

        assert allocation.store.deploy_hook == "https://hooks.example/global"

    @pytest.mark.asyncio
    async def test_discovery_is_told_about_new_store(self, metadata, remote, settings, add_store):
        discovery = AsyncMock()
        discovery.add_store = AsyncMock(return_value={"success": True, "changed": True})
        allocator = CapacityAllocator(metadata, remote.client, settings, discovery=discovery)
        metadata.set_setting(SIZE_THRESHOLD_KEY, "1000")
        add_store("base-001", size_estimate=1000)

        await allocator.allocate(1)

        discovery.add_store.assert_awaited_once_with("base-002")

    @pytest.mark.asyncio
    async def test_discovery_failure_does_not_fail_allocation(self, metadata, remote, settings, add_store):
        discovery = AsyncMock()
        discovery.add_store = AsyncMock(return_value={"success": False, "error": "boom"})
        allocator = CapacityAllocator(metadata, remote.client, settings, discovery=discovery)
        metadata.set_setting(SIZE_THRESHOLD_KEY, "1000")
        add_store("base-001", size_estimate=1000)

        allocation = await allocator.allocate(1)

        assert allocation.created_new is True
