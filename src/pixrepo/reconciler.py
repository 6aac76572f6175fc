from dataclasses import dataclass
from typing import Optional

from loguru import logger

from pixrepo.config import StoreSettings
from pixrepo.metadata import MetadataStore
from pixrepo.models import BackingStore, StoreStatus


@dataclass
class ReconcileResult:
    store_id: int
    store_name: str
    file_count: int
    total_size: int
    status: StoreStatus
    previous_status: StoreStatus
    success: bool = True
    error: Optional[str] = None

    @property
    def status_changed(self) -> bool:
        return self.status != self.previous_status

    def to_dict(self) -> dict:
        return {
            "store_id": self.store_id,
            "store_name": self.store_name,
            "file_count": self.file_count,
            "total_size": self.total_size,
            "status": self.status.value,
            "previous_status": self.previous_status.value,
            "success": self.success,
            "error": self.error,
        }


def next_status(
    current: StoreStatus, size: int, store_settings: StoreSettings
) -> StoreStatus:
    """Status after a size change, with hysteresis between full and active."""
    if size >= store_settings.repository_size_threshold:
        return StoreStatus.FULL
    if current in (StoreStatus.FULL, StoreStatus.INACTIVE) and size < store_settings.reactivate_below:
        return StoreStatus.ACTIVE
    return current


class Reconciler:
    """Keeps store size totals and status in line with the file records.

    ``record_write`` and ``record_delete`` adjust the running totals
    incrementally; ``reconcile`` recomputes them from the ``images`` rows,
    which are authoritative.
    """

    def __init__(self, metadata: MetadataStore):
        self.metadata = metadata

    def _apply_status(
        self, store: BackingStore, store_settings: StoreSettings
    ) -> BackingStore:
        wanted = next_status(store.status, store.size_estimate, store_settings)
        if wanted == store.status:
            return store
        logger.info(
            f"Store {store.name} status {store.status.value} -> {wanted.value} "
            f"(size={store.size_estimate}, threshold={store_settings.repository_size_threshold})"
        )
        return self.metadata.update_store(store.id, status=wanted)

    def reconcile(self, store_id: int) -> ReconcileResult:
        store = self.metadata.get_store(store_id)
        if store is None:
            raise LookupError(f"Store {store_id} does not exist")

        previous_status = store.status
        count, total = self.metadata.file_stats(store_id)
        if count != store.file_count or total != store.size_estimate:
            logger.info(
                f"Store {store.name} drifted: count {store.file_count} -> {count}, "
                f"size {store.size_estimate} -> {total}"
            )
        store = self.metadata.update_store(store_id, file_count=count, size_estimate=total)
        store = self._apply_status(store, self.metadata.load_store_settings())

        return ReconcileResult(
            store_id=store.id,
            store_name=store.name,
            file_count=count,
            total_size=total,
            status=store.status,
            previous_status=previous_status,
        )

    def reconcile_all(self) -> list[ReconcileResult]:
        results = []
        for store in self.metadata.list_stores():
            try:
                results.append(self.reconcile(store.id))
            except Exception as e:
                logger.error(f"Reconciling store {store.name} failed: {e}")
                results.append(
                    ReconcileResult(
                        store_id=store.id,
                        store_name=store.name,
                        file_count=store.file_count,
                        total_size=store.size_estimate,
                        status=store.status,
                        previous_status=store.status,
                        success=False,
                        error=str(e),
                    )
                )
        logger.info(
            f"Reconciled {sum(r.success for r in results)}/{len(results)} stores"
        )
        return results

    def record_write(self, store_id: int, size: int) -> Optional[BackingStore]:
        store = self.metadata.add_to_size_estimate(store_id, size, 1)
        if store is None:
            logger.warning(f"Cannot record write of {size} bytes, store {store_id} is gone")
            return None
        return self._apply_status(store, self.metadata.load_store_settings())

    def record_delete(self, store_id: int, size: int) -> Optional[BackingStore]:
        store = self.metadata.add_to_size_estimate(store_id, -size, -1)
        if store is None:
            logger.warning(f"Cannot record delete of {size} bytes, store {store_id} is gone")
            return None
        return self._apply_status(store, self.metadata.load_store_settings())
