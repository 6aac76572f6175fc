from datetime import datetime
from typing import Optional

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger
from loguru import logger

from pixrepo.reconciler import Reconciler

_scheduler: AsyncIOScheduler | None = None
_reconciler: Optional[Reconciler] = None


def get_scheduler() -> AsyncIOScheduler:
    global _scheduler
    if _scheduler is None:
        _scheduler = AsyncIOScheduler()
    return _scheduler


def reconcile_stores(reconciler: Reconciler) -> int:
    logger.debug("Running scheduled store reconciliation")
    results = reconciler.reconcile_all()
    changed = [r for r in results if r.success and r.status_changed]
    for result in changed:
        logger.info(
            f"Store {result.store_name} moved {result.previous_status.value} -> {result.status.value}"
        )
    failed = [r for r in results if not r.success]
    if failed:
        logger.warning(f"{len(failed)} store(s) could not be reconciled")
    return len(results) - len(failed)


def start_scheduler(reconciler: Reconciler, interval_minutes: int = 60):
    global _reconciler
    _reconciler = reconciler

    scheduler = get_scheduler()

    def job():
        reconcile_stores(_reconciler)

    scheduler.add_job(
        job,
        trigger=IntervalTrigger(minutes=interval_minutes),
        id="reconcile_stores",
        replace_existing=True,
        next_run_time=datetime.now(),
    )
    scheduler.start()
    logger.info(f"Store reconciliation scheduler started (interval: {interval_minutes}m)")


def stop_scheduler():
    global _scheduler
    scheduler = _scheduler
    _scheduler = None
    if scheduler is not None and scheduler.running:
        scheduler.shutdown(wait=False)
        logger.info("Store reconciliation scheduler stopped")
