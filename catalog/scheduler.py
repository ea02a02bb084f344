import logging

from apscheduler.schedulers.blocking import BlockingScheduler

from catalog.service import CatalogService


logger = logging.getLogger(__name__)


def _run_resync(service: CatalogService) -> None:
    result = service.resync_index()
    if result.skipped:
        logger.error(
            "scheduled resync skipped",
            extra={"indexed": result.indexed, "removed": result.removed},
        )
        return
    logger.info(
        "scheduled resync completed",
        extra={"indexed": result.indexed, "removed": result.removed},
    )


def start_resync_scheduler(service: CatalogService, *, run_now: bool = False) -> None:
    interval_minutes = service.settings.resync_interval_minutes
    scheduler = BlockingScheduler(timezone="UTC")
    scheduler.add_job(
        _run_resync,
        "interval",
        args=[service],
        minutes=interval_minutes,
        id="search_index_resync",
        replace_existing=True,
        max_instances=1,
        coalesce=True,
    )

    logger.info("resync scheduler started", extra={"interval_minutes": interval_minutes})

    if run_now:
        _run_resync(service)

    scheduler.start()
