import logging

from catalog.errors import DependencyUnavailableError
from catalog.record_store import RecordStore
from catalog.schemas import ResyncResult
from catalog.search import SearchIndex


logger = logging.getLogger(__name__)


def resync_index(store: RecordStore, index: SearchIndex, *, batch_size: int = 500) -> ResyncResult:
    indexed = 0
    removed = 0
    try:
        for batch in store.iter_batches(published=True, batch_size=batch_size):
            indexed += index.upsert_many(batch)
        for batch in store.iter_batches(published=False, batch_size=batch_size):
            removed += index.remove_many(record.record_id for record in batch)
    except DependencyUnavailableError as exc:
        logger.warning(
            "search index unavailable, resync skipped",
            extra={"indexed": indexed, "removed": removed, "error": str(exc)},
        )
        return ResyncResult(indexed=indexed, removed=removed, skipped=True)

    logger.info("search index resync completed", extra={"indexed": indexed, "removed": removed})
    return ResyncResult(indexed=indexed, removed=removed, skipped=False)
