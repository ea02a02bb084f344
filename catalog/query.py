from collections.abc import Callable
import logging
import math

from catalog.cache import Cache
from catalog.config import Settings
from catalog.errors import DependencyUnavailableError, NotFoundError, RecordValidationError
from catalog.invalidation import (
    LIST_SCOPE,
    SEARCH_SCOPE,
    STATS_SCOPE,
    InvalidationCoordinator,
    entry_key,
    record_scope,
)
from catalog.record_store import RecordStore
from catalog.schemas import SORT_FIELDS, ListFilters, QueryResult, SearchFilters, SearchHits, SortSpec
from catalog.search import SearchIndex


logger = logging.getLogger(__name__)

# compute() returns the payload and whether it may be cached.
Computation = Callable[[], tuple[dict[str, object], bool]]


def paginate(page: int, page_size: int, total: int) -> dict[str, object]:
    total_pages = math.ceil(total / page_size) if total else 0
    return {
        "current_page": page,
        "total_pages": total_pages,
        "total_items": total,
        "items_per_page": page_size,
        "has_next": page < total_pages,
        "has_prev": page > 1,
    }


def _clean(value: str | None) -> str | None:
    if value is None:
        return None
    value = value.strip()
    return value or None


class QueryLayer:
    def __init__(
        self,
        settings: Settings,
        store: RecordStore,
        cache: Cache,
        index: SearchIndex,
        invalidation: InvalidationCoordinator,
    ) -> None:
        self.settings = settings
        self.store = store
        self.cache = cache
        self.index = index
        self.invalidation = invalidation

    def list_records(
        self,
        *,
        page: int = 1,
        page_size: int | None = None,
        filters: ListFilters | None = None,
        sort: SortSpec | None = None,
    ) -> QueryResult:
        page, page_size = self._paging(page, page_size)
        filters = filters or ListFilters()
        filters = ListFilters(
            category=_clean(filters.category),
            owner=_clean(filters.owner),
            level=_clean(filters.level),
            status=_clean(filters.status) or "published",
            text=_clean(filters.text),
        )
        sort = sort or SortSpec()
        sort = SortSpec(
            field=sort.field if sort.field in SORT_FIELDS else "created_at",
            order="asc" if str(sort.order).lower() == "asc" else "desc",
        )

        def compute() -> tuple[dict[str, object], bool]:
            records, total = self.store.list_page(filters, sort, page=page, page_size=page_size)
            return {"records": [record.to_dict() for record in records], "pagination": paginate(page, page_size, total)}, True

        params = (
            page,
            page_size,
            filters.category,
            filters.owner,
            filters.level,
            filters.status,
            sort.field,
            sort.order,
            filters.text,
        )
        return self._cache_aside(LIST_SCOPE, "list", params, self.settings.cache_ttl_list_seconds, compute)

    def search_records(
        self,
        query: str | None,
        *,
        filters: SearchFilters | None = None,
        page: int = 1,
        page_size: int | None = None,
    ) -> QueryResult:
        normalized = " ".join((query or "").split())
        if not normalized:
            raise RecordValidationError(["Search query is required"])

        page, page_size = self._paging(page, page_size)
        filters = filters or SearchFilters()
        filters = SearchFilters(category=_clean(filters.category), owner=_clean(filters.owner))

        def compute() -> tuple[dict[str, object], bool]:
            cacheable = True
            try:
                results = self.index.search(normalized, filters, page=page, page_size=page_size)
            except DependencyUnavailableError as exc:
                # An empty answer from a missing index must not outlive the outage.
                logger.warning("search index unavailable, returning no results", extra={"error": str(exc)})
                results = SearchHits(hits=[], total=0)
                cacheable = False
            payload = {
                "records": results.hits,
                "pagination": paginate(page, page_size, results.total),
                "query": normalized,
            }
            return payload, cacheable

        params = (normalized.lower(), filters.category, filters.owner, page, page_size)
        result = self._cache_aside(SEARCH_SCOPE, "search", params, self.settings.cache_ttl_search_seconds, compute)
        if result.data.get("query") != normalized:
            # The key is case-insensitive; echo this caller's spelling.
            result = QueryResult(data={**result.data, "query": normalized}, cached=result.cached)
        return result

    def get_record(self, record_id: str) -> QueryResult:
        record_id = (record_id or "").strip().upper()
        if not record_id:
            raise NotFoundError(record_id)

        def compute() -> tuple[dict[str, object], bool]:
            record = self.store.get(record_id)
            if record is None:
                raise NotFoundError(record_id)
            return {"record": record.to_dict()}, record.is_published

        return self._cache_aside(
            record_scope(record_id), "record", (record_id,), self.settings.cache_ttl_record_seconds, compute
        )

    def get_statistics(self) -> QueryResult:
        def compute() -> tuple[dict[str, object], bool]:
            return self.store.statistics(), True

        return self._cache_aside(STATS_SCOPE, "stats", ("overview",), self.settings.cache_ttl_stats_seconds, compute)

    def _paging(self, page: int, page_size: int | None) -> tuple[int, int]:
        page = max(1, int(page or 1))
        size = int(page_size or self.settings.default_page_size)
        return page, min(max(1, size), self.settings.max_page_size)

    def _cache_aside(
        self,
        scope: str,
        kind: str,
        params: tuple[object, ...],
        ttl_seconds: int,
        compute: Computation,
    ) -> QueryResult:
        try:
            key = entry_key(kind, self.invalidation.current_generation(scope), *params)
            cached = self.cache.get(key)
        except DependencyUnavailableError as exc:
            logger.warning("cache unavailable, reading from source", extra={"kind": kind, "error": str(exc)})
            data, _ = compute()
            return QueryResult(data=data, cached=False)

        if isinstance(cached, dict):
            return QueryResult(data=cached, cached=True)

        data, cacheable = compute()
        if cacheable:
            try:
                self.cache.set(key, data, ttl_seconds)
            except DependencyUnavailableError as exc:
                logger.warning("cache populate skipped", extra={"cache_key": key, "error": str(exc)})
        return QueryResult(data=data, cached=False)
