import logging
from typing import BinaryIO

from catalog.auth import Authorizer, StaticTokenAuthorizer
from catalog.cache import Cache, MemoryCache, RedisCache
from catalog.config import Settings
from catalog.database import build_session_factory
from catalog.db_models import utc_now
from catalog.invalidation import InvalidationCoordinator
from catalog.pipeline import IngestionPipeline
from catalog.query import QueryLayer
from catalog.record_store import RecordStore
from catalog.resync import resync_index
from catalog.schemas import CatalogRecord, IngestionReport, ListFilters, QueryResult, ResyncResult, SearchFilters, SortSpec
from catalog.search import ElasticsearchIndex, MemorySearchIndex, SearchIndex


logger = logging.getLogger(__name__)


class CatalogService:
    def __init__(self, settings: Settings, pipeline: IngestionPipeline, query: QueryLayer) -> None:
        self.settings = settings
        self.pipeline = pipeline
        self.query = query

    def ingest_batch(self, byte_stream: bytes | BinaryIO, auth_token: str | None) -> IngestionReport:
        return self.pipeline.ingest_batch(byte_stream, auth_token)

    def create_record(self, fields: dict[str, object], auth_token: str | None) -> CatalogRecord:
        return self.pipeline.create_record(fields, auth_token)

    def replace_record(self, record_id: str, fields: dict[str, object], auth_token: str | None) -> CatalogRecord:
        return self.pipeline.replace_record(record_id, fields, auth_token)

    def delete_record(self, record_id: str, auth_token: str | None) -> CatalogRecord:
        return self.pipeline.delete_record(record_id, auth_token)

    def list_records(
        self,
        *,
        page: int = 1,
        page_size: int | None = None,
        filters: ListFilters | None = None,
        sort: SortSpec | None = None,
    ) -> QueryResult:
        return self.query.list_records(page=page, page_size=page_size, filters=filters, sort=sort)

    def search_records(
        self,
        query: str | None,
        *,
        filters: SearchFilters | None = None,
        page: int = 1,
        page_size: int | None = None,
    ) -> QueryResult:
        return self.query.search_records(query, filters=filters, page=page, page_size=page_size)

    def get_record(self, record_id: str) -> QueryResult:
        return self.query.get_record(record_id)

    def get_statistics(self) -> QueryResult:
        return self.query.get_statistics()

    def resync_index(self) -> ResyncResult:
        return resync_index(self.pipeline.store, self.pipeline.index, batch_size=self.settings.resync_batch_size)

    def health(self) -> dict[str, object]:
        connections = {
            "store": self.pipeline.store.ping(),
            "cache": self.query.cache.ping(),
            "index": self.query.index.ping(),
        }
        return {
            "service": self.settings.app_name,
            "status": "healthy" if all(connections.values()) else "degraded",
            "timestamp": utc_now().isoformat(),
            "connections": connections,
        }


def build_cache(settings: Settings) -> Cache:
    if settings.redis_url:
        return RedisCache.from_url(settings.redis_url, timeout_seconds=settings.dependency_timeout_seconds)
    logger.info("REDIS_URL not set, using in-process cache")
    return MemoryCache()


def build_index(settings: Settings) -> SearchIndex:
    if settings.elasticsearch_url:
        return ElasticsearchIndex.from_url(
            settings.elasticsearch_url,
            settings.elasticsearch_index,
            api_key=settings.elasticsearch_api_key,
            timeout_seconds=settings.dependency_timeout_seconds,
        )
    logger.info("ELASTICSEARCH_URL not set, using in-process search index")
    return MemorySearchIndex()


def build_service(
    settings: Settings,
    *,
    store: RecordStore | None = None,
    cache: Cache | None = None,
    index: SearchIndex | None = None,
    authorizer: Authorizer | None = None,
) -> CatalogService:
    store = store or RecordStore(build_session_factory(settings.database_url))
    cache = cache if cache is not None else build_cache(settings)
    index = index if index is not None else build_index(settings)
    authorizer = authorizer or StaticTokenAuthorizer(settings.api_tokens)

    # Record counters must outlive every entry cached under them.
    invalidation = InvalidationCoordinator(cache, record_generation_ttl_seconds=settings.cache_ttl_record_seconds * 2)
    pipeline = IngestionPipeline(settings, store, index, invalidation, authorizer)
    query = QueryLayer(settings, store, cache, index, invalidation)
    return CatalogService(settings, pipeline, query)
