from collections.abc import Iterable, Iterator
from contextlib import contextmanager
import logging
import re
import threading
from typing import Protocol

from elasticsearch import ApiError, Elasticsearch, NotFoundError, TransportError, helpers
from rapidfuzz import process
from rapidfuzz.distance import Levenshtein

from catalog.errors import DependencyUnavailableError
from catalog.schemas import PUBLISHED, CatalogRecord, SearchFilters, SearchHits


logger = logging.getLogger(__name__)

FIELD_WEIGHTS = (("title", 2.0), ("description", 1.0), ("owner", 1.0), ("category", 1.0))

INDEX_MAPPINGS = {
    "dynamic": False,
    "properties": {
        "record_id": {"type": "keyword"},
        "title": {"type": "text", "analyzer": "standard", "fields": {"keyword": {"type": "keyword"}}},
        "description": {"type": "text", "analyzer": "standard"},
        "category": {"type": "keyword"},
        "owner": {"type": "text", "fields": {"keyword": {"type": "keyword"}}},
        "level": {"type": "keyword"},
        "status": {"type": "keyword"},
        "tags": {"type": "keyword"},
        "duration_units": {"type": "float"},
        "price": {"type": "float"},
        "rating": {"type": "float"},
        "popularity_count": {"type": "integer"},
        "created_at": {"type": "date"},
        "updated_at": {"type": "date"},
    },
}


class SearchIndex(Protocol):
    def upsert(self, record: CatalogRecord) -> None: ...

    def upsert_many(self, records: Iterable[CatalogRecord]) -> int: ...

    def remove(self, record_id: str) -> None: ...

    def remove_many(self, record_ids: Iterable[str]) -> int: ...

    def search(self, query: str, filters: SearchFilters, *, page: int, page_size: int) -> SearchHits: ...

    def ping(self) -> bool: ...


@contextmanager
def _translate_errors(action: str) -> Iterator[None]:
    try:
        yield
    except (ApiError, TransportError, helpers.BulkIndexError) as exc:
        raise DependencyUnavailableError(f"elasticsearch {action} failed: {exc}") from exc


class ElasticsearchIndex:
    def __init__(self, client: Elasticsearch, index_name: str) -> None:
        self.client = client
        self.index_name = index_name
        self._index_ready = False
        self._lock = threading.Lock()

    @classmethod
    def from_url(cls, url: str, index_name: str, *, api_key: str = "", timeout_seconds: float = 2) -> "ElasticsearchIndex":
        options: dict[str, object] = {
            "request_timeout": timeout_seconds,
            "max_retries": 0,
            "retry_on_timeout": False,
        }
        if api_key:
            options["api_key"] = api_key
        return cls(Elasticsearch(url, **options), index_name)

    def ensure_index(self) -> None:
        if self._index_ready:
            return
        with self._lock, _translate_errors("index setup"):
            if self._index_ready:
                return
            if not self.client.indices.exists(index=self.index_name):
                try:
                    self.client.indices.create(
                        index=self.index_name,
                        mappings=INDEX_MAPPINGS,
                        settings={"number_of_shards": 1, "number_of_replicas": 0},
                    )
                    logger.info("created search index", extra={"index": self.index_name})
                except ApiError as exc:
                    # Another worker created it between the exists check and create.
                    if "resource_already_exists_exception" not in str(exc):
                        raise
            self._index_ready = True

    def ping(self) -> bool:
        try:
            with _translate_errors("ping"):
                return bool(self.client.ping())
        except DependencyUnavailableError as exc:
            logger.warning("elasticsearch ping failed", extra={"error": str(exc)})
            return False

    def upsert(self, record: CatalogRecord) -> None:
        if not record.is_published:
            self.remove(record.record_id)
            return
        self.ensure_index()
        with _translate_errors("index"):
            self.client.index(index=self.index_name, id=record.record_id, document=record.to_dict())

    def upsert_many(self, records: Iterable[CatalogRecord]) -> int:
        actions = [
            {"_op_type": "index", "_index": self.index_name, "_id": record.record_id, "_source": record.to_dict()}
            for record in records
            if record.is_published
        ]
        if not actions:
            return 0
        self.ensure_index()
        with _translate_errors("bulk index"):
            indexed, _ = helpers.bulk(self.client, actions, chunk_size=500)
        return indexed

    def remove(self, record_id: str) -> None:
        self.ensure_index()
        with _translate_errors("delete"):
            try:
                self.client.delete(index=self.index_name, id=record_id)
            except NotFoundError:
                pass

    def remove_many(self, record_ids: Iterable[str]) -> int:
        actions = [{"_op_type": "delete", "_index": self.index_name, "_id": record_id} for record_id in record_ids]
        if not actions:
            return 0
        self.ensure_index()
        with _translate_errors("bulk delete"):
            removed, _ = helpers.bulk(self.client, actions, chunk_size=500, ignore_status=(404,))
        return removed

    def search(self, query: str, filters: SearchFilters, *, page: int, page_size: int) -> SearchHits:
        self.ensure_index()
        filter_clauses: list[dict[str, object]] = [{"term": {"status": PUBLISHED}}]
        if filters.category:
            filter_clauses.append({"term": {"category": filters.category}})
        if filters.owner:
            filter_clauses.append({"term": {"owner.keyword": filters.owner}})

        with _translate_errors("search"):
            response = self.client.search(
                index=self.index_name,
                query={
                    "bool": {
                        "must": [
                            {
                                "multi_match": {
                                    "query": query,
                                    "fields": ["title^2", "description", "owner", "category"],
                                    "type": "best_fields",
                                    "fuzziness": "AUTO",
                                }
                            }
                        ],
                        "filter": filter_clauses,
                    }
                },
                sort=[{"_score": {"order": "desc"}}, {"created_at": {"order": "desc"}}],
                from_=(page - 1) * page_size,
                size=page_size,
            )

        hits = [{**hit["_source"], "score": hit["_score"]} for hit in response["hits"]["hits"]]
        return SearchHits(hits=hits, total=response["hits"]["total"]["value"])


def _tokenize(text: object) -> list[str]:
    return re.findall(r"\w+", str(text or "").lower())


def _allowed_edits(token: str) -> int:
    # Mirrors elasticsearch AUTO fuzziness.
    if len(token) <= 2:
        return 0
    if len(token) <= 5:
        return 1
    return 2


def _field_score(tokens: list[str], words: list[str]) -> float:
    if not words:
        return 0.0
    score = 0.0
    for token in tokens:
        match = process.extractOne(token, words, scorer=Levenshtein.distance, score_cutoff=_allowed_edits(token))
        if match is not None:
            score += 1.0 / (1 + match[1])
    return score


def relevance(tokens: list[str], document: dict[str, object]) -> float:
    return max(weight * _field_score(tokens, _tokenize(document.get(name))) for name, weight in FIELD_WEIGHTS)


class MemorySearchIndex:
    """In-process index with best-field fuzzy scoring, used for local runs and tests."""

    def __init__(self) -> None:
        self._documents: dict[str, dict[str, object]] = {}
        self._lock = threading.Lock()

    def upsert(self, record: CatalogRecord) -> None:
        with self._lock:
            if record.is_published:
                self._documents[record.record_id] = record.to_dict()
            else:
                self._documents.pop(record.record_id, None)

    def upsert_many(self, records: Iterable[CatalogRecord]) -> int:
        count = 0
        for record in records:
            if record.is_published:
                self.upsert(record)
                count += 1
        return count

    def remove(self, record_id: str) -> None:
        with self._lock:
            self._documents.pop(record_id, None)

    def remove_many(self, record_ids: Iterable[str]) -> int:
        removed = 0
        with self._lock:
            for record_id in record_ids:
                if self._documents.pop(record_id, None) is not None:
                    removed += 1
        return removed

    def ping(self) -> bool:
        return True

    def document_ids(self) -> set[str]:
        with self._lock:
            return set(self._documents)

    def search(self, query: str, filters: SearchFilters, *, page: int, page_size: int) -> SearchHits:
        tokens = _tokenize(query)
        with self._lock:
            documents = list(self._documents.values())

        scored: list[tuple[float, dict[str, object]]] = []
        for document in documents:
            if document.get("status") != PUBLISHED:
                continue
            if filters.category and document.get("category") != filters.category:
                continue
            if filters.owner and document.get("owner") != filters.owner:
                continue
            score = relevance(tokens, document)
            if score > 0:
                scored.append((score, document))

        scored.sort(key=lambda item: (item[0], str(item[1].get("created_at") or "")), reverse=True)
        start = (page - 1) * page_size
        hits = [{**document, "score": round(score, 4)} for score, document in scored[start : start + page_size]]
        return SearchHits(hits=hits, total=len(scored))
