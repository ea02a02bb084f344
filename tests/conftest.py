from collections.abc import Callable
from pathlib import Path

import pytest

from catalog.cache import MemoryCache
from catalog.config import Settings
from catalog.database import build_session_factory
from catalog.errors import DependencyUnavailableError
from catalog.record_store import RecordStore
from catalog.search import MemorySearchIndex
from catalog.service import CatalogService, build_service


TOKEN = "test-token"


class UnavailableCache:
    """Cache whose backend is unreachable on every call."""

    def __init__(self) -> None:
        self.calls = 0

    def _fail(self, *args, **kwargs):
        self.calls += 1
        raise DependencyUnavailableError("cache is down")

    get = set = delete = delete_prefix = incr = read_counter = _fail

    def ping(self) -> bool:
        return False


class SwitchableIndex(MemorySearchIndex):
    """In-process index that can be taken offline."""

    def __init__(self) -> None:
        super().__init__()
        self.available = True

    def _check(self) -> None:
        if not self.available:
            raise DependencyUnavailableError("search index is down")

    def upsert(self, record):
        self._check()
        super().upsert(record)

    def upsert_many(self, records):
        self._check()
        return super().upsert_many(records)

    def remove(self, record_id):
        self._check()
        super().remove(record_id)

    def remove_many(self, record_ids):
        self._check()
        return super().remove_many(record_ids)

    def search(self, query, filters, *, page, page_size):
        self._check()
        return super().search(query, filters, page=page, page_size=page_size)

    def ping(self):
        return self.available


class CountingCache(MemoryCache):
    def __init__(self) -> None:
        super().__init__()
        self.incremented: list[str] = []

    def incr(self, key: str, ttl_seconds: int | None = None) -> int:
        self.incremented.append(key)
        return super().incr(key, ttl_seconds)


@pytest.fixture()
def test_settings(tmp_path: Path) -> Settings:
    return Settings(
        app_name="catalog",
        database_url=f"sqlite:///{tmp_path / 'test.db'}",
        log_level="INFO",
        redis_url="",
        elasticsearch_url="",
        elasticsearch_index="catalog-test",
        elasticsearch_api_key="",
        dependency_timeout_seconds=0.5,
        api_tokens=(TOKEN,),
        max_index_retries=1,
        retry_backoff_seconds=0,
    )


@pytest.fixture()
def token() -> str:
    return TOKEN


@pytest.fixture()
def store(test_settings: Settings) -> RecordStore:
    return RecordStore(build_session_factory(test_settings.database_url))


@pytest.fixture()
def cache() -> CountingCache:
    return CountingCache()


@pytest.fixture()
def index() -> SwitchableIndex:
    return SwitchableIndex()


@pytest.fixture()
def service(test_settings: Settings, store: RecordStore, cache: CountingCache, index: SwitchableIndex) -> CatalogService:
    return build_service(test_settings, store=store, cache=cache, index=index)


@pytest.fixture()
def make_fields() -> Callable[..., dict[str, object]]:
    def _make(**overrides: object) -> dict[str, object]:
        fields: dict[str, object] = {
            "title": "Python Fundamentals",
            "description": "Learn the basics of programming step by step",
            "category": "Programming",
            "owner": "Ada Lovelace",
            "duration": 10,
            "level": "Beginner",
            "price": 0,
            "rating": 4.5,
            "popularity": 100,
            "tags": ["python", "basics"],
        }
        fields.update(overrides)
        return fields

    return _make
