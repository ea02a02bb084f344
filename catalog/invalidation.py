from collections.abc import Iterable
import logging
from urllib.parse import quote

from catalog.cache import Cache
from catalog.errors import DependencyUnavailableError


logger = logging.getLogger(__name__)

KEY_PREFIX = "catalog"
LIST_SCOPE = "list"
SEARCH_SCOPE = "search"
STATS_SCOPE = "stats"
BULK_SCOPES = (LIST_SCOPE, SEARCH_SCOPE, STATS_SCOPE)
RECORD_SCOPE_PREFIX = "record:"


def record_scope(record_id: str) -> str:
    return f"{RECORD_SCOPE_PREFIX}{record_id.strip().upper()}"


def generation_key(scope: str) -> str:
    return f"{KEY_PREFIX}:gen:{scope}"


def _key_part(param: object) -> str:
    # Absent is "-", supplied values are "="-prefixed.
    if param is None:
        return "-"
    return "=" + quote(str(param), safe="")


def entry_key(kind: str, generation: int, *params: object) -> str:
    return ":".join([KEY_PREFIX, kind, f"g{generation}", *(_key_part(param) for param in params)])


class InvalidationCoordinator:
    def __init__(self, cache: Cache, *, record_generation_ttl_seconds: int | None = None) -> None:
        self.cache = cache
        self.record_generation_ttl_seconds = record_generation_ttl_seconds

    def _counter_ttl(self, scope: str) -> int | None:
        if scope.startswith(RECORD_SCOPE_PREFIX):
            return self.record_generation_ttl_seconds
        return None

    def current_generation(self, scope: str) -> int:
        return self.cache.read_counter(generation_key(scope), ttl_seconds=self._counter_ttl(scope))

    def invalidate(self, *scopes: str) -> None:
        for scope in scopes:
            try:
                generation = self.cache.incr(generation_key(scope), ttl_seconds=self._counter_ttl(scope))
                self._purge(scope, generation - 1)
            except DependencyUnavailableError as exc:
                logger.warning("cache invalidation skipped", extra={"scope": scope, "error": str(exc)})

    def _purge(self, scope: str, generation: int) -> None:
        if scope.startswith(RECORD_SCOPE_PREFIX):
            self.cache.delete(entry_key("record", generation, scope[len(RECORD_SCOPE_PREFIX) :]))
        else:
            self.cache.delete_prefix(entry_key(scope, generation) + ":")

    def invalidate_records(self, record_ids: Iterable[str]) -> None:
        self.invalidate(*(record_scope(record_id) for record_id in record_ids))

    def after_mutation(self, record_ids: Iterable[str] = ()) -> None:
        self.invalidate(*BULK_SCOPES)
        self.invalidate_records(record_ids)
