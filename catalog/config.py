from dataclasses import dataclass
import os

from dotenv import load_dotenv


load_dotenv()


@dataclass(frozen=True)
class Settings:
    app_name: str
    database_url: str
    log_level: str
    redis_url: str
    elasticsearch_url: str
    elasticsearch_index: str
    elasticsearch_api_key: str
    dependency_timeout_seconds: float
    api_tokens: tuple[str, ...]
    cache_ttl_list_seconds: int = 300
    cache_ttl_search_seconds: int = 120
    cache_ttl_record_seconds: int = 600
    cache_ttl_stats_seconds: int = 900
    default_page_size: int = 10
    max_page_size: int = 100
    max_index_retries: int = 1
    retry_backoff_seconds: float = 0.2
    resync_interval_minutes: int = 15
    resync_batch_size: int = 500
    max_upload_bytes: int = 10 * 1024 * 1024


def _split_tokens(raw: str) -> tuple[str, ...]:
    return tuple(token.strip() for token in raw.split(",") if token.strip())


def get_settings() -> Settings:
    return Settings(
        app_name=os.getenv("APP_NAME", "catalog"),
        database_url=os.getenv("DATABASE_URL", "sqlite:///./catalog.db"),
        log_level=os.getenv("LOG_LEVEL", "INFO"),
        redis_url=os.getenv("REDIS_URL", "").strip(),
        elasticsearch_url=os.getenv("ELASTICSEARCH_URL", "").strip(),
        elasticsearch_index=os.getenv("ELASTICSEARCH_INDEX", "catalog-records"),
        elasticsearch_api_key=os.getenv("ELASTICSEARCH_API_KEY", "").strip(),
        dependency_timeout_seconds=float(os.getenv("DEPENDENCY_TIMEOUT_SECONDS", "2")),
        api_tokens=_split_tokens(os.getenv("CATALOG_API_TOKENS", "")),
        cache_ttl_list_seconds=int(os.getenv("CACHE_TTL_LIST_SECONDS", "300")),
        cache_ttl_search_seconds=int(os.getenv("CACHE_TTL_SEARCH_SECONDS", "120")),
        cache_ttl_record_seconds=int(os.getenv("CACHE_TTL_RECORD_SECONDS", "600")),
        cache_ttl_stats_seconds=int(os.getenv("CACHE_TTL_STATS_SECONDS", "900")),
        default_page_size=int(os.getenv("DEFAULT_PAGE_SIZE", "10")),
        max_page_size=int(os.getenv("MAX_PAGE_SIZE", "100")),
        max_index_retries=int(os.getenv("MAX_INDEX_RETRIES", "1")),
        retry_backoff_seconds=float(os.getenv("RETRY_BACKOFF_SECONDS", "0.2")),
        resync_interval_minutes=int(os.getenv("RESYNC_INTERVAL_MINUTES", "15")),
        resync_batch_size=int(os.getenv("RESYNC_BATCH_SIZE", "500")),
        max_upload_bytes=int(os.getenv("MAX_UPLOAD_BYTES", str(10 * 1024 * 1024))),
    )
