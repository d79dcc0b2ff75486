from functools import lru_cache

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    app_name: str = "opportunity-discovery-api"
    environment: str = "dev"
    log_level: str = "INFO"
    database_url: str | None = None
    database_pool_min_size: int = 1
    database_pool_max_size: int = 10
    store_timeout_seconds: float = 10.0
    meilisearch_host: str | None = None
    meilisearch_api_key: str | None = None
    index_timeout_seconds: float = 5.0
    index_batch_size: int = 500
    index_bootstrap_on_startup: bool = True
    index_sync_on_startup: bool = False
    default_page_size: int = 20
    max_page_size: int = 50
    snapshot_cache_ttl_seconds: float = 60.0
    snapshot_default_limit: int = 5
    # JSON object of "<category>:<id>" -> 0-100 trust score.
    reputation_scores: dict[str, float] = {}
    otel_enabled: bool = True
    otel_service_name: str = "opportunity-discovery-api"
    otel_exporter_otlp_endpoint: str | None = None
    otel_exporter_otlp_headers: str | None = None
    otel_trace_sample_ratio: float = 1.0
    otel_log_correlation: bool = True

    model_config = SettingsConfigDict(env_prefix="OD_", extra="ignore")

    @property
    def search_index_configured(self) -> bool:
        return bool(self.meilisearch_host and self.meilisearch_api_key)


@lru_cache
def get_settings() -> Settings:
    return Settings()
