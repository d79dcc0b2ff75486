from __future__ import annotations

import logging
from functools import lru_cache
from typing import Any

from discovery.core.config import get_settings
from discovery.services.cache import SnapshotCache
from discovery.services.query import normalize_limit
from discovery.services.repository import get_repository
from discovery.services.reputation import StaticReputationProvider
from discovery.services.search import DEFAULT_AGGREGATE_LIMIT, SearchEngine
from discovery.services.search_index import get_search_index

logger = logging.getLogger(__name__)


class DiscoveryService:
    """Public discovery surface: per-category listings, global search and the snapshot."""

    def __init__(
        self,
        engine: SearchEngine,
        *,
        snapshot_cache: SnapshotCache[dict[str, Any]] | None = None,
        snapshot_default_limit: int = DEFAULT_AGGREGATE_LIMIT,
    ) -> None:
        self.engine = engine
        self.snapshot_cache = snapshot_cache if snapshot_cache is not None else SnapshotCache(ttl_seconds=60.0)
        self.snapshot_default_limit = snapshot_default_limit

    async def list_opportunities(
        self,
        category: Any,
        *,
        query: str | None = None,
        page: Any = None,
        page_size: Any = None,
        filters: Any = None,
        sort: str | None = None,
        include_facets: bool = False,
        viewport: Any = None,
    ) -> dict[str, Any]:
        return await self.engine.search(
            category,
            query=query,
            page=page,
            page_size=page_size,
            filters=filters,
            sort=sort,
            include_facets=include_facets,
            viewport=viewport,
        )

    async def global_search(self, query: str | None, *, limit: Any = None) -> dict[str, Any]:
        term = (query or "").strip()
        if not term:
            snapshot = await self.discovery_snapshot(limit=limit)
            return {**snapshot, "mode": "snapshot"}
        aggregated = await self.engine.search_all(term, limit=self._resolve_limit(limit))
        return {**aggregated, "mode": "search"}

    async def discovery_snapshot(self, *, limit: Any = None) -> dict[str, Any]:
        resolved_limit = self._resolve_limit(limit)

        async def load() -> dict[str, Any]:
            logger.info("building discovery snapshot limit=%s", resolved_limit)
            aggregated = await self.engine.search_all(None, limit=resolved_limit)
            return {**aggregated, "generated_at": self.engine.clock()}

        snapshot, cache_hit = await self.snapshot_cache.get_or_load(
            ("snapshot", resolved_limit),
            load,
            cacheable=lambda value: not value["errors"],
        )
        return {**snapshot, "cached": cache_hit}

    def _resolve_limit(self, limit: Any) -> int:
        return normalize_limit(limit, default=self.snapshot_default_limit, maximum=self.engine.max_page_size)


@lru_cache
def get_discovery_service() -> DiscoveryService:
    settings = get_settings()
    engine = SearchEngine(
        store=get_repository(),
        index=get_search_index(),
        reputation=StaticReputationProvider(settings.reputation_scores) if settings.reputation_scores else None,
        index_timeout_seconds=settings.index_timeout_seconds,
        store_timeout_seconds=settings.store_timeout_seconds,
        default_page_size=settings.default_page_size,
        max_page_size=settings.max_page_size,
    )
    return DiscoveryService(
        engine,
        snapshot_cache=SnapshotCache(ttl_seconds=settings.snapshot_cache_ttl_seconds),
        snapshot_default_limit=settings.snapshot_default_limit,
    )
