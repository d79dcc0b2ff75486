from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass
from functools import lru_cache
from typing import Any, Protocol

import httpx

from discovery.core.categories import ALL_CATEGORIES, OpportunityCategory, category_definition
from discovery.core.config import get_settings
from discovery.services.documents import map_to_document
from discovery.services.errors import StoreUnavailableError
from discovery.services.query import FALLBACK_SORT, WhereClause
from discovery.services.store import Clock, OpportunityStore, StoreQuery, utc_now

logger = logging.getLogger(__name__)

DEFAULT_BATCH_SIZE = 500
DEFAULT_TASK_TIMEOUT_SECONDS = 20.0
BASE_RANKING_RULES = ("words", "typo", "proximity", "attribute", "sort", "exactness")
USER_AGENT = "opportunity-discovery/1.0 (search-index)"


@dataclass(slots=True)
class IndexSearchResult:
    hits: list[dict[str, Any]]
    total: int
    page: int
    page_size: int
    processing_time_ms: int | None
    facet_distribution: dict[str, dict[str, int]] | None
    query: str


class SearchIndex(Protocol):
    async def search(
        self,
        category: OpportunityCategory,
        *,
        query: str,
        filter_expression: str | None,
        sort: list[str],
        facets: list[str],
        page: int,
        page_size: int,
    ) -> IndexSearchResult | None: ...


class SearchIndexError(RuntimeError):
    """Raised when index provisioning or sync fails."""


class MeilisearchIndexClient:
    def __init__(
        self,
        host: str,
        api_key: str,
        *,
        timeout_seconds: float = 5.0,
        task_timeout_seconds: float = DEFAULT_TASK_TIMEOUT_SECONDS,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.host = host.rstrip("/")
        self.headers = {
            "Authorization": f"Bearer {api_key}",
            "User-Agent": USER_AGENT,
        }
        self.timeout_seconds = timeout_seconds
        self.task_timeout_seconds = task_timeout_seconds
        self._transport = transport

    def _client(self, timeout: float | None = None) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            base_url=self.host,
            headers=self.headers,
            timeout=timeout or self.timeout_seconds,
            transport=self._transport,
        )

    async def search(
        self,
        category: OpportunityCategory,
        *,
        query: str,
        filter_expression: str | None,
        sort: list[str],
        facets: list[str],
        page: int,
        page_size: int,
    ) -> IndexSearchResult | None:
        """Search one category index. ``None`` tells the caller to fall back to the store."""
        definition = category_definition(category)
        payload: dict[str, Any] = {
            "q": query,
            "limit": page_size,
            "offset": (page - 1) * page_size,
            "attributesToHighlight": ["title", "description"],
        }
        if sort:
            payload["sort"] = sort
        if filter_expression:
            payload["filter"] = filter_expression
        if facets:
            payload["facets"] = facets

        try:
            async with self._client() as client:
                response = await client.post(f"/indexes/{definition.index_name}/search", json=payload)
                response.raise_for_status()
                body = response.json()
        except (httpx.HTTPError, ValueError) as exc:
            logger.warning(
                "falling back to database search after index failure category=%s error=%s",
                category.value,
                exc,
            )
            return None

        result = _parse_search_body(body, page=page, page_size=page_size, query=query)
        if result is None:
            logger.warning(
                "falling back to database search after malformed index response category=%s",
                category.value,
            )
        return result

    async def search_across(self, query: str | None, *, limit: int = 5) -> dict[str, list[dict[str, Any]]] | None:
        trimmed = (query or "").strip()
        if not trimmed:
            return None
        aggregated: dict[str, list[dict[str, Any]]] = {}
        for category in ALL_CATEGORIES:
            result = await self.search(
                category,
                query=trimmed,
                filter_expression=None,
                sort=[],
                facets=[],
                page=1,
                page_size=limit,
            )
            aggregated[category.value] = result.hits if result is not None else []
        return aggregated

    async def ensure_indexes(self) -> list[dict[str, str]]:
        ensured: list[dict[str, str]] = []
        async with self._client() as client:
            for category in ALL_CATEGORIES:
                definition = category_definition(category)
                try:
                    await self._ensure_index(client, category)
                except httpx.HTTPError as exc:
                    logger.error(
                        "failed to provision search index category=%s index=%s error=%s",
                        category.value,
                        definition.index_name,
                        exc,
                    )
                    raise SearchIndexError(f"failed to provision index {definition.index_name}") from exc
                ensured.append({"category": category.value, "index_name": definition.index_name})
        return ensured

    async def sync_indexes(
        self,
        store: OpportunityStore,
        *,
        clear_existing: bool = False,
        batch_size: int = DEFAULT_BATCH_SIZE,
        clock: Clock = utc_now,
    ) -> list[dict[str, Any]]:
        await self.ensure_indexes()
        results: list[dict[str, Any]] = []
        async with self._client() as client:
            for category in ALL_CATEGORIES:
                definition = category_definition(category)
                if clear_existing:
                    response = await client.delete(f"/indexes/{definition.index_name}/documents")
                    response.raise_for_status()
                    await self._wait_for_task(client, response.json(), action="deleteAllDocuments")
                indexed = await self._ingest_category(client, store, category, batch_size=batch_size, clock=clock)
                logger.info("search index synced category=%s documents=%s", category.value, indexed)
                results.append(
                    {
                        "category": category.value,
                        "index_name": definition.index_name,
                        "documents_indexed": indexed,
                    }
                )
        return results

    async def _ingest_category(
        self,
        client: httpx.AsyncClient,
        store: OpportunityStore,
        category: OpportunityCategory,
        *,
        batch_size: int,
        clock: Clock,
    ) -> int:
        definition = category_definition(category)
        batch_size = max(1, batch_size)
        offset = 0
        processed = 0
        while True:
            records = await store.fetch(
                category,
                StoreQuery(where=WhereClause(), sort=FALLBACK_SORT, limit=batch_size, offset=offset),
            )
            if not records:
                break
            now = clock()
            documents = [map_to_document(category, record, now=now) for record in records]
            response = await client.post(
                f"/indexes/{definition.index_name}/documents",
                params={"primaryKey": "id"},
                json=documents,
            )
            response.raise_for_status()
            await self._wait_for_task(client, response.json(), action="addDocuments")
            processed += len(documents)
            offset += len(records)
            if len(records) < batch_size:
                break
        return processed

    async def _ensure_index(self, client: httpx.AsyncClient, category: OpportunityCategory) -> None:
        definition = category_definition(category)
        response = await client.get(f"/indexes/{definition.index_name}")
        if response.status_code == 404:
            created = await client.post("/indexes", json={"uid": definition.index_name, "primaryKey": "id"})
            created.raise_for_status()
            await self._wait_for_task(client, created.json(), action="createIndex")
        else:
            response.raise_for_status()

        settings_payload: dict[str, Any] = {
            "searchableAttributes": list(definition.searchable_attributes),
            "filterableAttributes": list(definition.filterable_attributes),
            "sortableAttributes": list(definition.sortable_attributes),
            "rankingRules": [*BASE_RANKING_RULES, *definition.custom_ranking],
        }
        if definition.synonyms:
            settings_payload["synonyms"] = definition.synonyms
        if definition.stop_words:
            settings_payload["stopWords"] = list(definition.stop_words)
        updated = await client.patch(f"/indexes/{definition.index_name}/settings", json=settings_payload)
        updated.raise_for_status()
        await self._wait_for_task(client, updated.json(), action="updateSettings")

    async def _wait_for_task(self, client: httpx.AsyncClient, task: Any, *, action: str) -> None:
        task_uid = _task_uid(task)
        if task_uid is None:
            return
        deadline = time.monotonic() + self.task_timeout_seconds
        while time.monotonic() < deadline:
            response = await client.get(f"/tasks/{task_uid}")
            response.raise_for_status()
            status = response.json().get("status")
            if status == "succeeded":
                return
            if status in {"failed", "canceled"}:
                raise SearchIndexError(f"index task {task_uid} ({action}) ended with status {status}")
            await asyncio.sleep(0.1)
        logger.warning("index task monitoring exceeded timeout task_uid=%s action=%s", task_uid, action)


def _parse_search_body(body: Any, *, page: int, page_size: int, query: str) -> IndexSearchResult | None:
    """Validate a search response body; ``None`` when its shape is unusable."""
    if not isinstance(body, dict):
        return None
    hits = body.get("hits") or []
    if not isinstance(hits, list) or not all(isinstance(hit, dict) for hit in hits):
        return None
    total = body.get("estimatedTotalHits")
    if total is None:
        total = body.get("totalHits", 0)
    if isinstance(total, bool) or not isinstance(total, int):
        return None
    facet_distribution = body.get("facetDistribution")
    processing_time_ms = body.get("processingTimeMs")
    return IndexSearchResult(
        hits=hits,
        total=int(total),
        page=page,
        page_size=page_size,
        processing_time_ms=processing_time_ms if isinstance(processing_time_ms, int) else None,
        facet_distribution=facet_distribution if isinstance(facet_distribution, dict) else None,
        query=body.get("query", query),
    )


def _task_uid(task: Any) -> int | None:
    if isinstance(task, int) and not isinstance(task, bool):
        return task
    if isinstance(task, dict):
        for key in ("taskUid", "uid"):
            value = task.get(key)
            if isinstance(value, int) and not isinstance(value, bool):
                return value
    return None


@lru_cache
def get_search_index() -> MeilisearchIndexClient | None:
    settings = get_settings()
    if not settings.search_index_configured:
        return None
    assert settings.meilisearch_host is not None and settings.meilisearch_api_key is not None
    return MeilisearchIndexClient(
        host=settings.meilisearch_host,
        api_key=settings.meilisearch_api_key,
        timeout_seconds=settings.index_timeout_seconds,
    )


async def search_across_indexes(
    query: str | None,
    limit: int = 5,
    *,
    index: MeilisearchIndexClient | None = None,
) -> dict[str, list[dict[str, Any]]] | None:
    client = index if index is not None else get_search_index()
    if client is None:
        return None
    return await client.search_across(query, limit=limit)


async def bootstrap_search_indexes(
    index: MeilisearchIndexClient | None,
    store: OpportunityStore,
    *,
    sync: bool = False,
    batch_size: int = DEFAULT_BATCH_SIZE,
) -> bool:
    """Provision indexes at startup and optionally re-ingest every category.

    Failures are logged and reported as ``False``; queries then use the database path.
    """
    if index is None:
        return False
    try:
        if sync:
            await index.sync_indexes(store, batch_size=batch_size)
        else:
            await index.ensure_indexes()
    except (SearchIndexError, StoreUnavailableError, httpx.HTTPError) as exc:
        logger.warning("search index bootstrap failed sync=%s error=%s", sync, exc)
        return False
    logger.info("search index bootstrap complete sync=%s", sync)
    return True
