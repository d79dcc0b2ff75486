from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Literal

from discovery.core.categories import ALL_CATEGORIES, OpportunityCategory, category_definition
from discovery.core.telemetry import search_span
from discovery.services.documents import map_to_document
from discovery.services.errors import ApplicationError
from discovery.services.facets import compute_store_facets, select_index_facets
from discovery.services.query import (
    DEFAULT_PAGE_SIZE,
    MAX_PAGE_SIZE,
    SortExpression,
    Viewport,
    WhereClause,
    apply_structured_filters,
    build_index_filter_expression,
    build_text_search_clause,
    index_sort_expressions,
    normalize_client_filters,
    normalize_limit,
    normalize_page,
    normalize_page_size,
    normalize_viewport,
    page_offset,
    resolve_sort_expressions,
    total_pages,
)
from discovery.services.ranking import RankingContext, rank_documents
from discovery.services.reputation import ReputationProvider, load_reputation_scores
from discovery.services.search_index import IndexSearchResult, SearchIndex
from discovery.services.store import Clock, OpportunityStore, StoreQuery, utc_now

logger = logging.getLogger(__name__)

DEFAULT_AGGREGATE_LIMIT = 5

SearchSource = Literal["index", "database"]


@dataclass(slots=True)
class NormalizedSearch:
    category: OpportunityCategory
    query: str
    page: int
    page_size: int
    filters: dict[str, Any]
    viewport: Viewport | None
    sort: tuple[SortExpression, ...]
    facet_fields: tuple[str, ...]
    filter_expression: str | None
    where: WhereClause
    now: datetime


@dataclass(slots=True)
class _PathResult:
    documents: list[dict[str, Any]]
    total: int
    facets: dict[str, dict[str, int]] | None
    source: SearchSource
    processing_time_ms: int | None = None


class SearchEngine:
    def __init__(
        self,
        store: OpportunityStore,
        index: SearchIndex | None = None,
        *,
        reputation: ReputationProvider | None = None,
        clock: Clock = utc_now,
        index_timeout_seconds: float | None = 5.0,
        store_timeout_seconds: float | None = 10.0,
        default_page_size: int = DEFAULT_PAGE_SIZE,
        max_page_size: int = MAX_PAGE_SIZE,
    ) -> None:
        self.store = store
        self.index = index
        self.reputation = reputation
        self.clock = clock
        self.index_timeout_seconds = index_timeout_seconds
        self.store_timeout_seconds = store_timeout_seconds
        self.default_page_size = default_page_size
        self.max_page_size = max_page_size

    def normalize(
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
    ) -> NormalizedSearch:
        resolved = OpportunityCategory.parse(category)
        normalized_filters = normalize_client_filters(filters, resolved)
        normalized_viewport = normalize_viewport(viewport)
        now = self.clock()
        term = (query or "").strip()

        where = WhereClause()
        text_clause = build_text_search_clause(resolved, term)
        if text_clause is not None:
            where.add(text_clause)
        apply_structured_filters(where, resolved, normalized_filters, viewport=normalized_viewport, now=now)

        return NormalizedSearch(
            category=resolved,
            query=term,
            page=normalize_page(page),
            page_size=normalize_page_size(page_size, default=self.default_page_size, maximum=self.max_page_size),
            filters=normalized_filters,
            viewport=normalized_viewport,
            sort=resolve_sort_expressions(resolved, sort),
            facet_fields=category_definition(resolved).facet_fields if include_facets else (),
            filter_expression=build_index_filter_expression(
                resolved, normalized_filters, normalized_viewport, now=now
            ),
            where=where,
            now=now,
        )

    async def search(
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
        request = self.normalize(
            category,
            query=query,
            page=page,
            page_size=page_size,
            filters=filters,
            sort=sort,
            include_facets=include_facets,
            viewport=viewport,
        )
        return await self.execute(request)

    async def execute(self, request: NormalizedSearch) -> dict[str, Any]:
        with search_span("discovery.search", request.category) as span:
            result = await self._index_search(request)
            if result is None:
                result = await self._fallback_search(request)
            span.set_attribute("discovery.source", result.source)

            reputation_scores = await load_reputation_scores(
                self.reputation,
                request.category,
                result.documents,
                timeout_seconds=self.store_timeout_seconds,
            )
            context = RankingContext(
                query=request.query,
                filters=request.filters,
                viewport=request.viewport,
                reputation_scores=reputation_scores,
                now=request.now,
            )
            items = rank_documents(result.documents, context)

        logger.info(
            "opportunity search category=%s source=%s total=%s page=%s page_size=%s",
            request.category.value,
            result.source,
            result.total,
            request.page,
            request.page_size,
        )
        return {
            "category": request.category.value,
            "query": request.query,
            "items": items,
            "total": result.total,
            "page": request.page,
            "page_size": request.page_size,
            "total_pages": total_pages(result.total, request.page_size),
            "facets": result.facets,
            "applied_filters": request.filters,
            "viewport": request.viewport.as_dict() if request.viewport else None,
            "metrics": {
                "source": result.source,
                "processing_time_ms": result.processing_time_ms,
            },
        }

    async def search_all(self, query: str | None, *, limit: Any = None) -> dict[str, Any]:
        """Run every category independently; one category failing does not blank the others."""
        resolved_limit = normalize_limit(limit, default=DEFAULT_AGGREGATE_LIMIT, maximum=self.max_page_size)
        term = (query or "").strip()
        outcomes = await asyncio.gather(
            *(self.search(category, query=term, page=1, page_size=resolved_limit) for category in ALL_CATEGORIES),
            return_exceptions=True,
        )

        results: dict[str, list[dict[str, Any]]] = {}
        totals: dict[str, int] = {}
        sources: dict[str, str] = {}
        errors: dict[str, str] = {}
        for category, outcome in zip(ALL_CATEGORIES, outcomes):
            if isinstance(outcome, BaseException):
                if not isinstance(outcome, Exception):
                    raise outcome
                logger.warning("aggregate search category failed category=%s error=%s", category.value, outcome)
                results[category.value] = []
                totals[category.value] = 0
                errors[category.value] = str(outcome)
                continue
            ranked = sorted(outcome["items"], key=lambda item: -item["aiSignals"]["total"])
            results[category.value] = ranked
            totals[category.value] = outcome["total"]
            sources[category.value] = outcome["metrics"]["source"]

        return {
            "query": term,
            "limit": resolved_limit,
            "results": results,
            "totals": totals,
            "sources": sources,
            "errors": errors,
        }

    async def _index_search(self, request: NormalizedSearch) -> _PathResult | None:
        if self.index is None:
            return None
        with search_span("discovery.index_search", request.category):
            try:
                result: IndexSearchResult | None = await asyncio.wait_for(
                    self.index.search(
                        request.category,
                        query=request.query,
                        filter_expression=request.filter_expression,
                        sort=index_sort_expressions(request.sort),
                        facets=list(request.facet_fields),
                        page=request.page,
                        page_size=request.page_size,
                    ),
                    timeout=self.index_timeout_seconds,
                )
            except asyncio.TimeoutError:
                logger.warning("index search timed out; falling back category=%s", request.category.value)
                return None
            except Exception as exc:
                logger.warning(
                    "index search failed; falling back category=%s error=%s",
                    request.category.value,
                    exc,
                )
                return None
        if result is None:
            return None
        return _PathResult(
            documents=[dict(hit) for hit in result.hits],
            total=result.total,
            facets=select_index_facets(result.facet_distribution, request.facet_fields)
            if request.facet_fields
            else None,
            source="index",
            processing_time_ms=result.processing_time_ms,
        )

    async def _fallback_search(self, request: NormalizedSearch) -> _PathResult:
        category = request.category
        with search_span("discovery.fallback_search", category):
            store_query = StoreQuery(
                where=request.where,
                sort=request.sort,
                limit=request.page_size,
                offset=page_offset(request.page, request.page_size),
            )
            try:
                fetched, counted = await asyncio.gather(
                    asyncio.wait_for(self.store.fetch(category, store_query), timeout=self.store_timeout_seconds),
                    asyncio.wait_for(self.store.count(category, store_query), timeout=self.store_timeout_seconds),
                    return_exceptions=True,
                )
                # Both outcomes are retrieved; the fetch error wins when both fail.
                for outcome in (fetched, counted):
                    if isinstance(outcome, BaseException):
                        raise outcome
                rows: list[dict[str, Any]] = fetched  # type: ignore[assignment]
                total = int(counted)  # type: ignore[arg-type]
                facets = None
                if request.facet_fields:
                    facets = await compute_store_facets(
                        self.store,
                        category,
                        request.where,
                        request.facet_fields,
                        timeout_seconds=self.store_timeout_seconds,
                    )
            except asyncio.CancelledError:
                raise
            except Exception as exc:
                logger.exception("database search failed category=%s", category.value)
                raise ApplicationError(
                    "opportunity search failed",
                    category=category.value,
                    query=request.query or None,
                ) from exc

        documents = [map_to_document(category, row, now=request.now) for row in rows]
        return _PathResult(documents=documents, total=int(total), facets=facets, source="database")

