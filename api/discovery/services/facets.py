from __future__ import annotations

import asyncio
import logging
from collections.abc import Mapping, Sequence
from typing import Any

from discovery.core.categories import OpportunityCategory, TAXONOMY_FACET_FIELDS
from discovery.services.query import WhereClause
from discovery.services.store import OpportunityStore, StoreQuery

logger = logging.getLogger(__name__)

FacetDistribution = dict[str, dict[str, int]]


async def compute_store_facets(
    store: OpportunityStore,
    category: OpportunityCategory,
    where: WhereClause,
    fields: Sequence[str],
    *,
    timeout_seconds: float | None = None,
) -> FacetDistribution:
    """Group matching rows per facet field. Fields that cannot be grouped are omitted."""
    groupable = [field for field in fields if field not in TAXONOMY_FACET_FIELDS]
    if not groupable:
        return {}

    query = StoreQuery(where=where, include_taxonomies=False)
    results = await asyncio.gather(
        *(
            asyncio.wait_for(store.group_counts(category, query, field), timeout=timeout_seconds)
            for field in groupable
        ),
        return_exceptions=True,
    )

    distribution: FacetDistribution = {}
    for field, result in zip(groupable, results):
        if isinstance(result, BaseException):
            if isinstance(result, asyncio.CancelledError):
                raise result
            logger.warning(
                "facet omitted category=%s field=%s error=%s",
                category.value,
                field,
                result,
            )
            continue
        distribution[field] = _normalize_counts(result)
    return distribution


def select_index_facets(
    facet_distribution: Mapping[str, Any] | None,
    fields: Sequence[str],
) -> FacetDistribution:
    if not facet_distribution:
        return {}
    distribution: FacetDistribution = {}
    for field in fields:
        counts = facet_distribution.get(field)
        if isinstance(counts, Mapping):
            distribution[field] = _normalize_counts(counts)
    return distribution


def facet_key(value: Any) -> str | None:
    if value is None:
        return None
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, float) and value.is_integer():
        return str(int(value))
    return str(value)


def _normalize_counts(counts: Mapping[Any, Any]) -> dict[str, int]:
    normalized: dict[str, int] = {}
    for value, count in counts.items():
        key = facet_key(value)
        if key is None:
            continue
        try:
            normalized[key] = normalized.get(key, 0) + int(count)
        except (TypeError, ValueError):
            continue
    return dict(sorted(normalized.items(), key=lambda item: (-item[1], item[0])))
