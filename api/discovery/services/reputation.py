from __future__ import annotations

import asyncio
import logging
from collections.abc import Mapping, Sequence
from typing import Any, Protocol

from discovery.core.categories import OpportunityCategory

logger = logging.getLogger(__name__)


class ReputationProvider(Protocol):
    async def trust_scores(self, category: OpportunityCategory, ids: Sequence[Any]) -> dict[str, float]:
        """Return 0-100 trust scores keyed by ``str(id)``; unknown ids are omitted."""
        ...


class StaticReputationProvider:
    def __init__(self, scores: Mapping[str, float] | None = None) -> None:
        # Keys are "<category>:<id>".
        self.scores = dict(scores or {})

    async def trust_scores(self, category: OpportunityCategory, ids: Sequence[Any]) -> dict[str, float]:
        found: dict[str, float] = {}
        for identifier in ids:
            score = self.scores.get(f"{category.value}:{identifier}")
            if score is not None:
                found[str(identifier)] = score
        return found


async def load_reputation_scores(
    provider: ReputationProvider | None,
    category: OpportunityCategory,
    documents: Sequence[Mapping[str, Any]],
    *,
    timeout_seconds: float | None = None,
) -> dict[str, float]:
    """Fetch trust scores keyed for ``RankingContext.reputation_scores``.

    A failing provider degrades to "no signal" rather than failing the query.
    """
    if provider is None or not documents:
        return {}
    ids = [document.get("id") for document in documents if document.get("id") is not None]
    try:
        scores = await asyncio.wait_for(provider.trust_scores(category, ids), timeout=timeout_seconds)
    except asyncio.CancelledError:
        raise
    except Exception as exc:
        logger.warning("reputation signal unavailable category=%s error=%s", category.value, exc)
        return {}
    return {f"{category.value}:{identifier}": score for identifier, score in scores.items()}
