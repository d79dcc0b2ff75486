"""Composite opportunity scoring.

Each signal is in [0, 1]; neutral values are used when the query carries no
information for a signal so documents are not penalised for missing criteria.
"""

from __future__ import annotations

import re
from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any

from discovery.services.query import Viewport

SIGNAL_WEIGHTS: dict[str, float] = {
    "freshness": 0.30,
    "queryAffinity": 0.30,
    "taxonomy": 0.20,
    "remoteFit": 0.10,
    "reputation": 0.10,
}

FRESHNESS_HORIZON_DAYS = 90
NEUTRAL_FRESHNESS = 0.5
NEUTRAL_QUERY_AFFINITY = 0.25
NEUTRAL_TAXONOMY = 0.5
NEUTRAL_REMOTE_FIT = 0.5
MISSING_GEO_REMOTE_FIT = 0.1
MISSING_REPUTATION = 0.1
REPUTATION_FLOOR = 0.2
REPUTATION_CEILING = 0.8

_TOKEN_RE = re.compile(r"[^\W_]+")


@dataclass(slots=True)
class RankingContext:
    query: str | None = None
    filters: Mapping[str, Any] = field(default_factory=dict)
    viewport: Viewport | None = None
    reputation_scores: Mapping[str, float] = field(default_factory=dict)
    now: datetime | None = None


def reputation_key(document: Mapping[str, Any]) -> str:
    return f"{document.get('category')}:{document.get('id')}"


def tokenize(text: str | None) -> set[str]:
    if not text:
        return set()
    return set(_TOKEN_RE.findall(text.casefold()))


def freshness_signal(updated_at: Any, *, now: datetime | None = None) -> float:
    timestamp = _parse_timestamp(updated_at)
    if timestamp is None:
        return NEUTRAL_FRESHNESS
    current = now or datetime.now(timezone.utc)
    age_days = max(0.0, (current - timestamp).total_seconds() / 86400.0)
    return _clamp(1.0 - age_days / FRESHNESS_HORIZON_DAYS)


def query_affinity(query: str | None, document: Mapping[str, Any]) -> float:
    query_terms = tokenize(query)
    if not query_terms:
        return NEUTRAL_QUERY_AFFINITY
    document_terms = tokenize(f"{document.get('title') or ''} {document.get('description') or ''}")
    matched = query_terms & document_terms
    return _clamp(len(matched) / len(query_terms))


def taxonomy_alignment(filters: Mapping[str, Any], document: Mapping[str, Any]) -> float:
    ratios: list[float] = []
    for filter_key, document_key in (("taxonomySlugs", "taxonomySlugs"), ("taxonomyTypes", "taxonomyTypes")):
        requested = _lowered(filters.get(filter_key))
        if not requested:
            continue
        available = _lowered(document.get(document_key))
        ratios.append(len(requested & available) / len(requested))
    if not ratios:
        return NEUTRAL_TAXONOMY
    return _clamp(sum(ratios) / len(ratios))


def remote_fit(filters: Mapping[str, Any], document: Mapping[str, Any], viewport: Viewport | None) -> float:
    remote_requested = filters.get("isRemote") is True
    if remote_requested and document.get("isRemote") is True:
        return 1.0
    if not remote_requested and viewport is None:
        return NEUTRAL_REMOTE_FIT

    point = _geo_point(document)
    if point is None:
        return MISSING_GEO_REMOTE_FIT
    if viewport is not None and viewport.contains(*point):
        return 1.0
    return 0.0


def reputation_signal(document: Mapping[str, Any], context: RankingContext) -> float:
    raw = context.reputation_scores.get(reputation_key(document))
    if raw is None or isinstance(raw, bool):
        return MISSING_REPUTATION
    try:
        score = min(100.0, max(0.0, float(raw)))
    except (TypeError, ValueError):
        return MISSING_REPUTATION
    return REPUTATION_FLOOR + (REPUTATION_CEILING - REPUTATION_FLOOR) * score / 100.0


def compute_signals(document: Mapping[str, Any], context: RankingContext) -> dict[str, float]:
    signals = {
        "freshness": freshness_signal(document.get("updatedAt"), now=context.now),
        "queryAffinity": query_affinity(context.query, document),
        "taxonomy": taxonomy_alignment(context.filters, document),
        "remoteFit": remote_fit(context.filters, document, context.viewport),
        "reputation": reputation_signal(document, context),
    }
    total = sum(SIGNAL_WEIGHTS[name] * value for name, value in signals.items())
    rounded = {name: round(value, 4) for name, value in signals.items()}
    rounded["total"] = round(_clamp(total), 4)
    return rounded


def score_document(document: Mapping[str, Any], context: RankingContext) -> dict[str, Any]:
    return {**document, "aiSignals": compute_signals(document, context)}


def rank_documents(
    documents: Iterable[Mapping[str, Any]],
    context: RankingContext,
    *,
    reorder: bool = False,
) -> list[dict[str, Any]]:
    scored = [score_document(document, context) for document in documents]
    if reorder:
        # sorted() is stable, so equal scores keep execution order.
        scored = sorted(scored, key=lambda item: -item["aiSignals"]["total"])
    return scored


def _geo_point(document: Mapping[str, Any]) -> tuple[float, float] | None:
    point = document.get("_geo")
    if not isinstance(point, Mapping):
        return None
    lat = point.get("lat")
    lng = point.get("lng")
    if not isinstance(lat, (int, float)) or not isinstance(lng, (int, float)):
        return None
    if isinstance(lat, bool) or isinstance(lng, bool):
        return None
    return float(lat), float(lng)


def _lowered(values: Any) -> set[str]:
    if not isinstance(values, (list, tuple, set)):
        return set()
    return {value.strip().lower() for value in values if isinstance(value, str) and value.strip()}


def _parse_timestamp(value: Any) -> datetime | None:
    if isinstance(value, datetime):
        dt = value
    elif isinstance(value, str) and value.strip():
        try:
            dt = datetime.fromisoformat(value.strip().replace("Z", "+00:00"))
        except ValueError:
            return None
    else:
        return None
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt


def _clamp(value: float) -> float:
    return min(1.0, max(0.0, value))
