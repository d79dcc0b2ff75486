from __future__ import annotations

from datetime import datetime, timedelta, timezone
from typing import Any

import pytest

from discovery.services.query import Viewport
from discovery.services.ranking import (
    RankingContext,
    compute_signals,
    freshness_signal,
    query_affinity,
    rank_documents,
    remote_fit,
    reputation_signal,
    score_document,
    taxonomy_alignment,
)

NOW = datetime(2024, 6, 1, 12, 0, tzinfo=timezone.utc)
BOX = Viewport(north=52.0, south=51.0, east=0.5, west=-0.5)


def _iso(value: datetime) -> str:
    return value.isoformat().replace("+00:00", "Z")


def test_freshness_decays_over_ninety_days() -> None:
    assert freshness_signal(None, now=NOW) == 0.5
    assert freshness_signal(_iso(NOW), now=NOW) == 1.0
    assert freshness_signal(_iso(NOW - timedelta(days=45)), now=NOW) == pytest.approx(0.5)
    assert freshness_signal(_iso(NOW - timedelta(days=120)), now=NOW) == 0.0
    assert freshness_signal(_iso(NOW + timedelta(days=3)), now=NOW) == 1.0
    assert freshness_signal("not a date", now=NOW) == 0.5


def test_query_affinity_is_share_of_matched_terms() -> None:
    document = {"title": "Senior Product Designer", "description": "Own the design system"}

    assert query_affinity("senior designer", document) == 1.0
    assert query_affinity("senior python", document) == 0.5
    assert query_affinity("rust", document) == 0.0
    assert query_affinity("", document) == 0.25
    assert query_affinity("!!!", document) == 0.25


def test_taxonomy_alignment_averages_requested_dimensions() -> None:
    document = {"taxonomySlugs": ["Python"], "taxonomyTypes": ["skill"]}

    assert taxonomy_alignment({}, document) == 0.5
    assert taxonomy_alignment({"taxonomySlugs": ["python", "sql"]}, document) == 0.5
    assert taxonomy_alignment({"taxonomySlugs": ["python", "sql"], "taxonomyTypes": ["skill"]}, document) == 0.75
    assert taxonomy_alignment({"taxonomyTypes": ["discipline"]}, {}) == 0.0


def test_remote_fit_rules() -> None:
    remote_doc = {"isRemote": True}
    inside = {"isRemote": False, "_geo": {"lat": 51.5, "lng": 0.0}}
    outside = {"isRemote": False, "_geo": {"lat": 40.0, "lng": 0.0}}
    no_geo = {"isRemote": False}

    assert remote_fit({"isRemote": True}, remote_doc, None) == 1.0
    assert remote_fit({}, inside, BOX) == 1.0
    assert remote_fit({}, outside, BOX) == 0.0
    assert remote_fit({}, no_geo, BOX) == 0.1
    assert remote_fit({}, inside, None) == 0.5
    assert remote_fit({"isRemote": True}, inside, None) == 0.0
    assert remote_fit({"isRemote": True}, no_geo, None) == 0.1


def test_remote_fit_viewport_bounds_are_inclusive() -> None:
    corner = {"_geo": {"lat": BOX.north, "lng": BOX.east}}

    assert remote_fit({}, corner, BOX) == 1.0


def test_reputation_maps_trust_score_into_band() -> None:
    document = {"category": "job", "id": "job-1"}

    def signal(scores: dict[str, Any]) -> float:
        return reputation_signal(document, RankingContext(reputation_scores=scores))

    assert signal({}) == 0.1
    assert signal({"job:job-1": 0}) == pytest.approx(0.2)
    assert signal({"job:job-1": 50}) == pytest.approx(0.5)
    assert signal({"job:job-1": 100}) == pytest.approx(0.8)
    assert signal({"job:job-1": 150}) == pytest.approx(0.8)
    assert signal({"gig:job-1": 100}) == 0.1


def test_composite_uses_fixed_weights_and_four_decimals() -> None:
    document = {"category": "job", "id": "job-1", "title": "Remote designer", "updatedAt": _iso(NOW)}

    signals = compute_signals(document, RankingContext(query="designer", now=NOW))

    assert signals == {
        "freshness": 1.0,
        "queryAffinity": 1.0,
        "taxonomy": 0.5,
        "remoteFit": 0.5,
        "reputation": 0.1,
        "total": 0.76,
    }


def test_scoring_is_additive_and_does_not_mutate_input() -> None:
    document = {"id": 1, "category": "gig", "title": "Logo", "budgetValue": 4500}

    scored = score_document(document, RankingContext(now=NOW))

    assert "aiSignals" not in document
    assert {key: scored[key] for key in document} == document
    assert set(scored["aiSignals"]) == {"freshness", "queryAffinity", "taxonomy", "remoteFit", "reputation", "total"}


def test_every_signal_stays_within_unit_interval() -> None:
    documents = [
        {"category": "job", "id": 1, "title": "a b c", "updatedAt": _iso(NOW - timedelta(days=400))},
        {"category": "job", "id": 2, "title": "Remote", "isRemote": True, "updatedAt": _iso(NOW + timedelta(days=40))},
        {"category": "job", "id": 3, "_geo": {"lat": 51.2, "lng": 0.1}, "taxonomySlugs": ["x"]},
        {},
    ]
    contexts = [
        RankingContext(now=NOW),
        RankingContext(
            query="remote a",
            filters={"isRemote": True, "taxonomySlugs": ["x", "y"], "taxonomyTypes": ["skill"]},
            viewport=BOX,
            reputation_scores={"job:1": -40, "job:2": 1000, "job:3": 73},
            now=NOW,
        ),
    ]

    for context in contexts:
        for document in documents:
            for value in compute_signals(document, context).values():
                assert 0.0 <= value <= 1.0


def test_rank_documents_keeps_order_unless_asked_to_reorder() -> None:
    stale = {"category": "job", "id": "old", "title": "designer", "updatedAt": _iso(NOW - timedelta(days=80))}
    fresh = {"category": "job", "id": "new", "title": "designer", "updatedAt": _iso(NOW)}
    context = RankingContext(query="designer", now=NOW)

    assert [item["id"] for item in rank_documents([stale, fresh], context)] == ["old", "new"]
    assert [item["id"] for item in rank_documents([stale, fresh], context, reorder=True)] == ["new", "old"]
