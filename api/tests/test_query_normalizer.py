from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest

from discovery.core.categories import OpportunityCategory
from discovery.services.errors import ValidationError
from discovery.services.query import (
    FALLBACK_SORT,
    Predicate,
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
    parse_filters,
    resolve_sort_expressions,
    total_pages,
)

NOW = datetime(2024, 6, 1, 12, 0, tzinfo=timezone.utc)


def test_parse_filters_accepts_json_object_and_rejects_malformed_json() -> None:
    assert parse_filters('{"status":"active"}') == {"status": "active"}
    assert parse_filters({"status": "active"}) == {"status": "active"}
    assert parse_filters(None) == {}
    assert parse_filters("   ") == {}

    with pytest.raises(ValidationError):
        parse_filters("{bad")
    with pytest.raises(ValidationError):
        parse_filters("[1, 2]")


def test_page_and_limit_are_clamped_instead_of_rejected() -> None:
    assert normalize_page_size("200") == 50
    assert normalize_page("0") == 1
    assert normalize_limit("-5") == 20
    assert normalize_page_size("abc") == 20
    assert normalize_page("3.7") == 3
    assert normalize_page_size(None, default=5) == 5


def test_pagination_arithmetic() -> None:
    assert page_offset(1, 20) == 0
    assert page_offset(3, 20) == 40
    assert total_pages(0, 20) == 1
    assert total_pages(41, 20) == 3


def test_client_aliases_are_coalesced_and_deduplicated() -> None:
    normalized = normalize_client_filters(
        {
            "employmentTypes": ["Full-time", " Full-time ", "Contract"],
            "remote": "1",
            "unknownKey": "ignored",
        },
        OpportunityCategory.JOB,
    )

    assert normalized == {"employmentType": ["Full-time", "Contract"], "isRemote": True}


def test_uninterpretable_values_are_dropped() -> None:
    normalized = normalize_client_filters(
        {"isRemote": "yes", "updatedWithin": "2w", "budgetMin": "lots"},
        OpportunityCategory.GIG,
    )

    assert normalized == {}


def test_filters_are_scoped_to_their_category() -> None:
    raw = {"deliverySpeed": "short_term", "employmentType": "Full-time", "status": "open"}

    assert normalize_client_filters(raw, OpportunityCategory.GIG) == {"durationCategory": ["short_term"]}
    assert normalize_client_filters(raw, OpportunityCategory.PROJECT) == {"status": ["open"]}


def test_taxonomy_filters_are_lowercased_and_skipped_for_projects() -> None:
    raw = {"skills": ["Python", "python"], "taxonomyType": "Skill"}

    assert normalize_client_filters(raw, OpportunityCategory.JOB) == {
        "taxonomySlugs": ["python"],
        "taxonomyTypes": ["skill"],
    }
    assert normalize_client_filters(raw, OpportunityCategory.PROJECT) == {}


def test_normalizing_twice_is_idempotent() -> None:
    raw = '{"locations": ["Leeds", "London", "Leeds"], "remote": true, "freshness": "7D", "minBudget": "250"}'

    once = normalize_client_filters(raw, OpportunityCategory.GIG)
    twice = normalize_client_filters(once, OpportunityCategory.GIG)

    assert once == twice
    assert once == {
        "budgetValueMin": 250.0,
        "location": ["Leeds", "London"],
        "isRemote": True,
        "updatedWithin": "7d",
    }


def test_index_filter_expression_groups_values_with_or() -> None:
    expression = build_index_filter_expression(
        OpportunityCategory.JOB,
        {"employmentType": ["Full-time", "Contract"], "isRemote": True},
    )

    assert expression == '(employmentType = "Full-time" OR employmentType = "Contract") AND isRemote = true'


def test_index_filter_expression_is_none_without_groups() -> None:
    assert build_index_filter_expression(OpportunityCategory.JOB, {}) is None
    # employmentType does not apply to gigs.
    assert build_index_filter_expression(OpportunityCategory.GIG, {"employmentType": ["Full-time"]}) is None


def test_index_filter_expression_renders_ranges_windows_and_viewport() -> None:
    threshold_ms = int((NOW - timedelta(days=7)).timestamp() * 1000)

    expression = build_index_filter_expression(
        OpportunityCategory.GIG,
        {"budgetValueMin": 100.0, "budgetValueMax": 250.5, "updatedWithin": "7d"},
        Viewport(north=52.0, south=51.0, east=0.5, west=-0.5),
        now=NOW,
    )

    assert expression == (
        "budgetValue >= 100 AND budgetValue <= 250.5 AND "
        f"updatedAtTimestamp >= {threshold_ms} AND "
        "_geoBoundingBox([52, 0.5], [51, -0.5])"
    )


def test_index_filter_expression_escapes_quotes() -> None:
    expression = build_index_filter_expression(OpportunityCategory.VOLUNTEERING, {"organization": ['St "Mary" Trust']})

    assert expression == '(organization = "St \\"Mary\\" Trust")'


def test_structured_filters_build_in_predicate_for_fallback() -> None:
    where = apply_structured_filters(
        WhereClause(),
        OpportunityCategory.GIG,
        {"durationCategory": ["short_term", "fixed"]},
    )

    assert where.clauses == [Predicate("durationCategory", "in", ("short_term", "fixed"))]


def test_structured_filters_cover_flags_windows_ranges_and_viewport() -> None:
    viewport = Viewport(north=1.0, south=0.0, east=1.0, west=0.0)
    where = apply_structured_filters(
        WhereClause(),
        OpportunityCategory.GIG,
        {"isRemote": False, "updatedWithin": "24h", "budgetValueMax": 900},
        viewport=viewport,
        now=NOW,
    )

    assert where.clauses == [
        Predicate("budgetValue", "lte", 900.0),
        Predicate("isRemote", "eq", False),
        Predicate("updatedAt", "gte", NOW - timedelta(hours=24)),
        Predicate("_geo", "within", viewport),
    ]
    assert not where.requires_taxonomy_join


def test_text_search_clause_uses_category_text_fields() -> None:
    job_clause = build_text_search_clause(OpportunityCategory.JOB, " design ")
    launchpad_clause = build_text_search_clause(OpportunityCategory.LAUNCHPAD, "design")

    assert job_clause is not None and launchpad_clause is not None
    assert [predicate.field for predicate in job_clause.predicates] == ["title", "description"]
    assert [predicate.field for predicate in launchpad_clause.predicates] == ["title"]
    assert job_clause.predicates[0].value == "design"
    assert build_text_search_clause(OpportunityCategory.JOB, "   ") is None


def test_viewport_accepts_json_and_nested_bounding_box() -> None:
    assert normalize_viewport(None) is None
    assert normalize_viewport('{"north": 1, "south": 0, "east": 1, "west": 0}') == Viewport(1.0, 0.0, 1.0, 0.0)
    assert normalize_viewport({"boundingBox": {"north": "10", "south": "-10", "east": -170, "west": 170}}) == Viewport(
        10.0, -10.0, -170.0, 170.0
    )


@pytest.mark.parametrize(
    "raw",
    [
        '{"north": 1, "south": 0, "east": 1}',
        '{"north": "abc", "south": 0, "east": 1, "west": 0}',
        '{"north": 0, "south": 1, "east": 1, "west": 0}',
        '{"north": 95, "south": 0, "east": 1, "west": 0}',
        "[1, 2, 3, 4]",
        "{not json",
    ],
)
def test_invalid_viewport_is_rejected(raw: str) -> None:
    with pytest.raises(ValidationError):
        normalize_viewport(raw)


def test_viewport_contains_is_inclusive_and_handles_antimeridian() -> None:
    box = Viewport(north=10.0, south=-10.0, east=20.0, west=0.0)
    assert box.contains(10.0, 20.0)
    assert not box.contains(10.5, 20.0)

    wrapped = Viewport(north=10.0, south=-10.0, east=-170.0, west=170.0)
    assert wrapped.contains(0.0, 179.0)
    assert wrapped.contains(0.0, -175.0)
    assert not wrapped.contains(0.0, 0.0)


def test_sort_profiles_fall_back_to_default() -> None:
    assert resolve_sort_expressions(OpportunityCategory.GIG, "budget")[0] == SortExpression("budgetValue", "desc")
    assert resolve_sort_expressions(OpportunityCategory.PROJECT, "STATUS")[0] == SortExpression("status", "asc")
    assert resolve_sort_expressions(OpportunityCategory.JOB, "budget") == FALLBACK_SORT
    assert resolve_sort_expressions(OpportunityCategory.JOB, None) == FALLBACK_SORT
    assert index_sort_expressions(FALLBACK_SORT) == ["updatedAtTimestamp:desc"]
