from __future__ import annotations

import asyncio
from typing import Any

import pytest

from discovery.core.categories import OpportunityCategory
from discovery.services.errors import StoreUnavailableError
from discovery.services.query import AnyOf, Predicate, SortExpression, Viewport, WhereClause
from discovery.services.repository import PostgresOpportunityRepository, _SqlBuilder
from discovery.services.store import StoreQuery, UnsupportedFieldError


class FakePool:
    def __init__(self, responses: list[list[dict[str, Any]]] | None = None, value: int = 0) -> None:
        self.responses = list(responses or [])
        self.value = value
        self.queries: list[tuple[str, tuple[Any, ...]]] = []

    async def fetch(self, sql: str, *params: Any) -> list[dict[str, Any]]:
        self.queries.append((sql, params))
        return self.responses.pop(0) if self.responses else []

    async def fetchval(self, sql: str, *params: Any) -> int:
        self.queries.append((sql, params))
        return self.value


def _repository(pool: FakePool) -> PostgresOpportunityRepository:
    repository = PostgresOpportunityRepository("postgresql://localhost/test", min_pool_size=1, max_pool_size=2)
    repository._pool = pool
    return repository


def test_in_predicate_on_derived_field_binds_text_array() -> None:
    builder = _SqlBuilder(OpportunityCategory.GIG)
    builder.add_clause(Predicate("durationCategory", "in", ("short_term", "fixed")))

    assert builder.conditions[0].startswith("(case when coalesce(o.duration, '') = '' then null")
    assert builder.conditions[0].endswith("= any($1::text[])")
    assert builder.params == [["short_term", "fixed"]]


def test_text_search_escapes_like_wildcards() -> None:
    builder = _SqlBuilder(OpportunityCategory.JOB)
    builder.add_clause(AnyOf((Predicate("title", "contains", "50%"), Predicate("description", "contains", "50%"))))

    assert builder.where_sql() == "(coalesce(o.title, '') ilike $1 or coalesce(o.description, '') ilike $2)"
    assert builder.params == ["%50\\%%", "%50\\%%"]


def test_taxonomy_predicate_adds_join_per_filter() -> None:
    builder = _SqlBuilder(OpportunityCategory.JOB)
    builder.add_clause(Predicate("taxonomySlugs", "in", ("Python",)))
    builder.add_clause(Predicate("taxonomyTypes", "in", ("skill",)))

    assert len(builder.joins) == 2
    assert "join opportunity_taxonomy_assignments ta1" in builder.from_sql()
    assert "join opportunity_taxonomies t2 on t2.id = ta2.taxonomy_id" in builder.from_sql()
    assert builder.conditions == ["lower(t1.slug) = any($2::text[])", "lower(t2.type) = any($4::text[])"]
    assert builder.params == ["job", ["python"], "job", ["skill"]]


def test_viewport_predicate_wraps_across_antimeridian() -> None:
    builder = _SqlBuilder(OpportunityCategory.JOB)
    builder.add_clause(Predicate("_geo", "within", Viewport(north=10.0, south=-10.0, east=-170.0, west=170.0)))

    condition = builder.conditions[0]
    assert "between $2 and $1" in condition
    assert ">= $4 or" in condition
    assert "<= $3)" in condition
    assert builder.params == [10.0, -10.0, -170.0, 170.0]


def test_order_and_unknown_fields() -> None:
    builder = _SqlBuilder(OpportunityCategory.JOB)

    assert builder.order_sql((SortExpression("title", "asc"), SortExpression("id", "asc"))) == (
        "lower(o.title) asc nulls last, o.id asc nulls last"
    )
    with pytest.raises(UnsupportedFieldError):
        builder.field_sql("budgetValue")


def test_fetch_pages_distinct_ids_and_attaches_taxonomies() -> None:
    pool = FakePool(
        responses=[
            [{"id": 1, "title": "Backend Engineer", "geo_location": '{"lat": 52.5, "lng": 13.4}'}],
            [{"target_id": 1, "taxonomy_id": 5, "taxonomy_pk": 5, "slug": "python", "label": "Python", "type": "skill"}],
        ]
    )
    where = WhereClause()
    where.add(Predicate("taxonomySlugs", "in", ("python",)))

    rows = asyncio.run(_repository(pool).fetch(OpportunityCategory.JOB, StoreQuery(where=where, limit=10, offset=20)))

    sql, params = pool.queries[0]
    assert sql.startswith("select o.* from jobs o where o.id in (select o.id from jobs o join")
    assert sql.endswith("limit $3 offset $4")
    assert params == ("job", ["python"], 10, 20)
    assert rows[0]["geo_location"] == {"lat": 52.5, "lng": 13.4}
    assert rows[0]["taxonomy_assignments"][0]["taxonomy"]["slug"] == "python"
    assert pool.queries[1][1] == ("job", [1])


def test_count_uses_distinct_only_with_taxonomy_join() -> None:
    pool = FakePool(value=4)
    repository = _repository(pool)
    plain = WhereClause()
    joined = WhereClause()
    joined.add(Predicate("taxonomyTypes", "in", ("skill",)))

    assert asyncio.run(repository.count(OpportunityCategory.GIG, StoreQuery(where=plain))) == 4
    asyncio.run(repository.count(OpportunityCategory.GIG, StoreQuery(where=joined)))

    assert pool.queries[0][0] == "select count(*) from gigs o where true"
    assert pool.queries[1][0].startswith("select count(distinct o.id) from gigs o join")


def test_group_counts_rejects_taxonomy_fields() -> None:
    repository = _repository(FakePool())

    with pytest.raises(UnsupportedFieldError):
        asyncio.run(repository.group_counts(OpportunityCategory.JOB, StoreQuery(where=WhereClause()), "taxonomySlugs"))


def test_missing_database_url_is_unavailable() -> None:
    repository = PostgresOpportunityRepository(None, min_pool_size=1, max_pool_size=2)

    with pytest.raises(StoreUnavailableError):
        asyncio.run(repository.count(OpportunityCategory.JOB, StoreQuery(where=WhereClause())))
