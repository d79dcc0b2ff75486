from __future__ import annotations

import json
import logging
from functools import lru_cache
from typing import Any, assert_never

import asyncpg  # type: ignore[import-untyped]

from discovery.core.categories import OpportunityCategory, TAXONOMY_FACET_FIELDS, category_definition
from discovery.core.config import get_settings
from discovery.services.errors import StoreUnavailableError
from discovery.services.query import AnyOf, Predicate, SortExpression, Viewport
from discovery.services.store import StoreQuery, UnsupportedFieldError

logger = logging.getLogger(__name__)

_NUMERIC_TEXT = r"'^\s*[-+]?([0-9]+\.?[0-9]*|\.[0-9]+)([eE][-+]?[0-9]+)?\s*$'"
_GEO_LAT_TEXT = "coalesce(o.geo_location->>'lat', o.geo_location->>'latitude')"
_GEO_LNG_TEXT = "coalesce(o.geo_location->>'lng', o.geo_location->>'longitude')"
_GEO_LAT = f"(case when {_GEO_LAT_TEXT} ~ {_NUMERIC_TEXT} then ({_GEO_LAT_TEXT})::double precision end)"
_GEO_LNG = f"(case when {_GEO_LNG_TEXT} ~ {_NUMERIC_TEXT} then ({_GEO_LNG_TEXT})::double precision end)"
_GEO_VALID = f"(jsonb_typeof(o.geo_location) = 'object' and {_GEO_LAT} is not null and {_GEO_LNG} is not null)"
_GEO_REMOTE_FLAG = "coalesce(o.geo_location->'isRemote', o.geo_location->'is_remote')"
_REMOTE_TEXT_RE = r"'remote|anywhere|distributed|work[\s-]from[\s-]home|hybrid'"

_COMMON_FIELDS: dict[str, str] = {
    "id": "o.id",
    "title": "o.title",
    "description": "o.description",
    "location": "o.location",
    "createdAt": "o.created_at",
    "updatedAt": "o.updated_at",
    "geoCountry": (
        f"(case when {_GEO_VALID} then "
        "coalesce(o.geo_location->>'country', o.geo_location->>'countryCode') end)"
    ),
    "geoRegion": (
        f"(case when {_GEO_VALID} then "
        "coalesce(o.geo_location->>'region', o.geo_location->>'state', o.geo_location->>'stateCode') end)"
    ),
    "geoCity": (
        f"(case when {_GEO_VALID} then "
        "coalesce(o.geo_location->>'city', o.geo_location->>'town', o.geo_location->>'locality') end)"
    ),
    "isRemote": (
        f"(case when {_GEO_VALID} and jsonb_typeof({_GEO_REMOTE_FLAG}) = 'boolean' "
        f"then ({_GEO_REMOTE_FLAG})::text::boolean "
        f"else (coalesce(o.location, '') || ' ' || coalesce(o.description, '')) ~* {_REMOTE_TEXT_RE} end)"
    ),
}


def _category_fields(category: OpportunityCategory) -> dict[str, str]:
    match category:
        case OpportunityCategory.JOB:
            return {
                "employmentType": "o.employment_type",
                "employmentCategory": (
                    "(case when nullif(btrim(o.employment_type), '') is null then null "
                    "when lower(o.employment_type) like '%full%' then 'full_time' "
                    "when lower(o.employment_type) like '%part%' then 'part_time' "
                    "when lower(o.employment_type) like '%intern%' then 'internship' "
                    "when lower(o.employment_type) like '%contract%' "
                    "or lower(o.employment_type) like '%freelance%' then 'contract' "
                    r"else regexp_replace(lower(btrim(o.employment_type)), '\s+', '_', 'g') end)"
                ),
            }
        case OpportunityCategory.GIG:
            return {
                "budgetValue": (
                    "coalesce(substring(regexp_replace(coalesce(o.budget, ''), '[^0-9.]', '', 'g') "
                    r"from '^([0-9]+(?:\.[0-9]+)?|\.[0-9]+)')::double precision, 0)"
                ),
                "budgetCurrency": (
                    "(case when strpos(o.budget, '$') > 0 then 'USD' "
                    "when strpos(o.budget, '€') > 0 then 'EUR' "
                    "when strpos(o.budget, '£') > 0 then 'GBP' end)"
                ),
                "durationCategory": (
                    "(case when coalesce(o.duration, '') = '' then null "
                    "when lower(o.duration) ~ 'week|sprint' then 'short_term' "
                    "when lower(o.duration) ~ 'month|quarter' then 'medium_term' "
                    "when lower(o.duration) ~ 'year|long' then 'long_term' "
                    "else 'unspecified' end)"
                ),
            }
        case OpportunityCategory.PROJECT:
            return {"status": "coalesce(nullif(o.status, ''), 'unknown')"}
        case OpportunityCategory.LAUNCHPAD:
            return {"track": "o.track"}
        case OpportunityCategory.VOLUNTEERING:
            return {"organization": "o.organization"}
        case _:
            assert_never(category)


class _SqlBuilder:
    def __init__(self, category: OpportunityCategory) -> None:
        self.category = category
        self.fields = {**_COMMON_FIELDS, **_category_fields(category)}
        self.params: list[Any] = []
        self.joins: list[str] = []
        self.conditions: list[str] = []

    def bind(self, value: Any) -> str:
        self.params.append(value)
        return f"${len(self.params)}"

    def field_sql(self, field: str) -> str:
        expression = self.fields.get(field)
        if expression is None:
            raise UnsupportedFieldError(f"unknown field {field} for {self.category.value}")
        return expression

    def add_clause(self, clause: Predicate | AnyOf) -> None:
        if isinstance(clause, AnyOf):
            rendered = [self.render_predicate(predicate) for predicate in clause.predicates]
            if rendered:
                self.conditions.append("(" + " or ".join(rendered) + ")")
            return
        self.conditions.append(self.render_predicate(clause))

    def render_predicate(self, predicate: Predicate) -> str:
        if predicate.field in {"taxonomySlugs", "taxonomyTypes"}:
            return self._taxonomy_predicate(predicate)
        if predicate.op == "within":
            return self._viewport_predicate(predicate.value)

        expression = self.field_sql(predicate.field)
        if predicate.op == "eq":
            return f"{expression} = {self.bind(predicate.value)}"
        if predicate.op == "in":
            return f"{expression} = any({self.bind(list(predicate.value))}::text[])"
        if predicate.op == "gte":
            return f"{expression} >= {self.bind(predicate.value)}"
        if predicate.op == "lte":
            return f"{expression} <= {self.bind(predicate.value)}"
        if predicate.op == "contains":
            return f"coalesce({expression}, '') ilike {self.bind(f'%{_escape_like(str(predicate.value))}%')}"
        raise UnsupportedFieldError(f"unsupported predicate op {predicate.op}")

    def _taxonomy_predicate(self, predicate: Predicate) -> str:
        alias = len(self.joins) + 1
        self.joins.append(
            f"join opportunity_taxonomy_assignments ta{alias} "
            f"on ta{alias}.target_type = {self.bind(self.category.value)} and ta{alias}.target_id = o.id "
            f"join opportunity_taxonomies t{alias} on t{alias}.id = ta{alias}.taxonomy_id"
        )
        column = "slug" if predicate.field == "taxonomySlugs" else "type"
        values = [str(value).lower() for value in predicate.value]
        return f"lower(t{alias}.{column}) = any({self.bind(values)}::text[])"

    def _viewport_predicate(self, viewport: Viewport) -> str:
        north = self.bind(viewport.north)
        south = self.bind(viewport.south)
        east = self.bind(viewport.east)
        west = self.bind(viewport.west)
        if viewport.west <= viewport.east:
            longitude = f"{_GEO_LNG} between {west} and {east}"
        else:
            longitude = f"({_GEO_LNG} >= {west} or {_GEO_LNG} <= {east})"
        return f"({_GEO_VALID} and {_GEO_LAT} between {south} and {north} and {longitude})"

    def from_sql(self) -> str:
        table = category_definition(self.category).table_name
        return " ".join([f"{table} o", *self.joins])

    def where_sql(self) -> str:
        return " and ".join(self.conditions) if self.conditions else "true"

    def order_sql(self, expressions: tuple[SortExpression, ...]) -> str:
        rendered: list[str] = []
        for expression in expressions:
            sql = self.field_sql(expression.field)
            if expression.field == "title":
                sql = f"lower({sql})"
            rendered.append(f"{sql} {expression.direction} nulls last")
        return ", ".join(rendered) if rendered else "o.updated_at desc, o.id desc"


class PostgresOpportunityRepository:
    def __init__(
        self,
        database_url: str | None,
        min_pool_size: int,
        max_pool_size: int,
        command_timeout: float = 15.0,
    ) -> None:
        self.database_url = database_url
        self.min_pool_size = min_pool_size
        self.max_pool_size = max_pool_size
        self.command_timeout = command_timeout
        self._pool: asyncpg.Pool | None = None

    async def close(self) -> None:
        if self._pool is not None:
            await self._pool.close()
            self._pool = None

    async def fetch(self, category: OpportunityCategory, query: StoreQuery) -> list[dict[str, Any]]:
        builder = self._build(category, query)
        table = category_definition(category).table_name
        if builder.joins:
            # Taxonomy joins fan rows out; select matching ids first.
            where_sql = f"o.id in (select o.id from {builder.from_sql()} where {builder.where_sql()})"
        else:
            where_sql = builder.where_sql()
        sql = f"select o.* from {table} o where {where_sql} order by {builder.order_sql(query.sort)}"
        if query.limit is not None:
            sql += f" limit {builder.bind(query.limit)}"
        if query.offset:
            sql += f" offset {builder.bind(query.offset)}"

        pool = await self._get_pool()
        rows = await pool.fetch(sql, *builder.params)
        records = [self._opportunity_row_to_dict(row) for row in rows]
        if query.include_taxonomies and records and category_definition(category).taxonomy_enabled:
            await self._attach_taxonomies(pool, category, records)
        return records

    async def count(self, category: OpportunityCategory, query: StoreQuery) -> int:
        builder = self._build(category, query)
        counted = "count(distinct o.id)" if builder.joins else "count(*)"
        pool = await self._get_pool()
        value = await pool.fetchval(
            f"select {counted} from {builder.from_sql()} where {builder.where_sql()}",
            *builder.params,
        )
        return int(value or 0)

    async def group_counts(self, category: OpportunityCategory, query: StoreQuery, field: str) -> dict[Any, int]:
        if field in TAXONOMY_FACET_FIELDS:
            raise UnsupportedFieldError(f"cannot group on multi-valued field {field}")
        builder = self._build(category, query)
        expression = builder.field_sql(field)
        counted = "count(distinct o.id)" if builder.joins else "count(*)"
        pool = await self._get_pool()
        rows = await pool.fetch(
            f"""
            select {expression} as value, {counted} as count
            from {builder.from_sql()}
            where {builder.where_sql()}
            group by 1
            """,
            *builder.params,
        )
        return {row["value"]: int(row["count"]) for row in rows}

    def _build(self, category: OpportunityCategory, query: StoreQuery) -> _SqlBuilder:
        builder = _SqlBuilder(category)
        for clause in query.where.clauses:
            builder.add_clause(clause)
        return builder

    async def _attach_taxonomies(
        self,
        pool: asyncpg.Pool,
        category: OpportunityCategory,
        records: list[dict[str, Any]],
    ) -> None:
        rows = await pool.fetch(
            """
            select
              ta.target_id,
              ta.taxonomy_id,
              t.id as taxonomy_pk,
              t.slug,
              t.label,
              t.type
            from opportunity_taxonomy_assignments ta
            join opportunity_taxonomies t on t.id = ta.taxonomy_id
            where ta.target_type = $1
              and ta.target_id = any($2)
            order by ta.weight desc nulls last, t.id asc
            """,
            category.value,
            [record["id"] for record in records],
        )
        by_target: dict[Any, list[dict[str, Any]]] = {}
        for row in rows:
            by_target.setdefault(row["target_id"], []).append(
                {
                    "taxonomy_id": row["taxonomy_id"],
                    "taxonomy": {
                        "id": row["taxonomy_pk"],
                        "slug": row["slug"],
                        "label": row["label"],
                        "type": row["type"],
                    },
                }
            )
        for record in records:
            record["taxonomy_assignments"] = by_target.get(record["id"], [])

    async def _get_pool(self) -> asyncpg.Pool:
        if not self.database_url:
            raise StoreUnavailableError("OD_DATABASE_URL is required")

        if self._pool is not None:
            return self._pool

        try:
            self._pool = await asyncpg.create_pool(
                dsn=self.database_url,
                min_size=self.min_pool_size,
                max_size=self.max_pool_size,
                command_timeout=self.command_timeout,
            )
            return self._pool
        except Exception as exc:  # pragma: no cover - depends on environment
            raise StoreUnavailableError("database unavailable") from exc

    @staticmethod
    def _opportunity_row_to_dict(row: asyncpg.Record) -> dict[str, Any]:
        record = dict(row)
        for key in ("geo_location", "auto_assign_settings"):
            value = record.get(key)
            if isinstance(value, str):
                try:
                    record[key] = json.loads(value)
                except json.JSONDecodeError:
                    record[key] = None
        return record


def _escape_like(value: str) -> str:
    return value.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")


@lru_cache
def get_repository() -> PostgresOpportunityRepository:
    settings = get_settings()
    return PostgresOpportunityRepository(
        database_url=settings.database_url,
        min_pool_size=settings.database_pool_min_size,
        max_pool_size=settings.database_pool_max_size,
        command_timeout=settings.store_timeout_seconds,
    )
