from __future__ import annotations

import copy
from collections.abc import Callable, Iterable, Mapping
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Protocol
from uuid import uuid4

from discovery.core.categories import OpportunityCategory, TAXONOMY_FACET_FIELDS
from discovery.services.documents import map_to_document
from discovery.services.query import FALLBACK_SORT, AnyOf, Predicate, SortExpression, WhereClause

Clock = Callable[[], datetime]


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(slots=True)
class StoreQuery:
    where: WhereClause
    sort: tuple[SortExpression, ...] = FALLBACK_SORT
    limit: int | None = None
    offset: int = 0
    include_taxonomies: bool = True


class OpportunityStore(Protocol):
    async def fetch(self, category: OpportunityCategory, query: StoreQuery) -> list[dict[str, Any]]: ...

    async def count(self, category: OpportunityCategory, query: StoreQuery) -> int: ...

    async def group_counts(self, category: OpportunityCategory, query: StoreQuery, field: str) -> dict[Any, int]: ...

    async def close(self) -> None: ...


class UnsupportedFieldError(ValueError):
    """Raised when a store cannot filter, sort or group on a field."""


class InMemoryOpportunityStore:
    """Evaluates the relational predicate tree over canonical documents held in memory."""

    def __init__(
        self,
        records: Mapping[OpportunityCategory, Iterable[Mapping[str, Any]]] | None = None,
        *,
        clock: Clock = utc_now,
    ) -> None:
        self.clock = clock
        self.records: dict[OpportunityCategory, list[dict[str, Any]]] = {category: [] for category in OpportunityCategory}
        for category, rows in (records or {}).items():
            for row in rows:
                self.add(OpportunityCategory.parse(category), row)

    def add(self, category: OpportunityCategory, record: Mapping[str, Any]) -> dict[str, Any]:
        row = dict(record)
        row.setdefault("id", str(uuid4()))
        now = self.clock()
        row.setdefault("created_at", now)
        row.setdefault("updated_at", row["created_at"])
        self.records[category].append(row)
        return row

    async def fetch(self, category: OpportunityCategory, query: StoreQuery) -> list[dict[str, Any]]:
        matched = self._matching(category, query.where)
        ordered = _sort_pairs(matched, query.sort)
        start = max(0, query.offset)
        stop = None if query.limit is None else start + max(0, query.limit)
        rows = [copy.deepcopy(row) for row, _ in ordered[start:stop]]
        if not query.include_taxonomies:
            for row in rows:
                row.pop("taxonomy_assignments", None)
        return rows

    async def count(self, category: OpportunityCategory, query: StoreQuery) -> int:
        return len(self._matching(category, query.where))

    async def group_counts(self, category: OpportunityCategory, query: StoreQuery, field: str) -> dict[Any, int]:
        if field in TAXONOMY_FACET_FIELDS:
            raise UnsupportedFieldError(f"cannot group on multi-valued field {field}")
        counts: dict[Any, int] = {}
        for _, document in self._matching(category, query.where):
            if field not in document:
                raise UnsupportedFieldError(f"unknown field {field} for {category.value}")
            value = document[field]
            counts[value] = counts.get(value, 0) + 1
        return counts

    async def close(self) -> None:
        return None

    def _matching(self, category: OpportunityCategory, where: WhereClause) -> list[tuple[dict[str, Any], dict[str, Any]]]:
        now = self.clock()
        pairs = [(row, map_to_document(category, row, now=now)) for row in self.records[category]]
        return [(row, document) for row, document in pairs if _matches(document, where)]


def _matches(document: Mapping[str, Any], where: WhereClause) -> bool:
    for clause in where.clauses:
        if isinstance(clause, AnyOf):
            if not any(_evaluate(document, predicate) for predicate in clause.predicates):
                return False
        elif not _evaluate(document, clause):
            return False
    return True


def _evaluate(document: Mapping[str, Any], predicate: Predicate) -> bool:
    op = predicate.op
    if op == "within":
        point = document.get("_geo")
        if not isinstance(point, Mapping):
            return False
        return bool(predicate.value.contains(point["lat"], point["lng"]))

    value = _document_value(document, predicate.field)
    if op == "contains":
        return isinstance(value, str) and str(predicate.value).lower() in value.lower()
    if op == "eq":
        return value == predicate.value
    if op == "in":
        if isinstance(value, list):
            wanted = {str(item).lower() for item in predicate.value}
            return any(isinstance(item, str) and item.lower() in wanted for item in value)
        return value in predicate.value
    if op in ("gte", "lte"):
        bound = predicate.value
        if isinstance(bound, datetime):
            bound = int(bound.timestamp() * 1000)
        if value is None:
            return False
        return value >= bound if op == "gte" else value <= bound
    raise UnsupportedFieldError(f"unsupported predicate op {op}")


def _document_value(document: Mapping[str, Any], field: str) -> Any:
    if field == "updatedAt":
        return document.get("updatedAtTimestamp")
    if field == "createdAt":
        return document.get("createdAtTimestamp")
    if field not in document:
        raise UnsupportedFieldError(f"unknown field {field}")
    return document[field]


def _sort_pairs(
    pairs: list[tuple[dict[str, Any], dict[str, Any]]],
    expressions: tuple[SortExpression, ...],
) -> list[tuple[dict[str, Any], dict[str, Any]]]:
    ordered = list(pairs)
    # Stable sorts applied from the least significant key; missing values sort last.
    for expression in reversed(expressions):
        present = [pair for pair in ordered if _sort_value(pair[1], expression.field) is not None]
        missing = [pair for pair in ordered if _sort_value(pair[1], expression.field) is None]
        present.sort(key=lambda pair: _sort_value(pair[1], expression.field), reverse=expression.direction == "desc")
        ordered = present + missing
    return ordered


def _sort_value(document: Mapping[str, Any], field: str) -> Any:
    value = _document_value(document, field)
    if isinstance(value, str):
        return value.lower()
    return value
