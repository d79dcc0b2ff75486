from __future__ import annotations

import json
import math
from collections.abc import Mapping
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Literal, assert_never

from discovery.core.categories import OpportunityCategory, category_definition
from discovery.services.errors import ValidationError

DEFAULT_PAGE_SIZE = 20
MAX_PAGE_SIZE = 50

UPDATED_WITHIN_WINDOWS: dict[str, timedelta] = {
    "24h": timedelta(hours=24),
    "7d": timedelta(days=7),
    "30d": timedelta(days=30),
    "90d": timedelta(days=90),
}

# Canonical key -> accepted client aliases, in precedence order.
FILTER_ALIASES: dict[str, tuple[str, ...]] = {
    "employmentType": ("employmentType", "employmentTypes"),
    "employmentCategory": ("employmentCategory", "employmentCategories"),
    "durationCategory": ("durationCategory", "durationCategories", "deliverySpeed", "deliverySpeeds"),
    "budgetCurrency": ("budgetCurrency", "budgetCurrencies", "currency"),
    "budgetValueMin": ("budgetValueMin", "budgetMin", "minBudget"),
    "budgetValueMax": ("budgetValueMax", "budgetMax", "maxBudget"),
    "status": ("status", "statuses"),
    "track": ("track", "tracks"),
    "organization": ("organization", "organizations"),
    "location": ("location", "locations"),
    "geoCountry": ("geoCountry", "country", "countries"),
    "geoRegion": ("geoRegion", "region", "regions"),
    "geoCity": ("geoCity", "city", "cities"),
    "isRemote": ("isRemote", "remote"),
    "updatedWithin": ("updatedWithin", "freshness", "postedWithin"),
    "taxonomySlugs": ("taxonomySlugs", "taxonomySlug", "taxonomies", "skills"),
    "taxonomyTypes": ("taxonomyTypes", "taxonomyType"),
}

FilterKind = Literal["values", "flag", "window", "minimum", "maximum"]

FILTER_KINDS: dict[str, FilterKind] = {
    "employmentType": "values",
    "employmentCategory": "values",
    "durationCategory": "values",
    "budgetCurrency": "values",
    "budgetValueMin": "minimum",
    "budgetValueMax": "maximum",
    "status": "values",
    "track": "values",
    "organization": "values",
    "location": "values",
    "geoCountry": "values",
    "geoRegion": "values",
    "geoCity": "values",
    "isRemote": "flag",
    "updatedWithin": "window",
    "taxonomySlugs": "values",
    "taxonomyTypes": "values",
}

_LOWERCASE_VALUE_KEYS = frozenset({"taxonomySlugs", "taxonomyTypes"})
_TRUE_TOKENS = frozenset({"true", "1"})
_FALSE_TOKENS = frozenset({"false", "0"})

PredicateOp = Literal["eq", "in", "gte", "lte", "contains", "within"]
SortDirection = Literal["asc", "desc"]


@dataclass(frozen=True, slots=True)
class Viewport:
    north: float
    south: float
    east: float
    west: float

    def contains(self, lat: float, lng: float) -> bool:
        if lat < self.south or lat > self.north:
            return False
        if self.west <= self.east:
            return self.west <= lng <= self.east
        # Box crosses the antimeridian.
        return lng >= self.west or lng <= self.east

    def as_dict(self) -> dict[str, float]:
        return {"north": self.north, "south": self.south, "east": self.east, "west": self.west}


@dataclass(frozen=True, slots=True)
class Predicate:
    field: str
    op: PredicateOp
    value: Any


@dataclass(frozen=True, slots=True)
class AnyOf:
    predicates: tuple[Predicate, ...]


Clause = Predicate | AnyOf


@dataclass(slots=True)
class WhereClause:
    """Conjunction of predicates over canonical document fields."""

    clauses: list[Clause] = field(default_factory=list)

    def add(self, clause: Clause) -> None:
        self.clauses.append(clause)

    def predicates(self) -> list[Predicate]:
        flattened: list[Predicate] = []
        for clause in self.clauses:
            if isinstance(clause, AnyOf):
                flattened.extend(clause.predicates)
            else:
                flattened.append(clause)
        return flattened

    @property
    def requires_taxonomy_join(self) -> bool:
        return any(predicate.field in {"taxonomySlugs", "taxonomyTypes"} for predicate in self.predicates())


@dataclass(frozen=True, slots=True)
class SortExpression:
    field: str
    direction: SortDirection

    def to_index(self) -> str | None:
        index_field = _INDEX_SORT_FIELDS.get(self.field, self.field)
        if index_field is None:
            return None
        return f"{index_field}:{self.direction}"


_INDEX_SORT_FIELDS: dict[str, str | None] = {
    "updatedAt": "updatedAtTimestamp",
    "createdAt": "createdAtTimestamp",
    "id": None,
}

FALLBACK_SORT: tuple[SortExpression, ...] = (SortExpression("updatedAt", "desc"), SortExpression("id", "desc"))
_NEWEST = (SortExpression("createdAt", "desc"), SortExpression("id", "desc"))
_ALPHABETICAL = (SortExpression("title", "asc"), SortExpression("id", "asc"))


def parse_filters(raw: Any) -> dict[str, Any]:
    if raw is None:
        return {}
    if isinstance(raw, Mapping):
        return dict(raw)
    if isinstance(raw, (bytes, bytearray)):
        raw = raw.decode("utf-8", errors="replace")
    if not isinstance(raw, str):
        raise ValidationError("filters must be a JSON object")
    stripped = raw.strip()
    if not stripped:
        return {}
    try:
        parsed = json.loads(stripped)
    except json.JSONDecodeError as exc:
        raise ValidationError(f"filters must be valid JSON: {exc.msg}") from exc
    if parsed is None:
        return {}
    if not isinstance(parsed, dict):
        raise ValidationError("filters must be a JSON object")
    return parsed


def normalize_viewport(raw: Any) -> Viewport | None:
    if raw is None:
        return None
    payload: Any = raw
    if isinstance(payload, str):
        stripped = payload.strip()
        if not stripped:
            return None
        try:
            payload = json.loads(stripped)
        except json.JSONDecodeError as exc:
            raise ValidationError(f"viewport must be valid JSON: {exc.msg}") from exc
        if payload is None:
            return None
    if not isinstance(payload, Mapping):
        raise ValidationError("viewport must be an object with north, south, east and west")

    bounding_box = payload.get("boundingBox")
    if isinstance(bounding_box, Mapping):
        payload = bounding_box

    bounds = {edge: _require_coordinate(payload, edge) for edge in ("north", "south", "east", "west")}
    for edge in ("north", "south"):
        if not -90.0 <= bounds[edge] <= 90.0:
            raise ValidationError(f"viewport.{edge} must be a latitude between -90 and 90")
    for edge in ("east", "west"):
        if not -180.0 <= bounds[edge] <= 180.0:
            raise ValidationError(f"viewport.{edge} must be a longitude between -180 and 180")
    if bounds["north"] < bounds["south"]:
        raise ValidationError("viewport.north must be greater than or equal to viewport.south")
    return Viewport(**bounds)


def normalize_client_filters(raw: Any, category: OpportunityCategory | None = None) -> dict[str, Any]:
    """Coalesce client aliases into canonical filter keys.

    Unknown keys, keys that do not apply to ``category`` and uninterpretable values are
    dropped. List values are trimmed and deduplicated.
    """
    parsed = parse_filters(raw)
    allowed = category_definition(category).filter_keys if category is not None else None
    normalized: dict[str, Any] = {}

    for canonical_key, aliases in FILTER_ALIASES.items():
        if allowed is not None and canonical_key not in allowed:
            continue
        present = [parsed[alias] for alias in aliases if alias in parsed]
        if not present:
            continue

        kind = FILTER_KINDS[canonical_key]
        if kind == "values":
            values = _coerce_value_list(present, lowercase=canonical_key in _LOWERCASE_VALUE_KEYS)
            if values:
                normalized[canonical_key] = values
        elif kind == "flag":
            flag = _first_not_none(_coerce_flag(value) for value in present)
            if flag is not None:
                normalized[canonical_key] = flag
        elif kind == "window":
            window = _first_not_none(_coerce_window(value) for value in present)
            if window is not None:
                normalized[canonical_key] = window
        elif kind in ("minimum", "maximum"):
            number = _first_not_none(_coerce_number(value) for value in present)
            if number is not None:
                normalized[canonical_key] = number
        else:
            assert_never(kind)

    return normalized


def build_index_filter_expression(
    category: OpportunityCategory,
    filters: Mapping[str, Any],
    viewport: Viewport | None = None,
    *,
    now: datetime | None = None,
) -> str | None:
    """Render filters as an AND-of-ORs index filter. ``None`` means no filter."""
    allowed = category_definition(category).filter_keys
    groups: list[str] = []

    for key, kind in FILTER_KINDS.items():
        if key not in allowed or key not in filters:
            continue
        value = filters[key]
        if kind == "values":
            values = [item for item in value if isinstance(item, str)] if isinstance(value, (list, tuple)) else []
            if values:
                groups.append("(" + " OR ".join(f"{key} = {_quote_index_value(item)}" for item in values) + ")")
        elif kind == "flag":
            if isinstance(value, bool):
                groups.append(f"isRemote = {'true' if value else 'false'}")
        elif kind == "window":
            threshold = updated_within_threshold(value, now=now)
            if threshold is not None:
                groups.append(f"updatedAtTimestamp >= {int(threshold.timestamp() * 1000)}")
        elif kind == "minimum":
            if _is_number(value):
                groups.append(f"budgetValue >= {_format_number(value)}")
        elif kind == "maximum":
            if _is_number(value):
                groups.append(f"budgetValue <= {_format_number(value)}")
        else:
            assert_never(kind)

    if viewport is not None:
        groups.append(
            "_geoBoundingBox("
            f"[{_format_number(viewport.north)}, {_format_number(viewport.east)}], "
            f"[{_format_number(viewport.south)}, {_format_number(viewport.west)}])"
        )

    if not groups:
        return None
    return " AND ".join(groups)


def apply_structured_filters(
    where: WhereClause,
    category: OpportunityCategory,
    filters: Mapping[str, Any],
    *,
    viewport: Viewport | None = None,
    now: datetime | None = None,
) -> WhereClause:
    """Add the relational twin of ``build_index_filter_expression`` to ``where``."""
    allowed = category_definition(category).filter_keys

    for key, kind in FILTER_KINDS.items():
        if key not in allowed or key not in filters:
            continue
        value = filters[key]
        if kind == "values":
            values = tuple(item for item in value if isinstance(item, str)) if isinstance(value, (list, tuple)) else ()
            if values:
                where.add(Predicate(key, "in", values))
        elif kind == "flag":
            if isinstance(value, bool):
                where.add(Predicate("isRemote", "eq", value))
        elif kind == "window":
            threshold = updated_within_threshold(value, now=now)
            if threshold is not None:
                where.add(Predicate("updatedAt", "gte", threshold))
        elif kind == "minimum":
            if _is_number(value):
                where.add(Predicate("budgetValue", "gte", float(value)))
        elif kind == "maximum":
            if _is_number(value):
                where.add(Predicate("budgetValue", "lte", float(value)))
        else:
            assert_never(kind)

    if viewport is not None:
        where.add(Predicate("_geo", "within", viewport))
    return where


def build_text_search_clause(category: OpportunityCategory, query: str | None) -> AnyOf | None:
    term = (query or "").strip()
    if not term:
        return None
    fields = category_definition(category).text_fields
    return AnyOf(tuple(Predicate(field_name, "contains", term) for field_name in fields))


def updated_within_threshold(window: Any, *, now: datetime | None = None) -> datetime | None:
    if not isinstance(window, str):
        return None
    delta = UPDATED_WITHIN_WINDOWS.get(window.strip().lower())
    if delta is None:
        return None
    return (now or datetime.now(timezone.utc)) - delta


def sort_profiles(category: OpportunityCategory) -> dict[str, tuple[SortExpression, ...]]:
    match category:
        case OpportunityCategory.JOB | OpportunityCategory.LAUNCHPAD | OpportunityCategory.VOLUNTEERING:
            return {"default": FALLBACK_SORT, "newest": _NEWEST, "alphabetical": _ALPHABETICAL}
        case OpportunityCategory.GIG:
            return {
                "default": FALLBACK_SORT,
                "newest": _NEWEST,
                "alphabetical": _ALPHABETICAL,
                "budget": (
                    SortExpression("budgetValue", "desc"),
                    SortExpression("updatedAt", "desc"),
                    SortExpression("id", "desc"),
                ),
            }
        case OpportunityCategory.PROJECT:
            return {
                "default": FALLBACK_SORT,
                "newest": _NEWEST,
                "alphabetical": _ALPHABETICAL,
                "status": (
                    SortExpression("status", "asc"),
                    SortExpression("updatedAt", "desc"),
                    SortExpression("id", "desc"),
                ),
            }
        case _:
            assert_never(category)


def resolve_sort_expressions(category: OpportunityCategory, sort_key: str | None) -> tuple[SortExpression, ...]:
    profiles = sort_profiles(category)
    key = (sort_key or "").strip().lower()
    if key and key in profiles:
        return profiles[key]
    return profiles.get("default") or FALLBACK_SORT


def index_sort_expressions(expressions: tuple[SortExpression, ...]) -> list[str]:
    return [rendered for rendered in (expression.to_index() for expression in expressions) if rendered]


def normalize_page(value: Any) -> int:
    parsed = _parse_positive(value)
    if parsed is None:
        return 1
    return parsed


def normalize_page_size(value: Any, *, default: int = DEFAULT_PAGE_SIZE, maximum: int = MAX_PAGE_SIZE) -> int:
    parsed = _parse_positive(value)
    if parsed is None:
        return min(default, maximum)
    return min(parsed, maximum)


def normalize_limit(value: Any, *, default: int = DEFAULT_PAGE_SIZE, maximum: int = MAX_PAGE_SIZE) -> int:
    return normalize_page_size(value, default=default, maximum=maximum)


def page_offset(page: int, page_size: int) -> int:
    return max(0, (page - 1) * page_size)


def total_pages(total: int, page_size: int) -> int:
    if page_size <= 0:
        return 1
    return max(1, math.ceil(total / page_size))


def _parse_positive(value: Any) -> int | None:
    if value is None or isinstance(value, bool):
        return None
    try:
        parsed = float(value.strip()) if isinstance(value, str) else float(value)
    except (TypeError, ValueError):
        return None
    if not math.isfinite(parsed) or parsed < 1:
        return None
    return int(math.floor(parsed))


def _require_coordinate(payload: Mapping[str, Any], edge: str) -> float:
    value = payload.get(edge)
    if value is None or isinstance(value, bool):
        raise ValidationError(f"viewport.{edge} must be a finite number")
    try:
        parsed = float(value.strip()) if isinstance(value, str) else float(value)
    except (TypeError, ValueError) as exc:
        raise ValidationError(f"viewport.{edge} must be a finite number") from exc
    if not math.isfinite(parsed):
        raise ValidationError(f"viewport.{edge} must be a finite number")
    return parsed


def _coerce_value_list(raw_values: list[Any], *, lowercase: bool) -> list[str]:
    items: list[str] = []
    seen: set[str] = set()
    for raw in raw_values:
        candidates = raw if isinstance(raw, (list, tuple, set)) else [raw]
        for candidate in candidates:
            if isinstance(candidate, bool) or not isinstance(candidate, (str, int, float)):
                continue
            text = str(candidate).strip()
            if lowercase:
                text = text.lower()
            if text and text not in seen:
                seen.add(text)
                items.append(text)
    return items


def _coerce_flag(value: Any) -> bool | None:
    if isinstance(value, bool):
        return value
    if isinstance(value, int):
        if value == 1:
            return True
        if value == 0:
            return False
        return None
    if isinstance(value, str):
        token = value.strip().lower()
        if token in _TRUE_TOKENS:
            return True
        if token in _FALSE_TOKENS:
            return False
    return None


def _coerce_window(value: Any) -> str | None:
    if isinstance(value, str):
        token = value.strip().lower()
        if token in UPDATED_WITHIN_WINDOWS:
            return token
    return None


def _coerce_number(value: Any) -> float | None:
    if isinstance(value, bool) or value is None:
        return None
    try:
        parsed = float(value.strip()) if isinstance(value, str) else float(value)
    except (TypeError, ValueError):
        return None
    if not math.isfinite(parsed):
        return None
    return parsed


def _first_not_none(values: Any) -> Any:
    for value in values:
        if value is not None:
            return value
    return None


def _is_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool) and math.isfinite(value)


def _format_number(value: float) -> str:
    if float(value).is_integer():
        return str(int(value))
    return repr(float(value))


def _quote_index_value(value: str) -> str:
    escaped = value.replace("\\", "\\\\").replace('"', '\\"')
    return f'"{escaped}"'
