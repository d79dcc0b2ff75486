"""Projection of stored opportunity rows into the canonical search document."""

from __future__ import annotations

import math
import re
from collections.abc import Mapping
from datetime import datetime, timezone
from typing import Any, assert_never

from discovery.core.categories import OpportunityCategory

FRESHNESS_WINDOW_HOURS = 45 * 24

REMOTE_PATTERN = re.compile(r"remote|anywhere|distributed|work[\s-]from[\s-]home|hybrid", re.IGNORECASE)
_BUDGET_STRIP_RE = re.compile(r"[^0-9.]")
_BUDGET_NUMBER_RE = re.compile(r"\d+(?:\.\d+)?|\.\d+")
_WHITESPACE_RE = re.compile(r"\s+")
_SHORT_TERM_RE = re.compile(r"week|sprint")
_MEDIUM_TERM_RE = re.compile(r"month|quarter")
_LONG_TERM_RE = re.compile(r"year|long")


def is_remote_role(location: str | None, description: str | None) -> bool:
    if not location and not description:
        return False
    return bool(REMOTE_PATTERN.search(f"{location or ''} {description or ''}"))


def compute_freshness_score(updated_at: datetime, *, now: datetime) -> int:
    age_hours = (now - updated_at).total_seconds() / 3600.0
    return round(max(0.0, FRESHNESS_WINDOW_HOURS - age_hours) * 10)


def normalize_employment_category(employment_type: Any) -> str | None:
    if not isinstance(employment_type, str) or not employment_type.strip():
        return None
    normalized = employment_type.strip().lower()
    if "full" in normalized:
        return "full_time"
    if "part" in normalized:
        return "part_time"
    if "intern" in normalized:
        return "internship"
    if "contract" in normalized or "freelance" in normalized:
        return "contract"
    return _WHITESPACE_RE.sub("_", normalized)


def parse_budget_value(budget: Any) -> float | None:
    if isinstance(budget, bool) or budget is None:
        return None
    if isinstance(budget, (int, float)):
        return float(budget) if math.isfinite(budget) else None
    if not isinstance(budget, str):
        return None
    match = _BUDGET_NUMBER_RE.match(_BUDGET_STRIP_RE.sub("", budget))
    if match is None:
        return None
    return float(match.group(0))


def extract_currency_code(budget: Any) -> str | None:
    if not isinstance(budget, str) or not budget:
        return None
    if "$" in budget:
        return "USD"
    if "€" in budget:
        return "EUR"
    if "£" in budget:
        return "GBP"
    return None


def determine_duration_category(duration: Any) -> str | None:
    if not isinstance(duration, str) or not duration:
        return None
    text = duration.lower()
    if _SHORT_TERM_RE.search(text):
        return "short_term"
    if _MEDIUM_TERM_RE.search(text):
        return "medium_term"
    if _LONG_TERM_RE.search(text):
        return "long_term"
    return "unspecified"


def normalize_geo_location(geo_location: Any, fallback_location: str | None = None) -> dict[str, Any] | None:
    """Decompose an embedded geo object. Returns ``None`` without a finite lat/lng pair."""
    if not geo_location:
        return None
    candidate: Mapping[str, Any] = {"label": geo_location} if isinstance(geo_location, str) else geo_location
    if not isinstance(candidate, Mapping):
        return None

    lat = _coerce_coordinate(_first_present(candidate, "lat", "latitude"))
    lng = _coerce_coordinate(_first_present(candidate, "lng", "longitude"))
    if lat is None or lng is None:
        return None

    is_remote = candidate.get("isRemote", candidate.get("is_remote"))
    return {
        "lat": lat,
        "lng": lng,
        "city": _first_present(candidate, "city", "town", "locality"),
        "region": _first_present(candidate, "region", "state", "stateCode"),
        "country": _first_present(candidate, "country", "countryCode"),
        "label": _first_present(candidate, "label", "name", "formatted", "displayName") or fallback_location,
        "isRemote": is_remote if isinstance(is_remote, bool) else None,
    }


def collect_taxonomies(record: Mapping[str, Any]) -> dict[str, list[Any]]:
    """Merge assignment relations, a pre-joined list and parallel arrays.

    Entries are deduplicated by case-insensitive slug; earlier sources win.
    """
    combined: list[dict[str, Any]] = []

    for assignment in _as_list(record.get("taxonomy_assignments", record.get("taxonomyAssignments"))):
        if not isinstance(assignment, Mapping):
            continue
        taxonomy = assignment.get("taxonomy")
        if not isinstance(taxonomy, Mapping):
            continue
        combined.append(
            {
                "id": taxonomy.get("id", assignment.get("taxonomy_id", assignment.get("taxonomyId"))),
                "slug": taxonomy.get("slug"),
                "label": taxonomy.get("label"),
                "type": taxonomy.get("type"),
            }
        )

    for entry in _as_list(record.get("taxonomies")):
        if not isinstance(entry, Mapping):
            continue
        combined.append(
            {
                "id": entry.get("id"),
                "slug": entry.get("slug", entry.get("Slug")),
                "label": entry.get("label", entry.get("Label")),
                "type": entry.get("type", entry.get("Type")),
            }
        )

    slugs = _as_list(record.get("taxonomy_slugs", record.get("taxonomySlugs")))
    labels = _as_list(record.get("taxonomy_labels", record.get("taxonomyLabels")))
    types = _as_list(record.get("taxonomy_types", record.get("taxonomyTypes")))
    for position, slug in enumerate(slugs):
        combined.append(
            {
                "id": None,
                "slug": slug,
                "label": labels[position] if position < len(labels) else None,
                "type": types[position] if position < len(types) else None,
            }
        )

    deduped: list[dict[str, Any]] = []
    seen: set[str] = set()
    for entry in combined:
        slug = entry["slug"]
        if not isinstance(slug, str) or not slug.strip():
            continue
        key = slug.strip().lower()
        if key in seen:
            continue
        seen.add(key)
        deduped.append({**entry, "slug": slug.strip()})

    return {
        "list": deduped,
        "slugs": _unique_text(entry["slug"] for entry in deduped),
        "labels": _unique_text(entry["label"] for entry in deduped),
        "types": _unique_text(entry["type"] for entry in deduped),
    }


def map_to_document(
    category: OpportunityCategory,
    record: Mapping[str, Any],
    *,
    now: datetime | None = None,
) -> dict[str, Any]:
    current = now or datetime.now(timezone.utc)
    created_at = _coerce_datetime(_first_present(record, "created_at", "createdAt")) or current
    updated_at = _coerce_datetime(_first_present(record, "updated_at", "updatedAt")) or created_at
    location = record.get("location")
    description = record.get("description")
    geo = normalize_geo_location(_first_present(record, "geo_location", "geoLocation"), location)
    taxonomy_info = collect_taxonomies(record)
    geo_remote = geo["isRemote"] if geo is not None else None
    is_remote = geo_remote if geo_remote is not None else is_remote_role(location, description)

    document: dict[str, Any] = {
        "id": record.get("id"),
        "category": category.value,
        "title": record.get("title"),
        "description": description,
        "createdAt": _isoformat(created_at),
        "updatedAt": _isoformat(updated_at),
        "createdAtTimestamp": int(created_at.timestamp() * 1000),
        "updatedAtTimestamp": int(updated_at.timestamp() * 1000),
        "createdAtDate": created_at.date().isoformat(),
        "updatedAtDate": updated_at.date().isoformat(),
        "freshnessScore": compute_freshness_score(updated_at, now=current),
        "location": location,
        "geoCity": geo["city"] if geo else None,
        "geoRegion": geo["region"] if geo else None,
        "geoCountry": geo["country"] if geo else None,
        "geoLabel": (geo["label"] if geo else None) or location,
        "isRemote": is_remote,
        "taxonomies": taxonomy_info["list"],
        "taxonomySlugs": taxonomy_info["slugs"],
        "taxonomyLabels": taxonomy_info["labels"],
        "taxonomyTypes": taxonomy_info["types"],
    }
    if geo is not None:
        document["_geo"] = {"lat": geo["lat"], "lng": geo["lng"]}

    match category:
        case OpportunityCategory.JOB:
            employment_type = _first_present(record, "employment_type", "employmentType")
            document["employmentType"] = employment_type
            document["employmentCategory"] = normalize_employment_category(employment_type)
        case OpportunityCategory.GIG:
            budget = record.get("budget")
            duration = record.get("duration")
            budget_value = parse_budget_value(budget)
            document["budget"] = budget
            document["budgetValue"] = budget_value if budget_value is not None else 0
            document["budgetCurrency"] = extract_currency_code(budget)
            document["duration"] = duration
            document["durationCategory"] = determine_duration_category(duration)
        case OpportunityCategory.PROJECT:
            document["status"] = record.get("status") or "unknown"
            document["autoAssignEnabled"] = bool(_first_present(record, "auto_assign_enabled", "autoAssignEnabled"))
            document["autoAssignStatus"] = _first_present(record, "auto_assign_status", "autoAssignStatus")
            document["autoAssignLastQueueSize"] = _first_present(
                record, "auto_assign_last_queue_size", "autoAssignLastQueueSize"
            )
            last_run_at = _coerce_datetime(_first_present(record, "auto_assign_last_run_at", "autoAssignLastRunAt"))
            document["autoAssignLastRunAt"] = _isoformat(last_run_at) if last_run_at else None
            document["autoAssignSettings"] = _first_present(record, "auto_assign_settings", "autoAssignSettings")
        case OpportunityCategory.LAUNCHPAD:
            document["track"] = record.get("track")
        case OpportunityCategory.VOLUNTEERING:
            document["organization"] = record.get("organization")
        case _:
            assert_never(category)

    return document


def _first_present(mapping: Mapping[str, Any], *keys: str) -> Any:
    for key in keys:
        value = mapping.get(key)
        if value is not None:
            return value
    return None


def _coerce_coordinate(value: Any) -> float | None:
    if value is None or isinstance(value, bool):
        return None
    try:
        parsed = float(value.strip()) if isinstance(value, str) else float(value)
    except (TypeError, ValueError):
        return None
    return parsed if math.isfinite(parsed) else None


def _coerce_datetime(value: Any) -> datetime | None:
    if isinstance(value, datetime):
        dt = value
    elif isinstance(value, str):
        raw = value.strip()
        if not raw:
            return None
        try:
            dt = datetime.fromisoformat(raw.replace("Z", "+00:00"))
        except ValueError:
            return None
    else:
        return None
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def _isoformat(value: datetime) -> str:
    return value.astimezone(timezone.utc).isoformat(timespec="milliseconds").replace("+00:00", "Z")


def _as_list(value: Any) -> list[Any]:
    if isinstance(value, (list, tuple)):
        return list(value)
    return []


def _unique_text(values: Any) -> list[str]:
    items: list[str] = []
    seen: set[str] = set()
    for value in values:
        if not isinstance(value, str) or not value.strip():
            continue
        key = value.strip().lower()
        if key in seen:
            continue
        seen.add(key)
        items.append(value.strip())
    return items
