from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import assert_never

from discovery.services.errors import ValidationError


class OpportunityCategory(str, Enum):
    JOB = "job"
    GIG = "gig"
    PROJECT = "project"
    LAUNCHPAD = "launchpad"
    VOLUNTEERING = "volunteering"

    @classmethod
    def parse(cls, raw: object) -> OpportunityCategory:
        if isinstance(raw, OpportunityCategory):
            return raw
        if isinstance(raw, str):
            normalized = raw.strip().lower()
            for category in cls:
                if category.value == normalized:
                    return category
        raise ValidationError(f"unsupported opportunity category: {raw!r}")


ALL_CATEGORIES: tuple[OpportunityCategory, ...] = tuple(OpportunityCategory)

COMMON_FILTER_KEYS = frozenset({"location", "geoCountry", "geoRegion", "geoCity", "isRemote", "updatedWithin"})
TAXONOMY_FILTER_KEYS = frozenset({"taxonomySlugs", "taxonomyTypes"})
TAXONOMY_FACET_FIELDS = frozenset({"taxonomySlugs", "taxonomyTypes", "taxonomyLabels"})

_COMMON_FILTERABLE = (
    "isRemote",
    "location",
    "geoCountry",
    "geoRegion",
    "geoCity",
    "createdAtDate",
    "updatedAtDate",
    "updatedAtTimestamp",
    "_geo",
)
_TAXONOMY_FILTERABLE = ("taxonomySlugs", "taxonomyTypes")
_COMMON_SORTABLE = ("freshnessScore", "updatedAtTimestamp", "createdAtTimestamp", "title")


@dataclass(frozen=True, slots=True)
class CategoryDefinition:
    category: OpportunityCategory
    table_name: str
    index_name: str
    text_fields: tuple[str, ...]
    taxonomy_enabled: bool
    specific_filter_keys: frozenset[str]
    facet_fields: tuple[str, ...]
    searchable_attributes: tuple[str, ...]
    filterable_attributes: tuple[str, ...]
    sortable_attributes: tuple[str, ...]
    custom_ranking: tuple[str, ...]
    synonyms: dict[str, list[str]] = field(default_factory=dict)
    stop_words: tuple[str, ...] = ()

    @property
    def filter_keys(self) -> frozenset[str]:
        keys = COMMON_FILTER_KEYS | self.specific_filter_keys
        if self.taxonomy_enabled:
            keys = keys | TAXONOMY_FILTER_KEYS
        return keys


_JOB = CategoryDefinition(
    category=OpportunityCategory.JOB,
    table_name="jobs",
    index_name="opportunities_jobs",
    text_fields=("title", "description"),
    taxonomy_enabled=True,
    specific_filter_keys=frozenset({"employmentType", "employmentCategory"}),
    facet_fields=("employmentType", "employmentCategory", "isRemote", "geoCountry", "taxonomySlugs", "taxonomyTypes"),
    searchable_attributes=("title", "description", "location", "employmentType", "taxonomyLabels"),
    filterable_attributes=("employmentType", "employmentCategory", *_COMMON_FILTERABLE, *_TAXONOMY_FILTERABLE),
    sortable_attributes=_COMMON_SORTABLE,
    custom_ranking=("freshnessScore:desc", "updatedAtTimestamp:desc"),
    synonyms={
        "devops": ["dev ops", "site reliability", "sre"],
        "ux": ["user experience", "ui design", "interaction design"],
        "remote": ["distributed", "work from home"],
        "freelance": ["contract", "contractor", "independent"],
    },
    stop_words=("and", "the", "with", "for"),
)

_GIG = CategoryDefinition(
    category=OpportunityCategory.GIG,
    table_name="gigs",
    index_name="opportunities_gigs",
    text_fields=("title", "description"),
    taxonomy_enabled=True,
    specific_filter_keys=frozenset({"durationCategory", "budgetCurrency", "budgetValueMin", "budgetValueMax"}),
    facet_fields=("durationCategory", "budgetCurrency", "isRemote", "geoCountry", "taxonomySlugs", "taxonomyTypes"),
    searchable_attributes=("title", "description", "duration", "location", "taxonomyLabels"),
    filterable_attributes=("durationCategory", "budgetCurrency", "budgetValue", *_COMMON_FILTERABLE, *_TAXONOMY_FILTERABLE),
    sortable_attributes=(*_COMMON_SORTABLE, "budgetValue"),
    custom_ranking=("freshnessScore:desc", "budgetValue:desc", "updatedAtTimestamp:desc"),
    synonyms={
        "sprint": ["short project", "mini project"],
        "redesign": ["revamp", "refresh"],
        "freelance": ["independent", "contract"],
    },
    stop_words=("and", "or", "the"),
)

_PROJECT = CategoryDefinition(
    category=OpportunityCategory.PROJECT,
    table_name="projects",
    index_name="opportunities_projects",
    text_fields=("title", "description"),
    taxonomy_enabled=False,
    specific_filter_keys=frozenset({"status"}),
    facet_fields=("status", "isRemote", "geoCountry"),
    searchable_attributes=("title", "description", "status", "location"),
    filterable_attributes=("status", *_COMMON_FILTERABLE),
    sortable_attributes=(*_COMMON_SORTABLE, "status"),
    custom_ranking=("freshnessScore:desc", "updatedAtTimestamp:desc"),
    synonyms={
        "roadmap": ["plan", "programme"],
        "launch": ["go live", "rollout"],
    },
)

_LAUNCHPAD = CategoryDefinition(
    category=OpportunityCategory.LAUNCHPAD,
    table_name="experience_launchpads",
    index_name="opportunities_launchpads",
    text_fields=("title",),
    taxonomy_enabled=True,
    specific_filter_keys=frozenset({"track"}),
    facet_fields=("track", "isRemote", "geoCountry", "taxonomySlugs", "taxonomyTypes"),
    searchable_attributes=("title", "description", "track", "location", "taxonomyLabels"),
    filterable_attributes=("track", *_COMMON_FILTERABLE, *_TAXONOMY_FILTERABLE),
    sortable_attributes=_COMMON_SORTABLE,
    custom_ranking=("freshnessScore:desc", "updatedAtTimestamp:desc"),
    synonyms={
        "fellowship": ["cohort", "programme"],
        "mentor": ["coach", "advisor"],
        "launchpad": ["accelerator", "incubator"],
    },
)

_VOLUNTEERING = CategoryDefinition(
    category=OpportunityCategory.VOLUNTEERING,
    table_name="volunteering_roles",
    index_name="opportunities_volunteering",
    text_fields=("title",),
    taxonomy_enabled=True,
    specific_filter_keys=frozenset({"organization"}),
    facet_fields=("organization", "isRemote", "geoCountry", "taxonomySlugs", "taxonomyTypes"),
    searchable_attributes=("title", "description", "organization", "location", "taxonomyLabels"),
    filterable_attributes=("organization", *_COMMON_FILTERABLE, *_TAXONOMY_FILTERABLE),
    sortable_attributes=_COMMON_SORTABLE,
    custom_ranking=("freshnessScore:desc", "updatedAtTimestamp:desc"),
    synonyms={
        "volunteer": ["pro bono", "community"],
        "nonprofit": ["charity", "foundation"],
    },
    stop_words=("and", "the"),
)


def category_definition(category: OpportunityCategory) -> CategoryDefinition:
    match category:
        case OpportunityCategory.JOB:
            return _JOB
        case OpportunityCategory.GIG:
            return _GIG
        case OpportunityCategory.PROJECT:
            return _PROJECT
        case OpportunityCategory.LAUNCHPAD:
            return _LAUNCHPAD
        case OpportunityCategory.VOLUNTEERING:
            return _VOLUNTEERING
        case _:
            assert_never(category)
