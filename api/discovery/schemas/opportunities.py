from datetime import datetime
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

SearchSource = Literal["index", "database"]
GlobalSearchMode = Literal["search", "snapshot"]


class _CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class SearchMetricsOut(_CamelModel):
    source: SearchSource
    processing_time_ms: int | None = None


class ViewportOut(_CamelModel):
    north: float
    south: float
    east: float
    west: float


class OpportunityListOut(_CamelModel):
    category: str
    query: str
    items: list[dict[str, Any]] = Field(default_factory=list)
    total: int
    page: int
    page_size: int
    total_pages: int
    facets: dict[str, dict[str, int]] | None = None
    applied_filters: dict[str, Any] = Field(default_factory=dict)
    viewport: ViewportOut | None = None
    metrics: SearchMetricsOut


class CrossCategoryOut(_CamelModel):
    query: str
    limit: int
    mode: GlobalSearchMode = "search"
    results: dict[str, list[dict[str, Any]]] = Field(default_factory=dict)
    totals: dict[str, int] = Field(default_factory=dict)
    sources: dict[str, SearchSource] = Field(default_factory=dict)
    errors: dict[str, str] = Field(default_factory=dict)
    cached: bool = False
    generated_at: datetime | None = None
