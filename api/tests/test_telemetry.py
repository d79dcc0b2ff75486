from __future__ import annotations

import pytest
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import SimpleSpanProcessor
from opentelemetry.sdk.trace.export.in_memory_span_exporter import InMemorySpanExporter
from opentelemetry.trace import StatusCode

from discovery.core import telemetry
from discovery.core.categories import OpportunityCategory


def test_parse_otlp_headers_skips_malformed_pairs() -> None:
    assert telemetry.parse_otlp_headers(None) == {}
    assert telemetry.parse_otlp_headers("authorization=Bearer abc, bad, =x,tenant = ops") == {
        "authorization": "Bearer abc",
        "tenant": "ops",
    }


def test_search_span_tags_category_and_marks_failures(monkeypatch: pytest.MonkeyPatch) -> None:
    exporter = InMemorySpanExporter()
    provider = TracerProvider()
    provider.add_span_processor(SimpleSpanProcessor(exporter))
    monkeypatch.setattr(telemetry.trace, "get_tracer", lambda name: provider.get_tracer(name))

    with telemetry.search_span("discovery.search", OpportunityCategory.GIG):
        pass
    with pytest.raises(RuntimeError):
        with telemetry.search_span("discovery.fallback_search", OpportunityCategory.JOB):
            raise RuntimeError("store down")

    ok, failed = exporter.get_finished_spans()
    assert ok.attributes["discovery.category"] == "gig"
    assert ok.status.status_code is StatusCode.UNSET
    assert failed.name == "discovery.fallback_search"
    assert failed.status.status_code is StatusCode.ERROR
    assert failed.events[0].name == "exception"
