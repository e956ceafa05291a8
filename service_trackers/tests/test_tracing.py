"""
Unit tests for tracing spans around permission resolution.
"""

from unittest.mock import patch

import pytest
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import SimpleSpanProcessor
from opentelemetry.sdk.trace.export.in_memory_span_exporter import InMemorySpanExporter
from opentelemetry.trace import StatusCode

from shared.errors import NotFoundError
from shared.tracing import trace_operation


@pytest.fixture
def exporter():
    """In-memory span exporter wired into a private tracer provider."""
    exporter = InMemorySpanExporter()
    provider = TracerProvider()
    provider.add_span_processor(SimpleSpanProcessor(exporter))
    with patch("shared.tracing.get_tracer", return_value=provider.get_tracer("test")):
        yield exporter


class TestTracing:
    """Test cases for operation spans."""

    def test_trace_operation_attributes(self, exporter):
        """Test attributes are recorded and None values skipped."""
        with trace_operation("insights.compute", tracker_count=2, principal_id=None):
            pass

        span = exporter.get_finished_spans()[0]
        assert span.name == "insights.compute"
        assert span.attributes["tracker_count"] == 2
        assert "principal_id" not in span.attributes

    def test_trace_operation_error(self, exporter):
        """Test failures mark the span as an error and propagate."""
        with pytest.raises(NotFoundError):
            with trace_operation("permissions.resolve"):
                raise NotFoundError("Tracker not found")

        span = exporter.get_finished_spans()[0]
        assert span.status.status_code == StatusCode.ERROR
        assert span.attributes["error.type"] == "NotFoundError"

    @pytest.mark.asyncio
    async def test_resolution_span(self, exporter, resolver, tracker_service, factory):
        """Test each tracker resolution records its access source."""
        tracker = await tracker_service.create_tracker_from_schema(
            "owner-1", "Sleep", factory.sleep_tracker_schema()
        )
        exporter.clear()

        await resolver.resolve(tracker.id, "owner-1")

        spans = [s for s in exporter.get_finished_spans() if s.name == "permissions.resolve"]
        assert len(spans) == 1
        assert spans[0].attributes["permissions.access_source"] == "ownership"
        assert spans[0].attributes["entity_id"] == tracker.id
