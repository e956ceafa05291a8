"""
Unit tests for log correlation context.
"""

import pytest

from shared.logging import (
    add_correlation_context,
    add_trace_context,
    bind_log_context,
    clear_context,
    get_log_context,
    set_principal_context,
    set_request_id,
)


@pytest.fixture(autouse=True)
def clean_context():
    """Start and finish every test with an empty log context."""
    clear_context()
    yield
    clear_context()


class TestLogContext:
    """Test cases for correlation fields."""

    def test_request_and_principal_are_bound(self):
        """Test request and principal ids reach every event."""
        request_id = set_request_id("req-1")
        set_principal_context("owner-1")

        event = add_correlation_context(None, "info", {"event": "Entry created"})

        assert request_id == "req-1"
        assert event["request_id"] == "req-1"
        assert event["principal_id"] == "owner-1"

    def test_request_id_generated(self):
        """Test a request id is generated when none is supplied."""
        request_id = set_request_id()
        assert request_id
        assert get_log_context()["request_id"] == request_id

    def test_explicit_event_keys_win(self):
        """Test bound fields never overwrite keys on the event itself."""
        bind_log_context(tracker_id="t-1")
        event = add_correlation_context(None, "info", {"event": "x", "tracker_id": "t-2"})
        assert event["tracker_id"] == "t-2"

    def test_none_unbinds(self):
        """Test binding None removes a field."""
        bind_log_context(tracker_id="t-1")
        bind_log_context(tracker_id=None)
        assert "tracker_id" not in get_log_context()

    def test_clear_context(self):
        """Test clearing drops every bound field."""
        set_request_id("req-1")
        clear_context()
        assert add_correlation_context(None, "info", {"event": "x"}) == {"event": "x"}

    def test_no_trace_ids_without_span(self):
        """Test trace ids are only added inside a recording span."""
        event = add_trace_context(None, "info", {"event": "x"})
        assert "trace_id" not in event
