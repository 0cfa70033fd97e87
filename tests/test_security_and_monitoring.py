"""
Tests for security event logging, log sanitization and query monitoring.
"""

import json

import pytest

from inbox_matcher.database.monitoring import check_health, get_db_metrics, query_timer, reset_metrics
from inbox_matcher.security_logger import SecurityLogger
from inbox_matcher.text_utils import extract_domain, sanitize_for_logging


class TestSanitizeForLogging:

    def test_strips_newlines(self):
        """Injected newlines cannot forge a second log line."""
        assert sanitize_for_logging("tenant-a\nERROR fake entry") == "tenant-a ERROR fake entry"

    def test_control_characters(self):
        assert sanitize_for_logging("a\x00b\x1bc") == "a b c"

    def test_truncates(self):
        assert len(sanitize_for_logging("x" * 600)) == 500

    def test_empty(self):
        assert sanitize_for_logging(None) == ""


class TestExtractDomain:

    @pytest.mark.parametrize("website,expected", [
        ("https://www.acme.example/billing", "acme.example"),
        ("shop.acme.example", "shop.acme.example"),
        ("  ", None),
        (None, None),
    ])
    def test_extract(self, website, expected):
        assert extract_domain(website) == expected


class TestSecurityLogger:

    def test_tenant_mismatch_event(self, caplog):
        logger = SecurityLogger(enable_file=False)
        with caplog.at_level("ERROR", logger="security"):
            event = logger.log_tenant_mismatch(
                caller_tenant_id="tenant-b",
                owner_tenant_id="tenant-a",
                actor_id="user\n-1",
                resource_type="document",
                resource_id="d-1",
                action="confirm",
            )

        assert event.event_type == "TENANT_MISMATCH"
        assert event.actor_id == "user -1"
        assert event.additional_context["owner_tenant_id"] == "tenant-a"
        assert event.additional_context["blocked"] is True
        payload = json.loads(caplog.records[-1].getMessage())
        assert payload["tenant_id"] == "tenant-b"
        assert payload["source"] == "reconciliation.confirm"

    def test_request_context_attached(self):
        logger = SecurityLogger(enable_file=False)
        logger.set_request_context(request_id="req-1", source_ip="10.0.0.1")
        event = logger.log_api_key_rejected("invalid", "/api/v1/documents")
        assert event.request_id == "req-1"
        assert event.source_ip == "10.0.0.1"

        logger.clear_request_context()
        assert logger.log_api_key_rejected("missing").request_id == ""


class TestMonitoring:

    def setup_method(self):
        reset_metrics()

    def test_query_timer_records(self):
        with query_timer("unit_test_op"):
            pass
        stats = get_db_metrics()["operations"]
        assert stats["unit_test_op"]["count"] == 1
        assert stats["unit_test_op"]["errors"] == 0

    def test_query_timer_counts_errors(self):
        with pytest.raises(ValueError):
            with query_timer("failing_op"):
                raise ValueError("boom")
        assert get_db_metrics()["operations"]["failing_op"]["errors"] == 1

    def test_check_health(self, db_provider):
        health = check_health(db_provider.engine, db_provider.session_factory)
        assert health.healthy
        assert health.to_dict()["latency_ms"] >= 0
