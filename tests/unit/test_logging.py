"""Unit tests for SpecForge logging and observability.

This module tests the JSON formatter, performance monitoring, the
operation context manager and the domain-event hooks.
"""

import json
import logging
import sys
from unittest.mock import MagicMock, patch

import pytest

from specforge.specforge_logging import (
    JsonFormatter,
    ObservabilityHooks,
    PerformanceMonitor,
    log_alignment_report,
    log_drift_check,
    log_error_with_context,
    log_operation,
    log_performance,
    observability_hooks,
    performance_monitor,
    setup_logging,
)


def make_record(level=logging.INFO, msg="Test message", exc_info=None):
    return logging.getLogger("test").makeRecord("test", level, __file__, 1, msg, (), exc_info)


@pytest.fixture
def clean_specforge_logger():
    """Restore the package logger after setup_logging attached handlers."""
    yield
    logger = logging.getLogger("specforge")
    for handler in list(logger.handlers):
        handler.close()
    logger.handlers.clear()


class TestJsonFormatter:
    """Test cases for JsonFormatter."""

    def test_basic_fields(self):
        """Test basic JSON formatting."""
        data = json.loads(JsonFormatter().format(make_record()))

        assert data["level"] == "INFO"
        assert data["logger"] == "test"
        assert data["message"] == "Test message"
        assert {"timestamp", "module", "function", "line"} <= set(data)

    def test_exception(self):
        """Test JSON formatting with exception info."""
        try:
            raise ValueError("Test exception")
        except ValueError:
            record = make_record(logging.ERROR, exc_info=sys.exc_info())

        data = json.loads(JsonFormatter().format(record))

        assert data["level"] == "ERROR"
        assert "ValueError" in data["exception"]

    def test_extra_fields(self):
        """Test that extra fields are merged into the entry."""
        record = make_record()
        record.extra_fields = {"project_id": "p1"}

        data = json.loads(JsonFormatter().format(record))

        assert data["project_id"] == "p1"


class TestPerformanceMonitor:
    """Test cases for PerformanceMonitor."""

    def test_record_and_filter(self):
        """Test recording and reading metrics."""
        monitor = PerformanceMonitor()
        monitor.record_metric("drift", 1, {"tag": "a"})
        monitor.record_metric("drift", 2)
        monitor.record_metric("alignment", 3)

        assert [m["value"] for m in monitor.get_metrics("drift")["drift"]] == [1, 2]
        assert monitor.get_metrics("drift")["drift"][0]["tags"] == {"tag": "a"}
        assert set(monitor.get_metrics()) == {"drift", "alignment"}
        assert monitor.get_metrics("missing") == {"missing": []}

        monitor.clear()
        assert monitor.get_metrics() == {}

    def test_samples_are_capped_per_name(self):
        """Test that only the newest samples are kept for each metric."""
        monitor = PerformanceMonitor(max_samples=3)
        for value in range(10):
            monitor.record_metric("drift", value)
        monitor.record_metric("alignment", 99)

        assert [m["value"] for m in monitor.get_metrics("drift")["drift"]] == [7, 8, 9]
        assert len(monitor.get_metrics()["alignment"]) == 1


class TestLogPerformance:
    """Test cases for the log_performance decorator."""

    @pytest.fixture(autouse=True)
    def reset_monitor(self):
        performance_monitor.clear()
        yield
        performance_monitor.clear()

    def test_success(self):
        """Test that a successful call records a success metric."""
        @log_performance("compare")
        def compare():
            return "ok"

        assert compare() == "ok"
        metric = performance_monitor.get_metrics("compare_duration")["compare_duration"][0]
        assert metric["tags"] == {"status": "success"}
        assert metric["value"] >= 0

    def test_failure(self):
        """Test that a failing call records the error type and re-raises."""
        @log_performance("compare")
        def compare():
            raise ValueError("bad schema")

        with pytest.raises(ValueError):
            compare()

        metric = performance_monitor.get_metrics("compare_duration")["compare_duration"][0]
        assert metric["tags"] == {"status": "error", "error_type": "ValueError"}


class TestLogOperation:
    """Test cases for the log_operation context manager."""

    def test_success(self):
        """Test successful operation logging."""
        with patch("specforge.specforge_logging.std_logging.getLogger") as mock_get_logger:
            logger = MagicMock()
            mock_get_logger.return_value = logger

            with log_operation("export", roadmap_item_id="r1"):
                pass

        assert logger.info.call_count == 2
        assert not logger.error.called
        completed = logger.info.call_args[1]["extra"]["extra_fields"]
        assert completed["status"] == "completed"
        assert completed["roadmap_item_id"] == "r1"

    def test_failure(self):
        """Test that errors are logged and re-raised."""
        with patch("specforge.specforge_logging.std_logging.getLogger") as mock_get_logger:
            logger = MagicMock()
            mock_get_logger.return_value = logger

            with pytest.raises(ValueError):
                with log_operation("export"):
                    raise ValueError("Test error")

        fields = logger.error.call_args[1]["extra"]["extra_fields"]
        assert fields["status"] == "failed"
        assert fields["error_message"] == "Test error"


class TestObservabilityHooks:
    """Test cases for ObservabilityHooks."""

    def test_register_and_trigger(self):
        """Test that hooks receive the event data without the event type."""
        hooks = ObservabilityHooks()
        received = []
        hooks.register_hook("drift_checked", lambda **data: received.append(data))

        hooks.log_domain_event("drift_checked", entity_id="/paths", blocked=True)

        assert received[0]["entity_id"] == "/paths"
        assert received[0]["blocked"] is True
        assert "event_type" not in received[0]

    def test_failing_hook_is_contained(self):
        """Test that hook failures don't crash the caller."""
        hooks = ObservabilityHooks()
        later = []

        def failing(**data):
            raise ValueError("Hook failed")

        hooks.register_hook("evt", failing)
        hooks.register_hook("evt", lambda **data: later.append(data))

        hooks.trigger_hooks("evt", param="value")

        assert later == [{"param": "value"}]

    def test_unregister(self):
        """Test removing a hook."""
        hooks = ObservabilityHooks()
        calls = []

        def callback(**data):
            calls.append(data)

        hooks.register_hook("evt", callback)
        hooks.unregister_hook("evt", callback)

        hooks.trigger_hooks("evt")

        assert calls == []


class TestConvenienceFunctions:
    """Test cases for the engine logging helpers."""

    def test_log_drift_check(self):
        """Test the drift event fields."""
        with patch("specforge.specforge_logging.observability_hooks") as mock_hooks:
            log_drift_check("/components/schemas/Order", 1, 0, True)

        args, kwargs = mock_hooks.log_domain_event.call_args
        assert args == ("drift_checked",)
        assert kwargs == {"entity_id": "/components/schemas/Order", "critical": 1, "breaking": 0,
                          "blocked": True}

    def test_log_alignment_report(self):
        """Test the alignment event fields."""
        with patch("specforge.specforge_logging.observability_hooks") as mock_hooks:
            log_alignment_report("p1", 70, 1, trigger="dependency")

        kwargs = mock_hooks.log_domain_event.call_args[1]
        assert kwargs["score"] == 70
        assert kwargs["trigger"] == "dependency"

    def test_log_error_with_context(self):
        """Test the structured error entry."""
        with patch("specforge.specforge_logging.std_logging.getLogger") as mock_get_logger:
            log_error_with_context(ValueError("Test error"), {"operation": "alignment"}, project_id="p1")

        args, kwargs = mock_get_logger.return_value.error.call_args
        assert args[0] == "Error in alignment: Test error"
        fields = kwargs["extra"]["extra_fields"]
        assert fields["error_type"] == "ValueError"
        assert fields["context"] == {"operation": "alignment"}
        assert fields["project_id"] == "p1"


class TestSetupLogging:
    """Integration tests for the logging setup."""

    def test_file_handler_writes_json(self, tmp_path, clean_specforge_logger):
        """Test that the log file holds one JSON object per line."""
        log_file = tmp_path / "specforge.log"
        setup_logging(log_level=logging.DEBUG, log_file=log_file)

        logging.getLogger("specforge.test").info("Test message")
        observability_hooks.log_domain_event("feature_score_updated", entity_id="r1", overall_score=54)
        for handler in logging.getLogger("specforge").handlers:
            handler.flush()

        lines = log_file.read_text().strip().split("\n")
        entries = [json.loads(line) for line in lines]
        assert any(e["message"] == "Test message" for e in entries)
        scored = [e for e in entries if e.get("event_type") == "feature_score_updated"]
        assert scored[0]["overall_score"] == 54

    def test_setup_replaces_handlers(self, clean_specforge_logger):
        """Test that repeated setup does not stack handlers."""
        setup_logging()
        setup_logging()

        assert len(logging.getLogger("specforge").handlers) == 1
