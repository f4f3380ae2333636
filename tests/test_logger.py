import json
from unittest.mock import MagicMock

import pytest

from bauflex_diagnostics.logger import DiagnosticLogger
from bauflex_diagnostics.models import Category, LogLevel


class TestLogging:
    def test_log_returns_event(self, diag_logger):
        event = diag_logger.log(LogLevel.INFO, Category.UI, "Page opened", {"page": "requests"})
        assert event.level is LogLevel.INFO
        assert event.category is Category.UI
        assert event.session_id == diag_logger.session_id
        assert event.context == {"type": "general"}
        assert event.meta["memoryUsage"] == 42.0
        assert event.id.startswith("event-")

    def test_details_are_detached_from_caller(self, diag_logger):
        details = {"request": {"id": 7, "status": "Новая"}}
        event = diag_logger.error(Category.LOGIC, "Save failed", details)
        details["request"]["status"] = "Выполнена"
        details["extra"] = True
        assert event.details == {"request": {"id": 7, "status": "Новая"}}
        assert diag_logger.get_events()[0].details == event.details

    def test_accepts_string_level_and_category(self, diag_logger):
        event = diag_logger.log("warning", "api", "Slow")
        assert event.level is LogLevel.WARN
        assert event.category is Category.API

    def test_unknown_level_and_category_fall_back(self, diag_logger):
        event = diag_logger.log("VERBOSE", "MISC", "Something")
        assert event.level is LogLevel.INFO
        assert event.category is Category.LOGIC

    def test_capacity_evicts_oldest(self):
        diag_logger = DiagnosticLogger(memory_probe=lambda: 1.0)
        for i in range(1001):
            diag_logger.info(Category.LOGIC, f"event {i}")
        events = diag_logger.get_events()
        assert len(events) == 1000
        assert events[0].message == "event 1"
        assert events[-1].message == "event 1000"

    def test_counts_survive_eviction(self):
        diag_logger = DiagnosticLogger(max_events=10, memory_probe=lambda: 1.0)
        for _ in range(10):
            diag_logger.info(Category.LOGIC, "ok")
        for _ in range(10):
            diag_logger.error(Category.LOGIC, "bad")

        assert all(e.level is LogLevel.ERROR for e in diag_logger.get_events())
        assert diag_logger.error_rate() == 50.0
        stats = diag_logger.get_statistics()
        assert stats["totalEvents"] == 20
        assert stats["storedEvents"] == 10
        assert stats["errorCounts"]["INFO"] == 10
        assert stats["errorCounts"]["ERROR"] == 10

    def test_error_rate_with_no_events(self, diag_logger):
        assert diag_logger.error_rate() == 0.0

    def test_memory_probe_failure_is_ignored(self):
        def broken():
            raise RuntimeError("no psutil")

        diag_logger = DiagnosticLogger(memory_probe=broken)
        event = diag_logger.info(Category.LOGIC, "still works")
        assert "memoryUsage" not in event.meta
        assert diag_logger.get_statistics()["memoryUsage"] == 0.0


class TestFiltering:
    def test_filter_by_level_category_and_limit(self, diag_logger):
        diag_logger.info(Category.UI, "a")
        diag_logger.error(Category.API, "b")
        diag_logger.error(Category.UI, "c")
        diag_logger.error(Category.UI, "d")

        assert [e.message for e in diag_logger.get_events(level=LogLevel.ERROR)] == ["b", "c", "d"]
        assert [e.message for e in diag_logger.get_events(category="UI")] == ["a", "c", "d"]
        assert [e.message for e in diag_logger.get_events(level="ERROR", category="UI", limit=1)] == ["d"]


class TestThresholds:
    def test_eleven_warnings_notify_twice(self, diag_logger):
        handler = MagicMock()
        diag_logger.add_threshold_handler(handler)
        for _ in range(11):
            diag_logger.warn(Category.PERFORMANCE, "slow")

        assert handler.handle.call_count == 2
        notice = handler.handle.call_args[0][0]
        assert notice["level"] == "WARN"
        assert notice["count"] == 11
        assert notice["threshold"] == 10

    def test_below_threshold_does_not_notify(self, diag_logger):
        handler = MagicMock()
        diag_logger.add_threshold_handler(handler)
        for _ in range(9):
            diag_logger.warn(Category.PERFORMANCE, "slow")
        handler.handle.assert_not_called()

    def test_single_fatal_notifies(self, diag_logger):
        handler = MagicMock()
        diag_logger.add_threshold_handler(handler)
        diag_logger.fatal(Category.LOGIC, "down")
        handler.handle.assert_called_once()

    def test_failing_handler_is_isolated(self, diag_logger):
        broken = MagicMock()
        broken.handle.side_effect = RuntimeError("boom")
        healthy = MagicMock()
        diag_logger.add_threshold_handler(broken)
        diag_logger.add_threshold_handler(healthy)
        diag_logger.fatal(Category.LOGIC, "down")
        healthy.handle.assert_called_once()

    def test_custom_thresholds(self):
        handler = MagicMock()
        diag_logger = DiagnosticLogger(thresholds={"ERROR": 2}, memory_probe=lambda: 1.0)
        diag_logger.add_threshold_handler(handler)
        diag_logger.error(Category.API, "one")
        diag_logger.error(Category.API, "two")
        diag_logger.fatal(Category.API, "no threshold configured")
        assert handler.handle.call_count == 1


class TestForwarding:
    def test_only_critical_and_fatal_are_forwarded(self, diag_logger, forwarder):
        for level in LogLevel:
            diag_logger.log(level, Category.LOGIC, level.value)

        sent = [call.args[0].level for call in forwarder.send.call_args_list]
        assert sent == [LogLevel.CRITICAL, LogLevel.FATAL]

    def test_forwarder_failure_does_not_raise(self, diag_logger, forwarder):
        forwarder.send.side_effect = ConnectionError("collector down")
        event = diag_logger.critical(Category.API, "still recorded")
        assert diag_logger.get_events()[-1] is event

    def test_sink_failure_does_not_raise(self):
        sink = MagicMock()
        sink.record.side_effect = OSError("disk full")
        diag_logger = DiagnosticLogger(sink=sink, memory_probe=lambda: 1.0)
        diag_logger.info(Category.LOGIC, "recorded anyway")
        assert len(diag_logger.get_events()) == 1
        sink.record.assert_called_once()


class TestHelpers:
    def test_track_action(self, diag_logger):
        event = diag_logger.track_action("create_request", {"type": "siz"})
        assert event.message == "User action: create_request"
        assert event.context["type"] == "user_action"
        assert event.category is Category.UI

    def test_track_error_includes_stack(self, diag_logger):
        try:
            raise KeyError("missing")
        except KeyError as exc:
            event = diag_logger.track_error(exc, component="RequestForm")
        assert event.level is LogLevel.ERROR
        assert event.details["component"] == "RequestForm"
        assert "KeyError" in event.stack_trace

    def test_guard_logs_and_reraises(self, diag_logger):
        with pytest.raises(ValueError):
            with diag_logger.guard("RequestsTable"):
                raise ValueError("render failed")

        event = diag_logger.get_events()[-1]
        assert event.level is LogLevel.CRITICAL
        assert event.category is Category.UI
        assert event.context["type"] == "error_boundary"
        assert event.message == "Error boundary caught error in RequestsTable"

    def test_guard_as_decorator(self, diag_logger):
        @diag_logger.guard()
        def render():
            raise RuntimeError("nope")

        with pytest.raises(RuntimeError):
            render()
        assert diag_logger.get_events()[-1].message == "Error boundary caught error in Unknown Component"


class TestExportAndClear:
    def test_export_logs(self, diag_logger):
        diag_logger.info(Category.UI, "a")
        diag_logger.error(Category.API, "b", {"status": 500})
        exported = json.loads(diag_logger.export_logs())
        assert exported["sessionId"] == diag_logger.session_id
        assert exported["summary"]["total"] == 2
        assert exported["events"][1]["details"] == {"status": 500}
        assert exported["events"][1]["sessionId"] == diag_logger.session_id

    def test_circular_details_do_not_break_export(self, diag_logger):
        details = {"name": "loop"}
        details["self"] = details
        event = diag_logger.error(Category.LOGIC, "Circular payload", details)
        assert isinstance(event.details, str)
        diag_logger.info(Category.UI, "after")

        exported = json.loads(diag_logger.export_logs())
        assert exported["summary"]["total"] == 2
        assert "loop" in exported["events"][0]["details"]

    def test_clear_keeps_session(self, diag_logger):
        session_id = diag_logger.session_id
        diag_logger.error(Category.API, "b")
        diag_logger.clear_logs()
        assert diag_logger.get_events() == []
        assert diag_logger.get_statistics()["totalEvents"] == 0
        assert diag_logger.error_rate() == 0.0
        assert diag_logger.session_id == session_id

    def test_statistics_shape(self, diag_logger):
        stats = diag_logger.get_statistics()
        assert set(stats) == {"sessionId", "totalEvents", "storedEvents", "errorCounts",
                              "errorRate", "memoryUsage", "isOnline"}
        assert stats["isOnline"] is True
        assert stats["memoryUsage"] == 42.0
