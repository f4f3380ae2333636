import sqlite3
from unittest.mock import MagicMock

from bauflex_diagnostics.collector import CollectorStore
from bauflex_diagnostics.db_monitor import QueryInterceptor
from bauflex_diagnostics.health import (
    CRITICAL,
    DEGRADED,
    HEALTHY,
    HealthAggregator,
    derive_status,
)
from bauflex_diagnostics.models import Category, LogLevel

from conftest import events_of_type


def make_health(diag_logger, ratio=0.1, online=True, **kwargs):
    return HealthAggregator(
        diag_logger,
        memory_ratio_probe=lambda: ratio,
        online_probe=lambda: online,
        **kwargs,
    )


def broken_db():
    db = MagicMock()
    db.query_raw.side_effect = sqlite3.OperationalError("unable to open database file")
    return db


class TestDeriveStatus:
    def test_all_pass(self):
        assert derive_status({"a": True, "b": True}) == HEALTHY

    def test_some_pass(self):
        assert derive_status({"a": True, "b": False}) == DEGRADED

    def test_none_pass(self):
        assert derive_status({"a": False, "b": False}) == CRITICAL


class TestEvaluate:
    def test_healthy(self, diag_logger):
        report = make_health(diag_logger).evaluate()
        assert report.status == HEALTHY
        assert report.checks == {"errorRate": True, "memory": True, "network": True}

    def test_high_memory_degrades(self, diag_logger):
        report = make_health(diag_logger, ratio=0.95).evaluate()
        assert report.status == DEGRADED
        assert report.checks["memory"] is False

    def test_everything_failing_is_critical(self, diag_logger):
        for _ in range(3):
            diag_logger.error(Category.API, "failure")
        report = make_health(diag_logger, ratio=0.95, online=False).evaluate()
        assert report.status == CRITICAL
        assert report.metrics["errorRate"] == 100.0

    def test_database_check_included_when_attached(self, diag_logger, db):
        queries = QueryInterceptor(diag_logger)
        queries.attach(db)
        report = make_health(diag_logger, db=db, query_interceptor=queries).evaluate()
        assert report.checks["database"] is True

    def test_disconnected_database_degrades(self, diag_logger):
        report = make_health(diag_logger, db=broken_db(),
                             query_interceptor=QueryInterceptor(diag_logger)).evaluate()
        assert report.checks["database"] is False
        assert report.status == DEGRADED

    def test_result_is_not_path_dependent(self, diag_logger):
        ratio = {"value": 0.95}
        health = HealthAggregator(diag_logger, memory_ratio_probe=lambda: ratio["value"],
                                  online_probe=lambda: True)
        assert health.evaluate().status == DEGRADED
        ratio["value"] = 0.1
        assert health.evaluate().status == HEALTHY
        assert health.last_report.status == HEALTHY


class TestScheduledJobs:
    def test_health_check_logs_when_degraded(self, diag_logger):
        make_health(diag_logger, online=False).run_health_check()
        checks = events_of_type(diag_logger, "health_check")
        assert len(checks) == 1
        assert checks[0].level is LogLevel.WARN
        assert checks[0].category is Category.LOGIC

    def test_health_check_logs_critical(self, diag_logger):
        diag_logger.error(Category.API, "failure")
        make_health(diag_logger, ratio=0.95, online=False).run_health_check()
        assert events_of_type(diag_logger, "health_check")[0].level is LogLevel.CRITICAL

    def test_healthy_check_is_silent(self, diag_logger):
        make_health(diag_logger).run_health_check()
        assert diag_logger.get_events() == []

    def test_memory_warning(self, diag_logger):
        make_health(diag_logger, ratio=0.85).sample_memory()
        warnings = events_of_type(diag_logger, "memory_warning")
        assert len(warnings) == 1
        assert warnings[0].level is LogLevel.CRITICAL
        assert warnings[0].category is Category.MEMORY
        assert warnings[0].details["usagePercent"] == 85.0

    def test_network_transitions(self, diag_logger):
        online = {"value": True}
        health = HealthAggregator(diag_logger, memory_ratio_probe=lambda: 0.1,
                                  online_probe=lambda: online["value"])
        health.sample_memory()
        assert diag_logger.get_events() == []

        online["value"] = False
        health.sample_memory()
        online["value"] = True
        health.sample_memory()

        offline = events_of_type(diag_logger, "network_offline")
        restored = events_of_type(diag_logger, "network_online")
        assert len(offline) == 1 and offline[0].level is LogLevel.ERROR
        assert len(restored) == 1 and restored[0].level is LogLevel.INFO

    def test_failing_probe_is_tolerated(self, diag_logger):
        def broken():
            raise OSError("no /proc")

        health = HealthAggregator(diag_logger, memory_ratio_probe=broken, online_probe=lambda: True)
        assert health.evaluate().checks["memory"] is True

    def test_start_and_stop(self, diag_logger):
        health = make_health(diag_logger, interval_seconds=3600, memory_interval_seconds=3600)
        health.start()
        try:
            assert health.running is True
            health.start()
        finally:
            health.stop()
        assert health.running is False


class TestServerHealth:
    def test_healthy_document(self, diag_logger, db):
        queries = QueryInterceptor(diag_logger)
        queries.attach(db)
        health = make_health(diag_logger, db=db, query_interceptor=queries)
        document, status = health.server_health(CollectorStore())

        assert status == 200
        assert document["status"] == HEALTHY
        assert document["database"]["connected"] is True
        assert document["logs"] == {"total": 0, "errors": 0}
        assert set(document["backend"]) == {"uptime", "memory", "cpu"}

    def test_many_error_logs_degrade(self, diag_logger):
        collector = CollectorStore()
        for i in range(21):
            collector.add({"id": f"e{i}", "level": "ERROR", "category": "API", "message": "x"})
        document, status = make_health(diag_logger).server_health(collector)
        assert status == 200
        assert document["status"] == DEGRADED
        assert document["database"] is None

    def test_twenty_error_logs_stay_healthy(self, diag_logger):
        collector = CollectorStore()
        for i in range(20):
            collector.add({"id": f"e{i}", "level": "ERROR", "category": "API", "message": "x"})
        document, _ = make_health(diag_logger).server_health(collector)
        assert document["status"] == HEALTHY

    def test_disconnected_database_is_critical(self, diag_logger):
        health = make_health(diag_logger, db=broken_db(),
                             query_interceptor=QueryInterceptor(diag_logger))
        document, status = health.server_health(CollectorStore())
        assert status == 503
        assert document["status"] == CRITICAL
