"""Tri-state health evaluation.

The verdict is recomputed from scratch on every evaluation: all checks
passing is ``healthy``, some passing is ``degraded``, none passing is
``critical``.
"""

import logging
from dataclasses import dataclass, field

from apscheduler.schedulers.background import BackgroundScheduler

from bauflex_diagnostics import runtime
from bauflex_diagnostics.models import Category, LogLevel, utc_now_iso

logger = logging.getLogger(__name__)

HEALTHY = "healthy"
DEGRADED = "degraded"
CRITICAL = "critical"

SERVER_SLOW_QUERY_LIMIT = 10
SERVER_ERROR_LOG_LIMIT = 20


@dataclass(frozen=True)
class HealthReport:
    status: str
    checks: dict
    metrics: dict
    timestamp: str = field(default_factory=utc_now_iso)

    def to_dict(self):
        return {
            "status": self.status,
            "checks": dict(self.checks),
            "metrics": dict(self.metrics),
            "timestamp": self.timestamp,
        }


def derive_status(checks):
    values = list(checks.values())
    if all(values):
        return HEALTHY
    if any(values):
        return DEGRADED
    return CRITICAL


class HealthAggregator:
    def __init__(
        self,
        diagnostic_logger,
        db=None,
        query_interceptor=None,
        memory_ratio_probe=runtime.memory_ratio,
        online_probe=runtime.is_online,
        memory_ratio_limit=0.9,
        memory_warning_ratio=0.8,
        max_error_rate=50.0,
        interval_seconds=60,
        memory_interval_seconds=30,
    ):
        self._logger = diagnostic_logger
        self._db = db
        self._query_interceptor = query_interceptor
        self._memory_ratio_probe = memory_ratio_probe
        self._online_probe = online_probe
        self._memory_ratio_limit = memory_ratio_limit
        self._memory_warning_ratio = memory_warning_ratio
        self._max_error_rate = max_error_rate
        self._interval_seconds = interval_seconds
        self._memory_interval_seconds = memory_interval_seconds
        self._last_online = None
        self._last_report = None
        self._scheduler = None

    @classmethod
    def from_config(cls, diagnostic_logger, config, db=None, query_interceptor=None):
        health = config["health"]
        return cls(
            diagnostic_logger,
            db=db,
            query_interceptor=query_interceptor,
            memory_ratio_limit=health["memory_ratio_limit"],
            memory_warning_ratio=health["memory_warning_ratio"],
            max_error_rate=health["max_error_rate"],
            interval_seconds=health["interval_seconds"],
            memory_interval_seconds=health["memory_interval_seconds"],
        )

    @property
    def last_report(self):
        return self._last_report

    def evaluate(self):
        error_rate = self._logger.error_rate()
        memory_ratio = self._probe(self._memory_ratio_probe, 0.0)
        checks = {
            "errorRate": error_rate < self._max_error_rate,
            "memory": memory_ratio < self._memory_ratio_limit,
            "network": bool(self._probe(self._online_probe, False)),
        }
        if self._db is not None and self._query_interceptor is not None:
            checks["database"] = self._query_interceptor.check_health(self._db)["connected"]

        report = HealthReport(
            status=derive_status(checks),
            checks=checks,
            metrics={
                "errorRate": round(error_rate, 2),
                "memoryUsage": round(self._probe(runtime.memory_usage_mb, 0.0), 2),
                "memoryRatio": round(memory_ratio, 4),
            },
        )
        self._last_report = report
        return report

    def run_health_check(self):
        """Evaluate and log a LOGIC event when the system is not healthy."""
        report = self.evaluate()
        if report.status != HEALTHY:
            self._logger.log(
                LogLevel.CRITICAL if report.status == CRITICAL else LogLevel.WARN,
                Category.LOGIC,
                f"System health check: {report.status}",
                report.to_dict(),
                {"type": "health_check"},
            )
        return report

    def sample_memory(self):
        """Flag high memory use and report network connectivity changes."""
        ratio = self._probe(self._memory_ratio_probe, 0.0)
        if ratio > self._memory_warning_ratio:
            self._logger.log(
                LogLevel.CRITICAL,
                Category.MEMORY,
                "High memory usage detected",
                {
                    "usedMemoryMB": round(self._probe(runtime.memory_usage_mb, 0.0), 2),
                    "usagePercent": round(ratio * 100, 2),
                },
                {"type": "memory_warning"},
            )

        online = bool(self._probe(self._online_probe, False))
        if self._last_online is not None and online != self._last_online:
            if online:
                self._logger.log(LogLevel.INFO, Category.NETWORK, "Network connection restored",
                                 context={"type": "network_online"})
            else:
                self._logger.log(LogLevel.ERROR, Category.NETWORK, "Network connection lost",
                                 context={"type": "network_offline"})
        self._last_online = online

    def start(self):
        if self._scheduler is not None:
            return
        self._scheduler = BackgroundScheduler()
        self._scheduler.add_job(self.run_health_check, "interval",
                                seconds=self._interval_seconds, id="health_check")
        self._scheduler.add_job(self.sample_memory, "interval",
                                seconds=self._memory_interval_seconds, id="memory_sample")
        self._scheduler.start()
        logger.info("Health checks scheduled every %ss, memory sampling every %ss",
                    self._interval_seconds, self._memory_interval_seconds)

    def stop(self):
        if self._scheduler is None:
            return
        self._scheduler.shutdown(wait=False)
        self._scheduler = None

    @property
    def running(self):
        return self._scheduler is not None

    def server_health(self, collector):
        """Build the server health document and its HTTP status code."""
        database = None
        if self._db is not None and self._query_interceptor is not None:
            database = self._query_interceptor.check_health(self._db)
        error_logs = collector.error_count()

        status = HEALTHY
        if database is not None and not database["connected"]:
            status = CRITICAL
        elif (database is not None and database["slowQueries"] > SERVER_SLOW_QUERY_LIMIT) \
                or error_logs > SERVER_ERROR_LOG_LIMIT:
            status = DEGRADED

        document = {
            "status": status,
            "timestamp": utc_now_iso(),
            "backend": {
                "uptime": runtime.uptime_seconds(),
                "memory": runtime.memory_report(),
                "cpu": runtime.cpu_report(),
            },
            "database": database,
            "logs": {"total": len(collector), "errors": error_logs},
        }
        return document, 503 if status == CRITICAL else 200

    @staticmethod
    def _probe(probe, fallback):
        try:
            return probe()
        except Exception as exc:
            logger.debug("Runtime probe %r failed: %s", probe, exc)
            return fallback
