"""Persistence-layer monitoring: a Database middleware that times every
operation and flags slow queries, failures and likely N+1 access patterns,
plus on-demand health and data-integrity checks against the store.
"""

import json
import logging
import re
import threading
import time
from collections import Counter, defaultdict
from datetime import datetime, timezone

from bauflex_diagnostics.event_store import EventStore
from bauflex_diagnostics.models import (
    Category,
    IntegrityIssue,
    LogLevel,
    QueryRecord,
    utc_now_iso,
)

logger = logging.getLogger(__name__)

EMAIL_PATTERN = re.compile(r"^[^\s@]+@[^\s@]+\.[^\s@]+$")
POINT_QUERY_ACTIONS = ("findUnique", "findFirst")
MAX_EXAMPLES = 5


class QueryInterceptor:
    def __init__(
        self,
        diagnostic_logger=None,
        max_queries=500,
        slow_threshold_ms=1000,
        very_slow_threshold_ms=5000,
        n_plus_one_window=20,
        n_plus_one_limit=5,
        clock=time.perf_counter,
    ):
        self._logger = diagnostic_logger
        self._queries = EventStore(max_size=max_queries)
        self._slow_threshold_ms = slow_threshold_ms
        self._very_slow_threshold_ms = very_slow_threshold_ms
        self._n_plus_one_window = n_plus_one_window
        self._n_plus_one_limit = n_plus_one_limit
        self._clock = clock
        self._lock = threading.Lock()
        self._lifetime_slow = 0
        self._lifetime_errors = 0

    @classmethod
    def from_config(cls, config, diagnostic_logger=None):
        db = config["database"]
        return cls(
            diagnostic_logger,
            max_queries=db["max_queries"],
            slow_threshold_ms=db["slow_threshold_ms"],
            very_slow_threshold_ms=db["very_slow_threshold_ms"],
            n_plus_one_window=db["n_plus_one_window"],
            n_plus_one_limit=db["n_plus_one_limit"],
        )

    def attach(self, db):
        """Register this interceptor as a middleware on a Database."""
        db.use(self.middleware)
        return db

    def middleware(self, params, call_next):
        start = self._clock()
        try:
            result = call_next(params)
        except Exception as exc:
            self.record_query(QueryRecord(
                operation_name=_operation_name(params.model, params.action),
                duration_ms=(self._clock() - start) * 1000,
                model=params.model,
                operation=params.action,
                error={
                    "message": str(exc),
                    "code": getattr(exc, "sqlite_errorname", None) or getattr(exc, "code", None),
                    "type": type(exc).__name__,
                },
            ))
            raise
        self.record_query(QueryRecord(
            operation_name=_operation_name(params.model, params.action),
            duration_ms=(self._clock() - start) * 1000,
            model=params.model,
            operation=params.action,
        ))
        return result

    def record_query(self, record):
        """Store a finished query and run the anomaly checks on it."""
        with self._lock:
            history = self._queries.add_and_snapshot(record)
            if record.duration_ms > self._slow_threshold_ms:
                self._lifetime_slow += 1
            if record.error is not None:
                self._lifetime_errors += 1
        self._analyze(record, history)

    def _analyze(self, record, history):
        if record.duration_ms > self._very_slow_threshold_ms:
            logger.error("VERY SLOW DATABASE QUERY: %s took %.2fs (model=%s, operation=%s)",
                         record.operation_name, record.duration_ms / 1000,
                         record.model or "unknown", record.operation or "unknown")
            self._report(LogLevel.CRITICAL, Category.DATABASE,
                         f"Very slow database query: {record.operation_name}",
                         {"duration": round(record.duration_ms, 2),
                          "threshold": self._very_slow_threshold_ms},
                         "very_slow_query")
        elif record.duration_ms > self._slow_threshold_ms:
            logger.warning("Slow database query: %s (%.0fms)",
                           record.operation_name, record.duration_ms)
            self._report(LogLevel.WARN, Category.DATABASE,
                         f"Slow database query: {record.operation_name}",
                         {"duration": round(record.duration_ms, 2),
                          "threshold": self._slow_threshold_ms},
                         "slow_query")

        if record.error is not None:
            logger.error("DATABASE ERROR: %s failed: %s (code=%s)",
                         record.operation_name, record.error.get("message") or "unknown",
                         record.error.get("code") or "unknown")
            self._report(LogLevel.ERROR, Category.DATABASE,
                         f"Database error: {record.operation_name}",
                         {"error": record.error}, "database_error")

        self._detect_n_plus_one(record, history)

    def _detect_n_plus_one(self, record, history):
        """Heuristic: many point reads right after a findMany on the same model.

        Only the last ``n_plus_one_window`` operations are inspected, so a real
        N+1 spread across more calls can be missed, and legitimate fan-out reads
        can trigger it.
        """
        recent = history[-self._n_plus_one_window:]
        last_find_many = None
        for index, query in enumerate(recent):
            if query.operation == "findMany" and query.model == record.model:
                last_find_many = index
        if last_find_many is None:
            return
        point_reads = sum(
            1 for q in recent[last_find_many + 1:] if q.operation in POINT_QUERY_ACTIONS
        )
        if point_reads > self._n_plus_one_limit:
            logger.warning("POTENTIAL N+1 PROBLEM: %d individual queries after findMany on %s",
                           point_reads, record.model or "unknown")
            self._report(LogLevel.WARN, Category.PERFORMANCE,
                         f"Potential N+1 query pattern on {record.model}",
                         {"model": record.model, "pointQueries": point_reads,
                          "window": self._n_plus_one_window},
                         "n_plus_one")

    def _report(self, level, category, message, details, kind):
        if self._logger is None:
            return
        self._logger.log(level, category, message, details, {"type": kind})

    def check_health(self, db):
        """Round-trip a trivial query and summarize connectivity."""
        start = self._clock()
        try:
            db.query_raw("SELECT 1")
        except Exception as exc:
            logger.error("Database health probe failed: %s", exc)
            return {
                "connected": False,
                "responseTime": round((self._clock() - start) * 1000, 2),
                "activeConnections": 0,
                "slowQueries": self._lifetime_slow,
                "errors": self._lifetime_errors,
            }
        return {
            "connected": True,
            "responseTime": round((self._clock() - start) * 1000, 2),
            "activeConnections": 1,
            "slowQueries": self._lifetime_slow,
            "errors": self._lifetime_errors,
        }

    def get_statistics(self):
        queries = self._queries.get_all()
        total = len(queries)
        successful = sum(1 for q in queries if q.error is None)
        slow = sum(1 for q in queries if q.duration_ms > self._slow_threshold_ms)
        average = sum(q.duration_ms for q in queries) / total if total else 0.0
        by_model = defaultdict(int)
        for query in queries:
            if query.model:
                by_model[query.model] += 1
        return {
            "totalQueries": total,
            "successfulQueries": successful,
            "failedQueries": total - successful,
            "averageDuration": round(average, 2),
            "slowQueries": slow,
            "slowQueriesRate": round(slow / total * 100, 2) if total else 0.0,
            "queryCountByModel": dict(by_model),
        }

    def get_queries(self, model=None, min_duration=None, with_errors=False, limit=None):
        queries = self._queries.get_all()
        if model:
            queries = [q for q in queries if q.model == model]
        if min_duration:
            queries = [q for q in queries if q.duration_ms >= min_duration]
        if with_errors:
            queries = [q for q in queries if q.error is not None]
        if limit:
            queries = queries[-limit:]
        return queries

    def export(self):
        return json.dumps({
            "timestamp": utc_now_iso(),
            "statistics": self.get_statistics(),
            "queries": [q.to_dict() for q in self._queries.get_all()],
        }, indent=2, default=str)

    def analyze_data_integrity(self, db):
        """Run every structural check against the store and return the issues found."""
        issues = []
        for check in (_orphaned_requests, _duplicate_request_numbers,
                      _future_dated_requests, _invalid_employee_emails):
            try:
                issue = check(db)
            except Exception as exc:
                logger.exception("Data integrity check %s failed", check.__name__)
                issue = IntegrityIssue(
                    type="ANALYSIS_ERROR",
                    message="Error during data integrity analysis",
                    details={"check": check.__name__.lstrip("_"), "error": str(exc)},
                )
            if issue is not None:
                issues.append(issue)

        if issues:
            logger.error("DATA INTEGRITY ISSUES DETECTED: %d", len(issues))
            for issue in issues:
                logger.error("  - %s (%s)", issue.message, issue.type)
        return issues


def _operation_name(model, action):
    return f"{model or 'raw'}.{action}"


def _orphaned_requests(db):
    rows = db.query_raw(
        "SELECT r.id, r.request_number, r.employee_name, r.employee_id FROM requests r "
        "LEFT JOIN employees e ON e.id = r.employee_id "
        "WHERE r.employee_id IS NOT NULL AND e.id IS NULL ORDER BY r.id"
    )
    if not rows:
        return None
    return IntegrityIssue(
        type="ORPHANED_REFERENCE",
        message="Requests reference non-existent employees",
        details={"count": len(rows), "examples": rows[:MAX_EXAMPLES]},
    )


def _duplicate_request_numbers(db):
    requests = db.find_many("Request")
    counts = Counter(r["request_number"] for r in requests)
    duplicated = [r for r in requests if counts[r["request_number"]] > 1]
    if not duplicated:
        return None
    return IntegrityIssue(
        type="DUPLICATE_VALUES",
        message="Duplicate request numbers found",
        details={
            "count": len(duplicated),
            "duplicateValues": sorted({r["request_number"] for r in duplicated}),
            "examples": [
                {"id": r["id"], "requestNumber": r["request_number"]}
                for r in duplicated[:MAX_EXAMPLES]
            ],
        },
    )


def _future_dated_requests(db):
    now = datetime.now(timezone.utc)
    future = []
    for request in db.find_many("Request"):
        created = _parse_instant(request["created_at"])
        if created is not None and created > now:
            future.append({
                "id": request["id"],
                "requestNumber": request["request_number"],
                "createdAt": request["created_at"],
            })
    if not future:
        return None
    return IntegrityIssue(
        type="INVALID_DATA",
        message="Requests with future dates",
        details={"count": len(future), "examples": future[:MAX_EXAMPLES]},
    )


def _invalid_employee_emails(db):
    bad = [
        {"id": e["id"], "name": e["full_name"], "email": e["email"]}
        for e in db.find_many("Employee")
        if e["email"] and not EMAIL_PATTERN.match(e["email"])
    ]
    if not bad:
        return None
    return IntegrityIssue(
        type="INVALID_DATA",
        message="Employees with invalid email format",
        details={"count": len(bad), "examples": bad[:MAX_EXAMPLES]},
    )


def _parse_instant(value):
    try:
        parsed = datetime.fromisoformat(str(value).replace("Z", "+00:00"))
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed
