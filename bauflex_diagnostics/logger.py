"""The diagnostic event funnel.

Every monitor reports through :class:`DiagnosticLogger.log`. The logger keeps
the most recent events in a bounded :class:`EventStore`, per-level counters
that survive eviction, and hands CRITICAL/FATAL events to the collector
forwarder. Its own bookkeeping never raises: a failure in any side step is
reported through Python logging and the call carries on.
"""

import contextlib
import json
import logging
import threading
import traceback

from bauflex_diagnostics import runtime
from bauflex_diagnostics.event_store import EventStore
from bauflex_diagnostics.models import (
    ERROR_LEVELS,
    Category,
    DiagnosticEvent,
    LogLevel,
    Session,
    generate_id,
    utc_now_iso,
)
from bauflex_diagnostics.sinks import NullForwarder, NullSink

logger = logging.getLogger(__name__)
event_logger = logging.getLogger("bauflex_diagnostics.events")

_PYTHON_LEVELS = {
    LogLevel.DEBUG: logging.DEBUG,
    LogLevel.INFO: logging.INFO,
    LogLevel.WARN: logging.WARNING,
    LogLevel.ERROR: logging.ERROR,
    LogLevel.CRITICAL: logging.CRITICAL,
    LogLevel.FATAL: logging.CRITICAL,
}

_FORWARDED_LEVELS = (LogLevel.CRITICAL, LogLevel.FATAL)


class DiagnosticLogger:
    DEFAULT_THRESHOLDS = {
        LogLevel.WARN: 10,
        LogLevel.ERROR: 5,
        LogLevel.CRITICAL: 2,
        LogLevel.FATAL: 1,
    }

    def __init__(
        self,
        max_events=1000,
        thresholds=None,
        forwarder=None,
        sink=None,
        memory_probe=runtime.memory_usage_mb,
        online_probe=runtime.is_online,
    ):
        self._session = Session.start()
        self._store = EventStore(max_size=max_events)
        self._lock = threading.Lock()
        self._counts = {level: 0 for level in LogLevel}
        if thresholds is None:
            self._thresholds = dict(self.DEFAULT_THRESHOLDS)
        else:
            self._thresholds = {LogLevel.parse(k): v for k, v in thresholds.items()}
        self._forwarder = forwarder or NullForwarder()
        self._sink = sink or NullSink()
        self._memory_probe = memory_probe
        self._online_probe = online_probe
        self._threshold_handlers = []

    @property
    def session_id(self):
        return self._session.session_id

    @property
    def session(self):
        return self._session

    @property
    def max_events(self):
        return self._store.max_size

    def add_threshold_handler(self, handler):
        """Register an object whose ``handle(notice)`` runs on every threshold hit."""
        self._threshold_handlers.append(handler)

    def log(self, level, category, message, details=None, context=None,
            stack_trace=None, meta=None):
        """Record one diagnostic event and return it."""
        level = _coerce_level(level)
        category = _coerce_category(category)

        meta = dict(meta or {})
        memory = self._measure_memory()
        if memory is not None:
            meta["memoryUsage"] = memory

        event = DiagnosticEvent(
            id=generate_id("event"),
            timestamp=utc_now_iso(),
            level=level,
            category=category,
            message=str(message),
            session_id=self._session.session_id,
            details=_detach(details),
            stack_trace=stack_trace,
            context=dict(context) if context else {"type": "general"},
            meta=meta,
        )

        with self._lock:
            self._store.add(event)
            self._counts[level] += 1
            count = self._counts[level]

        self._emit(event)
        if level in _FORWARDED_LEVELS:
            self._forward(event)
        self._check_threshold(event, count)
        self._persist(event)
        return event

    def debug(self, category, message, details=None, context=None):
        return self.log(LogLevel.DEBUG, category, message, details, context)

    def info(self, category, message, details=None, context=None):
        return self.log(LogLevel.INFO, category, message, details, context)

    def warn(self, category, message, details=None, context=None):
        return self.log(LogLevel.WARN, category, message, details, context)

    def error(self, category, message, details=None, context=None, stack_trace=None):
        return self.log(LogLevel.ERROR, category, message, details, context, stack_trace)

    def critical(self, category, message, details=None, context=None, stack_trace=None):
        return self.log(LogLevel.CRITICAL, category, message, details, context, stack_trace)

    def fatal(self, category, message, details=None, context=None, stack_trace=None):
        return self.log(LogLevel.FATAL, category, message, details, context, stack_trace)

    def track_action(self, action_name, details=None):
        return self.log(LogLevel.INFO, Category.UI, f"User action: {action_name}",
                        details, {"type": "user_action"})

    def track_error(self, exc, component=None):
        return self.log(
            LogLevel.ERROR,
            Category.UI,
            f"Component error: {exc}",
            {"component": component, "error": repr(exc)},
            {"type": "component_error"},
            format_stack(exc),
        )

    @contextlib.contextmanager
    def guard(self, component_name=None):
        """Log any exception escaping the block as CRITICAL/UI, then re-raise it.

        Usable both as ``with logger.guard("RequestsTable"):`` and as a
        decorator.
        """
        try:
            yield
        except Exception as exc:
            name = component_name or "Unknown Component"
            self.log(
                LogLevel.CRITICAL,
                Category.UI,
                f"Error boundary caught error in {name}",
                {"error": repr(exc), "componentName": component_name},
                {"type": "error_boundary"},
                format_stack(exc),
            )
            raise

    def get_events(self, level=None, category=None, limit=None):
        """Return retained events, most recent last, filtered then tail-limited."""
        events = self._store.get_all()
        if level is not None:
            level = LogLevel.parse(level)
            events = [e for e in events if e.level is level]
        if category is not None:
            category = Category.parse(category)
            events = [e for e in events if e.category is category]
        if limit:
            events = events[-limit:]
        return events

    def get_counts(self):
        with self._lock:
            return {level.value: count for level, count in self._counts.items()}

    def error_rate(self):
        """Percentage of ERROR/CRITICAL/FATAL events among all events since the last clear."""
        with self._lock:
            total = sum(self._counts.values())
            errors = sum(self._counts[level] for level in ERROR_LEVELS)
        return (errors / total) * 100 if total > 0 else 0.0

    def get_statistics(self):
        counts = self.get_counts()
        return {
            "sessionId": self._session.session_id,
            "totalEvents": sum(counts.values()),
            "storedEvents": len(self._store),
            "errorCounts": counts,
            "errorRate": round(self.error_rate(), 2),
            "memoryUsage": self._measure_memory() or 0.0,
            "isOnline": self._is_online(),
        }

    def export_logs(self):
        events = self._store.get_all()
        return json.dumps({
            "sessionId": self._session.session_id,
            "timestamp": utc_now_iso(),
            "events": [e.to_dict() for e in events],
            "summary": {
                "total": len(events),
                "counts": self.get_counts(),
            },
        }, indent=2, default=str)

    def clear_logs(self):
        """Empty the store and zero every counter; the session id is kept."""
        with self._lock:
            self._store.clear()
            self._counts = {level: 0 for level in LogLevel}

    # --- internal steps, none of which may raise ---

    def _measure_memory(self):
        try:
            return round(self._memory_probe(), 2)
        except Exception:
            return None

    def _is_online(self):
        try:
            return bool(self._online_probe())
        except Exception:
            return False

    def _emit(self, event):
        try:
            lines = [f"[{event.level.value}] [{event.category.value}] {event.message}"]
            if event.details is not None:
                lines.append(f"  Details: {json.dumps(event.details, default=str, ensure_ascii=False)}")
            if event.stack_trace:
                lines.append(f"  Stack: {event.stack_trace}")
            if event.context:
                lines.append(f"  Context: {json.dumps(event.context, default=str, ensure_ascii=False)}")
            event_logger.log(_PYTHON_LEVELS[event.level], "\n".join(lines))
        except Exception:
            logger.exception("Failed to emit diagnostic event %s", event.id)

    def _forward(self, event):
        try:
            self._forwarder.send(event)
        except Exception as exc:
            logger.warning("Failed to forward diagnostic event %s: %s", event.id, exc)

    def _check_threshold(self, event, count):
        threshold = self._thresholds.get(event.level)
        if not threshold or count < threshold:
            return
        notice = {
            "level": event.level.value,
            "count": count,
            "threshold": threshold,
            "category": event.category.value,
            "message": event.message,
            "timestamp": utc_now_iso(),
        }
        logger.error("THRESHOLD EXCEEDED: level=%s count=%d/%d category=%s message=%s",
                     event.level.value, count, threshold, event.category.value, event.message)
        for handler in self._threshold_handlers:
            try:
                handler.handle(notice)
            except Exception:
                logger.exception("Threshold handler %r failed", handler)

    def _persist(self, event):
        try:
            self._sink.record(event)
        except Exception as exc:
            logger.debug("Local diagnostic store rejected event %s: %s", event.id, exc)


def format_stack(exc):
    return "".join(traceback.format_exception(type(exc), exc, exc.__traceback__))


def _detach(details):
    """JSON-safe copy of caller details, so later mutation cannot reach a stored event."""
    if details is None:
        return None
    try:
        return json.loads(json.dumps(details, default=str, ensure_ascii=False))
    except (TypeError, ValueError):
        # circular structures cannot be serialized
        return repr(details)


def _coerce_level(level):
    try:
        return LogLevel.parse(level)
    except ValueError:
        logger.warning("Unknown log level %r, recording as INFO", level)
        return LogLevel.INFO


def _coerce_category(category):
    try:
        return Category.parse(category)
    except ValueError:
        logger.warning("Unknown category %r, recording as LOGIC", category)
        return Category.LOGIC
