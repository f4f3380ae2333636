"""Composition root: builds every monitor from one Config and owns their lifetime."""

import json
import logging

from bauflex_diagnostics.capture import ErrorCapture
from bauflex_diagnostics.collector import CollectorStore
from bauflex_diagnostics.config import Config
from bauflex_diagnostics.database import Database
from bauflex_diagnostics.db_monitor import QueryInterceptor
from bauflex_diagnostics.health import HealthAggregator
from bauflex_diagnostics.http_monitor import CallInterceptor, monitored_client, monitored_session
from bauflex_diagnostics.logger import DiagnosticLogger
from bauflex_diagnostics.models import Category, LogLevel, utc_now_iso
from bauflex_diagnostics.sinks import HttpCollectorForwarder, JsonFileSink, NullSink, StoreForwarder
from bauflex_diagnostics.state_validator import StateValidator
from bauflex_diagnostics.store import MonitoredStore
from bauflex_diagnostics.validator import EventValidator

logger = logging.getLogger(__name__)

VERSION = "1.0.0"


class Monitoring:
    def __init__(self, config=None, db=None, forwarder=None, sink=None):
        self.config = config or Config()
        logger_config = self.config["logger"]

        self.collector = CollectorStore(max_size=self.config["server"]["max_received_logs"])
        self.event_validator = EventValidator(self.config["schema"]["path"] or None)

        if forwarder is None:
            if logger_config["collector_url"]:
                forwarder = HttpCollectorForwarder(logger_config["collector_url"],
                                                   timeout=logger_config["forward_timeout"])
            else:
                forwarder = StoreForwarder(self.collector)
        if sink is None:
            if self.config.is_production:
                sink = NullSink()
            else:
                sink = JsonFileSink(logger_config["local_store_path"],
                                    limit=logger_config["local_store_limit"])

        self.logger = DiagnosticLogger(
            max_events=logger_config["max_events"],
            thresholds=logger_config["thresholds"],
            forwarder=forwarder,
            sink=sink,
        )
        self.calls = CallInterceptor.from_config(self.logger, self.config)
        self.queries = QueryInterceptor.from_config(self.config, self.logger)
        self.db = db if db is not None else Database(self.config["database"]["path"])
        self.queries.attach(self.db)
        self.state = StateValidator.from_config(self.logger, self.config)
        self.health = HealthAggregator.from_config(self.logger, self.config,
                                                   db=self.db, query_interceptor=self.queries)
        self.capture = ErrorCapture(self.logger)

    def start(self, loop=None):
        """Install global error capture and start the periodic health jobs.

        Pass the asyncio ``loop`` the service runs on to have unhandled task
        failures recorded as ``promise_rejection`` events.
        """
        self.capture.install()
        if loop is not None:
            self.capture.watch_loop(loop)
        self.health.start()
        self.logger.log(
            LogLevel.INFO,
            Category.LOGIC,
            "Diagnostic system initialized successfully",
            {
                "components": ["DiagnosticLogger", "CallInterceptor", "QueryInterceptor",
                               "StateValidator", "HealthAggregator"],
                "version": VERSION,
                "environment": self.config["logger"]["environment"],
            },
            {"type": "system_init"},
        )
        logger.info("Diagnostic system ready (session %s)", self.logger.session_id)

    def stop(self):
        self.health.stop()
        self.capture.uninstall()
        logger.info("Diagnostic system stopped")

    def create_store(self, name, initial_state):
        """Build a state container validated by this system's StateValidator."""
        return MonitoredStore(name, initial_state, self.state)

    def http_client(self, **kwargs):
        return monitored_client(self.calls, **kwargs)

    def http_session(self):
        return monitored_session(self.calls)

    def client_statistics(self):
        return {
            "logger": self.logger.get_statistics(),
            "api": self.calls.get_statistics(),
            "state": self.state.get_statistics(),
            "health": self.health.last_report.to_dict() if self.health.last_report else None,
        }

    def export_all(self):
        return json.dumps({
            "exportedAt": utc_now_iso(),
            "logger": json.loads(self.logger.export_logs()),
            "api": json.loads(self.calls.export()),
            "database": json.loads(self.queries.export()),
            "state": json.loads(self.state.export()),
        }, indent=2, default=str, ensure_ascii=False)

    def clear(self):
        self.logger.clear_logs()
        self.calls.clear()
        self.state.clear()
