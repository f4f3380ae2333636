"""Server-side store for diagnostic events forwarded by clients."""

import logging
from collections import defaultdict
from datetime import datetime, timedelta, timezone

from bauflex_diagnostics.event_store import EventStore

logger = logging.getLogger(__name__)

ERROR_LEVELS = ("ERROR", "CRITICAL", "FATAL")


class CollectorStore:
    """Bounded list of received event dicts (oldest dropped first)."""

    def __init__(self, max_size=10000):
        self._logs = EventStore(max_size=max_size)

    def add(self, entry, ip=None, user_agent=None):
        """Augment a received event with receipt metadata and store it."""
        stored = {
            **entry,
            "receivedAt": datetime.now(timezone.utc).isoformat(),
            "ip": ip,
            "userAgent": user_agent,
        }
        self._logs.add(stored)

        if stored.get("level") in ("CRITICAL", "FATAL"):
            logger.error(
                "CRITICAL CLIENT ERROR: level=%s category=%s message=%s session=%s",
                stored.get("level"), stored.get("category"),
                stored.get("message"), stored.get("sessionId"),
            )
            if stored.get("details"):
                logger.error("Details: %s", stored["details"])
            if stored.get("stackTrace"):
                logger.error("Stack: %s", stored["stackTrace"])
        return stored

    def get_logs(self, level=None, category=None, session_id=None, limit=None):
        logs = self._logs.get_all()
        if level:
            logs = [log for log in logs if log.get("level") == level]
        if category:
            logs = [log for log in logs if log.get("category") == category]
        if session_id:
            logs = [log for log in logs if log.get("sessionId") == session_id]
        if limit:
            logs = logs[-limit:]
        return logs

    def get_all(self):
        return self._logs.get_all()

    def error_count(self):
        return sum(1 for log in self._logs.get_all() if log.get("level") in ERROR_LEVELS)

    def get_stats(self, now=None):
        logs = self._logs.get_all()
        now = now or datetime.now(timezone.utc)
        one_hour_ago = now - timedelta(hours=1)
        by_level = defaultdict(int)
        by_category = defaultdict(int)
        last_hour = {"total": 0, "errors": 0, "critical": 0}

        for log in logs:
            by_level[log.get("level")] += 1
            by_category[log.get("category")] += 1
            timestamp = _parse_timestamp(log.get("timestamp"))
            if timestamp is not None and timestamp > one_hour_ago:
                last_hour["total"] += 1
                if log.get("level") == "ERROR":
                    last_hour["errors"] += 1
                if log.get("level") in ("CRITICAL", "FATAL"):
                    last_hour["critical"] += 1

        return {
            "totalLogs": len(logs),
            "byLevel": dict(by_level),
            "byCategory": dict(by_category),
            "bySessions": len({log.get("sessionId") for log in logs}),
            "lastHour": last_hour,
        }

    def clear(self):
        """Drop every stored event and return how many there were."""
        return self._logs.clear()

    def __len__(self):
        return len(self._logs)


def _parse_timestamp(value):
    try:
        parsed = datetime.fromisoformat(str(value).replace("Z", "+00:00"))
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed
