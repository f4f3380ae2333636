"""Outbound destinations for diagnostic events: collector forwarders and local stores."""

import json
import logging
import os
import tempfile
import threading
from typing import Protocol, runtime_checkable

import httpx

logger = logging.getLogger(__name__)


@runtime_checkable
class EventForwarder(Protocol):
    def send(self, event) -> None: ...


@runtime_checkable
class EventSink(Protocol):
    def record(self, event) -> None: ...


class NullForwarder:
    def send(self, event) -> None:
        pass


class NullSink:
    """Sink used in production builds: events are not persisted locally."""

    def record(self, event) -> None:
        pass


class StoreForwarder:
    """Hands events straight to an in-process CollectorStore."""

    def __init__(self, store):
        self._store = store

    def send(self, event) -> None:
        self._store.add(event.to_dict(), ip="127.0.0.1", user_agent="bauflex-diagnostics")


class HttpCollectorForwarder:
    """POSTs events to the collector endpoint on a daemon thread.

    Delivery is fire-and-forget: a failed send is logged at WARNING and the
    event is dropped.
    """

    def __init__(self, url: str, timeout: float = 5.0, transport=None):
        self._url = url
        self._timeout = timeout
        self._transport = transport

    @property
    def url(self) -> str:
        return self._url

    def send(self, event) -> None:
        thread = threading.Thread(target=self._post, args=(event.to_dict(),), daemon=True)
        thread.start()

    def _post(self, payload: dict) -> None:
        try:
            with httpx.Client(timeout=self._timeout, transport=self._transport) as client:
                response = client.post(self._url, json=payload)
                response.raise_for_status()
        except Exception as exc:
            logger.warning("Failed to send diagnostic event %s to %s: %s",
                           payload.get("id"), self._url, exc)


class JsonFileSink:
    """Best-effort local store keeping the newest `limit` events in a JSON file.

    Writes go through a temp file and ``os.replace`` so a crash never leaves a
    truncated store behind.
    """

    def __init__(self, path: str, limit: int = 100):
        self._path = path
        self._limit = limit
        self._lock = threading.Lock()

    @property
    def path(self) -> str:
        return self._path

    def record(self, event) -> None:
        with self._lock:
            entries = self._load()
            entries.append(event.to_dict())
            if len(entries) > self._limit:
                entries = entries[-self._limit:]
            self._save(entries)

    def load(self) -> list[dict]:
        with self._lock:
            return self._load()

    def _load(self) -> list[dict]:
        try:
            with open(self._path, "r", encoding="utf-8") as f:
                data = json.load(f)
        except FileNotFoundError:
            return []
        except (json.JSONDecodeError, OSError):
            logger.warning("Local diagnostic store %s unreadable, starting fresh", self._path)
            return []
        return data if isinstance(data, list) else []

    def _save(self, entries: list[dict]) -> None:
        directory = os.path.dirname(os.path.abspath(self._path))
        os.makedirs(directory, exist_ok=True)
        fd, tmp = tempfile.mkstemp(dir=directory)
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                json.dump(entries, f, default=str)
            os.replace(tmp, self._path)
        except Exception:
            if os.path.exists(tmp):
                os.unlink(tmp)
            raise
