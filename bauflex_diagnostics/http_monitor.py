"""Outbound HTTP call monitoring.

:class:`CallInterceptor` keeps a bounded history of calls and flags slow
calls, failures, oversized responses and endpoints with a high recent error
rate. It is attached to an HTTP stack as a layer:

* :class:`MonitoredTransport` / :class:`MonitoredAsyncTransport` wrap an
  httpx transport; a call succeeds when the status is 2xx.
* :class:`MonitoredAdapter` is a requests adapter; a call succeeds when
  ``response.ok``.

Transport errors are recorded as status 0 and re-raised unchanged.
"""

import json
import logging
import threading
import time
import traceback

import httpx
import requests
from requests.adapters import HTTPAdapter

from bauflex_diagnostics.event_store import EventStore
from bauflex_diagnostics.models import APICallRecord, Category, LogLevel, utc_now_iso

logger = logging.getLogger(__name__)


class CallInterceptor:
    def __init__(
        self,
        diagnostic_logger,
        max_calls=500,
        slow_threshold_ms=3000,
        very_slow_threshold_ms=10000,
        error_rate_threshold=0.2,
        pattern_window=10,
        pattern_min_calls=5,
        large_response_bytes=5 * 1024 * 1024,
    ):
        self._logger = diagnostic_logger
        self._calls = EventStore(max_size=max_calls)
        self._slow_threshold_ms = slow_threshold_ms
        self._very_slow_threshold_ms = very_slow_threshold_ms
        self._error_rate_threshold = error_rate_threshold
        self._pattern_window = pattern_window
        self._pattern_min_calls = pattern_min_calls
        self._large_response_bytes = large_response_bytes
        self._lock = threading.Lock()

    @classmethod
    def from_config(cls, diagnostic_logger, config):
        api = config["api"]
        return cls(
            diagnostic_logger,
            max_calls=api["max_calls"],
            slow_threshold_ms=api["slow_threshold_ms"],
            very_slow_threshold_ms=api["very_slow_threshold_ms"],
            error_rate_threshold=api["error_rate_threshold"],
            pattern_window=api["pattern_window"],
            pattern_min_calls=api["pattern_min_calls"],
            large_response_bytes=api["large_response_bytes"],
        )

    @property
    def slow_threshold_ms(self):
        return self._slow_threshold_ms

    def record_call(self, record):
        """Store a completed or failed call and run the anomaly rules on it."""
        with self._lock:
            history = self._calls.add_and_snapshot(record)
        self._analyze(record, history)

    def _analyze(self, record, history):
        target = f"{record.method} {record.url}"

        if record.duration_ms > self._very_slow_threshold_ms:
            self._logger.log(
                LogLevel.CRITICAL,
                Category.PERFORMANCE,
                f"Very slow API call detected: {target}",
                {
                    "duration": f"{record.duration_ms / 1000:.2f}s",
                    "threshold": f"{self._very_slow_threshold_ms / 1000:g}s",
                    "status": record.status,
                },
                {"type": "very_slow_api"},
                meta={"duration": record.duration_ms},
            )
        elif record.duration_ms > self._slow_threshold_ms:
            self._logger.log(
                LogLevel.WARN,
                Category.PERFORMANCE,
                f"Slow API call: {target}",
                {
                    "duration": f"{record.duration_ms / 1000:.2f}s",
                    "threshold": f"{self._slow_threshold_ms / 1000:g}s",
                },
                {"type": "slow_api"},
                meta={"duration": record.duration_ms},
            )

        if not record.success:
            if record.status == 0:
                level = LogLevel.ERROR
            elif record.status >= 500:
                level = LogLevel.CRITICAL
            else:
                level = LogLevel.WARN
            self._logger.log(
                level,
                Category.API,
                f"API call failed: {target}",
                {"status": record.status, "duration": record.duration_ms, "error": record.error},
                {"type": "api_error_status"},
                record.stack_trace,
                meta={"duration": record.duration_ms},
            )

        if record.size_bytes > self._large_response_bytes:
            self._logger.log(
                LogLevel.WARN,
                Category.PERFORMANCE,
                f"Large API response: {target}",
                {
                    "size": f"{record.size_bytes / 1024 / 1024:.2f}MB",
                    "duration": record.duration_ms,
                },
                {"type": "large_response"},
            )

        self._check_error_pattern(record, history)

    def _check_error_pattern(self, record, history):
        recent = [c for c in history if c.url == record.url][-self._pattern_window:]
        if len(recent) < self._pattern_min_calls:
            return
        error_count = sum(1 for c in recent if not c.success)
        error_rate = error_count / len(recent)
        if error_rate >= self._error_rate_threshold:
            self._logger.log(
                LogLevel.CRITICAL,
                Category.API,
                f"High error rate detected for endpoint: {record.url}",
                {
                    "errorRate": f"{error_rate * 100:.1f}%",
                    "errorCount": error_count,
                    "totalCalls": len(recent),
                    "threshold": f"{self._error_rate_threshold * 100:g}%",
                },
                {"type": "error_pattern"},
            )

    def get_statistics(self):
        calls = self._calls.get_all()
        total = len(calls)
        successful = sum(1 for c in calls if c.success)
        slow = sum(1 for c in calls if c.duration_ms > self._slow_threshold_ms)
        average = sum(c.duration_ms for c in calls) / total if total else 0.0
        return {
            "totalCalls": total,
            "successfulCalls": successful,
            "failedCalls": total - successful,
            "successRate": round(successful / total * 100, 2) if total else 0.0,
            "averageDuration": round(average, 2),
            "slowCalls": slow,
            "slowCallsRate": round(slow / total * 100, 2) if total else 0.0,
        }

    def get_calls(self, success=None, min_duration=None, limit=None):
        calls = self._calls.get_all()
        if success is not None:
            calls = [c for c in calls if c.success is success]
        if min_duration:
            calls = [c for c in calls if c.duration_ms >= min_duration]
        if limit:
            calls = calls[-limit:]
        return calls

    def export(self):
        return json.dumps({
            "timestamp": utc_now_iso(),
            "statistics": self.get_statistics(),
            "calls": [c.to_dict() for c in self._calls.get_all()],
        }, indent=2, default=str)

    def clear(self):
        return self._calls.clear()


def _error_descriptor(exc):
    return {"message": str(exc), "name": type(exc).__name__}


def _content_length(headers):
    try:
        return int(headers.get("content-length", 0))
    except (TypeError, ValueError):
        return 0


class MonitoredTransport(httpx.BaseTransport):
    """httpx transport layer that reports every request to a CallInterceptor."""

    def __init__(self, interceptor, transport=None, clock=time.perf_counter):
        self._interceptor = interceptor
        self._transport = transport or httpx.HTTPTransport()
        self._clock = clock

    def handle_request(self, request):
        start = self._clock()
        try:
            response = self._transport.handle_request(request)
        except Exception as exc:
            self._interceptor.record_call(_failed_record(request, exc, (self._clock() - start) * 1000))
            raise
        duration = (self._clock() - start) * 1000
        self._interceptor.record_call(APICallRecord(
            url=str(request.url),
            method=request.method,
            status=response.status_code,
            duration_ms=duration,
            size_bytes=_content_length(response.headers),
            success=200 <= response.status_code < 300,
        ))
        return response

    def close(self):
        self._transport.close()


class MonitoredAsyncTransport(httpx.AsyncBaseTransport):
    """Async counterpart of :class:`MonitoredTransport`."""

    def __init__(self, interceptor, transport=None, clock=time.perf_counter):
        self._interceptor = interceptor
        self._transport = transport or httpx.AsyncHTTPTransport()
        self._clock = clock

    async def handle_async_request(self, request):
        start = self._clock()
        try:
            response = await self._transport.handle_async_request(request)
        except Exception as exc:
            self._interceptor.record_call(_failed_record(request, exc, (self._clock() - start) * 1000))
            raise
        duration = (self._clock() - start) * 1000
        self._interceptor.record_call(APICallRecord(
            url=str(request.url),
            method=request.method,
            status=response.status_code,
            duration_ms=duration,
            size_bytes=_content_length(response.headers),
            success=200 <= response.status_code < 300,
        ))
        return response

    async def aclose(self):
        await self._transport.aclose()


def _failed_record(request, exc, duration):
    return APICallRecord(
        url=str(request.url),
        method=request.method,
        status=0,
        duration_ms=duration,
        size_bytes=0,
        success=False,
        error=_error_descriptor(exc),
        stack_trace="".join(traceback.format_exception(type(exc), exc, exc.__traceback__)),
    )


class MonitoredAdapter(HTTPAdapter):
    """requests adapter that reports every request to a CallInterceptor."""

    def __init__(self, interceptor, clock=time.perf_counter, **kwargs):
        self._interceptor = interceptor
        self._clock = clock
        super().__init__(**kwargs)

    def send(self, request, stream=False, **kwargs):
        start = self._clock()
        try:
            response = super().send(request, stream=stream, **kwargs)
        except Exception as exc:
            self._interceptor.record_call(_failed_record(request, exc, (self._clock() - start) * 1000))
            raise
        duration = (self._clock() - start) * 1000
        self._interceptor.record_call(APICallRecord(
            url=request.url,
            method=request.method,
            status=response.status_code,
            duration_ms=duration,
            size_bytes=self._response_size(response, stream),
            success=response.ok,
        ))
        return response

    @staticmethod
    def _response_size(response, stream):
        size = _content_length(response.headers)
        if size or stream:
            return size
        try:
            return len(response.content or b"")
        except Exception:
            return 0


def monitored_client(interceptor, transport=None, **kwargs):
    """Build an httpx.Client whose every request passes through the interceptor."""
    return httpx.Client(transport=MonitoredTransport(interceptor, transport), **kwargs)


def monitored_async_client(interceptor, transport=None, **kwargs):
    return httpx.AsyncClient(transport=MonitoredAsyncTransport(interceptor, transport), **kwargs)


def monitored_session(interceptor):
    """Build a requests.Session with the monitoring adapter mounted for http and https."""
    session = requests.Session()
    adapter = MonitoredAdapter(interceptor)
    session.mount("http://", adapter)
    session.mount("https://", adapter)
    return session
